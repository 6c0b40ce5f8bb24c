from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pulsegate.storage.common import from_iso, to_iso


@dataclass
class Session:
    session_id: str
    external_identity: str
    linked_phone_number: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    account_id: Optional[str] = None
    auth_token: Optional[str] = None
    verified: bool = False
    mfa_verified: bool = False
    mfa_expires_at: Optional[datetime] = None
    consent_given: bool = False
    consent_at: Optional[datetime] = None
    profile_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        session_id: str,
        external_identity: str,
        linked_phone_number: str,
        *,
        now: datetime,
        ttl_seconds: int,
        account_id: Optional[str] = None,
    ) -> "Session":
        return cls(
            session_id=session_id,
            external_identity=external_identity,
            linked_phone_number=linked_phone_number,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity=now,
            account_id=account_id,
            verified=account_id is not None,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def second_factor_valid(self, now: datetime) -> bool:
        return bool(
            self.mfa_verified
            and self.mfa_expires_at is not None
            and now < self.mfa_expires_at
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "expires_at", "last_activity", "mfa_expires_at", "consent_at"):
            data[key] = to_iso(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        payload = dict(data)
        for key in ("created_at", "expires_at", "last_activity", "mfa_expires_at", "consent_at"):
            payload[key] = from_iso(payload.get(key))
        payload["metadata"] = payload.get("metadata") or {}
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in payload.items() if k in known})


@dataclass
class Challenge:
    session_id: str
    code_hash: str
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "code_hash": self.code_hash,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Challenge":
        return cls(
            session_id=data["session_id"],
            code_hash=data["code_hash"],
            created_at=from_iso(data["created_at"]),
            expires_at=from_iso(data["expires_at"]),
        )


@dataclass
class SecondFactorSecret:
    user_id: str
    encrypted_secret: str
    created_at: datetime
    enabled: bool = False
    enabled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "encrypted_secret": self.encrypted_secret,
            "created_at": to_iso(self.created_at),
            "enabled": self.enabled,
            "enabled_at": to_iso(self.enabled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecondFactorSecret":
        return cls(
            user_id=data["user_id"],
            encrypted_secret=data["encrypted_secret"],
            created_at=from_iso(data["created_at"]),
            enabled=bool(data.get("enabled")),
            enabled_at=from_iso(data.get("enabled_at")),
        )


@dataclass
class TrustedDevice:
    user_id: str
    device_id: str
    name: str
    last_used: datetime
    created_at: datetime
    trusted: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "name": self.name,
            "last_used": to_iso(self.last_used),
            "created_at": to_iso(self.created_at),
            "trusted": self.trusted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrustedDevice":
        return cls(
            user_id=data["user_id"],
            device_id=data["device_id"],
            name=data.get("name") or "Unknown device",
            last_used=from_iso(data["last_used"]),
            created_at=from_iso(data.get("created_at") or data["last_used"]),
            trusted=bool(data.get("trusted", True)),
        )


class EventType(str, Enum):
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    TOTP_SETUP = "totp_setup"
    TOTP_VERIFIED = "totp_verified"
    TOTP_FAILED = "totp_failed"
    SESSION_CREATED = "session_created"
    SESSION_EXPIRED = "session_expired"
    SESSION_REVOKED = "session_revoked"
    SESSION_INVALID = "session_invalid"
    ACCESS_GRANTED = "access_granted"
    PERMISSION_DENIED = "permission_denied"
    SECOND_FACTOR_REQUIRED = "second_factor_required"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    CONFIGURATION_CHANGE = "configuration_change"
    BULK_OPERATION = "bulk_operation"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class SecurityEvent:
    id: str
    type: EventType
    severity: Severity
    timestamp: datetime
    ip_address: str = "unknown"
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    integrity_hash: str = ""

    def hashed_fields(self) -> Dict[str, Any]:
        """Every immutable field, in the form covered by ``integrity_hash``."""
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "timestamp": to_iso(self.timestamp),
            "ip_address": self.ip_address,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "user_agent": self.user_agent,
            "details": self.details,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.hashed_fields(), "integrity_hash": self.integrity_hash}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityEvent":
        return cls(
            id=data["id"],
            type=EventType(data["type"]),
            severity=Severity(data["severity"]),
            timestamp=from_iso(data["timestamp"]),
            ip_address=data.get("ip_address") or "unknown",
            user_id=data.get("user_id"),
            session_id=data.get("session_id"),
            user_agent=data.get("user_agent"),
            details=data.get("details") or {},
            integrity_hash=data.get("integrity_hash") or "",
        )


@dataclass
class Anomaly:
    type: str
    severity: Severity
    description: str
    subject: str
    event_count: int
    first_seen: datetime
    last_seen: datetime
    sample_event_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
            "subject": self.subject,
            "event_count": self.event_count,
            "first_seen": to_iso(self.first_seen),
            "last_seen": to_iso(self.last_seen),
            "sample_event_ids": list(self.sample_event_ids),
        }


@dataclass
class SecurityMetrics:
    total_events: int = 0
    events_by_type: Dict[str, int] = field(default_factory=dict)
    events_by_severity: Dict[str, int] = field(default_factory=dict)
    top_ip_addresses: List[Dict[str, Any]] = field(default_factory=list)
    failed_logins: int = 0
    successful_logins: int = 0
    suspicious_activities: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
