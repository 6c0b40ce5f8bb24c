from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from pulsegate.storage.models import Session, TrustedDevice

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "challenge_invalid",
        "mfa_required",
        "dependency_unavailable",
        "integrity_violation",
        "configuration_error",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_code(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("code must not be empty")
    return cleaned


class LinkRequest(BaseModel):
    external_identity: str = Field(..., min_length=1, max_length=256)
    phone_number: str = Field(..., min_length=8, max_length=32)


class LinkResponse(BaseModel):
    session_id: str
    code_sent: bool
    already_linked: bool = False


class CodeRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=32)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _strip_code(value)


class SecondFactorVerifyRequest(CodeRequest):
    trust_device: bool = False
    device_name: Optional[str] = Field(default=None, max_length=128)


class ConsentRequest(BaseModel):
    given: bool


class AliasRedeemRequest(CodeRequest):
    alias: str = Field(..., min_length=1, max_length=256)


class RoleAssignmentRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=64)


class SecondFactorSetupRequest(BaseModel):
    label: Optional[str] = Field(default=None, max_length=128)


class SecondFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    qr_payload: str
    backup_codes: List[str]


class TrustDeviceRequest(BaseModel):
    fingerprint: Dict[str, Any]
    name: Optional[str] = Field(default=None, max_length=128)


class SessionView(BaseModel):
    """Session fields safe to return; the auth token never leaves the service."""

    session_id: str
    linked_phone_number: str
    account_id: Optional[str] = None
    verified: bool
    mfa_verified: bool
    mfa_expires_at: Optional[datetime] = None
    consent_given: bool
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    profile_name: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionView":
        return cls(
            session_id=session.session_id,
            linked_phone_number=session.linked_phone_number,
            account_id=session.account_id,
            verified=session.verified,
            mfa_verified=session.mfa_verified,
            mfa_expires_at=session.mfa_expires_at,
            consent_given=session.consent_given,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_activity=session.last_activity,
            profile_name=session.profile_name,
            role=(session.metadata or {}).get("role"),
        )


class TrustedDeviceView(BaseModel):
    device_id: str
    name: str
    last_used: datetime
    created_at: datetime

    @classmethod
    def from_device(cls, device: TrustedDevice) -> "TrustedDeviceView":
        return cls(
            device_id=device.device_id,
            name=device.name,
            last_used=device.last_used,
            created_at=device.created_at,
        )


class AnomalyScanRequest(BaseModel):
    window_seconds: Optional[int] = Field(default=None, gt=0, le=7 * 24 * 60 * 60)


ExportFormat = Literal["json", "csv"]
