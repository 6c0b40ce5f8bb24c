from __future__ import annotations

import csv
import io
import json
import secrets
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.service.crypto import CryptoProvider, constant_time_equals
from pulsegate.service.errors import IntegrityViolation, ValidationError
from pulsegate.storage.common import Clock, as_utc, canonical_json, to_iso, utc_now
from pulsegate.storage.errors import StoreError
from pulsegate.storage.keyvalue import KeyValueStore
from pulsegate.storage.models import (
    Anomaly,
    EventType,
    SecurityEvent,
    SecurityMetrics,
    Severity,
)

logger = get_logger(__name__)

TIMELINE_KEY = "security-events-timeline"

SEVERITY_BY_TYPE: Dict[EventType, Severity] = {
    EventType.LOGIN_ATTEMPT: Severity.INFO,
    EventType.LOGIN_SUCCESS: Severity.INFO,
    EventType.LOGIN_FAILURE: Severity.WARNING,
    EventType.TOTP_SETUP: Severity.INFO,
    EventType.TOTP_VERIFIED: Severity.INFO,
    EventType.TOTP_FAILED: Severity.WARNING,
    EventType.SESSION_CREATED: Severity.INFO,
    EventType.SESSION_EXPIRED: Severity.INFO,
    EventType.SESSION_REVOKED: Severity.INFO,
    EventType.SESSION_INVALID: Severity.WARNING,
    EventType.ACCESS_GRANTED: Severity.INFO,
    EventType.PERMISSION_DENIED: Severity.WARNING,
    EventType.SECOND_FACTOR_REQUIRED: Severity.INFO,
    EventType.RATE_LIMIT_EXCEEDED: Severity.WARNING,
    EventType.SUSPICIOUS_ACTIVITY: Severity.CRITICAL,
    EventType.DATA_ACCESS: Severity.INFO,
    EventType.DATA_MODIFICATION: Severity.WARNING,
    EventType.CONFIGURATION_CHANGE: Severity.ERROR,
    EventType.BULK_OPERATION: Severity.WARNING,
}

EXPORT_COLUMNS = (
    "id",
    "type",
    "severity",
    "timestamp",
    "user_id",
    "session_id",
    "ip_address",
    "user_agent",
    "details",
    "integrity_hash",
)


@dataclass
class EventFilter:
    types: Optional[Iterable[EventType]] = None
    severities: Optional[Iterable[Severity]] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.start is not None:
            self.start = as_utc(self.start)
        if self.end is not None:
            self.end = as_utc(self.end)

    def matches(self, event: SecurityEvent) -> bool:
        if self.types is not None and event.type not in set(self.types):
            return False
        if self.severities is not None and event.severity not in set(self.severities):
            return False
        if self.user_id and event.user_id != self.user_id:
            return False
        if self.session_id and event.session_id != self.session_id:
            return False
        if self.ip_address and event.ip_address != self.ip_address:
            return False
        if self.start and event.timestamp < self.start:
            return False
        if self.end and event.timestamp > self.end:
            return False
        return True


class SecurityAuditLog:
    """Append-only, integrity-hashed security event stream.

    Every event is stored under ``security-event:{id}`` and indexed in a
    sorted set scored by its timestamp. The index is capped at
    ``audit_max_events``; the oldest events are evicted from both places.

    Writes fail open: a store outage is logged and the event is still
    returned so the calling request proceeds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        crypto: CryptoProvider,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.crypto = crypto
        self.settings = settings
        self._clock = clock or utc_now

    @staticmethod
    def _event_key(event_id: str) -> str:
        return f"security-event:{event_id}"

    @staticmethod
    def _new_id(now: datetime) -> str:
        return f"evt_{int(now.timestamp() * 1000)}_{secrets.token_hex(8)}"

    def compute_hash(self, event: SecurityEvent) -> str:
        return self.crypto.hash(canonical_json(event.hashed_fields()))

    def verify_integrity(self, event: SecurityEvent) -> bool:
        return constant_time_equals(self.compute_hash(event), event.integrity_hash)

    async def record(
        self,
        event_type: EventType,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        now = self._clock()
        event = SecurityEvent(
            id=self._new_id(now),
            type=event_type,
            severity=SEVERITY_BY_TYPE.get(event_type, Severity.INFO),
            timestamp=now,
            ip_address=ip_address or "unknown",
            user_id=user_id,
            session_id=session_id,
            user_agent=user_agent,
            details=dict(details or {}),
        )
        event.integrity_hash = self.compute_hash(event)

        try:
            await self._persist(event)
        except StoreError as exc:
            logger.error("security_event_persist_failed", event_id=event.id, error=str(exc))

        if event.severity == Severity.CRITICAL:
            logger.error(
                "security_event_critical",
                event_id=event.id,
                event_type=event.type.value,
                user_id=user_id,
                ip_address=event.ip_address,
                details=event.details,
            )
        else:
            logger.info(
                "security_event",
                event_id=event.id,
                event_type=event.type.value,
                severity=event.severity.value,
                user_id=user_id,
            )

        if event_type in (EventType.LOGIN_FAILURE, EventType.SESSION_CREATED):
            await self._check_patterns(event)
        return event

    async def _persist(self, event: SecurityEvent) -> None:
        await self.store.set(
            self._event_key(event.id),
            json.dumps(event.to_dict()),
            ttl=self.settings.audit_event_ttl_seconds,
        )
        await self.store.zadd(TIMELINE_KEY, event.id, event.timestamp.timestamp())
        await self._evict()

    async def _evict(self) -> None:
        excess = await self.store.zcard(TIMELINE_KEY) - self.settings.audit_max_events
        if excess <= 0:
            return
        oldest = await self.store.zrange(TIMELINE_KEY, 0, excess - 1)
        if oldest:
            await self.store.delete(*(self._event_key(event_id) for event_id in oldest))
        await self.store.zremrangebyrank(TIMELINE_KEY, 0, excess - 1)
        logger.debug("security_events_evicted", count=len(oldest))

    async def _load(self, event_id: str) -> Optional[SecurityEvent]:
        raw = await self.store.get(self._event_key(event_id))
        if raw is None:
            return None
        try:
            return SecurityEvent.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.error("security_event_unreadable", event_id=event_id, error=str(exc))
            return None

    async def _recent(self, since: datetime) -> List[SecurityEvent]:
        now = self._clock()
        ids = await self.store.zrevrangebyscore(
            TIMELINE_KEY, now.timestamp(), since.timestamp()
        )
        events = [await self._load(event_id) for event_id in ids]
        return [event for event in events if event is not None]

    async def _check_patterns(self, event: SecurityEvent) -> None:
        """Flag bursts of failures from one address or sessions for one user."""
        now = self._clock()
        try:
            if event.type == EventType.LOGIN_FAILURE and event.ip_address != "unknown":
                window = self.settings.suspicious_login_window_seconds
                recent = await self._recent(now - timedelta(seconds=window))
                failures = [
                    e
                    for e in recent
                    if e.type == EventType.LOGIN_FAILURE and e.ip_address == event.ip_address
                ]
                if len(failures) > self.settings.suspicious_login_failures:
                    await self.record(
                        EventType.SUSPICIOUS_ACTIVITY,
                        ip_address=event.ip_address,
                        details={
                            "pattern": "repeated_login_failures",
                            "count": len(failures),
                            "window_seconds": window,
                        },
                    )
            elif event.type == EventType.SESSION_CREATED and event.user_id:
                window = self.settings.suspicious_session_window_seconds
                recent = await self._recent(now - timedelta(seconds=window))
                created = [
                    e
                    for e in recent
                    if e.type == EventType.SESSION_CREATED and e.user_id == event.user_id
                ]
                if len(created) > self.settings.suspicious_session_creations:
                    await self.record(
                        EventType.SUSPICIOUS_ACTIVITY,
                        user_id=event.user_id,
                        ip_address=event.ip_address,
                        details={
                            "pattern": "rapid_session_creation",
                            "count": len(created),
                            "window_seconds": window,
                        },
                    )
        except StoreError as exc:
            logger.warning("security_pattern_check_failed", event_id=event.id, error=str(exc))

    async def query(self, event_filter: Optional[EventFilter] = None) -> List[SecurityEvent]:
        """Matching events, newest first, capped at ``limit``."""
        event_filter = event_filter or EventFilter()
        limit = event_filter.limit or self.settings.audit_default_query_limit
        if event_filter.start or event_filter.end:
            max_score = event_filter.end.timestamp() if event_filter.end else float("inf")
            min_score = event_filter.start.timestamp() if event_filter.start else float("-inf")
            ids = await self.store.zrevrangebyscore(TIMELINE_KEY, max_score, min_score)
        else:
            ids = await self.store.zrevrange(TIMELINE_KEY, 0, -1)

        results: List[SecurityEvent] = []
        for event_id in ids:
            event = await self._load(event_id)
            if event is None or not event_filter.matches(event):
                continue
            results.append(event)
            if len(results) >= limit:
                break
        results.sort(key=lambda e: e.timestamp, reverse=True)
        return results

    async def get(self, event_id: str) -> Optional[SecurityEvent]:
        """Load one event, raising ``IntegrityViolation`` if it was altered."""
        event = await self._load(event_id)
        if event is None:
            return None
        if not self.verify_integrity(event):
            logger.critical("security_event_tampered", event_id=event_id)
            raise IntegrityViolation(
                "security event failed integrity verification",
                detail={"event_id": event_id},
            )
        return event

    async def verify_all(self) -> List[str]:
        """Ids of every retained event whose hash no longer matches."""
        tampered: List[str] = []
        for event_id in await self.store.zrange(TIMELINE_KEY, 0, -1):
            event = await self._load(event_id)
            if event is None:
                continue
            if not self.verify_integrity(event):
                logger.critical("security_event_tampered", event_id=event_id)
                tampered.append(event_id)
        return tampered

    async def metrics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> SecurityMetrics:
        events = await self.query(
            EventFilter(start=start, end=end, limit=self.settings.audit_max_events)
        )
        by_type = Counter(e.type.value for e in events)
        by_severity = Counter(e.severity.value for e in events)
        by_ip = Counter(e.ip_address for e in events if e.ip_address != "unknown")
        return SecurityMetrics(
            total_events=len(events),
            events_by_type=dict(by_type),
            events_by_severity=dict(by_severity),
            top_ip_addresses=[
                {"ip_address": ip, "count": count} for ip, count in by_ip.most_common(10)
            ],
            failed_logins=by_type.get(EventType.LOGIN_FAILURE.value, 0),
            successful_logins=by_type.get(EventType.LOGIN_SUCCESS.value, 0),
            suspicious_activities=by_type.get(EventType.SUSPICIOUS_ACTIVITY.value, 0),
        )

    @staticmethod
    def _group(events: Iterable[SecurityEvent], event_type: EventType, attr: str):
        groups: Dict[str, List[SecurityEvent]] = defaultdict(list)
        for event in events:
            subject = getattr(event, attr)
            if event.type == event_type and subject and subject != "unknown":
                groups[subject].append(event)
        return groups

    @staticmethod
    def _anomaly(
        kind: str,
        severity: Severity,
        description: str,
        subject: str,
        events: List[SecurityEvent],
    ) -> Anomaly:
        ordered = sorted(events, key=lambda e: e.timestamp)
        return Anomaly(
            type=kind,
            severity=severity,
            description=description,
            subject=subject,
            event_count=len(events),
            first_seen=ordered[0].timestamp,
            last_seen=ordered[-1].timestamp,
            sample_event_ids=[e.id for e in ordered[-5:]],
        )

    async def detect_anomalies(self, window_seconds: Optional[int] = None) -> List[Anomaly]:
        """Run the brute-force, session-flood and privilege-escalation heuristics.

        Each anomaly found is also recorded as a ``SUSPICIOUS_ACTIVITY`` event.
        Only login failures, session creations and permission denials are
        counted, so recorded anomalies never feed back into detection.
        """
        settings = self.settings
        now = self._clock()
        window = window_seconds or settings.anomaly_window_seconds
        events = await self.query(
            EventFilter(
                start=now - timedelta(seconds=window),
                types=[
                    EventType.LOGIN_FAILURE,
                    EventType.SESSION_CREATED,
                    EventType.PERMISSION_DENIED,
                ],
                limit=settings.audit_max_events,
            )
        )
        anomalies: List[Anomaly] = []

        for ip, group in self._group(events, EventType.LOGIN_FAILURE, "ip_address").items():
            if len(group) > settings.anomaly_brute_force_threshold:
                anomalies.append(
                    self._anomaly(
                        "brute_force",
                        Severity.CRITICAL,
                        f"{len(group)} failed logins from {ip}",
                        ip,
                        group,
                    )
                )

        flood_start = now - timedelta(seconds=settings.anomaly_session_flood_window_seconds)
        recent_sessions = [e for e in events if e.timestamp >= flood_start]
        for user_id, group in self._group(
            recent_sessions, EventType.SESSION_CREATED, "user_id"
        ).items():
            if len(group) > settings.anomaly_session_flood_threshold:
                anomalies.append(
                    self._anomaly(
                        "session_flood",
                        Severity.WARNING,
                        f"{len(group)} sessions created for one user",
                        user_id,
                        group,
                    )
                )

        for user_id, group in self._group(
            events, EventType.PERMISSION_DENIED, "user_id"
        ).items():
            if len(group) > settings.anomaly_permission_denied_threshold:
                anomalies.append(
                    self._anomaly(
                        "privilege_escalation_attempt",
                        Severity.ERROR,
                        f"{len(group)} permission denials for one user",
                        user_id,
                        group,
                    )
                )

        for anomaly in anomalies:
            by_ip = anomaly.type == "brute_force"
            await self.record(
                EventType.SUSPICIOUS_ACTIVITY,
                user_id=None if by_ip else anomaly.subject,
                ip_address=anomaly.subject if by_ip else None,
                details={"anomaly": anomaly.to_dict()},
            )
        if anomalies:
            logger.warning("security_anomalies_detected", count=len(anomalies))
        return anomalies

    async def export(self, event_filter: Optional[EventFilter] = None, fmt: str = "json") -> str:
        events = await self.query(event_filter)
        if fmt == "json":
            return json.dumps([event.to_dict() for event in events], indent=2)
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for event in events:
                row = event.to_dict()
                row["details"] = canonical_json(row["details"])
                row["timestamp"] = to_iso(event.timestamp)
                writer.writerow({column: row.get(column) for column in EXPORT_COLUMNS})
            return buffer.getvalue()
        raise ValidationError(f"unsupported export format: {fmt}")
