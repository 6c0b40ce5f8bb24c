from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from pulsegate.api.schemas import (
    AliasRedeemRequest,
    AnomalyScanRequest,
    CodeRequest,
    ConsentRequest,
    Envelope,
    ExportFormat,
    LinkRequest,
    LinkResponse,
    RoleAssignmentRequest,
    SecondFactorSetupRequest,
    SecondFactorSetupResponse,
    SecondFactorVerifyRequest,
    SessionView,
    TrustDeviceRequest,
    TrustedDeviceView,
)
from pulsegate.logging import get_correlation_id, get_logger
from pulsegate.service.audit import EventFilter
from pulsegate.service.errors import (
    ChallengeInvalid,
    NotFoundError,
    SecondFactorRequired,
    Unauthenticated,
    Unauthorized,
    ValidationError,
)
from pulsegate.service.guard import AuthorizationDecision, RequestContext, with_authorization
from pulsegate.service.runtime import get_runtime
from pulsegate.storage.models import EventType, Session, Severity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any = None) -> Envelope:
    correlation_id = get_correlation_id()
    if correlation_id:
        return Envelope(status="ok", data=data, request_id=correlation_id)
    return Envelope(status="ok", data=data)


def request_context(
    request: Request,
    user_agent: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
        device_id=x_device_id,
    )


def bearer_session_id(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def session_id_required(session_id: Optional[str] = Depends(bearer_session_id)) -> str:
    if not session_id:
        raise Unauthenticated("missing session")
    return session_id


def require(operation: str):
    """Dependency factory running the authorization guard for ``operation``."""

    async def dependency(
        response: Response,
        session_id: Optional[str] = Depends(bearer_session_id),
        context: RequestContext = Depends(request_context),
    ) -> AuthorizationDecision:
        decision = await get_runtime().guard.enforce(session_id, operation, context)
        if decision.rate_limit is not None:
            for header, value in decision.rate_limit.headers().items():
                response.headers[header] = value
        return decision

    dependency.__name__ = f"require_{operation.replace('.', '_')}"
    return dependency


def _linked_account(session: Optional[Session]) -> str:
    if session is None or not session.verified or not session.account_id:
        raise Unauthenticated("link an account first")
    return session.account_id


# Account linking


@router.post("/auth/link", response_model=Envelope, tags=["auth"])
async def link_account(body: LinkRequest, context: RequestContext = Depends(request_context)):
    runtime = get_runtime()
    result = await runtime.linking.initiate(body.external_identity, body.phone_number, context)
    return _ok(
        LinkResponse(
            session_id=result.session_id,
            code_sent=result.code_sent,
            already_linked=result.already_linked,
        )
    )


@router.post("/auth/link/verify", response_model=Envelope, tags=["auth"])
async def verify_link(
    body: CodeRequest,
    session_id: str = Depends(session_id_required),
    context: RequestContext = Depends(request_context),
):
    session = await get_runtime().linking.verify(session_id, body.code, context)
    return _ok(SessionView.from_session(session))


@router.post("/auth/mfa/request", response_model=Envelope, tags=["auth"])
async def request_mfa(
    session_id: str = Depends(session_id_required),
    context: RequestContext = Depends(request_context),
):
    method = await get_runtime().linking.request_second_factor(session_id, context)
    return _ok({"method": method})


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(
    body: SecondFactorVerifyRequest,
    session_id: str = Depends(session_id_required),
    context: RequestContext = Depends(request_context),
):
    session = await get_runtime().linking.verify_second_factor(
        session_id,
        body.code,
        context,
        trust_device=body.trust_device,
        device_name=body.device_name,
    )
    return _ok(SessionView.from_session(session))


@router.post("/auth/consent", response_model=Envelope, tags=["auth"])
async def record_consent(
    body: ConsentRequest,
    session_id: str = Depends(session_id_required),
    context: RequestContext = Depends(request_context),
):
    session = await get_runtime().linking.record_consent(session_id, body.given, context)
    return _ok(SessionView.from_session(session))


@router.post("/auth/unlink", response_model=Envelope, tags=["auth"])
async def unlink_account(
    session_id: str = Depends(session_id_required),
    context: RequestContext = Depends(request_context),
):
    removed = await get_runtime().linking.unlink(session_id, context)
    return _ok({"unlinked": removed})


# Group aliases


@router.post("/auth/alias/code", response_model=Envelope, tags=["auth"])
async def issue_alias_code(
    context: RequestContext = Depends(request_context),
    decision: AuthorizationDecision = Depends(require("alias.manage")),
):
    runtime = get_runtime()
    code = await runtime.linking.issue_alias_code(decision.session.session_id, context)
    return _ok(
        {"code": code, "expires_in": runtime.settings.alias_link_code_ttl_seconds}
    )


@router.post("/auth/alias/redeem", response_model=Envelope, tags=["auth"])
async def redeem_alias_code(
    body: AliasRedeemRequest, context: RequestContext = Depends(request_context)
):
    session = await get_runtime().linking.redeem_alias_code(body.alias, body.code, context)
    return _ok(SessionView.from_session(session))


@router.delete("/auth/alias/{alias}", response_model=Envelope, tags=["auth"])
async def unlink_alias(
    alias: str = Path(..., min_length=1, max_length=256),
    context: RequestContext = Depends(request_context),
    decision: AuthorizationDecision = Depends(require("alias.manage")),
):
    removed = await get_runtime().linking.unlink_alias(
        decision.session.session_id, alias, context
    )
    if not removed:
        raise NotFoundError("alias not found")
    return _ok({"unlinked": alias})


# Authenticator app


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def second_factor_status(
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    service = get_runtime().second_factor
    return _ok(
        {
            "enabled": await service.is_enabled(account_id),
            "remaining_backup_codes": await service.remaining_backup_codes(account_id),
            **await service.usage(account_id),
        }
    )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_second_factor(
    body: SecondFactorSetupRequest,
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    label = body.label or decision.session.linked_phone_number
    setup = await get_runtime().second_factor.setup(account_id, label)
    return _ok(
        SecondFactorSetupResponse(
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            qr_payload=setup.qr_payload,
            backup_codes=setup.backup_codes,
        )
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_second_factor(
    body: CodeRequest,
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    runtime = get_runtime()
    await runtime.second_factor.enable(account_id, body.code)
    await runtime.sessions.set_second_factor_verified(decision.session.session_id, True)
    return _ok({"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_second_factor(
    body: CodeRequest,
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    await get_runtime().second_factor.disable(account_id, body.code)
    return _ok({"enabled": False})


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_second_factor(
    body: CodeRequest,
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    runtime = get_runtime()
    if not await runtime.second_factor.verify(account_id, body.code):
        raise ChallengeInvalid("invalid or expired code")
    await runtime.sessions.set_second_factor_verified(decision.session.session_id, True)
    return _ok(
        {
            "verified": True,
            "remaining_backup_codes": await runtime.second_factor.remaining_backup_codes(
                account_id
            ),
        }
    )


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    body: CodeRequest,
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    codes = await get_runtime().second_factor.regenerate_backup_codes(account_id, body.code)
    return _ok({"backup_codes": codes})


# Trusted devices


@router.post("/auth/devices/trust", response_model=Envelope, tags=["devices"])
async def trust_device(
    body: TrustDeviceRequest,
    context: RequestContext = Depends(request_context),
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    runtime = get_runtime()
    if not await runtime.sessions.is_second_factor_valid(decision.session.session_id):
        raise SecondFactorRequired("second factor verification required")
    analyzer = runtime.fingerprints
    fingerprint = analyzer.validate(body.fingerprint)
    reasons = analyzer.suspicious_reasons(fingerprint)
    if reasons:
        await runtime.audit.record(
            EventType.SUSPICIOUS_ACTIVITY,
            user_id=account_id,
            session_id=decision.session.session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={"fingerprint": analyzer.anonymize(fingerprint), "reasons": reasons},
        )
        raise ValidationError("device cannot be trusted", detail={"reasons": reasons})
    device = await runtime.second_factor.register_trusted_device(
        account_id,
        analyzer.derive_id(fingerprint),
        body.name or analyzer.device_name(fingerprint),
    )
    return _ok(TrustedDeviceView.from_device(device))


@router.get("/auth/devices", response_model=Envelope, tags=["devices"])
async def list_devices(
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    devices = await get_runtime().second_factor.list_trusted_devices(account_id)
    return _ok([TrustedDeviceView.from_device(device) for device in devices])


@router.delete("/auth/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def revoke_device(
    device_id: str = Path(..., min_length=1, max_length=128),
    decision: AuthorizationDecision = Depends(require("second_factor.manage")),
):
    account_id = _linked_account(decision.session)
    if not await get_runtime().second_factor.revoke_trusted_device(account_id, device_id):
        raise NotFoundError("device not found")
    return _ok({"revoked": device_id})


# Security administration


@router.get("/admin/security/events", response_model=Envelope, tags=["admin"])
async def list_security_events(
    types: Optional[List[EventType]] = Query(None, alias="type"),
    severities: Optional[List[Severity]] = Query(None, alias="severity"),
    user_id: Optional[str] = Query(None, max_length=256),
    session_id: Optional[str] = Query(None, max_length=128),
    ip_address: Optional[str] = Query(None, max_length=64),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=10_000),
    _: AuthorizationDecision = Depends(require("audit.view")),
):
    events = await get_runtime().audit.query(
        EventFilter(
            types=types,
            severities=severities,
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            start=start,
            end=end,
            limit=limit,
        )
    )
    return _ok([event.to_dict() for event in events])


@router.get("/admin/security/events/{event_id}", response_model=Envelope, tags=["admin"])
async def get_security_event(
    event_id: str = Path(..., min_length=1, max_length=64),
    _: AuthorizationDecision = Depends(require("audit.view")),
):
    event = await get_runtime().audit.get(event_id)
    if event is None:
        raise NotFoundError("event not found")
    return _ok(event.to_dict())


@router.get("/admin/security/metrics", response_model=Envelope, tags=["admin"])
async def security_metrics(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    _: AuthorizationDecision = Depends(require("audit.view")),
):
    metrics = await get_runtime().audit.metrics(start, end)
    return _ok(metrics.to_dict())


@router.post("/admin/security/anomalies", response_model=Envelope, tags=["admin"])
async def scan_anomalies(
    body: AnomalyScanRequest,
    _: AuthorizationDecision = Depends(require("audit.analyze")),
):
    anomalies = await get_runtime().audit.detect_anomalies(body.window_seconds)
    return _ok([anomaly.to_dict() for anomaly in anomalies])


@router.get("/admin/security/export", tags=["admin"])
async def export_security_events(
    fmt: ExportFormat = Query("json", alias="format"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=100_000),
    decision: AuthorizationDecision = Depends(require("audit.export")),
):
    runtime = get_runtime()
    body = await runtime.audit.export(EventFilter(start=start, end=end, limit=limit), fmt)
    await runtime.audit.record(
        EventType.BULK_OPERATION,
        user_id=decision.session.account_id,
        session_id=decision.session.session_id,
        details={"operation": "audit.export", "format": fmt},
    )
    media_type = "text/csv" if fmt == "csv" else "application/json"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="security-events.{fmt}"'},
    )


@router.get("/admin/sessions", response_model=Envelope, tags=["admin"])
async def list_sessions(
    linked_only: bool = Query(False),
    _: AuthorizationDecision = Depends(require("session.view")),
):
    sessions = await get_runtime().sessions.list_sessions(linked_only=linked_only)
    return _ok([SessionView.from_session(session) for session in sessions])


@router.delete("/admin/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def revoke_session(
    session_id: str = Path(..., min_length=1, max_length=128),
    context: RequestContext = Depends(request_context),
    decision: AuthorizationDecision = Depends(require("session.delete")),
):
    runtime = get_runtime()
    if not await runtime.sessions.delete(session_id):
        raise NotFoundError("session not found")
    await runtime.audit.record(
        EventType.SESSION_REVOKED,
        user_id=decision.session.account_id,
        session_id=session_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        details={"initiator": "admin", "admin_session_id": decision.session.session_id},
    )
    logger.info("session_revoked_by_admin", session_id=session_id)
    return _ok({"revoked": session_id})


async def _assign_role(actor: Session, target_id: str, role: str, context: RequestContext) -> Session:
    runtime = get_runtime()
    if role not in {definition.name for definition in runtime.rbac.roles()}:
        raise ValidationError(f"unknown role {role!r}")
    target = await runtime.sessions.get(target_id)
    if target is None:
        raise NotFoundError("session not found")
    actor_role = runtime.guard.role_for(actor)
    previous = runtime.guard.role_for(target)
    # Nobody grants or takes away a role ranked above their own
    if not (
        runtime.rbac.is_at_least(actor_role, role)
        and runtime.rbac.is_at_least(actor_role, previous)
    ):
        raise Unauthorized("cannot assign a role above your own")
    updated = await runtime.sessions.update(target_id, metadata={**target.metadata, "role": role})
    if updated is None:
        raise NotFoundError("session not found")
    await runtime.audit.record(
        EventType.CONFIGURATION_CHANGE,
        user_id=actor.account_id,
        session_id=target_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        details={"action": "role_assigned", "from": previous, "to": role},
    )
    return updated


@router.put("/admin/sessions/{session_id}/role", response_model=Envelope, tags=["admin"])
async def assign_session_role(
    body: RoleAssignmentRequest,
    session_id: str = Path(..., min_length=1, max_length=128),
    actor_session_id: Optional[str] = Depends(bearer_session_id),
    context: RequestContext = Depends(request_context),
):
    assign = with_authorization(get_runtime().guard, "user.edit", _assign_role)
    session = await assign(actor_session_id, session_id, body.role, context, context=context)
    return _ok(SessionView.from_session(session))


@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def list_roles(_: AuthorizationDecision = Depends(require("user.view"))):
    rbac = get_runtime().rbac
    return _ok(
        {
            "roles": [
                {
                    "name": role.name,
                    "rank": role.rank,
                    "description": role.description,
                    "inherits": role.inherits,
                }
                for role in rbac.roles()
            ],
            "matrix": rbac.permission_matrix(),
        }
    )
