from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Any, List, Optional

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.service.aliases import AliasResolver
from pulsegate.service.crypto import CryptoProvider, decrypt_json, encrypt_json
from pulsegate.service.errors import DecryptionError, DependencyUnavailable
from pulsegate.storage.common import Clock, seconds_until, utc_now
from pulsegate.storage.errors import StoreError
from pulsegate.storage.keyvalue import KeyValueStore
from pulsegate.storage.models import Session

logger = get_logger(__name__)

# Fields callers may change through update(); identity and timestamps are owned here
UPDATABLE_FIELDS = frozenset(
    {
        "linked_phone_number",
        "account_id",
        "auth_token",
        "verified",
        "profile_name",
        "metadata",
    }
)


class SessionStore:
    """Encrypted session records plus the hashed identity index.

    Store failures never escape as store exceptions: reads report the session
    as absent so callers fall back to re-authentication.
    """

    def __init__(
        self,
        store: KeyValueStore,
        crypto: CryptoProvider,
        settings: Settings,
        *,
        alias_resolver: Optional[AliasResolver] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.crypto = crypto
        self.settings = settings
        self.alias_resolver = alias_resolver
        self._clock = clock or utc_now

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:{session_id}"

    def _index_key(self, external_identity: str) -> str:
        return f"identity-index:{self.crypto.hash(external_identity)}"

    def _is_alias(self, identity: str) -> bool:
        suffix = self.settings.alias_suffix
        return bool(suffix) and identity.endswith(suffix)

    async def _persist(self, session: Session) -> None:
        ttl = seconds_until(session.expires_at, self._clock())
        await self.store.set(
            self._session_key(session.session_id),
            encrypt_json(self.crypto, session.to_dict()),
            ttl=ttl,
        )

    async def create(
        self,
        external_identity: str,
        linked_phone_number: str,
        account_id: Optional[str] = None,
    ) -> Session:
        now = self._clock()
        session = Session.new(
            secrets.token_hex(16),
            external_identity,
            linked_phone_number,
            now=now,
            ttl_seconds=self.settings.session_ttl_seconds,
            account_id=account_id,
        )
        try:
            await self._persist(session)
            await self.store.set(
                self._index_key(external_identity),
                session.session_id,
                ttl=self.settings.session_ttl_seconds,
            )
        except StoreError as exc:
            logger.error("session_create_failed", error=str(exc))
            raise DependencyUnavailable("session store unavailable") from exc
        logger.info("session_created", session_id=session.session_id, verified=session.verified)
        return session

    async def _load(self, session_id: str) -> Optional[Session]:
        key = self._session_key(session_id)
        try:
            raw = await self.store.get(key)
        except StoreError as exc:
            logger.warning("session_read_failed", session_id=session_id, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return Session.from_dict(decrypt_json(self.crypto, raw))
        except (DecryptionError, KeyError, TypeError, ValueError) as exc:
            logger.error("session_record_corrupt", session_id=session_id, error=str(exc))
            try:
                await self.store.delete(key)
            except StoreError:
                logger.warning("session_corrupt_cleanup_failed", session_id=session_id)
            return None

    async def get(self, session_id: str) -> Optional[Session]:
        """Return the session, evicting it when its expiry has passed."""
        if not session_id:
            return None
        session = await self._load(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            logger.info("session_expired", session_id=session_id)
            await self._remove(session)
            return None
        return session

    async def _lookup_index(self, external_identity: str) -> Optional[Session]:
        try:
            session_id = await self.store.get(self._index_key(external_identity))
        except StoreError as exc:
            logger.warning("session_index_read_failed", error=str(exc))
            return None
        if not session_id:
            return None
        return await self.get(session_id)

    async def get_by_external_identity(self, external_identity: str) -> Optional[Session]:
        session = await self._lookup_index(external_identity)
        if session is not None:
            return session
        if self.alias_resolver is None or not self._is_alias(external_identity):
            return None
        canonical = await self.alias_resolver.resolve(external_identity)
        # One alias hop only; the canonical identity is never resolved again
        if not canonical or canonical == external_identity:
            return None
        logger.debug("session_alias_resolved", identity=external_identity)
        return await self._lookup_index(canonical)

    async def update(self, session_id: str, **changes: Any) -> Optional[Session]:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        session = await self.get(session_id)
        if session is None:
            return None
        for name, value in changes.items():
            setattr(session, name, value)
        return await self._save(session)

    async def _save(self, session: Session) -> Optional[Session]:
        session.last_activity = self._clock()
        try:
            await self._persist(session)
        except StoreError as exc:
            logger.warning("session_update_failed", session_id=session.session_id, error=str(exc))
            return None
        return session

    async def set_second_factor_verified(self, session_id: str, verified: bool) -> Optional[Session]:
        session = await self.get(session_id)
        if session is None:
            return None
        session.mfa_verified = verified
        session.mfa_expires_at = (
            self._clock() + timedelta(seconds=self.settings.mfa_window_seconds)
            if verified
            else None
        )
        return await self._save(session)

    async def is_second_factor_valid(self, session_id: str) -> bool:
        session = await self.get(session_id)
        return session is not None and session.second_factor_valid(self._clock())

    async def set_consent(self, session_id: str, given: bool) -> Optional[Session]:
        session = await self.get(session_id)
        if session is None:
            return None
        session.consent_given = given
        session.consent_at = self._clock() if given else None
        return await self._save(session)

    async def is_valid(self, session_id: str) -> bool:
        return await self.get(session_id) is not None

    async def _remove(self, session: Session) -> bool:
        index_key = self._index_key(session.external_identity)
        try:
            removed = await self.store.delete(self._session_key(session.session_id))
            # The index may already point at a newer session for this identity
            if await self.store.get(index_key) == session.session_id:
                await self.store.delete(index_key)
        except StoreError as exc:
            logger.warning("session_delete_failed", session_id=session.session_id, error=str(exc))
            return False
        return removed > 0

    async def delete(self, session_id: str) -> bool:
        session = await self._load(session_id)
        if session is None:
            return False
        removed = await self._remove(session)
        if removed:
            logger.info("session_deleted", session_id=session_id)
        return removed

    async def list_sessions(self, *, linked_only: bool = False) -> List[Session]:
        """Every live session, newest activity first."""
        try:
            keys = await self.store.keys("session:*")
        except StoreError as exc:
            logger.warning("session_list_failed", error=str(exc))
            return []
        sessions: List[Session] = []
        for key in keys:
            session = await self.get(key.split(":", 1)[1])
            if session is None:
                continue
            if linked_only and not session.verified:
                continue
            sessions.append(session)
        sessions.sort(key=lambda s: s.last_activity, reverse=True)
        return sessions
