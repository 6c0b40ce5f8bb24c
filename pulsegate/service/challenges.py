from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Optional

from argon2 import PasswordHasher

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.service.crypto import (
    CryptoProvider,
    build_code_hasher,
    decrypt_json,
    encrypt_json,
    verify_code_hash,
)
from pulsegate.service.errors import DecryptionError, DependencyUnavailable
from pulsegate.storage.common import Clock, utc_now
from pulsegate.storage.errors import StoreError
from pulsegate.storage.keyvalue import KeyValueStore
from pulsegate.storage.models import Challenge

logger = get_logger(__name__)


class ChallengeService:
    """Single-use numeric one-time codes, one live challenge per session."""

    def __init__(
        self,
        store: KeyValueStore,
        crypto: CryptoProvider,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.crypto = crypto
        self.settings = settings
        self.hasher = hasher or build_code_hasher()
        self._clock = clock or utc_now

    @staticmethod
    def _key(session_id: str) -> str:
        return f"otp:{session_id}"

    def _generate_code(self) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(self.settings.otp_length))

    async def issue(self, subject_id: str, session_id: str) -> str:
        """Create a code for ``session_id``, replacing any live challenge.

        Only an argon2id hash of the code is stored; the plaintext is returned
        once for out-of-band delivery.
        """
        code = self._generate_code()
        now = self._clock()
        challenge = Challenge(
            session_id=session_id,
            code_hash=self.hasher.hash(code),
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
        )
        try:
            await self.store.set(
                self._key(session_id),
                encrypt_json(self.crypto, challenge.to_dict()),
                ttl=self.settings.otp_ttl_seconds,
            )
        except StoreError as exc:
            logger.error("otp_issue_failed", session_id=session_id, error=str(exc))
            raise DependencyUnavailable("could not issue verification code") from exc
        logger.info(
            "otp_issued",
            session_id=session_id,
            subject=self.crypto.hash(subject_id)[:12],
            code_length=len(code),
        )
        return code

    async def _load(self, session_id: str) -> Optional[Challenge]:
        key = self._key(session_id)
        try:
            raw = await self.store.get(key)
        except StoreError as exc:
            logger.warning("otp_read_failed", session_id=session_id, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return Challenge.from_dict(decrypt_json(self.crypto, raw))
        except (DecryptionError, KeyError, TypeError, ValueError) as exc:
            logger.error("otp_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def verify(self, session_id: str, code: str) -> bool:
        challenge = await self._load(session_id)
        if challenge is None:
            logger.info("otp_missing", session_id=session_id)
            return False
        if self._clock() >= challenge.expires_at:
            logger.info("otp_expired", session_id=session_id)
            return False
        if not verify_code_hash(self.hasher, challenge.code_hash, (code or "").strip()):
            logger.warning("otp_invalid", session_id=session_id)
            return False
        try:
            # A concurrent verifier that already consumed the record gets 0 here
            consumed = await self.store.delete(self._key(session_id)) == 1
        except StoreError as exc:
            logger.warning("otp_consume_failed", session_id=session_id, error=str(exc))
            return False
        if not consumed:
            logger.warning("otp_already_consumed", session_id=session_id)
            return False
        logger.info("otp_verified", session_id=session_id)
        return True

    async def has_pending(self, session_id: str) -> bool:
        return await self._load(session_id) is not None
