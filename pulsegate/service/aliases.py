from __future__ import annotations

import secrets
import string
from typing import Optional, Protocol

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.service.crypto import CryptoProvider, decrypt_json, encrypt_json
from pulsegate.service.errors import ChallengeInvalid, DecryptionError, DependencyUnavailable
from pulsegate.storage.errors import StoreError
from pulsegate.storage.keyvalue import KeyValueStore

logger = get_logger(__name__)

LINK_CODE_ALPHABET = string.ascii_uppercase + string.digits
LINK_CODE_LENGTH = 6


class AliasResolver(Protocol):
    """Lookup from a group-scoped alias identity to its canonical identity."""

    async def resolve(self, alias: str) -> Optional[str]: ...


class GroupAliasService:
    """Maps privacy-preserving group aliases to canonical chat identities.

    A user who is already linked in a direct chat asks for a short link code,
    then posts it from the group. Redeeming the code records
    ``alias-map:{alias} -> canonical identity`` for ``alias_ttl_seconds``.
    """

    def __init__(self, store: KeyValueStore, crypto: CryptoProvider, settings: Settings) -> None:
        self.store = store
        self.crypto = crypto
        self.settings = settings

    def is_alias(self, identity: str) -> bool:
        return bool(self.settings.alias_suffix) and identity.endswith(self.settings.alias_suffix)

    @staticmethod
    def _map_key(alias: str) -> str:
        return f"alias-map:{alias}"

    @staticmethod
    def _code_key(code: str) -> str:
        return f"alias-link-code:{code}"

    async def issue_link_code(self, canonical_identity: str) -> str:
        code = "".join(secrets.choice(LINK_CODE_ALPHABET) for _ in range(LINK_CODE_LENGTH))
        payload = encrypt_json(self.crypto, {"identity": canonical_identity})
        try:
            await self.store.set(
                self._code_key(code), payload, ttl=self.settings.alias_link_code_ttl_seconds
            )
        except StoreError as exc:
            raise DependencyUnavailable("could not issue link code") from exc
        logger.info("alias_link_code_issued", identity=canonical_identity)
        return code

    async def redeem_link_code(self, code: str, alias: str) -> str:
        """Consume ``code`` and map ``alias`` to the identity that issued it."""
        key = self._code_key(code.strip().upper())
        try:
            raw = await self.store.get(key)
            # Only the caller whose delete removes the code may redeem it
            if raw is None or await self.store.delete(key) != 1:
                raise ChallengeInvalid("invalid or expired code")
            canonical = decrypt_json(self.crypto, raw)["identity"]
            await self.store.set(
                self._map_key(alias),
                encrypt_json(self.crypto, {"identity": canonical}),
                ttl=self.settings.alias_ttl_seconds,
            )
        except StoreError as exc:
            raise DependencyUnavailable("could not redeem link code") from exc
        except (DecryptionError, KeyError) as exc:
            logger.error("alias_link_code_corrupt", error=str(exc))
            raise ChallengeInvalid("invalid or expired code") from exc
        logger.info("alias_linked", alias=alias, identity=canonical)
        return canonical

    async def resolve(self, alias: str) -> Optional[str]:
        key = self._map_key(alias)
        try:
            raw = await self.store.get(key)
            if raw is None:
                return None
            await self.store.expire(key, self.settings.alias_ttl_seconds)
        except StoreError as exc:
            logger.warning("alias_resolve_failed", alias=alias, error=str(exc))
            return None
        try:
            return decrypt_json(self.crypto, raw)["identity"]
        except (DecryptionError, KeyError, TypeError):
            logger.warning("alias_mapping_corrupt", alias=alias)
            return None

    async def unlink(self, alias: str) -> bool:
        try:
            return await self.store.delete(self._map_key(alias)) == 1
        except StoreError as exc:
            raise DependencyUnavailable("could not remove alias") from exc
