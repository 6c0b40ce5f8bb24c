from __future__ import annotations

import base64
import io
import json
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import pyotp
import qrcode
from qrcode.image.svg import SvgPathImage

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.service.crypto import CryptoProvider
from pulsegate.service.errors import (
    ChallengeInvalid,
    DecryptionError,
    DependencyUnavailable,
    NotFoundError,
    ValidationError,
)
from pulsegate.storage.common import Clock, to_iso, utc_now
from pulsegate.storage.errors import StoreError
from pulsegate.storage.keyvalue import KeyValueStore
from pulsegate.storage.models import EventType, SecondFactorSecret, TrustedDevice

if TYPE_CHECKING:
    from pulsegate.service.audit import SecurityAuditLog

logger = get_logger(__name__)


@dataclass
class SecondFactorSetup:
    secret: str
    provisioning_uri: str
    qr_payload: str
    backup_codes: List[str]


def _render_qr_svg(uri: str) -> str:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(image_factory=SvgPathImage)
    stream = io.BytesIO()
    img.save(stream)
    return "data:image/svg+xml;base64," + base64.b64encode(stream.getvalue()).decode("ascii")


def generate_backup_code() -> str:
    raw = secrets.token_hex(4).upper()
    return f"{raw[:4]}-{raw[4:]}"


def normalize_backup_code(code: str) -> str:
    compact = "".join(code.split()).replace("-", "").upper()
    if len(compact) == 8:
        return f"{compact[:4]}-{compact[4:]}"
    return compact


class SecondFactorService:
    """TOTP second factor with one-time backup codes and trusted devices.

    Backup codes are stored as keyed hashes in a set so that consuming one is
    a single set-remove: of two concurrent verifications with the same code,
    exactly one removes it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        crypto: CryptoProvider,
        settings: Settings,
        *,
        audit: Optional["SecurityAuditLog"] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.crypto = crypto
        self.settings = settings
        self.audit = audit
        self._clock = clock or utc_now

    @staticmethod
    def _secret_key(user_id: str) -> str:
        return f"2fa-secret:{user_id}"

    @staticmethod
    def _backup_key(user_id: str) -> str:
        return f"2fa-backup:{user_id}"

    @staticmethod
    def _usage_key(user_id: str) -> str:
        return f"2fa-usage:{user_id}"

    @staticmethod
    def _last_used_key(user_id: str) -> str:
        return f"2fa-last-used:{user_id}"

    @staticmethod
    def _device_key(user_id: str, device_id: str) -> str:
        return f"2fa-device:{user_id}:{device_id}"

    @staticmethod
    def _device_index_key(user_id: str) -> str:
        return f"2fa-devices:{user_id}"

    def _hash_backup_code(self, user_id: str, code: str) -> str:
        return self.crypto.hash(f"{user_id}:{normalize_backup_code(code)}")

    async def _record(self, event_type: EventType, user_id: str, **details) -> None:
        if self.audit is not None:
            await self.audit.record(event_type, user_id=user_id, details=details)

    async def _load(self, user_id: str) -> Optional[SecondFactorSecret]:
        try:
            raw = await self.store.get(self._secret_key(user_id))
        except StoreError as exc:
            logger.warning("totp_secret_read_failed", user_id=user_id, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return SecondFactorSecret.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.error("totp_secret_corrupt", user_id=user_id, error=str(exc))
            return None

    async def _save(self, record: SecondFactorSecret) -> None:
        await self.store.set(self._secret_key(record.user_id), json.dumps(record.to_dict()))

    async def _replace_backup_codes(self, user_id: str) -> List[str]:
        codes = [generate_backup_code() for _ in range(self.settings.backup_code_count)]
        await self.store.delete(self._backup_key(user_id))
        await self.store.sadd(
            self._backup_key(user_id), *(self._hash_backup_code(user_id, c) for c in codes)
        )
        return codes

    async def setup(self, user_id: str, label: str) -> SecondFactorSetup:
        existing = await self._load(user_id)
        if existing is not None and existing.enabled:
            raise ValidationError("second factor is already enabled")
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=self.settings.totp_issuer)
        record = SecondFactorSecret(
            user_id=user_id,
            encrypted_secret=self.crypto.encrypt(secret),
            created_at=self._clock(),
        )
        try:
            await self._save(record)
            codes = await self._replace_backup_codes(user_id)
        except StoreError as exc:
            raise DependencyUnavailable("could not store second factor") from exc
        logger.info("totp_setup", user_id=user_id, backup_codes=len(codes))
        await self._record(EventType.TOTP_SETUP, user_id)
        return SecondFactorSetup(
            secret=secret,
            provisioning_uri=uri,
            qr_payload=_render_qr_svg(uri),
            backup_codes=codes,
        )

    async def _consume_backup_code(self, user_id: str, code: str) -> bool:
        try:
            return await self.store.srem(
                self._backup_key(user_id), self._hash_backup_code(user_id, code)
            ) == 1
        except StoreError as exc:
            logger.warning("backup_code_check_failed", user_id=user_id, error=str(exc))
            return False

    def _verify_totp(self, record: SecondFactorSecret, code: str) -> bool:
        try:
            secret = self.crypto.decrypt(record.encrypted_secret)
        except DecryptionError as exc:
            logger.error("totp_secret_decrypt_failed", user_id=record.user_id, error=str(exc))
            return False
        return pyotp.TOTP(secret).verify(
            code, for_time=self._clock(), valid_window=self.settings.totp_valid_window
        )

    async def verify(self, user_id: str, code: str) -> bool:
        record = await self._load(user_id)
        code = (code or "").strip()
        if record is None or not code:
            return False
        if await self._consume_backup_code(user_id, code):
            remaining = await self.remaining_backup_codes(user_id)
            logger.info("backup_code_used", user_id=user_id, remaining=remaining)
            await self._record_usage(user_id)
            await self._record(EventType.TOTP_VERIFIED, user_id, method="backup_code")
            return True
        if code.isdigit() and self._verify_totp(record, code):
            await self._record_usage(user_id)
            await self._record(EventType.TOTP_VERIFIED, user_id, method="totp")
            return True
        logger.warning("totp_verification_failed", user_id=user_id)
        await self._record(EventType.TOTP_FAILED, user_id)
        return False

    async def _record_usage(self, user_id: str) -> None:
        try:
            await self.store.incr(self._usage_key(user_id))
            await self.store.set(self._last_used_key(user_id), to_iso(self._clock()))
        except StoreError as exc:
            logger.warning("totp_usage_record_failed", user_id=user_id, error=str(exc))

    async def usage(self, user_id: str) -> dict:
        try:
            count = await self.store.get(self._usage_key(user_id))
            last_used = await self.store.get(self._last_used_key(user_id))
        except StoreError as exc:
            raise DependencyUnavailable("second factor store unavailable") from exc
        return {"use_count": int(count or 0), "last_used_at": last_used}

    async def remaining_backup_codes(self, user_id: str) -> int:
        try:
            return len(await self.store.smembers(self._backup_key(user_id)))
        except StoreError:
            return 0

    async def is_enabled(self, user_id: str) -> bool:
        record = await self._load(user_id)
        return record is not None and record.enabled

    async def _require_verified(self, user_id: str, code: str) -> SecondFactorSecret:
        record = await self._load(user_id)
        if record is None:
            raise NotFoundError("second factor is not set up")
        if not await self.verify(user_id, code):
            raise ChallengeInvalid("invalid or expired code")
        return record

    async def enable(self, user_id: str, code: str) -> None:
        record = await self._require_verified(user_id, code)
        record.enabled = True
        record.enabled_at = self._clock()
        try:
            await self._save(record)
        except StoreError as exc:
            raise DependencyUnavailable("could not enable second factor") from exc
        logger.info("totp_enabled", user_id=user_id)

    async def disable(self, user_id: str, code: str) -> None:
        await self._require_verified(user_id, code)
        try:
            devices = [
                self._device_key(user_id, device_id)
                for device_id in await self.store.smembers(self._device_index_key(user_id))
            ]
            await self.store.delete(
                self._secret_key(user_id),
                self._backup_key(user_id),
                self._usage_key(user_id),
                self._last_used_key(user_id),
                self._device_index_key(user_id),
                *devices,
            )
        except StoreError as exc:
            raise DependencyUnavailable("could not disable second factor") from exc
        logger.info("totp_disabled", user_id=user_id, devices_revoked=len(devices))

    async def regenerate_backup_codes(self, user_id: str, code: str) -> List[str]:
        await self._require_verified(user_id, code)
        try:
            codes = await self._replace_backup_codes(user_id)
        except StoreError as exc:
            raise DependencyUnavailable("could not regenerate backup codes") from exc
        logger.info("backup_codes_regenerated", user_id=user_id)
        return codes

    async def register_trusted_device(
        self, user_id: str, device_id: str, name: str
    ) -> TrustedDevice:
        now = self._clock()
        device = TrustedDevice(
            user_id=user_id,
            device_id=device_id,
            name=name or "Unknown device",
            last_used=now,
            created_at=now,
        )
        try:
            await self.store.set(
                self._device_key(user_id, device_id),
                json.dumps(device.to_dict()),
                ttl=self.settings.trusted_device_ttl_seconds,
            )
            index = self._device_index_key(user_id)
            await self.store.sadd(index, device_id)
            await self.store.expire(index, self.settings.trusted_device_ttl_seconds)
        except StoreError as exc:
            raise DependencyUnavailable("could not trust device") from exc
        logger.info("trusted_device_registered", user_id=user_id, device_id=device_id)
        return device

    async def _load_device(self, key: str) -> Optional[TrustedDevice]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return TrustedDevice.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("trusted_device_corrupt", key=key)
            return None

    async def is_device_trusted(self, user_id: str, device_id: str) -> bool:
        """Check trust and stamp ``last_used`` without extending the trust period."""
        key = self._device_key(user_id, device_id)
        try:
            device = await self._load_device(key)
            if device is None or not device.trusted:
                return False
            device.last_used = self._clock()
            remaining = await self.store.ttl(key)
            if remaining > 0:
                await self.store.set(key, json.dumps(device.to_dict()), ttl=remaining)
        except StoreError as exc:
            logger.warning("trusted_device_check_failed", user_id=user_id, error=str(exc))
            return False
        return True

    async def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        try:
            index = self._device_index_key(user_id)
            device_ids = sorted(await self.store.smembers(index))
            devices = [
                await self._load_device(self._device_key(user_id, device_id))
                for device_id in device_ids
            ]
            expired = [i for i, d in zip(device_ids, devices) if d is None]
            if expired:
                await self.store.srem(index, *expired)
        except StoreError as exc:
            raise DependencyUnavailable("could not list trusted devices") from exc
        found = [device for device in devices if device is not None]
        found.sort(key=lambda d: d.last_used, reverse=True)
        return found

    async def revoke_trusted_device(self, user_id: str, device_id: str) -> bool:
        try:
            removed = await self.store.delete(self._device_key(user_id, device_id))
            await self.store.srem(self._device_index_key(user_id), device_id)
        except StoreError as exc:
            raise DependencyUnavailable("could not revoke device") from exc
        if removed:
            logger.info("trusted_device_revoked", user_id=user_id, device_id=device_id)
        return removed == 1
