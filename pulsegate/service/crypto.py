from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from typing import Any, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from pulsegate.service.errors import ConfigurationError, DecryptionError

PBKDF2_ITERATIONS = 100_000
NONCE_BYTES = 12


class CryptoProvider(Protocol):
    def hash(self, value: str) -> str: ...

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class AesGcmCrypto:
    """AES-256-GCM at-rest encryption plus an HMAC-SHA256 keyed hash.

    The data key is derived once with PBKDF2 from ``encryption_key`` and
    ``salt``. Ciphertexts are ``base64(nonce || ciphertext || tag)``.
    """

    def __init__(self, encryption_key: str, salt: str, hash_salt: str) -> None:
        if not encryption_key or len(encryption_key) < 32:
            raise ConfigurationError("ENCRYPTION_KEY must be at least 32 characters")
        if not salt or not hash_salt:
            raise ConfigurationError("ENCRYPTION_SALT and HASH_SALT must be set")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=PBKDF2_ITERATIONS,
        )
        self._aead = AESGCM(kdf.derive(encryption_key.encode()))
        self._hash_key = hash_salt.encode()

    def hash(self, value: str) -> str:
        """Deterministic keyed hash used to pseudonymize identifiers."""
        return hmac.new(self._hash_key, value.encode(), hashlib.sha256).hexdigest()

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode(), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)
        except (ValueError, UnicodeEncodeError) as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        if len(raw) <= NONCE_BYTES:
            raise DecryptionError("ciphertext is truncated")
        try:
            plain = self._aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
        except InvalidTag as exc:
            raise DecryptionError("ciphertext failed authentication") from exc
        return plain.decode()


def encrypt_json(crypto: CryptoProvider, payload: Any) -> str:
    return crypto.encrypt(json.dumps(payload))


def decrypt_json(crypto: CryptoProvider, ciphertext: str) -> Any:
    try:
        return json.loads(crypto.decrypt(ciphertext))
    except json.JSONDecodeError as exc:
        raise DecryptionError("decrypted payload is not JSON") from exc


def build_code_hasher(*, fast: bool = False) -> PasswordHasher:
    """argon2id hasher for short-lived codes; ``fast`` lowers the cost for tests."""
    if fast:
        return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    return PasswordHasher(type=Type.ID)


def verify_code_hash(hasher: PasswordHasher, code_hash: str, code: str) -> bool:
    try:
        return hasher.verify(code_hash, code)
    except (InvalidHash, VerificationError):
        return False


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())
