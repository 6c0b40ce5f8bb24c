from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pulsegate.logging import get_logger
from pulsegate.service.errors import ConfigurationError

logger = get_logger(__name__)

MIN_ENCRYPTION_KEY_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the trust and session services."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and ephemeral secrets.",
    )

    # Secrets
    encryption_key: str | None = env_field(None, "ENCRYPTION_KEY")
    encryption_salt: str | None = env_field(None, "ENCRYPTION_SALT")
    hash_salt: str | None = env_field(None, "HASH_SALT")

    # Sessions
    session_ttl_seconds: int = env_field(
        24 * 60 * 60, "SESSION_EXPIRES_IN", description="Session lifetime in seconds"
    )
    mfa_window_seconds: int = env_field(
        5 * 60, "MFA_EXPIRES_IN", description="Second factor validity window in seconds"
    )
    alias_suffix: str = env_field(
        "@lid", "ALIAS_SUFFIX", description="Suffix marking group-scoped alias identities"
    )
    direct_chat_suffix: str = env_field(
        "@c.us",
        "DIRECT_CHAT_SUFFIX",
        description="Suffix that turns a phone number's digits into its direct chat identity",
    )
    alias_ttl_seconds: int = env_field(30 * 24 * 60 * 60, "ALIAS_TTL_SECONDS")
    alias_link_code_ttl_seconds: int = env_field(5 * 60, "ALIAS_LINK_CODE_TTL_SECONDS")

    # One-time codes
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(5 * 60, "OTP_EXPIRES_IN")

    # Second factor
    totp_issuer: str = env_field("Pulsegate", "TOTP_ISSUER")
    totp_valid_window: int = env_field(
        1, "TOTP_VALID_WINDOW", description="Accepted clock skew in 30s time steps"
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    trusted_device_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "TRUSTED_DEVICE_TTL_SECONDS"
    )

    # Audit log
    audit_max_events: int = env_field(100_000, "AUDIT_MAX_EVENTS")
    audit_event_ttl_seconds: int = env_field(90 * 24 * 60 * 60, "AUDIT_EVENT_TTL_SECONDS")
    audit_default_query_limit: int = env_field(1000, "AUDIT_DEFAULT_QUERY_LIMIT")
    suspicious_login_failures: int = env_field(5, "SUSPICIOUS_LOGIN_FAILURES")
    suspicious_login_window_seconds: int = env_field(5 * 60, "SUSPICIOUS_LOGIN_WINDOW_SECONDS")
    suspicious_session_creations: int = env_field(3, "SUSPICIOUS_SESSION_CREATIONS")
    suspicious_session_window_seconds: int = env_field(60, "SUSPICIOUS_SESSION_WINDOW_SECONDS")
    anomaly_window_seconds: int = env_field(60 * 60, "ANOMALY_WINDOW_SECONDS")
    anomaly_brute_force_threshold: int = env_field(10, "ANOMALY_BRUTE_FORCE_THRESHOLD")
    anomaly_session_flood_threshold: int = env_field(10, "ANOMALY_SESSION_FLOOD_THRESHOLD")
    anomaly_session_flood_window_seconds: int = env_field(
        5 * 60, "ANOMALY_SESSION_FLOOD_WINDOW_SECONDS"
    )
    anomaly_permission_denied_threshold: int = env_field(
        20, "ANOMALY_PERMISSION_DENIED_THRESHOLD"
    )

    # Rate limits
    rate_limit_max: int = env_field(20, "RATE_LIMIT_MAX")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_max: int = env_field(5, "AUTH_RATE_LIMIT_MAX")
    auth_rate_limit_window_seconds: int = env_field(5 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")

    # Circuit breakers
    breaker_failure_threshold: int = env_field(5, "BREAKER_FAILURE_THRESHOLD")
    breaker_reset_timeout_seconds: float = env_field(60.0, "BREAKER_RESET_TIMEOUT_SECONDS")
    breaker_call_timeout_seconds: float = env_field(10.0, "BREAKER_CALL_TIMEOUT_SECONDS")

    # Account service
    account_api_url: str | None = env_field(
        None, "ACCOUNT_API_URL", description="GraphQL endpoint of the account service"
    )
    account_api_token: str | None = env_field(None, "ACCOUNT_API_TOKEN")

    # Auth-state notifications
    notifier_channel: str = env_field("auth-events", "NOTIFIER_CHANNEL")
    notifier_max_attempts: int = env_field(5, "NOTIFIER_MAX_ATTEMPTS")
    notifier_backoff_base_seconds: float = env_field(0.5, "NOTIFIER_BACKOFF_BASE_SECONDS")

    # Roles
    default_role: str = env_field("user", "DEFAULT_ROLE")
    admin_phone_numbers: str = env_field(
        "", "ADMIN_PHONE_NUMBERS", description="Comma separated phone numbers granted admin"
    )
    custom_roles: str | None = env_field(
        None, "CUSTOM_ROLES", description="JSON object of additional role definitions"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_ttl_seconds",
        "mfa_window_seconds",
        "otp_ttl_seconds",
        "trusted_device_ttl_seconds",
        "audit_max_events",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("OTP_LENGTH must be between 4 and 10")
        return value

    @property
    def admin_phones(self) -> set[str]:
        return {
            "+" + number.strip().lstrip("+")
            for number in self.admin_phone_numbers.split(",")
            if number.strip()
        }

    def validate_secrets(self) -> None:
        """Ensure encryption and hashing secrets are present.

        Outside TEST_MODE a missing or short secret is fatal. In TEST_MODE
        ephemeral values are generated so local runs work without a .env.
        """
        missing = [
            name
            for name in ("encryption_key", "encryption_salt", "hash_salt")
            if not getattr(self, name)
        ]
        if missing and not self.test_mode:
            raise ConfigurationError(
                "required secrets are not configured",
                detail={"missing": [name.upper() for name in missing]},
            )
        for name in missing:
            logger.warning("ephemeral_secret_generated", setting=name.upper())
            setattr(self, name, secrets.token_urlsafe(48))
        if len(self.encryption_key or "") < MIN_ENCRYPTION_KEY_LENGTH:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters"
            )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
