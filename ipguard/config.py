from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .engine import BlockPolicy, ConfigurationError

load_dotenv()


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _abuse_number(name: str, default: float, cast: type = float):
    """Abuse constants are parsed strictly: a typo must stop startup."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return cast(default)
    try:
        return cast(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    env: str
    secret_key: str
    jwt_algorithm: str
    jwt_exp_minutes: int
    cors_origins: list[str]
    log_level: str
    trust_forwarded_for: bool
    rate_limit_requests_per_min: int
    abuse_max_failed_attempts: int
    abuse_failure_window_seconds: float
    abuse_initial_block_seconds: float
    abuse_max_block_seconds: float
    abuse_reaper_interval_seconds: float
    abuse_store_shards: int
    audit_log_path: str
    enable_prometheus_metrics: bool
    host: str
    port: int

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in {"development", "dev", "test", "testing"}

    def block_policy(self) -> BlockPolicy:
        return BlockPolicy(
            max_failed_attempts=self.abuse_max_failed_attempts,
            failure_window=self.abuse_failure_window_seconds,
            initial_block=self.abuse_initial_block_seconds,
            max_block=self.abuse_max_block_seconds,
            reaper_interval=self.abuse_reaper_interval_seconds,
        )

    def validate(self) -> None:
        """Raise early on dangerous or nonsensical configuration."""
        if self.is_production and self.secret_key == _DEFAULT_SECRET_KEY:
            raise ConfigurationError(
                "SECRET_KEY must be explicitly set in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )
        if self.rate_limit_requests_per_min < 1:
            raise ConfigurationError("RATE_LIMIT_REQUESTS_PER_MIN must be at least 1")
        if self.abuse_store_shards < 1:
            raise ConfigurationError("ABUSE_STORE_SHARDS must be at least 1")
        # BlockPolicy checks its own constants on construction.
        self.block_policy()

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("ENV", "development"),
            secret_key=os.getenv("SECRET_KEY", _DEFAULT_SECRET_KEY),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            jwt_exp_minutes=_as_int(os.getenv("JWT_EXP_MINUTES"), 60 * 12),
            cors_origins=[
                origin.strip()
                for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
                if origin.strip()
            ],
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            trust_forwarded_for=_as_bool(os.getenv("TRUST_FORWARDED_FOR"), True),
            rate_limit_requests_per_min=_as_int(os.getenv("RATE_LIMIT_REQUESTS_PER_MIN"), 120),
            abuse_max_failed_attempts=_abuse_number("ABUSE_MAX_FAILED_ATTEMPTS", 10, int),
            abuse_failure_window_seconds=_abuse_number("ABUSE_FAILURE_WINDOW_SECONDS", 15 * 60),
            abuse_initial_block_seconds=_abuse_number("ABUSE_INITIAL_BLOCK_SECONDS", 15 * 60),
            abuse_max_block_seconds=_abuse_number("ABUSE_MAX_BLOCK_SECONDS", 24 * 60 * 60),
            abuse_reaper_interval_seconds=_abuse_number("ABUSE_REAPER_INTERVAL_SECONDS", 60 * 60),
            abuse_store_shards=_abuse_number("ABUSE_STORE_SHARDS", 16, int),
            audit_log_path=os.getenv("AUDIT_LOG_PATH", "").strip(),
            enable_prometheus_metrics=_as_bool(os.getenv("ENABLE_PROMETHEUS_METRICS"), True),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_as_int(os.getenv("PORT"), 8000),
        )


_DEFAULT_SECRET_KEY = "change-me-in-production-min-32-bytes-key"


settings = Settings.from_env()

settings.validate()
