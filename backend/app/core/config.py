"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Two layers:
    Settings      — raw environment-backed values (strings, dicts, lists)
    TriageConfig  — frozen, validated struct handed to the triage engines

Engines never read ``settings`` directly; they receive a TriageConfig so
tests (and alternative deployments) can construct their own.

Usage:
    from backend.app.core.config import settings, TriageConfig
    config = TriageConfig.from_settings(settings)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Dict, FrozenSet, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


KNOWN_CHANNELS = ("email", "sms", "push")
KNOWN_PRIORITIES = ("low", "medium", "high", "critical")

# Development defaults only; deployments are expected to override.
DEFAULT_ESCALATION_THRESHOLDS_MINUTES: Dict[str, float] = {
    "critical": 10.0,
    "high": 20.0,
    "medium": 30.0,
    "low": 60.0,
}


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "SOS Triage Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL
    LOG_FORMAT: str = "auto"  # auto | json | pretty (auto: json in production)
    # Request paths logged at DEBUG only (polled by load balancers and docs UI)
    QUIET_LOG_PATHS: List[str] = ["/health/live", "/health/ready", "/docs", "/redoc", "/openapi.json"]

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    RELOAD: bool = True  # auto-reload on file changes (dev only)

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Escalation ──
    # Minutes a signal may wait per escalation step, keyed by priority.
    ESCALATION_THRESHOLDS_MINUTES: Dict[str, float] = dict(DEFAULT_ESCALATION_THRESHOLDS_MINUTES)
    MAX_ESCALATION_LEVEL: int = 2
    ESCALATION_SWEEP_ENABLED: bool = True
    ESCALATION_SWEEP_INTERVAL_SECONDS: float = 60.0
    ESCALATION_MAX_RETRIES: int = 3  # CAS retries per signal per pass
    ESCALATION_UPGRADES_PRIORITY: bool = True
    ESCALATION_REGION_RADIUS_KM: float = 25.0

    # ── Clustering ──
    CLUSTER_RADIUS_KM: float = 2.0

    # ── Notifications ──
    ENABLED_CHANNELS: List[str] = ["email", "sms", "push"]
    CHANNEL_TIMEOUT_SECONDS: float = 5.0
    CHANNEL_RETRIES: int = 1  # extra tries after a retryable failure
    CHANNEL_RETRY_BACKOFF_SECONDS: float = 0.5  # × try number
    CHANNEL_WORKERS: int = 8
    NOTIFICATION_INBOX_LIMIT: int = 50

    # ── Responder directory ──
    # JSON list of responder rows loaded at startup (see sos/responders.py)
    RESPONDER_DIRECTORY_FILE: Optional[str] = None

    # ── Channel providers ──
    SMS_PROVIDER: str = "simulation"  # simulation | http
    SMS_GATEWAY_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None
    EMAIL_PROVIDER: str = "simulation"  # simulation | smtp
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    EMAIL_FROM_ADDRESS: str = "sos-alerts@disaster-response.local"
    PUSH_PROVIDER: str = "simulation"  # simulation | http
    PUSH_GATEWAY_URL: Optional[str] = None
    PUSH_SERVER_KEY: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@dataclass(frozen=True)
class ChannelProviderConfig:
    """Provider settings for the external delivery channels."""
    sms_provider: str = "simulation"
    sms_gateway_url: Optional[str] = None
    sms_api_key: Optional[str] = None
    email_provider: str = "simulation"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from_address: str = "sos-alerts@disaster-response.local"
    push_provider: str = "simulation"
    push_gateway_url: Optional[str] = None
    push_server_key: Optional[str] = None


@dataclass(frozen=True)
class TriageConfig:
    """
    Explicit configuration for the triage engines.

    Attributes
    ----------
    escalation_thresholds_minutes : dict
        Priority name → minutes per escalation step. Must cover every
        priority with a positive value.
    max_escalation_level : int
        Upper bound for ``escalation_level`` (inclusive).
    enabled_channels : frozenset of str
        External channels to attempt; subset of KNOWN_CHANNELS.
    """
    escalation_thresholds_minutes: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_ESCALATION_THRESHOLDS_MINUTES)
    )
    max_escalation_level: int = 2
    escalation_max_retries: int = 3
    escalation_upgrades_priority: bool = True
    escalation_region_radius_km: float = 25.0
    sweep_interval_seconds: float = 60.0
    cluster_radius_km: float = 2.0
    enabled_channels: FrozenSet[str] = frozenset(KNOWN_CHANNELS)
    channel_timeout_seconds: float = 5.0
    channel_retries: int = 1
    channel_retry_backoff_seconds: float = 0.5
    channel_workers: int = 8
    inbox_limit: int = 50
    responder_directory_file: Optional[str] = None
    providers: ChannelProviderConfig = field(default_factory=ChannelProviderConfig)

    def __post_init__(self) -> None:
        missing = [p for p in KNOWN_PRIORITIES if p not in self.escalation_thresholds_minutes]
        if missing:
            raise ValueError(f"Escalation thresholds missing for priorities: {missing}")
        for priority, minutes in self.escalation_thresholds_minutes.items():
            if priority not in KNOWN_PRIORITIES:
                raise ValueError(f"Unknown priority in escalation thresholds: {priority!r}")
            if minutes <= 0:
                raise ValueError(
                    f"Escalation threshold for {priority!r} must be positive, got {minutes}"
                )
        unknown = set(self.enabled_channels) - set(KNOWN_CHANNELS)
        if unknown:
            raise ValueError(f"Unknown channels enabled: {sorted(unknown)}")
        if self.max_escalation_level < 0:
            raise ValueError("max_escalation_level must be >= 0")
        if self.cluster_radius_km <= 0:
            raise ValueError("cluster_radius_km must be positive")
        if self.channel_timeout_seconds <= 0:
            raise ValueError("channel_timeout_seconds must be positive")
        if self.channel_retries < 0 or self.channel_retry_backoff_seconds < 0:
            raise ValueError("channel retry settings must be non-negative")

    def threshold_for(self, priority: str) -> timedelta:
        """Escalation step length for a priority name."""
        return timedelta(minutes=self.escalation_thresholds_minutes[priority])

    @classmethod
    def from_settings(cls, s: Settings) -> "TriageConfig":
        return cls(
            escalation_thresholds_minutes=dict(s.ESCALATION_THRESHOLDS_MINUTES),
            max_escalation_level=s.MAX_ESCALATION_LEVEL,
            escalation_max_retries=s.ESCALATION_MAX_RETRIES,
            escalation_upgrades_priority=s.ESCALATION_UPGRADES_PRIORITY,
            escalation_region_radius_km=s.ESCALATION_REGION_RADIUS_KM,
            sweep_interval_seconds=s.ESCALATION_SWEEP_INTERVAL_SECONDS,
            cluster_radius_km=s.CLUSTER_RADIUS_KM,
            enabled_channels=frozenset(c.lower() for c in s.ENABLED_CHANNELS),
            channel_timeout_seconds=s.CHANNEL_TIMEOUT_SECONDS,
            channel_retries=s.CHANNEL_RETRIES,
            channel_retry_backoff_seconds=s.CHANNEL_RETRY_BACKOFF_SECONDS,
            channel_workers=s.CHANNEL_WORKERS,
            inbox_limit=s.NOTIFICATION_INBOX_LIMIT,
            responder_directory_file=s.RESPONDER_DIRECTORY_FILE,
            providers=ChannelProviderConfig(
                sms_provider=s.SMS_PROVIDER,
                sms_gateway_url=s.SMS_GATEWAY_URL,
                sms_api_key=s.SMS_API_KEY,
                email_provider=s.EMAIL_PROVIDER,
                smtp_host=s.SMTP_HOST,
                smtp_port=s.SMTP_PORT,
                smtp_user=s.SMTP_USER,
                smtp_password=s.SMTP_PASSWORD,
                email_from_address=s.EMAIL_FROM_ADDRESS,
                push_provider=s.PUSH_PROVIDER,
                push_gateway_url=s.PUSH_GATEWAY_URL,
                push_server_key=s.PUSH_SERVER_KEY,
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
