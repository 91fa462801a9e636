from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Audio chunk limits. A chunk of exactly max_chunk_size_bytes is accepted.
    max_chunk_size_bytes: int = int(os.getenv("MAX_CHUNK_SIZE_BYTES", str(10 * 1024 * 1024)))

    # Ingestion cache expiry. The absolute cap counts from entry creation, the
    # sliding window from the last access; whichever elapses first evicts.
    max_session_duration_seconds: int = int(os.getenv("MAX_SESSION_DURATION_SECONDS", str(4 * 60 * 60)))
    sliding_inactivity_seconds: int = int(os.getenv("SLIDING_INACTIVITY_SECONDS", str(30 * 60)))

    supported_audio_formats: List[str] = field(
        default_factory=lambda: _csv(os.getenv("SUPPORTED_AUDIO_FORMATS", "wav,mp3,m4a,flac"))
    )
    supported_sample_rates: List[int] = field(
        default_factory=lambda: [
            int(rate) for rate in _csv(os.getenv("SUPPORTED_SAMPLE_RATES", "8000,16000,22050,44100,48000"))
        ]
    )

    # Defaults used when an ingestion entry is rebuilt after a cache miss. The
    # client-declared format is not persisted, so these are best guesses.
    recovery_audio_format: str = os.getenv("RECOVERY_AUDIO_FORMAT", "unknown")
    recovery_sample_rate: int = int(os.getenv("RECOVERY_SAMPLE_RATE", "16000"))
    recovery_channels: int = int(os.getenv("RECOVERY_CHANNELS", "1"))
    # When true, chunk submission after a cache miss is refused instead of
    # guessing the audio format.
    strict_format_recovery: bool = os.getenv("STRICT_FORMAT_RECOVERY", "false").lower() == "true"

    # Background sweep of expired ingestion entries.
    enable_cache_sweeper: bool = os.getenv("ENABLE_CACHE_SWEEPER", "true").lower() == "true"
    cache_sweep_interval_seconds: float = float(os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", "60"))
    # Active streams older than this since their last refresh are reconciled
    # against the session store by the sweeper.
    session_refresh_interval_seconds: float = float(os.getenv("SESSION_REFRESH_INTERVAL_SECONDS", "300"))

    # Downstream transcription provider: "demo" (default) or "http".
    transcription_provider: str = os.getenv("TRANSCRIPTION_PROVIDER", "demo")
    transcription_provider_url: Optional[str] = os.getenv("TRANSCRIPTION_PROVIDER_URL")
    transcription_provider_timeout: float = float(os.getenv("TRANSCRIPTION_PROVIDER_TIMEOUT", "10"))

    # Optional database configuration for SQL-backed repositories.
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    use_sql_repos: bool = os.getenv("USE_SQL_REPOS", "false").lower() == "true"

    # Basic API authentication configuration.
    # When ENABLE_API_AUTH=true, protected endpoints require a valid API key.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated list of allowed API keys when auth is enabled.
    api_keys: Optional[str] = os.getenv("API_KEYS")

    # CORS configuration: comma-separated origins. Default is "*" (allow all)
    # which is acceptable for local development but should be tightened in
    # production.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
