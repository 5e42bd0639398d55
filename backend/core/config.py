"""
Learning Engine Configuration

Uses pydantic-settings for type-safe environment variable loading.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

DEFAULT_TENANT_ID = "micos-farm-001"

# Find .env file: check CWD first, then parent (project root)
_env_file = Path(".env")
if not _env_file.exists():
    _parent_env = Path(__file__).resolve().parent.parent.parent / ".env"
    if _parent_env.exists():
        _env_file = _parent_env


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Harvest Learning Engine"
    app_version: str = "1.0.0"
    app_env: str = "local"
    debug: bool = False
    tenant_id: str = DEFAULT_TENANT_ID

    # Redis (Celery broker, stats store, alert pub/sub)
    redis_url: str = "redis://localhost:6379/0"

    # Stats store
    stats_store_backend: str = "memory"  # memory | redis
    stats_key_prefix: str = "learning"

    # Per-key serialization
    key_lock_timeout_seconds: float = 5.0
    key_lock_lease_seconds: float = 30.0
    key_lock_max_retries: int = 2

    # ── Nightly batch ─────────────────────────────────────────────────
    nightly_hour: int = 2
    nightly_minute: int = 0
    nightly_timezone: str = "America/Boise"
    nightly_time_limit_seconds: int = 540
    nightly_max_retries: int = 3

    # Alerts
    alert_publish_enabled: bool = False

    # ── Tunable detection parameters ──────────────────────────────────
    bias_correction_threshold: float = 10.0
    anomaly_high_multiplier: float = 5.0
    anomaly_low_multiplier: float = 0.1
    yield_outlier_zscore: float = 3.0

    model_config = {
        "env_file": str(_env_file),
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    settings = Settings()
    _enforce_guardrails(settings)
    return settings


def _enforce_guardrails(settings: Settings) -> None:
    if settings.stats_store_backend not in {"memory", "redis"}:
        raise ValueError(f"Unknown stats_store_backend: {settings.stats_store_backend}")
    if settings.key_lock_timeout_seconds <= 0:
        raise ValueError("key_lock_timeout_seconds must be positive")
    if settings.key_lock_max_retries < 0:
        raise ValueError("key_lock_max_retries must be >= 0")

    env = settings.app_env.strip().lower()
    is_local = env in {"", "local", "dev", "development", "test"}
    if is_local:
        return

    if settings.debug:
        raise ValueError("Refusing to start with debug=true outside local/dev/test")
    if settings.stats_store_backend == "memory":
        raise ValueError("Refusing to start with the in-memory stats store outside local/dev/test")
