"""MarketSnap sync configuration — Pydantic BaseSettings loaded from .env."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the queue, the sync engine and the local companion API."""

    app_name: str = "MarketSnap Sync"
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"

    # Local API (consumed by the capture/review UI)
    host: str = "127.0.0.1"
    port: int = 8765
    api_prefix: str = "/api"
    cors_origins: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # Storage paths (relative resolved from project root at runtime)
    data_dir: str = "./data"
    database_path: str = "./data/marketsnap.db"
    quarantine_dir: str = "./data/quarantine"
    state_dir: str = "./data/state"
    key_path: str = "./data/queue.key"

    # Base64 AES-256 key; when empty a key file is generated at key_path
    encryption_key: str = ""

    # Remote service (Firebase)
    firebase_project_id: str = ""
    firebase_storage_bucket: str = ""
    snaps_collection: str = "snaps"
    storage_api_url: str = "https://firebasestorage.googleapis.com/v0"
    firestore_api_url: str = "https://firestore.googleapis.com/v1"

    # Connectivity monitor
    connectivity_probe_url: str = "https://firestore.googleapis.com/"
    connectivity_poll_seconds: float = 15.0
    connectivity_fast_poll_seconds: float = 1.0
    connectivity_stability_seconds: float = 2.0
    connectivity_probe_timeout_seconds: float = 5.0

    # Sync / retry policy (tunable defaults)
    sync_interval_minutes: int = 15
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 300.0  # 5 minutes
    backoff_jitter: float = 0.2
    permanent_failure_threshold: int = 5
    upload_timeout_seconds: float = 30.0
    immediate_sync_timeout_seconds: float = 10.0

    # Offline session cache
    session_ttl_days: int = 30

    # Refuse to enqueue when the disk would drop below this
    min_free_bytes: int = 50 * 1024 * 1024

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        env_prefix="MARKETSNAP_",
        extra="ignore",
    )

    @property
    def remote_configured(self) -> bool:
        return bool(self.firebase_project_id and self.firebase_storage_bucket)

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Ensure data paths are absolute."""
        base = Path(__file__).resolve().parent.parent  # backend/
        for field in ("data_dir", "database_path", "quarantine_dir", "state_dir", "key_path"):
            val = getattr(self, field)
            if not Path(val).is_absolute():
                setattr(self, field, str(base / val))
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
