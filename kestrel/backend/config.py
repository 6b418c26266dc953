"""Kestrel — Application Configuration."""

import json
import logging
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Optional

_cfg_logger = logging.getLogger("kestrel.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    app_name: str = "Kestrel"
    app_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000

    # Redis signal stream
    redis_url: str = "redis://localhost:6379"
    redis_stream_key: str = "kestrel:signals"
    use_redis: bool = False  # Set True when Redis is available

    # Ingestion feed (external collaborator)
    feed_url: str = "http://localhost:8100/api/snapshot"
    refresh_interval: int = 60

    # Authored reference data (countries / hotspots / theaters)
    catalog_path: Optional[str] = None

    # Country Instability Index
    cii_warmup_minutes: float = 15.0
    cii_warmup_baseline_weight: float = 0.6
    cii_warmup_deadband: float = 10.0
    cii_history_hours: float = 24.0
    cii_tier: str = "precise"

    # Geo convergence
    geo_convergence_threshold_km: float = 100.0
    geo_convergence_window_hours: float = 24.0

    # Offload workers
    offload_enabled: bool = True
    offload_timeout_seconds: float = 10.0
    offload_retries: int = 1
    offload_ready_timeout_seconds: float = 30.0

    # Signals (cooldowns in seconds)
    signal_cooldowns: dict[str, float] = {
        "hotspot_escalation": 2 * 60 * 60,
        "military_surge": 60 * 60,
        "geo_convergence": 30 * 60,
    }
    signal_default_cooldown: float = 30 * 60
    signal_history_size: int = 500

    model_config = {"env_file": ".env", "env_prefix": "KESTREL_"}


def _load_settings() -> Settings:
    """Load settings, resolving the catalog file next to the project if present."""
    s = Settings()

    if not s.catalog_path:
        default_path = Path(__file__).resolve().parent.parent / "catalog.json"
        if default_path.exists():
            s.catalog_path = str(default_path)
            _cfg_logger.info("Catalog discovered at %s", default_path.name)

    return s


def load_catalog_file(path: Optional[str]) -> dict:
    """Read an authored catalog JSON file. Missing or broken files yield an empty dict."""
    if not path:
        return {}
    catalog_path = Path(path)
    if not catalog_path.exists():
        _cfg_logger.warning("Catalog file %s not found", catalog_path)
        return {}
    try:
        data = json.loads(catalog_path.read_text(encoding="utf-8"))
    except Exception as e:
        _cfg_logger.warning("Failed to read catalog %s: %s", catalog_path.name, e)
        return {}
    if not isinstance(data, dict):
        _cfg_logger.warning("Catalog %s is not a JSON object", catalog_path.name)
        return {}
    return data


settings = _load_settings()
