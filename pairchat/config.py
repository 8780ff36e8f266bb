from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["http://localhost"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


def normalize_database_url(value: Optional[str]) -> str:
    url = (value or "").strip()
    # Normalize for psycopg
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


@dataclass
class CloudinaryConfig:
    cloud_name: str
    api_key: str
    api_secret: str


@dataclass
class Settings:
    data_dir: str = "data"
    public_dir: str = "public"
    upload_dir: str = os.path.join("public", "uploads")
    database_url: str = ""
    cloudinary: Optional[CloudinaryConfig] = None
    max_upload_mb: int = 50
    max_message_length: int = 2000
    message_expiry_hours: int = 24
    expiry_sweep_interval_seconds: float = 60 * 60
    ws_heartbeat_interval_seconds: float = 20
    ws_heartbeat_timeout_seconds: float = 45
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost"])
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 80
    version: str = "unknown"
    commit: str = "unknown"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @property
    def retention_seconds(self) -> int:
        return self.message_expiry_hours * 60 * 60

    def build_meta(self) -> Dict[str, str]:
        return {"version": self.version, "commit": self.commit}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read settings from the environment.

    Raises RuntimeError for combinations that cannot work, so a misconfigured
    process dies at startup rather than on the first request.
    """
    env = os.environ if environ is None else environ

    public_dir = (env.get("PUBLIC_DIR") or "").strip() or "public"
    upload_dir = (env.get("UPLOAD_DIR") or "").strip() or os.path.join(public_dir, "uploads")

    cloud_name = (env.get("CLOUDINARY_CLOUD_NAME") or "").strip()
    api_key = (env.get("CLOUDINARY_API_KEY") or "").strip()
    api_secret = (env.get("CLOUDINARY_API_SECRET") or "").strip()
    cloudinary = None
    if cloud_name or api_key or api_secret:
        if not (cloud_name and api_key and api_secret):
            raise RuntimeError(
                "Cloudinary env vars must be set together: CLOUDINARY_CLOUD_NAME, "
                "CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET"
            )
        cloudinary = CloudinaryConfig(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret)

    settings = Settings(
        data_dir=(env.get("DATA_DIR") or "").strip() or "data",
        public_dir=public_dir,
        upload_dir=upload_dir,
        database_url=normalize_database_url(env.get("DATABASE_URL")),
        cloudinary=cloudinary,
        max_upload_mb=_int_env(env, "MAX_UPLOAD_MB", 50),
        max_message_length=_int_env(env, "MAX_MESSAGE_LENGTH", 2000),
        message_expiry_hours=_int_env(env, "MESSAGE_EXPIRY_HOURS", 24),
        expiry_sweep_interval_seconds=_float_env(env, "EXPIRY_SWEEP_INTERVAL_SECONDS", 60 * 60),
        ws_heartbeat_interval_seconds=_float_env(env, "WS_HEARTBEAT_INTERVAL_SECONDS", 20),
        ws_heartbeat_timeout_seconds=_float_env(env, "WS_HEARTBEAT_TIMEOUT_SECONDS", 45),
        cors_origins=parse_cors_origins(env.get("CORS_ORIGINS")),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        host=(env.get("HOST") or "0.0.0.0").strip() or "0.0.0.0",
        port=_int_env(env, "PORT", 80),
        version=(env.get("APP_VERSION") or env.get("VERSION") or "unknown").strip() or "unknown",
        commit=(env.get("APP_COMMIT") or env.get("COMMIT_SHA") or "unknown").strip() or "unknown",
    )

    if settings.message_expiry_hours <= 0:
        raise RuntimeError("MESSAGE_EXPIRY_HOURS must be positive")
    if settings.max_upload_mb <= 0:
        raise RuntimeError("MAX_UPLOAD_MB must be positive")
    if settings.ws_heartbeat_timeout_seconds <= settings.ws_heartbeat_interval_seconds:
        raise RuntimeError("WS_HEARTBEAT_TIMEOUT_SECONDS must exceed WS_HEARTBEAT_INTERVAL_SECONDS")
    return settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
