"""Configuration loading for boothsync.

Priority (highest first):
1. Environment variables (AWS_ACCESS_KEY_ID, S3_BUCKET_NAME, BOOTHSYNC_*, ...)
2. <home>/config.json (``BOOTHSYNC_HOME`` or ~/.boothsync)
3. Dataclass defaults

A device id is generated on first load and written back to config.json so
the same kiosk keeps its identity across restarts.
"""

import json
import logging
import os
import socket
import uuid
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from boothsync.types import ConfigError, EntityKind
from boothsync.utils import get_boothsync_home

logger = logging.getLogger(__name__)

VALID_BACKENDS = ("s3", "http", "memory")

# Environment variable -> (field, converter)
ENV_OVERRIDES = {
    "AWS_ACCESS_KEY_ID": ("aws_access_key_id", str),
    "AWS_SECRET_ACCESS_KEY": ("aws_secret_access_key", str),
    "S3_BUCKET_NAME": ("bucket", str),
    "S3_REGION": ("region", str),
    "BOOTHSYNC_BACKEND": ("backend", str),
    "BOOTHSYNC_BACKEND_URL": ("backend_url", str),
    "BOOTHSYNC_AUTH_TOKEN": ("auth_token", str),
    "BOOTHSYNC_DEVICE_ID": ("device_id", str),
    "BOOTHSYNC_PREFIX": ("prefix", str),
    "BOOTHSYNC_INTERVAL_MINUTES": ("interval_minutes", int),
}

# Credentials are never written back to config.json; they come from the environment
SECRET_FIELDS = frozenset({"aws_access_key_id", "aws_secret_access_key", "auth_token"})


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> "str | None":
    """Validate a backend URL for safe credential transmission.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL unchanged if valid, or ``None`` if rejected.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url


def generate_device_id() -> str:
    """``BOOTH-<HOSTNAME>-<6 hex>``, unique per kiosk."""
    host = socket.gethostname().split(".")[0].upper() or "KIOSK"
    return f"BOOTH-{host}-{uuid.uuid4().hex[:6].upper()}"


@dataclass
class SyncConfig:
    """Everything the sync core consumes from its environment."""

    enabled: bool = True
    auto_sync: bool = True
    interval_minutes: int = 15
    sync_templates: bool = True
    sync_events: bool = True
    sync_settings: bool = True
    device_id: str = ""
    backend: str = "s3"
    bucket: str = "photobooth-shares"
    region: str = "us-east-1"
    prefix: str = "sync"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    backend_url: Optional[str] = None
    auth_token: Optional[str] = None
    db_path: Optional[str] = None
    max_attempts: int = 3
    backoff_base: float = 0.5
    run_timeout: Optional[float] = 600.0
    tombstone_ttl_days: int = 30

    def validate(self) -> "SyncConfig":
        if not isinstance(self.interval_minutes, int) or self.interval_minutes <= 0:
            raise ConfigError(
                f"interval_minutes must be a positive integer, got {self.interval_minutes!r}"
            )
        if self.backend not in VALID_BACKENDS:
            raise ConfigError(f"backend must be one of {VALID_BACKENDS}, got {self.backend!r}")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.backend == "http" and self.backend_url and not validate_backend_url(
            self.backend_url
        ):
            raise ConfigError(f"Refusing unsafe backend_url: {self.backend_url!r}")
        return self

    def kind_enabled(self, kind: EntityKind) -> bool:
        return {
            EntityKind.TEMPLATE: self.sync_templates,
            EntityKind.EVENT: self.sync_events,
            EntityKind.SETTING: self.sync_settings,
        }[EntityKind(kind)]

    def enabled_kinds(self) -> frozenset:
        return frozenset(kind for kind in EntityKind if self.kind_enabled(kind))

    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return get_boothsync_home() / "boothsync.db"

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_secrets:
            for name in SECRET_FIELDS:
                data.pop(name, None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.debug(f"Ignoring unknown config keys: {unknown}")
        return cls(**{k: v for k, v in data.items() if k in known})


def default_config_path() -> Path:
    return get_boothsync_home() / "config.json"


def load_sync_config(path: Optional[Path] = None, *, persist_device_id: bool = True) -> SyncConfig:
    """Load configuration from file and environment.

    Raises:
        ConfigError: If the file is unreadable or values are invalid.
    """
    config_path = Path(path) if path else default_config_path()
    file_data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e
        if not isinstance(file_data, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")

    config = SyncConfig.from_dict(file_data)

    for env_name, (field_name, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw:
            try:
                setattr(config, field_name, convert(raw))
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from e

    if not config.device_id:
        config.device_id = generate_device_id()
        logger.info(f"Generated device id {config.device_id}")
        if persist_device_id:
            # Only the file values plus the new id; env overrides stay out of the file
            stored = SyncConfig.from_dict(file_data)
            stored.device_id = config.device_id
            save_sync_config(stored, config_path)

    return config.validate()


def save_sync_config(config: SyncConfig, path: Optional[Path] = None) -> Path:
    """Write config.json, leaving secrets out."""
    config_path = Path(path) if path else default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        json.dump(config.to_dict(), f, indent=2, sort_keys=True)
    return config_path
