"""boothsync storage backends.

Local state lives in SQLite; the shared remote store is S3, an HTTP
object gateway, or an in-memory dict for tests and single-process demos.
"""

from boothsync.config import SyncConfig
from boothsync.types import ConfigError

from .base import LocalStateStore, RemoteObjectStore
from .http import HTTPObjectStore
from .remote import (
    MANIFEST_KEY,
    InMemoryObjectStore,
    asset_file_name,
    asset_key,
    asset_prefix,
    entity_key,
)
from .s3 import S3ObjectStore
from .sqlite import SQLiteStateStore


def create_remote_store(config: SyncConfig) -> RemoteObjectStore:
    """Build the remote backend named by ``config.backend``."""
    if config.backend == "s3":
        return S3ObjectStore(
            bucket=config.bucket,
            region=config.region,
            prefix=config.prefix,
            aws_access_key_id=config.aws_access_key_id,
            aws_secret_access_key=config.aws_secret_access_key,
        )
    if config.backend == "http":
        if not config.backend_url:
            raise ConfigError("backend_url is required for the http backend")
        return HTTPObjectStore(config.backend_url, config.auth_token or "")
    if config.backend == "memory":
        return InMemoryObjectStore()
    raise ConfigError(f"Unknown backend: {config.backend!r}")


__all__ = [
    "LocalStateStore",
    "RemoteObjectStore",
    "SQLiteStateStore",
    "InMemoryObjectStore",
    "S3ObjectStore",
    "HTTPObjectStore",
    "MANIFEST_KEY",
    "entity_key",
    "asset_key",
    "asset_prefix",
    "asset_file_name",
    "create_remote_store",
]
