"""
boothsync - keep photo booth kiosks in sync.

Templates, events and settings are mirrored between booths through a
shared object store, keyed by name rather than by local database id.
"""

from .config import SyncConfig, load_sync_config
from .sync.service import SyncService, SyncStatus

try:
    from importlib.metadata import version

    __version__ = version("boothsync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SyncService", "SyncStatus", "SyncConfig", "load_sync_config"]
