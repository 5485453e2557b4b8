"""SyncService: the surface the kiosk application and the CLI talk to.

Composes the local store, the remote store, the notification bus, the
orchestrator and the scheduler explicitly. Nothing here is a process-wide
singleton; two services sharing an InMemoryObjectStore behave like two
booths sharing a bucket.
"""

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from boothsync.config import SyncConfig, load_sync_config, save_sync_config
from boothsync.storage import SQLiteStateStore, create_remote_store
from boothsync.storage.base import LocalStateStore, RemoteObjectStore
from boothsync.types import (
    AuthError,
    Manifest,
    RemoteStoreError,
    SyncOperation,
    SyncResult,
    format_datetime,
)

from .identity import ReconcileReport
from .notifications import Handler, NotificationBus, Subscription
from .orchestrator import RetryPolicy, SyncOrchestrator
from .scheduler import SyncScheduler

logger = logging.getLogger(__name__)


@dataclass
class SyncStatus:
    enabled: bool
    auto_sync_enabled: bool
    is_syncing: bool
    last_sync_time: Optional[datetime]
    next_sync_time: Optional[datetime]
    interval_minutes: int
    device_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "auto_sync_enabled": self.auto_sync_enabled,
            "is_syncing": self.is_syncing,
            "last_sync_time": format_datetime(self.last_sync_time),
            "next_sync_time": format_datetime(self.next_sync_time),
            "interval_minutes": self.interval_minutes,
            "device_id": self.device_id,
        }


class SyncService:
    """One booth's sync machinery.

    Args:
        config: Validated configuration.
        store: Local state store.
        remote: Remote object store.
        bus: Notification bus; a private one is created when omitted.
        retry: Retry policy override (tests pass one with a no-op sleep).
        config_path: Where interval and auto-sync changes are persisted.
            ``None`` keeps changes in memory only.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: LocalStateStore,
        remote: RemoteObjectStore,
        bus: Optional[NotificationBus] = None,
        retry: Optional[RetryPolicy] = None,
        config_path=None,
    ):
        self.config = config
        self.store = store
        self.remote = remote
        self.bus = bus or NotificationBus()
        self._owns_bus = bus is None
        self._config_path = config_path
        self.orchestrator = SyncOrchestrator(
            store,
            remote,
            self.bus,
            device_id=config.device_id,
            kinds=config.enabled_kinds(),
            retry=retry
            or RetryPolicy(max_attempts=config.max_attempts, base_delay=config.backoff_base),
            run_timeout=config.run_timeout,
            tombstone_ttl_days=config.tombstone_ttl_days,
        )
        self.scheduler = SyncScheduler(
            self.orchestrator.run_once,
            interval_minutes=config.interval_minutes,
            enabled=config.enabled and config.auto_sync,
        )
        self._closed = False

    @classmethod
    def from_config(cls, config: Optional[SyncConfig] = None, config_path=None) -> "SyncService":
        """Build a service with the backends ``config`` names."""
        if config is None:
            config = load_sync_config(config_path)
        store = SQLiteStateStore(config.resolved_db_path(), device_id=config.device_id)
        remote = create_remote_store(config)
        return cls(config, store, remote, config_path=config_path)

    # === Status ===

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            enabled=self.config.enabled,
            auto_sync_enabled=self.config.auto_sync,
            is_syncing=self.scheduler.is_running,
            last_sync_time=self.store.get_last_sync_time(),
            next_sync_time=self.scheduler.next_sync_time,
            interval_minutes=self.scheduler.interval_minutes,
            device_id=self.config.device_id,
        )

    def test_connection(self) -> bool:
        try:
            self.remote.probe()
            return True
        except AuthError as e:
            logger.warning(f"Remote store rejected credentials: {e}")
            return False
        except RemoteStoreError as e:
            logger.warning(f"Remote store unreachable: {e}")
            return False

    # === Syncing ===

    def sync(self, timeout: Optional[float] = None) -> SyncResult:
        """Manual sync, allowed even when auto-sync is off. Joins an in-flight run."""
        return self.scheduler.trigger_now(timeout=timeout)

    def sync_async(self) -> "Future[SyncResult]":
        return self.scheduler.trigger()

    def fetch_remote_manifest(self) -> Optional[Manifest]:
        return self.orchestrator.manifests.fetch_remote_manifest()

    def plan(self) -> List[SyncOperation]:
        return self.orchestrator.plan()

    def repair_references(self) -> ReconcileReport:
        return self.orchestrator.resolver.reconcile_references()

    # === Settings ===

    def _persist(self) -> None:
        if self._config_path is not None:
            save_sync_config(self.config, self._config_path)

    def set_sync_interval(self, minutes: int) -> None:
        self.scheduler.set_interval(minutes)
        self.config.interval_minutes = minutes
        self._persist()

    def set_auto_sync_enabled(self, enabled: bool) -> None:
        self.config.auto_sync = bool(enabled)
        self.scheduler.set_enabled(self.config.enabled and self.config.auto_sync)
        if enabled and self.config.enabled and not self.scheduler.is_started and not self._closed:
            self.scheduler.start()
        self._persist()

    # === Notifications ===

    def subscribe(self, handler: Handler, name: Optional[str] = None) -> Subscription:
        return self.bus.subscribe(handler, name=name)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self.bus.unsubscribe(subscription)

    # === Lifecycle ===

    def start(self) -> None:
        """Arm the periodic trigger if sync and auto-sync are both enabled."""
        if self.config.enabled and self.config.auto_sync:
            self.scheduler.start()
        else:
            logger.info("Auto-sync disabled; scheduler not started")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.scheduler.shutdown(wait=True)
        if self._owns_bus:
            self.bus.close()
        close = getattr(self.remote, "close", None)
        if callable(close):
            close()
        self.store.close()

    def __enter__(self) -> "SyncService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
