"""Sync core: manifests, identity resolution, orchestration and scheduling."""

from .identity import IdentityResolver, ReconcileReport
from .manifest import ManifestManager, local_wins, parse_manifest
from .notifications import (
    EntityUpdating,
    NotificationBus,
    Subscription,
    SyncCompleted,
    SyncEvent,
    SyncFailed,
    SyncProgress,
    SyncStarted,
)
from .orchestrator import RetryPolicy, SyncOrchestrator
from .scheduler import SyncScheduler

__all__ = [
    "IdentityResolver",
    "ReconcileReport",
    "ManifestManager",
    "local_wins",
    "parse_manifest",
    "NotificationBus",
    "Subscription",
    "SyncEvent",
    "SyncStarted",
    "SyncProgress",
    "EntityUpdating",
    "SyncCompleted",
    "SyncFailed",
    "RetryPolicy",
    "SyncOrchestrator",
    "SyncScheduler",
]
