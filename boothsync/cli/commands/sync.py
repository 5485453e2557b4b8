"""Sync commands for the boothsync CLI."""

import json
import logging
import sqlite3
import sys
import time
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from boothsync.sync.notifications import EntityUpdating, SyncCompleted, SyncFailed, SyncProgress
from boothsync.types import (
    ConfigError,
    EntityKind,
    IdentityConflictError,
    ManifestCorruptionError,
    RemoteStoreError,
    SyncError,
    SyncOpType,
    SyncResult,
    utc_now,
)

if TYPE_CHECKING:
    from boothsync.sync.service import SyncService

logger = logging.getLogger(__name__)


def _elapsed(when: Optional[datetime]) -> str:
    if when is None:
        return "Never"
    seconds = (utc_now() - when).total_seconds()
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{int(seconds / 60)} minutes ago"
    if seconds < 86400:
        return f"{int(seconds / 3600)} hours ago"
    return f"{int(seconds / 86400)} days ago"


def _print_result(result: SyncResult) -> None:
    icon = "✓" if result.success else "✗"
    print(f"{icon} Sync {'complete' if result.success else 'finished with errors'}")
    for kind in EntityKind:
        counts = result.counts[kind]
        print(
            f"  {kind.value + 's':<10} created={counts.created} updated={counts.updated} "
            f"deleted={counts.deleted} skipped={counts.skipped} failed={counts.failed}"
        )
    if result.global_version is not None:
        print(f"  Manifest version: {result.global_version}")
    for error in result.errors:
        target = error.natural_key or "run"
        print(f"  ⚠️  [{error.kind.value}] {target}: {error.message}")


def cmd_status(args, service: "SyncService"):
    """Show sync configuration and state."""
    status = service.get_sync_status()
    if getattr(args, "json", False):
        print(json.dumps(status.to_dict(), indent=2))
        return

    print("Sync Status")
    print("=" * 50)
    print()
    print(f"📦 Device: {status.device_id}")
    print(f"   Backend: {service.config.backend}")
    print(f"{'🟢' if status.enabled else '🔴'} Sync {'enabled' if status.enabled else 'disabled'}")
    auto = "on" if status.auto_sync_enabled else "off"
    print(f"   Auto-sync: {auto}, every {status.interval_minutes} minutes")
    if status.is_syncing:
        print("🔄 Sync in progress")
    print(f"🕐 Last sync: {_elapsed(status.last_sync_time)}")
    if status.last_sync_time:
        print(f"   ({status.last_sync_time.isoformat()[:19]})")


def cmd_sync(args, service: "SyncService"):
    """Run one sync now."""
    result = service.sync()
    if getattr(args, "json", False):
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)
    if not result.success:
        sys.exit(1)


def cmd_test_connection(args, service: "SyncService"):
    if service.test_connection():
        print(f"✓ Remote store reachable ({service.config.backend})")
    else:
        print(f"✗ Cannot reach remote store ({service.config.backend})")
        sys.exit(1)


def cmd_manifest(args, service: "SyncService"):
    """Print the shared remote manifest."""
    try:
        manifest = service.fetch_remote_manifest()
    except (RemoteStoreError, ManifestCorruptionError) as e:
        print(f"✗ Cannot read remote manifest: {e}")
        sys.exit(1)
    if manifest is None:
        print("No remote manifest yet")
        return
    if getattr(args, "json", False):
        print(manifest.to_json())
        return

    print(f"Manifest v{manifest.global_version} (by {manifest.modified_by})")
    print("=" * 50)
    for key in sorted(manifest.items):
        item = manifest.items[key]
        marker = " (deleted)" if item.deleted else ""
        print(
            f"  {key}{marker}  v{item.version}  {item.last_modified_at.isoformat()[:19]}  "
            f"{item.last_modified_by}"
        )


def cmd_plan(args, service: "SyncService"):
    """Show what the next sync would do, without doing it."""
    try:
        operations = service.plan()
    except (RemoteStoreError, IdentityConflictError) as e:
        print(f"✗ Cannot plan sync: {e}")
        sys.exit(1)
    pending = [op for op in operations if op.op != SyncOpType.SKIP]
    if not pending:
        print(f"✓ In sync ({len(operations)} items)")
        return
    print(f"{len(pending)} pending of {len(operations)} items:")
    for operation in pending:
        print(f"  {operation.op.value:<16} {operation.natural_key}")


def cmd_repair_refs(args, service: "SyncService"):
    """Rewrite cross-entity references to the current local ids."""
    try:
        report = service.repair_references()
    except (sqlite3.Error, SyncError) as e:
        print(f"✗ Reference repair failed: {e}")
        sys.exit(1)
    for mapping in report.mappings:
        print(
            f"  {mapping.natural_key}: {mapping.remote_referenced_id} -> {mapping.local_id}"
        )
    for owner, target in report.dangling:
        print(f"  ⚠️  {owner} references missing {target}")
    for owner, conflict in report.conflicts:
        print(f"  ✗ {owner}: {conflict}")
    print(f"✓ Updated {report.entities_updated} entities")
    if report.conflicts:
        sys.exit(1)


def cmd_set_interval(args, service: "SyncService"):
    try:
        service.set_sync_interval(args.minutes)
    except ConfigError as e:
        print(f"✗ {e}")
        sys.exit(1)
    print(f"✓ Sync interval set to {args.minutes} minutes")


def cmd_auto(args, service: "SyncService"):
    enabled = args.state == "on"
    service.set_auto_sync_enabled(enabled)
    print(f"✓ Auto-sync {'enabled' if enabled else 'disabled'}")


def _print_event(event) -> None:
    if isinstance(event, SyncProgress):
        print(f"[{event.percent:3d}%] {event.message}")
    elif isinstance(event, EntityUpdating):
        print(f"       {event.update_type} {event.natural_key}")
    elif isinstance(event, SyncFailed):
        print(f"✗ Sync failed ({event.error_kind.value}): {event.message}")
    elif isinstance(event, SyncCompleted):
        _print_result(event.result)


def cmd_watch(args, service: "SyncService"):
    """Run the scheduler in the foreground until interrupted."""
    if not service.config.enabled:
        print("✗ Sync is disabled in the configuration")
        sys.exit(1)
    subscription = service.subscribe(_print_event, name="cli-watch")
    try:
        service.sync_async()
        service.start()
        print(f"Watching; syncing every {service.scheduler.interval_minutes} minutes (Ctrl-C to stop)")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print()
    finally:
        service.unsubscribe(subscription)
