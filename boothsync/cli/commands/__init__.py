"""CLI command modules for boothsync.

Each handler takes the parsed arguments and a SyncService.
"""

from boothsync.cli.commands.sync import (
    cmd_auto,
    cmd_manifest,
    cmd_plan,
    cmd_repair_refs,
    cmd_set_interval,
    cmd_status,
    cmd_sync,
    cmd_test_connection,
    cmd_watch,
)

__all__ = [
    "cmd_auto",
    "cmd_manifest",
    "cmd_plan",
    "cmd_repair_refs",
    "cmd_set_interval",
    "cmd_status",
    "cmd_sync",
    "cmd_test_connection",
    "cmd_watch",
]
