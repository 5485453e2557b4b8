"""
boothsync CLI - keep photo booth templates, events and settings in sync.

Usage:
    boothsync status [--json]
    boothsync sync [--json]
    boothsync test-connection
    boothsync manifest [--json]
    boothsync plan
    boothsync repair-refs
    boothsync set-interval MINUTES
    boothsync auto on|off
    boothsync watch
"""

import argparse
import logging
import sys

from boothsync.cli.commands import (
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
from boothsync.config import default_config_path, load_sync_config
from boothsync.sync.service import SyncService
from boothsync.types import ConfigError

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

COMMANDS = {
    "status": cmd_status,
    "sync": cmd_sync,
    "test-connection": cmd_test_connection,
    "manifest": cmd_manifest,
    "plan": cmd_plan,
    "repair-refs": cmd_repair_refs,
    "set-interval": cmd_set_interval,
    "auto": cmd_auto,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="boothsync",
        description="Synchronize photo booth configuration through a shared object store",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Log progress")
    verbosity.add_argument("--debug", action="store_true", help="Log everything")
    parser.add_argument("--config", "-c", help="Path to config.json", default=None)

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show sync status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_sync = subparsers.add_parser("sync", help="Sync now")
    p_sync.add_argument("--json", "-j", action="store_true")

    subparsers.add_parser("test-connection", help="Check the remote store is reachable")

    p_manifest = subparsers.add_parser("manifest", help="Show the remote manifest")
    p_manifest.add_argument("--json", "-j", action="store_true")

    subparsers.add_parser("plan", help="Show what the next sync would do")
    subparsers.add_parser("repair-refs", help="Re-link event references to local templates")

    p_interval = subparsers.add_parser("set-interval", help="Set the auto-sync interval")
    p_interval.add_argument("minutes", type=int, help="Minutes between syncs")

    p_auto = subparsers.add_parser("auto", help="Turn auto-sync on or off")
    p_auto.add_argument("state", choices=["on", "off"])

    subparsers.add_parser("watch", help="Run the scheduler in the foreground")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    config_path = args.config or default_config_path()
    try:
        config = load_sync_config(config_path)
        service = SyncService.from_config(config, config_path=config_path)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        print(f"✗ {e}")
        sys.exit(1)

    try:
        with service:
            COMMANDS[args.command](args, service)
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
