"""Filesystem helpers shared by config, storage and the CLI."""

import os
from pathlib import Path


def get_boothsync_home() -> Path:
    """Directory holding config.json and the default local database.

    ``BOOTHSYNC_HOME`` overrides the default of ``~/.boothsync``.
    """
    override = os.environ.get("BOOTHSYNC_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".boothsync"
