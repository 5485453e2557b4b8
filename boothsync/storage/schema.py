"""Database schema for the boothsync local state store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Names are deliberately NOT unique per kind: duplicates are the failure mode
# the identity resolver has to detect and report.
SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    name TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    refs TEXT NOT NULL DEFAULT '[]',
    content_hash TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    modified_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_entities_kind_name ON entities(kind, name);

CREATE TABLE IF NOT EXISTS entity_assets (
    entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    file_name TEXT NOT NULL,
    data BLOB NOT NULL,
    PRIMARY KEY (entity_id, file_name)
);

CREATE TABLE IF NOT EXISTS tombstones (
    kind TEXT NOT NULL,
    name TEXT NOT NULL,
    deleted_at TEXT NOT NULL,
    modified_by TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (kind, name)
);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if needed and record the schema version."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row and row[0] is not None else None
    if current is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.debug(f"Initialized local store schema v{SCHEMA_VERSION}")
    elif current > SCHEMA_VERSION:
        logger.warning(
            f"Local store schema v{current} is newer than supported v{SCHEMA_VERSION}"
        )
