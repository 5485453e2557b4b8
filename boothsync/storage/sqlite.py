"""SQLite local state store for boothsync.

Local-first storage with:
- One ``entities`` table for templates, events and settings
- Template assets stored as blobs next to their entity
- Tombstones for deletions that should propagate
- Sync metadata (last manifest, last sync time)
"""

import contextlib
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from boothsync.types import (
    Entity,
    EntityKind,
    EntityRef,
    Tombstone,
    format_datetime,
    parse_datetime,
    utc_now,
)
from boothsync.utils import get_boothsync_home

from .schema import init_db

logger = logging.getLogger(__name__)


class SQLiteStateStore:
    """LocalStateStore backed by a single SQLite file.

    Args:
        db_path: Database file. Defaults to ``<home>/boothsync.db``.
        device_id: Written as ``modified_by`` on local edits.
    """

    def __init__(self, db_path: Optional[Path] = None, device_id: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else get_boothsync_home() / "boothsync.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.device_id = device_id
        with self._connect() as conn:
            init_db(conn)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; kept for API symmetry."""
        pass

    # === Row Conversion ===

    def _row_to_entity(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Entity:
        assets = {
            a["file_name"]: bytes(a["data"])
            for a in conn.execute(
                "SELECT file_name, data FROM entity_assets WHERE entity_id = ? ORDER BY file_name",
                (row["id"],),
            ).fetchall()
        }
        return Entity(
            id=row["id"],
            kind=EntityKind(row["kind"]),
            name=row["name"],
            data=json.loads(row["data"]),
            refs=[EntityRef.from_dict(r) for r in json.loads(row["refs"])],
            assets=assets,
            version=row["version"],
            updated_at=parse_datetime(row["updated_at"]),
            modified_by=row["modified_by"],
        )

    @staticmethod
    def _refs_json(entity: Entity) -> str:
        return json.dumps([ref.to_dict() for ref in entity.refs])

    # === CRUD ===

    def list_entities(self, kind: EntityKind) -> List[Entity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE kind = ? ORDER BY id", (EntityKind(kind).value,)
            ).fetchall()
            return [self._row_to_entity(conn, row) for row in rows]

    def get_entity(self, kind: EntityKind, local_id: int) -> Optional[Entity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE kind = ? AND id = ?",
                (EntityKind(kind).value, local_id),
            ).fetchone()
            return self._row_to_entity(conn, row) if row else None

    def find_by_name(self, kind: EntityKind, name: str) -> List[Entity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE kind = ? AND name = ? ORDER BY id",
                (EntityKind(kind).value, name),
            ).fetchall()
            return [self._row_to_entity(conn, row) for row in rows]

    def content_hash(self, entity: Entity) -> str:
        return entity.content_hash

    def upsert_entity(self, entity: Entity, *, sync_metadata: bool = False) -> int:
        """Insert or update an entity and return its local id.

        Local edits bump version/updated_at only when the content hash changes,
        so re-saving identical content never looks like a change to sync.
        """
        content_hash = entity.content_hash
        kind = EntityKind(entity.kind).value

        with self._connect() as conn:
            existing = None
            if entity.id is not None:
                existing = conn.execute(
                    "SELECT id, content_hash, version, updated_at, modified_by "
                    "FROM entities WHERE id = ? AND kind = ?",
                    (entity.id, kind),
                ).fetchone()

            if sync_metadata:
                version = entity.version
                updated_at = format_datetime(entity.updated_at or utc_now())
                modified_by = entity.modified_by
            elif existing is None:
                version = entity.version or 1
                updated_at = format_datetime(utc_now())
                modified_by = self.device_id
            elif existing["content_hash"] != content_hash:
                version = existing["version"] + 1
                updated_at = format_datetime(utc_now())
                modified_by = self.device_id
            else:
                version = existing["version"]
                updated_at = existing["updated_at"]
                modified_by = existing["modified_by"]

            params = (
                kind,
                entity.name,
                json.dumps(entity.data, sort_keys=True),
                self._refs_json(entity),
                content_hash,
                version,
                updated_at,
                modified_by,
            )
            if existing is None:
                cursor = conn.execute(
                    """INSERT INTO entities
                       (kind, name, data, refs, content_hash, version, updated_at, modified_by)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    params,
                )
                local_id = cursor.lastrowid
            else:
                local_id = existing["id"]
                conn.execute(
                    """UPDATE entities SET kind = ?, name = ?, data = ?, refs = ?,
                       content_hash = ?, version = ?, updated_at = ?, modified_by = ?
                       WHERE id = ?""",
                    params + (local_id,),
                )

            # Whole-asset replace
            conn.execute("DELETE FROM entity_assets WHERE entity_id = ?", (local_id,))
            conn.executemany(
                "INSERT INTO entity_assets (entity_id, file_name, data) VALUES (?, ?, ?)",
                [(local_id, name, sqlite3.Binary(blob)) for name, blob in entity.assets.items()],
            )

            # Re-creating an entity cancels a pending deletion of the same name
            conn.execute("DELETE FROM tombstones WHERE kind = ? AND name = ?", (kind, entity.name))

        entity.id = local_id
        entity.version = version
        entity.updated_at = parse_datetime(updated_at)
        entity.modified_by = modified_by
        return local_id

    def update_refs(self, entity: Entity) -> None:
        if entity.id is None:
            raise ValueError("Cannot update references of an unsaved entity")
        with self._connect() as conn:
            conn.execute(
                "UPDATE entities SET refs = ? WHERE id = ?", (self._refs_json(entity), entity.id)
            )

    def stamp_version(self, kind: EntityKind, local_id: int, version: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE entities SET version = ? WHERE id = ? AND kind = ?",
                (version, local_id, EntityKind(kind).value),
            )

    def delete_entity(self, kind: EntityKind, local_id: int, *, propagate: bool = False) -> bool:
        """Delete an entity.

        Without ``propagate`` this is a local wipe: the next sync restores the
        entity from the remote store. With it, a tombstone is recorded so the
        deletion reaches the remote store and other devices.
        """
        kind_value = EntityKind(kind).value
        with self._connect() as conn:
            row = conn.execute(
                "SELECT name, version FROM entities WHERE id = ? AND kind = ?",
                (local_id, kind_value),
            ).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM entity_assets WHERE entity_id = ?", (local_id,))
            conn.execute("DELETE FROM entities WHERE id = ?", (local_id,))
            if propagate:
                conn.execute(
                    """INSERT OR REPLACE INTO tombstones
                       (kind, name, deleted_at, modified_by, version)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        kind_value,
                        row["name"],
                        format_datetime(utc_now()),
                        self.device_id,
                        row["version"] + 1,
                    ),
                )
        return True

    # === Tombstones ===

    def list_tombstones(self) -> List[Tombstone]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tombstones ORDER BY kind, name").fetchall()
        return [
            Tombstone(
                kind=EntityKind(row["kind"]),
                name=row["name"],
                deleted_at=parse_datetime(row["deleted_at"]),
                modified_by=row["modified_by"],
                version=row["version"],
            )
            for row in rows
        ]

    def clear_tombstone(self, kind: EntityKind, name: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM tombstones WHERE kind = ? AND name = ?",
                (EntityKind(kind).value, name),
            )

    # === Sync Metadata ===

    def get_sync_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_sync_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, format_datetime(utc_now())),
            )

    def get_last_sync_time(self) -> Optional[datetime]:
        """Timestamp of the last run that published a manifest or found nothing to do."""
        return parse_datetime(self.get_sync_meta("last_sync_time"))

    # === Stats ===

    def get_stats(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT kind, COUNT(*) AS count FROM entities GROUP BY kind"
            ).fetchall()
            tombstones = conn.execute("SELECT COUNT(*) FROM tombstones").fetchone()[0]
        stats: Dict[str, Any] = {kind.value: 0 for kind in EntityKind}
        stats.update({row["kind"]: row["count"] for row in rows})
        stats["tombstones"] = tombstones
        return stats
