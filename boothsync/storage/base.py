"""Storage protocols for boothsync.

This defines the two collaborators the sync core talks to:
- LocalStateStore: per-device CRUD store for templates, events and settings,
  keyed by a local integer id. Implemented by SQLiteStateStore.
- RemoteObjectStore: shared key/value blob store with eventual consistency
  and no multi-key transactions. Implemented by InMemoryObjectStore,
  S3ObjectStore and HTTPObjectStore.
"""

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from boothsync.types import Entity, EntityKind, Tombstone


@runtime_checkable
class LocalStateStore(Protocol):
    """Per-kind CRUD store. Ids are assigned by the store and not stable across devices."""

    def list_entities(self, kind: EntityKind) -> List[Entity]:
        """All entities of ``kind`` ordered by id, assets included."""
        ...

    def get_entity(self, kind: EntityKind, local_id: int) -> Optional[Entity]:
        ...

    def find_by_name(self, kind: EntityKind, name: str) -> List[Entity]:
        """Every entity of ``kind`` named ``name``. More than one means a duplicate."""
        ...

    def upsert_entity(self, entity: Entity, *, sync_metadata: bool = False) -> int:
        """Insert or update and return the local id.

        With ``sync_metadata`` the entity's version, updated_at and modified_by
        are written as given (content arriving from the remote store). Otherwise
        they are bumped only when the content hash changed.
        """
        ...

    def delete_entity(self, kind: EntityKind, local_id: int, *, propagate: bool = False) -> bool:
        ...

    def update_refs(self, entity: Entity) -> None:
        """Rewrite only the stored reference ids, leaving sync metadata untouched."""
        ...

    def stamp_version(self, kind: EntityKind, local_id: int, version: int) -> None:
        ...

    def content_hash(self, entity: Entity) -> str:
        ...

    def list_tombstones(self) -> List[Tombstone]:
        ...

    def clear_tombstone(self, kind: EntityKind, name: str) -> None:
        ...

    def get_sync_meta(self, key: str) -> Optional[str]:
        ...

    def set_sync_meta(self, key: str, value: str) -> None:
        ...

    def get_last_sync_time(self) -> Optional[datetime]:
        ...


@runtime_checkable
class RemoteObjectStore(Protocol):
    """Blob store addressed by slash-delimited, case-sensitive string keys.

    Implementations raise ConnectivityError, AuthError or ObjectNotFoundError
    from boothsync.types, never their library's own exceptions.
    """

    def put(self, key: str, data: bytes) -> None:
        ...

    def get(self, key: str) -> bytes:
        ...

    def list(self, prefix: str) -> List[str]:
        """Keys starting with ``prefix``, sorted."""
        ...

    def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""
        ...

    def probe(self) -> None:
        """Cheap connectivity and credential check. Raises on failure."""
        ...
