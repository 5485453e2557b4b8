"""Manifest building, parsing and diffing.

ManifestManager turns the local store into a Manifest, fetches and validates
the shared remote manifest, and computes the ordered list of SyncOperations
between them. Conflicts are settled by last-writer-wins on lastModifiedAt,
then version, then device id, then content hash, so the same two manifests
always produce the same plan whichever side runs the diff.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from jsonschema import Draft7Validator

from boothsync.storage.base import LocalStateStore, RemoteObjectStore
from boothsync.storage.remote import MANIFEST_KEY
from boothsync.types import (
    KIND_ORDER,
    EntityKind,
    Manifest,
    ManifestCorruptionError,
    ManifestItem,
    ObjectNotFoundError,
    SyncOperation,
    SyncOpType,
    format_datetime,
    split_natural_key,
    utc_now,
)

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA = {
    "type": "object",
    "required": ["globalVersion", "modifiedBy", "items"],
    "properties": {
        "globalVersion": {"type": "integer", "minimum": 0},
        "modifiedBy": {"type": "string"},
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "required": [
                    "naturalKey",
                    "kind",
                    "contentHash",
                    "version",
                    "lastModifiedAt",
                    "lastModifiedBy",
                ],
                "properties": {
                    "naturalKey": {"type": "string", "minLength": 3},
                    "kind": {"enum": [kind.value for kind in EntityKind]},
                    "contentHash": {"type": "string"},
                    "version": {"type": "integer", "minimum": 0},
                    "lastModifiedAt": {"type": "string", "minLength": 1},
                    "lastModifiedBy": {"type": "string"},
                    "deleted": {"type": "boolean"},
                },
            },
        },
    },
}

_validator = Draft7Validator(MANIFEST_SCHEMA)

LOCAL_MANIFEST_META_KEY = "manifest"
LAST_SYNC_META_KEY = "last_sync_time"


def parse_manifest(raw: bytes) -> Manifest:
    """Parse and validate manifest JSON.

    Raises:
        ManifestCorruptionError: On invalid JSON, schema violations,
            unparsable timestamps or duplicate natural keys.
    """
    try:
        data = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestCorruptionError(f"Manifest is not valid JSON: {e}") from e

    errors = sorted(_validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = "/".join(str(p) for p in first.path) or "<root>"
        raise ManifestCorruptionError(f"Manifest schema violation at {location}: {first.message}")

    try:
        manifest = Manifest.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ManifestCorruptionError(f"Manifest item is malformed: {e}") from e

    for key, item in manifest.items.items():
        try:
            kind, _ = split_natural_key(key)
        except ValueError as e:
            raise ManifestCorruptionError(f"Manifest item is malformed: {e}") from e
        if kind != item.kind:
            raise ManifestCorruptionError(f"naturalKey {key!r} does not match kind {item.kind.value}")
        if item.last_modified_at is None:
            raise ManifestCorruptionError(f"naturalKey {key!r} has no lastModifiedAt")
    return manifest


def local_wins(local: ManifestItem, remote: ManifestItem) -> bool:
    """Last-writer-wins with a deterministic tie-break.

    Later lastModifiedAt wins; ties fall to the higher version, then the
    lexicographically greater device id, then the smaller content hash.
    """
    if local.last_modified_at != remote.last_modified_at:
        return local.last_modified_at > remote.last_modified_at
    if local.version != remote.version:
        return local.version > remote.version
    if local.last_modified_by != remote.last_modified_by:
        return (local.last_modified_by or "") > (remote.last_modified_by or "")
    return local.content_hash <= remote.content_hash


def _classify(local: Optional[ManifestItem], remote: Optional[ManifestItem]) -> SyncOpType:
    if local is None:
        return SyncOpType.SKIP if remote.deleted else SyncOpType.DOWNLOAD_NEW
    if remote is None:
        return SyncOpType.SKIP if local.deleted else SyncOpType.UPLOAD_NEW
    if local.deleted and remote.deleted:
        return SyncOpType.SKIP
    if local.deleted:
        return SyncOpType.DELETE_REMOTE if local_wins(local, remote) else SyncOpType.DOWNLOAD_NEW
    if remote.deleted:
        return SyncOpType.UPLOAD_UPDATE if local_wins(local, remote) else SyncOpType.DELETE_LOCAL
    if local.content_hash == remote.content_hash:
        return SyncOpType.SKIP
    return SyncOpType.UPLOAD_UPDATE if local_wins(local, remote) else SyncOpType.DOWNLOAD_UPDATE


def _operation_sort_key(op: SyncOperation):
    # Deletions go last, referencing kinds (events) removed before templates
    kind_rank = KIND_ORDER[op.kind]
    if op.op.is_delete:
        return (1, -kind_rank, op.natural_key)
    return (0, kind_rank, op.natural_key)


class ManifestManager:
    """Builds, fetches, diffs and publishes manifests.

    Args:
        store: Local state store.
        remote: Remote object store.
        device_id: This device's identifier.
        kinds: Entity kinds taking part in sync (per-kind toggles).
    """

    def __init__(
        self,
        store: LocalStateStore,
        remote: RemoteObjectStore,
        device_id: str,
        kinds: Optional[Iterable[EntityKind]] = None,
    ):
        self.store = store
        self.remote = remote
        self.device_id = device_id
        self.kinds = frozenset(kinds) if kinds is not None else frozenset(EntityKind)

    def _ordered_kinds(self) -> List[EntityKind]:
        return sorted(self.kinds, key=lambda kind: KIND_ORDER[kind])

    def build_local_manifest(self) -> Manifest:
        """Snapshot the local store as a Manifest.

        Deterministic for an unchanged store. When several local entities
        share a natural key the lowest id represents it here; the identity
        resolver reports the duplicate when the key is acted upon.
        """
        items: Dict[str, ManifestItem] = {}
        for kind in self._ordered_kinds():
            for entity in self.store.list_entities(kind):
                key = entity.natural_key
                if key in items:
                    logger.warning(f"Duplicate local entity for {key} (id {entity.id})")
                    continue
                items[key] = ManifestItem(
                    natural_key=key,
                    kind=kind,
                    content_hash=self.store.content_hash(entity),
                    version=entity.version,
                    last_modified_at=entity.updated_at or utc_now(),
                    last_modified_by=entity.modified_by or self.device_id,
                )

        for tombstone in self.store.list_tombstones():
            if tombstone.kind not in self.kinds or tombstone.natural_key in items:
                continue
            items[tombstone.natural_key] = ManifestItem(
                natural_key=tombstone.natural_key,
                kind=tombstone.kind,
                content_hash="",
                version=tombstone.version,
                last_modified_at=tombstone.deleted_at,
                last_modified_by=tombstone.modified_by or self.device_id,
                deleted=True,
            )

        return Manifest(global_version=0, modified_by=self.device_id, items=items)

    def fetch_remote_manifest(self) -> Optional[Manifest]:
        """GET the shared manifest. ``None`` means no manifest yet (first sync).

        Raises:
            ManifestCorruptionError: The manifest exists but is unusable.
            RemoteStoreError: Connectivity or auth failures from the backend.
        """
        try:
            raw = self.remote.get(MANIFEST_KEY)
        except ObjectNotFoundError:
            logger.info("No remote manifest found; treating remote as empty")
            return None
        return parse_manifest(raw)

    def diff(self, local: Manifest, remote: Manifest) -> List[SyncOperation]:
        """Ordered operations that bring both sides together.

        Every natural key of an enabled kind present on either side yields
        exactly one operation, Skip included. Deletions sort last.
        """
        operations = []
        for key in set(local.items) | set(remote.items):
            local_item = local.items.get(key)
            remote_item = remote.items.get(key)
            kind = (local_item or remote_item).kind
            if kind not in self.kinds:
                continue
            operations.append(
                SyncOperation(
                    op=_classify(local_item, remote_item),
                    natural_key=key,
                    local=local_item,
                    remote=remote_item,
                )
            )
        operations.sort(key=_operation_sort_key)
        return operations

    @staticmethod
    def prune_tombstones(
        items: Dict[str, ManifestItem], ttl_days: int, now: Optional[datetime] = None
    ) -> int:
        """Drop tombstones older than ``ttl_days`` in place. Returns how many."""
        if ttl_days <= 0:
            return 0
        cutoff = (now or utc_now()) - timedelta(days=ttl_days)
        expired = [
            key for key, item in items.items() if item.deleted and item.last_modified_at < cutoff
        ]
        for key in expired:
            del items[key]
        if expired:
            logger.info(f"Pruned {len(expired)} tombstones older than {ttl_days} days")
        return len(expired)

    def publish_remote(self, manifest: Manifest) -> None:
        """Replace the shared manifest. No lock: the last writer wins."""
        self.remote.put(MANIFEST_KEY, manifest.to_json().encode("utf-8"))
        logger.info(
            f"Published manifest v{manifest.global_version} with {len(manifest.items)} items"
        )

    def save_local(self, manifest: Manifest, synced_at: Optional[datetime] = None) -> None:
        """Record the manifest this device last agreed on, and when."""
        self.store.set_sync_meta(LOCAL_MANIFEST_META_KEY, manifest.to_json())
        self.store.set_sync_meta(LAST_SYNC_META_KEY, format_datetime(synced_at or utc_now()))

    def load_local(self) -> Optional[Manifest]:
        raw = self.store.get_sync_meta(LOCAL_MANIFEST_META_KEY)
        if not raw:
            return None
        try:
            return parse_manifest(raw.encode("utf-8"))
        except ManifestCorruptionError as e:
            logger.warning(f"Stored local manifest is unreadable: {e}")
            return None


__all__ = [
    "ManifestManager",
    "MANIFEST_SCHEMA",
    "parse_manifest",
    "local_wins",
]
