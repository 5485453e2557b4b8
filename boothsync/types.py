"""
Shared sync types for boothsync.

All dataclasses that cross component boundaries live here: entities as the
local store sees them, manifest items as the remote store sees them, the
operations the diff produces and the result the orchestrator reports. They
are the contract between storage, sync and the CLI.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO8601 string, normalising naive values to UTC."""
    if not s:
        return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO8601 UTC with a trailing Z."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def canonical_json(data: Any) -> str:
    """Deterministic JSON used for hashing."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


# === Enums ===


class EntityKind(str, Enum):
    """Kinds of entity kept in sync between devices.

    Declaration order is processing order: events reference templates,
    so templates must land first.
    """

    TEMPLATE = "template"
    EVENT = "event"
    SETTING = "setting"


KIND_ORDER = {kind: index for index, kind in enumerate(EntityKind)}


class SyncOpType(str, Enum):
    """What a single sync operation does to one natural key."""

    UPLOAD_NEW = "upload_new"
    UPLOAD_UPDATE = "upload_update"
    DOWNLOAD_NEW = "download_new"
    DOWNLOAD_UPDATE = "download_update"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"
    SKIP = "skip"

    @property
    def is_delete(self) -> bool:
        return self in (SyncOpType.DELETE_LOCAL, SyncOpType.DELETE_REMOTE)

    @property
    def is_upload(self) -> bool:
        return self in (SyncOpType.UPLOAD_NEW, SyncOpType.UPLOAD_UPDATE)

    @property
    def is_download(self) -> bool:
        return self in (SyncOpType.DOWNLOAD_NEW, SyncOpType.DOWNLOAD_UPDATE)


class ErrorKind(str, Enum):
    """Error taxonomy reported in SyncResult.errors."""

    CONNECTIVITY = "connectivity"  # Transient network / remote 5xx, retried first
    AUTH = "auth"  # Invalid or expired credentials, aborts the run
    IDENTITY_CONFLICT = "identity_conflict"  # Duplicate natural keys locally
    MANIFEST_CORRUPTION = "manifest_corruption"  # Remote manifest unparsable
    APPLY = "apply"  # Non-transient failure applying one item
    TIMEOUT = "timeout"  # Whole-run deadline exceeded


class OutcomeStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncState(str, Enum):
    """Orchestrator state machine. ERROR always falls back to IDLE."""

    IDLE = "idle"
    CHECKING = "checking"
    DIFFING = "diffing"
    TRANSFERRING = "transferring"
    RECONCILING = "reconciling"
    ERROR = "error"


# === Exceptions ===


class SyncError(Exception):
    """Base exception for boothsync."""


class ConfigError(SyncError):
    """Raised when configuration is missing or invalid."""


class RemoteStoreError(SyncError):
    """Base class for failures talking to the remote object store."""


class ConnectivityError(RemoteStoreError):
    """Transient failure: timeout, connection refused, 5xx, throttling."""


class AuthError(RemoteStoreError):
    """Credentials were rejected. Never retried."""


class ObjectNotFoundError(RemoteStoreError):
    """The requested key does not exist."""

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


class ManifestCorruptionError(SyncError):
    """The remote manifest could not be parsed or failed validation."""


class IdentityConflictError(SyncError):
    """More than one local entity claims the same natural key."""

    def __init__(self, natural_key: str, candidate_ids: List[int]):
        ids = ", ".join(str(i) for i in candidate_ids)
        super().__init__(f"Duplicate local entities for {natural_key}: ids {ids}")
        self.natural_key = natural_key
        self.candidate_ids = list(candidate_ids)


# === Entities ===


def make_natural_key(kind: EntityKind, name: str) -> str:
    return f"{EntityKind(kind).value}:{name}"


def split_natural_key(natural_key: str) -> tuple:
    """Split ``"<kind>:<name>"`` into (EntityKind, name)."""
    kind, sep, name = natural_key.partition(":")
    if not sep or not name:
        raise ValueError(f"Invalid natural key: {natural_key!r}")
    return EntityKind(kind), name


@dataclass
class EntityRef:
    """A by-name reference from one entity to another.

    ``local_id`` is only meaningful on the device that wrote it.
    """

    kind: EntityKind
    name: str
    local_id: Optional[int] = None

    @property
    def natural_key(self) -> str:
        return make_natural_key(self.kind, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "name": self.name, "local_id": self.local_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityRef":
        return cls(
            kind=EntityKind(data["kind"]),
            name=data["name"],
            local_id=data.get("local_id"),
        )


@dataclass
class Entity:
    """A template, event or setting as held by the local store."""

    kind: EntityKind
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    refs: List[EntityRef] = field(default_factory=list)
    assets: Dict[str, bytes] = field(default_factory=dict)  # templates only
    version: int = 1
    updated_at: Optional[datetime] = None
    modified_by: Optional[str] = None

    @property
    def natural_key(self) -> str:
        return make_natural_key(self.kind, self.name)

    def semantic_fields(self) -> Dict[str, Any]:
        """Fields that define the entity's content. Local ids are excluded."""
        return {
            "kind": self.kind.value,
            "name": self.name,
            "data": self.data,
            "refs": sorted([ref.kind.value, ref.name] for ref in self.refs),
            "assets": {name: sha256_hex(blob) for name, blob in sorted(self.assets.items())},
        }

    @property
    def content_hash(self) -> str:
        return sha256_hex(canonical_json(self.semantic_fields()).encode("utf-8"))

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the remote store. Asset bytes travel as separate objects."""
        return {
            "kind": self.kind.value,
            "name": self.name,
            "data": self.data,
            "refs": [{"kind": ref.kind.value, "name": ref.name} for ref in self.refs],
            "assets": {name: sha256_hex(blob) for name, blob in sorted(self.assets.items())},
            "version": self.version,
            "updatedAt": format_datetime(self.updated_at),
            "modifiedBy": self.modified_by,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Entity":
        """Inverse of to_document, without asset bytes."""
        return cls(
            kind=EntityKind(doc["kind"]),
            name=doc["name"],
            data=dict(doc.get("data") or {}),
            refs=[EntityRef(kind=EntityKind(r["kind"]), name=r["name"]) for r in doc.get("refs") or []],
            version=int(doc.get("version") or 1),
            updated_at=parse_datetime(doc.get("updatedAt")),
            modified_by=doc.get("modifiedBy"),
        )


@dataclass
class Tombstone:
    """Record of a deletion that should propagate to other devices."""

    kind: EntityKind
    name: str
    deleted_at: datetime
    modified_by: Optional[str] = None
    version: int = 1

    @property
    def natural_key(self) -> str:
        return make_natural_key(self.kind, self.name)


# === Manifest ===


@dataclass
class ManifestItem:
    """Sync-relevant metadata for one entity."""

    natural_key: str
    kind: EntityKind
    content_hash: str
    version: int
    last_modified_at: datetime
    last_modified_by: str
    deleted: bool = False

    @property
    def name(self) -> str:
        return split_natural_key(self.natural_key)[1]

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "naturalKey": self.natural_key,
            "kind": self.kind.value,
            "contentHash": self.content_hash,
            "version": self.version,
            "lastModifiedAt": format_datetime(self.last_modified_at),
            "lastModifiedBy": self.last_modified_by,
        }
        if self.deleted:
            payload["deleted"] = True
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestItem":
        return cls(
            natural_key=data["naturalKey"],
            kind=EntityKind(data["kind"]),
            content_hash=data["contentHash"],
            version=int(data["version"]),
            last_modified_at=parse_datetime(data["lastModifiedAt"]),
            last_modified_by=data["lastModifiedBy"],
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class Manifest:
    """Versioned index of every synchronized entity."""

    global_version: int = 0
    modified_by: str = ""
    items: Dict[str, ManifestItem] = field(default_factory=dict)

    def live_items(self) -> Dict[str, ManifestItem]:
        return {key: item for key, item in self.items.items() if not item.deleted}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "globalVersion": self.global_version,
            "modifiedBy": self.modified_by,
            "items": [self.items[key].to_dict() for key in sorted(self.items)],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        items: Dict[str, ManifestItem] = {}
        for raw in data.get("items", []):
            item = ManifestItem.from_dict(raw)
            if item.natural_key in items:
                raise ManifestCorruptionError(f"Duplicate naturalKey in manifest: {item.natural_key}")
            items[item.natural_key] = item
        return cls(
            global_version=int(data.get("globalVersion", 0)),
            modified_by=data.get("modifiedBy", ""),
            items=items,
        )


# === Operations and Results ===


@dataclass
class SyncOperation:
    """One step of a sync plan, carrying both sides of the comparison."""

    op: SyncOpType
    natural_key: str
    local: Optional[ManifestItem] = None
    remote: Optional[ManifestItem] = None

    @property
    def kind(self) -> EntityKind:
        return split_natural_key(self.natural_key)[0]

    @property
    def name(self) -> str:
        return split_natural_key(self.natural_key)[1]


@dataclass
class IdentityMapping:
    """Transient link between a natural key and this device's local id."""

    natural_key: str
    local_id: int
    remote_referenced_id: Optional[int] = None


@dataclass
class KindCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class SyncErrorEntry:
    natural_key: Optional[str]  # None for run-level errors
    kind: ErrorKind
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"natural_key": self.natural_key, "kind": self.kind.value, "message": self.message}


@dataclass
class ItemOutcome:
    natural_key: str
    op: SyncOpType
    status: OutcomeStatus


@dataclass
class SyncResult:
    """Everything one sync run did, item by item."""

    counts: Dict[EntityKind, KindCounts] = field(
        default_factory=lambda: {kind: KindCounts() for kind in EntityKind}
    )
    errors: List[SyncErrorEntry] = field(default_factory=list)
    outcomes: List[ItemOutcome] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    global_version: Optional[int] = None  # Manifest version after the run
    aborted: bool = False

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def partial_failure(self) -> bool:
        failed = any(o.status == OutcomeStatus.FAILED for o in self.outcomes)
        succeeded = any(
            o.status not in (OutcomeStatus.FAILED, OutcomeStatus.SKIPPED) for o in self.outcomes
        )
        return failed and succeeded

    @property
    def changed(self) -> bool:
        return any(
            o.status in (OutcomeStatus.CREATED, OutcomeStatus.UPDATED, OutcomeStatus.DELETED)
            for o in self.outcomes
        )

    def record(self, op: SyncOperation, status: OutcomeStatus) -> None:
        counts = self.counts[op.kind]
        setattr(counts, status.value, getattr(counts, status.value) + 1)
        self.outcomes.append(ItemOutcome(natural_key=op.natural_key, op=op.op, status=status))

    def add_error(self, natural_key: Optional[str], kind: ErrorKind, message: str) -> None:
        self.errors.append(SyncErrorEntry(natural_key=natural_key, kind=kind, message=message))

    def outcome_for(self, natural_key: str) -> Optional[ItemOutcome]:
        for outcome in self.outcomes:
            if outcome.natural_key == natural_key:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "aborted": self.aborted,
            "global_version": self.global_version,
            "started_at": format_datetime(self.started_at),
            "finished_at": format_datetime(self.finished_at),
            "counts": {kind.value: counts.to_dict() for kind, counts in self.counts.items()},
            "errors": [error.to_dict() for error in self.errors],
            "outcomes": [
                {"natural_key": o.natural_key, "op": o.op.value, "status": o.status.value}
                for o in self.outcomes
            ],
        }
