"""Sync orchestration: one RunOnce from probe to published manifest.

A run walks ``IDLE -> CHECKING -> DIFFING -> TRANSFERRING -> RECONCILING
-> IDLE``. Any unexpected failure passes through ``ERROR`` and lands back on
``IDLE`` so the next trigger can always retry. Each operation in the plan is
applied on its own: one broken entity is recorded in the result and the run
moves on. Only an authentication failure stops the transfer early.
"""

import json
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from boothsync.storage.base import LocalStateStore, RemoteObjectStore
from boothsync.storage.remote import asset_file_name, asset_key, asset_prefix, entity_key
from boothsync.types import (
    AuthError,
    ConnectivityError,
    Entity,
    EntityKind,
    ErrorKind,
    IdentityConflictError,
    Manifest,
    ManifestCorruptionError,
    ManifestItem,
    ObjectNotFoundError,
    OutcomeStatus,
    RemoteStoreError,
    SyncOperation,
    SyncOpType,
    SyncResult,
    SyncState,
    sha256_hex,
    utc_now,
)

from .identity import IdentityResolver
from .manifest import ManifestManager
from .notifications import (
    EntityUpdating,
    NotificationBus,
    SyncCompleted,
    SyncFailed,
    SyncProgress,
    SyncStarted,
)

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Bounded exponential backoff for transient remote failures.

    Only ConnectivityError is retried. The delay before attempt ``n``
    (``n >= 2``) is ``min(base_delay * 2 ** (n - 2), max_delay)``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        if attempt < 2:
            return 0.0
        return min(self.base_delay * 2 ** (attempt - 2), self.max_delay)

    def call(self, fn: Callable, *args, description: str = "", **kwargs):
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except ConnectivityError as e:
                if attempt >= self.max_attempts:
                    raise
                attempt += 1
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description or getattr(fn, '__name__', 'remote call')} failed: {e}; "
                    f"retry {attempt}/{self.max_attempts} in {delay:.1f}s"
                )
                self._sleep(delay)


class _AbortRun(Exception):
    """Internal: stop the run, skip publication."""

    def __init__(self, error_kind: ErrorKind, message: str):
        super().__init__(message)
        self.error_kind = error_kind


class SyncOrchestrator:
    """Executes one sync run at a time against a local and a remote store.

    Args:
        store: This device's local state store.
        remote: Shared remote object store.
        bus: Where lifecycle events are published.
        device_id: Identifier stamped on everything this device writes.
        kinds: Entity kinds taking part in sync.
        retry: Retry policy for remote calls.
        run_timeout: Seconds a run may spend before the remaining
            operations are abandoned. ``None`` or 0 disables the bound.
        tombstone_ttl_days: Age after which deletion records are dropped
            from the published manifest.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: LocalStateStore,
        remote: RemoteObjectStore,
        bus: NotificationBus,
        device_id: str,
        kinds: Optional[Iterable[EntityKind]] = None,
        retry: Optional[RetryPolicy] = None,
        run_timeout: Optional[float] = 600.0,
        tombstone_ttl_days: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.remote = remote
        self.bus = bus
        self.device_id = device_id
        self.manifests = ManifestManager(store, remote, device_id, kinds)
        self.resolver = IdentityResolver(store)
        self.retry = retry or RetryPolicy()
        self.run_timeout = run_timeout
        self.tombstone_ttl_days = tombstone_ttl_days
        self._clock = clock
        self._state = SyncState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> SyncState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SyncState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        logger.debug(f"Sync state {previous.value} -> {state.value}")

    def _progress(self, message: str, percent: int) -> None:
        self.bus.publish(SyncProgress(message=message, percent=percent))

    # === Planning ===

    def _fetch_remote(self, result: SyncResult) -> tuple:
        """Remote manifest (empty when absent or corrupt) and whether it was corrupt."""
        try:
            remote = self.retry.call(
                self.manifests.fetch_remote_manifest, description="Fetching remote manifest"
            )
        except ManifestCorruptionError as e:
            logger.warning(f"Remote manifest is corrupt, treating remote as empty: {e}")
            result.add_error(None, ErrorKind.MANIFEST_CORRUPTION, str(e))
            return Manifest(), True
        return remote or Manifest(), False

    def plan(self) -> List[SyncOperation]:
        """Dry run: the operations the next run would apply. Touches nothing."""
        local = self.manifests.build_local_manifest()
        try:
            remote = self.manifests.fetch_remote_manifest() or Manifest()
        except ManifestCorruptionError as e:
            logger.warning(f"Remote manifest is corrupt: {e}")
            remote = Manifest()
        return self.manifests.diff(local, remote)

    # === Run ===

    def run_once(self) -> SyncResult:
        """Run a full sync and report what happened. Never raises."""
        result = SyncResult(started_at=utc_now())
        logger.info(f"Sync started on {self.device_id}")
        self.bus.publish(SyncStarted(device_id=self.device_id))

        try:
            self._run(result)
            self._set_state(SyncState.IDLE)
        except _AbortRun as e:
            result.aborted = True
            result.add_error(None, e.error_kind, str(e))
            logger.error(f"Sync aborted ({e.error_kind.value}): {e}")
            self.bus.publish(SyncFailed(error_kind=e.error_kind, message=str(e)))
            self._set_state(SyncState.ERROR)
            self._set_state(SyncState.IDLE)
        except Exception as e:
            result.add_error(None, ErrorKind.APPLY, f"Unexpected sync failure: {e}")
            logger.error(f"Unexpected sync failure: {e}", exc_info=True)
            self.bus.publish(SyncFailed(error_kind=ErrorKind.APPLY, message=str(e)))
            self._set_state(SyncState.ERROR)
            self._set_state(SyncState.IDLE)

        result.finished_at = utc_now()
        logger.info(
            f"Sync finished: changed={result.changed}, errors={len(result.errors)}, "
            f"globalVersion={result.global_version}"
        )
        self.bus.publish(SyncCompleted(result=result))
        return result

    def _run(self, result: SyncResult) -> None:
        deadline = self._clock() + self.run_timeout if self.run_timeout else None

        # Checking
        self._set_state(SyncState.CHECKING)
        self._progress("Checking remote store", 5)
        try:
            self.retry.call(self.remote.probe, description="Probing remote store")
            remote, corrupted = self._fetch_remote(result)
        except AuthError as e:
            raise _AbortRun(ErrorKind.AUTH, f"Remote store rejected credentials: {e}") from e
        except RemoteStoreError as e:
            raise _AbortRun(ErrorKind.CONNECTIVITY, f"Remote store unreachable: {e}") from e

        # Diffing
        self._set_state(SyncState.DIFFING)
        self._progress("Comparing manifests", 15)
        local = self.manifests.build_local_manifest()
        operations = self.manifests.diff(local, remote)
        logger.info(
            f"Planned {sum(1 for op in operations if op.op != SyncOpType.SKIP)} changes "
            f"across {len(operations)} items"
        )

        # Transferring
        self._set_state(SyncState.TRANSFERRING)
        published: Dict[str, ManifestItem] = dict(remote.items)
        total = len(operations) or 1
        for index, operation in enumerate(operations):
            if deadline is not None and self._clock() > deadline:
                remaining = len(operations) - index
                message = f"Run exceeded {self.run_timeout}s; {remaining} operations not attempted"
                logger.warning(message)
                result.add_error(None, ErrorKind.TIMEOUT, message)
                break
            self._progress(
                f"{operation.op.value} {operation.natural_key}", 20 + (60 * index) // total
            )
            self._apply_one(operation, published, result)

        # Reconciling
        self._set_state(SyncState.RECONCILING)
        self._progress("Reconciling references", 85)
        report = self.resolver.reconcile_references()
        reported = {
            e.natural_key for e in result.errors if e.kind == ErrorKind.IDENTITY_CONFLICT
        }
        for owner, conflict in report.conflicts:
            if owner in reported:
                continue
            result.add_error(owner, ErrorKind.IDENTITY_CONFLICT, str(conflict))

        ManifestManager.prune_tombstones(published, self.tombstone_ttl_days)
        # Downloads alone leave the shared manifest as it was
        if published != remote.items or corrupted:
            manifest = Manifest(
                global_version=remote.global_version + 1,
                modified_by=self.device_id,
                items=published,
            )
            try:
                self.retry.call(
                    self.manifests.publish_remote, manifest, description="Publishing manifest"
                )
            except AuthError as e:
                raise _AbortRun(ErrorKind.AUTH, f"Manifest publish rejected: {e}") from e
            except RemoteStoreError as e:
                logger.error(f"Manifest publish failed: {e}")
                result.add_error(None, ErrorKind.CONNECTIVITY, f"Manifest publish failed: {e}")
                result.global_version = remote.global_version
                self._progress("Sync finished with errors", 100)
                return
        else:
            manifest = remote

        result.global_version = manifest.global_version
        self.manifests.save_local(manifest, synced_at=utc_now())
        self._progress("Sync complete", 100)

    # === Per-operation ===

    def _apply_one(
        self, operation: SyncOperation, published: Dict[str, ManifestItem], result: SyncResult
    ) -> None:
        key = operation.natural_key
        try:
            status = self.retry.call(
                self._apply,
                operation,
                published,
                result,
                description=f"{operation.op.value} {key}",
            )
            result.record(operation, status)
            logger.debug(f"{operation.op.value} {key}: {status.value}")
        except AuthError as e:
            result.record(operation, OutcomeStatus.FAILED)
            raise _AbortRun(ErrorKind.AUTH, f"Remote store rejected credentials: {e}") from e
        except IdentityConflictError as e:
            logger.warning(f"Skipping {key}: {e}")
            result.record(operation, OutcomeStatus.SKIPPED)
            result.add_error(key, ErrorKind.IDENTITY_CONFLICT, str(e))
        except ObjectNotFoundError as e:
            logger.error(f"{operation.op.value} {key} failed: {e}")
            result.record(operation, OutcomeStatus.FAILED)
            result.add_error(key, ErrorKind.APPLY, str(e))
        except RemoteStoreError as e:
            logger.error(f"{operation.op.value} {key} failed after retries: {e}")
            result.record(operation, OutcomeStatus.FAILED)
            result.add_error(key, ErrorKind.CONNECTIVITY, str(e))
        except Exception as e:
            logger.error(f"{operation.op.value} {key} failed: {e}", exc_info=True)
            result.record(operation, OutcomeStatus.FAILED)
            result.add_error(key, ErrorKind.APPLY, str(e))

    def _apply(
        self,
        operation: SyncOperation,
        published: Dict[str, ManifestItem],
        result: SyncResult,
    ) -> OutcomeStatus:
        op = operation.op
        if op.is_upload:
            return self._upload(operation, published)
        if op.is_download:
            return self._download(operation, result)
        if op == SyncOpType.DELETE_REMOTE:
            return self._delete_remote(operation, published)
        if op == SyncOpType.DELETE_LOCAL:
            return self._delete_local(operation)
        if operation.local is not None and operation.local.deleted:
            # Nothing left to propagate
            self.store.clear_tombstone(operation.kind, operation.name)
        return OutcomeStatus.SKIPPED

    def _local_entity(self, kind: EntityKind, name: str) -> Optional[Entity]:
        local_id = self.resolver.resolve(kind, name)
        if local_id is None:
            return None
        return self.store.get_entity(kind, local_id)

    def _upload(self, operation: SyncOperation, published: Dict[str, ManifestItem]) -> OutcomeStatus:
        kind, name = operation.kind, operation.name
        entity = self._local_entity(kind, name)
        if entity is None:
            raise ValueError(f"{operation.natural_key} disappeared from the local store")

        version = entity.version
        if operation.remote is not None:
            version = max(entity.version, operation.remote.version + 1)

        if kind == EntityKind.TEMPLATE:
            for file_name, blob in sorted(entity.assets.items()):
                self.remote.put(asset_key(name, file_name), blob)

        entity.version = version
        self.remote.put(
            entity_key(kind, name),
            json.dumps(entity.to_document(), sort_keys=True).encode("utf-8"),
        )

        if kind == EntityKind.TEMPLATE:
            for key in self.remote.list(asset_prefix(name)):
                if asset_file_name(key) not in entity.assets:
                    self.remote.delete(key)

        self.store.stamp_version(kind, entity.id, version)
        published[operation.natural_key] = ManifestItem(
            natural_key=operation.natural_key,
            kind=kind,
            content_hash=self.store.content_hash(entity),
            version=version,
            last_modified_at=entity.updated_at or utc_now(),
            last_modified_by=entity.modified_by or self.device_id,
        )
        return OutcomeStatus.CREATED if operation.op == SyncOpType.UPLOAD_NEW else OutcomeStatus.UPDATED

    def _download(self, operation: SyncOperation, result: SyncResult) -> OutcomeStatus:
        kind, name = operation.kind, operation.name
        item = operation.remote
        document = json.loads(self.remote.get(entity_key(kind, name)).decode("utf-8"))
        incoming = Entity.from_document(document)
        if incoming.kind != kind or incoming.name != name:
            raise ValueError(
                f"Object for {operation.natural_key} describes {incoming.natural_key}"
            )

        for file_name, expected in sorted((document.get("assets") or {}).items()):
            blob = self.remote.get(asset_key(name, file_name))
            if sha256_hex(blob) != expected:
                raise ConnectivityError(f"Asset {file_name} of {name} does not match its checksum yet")
            incoming.assets[file_name] = blob

        if incoming.content_hash != item.content_hash:
            # Object not yet consistent with the manifest that announced it
            raise ConnectivityError(f"{operation.natural_key} does not match the manifest yet")

        existing_id = self.resolver.resolve(kind, name)
        incoming.id = existing_id
        try:
            self.resolver.resolve_refs(incoming)
        except IdentityConflictError as e:
            # Applied anyway; the ambiguous reference stays unresolved
            logger.warning(f"{operation.natural_key}: {e}")
            result.add_error(operation.natural_key, ErrorKind.IDENTITY_CONFLICT, str(e))

        incoming.version = item.version
        incoming.updated_at = item.last_modified_at
        incoming.modified_by = item.last_modified_by

        created = existing_id is None
        self.bus.publish(
            EntityUpdating(
                kind=kind,
                natural_key=operation.natural_key,
                update_type="added" if created else "modified",
                message=f"{'Adding' if created else 'Updating'} {kind.value} {name}",
            )
        )
        self.store.upsert_entity(incoming, sync_metadata=True)
        return OutcomeStatus.CREATED if created else OutcomeStatus.UPDATED

    def _delete_remote(
        self, operation: SyncOperation, published: Dict[str, ManifestItem]
    ) -> OutcomeStatus:
        kind, name = operation.kind, operation.name
        local, remote = operation.local, operation.remote

        self.remote.delete(entity_key(kind, name))
        if kind == EntityKind.TEMPLATE:
            for key in self.remote.list(asset_prefix(name)):
                self.remote.delete(key)

        published[operation.natural_key] = ManifestItem(
            natural_key=operation.natural_key,
            kind=kind,
            content_hash="",
            version=max(local.version, remote.version + 1),
            last_modified_at=local.last_modified_at,
            last_modified_by=local.last_modified_by,
            deleted=True,
        )
        self.store.clear_tombstone(kind, name)
        return OutcomeStatus.DELETED

    def _delete_local(self, operation: SyncOperation) -> OutcomeStatus:
        kind, name = operation.kind, operation.name
        local_id = self.resolver.resolve(kind, name)
        if local_id is None:
            return OutcomeStatus.SKIPPED
        self.bus.publish(
            EntityUpdating(
                kind=kind,
                natural_key=operation.natural_key,
                update_type="deleted",
                message=f"Removing {kind.value} {name}",
            )
        )
        self.store.delete_entity(kind, local_id)
        return OutcomeStatus.DELETED
