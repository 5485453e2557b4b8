"""Identity resolution by natural key.

Local integer ids are reassigned whenever an entity is re-imported, so
cross-entity references (an event's templates) are stored by name and the
numeric id is re-derived from the current store contents on every sync.
Nothing here is persisted; a stale mapping cannot outlive a re-import.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from boothsync.storage.base import LocalStateStore
from boothsync.types import (
    Entity,
    EntityKind,
    IdentityConflictError,
    IdentityMapping,
    make_natural_key,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """What a reference-repair pass changed or could not fix."""

    mappings: List[IdentityMapping] = field(default_factory=list)  # rewritten refs
    conflicts: List[Tuple[str, IdentityConflictError]] = field(default_factory=list)
    dangling: List[Tuple[str, str]] = field(default_factory=list)  # (owner, target)
    entities_updated: int = 0


class IdentityResolver:
    """Maps natural keys to this device's local ids."""

    def __init__(self, store: LocalStateStore):
        self.store = store

    def resolve(self, kind: EntityKind, name: str) -> Optional[int]:
        """Local id of the entity ``(kind, name)``, or None if absent.

        Raises:
            IdentityConflictError: Several local entities share the name.
        """
        matches = self.store.find_by_name(kind, name)
        if len(matches) > 1:
            raise IdentityConflictError(
                make_natural_key(kind, name), [entity.id for entity in matches]
            )
        return matches[0].id if matches else None

    def _index(self, kind: EntityKind) -> Tuple[Dict[str, int], Dict[str, List[int]]]:
        ids: Dict[str, int] = {}
        duplicates: Dict[str, List[int]] = {}
        for entity in self.store.list_entities(kind):
            if entity.name in ids:
                duplicates.setdefault(entity.name, [ids[entity.name]]).append(entity.id)
            else:
                ids[entity.name] = entity.id
        return ids, duplicates

    def resolve_refs(self, entity: Entity) -> List[IdentityMapping]:
        """Point each of ``entity``'s references at the current local id.

        Ambiguous targets are left untouched and raise after the others are
        fixed; missing targets are cleared. Returns the rewritten mappings.
        """
        changed: List[IdentityMapping] = []
        conflict: Optional[IdentityConflictError] = None
        for ref in entity.refs:
            try:
                local_id = self.resolve(ref.kind, ref.name)
            except IdentityConflictError as e:
                conflict = conflict or e
                continue
            if local_id != ref.local_id:
                if local_id is not None:
                    changed.append(
                        IdentityMapping(
                            natural_key=ref.natural_key,
                            local_id=local_id,
                            remote_referenced_id=ref.local_id,
                        )
                    )
                ref.local_id = local_id
        if conflict is not None:
            raise conflict
        return changed

    def reconcile_references(self) -> ReconcileReport:
        """Rewrite every stored reference to the id its natural key resolves to now.

        Reads each referenced kind once. References to entities that no
        longer exist locally are cleared rather than left pointing at a
        reused or stale id.
        """
        report = ReconcileReport()
        indexes: Dict[EntityKind, Tuple[Dict[str, int], Dict[str, List[int]]]] = {}

        for kind in EntityKind:
            for entity in self.store.list_entities(kind):
                if not entity.refs:
                    continue
                dirty = False
                for ref in entity.refs:
                    if ref.kind not in indexes:
                        indexes[ref.kind] = self._index(ref.kind)
                    ids, duplicates = indexes[ref.kind]

                    if ref.name in duplicates:
                        error = IdentityConflictError(ref.natural_key, duplicates[ref.name])
                        report.conflicts.append((entity.natural_key, error))
                        logger.warning(f"{entity.natural_key}: {error}")
                        continue

                    local_id = ids.get(ref.name)
                    if local_id is None:
                        if ref.local_id is not None:
                            logger.warning(
                                f"{entity.natural_key} references missing {ref.natural_key} "
                                f"(was id {ref.local_id}); clearing"
                            )
                            ref.local_id = None
                            dirty = True
                        report.dangling.append((entity.natural_key, ref.natural_key))
                        continue

                    if local_id != ref.local_id:
                        logger.info(
                            f"{entity.natural_key}: {ref.natural_key} id {ref.local_id} -> {local_id}"
                        )
                        report.mappings.append(
                            IdentityMapping(
                                natural_key=ref.natural_key,
                                local_id=local_id,
                                remote_referenced_id=ref.local_id,
                            )
                        )
                        ref.local_id = local_id
                        dirty = True

                if dirty:
                    self.store.update_refs(entity)
                    report.entities_updated += 1

        return report
