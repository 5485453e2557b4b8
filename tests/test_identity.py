"""Tests for IdentityResolver."""

import pytest

from boothsync.sync.identity import IdentityResolver
from boothsync.types import EntityKind, IdentityConflictError

from conftest import event, template


@pytest.fixture
def resolver(store):
    return IdentityResolver(store)


class TestResolve:
    def test_found(self, resolver, store):
        t = template("Gold")
        store.upsert_entity(t)
        assert resolver.resolve(EntityKind.TEMPLATE, "Gold") == t.id

    def test_missing(self, resolver):
        assert resolver.resolve(EntityKind.TEMPLATE, "Nope") is None

    def test_duplicate_raises_with_candidates(self, resolver, store):
        a, b = template("Gold"), template("Gold")
        store.upsert_entity(a)
        store.upsert_entity(b)
        with pytest.raises(IdentityConflictError) as exc:
            resolver.resolve(EntityKind.TEMPLATE, "Gold")
        assert exc.value.candidate_ids == [a.id, b.id]
        assert exc.value.natural_key == "template:Gold"

    def test_kind_scoped(self, resolver, store):
        store.upsert_entity(template("Gold"))
        assert resolver.resolve(EntityKind.EVENT, "Gold") is None


class TestResolveRefs:
    def test_fills_local_ids(self, resolver, store):
        t = template("Gold")
        store.upsert_entity(t)
        e = event("Gala", ["Gold", "Missing"])
        mappings = resolver.resolve_refs(e)
        assert e.refs[0].local_id == t.id
        assert e.refs[1].local_id is None
        assert [m.natural_key for m in mappings] == ["template:Gold"]

    def test_conflict_raised_after_others_fixed(self, resolver, store):
        store.upsert_entity(template("Dup"))
        store.upsert_entity(template("Dup"))
        good = template("Gold")
        store.upsert_entity(good)
        e = event("Gala", ["Dup", "Gold"])
        with pytest.raises(IdentityConflictError):
            resolver.resolve_refs(e)
        assert e.refs[1].local_id == good.id


class TestReconcileReferences:
    def test_reimported_template_is_relinked(self, resolver, store):
        """An event pointing at template id 5 follows the template to its new id."""
        for i in range(4):
            store.upsert_entity(template(f"filler-{i}"))
        original = template("Wedding")
        store.upsert_entity(original)
        assert original.id == 5

        gala = event("Smith Wedding", ["Wedding"])
        gala.refs[0].local_id = 5
        store.upsert_entity(gala)

        # Re-import: delete and recreate with a fresh id
        store.delete_entity(EntityKind.TEMPLATE, 5)
        for i in range(2):  # ids 7, 8 (the event took 6)
            store.upsert_entity(template(f"more-{i}"))
        reimported = template("Wedding")
        store.upsert_entity(reimported)
        assert reimported.id == 9

        report = resolver.reconcile_references()

        stored = store.get_entity(EntityKind.EVENT, gala.id)
        assert stored.refs[0].local_id == 9
        assert report.entities_updated == 1
        [mapping] = report.mappings
        assert (mapping.natural_key, mapping.remote_referenced_id, mapping.local_id) == (
            "template:Wedding",
            5,
            9,
        )

    def test_dangling_reference_is_cleared(self, resolver, store):
        t = template("Gold")
        store.upsert_entity(t)
        e = event("Gala", ["Gold"])
        e.refs[0].local_id = t.id
        store.upsert_entity(e)
        store.delete_entity(EntityKind.TEMPLATE, t.id)

        report = resolver.reconcile_references()

        assert store.get_entity(EntityKind.EVENT, e.id).refs[0].local_id is None
        assert report.dangling == [("event:Gala", "template:Gold")]

    def test_duplicate_target_reported_not_guessed(self, resolver, store):
        store.upsert_entity(template("Dup"))
        store.upsert_entity(template("Dup"))
        e = event("Gala", ["Dup"])
        store.upsert_entity(e)

        report = resolver.reconcile_references()

        assert store.get_entity(EntityKind.EVENT, e.id).refs[0].local_id is None
        [(owner, conflict)] = report.conflicts
        assert owner == "event:Gala"
        assert len(conflict.candidate_ids) == 2

    def test_already_correct_is_untouched(self, resolver, store):
        t = template("Gold")
        store.upsert_entity(t)
        e = event("Gala", ["Gold"])
        e.refs[0].local_id = t.id
        store.upsert_entity(e)
        report = resolver.reconcile_references()
        assert report.entities_updated == 0
        assert report.mappings == []
