"""Tests for SyncOrchestrator and RetryPolicy."""

import itertools
import json
from datetime import timedelta

import pytest

from boothsync.storage import MANIFEST_KEY, asset_key, asset_prefix, entity_key
from boothsync.sync.manifest import ManifestManager
from boothsync.sync.notifications import (
    EntityUpdating,
    SyncCompleted,
    SyncFailed,
    SyncProgress,
    SyncStarted,
)
from boothsync.sync.orchestrator import RetryPolicy
from boothsync.types import (
    AuthError,
    ConnectivityError,
    EntityKind,
    ErrorKind,
    Manifest,
    ManifestItem,
    OutcomeStatus,
    SyncOpType,
    SyncState,
    utc_now,
)

from conftest import event, setting, template


def statuses(result):
    return {o.natural_key: o.status for o in result.outcomes}


def remote_manifest(remote):
    return Manifest.from_dict(json.loads(remote.get(MANIFEST_KEY)))


class TestRetryPolicy:
    def test_delays_double_up_to_cap(self):
        policy = RetryPolicy(max_attempts=6, base_delay=0.5, max_delay=2.0)
        assert [policy.delay_for(n) for n in range(1, 7)] == [0.0, 0.5, 1.0, 2.0, 2.0, 2.0]

    def test_retries_connectivity_then_succeeds(self, retry, sleeps):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectivityError("blip")
            return "ok"

        assert retry.call(flaky) == "ok"
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self, retry, sleeps):
        calls = []

        def down():
            calls.append(1)
            raise ConnectivityError("down")

        with pytest.raises(ConnectivityError):
            retry.call(down)
        assert len(calls) == 3

    def test_auth_not_retried(self, retry, sleeps):
        calls = []

        def denied():
            calls.append(1)
            raise AuthError("nope")

        with pytest.raises(AuthError):
            retry.call(denied)
        assert calls == [1]
        assert sleeps == []

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestFirstSync:
    def test_uploads_everything(self, store, remote, make_orchestrator):
        store.upsert_entity(template("Gold", assets={"bg.png": b"\x89PNG"}))
        store.upsert_entity(event("Gala", ["Gold"]))
        store.upsert_entity(setting("countdown", 3))

        result = make_orchestrator(store, remote).run_once()

        assert result.success
        assert result.global_version == 1
        assert statuses(result) == {
            "template:Gold": OutcomeStatus.CREATED,
            "event:Gala": OutcomeStatus.CREATED,
            "setting:countdown": OutcomeStatus.CREATED,
        }
        assert entity_key(EntityKind.TEMPLATE, "Gold") in remote
        assert remote.get(asset_key("Gold", "bg.png")) == b"\x89PNG"
        published = remote_manifest(remote)
        assert published.global_version == 1
        assert published.modified_by == "BOOTH-A-000001"
        assert set(published.items) == {"template:Gold", "event:Gala", "setting:countdown"}
        assert store.get_last_sync_time() is not None

    def test_empty_everywhere_publishes_nothing(self, store, remote, make_orchestrator):
        result = make_orchestrator(store, remote).run_once()
        assert result.success
        assert MANIFEST_KEY not in remote

    def test_disabled_kind_not_synced(self, store, remote, make_orchestrator):
        store.upsert_entity(template("Gold"))
        store.upsert_entity(setting("countdown", 3))
        make_orchestrator(store, remote, kinds=[EntityKind.TEMPLATE]).run_once()
        assert set(remote_manifest(remote).items) == {"template:Gold"}


class TestIdempotence:
    def test_second_run_is_all_skip(self, store, remote, make_orchestrator):
        store.upsert_entity(template("Gold", assets={"bg.png": b"x"}))
        store.upsert_entity(event("Gala", ["Gold"]))
        orchestrator = make_orchestrator(store, remote)

        first = orchestrator.run_once()
        manifest_after_first = remote.get(MANIFEST_KEY)
        second = orchestrator.run_once()

        assert first.changed
        assert second.success
        assert {o.op for o in second.outcomes} == {SyncOpType.SKIP}
        assert second.global_version == first.global_version
        assert remote.get(MANIFEST_KEY) == manifest_after_first

    def test_download_side_is_idempotent_too(
        self, store, other_store, remote, make_orchestrator
    ):
        store.upsert_entity(template("Gold"))
        make_orchestrator(store, remote).run_once()
        booth_b = make_orchestrator(other_store, remote)

        booth_b.run_once()
        again = booth_b.run_once()

        assert {o.op for o in again.outcomes} == {SyncOpType.SKIP}
        assert remote_manifest(remote).global_version == 1


class TestTwoDevices:
    def test_download_to_second_device(self, store, other_store, remote, make_orchestrator):
        store.upsert_entity(template("Gold", assets={"bg.png": b"png"}))
        store.upsert_entity(event("Gala", ["Gold"]))
        make_orchestrator(store, remote).run_once()

        result = make_orchestrator(other_store, remote).run_once()

        assert result.success
        assert result.counts[EntityKind.TEMPLATE].created == 1
        [gold] = other_store.list_entities(EntityKind.TEMPLATE)
        [gala] = other_store.list_entities(EntityKind.EVENT)
        assert gold.assets == {"bg.png": b"png"}
        assert gala.refs[0].local_id == gold.id
        assert gold.content_hash == store.list_entities(EntityKind.TEMPLATE)[0].content_hash
        assert gold.modified_by == "BOOTH-A-000001"

    def test_event_relinked_to_reimported_template(
        self, store, other_store, remote, make_orchestrator
    ):
        """Booth A's event points at template id 5; booth B holds it as id 9."""
        for i in range(4):
            store.upsert_entity(setting(f"a-{i}", i))
        wedding = template("Wedding")
        store.upsert_entity(wedding)
        assert wedding.id == 5
        gala = event("Smith Wedding", ["Wedding"])
        gala.refs[0].local_id = 5
        store.upsert_entity(gala)
        make_orchestrator(store, remote).run_once()

        for i in range(8):
            other_store.upsert_entity(setting(f"b-{i}", i))
        local_wedding = template("Wedding")
        other_store.upsert_entity(local_wedding)
        assert local_wedding.id == 9

        result = make_orchestrator(other_store, remote).run_once()

        assert result.outcome_for("template:Wedding").status == OutcomeStatus.SKIPPED
        [downloaded] = other_store.list_entities(EntityKind.EVENT)
        assert downloaded.refs[0].local_id == 9

    def test_later_edit_wins_on_both_devices(self, store, other_store, remote, make_orchestrator):
        store.upsert_entity(template("Gold", layout="original"))
        booth_a = make_orchestrator(store, remote)
        booth_b = make_orchestrator(other_store, remote)
        booth_a.run_once()
        booth_b.run_once()

        [a_copy] = store.list_entities(EntityKind.TEMPLATE)
        a_copy.data["layout"] = "from-a"
        store.upsert_entity(a_copy)
        [b_copy] = other_store.list_entities(EntityKind.TEMPLATE)
        b_copy.data["layout"] = "from-b"
        other_store.upsert_entity(b_copy)

        assert booth_a.run_once().outcome_for("template:Gold").op == SyncOpType.UPLOAD_UPDATE
        assert booth_b.run_once().outcome_for("template:Gold").op == SyncOpType.UPLOAD_UPDATE
        assert booth_a.run_once().outcome_for("template:Gold").op == SyncOpType.DOWNLOAD_UPDATE

        assert store.list_entities(EntityKind.TEMPLATE)[0].data["layout"] == "from-b"
        assert other_store.list_entities(EntityKind.TEMPLATE)[0].data["layout"] == "from-b"
        assert remote_manifest(remote).items["template:Gold"].version == 3

    def test_updated_template_drops_stale_assets(self, store, remote, make_orchestrator):
        gold = template("Gold", assets={"a.png": b"a", "b.png": b"b"})
        store.upsert_entity(gold)
        orchestrator = make_orchestrator(store, remote)
        orchestrator.run_once()

        gold.assets = {"a.png": b"a2"}
        store.upsert_entity(gold)
        orchestrator.run_once()

        assert remote.list(asset_prefix("Gold")) == [asset_key("Gold", "a.png")]
        assert remote.get(asset_key("Gold", "a.png")) == b"a2"


class TestDeletion:
    def test_local_wipe_is_restored(self, store, remote, make_orchestrator):
        gold = template("Gold", assets={"bg.png": b"png"})
        store.upsert_entity(gold)
        orchestrator = make_orchestrator(store, remote)
        orchestrator.run_once()
        original_hash = gold.content_hash

        store.delete_entity(EntityKind.TEMPLATE, gold.id)
        result = orchestrator.run_once()

        assert result.outcome_for("template:Gold").op == SyncOpType.DOWNLOAD_NEW
        [restored] = store.list_entities(EntityKind.TEMPLATE)
        assert restored.content_hash == original_hash
        assert restored.id != gold.id

    def test_propagated_delete_reaches_other_device(
        self, store, other_store, remote, make_orchestrator
    ):
        gold = template("Gold", assets={"bg.png": b"png"})
        store.upsert_entity(gold)
        booth_a = make_orchestrator(store, remote)
        booth_b = make_orchestrator(other_store, remote)
        booth_a.run_once()
        booth_b.run_once()

        store.delete_entity(EntityKind.TEMPLATE, gold.id, propagate=True)
        result_a = booth_a.run_once()

        assert result_a.outcome_for("template:Gold").status == OutcomeStatus.DELETED
        assert entity_key(EntityKind.TEMPLATE, "Gold") not in remote
        assert remote.list(asset_prefix("Gold")) == []
        assert remote_manifest(remote).items["template:Gold"].deleted
        assert store.list_tombstones() == []

        result_b = booth_b.run_once()

        assert result_b.outcome_for("template:Gold").op == SyncOpType.DELETE_LOCAL
        assert other_store.list_entities(EntityKind.TEMPLATE) == []
        # Settled: neither side does anything more
        assert {o.op for o in booth_a.run_once().outcomes} == {SyncOpType.SKIP}

    def test_expired_tombstones_pruned(self, store, remote, make_orchestrator):
        old = ManifestItem(
            natural_key="template:Ancient",
            kind=EntityKind.TEMPLATE,
            content_hash="",
            version=3,
            last_modified_at=utc_now() - timedelta(days=45),
            last_modified_by="BOOTH-Z",
            deleted=True,
        )
        ManifestManager(store, remote, "BOOTH-Z").publish_remote(
            Manifest(global_version=7, modified_by="BOOTH-Z", items={old.natural_key: old})
        )

        result = make_orchestrator(store, remote).run_once()

        assert result.global_version == 8
        assert remote_manifest(remote).items == {}


class TestFailures:
    def test_partial_failure_other_items_still_sync(
        self, store, flaky, remote, make_orchestrator, sleeps
    ):
        for name in ("T1", "T2", "T3"):
            store.upsert_entity(template(name))
        flaky.fail("put", entity_key(EntityKind.TEMPLATE, "T2"), ConnectivityError("503"))

        result = make_orchestrator(store, flaky).run_once()

        assert statuses(result) == {
            "template:T1": OutcomeStatus.CREATED,
            "template:T2": OutcomeStatus.FAILED,
            "template:T3": OutcomeStatus.CREATED,
        }
        assert not result.success
        assert result.partial_failure
        [error] = result.errors
        assert (error.natural_key, error.kind) == ("template:T2", ErrorKind.CONNECTIVITY)
        assert sleeps == [0.5, 1.0]
        assert set(remote_manifest(remote).items) == {"template:T1", "template:T3"}

        # Next run picks up the straggler
        flaky.failures.clear()
        retry_run = make_orchestrator(store, flaky).run_once()
        assert retry_run.success
        assert retry_run.outcome_for("template:T2").status == OutcomeStatus.CREATED

    def test_transient_failure_retried_transparently(self, store, flaky, make_orchestrator, sleeps):
        store.upsert_entity(template("Gold"))
        flaky.fail("put", entity_key(EntityKind.TEMPLATE, "Gold"), [ConnectivityError("blip")])

        result = make_orchestrator(store, flaky).run_once()

        assert result.success
        assert sleeps == [0.5]

    def test_auth_failure_aborts_without_publishing(
        self, store, flaky, remote, bus, make_orchestrator
    ):
        for name in ("A", "B", "C"):
            store.upsert_entity(template(name))
        flaky.fail("put", entity_key(EntityKind.TEMPLATE, "B"), AuthError("expired token"))
        events = []
        bus.subscribe(events.append)
        orchestrator = make_orchestrator(store, flaky)

        result = orchestrator.run_once()
        bus.flush(timeout=5)

        assert result.aborted
        assert statuses(result) == {
            "template:A": OutcomeStatus.CREATED,
            "template:B": OutcomeStatus.FAILED,
        }
        assert [e.kind for e in result.errors] == [ErrorKind.AUTH]
        assert MANIFEST_KEY not in remote
        assert ("put", entity_key(EntityKind.TEMPLATE, "C")) not in flaky.calls
        assert any(isinstance(e, SyncFailed) and e.error_kind == ErrorKind.AUTH for e in events)
        assert isinstance(events[-1], SyncCompleted)
        assert orchestrator.state == SyncState.IDLE

    def test_unreachable_remote_aborts_after_retries(
        self, store, flaky, make_orchestrator, sleeps
    ):
        store.upsert_entity(template("Gold"))
        flaky.fail("probe", "", ConnectivityError("connection refused"))

        result = make_orchestrator(store, flaky).run_once()

        assert result.aborted
        assert [e.kind for e in result.errors] == [ErrorKind.CONNECTIVITY]
        assert flaky.calls.count(("probe", "")) == 3
        assert store.get_last_sync_time() is None

    def test_corrupt_manifest_treated_as_empty_and_rewritten(
        self, store, remote, make_orchestrator
    ):
        remote.put(MANIFEST_KEY, b"\x00garbage")
        store.upsert_entity(template("Gold"))

        result = make_orchestrator(store, remote).run_once()

        assert [e.kind for e in result.errors] == [ErrorKind.MANIFEST_CORRUPTION]
        assert result.outcome_for("template:Gold").status == OutcomeStatus.CREATED
        repaired = remote_manifest(remote)
        assert repaired.global_version == 1
        assert set(repaired.items) == {"template:Gold"}

    @pytest.mark.parametrize(
        "field,value", [("lastModifiedAt", ""), ("naturalKey", "template:")]
    )
    def test_schema_valid_but_unusable_manifest_is_corruption(
        self, store, remote, make_orchestrator, field, value
    ):
        bad_item = {
            "naturalKey": "template:Old",
            "kind": "template",
            "contentHash": "abc",
            "version": 1,
            "lastModifiedAt": "2024-01-01T00:00:00Z",
            "lastModifiedBy": "BOOTH-X",
        }
        bad_item[field] = value
        remote.put(
            MANIFEST_KEY,
            json.dumps({"globalVersion": 4, "modifiedBy": "BOOTH-X", "items": [bad_item]}).encode(),
        )
        store.upsert_entity(template("Gold"))
        orchestrator = make_orchestrator(store, remote)

        result = orchestrator.run_once()

        assert [e.kind for e in result.errors] == [ErrorKind.MANIFEST_CORRUPTION]
        assert result.outcome_for("template:Gold").status == OutcomeStatus.CREATED
        assert set(remote_manifest(remote).items) == {"template:Gold"}
        assert orchestrator.run_once().success

    def test_duplicate_local_names_surface_as_conflict(self, store, remote, make_orchestrator):
        store.upsert_entity(template("Dup", layout="a"))
        store.upsert_entity(template("Dup", layout="b"))
        store.upsert_entity(template("Solo"))

        result = make_orchestrator(store, remote).run_once()

        assert result.outcome_for("template:Dup").status == OutcomeStatus.SKIPPED
        assert result.outcome_for("template:Solo").status == OutcomeStatus.CREATED
        [error] = result.errors
        assert error.kind == ErrorKind.IDENTITY_CONFLICT
        assert "Dup" in error.message

    def test_ambiguous_reference_in_download_tied_to_that_item(
        self, store, other_store, remote, make_orchestrator
    ):
        store.upsert_entity(template("Gold"))
        store.upsert_entity(event("Gala", ["Gold"]))
        make_orchestrator(store, remote).run_once()
        other_store.upsert_entity(template("Gold"))
        other_store.upsert_entity(template("Gold"))

        result = make_orchestrator(other_store, remote).run_once()

        assert result.outcome_for("event:Gala").status == OutcomeStatus.CREATED
        conflicts = [e for e in result.errors if e.kind == ErrorKind.IDENTITY_CONFLICT]
        assert [e.natural_key for e in conflicts] == ["event:Gala"]
        assert "Gold" in conflicts[0].message

    def test_object_not_matching_manifest_is_not_applied(
        self, store, other_store, remote, make_orchestrator
    ):
        store.upsert_entity(template("Gold"))
        make_orchestrator(store, remote).run_once()
        doc = json.loads(remote.get(entity_key(EntityKind.TEMPLATE, "Gold")))
        doc["data"]["layout"] = "tampered"
        remote.put(entity_key(EntityKind.TEMPLATE, "Gold"), json.dumps(doc).encode())

        result = make_orchestrator(other_store, remote).run_once()

        assert result.outcome_for("template:Gold").status == OutcomeStatus.FAILED
        assert result.errors[0].kind == ErrorKind.CONNECTIVITY
        assert other_store.list_entities(EntityKind.TEMPLATE) == []

    def test_run_timeout_stops_remaining_operations(self, store, remote, make_orchestrator):
        for name in ("T1", "T2", "T3"):
            store.upsert_entity(template(name))
        ticks = itertools.chain([0.0, 1.0], itertools.repeat(100.0))

        result = make_orchestrator(
            store, remote, run_timeout=10.0, clock=lambda: next(ticks)
        ).run_once()

        assert statuses(result) == {"template:T1": OutcomeStatus.CREATED}
        assert [e.kind for e in result.errors] == [ErrorKind.TIMEOUT]
        assert set(remote_manifest(remote).items) == {"template:T1"}

    def test_unexpected_error_never_escapes(self, store, remote, bus, make_orchestrator):
        orchestrator = make_orchestrator(store, remote)

        def explode():
            raise RuntimeError("disk on fire")

        orchestrator.manifests.build_local_manifest = explode

        result = orchestrator.run_once()

        assert not result.success
        assert result.errors[0].kind == ErrorKind.APPLY
        assert orchestrator.state == SyncState.IDLE
        # The next run works again
        orchestrator.manifests.build_local_manifest = ManifestManager(
            store, remote, store.device_id
        ).build_local_manifest
        assert orchestrator.run_once().success


class TestNotifications:
    def test_event_sequence(self, store, other_store, remote, bus, make_orchestrator):
        store.upsert_entity(template("Gold"))
        store.upsert_entity(setting("countdown", 3))
        make_orchestrator(store, remote).run_once()
        events = []
        bus.subscribe(events.append)

        make_orchestrator(other_store, remote).run_once()
        bus.flush(timeout=5)

        assert isinstance(events[0], SyncStarted)
        assert events[0].device_id == "BOOTH-B-000002"
        assert isinstance(events[-1], SyncCompleted)
        assert events[-1].result.success
        percents = [e.percent for e in events if isinstance(e, SyncProgress)]
        assert percents == sorted(percents)
        assert percents[0] == 5 and percents[-1] == 100
        updating = [e for e in events if isinstance(e, EntityUpdating)]
        assert [(e.natural_key, e.update_type) for e in updating] == [
            ("template:Gold", "added"),
            ("setting:countdown", "added"),
        ]

    def test_state_is_idle_after_run(self, store, remote, make_orchestrator):
        orchestrator = make_orchestrator(store, remote)
        assert orchestrator.state == SyncState.IDLE
        orchestrator.run_once()
        assert orchestrator.state == SyncState.IDLE

    def test_plan_is_a_dry_run(self, store, remote, make_orchestrator):
        store.upsert_entity(template("Gold"))
        orchestrator = make_orchestrator(store, remote)
        [op] = orchestrator.plan()
        assert op.op == SyncOpType.UPLOAD_NEW
        assert len(remote) == 0
