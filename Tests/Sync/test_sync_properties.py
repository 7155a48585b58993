# Tests/Sync/test_sync_properties.py
#
# Property-based tests for offline mutations using Hypothesis.
# Random sequences of creates, updates and deletes are applied while offline and the
# local store and sync queue are checked against a plain dict model afterwards, then
# again after reconnecting and running a full sync against the fake clinic server.
#
# Imports
import asyncio
import itertools
from collections import defaultdict
#
# Third-Party Imports
import httpx
from hypothesis import given, strategies as st, settings, HealthCheck
#
# Local Imports
from clinic_sync.clinic_api.client import ClinicAPIClient
from clinic_sync.config import SyncSettings
from clinic_sync.DB.Sync_Store_DB import SyncStoreDB
from clinic_sync.Sync.Connectivity_Monitor import StaticConnectivity
from clinic_sync.Sync.Entity_Registry import default_registry
from clinic_sync.Sync.Push_Reconciler import diverging_fields
from clinic_sync.Sync.Sync_Engine import SyncEngine
from conftest import API_BASE_URL, FakeClinicServer
#
#######################################################################################################################
#
# --- Hypothesis Settings ---

settings.register_profile(
    "sync_test_suite",
    deadline=None,
    max_examples=60,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.data_too_large],
)
settings.load_profile("sync_test_suite")


# --- Strategies ---

FIELDS = ("nom", "ville", "telephone")

st_value = st.text(alphabet="abxyz", max_size=3)
st_patch = st.dictionaries(st.sampled_from(FIELDS), st_value, min_size=1)
st_op = st.one_of(
    st.tuples(st.just("create"), st_patch, st.just(0)),
    st.tuples(st.just("update"), st_patch, st.integers(min_value=0, max_value=50)),
    st.tuples(st.just("delete"), st.just({}), st.integers(min_value=0, max_value=50)),
)


# --- Offline model runner ---

class OfflineRun:
    """Applies operations through an offline gateway and keeps the expected state alongside."""

    def __init__(self):
        registry = default_registry()
        self.store = SyncStoreDB(":memory:", registry.tables)
        self.server = FakeClinicServer()
        self.connectivity = StaticConnectivity(online=False)
        counter = itertools.count(1)
        # The client is opened lazily, so it binds to whichever loop runs the operations.
        self.api = ClinicAPIClient(API_BASE_URL, transport=httpx.MockTransport(self.server.handler))
        self.engine = SyncEngine(
            self.store, self.api, self.connectivity, registry=registry,
            settings=SyncSettings(config={"sync": {"settle_delay": 0, "periodic_pull_interval": 0}}),
            temp_id_factory=lambda: f"temp-{next(counter)}",
        )
        self.gateway = self.engine.gateway("patient")
        self.originals = {}
        for i in range(3):
            record_id = f"p-{i}"
            data = {"nom": f"n{i}", "ville": "Dakar", "telephone": "000"}
            self.server.put("patients", {"id": record_id, **data})
            self.store.save_record("patients", record_id, data)
            self.originals[record_id] = data
        self.model = {rid: dict(data) for rid, data in self.originals.items()}
        self.patched = {rid: {} for rid in self.originals}
        self.deleted_synced = set()
        self.discarded_temp = set()

    async def _apply(self, ops):
        for kind, payload, index in ops:
            if kind == "create":
                record = await self.gateway.create(payload)
                self.model[record.id] = dict(payload)
                continue
            if not self.model:
                continue
            live = sorted(self.model)
            target = live[index % len(live)]
            if kind == "update":
                await self.gateway.update(target, payload)
                self.model[target].update(payload)
                if target in self.originals:
                    self.patched[target].update(payload)
            else:
                await self.gateway.delete(target)
                del self.model[target]
                if target in self.originals:
                    self.deleted_synced.add(target)
                else:
                    self.discarded_temp.add(target)

    def run(self, ops):
        asyncio.run(self._apply(ops))
        return self

    async def _apply_then_sync(self, ops):
        await self._apply(ops)
        self.connectivity.set_online(True)
        try:
            return await self.engine.sync_now()
        finally:
            await self.api.close()

    def run_then_sync(self, ops):
        self.result = asyncio.run(self._apply_then_sync(ops))
        return self

    def queue_by_record(self):
        by_record = defaultdict(list)
        for item in self.store.get_queue_items():
            by_record[item["entity_id"]].append(item["operation"])
        return by_record


def _without_id(data):
    return {k: v for k, v in data.items() if k != "id"}


# --- Properties ---

@given(ops=st.lists(st_op, max_size=12))
def test_queue_never_holds_redundant_items(ops):
    run = OfflineRun().run(ops)
    for record_id, operations in run.queue_by_record().items():
        assert operations.count("create") <= 1, record_id
        assert operations.count("update") <= 1, record_id
        assert not ("update" in operations and "delete" in operations), record_id
        assert not ("create" in operations and "delete" in operations), record_id
    run.store.close_connection()


@given(ops=st.lists(st_op, max_size=12))
def test_local_store_matches_model(ops):
    run = OfflineRun().run(ops)
    for record_id, expected in run.model.items():
        row = run.store.get_record("patients", record_id)
        assert _without_id(row["data"]) == expected
        assert not row["is_deleted"]
    for record_id in run.deleted_synced:
        assert run.store.get_record("patients", record_id)["is_deleted"]
    for record_id in run.discarded_temp:
        assert run.store.get_record("patients", record_id) is None
    run.store.close_connection()


@given(ops=st.lists(st_op, max_size=12))
def test_every_local_change_has_exactly_one_outgoing_intent(ops):
    run = OfflineRun().run(ops)
    by_record = run.queue_by_record()

    for record_id, expected in run.model.items():
        row = run.store.get_record("patients", record_id)
        if record_id in run.originals:
            if run.patched[record_id]:
                assert row["sync_status"] == "pending"
                item = run.store.find_queue_item("patient", record_id, "update")
                assert item["data"] == run.patched[record_id]
                assert item["base"] == {k: run.originals[record_id][k] for k in run.patched[record_id]}
            else:
                assert row["sync_status"] == "synced"
                assert record_id not in by_record
        else:
            assert by_record[record_id] == ["create"]
            assert run.store.find_queue_item("patient", record_id, "create")["data"] == expected
    for record_id in run.deleted_synced:
        assert by_record[record_id] == ["delete"]
    for record_id in run.discarded_temp:
        assert record_id not in by_record
    run.store.close_connection()


@given(ops=st.lists(st_op, max_size=12))
def test_full_sync_after_reconnect_leaves_every_record_synced_or_in_conflict(ops):
    run = OfflineRun().run_then_sync(ops)
    conflicts = run.engine.conflicts()
    held_items = {c.operation_id for c in conflicts}
    conflicted_ids = {c.entity_id for c in conflicts}

    assert run.result is not None
    for item in run.store.get_queue_items():
        assert item["id"] in held_items, item
    rows = run.store.list_records("patients", include_deleted=True)
    for row in rows:
        assert row["temp_id"] is None
        assert not row["is_deleted"]
        assert row["sync_status"] == "synced" or row["id"] in conflicted_ids
    assert len(rows) == len(run.model)

    def project(record):
        return {k: v for k, v in record.items() if k in FIELDS}

    def ordered(records):
        return sorted(records, key=lambda d: sorted(d.items()))

    on_server = [project(r) for r in run.server.collections.get("patients", {}).values()]
    assert ordered(on_server) == ordered([project(d) for d in run.model.values()])
    assert ordered(project(r["data"]) for r in rows) == ordered(on_server)
    run.store.close_connection()


@given(patch=st_patch, base=st_patch)
def test_unchanged_server_never_conflicts(patch, base):
    assert diverging_fields(patch, base, dict(base)) == []


@given(patch=st_patch, base=st_patch)
def test_server_already_holding_local_value_never_conflicts(patch, base):
    assert diverging_fields(patch, base, dict(patch)) == []

#
# End of test_sync_properties.py
#######################################################################################################################
