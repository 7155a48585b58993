# Tests/Sync/test_push_reconciler.py
# Description: Draining the sync queue: temp-id remapping, dependency order, retry classification, deletes.
#
# Imports
import json
#
# Third-Party Imports
import pytest
#
# Local Imports
from clinic_sync.Constants import META_LAST_PUSH_AT
from clinic_sync.Sync.Push_Reconciler import diverging_fields
#
#######################################################################################################################
#
# --- Helpers ---

def one_shot(server, method, fragment, action):
    """Runs `action` once, the first time a matching request reaches the server."""
    def hook(request):
        if request.method == method and fragment in request.url.path:
            server.on_request.remove(hook)
            action()
    server.on_request.append(hook)


# --- Creates ---

class TestCreate:
    async def test_offline_create_is_confirmed_under_server_id(self, engine, store, server, connectivity):
        await engine.create("vaccination", {"patientId": "p-1", "vaccin": "BCG"})
        connectivity.set_online(True)
        server.next_ids = ["srv-42"]

        result = await engine.sync_now()

        assert result.stats.success == 1
        item = result.push["vaccination"].items[0]
        assert (item.outcome, item.entity_id, item.server_id) == ("success", "temp-1", "srv-42")
        record = engine.get("vaccination", "srv-42")
        assert record.sync_status == "synced"
        assert record.temp_id is None
        assert record.data["vaccin"] == "BCG"
        assert engine.get("vaccination", "temp-1") is None
        assert store.count_queue_items() == 0
        assert store.find_id_references("temp-1") == 0

    async def test_create_sends_temp_id_as_idempotency_key(self, engine, server, connectivity):
        await engine.create("patient", {"nom": "Ba"})
        connectivity.set_online(True)
        await engine.sync_now()

        posts = server.calls("POST", "/patients")
        assert len(posts) == 1
        assert posts[0].headers["Idempotency-Key"] == "temp-1"

    async def test_second_sync_does_not_duplicate(self, engine, server, connectivity):
        await engine.create("patient", {"nom": "Ba"})
        connectivity.set_online(True)
        await engine.sync_now()
        await engine.sync_now()

        assert len(server.calls("POST")) == 1
        assert len(server.collections["patients"]) == 1

    async def test_children_are_remapped_to_parent_server_id(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": "Ba"})
        await engine.create("consultation", {"patientId": "temp-1", "motif": "fievre"})
        await engine.create("rendez-vous", {"patientId": "temp-1", "date": "2024-02-01"})
        connectivity.set_online(True)
        server.next_ids = ["srv-p", "srv-c", "srv-r"]

        result = await engine.sync_now()

        assert result.stats.success == 3
        assert server.get("consultations", "srv-c")["patientId"] == "srv-p"
        assert server.get("rendez-vous", "srv-r")["patientId"] == "srv-p"
        assert engine.get("consultation", "srv-c").data["patientId"] == "srv-p"
        for temp_id in ("temp-1", "temp-2", "temp-3"):
            assert store.find_id_references(temp_id) == 0

    async def test_child_is_deferred_while_parent_is_unconfirmed(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": "Ba"})
        await engine.create("vaccination", {"patientId": "temp-1", "vaccin": "Polio"})
        connectivity.set_online(True)
        server.fail_next("POST", "/patients")

        first = await engine.sync_now()

        assert first.stats.errors == 1
        assert first.stats.deferred == 1
        assert server.calls("POST", "/vaccinations") == []
        assert store.count_queue_items() == 2

        second = await engine.sync_now()

        assert second.stats.success == 2
        patient_id = next(iter(server.collections["patients"]))
        vaccination = next(iter(server.collections["vaccinations"].values()))
        assert vaccination["patientId"] == patient_id
        assert store.count_queue_items() == 0

    async def test_update_made_during_create_is_kept(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": "Ba"})
        connectivity.set_online(True)
        server.next_ids = ["srv-1"]
        one_shot(server, "POST", "/patients",
                 lambda: engine.gateway("patient")._update_offline("temp-1", {"ville": "Thies"}))

        await engine.sync_now()

        assert "ville" not in server.get("patients", "srv-1")
        local = engine.get("patient", "srv-1")
        assert local.data["ville"] == "Thies"
        assert local.sync_status == "pending"
        items = store.get_queue_items()
        assert [(i["operation"], i["entity_id"], i["data"]) for i in items] == [("update", "srv-1", {"ville": "Thies"})]

        await engine.sync_now()

        assert server.get("patients", "srv-1")["ville"] == "Thies"
        assert engine.get("patient", "srv-1").sync_status == "synced"
        assert engine.conflicts() == []

    async def test_record_discarded_during_create_is_deleted_on_server(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": "Ba"})
        connectivity.set_online(True)
        server.next_ids = ["srv-1"]
        one_shot(server, "POST", "/patients", lambda: engine.gateway("patient")._delete_offline("temp-1"))

        await engine.sync_now()

        assert engine.get("patient", "srv-1") is None
        assert [(i["operation"], i["entity_id"]) for i in store.get_queue_items()] == [("delete", "srv-1")]

        await engine.sync_now()

        assert server.get("patients", "srv-1") is None
        assert store.get_record("patients", "srv-1") is None
        assert store.count_queue_items() == 0


# --- Failure classification ---

class TestFailures:
    async def test_server_error_is_retried(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": "Ba"})
        connectivity.set_online(True)
        server.fail_next("POST", "/patients", status=503)

        first = await engine.sync_now()

        assert first.stats.errors == 1
        item = store.get_queue_items()[0]
        assert item["attempts"] == 1
        assert item["retryable"] is True
        assert "503" in item["last_error"]

        second = await engine.sync_now()
        assert second.stats.success == 1
        assert store.count_queue_items() == 0

    async def test_client_error_is_not_retried(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": ""})
        connectivity.set_online(True)
        server.fail_next("POST", "/patients", status=422)

        await engine.sync_now()
        item = store.get_queue_items()[0]
        assert item["retryable"] is False
        assert engine.get("patient", "temp-1").sync_status == "pending"

        second = await engine.sync_now()

        assert len(server.calls("POST")) == 1
        assert second.push["patient"].items[0].outcome == "skipped"
        assert store.count_queue_items() == 1

    async def test_one_failure_does_not_abort_the_batch(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": "A"})
        await engine.create("patient", {"nom": "B"})
        connectivity.set_online(True)
        server.fail_next("POST", "/patients", status=500)

        result = await engine.sync_now()

        assert [i.outcome for i in result.push["patient"].items] == ["error", "success"]
        assert store.count_queue_items() == 1


# --- Updates and deletes ---

class TestUpdateAndDelete:
    async def test_update_of_untouched_field_is_applied(self, engine, store, server, connectivity, seed):
        seed("patients", "patients", {"id": "p-1", "nom": "Ba", "ville": "Dakar"})
        await engine.update("patient", "p-1", {"nom": "Sow"})
        server.put("patients", {**server.get("patients", "p-1"), "ville": "Thies"})
        connectivity.set_online(True)

        result = await engine.sync_now()

        assert result.stats.success == 1
        assert result.stats.conflicts == 0
        patch = server.calls("PATCH", "/patients/p-1")[0]
        assert json.loads(patch.content) == {"nom": "Sow"}
        local = engine.get("patient", "p-1")
        assert local.sync_status == "synced"
        assert local.data["nom"] == "Sow"
        assert local.data["ville"] == "Thies"

    async def test_server_already_has_the_value(self, engine, server, connectivity, seed):
        seed("patients", "patients", {"id": "p-1", "telephone": "111"})
        await engine.update("patient", "p-1", {"telephone": "222"})
        server.put("patients", {**server.get("patients", "p-1"), "telephone": "222"})
        connectivity.set_online(True)

        result = await engine.sync_now()

        assert result.stats.conflicts == 0
        assert result.stats.success == 1

    async def test_delete_already_gone_on_server_counts_as_success(self, engine, store, server, connectivity, seed):
        seed("patients", "patients", {"id": "p-1", "nom": "Ba"})
        await engine.delete("patient", "p-1")
        server.remove("patients", "p-1")
        connectivity.set_online(True)

        result = await engine.sync_now()

        assert result.push["patient"].items[0].outcome == "success"
        assert store.get_record("patients", "p-1") is None
        assert store.count_queue_items() == 0

    async def test_delete_is_pushed(self, engine, store, server, connectivity, seed):
        seed("patients", "patients", {"id": "p-1", "nom": "Ba"})
        await engine.delete("patient", "p-1")
        connectivity.set_online(True)

        await engine.sync_now()

        assert server.get("patients", "p-1") is None
        assert len(server.calls("DELETE", "/patients/p-1")) == 1
        assert store.get_record("patients", "p-1") is None


# --- Ordering, stop and bookkeeping ---

class TestPushAll:
    async def test_entities_are_pushed_in_registry_order(self, engine, server, connectivity):
        await engine.create("rendez-vous", {"patientId": "p-0", "date": "2024-02-01"})
        await engine.create("medicament", {"nom": "Amoxicilline"})
        await engine.create("patient", {"nom": "Ba"})
        connectivity.set_online(True)

        await engine.sync_now()

        paths = [r.url.path for r in server.calls("POST")]
        assert paths == ["/api/patients", "/api/medicaments", "/api/rendez-vous"]

    async def test_stop_request_is_honoured_between_items(self, engine, store, server, connectivity):
        await engine.create("patient", {"nom": "A"})
        await engine.create("patient", {"nom": "B"})
        await engine.create("medicament", {"nom": "C"})
        connectivity.set_online(True)
        one_shot(server, "POST", "/patients", engine.orchestrator.request_stop)

        result = await engine.sync_now()

        assert result.cancelled is True
        assert result.pull is None
        assert result.stats.success == 1
        assert "medicament" not in result.push
        assert store.count_queue_items() == 2

        resumed = await engine.sync_now()
        assert resumed.cancelled is False
        assert resumed.stats.success == 2

    async def test_last_push_time_is_recorded(self, engine, store, connectivity):
        connectivity.set_online(True)
        await engine.sync_now()
        assert store.get_meta(META_LAST_PUSH_AT)


# --- Conflict detection rule ---

@pytest.mark.parametrize("patch, base, remote, expected", [
    ({"a": 2}, {"a": 1}, {"a": 1}, []),
    ({"a": 2}, {"a": 1}, {"a": 3}, ["a"]),
    ({"a": 2}, {"a": 1}, {"a": 2}, []),
    ({"a": 2, "b": 5}, {"a": 1, "b": 4}, {"a": 9, "b": 8}, ["a", "b"]),
    ({"a": 2}, {}, {"a": 9}, []),
    ({"a": 2}, {"a": None}, {}, []),
])
def test_diverging_fields(patch, base, remote, expected):
    assert diverging_fields(patch, base, remote) == expected

#
# End of test_push_reconciler.py
#######################################################################################################################
