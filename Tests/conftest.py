# Tests/conftest.py
# Description: Shared fixtures: temporary store, in-memory fake clinic server behind httpx.MockTransport,
# static connectivity and a fully wired SyncEngine.
#
# Imports
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote
#
# Third-Party Imports
import httpx
import pytest
import pytest_asyncio
#
# Local Imports
from clinic_sync.clinic_api.client import ClinicAPIClient
from clinic_sync.config import SyncSettings
from clinic_sync.DB.Sync_Store_DB import SyncStoreDB
from clinic_sync.Sync.Connectivity_Monitor import StaticConnectivity
from clinic_sync.Sync.Entity_Registry import default_registry
from clinic_sync.Sync.Sync_Engine import SyncEngine
#
#######################################################################################################################
#
# --- Fake server ---

API_BASE_URL = "http://clinic.test/api"


class FakeClinicServer:
    """
    Minimal REST server for the clinic endpoints.

    Collections are keyed by path segment ("patients", "rendez-vous", ...). Every write
    advances a fake clock so `?since=` filtering on `updatedAt` is deterministic.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.deleted: Dict[str, List[tuple]] = {}
        self.requests: List[httpx.Request] = []
        self.ids = itertools.count(1)
        self.next_ids: List[str] = []
        self.failures: List[tuple] = []
        self.lost_responses: List[tuple] = []
        self.idempotency_keys: Dict[str, tuple] = {}
        self.down = False
        self.on_request: List[Callable[[httpx.Request], None]] = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    # --- helpers for tests ---
    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat(timespec='milliseconds').replace('+00:00', 'Z')

    def now(self) -> str:
        return self._clock.isoformat(timespec='milliseconds').replace('+00:00', 'Z')

    def put(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Creates or replaces a record server-side, as another client would."""
        stamp = self.tick()
        stored = {"createdAt": stamp, **record, "updatedAt": stamp}
        stored["id"] = str(record["id"])
        self.collections.setdefault(collection, {})[stored["id"]] = stored
        return stored

    def remove(self, collection: str, record_id: str):
        self.collections.get(collection, {}).pop(record_id, None)
        self.deleted.setdefault(collection, []).append((self.tick(), record_id))

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self.collections.get(collection, {}).get(record_id)

    def fail_next(self, method: str, path_fragment: str, status: Optional[int] = None):
        """Next matching request fails with `status`, or with a transport error if None."""
        self.failures.append((method, path_fragment, status))

    def lose_next_response(self, method: str, path_fragment: str):
        """Next matching request is handled, then the client sees a read timeout instead of the answer."""
        self.lost_responses.append((method, path_fragment))

    def calls(self, method: str, path_fragment: str = "") -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and path_fragment in r.url.path]

    # --- transport handler ---
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for hook in list(self.on_request):
            hook(request)
        response = self._respond(request)
        for index, (method, fragment) in enumerate(self.lost_responses):
            if method == request.method and fragment in request.url.path:
                del self.lost_responses[index]
                raise httpx.ReadTimeout("response lost", request=request)
        return response

    def _respond(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("server unreachable", request=request)
        for index, (method, fragment, status) in enumerate(self.failures):
            if method == request.method and fragment in request.url.path:
                del self.failures[index]
                if status is None:
                    raise httpx.ConnectError("connection reset", request=request)
                return httpx.Response(status, json={"detail": f"injected {status}"})

        path = unquote(request.url.path)
        if not path.startswith("/api/"):
            return httpx.Response(404, json={"detail": "not found"})
        parts = path[len("/api/"):].strip("/").split("/")
        if parts == ["health"]:
            return httpx.Response(200, json={"status": "ok"})

        collection = parts[0]
        records = self.collections.setdefault(collection, {})
        if len(parts) == 1:
            if request.method == "GET":
                since = request.url.params.get("since")
                items = [r for r in records.values() if not since or r["updatedAt"] > since]
                deleted = [rid for stamp, rid in self.deleted.get(collection, []) if not since or stamp > since]
                return httpx.Response(200, json={"items": items, "deleted": deleted, "serverTimestamp": self.now()})
            if request.method == "POST":
                key = request.headers.get("Idempotency-Key")
                seen = self.idempotency_keys.get(key)
                if seen is not None and self.get(*seen) is not None:
                    return httpx.Response(200, json=self.get(*seen))
                body = json.loads(request.content or b"{}")
                new_id = self.next_ids.pop(0) if self.next_ids else f"srv-{next(self.ids)}"
                stamp = self.tick()
                record = {**body, "id": new_id, "createdAt": stamp, "updatedAt": stamp}
                records[new_id] = record
                if key:
                    self.idempotency_keys[key] = (collection, new_id)
                return httpx.Response(201, json=record)
            return httpx.Response(405, json={"detail": "method not allowed"})

        record_id = parts[1]
        record = records.get(record_id)
        if record is None:
            return httpx.Response(404, json={"detail": f"{collection} {record_id} not found"})
        if request.method == "GET":
            return httpx.Response(200, json=record)
        if request.method == "PATCH":
            body = json.loads(request.content or b"{}")
            record.update(body)
            record["updatedAt"] = self.tick()
            return httpx.Response(200, json=record)
        if request.method == "DELETE":
            self.remove(collection, record_id)
            return httpx.Response(204)
        return httpx.Response(405, json={"detail": "method not allowed"})


# --- Fixtures ---

@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def store(tmp_path, registry):
    """A fresh file-backed store per test."""
    db = SyncStoreDB(tmp_path / "clinic_sync_test.db", registry.tables)
    yield db
    db.close_connection()


@pytest.fixture
def server():
    return FakeClinicServer()


@pytest_asyncio.fixture
async def api(server):
    client = ClinicAPIClient(API_BASE_URL, transport=httpx.MockTransport(server.handler))
    yield client
    await client.close()


@pytest.fixture
def connectivity():
    return StaticConnectivity(online=False)


@pytest.fixture
def temp_ids() -> Callable[[], str]:
    """Deterministic temp ids: temp-1, temp-2, ..."""
    counter = itertools.count(1)
    return lambda: f"temp-{next(counter)}"


@pytest.fixture
def settings():
    return SyncSettings(config={"sync": {"settle_delay": 0, "periodic_pull_interval": 0}})


@pytest_asyncio.fixture
async def engine(store, api, connectivity, registry, settings, temp_ids):
    sync_engine = SyncEngine(store, api, connectivity, registry=registry, settings=settings,
                             temp_id_factory=temp_ids)
    yield sync_engine
    await sync_engine.orchestrator.stop()


def seed_synced(store: SyncStoreDB, server: FakeClinicServer, table: str, collection: str,
                record: Dict[str, Any]) -> Dict[str, Any]:
    """Puts a record on the server and the same snapshot in the store as synced."""
    stored = server.put(collection, record)
    store.save_record(table, stored["id"], stored, sync_status="synced")
    return stored


@pytest.fixture
def seed(store, server):
    def _seed(table: str, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return seed_synced(store, server, table, collection, record)
    return _seed
