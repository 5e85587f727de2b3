import asyncio
import copy
import uuid
import pytest
import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pos_sync.core.config import Settings
from pos_sync.database.engine import create_db_and_tables, create_local_engine
from pos_sync.schemas.sync import EntityKind
from pos_sync.services.coordinator import SyncCoordinator
from pos_sync.services.entity_registry import EntityRegistry
from pos_sync.services.local_store import LocalStore


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakePosServer:
    """
    In-memory stand-in for the POS REST API.

    Speaks the ``{success, data, message}`` envelope for every registered
    collection, records each call and can be told to reject the next call
    to a path.
    """

    def __init__(self):
        self.registry = EntityRegistry()
        self.collections: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {
            kind: {} for kind in self.registry.kinds
        }
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, str]] = {}
        self.app = self._build_app()

    def _build_app(self) -> FastAPI:
        app = FastAPI()

        @app.get("/api/init")
        async def init():
            self.calls.append(("GET", "/api/init", None))
            failure = self.failures.pop(("GET", "/api/init"), None)
            if failure:
                return self._error(*failure)
            return self._ok({"status": "ok"})

        @app.api_route("/api/{path:path}", methods=["GET", "POST", "PUT", "DELETE"])
        async def handle(path: str, request: Request):
            raw = await request.body()
            body = await request.json() if raw else None
            return self._handle(request.method, f"/api/{path}", body)

        return app

    def seed(self, kind: EntityKind, data: Dict[str, Any]) -> Dict[str, Any]:
        document = {
            "_id": uuid.uuid4().hex[:24],
            **data,
            "__v": 0,
            "createdAt": _now(),
            "updatedAt": _now(),
        }
        self.collections[kind][document["_id"]] = document
        return copy.deepcopy(document)

    def touch(self, kind: EntityKind, entity_id: str, **changes) -> Dict[str, Any]:
        """Change a record behind the client's back."""
        document = self.collections[kind][entity_id]
        document.update(changes)
        document["__v"] += 1
        document["updatedAt"] = _now()
        return copy.deepcopy(document)

    def fail(self, method: str, path: str, status_code: int, message: str = "Rejected"):
        """Reject the next call to ``path`` with ``status_code``."""
        self.failures[(method.upper(), path)] = (status_code, message)

    def calls_to(self, method: str, path: Optional[str] = None) -> List[Tuple[str, str, Optional[Dict[str, Any]]]]:
        return [
            call for call in self.calls
            if call[0] == method.upper() and (path is None or call[1] == path)
        ]

    def documents(self, kind: EntityKind) -> List[Dict[str, Any]]:
        return list(self.collections[kind].values())

    @staticmethod
    def _ok(data: Any, status_code: int = 200) -> JSONResponse:
        return JSONResponse({"success": True, "data": data}, status_code=status_code)

    @staticmethod
    def _error(status_code: int, message: str) -> JSONResponse:
        return JSONResponse({"success": False, "message": message}, status_code=status_code)

    def _handle(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> JSONResponse:
        self.calls.append((method, path, copy.deepcopy(body)))
        failure = self.failures.pop((method, path), None)
        if failure:
            return self._error(*failure)

        match = self.registry.match_endpoint(path)
        if match is None:
            return self._error(404, "Route not found")
        spec, segments = match
        documents = self.collections[spec.kind]

        if not segments:
            if method == "GET":
                return self._ok(list(documents.values()))
            if method == "POST":
                key = self.registry.natural_key_of(spec.kind, body or {})
                if any(self.registry.natural_key_of(spec.kind, doc) == key for doc in documents.values()):
                    return self._error(409, f"{spec.natural_key} already exists")
                return self._ok(self.seed(spec.kind, body or {}), status_code=201)
            return self._error(405, "Method not allowed")

        entity_id = segments[0]
        document = documents.get(entity_id)
        if document is None:
            return self._error(404, f"{spec.kind.value} not found")

        if method == "GET":
            return self._ok(document)
        if method == "DELETE":
            del documents[entity_id]
            return self._ok({"_id": entity_id})
        if method == "PUT":
            if len(segments) == 2:
                target_field = spec.subresources[segments[1]].target_field
                document[target_field] = {**(document.get(target_field) or {}), **(body or {})}
            else:
                document.update(body or {})
            document["__v"] += 1
            document["updatedAt"] = _now()
            return self._ok(document)
        return self._error(405, "Method not allowed")


class SwitchableTransport(httpx.AsyncBaseTransport):
    """ASGI transport that can simulate a dead network, timeouts and lost responses."""

    def __init__(self, app: FastAPI):
        self._inner = httpx.ASGITransport(app=app)
        self.offline = False
        self.timeout = False
        self.delay = 0.0
        self.lost_responses: List[Tuple[str, str]] = []

    def lose_response(self, method: str, path: str):
        """Let the next call to ``path`` reach the server but drop its response."""
        self.lost_responses.append((method.upper(), path))

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("Network is unreachable", request=request)
        if self.timeout:
            raise httpx.ReadTimeout("Timed out", request=request)
        if self.delay:
            await asyncio.sleep(self.delay)

        response = await self._inner.handle_async_request(request)
        key = (request.method, request.url.path)
        if key in self.lost_responses:
            self.lost_responses.remove(key)
            await response.aread()
            raise httpx.ReadTimeout("Response lost", request=request)
        return response


class Network:
    """Flips both the simulated network and the client's connectivity flag."""

    def __init__(self, coordinator: SyncCoordinator, transport: SwitchableTransport):
        self.coordinator = coordinator
        self.transport = transport

    async def down(self):
        self.transport.offline = True
        await self.coordinator.set_online(False)

    async def up(self):
        self.transport.offline = False
        await self.coordinator.set_online(True)


@pytest.fixture(name="settings")
def settings_fixture():
    return Settings(
        API_BASE_URL="http://pos.test",
        LOCAL_DATABASE_URL="sqlite://",
        AUTO_SYNC_ENABLED=False,
        REPLAY_TIMEOUT_SECONDS=5.0,
        SYNC_HISTORY_LIMIT=5,
        FAILED_OPERATIONS_LIMIT=10,
    )


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_local_engine("sqlite://", echo=False)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="registry")
def registry_fixture():
    return EntityRegistry()


@pytest.fixture(name="store")
def store_fixture(engine, registry):
    return LocalStore(engine, registry)


@pytest.fixture(name="server")
def server_fixture():
    return FakePosServer()


@pytest.fixture(name="transport")
def transport_fixture(server: FakePosServer):
    return SwitchableTransport(server.app)


@pytest.fixture(name="coordinator")
async def coordinator_fixture(settings, engine, transport):
    coordinator = SyncCoordinator.from_settings(settings, engine=engine, transport=transport)
    await coordinator.initialize()
    yield coordinator
    await coordinator.close()


@pytest.fixture(name="network")
def network_fixture(coordinator: SyncCoordinator, transport: SwitchableTransport):
    return Network(coordinator, transport)
