import pytest
import httpx
from sqlmodel import SQLModel

from pos_sync.core.deps import get_coordinator
from pos_sync.main import app
from pos_sync.schemas.sync import EntityKind
from pos_sync.services.coordinator import SyncCoordinator


@pytest.fixture(name="client")
async def client_fixture(coordinator: SyncCoordinator):
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def queue_offline_outlet(coordinator: SyncCoordinator, network, name: str = "Zomato") -> str:
    await network.down()
    response = await coordinator.request("POST", "/api/outlets", payload={"name": name})
    await network.up()
    return response.operation_id


async def queue_price_conflict(coordinator: SyncCoordinator, server, network) -> str:
    document = server.seed(EntityKind.MENU_PRICING, {"dish": "Soup", "price": 9})
    await coordinator.request("GET", "/api/menu/pricing")
    await network.down()
    await coordinator.request("PUT", f"/api/menu/pricing/{document['_id']}", payload={"price": 10})
    await network.up()
    server.touch(EntityKind.MENU_PRICING, document["_id"], price=12)
    await coordinator.start_sync()
    return coordinator.active_conflicts()[0].conflict_id


class TestRoot:
    async def test_health(self, client: httpx.AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

class TestStatus:
    async def test_status_counts_pending_operations(self, client: httpx.AsyncClient, coordinator, network):
        await queue_offline_outlet(coordinator, network)

        response = await client.get("/sync/status")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "idle"
        assert data["pending_operations"] == 1
        assert data["parked_operations"] == 0

    async def test_storage_failure(self, client: httpx.AsyncClient, engine):
        SQLModel.metadata.drop_all(engine)

        response = await client.get("/sync/status")

        assert response.status_code == 503
        assert response.json()["detail"] == "Local store unavailable"

class TestSyncPass:
    async def test_start_sync(self, client: httpx.AsyncClient, coordinator, server, network):
        await queue_offline_outlet(coordinator, network)

        response = await client.post("/sync/start")

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["success"] is True
        assert len(server.documents(EntityKind.OUTLET)) == 1

    async def test_history(self, client: httpx.AsyncClient):
        await client.post("/sync/start")
        await client.post("/sync/start")

        response = await client.get("/sync/history", params={"limit": 1})

        assert response.status_code == 200
        assert len(response.json()) == 1

class TestOperations:
    async def test_list_operations(self, client: httpx.AsyncClient, coordinator, network):
        operation_id = await queue_offline_outlet(coordinator, network)

        response = await client.get("/sync/operations")
        assert response.json()["total"] == 1
        assert response.json()["operations"][0]["operation_id"] == operation_id

        response = await client.get("/sync/operations", params={"kind": "category"})
        assert response.json()["total"] == 0

    async def test_invalid_kind(self, client: httpx.AsyncClient):
        response = await client.get("/sync/operations", params={"kind": "order"})
        assert response.status_code == 422

    async def test_failed_and_retry(self, client: httpx.AsyncClient, coordinator, server, network):
        await queue_offline_outlet(coordinator, network)
        server.fail("POST", "/api/outlets", 400, "Invalid outlet")
        await client.post("/sync/start")

        response = await client.get("/sync/operations/failed")
        assert len(response.json()) == 1
        assert response.json()[0]["error"]["statusCode"] == 400

        response = await client.post("/sync/operations/retry-failed")
        assert response.json() == {"requeued": 1}

        response = await client.post("/sync/start")
        assert response.json()["processed"] == 1

    async def test_discard_operation(self, client: httpx.AsyncClient, coordinator, network):
        operation_id = await queue_offline_outlet(coordinator, network)

        response = await client.delete(f"/sync/operations/{operation_id}")
        assert response.status_code == 204
        assert await coordinator.pending_operations() == []

        response = await client.delete(f"/sync/operations/{operation_id}")
        assert response.status_code == 404

    async def test_discard_while_syncing(self, client: httpx.AsyncClient, coordinator, network):
        operation_id = await queue_offline_outlet(coordinator, network)
        await coordinator.store.claim_operation(operation_id)

        response = await client.delete(f"/sync/operations/{operation_id}")

        assert response.status_code == 409
        assert len(await coordinator.pending_operations()) == 1

class TestConflicts:
    async def test_list_conflicts(self, client: httpx.AsyncClient, coordinator, server, network):
        conflict_id = await queue_price_conflict(coordinator, server, network)

        response = await client.get("/sync/conflicts")

        data = response.json()
        assert data["total"] == 1
        assert data["conflicts"][0]["conflict_id"] == conflict_id
        assert data["conflicts"][0]["fields"] == ["price"]

    async def test_resolve_with_merge(self, client: httpx.AsyncClient, coordinator, server, network):
        conflict_id = await queue_price_conflict(coordinator, server, network)

        response = await client.post(
            f"/sync/conflicts/{conflict_id}/resolve",
            json={"strategy": "merge", "field_sources": {"price": "local"}}
        )

        assert response.status_code == 200
        assert response.json()["entity"]["data"]["price"] == 10
        assert (await client.get("/sync/conflicts")).json()["total"] == 0

    async def test_resolve_unknown_conflict(self, client: httpx.AsyncClient):
        response = await client.post("/sync/conflicts/nope/resolve", json={"strategy": "server"})
        assert response.status_code == 404

    async def test_invalid_resolution(self, client: httpx.AsyncClient, coordinator, server, network):
        conflict_id = await queue_price_conflict(coordinator, server, network)

        response = await client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"strategy": "custom"})

        assert response.status_code == 422

    async def test_resolve_while_offline(self, client: httpx.AsyncClient, coordinator, server, network):
        conflict_id = await queue_price_conflict(coordinator, server, network)
        await network.down()

        response = await client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"strategy": "local"})

        assert response.status_code == 503
        assert len(coordinator.active_conflicts()) == 1

    async def test_resolution_rejected_by_server(self, client: httpx.AsyncClient, coordinator, server, network):
        conflict_id = await queue_price_conflict(coordinator, server, network)
        entity_id = coordinator.active_conflicts()[0].entity_id
        server.fail("PUT", f"/api/menu/pricing/{entity_id}", 400, "Price must be positive")

        response = await client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"strategy": "local"})

        assert response.status_code == 502
        assert "Price must be positive" in response.json()["detail"]

    async def test_resolve_all(self, client: httpx.AsyncClient, coordinator, server, network):
        await queue_price_conflict(coordinator, server, network)

        response = await client.post("/sync/conflicts/resolve-all")

        data = response.json()
        assert len(data["resolved"]) == 1
        assert data["aborted"] is False

    async def test_resolve_while_operation_is_replayed(self, client: httpx.AsyncClient, coordinator, server, network):
        conflict_id = await queue_price_conflict(coordinator, server, network)
        operation_id = coordinator.active_conflicts()[0].operation_id
        await coordinator.store.claim_operation(operation_id)

        response = await client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"strategy": "local"})

        assert response.status_code == 409
        assert len(coordinator.active_conflicts()) == 1

    async def test_resolve_all_storage_failure(self, client: httpx.AsyncClient, engine):
        SQLModel.metadata.drop_all(engine)

        response = await client.post("/sync/conflicts/resolve-all")

        assert response.status_code == 503
        assert response.json()["detail"] == "Local store unavailable"

class TestConnectivity:
    async def test_manual_override(self, client: httpx.AsyncClient, coordinator):
        response = await client.post("/sync/connectivity", json={"online": False})

        assert response.json() == {"online": False, "changed": True}
        assert coordinator.is_online is False

        response = await client.post("/sync/connectivity", json={"online": False})
        assert response.json()["changed"] is False
