import pytest

from pos_sync.core.exceptions import ApiError, NetworkError
from pos_sync.schemas.sync import EntityKind, OperationAction
from pos_sync.services.coordinator import SyncCoordinator
from pos_sync.services.entity_registry import is_temp_id
from pos_sync.services.event_bus import EventType
from pos_sync.services.interceptor import last_sync_key

class TestReads:
    async def test_online_read_refreshes_cache(self, coordinator: SyncCoordinator, server):
        server.seed(EntityKind.CATEGORY, {"categoryName": "Drinks"})
        server.seed(EntityKind.CATEGORY, {"categoryName": "Desserts"})

        response = await coordinator.request("GET", "/api/menu/categories")

        assert response.is_offline_data is False
        assert len(response.data) == 2
        assert len(await coordinator.store.list_all(EntityKind.CATEGORY)) == 2
        assert await coordinator.store.get_metadata(last_sync_key(EntityKind.CATEGORY)) is not None

    async def test_online_item_read_is_cached(self, coordinator: SyncCoordinator, server):
        document = server.seed(EntityKind.OUTLET, {"name": "Zomato"})

        await coordinator.request("GET", f"/api/outlets/{document['_id']}")

        cached = await coordinator.store.get(EntityKind.OUTLET, document["_id"])
        assert cached.data["name"] == "Zomato"

    async def test_offline_read_serves_cache(self, coordinator: SyncCoordinator, server, network):
        server.seed(EntityKind.CATEGORY, {"categoryName": "Drinks"})
        await coordinator.request("GET", "/api/menu/categories")
        await network.down()

        response = await coordinator.request("GET", "/api/menu/categories")

        assert response.is_offline_data is True
        assert response.last_sync_time is not None
        assert [doc["categoryName"] for doc in response.data] == ["Drinks"]

    async def test_offline_read_without_cache(self, coordinator: SyncCoordinator, network):
        await network.down()

        with pytest.raises(NetworkError):
            await coordinator.request("GET", "/api/menu/categories")
        with pytest.raises(NetworkError):
            await coordinator.request("GET", "/api/orders")

    async def test_network_failure_falls_back_to_cache(self, coordinator: SyncCoordinator, server, transport):
        document = server.seed(EntityKind.OUTLET, {"name": "Zomato"})
        await coordinator.request("GET", "/api/outlets")
        transport.offline = True

        response = await coordinator.request("GET", f"/api/outlets/{document['_id']}")

        assert response.is_offline_data is True
        assert response.data["name"] == "Zomato"
        # Only probes and manual overrides change connectivity
        assert coordinator.is_online is True

    async def test_offline_read_filters_and_populates_references(self, coordinator: SyncCoordinator, server, network):
        booth = server.seed(EntityKind.TABLE_TYPE, {"tableTypeName": "Booth"})
        patio = server.seed(EntityKind.TABLE_TYPE, {"tableTypeName": "Patio"})
        server.seed(EntityKind.TABLE, {"tableName": "T1", "tableType": booth["_id"], "status": "free"})
        server.seed(EntityKind.TABLE, {"tableName": "T2", "tableType": patio["_id"], "status": "free"})
        await coordinator.request("GET", "/api/tables/types")
        await coordinator.request("GET", "/api/tables")
        await network.down()

        response = await coordinator.request("GET", "/api/tables", params={"tableType": booth["_id"], "page": 1})

        assert [doc["tableName"] for doc in response.data] == ["T1"]
        assert response.data[0]["tableType"]["tableTypeName"] == "Booth"

class TestOnlineMutations:
    async def test_mutation_passes_through(self, coordinator: SyncCoordinator, server):
        response = await coordinator.request("POST", "/api/menu/categories", payload={"categoryName": "Drinks"})

        assert response.is_offline_operation is False
        assert response.data["_id"] in server.collections[EntityKind.CATEGORY]
        cached = await coordinator.store.get(EntityKind.CATEGORY, response.data["_id"])
        assert cached.is_temp is False
        assert await coordinator.pending_operations() == []

    async def test_application_error_is_not_queued(self, coordinator: SyncCoordinator, server):
        server.fail("POST", "/api/menu/categories", 400, "categoryName is required")

        with pytest.raises(ApiError) as exc_info:
            await coordinator.request("POST", "/api/menu/categories", payload={})

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "categoryName is required"
        assert await coordinator.pending_operations() == []

    async def test_network_failure_queues_mutation(self, coordinator: SyncCoordinator, transport):
        transport.timeout = True

        response = await coordinator.request("POST", "/api/outlets", payload={"name": "Zomato"})

        assert response.is_offline_operation is True
        assert len(await coordinator.pending_operations()) == 1

    async def test_online_delete_removes_cached_record(self, coordinator: SyncCoordinator, server):
        document = server.seed(EntityKind.OUTLET, {"name": "Zomato"})
        await coordinator.request("GET", "/api/outlets")

        await coordinator.request("DELETE", f"/api/outlets/{document['_id']}")

        assert await coordinator.store.get(EntityKind.OUTLET, document["_id"]) is None
        assert server.documents(EntityKind.OUTLET) == []

    async def test_mutation_behind_queued_operation_is_queued(self, coordinator: SyncCoordinator, server, network):
        document = server.seed(EntityKind.MENU_PRICING, {"dish": "Soup", "price": 9})
        await coordinator.request("GET", "/api/menu/pricing")
        await network.down()
        await coordinator.request("PUT", f"/api/menu/pricing/{document['_id']}", payload={"price": 10})
        await network.up()

        response = await coordinator.request("PUT", f"/api/menu/pricing/{document['_id']}", payload={"price": 11})

        assert response.is_offline_operation is True
        assert server.calls_to("PUT") == []
        assert len(await coordinator.pending_operations()) == 2

    async def test_unregistered_mutation_offline(self, coordinator: SyncCoordinator, network):
        await network.down()

        with pytest.raises(NetworkError):
            await coordinator.request("POST", "/api/orders", payload={"total": 10})

class TestOfflineMutations:
    async def test_offline_create(self, coordinator: SyncCoordinator, network):
        await network.down()

        response = await coordinator.request("POST", "/api/outlets", payload={"name": "Zomato"})

        assert response.success is True
        assert response.is_offline_operation is True
        assert is_temp_id(response.data["_id"])
        assert response.data["isTemp"] is True

        entity = await coordinator.store.get(EntityKind.OUTLET, response.data["_id"])
        assert entity.is_temp is True
        pending = await coordinator.pending_operations()
        assert len(pending) == 1
        assert pending[0].type == "CREATE_OUTLET"
        assert pending[0].temp_id == response.data["_id"]
        assert pending[0].operation_id == response.operation_id

    async def test_offline_update_records_snapshot(self, coordinator: SyncCoordinator, server, network):
        document = server.seed(EntityKind.MENU_PRICING, {"dish": "Soup", "price": 9})
        await coordinator.request("GET", "/api/menu/pricing")
        await network.down()

        response = await coordinator.request(
            "PUT", f"/api/menu/pricing/{document['_id']}", payload={"price": 10, "updatedAt": "2025-10-27T12:00:00Z"}
        )

        assert response.data["price"] == 10
        operation = (await coordinator.pending_operations())[0]
        assert operation.payload == {"price": 10}
        assert operation.snapshot == {"dish": "Soup", "price": 9, "__v": 0}
        assert operation.target_id == document["_id"]
        cached = await coordinator.store.get(EntityKind.MENU_PRICING, document["_id"])
        assert cached.data["price"] == 10

    async def test_offline_stock_update(self, coordinator: SyncCoordinator, server, network):
        document = server.seed(EntityKind.CATEGORY, {"categoryName": "Drinks", "stockStatus": {"inStock": True}})
        await coordinator.request("GET", "/api/menu/categories")
        await network.down()

        await coordinator.request("PUT", f"/api/menu/categories/{document['_id']}/stock", payload={"quantity": 3})

        operation = (await coordinator.pending_operations())[0]
        assert operation.type == "UPDATE_CATEGORY_STOCK"
        assert operation.subresource == "stock"
        stock = (await coordinator.store.get(EntityKind.CATEGORY, document["_id"])).data["stockStatus"]
        assert stock["inStock"] is True
        assert stock["quantity"] == 3
        assert "lastStockUpdate" in stock

    async def test_offline_delete(self, coordinator: SyncCoordinator, server, network):
        document = server.seed(EntityKind.OUTLET, {"name": "Zomato"})
        await coordinator.request("GET", "/api/outlets")
        await network.down()

        response = await coordinator.request("DELETE", f"/api/outlets/{document['_id']}")

        assert response.is_offline_operation is True
        assert await coordinator.store.get(EntityKind.OUTLET, document["_id"]) is None
        operation = (await coordinator.pending_operations())[0]
        assert operation.action == OperationAction.DELETE
        assert operation.snapshot["name"] == "Zomato"

    async def test_update_of_temp_record(self, coordinator: SyncCoordinator, network):
        await network.down()
        created = await coordinator.request("POST", "/api/menu/categories", payload={"categoryName": "Drinks"})
        temp_id = created.data["_id"]

        await coordinator.request("PUT", f"/api/menu/categories/{temp_id}", payload={"categoryStatus": "inactive"})

        update = (await coordinator.pending_operations())[1]
        assert update.temp_id == temp_id
        assert update.target_id == temp_id
        entity = await coordinator.store.get(EntityKind.CATEGORY, temp_id)
        assert entity.data == {"categoryName": "Drinks", "categoryStatus": "inactive"}

    async def test_temp_reference_is_queued_even_online(self, coordinator: SyncCoordinator, server, network):
        await network.down()
        created = await coordinator.request("POST", "/api/menu/categories", payload={"categoryName": "Drinks"})
        await network.up()

        response = await coordinator.request(
            "POST", "/api/menu/subcategories",
            payload={"subCategoryName": "Juices", "category": created.data["_id"]}
        )

        assert response.is_offline_operation is True
        assert server.calls_to("POST") == []

    async def test_delete_of_temp_record_is_local(self, coordinator: SyncCoordinator, network):
        await network.down()
        created = await coordinator.request("POST", "/api/outlets", payload={"name": "Zomato"})
        temp_id = created.data["_id"]
        await coordinator.request("PUT", f"/api/outlets/{temp_id}", payload={"city": "Pune"})

        response = await coordinator.request("DELETE", f"/api/outlets/{temp_id}")

        assert response.success is True
        assert await coordinator.store.get(EntityKind.OUTLET, temp_id) is None
        assert await coordinator.pending_operations() == []

    async def test_operation_queued_event(self, coordinator: SyncCoordinator, network):
        events = []
        coordinator.on(EventType.OPERATION_QUEUED, events.append)
        await network.down()

        response = await coordinator.request("POST", "/api/outlets", payload={"name": "Zomato"})

        assert len(events) == 1
        assert events[0]["data"]["operation_id"] == response.operation_id

    async def test_queue_counts_in_status(self, coordinator: SyncCoordinator, network):
        await network.down()
        await coordinator.request("POST", "/api/outlets", payload={"name": "Zomato"})
        await coordinator.request("POST", "/api/outlets", payload={"name": "Swiggy"})

        assert coordinator.tracker.status.pending_operations == 2
