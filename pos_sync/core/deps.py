from fastapi import Request

from pos_sync.services.coordinator import SyncCoordinator


def get_coordinator(request: Request) -> SyncCoordinator:
    """Coordinator built by the application lifespan."""
    return request.app.state.coordinator
