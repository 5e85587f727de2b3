"""
Connectivity tracking.

The monitor is the single source of truth for "are we online". It is fed by
periodic probes of the server health endpoint and by manual overrides from
the UI.
"""
import logging

from pos_sync.core.exceptions import ApiError, NetworkError
from pos_sync.services.api_client import ApiClient
from pos_sync.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    def __init__(self, api_client: ApiClient, event_bus: EventBus, healthcheck_path: str = "/api/init"):
        self.api_client = api_client
        self.event_bus = event_bus
        self.healthcheck_path = healthcheck_path
        self._online = True

    @property
    def is_online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> bool:
        """Record connectivity. Returns True when the state changed."""
        if online == self._online:
            return False
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        await self.event_bus.publish(EventType.CONNECTIVITY_CHANGED, {"online": online})
        return True

    async def probe(self) -> bool:
        """Check the server health endpoint and update the state."""
        try:
            await self.api_client.request("GET", self.healthcheck_path)
            online = True
        except NetworkError:
            online = False
        except ApiError as e:
            # The server answered, so the network is up
            logger.debug(f"Health check returned {e.status_code}")
            online = True
        await self.set_online(online)
        return online
