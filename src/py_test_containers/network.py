"""Handle for a network created in a test session."""

from __future__ import annotations

import logging

from py_test_containers.engine.client import EngineClient

logger = logging.getLogger(__name__)


class Network:
    """A session network. Containers join it by name."""

    def __init__(self, name: str, client: EngineClient, network_id: str | None = None) -> None:
        self._client = client
        self.name = name
        self.id = network_id

    def __repr__(self) -> str:
        return f"Network(name={self.name!r})"

    async def delete(self) -> None:
        """Delete the network. A network that is already gone is tolerated."""
        logger.debug("Deleting network %s", self.name)
        await self._client.network_delete(self.id or self.name)
