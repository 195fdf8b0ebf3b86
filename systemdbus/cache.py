"""
systemdbus/cache.py - Opt-in connection sharing
"""

import asyncio
import logging
from typing import Hashable

from systemdbus.config import BusConfig
from systemdbus.connection import Connection, connect


logger = logging.getLogger("systemdbus")


class ConnectionCache:
    """
    Hands out one connection per caller-chosen scope.

    The first get() for a scope connects; later calls return the same
    connection until it is closed, after which the next get() reconnects.
    Nothing is shared between separate caches.
    """

    def __init__(self, config: BusConfig | None = None):
        self.config = config
        self.connections: dict[Hashable, Connection] = {}
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self.connections)

    async def get(self, scope: Hashable = None) -> Connection:
        async with self.lock:
            connection = self.connections.get(scope)
            if connection is None or connection.closed:
                logger.debug("Opening connection for scope %r", scope)
                connection = await connect(self.config)
                self.connections[scope] = connection
            return connection

    async def close(self):
        async with self.lock:
            connections, self.connections = self.connections, {}
            for connection in connections.values():
                connection.close()
