# chatrelay/presence.py
# Presence Publisher: pushes the sorted online-identity list to every live connection.

import asyncio          # For the lock that serializes presence snapshots.
import logging          # For logging relay events, warnings, and errors.

from chatrelay import config
from chatrelay.connection import fan_out


class PresencePublisher:
    def __init__(self, registry):
        self.registry = registry
        # Publishes are serialized so a connection never receives an older
        # snapshot after a newer one.
        self._lock = asyncio.Lock()
        registry.add_listener(self.publish)

    async def publish(self):
        async with self._lock:
            online = self.registry.online_identities()
            targets = self.registry.all_connections()
            if config.DEBUG:
                logging.info(f"Publishing presence {online} to {len(targets)} connection(s)")
            return await fan_out(targets, "UsersUpdated", online)
