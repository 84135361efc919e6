# chatrelay/registry.py
# Connection Registry.
#
# Concurrency-safe multimap from identity to the set of that identity's live
# connections. An identity is present iff it has at least one connection: entries
# are created on first register and removed as soon as the last connection goes.
#
# Mutations run under an asyncio lock and never await while holding it, so a reader
# only ever sees the state before or after a whole register/unregister. Reads return
# snapshots (copies) that callers may iterate across awaits without holding anything.
# Change listeners are awaited after the lock is released.

import asyncio          # For the lock that keeps registry mutations atomic.
import logging          # For logging relay events, warnings, and errors.


class ConnectionRegistry:
    def __init__(self):
        self._connections = {}  # identity -> set of Connection
        self._lock = asyncio.Lock()
        self._listeners = []

    def add_listener(self, callback):
        """Register ``async callback()`` to run after every presence-affecting change."""
        self._listeners.append(callback)

    async def register(self, identity, connection):
        """Add ``connection`` under ``identity``. Registering the same handle twice is harmless.

        Listeners run on every call: a new connection needs the presence list even when
        its identity was already online.
        """
        async with self._lock:
            connections = self._connections.setdefault(identity, set())
            added = connection not in connections
            connections.add(connection)
            count = len(connections)
        if added:
            logging.info(f"Registered connection {connection.connection_id[:8]} for '{identity}' ({count} live)")
        await self._notify()
        return added

    async def unregister(self, identity, connection):
        """Remove ``connection``. Unknown identity or connection is a no-op, not an error.

        Returns:
            bool: True if the connection was registered and has been removed.
        """
        async with self._lock:
            connections = self._connections.get(identity)
            if connections is None or connection not in connections:
                removed = False
            else:
                connections.discard(connection)
                if not connections:
                    del self._connections[identity]
                removed = True
        if not removed:
            return False
        logging.info(f"Unregistered connection {connection.connection_id[:8]} for '{identity}'")
        await self._notify()
        return True

    def connections_of(self, identity):
        return frozenset(self._connections.get(identity, ()))

    def online_identities(self):
        return sorted(self._connections)

    def all_connections(self):
        return [conn for connections in self._connections.values() for conn in connections]

    def is_online(self, identity):
        return identity in self._connections

    async def _notify(self):
        for callback in list(self._listeners):
            try:
                await callback()
            except Exception:
                logging.exception("Presence listener failed")
