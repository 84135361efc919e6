"""Shared fakes for the relay tests."""

import uuid


class FakeConnection:
    """Stands in for chatrelay.connection.Connection and records every event sent to it."""

    def __init__(self, identity=None, connection_id=None, alive=True):
        self.identity = identity
        self.connection_id = connection_id or uuid.uuid4().hex
        self.remote_address = ("127.0.0.1", 50000)
        self.alive = alive
        self.events = []

    async def send(self, event, *args):
        if not self.alive:
            return False
        self.events.append((event, args))
        return True

    def received(self, event):
        """Payloads of every ``event`` this connection got, oldest first."""
        return [args for name, args in self.events if name == event]

    def names(self):
        return [name for name, _ in self.events]

    def clear(self):
        self.events.clear()

    def __repr__(self):
        return f"<FakeConnection {self.connection_id[:8]} identity={self.identity!r}>"
