# chatrelay/connection.py
# Connection handles and the outbound event encoding shared by every component.
# An outbound event is a JSON object {"type": <event name>, "payload": [positional args]};
# the positional order of the args is the contract clients rely on.

import asyncio          # For sending to many connections concurrently.
import json             # For serializing outbound events.
import logging          # For logging send failures.
import uuid             # For generating connection ids.
from datetime import datetime
from enum import Enum

from websockets.exceptions import ConnectionClosed  # Raised by send() on a closed socket.

from chatrelay import config


def _encode_value(value):
    """json.dumps fallback for the non-JSON types that appear in event payloads."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_event(event, *args):
    return json.dumps({"type": event, "payload": list(args)}, default=_encode_value)


class Connection:
    """
    One live transport session. Owned by the Connection Registry between register and unregister.

    Wraps a websockets server connection; ``identity`` is filled in once the client registers.
    Instances hash by identity of the object, so one websocket maps to exactly one handle.
    """

    def __init__(self, websocket, connection_id=None):
        self.websocket = websocket
        self.connection_id = connection_id or uuid.uuid4().hex
        self.identity = None

    @property
    def remote_address(self):
        return getattr(self.websocket, "remote_address", None)

    async def send(self, event, *args):
        """
        Send one event to this connection.

        A connection that closed between lookup and send is an expected race, not an error:
        the failure is logged and False is returned so fan-out can carry on with the others.

        Args:
            event (str): Event name, e.g. "ReceivePrivateMessage".
            *args: Positional payload values.

        Returns:
            bool: True if the frame was handed to the transport.
        """
        try:
            message = encode_event(event, *args)
            # Log the outgoing frame only if server DEBUG mode is enabled in config.
            if config.DEBUG:
                logging.info(f"Sending to {self.remote_address} ({self.identity or 'N/A'}): {message}")
            await self.websocket.send(message)
            return True
        except ConnectionClosed:
            logging.warning(f"Failed to send {event} to {self.remote_address} ({self.identity or 'N/A'}) because connection is closed.")
        except Exception:
            logging.exception(f"Unexpected error sending {event} to {self.remote_address} ({self.identity or 'N/A'})")
        return False

    def __repr__(self):
        return f"<Connection {self.connection_id[:8]} identity={self.identity!r}>"


async def fan_out(connections, event, *args):
    """
    Deliver one event to every connection in ``connections``.

    Best effort: no retry, and a failed connection never stops delivery to the rest.

    Returns:
        int: Number of connections the event was handed to.
    """
    targets = list(connections)
    if not targets:
        return 0
    results = await asyncio.gather(*(conn.send(event, *args) for conn in targets))
    return sum(1 for delivered in results if delivered)
