# chatrelay/server.py
# This file contains the WebSocket transport for the chatrelay server.
# Responsibilities include:
# - Accepting client connections and wrapping each one in a Connection handle.
# - Rate limiting connection attempts per IP and frames per connection.
# - Parsing and validating the JSON frame envelope ({"type": <action>, "payload": {...}}).
# - Handing each valid action to the RelayHub, which does the routing and signaling.
# - Cleaning up (registry, group channels, implicit call hangup) when a connection closes.
# - Setting up the SSL context for Secure WebSockets (WSS) if configured.

import asyncio          # For the event loop and running the server forever.
import json             # For parsing inbound JSON frames.
import logging          # For logging server events, warnings, and errors.
import ssl              # For creating SSL contexts for WSS.
import time             # For timestamping in rate limiting logic.

import websockets       # The WebSocket library used for the server implementation.
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from chatrelay import config        # Server configuration (HOST, PORT, SSL, rate limits, DEBUG).
from chatrelay.connection import Connection
from chatrelay.hub import RelayHub


class SlidingWindowLimiter:
    """
    Counts events per key inside a sliding time window.

    Used for both connection attempts (keyed by IP) and inbound frames (keyed by connection).
    Expired timestamps are discarded on every check, and once per window every key whose
    timestamps have all expired is dropped, so idle IPs do not accumulate.
    """

    def __init__(self, max_events, window_seconds, clock=time.time):
        self.max_events = max_events
        self.window_seconds = window_seconds
        self.clock = clock
        self._events = {}
        self._last_prune = clock()

    def allow(self, key):
        """Record one event for ``key``. Returns False (and records nothing) if the limit is reached."""
        current_time = self.clock()
        if current_time - self._last_prune >= self.window_seconds:
            self.prune(current_time)
        # Keep only timestamps that are still inside the window.
        recent = [t for t in self._events.get(key, []) if current_time - t < self.window_seconds]
        if len(recent) >= self.max_events:
            self._events[key] = recent
            return False
        recent.append(current_time)
        self._events[key] = recent
        return True

    def forget(self, key):
        self._events.pop(key, None)

    def prune(self, current_time=None):
        """Drop every key with no timestamp left inside the window."""
        current_time = self.clock() if current_time is None else current_time
        self._events = {
            key: timestamps for key, timestamps in self._events.items()
            if timestamps and current_time - timestamps[-1] < self.window_seconds
        }
        self._last_prune = current_time


class RelayServer:
    """WebSocket front end for one RelayHub."""

    def __init__(self, hub=None):
        self.hub = hub or RelayHub()
        # CONNECTION_ATTEMPTS: recent connection timestamps per client IP.
        self.connection_limiter = SlidingWindowLimiter(config.MAX_CONNECTIONS_PER_IP, config.CONNECTION_WINDOW_SECONDS)
        # MESSAGE_TIMESTAMPS: recent frame timestamps per live connection id.
        self.message_limiter = SlidingWindowLimiter(config.MAX_MESSAGES_PER_CONNECTION, config.MESSAGE_WINDOW_SECONDS)

    # --- Main Connection Handler ---
    async def connection_handler(self, websocket):
        """
        Handles one client's WebSocket connection lifecycle.

        1. Connection rate limiting based on client IP.
        2. Loop over incoming frames:
            - Frame rate limiting per connection.
            - JSON envelope validation (object with string 'type' and object 'payload').
            - Dispatch to the hub, which validates the payload for that action.
        3. On closure (clean or not), hub cleanup: group channels, registry, implicit hangup.

        Args:
            websocket: The websockets server connection for this client.
        """
        remote_address = websocket.remote_address or ("unknown", 0)
        client_ip = remote_address[0]
        logging.info(f"Client attempting connection from {client_ip}:{remote_address[1]}")

        # --- Connection Rate Limiting ---
        if not self.connection_limiter.allow(client_ip):
            # Always log rate limit warnings.
            logging.warning(f"Connection rate limit exceeded for IP {client_ip}. Closing connection.")
            # Close the connection immediately with a policy violation code.
            await websocket.close(code=1008, reason="Connection rate limit exceeded")
            return
        logging.info(f"Connection accepted from {client_ip}:{remote_address[1]}")

        connection = Connection(websocket)
        try:
            # --- Frame Receiving Loop ---
            # Frames from one connection are handled strictly in order; the loop ends when the socket closes.
            async for message in websocket:
                # --- Message Rate Limiting ---
                if not self.message_limiter.allow(connection.connection_id):
                    logging.warning(f"Message rate limit exceeded for {connection.remote_address} ({connection.identity or 'Unregistered'}). Sending notification and closing connection.")
                    await connection.send("Error", "RateLimited", "Message rate limit exceeded. Disconnecting.")
                    await websocket.close(code=1008, reason="Message rate limit exceeded")
                    break

                frame = parse_frame(message, connection)
                if frame is None:
                    continue
                action, payload = frame

                if config.DEBUG:
                    logging.info(f"Received {action} from {connection.remote_address} ({connection.identity or 'Unregistered'}): {payload}")
                await self.hub.dispatch(connection, action, payload)

        # --- Connection Closed Handling ---
        except ConnectionClosedOK:
            logging.info(f"Client {connection.remote_address} disconnected gracefully.")
        except ConnectionClosedError as e:
            logging.info(f"Client {connection.remote_address} disconnected with error: {e}")
        except Exception:
            # Unexpected errors in the loop itself; the process keeps serving everyone else.
            logging.exception(f"An unexpected error occurred handling client {connection.remote_address}")
        finally:
            # --- Cleanup ---
            self.message_limiter.forget(connection.connection_id)
            await self.hub.disconnect(connection)
            logging.info(f"Connection closed for {connection.remote_address}")


def parse_frame(message, connection):
    """
    Validates the envelope of one inbound frame.

    Returns:
        tuple[str, dict] | None: (action, payload), or None if the frame is malformed (logged and ignored).
    """
    if not isinstance(message, str):
        logging.warning(f"Binary frame received from {connection.remote_address}. Ignoring.")
        return None
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        logging.warning(f"Invalid JSON received from {connection.remote_address}. Ignoring.")
        return None
    if not isinstance(data, dict):
        logging.warning(f"Received non-dictionary data from {connection.remote_address}. Ignoring: {data}")
        return None
    action = data.get("type")
    payload = data.get("payload", {})
    if not isinstance(action, str) or not action:
        logging.warning(f"Missing or invalid 'type' in message from {connection.remote_address}. Ignoring: {data}")
        return None
    if not isinstance(payload, dict):
        logging.warning(f"Invalid 'payload' (not a dictionary) in message from {connection.remote_address}. Ignoring: {data}")
        return None
    return action, payload


def create_ssl_context():
    """
    Builds the server SSL context from config.CERT_FILE / config.KEY_FILE.

    Returns:
        ssl.SSLContext | None: None when SSL is disabled or the cert/key cannot be loaded (falls back to WS).
    """
    if not config.ENABLE_SSL:
        return None
    try:
        logging.info(f"Attempting to load SSL cert: {config.CERT_FILE}")
        logging.info(f"Attempting to load SSL key: {config.KEY_FILE}")
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.CERT_FILE, config.KEY_FILE)
        logging.info("SSL context created successfully. Server will use WSS.")
        return ssl_context
    except FileNotFoundError:
        logging.error(f"SSL Error: Certificate or Key file not found (Cert: '{config.CERT_FILE}', Key: '{config.KEY_FILE}'). Disabling SSL, falling back to WS.")
    except (ssl.SSLError, OSError):
        logging.exception("SSL Error: Failed to create SSL context. Disabling SSL, falling back to WS.")
    return None


def serve(relay_server, host, port, ssl_context=None):
    """Returns the websockets server context manager for ``relay_server`` (not yet started)."""
    return websockets.serve(
        relay_server.connection_handler,
        host,
        port,
        ssl=ssl_context,
        max_size=config.MAX_MESSAGE_SIZE,
    )


# --- Server Startup Function ---
async def start_server(host, port, hub=None):
    """
    Starts the WebSocket server on ``host``:``port`` and runs until cancelled.

    Args:
        host (str): The hostname or IP address to bind to.
        port (int): The port number to bind to.
        hub (RelayHub | None): The relay instance to serve; a fresh in-memory one if omitted.
    """
    relay_server = RelayServer(hub)
    ssl_context = create_ssl_context()
    effective_protocol = "wss" if ssl_context else "ws"

    logging.info(f"Starting server on {effective_protocol}://{host}:{port}")
    logging.info(f"Connection Rate Limit: {config.MAX_CONNECTIONS_PER_IP} per {config.CONNECTION_WINDOW_SECONDS}s per IP")
    logging.info(f"Message Rate Limit: {config.MAX_MESSAGES_PER_CONNECTION} per {config.MESSAGE_WINDOW_SECONDS}s per Connection")
    logging.info(f"Maximum WebSocket message size set to: {config.MAX_MESSAGE_SIZE} bytes")
    logging.info(f"Server Debug Logging: {'ENABLED' if config.DEBUG else 'DISABLED'}")

    try:
        async with serve(relay_server, host, port, ssl_context):
            # Keep serving until the process is interrupted.
            await asyncio.Future()
    except OSError:
        logging.exception(f"OSError starting server on {host}:{port} - Is the port already in use?")
        raise
