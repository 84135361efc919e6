# chatrelay/hub.py
# Relay hub: one relay instance with its registry, publishers, router and coordinator.
#
# The hub is transport-agnostic. The websocket server hands it a Connection per client
# and each decoded `(action, payload)`; the hub validates the payload, runs the
# action and reports failures to the acting connection only. It also owns the
# connect/disconnect lifecycle, including the implicit hangup of calls whose party
# lost its last connection.

import asyncio          # For running blocking directory calls in a worker thread.
import logging          # For logging relay events, warnings, and errors.

from pydantic import ValidationError

from chatrelay import config
from chatrelay.calls import CallCoordinator
from chatrelay.errors import DirectoryUnavailable, InvalidRequest, RelayError
from chatrelay.groups import GroupMembershipManager, validate_group_name
from chatrelay.models import AddressKind, Addressing
from chatrelay.presence import PresencePublisher
from chatrelay.protocol import ACTION_PAYLOADS, CONVERSATION_KINDS, message_to_wire
from chatrelay.registry import ConnectionRegistry
from chatrelay.router import MessageRouter
from chatrelay.stores import InMemoryGroupDirectory, InMemoryMessageStore, InMemoryUserDirectory


class RelayHub:
    def __init__(self, user_directory=None, message_store=None, group_directory=None):
        self.user_directory = user_directory or InMemoryUserDirectory()
        self.message_store = message_store or InMemoryMessageStore()
        self.group_directory = group_directory or InMemoryGroupDirectory()

        self.registry = ConnectionRegistry()
        self.presence = PresencePublisher(self.registry)
        self.groups = GroupMembershipManager(self.group_directory)
        self.router = MessageRouter(self.registry, self.groups, self.message_store, self.user_directory)
        self.calls = CallCoordinator(self.registry)

        self._handlers = {
            "SendMessageToAll": self._send_message_to_all,
            "SendPrivateMessage": self._send_private_message,
            "SendMessageToGroup": self._send_message_to_group,
            "MarkMessageAsRead": self._mark_message_as_read,
            "TypingToUser": self._typing_to_user,
            "TypingToGroup": self._typing_to_group,
            "JoinGroup": self._join_group,
            "LeaveGroup": self._leave_group,
            "GetConversation": self._get_conversation,
            "GetUsers": self._get_users,
            "GetMyGroups": self._get_my_groups,
            "CallUser": self._call_user,
            "AcceptCall": self._accept_call,
            "RejectCall": self._reject_call,
            "Hangup": self._hangup,
            "SendOffer": self._send_offer,
            "SendAnswer": self._send_answer,
            "SendIceCandidate": self._send_ice_candidate,
        }

    # --- Lifecycle ---

    async def register(self, connection, identity):
        """
        Attach an authenticated identity to a connection and add it to the registry.

        Sends Registered(identity) on success, RegistrationFailed(identity, reason) otherwise.
        A connection registers once; a second attempt fails without touching the first.

        Returns:
            bool: True if the connection is now registered as ``identity``.
        """
        if connection.identity is not None:
            logging.warning(f"Client {connection.remote_address} tried to register '{identity}' but is already registered as '{connection.identity}'. Denying.")
            await connection.send("RegistrationFailed", identity, f"You are already registered as '{connection.identity}'.")
            return False
        try:
            known = await asyncio.to_thread(self.user_directory.exists, identity)
            if not known:
                if not config.AUTO_ENROLL_USERS:
                    logging.warning(f"Identity '{identity}' is not in the user directory. Denying request from {connection.remote_address}.")
                    await connection.send("RegistrationFailed", identity, "Unknown user.")
                    return False
                await asyncio.to_thread(self.user_directory.enroll, identity)
        except ValueError as e:
            logging.warning(f"Enrollment of '{identity}' refused: {e}")
            await connection.send("RegistrationFailed", identity, str(e))
            return False
        except Exception:
            logging.exception(f"User directory unavailable while registering '{identity}'")
            await connection.send("RegistrationFailed", identity, "User directory unavailable.")
            return False

        connection.identity = identity
        logging.info(f"Identity '{identity}' registered successfully for {connection.remote_address}")
        await connection.send("Registered", identity)
        await self.registry.register(identity, connection)
        return True

    async def disconnect(self, connection):
        """Clean up after a closed connection. Safe to call for never-registered connections."""
        identity = connection.identity
        if identity is None:
            logging.info(f"Client {connection.remote_address} disconnected but had no registered identity.")
            return
        dropped = await self.groups.drop_connection(connection)
        if dropped and config.DEBUG:
            logging.info(f"Dropped live subscriptions of {connection!r} to {dropped}")
        await self.registry.unregister(identity, connection)
        if not self.registry.is_online(identity):
            await self.calls.end_calls_for(identity)

    # --- Dispatch ---

    async def dispatch(self, connection, action, payload):
        """
        Run one inbound action for a registered connection.

        Every failure stays with the acting connection: RelayErrors become
        Error(code, message) events, anything unexpected is logged and reported as
        InternalError. Nothing here is fatal to the server.
        """
        if action == "Register":
            try:
                request = ACTION_PAYLOADS[action].model_validate(payload)
            except ValidationError as e:
                identity = payload.get("identity") if isinstance(payload, dict) else None
                await connection.send("RegistrationFailed", identity, _first_error(e))
                return
            await self.register(connection, request.identity)
            return

        if connection.identity is None:
            logging.warning(f"Received {action} from unregistered client {connection.remote_address}. Ignoring.")
            return

        handler = self._handlers.get(action)
        if handler is None:
            logging.warning(f"Unknown action '{action}' from '{connection.identity}'.")
            await connection.send("Error", "UnknownAction", f"Unknown action '{action}'.")
            return

        try:
            try:
                request = ACTION_PAYLOADS[action].model_validate(payload)
            except ValidationError as e:
                raise InvalidRequest(_first_error(e)) from e
            await handler(connection, request)
        except RelayError as e:
            logging.warning(f"{action} from '{connection.identity}' failed: {e.code}: {e.message}")
            await connection.send("Error", e.code, e.message)
        except Exception:
            logging.exception(f"Unexpected error handling {action} from '{connection.identity}'")
            await connection.send("Error", "InternalError", f"{action} failed.")

    # --- Chat handlers ---

    async def _send_message_to_all(self, connection, request):
        await self.router.send_broadcast(connection.identity, request.text, request.attachment)

    async def _send_private_message(self, connection, request):
        await self.router.send_direct(connection.identity, request.to, request.text, request.attachment)

    async def _send_message_to_group(self, connection, request):
        await self.router.send_group(connection, request.group, request.text, request.attachment)

    async def _mark_message_as_read(self, connection, request):
        await self.router.mark_read(request.message_id, request.from_user, reader=connection.identity)

    async def _typing_to_user(self, connection, request):
        await self.router.typing_to_user(connection.identity, request.to)

    async def _typing_to_group(self, connection, request):
        validate_group_name(request.group)
        await self.router.typing_to_group(connection.identity, request.group)

    async def _join_group(self, connection, request):
        await self.groups.join(connection, request.group)

    async def _leave_group(self, connection, request):
        await self.groups.leave(connection, request.group)

    async def _get_conversation(self, connection, request):
        kind = CONVERSATION_KINDS[request.kind]
        messages = []
        if kind == AddressKind.BROADCAST:
            messages = await self.router.history(connection.identity, Addressing.broadcast())
        elif request.name:
            if kind == AddressKind.DIRECT:
                other = await self._resolve_user(request.name)
                if other is not None:
                    messages = await self.router.history(connection.identity, Addressing.direct(other))
            elif await self.groups.group_exists(request.name):
                messages = await self.router.history(connection.identity, Addressing.group(request.name))
        await connection.send("Conversation", request.kind, request.name, [message_to_wire(m) for m in messages])

    async def _get_users(self, connection, request):
        try:
            identities = await asyncio.to_thread(self.user_directory.list_identities)
        except Exception as e:
            logging.exception("User directory listing failed")
            raise DirectoryUnavailable(f"User directory unavailable: {e}") from e
        await connection.send("Users", identities)

    async def _get_my_groups(self, connection, request):
        await connection.send("MyGroups", await self.groups.groups_of(connection.identity))

    # --- Call handlers ---

    async def _call_user(self, connection, request):
        await self.calls.call_user(connection.identity, request.to, request.media_kind, origin=connection)

    async def _accept_call(self, connection, request):
        await self.calls.accept_call(connection.identity, request.caller)

    async def _reject_call(self, connection, request):
        await self.calls.reject_call(connection.identity, request.caller)

    async def _hangup(self, connection, request):
        await self.calls.hangup(connection.identity, request.other)

    async def _send_offer(self, connection, request):
        await self.calls.send_offer(connection.identity, request.to, request.offer)

    async def _send_answer(self, connection, request):
        await self.calls.send_answer(connection.identity, request.to, request.answer)

    async def _send_ice_candidate(self, connection, request):
        await self.calls.send_ice_candidate(connection.identity, request.to, request.candidate)

    async def _resolve_user(self, name):
        try:
            return await asyncio.to_thread(self.user_directory.resolve, name)
        except Exception as e:
            logging.exception("User directory lookup failed")
            raise DirectoryUnavailable(f"User directory unavailable: {e}") from e


def _first_error(error):
    detail = error.errors()[0]
    location = ".".join(str(part) for part in detail.get("loc", ()))
    return f"{location}: {detail['msg']}" if location else detail["msg"]
