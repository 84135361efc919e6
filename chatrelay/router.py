# chatrelay/router.py
# Message Router.
#
# Every send goes through the same three phases:
#
# 1. resolve the addressing (and reject what cannot be delivered at all),
# 2. persist through the message store,
# 3. fan out to the live connections resolved *after* persistence.
#
# A message that reaches any client is therefore already durable. Sends from one
# identity are serialized by a per-sender lock so they are persisted and relayed in
# submission order; sends from different identities run independently.
#
# Store and directory calls are blocking; they run in a worker thread and no
# registry state is held across them.

import asyncio          # For the per-sender locks and running store calls in a worker thread.
import logging          # For logging relay events, warnings, and errors.
from contextlib import asynccontextmanager

from pydantic import ValidationError

from chatrelay import config
from chatrelay.connection import fan_out
from chatrelay.errors import (
    DirectoryUnavailable,
    InvalidRequest,
    NotSubscribed,
    StoreUnavailable,
    UnknownRecipient,
)
from chatrelay.groups import validate_group_name
from chatrelay.models import AddressKind, Addressing, Message, now_utc


def attachment_args(message):
    """The (fileUrl, fileName, fileType, fileSize) tail shared by all Receive* events."""
    attachment = message.attachment
    if attachment is None:
        return (None, None, None, None)
    return (attachment.url, attachment.name, attachment.type.value, attachment.size_bytes)


class MessageRouter:
    def __init__(self, registry, groups, message_store, user_directory):
        self.registry = registry
        self.groups = groups
        self.message_store = message_store
        self.user_directory = user_directory
        self._sender_locks = {}  # identity -> [asyncio.Lock, number of sends holding or awaiting it]

    # --- Sends ---

    async def send_broadcast(self, from_identity, text, attachment=None):
        """Persist a public message, then deliver it to every live connection.

        Recipients are read from the registry at fan-out time, so a connection that
        registers while the message is being persisted may or may not receive it.
        """
        message = self._build(from_identity, Addressing.broadcast(), text, attachment)
        async with self._sender_lock(from_identity):
            message = await self._persist(message)
            delivered = await fan_out(
                self.registry.all_connections(),
                "ReceiveMessage",
                message.from_identity, message.text, message.timestamp_utc, message.id,
                *attachment_args(message),
            )
        self._log_send(message, delivered)
        return message

    async def send_direct(self, from_identity, to_identity, text, attachment=None):
        """Persist an unread private message, then deliver it to both parties' live connections.

        The sender's own connections receive the echo so all of the sender's tabs stay in
        sync. Raises UnknownRecipient, without persisting, if ``to_identity`` does not exist.
        """
        message = self._build(from_identity, Addressing.direct(to_identity), text, attachment)
        async with self._sender_lock(from_identity):
            recipient = await self._resolve_recipient(to_identity)
            if recipient is None:
                logging.warning(f"Direct message from '{from_identity}' to unknown user '{to_identity}' rejected.")
                raise UnknownRecipient(to_identity)
            to_identity = recipient
            message = await self._persist(message.model_copy(update={"addressing": Addressing.direct(recipient)}))
            recipients = self.registry.connections_of(to_identity) | self.registry.connections_of(from_identity)
            delivered = await fan_out(
                recipients,
                "ReceivePrivateMessage",
                message.from_identity, to_identity, message.text, message.timestamp_utc, message.id,
                *attachment_args(message),
                message.is_read,
            )
        self._log_send(message, delivered)
        return message

    async def send_group(self, connection, group_name, text, attachment=None):
        """Persist a group message, then deliver it to the connections subscribed to the group.

        Only a connection that has joined the group may send to it.
        """
        validate_group_name(group_name)
        if not self.groups.is_subscribed(connection, group_name):
            raise NotSubscribed(group_name)
        from_identity = connection.identity
        message = self._build(from_identity, Addressing.group(group_name), text, attachment)
        async with self._sender_lock(from_identity):
            message = await self._persist(message)
            delivered = await fan_out(
                self.groups.subscribers(group_name),
                "ReceiveGroupMessage",
                message.from_identity, group_name, message.text, message.timestamp_utc, message.id,
                *attachment_args(message),
            )
        self._log_send(message, delivered)
        return message

    # --- Read receipts ---

    async def mark_read(self, message_id, original_sender, reader=None):
        """
        Mark a direct message read and tell its sender's live connections.

        Idempotent: only the first transition persists and notifies. Unknown ids,
        non-direct messages and readers other than the recipient are logged and ignored.

        Returns:
            bool: True if this call flipped the message to read.
        """
        message = await self._store_call(self.message_store.get, message_id)
        if message is None:
            logging.warning(f"Mark-read for unknown message id {message_id} ignored.")
            return False
        if message.addressing.kind != AddressKind.DIRECT:
            logging.warning(f"Mark-read for non-direct message id {message_id} ignored.")
            return False
        if reader is not None and reader != message.to_identity:
            logging.warning(f"'{reader}' tried to mark message {message_id} addressed to '{message.to_identity}' as read. Ignoring.")
            return False
        if original_sender != message.from_identity:
            logging.warning(f"Mark-read for message {message_id} named sender '{original_sender}', stored sender is '{message.from_identity}'.")
        if message.is_read:
            return False
        if not await self._store_call(self.message_store.mark_read, message_id, now_utc()):
            return False
        await fan_out(self.registry.connections_of(message.from_identity), "MessageRead", message_id)
        if config.DEBUG:
            logging.info(f"Message {message_id} read by '{message.to_identity}'")
        return True

    # --- Typing indicators ---

    async def typing_to_user(self, from_identity, to_identity):
        """Advisory; delivered to whoever is live right now and otherwise lost."""
        return await fan_out(self.registry.connections_of(to_identity), "UserTyping", from_identity, to_identity)

    async def typing_to_group(self, from_identity, group_name):
        return await fan_out(self.groups.subscribers(group_name), "GroupTyping", from_identity, group_name)

    # --- History ---

    async def history(self, viewer, addressing, limit=None):
        """
        Most recent messages of one conversation, oldest first.

        The store's ordering is not trusted: the page is re-sorted by timestamp here.
        Opening a direct conversation marks the viewer's unread messages in it as read,
        which notifies their senders.

        Args:
            viewer (str): Identity loading the conversation.
            addressing (Addressing): Broadcast, direct(other identity) or group(name).
            limit (int | None): Page size; defaults to config.HISTORY_PAGE_SIZE.

        Returns:
            list[Message]: At most ``limit`` messages in ascending timestamp order.
        """
        limit = config.HISTORY_PAGE_SIZE if limit is None else limit
        if limit <= 0:
            return []
        participant = viewer if addressing.kind == AddressKind.DIRECT else None
        messages = await self._store_call(self.message_store.list_recent, addressing, limit, participant)
        messages = sorted(messages, key=lambda m: (m.timestamp_utc, m.id or 0))[-limit:]
        if addressing.kind == AddressKind.DIRECT:
            for message in messages:
                if message.to_identity == viewer and not message.is_read:
                    await self.mark_read(message.id, message.from_identity, reader=viewer)
        return messages

    # --- Internals ---

    def _build(self, from_identity, addressing, text, attachment):
        try:
            return Message(from_identity=from_identity, addressing=addressing, text=text, attachment=attachment)
        except ValidationError as e:
            raise InvalidRequest(f"Invalid message: {e.errors()[0]['msg']}") from e

    async def _persist(self, message):
        message_id = await self._store_call(self.message_store.append, message)
        return message.model_copy(update={"id": message_id})

    async def _store_call(self, method, *args):
        try:
            return await asyncio.to_thread(method, *args)
        except Exception as e:
            logging.exception(f"Message store call {getattr(method, '__name__', method)} failed")
            raise StoreUnavailable(f"Message store unavailable: {e}") from e

    async def _resolve_recipient(self, name):
        """Canonical identity for ``name`` (case-insensitive), or None if the directory does not know it."""
        try:
            return await asyncio.to_thread(self.user_directory.resolve, name)
        except Exception as e:
            logging.exception("User directory lookup failed")
            raise DirectoryUnavailable(f"User directory unavailable: {e}") from e

    @asynccontextmanager
    async def _sender_lock(self, identity):
        """Serialize sends from one identity. The entry is dropped once no send holds or awaits it."""
        entry = self._sender_locks.get(identity)
        if entry is None:
            entry = self._sender_locks[identity] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._sender_locks[identity]

    def _log_send(self, message, delivered):
        target = message.addressing.target or "all"
        logging.info(f"{message.addressing.kind.value} message {message.id} from '{message.from_identity}' to '{target}' delivered to {delivered} connection(s)")
        if config.DEBUG:
            logging.info(f"Message {message.id} text: {message.text!r}")
