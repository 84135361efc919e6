# chatrelay/groups.py
# Group Membership Manager.
#
# Two things are tracked separately here:
#
# - live subscriptions: which connections currently receive a group's fan-out
#   (in memory, lost on disconnect), and
# - durable memberships: (identity, group) records in the group directory that
#   survive disconnects and restarts.
#
# A user can be a durable member with zero subscribed connections, e.g. while offline.

import asyncio          # For the channel lock and running directory calls in a worker thread.
import logging          # For logging relay events, warnings, and errors.

from chatrelay import config
from chatrelay.connection import fan_out
from chatrelay.errors import InvalidRequest, StoreUnavailable
from chatrelay.models import now_utc


def validate_group_name(group_name):
    if not isinstance(group_name, str) or not group_name.strip():
        raise InvalidRequest("Group name must be a non-empty string.")
    if len(group_name) > config.MAX_GROUP_NAME_LENGTH:
        raise InvalidRequest(f"Group name exceeds {config.MAX_GROUP_NAME_LENGTH} characters.")
    return group_name


class GroupMembershipManager:
    def __init__(self, group_directory):
        self.group_directory = group_directory
        self._channels = {}  # group name -> set of subscribed Connection
        self._lock = asyncio.Lock()

    # --- Live subscriptions ---

    async def subscribe(self, connection, group_name):
        async with self._lock:
            subscribers = self._channels.setdefault(group_name, set())
            added = connection not in subscribers
            subscribers.add(connection)
        return added

    async def unsubscribe(self, connection, group_name):
        async with self._lock:
            subscribers = self._channels.get(group_name)
            if not subscribers or connection not in subscribers:
                return False
            subscribers.discard(connection)
            if not subscribers:
                del self._channels[group_name]
        return True

    async def drop_connection(self, connection):
        """Forget every live subscription of a closed connection. Returns the affected groups."""
        async with self._lock:
            dropped = [name for name, subscribers in self._channels.items() if connection in subscribers]
            for name in dropped:
                self._channels[name].discard(connection)
                if not self._channels[name]:
                    del self._channels[name]
        return dropped

    def subscribers(self, group_name):
        return frozenset(self._channels.get(group_name, ()))

    def is_subscribed(self, connection, group_name):
        return connection in self._channels.get(group_name, ())

    # --- Join / Leave ---

    async def join(self, connection, group_name):
        """
        Subscribe ``connection`` to the group and record the caller's durable membership.

        The group is created on first join. Current subscribers, the joiner included,
        get a GroupSystemMessage notice.
        """
        validate_group_name(group_name)
        identity = connection.identity
        # Durable records first: a directory failure must leave the connection unsubscribed.
        await self._call_directory(self.group_directory.ensure_group, group_name)
        await self._call_directory(self.group_directory.ensure_membership, identity, group_name)
        await self.subscribe(connection, group_name)
        logging.info(f"'{identity}' joined group '{group_name}'")
        await fan_out(self.subscribers(group_name), "GroupSystemMessage", f"{identity} joined {group_name}", now_utc())

    async def leave(self, connection, group_name):
        """
        Unsubscribe ``connection`` and drop the caller's durable membership if there is one.

        Leaving a group the connection never subscribed to only affects the durable record.
        The remaining subscribers get a GroupSystemMessage notice.
        """
        validate_group_name(group_name)
        identity = connection.identity
        await self.unsubscribe(connection, group_name)
        removed = await self._call_directory(self.group_directory.remove_membership, identity, group_name)
        logging.info(f"'{identity}' left group '{group_name}' (membership removed: {removed})")
        await fan_out(self.subscribers(group_name), "GroupSystemMessage", f"{identity} left {group_name}", now_utc())

    async def groups_of(self, identity):
        """Durable memberships of ``identity``; independent of live subscriptions."""
        return await self._call_directory(self.group_directory.groups_of, identity)

    async def group_exists(self, group_name):
        return await self._call_directory(self.group_directory.group_exists, group_name)

    async def _call_directory(self, method, *args):
        try:
            return await asyncio.to_thread(method, *args)
        except Exception as e:
            logging.exception(f"Group directory call {getattr(method, '__name__', method)} failed")
            raise StoreUnavailable(f"Group directory unavailable: {e}") from e
