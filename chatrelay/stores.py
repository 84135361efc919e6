# chatrelay/stores.py
# Collaborator interfaces consumed by the relay core, plus in-memory implementations.
#
# The user directory, message store and group directory are external services. The
# core treats them as synchronous and reliable and calls them from the event loop
# through `asyncio.to_thread`, so every implementation has to be thread-safe.
# The in-memory versions below guard their state with a single lock each and are
# what `main.py` wires up when no other backend is configured.

import itertools        # For monotonic message ids.
import threading        # Stores are called from worker threads, so each one holds a lock.
from abc import ABC, abstractmethod

from chatrelay.models import AddressKind


class UserDirectory(ABC):
    """Resolves identities supplied by the authentication layer."""

    @abstractmethod
    def exists(self, identity) -> bool:
        pass

    @abstractmethod
    def resolve(self, name):
        """Return the canonical identity for ``name`` (case-insensitive), or None."""

    @abstractmethod
    def list_identities(self) -> list:
        pass

    @abstractmethod
    def enroll(self, identity):
        pass


class MessageStore(ABC):
    """Durable message storage. Messages are never deleted by the core."""

    @abstractmethod
    def append(self, message) -> int:
        """Persist ``message`` and return its newly assigned id."""

    @abstractmethod
    def get(self, message_id):
        pass

    @abstractmethod
    def mark_read(self, message_id, read_at) -> bool:
        """Flip ``is_read``. Returns True only for the first transition."""

    @abstractmethod
    def list_recent(self, addressing, limit, participant=None) -> list:
        """Most recent ``limit`` messages matching ``addressing``, oldest first.

        For direct addressing the result is the two-way conversation between
        ``participant`` and ``addressing.target``.
        """


class GroupDirectory(ABC):
    """Groups and durable (identity, group) memberships."""

    @abstractmethod
    def ensure_group(self, name):
        pass

    @abstractmethod
    def group_exists(self, name) -> bool:
        pass

    @abstractmethod
    def ensure_membership(self, identity, name):
        pass

    @abstractmethod
    def remove_membership(self, identity, name) -> bool:
        pass

    @abstractmethod
    def groups_of(self, identity) -> list:
        pass

    @abstractmethod
    def members_of(self, name) -> list:
        pass


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, identities=()):
        self._lock = threading.Lock()
        # Lower-cased name -> canonical identity.
        self._users = {identity.lower(): identity for identity in identities}

    def exists(self, identity):
        with self._lock:
            return self._users.get(identity.lower()) == identity

    def resolve(self, name):
        with self._lock:
            return self._users.get(name.lower())

    def list_identities(self):
        with self._lock:
            return sorted(self._users.values())

    def enroll(self, identity):
        with self._lock:
            existing = self._users.get(identity.lower())
            if existing is not None and existing != identity:
                raise ValueError(f"Identity '{identity}' collides with existing user '{existing}'.")
            self._users[identity.lower()] = identity


class InMemoryMessageStore(MessageStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._messages = {}
        self._ids = itertools.count(1)

    def append(self, message):
        with self._lock:
            message_id = next(self._ids)
            self._messages[message_id] = message.model_copy(update={"id": message_id}, deep=True)
            return message_id

    def get(self, message_id):
        with self._lock:
            message = self._messages.get(message_id)
            return message.model_copy(deep=True) if message is not None else None

    def mark_read(self, message_id, read_at):
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise KeyError(message_id)
            if message.is_read:
                return False
            message.is_read = True
            message.read_at_utc = read_at
            return True

    def list_recent(self, addressing, limit, participant=None):
        with self._lock:
            matches = [m for m in self._messages.values() if _matches(m, addressing, participant)]
            matches.sort(key=lambda m: (m.timestamp_utc, m.id))
            return [m.model_copy(deep=True) for m in matches[-limit:]] if limit > 0 else []


def _matches(message, addressing, participant):
    if message.addressing.kind != addressing.kind:
        return False
    if addressing.kind == AddressKind.BROADCAST:
        return True
    if addressing.kind == AddressKind.GROUP:
        return message.addressing.target == addressing.target
    # Direct: the conversation in either direction.
    pair = {message.from_identity, message.addressing.target}
    return pair == {participant, addressing.target}


class InMemoryGroupDirectory(GroupDirectory):
    def __init__(self):
        self._lock = threading.Lock()
        self._groups = set()
        self._memberships = set()  # {(identity, group_name)}

    def ensure_group(self, name):
        with self._lock:
            self._groups.add(name)

    def group_exists(self, name):
        with self._lock:
            return name in self._groups

    def ensure_membership(self, identity, name):
        with self._lock:
            self._groups.add(name)
            self._memberships.add((identity, name))

    def remove_membership(self, identity, name):
        with self._lock:
            if (identity, name) not in self._memberships:
                return False
            self._memberships.discard((identity, name))
            return True

    def groups_of(self, identity):
        with self._lock:
            return sorted(group for member, group in self._memberships if member == identity)

    def members_of(self, name):
        with self._lock:
            return sorted(member for member, group in self._memberships if group == name)
