# chatrelay/calls.py
# Call Signaling Coordinator.
#
# Relays call setup (ring / accept / reject / hang up) and WebRTC negotiation blobs
# (offer, answer, ICE candidates) between exactly two identities. Media never passes
# through here.
#
# Each call is an explicit CallSession keyed by a generated session id and indexed by
# both parties' identities. An identity takes part in at most one ringing or active
# session at a time; a call that would break that fails with `CallFailed(callee, "busy")`.
# Sessions are dropped as soon as they end. The coordinator holds no timers: a party
# whose last connection goes away is hung up by the hub through `end_calls_for`.
#
# Signals that reference no live session are stale: they are logged and dropped.

import asyncio          # For the session lock.
import logging          # For logging relay events, warnings, and errors.

from chatrelay import config
from chatrelay.connection import fan_out
from chatrelay.errors import InvalidRequest, StaleSignal
from chatrelay.models import CallSession, CallState, MediaKind

OFFLINE = "offline"
BUSY = "busy"
SELF_CALL = "self"

# Outbound event for each relayed negotiation payload.
RELAY_EVENTS = {
    "offer": "ReceiveOffer",
    "answer": "ReceiveAnswer",
    "ice": "ReceiveIceCandidate",
}


class CallCoordinator:
    def __init__(self, registry):
        self.registry = registry
        self._sessions = {}     # session id -> CallSession
        self._by_identity = {}  # identity -> session id
        self._lock = asyncio.Lock()

    # --- Queries ---

    def session_of(self, identity):
        session_id = self._by_identity.get(identity)
        return self._sessions.get(session_id) if session_id else None

    def state_of(self, identity):
        session = self.session_of(identity)
        return session.state if session else CallState.IDLE

    # --- Call flow ---

    async def call_user(self, caller, callee, media_kind, origin=None):
        """
        Ring ``callee`` on all of their live connections.

        Failures go back to the caller only, as ``CallFailed(callee, reason)``: to the
        ``origin`` connection when given, otherwise to all of the caller's connections.

        Returns:
            CallSession | None: The new ringing session, or None if the call failed.
        """
        try:
            media_kind = MediaKind(media_kind)
        except ValueError:
            raise InvalidRequest(f"Unknown media kind '{media_kind}'. Use 'audio' or 'video'.") from None

        reason = None
        async with self._lock:
            if caller == callee:
                reason = SELF_CALL
            elif not self.registry.is_online(callee):
                reason = OFFLINE
            elif caller in self._by_identity or callee in self._by_identity:
                reason = BUSY
            else:
                session = CallSession(caller=caller, callee=callee, media_kind=media_kind)
                self._sessions[session.session_id] = session
                self._by_identity[caller] = session.session_id
                self._by_identity[callee] = session.session_id

        if reason is not None:
            logging.info(f"Call from '{caller}' to '{callee}' failed: {reason}")
            targets = [origin] if origin is not None else self.registry.connections_of(caller)
            await fan_out(targets, "CallFailed", callee, reason)
            return None

        logging.info(f"Call {session.session_id[:8]}: '{caller}' ringing '{callee}' ({media_kind.value})")
        delivered = await fan_out(self.registry.connections_of(callee), "IncomingCall", caller, media_kind.value)
        if delivered == 0:
            # Callee went offline between the check and the ring.
            await self._end(session)
            targets = [origin] if origin is not None else self.registry.connections_of(caller)
            await fan_out(targets, "CallFailed", callee, OFFLINE)
            return None
        return session

    async def accept_call(self, callee, caller):
        """Callee picks up: the caller's connections get CallAccepted and the session goes active."""
        try:
            async with self._lock:
                session = self._require(callee, caller, CallState.RINGING)
                if session.callee != callee:
                    raise StaleSignal(f"'{callee}' cannot accept a call they placed")
                if not self.registry.is_online(caller):
                    # Caller vanished; the disconnect hangup will reach the callee.
                    logging.info(f"Call {session.session_id[:8]}: accept from '{callee}' ignored, '{caller}' is offline")
                    return None
                session.state = CallState.ACTIVE
        except StaleSignal as e:
            return self._drop_stale("AcceptCall", callee, caller, e)
        logging.info(f"Call {session.session_id[:8]}: '{callee}' accepted call from '{caller}'")
        await fan_out(self.registry.connections_of(caller), "CallAccepted", callee)
        return session

    async def reject_call(self, callee, caller):
        """Callee declines: the caller's connections get CallRejected and the session is discarded."""
        try:
            async with self._lock:
                session = self._require(callee, caller, CallState.RINGING)
                if session.callee != callee:
                    raise StaleSignal(f"'{callee}' cannot reject a call they placed")
                self._discard(session)
        except StaleSignal as e:
            return self._drop_stale("RejectCall", callee, caller, e)
        logging.info(f"Call {session.session_id[:8]}: '{callee}' rejected call from '{caller}'")
        await fan_out(self.registry.connections_of(caller), "CallRejected", callee)
        return session

    async def hangup(self, identity, other):
        """Either side ends a ringing or active call; the other side gets CallEnded."""
        try:
            async with self._lock:
                session = self._require(identity, other)
                self._discard(session)
        except StaleSignal as e:
            return self._drop_stale("Hangup", identity, other, e)
        logging.info(f"Call {session.session_id[:8]}: '{identity}' hung up on '{other}'")
        await fan_out(self.registry.connections_of(other), "CallEnded", identity)
        return session

    async def relay(self, kind, from_identity, to_identity, payload):
        """
        Forward an opaque negotiation payload (offer, answer or ICE candidate) verbatim.

        The payload is not inspected. A destination with no live connections simply
        receives nothing.

        Returns:
            int: Number of connections the payload was delivered to.
        """
        event = RELAY_EVENTS[kind]
        try:
            self._require(from_identity, to_identity)
        except StaleSignal as e:
            self._drop_stale(event, from_identity, to_identity, e)
            return 0
        if config.DEBUG:
            logging.info(f"Relaying {event} from '{from_identity}' to '{to_identity}': {payload!r}")
        return await fan_out(self.registry.connections_of(to_identity), event, from_identity, payload)

    async def send_offer(self, from_identity, to_identity, offer):
        return await self.relay("offer", from_identity, to_identity, offer)

    async def send_answer(self, from_identity, to_identity, answer):
        return await self.relay("answer", from_identity, to_identity, answer)

    async def send_ice_candidate(self, from_identity, to_identity, candidate):
        return await self.relay("ice", from_identity, to_identity, candidate)

    async def end_calls_for(self, identity):
        """Implicit hangup for an identity that lost its last connection."""
        async with self._lock:
            session = self.session_of(identity)
            if session is None:
                return None
            self._discard(session)
        other = session.peer_of(identity)
        logging.info(f"Call {session.session_id[:8]}: '{identity}' went offline, ending call with '{other}'")
        await fan_out(self.registry.connections_of(other), "CallEnded", identity)
        return session

    # --- Internals ---

    def _require(self, identity, other, state=None):
        session = self.session_of(identity)
        if session is None or not session.links(identity, other):
            raise StaleSignal(f"no call between '{identity}' and '{other}'")
        if state is not None and session.state != state:
            raise StaleSignal(f"call between '{identity}' and '{other}' is {session.state.value}")
        return session

    def _discard(self, session):
        session.state = CallState.ENDED
        self._sessions.pop(session.session_id, None)
        for identity in (session.caller, session.callee):
            if self._by_identity.get(identity) == session.session_id:
                del self._by_identity[identity]

    async def _end(self, session):
        async with self._lock:
            self._discard(session)

    def _drop_stale(self, signal, identity, other, error):
        logging.warning(f"Stale {signal} from '{identity}' to '{other}' dropped: {error}")
        return None
