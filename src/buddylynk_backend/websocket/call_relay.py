"""
Call signaling relay.

Offers, answers, ICE candidates and hang-ups are opaque to the server: they
are turned into point-to-point domain events addressed to the peer and
published on the bus, so the peer is reached whichever process holds its
socket. A peer with no live connection anywhere simply never receives them.

Every process observes every call event on the bus and keeps a small table of
ongoing calls. When a participant's last local connection goes away the relay
waits a short grace period; if the participant is not online anywhere by then,
the other peer is told the call ended with reason ``disconnected``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from buddylynk_backend.websocket.presence import PresenceStore
from buddylynk_backend.websocket.pubsub import EventBus
from buddylynk_types.events import (
    CallAnswerEvent,
    CallEndedEvent,
    CallEndReason,
    CallerProfile,
    CallIceCandidateEvent,
    CallOfferEvent,
    CallType,
    DomainEventBase,
)

logger = logging.getLogger(__name__)

# Calls nobody ended cleanly are forgotten after this many seconds
CALL_SESSION_MAX_AGE = 4 * 60 * 60


@dataclass
class CallSession:
    """A call between two users, as seen by this process."""
    caller_id: str
    receiver_id: str
    call_type: CallType
    state: str = "offered"  # offered | connected
    started_at: float = field(default_factory=time.time)

    @property
    def participants(self) -> FrozenSet[str]:
        return frozenset((self.caller_id, self.receiver_id))

    def peer_of(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.caller_id else self.caller_id


class CallSignalingRelay:
    """Relays call signaling between users and ends calls of vanished peers."""

    def __init__(
        self,
        bus: EventBus,
        presence: PresenceStore,
        disconnect_grace: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self._bus = bus
        self._presence = presence
        self._disconnect_grace = disconnect_grace
        self._clock = clock
        self._sessions: Dict[FrozenSet[str], CallSession] = {}
        self._pending_checks: Dict[str, asyncio.Task] = {}

    async def start(self):
        self._bus.register_handler("call_relay", self.observe)

    async def stop(self):
        self._bus.unregister_handler("call_relay")
        for task in list(self._pending_checks.values()):
            task.cancel()
        if self._pending_checks:
            await asyncio.gather(*self._pending_checks.values(), return_exceptions=True)
        self._pending_checks.clear()
        self._sessions.clear()

    # ------------------------------------------------------------------
    # Client initiated signaling
    # ------------------------------------------------------------------

    def offer(
        self,
        from_user_id: str,
        to_user_id: str,
        offer: Dict[str, Any],
        call_type: CallType = "voice",
        caller: Optional[CallerProfile] = None,
    ) -> None:
        self._bus.publish(CallOfferEvent(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            offer=offer,
            call_type=call_type,
            caller=caller or CallerProfile(user_id=from_user_id),
        ))

    def answer(self, from_user_id: str, to_user_id: str, answer: Dict[str, Any]) -> None:
        self._bus.publish(CallAnswerEvent(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            answer=answer,
        ))

    def ice_candidate(self, from_user_id: str, to_user_id: str, candidate: Dict[str, Any]) -> None:
        self._bus.publish(CallIceCandidateEvent(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            candidate=candidate,
        ))

    def end(self, from_user_id: str, to_user_id: str, reason: CallEndReason = "hangup") -> None:
        self._bus.publish(CallEndedEvent(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            reason=reason,
        ))

    # ------------------------------------------------------------------
    # Session tracking
    # ------------------------------------------------------------------

    async def observe(self, event: DomainEventBase):
        """Bus handler keeping the call table in step with call events."""
        if isinstance(event, CallOfferEvent):
            session = CallSession(
                caller_id=event.from_user_id,
                receiver_id=event.to_user_id,
                call_type=event.call_type,
                started_at=self._clock(),
            )
            self._sessions[session.participants] = session

        elif isinstance(event, CallAnswerEvent):
            session = self._sessions.get(frozenset((event.from_user_id, event.to_user_id)))
            if session is not None:
                session.state = "connected"

        elif isinstance(event, CallEndedEvent):
            self._sessions.pop(frozenset((event.from_user_id, event.to_user_id)), None)

    def sessions_for(self, user_id: str) -> List[CallSession]:
        return [s for s in self._sessions.values() if user_id in s.participants]

    def get_session(self, user_a: str, user_b: str) -> Optional[CallSession]:
        return self._sessions.get(frozenset((user_a, user_b)))

    def prune(self) -> int:
        """Forget calls older than CALL_SESSION_MAX_AGE. Returns how many were dropped."""
        cutoff = self._clock() - CALL_SESSION_MAX_AGE
        stale = [key for key, s in self._sessions.items() if s.started_at < cutoff]
        for key in stale:
            del self._sessions[key]
        return len(stale)

    def connection_lost(self, user_id: str) -> None:
        """
        Called when ``user_id`` has no connection left on this process.

        Schedules the grace-period check; a no-op when the user is in no call.
        """
        if not self.sessions_for(user_id) or user_id in self._pending_checks:
            return
        self._pending_checks[user_id] = asyncio.create_task(self._end_calls_if_gone(user_id))

    async def _end_calls_if_gone(self, user_id: str):
        try:
            if self._disconnect_grace > 0:
                await asyncio.sleep(self._disconnect_grace)

            online = await self._presence.is_online(user_id)
            if online is True:
                logger.info(f"User {user_id} reconnected within grace period, keeping calls")
                return

            for session in self.sessions_for(user_id):
                peer = session.peer_of(user_id)
                logger.info(f"Ending call {session.caller_id}->{session.receiver_id}: user {user_id} disconnected")
                self._sessions.pop(session.participants, None)
                self.end(from_user_id=user_id, to_user_id=peer, reason="disconnected")
        finally:
            self._pending_checks.pop(user_id, None)

    async def wait_pending(self):
        """Wait for scheduled disconnect checks (shutdown, tests)."""
        if self._pending_checks:
            await asyncio.gather(*list(self._pending_checks.values()), return_exceptions=True)
