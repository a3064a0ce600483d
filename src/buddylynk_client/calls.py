"""
Client call state machine.

    idle -> calling   (start_call)
    idle -> incoming  (call:incoming)
    calling | incoming -> connected  (answer received / accept)
    any -> idle       (call:ended, hang up, decline, session disconnect)

Media and peer-connection work is delegated to a ``PeerConnection``; the
controller only moves SDP and ICE payloads over the socket session.
"""

import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

from buddylynk_client.exceptions import MediaAccessError, SessionError
from buddylynk_client.session import ClientSocketSession, SessionState

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    INCOMING = "incoming"
    CONNECTED = "connected"


class PeerConnection(Protocol):
    """Media side of one call. ``acquire_media`` raises MediaAccessError."""

    async def acquire_media(self, call_type: str) -> None: ...

    async def create_offer(self) -> dict: ...

    async def accept_offer(self, offer: dict) -> dict: ...

    async def apply_answer(self, answer: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    async def close(self) -> None: ...


class CallController:
    """
    One call at a time for the session's user.

    Args:
        session: Connected socket session
        peer_factory: Creates a fresh PeerConnection per call
        on_state_change: Optional callback ``(state, call)``, e.g. to ring
    """

    def __init__(
        self,
        session: ClientSocketSession,
        peer_factory: Callable[[], PeerConnection],
        on_state_change: Optional[Callable[[CallState, "CallController"], Any]] = None,
    ):
        self.session = session
        self.peer_factory = peer_factory
        self.on_state_change = on_state_change

        self.state = CallState.IDLE
        self.peer_id: Optional[str] = None
        self.call_type: Optional[str] = None
        self.caller: Optional[dict] = None
        self.last_end_reason: Optional[str] = None
        self.declined_busy: List[str] = []

        self._peer: Optional[PeerConnection] = None
        self._remote_offer: Optional[dict] = None
        self._pending_candidates: List[dict] = []
        self._attached = False

    @property
    def in_call(self) -> bool:
        return self.state is not CallState.IDLE

    def attach(self):
        """Subscribe to call events. Call once after ``session.start()``."""
        if self._attached:
            return
        subscribed = [
            self.session.on("call:incoming", self._on_incoming),
            self.session.on("call:answer", self._on_answer),
            self.session.on("call:ice-candidate", self._on_ice_candidate),
            self.session.on("call:ended", self._on_ended),
        ]
        if not all(subscribed):
            raise SessionError("Socket session must be started before attaching calls")
        self.session.add_state_listener(self._on_session_state)
        self._attached = True

    def detach(self):
        if not self._attached:
            return
        self.session.off("call:incoming", self._on_incoming)
        self.session.off("call:answer", self._on_answer)
        self.session.off("call:ice-candidate", self._on_ice_candidate)
        self.session.off("call:ended", self._on_ended)
        self.session.remove_state_listener(self._on_session_state)
        self._attached = False

    # ------------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------------

    async def start_call(self, peer_id: str, call_type: str = "voice", caller: Optional[dict] = None):
        """
        Call ``peer_id``.

        Raises:
            SessionError: Already in a call or the session is not connected
            MediaAccessError: Camera/microphone unavailable; the attempt is aborted
        """
        if self.in_call:
            raise SessionError(f"Already in a call with {self.peer_id}")

        self.peer_id = peer_id
        self.call_type = call_type
        self.last_end_reason = None
        self._set_state(CallState.CALLING)

        self._peer = self.peer_factory()
        await self._acquire_media()
        offer = await self._peer.create_offer()

        payload = {"to": peer_id, "offer": offer, "call_type": call_type}
        if caller:
            payload["caller"] = caller
        if not await self.session.emit("call:offer", payload):
            await self._reset("disconnected")
            raise SessionError("Socket session is not connected")

    async def accept(self):
        """Answer the ringing call."""
        if self.state is not CallState.INCOMING:
            raise SessionError("No incoming call to accept")

        self._peer = self.peer_factory()
        await self._acquire_media()
        answer = await self._peer.accept_offer(self._remote_offer)
        await self._flush_pending_candidates()

        if not await self.session.emit("call:answer", {"to": self.peer_id, "answer": answer}):
            await self._reset("disconnected")
            raise SessionError("Socket session is not connected")
        self._set_state(CallState.CONNECTED)

    async def decline(self):
        if self.state is not CallState.INCOMING:
            raise SessionError("No incoming call to decline")
        await self._end("declined")

    async def hang_up(self, reason: str = "hangup"):
        if not self.in_call:
            return
        await self._end(reason)

    async def send_ice_candidate(self, candidate: dict) -> bool:
        """Forward a local ICE candidate to the peer."""
        if not self.in_call:
            return False
        return await self.session.emit("call:ice-candidate", {"to": self.peer_id, "candidate": candidate})

    async def _acquire_media(self):
        try:
            await self._peer.acquire_media(self.call_type)
        except MediaAccessError as e:
            logger.warning(f"Media unavailable for {self.call_type} call with {self.peer_id}: {e}")
            if e.call_type is None:
                e.call_type = self.call_type
            await self._end("media_error")
            raise

    async def _end(self, reason: str):
        peer_id = self.peer_id
        if peer_id:
            await self.session.emit("call:end", {"to": peer_id, "reason": reason})
        await self._reset(reason)

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------

    async def _on_incoming(self, data: dict):
        from_user_id = data.get("from_user_id")
        if not from_user_id:
            return

        if self.in_call:
            logger.info(f"Busy: declining call from {from_user_id}")
            self.declined_busy.append(from_user_id)
            await self.session.emit("call:end", {"to": from_user_id, "reason": "busy"})
            return

        self.peer_id = from_user_id
        self.call_type = data.get("call_type", "voice")
        self.caller = data.get("caller")
        self._remote_offer = data.get("offer")
        self.last_end_reason = None
        self._set_state(CallState.INCOMING)

    async def _on_answer(self, data: dict):
        if self.state is not CallState.CALLING or data.get("from_user_id") != self.peer_id:
            return
        await self._peer.apply_answer(data.get("answer"))
        await self._flush_pending_candidates()
        self._set_state(CallState.CONNECTED)

    async def _on_ice_candidate(self, data: dict):
        if not self.in_call or data.get("from_user_id") != self.peer_id:
            return
        candidate = data.get("candidate")
        if self._peer is None or self.state is CallState.INCOMING:
            self._pending_candidates.append(candidate)
        else:
            await self._peer.add_ice_candidate(candidate)

    async def _on_ended(self, data: dict):
        if not self.in_call or data.get("from_user_id") != self.peer_id:
            return
        await self._reset(data.get("reason", "hangup"))

    async def _on_session_state(self, state: SessionState):
        if state in (SessionState.RECONNECTING, SessionState.DISCONNECTED) and self.in_call:
            logger.info(f"Session lost during call with {self.peer_id}")
            await self._reset("disconnected")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _flush_pending_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._peer.add_ice_candidate(candidate)

    async def _reset(self, reason: str):
        peer = self._peer
        self._peer = None
        if peer is not None:
            try:
                await peer.close()
            except Exception as e:
                logger.debug(f"Error closing peer connection: {e}")

        self.last_end_reason = reason
        self.peer_id = None
        self.call_type = None
        self.caller = None
        self._remote_offer = None
        self._pending_candidates = []
        self._set_state(CallState.IDLE)

    def _set_state(self, state: CallState):
        if state is self.state:
            return
        logger.debug(f"Call state {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_change is not None:
            try:
                self.on_state_change(state, self)
            except Exception as e:
                logger.error(f"Call state callback failed: {e}", exc_info=True)
