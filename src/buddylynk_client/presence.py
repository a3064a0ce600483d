"""
Online status of other users, as seen by the client.

Combines a REST snapshot from the online-status endpoints with the
``userOnline`` / ``userOffline`` events pushed over the socket. A status of
None means the server could not tell, and is rendered as neither online nor
offline.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, Optional, Set

from buddylynk_client.exceptions import BuddylynkClientError, SessionError
from buddylynk_client.http import BuddylynkClient
from buddylynk_client.session import ClientSocketSession

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Online status of the users the UI is showing.

    A snapshot is fetched once per ``load``; afterwards only ``userOnline``
    and ``userOffline`` events change the state. Events that arrive while the
    snapshot request is in flight are newer than the snapshot and win.
    """

    def __init__(self, session: ClientSocketSession, api: BuddylynkClient):
        self.session = session
        self.api = api
        self.statuses: Dict[str, Optional[bool]] = {}
        self.last_seen: Dict[str, str] = {}
        self._loading = 0
        self._updated_during_load: Set[str] = set()
        self._attached = False

    def attach(self):
        """Subscribe to presence events. Call once after ``session.start()``."""
        if self._attached:
            return
        if not (self.session.on("userOnline", self._on_online) and self.session.on("userOffline", self._on_offline)):
            raise SessionError("Socket session must be started before tracking presence")
        self._attached = True

    def detach(self):
        if not self._attached:
            return
        self.session.off("userOnline", self._on_online)
        self.session.off("userOffline", self._on_offline)
        self._attached = False

    async def load(self, user_ids: Iterable[str]) -> Dict[str, Optional[bool]]:
        """Fetch the presence snapshot for ``user_ids``."""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return {}

        self._loading += 1
        try:
            snapshot = await self.api.online_status(user_ids)
        except BuddylynkClientError as e:
            logger.warning(f"Presence snapshot failed: {e}")
            snapshot = {}
        finally:
            self._loading -= 1
            updated = set(self._updated_during_load)
            if not self._loading:
                self._updated_during_load.clear()

        for user_id in user_ids:
            if user_id in updated:
                continue
            self.statuses[user_id] = snapshot.get(user_id)

        return {user_id: self.statuses.get(user_id) for user_id in user_ids}

    def is_online(self, user_id: str) -> Optional[bool]:
        """True/False when known, None when unknown."""
        return self.statuses.get(user_id)

    def online_users(self) -> Set[str]:
        return {user_id for user_id, online in self.statuses.items() if online}

    def _mark(self, user_id: Optional[str], online: bool):
        if not user_id:
            return
        self.statuses[user_id] = online
        if self._loading:
            self._updated_during_load.add(user_id)

    def _on_online(self, data: dict):
        self._mark(data.get("user_id"), True)
        self.last_seen.pop(data.get("user_id"), None)

    def _on_offline(self, data: dict):
        user_id = data.get("user_id")
        self._mark(user_id, False)
        last_seen_at = data.get("last_seen_at")
        if user_id and last_seen_at:
            self.last_seen[user_id] = last_seen_at

    def last_seen_at(self, user_id: str) -> Optional[datetime]:
        value = self.last_seen.get(user_id)
        if value is None:
            return None
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
