from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .identity import IdentityStore
from .models import PresenceEntry, User, now_ts
from .persistence import Collection, Persistence, load_or_empty, save_logged

LOGGER = logging.getLogger("pairchat.presence")


@dataclass
class Attachment:
    user: User
    evicted: List[str] = field(default_factory=list)


class PresenceTracker:
    """
    Live connection id -> authenticated username, plus durable LastSeen.

    One live connection per user: attaching a username that is already online
    evicts the older entries and reports their ids so the transport can close them.
    """

    def __init__(
        self,
        identity: IdentityStore,
        persistence: Persistence,
        lock: Optional[threading.RLock] = None,
        clock=now_ts,
    ):
        self.identity = identity
        self.persistence = persistence
        self.lock = lock or threading.RLock()
        self.clock = clock
        self._entries: Dict[str, PresenceEntry] = {}
        self._last_seen: Dict[str, int] = {}

    def load(self) -> int:
        raw = load_or_empty(self.persistence, Collection.LAST_SEEN)
        last_seen: Dict[str, int] = {}
        for username, ts in raw.items():
            try:
                last_seen[username] = int(ts)
            except (TypeError, ValueError):
                LOGGER.warning("Skipping malformed last-seen value for %s: %r", username, ts)
        with self.lock:
            self._last_seen = last_seen
        return len(last_seen)

    def flush(self) -> bool:
        with self.lock:
            return save_logged(self.persistence, Collection.LAST_SEEN, dict(self._last_seen))

    def _touch(self, username: str) -> None:
        self._last_seen[username] = self.clock()
        self.flush()

    def attach(self, connection_id: str, username: str) -> Optional[Attachment]:
        user = self.identity.find(username)
        if user is None:
            return None
        with self.lock:
            evicted = [
                cid for cid, entry in self._entries.items()
                if entry.username == user.username and cid != connection_id
            ]
            for cid in evicted:
                self._entries.pop(cid, None)
            self._entries[connection_id] = PresenceEntry(username=user.username)
            self._touch(user.username)
        if evicted:
            LOGGER.info("User %s re-authenticated, evicting %d older session(s)", user.username, len(evicted))
        return Attachment(user=user, evicted=evicted)

    def detach(self, connection_id: str) -> Optional[str]:
        with self.lock:
            entry = self._entries.pop(connection_id, None)
            if entry is None:
                return None
            self._touch(entry.username)
            return entry.username

    def username_for(self, connection_id: str) -> Optional[str]:
        with self.lock:
            entry = self._entries.get(connection_id)
            return entry.username if entry else None

    def is_online(self, username: str) -> bool:
        return self.connection_for(username) is not None

    def connection_for(self, username: str) -> Optional[str]:
        with self.lock:
            for cid, entry in self._entries.items():
                if entry.username == username:
                    return cid
        return None

    def last_seen(self, username: str) -> Optional[int]:
        with self.lock:
            return self._last_seen.get(username)

    def last_seen_map(self) -> Dict[str, int]:
        with self.lock:
            return dict(self._last_seen)
