from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .blobs import BlobStore
from .errors import BlobDeletionError
from .models import Conversation, Message, conversation_id, now_ts, sorted_pair
from .persistence import Collection, Persistence, dump_map, load_or_empty, save_logged

LOGGER = logging.getLogger("pairchat.conversations")

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60


class ConversationStore:
    """
    Canonical per-pair message logs.

    Conversations are created lazily on first access and never deleted; their
    messages are pruned by sweep_expired() once older than the retention window.
    Every mutation rewrites the whole conversation map.
    """

    def __init__(
        self,
        persistence: Persistence,
        blobs: Optional[BlobStore] = None,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        lock: Optional[threading.RLock] = None,
        clock=now_ts,
    ):
        self.persistence = persistence
        self.blobs = blobs
        self.retention_seconds = retention_seconds
        self.lock = lock or threading.RLock()
        self.clock = clock
        self._conversations: Dict[str, Conversation] = {}

    def load(self) -> int:
        raw = load_or_empty(self.persistence, Collection.CONVERSATIONS)
        conversations: Dict[str, Conversation] = {}
        for key, item in raw.items():
            try:
                conv = Conversation.model_validate(item)
            except ValueError as e:
                LOGGER.warning("Skipping malformed conversation %s: %s", key, e)
                continue
            conv.participants = list(sorted_pair(*conv.participants))
            conversations[conv.id] = conv
        with self.lock:
            self._conversations = conversations
        LOGGER.info("Loaded %d conversations", len(conversations))
        self.sweep_expired(self.clock())
        return len(conversations)

    def persist(self) -> bool:
        with self.lock:
            return save_logged(self.persistence, Collection.CONVERSATIONS, dump_map(self._conversations))

    flush = persist

    def get(self, conv_id: str) -> Optional[Conversation]:
        with self.lock:
            return self._conversations.get(conv_id)

    def get_or_create(self, user_a: str, user_b: str) -> Conversation:
        conv_id = conversation_id(user_a, user_b)
        with self.lock:
            conv = self._conversations.get(conv_id)
            if conv is None:
                conv = Conversation(participants=list(sorted_pair(user_a, user_b)), last_activity=self.clock())
                self._conversations[conv_id] = conv
            return conv

    def append(self, user_a: str, user_b: str, message: Message) -> Conversation:
        with self.lock:
            conv = self.get_or_create(user_a, user_b)
            conv.messages.append(message)
            conv.last_activity = message.timestamp
            self.persist()
            return conv

    def sweep_expired(self, now: int) -> int:
        removed: List[Message] = []
        with self.lock:
            for conv in self._conversations.values():
                kept = []
                for msg in conv.messages:
                    if now - msg.timestamp >= self.retention_seconds:
                        removed.append(msg)
                    else:
                        kept.append(msg)
                if len(kept) != len(conv.messages):
                    conv.messages = kept
                    # all gone: lastActivity keeps its last value
                    if kept:
                        conv.last_activity = kept[-1].timestamp
            if removed:
                LOGGER.info("Removed %d expired messages", len(removed))
                self.persist()

        for msg in removed:
            self._delete_media(msg)
        return len(removed)

    def _delete_media(self, message: Message) -> None:
        if message.media is None or not message.media.path or self.blobs is None:
            return
        try:
            self.blobs.delete(message.media.path)
        except BlobDeletionError as e:
            LOGGER.error("Failed to delete media for message %s: %s", message.id, e)
        except Exception:
            LOGGER.exception("Unexpected error deleting media for message %s", message.id)
