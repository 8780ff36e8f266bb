from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .conversations import ConversationStore
from .errors import ValidationError
from .events import ServerEvent
from .identity import IdentityStore
from .models import MESSAGE_TYPES, MediaRef, Message, User, make_message_id, now_ts
from .presence import PresenceTracker

LOGGER = logging.getLogger("pairchat.engine")


class Notifier:
    """Delivers a server event to one live connection. Must not block."""

    def notify(self, connection_id: str, event: ServerEvent, data: Any = None) -> None:
        raise NotImplementedError


@dataclass
class History:
    conversation_id: str
    messages: List[Dict[str, Any]]
    other_user: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "messages": self.messages,
            "otherUser": self.other_user,
        }


class MessagingEngine:
    """
    Send/receive, read receipts and typing relay between two users.

    Every read-modify-persist sequence runs under the shared mutation lock.
    Signals only enqueue, so nothing here waits on a socket while holding it.

    Online recipients get messages marked read on delivery: a live connection
    is taken to mean the message was seen.
    """

    def __init__(
        self,
        identity: IdentityStore,
        conversations: ConversationStore,
        presence: PresenceTracker,
        notifier: Notifier,
        lock: Optional[threading.RLock] = None,
        max_message_length: int = 2000,
        clock=now_ts,
    ):
        self.identity = identity
        self.conversations = conversations
        self.presence = presence
        self.notifier = notifier
        self.lock = lock or conversations.lock
        self.max_message_length = max_message_length
        self.clock = clock

    def _notify_user(self, username: Optional[str], event: ServerEvent, data: Any = None) -> bool:
        if not username:
            return False
        connection_id = self.presence.connection_for(username)
        if connection_id is None:
            return False
        self.notifier.notify(connection_id, event, data)
        return True

    def _counterpart(self, me: str, other: Optional[str]) -> User:
        user = self.identity.find(other)
        if user is None:
            raise ValidationError("Unknown user")
        if user.username == me:
            raise ValidationError("Cannot open a conversation with yourself")
        return user

    def load_history(self, reader: str, other: str) -> History:
        target = self._counterpart(reader, other)
        with self.lock:
            conv = self.conversations.get_or_create(reader, target.username)
            snapshot = [msg.to_wire() for msg in conv.messages]
            self.mark_read(conv.id, reader)
        return History(conversation_id=conv.id, messages=snapshot, other_user=target.username)

    def send(
        self,
        sender: str,
        recipient: str,
        text: Optional[str] = None,
        media: Optional[MediaRef] = None,
        type: Optional[str] = None,
    ) -> Message:
        target = self._counterpart(sender, recipient)
        text = (text or "").strip()
        if not text and media is None:
            raise ValidationError("Message needs text or media")
        if len(text) > self.max_message_length:
            raise ValidationError(f"Text too long (max {self.max_message_length})")
        msg_type = type or ("media" if media is not None else "text")
        if msg_type not in MESSAGE_TYPES:
            raise ValidationError(f"Unknown message type: {msg_type}")
        if msg_type == "media" and media is None:
            raise ValidationError("Media message needs media")

        with self.lock:
            message = Message(
                id=make_message_id(),
                sender=sender,
                text=text,
                media=media,
                timestamp=self.clock(),
                type=msg_type,
            )
            conv = self.conversations.append(sender, target.username, message)

            self._notify_user(sender, ServerEvent.MESSAGE_SENT, {
                "conversationId": conv.id,
                "message": message.to_wire(),
            })

            delivered = self._notify_user(target.username, ServerEvent.NEW_MESSAGE, {
                "conversationId": conv.id,
                "message": message.to_wire(),
                "from": sender,
            })
            if delivered and message.mark_read_by(target.username):
                self.conversations.persist()
                self._notify_user(sender, ServerEvent.MESSAGES_READ, {
                    "conversationId": conv.id,
                    "reader": target.username,
                })

        LOGGER.info("Message from %s to %s (%s)", sender, target.username, "live" if delivered else "stored")
        return message

    def mark_read(self, conversation_id: str, reader: str) -> bool:
        with self.lock:
            conv = self.conversations.get(conversation_id)
            if conv is None or not conv.includes(reader):
                return False

            changed = False
            for msg in conv.messages:
                if msg.mark_read_by(reader):
                    changed = True
            if not changed:
                return False

            self.conversations.persist()
            self._notify_user(conv.other(reader), ServerEvent.MESSAGES_READ, {
                "conversationId": conversation_id,
                "reader": reader,
            })
        return True

    def set_typing(self, from_user: str, to_user: str, is_typing: bool) -> bool:
        target = self.identity.find(to_user)
        if target is None or target.username == from_user:
            return False
        return self._notify_user(target.username, ServerEvent.USER_TYPING, {
            "from": from_user,
            "isTyping": bool(is_typing),
        })
