from __future__ import annotations

import re
import time
import secrets
import threading
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
CONVERSATION_ID_SEPARATOR = "-"

MESSAGE_TYPES = ("text", "media")


def now_ts() -> int:
    return int(time.time())


def make_id(prefix: str = "") -> str:
    return prefix + secrets.token_urlsafe(10)


_id_lock = threading.Lock()
_last_id_ms = 0


def make_message_id() -> str:
    # Strictly increasing millisecond prefix keeps ids in send order.
    global _last_id_ms
    with _id_lock:
        ms = max(time.time_ns() // 1_000_000, _last_id_ms + 1)
        _last_id_ms = ms
    return f"{ms:013d}-{secrets.token_urlsafe(6)}"


def sorted_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    x, y = sorted([user_a, user_b])
    return x, y


def conversation_id(user_a: str, user_b: str) -> str:
    return CONVERSATION_ID_SEPARATOR.join(sorted_pair(user_a, user_b))


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class User(_Record):
    username: str
    password_hash: str
    display_name: str
    created_at: int

    def public(self) -> Dict[str, Any]:
        return {"username": self.username, "displayName": self.display_name}


class MediaRef(_Record):
    path: str
    original_name: str = ""

    @field_validator("path")
    @classmethod
    def _no_nul(cls, value: str) -> str:
        if "\x00" in value:
            raise ValueError("media path must not contain NUL")
        return value


class Message(_Record):
    id: str
    sender: str
    text: str = ""
    media: Optional[MediaRef] = None
    timestamp: int
    type: str = "text"
    read_by: List[str] = Field(default_factory=list)

    def is_read_by(self, username: str) -> bool:
        return username in self.read_by

    def mark_read_by(self, username: str) -> bool:
        if username == self.sender or username in self.read_by:
            return False
        self.read_by.append(username)
        return True


class Conversation(_Record):
    participants: List[str] = Field(min_length=2, max_length=2)
    messages: List[Message] = Field(default_factory=list)
    last_activity: int

    @property
    def id(self) -> str:
        return conversation_id(*self.participants)

    def other(self, username: str) -> Optional[str]:
        for participant in self.participants:
            if participant != username:
                return participant
        return None

    def includes(self, username: str) -> bool:
        return username in self.participants


class PresenceEntry(BaseModel):
    username: str
    status: str = "online"
