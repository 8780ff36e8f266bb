"""WebSocket envelopes and the closed set of realtime event kinds."""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import MediaRef


class ClientEvent(str, Enum):
    """Client -> server."""

    AUTHENTICATE = "authenticate"
    REQUEST_USER_LIST = "request_user_list"
    LOAD_CONVERSATION = "load_conversation"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    MARK_AS_READ = "mark_as_read"
    PONG = "pong"


class ServerEvent(str, Enum):
    """Server -> client."""

    AUTH_FAILED = "auth_failed"
    USER_LIST = "user_list"
    USER_STATUS_CHANGED = "user_status_changed"
    CONVERSATION_LOADED = "conversation_loaded"
    MESSAGE_SENT = "message_sent"
    NEW_MESSAGE = "new_message"
    USER_TYPING = "user_typing"
    MESSAGES_READ = "messages_read"
    SESSION_REPLACED = "session_replaced"
    ERROR = "error"
    PING = "ping"


# Events a connection may send before it has authenticated.
PRE_AUTH_EVENTS = {ClientEvent.AUTHENTICATE, ClientEvent.PONG}


class WsInbound(BaseModel):
    type: str
    data: Any = None


class WsOutbound(BaseModel):
    type: ServerEvent
    data: Any = None

    def to_wire(self) -> dict:
        return {"type": self.type.value, "data": self.data}


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SendMessageIn(_Payload):
    recipient: str
    text: Optional[str] = ""
    media: Optional[MediaRef] = None
    type: Optional[str] = None


class TypingIn(_Payload):
    recipient: str
    is_typing: bool = Field(default=False, alias="isTyping")


class MarkReadIn(_Payload):
    conversation_id: str = Field(alias="conversationId")
