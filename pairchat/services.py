from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from .blobs import BlobStore, build_blob_store
from .config import Settings
from .conversations import ConversationStore
from .engine import MessagingEngine
from .gateway import ConnectionRegistry, RealtimeGateway
from .identity import IdentityStore
from .passwords import PasswordHasher
from .persistence import Persistence, build_persistence
from .presence import PresenceTracker

LOGGER = logging.getLogger("pairchat.services")


@dataclass
class Services:
    settings: Settings
    persistence: Persistence
    blobs: BlobStore
    lock: threading.RLock
    identity: IdentityStore
    conversations: ConversationStore
    presence: PresenceTracker
    registry: ConnectionRegistry
    engine: MessagingEngine
    gateway: RealtimeGateway

    def load(self) -> None:
        users = self.identity.load()
        conversations = self.conversations.load()
        self.presence.load()
        LOGGER.info("State loaded: %d users, %d conversations", users, conversations)

    def sweep(self) -> int:
        return self.conversations.sweep_expired(self.conversations.clock())

    def flush(self) -> None:
        self.identity.flush()
        self.conversations.flush()
        self.presence.flush()


def build_services(
    settings: Settings,
    persistence: Optional[Persistence] = None,
    blobs: Optional[BlobStore] = None,
    hasher: Optional[PasswordHasher] = None,
) -> Services:
    """Wire every store around one persistence port and one mutation lock."""
    persistence = persistence or build_persistence(settings)
    blobs = blobs or build_blob_store(settings)
    lock = threading.RLock()

    identity = IdentityStore(persistence, hasher=hasher, lock=lock)
    conversations = ConversationStore(
        persistence,
        blobs=blobs,
        retention_seconds=settings.retention_seconds,
        lock=lock,
    )
    presence = PresenceTracker(identity, persistence, lock=lock)
    registry = ConnectionRegistry()
    engine = MessagingEngine(
        identity,
        conversations,
        presence,
        registry,
        lock=lock,
        max_message_length=settings.max_message_length,
    )
    gateway = RealtimeGateway(
        identity,
        presence,
        engine,
        registry,
        heartbeat_interval=settings.ws_heartbeat_interval_seconds,
        heartbeat_timeout=settings.ws_heartbeat_timeout_seconds,
    )
    return Services(
        settings=settings,
        persistence=persistence,
        blobs=blobs,
        lock=lock,
        identity=identity,
        conversations=conversations,
        presence=presence,
        registry=registry,
        engine=engine,
        gateway=gateway,
    )
