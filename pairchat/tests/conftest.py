import copy
from types import SimpleNamespace

import pytest

from pairchat.blobs import BlobStore, StoredBlob
from pairchat.config import Settings
from pairchat.conversations import ConversationStore
from pairchat.engine import MessagingEngine, Notifier
from pairchat.errors import BlobDeletionError, StorageError
from pairchat.identity import IdentityStore
from pairchat.passwords import PasswordHasher
from pairchat.presence import PresenceTracker
from pairchat.services import build_services


class MemoryPersistence:
    def __init__(self, initial=None, fail_load=False, fail_save=False):
        self.data = copy.deepcopy(initial or {})
        self.saves = []
        self.fail_load = fail_load
        self.fail_save = fail_save

    def load(self, collection):
        if self.fail_load:
            raise StorageError("disk on fire")
        return copy.deepcopy(self.data.get(collection.value))

    def save(self, collection, payload):
        if self.fail_save:
            raise StorageError("disk full")
        self.saves.append(collection.value)
        self.data[collection.value] = copy.deepcopy(payload)

    def save_count(self, name):
        return self.saves.count(name)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify(self, connection_id, event, data=None):
        self.events.append((connection_id, event, copy.deepcopy(data)))


class FakeBlobStore(BlobStore):
    def __init__(self, fail=False):
        self.deleted = []
        self.fail = fail

    def save(self, data, original_name, content_type):
        return StoredBlob(filename="f1", original_name=original_name, size=len(data), path="/uploads/f1")

    def delete(self, path):
        if self.fail:
            raise BlobDeletionError(f"cannot delete {path}")
        self.deleted.append(path)


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def persistence():
    return MemoryPersistence()


@pytest.fixture()
def hasher():
    # cheap rounds keep the suite fast
    return PasswordHasher(iterations=1_000)


@pytest.fixture()
def world(persistence, hasher, clock):
    blobs = FakeBlobStore()
    notifier = RecordingNotifier()
    identity = IdentityStore(persistence, hasher=hasher, clock=clock)
    conversations = ConversationStore(persistence, blobs=blobs, lock=identity.lock, clock=clock)
    presence = PresenceTracker(identity, persistence, lock=identity.lock, clock=clock)
    engine = MessagingEngine(identity, conversations, presence, notifier, lock=identity.lock, clock=clock)
    for name in ("alice", "bob", "carol"):
        identity.register(name, "secret123", name.title())
    return SimpleNamespace(
        persistence=persistence,
        blobs=blobs,
        notifier=notifier,
        identity=identity,
        conversations=conversations,
        presence=presence,
        engine=engine,
        clock=clock,
    )


@pytest.fixture()
def services(tmp_path, persistence, hasher, clock):
    settings = Settings(data_dir=str(tmp_path / "data"), upload_dir=str(tmp_path / "uploads"))
    svc = build_services(settings, persistence=persistence, blobs=FakeBlobStore(), hasher=hasher)
    for component in (svc.identity, svc.conversations, svc.presence, svc.engine, svc.gateway):
        component.clock = clock
    return svc
