import pytest

from conftest import FakeBlobStore, FakeClock, MemoryPersistence
from pairchat.blobs import LocalBlobStore
from pairchat.conversations import ConversationStore
from pairchat.models import MediaRef, Message, conversation_id

DAY = 24 * 60 * 60


def _message(ts, sender="alice", media=None, msg_id=None):
    return Message(id=msg_id or f"m{ts}", sender=sender, text="hi", media=media, timestamp=ts)


@pytest.mark.parametrize(
    "pair",
    [("alice", "bob"), ("bob", "alice"), ("Zed", "amy"), ("user_1", "user_10")],
)
def test_conversation_id_is_order_independent(pair):
    a, b = pair
    assert conversation_id(a, b) == conversation_id(b, a)


def test_conversation_id_distinguishes_pairs():
    assert conversation_id("ab", "c_d") != conversation_id("ab_c", "d")
    assert conversation_id("alice", "bob") == "alice-bob"


def test_get_or_create_is_lazy_and_shared(clock):
    store = ConversationStore(MemoryPersistence(), clock=clock)

    first = store.get_or_create("bob", "alice")
    second = store.get_or_create("alice", "bob")

    assert first is second
    assert first.participants == ["alice", "bob"]
    assert first.last_activity == clock.now
    assert first.messages == []


def test_append_updates_last_activity_and_persists(clock):
    persistence = MemoryPersistence()
    store = ConversationStore(persistence, clock=clock)

    conv = store.append("alice", "bob", _message(clock.now + 5))

    assert conv.last_activity == clock.now + 5
    assert persistence.save_count("conversations") == 1
    saved = persistence.data["conversations"]["alice-bob"]
    assert saved["lastActivity"] == clock.now + 5
    assert saved["messages"][0]["readBy"] == []


def test_sweep_removes_exactly_expired_messages():
    clock = FakeClock(now=10 * DAY)
    persistence = MemoryPersistence()
    store = ConversationStore(persistence, clock=clock)
    now = clock.now
    store.append("alice", "bob", _message(now - DAY - 1, msg_id="old"))
    store.append("alice", "bob", _message(now - DAY, msg_id="boundary"))
    store.append("alice", "bob", _message(now - DAY + 1, msg_id="fresh"))
    store.append("alice", "bob", _message(now - 10, msg_id="newest"))
    saves_before = persistence.save_count("conversations")

    removed = store.sweep_expired(now)

    conv = store.get("alice-bob")
    assert removed == 2
    assert [m.id for m in conv.messages] == ["fresh", "newest"]
    assert conv.last_activity == now - 10
    assert persistence.save_count("conversations") == saves_before + 1


def test_sweep_keeps_last_activity_when_everything_expires():
    clock = FakeClock(now=10 * DAY)
    store = ConversationStore(MemoryPersistence(), clock=clock)
    store.append("alice", "bob", _message(clock.now - 2 * DAY))
    store.append("alice", "bob", _message(clock.now - DAY - 60))

    store.sweep_expired(clock.now)

    conv = store.get("alice-bob")
    assert conv.messages == []
    assert conv.last_activity == clock.now - DAY - 60


def test_sweep_without_removals_does_not_persist(clock):
    persistence = MemoryPersistence()
    store = ConversationStore(persistence, clock=clock)
    store.append("alice", "bob", _message(clock.now))
    saves_before = persistence.save_count("conversations")

    assert store.sweep_expired(clock.now + 60) == 0
    assert persistence.save_count("conversations") == saves_before


def test_sweep_deletes_media_best_effort():
    clock = FakeClock(now=10 * DAY)
    blobs = FakeBlobStore(fail=True)
    store = ConversationStore(MemoryPersistence(), blobs=blobs, clock=clock)
    media = MediaRef(path="/uploads/cat.png", original_name="cat.png")
    store.append("alice", "bob", _message(clock.now - 2 * DAY, media=media))

    # a failing blob delete must not resurrect the record or raise
    assert store.sweep_expired(clock.now) == 1
    assert store.get("alice-bob").messages == []


def test_sweep_deletes_media_blob():
    clock = FakeClock(now=10 * DAY)
    blobs = FakeBlobStore()
    store = ConversationStore(MemoryPersistence(), blobs=blobs, clock=clock)
    store.append("alice", "bob", _message(clock.now - 2 * DAY, media=MediaRef(path="/uploads/a.mp3")))
    store.append("alice", "bob", _message(clock.now - 2 * DAY, msg_id="plain"))

    store.sweep_expired(clock.now)

    assert blobs.deleted == ["/uploads/a.mp3"]


def test_load_rekeys_and_sweeps():
    clock = FakeClock(now=10 * DAY)
    persistence = MemoryPersistence(
        {
            "conversations": {
                "bob-alice": {
                    "participants": ["bob", "alice"],
                    "lastActivity": clock.now - 60,
                    "messages": [
                        {"id": "1", "sender": "bob", "text": "old", "timestamp": clock.now - 3 * DAY,
                         "type": "text", "readBy": []},
                        {"id": "2", "sender": "alice", "text": "new", "timestamp": clock.now - 60,
                         "type": "text", "readBy": ["bob"]},
                    ],
                },
            }
        }
    )
    store = ConversationStore(persistence, clock=clock)

    assert store.load() == 1

    conv = store.get("alice-bob")
    assert conv.participants == ["alice", "bob"]
    assert [m.id for m in conv.messages] == ["2"]
    assert conv.messages[0].read_by == ["bob"]


def test_load_failure_degrades_to_empty(clock):
    store = ConversationStore(MemoryPersistence(fail_load=True), clock=clock)

    assert store.load() == 0
    assert store.get("alice-bob") is None


def test_append_survives_storage_failure(clock):
    store = ConversationStore(MemoryPersistence(fail_save=True), clock=clock)

    conv = store.append("alice", "bob", _message(clock.now))

    assert len(conv.messages) == 1


def test_media_path_with_nul_is_rejected():
    with pytest.raises(ValueError):
        MediaRef(path="/uploads/a\x00b.png")


def test_sweep_survives_unresolvable_local_blob(tmp_path):
    clock = FakeClock(now=10 * DAY)
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    (upload_dir / "good.png").write_bytes(b"png")
    store = ConversationStore(MemoryPersistence(), blobs=LocalBlobStore(str(upload_dir)), clock=clock)
    # records written before paths were validated
    bad = MediaRef.model_construct(path="/uploads/a\x00b.png", original_name="")
    store.append("alice", "bob", _message(clock.now - 2 * DAY, media=bad, msg_id="bad"))
    store.append("alice", "bob", _message(clock.now - 2 * DAY, media=MediaRef(path="/uploads/good.png"), msg_id="good"))

    assert store.sweep_expired(clock.now) == 2
    assert store.get("alice-bob").messages == []
    assert not (upload_dir / "good.png").exists()


def test_sweep_keeps_going_after_unexpected_blob_error():
    class FlakyBlobStore(FakeBlobStore):
        def delete(self, path):
            if path == "/uploads/first.png":
                raise RuntimeError("backend exploded")
            super().delete(path)

    clock = FakeClock(now=10 * DAY)
    blobs = FlakyBlobStore()
    store = ConversationStore(MemoryPersistence(), blobs=blobs, clock=clock)
    store.append("alice", "bob", _message(clock.now - 2 * DAY, media=MediaRef(path="/uploads/first.png"), msg_id="1"))
    store.append("alice", "bob", _message(clock.now - 2 * DAY, media=MediaRef(path="/uploads/second.png"), msg_id="2"))

    assert store.sweep_expired(clock.now) == 2
    assert blobs.deleted == ["/uploads/second.png"]


@pytest.mark.parametrize("participants", [["alice"], ["alice", "bob", "carol"], []])
def test_load_skips_conversations_without_exactly_two_participants(participants):
    clock = FakeClock(now=10 * DAY)
    persistence = MemoryPersistence(
        {
            "conversations": {
                "broken": {"participants": participants, "lastActivity": 1, "messages": []},
                "alice-bob": {"participants": ["alice", "bob"], "lastActivity": clock.now, "messages": []},
            }
        }
    )
    store = ConversationStore(persistence, clock=clock)

    assert store.load() == 1
    assert store.get("alice-bob") is not None
