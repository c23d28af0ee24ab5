import asyncio
import json
import threading
import time

import pytest

from poetalk.conversation.models import Conversation, Message
from poetalk.conversation.storage import ConversationStore
from poetalk.errors import NotFoundError, ValidationError

from tests.helpers import FakeClock


def _conversation(conv_id="conv_1_abc", text="Hello", updated_at=1000):
    conv = Conversation(
        id=conv_id,
        title=text,
        created_at=updated_at,
        updated_at=updated_at,
        bot_name="TestBot",
    )
    conv.messages.append(Message(role="user", content=text, timestamp=updated_at))
    return conv


def _write_file(directory, conv):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{conv.id}.json").write_text(conv.to_json(), encoding="utf-8")


def _record_writes(store):
    writes = []
    original = store._write_record

    def recording(conv):
        writes.append(conv)
        original(conv)

    store._write_record = recording
    return writes


def _slow_writes(store, seconds=0.3):
    original = store._write_record

    def slow(conv):
        time.sleep(seconds)
        original(conv)

    store._write_record = slow


class TestSaveAndLoad:
    @pytest.mark.asyncio
    async def test_load_sees_save_before_write(self, store):
        conv = _conversation()
        await store.save(conv)

        assert not (store.directory / f"{conv.id}.json").exists()
        loaded = await store.load(conv.id)
        assert loaded is not None
        assert loaded.messages[0].content == "Hello"
        await store.flush()

    @pytest.mark.asyncio
    async def test_saved_copy_is_a_snapshot(self, store):
        conv = _conversation()
        await store.save(conv)
        conv.append("assistant", "later")

        loaded = await store.load(conv.id)
        assert len(loaded.messages) == 1
        await store.flush()

    @pytest.mark.asyncio
    async def test_debounced_write_lands_on_disk(self, store):
        conv = _conversation()
        await store.save(conv)
        await asyncio.sleep(0.2)

        path = store.directory / f"{conv.id}.json"
        text = path.read_text(encoding="utf-8")
        assert "\n" not in text
        data = json.loads(text)
        assert set(data) == {"id", "title", "messages", "createdAt", "updatedAt", "botName"}
        assert data["messages"][0] == {"role": "user", "content": "Hello", "timestamp": 1000}
        assert store.pending_ids == set()

    @pytest.mark.asyncio
    async def test_saves_within_window_coalesce(self, store):
        writes = _record_writes(store)
        conv = _conversation()
        await store.save(conv)
        conv.append("assistant", "Hi there!")
        await store.save(conv)
        await asyncio.sleep(0.2)

        assert len(writes) == 1
        assert [m.content for m in writes[0].messages] == ["Hello", "Hi there!"]
        on_disk = json.loads((store.directory / f"{conv.id}.json").read_text(encoding="utf-8"))
        assert len(on_disk["messages"]) == 2

    @pytest.mark.asyncio
    async def test_different_ids_write_separately(self, store):
        writes = _record_writes(store)
        await store.save(_conversation("conv_a"))
        await store.save(_conversation("conv_b"))
        await asyncio.sleep(0.2)
        assert sorted(c.id for c in writes) == ["conv_a", "conv_b"]

    @pytest.mark.asyncio
    async def test_write_through_when_delay_is_zero(self, sync_store):
        conv = _conversation()
        await sync_store.save(conv)
        assert (sync_store.directory / f"{conv.id}.json").exists()

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, store):
        assert await store.load("conv_missing") is None

    @pytest.mark.asyncio
    async def test_load_corrupt_returns_none(self, store):
        store.directory.mkdir(parents=True)
        (store.directory / "conv_bad.json").write_text("{not json", encoding="utf-8")
        assert await store.load("conv_bad") is None

    @pytest.mark.asyncio
    async def test_load_reads_disk_after_ttl(self, tmp_path):
        clock = FakeClock()
        store = ConversationStore(tmp_path / "c", write_delay=0, clock=clock)
        conv = _conversation()
        await store.save(conv)

        changed = _conversation(text="Edited elsewhere", updated_at=2000)
        _write_file(store.directory, changed)

        assert (await store.load(conv.id)).title == "Hello"
        clock.advance(31)
        assert (await store.load(conv.id)).title == "Edited elsewhere"

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        store = ConversationStore(blocker, write_delay=0)

        conv = _conversation()
        await store.save(conv)
        assert (await store.load(conv.id)).id == conv.id

    @pytest.mark.asyncio
    async def test_invalid_id_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.load("../etc/passwd")
        with pytest.raises(ValidationError):
            await store.save(_conversation(conv_id="a/b"))

    @pytest.mark.asyncio
    async def test_flush_writes_pending_now(self, tmp_path):
        store = ConversationStore(tmp_path / "c", write_delay=60)
        conv = _conversation()
        await store.save(conv)
        await store.flush()

        assert (store.directory / f"{conv.id}.json").exists()
        assert store.pending_ids == set()

    @pytest.mark.asyncio
    async def test_flush_waits_for_running_write(self, tmp_path):
        store = ConversationStore(tmp_path / "c", write_delay=0.05)
        _slow_writes(store, 0.2)
        await store.save(_conversation(text="first"))
        await asyncio.sleep(0.1)
        await store.save(_conversation(text="second"))
        await store.flush()

        data = json.loads((store.directory / "conv_1_abc.json").read_text(encoding="utf-8"))
        assert data["title"] == "second"
        assert store.pending_ids == set()


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_then_load_returns_none(self, sync_store):
        conv = _conversation()
        await sync_store.save(conv)
        await sync_store.delete(conv.id)

        assert await sync_store.load(conv.id) is None
        assert not (sync_store.directory / f"{conv.id}.json").exists()

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.delete("conv_missing")

    @pytest.mark.asyncio
    async def test_delete_cancels_pending_write(self, store):
        conv = _conversation()
        await store.save(conv)
        await store.delete(conv.id)
        await asyncio.sleep(0.2)

        assert not (store.directory / f"{conv.id}.json").exists()
        assert await store.load(conv.id) is None

    @pytest.mark.asyncio
    async def test_delete_waits_for_running_write(self, tmp_path):
        clock = FakeClock()
        store = ConversationStore(tmp_path / "c", write_delay=0.05, clock=clock)
        _slow_writes(store)
        await store.save(_conversation(text="first"))
        await asyncio.sleep(0.1)  # first write is running
        await store.save(_conversation(text="second"))
        await store.delete("conv_1_abc")

        await asyncio.sleep(0.5)
        clock.advance(31)
        assert not (store.directory / "conv_1_abc.json").exists()
        assert await store.load("conv_1_abc") is None
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_delete_invalidates_listing(self, sync_store):
        await sync_store.save(_conversation("conv_a"))
        await sync_store.save(_conversation("conv_b"))
        assert len(await sync_store.list()) == 2

        await sync_store.delete("conv_a")
        assert [c.id for c in await sync_store.list()] == ["conv_b"]


class TestList:
    @pytest.mark.asyncio
    async def test_sorted_newest_first(self, store):
        for conv_id, updated in [("conv_old", 1000), ("conv_new", 3000), ("conv_mid", 2000)]:
            _write_file(store.directory, _conversation(conv_id, updated_at=updated))
        assert [c.id for c in await store.list()] == ["conv_new", "conv_mid", "conv_old"]

    @pytest.mark.asyncio
    async def test_empty_directory(self, store):
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_malformed_record_skipped(self, store):
        for i in range(3):
            _write_file(store.directory, _conversation(f"conv_{i}", updated_at=1000 + i))
        (store.directory / "conv_broken.json").write_text("{oops", encoding="utf-8")
        (store.directory / "conv_wrong.json").write_text(json.dumps({"id": 1}), encoding="utf-8")

        result = await store.list()
        assert [c.id for c in result] == ["conv_2", "conv_1", "conv_0"]

    @pytest.mark.asyncio
    async def test_listing_cached_within_ttl(self, tmp_path):
        clock = FakeClock()
        store = ConversationStore(tmp_path / "c", clock=clock)
        _write_file(store.directory, _conversation("conv_a"))
        assert len(await store.list()) == 1

        _write_file(store.directory, _conversation("conv_b"))
        assert len(await store.list()) == 1

        clock.advance(31)
        assert len(await store.list()) == 2

    @pytest.mark.asyncio
    async def test_save_invalidates_listing(self, store):
        assert await store.list() == []
        await store.save(_conversation("conv_new"))
        # Visible even before the debounced write reaches disk
        assert [c.id for c in await store.list()] == ["conv_new"]
        await store.flush()

    @pytest.mark.asyncio
    async def test_reads_are_batched(self, tmp_path):
        store = ConversationStore(tmp_path / "c", batch_size=2)
        for i in range(5):
            _write_file(store.directory, _conversation(f"conv_{i}", updated_at=i))

        lock = threading.Lock()
        active = 0
        peak = 0
        original = ConversationStore._read_record

        def tracking(path):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return original(path)

        store._read_record = tracking
        result = await store.list()

        assert len(result) == 5
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_cache_fresh_records_not_reread(self, tmp_path):
        store = ConversationStore(tmp_path / "c", write_delay=0)
        await store.save(_conversation("conv_a"))
        _write_file(store.directory, _conversation("conv_b"))

        reads = []
        original = ConversationStore._read_record

        def counting(path):
            reads.append(path.stem)
            return original(path)

        store._read_record = counting
        assert len(await store.list()) == 2
        assert reads == ["conv_b"]

    @pytest.mark.asyncio
    async def test_invalidate_forces_rescan(self, store):
        _write_file(store.directory, _conversation("conv_a"))
        await store.list()
        _write_file(store.directory, _conversation("conv_b"))

        store.invalidate()
        assert len(await store.list()) == 2
