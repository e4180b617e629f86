import asyncio
import json
from datetime import datetime, timezone

import pytest

from feed_engine.exceptions import PersistenceError
from feed_engine.models import FeedFormat
from feed_engine.storage import DebouncedWriter, FileStore, MemoryStore, dumps, load_json, save_json

pytestmark = pytest.mark.anyio


class TestFileStore:
    async def test_set_get_delete(self, tmp_path):
        store = FileStore(tmp_path / "state")

        assert await store.get("cache.entries") is None
        await store.set("cache.entries", b"[1, 2]")
        assert await store.get("cache.entries") == b"[1, 2]"

        await store.delete("cache.entries")
        assert await store.get("cache.entries") is None
        await store.delete("cache.entries")

    async def test_unsafe_keys_stay_inside_the_directory(self, tmp_path):
        store = FileStore(tmp_path)
        await store.set("../escape/key", b"1")

        assert [p.parent for p in tmp_path.iterdir()] == [tmp_path]

    async def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = FileStore(blocker)

        with pytest.raises(PersistenceError):
            await store.set("k", b"1")


class TestJsonHelpers:
    def test_dumps_handles_models(self):
        data = {"when": datetime(2025, 6, 10, tzinfo=timezone.utc), "fmt": FeedFormat.RSS, "tags": ("a",)}
        assert json.loads(dumps(data)) == {"when": "2025-06-10T00:00:00+00:00", "fmt": "rss", "tags": ["a"]}

    async def test_load_missing_key(self):
        assert await load_json(MemoryStore(), "nope") is None

    async def test_corrupt_value(self):
        store = MemoryStore()
        await store.set("k", b"{oops")
        with pytest.raises(PersistenceError):
            await load_json(store, "k")

    async def test_round_trip(self):
        store = MemoryStore()
        await save_json(store, "k", {"a": [1, 2]})
        assert await load_json(store, "k") == {"a": [1, 2]}


class TestDebouncedWriter:
    async def test_coalesces_bursts(self):
        writes = []

        async def write():
            writes.append(1)

        writer = DebouncedWriter(write, delay=0.01)
        for _ in range(5):
            writer.schedule()
        assert writer.pending

        await asyncio.sleep(0.05)
        assert writes == [1]
        assert not writer.dirty

    async def test_cancel_drops_pending_write(self):
        writes = []

        async def write():
            writes.append(1)

        writer = DebouncedWriter(write, delay=10)
        writer.schedule()
        await writer.cancel()

        assert writes == []
        assert not writer.pending

    def test_schedule_without_loop_only_marks_dirty(self):
        writer = DebouncedWriter(lambda: None, delay=1)
        writer.schedule()
        assert writer.dirty
        assert not writer.pending
