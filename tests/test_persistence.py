import os

import pytest

from market_oracle.brain.persistence import FileKeyValueStore, MemoryKeyValueStore, _to_primitive_safe
from market_oracle.data.models import Tier


class TestFileKeyValueStore:
    @pytest.mark.asyncio
    async def test_value_survives_a_new_instance(self, tmp_path):
        path = str(tmp_path / "oracle.brain.lz4")
        a = FileKeyValueStore(path)
        await a.set("coingecko_symbol_map", {"timestamp": 1.0, "symbols": {"sui": "sui"}})

        b = FileKeyValueStore(path)
        assert await b.get("coingecko_symbol_map") == {"timestamp": 1.0, "symbols": {"sui": "sui"}}
        assert await b.get("missing") is None

    @pytest.mark.asyncio
    async def test_corrupt_main_file_falls_back_to_backup(self, tmp_path):
        path = str(tmp_path / "oracle.brain.lz4")
        a = FileKeyValueStore(path)
        await a.set("k", "first")
        await a.set("k", "second")
        assert os.path.exists(path + ".bak1")

        with open(path, "wb") as f:
            f.write(b"not an envelope")

        b = FileKeyValueStore(path)
        assert await b.get("k") == "first"

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        store = FileKeyValueStore(str(tmp_path / "nothing-here.lz4"))
        assert await store.get("k") is None
        assert store.disk_failed is False

    @pytest.mark.asyncio
    async def test_unwritable_path_keeps_memory_copy(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        store = FileKeyValueStore(str(blocker / "oracle.brain.lz4"))

        await store.set("k", 1)
        assert store.disk_failed is True
        assert await store.get("k") == 1

    @pytest.mark.asyncio
    async def test_backups_are_capped(self, tmp_path):
        path = str(tmp_path / "oracle.brain.lz4")
        store = FileKeyValueStore(path, max_backups=2)
        for i in range(5):
            await store.set("k", i)
        assert os.path.exists(path + ".bak2")
        assert not os.path.exists(path + ".bak3")


class TestMemoryKeyValueStore:
    @pytest.mark.asyncio
    async def test_get_set(self):
        store = MemoryKeyValueStore({"a": 1})
        assert await store.get("a") == 1
        await store.set("b", [1, 2])
        assert await store.get("b") == [1, 2]


def test_to_primitive_safe():
    out = _to_primitive_safe({"tier": Tier.PRO, 1: (1, 2), "s": {3}})
    assert out == {"tier": "pro", "1": [1, 2], "s": [3]}
