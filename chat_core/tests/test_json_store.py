import asyncio
import json
import tempfile
import time
from pathlib import Path

import pytest

from chat_core.domain.exceptions import StorageError, ValidationError
from chat_core.infrastructure.storage.json_store import JsonSessionStore, session_filename


def stored_history(store, key):
    return asyncio.run(store.history(key))


def list_sessions(store):
    return asyncio.run(store.list_sessions())


def test_json_store_append_persist_and_reload():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / "sessions"
        store = JsonSessionStore(root=root)

        async def scenario():
            for i in range(5):
                role = "user" if i % 2 == 0 else "assistant"
                await store.append("s1", role, f"m{i}")
                await store.persist("s1")

        asyncio.run(scenario())
        assert [m.content for m in stored_history(store, "s1")] == ["m0", "m1", "m2", "m3", "m4"]

        # 模拟进程重启：新实例从磁盘读取
        reloaded = JsonSessionStore(root=root)
        msgs = stored_history(reloaded, "s1")
        assert [(m.role, m.content) for m in msgs] == [
            ("user", "m0"),
            ("assistant", "m1"),
            ("user", "m2"),
            ("assistant", "m3"),
            ("user", "m4"),
        ]


def test_json_store_history_of_unseen_key_creates_nothing(tmp_path):
    store = JsonSessionStore(root=tmp_path)
    assert stored_history(store, "nobody") == []
    assert list(tmp_path.iterdir()) == []
    assert list_sessions(store) == []


def test_json_store_append_without_persist_is_not_durable(tmp_path):
    store = JsonSessionStore(root=tmp_path)
    asyncio.run(store.append("s1", "user", "hi"))
    assert [m.content for m in stored_history(store, "s1")] == ["hi"]
    assert stored_history(JsonSessionStore(root=tmp_path), "s1") == []


def test_json_store_append_after_restart_keeps_old_history(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def first():
        await store.append("s1", "user", "one")
        await store.persist("s1")

    asyncio.run(first())

    store2 = JsonSessionStore(root=tmp_path)

    async def second():
        await store2.append("s1", "assistant", "two")
        await store2.persist("s1")

    asyncio.run(second())
    assert [m.content for m in stored_history(JsonSessionStore(root=tmp_path), "s1")] == ["one", "two"]


def test_json_store_delete_session(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        await store.append("s1", "user", "hi")
        await store.persist("s1")
        removed = await store.delete("s1")
        again = await store.delete("s1")
        return removed, again

    removed, again = asyncio.run(scenario())
    assert removed is True
    assert again is False
    assert stored_history(store, "s1") == []
    assert "s1" not in {s.key for s in list_sessions(store)}
    assert not store.path_for("s1").exists()


def test_json_store_delete_memory_only_session(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        await store.append("s1", "user", "hi")
        return await store.delete("s1")

    assert asyncio.run(scenario()) is True
    assert stored_history(store, "s1") == []


def test_json_store_list_sorted_by_updated(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        for key in ("old", "mid", "new"):
            await store.append(key, "user", key)
            await store.persist(key)
            await asyncio.sleep(0.01)
        await store.append("mid", "assistant", "again")
        await store.persist("mid")

    asyncio.run(scenario())
    summaries = list_sessions(store)
    assert [s.key for s in summaries] == ["mid", "new", "old"]
    assert summaries[0].message_count == 2


def test_json_store_list_skips_broken_files(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        await store.append("good", "user", "hi")
        await store.persist("good")

    asyncio.run(scenario())
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    assert [s.key for s in list_sessions(store)] == ["good"]


def test_session_filename_is_sanitized(tmp_path):
    name = session_filename("../../etc/passwd")
    assert "/" not in name and ".." not in name
    assert name.endswith(".json")
    # 不同的键即使清洗后相同，也不会落到同一个文件
    assert session_filename("a:b") != session_filename("a_b")
    assert session_filename("webui:abc").startswith("webui_abc-")

    store = JsonSessionStore(root=tmp_path)
    assert store.path_for("../../escape").parent == store.directory


def test_json_store_file_layout(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        await store.append("webui:1", "user", "hi")
        await store.persist("webui:1")

    asyncio.run(scenario())
    data = json.loads(store.path_for("webui:1").read_text(encoding="utf-8"))
    assert data["key"] == "webui:1"
    assert data["messages"][0]["role"] == "user"
    assert data["messages"][0]["content"] == "hi"
    assert data["messages"][0]["timestamp"].endswith("Z")
    assert data["updated"].endswith("Z")
    # 原子写入不会留下临时文件
    assert [p.name for p in tmp_path.iterdir()] == [store.path_for("webui:1").name]


def test_json_store_rejects_unknown_role(tmp_path):
    store = JsonSessionStore(root=tmp_path)
    with pytest.raises(ValidationError):
        asyncio.run(store.append("s1", "tool", "x"))


def test_json_store_concurrent_same_key_keeps_every_message(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def writer(i):
        await store.append("shared", "user", f"msg-{i}")
        await store.persist("shared")

    async def scenario():
        await asyncio.gather(*(writer(i) for i in range(20)))

    asyncio.run(scenario())
    durable = stored_history(JsonSessionStore(root=tmp_path), "shared")
    assert sorted(m.content for m in durable) == sorted(f"msg-{i}" for i in range(20))


def test_json_store_distinct_keys_do_not_block(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        # 长时间持有 "a" 的锁，"b" 的写入依然可以完成
        async with store._locked("a"):
            await asyncio.wait_for(store.append("b", "user", "hi"), timeout=1.0)
            await asyncio.wait_for(store.persist("b"), timeout=1.0)
            blocked = asyncio.create_task(store.append("a", "user", "waiting"))
            await asyncio.sleep(0.05)
            assert not blocked.done()
        await blocked

    asyncio.run(scenario())
    assert [m.content for m in stored_history(store, "a")] == ["waiting"]
    assert [m.content for m in stored_history(JsonSessionStore(root=tmp_path), "b")] == ["hi"]


def test_json_store_persist_failure_keeps_old_file(tmp_path, monkeypatch):
    store = JsonSessionStore(root=tmp_path)

    async def first():
        await store.append("s1", "user", "one")
        await store.persist("s1")

    asyncio.run(first())

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("chat_core.infrastructure.storage.json_store.os.replace", broken_replace)

    async def second():
        await store.append("s1", "assistant", "two")
        await store.persist("s1")

    with pytest.raises(StorageError) as exc:
        asyncio.run(second())
    assert exc.value.code == "STORE_WRITE_ERROR"
    # 内存状态保留，磁盘仍是旧的完整版本，临时文件被清理
    assert [m.content for m in stored_history(store, "s1")] == ["one", "two"]
    assert [m.content for m in stored_history(JsonSessionStore(root=tmp_path), "s1")] == ["one"]
    assert [p.suffix for p in tmp_path.iterdir()] == [".json"]


def test_json_store_cancelled_persist_holds_lock_until_written(tmp_path, monkeypatch):
    store = JsonSessionStore(root=tmp_path)
    original = JsonSessionStore._write_atomic
    writes = []

    def slow_write(path, obj):
        writes.append([m["content"] for m in obj["messages"]])
        if len(writes) == 1:
            time.sleep(0.3)
        original(path, obj)

    monkeypatch.setattr(JsonSessionStore, "_write_atomic", staticmethod(slow_write))

    async def scenario():
        await store.append("s1", "user", "hi")
        first = asyncio.create_task(store.persist("s1"))
        await asyncio.sleep(0.05)
        first.cancel()
        # 被取消的写线程结束之前，后续写入必须等待
        await store.append("s1", "assistant", "hello")
        await store.persist("s1")
        with pytest.raises(asyncio.CancelledError):
            await first

    asyncio.run(scenario())
    assert writes == [["hi"], ["hi", "hello"]]
    assert [m.content for m in stored_history(JsonSessionStore(root=tmp_path), "s1")] == ["hi", "hello"]


def test_json_store_append_without_create(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        missing = await store.append("s1", "assistant", "x", create=False)
        await store.append("s1", "user", "hi")
        created = await store.created_at("s1")
        await store.delete("s1")
        await store.append("s1", "user", "fresh")
        stale = await store.append("s1", "assistant", "late", created_at=created)
        current = await store.append("s1", "assistant", "ok", created_at=await store.created_at("s1"))
        return missing, stale, current

    missing, stale, current = asyncio.run(scenario())
    assert missing is None
    assert stale is None
    assert current is not None
    assert [m.content for m in stored_history(store, "s1")] == ["fresh", "ok"]


def test_json_store_delete_releases_key_lock(tmp_path):
    store = JsonSessionStore(root=tmp_path)

    async def scenario():
        await store.append("s1", "user", "hi")
        await store.persist("s1")
        assert "s1" in store._locks
        await store.delete("s1")
        await store.history("never-written")

    asyncio.run(scenario())
    assert store._locks == {}
    assert store._lock_users == {}


def test_json_store_reads_run_off_the_event_loop(tmp_path, monkeypatch):
    store = JsonSessionStore(root=tmp_path)

    async def seed():
        await store.append("s1", "user", "hi")
        await store.persist("s1")

    asyncio.run(seed())

    original_scan = JsonSessionStore._scan
    original_read = JsonSessionStore._read_file

    def slow_scan(self):
        time.sleep(0.2)
        return original_scan(self)

    def slow_read(self, key):
        time.sleep(0.2)
        return original_read(self, key)

    monkeypatch.setattr(JsonSessionStore, "_scan", slow_scan)
    monkeypatch.setattr(JsonSessionStore, "_read_file", slow_read)
    fresh = JsonSessionStore(root=tmp_path)

    async def scenario():
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        summaries = await fresh.list_sessions()
        messages = await fresh.history("s1")
        task.cancel()
        return ticks, summaries, messages

    ticks, summaries, messages = asyncio.run(scenario())
    # 文件读取期间事件循环仍在调度其他协程
    assert ticks >= 10
    assert [s.key for s in summaries] == ["s1"]
    assert [m.content for m in messages] == ["hi"]
