from __future__ import annotations

import asyncio
from pathlib import Path

import msgpack

from dmcrm.storage import MessagePackStore


def test_load_creates_default_document(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "state.msgpack"
    store = MessagePackStore(path)
    asyncio.run(store.load())

    assert path.exists()
    assert store.data["accounts"] == {}
    assert store.data["messages"] == []
    assert store.dirty is False


def test_save_roundtrip_and_schema_repair(tmp_path: Path) -> None:
    path = tmp_path / "state.msgpack"
    account = {"id": "a1", "credential": "tok", "user_id": "900"}
    path.write_bytes(msgpack.packb({"accounts": {"a1": account}, "messages": "broken"}, use_bin_type=True))

    store = MessagePackStore(path)
    asyncio.run(store.load())

    assert store.data["accounts"] == {"a1": account}
    assert store.data["messages"] == []
    assert store.data["logs"] == []
    assert store.dirty is True

    asyncio.run(store.save())
    reloaded = MessagePackStore(path)
    asyncio.run(reloaded.load())
    assert reloaded.data["accounts"] == {"a1": account}
    assert not (tmp_path / "state.msgpack.tmp").exists()


def test_load_drops_broken_accounts_and_orphaned_messages(tmp_path: Path) -> None:
    path = tmp_path / "state.msgpack"
    document = {
        "accounts": {
            "a1": {"id": "a1", "credential": "tok", "user_id": "900"},
            "a2": {"id": "a2", "user_id": "901"},
            "a3": "garbage",
        },
        "messages": [
            {"account_id": "a1", "remote_message_id": "1", "content": "kept"},
            {"account_id": "a2", "remote_message_id": "2", "content": "no credential"},
            {"account_id": "gone", "remote_message_id": "3", "content": "orphan"},
            "not a row",
        ],
        "logs": [],
    }
    path.write_bytes(msgpack.packb(document, use_bin_type=True))

    store = MessagePackStore(path)
    asyncio.run(store.load())

    assert list(store.data["accounts"]) == ["a1"]
    assert [row["content"] for row in store.data["messages"]] == ["kept"]
    assert store.dirty is True
