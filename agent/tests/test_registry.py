"""Tests for the cross-instance server registry file."""

import json
import os

from ocrelay.registry import ServerRegistry


def test_register_and_get(tmp_path) -> None:
    registry = ServerRegistry(str(tmp_path / "servers.json"))
    registry.register("/proj", 4096, "http://127.0.0.1:4096", owner_pid=1234)

    entry = registry.get("/proj")
    assert entry.url == "http://127.0.0.1:4096"
    assert entry.port == 4096
    assert entry.owner_pid == 1234
    assert entry.writer_pid == os.getpid()


def test_file_uses_camel_case_keys(tmp_path) -> None:
    path = tmp_path / "servers.json"
    ServerRegistry(str(path)).register("/proj", 4096, "http://127.0.0.1:4096", owner_pid=1)
    raw = json.loads(path.read_text())
    assert set(raw["/proj"]) >= {"port", "url", "ownerPid", "writerPid", "timestamp"}


def test_last_writer_wins(tmp_path) -> None:
    path = str(tmp_path / "servers.json")
    ServerRegistry(path).register("/proj", 4096, "http://127.0.0.1:4096")
    ServerRegistry(path).register("/proj", 4097, "http://127.0.0.1:4097")
    entries = ServerRegistry(path).load()
    assert list(entries) == ["/proj"]
    assert entries["/proj"].port == 4097


def test_unregister(tmp_path) -> None:
    registry = ServerRegistry(str(tmp_path / "servers.json"))
    registry.register("/a", 1, "http://127.0.0.1:1")
    registry.register("/b", 2, "http://127.0.0.1:2")
    assert registry.unregister("/a") is True
    assert registry.unregister("/a") is False
    assert list(registry.load()) == ["/b"]


def test_corrupt_file_reads_as_empty(tmp_path) -> None:
    path = tmp_path / "servers.json"
    path.write_text("{not json")
    registry = ServerRegistry(str(path))
    assert registry.load() == {}
    registry.register("/proj", 1, "http://127.0.0.1:1")
    assert registry.get("/proj") is not None


def test_malformed_entries_are_dropped(tmp_path) -> None:
    path = tmp_path / "servers.json"
    path.write_text(json.dumps({"/ok": {"url": "http://x:1", "port": 1}, "/bad": {"port": "nope"}}))
    assert list(ServerRegistry(str(path)).load()) == ["/ok"]


def test_default_path_follows_data_dir(data_dir) -> None:
    assert ServerRegistry().path == str(data_dir / "servers.json")
