"""Shared fixtures: isolated data directory and fake opencode executables."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from ocrelay.config import RelayConfig, ServerConfig


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch) -> Path:
    """Point every OCRELAY_* path at a per-test directory."""
    path = tmp_path / "data"
    path.mkdir()
    monkeypatch.setenv("OCRELAY_DATA_DIR", str(path))
    monkeypatch.delenv("OCRELAY_CONFIG", raising=False)
    monkeypatch.delenv("OCRELAY_OPENCODE_BIN", raising=False)
    return path


@pytest.fixture
def project_dir(tmp_path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def make_script(tmp_path):
    """Write an executable Python script and return its path."""

    def _make(name: str, body: str) -> Path:
        script_path = tmp_path / name
        script_path.write_text(
            f"#!{sys.executable}\n" + textwrap.dedent(body),
            encoding="utf-8",
        )
        script_path.chmod(0o755)
        return script_path

    return _make


@pytest.fixture
def fast_config() -> RelayConfig:
    """Config with short delays so tests run quickly."""
    return RelayConfig(
        settle_delay_ms=50,
        connect_fallback_ms=200,
        update_interval_ms=20,
        server=ServerConfig(ports=[0], startup_timeout_s=5.0, stop_grace_s=0.5),
    )
