"""User configuration for the relay, persisted as JSON."""

from __future__ import annotations

import json
import os
import tempfile

import structlog
from pydantic import BaseModel, Field, ValidationError

from ocrelay.models import Mode
from ocrelay.settings import settings

logger = structlog.get_logger("ocrelay.config")

DEFAULT_PORTS = list(range(4096, 4106))


class ServerConfig(BaseModel):
    """Options for the local server used in agentic mode."""

    ports: list[int] = Field(default_factory=lambda: list(DEFAULT_PORTS))
    hostname: str = "127.0.0.1"
    startup_timeout_s: float = 10.0
    health_timeout_s: float = 1.0
    stop_grace_s: float = 1.0


class RelayConfig(BaseModel):
    """Relay options; unknown keys in the config file are ignored."""

    mode: Mode = Mode.QUICK
    agent: str = "build"
    model: str | None = None
    binary: str = "opencode"
    # -1 disables the timeout
    timeout_ms: int = 120_000
    md_files: list[str] = Field(default_factory=lambda: ["AGENT.md", "AGENTS.md"])
    settle_delay_ms: int = 100
    connect_fallback_ms: int = 2_000
    update_interval_ms: int = 80
    models_timeout_s: float = 10.0
    server: ServerConfig = Field(default_factory=ServerConfig)

    def opencode_bin(self) -> str:
        """Executable to launch, honouring the environment override."""
        return settings.opencode_bin() or self.binary

    def timeout_s(self) -> float | None:
        if self.timeout_ms < 0:
            return None
        return self.timeout_ms / 1000

    def model_display(self) -> str:
        """Short model name for status lines (``provider/model`` -> ``model``)."""
        if not self.model:
            return "default"
        return self.model.split("/", 1)[1] if "/" in self.model else self.model


def load_config(path: str | None = None) -> RelayConfig:
    """Load the config file, falling back to defaults when missing or invalid."""
    path = path or settings.config_path()
    if not os.path.exists(path):
        return RelayConfig()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        return RelayConfig.model_validate(data or {})
    except (OSError, json.JSONDecodeError, ValidationError):
        logger.warning("Ignoring unreadable config file", path=path, exc_info=True)
        return RelayConfig()


def save_config(config: RelayConfig, path: str | None = None) -> None:
    """Write the config atomically."""
    path = path or settings.config_path()
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".config.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(config.model_dump_json(indent=2))
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
