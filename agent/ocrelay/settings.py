"""Environment-backed settings shared by the relay modules."""

from __future__ import annotations

import os
from pathlib import Path


class Settings:
    """Accessors for OCRELAY_* environment variables.

    Values are read on every call so tests can repoint them with monkeypatch.
    """

    def data_dir(self) -> str:
        """Root directory for the registry, config and transcripts."""
        value = os.environ.get("OCRELAY_DATA_DIR", "").strip()
        if value:
            return os.path.expanduser(value)
        base = os.environ.get("XDG_DATA_HOME") or os.path.join(Path.home(), ".local", "share")
        return os.path.join(base, "ocrelay")

    def config_path(self) -> str:
        value = os.environ.get("OCRELAY_CONFIG", "").strip()
        if value:
            return os.path.expanduser(value)
        return os.path.join(self.data_dir(), "config.json")

    def registry_path(self) -> str:
        return os.path.join(self.data_dir(), "servers.json")

    def sessions_dir(self) -> str:
        return os.path.join(self.data_dir(), "sessions")

    def opencode_bin(self) -> str | None:
        """Override for the opencode executable, if set."""
        value = os.environ.get("OCRELAY_OPENCODE_BIN", "").strip()
        return value or None

    def log_level(self) -> str:
        return os.environ.get("OCRELAY_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"

    def log_format(self) -> str:
        """Either ``console`` or ``json``."""
        value = os.environ.get("OCRELAY_LOG_FORMAT", "console").strip().lower()
        return "json" if value == "json" else "console"


settings = Settings()
