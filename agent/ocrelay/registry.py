"""Cross-instance registry of running opencode servers.

The registry is a single JSON object keyed by working directory. It is not
locked: every writer rewrites the whole file through a temp file and
``os.replace``, so the last writer wins and readers never see a torn file.
Stale entries are reconciled by health probes in ``ServerManager``.
"""

from __future__ import annotations

import json
import os
import tempfile

import structlog
from pydantic import ValidationError

from ocrelay.models import RegistryEntry
from ocrelay.settings import settings

logger = structlog.get_logger("ocrelay.registry")


class ServerRegistry:
    """Read/write access to the shared ``servers.json`` file."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path or settings.registry_path()

    def load(self) -> dict[str, RegistryEntry]:
        """Return every valid entry; a missing or corrupt file reads as empty."""
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            logger.warning("Server registry unreadable, treating as empty", path=self.path)
            return {}
        if not isinstance(raw, dict):
            return {}
        entries: dict[str, RegistryEntry] = {}
        for cwd, value in raw.items():
            try:
                entries[cwd] = RegistryEntry.model_validate(value)
            except ValidationError:
                logger.debug("Dropping malformed registry entry", cwd=cwd)
        return entries

    def save(self, entries: dict[str, RegistryEntry]) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        payload = {
            cwd: entry.model_dump(by_alias=True, exclude_none=True)
            for cwd, entry in entries.items()
        }
        fd, tmp_path = tempfile.mkstemp(prefix=".servers.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, cwd: str) -> RegistryEntry | None:
        return self.load().get(cwd)

    def register(
        self,
        cwd: str,
        port: int | None,
        url: str,
        owner_pid: int | None = None,
    ) -> RegistryEntry:
        """Record a server for ``cwd``, replacing any previous entry.

        Args:
            cwd: Working directory the server serves.
            port: Port the server announced.
            url: Base URL of the server.
            owner_pid: Pid of the server process, if this process owns it.
        """
        entry = RegistryEntry(port=port, url=url, owner_pid=owner_pid, writer_pid=os.getpid())
        entries = self.load()
        entries[cwd] = entry
        try:
            self.save(entries)
        except OSError:
            logger.warning("Failed to write server registry", path=self.path, exc_info=True)
        return entry

    def unregister(self, cwd: str) -> bool:
        entries = self.load()
        if entries.pop(cwd, None) is None:
            return False
        try:
            self.save(entries)
        except OSError:
            logger.warning("Failed to write server registry", path=self.path, exc_info=True)
        return True
