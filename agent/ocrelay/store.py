"""Transcript storage, one markdown file per session and project."""

from __future__ import annotations

import os
import re

import structlog

from ocrelay.errors import InvalidSessionIdError
from ocrelay.models import SessionSummary
from ocrelay.settings import settings

logger = structlog.get_logger("ocrelay.store")

PREVIEW_LENGTH = 50
EMPTY_PREVIEW = "Empty session"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|]')
_DECORATIVE_LINE = re.compile(r"^[#*`\-]+$")
_SESSION_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


def project_key(cwd: str) -> str:
    """Fold a working directory into a single directory name."""
    return _UNSAFE_CHARS.sub("_", cwd).lstrip("_")


def validate_session_id(session_id: str) -> str:
    if not session_id or ".." in session_id or not _SESSION_ID.match(session_id):
        raise InvalidSessionIdError(f"Invalid session id: {session_id!r}")
    return session_id


def preview_of(content: str) -> str:
    """First meaningful line of a transcript, truncated for listings."""
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or _DECORATIVE_LINE.match(stripped) or stripped.startswith("**"):
            continue
        if len(stripped) > PREVIEW_LENGTH:
            return stripped[:PREVIEW_LENGTH] + "..."
        return stripped
    return EMPTY_PREVIEW


class SessionStore:
    """Per-project transcript files keyed by session id.

    Files live at ``<root>/<project>/<session_id>.md``; ``save`` always
    overwrites the whole file.
    """

    def __init__(self, cwd: str, root: str | None = None) -> None:
        self.cwd = cwd
        self.root = root or settings.sessions_dir()

    @property
    def project_dir(self) -> str:
        return os.path.join(self.root, project_key(self.cwd))

    def path_for(self, session_id: str) -> str:
        return os.path.join(self.project_dir, f"{validate_session_id(session_id)}.md")

    def save(self, session_id: str, content: str) -> str:
        """Write the full transcript for a session.

        Returns:
            Path of the written file.
        """
        path = self.path_for(session_id)
        os.makedirs(self.project_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(content)
        logger.debug("Saved transcript", session_id=session_id, path=path)
        return path

    def load(self, session_id: str) -> str | None:
        path = self.path_for(session_id)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return handle.read()
        except FileNotFoundError:
            return None

    def exists(self, session_id: str) -> bool:
        return os.path.isfile(self.path_for(session_id))

    def list(self) -> list[SessionSummary]:
        """All transcripts of this project, most recently modified first."""
        try:
            names = os.listdir(self.project_dir)
        except FileNotFoundError:
            return []
        summaries: list[SessionSummary] = []
        for name in names:
            if not name.endswith(".md"):
                continue
            path = os.path.join(self.project_dir, name)
            try:
                mtime = os.path.getmtime(path)
                with open(path, "r", encoding="utf-8") as handle:
                    content = handle.read()
            except OSError:
                logger.debug("Skipping unreadable transcript", path=path)
                continue
            summaries.append(
                SessionSummary(id=name[:-3], preview=preview_of(content), modified_time=mtime)
            )
        summaries.sort(key=lambda summary: summary.modified_time, reverse=True)
        return summaries
