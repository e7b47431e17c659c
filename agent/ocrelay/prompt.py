"""In-prompt markers, file references and opencode command lines."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable

from pydantic import BaseModel

from ocrelay.models import Mode

_SESSION_MARKER = re.compile(r"#session\(([^)]+)\)")
_BACKTICK_REF = re.compile(r"`@([^`\s]+)`")
_BARE_REF = re.compile(r"@([^\s`]+)")

# Checked in order; the first marker present wins within each group.
_AGENT_MARKERS = ("plan", "build")
_MODE_MARKERS = {"quick": Mode.QUICK, "agentic": Mode.AGENTIC}


class Directives(BaseModel):
    """Markers pulled out of a prompt."""
    prompt: str
    session_id: str | None = None
    agent: str | None = None
    mode: Mode | None = None


def _strip_marker(text: str, marker: str) -> str:
    pattern = re.compile(rf"{re.escape(marker)}(?![\w(])\s*|\s*{re.escape(marker)}(?![\w(])")
    return pattern.sub("", text, count=1)


def _has_marker(text: str, marker: str) -> bool:
    return re.search(rf"{re.escape(marker)}(?![\w(])", text) is not None


def parse_directives(prompt: str) -> Directives:
    """Strip ``#session(<id>)``, ``#plan``/``#build`` and ``#quick``/``#agentic``.

    Example:
        >>> parse_directives("#plan refactor #session(ses_1)")
        Directives(prompt='refactor', session_id='ses_1', agent='plan', mode=None)
    """
    session_id = None
    match = _SESSION_MARKER.search(prompt)
    if match:
        session_id = match.group(1).strip()
        prompt = re.sub(r"#session\([^)]+\)\s*|\s*#session\([^)]+\)", "", prompt, count=1)

    agent = None
    for name in _AGENT_MARKERS:
        marker = f"#{name}"
        if _has_marker(prompt, marker):
            agent = name
            prompt = _strip_marker(prompt, marker)
            break

    mode = None
    for name, value in _MODE_MARKERS.items():
        marker = f"#{name}"
        if _has_marker(prompt, marker):
            mode = value
            prompt = _strip_marker(prompt, marker)
            break

    return Directives(prompt=prompt.strip(), session_id=session_id or None, agent=agent, mode=mode)


def _exists(path: str, cwd: str) -> bool:
    full = path if os.path.isabs(path) else os.path.join(cwd, path)
    return os.path.isfile(full)


def extract_file_references(prompt: str, cwd: str) -> list[str]:
    """``@path`` and `` `@path` `` references that exist on disk, in order.

    Paths that do not exist are left as plain text; anything containing a
    second ``@`` (an email address, say) is ignored.
    """
    files: list[str] = []
    seen: set[str] = set()
    candidates = _BACKTICK_REF.findall(prompt) + [
        ref for ref in _BARE_REF.findall(prompt) if "@" not in ref
    ]
    for ref in candidates:
        if ref not in seen and _exists(ref, cwd):
            files.append(ref)
            seen.add(ref)
    return files


def discover_md_files(cwd: str, names: Iterable[str], source_file: str | None = None) -> list[str]:
    """Find context files walking up from the source file's directory to ``cwd``.

    Args:
        cwd: Project root; the walk never goes above it.
        names: File names to look for in each directory, e.g. ``AGENT.md``.
        source_file: File the prompt came from, relative to ``cwd``.

    Returns:
        Paths relative to ``cwd``, deepest directory first.
    """
    root = os.path.abspath(cwd)
    if source_file:
        start = os.path.dirname(os.path.abspath(os.path.join(root, source_file)))
    else:
        start = root
    names = list(names)
    found: list[str] = []
    directory = start
    while directory == root or directory.startswith(root.rstrip(os.sep) + os.sep):
        for name in names:
            candidate = os.path.join(directory, name)
            if os.path.isfile(candidate):
                rel = os.path.relpath(candidate, root)
                if rel not in found:
                    found.append(rel)
        if directory == root:
            break
        parent = os.path.dirname(directory)
        if parent == directory:
            break
        directory = parent
    return found


def collect_files(
    prompt: str,
    cwd: str,
    md_files: Iterable[str],
    files: Iterable[str] | None = None,
    source_file: str | None = None,
) -> list[str]:
    """Explicit files, then prompt references, then context files; no duplicates."""
    collected: list[str] = []
    for group in (files or [], extract_file_references(prompt, cwd), discover_md_files(cwd, md_files, source_file)):
        for path in group:
            if path not in collected:
                collected.append(path)
    return collected


def build_run_command(
    program: str,
    prompt: str | None,
    *,
    agent: str = "build",
    model: str | None = None,
    session_id: str | None = None,
    files: Iterable[str] = (),
    command: str | None = None,
) -> list[str]:
    """Argument vector for ``opencode run``.

    The prompt goes after ``--`` so it is never read as a file path.
    """
    cmd = [program, "run", "--agent", agent, "--format", "json"]
    if command:
        cmd += ["--command", command]
    if model:
        cmd += ["--model", model]
    if session_id:
        cmd += ["--session", session_id]
    for path in files:
        cmd += ["--file", path]
    if prompt:
        cmd += ["--", prompt]
    return cmd
