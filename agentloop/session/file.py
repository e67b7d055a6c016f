"""
JSON-lines session store: one ``<session_id>.jsonl`` file per session.

The base directory is created with ``0o700`` and session files with
``0o600``.  Session ids are validated and every resolved path is checked to
stay under the base directory.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path

from agentloop.session.base import SessionStore
from agentloop.session.entries import SessionEntry

_SESSION_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
SUFFIX = ".jsonl"


class FileSessionStore(SessionStore):
    """
    Parameters
    ----------
    base_dir:
        Directory holding the session files.
    """

    def __init__(self, base_dir: str) -> None:
        super().__init__()
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.base_dir, 0o700)

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID.match(session_id) or ".." in session_id:
            raise ValueError(f"Invalid session id: {session_id!r}")
        path = (self.base_dir / f"{session_id}{SUFFIX}").resolve()
        if path.parent != self.base_dir:
            raise ValueError(
                f"Path traversal detected: {session_id!r} resolves outside "
                f"base directory {self.base_dir}"
            )
        return path

    async def _append(self, session_id: str, entry: SessionEntry) -> None:
        path = self._path(session_id)
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def entries(self, session_id: str) -> list[SessionEntry]:
        path = self._path(session_id)
        if not path.exists():
            return []
        entries: list[SessionEntry] = []
        with path.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    entries.append(SessionEntry.from_dict(json.loads(line)))
        return entries

    async def list_sessions(self) -> list[str]:
        files = sorted(self.base_dir.glob(f"*{SUFFIX}"), key=lambda p: p.stat().st_mtime, reverse=True)
        return [p.name[: -len(SUFFIX)] for p in files]

    async def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True
