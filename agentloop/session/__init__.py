"""Session persistence: entries plus in-memory, JSONL-file and SQLite stores."""

from agentloop.session.base import SessionStore
from agentloop.session.entries import SessionEntry, replay
from agentloop.session.file import FileSessionStore
from agentloop.session.memory import InMemorySessionStore
from agentloop.session.sqlite import SQLiteSessionStore

BACKENDS = ("memory", "file", "sqlite")


def open_store(backend: str, path: str = "") -> SessionStore:
    """Build the store named by the ``session.backend`` config value."""
    if backend == "memory":
        return InMemorySessionStore()
    if backend == "file":
        return FileSessionStore(path or "~/.agentloop/sessions")
    if backend == "sqlite":
        return SQLiteSessionStore(path or "~/.agentloop/sessions.db")
    raise ValueError(f"Unknown session backend {backend!r}; expected one of {BACKENDS}")


__all__ = [
    "BACKENDS",
    "FileSessionStore",
    "InMemorySessionStore",
    "SQLiteSessionStore",
    "SessionEntry",
    "SessionStore",
    "open_store",
    "replay",
]
