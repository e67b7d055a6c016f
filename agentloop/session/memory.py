from __future__ import annotations

from agentloop.session.base import SessionStore
from agentloop.session.entries import SessionEntry


class InMemorySessionStore(SessionStore):
    """Entries kept in a dict; gone when the process exits."""

    def __init__(self) -> None:
        super().__init__()
        self._sessions: dict[str, list[SessionEntry]] = {}

    async def _append(self, session_id: str, entry: SessionEntry) -> None:
        self._sessions.setdefault(session_id, []).append(entry)

    async def entries(self, session_id: str) -> list[SessionEntry]:
        return list(self._sessions.get(session_id, []))

    async def list_sessions(self) -> list[str]:
        return list(self._sessions)

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None
