"""Abstract session store."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from agentloop.messages import AgentState
from agentloop.session.entries import SessionEntry, replay


class SessionStore(ABC):
    """
    Append-only log of ``SessionEntry`` values per session id.

    Writes go through ``append``, which holds the store's lock, so two
    evaluations finishing at the same time on one session never interleave
    their entries.
    """

    def __init__(self) -> None:
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Open underlying resources.  No-op by default."""

    async def close(self) -> None:
        """Release underlying resources.  No-op by default."""

    async def __aenter__(self) -> SessionStore:
        await self.init()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def load(self, session_id: str) -> AgentState:
        """State for *session_id*; an unknown id gives a fresh state."""
        return replay(await self.entries(session_id), session_id)

    async def append(self, session_id: str, entry: SessionEntry) -> None:
        async with self._write_lock:
            await self._append(session_id, entry)

    @abstractmethod
    async def _append(self, session_id: str, entry: SessionEntry) -> None:
        ...

    @abstractmethod
    async def entries(self, session_id: str) -> list[SessionEntry]:
        """All entries for *session_id* in append order."""

    @abstractmethod
    async def list_sessions(self) -> list[str]:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session; ``False`` if it did not exist."""
