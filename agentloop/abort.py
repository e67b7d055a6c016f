"""
Cooperative cancellation token.

One token is shared by every adapter call made during a single ``evaluate``.
The stream-read loop checks it after each received chunk and the tool-call
loop checks it at round boundaries.  A tool that is already running is not
interrupted.
"""

from __future__ import annotations

import threading

from agentloop.types import AbortedError


class AbortToken:
    """A one-shot flag that may be set from any thread or task."""

    def __init__(self) -> None:
        self._flag = threading.Event()
        self.reason: str | None = None

    def abort(self, reason: str = "aborted") -> None:
        if not self._flag.is_set():
            self.reason = reason
            self._flag.set()

    @property
    def aborted(self) -> bool:
        return self._flag.is_set()

    def raise_if_aborted(self) -> None:
        if self._flag.is_set():
            raise AbortedError(self.reason or "aborted")

    def __repr__(self) -> str:
        return f"AbortToken(aborted={self.aborted})"
