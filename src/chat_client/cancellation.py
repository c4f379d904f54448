"""Cooperative cancellation shared between a response session and its transport."""
from __future__ import annotations

import asyncio
from typing import Optional


class CancellationToken:
    """One-way flag: once cancelled, it stays cancelled.

    The session checks :attr:`is_cancelled` before applying every fragment;
    transports may poll it or ``await token.wait()`` to stop early.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Returns False if it was already requested."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        return True

    async def wait(self) -> None:
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()
