"""Deadlines threaded through the suspension points of a submission."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from stakeline.errors import ErrorKind, SubmissionTimeout

T = TypeVar("T")


class Deadline:
    """Absolute point in monotonic time after which waits give up.

    ``Deadline(None)`` never expires.
    """

    def __init__(self, expires_at: Optional[float] = None, clock=time.monotonic):
        self._expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, seconds: Optional[float], clock=time.monotonic) -> "Deadline":
        if seconds is None:
            return cls(None, clock)
        return cls(clock() + seconds, clock)

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, stage: str) -> None:
        if self.expired:
            raise SubmissionTimeout(
                f"Deadline elapsed before {stage}",
                ErrorKind.TIMEOUT,
                hint="The network did not respond in time.",
                state=stage,
            )

    async def run(self, awaitable: Awaitable[T], stage: str) -> T:
        """Await ``awaitable``, raising SubmissionTimeout if the deadline passes first."""
        remaining = self.remaining()
        if remaining is None:
            return await awaitable
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.check(stage)
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise SubmissionTimeout(
                f"Timed out during {stage}",
                ErrorKind.TIMEOUT,
                hint="The network did not respond in time.",
                state=stage,
                cause=exc,
            ) from exc
