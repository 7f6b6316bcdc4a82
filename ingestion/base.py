"""
Abstract base class for streaming row sources, plus the cooperative
cancellation token shared by sources, the loader and the job registry.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional
import logging

from core.exceptions import JobCancelledError
from models.base import SourceType

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal for one job.

    Sources and the loader call ``raise_if_cancelled()`` at page, chunk and
    row boundaries; long waits use ``sleep()`` or ``wait()`` so they wake up
    as soon as the token is cancelled.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(f"Ingestion aborted: {self.reason}")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising ``JobCancelledError`` if cancelled meanwhile."""
        if delay <= 0:
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


class RowSource(ABC):
    """
    Abstract base class for all streaming sources.

    A source is a lazy, finite async iterator of dict records. It is only
    restartable from an externally supplied resume state, and exposes the
    position after the last yielded record through ``resume_state``.

    Offset-based sources (files, generator) resume with ``{"skip_rows": n}``.
    """

    source_type: SourceType

    def __init__(
        self,
        resume_state: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.initial_state = dict(resume_state or {})
        self.cancel_token = cancel_token
        self._position = int(self.initial_state.get("skip_rows", 0) or 0)

    @abstractmethod
    def rows(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield source records in order.

        Raises:
            ExtractionError: The source cannot be read
            JobCancelledError: Cancellation was observed
        """

    @property
    def resume_state(self) -> Dict[str, Any]:
        return {"skip_rows": self._position}

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def _advance(self) -> None:
        self._position += 1

    def describe(self) -> str:
        return self.source_type.value
