"""
Signal d'annulation coopératif, partagé par toutes les étapes d'une compilation.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from deeploom.common.errors import CompilationCancelled

T = TypeVar("T")


class CancellationSignal:
    """Équivalent asyncio d'un AbortSignal: un flag + un Event pour réveiller les attentes."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Compilation cancelled.") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CompilationCancelled(self._reason or "Compilation cancelled.")

    async def sleep(self, seconds: float) -> None:
        """
        Dort `seconds` secondes, ou lève CompilationCancelled dès que le signal est déclenché.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


    async def wait(self) -> None:
        await self._event.wait()


def check_cancelled(signal: Optional[CancellationSignal]) -> None:
    if signal is not None:
        signal.raise_if_cancelled()


async def run_cancellable(awaitable: Awaitable[T], signal: Optional[CancellationSignal]) -> T:
    """
    Exécute `awaitable` en course avec le signal.

    Si le signal est déclenché avant la fin, la tâche est annulée et
    CompilationCancelled est levée.
    """
    if signal is None:
        return await awaitable
    if signal.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        signal.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()

    if task.done():
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    signal.raise_if_cancelled()
    raise CompilationCancelled()
