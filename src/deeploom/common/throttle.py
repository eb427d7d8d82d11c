"""
Throttle global des appels LLM
==============================

Un seul gap minimal entre deux débuts d'appel, toutes phases et toutes
passes confondues. L'attente est interruptible par le CancellationSignal.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from deeploom.common.cancellation import CancellationSignal, check_cancelled

logger = logging.getLogger(__name__)


class CallThrottle:
    """Garantit start(n) - start(n-1) >= min_gap_ms, mesuré sur `clock`."""

    def __init__(
        self,
        min_gap_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_gap_s = max(0, min_gap_ms) / 1000.0
        self._clock = clock
        self._last_start: Optional[float] = None
        self._lock = asyncio.Lock()
        self.total_wait_s = 0.0

    @property
    def last_start(self) -> Optional[float]:
        return self._last_start

    async def acquire(self, signal: Optional[CancellationSignal] = None) -> float:
        """
        Attend que le gap soit respecté puis réserve le créneau.

        Returns:
            Timestamp (clock) du début d'appel réservé
        """
        async with self._lock:
            check_cancelled(signal)
            while self._last_start is not None:
                remaining = self.min_gap_s - (self._clock() - self._last_start)
                if remaining <= 0:
                    break
                self.total_wait_s += remaining
                logger.debug(f"[THROTTLE] Waiting {remaining * 1000:.0f}ms before next LLM call")
                if signal is not None:
                    await signal.sleep(remaining)
                else:
                    await asyncio.sleep(remaining)
            check_cancelled(signal)
            self._last_start = self._clock()
            return self._last_start

    def reset(self) -> None:
        self._last_start = None
        self.total_wait_s = 0.0
