#!/usr/bin/env python3

import time
import logging
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class LineMemory:
    """
    Short-lived memory of the last directly detected line position.

    Bridges brief detection gaps (glare, a worn patch of tape, a frame where the
    line sits between thresholds): for up to `timeout` seconds after the last
    direct detection, the remembered position stands in for a missing one.
    """

    def __init__(self, timeout: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self.last_position: Optional[int] = None
        self.last_seen_at: Optional[float] = None

    def remember(self, position: int):
        """Store a direct detection, overwriting whatever was remembered."""
        self.last_position = position
        self.last_seen_at = self._clock()

    def age(self) -> Optional[float]:
        """Seconds since the last direct detection, or None if there never was one."""
        if self.last_seen_at is None:
            return None
        return self._clock() - self.last_seen_at

    def recall(self) -> Tuple[Optional[int], Optional[float]]:
        """
        Return (position, age) if the memory is still fresh, else (None, age).
        """
        age = self.age()
        if age is None or self.last_position is None:
            return None, age
        if age < self.timeout:
            return self.last_position, age
        return None, age

    def clear(self):
        """Forget the remembered line, e.g. when a new navigation segment begins."""
        self.last_position = None
        self.last_seen_at = None
        logger.info("Line memory reset")

    def get_status(self) -> Dict:
        age = self.age()
        return {
            'last_position': self.last_position,
            'age': age,
            'fresh': age is not None and self.last_position is not None and age < self.timeout,
            'timeout': self.timeout
        }
