"""
Scalar logical clock used to timestamp operations.

The counter is seeded from wall-clock milliseconds. Ties between equal
timestamps are broken by node identity, so the seed only needs to be coarse.
"""

import threading
import time
from typing import Optional


class LogicalClock:
    """
    Lamport-style logical clock.

    tick() advances the counter for a locally originated event.
    observe() folds in a remote timestamp so the counter stays ahead of
    everything this site has produced or seen.
    """

    def __init__(self, initial_value: Optional[int] = None):
        """
        Initialize the clock.

        Args:
            initial_value: Starting counter value; defaults to current time in milliseconds
        """
        if initial_value is None:
            initial_value = int(time.time() * 1000)
        self._counter = int(initial_value)
        self._lock = threading.Lock()

    def tick(self) -> int:
        """
        Advance the clock for a local event.

        Returns:
            A timestamp strictly larger than any previously returned or observed
        """
        with self._lock:
            self._counter += 1
            return self._counter

    def observe(self, remote_timestamp: int) -> int:
        """
        Fold a remote timestamp into the local counter.

        Args:
            remote_timestamp: Timestamp carried by a remote operation or stored entry

        Returns:
            The new local counter value, max(current, remote) + 1
        """
        with self._lock:
            self._counter = max(self._counter, int(remote_timestamp)) + 1
            return self._counter

    def now(self) -> int:
        """Return the current counter without advancing it."""
        with self._lock:
            return self._counter

    def __repr__(self) -> str:
        return f"LogicalClock({self.now()})"
