"""Single-flight permit shared by every pipeline run on this host."""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class ExecutionGate:
    """Process-wide exclusive permit; never queues, never waits."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def is_held(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        acquired = self._lock.acquire(blocking=False)
        if not acquired:
            logger.info("Execution gate busy, rejecting run")
        return acquired

    def release(self) -> None:
        self._lock.release()

    @contextmanager
    def claim(self) -> Iterator[bool]:
        """Try to take the permit for the duration of the block.

        Yields whether it was taken; if so it is released on every exit
        path, exceptions included.
        """
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
