"""A non-blocking limit on how many operations may run at once."""

import threading


class ConcurrencyQuota:
    """Up to ``total`` units may be held at a time; consuming never blocks."""

    def __init__(self, total):
        self._sem = threading.BoundedSemaphore(total)

    def try_consume(self):
        """Take one unit if one is free; return whether it was taken."""
        return self._sem.acquire(blocking=False)

    def release(self):
        """Give back one unit; raises ValueError if none is held."""
        self._sem.release()