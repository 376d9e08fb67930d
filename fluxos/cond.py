"""A counting condition variable used together with a mutex."""

from __future__ import annotations

import threading
from typing import Protocol


class _Mutex(Protocol):
    def acquire(self) -> bool: ...

    def release(self) -> None: ...


class Condition:
    """Waiters take a ticket; each signal lowers the counter by one.

    A waiter resumes once the counter drops to its ticket, and on waking
    lowers the counter once more, so a signal may release a chain of
    waiters. A broadcast resets the counter and releases everyone.
    """

    def __init__(self) -> None:
        self._state = threading.Condition(threading.Lock())
        self._waiting = 0

    @property
    def waiting(self) -> int:
        """Current value of the wait counter."""
        with self._state:
            return self._waiting

    def wait(self, mutex: _Mutex) -> None:
        """Release ``mutex``, block until woken, then take ``mutex`` again."""
        with self._state:
            mutex.release()
            ticket = self._waiting
            self._waiting += 1
            while self._waiting > ticket:
                self._state.wait()
            if self._waiting:
                self._waiting -= 1
                self._state.notify_all()
        mutex.acquire()

    def signal(self) -> None:
        """Wake the most recent waiter, if any."""
        with self._state:
            if self._waiting:
                self._waiting -= 1
                self._state.notify_all()

    def broadcast(self) -> None:
        """Wake every waiter."""
        with self._state:
            self._waiting = 0
            self._state.notify_all()