"""
guard.py - Reentrancy guard shared by all engines

Only one state-mutating entry point may run at a time. A call arriving
while another is in flight (for example from a token transfer rule invoked
during ledger validation) is rejected with StateError.
"""

from __future__ import annotations
from contextlib import contextmanager
from functools import wraps
from typing import Iterator, Optional

from .core import StateError


class ReentrancyGuard:

    def __init__(self):
        self._active: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self._active is not None

    @contextmanager
    def enter(self, operation: str) -> Iterator[None]:
        if self._active is not None:
            raise StateError(
                f"Reentrant call to {operation} while {self._active} is in progress"
            )
        self._active = operation
        try:
            yield
        finally:
            self._active = None


def non_reentrant(method):
    """Wrap an engine method so it runs under the engine's shared guard (self.guard)."""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.guard.enter(method.__qualname__):
            return method(self, *args, **kwargs)
    return wrapper
