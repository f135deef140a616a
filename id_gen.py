"""Entity identifiers."""

import secrets
import threading
import time
from typing import Callable, Optional


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def legacy_id(prefix: Optional[str] = None, clock: Callable[[], int] = _epoch_millis) -> str:
    """Old `PREFIX-<millis>` scheme. Two calls inside one millisecond collide."""
    millis = str(clock())
    return f"{prefix}-{millis}" if prefix else millis


class IdGenerator:
    """Millis + process-local counter + random suffix, e.g. `PAT-1718000000000-000007-9f3a`."""

    def __init__(self, clock: Callable[[], int] = _epoch_millis, suffix_bytes: int = 2):
        self._clock = clock
        self._suffix_bytes = suffix_bytes
        self._lock = threading.Lock()
        self._counter = 0
        self._last_millis = 0

    def next_id(self, prefix: Optional[str] = None) -> str:
        with self._lock:
            self._counter += 1
            # never step backwards if the wall clock does
            millis = max(self._clock(), self._last_millis)
            self._last_millis = millis
            counter = self._counter
        rand = secrets.token_hex(self._suffix_bytes)
        body = f"{millis}-{counter:06d}-{rand}"
        return f"{prefix}-{body}" if prefix else body


_default = IdGenerator()


def next_id(prefix: Optional[str] = None) -> str:
    return _default.next_id(prefix)
