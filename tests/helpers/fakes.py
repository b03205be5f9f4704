from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, Optional, Set


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self._t = float(start)

    def time(self) -> float:
        return self._t

    def advance(self, seconds: float) -> None:
        self._t += float(seconds)


class FlakyStore:
    """Raises on the first `failures` erase calls, then behaves."""

    def __init__(self, name: str = "flaky", *, failures: int = 1):
        self.name = name
        self.failures = int(failures)
        self.erase_calls = 0
        self._data: Set[str] = set()
        self._lock = threading.Lock()

    def put(self, record_id: str, _data: bytes = b"") -> None:
        self._data.add(str(record_id))

    def erase(self, record_id: str) -> None:
        with self._lock:
            self.erase_calls += 1
            if self.failures > 0:
                self.failures -= 1
                raise OSError("store unavailable")
            self._data.discard(str(record_id))

    def contains(self, record_id: str) -> bool:
        return str(record_id) in self._data


class LeakyStore:
    """Acknowledges every erase but keeps the data (a replica that ignores deletes)."""

    def __init__(self, name: str = "leaky"):
        self.name = name
        self._data: Dict[str, bytes] = {}

    def put(self, record_id: str, data: bytes = b"") -> None:
        self._data[str(record_id)] = bytes(data)

    def erase(self, record_id: str) -> None:
        return None

    def contains(self, record_id: str) -> bool:
        return str(record_id) in self._data


class UnreadableStore:
    """Erases normally, but the verification read fails for ids in `broken` (an unmounted backup volume)."""

    def __init__(self, name: str = "backup", *, broken: Iterable[str] = ()):
        self.name = name
        self.broken = {str(x) for x in broken}
        self._data: Set[str] = set()

    def put(self, record_id: str, _data: bytes = b"") -> None:
        self._data.add(str(record_id))

    def erase(self, record_id: str) -> None:
        self._data.discard(str(record_id))

    def contains(self, record_id: str) -> bool:
        if str(record_id) in self.broken:
            raise OSError("backup volume unreachable")
        return str(record_id) in self._data


class SlowStore:
    """Calls `on_erase(record_id)` before every erase; tests use it to move the clock mid-sweep."""

    def __init__(self, name: str = "slow", *, on_erase: Optional[Callable[[str], None]] = None):
        self.name = name
        self.on_erase = on_erase
        self._data: Set[str] = set()

    def put(self, record_id: str, _data: bytes = b"") -> None:
        self._data.add(str(record_id))

    def erase(self, record_id: str) -> None:
        if self.on_erase is not None:
            self.on_erase(str(record_id))
        self._data.discard(str(record_id))

    def contains(self, record_id: str) -> bool:
        return str(record_id) in self._data


class DummyLogger:
    def debug(self, *_a, **_k): ...
    def info(self, *_a, **_k): ...
    def warning(self, *_a, **_k): ...
    def error(self, *_a, **_k): ...
    def critical(self, *_a, **_k): ...


def at_day(clock: FakeClock, start: float, n: float) -> float:
    """Move the clock to `n` days after `start` and return the new time."""
    clock.advance(start + n * 86400.0 - clock.time())
    return clock.time()
