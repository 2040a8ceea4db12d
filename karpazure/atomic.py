"""Thread-safe holders used by the fake cloud APIs to expose state to tests."""

from __future__ import annotations

import copy
import sys
import threading
from typing import Generic, TypeVar

T = TypeVar("T")

_UNLIMITED = sys.maxsize


class AtomicPtr(Generic[T]):
    """A lock-guarded value that is only handed out as a deep copy."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: T | None = None

    def set(self, value: T | None) -> None:
        with self._lock:
            self._value = value

    def is_nil(self) -> bool:
        with self._lock:
            return self._value is None

    def clone(self) -> T | None:
        """Return a deep copy of the stored value."""
        with self._lock:
            return copy.deepcopy(self._value)

    def reset(self) -> None:
        with self._lock:
            self._value = None


class AtomicError:
    """An error that is handed out a limited number of times."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._err: BaseException | None = None
        self._calls = 0
        self._max_calls = 0

    def reset(self) -> None:
        with self._lock:
            self._err = None
            self._calls = 0
            self._max_calls = 0

    def is_nil(self) -> bool:
        with self._lock:
            return self._err is None

    def get(self) -> BaseException | None:
        """Return the error if calls remain, counting this call; otherwise None."""
        with self._lock:
            if self._calls >= self._max_calls:
                return None
            self._calls += 1
            return self._err

    def set(self, err: BaseException | None, max_calls: int | None = None) -> None:
        """Store an error; a max_calls of zero or less means it never runs out."""
        with self._lock:
            self._err = err
            if max_calls is not None:
                self._max_calls = _UNLIMITED if max_calls <= 0 else max_calls
            if self._max_calls == 0:
                self._max_calls = 1


class AtomicPtrStack(Generic[T]):
    """A lock-guarded stack that stores deep copies of what is pushed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: list[T] = []

    def reset(self) -> None:
        with self._lock:
            self._values = []

    def add(self, item: T) -> None:
        with self._lock:
            self._values.append(copy.deepcopy(item))

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def pop(self) -> T:
        """Remove and return the most recently added item; IndexError when empty."""
        with self._lock:
            return self._values.pop()


class AtomicPtrSlice(Generic[T]):
    """A lock-guarded list that stores and hands out deep copies."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: list[T] = []

    def reset(self) -> None:
        with self._lock:
            self._values = []

    def append(self, *args: T) -> None:
        with self._lock:
            self._values.extend(copy.deepcopy(item) for item in args)

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def get(self, index: int) -> T | None:
        """Return a copy of the item at index, or None when out of range."""
        with self._lock:
            if index < 0 or index >= len(self._values):
                return None
            return copy.deepcopy(self._values[index])

    def values(self) -> list[T]:
        """Return a snapshot list of the stored items."""
        with self._lock:
            return list(self._values)