"""Configurable mocked calls and long-running operations for fake cloud APIs."""

from __future__ import annotations

import threading
from typing import Callable, Generic, TypeVar

from .atomic import AtomicError, AtomicPtr, AtomicPtrStack

I = TypeVar("I")
O = TypeVar("O")


class MockedFunction(Generic[I, O]):
    """A mocked call: records inputs, returns a set output or raises a set error."""

    def __init__(self) -> None:
        self.output: AtomicPtr[O] = AtomicPtr()
        self.called_with_input: AtomicPtrStack[I] = AtomicPtrStack()
        self.error = AtomicError()
        self._count_lock = threading.Lock()
        self._successful = 0
        self._failed = 0

    def _record(self, success: bool) -> None:
        with self._count_lock:
            if success:
                self._successful += 1
            else:
                self._failed += 1

    def _reset_counts(self) -> None:
        with self._count_lock:
            self._successful = 0
            self._failed = 0

    def reset(self) -> None:
        """Clear output, recorded inputs, error and counters."""
        self.output.reset()
        self.called_with_input.reset()
        self.error.reset()
        self._reset_counts()

    def invoke(self, input: I, default: Callable[[I], O]) -> O:
        """Run the call: raise the set error, else return the set output or default(input)."""
        err = self.error.get()
        if err is not None:
            self._record(False)
            raise err
        self.called_with_input.add(input)
        if not self.output.is_nil():
            self._record(True)
            return self.output.clone()
        try:
            out = default(input)
        except Exception:
            self._record(False)
            raise
        self._record(True)
        return out

    def calls(self) -> int:
        return self.successful_calls() + self.failed_calls()

    def successful_calls(self) -> int:
        with self._count_lock:
            return self._successful

    def failed_calls(self) -> int:
        with self._count_lock:
            return self._failed


class MockPoller(Generic[O]):
    """A poller for an operation that has already finished."""

    def __init__(self, result: O | None = None, error: BaseException | None = None) -> None:
        self._result = result
        self._error = error

    def done(self) -> bool:
        return True

    def poll(self) -> None:
        if self._error is not None:
            raise self._error

    def result(self) -> O | None:
        """Return the operation's result, or raise its error."""
        if self._error is not None:
            raise self._error
        return self._result


class MockedLRO(MockedFunction[I, O]):
    """A mocked long-running operation that fails either at begin or at result time."""

    def __init__(self) -> None:
        super().__init__()
        self.begin_error = AtomicError()

    def reset(self) -> None:
        super().reset()
        self.begin_error.reset()

    def invoke(self, input: I, default: Callable[[I], O]) -> MockPoller[O]:
        """Begin the operation; begin errors raise, other errors surface from the poller."""
        begin_err = self.begin_error.get()
        if begin_err is not None:
            self._record(False)
            raise begin_err
        err = self.error.get()
        if err is not None:
            self._record(False)
            return MockPoller(None, err)
        self.called_with_input.add(input)
        if not self.output.is_nil():
            self._record(True)
            return MockPoller(self.output.clone())
        try:
            out = default(input)
        except Exception as exc:
            self._record(False)
            return MockPoller(None, exc)
        self._record(True)
        return MockPoller(out)