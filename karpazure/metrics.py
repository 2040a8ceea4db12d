"""Counters reported by the provider."""

from __future__ import annotations

import threading

NAMESPACE = "karpenter"
IMAGE_FAMILY_SUBSYSTEM = "image"


class Counter:
    """A monotonically increasing value."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount

    def value(self) -> float:
        with self._lock:
            return self._value


class CounterVec:
    """A family of counters partitioned by label values."""

    def __init__(
        self,
        namespace: str,
        subsystem: str,
        name: str,
        help: str,
        label_names: list[str],
    ) -> None:
        self.full_name = "_".join(part for part in (namespace, subsystem, name) if part)
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], Counter] = {}

    def with_label_values(self, *args: str) -> Counter:
        """Return the counter for these label values, creating it if needed."""
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.full_name}: expected {len(self.label_names)} label values, got {len(args)}"
            )
        with self._lock:
            return self._children.setdefault(tuple(args), Counter())

    def reset(self) -> None:
        with self._lock:
            self._children.clear()

    def collect_and_count(self) -> int:
        """Return the number of label combinations currently tracked."""
        with self._lock:
            return len(self._children)


IMAGE_SELECTION_ERROR_COUNT = CounterVec(
    namespace=NAMESPACE,
    subsystem=IMAGE_FAMILY_SUBSYSTEM,
    name="selection_error_count",
    help="The number of errors encountered while selecting an image.",
    label_names=["family"],
)