from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Iterator, Optional, Tuple

DEFAULT_QUEUE_SIZE = 20


@dataclass(frozen=True)
class RawSample:
    """One notification's undecoded-scale samples."""

    timestamp: datetime
    values: Tuple[int, ...]


class SampleWindow:
    """
    Bounded FIFO of raw samples.

    The bound is only enforced on insertion: shrinking ``queue_size`` leaves
    the current contents alone until the next ``push``.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self._samples: Deque[RawSample] = deque()
        self._queue_size = _validate_queue_size(queue_size)

    @property
    def queue_size(self) -> int:
        return self._queue_size

    @queue_size.setter
    def queue_size(self, value: int) -> None:
        self._queue_size = _validate_queue_size(value)

    @property
    def latest(self) -> Optional[RawSample]:
        return self._samples[-1] if self._samples else None

    def push(self, sample: RawSample) -> None:
        self._samples.append(sample)
        while len(self._samples) > self._queue_size:
            self._samples.popleft()

    def drain(self) -> Iterator[RawSample]:
        # Snapshot so callers may push while iterating.
        return iter(tuple(self._samples))

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)


def _validate_queue_size(value: int) -> int:
    size = int(value)
    if size < 1:
        raise ValueError(f"queue_size must be >= 1 (got {value})")
    return size
