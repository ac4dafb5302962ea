from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from .payloads import EmptyBatch, NonMonotonicTimestamp, PayloadKind, scale_samples
from .window import RawSample, SampleWindow


class MeasurementKind(enum.IntEnum):
    """Fixed measurement slots, in publication order."""

    SpeedMin = 0
    SpeedMax = 1
    SpeedAverage = 2
    FlowMin = 3
    FlowMax = 4
    FlowAverage = 5
    Consumption = 6

    @property
    def unit(self) -> str:
        return _UNITS[self]


_UNITS: Dict[MeasurementKind, str] = {
    MeasurementKind.SpeedMin: "m/s",
    MeasurementKind.SpeedMax: "m/s",
    MeasurementKind.SpeedAverage: "m/s",
    MeasurementKind.FlowMin: "l/s",
    MeasurementKind.FlowMax: "l/s",
    MeasurementKind.FlowAverage: "l/s",
    MeasurementKind.Consumption: "l",
}

_STAT_KINDS: Dict[PayloadKind, tuple[MeasurementKind, MeasurementKind, MeasurementKind]] = {
    PayloadKind.VELOCITY: (
        MeasurementKind.SpeedMin,
        MeasurementKind.SpeedMax,
        MeasurementKind.SpeedAverage,
    ),
    PayloadKind.FLOW: (
        MeasurementKind.FlowMin,
        MeasurementKind.FlowMax,
        MeasurementKind.FlowAverage,
    ),
}


class AggregationPolicy(str, enum.Enum):
    BATCH = "batch"
    DIRECT = "direct"
    WINDOW = "window"


@dataclass(frozen=True)
class Measurement:
    name: str
    timestamp: datetime
    unit: str
    value: float

    @property
    def kind(self) -> MeasurementKind:
        return MeasurementKind[self.name]

    @staticmethod
    def of(kind: MeasurementKind, timestamp: datetime, value: float) -> "Measurement":
        return Measurement(name=kind.name, timestamp=timestamp, unit=kind.unit, value=float(value))


@dataclass(frozen=True)
class BatchStatistics:
    minimum: float
    maximum: float
    average: float


def batch_statistics(values: Union[Sequence[float], np.ndarray], kind: PayloadKind | str = "") -> BatchStatistics:
    """Reduce one batch to min/max/mean. Raises ``EmptyBatch`` when there is nothing to reduce."""

    data = np.asarray(values, dtype=float)
    if data.size == 0:
        raise EmptyBatch(kind)
    minimum = float(np.min(data))
    maximum = float(np.max(data))
    # Clamp so float rounding in the mean can never escape [min, max].
    average = float(np.clip(np.mean(data), minimum, maximum))
    return BatchStatistics(minimum=minimum, maximum=maximum, average=average)


class MeasurementSnapshot(Mapping[MeasurementKind, Optional[Measurement]]):
    """Read-only copy of a MeasurementSet taken under its lock."""

    def __init__(self, slots: Mapping[MeasurementKind, Optional[Measurement]], version: int = 0):
        self._slots = MappingProxyType(dict(slots))
        self.version = version

    def __getitem__(self, key: MeasurementKind) -> Optional[Measurement]:
        return self._slots[key]

    def __iter__(self):
        return iter(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def measurements(self) -> List[Measurement]:
        return [m for m in self._slots.values() if m is not None]

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {kind.name: (m.value if m is not None else None) for kind, m in self._slots.items()}

    def __repr__(self) -> str:
        return f"MeasurementSnapshot(version={self.version}, {self.as_dict()!r})"


class MeasurementSet:
    """
    Seven fixed slots holding the most recent measurement of each kind.

    Readers and writers share one lock (optionally supplied by the owner so
    that window and integration state are serialised by the same lock), so
    a snapshot never shows half of a batch.
    """

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock if lock is not None else threading.RLock()
        self._slots: Dict[MeasurementKind, Optional[Measurement]] = {kind: None for kind in MeasurementKind}
        self._version = 0

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def update(self, batch: Iterable[Measurement]) -> None:
        items = list(batch)
        resolved: List[tuple[MeasurementKind, Measurement]] = []
        for measurement in items:
            try:
                kind = MeasurementKind[measurement.name]
            except KeyError as exc:
                raise ValueError(f"Unknown measurement '{measurement.name}'") from exc
            resolved.append((kind, measurement))
        with self._lock:
            for kind, measurement in resolved:
                self._slots[kind] = measurement
            self._version += 1

    def snapshot(self) -> MeasurementSnapshot:
        with self._lock:
            return MeasurementSnapshot(self._slots, self._version)

    def get(self, kind: MeasurementKind) -> Optional[Measurement]:
        with self._lock:
            return self._slots[kind]


@dataclass
class IntegrationState:
    """Running volume integral over flow rate."""

    cumulative_volume: float = 0.0
    last_sample: Optional[RawSample] = None
    pipe_cross_section_per_meter: float = 0.0

    def reset(self) -> None:
        self.cumulative_volume = 0.0
        self.last_sample = None


class Aggregator:
    """
    Turns decoded batches into measurement records.

    ``batch`` and ``direct`` are pure; ``window`` mutates the supplied
    window and integration state and must run under the owner's lock.
    """

    def batch(self, kind: PayloadKind, values: Sequence[float], timestamp: datetime) -> List[Measurement]:
        if kind not in _STAT_KINDS:
            raise ValueError(f"Batch statistics are not defined for {kind.value} payloads")
        stats = batch_statistics(values, kind)
        kind_min, kind_max, kind_avg = _STAT_KINDS[kind]
        return [
            Measurement.of(kind_min, timestamp, stats.minimum),
            Measurement.of(kind_max, timestamp, stats.maximum),
            Measurement.of(kind_avg, timestamp, stats.average),
        ]

    def direct(self, value: float, timestamp: datetime) -> List[Measurement]:
        return [Measurement.of(MeasurementKind.Consumption, timestamp, value)]

    def window(self, window: SampleWindow, sample: RawSample, state: IntegrationState) -> List[Measurement]:
        """
        Push *sample* into *window* and derive speed, flow and consumption.

        Statistics span every sample still held by the window. The first
        sample ever seen resets the volume to zero; each later one adds
        ``FlowAverage * elapsed_seconds`` since the previous sample.
        """

        if not sample.values:
            raise EmptyBatch(PayloadKind.VELOCITY)
        last = state.last_sample
        if last is not None and sample.timestamp < last.timestamp:
            raise NonMonotonicTimestamp(last.timestamp, sample.timestamp)

        window.push(sample)
        raw = [value for entry in window.drain() for value in entry.values]
        speeds = np.asarray(scale_samples(tuple(raw)), dtype=float)
        speed = batch_statistics(speeds, PayloadKind.VELOCITY)
        flow = batch_statistics(speeds * state.pipe_cross_section_per_meter, PayloadKind.FLOW)

        if last is None:
            state.cumulative_volume = 0.0
        else:
            elapsed = (sample.timestamp - last.timestamp).total_seconds()
            state.cumulative_volume += flow.average * elapsed
        state.last_sample = sample

        ts = sample.timestamp
        return [
            Measurement.of(MeasurementKind.SpeedMin, ts, speed.minimum),
            Measurement.of(MeasurementKind.SpeedMax, ts, speed.maximum),
            Measurement.of(MeasurementKind.SpeedAverage, ts, speed.average),
            Measurement.of(MeasurementKind.FlowMin, ts, flow.minimum),
            Measurement.of(MeasurementKind.FlowMax, ts, flow.maximum),
            Measurement.of(MeasurementKind.FlowAverage, ts, flow.average),
            Measurement.of(MeasurementKind.Consumption, ts, state.cumulative_volume),
        ]
