"""Tabular summaries of published measurement snapshots."""
from __future__ import annotations

from typing import Dict, Iterable, Optional

import pandas as pd

from .meter.processing import Measurement, MeasurementKind, MeasurementSnapshot
from .meter.runner import MeasurementPublisher

COLUMNS = ["version", "name", "timestamp", "unit", "value"]


def snapshots_to_frame(
    snapshots: Iterable[MeasurementSnapshot],
    *,
    changed_only: bool = True,
) -> pd.DataFrame:
    """Flatten snapshots into one row per measurement.

    Every snapshot carries all seven slots, including ones its batch did not
    touch. With *changed_only* a slot is emitted only when it holds a
    different record than in the preceding snapshot.
    """

    rows: list[dict[str, object]] = []
    previous: Dict[MeasurementKind, Optional[Measurement]] = {}
    for snapshot in snapshots:
        for kind, measurement in snapshot.items():
            if measurement is None:
                continue
            if changed_only and previous.get(kind) is measurement:
                continue
            rows.append(
                {
                    "version": snapshot.version,
                    "name": measurement.name,
                    "timestamp": measurement.timestamp,
                    "unit": measurement.unit,
                    "value": measurement.value,
                }
            )
        previous = dict(snapshot.items())
    return pd.DataFrame(rows, columns=COLUMNS)


def summarize(frame: pd.DataFrame) -> pd.DataFrame:
    """Per-measurement unit/count/min/max/last, in slot order."""

    if frame.empty:
        return pd.DataFrame(columns=["unit", "count", "min", "max", "last"])
    ordered = frame.sort_values("version", kind="mergesort")
    grouped = ordered.groupby("name", sort=False)
    summary = pd.DataFrame(
        {
            "unit": grouped["unit"].first(),
            "count": grouped["value"].count(),
            "min": grouped["value"].min(),
            "max": grouped["value"].max(),
            "last": grouped["value"].last(),
        }
    )
    order = [kind.name for kind in MeasurementKind if kind.name in summary.index]
    return summary.loc[order]


def current_frame(publisher: MeasurementPublisher) -> pd.DataFrame:
    """Rows for the measurements *publisher* holds right now."""

    return snapshots_to_frame([publisher.snapshot()], changed_only=False)
