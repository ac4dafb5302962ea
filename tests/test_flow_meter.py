from __future__ import annotations

import math
import threading
from datetime import datetime, timezone

import numpy as np
import pytest

from bleflow.meter.config import MeterConfig
from bleflow.meter.processing import MeasurementKind, MeasurementSnapshot
from bleflow.meter.router import (
    CONSUMPTION_CHARACTERISTIC,
    CONSUMPTION_SERVICE,
    FLOW_CHARACTERISTIC,
    FLOW_SERVICE,
    VELOCITY_CHARACTERISTIC,
    VELOCITY_SERVICE,
)
from bleflow.meter.runner import FlowMeter, MeasurementPublisher, matches_device

from builders import T0, FakeTransport, at, consumption_payload, samples_payload

SPEED = (MeasurementKind.SpeedMin, MeasurementKind.SpeedMax, MeasurementKind.SpeedAverage)
FLOW = (MeasurementKind.FlowMin, MeasurementKind.FlowMax, MeasurementKind.FlowAverage)


def _meter(**kwargs) -> FlowMeter:
    return FlowMeter(MeterConfig(**kwargs), clock=lambda: T0)


def test_split_layout_publishes_each_batch_once() -> None:
    meter = _meter()
    published: list[MeasurementSnapshot] = []
    meter.register_callback(published.append)

    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([100, 300]))
    meter.on_notify(FLOW_CHARACTERISTIC.lower(), samples_payload([50]))
    meter.on_notify(CONSUMPTION_CHARACTERISTIC, consumption_payload(256))

    assert len(published) == 3
    snapshot = meter.snapshot()
    assert snapshot.as_dict() == {
        "SpeedMin": 1.0,
        "SpeedMax": 3.0,
        "SpeedAverage": 2.0,
        "FlowMin": 0.5,
        "FlowMax": 0.5,
        "FlowAverage": 0.5,
        "Consumption": 256.0,
    }
    assert snapshot[MeasurementKind.Consumption].unit == "l"
    assert published[0][MeasurementKind.FlowMin] is None
    assert meter.last_notify == T0


def test_unsupported_version_drops_batch_and_recovers(caplog) -> None:
    meter = _meter()
    published: list[MeasurementSnapshot] = []
    meter.register_callback(published.append)

    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([100], version=2))
    assert published == []
    assert all(value is None for value in meter.snapshot().values())
    assert "Unknown payload version: 2" in caplog.text

    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([100]))
    assert len(published) == 1
    stats = meter.stats()
    assert stats["unsupported_version"] == 1
    assert stats["dropped"] == 1
    assert stats["batches"] == 1


def test_truncated_payload_is_dropped() -> None:
    meter = _meter()
    meter.on_notify(FLOW_CHARACTERISTIC, samples_payload([100, 200], count=5))
    meter.on_notify(CONSUMPTION_CHARACTERISTIC, bytes([0, 1]))
    stats = meter.stats()
    assert stats["truncated"] == 2
    assert stats["dropped"] == 2
    assert meter.snapshot().measurements() == []


def test_empty_batch_is_skipped_without_partial_write() -> None:
    meter = _meter()
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([500]))
    before = meter.snapshot()
    meter.on_notify(VELOCITY_CHARACTERISTIC, bytes([0, 0]))
    after = meter.snapshot()
    assert after.as_dict() == before.as_dict()
    assert after.version == before.version
    assert meter.stats()["empty_batches"] == 1


def test_unknown_characteristic_is_ignored() -> None:
    meter = _meter()
    published: list[MeasurementSnapshot] = []
    meter.register_callback(published.append)
    meter.on_notify("00002A19-0000-1000-8000-00805F9B34FB", b"\x64")
    assert published == []
    stats = meter.stats()
    assert stats["ignored"] == 1
    assert stats["notifications"] == 1
    assert stats["dropped"] == 0


def test_window_layout_integrates_consumption() -> None:
    meter = _meter(layout="window", pipe_diameter_mm=20.0)
    area = meter.pipe_cross_section_per_meter
    assert math.isclose(area, math.pi * 100.0 / 1000.0)

    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200, 200]), timestamp=at(0))
    first = meter.snapshot()
    assert first[MeasurementKind.Consumption].value == 0.0
    assert np.isclose(first[MeasurementKind.FlowAverage].value, 2.0 * area)

    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=at(10))
    second = meter.snapshot()
    assert np.isclose(second[MeasurementKind.Consumption].value, 20.0 * area)
    assert np.isclose(meter.cumulative_volume, 20.0 * area)
    assert second[MeasurementKind.SpeedAverage].timestamp == at(10)


def test_window_layout_ignores_split_characteristics() -> None:
    meter = _meter(layout="window")
    meter.on_notify(FLOW_CHARACTERISTIC, samples_payload([200]))
    meter.on_notify(CONSUMPTION_CHARACTERISTIC, consumption_payload(1))
    assert meter.stats()["ignored"] == 2


def test_window_layout_reports_out_of_order_samples() -> None:
    meter = _meter(layout="window")
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=at(5))
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=at(1))
    stats = meter.stats()
    assert stats["non_monotonic"] == 1
    assert stats["batches"] == 1
    assert len(meter.window) == 1


def test_window_layout_accepts_naive_receive_time_after_clock_time() -> None:
    meter = _meter(layout="window")
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]))
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=datetime(2030, 1, 1))

    stats = meter.stats()
    assert stats["batches"] == 2
    assert stats["dropped"] == 0
    later = datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert meter.snapshot()[MeasurementKind.SpeedAverage].timestamp == later
    assert meter.last_notify == later


def test_window_layout_orders_naive_receive_time_as_utc() -> None:
    meter = _meter(layout="window")
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=at(5))
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=at(1).replace(tzinfo=None))
    stats = meter.stats()
    assert stats["non_monotonic"] == 1
    assert stats["batches"] == 1


def test_reset_integration() -> None:
    meter = _meter(layout="window")
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=at(0))
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([200]), timestamp=at(5))
    assert meter.cumulative_volume > 0
    meter.reset_integration()
    assert meter.cumulative_volume == 0.0
    assert meter.integration.last_sample is None
    assert len(meter.window) == 0


def test_pipe_diameter_validation_and_notification() -> None:
    meter = _meter(pipe_diameter_mm=20.0)
    changes: list[tuple[str, object]] = []
    meter.add_property_listener(lambda name, value: changes.append((name, value)))
    area = meter.pipe_cross_section_per_meter

    with pytest.raises(ValueError):
        meter.pipe_diameter = 0
    with pytest.raises(ValueError):
        meter.pipe_diameter = -3.0
    assert meter.pipe_diameter == 20.0
    assert meter.pipe_cross_section_per_meter == area
    assert changes == []

    meter.pipe_diameter = 40.0
    assert math.isclose(meter.pipe_cross_section_per_meter, 4 * area)
    assert changes == [("pipe_diameter", 40.0)]


def test_queue_size_change_reaches_window() -> None:
    meter = _meter(layout="window", queue_size=5)
    changes: list[tuple[str, object]] = []
    meter.add_property_listener(lambda name, value: changes.append((name, value)))
    for i in range(5):
        meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([100]), timestamp=at(i))
    meter.queue_size = 2
    assert len(meter.window) == 5
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([100]), timestamp=at(6))
    assert len(meter.window) == 2
    assert changes == [("queue_size", 2)]


def test_registration_subscribes_to_layout_characteristics(fake_transport: FakeTransport) -> None:
    meter = _meter()
    meter.transport = fake_transport
    assert fake_transport.registered == []

    meter.device_address = ""
    assert fake_transport.registered == []

    meter.device_address = "AA:BB:CC:DD:EE:FF"
    assert fake_transport.registered == ["AA:BB:CC:DD:EE:FF"]
    assert sorted(fake_transport.subscriptions) == sorted(
        [
            ("AA:BB:CC:DD:EE:FF", VELOCITY_SERVICE, VELOCITY_CHARACTERISTIC),
            ("AA:BB:CC:DD:EE:FF", CONSUMPTION_SERVICE, CONSUMPTION_CHARACTERISTIC),
            ("AA:BB:CC:DD:EE:FF", FLOW_SERVICE, FLOW_CHARACTERISTIC),
        ]
    )


def test_transport_in_constructor_registers(fake_transport: FakeTransport) -> None:
    meter = FlowMeter(MeterConfig(device_address="11:22", layout="window"), transport=fake_transport)
    assert fake_transport.registered == ["11:22"]
    assert fake_transport.subscriptions == [("11:22", VELOCITY_SERVICE, VELOCITY_CHARACTERISTIC)]
    meter.on_disconnected()
    assert meter.stats()["disconnects"] == 1


def test_matches_device() -> None:
    assert matches_device("Lionk-Flow-01", "Lionk-Flow")
    assert not matches_device("lionk-flow", "Lionk-Flow")
    assert not matches_device(None, "Lionk-Flow")
    assert not matches_device("Other", "Lionk-Flow")
    assert matches_device("Garden meter", "Garden")


def _batch_id(snapshot: MeasurementSnapshot, kinds) -> int | None:
    records = [snapshot[kind] for kind in kinds]
    if all(record is None for record in records):
        return None
    assert all(record is not None for record in records)
    timestamps = {record.timestamp for record in records}
    assert len(timestamps) == 1
    stamp: datetime = timestamps.pop()
    return int(round((stamp - T0).total_seconds()))


def test_concurrent_batches_never_tear() -> None:
    meter = _meter()
    published: list[MeasurementSnapshot] = []
    meter.register_callback(published.append)
    batches = 200
    start = threading.Barrier(3)

    def feed(characteristic: str, offset: int, spread: int) -> None:
        start.wait()
        for i in range(batches):
            k = offset + i
            meter.on_notify(characteristic, samples_payload([k * 10, k * 10 + spread]), timestamp=at(k))

    threads = [
        threading.Thread(target=feed, args=(VELOCITY_CHARACTERISTIC, 0, 20)),
        threading.Thread(target=feed, args=(VELOCITY_CHARACTERISTIC, 1000, 20)),
        threading.Thread(target=feed, args=(FLOW_CHARACTERISTIC, 2000, 40)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(published) == 3 * batches
    assert meter.stats()["batches"] == 3 * batches
    for snapshot in published + [meter.snapshot()]:
        for kinds, spread in ((SPEED, 20), (FLOW, 40)):
            k = _batch_id(snapshot, kinds)
            if k is None:
                continue
            low, high, mean = (snapshot[kind].value for kind in kinds)
            assert np.isclose(low, k * 10 / 100.0)
            assert np.isclose(high, (k * 10 + spread) / 100.0)
            assert np.isclose(mean, (k * 10 + spread / 2) / 100.0)


def test_due_stats_line_is_logged_once_across_threads() -> None:
    meter = _meter()
    logged: list[int] = []
    meter.log_stats = lambda: logged.append(1)  # type: ignore[method-assign]
    meter._next_stats_log = 0.0
    workers = 8
    start = threading.Barrier(workers)

    def notify() -> None:
        start.wait()
        meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([100]))

    threads = [threading.Thread(target=notify) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert meter.stats()["notifications"] == workers
    assert len(logged) == 1


def _latest_speed(publisher: MeasurementPublisher) -> float | None:
    record = publisher.snapshot()[MeasurementKind.SpeedAverage]
    return record.value if record is not None else None


def test_flow_meter_is_a_measurement_publisher() -> None:
    meter = _meter()
    assert isinstance(meter, MeasurementPublisher)
    assert _latest_speed(meter) is None
    meter.on_notify(VELOCITY_CHARACTERISTIC, samples_payload([100, 300]))
    assert _latest_speed(meter) == 2.0
