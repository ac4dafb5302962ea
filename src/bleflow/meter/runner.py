from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

import typer

from .config import MeterConfig, load_config, pipe_cross_section_per_meter
from .payloads import (
    EmptyBatch,
    NonMonotonicTimestamp,
    PayloadDecoder,
    PayloadError,
)
from .processing import (
    AggregationPolicy,
    Aggregator,
    IntegrationState,
    Measurement,
    MeasurementSet,
    MeasurementSnapshot,
)
from .router import NotificationRouter, Route, table_for_layout
from .window import RawSample, SampleWindow

logger = logging.getLogger(__name__)

CAPTURE_ADDRESS = "capture"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(timestamp: datetime) -> datetime:
    # Naive receive times are taken as UTC so they order against aware ones.
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp


class BleCallback(Protocol):
    def on_registered(self) -> None: ...

    def on_notify(self, uuid: str, data: bytes, timestamp: Optional[datetime] = None) -> None: ...

    def on_disconnected(self) -> None: ...


class BleTransport(Protocol):
    def register_device(self, device_address: str, callback: BleCallback) -> None: ...

    def subscribe(
        self, device_address: str, service_id: str, characteristic_id: str, callback: BleCallback
    ) -> None: ...


@runtime_checkable
class MeasurementPublisher(Protocol):
    def snapshot(self) -> MeasurementSnapshot: ...


def matches_device(advertised_name: Optional[str], common_name: str) -> bool:
    """Return True when an advertised BLE name belongs to a flow meter."""
    if not advertised_name or not common_name:
        return False
    return advertised_name.startswith(common_name)


class FlowMeter:
    """
    Per-device measurement state fed by BLE notifications.

    Notifications may arrive on any thread. Decoding, window/integration
    updates and the measurement write for one notification happen under a
    single lock; measurement callbacks run after it is released.
    """

    def __init__(
        self,
        config: MeterConfig,
        transport: Optional[BleTransport] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        config.validate()
        self.config = config
        self._clock = clock
        self._lock = threading.RLock()
        self.measurements = MeasurementSet(self._lock)
        self.window = SampleWindow(config.queue_size)
        self.integration = IntegrationState(
            pipe_cross_section_per_meter=config.pipe_cross_section_per_meter
        )
        self.aggregator = Aggregator()
        self.decoder = PayloadDecoder()
        self.router = NotificationRouter(table_for_layout(config.layout_enum), self._handle)
        self.last_notify: Optional[datetime] = None
        self._callbacks: List[Callable[[MeasurementSnapshot], None]] = []
        self._property_listeners: List[Callable[[str, object], None]] = []
        self._device_address: Optional[str] = config.device_address or None
        self._pipe_diameter = float(config.pipe_diameter_mm)
        self._transport: Optional[BleTransport] = None
        self._stats_interval = max(float(config.host.stats_log_interval), 5.0)
        self._next_stats_log = time.monotonic() + self._stats_interval
        self._stats: Dict[str, int] = {
            "notifications": 0,
            "batches": 0,
            "dropped": 0,
            "empty_batches": 0,
            "non_monotonic": 0,
            "disconnects": 0,
        }
        if transport is not None:
            self.transport = transport

    @property
    def device_address(self) -> str:
        return self._device_address or ""

    @device_address.setter
    def device_address(self, value: str) -> None:
        if not value:
            return
        self._device_address = value
        self._notify_property("device_address", value)
        self.register()

    @property
    def transport(self) -> Optional[BleTransport]:
        return self._transport

    @transport.setter
    def transport(self, value: Optional[BleTransport]) -> None:
        self._transport = value
        self._notify_property("transport", value)
        if value is not None:
            self.register()

    @property
    def queue_size(self) -> int:
        return self.window.queue_size

    @queue_size.setter
    def queue_size(self, value: int) -> None:
        with self._lock:
            self.window.queue_size = value
        self._notify_property("queue_size", self.window.queue_size)

    @property
    def pipe_diameter(self) -> float:
        return self._pipe_diameter

    @pipe_diameter.setter
    def pipe_diameter(self, value: float) -> None:
        diameter = float(value)
        if diameter <= 0:
            raise ValueError(f"pipe_diameter must be > 0 (got {value})")
        with self._lock:
            self._pipe_diameter = diameter
            self.integration.pipe_cross_section_per_meter = pipe_cross_section_per_meter(diameter)
        self._notify_property("pipe_diameter", diameter)

    @property
    def pipe_cross_section_per_meter(self) -> float:
        return self.integration.pipe_cross_section_per_meter

    def add_property_listener(self, listener: Callable[[str, object], None]) -> None:
        self._property_listeners.append(listener)

    def _notify_property(self, name: str, value: object) -> None:
        for listener in self._property_listeners:
            listener(name, value)

    def register(self) -> bool:
        if self._transport is None or not self._device_address:
            return False
        self._transport.register_device(self._device_address, self)
        return True

    def on_registered(self) -> None:
        if self._transport is None or not self._device_address:
            return
        for characteristic, route in self.router.table.items():
            self._transport.subscribe(self._device_address, route.service, characteristic, self)
        logger.info("Subscribed to %d characteristics on %s", len(self.router.table), self._device_address)

    def on_disconnected(self) -> None:
        with self._lock:
            self._stats["disconnects"] += 1
        logger.warning("Device %s disconnected", self.device_address or "?")

    def on_notify(self, uuid: str, data: bytes, timestamp: Optional[datetime] = None) -> None:
        with self._lock:
            self._stats["notifications"] += 1
            self.last_notify = _as_utc(timestamp or self._clock())
            now = time.monotonic()
            stats_due = now >= self._next_stats_log
            if stats_due:
                self._next_stats_log = now + self._stats_interval
        self.router.route(uuid, data, timestamp)
        if stats_due:
            self.log_stats()

    def register_callback(self, callback: Callable[[MeasurementSnapshot], None]) -> None:
        self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[MeasurementSnapshot], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def snapshot(self) -> MeasurementSnapshot:
        return self.measurements.snapshot()

    def reset_integration(self) -> None:
        with self._lock:
            self.integration.reset()
            self.window.clear()

    @property
    def cumulative_volume(self) -> float:
        with self._lock:
            return self.integration.cumulative_volume

    def stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
            stats.update(self.decoder.stats())
        stats["ignored"] = self.router.ignored
        return stats

    def log_stats(self) -> None:
        stats = self.stats()
        logger.info(
            "device=%s notifications=%d batches=%d dropped=%d ignored=%d disconnects=%d",
            self.device_address or "?",
            stats.get("notifications", 0),
            stats.get("batches", 0),
            stats.get("dropped", 0),
            stats.get("ignored", 0),
            stats.get("disconnects", 0),
        )

    def _handle(self, route: Route, payload: bytes, timestamp: Optional[datetime]) -> None:
        ts = _as_utc(timestamp or self._clock())
        try:
            with self._lock:
                batch = self._aggregate(route, payload, ts)
                self.measurements.update(batch)
                self._stats["batches"] += 1
                snapshot = self.measurements.snapshot()
        except PayloadError as exc:
            self._count_drop(exc)
            logger.warning("Dropping %s notification: %s", route.kind.value, exc)
            return
        for callback in self._callbacks:
            callback(snapshot)

    def _aggregate(self, route: Route, payload: bytes, ts: datetime) -> List[Measurement]:
        if route.policy is AggregationPolicy.WINDOW:
            raw = self.decoder.decode_raw(route.kind, payload)
            return self.aggregator.window(self.window, RawSample(ts, raw), self.integration)
        value = self.decoder.decode(route.kind, payload)
        if route.policy is AggregationPolicy.DIRECT:
            return self.aggregator.direct(value, ts)  # type: ignore[arg-type]
        return self.aggregator.batch(route.kind, value, ts)  # type: ignore[arg-type]

    def _count_drop(self, exc: PayloadError) -> None:
        with self._lock:
            self._stats["dropped"] += 1
            if isinstance(exc, EmptyBatch):
                self._stats["empty_batches"] += 1
            elif isinstance(exc, NonMonotonicTimestamp):
                self._stats["non_monotonic"] += 1


class CaptureTransport:
    """
    Replays recorded notifications as if they came from a BLE adapter.

    Capture lines look like ``<iso timestamp>,<characteristic uuid>,<hex payload>``;
    blank lines and ``#`` comments are skipped.
    """

    def __init__(self) -> None:
        self._devices: Dict[str, BleCallback] = {}
        self._subscriptions: Dict[str, List[str]] = {}
        self._stats: Dict[str, int] = {"lines": 0, "malformed": 0}
        self._log = logging.getLogger(__name__)

    def register_device(self, device_address: str, callback: BleCallback) -> None:
        self._devices[device_address] = callback
        callback.on_registered()

    def subscribe(
        self, device_address: str, service_id: str, characteristic_id: str, callback: BleCallback
    ) -> None:
        subscribed = self._subscriptions.setdefault(device_address, [])
        if characteristic_id.upper() not in subscribed:
            subscribed.append(characteristic_id.upper())

    def subscriptions(self, device_address: str) -> List[str]:
        return list(self._subscriptions.get(device_address, []))

    def play(self, lines: Iterable[str], device_address: Optional[str] = None) -> None:
        targets = self._targets(device_address)
        for line in iterate_capture_lines(lines):
            self._stats["lines"] += 1
            try:
                timestamp, uuid, payload = parse_capture_line(line)
            except ValueError as exc:
                self._stats["malformed"] += 1
                self._log.warning("Skipping malformed capture line %r: %s", line, exc)
                continue
            for callback in targets:
                callback.on_notify(uuid, payload, timestamp)
        for callback in targets:
            callback.on_disconnected()

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def _targets(self, device_address: Optional[str]) -> List[BleCallback]:
        if device_address is None:
            return list(self._devices.values())
        callback = self._devices.get(device_address)
        return [callback] if callback is not None else []


def iterate_capture_lines(handle: Iterable[str]) -> Iterable[str]:
    for line in handle:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        yield line


def parse_capture_line(line: str) -> tuple[datetime, str, bytes]:
    parts = [part.strip() for part in line.split(",", 2)]
    if len(parts) != 3:
        raise ValueError("expected '<timestamp>,<uuid>,<hex payload>'")
    raw_ts, uuid, raw_payload = parts
    if raw_ts.endswith("Z"):
        raw_ts = raw_ts[:-1] + "+00:00"
    timestamp = datetime.fromisoformat(raw_ts)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    if not uuid:
        raise ValueError("missing characteristic uuid")
    payload = bytes.fromhex(raw_payload.replace(" ", ""))
    return timestamp, uuid, payload


def replay(
    meter: FlowMeter,
    lines: Iterable[str],
    transport: Optional[CaptureTransport] = None,
) -> List[MeasurementSnapshot]:
    """Drive *meter* from a notification capture and collect every published snapshot."""

    transport = transport or CaptureTransport()
    published: List[MeasurementSnapshot] = []
    meter.register_callback(published.append)
    try:
        if not meter.device_address:
            meter.device_address = CAPTURE_ADDRESS
        meter.transport = transport
        transport.play(lines, meter.device_address)
    finally:
        meter.unregister_callback(published.append)
    return published


def _log_stats(meter: FlowMeter, transport: CaptureTransport) -> None:
    stats = meter.stats()
    capture = transport.stats()
    logger.info(
        "lines=%d malformed=%d notifications=%d batches=%d dropped=%d ignored=%d "
        "unsupported_version=%d truncated=%d oversized=%d empty_batches=%d non_monotonic=%d",
        capture.get("lines", 0),
        capture.get("malformed", 0),
        stats.get("notifications", 0),
        stats.get("batches", 0),
        stats.get("dropped", 0),
        stats.get("ignored", 0),
        stats.get("unsupported_version", 0),
        stats.get("truncated", 0),
        stats.get("oversized", 0),
        stats.get("empty_batches", 0),
        stats.get("non_monotonic", 0),
    )


app = typer.Typer(add_completion=False, help="BLE flow meter utilities.")


@app.command("replay")
def replay_command(
    input_path: Path = typer.Option(
        ..., "--in", help="Notification capture (timestamp,uuid,hex per line).", exists=True, readable=True
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to flow meter config."),
    address: Optional[str] = typer.Option(None, "--address", "-a", help="Device address to register."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set layout=window --set queue_size=40",
    ),
):
    """Replay a notification capture and summarise the published measurements."""

    from ..reporting import snapshots_to_frame, summarize

    try:
        cfg = load_config(config_path, override or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if address:
        cfg.device_address = address
    meter = FlowMeter(cfg)
    transport = CaptureTransport()
    with input_path.open("r", encoding="utf-8") as handle:
        snapshots = replay(meter, handle, transport)
    _log_stats(meter, transport)
    if not snapshots:
        typer.echo("No measurements published")
        raise typer.Exit(code=1)
    summary = summarize(snapshots_to_frame(snapshots))
    typer.echo(summary.to_string())
    if cfg.layout_enum == "window":
        typer.echo(f"Cumulative volume: {meter.cumulative_volume:.6g} l")
