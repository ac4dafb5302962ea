"""
Measurement core for the BLE flow meter.

The subpackage exposes payload decoders, the sample window, aggregation
policies, the characteristic routing table and the per-device `FlowMeter`
handle that ties them together behind a single lock.
"""

from .config import HostRuntime, MeterConfig, load_config, pipe_cross_section_per_meter
from .payloads import (
    EmptyBatch,
    NonMonotonicTimestamp,
    OversizedPayload,
    PayloadDecoder,
    PayloadError,
    PayloadKind,
    TruncatedPayload,
    UnsupportedPayloadVersion,
    decode,
    decode_raw,
)
from .processing import (
    AggregationPolicy,
    Aggregator,
    BatchStatistics,
    IntegrationState,
    Measurement,
    MeasurementKind,
    MeasurementSet,
    MeasurementSnapshot,
    batch_statistics,
)
from .router import CharacteristicTable, NotificationRouter, Route, table_for_layout
from .runner import (
    BleCallback,
    BleTransport,
    CaptureTransport,
    FlowMeter,
    MeasurementPublisher,
    matches_device,
    replay,
)
from .window import RawSample, SampleWindow

__all__ = [
    "HostRuntime",
    "MeterConfig",
    "load_config",
    "pipe_cross_section_per_meter",
    "EmptyBatch",
    "NonMonotonicTimestamp",
    "OversizedPayload",
    "PayloadDecoder",
    "PayloadError",
    "PayloadKind",
    "TruncatedPayload",
    "UnsupportedPayloadVersion",
    "decode",
    "decode_raw",
    "AggregationPolicy",
    "Aggregator",
    "BatchStatistics",
    "IntegrationState",
    "Measurement",
    "MeasurementKind",
    "MeasurementSet",
    "MeasurementSnapshot",
    "batch_statistics",
    "CharacteristicTable",
    "NotificationRouter",
    "Route",
    "table_for_layout",
    "BleCallback",
    "BleTransport",
    "CaptureTransport",
    "FlowMeter",
    "MeasurementPublisher",
    "matches_device",
    "replay",
    "RawSample",
    "SampleWindow",
]
