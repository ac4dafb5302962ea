from __future__ import annotations

import enum
import logging
import struct
from datetime import datetime
from typing import Dict, Tuple, Union

PAYLOAD_VERSION_0 = 0
SAMPLE_SCALE = 100.0

_HEADER_SIZE = 2
_SAMPLE_SIZE = 2
_CONSUMPTION_SIZE = 5


class PayloadKind(str, enum.Enum):
    VELOCITY = "velocity"
    FLOW = "flow"
    CONSUMPTION = "consumption"


class PayloadError(ValueError):
    """Base class for notifications that cannot be turned into measurements."""


class UnsupportedPayloadVersion(PayloadError):
    def __init__(self, version: int):
        super().__init__(f"Unknown payload version: {version}")
        self.version = version


class TruncatedPayload(PayloadError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Payload truncated: expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class OversizedPayload(PayloadError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Payload oversized: expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class EmptyBatch(PayloadError):
    def __init__(self, kind: PayloadKind | str = ""):
        label = kind.value if isinstance(kind, PayloadKind) else kind
        super().__init__(f"Empty {label} batch" if label else "Empty batch")
        self.kind = kind


class NonMonotonicTimestamp(PayloadError):
    def __init__(self, previous: datetime, current: datetime):
        super().__init__(
            f"Sample timestamp {current.isoformat()} precedes previous sample {previous.isoformat()}"
        )
        self.previous = previous
        self.current = current


Decoded = Union[Tuple[float, ...], float]


def _check_length(payload: bytes, expected: int) -> None:
    if len(payload) < expected:
        raise TruncatedPayload(expected, len(payload))
    if len(payload) > expected:
        raise OversizedPayload(expected, len(payload))


def _version(payload: bytes) -> int:
    if not payload:
        raise TruncatedPayload(1, 0)
    version = payload[0]
    if version != PAYLOAD_VERSION_0:
        raise UnsupportedPayloadVersion(version)
    return version


def _decode_samples_v0(payload: bytes) -> Tuple[int, ...]:
    if len(payload) < _HEADER_SIZE:
        raise TruncatedPayload(_HEADER_SIZE, len(payload))
    count = payload[1]
    _check_length(payload, _HEADER_SIZE + count * _SAMPLE_SIZE)
    return struct.unpack_from(f">{count}H", payload, _HEADER_SIZE)


def _decode_consumption_v0(payload: bytes) -> Tuple[int, ...]:
    _check_length(payload, _CONSUMPTION_SIZE)
    return struct.unpack_from(">I", payload, 1)


def decode_raw(kind: PayloadKind, payload: bytes) -> Tuple[int, ...]:
    """
    Validate a notification payload and return its raw unsigned integers.

    Velocity and flow payloads yield one integer per sample (possibly none);
    consumption payloads yield a single counter value.
    """
    payload = bytes(payload)
    _version(payload)
    if kind is PayloadKind.CONSUMPTION:
        return _decode_consumption_v0(payload)
    return _decode_samples_v0(payload)


def scale_samples(raw: Tuple[int, ...]) -> Tuple[float, ...]:
    return tuple(value / SAMPLE_SCALE for value in raw)


def decode(kind: PayloadKind, payload: bytes) -> Decoded:
    """Decode *payload* into scaled samples, or a scalar for consumption."""
    raw = decode_raw(kind, payload)
    if kind is PayloadKind.CONSUMPTION:
        return float(raw[0])
    return scale_samples(raw)


class PayloadDecoder:
    """Payload decoding with per-outcome counters."""

    def __init__(self) -> None:
        self._stats: Dict[str, int] = {
            "payloads": 0,
            "unsupported_version": 0,
            "truncated": 0,
            "oversized": 0,
        }
        self._log = logging.getLogger(__name__)

    def decode_raw(self, kind: PayloadKind, payload: bytes) -> Tuple[int, ...]:
        try:
            raw = decode_raw(kind, payload)
        except UnsupportedPayloadVersion:
            self._stats["unsupported_version"] += 1
            raise
        except TruncatedPayload as exc:
            self._stats["truncated"] += 1
            self._log.debug("Truncated %s payload (%s)", kind.value, exc)
            raise
        except OversizedPayload as exc:
            self._stats["oversized"] += 1
            self._log.debug("Oversized %s payload (%s)", kind.value, exc)
            raise
        self._stats["payloads"] += 1
        return raw

    def decode(self, kind: PayloadKind, payload: bytes) -> Decoded:
        raw = self.decode_raw(kind, payload)
        if kind is PayloadKind.CONSUMPTION:
            return float(raw[0])
        return scale_samples(raw)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        for key in self._stats:
            self._stats[key] = 0
