from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Sequence

DEFAULT_COMMON_NAME = "Lionk-Flow"
LAYOUTS = {"split", "window"}


@dataclass
class HostRuntime:
    stats_log_interval: float = 60.0


@dataclass
class MeterConfig:
    device_address: str = ""
    common_name: str = DEFAULT_COMMON_NAME
    queue_size: int = 20
    pipe_diameter_mm: float = 20.0
    layout: str = "split"  # split | window
    host: HostRuntime = field(default_factory=HostRuntime)

    @property
    def layout_enum(self) -> str:
        layout = self.layout.lower()
        if layout not in LAYOUTS:
            raise ValueError(f"Unsupported layout '{self.layout}'")
        return layout

    @property
    def pipe_cross_section_per_meter(self) -> float:
        """Litres held by one metre of pipe."""
        return pipe_cross_section_per_meter(self.pipe_diameter_mm)

    def validate(self) -> "MeterConfig":
        if self.queue_size < 1:
            raise ValueError(f"queue_size must be >= 1 (got {self.queue_size})")
        if self.pipe_diameter_mm <= 0:
            raise ValueError(f"pipe_diameter_mm must be > 0 (got {self.pipe_diameter_mm})")
        self.layout_enum
        return self


def pipe_cross_section_per_meter(diameter_mm: float) -> float:
    return math.pi * (diameter_mm / 2.0) ** 2 / 1000.0


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> MeterConfig:
    """
    Load a flow meter configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["queue_size=40", "host.stats_log_interval=10"]

    With no *path* the defaults are used as the base document.
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    host_data = merged.get("host") or {}
    config = MeterConfig(
        device_address=str(merged.get("device_address") or ""),
        common_name=str(merged.get("common_name", DEFAULT_COMMON_NAME)),
        queue_size=int(merged.get("queue_size", 20)),
        pipe_diameter_mm=float(merged.get("pipe_diameter_mm", 20.0)),
        layout=str(merged.get("layout", "split")),
        host=HostRuntime(
            stats_log_interval=float(host_data.get("stats_log_interval", 60.0)),
        ),
    )
    return config.validate()


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
