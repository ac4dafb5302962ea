from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, Mapping, Optional, Tuple

from .payloads import PayloadKind
from .processing import AggregationPolicy

logger = logging.getLogger(__name__)

FLOW_SERVICE = "19B10000-E8F2-537E-4F6C-D104768A1214"
FLOW_CHARACTERISTIC = "19B10001-E8F2-537E-4F6C-D104768A1214"
VELOCITY_SERVICE = "19B10010-E8F2-537E-4F6C-D104768A1214"
VELOCITY_CHARACTERISTIC = "19B10011-E8F2-537E-4F6C-D104768A1214"
CONSUMPTION_SERVICE = "19B10020-E8F2-537E-4F6C-D104768A1214"
CONSUMPTION_CHARACTERISTIC = "19B10021-E8F2-537E-4F6C-D104768A1214"


@dataclass(frozen=True)
class Route:
    kind: PayloadKind
    policy: AggregationPolicy
    service: str


class CharacteristicTable:
    """Characteristic UUID -> Route lookup, case-insensitive, fixed at construction."""

    def __init__(self, routes: Mapping[str, Route]):
        self._routes: Dict[str, Route] = {uuid.upper(): route for uuid, route in routes.items()}

    def lookup(self, characteristic_id: str) -> Optional[Route]:
        return self._routes.get(characteristic_id.upper())

    def items(self) -> Iterator[Tuple[str, Route]]:
        return iter(self._routes.items())

    def __contains__(self, characteristic_id: object) -> bool:
        return isinstance(characteristic_id, str) and characteristic_id.upper() in self._routes

    def __len__(self) -> int:
        return len(self._routes)


SPLIT_TABLE = CharacteristicTable(
    {
        VELOCITY_CHARACTERISTIC: Route(PayloadKind.VELOCITY, AggregationPolicy.BATCH, VELOCITY_SERVICE),
        CONSUMPTION_CHARACTERISTIC: Route(PayloadKind.CONSUMPTION, AggregationPolicy.DIRECT, CONSUMPTION_SERVICE),
        FLOW_CHARACTERISTIC: Route(PayloadKind.FLOW, AggregationPolicy.BATCH, FLOW_SERVICE),
    }
)

WINDOW_TABLE = CharacteristicTable(
    {
        VELOCITY_CHARACTERISTIC: Route(PayloadKind.VELOCITY, AggregationPolicy.WINDOW, VELOCITY_SERVICE),
    }
)

TABLES: Dict[str, CharacteristicTable] = {
    "split": SPLIT_TABLE,
    "window": WINDOW_TABLE,
}


def table_for_layout(layout: str) -> CharacteristicTable:
    try:
        return TABLES[layout.lower()]
    except KeyError as exc:
        raise ValueError(f"Unsupported layout '{layout}'") from exc


Handler = Callable[[Route, bytes, Optional[datetime]], None]


class NotificationRouter:
    """Dispatches notifications to a handler based on the characteristic table."""

    def __init__(self, table: CharacteristicTable, handler: Handler):
        self.table = table
        self._handler = handler
        self._ignored = 0

    def route(self, characteristic_id: str, payload: bytes, timestamp: Optional[datetime] = None) -> Optional[Route]:
        route = self.table.lookup(characteristic_id)
        if route is None:
            self._ignored += 1
            logger.debug("Ignoring notification from characteristic %s", characteristic_id)
            return None
        self._handler(route, bytes(payload), timestamp)
        return route

    @property
    def ignored(self) -> int:
        return self._ignored
