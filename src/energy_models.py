#!/usr/bin/env python3
"""
Energy domain models shared by the decision pipeline.

These are immutable value objects: a snapshot is captured once per tick and
read by the warning monitor and the decision engine; price points are never
changed after ingestion.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# Telemetry fields a snapshot carries, in message order
TELEMETRY_FIELDS = ('battery_soc', 'pv_power', 'load', 'grid_power', 'grid_voltage')


def utcnow() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (or pass a datetime through) as an aware datetime.

    Naive values are assumed to be UTC. Returns None for empty input.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class SystemStateSnapshot:
    """Telemetry captured once per evaluation tick"""
    battery_soc: Optional[float] = None
    pv_power: Optional[float] = None
    load: Optional[float] = None
    grid_power: Optional[float] = None
    grid_voltage: Optional[float] = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_telemetry(cls, data: Dict[str, Any], timestamp: Optional[datetime] = None) -> 'SystemStateSnapshot':
        """Build a snapshot from a telemetry message; unparsable values become None"""
        values = {name: _optional_float(data.get(name)) for name in TELEMETRY_FIELDS}
        ts = timestamp or parse_timestamp(data.get('timestamp')) or utcnow()
        return cls(timestamp=ts, **values)

    def get(self, parameter: str) -> Optional[float]:
        """Value of a telemetry field, None when absent or unknown"""
        if parameter not in TELEMETRY_FIELDS:
            return None
        return getattr(self, parameter)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in TELEMETRY_FIELDS}
        data['timestamp'] = self.timestamp.isoformat()
        return data


class PriceLevel(Enum):
    """Tariff band supplied by the pricing source"""
    VERY_CHEAP = "VERY_CHEAP"
    CHEAP = "CHEAP"
    NORMAL = "NORMAL"
    EXPENSIVE = "EXPENSIVE"
    VERY_EXPENSIVE = "VERY_EXPENSIVE"

    @classmethod
    def parse(cls, value: Any) -> 'PriceLevel':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.NORMAL


MINOR_UNIT = 'cent'


@dataclass(frozen=True)
class PricePoint:
    """A single price entry, monetary fields in minor units (hundredths)"""
    total: float
    energy: float
    tax: float
    level: PriceLevel
    starts_at: datetime
    currency: str = MINOR_UNIT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'energy': self.energy,
            'tax': self.tax,
            'level': self.level.value,
            'starts_at': self.starts_at.isoformat(),
            'currency': self.currency,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PricePoint':
        """Rebuild a point that is already in minor units (store round trip)"""
        return cls(
            total=float(data['total']),
            energy=float(data.get('energy') or 0.0),
            tax=float(data.get('tax') or 0.0),
            level=PriceLevel.parse(data.get('level')),
            starts_at=parse_timestamp(data['starts_at']),
            currency=data.get('currency') or MINOR_UNIT,
        )


def normalize_forecast(points) -> Tuple[PricePoint, ...]:
    """Sort ascending by start time and drop duplicate start times (first wins)"""
    seen = set()
    ordered = []
    for point in sorted(points, key=lambda p: p.starts_at):
        if point.starts_at in seen:
            continue
        seen.add(point.starts_at)
        ordered.append(point)
    return tuple(ordered)


@dataclass(frozen=True)
class PriceCache:
    """Current price plus the ordered multi-day forecast"""
    current_price: Optional[PricePoint] = None
    forecast: Tuple[PricePoint, ...] = ()
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, 'forecast', normalize_forecast(self.forecast))

    @property
    def is_empty(self) -> bool:
        return self.current_price is None and not self.forecast

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_price': self.current_price.to_dict() if self.current_price else None,
            'forecast': [p.to_dict() for p in self.forecast],
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PriceCache':
        current = data.get('current_price')
        return cls(
            current_price=PricePoint.from_dict(current) if current else None,
            forecast=tuple(PricePoint.from_dict(p) for p in data.get('forecast') or []),
            timestamp=parse_timestamp(data.get('timestamp')),
        )


@dataclass(frozen=True)
class PriceSignal:
    """What the decision engine needs to know about the price right now"""
    point: Optional[PricePoint] = None
    acceptable: bool = False

    @property
    def level(self) -> Optional[str]:
        return self.point.level.value if self.point else None

