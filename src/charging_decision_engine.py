#!/usr/bin/env python3
"""
Charging Decision Engine

Evaluates a telemetry snapshot and the current price signal against a fixed
priority order and produces one charging decision per tick:

1. Safety override - battery full or grid voltage out of range
2. Strong solar surplus
3. No solar - charge from grid only when the price is acceptable
4. Some solar - mix solar and grid when the price is acceptable, or when the
   battery is low
5. Default - stop, solar first

Publication is edge-triggered on the mode: a decision is handed downstream only
when its mode differs from the last published one, and only while active
control is on. In dry-run mode every decision is still computed and logged.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Deque, Dict, Mapping, Optional, Tuple

import json_utils
from energy_models import PriceSignal, SystemStateSnapshot
from inverter.models.operation_mode import ChargingAction, ChargingMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionConfig:
    """Battery and safety thresholds"""
    target_soc: float = 80
    grid_voltage_min: float = 200
    grid_voltage_max: float = 250
    strong_solar_ratio: float = 2.0
    strong_solar_max_soc: float = 90
    low_soc_threshold: float = 50
    no_solar_threshold_w: float = 10

    @classmethod
    def from_yaml_config(cls, config: Dict[str, Any]) -> 'DecisionConfig':
        defaults = cls()
        return cls(**{
            name: float(config.get(name, getattr(defaults, name)))
            for name in cls.__dataclass_fields__
        })


@dataclass(frozen=True)
class ChargingDecision:
    decision: ChargingAction
    mode: ChargingMode
    reason: str
    conditions: Mapping[str, Any]
    timestamp: datetime

    def __post_init__(self):
        object.__setattr__(self, 'conditions', MappingProxyType(dict(self.conditions)))

    @property
    def should_charge(self) -> bool:
        return self.decision == ChargingAction.START_CHARGING

    def to_record(self) -> Dict[str, Any]:
        """Decision log record"""
        return {
            'decision': self.decision.value,
            'mode': self.mode.value,
            'reason': self.reason,
            'conditions': dict(self.conditions),
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of one engine step"""
    decision: ChargingDecision
    published: bool
    previous_mode: Optional[ChargingMode] = None


def _value(snapshot: SystemStateSnapshot, name: str) -> float:
    value = snapshot.get(name)
    return 0.0 if value is None else value


def evaluate(snapshot: SystemStateSnapshot, price_signal: PriceSignal, config: DecisionConfig) -> ChargingDecision:
    """
    Compute the charging decision for one tick.

    Pure: the same snapshot, price signal and config always give the same
    decision. Missing soc, pv and load are read as 0; a missing grid voltage
    skips the voltage check. The decision is stamped with the snapshot time.
    """
    soc = _value(snapshot, 'battery_soc')
    pv = _value(snapshot, 'pv_power')
    load = _value(snapshot, 'load')
    voltage = snapshot.grid_voltage
    price_ok = price_signal.acceptable

    conditions = {
        'pv_power': snapshot.pv_power,
        'load': snapshot.load,
        'price_level': price_signal.level,
        'battery_soc': snapshot.battery_soc,
        'grid_voltage': voltage,
    }

    def decide(action: ChargingAction, mode: ChargingMode, reason: str) -> ChargingDecision:
        return ChargingDecision(action, mode, reason, conditions, snapshot.timestamp)

    if soc >= config.target_soc:
        return decide(ChargingAction.STOP_CHARGING, ChargingMode.SOLAR_FIRST,
                      f"Battery SOC {soc:.0f}% reached target {config.target_soc:.0f}%")
    if voltage is not None and not config.grid_voltage_min <= voltage <= config.grid_voltage_max:
        return decide(ChargingAction.STOP_CHARGING, ChargingMode.SOLAR_FIRST,
                      f"Grid voltage {voltage:.0f}V outside "
                      f"{config.grid_voltage_min:.0f}-{config.grid_voltage_max:.0f}V")

    if pv > load * config.strong_solar_ratio and soc < config.strong_solar_max_soc:
        return decide(ChargingAction.START_CHARGING, ChargingMode.SOLAR_ONLY,
                      f"Strong solar surplus: PV {pv:.0f}W vs load {load:.0f}W")

    if pv <= config.no_solar_threshold_w:
        if price_ok:
            return decide(ChargingAction.START_CHARGING, ChargingMode.UTILITY_FIRST,
                          f"No solar, acceptable price ({price_signal.level})")
        return decide(ChargingAction.STOP_CHARGING, ChargingMode.SOLAR_BATTERY_UTILITY,
                      f"No solar, price not acceptable ({price_signal.level})")

    if price_ok:
        return decide(ChargingAction.START_CHARGING, ChargingMode.SOLAR_AND_UTILITY,
                      f"Some solar ({pv:.0f}W) and acceptable price ({price_signal.level})")
    if soc < config.low_soc_threshold:
        return decide(ChargingAction.START_CHARGING, ChargingMode.SOLAR_UTILITY_BATTERY,
                      f"Some solar ({pv:.0f}W), battery low at {soc:.0f}%")

    return decide(ChargingAction.STOP_CHARGING, ChargingMode.SOLAR_FIRST,
                  "No charging condition met")


class ChargingDecisionEngine:
    """Serialises evaluation and tracks the last published decision"""

    def __init__(self, config: Optional[DecisionConfig] = None, active_control: bool = False,
                 history_size: int = 100):
        self.config = config or DecisionConfig()
        self._active_control = active_control
        self._last_published: Optional[ChargingDecision] = None
        self._history: Deque[ChargingDecision] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()

    @property
    def active_control(self) -> bool:
        return self._active_control

    def set_active_control(self, enabled: bool) -> None:
        self._active_control = bool(enabled)
        logger.info(f"Active control {'enabled' if self._active_control else 'disabled (dry-run)'}")

    @property
    def last_published(self) -> Optional[ChargingDecision]:
        return self._last_published

    @property
    def history(self) -> Tuple[ChargingDecision, ...]:
        return tuple(self._history)

    async def step(self, snapshot: SystemStateSnapshot, price_signal: PriceSignal,
                   config: Optional[DecisionConfig] = None) -> DecisionOutcome:
        """Evaluate one tick; ``published`` is set only on a mode change under active control"""
        async with self._lock:
            decision = evaluate(snapshot, price_signal, config or self.config)
            self._history.append(decision)
            logger.info(f"Decision: {json_utils.dumps(decision.to_record())}")

            previous = self._last_published
            previous_mode = previous.mode if previous else None
            if not self._active_control:
                logger.debug("Dry-run mode: decision not published")
                return DecisionOutcome(decision, False, previous_mode)
            if previous_mode == decision.mode:
                return DecisionOutcome(decision, False, previous_mode)

            self._last_published = decision
            logger.info(f"🔄 Mode change {previous_mode.value if previous_mode else 'none'} -> "
                        f"{decision.mode.value}")
            return DecisionOutcome(decision, True, previous_mode)
