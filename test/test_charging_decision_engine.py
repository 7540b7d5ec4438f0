#!/usr/bin/env python3
"""
Tests for the charging decision engine: priority order, determinism,
edge-triggered publication and the dry-run gate.
"""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from charging_decision_engine import ChargingDecisionEngine, DecisionConfig, evaluate
from energy_models import PriceLevel, PricePoint, PriceSignal
from inverter.models import ChargingAction, ChargingMode, InverterType, to_wire_settings
from inverter.models.operation_mode import CHARGER_SOURCE_PRIORITY, GRID_CHARGE, OUTPUT_SOURCE_PRIORITY

from conftest import T0


def _signal(level=PriceLevel.CHEAP, acceptable=True, total=10.0):
    point = PricePoint(total=total, energy=total * 0.8, tax=total * 0.2, level=level, starts_at=T0)
    return PriceSignal(point=point, acceptable=acceptable)


@pytest.fixture
def config():
    return DecisionConfig(target_soc=80)


class TestScenarios:
    """End-to-end decision scenarios"""

    def test_cheap_price_without_solar_charges_from_grid(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=40, pv_power=0, grid_voltage=230), _signal(), config)

        assert decision.decision == ChargingAction.START_CHARGING
        assert decision.mode == ChargingMode.UTILITY_FIRST

    def test_strong_solar_surplus_charges_from_solar_only(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=65, pv_power=3000, load=1000),
                            _signal(acceptable=False), config)

        assert decision.decision == ChargingAction.START_CHARGING
        assert decision.mode == ChargingMode.SOLAR_ONLY

    def test_target_soc_overrides_very_cheap_price(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=82, pv_power=0),
                            _signal(level=PriceLevel.VERY_CHEAP), config)

        assert decision.decision == ChargingAction.STOP_CHARGING
        assert decision.mode == ChargingMode.SOLAR_FIRST

    def test_unstable_grid_overrides_everything(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=30, pv_power=0, grid_voltage=190),
                            _signal(level=PriceLevel.VERY_CHEAP), config)

        assert decision.decision == ChargingAction.STOP_CHARGING
        assert decision.mode == ChargingMode.SOLAR_FIRST
        assert "190V" in decision.reason


class TestPriorityOrder:

    def test_overvoltage_stops_charging(self, snapshot, config):
        decision = evaluate(snapshot(grid_voltage=251, pv_power=5000, load=100), _signal(), config)
        assert decision.decision == ChargingAction.STOP_CHARGING

    def test_voltage_bounds_are_inclusive(self, snapshot, config):
        for voltage in (200, 250):
            decision = evaluate(snapshot(battery_soc=40, pv_power=0, grid_voltage=voltage), _signal(), config)
            assert decision.mode == ChargingMode.UTILITY_FIRST

    def test_safety_wins_over_strong_solar(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=80, pv_power=5000, load=100), _signal(), config)
        assert decision.mode == ChargingMode.SOLAR_FIRST

    def test_no_solar_expensive_price_runs_from_battery(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=40, pv_power=0),
                            _signal(level=PriceLevel.EXPENSIVE, acceptable=False), config)

        assert decision.decision == ChargingAction.STOP_CHARGING
        assert decision.mode == ChargingMode.SOLAR_BATTERY_UTILITY

    def test_pv_below_threshold_counts_as_no_solar(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=40, pv_power=8, load=500), _signal(), config)
        assert decision.mode == ChargingMode.UTILITY_FIRST

    def test_some_solar_and_acceptable_price_mixes_sources(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=60, pv_power=600, load=500), _signal(), config)

        assert decision.decision == ChargingAction.START_CHARGING
        assert decision.mode == ChargingMode.SOLAR_AND_UTILITY

    def test_some_solar_low_battery_tops_up(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=40, pv_power=600, load=500),
                            _signal(acceptable=False), config)

        assert decision.decision == ChargingAction.START_CHARGING
        assert decision.mode == ChargingMode.SOLAR_UTILITY_BATTERY

    def test_default_stops_with_solar_first(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=60, pv_power=600, load=500),
                            _signal(acceptable=False), config)

        assert decision.decision == ChargingAction.STOP_CHARGING
        assert decision.mode == ChargingMode.SOLAR_FIRST

    def test_strong_solar_ignored_above_max_soc(self, snapshot):
        config = DecisionConfig(target_soc=95)
        decision = evaluate(snapshot(battery_soc=92, pv_power=3000, load=500),
                            _signal(acceptable=False), config)
        assert decision.mode == ChargingMode.SOLAR_FIRST
        assert decision.reason == "No charging condition met"

    def test_missing_price_is_not_acceptable(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=40, pv_power=0), PriceSignal(), config)

        assert decision.mode == ChargingMode.SOLAR_BATTERY_UTILITY
        assert decision.conditions['price_level'] is None

    def test_missing_voltage_skips_voltage_check(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=40, pv_power=0, grid_voltage=None), _signal(), config)
        assert decision.mode == ChargingMode.UTILITY_FIRST

    def test_missing_values_read_as_zero(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=None, pv_power=None, load=None), _signal(), config)
        assert decision.mode == ChargingMode.UTILITY_FIRST


class TestDecisionRecord:

    def test_evaluation_is_deterministic(self, snapshot, config):
        s = snapshot(battery_soc=45, pv_power=700, load=600)
        signal = _signal()

        first = evaluate(s, signal, config)
        second = evaluate(s, signal, config)

        assert first == second
        assert first.to_record() == second.to_record()

    def test_record_echoes_inputs(self, snapshot, config):
        decision = evaluate(snapshot(battery_soc=40, pv_power=0, load=300, grid_voltage=231), _signal(), config)
        record = decision.to_record()

        assert record['decision'] == 'START_CHARGING'
        assert record['mode'] == 'Utility first'
        assert record['timestamp'] == T0.isoformat()
        assert record['conditions'] == {
            'pv_power': 0,
            'load': 300,
            'price_level': 'CHEAP',
            'battery_soc': 40,
            'grid_voltage': 231,
        }

    def test_conditions_are_read_only(self, snapshot, config):
        decision = evaluate(snapshot(), _signal(), config)
        with pytest.raises(TypeError):
            decision.conditions['battery_soc'] = 99

    def test_config_from_yaml_uses_defaults(self):
        config = DecisionConfig.from_yaml_config({'grid_voltage_min': 210})
        assert config.grid_voltage_min == 210
        assert config.grid_voltage_max == 250
        assert config.no_solar_threshold_w == 10


class TestEngineStep:

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_same_mode_publishes_once(self, snapshot):
        engine = ChargingDecisionEngine(DecisionConfig(), active_control=True)
        s = snapshot(battery_soc=40, pv_power=0)

        first = await engine.step(s, _signal())
        second = await engine.step(snapshot(battery_soc=41, pv_power=0, timestamp=T0 + timedelta(minutes=1)),
                                   _signal())

        assert first.published is True
        assert first.previous_mode is None
        assert second.published is False
        assert engine.last_published.mode == ChargingMode.UTILITY_FIRST
        assert len(engine.history) == 2

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_mode_change_publishes_again(self, snapshot):
        engine = ChargingDecisionEngine(DecisionConfig(), active_control=True)

        await engine.step(snapshot(battery_soc=40, pv_power=0), _signal())
        outcome = await engine.step(snapshot(battery_soc=85, pv_power=0), _signal())

        assert outcome.published is True
        assert outcome.previous_mode == ChargingMode.UTILITY_FIRST
        assert outcome.decision.mode == ChargingMode.SOLAR_FIRST

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_dry_run_never_publishes(self, snapshot):
        engine = ChargingDecisionEngine(DecisionConfig())
        assert engine.active_control is False

        outcome = await engine.step(snapshot(battery_soc=40, pv_power=0), _signal())

        assert outcome.published is False
        assert engine.last_published is None
        assert len(engine.history) == 1

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_enabling_active_control_publishes_current_mode(self, snapshot):
        engine = ChargingDecisionEngine(DecisionConfig())
        await engine.step(snapshot(battery_soc=40, pv_power=0), _signal())

        engine.set_active_control(True)
        outcome = await engine.step(snapshot(battery_soc=40, pv_power=0), _signal())

        assert outcome.published is True

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_history_is_bounded(self, snapshot):
        engine = ChargingDecisionEngine(DecisionConfig(), history_size=3)
        for soc in range(10, 15):
            await engine.step(snapshot(battery_soc=soc), _signal())

        assert len(engine.history) == 3
        assert engine.history[-1].conditions['battery_soc'] == 14


class TestWireTranslation:

    def test_legacy_collapses_to_grid_charge(self):
        assert to_wire_settings(ChargingMode.UTILITY_FIRST, InverterType.LEGACY) == [(GRID_CHARGE, 'Enabled')]
        for mode in (ChargingMode.SOLAR_FIRST, ChargingMode.SOLAR_ONLY, ChargingMode.SOLAR_BATTERY_UTILITY):
            assert to_wire_settings(mode, InverterType.LEGACY) == [(GRID_CHARGE, 'Disabled')]

    def test_modern_uses_priority_pair(self):
        assert to_wire_settings(ChargingMode.SOLAR_UTILITY_BATTERY, InverterType.MODERN) == [
            (CHARGER_SOURCE_PRIORITY, 'Solar and utility simultaneously'),
            (OUTPUT_SOURCE_PRIORITY, 'Solar/Utility/Battery'),
        ]
        assert to_wire_settings(ChargingMode.SOLAR_BATTERY_UTILITY, InverterType.MODERN) == [
            (CHARGER_SOURCE_PRIORITY, 'Solar only'),
            (OUTPUT_SOURCE_PRIORITY, 'Solar/Battery/Utility'),
        ]

    def test_hybrid_gets_both_vocabularies(self):
        settings = to_wire_settings(ChargingMode.UTILITY_FIRST, InverterType.HYBRID)
        assert settings == [
            (GRID_CHARGE, 'Enabled'),
            (CHARGER_SOURCE_PRIORITY, 'Utility first'),
            (OUTPUT_SOURCE_PRIORITY, 'Utility first'),
        ]

    def test_every_mode_has_a_modern_mapping(self):
        for mode in ChargingMode:
            assert len(to_wire_settings(mode, InverterType.MODERN)) == 2
