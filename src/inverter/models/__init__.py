"""
Domain models for inverter command translation.

These models describe the abstract charging modes a decision produces and
the inverter profiles those modes are translated for.
"""

from .inverter_config import InverterType, InverterProfile, profiles_from_config
from .operation_mode import (
    ChargingAction,
    ChargingMode,
    to_wire_settings,
    GRID_CHARGE,
    CHARGER_SOURCE_PRIORITY,
    OUTPUT_SOURCE_PRIORITY,
)

__all__ = [
    'InverterType',
    'InverterProfile',
    'profiles_from_config',
    'ChargingAction',
    'ChargingMode',
    'to_wire_settings',
    'GRID_CHARGE',
    'CHARGER_SOURCE_PRIORITY',
    'OUTPUT_SOURCE_PRIORITY',
]
