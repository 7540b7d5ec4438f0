"""
Charging Mode Enumeration

Defines the abstract charging modes a decision can carry and the single
translation from a mode to each inverter family's wire vocabulary.
"""

from enum import Enum
from typing import List, Tuple

from .inverter_config import InverterType


class ChargingAction(Enum):
    """Whether the battery should be charging after a decision"""
    START_CHARGING = "START_CHARGING"
    STOP_CHARGING = "STOP_CHARGING"

    def __str__(self):
        return self.value


class ChargingMode(Enum):
    """
    Abstract charging modes.

    The values are the literal strings the modern inverter family accepts, so
    a mode logged in a decision record reads the same as the command sent.
    """

    # Charge from PV only, grid reserved for the load
    SOLAR_FIRST = "Solar first"

    # Strong surplus: charge exclusively from PV
    SOLAR_ONLY = "Solar only"

    # Cheap grid, no PV: charge from the grid
    UTILITY_FIRST = "Utility first"

    # Expensive grid, no PV: run the load from the battery
    SOLAR_BATTERY_UTILITY = "Solar/Battery/Utility"

    # Cheap grid with some PV: charge from both
    SOLAR_AND_UTILITY = "Solar and utility simultaneously"

    # Low battery with some PV: top up from both, keep the battery last
    SOLAR_UTILITY_BATTERY = "Solar/Utility/Battery"

    def __str__(self):
        return self.value

    @property
    def uses_grid(self) -> bool:
        """False for modes that must not draw grid power into the battery"""
        return self not in _NO_GRID_MODES


_NO_GRID_MODES = frozenset({
    ChargingMode.SOLAR_FIRST,
    ChargingMode.SOLAR_ONLY,
    ChargingMode.SOLAR_BATTERY_UTILITY,
})

GRID_CHARGE = 'grid_charge'
CHARGER_SOURCE_PRIORITY = 'charger_source_priority'
OUTPUT_SOURCE_PRIORITY = 'output_source_priority'

# Mode -> (charger_source_priority, output_source_priority)
MODERN_SETTINGS = {
    ChargingMode.SOLAR_FIRST: ("Solar first", "Solar/Battery/Utility"),
    ChargingMode.SOLAR_ONLY: ("Solar only", "Solar/Battery/Utility"),
    ChargingMode.UTILITY_FIRST: ("Utility first", "Utility first"),
    ChargingMode.SOLAR_BATTERY_UTILITY: ("Solar only", "Solar/Battery/Utility"),
    ChargingMode.SOLAR_AND_UTILITY: ("Solar and utility simultaneously", "Solar/Utility/Battery"),
    ChargingMode.SOLAR_UTILITY_BATTERY: ("Solar and utility simultaneously", "Solar/Utility/Battery"),
}


def to_wire_settings(mode: ChargingMode, inverter_type: InverterType) -> List[Tuple[str, str]]:
    """
    Translate an abstract mode to (parameter, value) pairs for one inverter family.

    Legacy inverters only understand a grid charge switch, modern inverters
    take a charger/output priority pair, hybrids receive both.
    """
    legacy = [(GRID_CHARGE, 'Enabled' if mode.uses_grid else 'Disabled')]
    charger, output = MODERN_SETTINGS[mode]
    modern = [(CHARGER_SOURCE_PRIORITY, charger), (OUTPUT_SOURCE_PRIORITY, output)]

    if inverter_type is InverterType.LEGACY:
        return legacy
    if inverter_type is InverterType.MODERN:
        return modern
    return legacy + modern
