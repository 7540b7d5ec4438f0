"""
Inverter Configuration Models

Static per-inverter profile that decides which command vocabulary a
charging decision is translated into and where the commands are published.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, List

from autopilot_exceptions import ValidationError


class InverterType(Enum):
    """Command vocabulary families"""
    LEGACY = "legacy"
    MODERN = "modern"
    HYBRID = "hybrid"

    @classmethod
    def from_string(cls, value: str) -> 'InverterType':
        try:
            return cls(str(value).lower().strip())
        except ValueError:
            supported = ', '.join(t.value for t in cls)
            raise ValidationError(f"Unknown inverter type '{value}' (supported: {supported})")


@dataclass(frozen=True)
class InverterProfile:
    """
    One configured inverter.

    Commands for inverter ``index`` are published on
    ``<topic_prefix>/inverter_<index>/<parameter>/set``.
    """

    type: InverterType
    index: int
    topic_prefix: str = "solar_assistant"

    def command_topic(self, parameter: str) -> str:
        return f"{self.topic_prefix}/inverter_{self.index}/{parameter}/set"

    @property
    def name(self) -> str:
        return f"inverter_{self.index}"

    @classmethod
    def from_yaml_config(cls, config_dict: Dict[str, Any]) -> 'InverterProfile':
        """
        Create InverterProfile from YAML configuration dict.

        Raises:
            ValidationError: on unknown type or a non-positive index
        """
        inverter_type = InverterType.from_string(config_dict.get('type', 'modern'))
        index = config_dict.get('index', 1)
        if not isinstance(index, int) or isinstance(index, bool) or index < 1:
            raise ValidationError(f"Inverter index must be a positive integer: {index!r}")
        prefix = str(config_dict.get('topic_prefix', 'solar_assistant')).strip('/')
        if not prefix:
            raise ValidationError("Inverter topic prefix must not be empty")
        return cls(type=inverter_type, index=index, topic_prefix=prefix)


def profiles_from_config(inverters: List[Dict[str, Any]]) -> List[InverterProfile]:
    """Build profiles from the ``inverters`` YAML section, rejecting duplicate indexes"""
    profiles = [InverterProfile.from_yaml_config(item or {}) for item in inverters or []]
    indexes = [p.index for p in profiles]
    if len(indexes) != len(set(indexes)):
        raise ValidationError(f"Duplicate inverter indexes in configuration: {indexes}")
    return profiles
