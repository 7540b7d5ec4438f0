#!/usr/bin/env python3
"""
Command Publisher
Translates a published charging decision into inverter commands

Every configured inverter gets the (topic, value) pairs of its own command
vocabulary. A failed publish to one inverter is recorded and the remaining
inverters are still commanded.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from autopilot_exceptions import NetworkError
from charging_decision_engine import ChargingDecision
from inverter.models import InverterProfile
from inverter.models.operation_mode import to_wire_settings
from inverter.ports import CommandTransportPort

logger = logging.getLogger(__name__)


@dataclass
class PublishReport:
    """Outcome of publishing one decision"""
    published: List[Tuple[str, str]] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed and bool(self.published)

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.published)


class CommandPublisher:
    """Hands inverter commands to the injected transport"""

    def __init__(self, transport: CommandTransportPort, profiles: List[InverterProfile]):
        self.transport = transport
        self.profiles = list(profiles)

    def commands_for(self, decision: ChargingDecision) -> Dict[str, List[Tuple[str, str]]]:
        """(topic, value) pairs per inverter name"""
        return {
            profile.name: [
                (profile.command_topic(parameter), value)
                for parameter, value in to_wire_settings(decision.mode, profile.type)
            ]
            for profile in self.profiles
        }

    async def publish(self, decision: ChargingDecision) -> PublishReport:
        report = PublishReport()
        if not self.profiles:
            logger.warning("No inverters configured, nothing to publish")
            return report

        for inverter, commands in self.commands_for(decision).items():
            for topic, value in commands:
                try:
                    await self.transport.publish(topic, value)
                except NetworkError as e:
                    logger.error(f"❌ Command to {inverter} failed on {topic}: {e}")
                    report.failed[inverter] = str(e)
                    break
                report.published.append((topic, value))
                logger.info(f"📤 {topic} = {value}")

        if report.failed:
            logger.warning(f"⚠️  Published mode '{decision.mode.value}' with failures: "
                           f"{', '.join(sorted(report.failed))}")
        else:
            logger.info(f"✅ Mode '{decision.mode.value}' published to {len(self.profiles)} inverter(s)")
        return report
