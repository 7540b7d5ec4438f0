#!/usr/bin/env python3
"""
Warning Monitor
Evaluates user-defined threshold rules against a telemetry snapshot

Rules are created disabled, fire at most once per cooldown window and may be
restricted to daytime hours. Triggered events are kept in a bounded history
(newest first) that is persisted with the rules in one document.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytz

from autopilot_exceptions import PersistenceError, ValidationError
from config_documents import (
    BOOLEAN, LIST, NUMBER, OPTIONAL_STRING, SCHEMA_VERSION, STRING,
    ConfigDocumentStore, check_schema_version, validate_fields,
)
from energy_models import TELEMETRY_FIELDS, SystemStateSnapshot, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

DOCUMENT_NAME = 'warnings_config'
DEFAULT_MAX_HISTORY_ITEMS = 100
DAYTIME_START_HOUR = 8
DAYTIME_END_HOUR = 18

CONDITIONS = {
    'lt': lambda value, threshold: value < threshold,
    'gt': lambda value, threshold: value > threshold,
    'eq': lambda value, threshold: value == threshold,
    'lte': lambda value, threshold: value <= threshold,
    'gte': lambda value, threshold: value >= threshold,
}
PRIORITIES = ('low', 'medium', 'high', 'critical')
TIME_CONDITIONS = (None, 'daytime')

RULE_FIELDS = {
    'id': STRING,
    'name': STRING,
    'description': STRING,
    'parameter': STRING,
    'condition': STRING,
    'threshold': NUMBER,
    'enabled': BOOLEAN,
    'priority': STRING,
    'cooldown_minutes': NUMBER,
    'time_condition': OPTIONAL_STRING,
}

DOCUMENT_FIELDS = {
    'schema_version': (int,),
    'enabled': BOOLEAN,
    'warning_types': LIST,
    'warning_history': LIST,
    'max_history_items': (int,),
}


@dataclass
class WarningRule:
    """A user threshold rule on one telemetry field"""
    id: str
    parameter: str
    condition: str
    threshold: float
    name: str = ''
    description: str = ''
    enabled: bool = False
    priority: str = 'medium'
    cooldown_minutes: float = 30
    time_condition: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'parameter': self.parameter,
            'condition': self.condition,
            'threshold': self.threshold,
            'enabled': self.enabled,
            'priority': self.priority,
            'cooldown_minutes': self.cooldown_minutes,
            'time_condition': self.time_condition,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WarningRule':
        """
        Raises:
            ValidationError: unknown field, wrong type or invalid value
        """
        validate_fields(data, RULE_FIELDS, 'warning_rule')
        for required in ('id', 'parameter', 'condition', 'threshold'):
            if required not in data:
                raise ValidationError(f"warning_rule.{required} is required")

        rule = cls(**data)
        if not rule.id:
            raise ValidationError("warning_rule.id must not be empty")
        if rule.parameter not in TELEMETRY_FIELDS:
            raise ValidationError(
                f"Unknown parameter '{rule.parameter}', expected one of {', '.join(TELEMETRY_FIELDS)}"
            )
        if rule.condition not in CONDITIONS:
            raise ValidationError(f"Unknown condition '{rule.condition}'")
        if rule.priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority '{rule.priority}'")
        if rule.cooldown_minutes < 0:
            raise ValidationError("cooldown_minutes must not be negative")
        if rule.time_condition not in TIME_CONDITIONS:
            raise ValidationError(f"Unknown time condition '{rule.time_condition}'")
        return rule

    def matches(self, value: float) -> bool:
        return CONDITIONS[self.condition](value, self.threshold)


@dataclass(frozen=True)
class WarningEvent:
    """A rule firing, with the snapshot that caused it"""
    id: str
    warning_type_id: str
    timestamp: datetime
    system_state: Mapping[str, Any]
    triggered: Mapping[str, Any]
    title: str = ''
    description: str = ''
    priority: str = 'medium'

    def __post_init__(self):
        object.__setattr__(self, 'system_state', MappingProxyType(dict(self.system_state)))
        object.__setattr__(self, 'triggered', MappingProxyType(dict(self.triggered)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'warning_type_id': self.warning_type_id,
            'timestamp': self.timestamp.isoformat(),
            'system_state': dict(self.system_state),
            'title': self.title,
            'description': self.description,
            'priority': self.priority,
            'triggered': dict(self.triggered),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WarningEvent':
        try:
            return cls(
                id=str(data['id']),
                warning_type_id=str(data['warning_type_id']),
                timestamp=parse_timestamp(data['timestamp']),
                system_state=data.get('system_state') or {},
                triggered=data.get('triggered') or {},
                title=data.get('title') or '',
                description=data.get('description') or '',
                priority=data.get('priority') or 'medium',
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed warning event: {e}")


@dataclass
class WarningsDocument:
    enabled: bool = True
    rules: List[WarningRule] = field(default_factory=list)
    history: List[WarningEvent] = field(default_factory=list)
    max_history_items: int = DEFAULT_MAX_HISTORY_ITEMS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema_version': SCHEMA_VERSION,
            'enabled': self.enabled,
            'warning_types': [rule.to_dict() for rule in self.rules],
            'warning_history': [event.to_dict() for event in self.history],
            'max_history_items': self.max_history_items,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WarningsDocument':
        validate_fields(data, DOCUMENT_FIELDS, 'warnings_config')
        check_schema_version(data, 'warnings_config')
        max_items = data.get('max_history_items', DEFAULT_MAX_HISTORY_ITEMS)
        if max_items < 1:
            raise ValidationError("max_history_items must be at least 1")
        rules = [WarningRule.from_dict(rule) for rule in data.get('warning_types', [])]
        if len({rule.id for rule in rules}) != len(rules):
            raise ValidationError("Duplicate warning rule ids")
        history = [WarningEvent.from_dict(event) for event in data.get('warning_history', [])]
        history.sort(key=lambda event: event.timestamp, reverse=True)
        return cls(
            enabled=data.get('enabled', True),
            rules=rules,
            history=history[:max_items],
            max_history_items=max_items,
        )


def default_warnings_document() -> Dict[str, Any]:
    return WarningsDocument().to_dict()


class WarningMonitor:
    """Owns the warning rules, their cooldown index and the event history"""

    def __init__(self, documents: ConfigDocumentStore, timezone: str = 'UTC'):
        self.documents = documents
        self.timezone = pytz.timezone(timezone)
        self._doc = WarningsDocument()
        self._last_trigger: Dict[str, datetime] = {}

    async def initialize(self) -> None:
        self._doc = await self.documents.load(DOCUMENT_NAME, default_warnings_document, WarningsDocument.from_dict)
        self._rebuild_index()
        logger.info(f"Warning monitor loaded {len(self._doc.rules)} rules "
                    f"({self.enabled_rule_count()} enabled), {len(self._doc.history)} history events")

    def _rebuild_index(self) -> None:
        self._last_trigger = {}
        for event in self._doc.history:
            last = self._last_trigger.get(event.warning_type_id)
            if last is None or event.timestamp > last:
                self._last_trigger[event.warning_type_id] = event.timestamp

    async def _save(self) -> bool:
        try:
            await self.documents.save(DOCUMENT_NAME, self._doc.to_dict())
            return True
        except PersistenceError as e:
            logger.error(f"❌ Warnings document not saved, continuing in memory: {e}")
            return False

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._doc.enabled

    def is_daytime(self, now: datetime) -> bool:
        hour = now.astimezone(self.timezone).hour
        return DAYTIME_START_HOUR <= hour < DAYTIME_END_HOUR

    def is_on_cooldown(self, rule_id: str, now: Optional[datetime] = None) -> bool:
        """
        Whether ``rule_id`` fired less than its cooldown ago.

        Unknown ids count as on cooldown. A last trigger in the future means the
        clock went backwards; that also counts as on cooldown and the index is
        re-anchored to ``now``.
        """
        now = now or utcnow()
        rule = self._find_rule(rule_id)
        if rule is None:
            return True
        last = self._last_trigger.get(rule_id)
        if last is None:
            return False
        elapsed = now - last
        if elapsed < timedelta(0):
            logger.warning(f"Last trigger of {rule_id} is in the future, clock moved backwards")
            self._last_trigger[rule_id] = now
            return True
        return elapsed < timedelta(minutes=rule.cooldown_minutes)

    async def evaluate(self, snapshot: SystemStateSnapshot, now: Optional[datetime] = None) -> List[WarningEvent]:
        """
        Check every enabled rule against ``snapshot``.

        Triggered events are added to the history and persisted before returning.
        """
        triggered: List[WarningEvent] = []
        if not self._doc.enabled:
            return triggered

        now = now or utcnow()
        for rule in [r for r in self._doc.rules if r.enabled]:
            if self.is_on_cooldown(rule.id, now):
                continue
            if rule.time_condition == 'daytime' and not self.is_daytime(now):
                continue
            value = snapshot.get(rule.parameter)
            if value is None:
                continue
            if not rule.matches(value):
                continue

            event = WarningEvent(
                id=f"instance-{int(now.timestamp() * 1000)}-{rule.id}",
                warning_type_id=rule.id,
                timestamp=now,
                system_state=snapshot.to_dict(),
                title=rule.name,
                description=rule.description,
                priority=rule.priority,
                triggered={
                    'parameter': rule.parameter,
                    'value': value,
                    'threshold': rule.threshold,
                    'condition': rule.condition,
                },
            )
            self._record(event)
            triggered.append(event)
            logger.warning(f"⚠️  Warning '{rule.name or rule.id}' triggered: "
                           f"{rule.parameter}={value} {rule.condition} {rule.threshold}")

        if triggered:
            await self._save()
        return triggered

    def _record(self, event: WarningEvent) -> None:
        self._doc.history.insert(0, event)
        del self._doc.history[self._doc.max_history_items:]
        self._last_trigger[event.warning_type_id] = event.timestamp

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    def _find_rule(self, rule_id: str) -> Optional[WarningRule]:
        for rule in self._doc.rules:
            if rule.id == rule_id:
                return rule
        return None

    def get_rules(self) -> List[WarningRule]:
        return [replace(rule) for rule in self._doc.rules]

    def get_rule(self, rule_id: str) -> Optional[WarningRule]:
        rule = self._find_rule(rule_id)
        return replace(rule) if rule else None

    async def add_rule(self, data: Dict[str, Any]) -> WarningRule:
        """
        Validate and store a new rule. Rules are disabled unless ``enabled`` is
        explicitly true.

        Raises:
            ValidationError: invalid rule or duplicate id
        """
        data = dict(data)
        if not data.get('id'):
            data['id'] = f"warning-{int(time.time() * 1000)}"
        data.setdefault('enabled', False)
        rule = WarningRule.from_dict(data)
        if self._find_rule(rule.id) is not None:
            raise ValidationError(f"Warning rule {rule.id} already exists")

        self._doc.rules.append(rule)
        await self._save()
        logger.info(f"Added warning rule {rule.id} (enabled: {rule.enabled})")
        return replace(rule)

    async def update_rule(self, rule_id: str, updates: Dict[str, Any]) -> Optional[WarningRule]:
        """Apply a validated partial update; None when the rule does not exist"""
        index = next((i for i, r in enumerate(self._doc.rules) if r.id == rule_id), None)
        if index is None:
            return None
        merged = self._doc.rules[index].to_dict()
        merged.update(updates)
        merged['id'] = rule_id
        rule = WarningRule.from_dict(merged)

        self._doc.rules[index] = rule
        await self._save()
        return replace(rule)

    async def delete_rule(self, rule_id: str) -> bool:
        if self._find_rule(rule_id) is None:
            return False
        self._doc.rules = [r for r in self._doc.rules if r.id != rule_id]
        self._last_trigger.pop(rule_id, None)
        await self._save()
        return True

    async def set_enabled(self, enabled: bool) -> None:
        self._doc.enabled = bool(enabled)
        await self._save()
        logger.info(f"Warning system {'enabled' if self._doc.enabled else 'disabled'}")

    def enabled_rule_count(self) -> int:
        return sum(1 for rule in self._doc.rules if rule.enabled)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def history(self) -> Tuple[WarningEvent, ...]:
        return tuple(self._doc.history)

    def get_history(self, warning_type_id: Optional[str] = None, priority: Optional[str] = None,
                    start: Optional[datetime] = None, end: Optional[datetime] = None,
                    limit: Optional[int] = None, skip: int = 0) -> Dict[str, Any]:
        events = list(self._doc.history)
        if warning_type_id:
            events = [e for e in events if e.warning_type_id == warning_type_id]
        if priority:
            events = [e for e in events if e.priority == priority]
        if start:
            events = [e for e in events if e.timestamp >= start]
        if end:
            events = [e for e in events if e.timestamp <= end]

        total = len(events)
        events = events[skip:skip + limit] if limit else events[skip:]
        return {
            'warnings': tuple(events),
            'total': total,
            'filtered': bool(warning_type_id or priority or start or end),
        }

    async def clear_history(self) -> None:
        """Drop all events; cooldowns are derived from history so they reset too"""
        self._doc.history = []
        self._last_trigger = {}
        await self._save()
        logger.info("Warning history cleared")
