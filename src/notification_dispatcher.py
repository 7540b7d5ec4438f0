#!/usr/bin/env python3
"""
Notification Dispatcher
Renders warning events and notable charging events and fans them out to sinks

Nothing is sent automatically: a message goes out only when notifications are
enabled globally and an enabled notification rule links to the warning rule or
event that produced it. Each send is bounded by a timeout and a failing sink
never stops the others.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pytz

from autopilot_exceptions import PersistenceError, ValidationError
from config_documents import (
    BOOLEAN, LIST, SCHEMA_VERSION, STRING,
    ConfigDocumentStore, check_schema_version, validate_fields,
)
from energy_models import utcnow
from warning_monitor import WarningEvent

logger = logging.getLogger(__name__)

DOCUMENT_NAME = 'notifications_config'
SEND_TIMEOUT_SECONDS = 10
CHAT_ID_PATTERN = re.compile(r'^-?\d+$')

# Decision engine events a notification rule of type 'rule' can link to
CHARGING_STARTED = 'charging_started'
CHARGING_STOPPED = 'charging_stopped'
OPTIMAL_PRICE = 'optimal_price'
NEGATIVE_PRICE = 'negative_price'
EVENT_IDS = (CHARGING_STARTED, CHARGING_STOPPED, OPTIMAL_PRICE, NEGATIVE_PRICE)

# Prices at or below this are worth an alert, in cent/kWh
OPTIMAL_PRICE_THRESHOLD = 8.0

RULE_TYPES = ('warning', 'rule')

RULE_FIELDS = {
    'id': STRING,
    'type': STRING,
    'linked_id': STRING,
    'name': STRING,
    'description': STRING,
    'enabled': BOOLEAN,
}

SETTINGS_FIELDS = {
    'schema_version': (int,),
    'enabled': BOOLEAN,
    'bot_token': STRING,
    'chat_ids': LIST,
    'notification_rules': LIST,
}

_STATE_LINES = (
    ('battery_soc', '🔋 Battery SoC', '%'),
    ('pv_power', '☀️ PV Power', 'W'),
    ('load', '⚡ Load', 'W'),
    ('grid_power', '🏠 Grid Power', 'W'),
    ('grid_voltage', '🔌 Grid Voltage', 'V'),
)


def validate_chat_id(chat_id: Any) -> str:
    text = str(chat_id).strip()
    if isinstance(chat_id, bool) or not CHAT_ID_PATTERN.match(text):
        raise ValidationError(f"Invalid chat id: {chat_id!r}")
    return text


@dataclass
class NotificationRule:
    """Links a warning rule id or an event id to outgoing notifications"""
    id: str
    type: str
    linked_id: str
    name: str = ''
    description: str = ''
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'linked_id': self.linked_id,
            'name': self.name,
            'description': self.description,
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationRule':
        validate_fields(data, RULE_FIELDS, 'notification_rule')
        for required in ('id', 'type', 'linked_id'):
            if not data.get(required):
                raise ValidationError(f"notification_rule.{required} is required")
        rule = cls(**data)
        if rule.type not in RULE_TYPES:
            raise ValidationError(f"Unknown notification rule type '{rule.type}'")
        if rule.type == 'rule' and rule.linked_id not in EVENT_IDS:
            raise ValidationError(
                f"Unknown event '{rule.linked_id}', expected one of {', '.join(EVENT_IDS)}"
            )
        return rule


@dataclass
class NotificationSettings:
    enabled: bool = False
    bot_token: str = ''
    chat_ids: List[str] = field(default_factory=list)
    notification_rules: List[NotificationRule] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema_version': SCHEMA_VERSION,
            'enabled': self.enabled,
            'bot_token': self.bot_token,
            'chat_ids': list(self.chat_ids),
            'notification_rules': [rule.to_dict() for rule in self.notification_rules],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationSettings':
        validate_fields(data, SETTINGS_FIELDS, 'notifications_config')
        check_schema_version(data, 'notifications_config')
        chat_ids = []
        for chat_id in data.get('chat_ids', []):
            chat_id = validate_chat_id(chat_id)
            if chat_id not in chat_ids:
                chat_ids.append(chat_id)
        rules = [NotificationRule.from_dict(rule) for rule in data.get('notification_rules', [])]
        if len({rule.id for rule in rules}) != len(rules):
            raise ValidationError("Duplicate notification rule ids")
        return cls(
            enabled=data.get('enabled', False),
            bot_token=data.get('bot_token', ''),
            chat_ids=chat_ids,
            notification_rules=rules,
        )


def default_notifications_document() -> Dict[str, Any]:
    return NotificationSettings().to_dict()


class NotificationSink(ABC):
    """A message-send capability keyed by opaque recipient ids"""

    name = 'sink'

    def configure(self, settings: NotificationSettings) -> None:
        """Pick up credentials from the settings document"""

    @abstractmethod
    async def send(self, recipient: str, text: str) -> None:
        """
        Deliver ``text`` to ``recipient``.

        Raises:
            NetworkError or AuthError when the message was not accepted
        """
        pass


class NotificationDispatcher:
    """Owns the notification settings and fans messages out to sinks"""

    def __init__(self, documents: ConfigDocumentStore, sinks: Optional[List[NotificationSink]] = None,
                 timezone: str = 'UTC', send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.documents = documents
        self.sinks = list(sinks or [])
        self.timezone = pytz.timezone(timezone)
        self.send_timeout = send_timeout
        self.settings = NotificationSettings()

    async def initialize(self) -> None:
        self.settings = await self.documents.load(
            DOCUMENT_NAME, default_notifications_document, NotificationSettings.from_dict
        )
        self._configure_sinks()
        logger.info(f"Notifications {'enabled' if self.settings.enabled else 'disabled'}: "
                    f"{len(self.settings.chat_ids)} recipient(s), "
                    f"{len(self.settings.notification_rules)} rule(s)")

    def _configure_sinks(self) -> None:
        for sink in self.sinks:
            sink.configure(self.settings)

    async def _save(self) -> bool:
        self._configure_sinks()
        try:
            await self.documents.save(DOCUMENT_NAME, self.settings.to_dict())
            return True
        except PersistenceError as e:
            logger.error(f"❌ Notification settings not saved, continuing in memory: {e}")
            return False

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> Dict[str, Any]:
        """Settings with the bot token masked"""
        data = self.settings.to_dict()
        data['bot_token'] = '***' if self.settings.bot_token else ''
        return data

    async def update_settings(self, updates: Dict[str, Any]) -> NotificationSettings:
        """
        Apply a validated partial update. A masked or empty bot token keeps
        the existing token.

        Raises:
            ValidationError: nothing is applied
        """
        validate_fields(updates, SETTINGS_FIELDS, 'notifications_config')
        merged = self.settings.to_dict()
        changes = dict(updates)
        token = changes.get('bot_token')
        if token is not None and (not token or set(token) == {'*'}):
            changes.pop('bot_token')
        merged.update(changes)
        self.settings = NotificationSettings.from_dict(merged)
        await self._save()
        return self.settings

    async def add_chat_id(self, chat_id: Any) -> bool:
        """
        Raises:
            ValidationError: if ``chat_id`` is not a (possibly negative) integer
        """
        chat_id = validate_chat_id(chat_id)
        if chat_id in self.settings.chat_ids:
            return True
        self.settings.chat_ids.append(chat_id)
        await self._save()
        return True

    async def remove_chat_id(self, chat_id: Any) -> bool:
        chat_id = str(chat_id).strip()
        if chat_id not in self.settings.chat_ids:
            return False
        self.settings.chat_ids.remove(chat_id)
        await self._save()
        return True

    def get_notification_rules(self) -> List[NotificationRule]:
        return [replace(rule) for rule in self.settings.notification_rules]

    async def add_notification_rule(self, data: Dict[str, Any]) -> NotificationRule:
        data = dict(data)
        if not data.get('id'):
            data['id'] = f"notification-{int(utcnow().timestamp() * 1000)}"
        rule = NotificationRule.from_dict(data)
        if any(r.id == rule.id for r in self.settings.notification_rules):
            raise ValidationError(f"Notification rule {rule.id} already exists")
        self.settings.notification_rules.append(rule)
        await self._save()
        return replace(rule)

    async def update_notification_rule(self, rule_id: str, updates: Dict[str, Any]) -> Optional[NotificationRule]:
        rules = self.settings.notification_rules
        index = next((i for i, r in enumerate(rules) if r.id == rule_id), None)
        if index is None:
            return None
        merged = rules[index].to_dict()
        merged.update(updates)
        merged['id'] = rule_id
        rule = NotificationRule.from_dict(merged)
        rules[index] = rule
        await self._save()
        return replace(rule)

    async def delete_notification_rule(self, rule_id: str) -> bool:
        before = len(self.settings.notification_rules)
        self.settings.notification_rules = [r for r in self.settings.notification_rules if r.id != rule_id]
        if len(self.settings.notification_rules) == before:
            return False
        await self._save()
        return True

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _has_enabled_rule(self, rule_type: str, linked_id: str) -> bool:
        if not self.settings.enabled:
            return False
        return any(
            rule.enabled and rule.type == rule_type and rule.linked_id == linked_id
            for rule in self.settings.notification_rules
        )

    def should_notify_for_warning(self, warning_type_id: str) -> bool:
        return self._has_enabled_rule('warning', warning_type_id)

    def should_notify_for_event(self, event_id: str) -> bool:
        return self._has_enabled_rule('rule', event_id)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _format_time(self, timestamp: datetime) -> str:
        return timestamp.astimezone(self.timezone).strftime('%Y-%m-%d %H:%M:%S %Z')

    @staticmethod
    def _state_lines(state: Mapping[str, Any]) -> str:
        lines = ''
        for key, label, unit in _STATE_LINES:
            if state.get(key) is not None:
                lines += f"{label}: {state[key]}{unit}\n"
        return lines

    def format_warning_message(self, event: WarningEvent) -> str:
        message = f"🚨 *{event.title or event.warning_type_id}*\n\n"
        if event.description:
            message += f"📝 {event.description}\n\n"
        message += "⚡ *Current Values:*\n"
        message += self._state_lines(event.system_state)
        message += f"\n📅 Time: {self._format_time(event.timestamp)}"
        message += f"\n🎯 Priority: {event.priority.upper()}"
        triggered = event.triggered
        if triggered:
            message += "\n\n📊 *Trigger Details:*\n"
            message += f"Parameter: {triggered.get('parameter')}\n"
            message += f"Value: {triggered.get('value')}\n"
            message += (f"Condition: {triggered.get('value')} {triggered.get('condition')} "
                        f"{triggered.get('threshold')}")
        return message

    def format_event_message(self, event_id: str, data: Mapping[str, Any]) -> str:
        """
        Render a charging event. ``data`` may carry reason, price (cent/kWh),
        battery_soc, system_state and timestamp.
        """
        price = data.get('price')
        if event_id == CHARGING_STARTED:
            message = "🔋 *Charging Started*\n\n"
            if data.get('reason'):
                message += f"📝 Reason: {data['reason']}\n"
            if price is not None:
                message += f"💰 Current Price: {price:.2f}¢/kWh\n"
        elif event_id == CHARGING_STOPPED:
            message = "⏹️ *Charging Stopped*\n\n"
            if data.get('reason'):
                message += f"📝 Reason: {data['reason']}\n"
            if data.get('battery_soc') is not None:
                message += f"🔋 Battery SOC: {data['battery_soc']}%\n"
        elif event_id == OPTIMAL_PRICE:
            message = "💰 *Optimal Price Alert*\n\n"
            message += f"💲 Current Price: {price:.2f}¢/kWh (≤{OPTIMAL_PRICE_THRESHOLD:g}¢/kWh)\n"
            message += "🎯 This is a good time to charge your battery\n"
        elif event_id == NEGATIVE_PRICE:
            message = "🎉 *Negative Price Alert*\n\n"
            message += f"💲 Current Price: {price:.2f}¢/kWh\n"
            message += "⚡ Maximum charging recommended\n"
        else:
            raise ValidationError(f"Unknown event '{event_id}'")

        state = data.get('system_state')
        if state:
            message += "\n⚡ *Current System:*\n"
            message += self._state_lines(state)
        message += f"\n📅 {self._format_time(data.get('timestamp') or utcnow())}"
        return message

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send_one(self, sink: NotificationSink, recipient: str, text: str) -> bool:
        try:
            await asyncio.wait_for(sink.send(recipient, text), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(f"❌ {sink.name} send to {recipient} timed out after {self.send_timeout}s")
        except Exception as e:
            logger.error(f"❌ {sink.name} send to {recipient} failed: {e}")
        return False

    async def broadcast_message(self, text: str) -> bool:
        """
        Send ``text`` to every recipient through every sink.

        Returns:
            True iff at least one individual send succeeded
        """
        if not self.settings.enabled or not self.settings.chat_ids or not self.sinks:
            logger.info("Notifications not configured, message not sent")
            return False

        results = await asyncio.gather(*[
            self._send_one(sink, recipient, text)
            for sink in self.sinks
            for recipient in self.settings.chat_ids
        ])
        logger.info(f"Sent notification to {sum(results)}/{len(results)} recipient(s)")
        return any(results)

    async def dispatch_warning(self, event: WarningEvent) -> bool:
        if not self.should_notify_for_warning(event.warning_type_id):
            return False
        return await self.broadcast_message(self.format_warning_message(event))

    async def dispatch_event(self, event_id: str, data: Mapping[str, Any]) -> bool:
        if not self.should_notify_for_event(event_id):
            return False
        return await self.broadcast_message(self.format_event_message(event_id, data))
