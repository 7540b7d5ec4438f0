#!/usr/bin/env python3
"""
Telegram notification sink using the Bot HTTP API
"""

import asyncio
import logging
from typing import Any, Dict

import aiohttp

import json_utils
from autopilot_exceptions import AuthError, NetworkError
from notification_dispatcher import SEND_TIMEOUT_SECONDS, NotificationSettings, NotificationSink

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org'


def _parse_body(raw: bytes) -> Dict[str, Any]:
    # Anything but a JSON object, such as a proxy's HTML error page, reads as empty
    try:
        body = json_utils.loads(raw) if raw else {}
    except json_utils.JSONDecodeError:
        return {}
    return body if isinstance(body, dict) else {}


class TelegramSink(NotificationSink):
    """Sends Markdown messages to chat ids through a bot"""

    name = 'telegram'

    def __init__(self, bot_token: str = '', api_url: str = TELEGRAM_API_URL,
                 timeout_seconds: float = SEND_TIMEOUT_SECONDS):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip('/')
        self.timeout_seconds = timeout_seconds

    def configure(self, settings: NotificationSettings) -> None:
        self.bot_token = settings.bot_token

    def _method_url(self, method: str, token: str) -> str:
        return f"{self.api_url}/bot{token}/{method}"

    async def _call(self, method: str, token: str, payload: Dict[str, Any] = None) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                if payload is None:
                    request = session.get(self._method_url(method, token))
                else:
                    request = session.post(self._method_url(method, token), json=payload)
                async with request as response:
                    body = _parse_body(await response.read())
                    if response.status in (401, 403):
                        raise AuthError(body.get('description') or f"HTTP {response.status}")
                    if response.status >= 400 or not body.get('ok'):
                        raise NetworkError(body.get('description') or f"Unexpected response (HTTP {response.status})")
                    return body
        except asyncio.TimeoutError:
            raise NetworkError(f"Telegram {method} timed out after {self.timeout_seconds}s")
        except aiohttp.ClientError as e:
            raise NetworkError(f"Telegram {method} failed: {e}")

    async def send(self, recipient: str, text: str) -> None:
        if not self.bot_token:
            raise AuthError("No bot token configured")
        await self._call('sendMessage', self.bot_token, {
            'chat_id': recipient,
            'text': text,
            'parse_mode': 'Markdown',
        })
        logger.debug(f"Telegram message sent to {recipient}")

    async def test_bot_token(self, bot_token: str = None) -> Dict[str, Any]:
        """Check a token with ``getMe``; defaults to the configured token"""
        token = bot_token or self.bot_token
        if not token:
            return {'success': False, 'error': 'No bot token'}
        try:
            body = await self._call('getMe', token)
        except (AuthError, NetworkError) as e:
            return {'success': False, 'error': str(e)}
        return {'success': True, 'bot_info': body.get('result')}
