import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiofiles

import json_utils
from autopilot_exceptions import PersistenceError
from energy_models import parse_timestamp
from .storage_interface import DataStorageInterface, StorageConfig


class FileStorage(DataStorageInterface):
    """
    File-based storage implementation.

    The price cache is one JSON file; decisions go to daily JSON files
    ``decisions_<YYYY-MM-DD>.json``.
    """

    def __init__(self, config: StorageConfig):
        self.config = config
        self.base_dir = config.base_dir
        self.price_cache_file = os.path.join(self.base_dir, "price_cache.json")
        # Serializes read-modify-write of the JSON files
        self._lock = asyncio.Lock()
        self._connected = False
        self.logger = logging.getLogger(__name__)

    def _require_connection(self) -> None:
        if not self._connected:
            raise PersistenceError(f"File storage at {self.base_dir} is not connected")

    def _decisions_file(self, date_str: str) -> str:
        return os.path.join(self.base_dir, f"decisions_{date_str}.json")

    async def connect(self) -> bool:
        """Ensure directories exist."""
        try:
            os.makedirs(self.base_dir, exist_ok=True)
            self._connected = True
            return True
        except OSError as e:
            self.logger.error(f"Failed to create directories: {e}")
            self._connected = False
            return False

    async def disconnect(self) -> None:
        self._connected = False

    async def health_check(self) -> bool:
        """Check if directories are writable."""
        return self._connected and os.access(self.base_dir, os.W_OK)

    async def _read_json(self, filename: str) -> Any:
        async with aiofiles.open(filename, 'r') as f:
            content = await f.read()
        return json_utils.loads(content) if content else None

    async def _write_json(self, filename: str, data: Any) -> None:
        tmp = f"{filename}.tmp"
        async with aiofiles.open(tmp, 'w') as f:
            await f.write(json_utils.dumps(data, indent=True))
        os.replace(tmp, filename)

    async def save_price_cache(self, cache: Dict[str, Any]) -> bool:
        self._require_connection()
        try:
            async with self._lock:
                await self._write_json(self.price_cache_file, cache)
            return True
        except (OSError, TypeError) as e:
            self.logger.error(f"Error saving price cache to file: {e}")
            return False

    async def load_price_cache(self) -> Optional[Dict[str, Any]]:
        self._require_connection()
        if not os.path.exists(self.price_cache_file):
            return None
        try:
            return await self._read_json(self.price_cache_file)
        except (OSError, json_utils.JSONDecodeError) as e:
            self.logger.error(f"Error reading price cache from file: {e}")
            return None

    async def save_decision(self, decision: Dict[str, Any]) -> bool:
        """Append a decision to its daily file."""
        self._require_connection()
        try:
            ts = parse_timestamp(decision.get('timestamp')) or datetime.now()
            filename = self._decisions_file(ts.strftime('%Y-%m-%d'))
            record = dict(decision)
            record['timestamp'] = ts.isoformat()

            async with self._lock:
                existing = []
                if os.path.exists(filename):
                    existing = await self._read_json(filename) or []

                existing.append(record)
                if self.config.max_decisions and len(existing) > self.config.max_decisions:
                    existing = existing[-self.config.max_decisions:]

                await self._write_json(filename, existing)
            return True
        except (OSError, TypeError, ValueError, json_utils.JSONDecodeError) as e:
            self.logger.error(f"Error saving decision to file: {e}")
            return False

    async def get_decisions(self, start_time: datetime, end_time: datetime) -> List[Dict[str, Any]]:
        """Retrieve decisions from the daily files covering the range."""
        self._require_connection()
        results = []
        current = start_time.date()
        try:
            while current <= end_time.date():
                filename = self._decisions_file(current.strftime('%Y-%m-%d'))
                if os.path.exists(filename):
                    for item in await self._read_json(filename) or []:
                        ts = parse_timestamp(item['timestamp'])
                        if start_time <= ts <= end_time:
                            results.append(item)
                current += timedelta(days=1)
        except (OSError, KeyError, ValueError, json_utils.JSONDecodeError) as e:
            self.logger.error(f"Error reading decisions from file: {e}")
            return []
        results.sort(key=lambda item: item['timestamp'])
        return results
