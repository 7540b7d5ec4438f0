import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite

import json_utils
from autopilot_exceptions import PersistenceError
from .schema import ALL_TABLES, CREATE_INDEXES, SCHEMA_VERSION
from .storage_interface import DataStorageInterface, StorageConfig


class SQLiteStorage(DataStorageInterface):
    """
    SQLite storage implementation using aiosqlite.

    Features:
    - Retry logic for transient failures (locked/busy)
    - WAL mode for better concurrent read/write performance
    """

    def __init__(self, config: StorageConfig):
        self.config = config
        self.db_path = config.db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

        self._max_retries = config.max_retries
        self._retry_delay = config.retry_delay

    @property
    def is_connected(self) -> bool:
        """Check if database is connected."""
        return self._connection is not None

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceError(f"SQLite storage at {self.db_path} is not connected")
        return self._connection

    async def _execute_with_retry(self, operation, *args, **kwargs):
        """Execute an operation with retry logic for transient failures."""
        for attempt in range(self._max_retries):
            try:
                return await operation(*args, **kwargs)
            except aiosqlite.OperationalError as e:
                error_str = str(e).lower()
                # Retry on database locked or busy errors
                if ('locked' in error_str or 'busy' in error_str) and attempt < self._max_retries - 1:
                    delay = self._retry_delay * (2 ** attempt)  # Exponential backoff
                    self.logger.warning(f"Database locked, retrying in {delay:.2f}s "
                                        f"(attempt {attempt + 1}/{self._max_retries})")
                    await asyncio.sleep(delay)
                    continue
                raise

    async def connect(self) -> bool:
        """Open the database, enable WAL and create the schema."""
        if not self.db_path:
            self.logger.error("Database path not configured")
            return False
        try:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")  # 5 second timeout

            await self._init_schema()
            self.logger.info(f"Connected to SQLite database at {self.db_path}")
            return True
        except (aiosqlite.Error, OSError) as e:
            self.logger.error(f"Failed to connect to SQLite at {self.db_path}: {e}")
            if self._connection is not None:
                await self._connection.close()
            self._connection = None
            return False

    async def _init_schema(self):
        """Initialize database schema."""
        async with self._connection.cursor() as cursor:
            for table_sql in ALL_TABLES:
                await cursor.execute(table_sql)
            for index_sql in CREATE_INDEXES:
                await cursor.execute(index_sql)
            await cursor.execute(
                "INSERT OR IGNORE INTO schema_version (version, description) VALUES (?, ?)",
                (SCHEMA_VERSION, "price cache and charging decisions")
            )
        await self._connection.commit()

    async def disconnect(self) -> None:
        """Close connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            self.logger.info("Disconnected from SQLite database")

    async def health_check(self) -> bool:
        """Check if connection is alive."""
        if not self._connection:
            return False
        try:
            async with self._connection.execute("SELECT 1") as cursor:
                result = await cursor.fetchone()
                return result[0] == 1
        except aiosqlite.Error:
            return False

    async def save_price_cache(self, cache: Dict[str, Any]) -> bool:
        connection = self._require_connection()

        async def _do_save():
            await connection.execute(
                """
                INSERT OR REPLACE INTO price_cache (id, timestamp, current_price, forecast, updated_at)
                VALUES (1, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (
                    cache.get('timestamp'),
                    json_utils.dumps(cache.get('current_price')),
                    json_utils.dumps(cache.get('forecast') or []),
                )
            )
            await connection.commit()
            return True

        async with self._lock:
            try:
                return await self._execute_with_retry(_do_save)
            except aiosqlite.Error as e:
                self.logger.error(f"Error saving price cache: {e}")
                return False

    async def load_price_cache(self) -> Optional[Dict[str, Any]]:
        connection = self._require_connection()
        try:
            async with connection.execute(
                "SELECT timestamp, current_price, forecast FROM price_cache WHERE id = 1"
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            self.logger.error(f"Error loading price cache: {e}")
            return None

        if row is None:
            return None
        try:
            return {
                'timestamp': row['timestamp'],
                'current_price': json_utils.loads(row['current_price']) if row['current_price'] else None,
                'forecast': json_utils.loads(row['forecast']) if row['forecast'] else [],
            }
        except json_utils.JSONDecodeError as e:
            self.logger.error(f"Stored price cache is not valid JSON: {e}")
            return None

    async def save_decision(self, decision: Dict[str, Any]) -> bool:
        """Save a charging decision record."""
        connection = self._require_connection()

        async def _do_save():
            ts = decision.get('timestamp')
            if isinstance(ts, datetime):
                ts = ts.isoformat()
            await connection.execute(
                """
                INSERT INTO charging_decisions (timestamp, decision, mode, reason, conditions)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    ts or datetime.now().isoformat(),
                    decision.get('decision'),
                    decision.get('mode'),
                    decision.get('reason'),
                    json_utils.dumps(decision.get('conditions') or {}),
                )
            )
            await connection.commit()
            return True

        async with self._lock:
            try:
                return await self._execute_with_retry(_do_save)
            except aiosqlite.Error as e:
                self.logger.error(f"Error saving decision: {e}")
                return False

    async def get_decisions(self, start_time: datetime, end_time: datetime) -> List[Dict[str, Any]]:
        """Retrieve historical decisions."""
        connection = self._require_connection()
        query = """
        SELECT timestamp, decision, mode, reason, conditions FROM charging_decisions
        WHERE timestamp BETWEEN ? AND ?
        ORDER BY timestamp ASC
        """
        try:
            async with connection.execute(query, (start_time.isoformat(), end_time.isoformat())) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            self.logger.error(f"Error retrieving decisions: {e}")
            return []

        results = []
        for row in rows:
            record = dict(row)
            record['conditions'] = json_utils.loads(record['conditions']) if record['conditions'] else {}
            results.append(record)
        return results
