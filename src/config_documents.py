#!/usr/bin/env python3
"""
Config Documents - persisted JSON records edited by the user

Each document (price config, warning rules + history, notification settings)
is a single JSON file under the data directory carrying a ``schema_version``.
Loading never fails: an unparsable or schema-invalid document is copied to
``<file>.corrupted.<epoch ms>`` and replaced with explicit defaults.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Tuple, TypeVar

import aiofiles
import aiofiles.os

import json_utils
from autopilot_exceptions import ConfigError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Field type tuples used by the validators
NUMBER = (int, float)
OPTIONAL_NUMBER = (int, float, type(None))
STRING = (str,)
OPTIONAL_STRING = (str, type(None))
BOOLEAN = (bool,)
LIST = (list, tuple)

T = TypeVar('T')


def validate_fields(data: Dict[str, Any], field_types: Dict[str, Tuple[type, ...]], context: str) -> None:
    """
    Reject unknown keys and type-mismatched values.

    Booleans are not accepted where a number is expected.

    Raises:
        ValidationError: on the first offending field
    """
    if not isinstance(data, dict):
        raise ValidationError(f"{context} must be an object, got {type(data).__name__}")

    unknown = sorted(set(data) - set(field_types))
    if unknown:
        raise ValidationError(f"Unknown {context} fields: {', '.join(unknown)}")

    for key, value in data.items():
        expected = field_types[key]
        if isinstance(value, bool) and bool not in expected:
            raise ValidationError(f"{context}.{key} must be {_describe(expected)}, got bool")
        if not isinstance(value, expected):
            raise ValidationError(
                f"{context}.{key} must be {_describe(expected)}, got {type(value).__name__}"
            )


def _describe(types: Iterable[type]) -> str:
    return ' or '.join('null' if t is type(None) else t.__name__ for t in types)


def check_schema_version(data: Dict[str, Any], context: str) -> None:
    version = data.get('schema_version', SCHEMA_VERSION)
    if version != SCHEMA_VERSION:
        raise ConfigError(f"{context} schema version {version!r} is not supported (expected {SCHEMA_VERSION})")


class ConfigDocumentStore:
    """Reads and writes JSON documents with a single writer per document"""

    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self._locks: Dict[str, asyncio.Lock] = {}

    def path_for(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    async def load(self, name: str, defaults: Callable[[], Dict[str, Any]],
                   parse: Callable[[Dict[str, Any]], T]) -> T:
        """
        Load and parse a document.

        Args:
            name: Document name (file stem)
            defaults: Factory for the explicit default document
            parse: Validator/converter; raises ValidationError or ConfigError when
                the stored content does not match the schema

        Returns:
            Parsed document (defaults when missing or corrupted)
        """
        path = self.path_for(name)
        async with self._lock(name):
            if not path.exists():
                logger.info(f"No {name} document found - creating defaults")
                default_doc = defaults()
                await self._write_unlocked(name, default_doc, log_failure=True)
                return parse(default_doc)

            try:
                async with aiofiles.open(path, 'rb') as f:
                    content = await f.read()
            except OSError as e:
                logger.error(f"Error reading {path}: {e} - using defaults")
                return parse(defaults())

            try:
                document = json_utils.loads(content)
                result = parse(document)
                logger.info(f"✅ Loaded valid {name} document")
                return result
            except (json_utils.JSONDecodeError, ValidationError, ConfigError) as e:
                logger.error(f"❌ {name} document is corrupted: {e}")
                await self._backup_corrupted(path, content)

            default_doc = defaults()
            await self._write_unlocked(name, default_doc, log_failure=True)
            return parse(default_doc)

    async def save(self, name: str, document: Dict[str, Any]) -> None:
        """
        Persist a document atomically.

        Raises:
            PersistenceError: If the file could not be written
        """
        async with self._lock(name):
            await self._write_unlocked(name, document)

    async def _write_unlocked(self, name: str, document: Dict[str, Any], log_failure: bool = False) -> None:
        path = self.path_for(name)
        tmp_path = path.with_suffix(path.suffix + '.tmp')
        try:
            await aiofiles.os.makedirs(self.data_dir, exist_ok=True)
            async with aiofiles.open(tmp_path, 'w') as f:
                await f.write(json_utils.dumps(document, indent=True))
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            if log_failure:
                logger.warning(f"⚠️  Could not save {name} document: {e}")
                return
            raise PersistenceError(f"Could not save {name} document to {path}: {e}") from e

    async def _backup_corrupted(self, path: Path, content: bytes) -> None:
        backup = path.with_name(f"{path.name}.corrupted.{int(time.time() * 1000)}")
        try:
            async with aiofiles.open(backup, 'wb') as f:
                await f.write(content)
            logger.info(f"💾 Corrupted file backed up to: {backup}")
        except OSError as e:
            logger.error(f"Could not back up corrupted document {path}: {e}")
