import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from autopilot_exceptions import PersistenceError
from .storage_interface import DataStorageInterface, StorageConfig


class CompositeStorage(DataStorageInterface):
    """
    Composite storage implementation that writes to multiple backends
    and reads from the primary backend with fallback.
    """

    def __init__(self, primary: DataStorageInterface, secondaries: List[DataStorageInterface], config: StorageConfig):
        self.primary = primary
        self.secondaries = secondaries
        self.config = config
        self.logger = logging.getLogger(__name__)

    @property
    def backends(self) -> List[DataStorageInterface]:
        return [self.primary] + list(self.secondaries)

    async def connect(self) -> bool:
        """Connect to all backends."""
        results = await asyncio.gather(*[b.connect() for b in self.backends], return_exceptions=True)

        if results[0] is not True:
            self.logger.error("Primary storage connection failed")

        # Connected if at least one storage is working
        return any(r is True for r in results)

    async def disconnect(self) -> None:
        await asyncio.gather(*[b.disconnect() for b in self.backends], return_exceptions=True)

    async def health_check(self) -> bool:
        """Healthy if the primary is, or any secondary when fallback is on."""
        if await self.primary.health_check():
            return True
        if self.config.enable_fallback:
            results = await asyncio.gather(*[s.health_check() for s in self.secondaries])
            return any(results)
        return False

    async def _write_to_all(self, method_name: str, *args, **kwargs) -> bool:
        """Write to all backends concurrently."""
        results = await asyncio.gather(
            *[getattr(b, method_name)(*args, **kwargs) for b in self.backends],
            return_exceptions=True
        )
        for backend, result in zip(self.backends, results):
            if isinstance(result, Exception):
                self.logger.warning(f"{type(backend).__name__}.{method_name} failed: {result}")

        if results[0] is True:
            return True

        if self.config.enable_fallback and any(r is True for r in results[1:]):
            self.logger.warning(f"Primary storage failed for {method_name}, but secondary succeeded.")
            return True

        if all(isinstance(r, PersistenceError) for r in results):
            raise PersistenceError(f"No storage backend available for {method_name}")
        return False

    async def _read_with_fallback(self, method_name: str, empty: Any, *args, **kwargs) -> Any:
        """Read from primary with fallback to secondaries."""
        backends = self.backends if self.config.enable_fallback else [self.primary]
        unavailable = 0
        for backend in backends:
            try:
                result = await getattr(backend, method_name)(*args, **kwargs)
            except PersistenceError as e:
                unavailable += 1
                self.logger.warning(f"{type(backend).__name__}.{method_name} unavailable: {e}")
                continue
            if result:
                if backend is not self.primary:
                    self.logger.info(f"Fallback read successful from secondary for {method_name}")
                return result

        if unavailable == len(backends):
            raise PersistenceError(f"No storage backend available for {method_name}")
        return empty

    async def save_price_cache(self, cache: Dict[str, Any]) -> bool:
        return await self._write_to_all('save_price_cache', cache)

    async def load_price_cache(self) -> Optional[Dict[str, Any]]:
        return await self._read_with_fallback('load_price_cache', None)

    async def save_decision(self, decision: Dict[str, Any]) -> bool:
        return await self._write_to_all('save_decision', decision)

    async def get_decisions(self, start_time: datetime, end_time: datetime) -> List[Dict[str, Any]]:
        return await self._read_with_fallback('get_decisions', [], start_time, end_time)
