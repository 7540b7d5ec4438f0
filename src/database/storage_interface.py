from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class StorageConfig:
    db_path: Optional[str] = None
    base_dir: str = "data/storage"
    max_retries: int = 3
    retry_delay: float = 0.1
    enable_fallback: bool = True
    fallback_to_file: bool = False
    # Decisions kept by the file backend (0 = keep all)
    max_decisions: int = 10000


class DataStorageInterface(ABC):
    """
    Durable store for the price cache and the decision log.

    Every method except ``connect``/``disconnect``/``health_check`` raises
    PersistenceError when the backend is not connected; other failures are
    logged and reported as False / empty results.
    """

    @abstractmethod
    async def connect(self) -> bool:
        """Establish connection to the storage backend."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the storage backend."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage is healthy and accessible."""
        pass

    @abstractmethod
    async def save_price_cache(self, cache: Dict[str, Any]) -> bool:
        """Replace the stored price cache (current price, forecast, timestamp)."""
        pass

    @abstractmethod
    async def load_price_cache(self) -> Optional[Dict[str, Any]]:
        """Return the stored price cache, or None if nothing was stored."""
        pass

    @abstractmethod
    async def save_decision(self, decision: Dict[str, Any]) -> bool:
        """Append a decision log record."""
        pass

    @abstractmethod
    async def get_decisions(self, start_time: datetime, end_time: datetime) -> List[Dict[str, Any]]:
        """Retrieve decision records with timestamps in [start_time, end_time]."""
        pass
