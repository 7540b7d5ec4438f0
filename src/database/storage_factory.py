from typing import Any, Dict

from .composite_storage import CompositeStorage
from .file_storage import FileStorage
from .sqlite_storage import SQLiteStorage
from .storage_interface import DataStorageInterface, StorageConfig


class StorageFactory:
    """
    Factory for creating storage instances based on configuration.
    """

    @staticmethod
    def create_storage(config_dict: Dict[str, Any]) -> DataStorageInterface:
        """
        Create a storage instance based on the provided configuration dictionary.

        Expected config structure:
        data_storage:
          file_storage:
            enabled: bool
            path: str
          database_storage:
            enabled: bool
            sqlite:
              path: str
        """
        config_dict = config_dict or {}
        file_config = config_dict.get('file_storage', {})
        file_enabled = file_config.get('enabled', True)
        db_config = config_dict.get('database_storage', {})
        db_enabled = db_config.get('enabled', False)

        storage_config = StorageConfig(
            db_path=db_config.get('sqlite', {}).get('path', 'data/solar_autopilot.db'),
            base_dir=file_config.get('path', 'data/storage'),
            max_retries=db_config.get('max_retries', 3),
            retry_delay=db_config.get('retry_delay', 0.1),
            enable_fallback=True,
            fallback_to_file=file_enabled,
        )

        if db_enabled and file_enabled:
            # Composite mode (DB + File)
            primary = SQLiteStorage(storage_config)
            secondary = FileStorage(storage_config)
            return CompositeStorage(primary, [secondary], storage_config)

        elif db_enabled:
            return SQLiteStorage(storage_config)

        else:
            # File only (default)
            return FileStorage(storage_config)
