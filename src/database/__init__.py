from .composite_storage import CompositeStorage
from .file_storage import FileStorage
from .sqlite_storage import SQLiteStorage
from .storage_factory import StorageFactory
from .storage_interface import DataStorageInterface, StorageConfig
