"""
conftest.py

Shared fixtures: temporary data directories, storage configs and a factory
for telemetry snapshots.
"""

from pathlib import Path
import sys

# Ensure project `src/` is on sys.path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

__all__ = []

import tempfile
import os
from datetime import datetime, timezone

import yaml
import pytest

from config_documents import ConfigDocumentStore
from database.storage_interface import StorageConfig
from database.sqlite_storage import SQLiteStorage
from energy_models import SystemStateSnapshot


T0 = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db():
	"""Create a temporary database file for tests."""
	with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
		db_path = f.name

	try:
		yield db_path
	finally:
		try:
			os.unlink(db_path)
		except OSError:
			pass


@pytest.fixture
def storage_config(temp_db, tmp_path):
	"""Common StorageConfig for storage tests."""
	return StorageConfig(
		db_path=temp_db,
		base_dir=str(tmp_path / "storage"),
		max_retries=3,
		retry_delay=0.05,
		enable_fallback=True,
		fallback_to_file=True,
	)


@pytest.fixture
async def storage(storage_config):
	"""Create a connected SQLiteStorage instance."""
	s = SQLiteStorage(storage_config)
	await s.connect()
	yield s
	await s.disconnect()


@pytest.fixture
def documents(tmp_path):
	"""Config document store in an isolated data directory."""
	return ConfigDocumentStore(str(tmp_path / "data"))


@pytest.fixture
def snapshot():
	"""
	Factory for telemetry snapshots.

	Example:
		def test_x(snapshot):
			s = snapshot(battery_soc=40, pv_power=0)
	"""
	def _create(timestamp=T0, **values):
		defaults = {'battery_soc': 50.0, 'pv_power': 0.0, 'load': 500.0,
					'grid_power': 0.0, 'grid_voltage': 230.0}
		defaults.update(values)
		return SystemStateSnapshot(timestamp=timestamp, **defaults)

	return _create


@pytest.fixture
def custom_config():
	"""
	Fixture that provides a factory function for creating temporary YAML
	service configuration files. All created files are removed afterwards.
	"""
	created_files = []

	def _create_config(config_dict):
		config_file = tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False)
		yaml.dump(config_dict, config_file)
		config_file.close()
		created_files.append(config_file.name)
		return config_file.name

	yield _create_config

	for file_path in created_files:
		try:
			os.unlink(file_path)
		except OSError:
			pass
