import pytest
import asyncio
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from autopilot_exceptions import PersistenceError
from database.composite_storage import CompositeStorage
from database.file_storage import FileStorage
from database.sqlite_storage import SQLiteStorage
from database.storage_factory import StorageFactory
from database.storage_interface import StorageConfig

from conftest import T0

# Test data
SAMPLE_PRICE_CACHE = {
    "current_price": {"total": 25.12, "energy": 18.0, "tax": 7.12, "level": "CHEAP",
                      "starts_at": T0.isoformat(), "currency": "cent"},
    "forecast": [
        {"total": 25.12, "energy": 18.0, "tax": 7.12, "level": "CHEAP",
         "starts_at": T0.isoformat(), "currency": "cent"},
        {"total": 31.5, "energy": 24.0, "tax": 7.5, "level": "NORMAL",
         "starts_at": (T0 + timedelta(hours=1)).isoformat(), "currency": "cent"},
    ],
    "timestamp": T0.isoformat(),
}

SAMPLE_DECISION = {
    "decision": "START_CHARGING",
    "mode": "Utility first",
    "reason": "Cheap grid, no solar",
    "timestamp": T0.isoformat(),
    "conditions": {"pv_power": 0, "load": 500, "price_level": "CHEAP",
                   "battery_soc": 40, "grid_voltage": 230},
}


def _decision_at(minutes, **overrides):
    record = dict(SAMPLE_DECISION, timestamp=(T0 + timedelta(minutes=minutes)).isoformat())
    record.update(overrides)
    return record


@pytest.fixture
def temp_storage_config(tmp_path):
    """Create a temporary storage configuration."""
    db_path = tmp_path / "test_db.sqlite"

    config_dict = {
        "file_storage": {"enabled": False},
        "database_storage": {
            "enabled": True,
            "sqlite": {
                "path": str(db_path)
            }
        }
    }

    return config_dict, db_path


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_sqlite_storage_flow(temp_storage_config):
    """Test the full flow of SQLiteStorage: Connect -> Write -> Read -> Disconnect."""
    config_dict, db_path = temp_storage_config

    # 1. Create Storage
    storage = StorageFactory.create_storage(config_dict)
    assert storage.__class__.__name__ == "SQLiteStorage"

    # 2. Connect
    assert await storage.connect() is True
    assert await storage.health_check() is True
    assert db_path.exists()

    # 3. Write Data
    assert await storage.save_price_cache(SAMPLE_PRICE_CACHE) is True
    assert await storage.save_decision(SAMPLE_DECISION) is True

    # 4. Verify DB Write
    cache = await storage.load_price_cache()
    assert cache == SAMPLE_PRICE_CACHE

    decisions = await storage.get_decisions(T0 - timedelta(hours=1), T0 + timedelta(hours=1))
    assert len(decisions) == 1
    assert decisions[0]['mode'] == "Utility first"
    assert decisions[0]['conditions']['battery_soc'] == 40

    # 5. Disconnect
    await storage.disconnect()
    assert await storage.health_check() is False


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_storage_factory_modes(tmp_path):
    """Factory picks file, sqlite or composite storage from the flags."""
    db_path = str(tmp_path / "db.sqlite")

    storage = StorageFactory.create_storage({})
    assert storage.__class__.__name__ == "FileStorage"

    storage = StorageFactory.create_storage({
        "file_storage": {"enabled": False},
        "database_storage": {"enabled": True, "sqlite": {"path": db_path}},
    })
    assert storage.__class__.__name__ == "SQLiteStorage"

    storage = StorageFactory.create_storage({
        "file_storage": {"enabled": True, "path": str(tmp_path / "files")},
        "database_storage": {"enabled": True, "sqlite": {"path": db_path}},
    })
    assert isinstance(storage, CompositeStorage)
    assert isinstance(storage.secondaries[0], FileStorage)


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_price_cache_is_replaced(storage):
    """Only the latest cache is kept."""
    assert await storage.load_price_cache() is None

    await storage.save_price_cache(SAMPLE_PRICE_CACHE)
    newer = dict(SAMPLE_PRICE_CACHE, forecast=[], timestamp=(T0 + timedelta(hours=1)).isoformat())
    await storage.save_price_cache(newer)

    cache = await storage.load_price_cache()
    assert cache['forecast'] == []
    assert cache['timestamp'] == newer['timestamp']


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_decision_operations(storage):
    """Decisions come back ordered and filtered by time range."""
    for minutes in (30, 0, 90):
        assert await storage.save_decision(_decision_at(minutes)) is True

    decisions = await storage.get_decisions(T0, T0 + timedelta(hours=1))
    assert [d['timestamp'] for d in decisions] == [
        T0.isoformat(), (T0 + timedelta(minutes=30)).isoformat()
    ]


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_file_storage_flow(storage_config):
    storage = FileStorage(storage_config)
    assert await storage.connect() is True
    assert await storage.health_check() is True

    assert await storage.save_price_cache(SAMPLE_PRICE_CACHE) is True
    assert await storage.load_price_cache() == SAMPLE_PRICE_CACHE

    await storage.save_decision(_decision_at(0))
    await storage.save_decision(_decision_at(60 * 24, mode="Solar first"))

    assert os.path.exists(os.path.join(storage_config.base_dir, "decisions_2025-06-02.json"))
    assert os.path.exists(os.path.join(storage_config.base_dir, "decisions_2025-06-03.json"))

    decisions = await storage.get_decisions(T0 - timedelta(hours=1), T0 + timedelta(days=2))
    assert [d['mode'] for d in decisions] == ["Utility first", "Solar first"]


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_file_storage_bounds_decisions(storage_config):
    storage_config.max_decisions = 3
    storage = FileStorage(storage_config)
    await storage.connect()

    for minutes in range(5):
        await storage.save_decision(_decision_at(minutes, reason=f"tick {minutes}"))

    decisions = await storage.get_decisions(T0, T0 + timedelta(hours=1))
    assert [d['reason'] for d in decisions] == ["tick 2", "tick 3", "tick 4"]


@pytest.mark.asyncio
@pytest.mark.timeout(10)
@pytest.mark.parametrize("backend", [SQLiteStorage, FileStorage])
async def test_unconnected_storage_raises(storage_config, backend):
    storage = backend(storage_config)

    with pytest.raises(PersistenceError):
        await storage.save_price_cache(SAMPLE_PRICE_CACHE)
    with pytest.raises(PersistenceError):
        await storage.load_price_cache()
    with pytest.raises(PersistenceError):
        await storage.save_decision(SAMPLE_DECISION)
    with pytest.raises(PersistenceError):
        await storage.get_decisions(T0, T0)


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_composite_writes_everywhere_and_falls_back(storage_config):
    primary = SQLiteStorage(storage_config)
    secondary = FileStorage(storage_config)
    composite = CompositeStorage(primary, [secondary], storage_config)

    assert await composite.connect() is True
    assert await composite.save_price_cache(SAMPLE_PRICE_CACHE) is True
    assert await primary.load_price_cache() == SAMPLE_PRICE_CACHE
    assert await secondary.load_price_cache() == SAMPLE_PRICE_CACHE

    # Primary goes away: writes and reads continue on the file backend
    await primary.disconnect()
    assert await composite.save_decision(SAMPLE_DECISION) is True
    assert await composite.load_price_cache() == SAMPLE_PRICE_CACHE
    assert len(await composite.get_decisions(T0, T0)) == 1

    await composite.disconnect()


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_composite_without_any_backend_raises(storage_config):
    composite = CompositeStorage(SQLiteStorage(storage_config), [FileStorage(storage_config)], storage_config)

    with pytest.raises(PersistenceError):
        await composite.save_decision(SAMPLE_DECISION)
    with pytest.raises(PersistenceError):
        await composite.load_price_cache()


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_concurrent_decision_writes(storage):
    """Concurrent saves are serialized without losing records."""
    results = await asyncio.gather(*[storage.save_decision(_decision_at(m)) for m in range(10)])

    assert all(results)
    assert len(await storage.get_decisions(T0, T0 + timedelta(hours=1))) == 10


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_file_storage_concurrent_decision_writes(storage_config):
    """Overlapping appends to one daily file keep every record."""
    storage = FileStorage(storage_config)
    await storage.connect()

    results = await asyncio.gather(*[storage.save_decision(_decision_at(m)) for m in range(20)])

    assert all(results)
    stored = await storage.get_decisions(T0, T0 + timedelta(hours=1))
    assert len(stored) == 20
    assert not [n for n in os.listdir(storage_config.base_dir) if n.endswith('.tmp')]


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_file_storage_concurrent_price_cache_writes(storage_config):
    storage = FileStorage(storage_config)
    await storage.connect()

    caches = [dict(SAMPLE_PRICE_CACHE, timestamp=(T0 + timedelta(minutes=m)).isoformat()) for m in range(10)]
    results = await asyncio.gather(*[storage.save_price_cache(c) for c in caches])

    assert all(results)
    assert await storage.load_price_cache() in caches
