
# SQL Schema Definitions for the solar autopilot store

SCHEMA_VERSION = 1  # Increment when schema changes

# Table: schema_version
# Tracks database schema version for migrations
CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT CURRENT_TIMESTAMP,
    description TEXT
);
"""

# Table: price_cache
# Single row holding the last fetched price cache (monetary values in cents)
CREATE_PRICE_CACHE_TABLE = """
CREATE TABLE IF NOT EXISTS price_cache (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    timestamp TEXT,
    current_price TEXT, -- JSON stored as text
    forecast TEXT,      -- JSON stored as text
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

# Table: charging_decisions
# Every computed charging decision, published or not
CREATE_DECISIONS_TABLE = """
CREATE TABLE IF NOT EXISTS charging_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    decision TEXT NOT NULL,
    mode TEXT NOT NULL,
    reason TEXT,
    conditions TEXT, -- JSON stored as text
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""

ALL_TABLES = [
    CREATE_SCHEMA_VERSION_TABLE,
    CREATE_PRICE_CACHE_TABLE,
    CREATE_DECISIONS_TABLE,
]

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_decisions_timestamp ON charging_decisions(timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_decisions_mode ON charging_decisions(mode);",
]
