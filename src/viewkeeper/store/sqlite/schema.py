"""
SQL schema constants for the SQLite backends.

Defines the tables for the order view, the applied event-id ledger, the
stash, the dead-letter sink and the stream log.
"""

VIEW_SCHEMA = """
CREATE TABLE IF NOT EXISTS order_view (
    entity_key TEXT PRIMARY KEY,
    customer_id TEXT,
    currency TEXT,
    status TEXT NOT NULL,
    lines TEXT NOT NULL DEFAULT '{}',
    item_count INTEGER NOT NULL DEFAULT 0,
    total TEXT NOT NULL DEFAULT '0',
    total_key TEXT NOT NULL DEFAULT '',
    cancel_reason TEXT,
    created_at TEXT,
    updated_at TEXT,
    last_applied_sequence INTEGER NOT NULL,
    last_applied_event_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_order_view_status ON order_view(status, updated_at);

CREATE TABLE IF NOT EXISTS order_view_applied_events (
    entity_key TEXT NOT NULL,
    event_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    applied_at TEXT DEFAULT (datetime('now', 'utc')),
    PRIMARY KEY (entity_key, event_id)
);
"""

STASH_SCHEMA = """
CREATE TABLE IF NOT EXISTS view_stash (
    entity_key TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    envelope TEXT NOT NULL,
    received_at TEXT NOT NULL,
    PRIMARY KEY (entity_key, sequence)
);

CREATE INDEX IF NOT EXISTS idx_view_stash_received ON view_stash(received_at);
"""

DEAD_LETTER_SCHEMA = """
CREATE TABLE IF NOT EXISTS dead_letters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    reason TEXT NOT NULL,
    error TEXT,
    payload BLOB NOT NULL,
    entity_key TEXT,
    event_id TEXT,
    sequence INTEGER,
    partition INTEGER,
    stream_offset INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_dead_letters_reason ON dead_letters(reason, created_at);
"""

STREAM_SCHEMA = """
CREATE TABLE IF NOT EXISTS stream_meta (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_records (
    partition INTEGER NOT NULL,
    record_offset INTEGER NOT NULL,
    record_key TEXT NOT NULL,
    value BLOB NOT NULL,
    appended_at TEXT NOT NULL,
    PRIMARY KEY (partition, record_offset)
);

CREATE TABLE IF NOT EXISTS stream_offsets (
    consumer_group TEXT NOT NULL,
    partition INTEGER NOT NULL,
    committed_offset INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (consumer_group, partition)
);
"""
