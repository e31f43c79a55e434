#
# Ordered schema migrations, tracked with PRAGMA user_version
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#
# MIGRATIONS[n] takes a database from version n to version n + 1. Each entry
# is applied at most once, inside a single transaction together with the
# user_version bump.
#

_INDEX_TRIGGERS = (
    '''
    CREATE TRIGGER history_ai AFTER INSERT ON history
    BEGIN
        INSERT INTO history_fts (rowid, command, cwd)
        VALUES (new.id, new.command, new.cwd);
    END
    ''',
    '''
    CREATE TRIGGER history_ad AFTER DELETE ON history
    BEGIN
        INSERT INTO history_fts (history_fts, rowid, command, cwd)
        VALUES ('delete', old.id, old.command, old.cwd);
    END
    ''',
    '''
    CREATE TRIGGER history_au AFTER UPDATE ON history
    BEGIN
        INSERT INTO history_fts (history_fts, rowid, command, cwd)
        VALUES ('delete', old.id, old.command, old.cwd);
        INSERT INTO history_fts (rowid, command, cwd)
        VALUES (new.id, new.command, new.cwd);
    END
    ''',
)

_DROP_INDEX = (
    'DROP TRIGGER IF EXISTS history_ai',
    'DROP TRIGGER IF EXISTS history_ad',
    'DROP TRIGGER IF EXISTS history_au',
    'DROP TABLE IF EXISTS history_fts',
)

_CREATE_INDEX = (
    '''
    CREATE VIRTUAL TABLE history_fts USING fts5(
        command, cwd, content='history', content_rowid='id'
    )
    ''',
    # Bulk load from the canonical table
    "INSERT INTO history_fts (history_fts) VALUES ('rebuild')",
) + _INDEX_TRIGGERS

V0_TO_V1 = (
    '''
    CREATE TABLE history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        command TEXT NOT NULL,
        cwd TEXT,
        exit_code INTEGER NOT NULL DEFAULT -1
    )
    ''',
    'CREATE INDEX idx_history_timestamp ON history(timestamp)',
)

V1_TO_V2 = _DROP_INDEX + _CREATE_INDEX

V2_TO_V3 = _DROP_INDEX + (
    'ALTER TABLE history RENAME TO history_old',
    '''
    CREATE TABLE history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        command TEXT NOT NULL,
        cwd TEXT,
        exit_code INTEGER NOT NULL DEFAULT -1,
        UNIQUE (command, cwd, exit_code) ON CONFLICT REPLACE
    )
    ''',
    # Keep only the newest row of each (command, cwd, exit_code) triple
    '''
    INSERT INTO history (id, timestamp, command, cwd, exit_code)
    SELECT o.id, o.timestamp, o.command, o.cwd, o.exit_code
    FROM history_old o
    WHERE NOT EXISTS (
        SELECT 1 FROM history_old n
        WHERE n.command = o.command
          AND n.cwd IS o.cwd
          AND n.exit_code = o.exit_code
          AND (n.timestamp > o.timestamp OR (n.timestamp = o.timestamp AND n.id > o.id))
    )
    ORDER BY o.id
    ''',
    'DROP TABLE history_old',
    'CREATE INDEX idx_history_timestamp ON history(timestamp)',
) + _CREATE_INDEX

V3_TO_V4 = (
    'ALTER TABLE history ADD COLUMN duration REAL',
    '''
    CREATE TABLE pending_session (
        session_id TEXT PRIMARY KEY,
        command TEXT NOT NULL,
        cwd TEXT,
        timestamp_start REAL NOT NULL
    )
    ''',
    'CREATE INDEX idx_pending_session_start ON pending_session(timestamp_start)',
)

MIGRATIONS = (
    V0_TO_V1,
    V1_TO_V2,
    V2_TO_V3,
    V3_TO_V4,
)

LATEST_VERSION = len(MIGRATIONS)
