#
# SQLite history store: canonical table, full-text index, migrations
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import os
import time
import random
import sqlite3
import logging

from raven_history.errors import StorageError, MigrationError
from raven_history.migrations import MIGRATIONS, LATEST_VERSION
from raven_history.model import HistoryEntry

logger = logging.getLogger(__name__)

BUSY_TIMEOUT = 2.0
RETRY_ATTEMPTS = 5
RETRY_BASE_DELAY = 0.05

# Text relevance is divided by (1 + age / RECENCY_DECAY)
RECENCY_DECAY = 30 * 24 * 60 * 60
COMMAND_WEIGHT = 2.0
CWD_WEIGHT = 1.0

UPDATABLE_FIELDS = ("command", "cwd", "exit_code", "timestamp", "duration")
ORDERS = ("recent", "oldest", "rank")
FTS_COLUMNS = ("command", "cwd")

_SELECT = "SELECT h.id, h.timestamp, h.command, h.cwd, h.exit_code, h.duration"


def _is_locked(error):
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn, retrying with exponential backoff while the database is locked."""
    for attempt in range(RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if _is_locked(e) and attempt < RETRY_ATTEMPTS - 1:
                delay = RETRY_BASE_DELAY * (2 ** attempt) * (1 + random.random())
                logger.warning(f"database is locked (attempt {attempt + 1}/{RETRY_ATTEMPTS}), "
                               f"retrying in {delay:.2f}s")
                time.sleep(delay)
            else:
                raise


def safe_makedirs(path):
    """Create the database directory, raising StorageError when that is impossible"""
    try:
        os.makedirs(path, exist_ok=True)
    except (OSError, PermissionError) as e:
        logger.error(f"Could not create directory {path}: {e}")
        raise StorageError(f"Could not create directory {path}: {e}") from e


def prefix_upper_bound(prefix):
    """Smallest string greater than every string starting with prefix.

    Returns None when no such string exists (the last character is the
    highest code point).
    """
    if not prefix:
        return None
    code = ord(prefix[-1]) + 1
    if 0xD800 <= code <= 0xDFFF:
        code = 0xE000
    if code > 0x10FFFF:
        return None
    return prefix[:-1] + chr(code)


def fts_phrase(token):
    """Quote a token as an FTS5 prefix phrase."""
    return '"' + token.replace('"', '""') + '"*'


def is_indexable(token):
    return any(ch.isalnum() for ch in token)


class HistoryFilter:
    """Predicates and ordering for Store.match.

    text       free text; every token must match command or cwd (see columns)
    prefix     command must start with this exact string
    cwd        restrict to this directory, or its whole subtree if cwd_recursive
    exit_code  restrict to this exit status
    before     (timestamp, id) anchor, only strictly older entries
    after      (timestamp, id) anchor, only strictly newer entries
    exclude_command  skip entries with exactly this command
    order      "recent", "oldest" or "rank" (relevance + recency, needs text)
    """

    def __init__(self, text=None, prefix=None, columns=FTS_COLUMNS, cwd=None,
                 cwd_recursive=True, exit_code=None, before=None, after=None,
                 order="recent", limit=None, now=None, exclude_command=None):
        if order not in ORDERS:
            raise ValueError(f"unknown order {order!r}")
        for column in columns:
            if column not in FTS_COLUMNS:
                raise ValueError(f"unknown column {column!r}")
        self.text = text
        self.prefix = prefix
        self.columns = tuple(columns)
        self.cwd = cwd
        self.cwd_recursive = cwd_recursive
        self.exit_code = exit_code
        self.before = before
        self.after = after
        self.order = order
        self.limit = limit
        self.now = now
        self.exclude_command = exclude_command

    def tokens(self):
        return (self.text or "").split()

    def fts_expression(self):
        """FTS5 MATCH operand for the indexable tokens, or None."""
        phrases = []
        for token in self.tokens():
            if not is_indexable(token):
                continue
            phrase = fts_phrase(token)
            if len(self.columns) == 1:
                phrase = f"{self.columns[0]} : {phrase}"
            phrases.append(phrase)
        return " ".join(phrases) or None

    def literal_tokens(self):
        """Tokens the tokenizer would drop entirely, matched as substrings of columns."""
        return [token for token in self.tokens() if not is_indexable(token)]

    def to_sql(self):
        params = {}
        where = []
        fts = self.fts_expression()

        if fts:
            source = "FROM history_fts JOIN history h ON h.id = history_fts.rowid"
            where.append("history_fts MATCH :fts")
            params["fts"] = fts
        else:
            source = "FROM history h"

        for i, token in enumerate(self.literal_tokens()):
            matches = " OR ".join(f"instr(h.{column}, :lit{i}) > 0" for column in self.columns)
            where.append(f"({matches})")
            params[f"lit{i}"] = token

        if self.prefix:
            upper = prefix_upper_bound(self.prefix)
            params["prefix"] = self.prefix
            if upper is None:
                where.append("substr(h.command, 1, length(:prefix)) = :prefix")
            else:
                where.append("h.command >= :prefix AND h.command < :prefix_upper")
                params["prefix_upper"] = upper

        if self.cwd is not None:
            cwd = self.cwd.rstrip("/") or "/"
            params["cwd"] = cwd
            if self.cwd_recursive:
                base = cwd.rstrip("/") + "/"
                where.append("(h.cwd = :cwd OR substr(h.cwd, 1, :cwd_len) = :cwd_base)")
                params["cwd_base"] = base
                params["cwd_len"] = len(base)
            else:
                where.append("h.cwd = :cwd")

        if self.exit_code is not None:
            where.append("h.exit_code = :exit_code")
            params["exit_code"] = self.exit_code

        if self.exclude_command is not None:
            where.append("h.command != :exclude_command")
            params["exclude_command"] = self.exclude_command

        if self.before is not None:
            where.append("(h.timestamp < :before_ts OR (h.timestamp = :before_ts AND h.id < :before_id))")
            params["before_ts"], params["before_id"] = self.before

        if self.after is not None:
            where.append("(h.timestamp > :after_ts OR (h.timestamp = :after_ts AND h.id > :after_id))")
            params["after_ts"], params["after_id"] = self.after

        if self.order == "rank" and fts:
            order_by = (f"bm25(history_fts, {COMMAND_WEIGHT}, {CWD_WEIGHT}) "
                        f"/ (1.0 + max(0, :now - h.timestamp) / {float(RECENCY_DECAY)}) ASC, "
                        "h.timestamp DESC, h.id DESC")
            params["now"] = int(self.now if self.now is not None else time.time())
        elif self.order == "oldest":
            order_by = "h.timestamp ASC, h.id ASC"
        else:
            order_by = "h.timestamp DESC, h.id DESC"

        sql = f"{_SELECT} {source}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += f" ORDER BY {order_by}"
        if self.limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(self.limit)
        return sql, params


class HistoryStore:
    """The history database.

    Owns the on-disk schema. Every write runs in one BEGIN IMMEDIATE
    transaction together with its full-text index updates (done by triggers).
    sqlite3.Error never escapes: it is raised as StorageError.
    """

    def __init__(self, db_file, timeout=BUSY_TIMEOUT):
        self.db_file = db_file
        self.timeout = timeout
        self.conn = None

    def open(self, migrate=True):
        """Connect, configure the connection and bring the schema up to date."""
        if self.conn is not None:
            return self
        if self.db_file != ":memory:":
            safe_makedirs(os.path.dirname(os.path.abspath(self.db_file)))
        try:
            conn = sqlite3.connect(self.db_file, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as e:
            logger.error(f"Could not connect to database {self.db_file}: {e}")
            raise StorageError(f"Could not open {self.db_file}: {e}") from e

        conn.row_factory = sqlite3.Row
        self.conn = conn
        try:
            _retry_on_locked(conn.execute, "PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA recursive_triggers = ON")
        except sqlite3.Error as e:
            self.close()
            logger.error(f"Could not configure database {self.db_file}: {e}")
            raise StorageError(f"Could not configure {self.db_file}: {e}") from e

        if migrate:
            try:
                self.migrate()
            except StorageError:
                self.close()
                raise
        return self

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _require_open(self):
        if self.conn is None:
            raise StorageError("database is not open")
        return self.conn

    # -- transactions ------------------------------------------------------

    def _transaction_once(self, fn):
        conn = self._require_open()
        conn.execute("BEGIN IMMEDIATE")
        try:
            result = fn(conn)
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        return result

    def run_in_transaction(self, fn):
        """Run fn(conn) as one atomic unit of work.

        Lock contention is retried with backoff; any other failure, or
        contention that outlasts the retries, rolls back and raises
        StorageError.
        """
        try:
            return _retry_on_locked(self._transaction_once, fn)
        except sqlite3.Error as e:
            logger.error(f"Write to {self.db_file} failed: {e}")
            raise StorageError(str(e)) from e

    def read(self, sql, params=()):
        conn = self._require_open()
        try:
            return _retry_on_locked(lambda: conn.execute(sql, params).fetchall())
        except sqlite3.Error as e:
            logger.error(f"Read from {self.db_file} failed: {e}")
            raise StorageError(str(e)) from e

    # -- schema ------------------------------------------------------------

    def schema_version(self):
        return self.read("PRAGMA user_version")[0][0]

    def _apply_migration(self, conn, version):
        # Another process may have migrated while we waited for the lock
        current = conn.execute("PRAGMA user_version").fetchone()[0]
        if current != version:
            return current
        for statement in MIGRATIONS[version]:
            conn.execute(statement)
        conn.execute(f"PRAGMA user_version = {version + 1}")
        return version + 1

    def migrate(self):
        """Apply pending migrations in order; a no-op on an up-to-date database."""
        version = self.schema_version()
        if version > LATEST_VERSION:
            raise MigrationError(f"{self.db_file} has schema version {version}, "
                                 f"newer than supported version {LATEST_VERSION}")
        while version < LATEST_VERSION:
            logger.debug(f"Migrating {self.db_file} from version {version}")
            try:
                version = self.run_in_transaction(lambda conn, v=version: self._apply_migration(conn, v))
            except StorageError as e:
                logger.error(f"Migration from version {version} failed: {e}")
                raise MigrationError(f"migration v{version} -> v{version + 1} failed: {e}") from e
        logger.debug(f"{self.db_file} is at schema version {version}")
        return version

    # -- writes ------------------------------------------------------------

    def replace_row(self, conn, command, cwd, exit_code, timestamp, duration=None):
        """Dedup-replace inside an open transaction; returns the new row id.

        The explicit delete covers NULL cwd values, which a UNIQUE constraint
        never considers equal.
        """
        conn.execute(
            "DELETE FROM history WHERE command = ? AND cwd IS ? AND exit_code = ?",
            (command, cwd, exit_code),
        )
        cursor = conn.execute(
            "INSERT INTO history (timestamp, command, cwd, exit_code, duration) VALUES (?, ?, ?, ?, ?)",
            (int(timestamp), command, cwd, exit_code, duration),
        )
        return cursor.lastrowid

    def insert_or_replace(self, command, cwd, exit_code, timestamp=None, duration=None):
        if timestamp is None:
            timestamp = time.time()
        return self.run_in_transaction(
            lambda conn: self.replace_row(conn, command, cwd, exit_code, timestamp, duration))

    def delete(self, entry_id):
        """Delete one entry; returns False if it did not exist."""
        def _delete(conn):
            return conn.execute("DELETE FROM history WHERE id = ?", (entry_id,)).rowcount
        deleted = self.run_in_transaction(_delete)
        logger.debug(f"Deleted history entry {entry_id}: {deleted} rows")
        return deleted == 1

    def update(self, entry_id, **fields):
        """Overwrite fields of an existing entry.

        If the result collides with another entry's dedup triple, that
        other entry is removed, as on insert.
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"cannot update {', '.join(sorted(unknown))}")
        if not fields:
            return False

        def _update(conn):
            row = conn.execute("SELECT * FROM history WHERE id = ?", (entry_id,)).fetchone()
            if row is None:
                return False
            merged = {name: row[name] for name in UPDATABLE_FIELDS}
            merged.update(fields)
            conn.execute(
                "DELETE FROM history WHERE command = ? AND cwd IS ? AND exit_code = ? AND id != ?",
                (merged["command"], merged["cwd"], merged["exit_code"], entry_id),
            )
            assignments = ", ".join(f"{name} = :{name}" for name in fields)
            conn.execute(f"UPDATE history SET {assignments} WHERE id = :id", dict(fields, id=entry_id))
            return True

        return self.run_in_transaction(_update)

    # -- reads -------------------------------------------------------------

    def get(self, entry_id):
        rows = self.read(f"{_SELECT} FROM history h WHERE h.id = ?", (entry_id,))
        return HistoryEntry.from_row(rows[0]) if rows else None

    def count(self):
        return self.read("SELECT COUNT(*) FROM history")[0][0]

    def match(self, history_filter):
        """Entries matching a HistoryFilter, in its order."""
        sql, params = history_filter.to_sql()
        logger.debug(f"match: {sql} {params}")
        return [HistoryEntry.from_row(row) for row in self.read(sql, params)]

    def scan(self, limit=None):
        """All entries, most recent first."""
        return self.match(HistoryFilter(limit=limit))

    def indexed_ids(self):
        """Row ids that have at least one term in the full-text index."""
        conn = self._require_open()
        try:
            conn.execute("CREATE VIRTUAL TABLE IF NOT EXISTS temp.history_fts_vocab "
                         "USING fts5vocab(main, 'history_fts', 'instance')")
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        return {row[0] for row in self.read("SELECT DISTINCT doc FROM temp.history_fts_vocab")}

    def check_index(self):
        """Compare the full-text index with the canonical table.

        Returns ids indexed without a row ("orphaned"), ids of rows with
        indexable text but no index terms ("missing"), and the result of
        the FTS5 integrity check.
        """
        indexed = self.indexed_ids()
        rows = self.read("SELECT id, command, cwd FROM history")
        present = {row["id"] for row in rows}
        expected = {row["id"] for row in rows
                    if is_indexable(row["command"] or "") or is_indexable(row["cwd"] or "")}
        try:
            self.run_in_transaction(lambda conn: conn.execute(
                "INSERT INTO history_fts (history_fts, rank) VALUES ('integrity-check', 1)"))
            integrity_ok = True
        except StorageError as e:
            logger.error(f"Full-text index integrity check failed: {e}")
            integrity_ok = False
        return {
            "orphaned": sorted(indexed - present),
            "missing": sorted(expected - indexed),
            "integrity_ok": integrity_ok,
        }

    def stats(self, limit=5):
        """Usage statistics"""
        total = self.count()
        directories = self.read("SELECT COUNT(DISTINCT cwd) FROM history")[0][0]
        date_range = self.read("SELECT MIN(timestamp), MAX(timestamp) FROM history")[0]
        top_commands = self.read(
            "SELECT command, COUNT(*) AS n FROM history GROUP BY command "
            "ORDER BY n DESC, MAX(timestamp) DESC LIMIT ?", (limit,))
        top_directories = self.read(
            "SELECT cwd, COUNT(*) AS n FROM history WHERE cwd IS NOT NULL GROUP BY cwd "
            "ORDER BY n DESC, MAX(timestamp) DESC LIMIT ?", (limit,))
        failed = self.read("SELECT COUNT(*) FROM history WHERE exit_code != 0")[0][0]
        return {
            'total_entries': total,
            'unique_directories': directories,
            'failed_entries': failed,
            'date_range': tuple(date_range) if total else None,
            'top_commands': [(row[0], row[1]) for row in top_commands],
            'top_directories': [(row[0], row[1]) for row in top_directories],
        }
