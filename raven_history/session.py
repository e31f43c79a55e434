#
# Two-phase command capture: start (preexec) and end (precmd)
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import sys
import time
import uuid
import logging

from raven_history.errors import StorageError
from raven_history.model import PendingSession

logger = logging.getLogger(__name__)

# Pending sessions older than this are reaped on the next start
PENDING_MAX_AGE = 7 * 24 * 60 * 60


def new_session_id():
    return uuid.uuid4().hex


def report_failure(message):
    """Make a swallowed capture failure visible without failing the hook"""
    logger.error(message)
    try:
        print(f"raven: {message}", file=sys.stderr)
    except OSError:
        pass


class SessionTracker:
    """Pairs the start and end of a command across shell processes.

    Pending sessions live in the pending_session table so that either half
    of the pair can be issued by any process.
    """

    def __init__(self, store, max_age=PENDING_MAX_AGE):
        self.store = store
        self.max_age = max_age

    def start(self, command, cwd, now=None):
        """Record a command about to run; returns its session id, or None if capture failed."""
        if now is None:
            now = time.time()
        pending = PendingSession(new_session_id(), command, cwd, now)

        def _start(conn):
            conn.execute("DELETE FROM pending_session WHERE timestamp_start < ?", (now - self.max_age,))
            conn.execute(
                "INSERT INTO pending_session (session_id, command, cwd, timestamp_start) VALUES (?, ?, ?, ?)",
                (pending.session_id, pending.command, pending.cwd, pending.timestamp_start),
            )

        try:
            self.store.run_in_transaction(_start)
        except StorageError as e:
            report_failure(f"could not record command start: {e}")
            return None
        logger.debug(f"Started session {pending.session_id} for {command!r}")
        return pending.session_id

    def end(self, session_id, exit_code, now=None):
        """Finalize a pending session into a history entry.

        Unknown, stale or already finalized ids are a no-op and return None.
        Otherwise returns the id of the stored entry.
        """
        if not session_id or not session_id.strip():
            return None
        session_id = session_id.strip()
        if now is None:
            now = time.time()

        def _end(conn):
            row = conn.execute(
                "SELECT session_id, command, cwd, timestamp_start FROM pending_session WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if row is None:
                return None
            pending = PendingSession.from_row(row)
            conn.execute("DELETE FROM pending_session WHERE session_id = ?", (session_id,))
            entry = pending.finalize(exit_code, completed_at=now)
            return self.store.replace_row(conn, entry.command, entry.cwd, entry.exit_code,
                                          entry.timestamp, entry.duration)

        try:
            entry_id = self.store.run_in_transaction(_end)
        except StorageError as e:
            report_failure(f"could not record command end: {e}")
            return None
        if entry_id is None:
            logger.debug(f"No pending session {session_id}, ignoring end")
        return entry_id

    def get(self, session_id):
        rows = self.store.read(
            "SELECT session_id, command, cwd, timestamp_start FROM pending_session WHERE session_id = ?",
            (session_id,),
        )
        return PendingSession.from_row(rows[0]) if rows else None

    def prune(self, max_age=None, now=None):
        """Discard abandoned pending sessions; returns how many were removed."""
        if max_age is None:
            max_age = self.max_age
        if now is None:
            now = time.time()
        removed = self.store.run_in_transaction(lambda conn: conn.execute(
            "DELETE FROM pending_session WHERE timestamp_start < ?", (now - max_age,)).rowcount)
        if removed:
            logger.info(f"Pruned {removed} abandoned pending sessions")
        return removed
