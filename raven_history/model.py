#
# History records
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import time
from datetime import datetime


class HistoryEntry:
    """A finalized command: what ran, where, when and how it ended."""

    def __init__(self, command, cwd, exit_code, timestamp=None, id=None, duration=None):
        self.id = id
        self.command = command
        self.cwd = cwd
        self.exit_code = exit_code
        self.timestamp = int(timestamp if timestamp is not None else time.time())
        self.duration = duration

    @classmethod
    def from_row(cls, row):
        return cls(
            command=row["command"],
            cwd=row["cwd"],
            exit_code=row["exit_code"],
            timestamp=row["timestamp"],
            id=row["id"],
            duration=row["duration"],
        )

    @property
    def key(self):
        """The dedup triple."""
        return (self.command, self.cwd, self.exit_code)

    def to_dict(self):
        return {
            'id': self.id,
            'command': self.command,
            'cwd': self.cwd,
            'exit_code': self.exit_code,
            'timestamp': self.timestamp,
            'duration': self.duration,
            'datetime': datetime.fromtimestamp(self.timestamp).isoformat()
        }

    def __eq__(self, other):
        if not isinstance(other, HistoryEntry):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (f"HistoryEntry(id={self.id!r}, command={self.command!r}, cwd={self.cwd!r}, "
                f"exit_code={self.exit_code!r}, timestamp={self.timestamp!r})")


class PendingSession:
    """A command that has started but whose exit status is not known yet."""

    def __init__(self, session_id, command, cwd, timestamp_start):
        self.session_id = session_id
        self.command = command
        self.cwd = cwd
        self.timestamp_start = timestamp_start

    @classmethod
    def from_row(cls, row):
        return cls(row["session_id"], row["command"], row["cwd"], row["timestamp_start"])

    def finalize(self, exit_code, completed_at=None):
        """Build the HistoryEntry this session turns into once its exit code is known."""
        if completed_at is None:
            completed_at = time.time()
        duration = max(0.0, completed_at - self.timestamp_start)
        return HistoryEntry(
            command=self.command,
            cwd=self.cwd,
            exit_code=exit_code,
            timestamp=self.timestamp_start,
            duration=duration,
        )
