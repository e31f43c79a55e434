#
# Plain-text output helpers
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import sys
from datetime import datetime

# (unit, seconds), largest first; a month is 30.44 days, a year 365.25
_UNITS = (
    ("y", 31_557_600),
    ("mo", 2_630_016),
    ("d", 86_400),
    ("h", 3_600),
    ("m", 60),
    ("s", 1),
)


def format_duration(seconds):
    """Most significant unit only: 125 -> "2m", 0.5 -> "500ms", 0 -> "0s"."""
    if seconds is None or seconds <= 0:
        return "0s"
    whole = int(seconds)
    for unit, size in _UNITS:
        if whole >= size:
            return f"{whole // size}{unit}"
    millis = int(seconds * 1000)
    if millis > 0:
        return f"{millis}ms"
    micros = int(seconds * 1_000_000)
    if micros > 0:
        return f"{micros}us"
    return "0s"


def time_since(now, entry):
    return format_duration(now - entry.timestamp)


def write_command_out(command, out=None):
    """Write one command to stdout for the calling shell"""
    out = out or sys.stdout
    out.write(f"{command}\n")
    out.flush()


def display_entries(entries, show_timestamp=False, show_id=False, out=None):
    """Print history entries, one command per line"""
    out = out or sys.stdout
    for entry in entries:
        prefix = ""
        if show_id:
            prefix += f"{entry.id}\t"
        if show_timestamp:
            timestamp_str = datetime.fromtimestamp(entry.timestamp).strftime('%Y-%m-%d %H:%M:%S')
            prefix += f"[{timestamp_str}] ({entry.exit_code}) {entry.cwd or '-'}\t"
        out.write(f"{prefix}{entry.command}\n")
    out.flush()


def display_stats(stats, out=None):
    """Print the statistics returned by HistoryStore.stats"""
    out = out or sys.stdout
    print("Database Statistics:", file=out)
    print(f"  Total entries: {stats['total_entries']}", file=out)
    print(f"  Failed entries: {stats['failed_entries']}", file=out)
    print(f"  Unique directories: {stats['unique_directories']}", file=out)

    if stats['date_range']:
        start_time, end_time = stats['date_range']
        start_date = datetime.fromtimestamp(start_time).strftime('%Y-%m-%d %H:%M:%S')
        end_date = datetime.fromtimestamp(end_time).strftime('%Y-%m-%d %H:%M:%S')
        print(f"  Date range: {start_date} to {end_date}", file=out)

    print("\nTop Directories:", file=out)
    for directory, count in stats['top_directories']:
        print(f"  {directory}: {count} commands", file=out)

    print("\nTop Commands:", file=out)
    for command, count in stats['top_commands']:
        # Truncate long commands
        cmd_display = command[:60] + "..." if len(command) > 60 else command
        print(f"  {cmd_display}: {count} entries", file=out)
