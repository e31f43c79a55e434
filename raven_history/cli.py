#
# raven command line: history capture hooks, search, maintenance
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import os
import sys
import logging
import argparse

from raven_history import __version__
from raven_history.config import (
    ENV_HISTORY_ID, ENV_QUERY, get_current_dir, get_log_file, load_config,
)
from raven_history.display import display_entries, display_stats, write_command_out
from raven_history.errors import StorageError
from raven_history.interactive import run_interactive
from raven_history.query import QueryEngine, DIRECTIONS
from raven_history.session import SessionTracker, report_failure
from raven_history.shell import SCRIPTS
from raven_history.store import HistoryStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NO_RESULT = 1
EXIT_STORAGE_ERROR = 2

SEARCH_MODES = ("prefix", "fulltext", "interactive")


def setup_logging(debug=False):
    """Log to the raven log file; stdout is reserved for command output"""
    log_file = get_log_file()
    try:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        logging.basicConfig(
            level=logging.WARNING,
            format='%(asctime)s - %(levelname)s - %(message)s',
            filename=log_file,
            filemode='a'
        )
    except OSError:
        logging.basicConfig(
            level=logging.WARNING,
            format='%(asctime)s - %(levelname)s - %(message)s',
            stream=sys.stderr
        )
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


def open_store(config):
    return HistoryStore(config.db_file).open()


def cmd_history_start(args, config):
    words = args.words
    if words and words[0] == "--":
        words = words[1:]
    command = " ".join(words)
    try:
        store = open_store(config)
    except StorageError as e:
        report_failure(f"could not record command start: {e}")
        return EXIT_OK
    with store:
        session_id = SessionTracker(store).start(command, get_current_dir())
    if session_id:
        print(session_id)
    return EXIT_OK


def cmd_history_end(args, config):
    session_id = args.id if args.id is not None else os.environ.get(ENV_HISTORY_ID, "")
    if not session_id.strip():
        return EXIT_OK
    try:
        store = open_store(config)
    except StorageError as e:
        report_failure(f"could not record command end: {e}")
        return EXIT_OK
    with store:
        SessionTracker(store).end(session_id, args.exit)
    return EXIT_OK


def cmd_history_prune(args, config):
    try:
        with open_store(config) as store:
            removed = SessionTracker(store).prune(max_age=args.days * 24 * 60 * 60)
    except StorageError as e:
        print(f"raven: {e}", file=sys.stderr)
        return EXIT_STORAGE_ERROR
    print(f"Pruned {removed} abandoned pending commands")
    return EXIT_OK


def _query_text(args):
    if args.query:
        return " ".join(args.query)
    return os.environ.get(ENV_QUERY, "")


def _search_interactive(args, config, text):
    """Interactive search never fails the calling shell; every failure is a cancel."""
    try:
        with open_store(config) as store:
            try:
                total = store.count()
            except StorageError:
                total = None
            selected = run_interactive(
                QueryEngine(store),
                query=text,
                cwd=get_current_dir(),
                scope=config.search_scope,
                limit=args.limit or config.search_limit,
                exit_code=args.exit,
                total=total,
            )
    except StorageError as e:
        logger.error(f"Interactive search unavailable: {e}")
        return EXIT_NO_RESULT
    if selected is None:
        return EXIT_NO_RESULT
    write_command_out(selected)
    return EXIT_OK


def cmd_search(args, config):
    text = _query_text(args)
    mode = args.mode or "fulltext"
    if args.interactive or mode == "interactive":
        return _search_interactive(args, config, text)

    cwd = None
    if args.cwd:
        cwd = os.path.abspath(os.path.expanduser(args.cwd))
    elif args.here:
        cwd = get_current_dir()

    try:
        with open_store(config) as store:
            engine = QueryEngine(store)
            if args.shell_up_key:
                entry = engine.recall(text, direction=args.direction, anchor=args.anchor,
                                      cwd=cwd, exit_code=args.exit)
                entries = [entry] if entry is not None else []
            elif args.suggest or mode == "prefix":
                entries = engine.prefix(text, limit=args.limit or 1, cwd=cwd, exit_code=args.exit)
            else:
                entries = engine.search(text, limit=args.limit, cwd=cwd, exit_code=args.exit)
    except StorageError as e:
        print(f"raven: search failed: {e}", file=sys.stderr)
        return EXIT_STORAGE_ERROR

    if not entries:
        return EXIT_NO_RESULT
    display_entries(entries, show_id=args.print_id, show_timestamp=args.verbose)
    return EXIT_OK


def cmd_stats(args, config):
    try:
        with open_store(config) as store:
            stats = store.stats(limit=args.limit)
    except StorageError as e:
        print(f"raven: {e}", file=sys.stderr)
        return EXIT_STORAGE_ERROR
    display_stats(stats)
    return EXIT_OK


def cmd_doctor(args, config):
    """Check that the full-text index matches the history table"""
    try:
        with open_store(config) as store:
            report = store.check_index()
            version = store.schema_version()
    except StorageError as e:
        print(f"raven: {e}", file=sys.stderr)
        return EXIT_STORAGE_ERROR
    print(f"Database: {config.db_file} (schema version {version})")
    print(f"  Orphaned index entries: {len(report['orphaned'])}")
    print(f"  Rows missing from index: {len(report['missing'])}")
    print(f"  FTS integrity check: {'ok' if report['integrity_ok'] else 'FAILED'}")
    healthy = report['integrity_ok'] and not report['orphaned'] and not report['missing']
    return EXIT_OK if healthy else EXIT_NO_RESULT


def cmd_init(args, config):
    print(SCRIPTS[args.shell])
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(prog='raven', description='Structured, searchable shell history')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    commands = parser.add_subparsers(dest='command', metavar='COMMAND')

    history = commands.add_parser('history', help='Record commands (used by the shell hooks)')
    history_commands = history.add_subparsers(dest='history_command', metavar='SUBCOMMAND')
    history_commands.required = True

    start = history_commands.add_parser('start', help='Record a command about to run, print its session id')
    start.add_argument('words', nargs='*', metavar='COMMAND')
    start.set_defaults(handler=cmd_history_start)

    end = history_commands.add_parser('end', help='Finalize a session with its exit code')
    end.add_argument('--exit', '-e', type=int, required=True, metavar='CODE', help='Exit status')
    end.add_argument('id', nargs='?', help=f'Session id (default: ${ENV_HISTORY_ID})')
    end.set_defaults(handler=cmd_history_end)

    prune = history_commands.add_parser('prune', help='Discard commands that never finished')
    prune.add_argument('--days', '-d', type=int, default=7, metavar='N',
                       help='Age in days after which a pending command is abandoned (default: 7)')
    prune.set_defaults(handler=cmd_history_prune)

    search = commands.add_parser('search', help='Search history')
    search.add_argument('query', nargs='*', help=f'Query text (default: ${ENV_QUERY})')
    search.add_argument('--mode', '-m', choices=SEARCH_MODES, help='Search mode (default: fulltext)')
    search.add_argument('--interactive', '-i', action='store_true', help='Open interactive search')
    search.add_argument('--suggest', '-s', action='store_true',
                        help='Use the query as a prefix to produce a suggestion')
    search.add_argument('--shell-up-key', action='store_true', help=argparse.SUPPRESS)
    search.add_argument('--direction', choices=DIRECTIONS, default='older', help=argparse.SUPPRESS)
    search.add_argument('--anchor', type=int, metavar='ID', help=argparse.SUPPRESS)
    search.add_argument('--print-id', action='store_true', help='Prefix each result with its id')
    search.add_argument('--limit', '-n', type=int, metavar='N', help='Limit number of results')
    search.add_argument('--cwd', '-c', metavar='DIR', help='Only commands run in DIR or below it')
    search.add_argument('--here', action='store_true', help='Only commands run in the current directory or below')
    search.add_argument('--exit', '-e', type=int, metavar='CODE', help='Only commands with this exit status')
    search.add_argument('--verbose', '-v', action='store_true', help='Show time, exit status and directory')
    search.set_defaults(handler=cmd_search)

    stats = commands.add_parser('stats', help='Show usage statistics')
    stats.add_argument('--limit', '-n', type=int, default=5, metavar='N')
    stats.set_defaults(handler=cmd_stats)

    doctor = commands.add_parser('doctor', help='Check database and index consistency')
    doctor.set_defaults(handler=cmd_doctor)

    init = commands.add_parser('init', help='Print the shell integration script')
    init.add_argument('shell', choices=sorted(SCRIPTS))
    init.set_defaults(handler=cmd_init)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)

    if not getattr(args, 'handler', None):
        parser.print_help()
        return EXIT_NO_RESULT

    config = load_config()
    try:
        return args.handler(args, config)
    except KeyboardInterrupt:
        return EXIT_NO_RESULT


if __name__ == "__main__":
    sys.exit(main())
