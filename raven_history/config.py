#
# Paths, environment contract and the optional config.toml
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import os
import logging
import tomllib

logger = logging.getLogger(__name__)

APP_NAME = "raven"
DATABASE_FILE = "raven.db"
LOG_FILE = "raven.log"
CONFIG_FILE = "config.toml"

# Environment contract with the shell integration
ENV_HISTORY_ID = "RAVEN_HISTORY_ID"
ENV_QUERY = "RAVEN_QUERY"
ENV_DB = "RAVEN_DB"
ENV_LOG = "RAVEN_LOG"

DEFAULT_SEARCH_LIMIT = 500
SCOPES = ("cwd", "all")


def get_home_dir():
    return os.environ.get("HOME") or os.path.expanduser("~")


def get_data_dir():
    """$XDG_DATA_HOME/raven, falling back to ~/.local/share/raven"""
    base = os.environ.get("XDG_DATA_HOME") or os.path.join(get_home_dir(), ".local", "share")
    return os.path.join(base, APP_NAME)


def get_config_dir():
    """$XDG_CONFIG_HOME/raven, falling back to ~/.config/raven"""
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(get_home_dir(), ".config")
    return os.path.join(base, APP_NAME)


def get_current_dir():
    """Current directory as the shell sees it.

    $PWD keeps symlinked paths intact, so it wins over os.getcwd().
    """
    pwd = os.environ.get("PWD")
    if pwd:
        return pwd
    try:
        return os.getcwd()
    except OSError as e:
        logger.warning(f"Could not determine current directory: {e}")
        return None


def get_log_file():
    return os.environ.get(ENV_LOG) or os.path.join(get_data_dir(), LOG_FILE)


class Config:
    """Settings read from config.toml, with defaults for anything missing."""

    def __init__(self, database_path=None, database_file=None,
                 search_limit=DEFAULT_SEARCH_LIMIT, search_scope="cwd"):
        self.database_path = database_path or get_data_dir()
        self.database_file = database_file or DATABASE_FILE
        self.search_limit = search_limit
        self.search_scope = search_scope if search_scope in SCOPES else "cwd"

    @property
    def db_file(self):
        """Full path of the history database; $RAVEN_DB takes precedence."""
        override = os.environ.get(ENV_DB)
        if override:
            return os.path.expanduser(override)
        return os.path.join(os.path.expanduser(self.database_path), self.database_file)

    @classmethod
    def from_dict(cls, data):
        database = data.get("database") or {}
        search = data.get("search") or {}
        limit = search.get("limit", DEFAULT_SEARCH_LIMIT)
        if not isinstance(limit, int) or limit <= 0:
            logger.warning(f"Ignoring invalid search.limit {limit!r}")
            limit = DEFAULT_SEARCH_LIMIT
        return cls(
            database_path=database.get("database_path"),
            database_file=database.get("database_file"),
            search_limit=limit,
            search_scope=search.get("scope", "cwd"),
        )


def load_config(path=None):
    """Load config.toml with error handling.

    A missing file yields defaults silently, a broken one is logged and
    yields defaults too.
    """
    if path is None:
        path = os.path.join(get_config_dir(), CONFIG_FILE)

    if not os.path.exists(path):
        logger.debug(f"No config at {path}, using defaults")
        return Config()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.error(f"Could not read config {path}: {e}")
        return Config()

    logger.debug(f"Loaded config from {path}")
    return Config.from_dict(data)
