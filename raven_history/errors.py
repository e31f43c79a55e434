#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#


class StorageError(Exception):
    """The history database could not complete an operation."""


class MigrationError(StorageError):
    """The database could not be brought to the current schema version."""
