#
# Query engine: prefix suggestions, ranked full-text search, up-key recall
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import logging

from raven_history.store import HistoryFilter, FTS_COLUMNS

logger = logging.getLogger(__name__)

MATCH_MODES = ("fuzzy", "prefix")
DIRECTIONS = ("older", "newer")


class PrefixQuery:
    """Most recent entries whose command starts with text (autosuggestion)."""

    mode = "prefix"

    def __init__(self, text="", limit=1, cwd=None, exit_code=None):
        self.text = text or ""
        self.limit = limit
        self.cwd = cwd
        self.exit_code = exit_code


class FullTextQuery:
    """Tokens matched against command and cwd, ranked by relevance and recency.

    match="prefix" swaps token matching for a starts-with on the command,
    ordered by recency. An empty text returns the most recent entries.
    """

    mode = "fulltext"

    def __init__(self, text="", limit=None, cwd=None, exit_code=None,
                 match="fuzzy", columns=FTS_COLUMNS):
        if match not in MATCH_MODES:
            raise ValueError(f"unknown match mode {match!r}")
        self.text = text or ""
        self.limit = limit
        self.cwd = cwd
        self.exit_code = exit_code
        self.match = match
        self.columns = columns


class DirectionalQuery:
    """The next older or newer entry starting with prefix, relative to anchor.

    anchor is the id of the entry currently shown in the line editor, or
    None when recall starts from the present.
    """

    mode = "directional"

    def __init__(self, prefix="", direction="older", anchor=None, cwd=None, exit_code=None):
        if direction not in DIRECTIONS:
            raise ValueError(f"unknown direction {direction!r}")
        self.prefix = prefix or ""
        self.direction = direction
        self.anchor = anchor
        self.cwd = cwd
        self.exit_code = exit_code


class QueryEngine:
    """Single entry point for every read of the history.

    Results are lists of HistoryEntry; an empty list means no match.
    StorageError from the store propagates unchanged.
    """

    def __init__(self, store, now=None):
        self.store = store
        self.now = now
        self._handlers = {
            PrefixQuery: self._run_prefix,
            FullTextQuery: self._run_fulltext,
            DirectionalQuery: self._run_directional,
        }

    def run(self, query):
        try:
            handler = self._handlers[type(query)]
        except KeyError:
            raise TypeError(f"unsupported query {query!r}") from None
        results = handler(query)
        logger.debug(f"{query.mode} query returned {len(results)} entries")
        return results

    def _run_prefix(self, query):
        return self.store.match(HistoryFilter(
            prefix=query.text,
            cwd=query.cwd,
            exit_code=query.exit_code,
            limit=query.limit,
        ))

    def _run_fulltext(self, query):
        if query.match == "prefix":
            history_filter = HistoryFilter(prefix=query.text, order="recent")
        else:
            history_filter = HistoryFilter(text=query.text, columns=query.columns,
                                           order="rank", now=self.now)
        history_filter.cwd = query.cwd
        history_filter.exit_code = query.exit_code
        history_filter.limit = query.limit
        return self.store.match(history_filter)

    def _run_directional(self, query):
        anchor = self.store.get(query.anchor) if query.anchor is not None else None
        if anchor is None and query.direction == "newer":
            return []

        history_filter = HistoryFilter(
            prefix=query.prefix,
            cwd=query.cwd,
            exit_code=query.exit_code,
            limit=1,
        )
        if anchor is not None:
            position = (anchor.timestamp, anchor.id)
            history_filter.exclude_command = anchor.command
            if query.direction == "older":
                history_filter.before = position
            else:
                history_filter.after = position
                history_filter.order = "oldest"

        return self.store.match(history_filter)

    # Convenience wrappers

    def prefix(self, text, limit=1, **kwargs):
        return self.run(PrefixQuery(text, limit=limit, **kwargs))

    def search(self, text="", limit=None, **kwargs):
        return self.run(FullTextQuery(text, limit=limit, **kwargs))

    def recall(self, prefix="", direction="older", anchor=None, **kwargs):
        results = self.run(DirectionalQuery(prefix, direction=direction, anchor=anchor, **kwargs))
        return results[0] if results else None
