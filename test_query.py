#!/usr/bin/env python3
"""
Tests for the query engine
"""

import os
import shutil
import tempfile
import unittest

from raven_history.errors import StorageError
from raven_history.query import (
    QueryEngine, PrefixQuery, FullTextQuery, DirectionalQuery,
)
from raven_history.store import HistoryStore

NOW = 1_700_000_000


class QueryTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = HistoryStore(os.path.join(self.temp_dir, "raven.db")).open()
        self.engine = QueryEngine(self.store, now=NOW)

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def add(self, command, age, cwd="/home/me", exit_code=0):
        return self.store.insert_or_replace(command, cwd, exit_code, NOW - age)


class TestPrefix(QueryTestCase):

    def test_most_recent_prefix_match(self):
        self.add("git status", 200)
        self.add("git stash", 100)
        self.assertEqual([e.command for e in self.engine.prefix("git s")], ["git stash"])
        self.assertEqual([e.command for e in self.engine.prefix("git s", limit=5)],
                         ["git stash", "git status"])

    def test_prefix_is_case_sensitive_and_exact(self):
        self.add("Make all", 10)
        self.add("make all", 20)
        self.assertEqual([e.command for e in self.engine.prefix("make")], ["make all"])
        self.assertEqual(self.engine.prefix("mak all"), [])

    def test_prefix_with_like_wildcards(self):
        self.add("echo 100%", 10)
        self.add("echo 1000", 20)
        self.assertEqual([e.command for e in self.engine.prefix("echo 100%")], ["echo 100%"])

    def test_no_match(self):
        self.add("ls", 10)
        self.assertEqual(self.engine.prefix("cd"), [])

    def test_filters(self):
        self.add("make", 10, cwd="/a", exit_code=2)
        self.add("make", 20, cwd="/b", exit_code=0)
        self.assertEqual([e.cwd for e in self.engine.prefix("make", cwd="/b")], ["/b"])
        self.assertEqual([e.cwd for e in self.engine.prefix("make", exit_code=2)], ["/a"])


class TestFullText(QueryTestCase):

    def test_tokens_in_any_order(self):
        self.add("docker compose up -d", 100)
        self.add("docker ps", 50)
        results = self.engine.search("up compose")
        self.assertEqual([e.command for e in results], ["docker compose up -d"])

    def test_equal_relevance_newer_first(self):
        older = self.add("make test", 500, cwd="/src", exit_code=1)
        newer = self.add("make test", 100, cwd="/src", exit_code=0)
        self.assertEqual([e.id for e in self.engine.search("make test")], [newer, older])

    def test_recency_outweighs_equal_text(self):
        self.add("pytest -x tests", 400 * 24 * 3600)
        self.add("pytest -x tests/unit", 60)
        results = self.engine.search("pytest")
        self.assertEqual(results[0].command, "pytest -x tests/unit")

    def test_empty_query_returns_most_recent(self):
        for age in (30, 10, 20):
            self.add(f"echo {age}", age)
        results = self.engine.search("", limit=2)
        self.assertEqual([e.command for e in results], ["echo 10", "echo 20"])

    def test_matches_cwd(self):
        self.add("ls", 10, cwd="/var/log/nginx")
        self.add("ls", 20, cwd="/etc")
        self.assertEqual([e.cwd for e in self.engine.search("nginx")], ["/var/log/nginx"])
        self.assertEqual(self.engine.search("nginx", columns=("command",)), [])

    def test_punctuation_only_tokens(self):
        self.add("ps aux | grep python", 10)
        self.add("ps aux", 20)
        self.assertEqual([e.command for e in self.engine.search("ps |")], ["ps aux | grep python"])
        self.assertEqual([e.command for e in self.engine.search("&&")], [])

    def test_fts_syntax_is_not_interpreted(self):
        self.add("echo NOT AND OR", 10)
        self.assertEqual(len(self.engine.search('NOT "AND" OR*')), 1)
        self.assertEqual(self.engine.search("col:x"), [])

    def test_prefix_match_mode(self):
        self.add("git commit", 100)
        self.add("echo git", 50)
        results = self.engine.search("git", match="prefix")
        self.assertEqual([e.command for e in results], ["git commit"])

    def test_unknown_match_mode(self):
        with self.assertRaises(ValueError):
            FullTextQuery("x", match="regex")


class TestDirectional(QueryTestCase):

    def setUp(self):
        super().setUp()
        self.ids = {
            "git log": self.add("git log", 400),
            "git status": self.add("git status", 300),
            "git diff": self.add("git diff", 200),
            "ls": self.add("ls", 100),
        }

    def test_walk_older_then_newer(self):
        first = self.engine.recall("git")
        self.assertEqual(first.command, "git diff")
        second = self.engine.recall("git", anchor=first.id)
        self.assertEqual(second.command, "git status")
        third = self.engine.recall("git", anchor=second.id)
        self.assertEqual(third.command, "git log")
        self.assertIsNone(self.engine.recall("git", anchor=third.id))

        back = self.engine.recall("git", direction="newer", anchor=third.id)
        self.assertEqual(back.command, "git status")

    def test_newer_without_anchor(self):
        self.assertIsNone(self.engine.recall("git", direction="newer"))

    def test_newest_has_nothing_newer(self):
        self.assertIsNone(self.engine.recall("git", direction="newer", anchor=self.ids["git diff"]))

    def test_empty_prefix_recalls_everything(self):
        self.assertEqual(self.engine.recall("").command, "ls")

    def test_repeats_of_anchor_command_are_skipped(self):
        self.add("git diff", 250, cwd="/other")
        anchor = self.ids["git diff"]
        self.assertEqual(self.engine.recall("git", anchor=anchor).command, "git status")

    def test_many_repeats_of_anchor_command(self):
        self.add("make test", 10_000)
        for i in range(60):
            self.add("make", 5_000 - i, cwd=f"/src/p{i}")
        newest = self.add("make", 50)

        entry = self.engine.recall("make", anchor=newest)
        self.assertIsNotNone(entry)
        self.assertEqual(entry.command, "make test")

        oldest = self.engine.recall("make", anchor=entry.id)
        self.assertIsNone(oldest)
        back = self.engine.recall("make", direction="newer", anchor=entry.id)
        self.assertEqual(back.command, "make")

    def test_unknown_direction(self):
        with self.assertRaises(ValueError):
            DirectionalQuery("git", direction="sideways")


class TestEngine(QueryTestCase):

    def test_run_dispatches_on_query_type(self):
        self.add("ls", 10)
        self.assertEqual(len(self.engine.run(PrefixQuery("l"))), 1)
        self.assertEqual(len(self.engine.run(FullTextQuery("ls"))), 1)
        self.assertEqual(len(self.engine.run(DirectionalQuery("l"))), 1)

    def test_unsupported_query(self):
        with self.assertRaises(TypeError):
            self.engine.run("ls")

    def test_storage_error_propagates(self):
        self.store.close()
        with self.assertRaises(StorageError):
            self.engine.search("ls")
        with self.assertRaises(StorageError):
            self.engine.prefix("ls")


if __name__ == '__main__':
    unittest.main()
