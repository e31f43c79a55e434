#!/usr/bin/env python3
"""
Tests for the interactive search session and its prompt_toolkit front end
"""

import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock

from prompt_toolkit.input import create_pipe_input
from prompt_toolkit.output import DummyOutput

from raven_history.errors import StorageError
from raven_history.interactive import (
    SearchSession, render, run_interactive, EDITING, SELECTED, CANCELLED,
)
from raven_history.query import QueryEngine
from raven_history.store import HistoryStore

NOW = 1_700_000_000


class InteractiveTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = HistoryStore(os.path.join(self.temp_dir, "raven.db")).open()
        self.engine = QueryEngine(self.store, now=NOW)
        self.store.insert_or_replace("ls -la", "/home/me", 0, NOW - 30)
        self.store.insert_or_replace("git status", "/home/me/repo", 0, NOW - 20)
        self.store.insert_or_replace("git push", "/home/me/repo", 1, NOW - 10)
        self.store.insert_or_replace("lsof -i", "/etc", 0, NOW - 5)

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def session(self, **kwargs):
        kwargs.setdefault("scope", "all")
        return SearchSession(self.engine, **kwargs)


class TestSearchSession(InteractiveTestCase):

    def test_initial_results(self):
        session = self.session()
        self.assertEqual(session.state, EDITING)
        self.assertEqual(len(session.results), 4)
        self.assertEqual(session.selected_index, 0)

    def test_typing_requeries(self):
        session = self.session()
        for key in "git":
            session.handle_key(key)
        self.assertEqual(session.input, "git")
        self.assertEqual([e.command for e in session.results], ["git push", "git status"])

        session.handle_key("backspace")
        session.handle_key("backspace")
        session.handle_key("backspace")
        self.assertEqual(session.input, "")
        self.assertEqual(len(session.results), 4)

    def test_cursor_editing(self):
        session = self.session(query="gt")
        session.handle_key("left")
        session.handle_key("i")
        self.assertEqual(session.input, "git")
        self.assertEqual(session.cursor_position, 2)
        session.handle_key("right")
        session.handle_key("right")
        self.assertEqual(session.cursor_position, 3)

    def test_enter_selects_highlighted(self):
        session = self.session(query="git")
        session.handle_key("down")
        session.handle_key("enter")
        self.assertEqual(session.state, SELECTED)
        self.assertEqual(session.output, "git status")

    def test_navigation_is_clamped(self):
        session = self.session(query="git")
        session.handle_key("up")
        self.assertEqual(session.selected_index, 0)
        for _ in range(5):
            session.handle_key("down")
        self.assertEqual(session.selected_index, 1)

    def test_quick_pick(self):
        session = self.session()
        session.handle_key("alt-2")
        self.assertEqual(session.output, "git status")

    def test_quick_pick_out_of_range(self):
        session = self.session(query="git")
        session.handle_key("alt-5")
        self.assertEqual(session.state, EDITING)

    def test_enter_with_no_results_keeps_editing(self):
        session = self.session(query="zzzz")
        self.assertEqual(session.results, [])
        session.handle_key("enter")
        self.assertEqual(session.state, EDITING)

    def test_cancel_keys(self):
        for key in ("escape", "c-c", "c-d", "c-q"):
            session = self.session()
            session.handle_key(key)
            self.assertEqual(session.state, CANCELLED)
            self.assertIsNone(session.output)

    def test_cancel_leaves_history_untouched(self):
        before = [e.to_dict() for e in self.store.scan()]
        session = self.session(query="git")
        session.handle_key("escape")
        self.assertEqual([e.to_dict() for e in self.store.scan()], before)

    def test_keys_after_terminal_state_are_ignored(self):
        session = self.session()
        session.handle_key("enter")
        session.handle_key("x")
        session.handle_key("escape")
        self.assertEqual(session.state, SELECTED)
        self.assertEqual(session.input, "")

    def test_scope_toggle(self):
        session = self.session(cwd="/home/me/repo", scope="cwd")
        self.assertEqual(len(session.results), 2)
        session.handle_key("tab")
        self.assertEqual(session.scope, "all")
        self.assertEqual(len(session.results), 4)

    def test_scope_without_cwd(self):
        session = SearchSession(self.engine, cwd=None, scope="cwd")
        self.assertEqual(session.scope, "all")
        session.handle_key("tab")
        self.assertEqual(session.scope, "all")

    def test_match_mode_toggle(self):
        session = self.session(query="ls")
        self.assertEqual(len(session.results), 2)
        session.handle_key("alt-m")
        self.assertEqual(session.match, "prefix")
        self.assertEqual([e.command for e in session.results], ["lsof -i", "ls -la"])
        session.handle_key("-")
        self.assertEqual([e.command for e in session.results], [])

    def test_engine_failure_cancels(self):
        engine = MagicMock()
        engine.run.side_effect = StorageError("disk I/O error")
        session = SearchSession(engine)
        self.assertEqual(session.state, CANCELLED)
        self.assertIsNone(session.output)


class TestRender(InteractiveTestCase):

    def text(self, fragments):
        return "".join(fragment[1] for fragment in fragments)

    def test_render(self):
        session = self.session(query="git")
        text = self.text(render(session, now=NOW, total=4))
        self.assertIn("history count: 4", text)
        self.assertIn("> git", text)
        self.assertIn(">> 10s git push", text)
        self.assertIn(" 1", text)
        self.assertIn("git status", text)

    def test_failed_commands_are_marked(self):
        session = self.session(query="git")
        styles = {fragment[1].strip(): fragment[0] for fragment in render(session, now=NOW)}
        self.assertEqual(styles["10s"], "class:failed")
        self.assertEqual(styles["20s"], "class:ok")

    def test_render_no_matches(self):
        session = self.session(query="zzzz")
        self.assertIn("no matches", self.text(render(session, now=NOW)))

    def test_render_window_follows_selection(self):
        session = self.session()
        for _ in range(3):
            session.handle_key("down")
        text = self.text(render(session, now=NOW, max_rows=2))
        self.assertIn("ls -la", text)
        self.assertNotIn("lsof", text)


class TestRunInteractive(InteractiveTestCase):

    def run_with_keys(self, keys, **kwargs):
        with create_pipe_input() as pipe_input:
            pipe_input.send_text(keys)
            return run_interactive(self.engine, scope="all", input=pipe_input,
                                   output=DummyOutput(), **kwargs)

    def test_type_and_select(self):
        self.assertEqual(self.run_with_keys("push\r"), "git push")

    def test_initial_query(self):
        self.assertEqual(self.run_with_keys("\r", query="status"), "git status")

    def test_ctrl_c_cancels(self):
        self.assertIsNone(self.run_with_keys("git\x03"))

    def test_failing_engine_returns_none(self):
        engine = MagicMock()
        engine.run.side_effect = StorageError("database is locked")
        self.assertIsNone(run_interactive(engine, output=DummyOutput()))

    def test_failure_while_typing_ends_the_app(self):
        engine = MagicMock()
        engine.run.side_effect = [self.store.scan(), StorageError("disk I/O error")]
        with create_pipe_input() as pipe_input:
            pipe_input.send_text("x")
            selected = run_interactive(engine, input=pipe_input, output=DummyOutput())
        self.assertIsNone(selected)
        self.assertEqual(engine.run.call_count, 2)


if __name__ == '__main__':
    unittest.main()
