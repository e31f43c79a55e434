#
# Interactive history search
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#
# One invocation handles exactly one search-and-select interaction. The
# SearchSession holds all state and is driven one key at a time; the
# prompt_toolkit application only forwards keys to it and draws it.
#

import sys
import time
import logging

from prompt_toolkit import Application
from prompt_toolkit.application import get_app
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import Layout, HSplit, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.output import create_output
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame

from raven_history import __version__
from raven_history.display import time_since
from raven_history.query import FullTextQuery, MATCH_MODES

logger = logging.getLogger(__name__)

EDITING = "editing"
SELECTED = "selected"
CANCELLED = "cancelled"

QUICK_PICKS = 5

STYLE = Style.from_dict({
    'header': 'bold',
    'ok': 'ansiblue',
    'failed': 'ansired',
    'selected': 'ansigreen bold',
    'shortcut': 'ansimagenta',
    'query': 'ansiyellow',
    'scope': 'ansicyan',
    'hint': 'ansigray',
})


class SearchSession:
    """State machine for one interactive search: Editing -> Selected | Cancelled."""

    def __init__(self, engine, query="", cwd=None, scope="cwd", match="fuzzy",
                 limit=500, exit_code=None):
        self.engine = engine
        self.input = query or ""
        self.cursor_position = len(self.input)
        self.cwd = cwd
        self.scope = scope if cwd else "all"
        self.match = match
        self.limit = limit
        self.exit_code = exit_code
        self.results = []
        self.selected_index = None
        self.selection = None
        self.state = EDITING
        self.refresh()

    @property
    def done(self):
        return self.state != EDITING

    @property
    def output(self):
        """The command to hand back to the line editor, or None."""
        if self.state == SELECTED and self.selection is not None:
            return self.selection.command
        return None

    def refresh(self):
        """Re-run the search for the current input; errors end the session as cancelled."""
        query = FullTextQuery(
            self.input,
            limit=self.limit,
            cwd=self.cwd if self.scope == "cwd" else None,
            exit_code=self.exit_code,
            match=self.match,
        )
        try:
            self.results = self.engine.run(query)
        except Exception as e:
            logger.error(f"Interactive search query failed: {e}")
            self.results = []
            self.cancel()
            return
        self.selected_index = 0 if self.results else None

    # -- query editing ---------------------------------------------------

    def insert_text(self, text):
        if self.done or not text:
            return
        pos = self.cursor_position
        self.input = self.input[:pos] + text + self.input[pos:]
        self.cursor_position = pos + len(text)
        self.refresh()

    def delete_char(self):
        """Backspace: remove the character left of the cursor"""
        if self.done or self.cursor_position == 0:
            return
        pos = self.cursor_position
        self.input = self.input[:pos - 1] + self.input[pos:]
        self.cursor_position = pos - 1
        self.refresh()

    def move_cursor_left(self):
        self.cursor_position = max(0, self.cursor_position - 1)

    def move_cursor_right(self):
        self.cursor_position = min(len(self.input), self.cursor_position + 1)

    def toggle_scope(self):
        if self.done or not self.cwd:
            return
        self.scope = "all" if self.scope == "cwd" else "cwd"
        self.refresh()

    def toggle_match(self):
        if self.done:
            return
        self.match = MATCH_MODES[(MATCH_MODES.index(self.match) + 1) % len(MATCH_MODES)]
        self.refresh()

    # -- result navigation (no re-query) -----------------------------------

    def select_next(self):
        if self.selected_index is not None:
            self.selected_index = min(len(self.results) - 1, self.selected_index + 1)

    def select_previous(self):
        if self.selected_index is not None:
            self.selected_index = max(0, self.selected_index - 1)

    # -- terminal transitions ----------------------------------------------

    def select(self, index):
        if self.done:
            return
        if 0 <= index < len(self.results):
            self.selection = self.results[index]
            self.state = SELECTED

    def confirm(self):
        if self.selected_index is not None:
            self.select(self.selected_index)

    def quick_pick(self, offset):
        """Select the entry `offset` rows after the highlighted one."""
        self.select((self.selected_index or 0) + offset)

    def cancel(self):
        if not self.done:
            self.selection = None
            self.state = CANCELLED

    def handle_key(self, key):
        """Apply one input event, named the way prompt_toolkit names keys."""
        if self.done:
            return
        actions = {
            'enter': self.confirm,
            'escape': self.cancel,
            'c-c': self.cancel,
            'c-d': self.cancel,
            'c-q': self.cancel,
            'backspace': self.delete_char,
            'left': self.move_cursor_left,
            'right': self.move_cursor_right,
            'up': self.select_previous,
            'down': self.select_next,
            'tab': self.toggle_scope,
            'alt-m': self.toggle_match,
        }
        if key in actions:
            actions[key]()
        elif key.startswith('alt-') and key[4:].isdigit():
            offset = int(key[4:])
            if 1 <= offset <= QUICK_PICKS:
                self.quick_pick(offset)
        elif len(key) == 1 and key.isprintable():
            self.insert_text(key)


def _visible_window(session, max_rows):
    if max_rows is None or len(session.results) <= max_rows:
        return 0, len(session.results)
    selected = session.selected_index or 0
    start = max(0, selected - max_rows + 1)
    return start, start + max_rows


def render(session, now=None, total=None, max_rows=None):
    """Formatted text fragments for the current state of a SearchSession."""
    if now is None:
        now = time.time()
    fragments = [('class:header', f"raven {__version__}"),
                 ('', "  Esc to exit"),
                 ('class:hint', f"  history count: {total if total is not None else '?'}\n")]

    before = session.input[:session.cursor_position]
    after = session.input[session.cursor_position:]
    fragments += [('', "> "), ('class:query', before), ('[SetCursorPosition]', ''),
                  ('class:query', after + "\n")]
    scope = session.cwd if session.scope == "cwd" else "(Everything)"
    fragments += [('class:scope', f"  {scope}"), ('class:hint', f"  [{session.match}]\n\n")]

    start, end = _visible_window(session, max_rows)
    selected = session.selected_index
    for index in range(start, end):
        entry = session.results[index]
        offset = index - (selected or 0)
        if selected is not None and 1 <= offset <= QUICK_PICKS:
            fragments.append(('class:shortcut', f" {offset}"))
        else:
            fragments.append(('', "  "))
        marker = ">>" if index == selected else "  "
        age_style = 'class:ok' if entry.exit_code == 0 else 'class:failed'
        fragments.append(('class:selected' if index == selected else '', f" {marker}"))
        fragments.append((age_style, f"{time_since(now, entry):>4}"))
        fragments.append(('class:selected' if index == selected else '', f" {entry.command}\n"))
    if not session.results:
        fragments.append(('class:hint', "  no matches\n"))

    fragments.append(('class:hint',
                      "\n<Tab> scope  <Alt+m> match mode  <Alt+1..5> quick pick  <Enter> select"))
    return fragments


def build_application(session, total=None, input=None, output=None):
    """prompt_toolkit application that forwards keys to session and exits when it is done."""
    kb = KeyBindings()

    def forward(name):
        def handler(event):
            session.handle_key(name)
            if session.done:
                event.app.exit()
        return handler

    for key in ('enter', 'escape', 'c-c', 'c-d', 'c-q', 'backspace', 'left', 'right',
                'up', 'down', 'tab'):
        kb.add(key)(forward(key))
    kb.add('escape', 'm')(forward('alt-m'))
    for digit in range(1, QUICK_PICKS + 1):
        kb.add('escape', str(digit))(forward(f'alt-{digit}'))

    @kb.add(Keys.BracketedPaste)
    def _(event):
        session.insert_text(event.data.splitlines()[0] if event.data else "")
        if session.done:
            event.app.exit()

    @kb.add(Keys.Any)
    def _(event):
        if event.data and event.data.isprintable():
            session.insert_text(event.data)
        if session.done:
            event.app.exit()

    def get_text():
        rows = get_app().output.get_size().rows
        return render(session, total=total, max_rows=max(1, rows - 8))

    control = FormattedTextControl(get_text, show_cursor=True, focusable=True)
    layout = Layout(HSplit([Frame(Window(control, wrap_lines=False), title="raven history")]))

    app = Application(
        layout=layout,
        key_bindings=kb,
        style=STYLE,
        full_screen=True,
        input=input,
        output=output or create_output(stdout=sys.stderr),
    )
    app.ttimeoutlen = 0.1
    return app


def run_interactive(engine, query="", cwd=None, scope="cwd", match="fuzzy", limit=500,
                    exit_code=None, total=None, input=None, output=None):
    """Run one interactive search; returns the selected command or None.

    Never raises: any failure ends the interaction as cancelled.
    """
    session = SearchSession(engine, query=query, cwd=cwd, scope=scope, match=match,
                            limit=limit, exit_code=exit_code)
    if session.done:
        return None
    try:
        build_application(session, total=total, input=input, output=output).run()
    except Exception as e:
        logger.error(f"FATAL: Error running interactive search: {e}")
        session.cancel()
    # Leaving the app without a decision (e.g. EOF on input) counts as cancel
    session.cancel()
    return session.output
