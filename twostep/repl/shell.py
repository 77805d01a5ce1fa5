"""EditorShell: a prompt_toolkit editing buffer driven by the completion pipeline."""

from __future__ import annotations

from pathlib import Path

from prompt_toolkit import PromptSession, print_formatted_text
from prompt_toolkit.buffer import Buffer
from prompt_toolkit.filters import Condition
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.lexers import Lexer, PygmentsLexer
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.styles import Style
from pygments.lexers import get_lexer_for_filename
from pygments.util import ClassNotFound

from twostep.config import CompletionConfig
from twostep.diagnostics import DiagnosticEntry, Diagnostics
from twostep.models import Position
from twostep.modes import MODE_COLORS, MODE_CYCLE
from twostep.repl.host import PromptToolkitHost, diff_edit
from twostep.repl.toolbar import (
    ToolbarConfig,
    make_info_widget,
    make_mode_widget,
    make_signature_widget,
    make_source_widget,
    make_stale_widget,
    make_state_widget,
)
from twostep.session import CompletionService
from twostep.sources import CompletionBackend

DIAGNOSTICS_COLOR = "#808080"


def lexer_for(path: Path | None) -> Lexer | None:
    """Pygments lexer for the file's type, none for unknown types."""
    if path is None:
        return None
    try:
        lexer = get_lexer_for_filename(path.name)
    except ClassNotFound:
        return None
    return PygmentsLexer(type(lexer))


def _bind_menu(kb: KeyBindings, shell: EditorShell) -> None:
    """Menu navigation, accept, dismiss; only while the menu is open."""
    menu_open = Condition(lambda: shell.session.presenter.menu_visible)

    @kb.add("tab", filter=menu_open)
    @kb.add("c-n", filter=menu_open)
    @kb.add("down", filter=menu_open)
    def select_next(event):
        shell.move_selection(1)

    @kb.add("s-tab", filter=menu_open)
    @kb.add("c-p", filter=menu_open)
    @kb.add("up", filter=menu_open)
    def select_prev(event):
        shell.move_selection(-1)

    @kb.add("enter", filter=menu_open)
    @kb.add("c-y", filter=menu_open)
    def accept(event):
        shell.session.accept(shell.host.selected)

    @kb.add("c-e", filter=menu_open)
    def dismiss(event):
        shell.session.dismiss()


def _bind_triggers(kb: KeyBindings, shell: EditorShell) -> None:
    """Manual triggers and the mode toggle."""

    @kb.add("c-space")
    def force_twostep(event):
        shell.session.force_trigger()

    @kb.add("escape", " ")
    def force_fallback(event):
        shell.session.force_fallback()

    @kb.add("f2")
    def toggle_mode(event):
        idx = MODE_CYCLE.index(shell.session.mode)
        shell.session.on_mode_changed(MODE_CYCLE[(idx + 1) % len(MODE_CYCLE)])
        event.app.invalidate()


def _build_key_bindings(shell: EditorShell) -> KeyBindings:
    kb = KeyBindings()
    _bind_menu(kb, shell)
    _bind_triggers(kb, shell)
    return kb


class EditorShell:
    """Multiline editor with two-stage completion, info and signature popups.

    Meta+Enter (Escape, Enter) finishes editing and returns the text.
    """

    def __init__(
        self,
        *,
        text: str = "",
        backend: CompletionBackend | None = None,
        config: CompletionConfig | None = None,
        diagnostics: Diagnostics | None = None,
        lexer: Lexer | None = None,
        echo_diagnostics: bool = True,
    ) -> None:
        self.text = text
        self.config = config or CompletionConfig()
        self.diagnostics = diagnostics or Diagnostics()
        self.service = CompletionService(self.diagnostics)
        self.prompt = PromptSession(
            message=self._prompt,
            multiline=True,
            lexer=lexer,
            complete_while_typing=False,
            bottom_toolbar=self._toolbar,
            key_bindings=_build_key_bindings(self),
            style=Style.from_dict(
                {
                    "bottom-toolbar": "bg:#1c1c1c #808080",
                    "bottom-toolbar.text": "",
                    "toolbar.mode": "bg:#303030 #ffffff bold",
                    "toolbar.state": "#87d7ff",
                    "toolbar.popup": "fg:ansiyellow",
                    "toolbar.source": "fg:ansigreen",
                    "toolbar.source.none": "#808080",
                    "toolbar.stale": "fg:ansimagenta",
                    "signature": "bg:#262626 #d0d0d0",
                    "signature.active": "bg:#262626 #ffaf87 bold underline",
                    "info": "bg:#262626 #d0d0d0",
                }
            ),
        )
        buffer = self.prompt.default_buffer
        self.host = PromptToolkitHost(buffer, invalidate=self._invalidate)
        self.session = self.service.start("main", self.host, backend=backend, config=self.config)
        self.toolbar = ToolbarConfig()
        self.toolbar.add("signature", make_signature_widget(self.host))
        self.toolbar.add("info", make_info_widget(self.host))
        self.toolbar.add("mode", make_mode_widget(self))
        self.toolbar.add("state", make_state_widget(self))
        self.toolbar.add("source", make_source_widget(self))
        self.toolbar.add("stale", make_stale_widget(self))
        self._last_text = text
        buffer.on_text_changed += self._on_text_changed
        buffer.on_cursor_position_changed += self._on_cursor_moved
        if echo_diagnostics:
            self.diagnostics.add_sink(self._print_diagnostic)

    def _prompt(self):
        color = MODE_COLORS[self.session.mode]
        return [("fg:" + color, "| ")]

    def _toolbar(self):
        return self.toolbar.render()

    def _invalidate(self) -> None:
        app = self.prompt.app
        if app.is_running:
            app.invalidate()

    def _on_text_changed(self, buffer: Buffer) -> None:
        old, self._last_text = self._last_text, buffer.text
        if self.host.applying:
            return
        doc = buffer.document
        position = Position(doc.cursor_position_row, doc.cursor_position_col)
        self.session.on_text_changed(diff_edit(old, buffer.text, position))

    def _on_cursor_moved(self, buffer: Buffer) -> None:
        if self.host.applying:
            return
        doc = buffer.document
        self.session.on_cursor_moved(Position(doc.cursor_position_row, doc.cursor_position_col))
        # prompt_toolkit drops its CompletionState on any cursor move.
        if self.session.presenter.menu_visible and buffer.complete_state is None:
            self.session.dismiss()

    def move_selection(self, delta: int) -> None:
        index = self.host.select(delta)
        self.session.on_selection_changed(index)

    def _print_diagnostic(self, entry: DiagnosticEntry) -> None:
        print_formatted_text(FormattedText([
            (f"{DIAGNOSTICS_COLOR} bold", "[diag]"),
            ("", " "),
            (DIAGNOSTICS_COLOR, entry.format()),
        ]))

    async def run(self) -> str | None:
        """Edit until submit (returns the text) or Ctrl-C/Ctrl-D (returns None)."""
        with patch_stdout():
            try:
                text = await self.prompt.prompt_async(default=self.text)
            except (KeyboardInterrupt, EOFError):
                text = None
        await self.service.shutdown()
        return text
