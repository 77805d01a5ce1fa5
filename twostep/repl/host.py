"""EditorHost on a prompt_toolkit Buffer.

The completion menu is drawn through the buffer's CompletionState, but the
host never lets prompt_toolkit apply a completion itself: selection only moves
the highlight, and insertion goes through insert_text() with an `applying`
guard so the change does not come back as a user edit. Floating windows are
kept as content and drawn by toolbar widgets.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from io import StringIO
from typing import Callable, Sequence

from prompt_toolkit.buffer import Buffer, CompletionState
from prompt_toolkit.completion import Completion
from prompt_toolkit.document import Document
from prompt_toolkit.formatted_text import ANSI, to_formatted_text
from rich.console import Console
from rich.markdown import Markdown

from twostep.models import CursorContext, EditEvent, Position
from twostep.presenter import INFO, Highlight, MenuEntry

StyleFragments = list[tuple[str, str]]


def render_markdown(text: str, width: int | None = None) -> str:
    """Convert markdown text to ANSI-escaped string via Rich."""
    if width is None:
        try:
            width = os.get_terminal_size().columns
        except OSError:
            width = 80
    buf = StringIO()
    console = Console(file=buf, width=width, force_terminal=True)
    console.print(Markdown(text))
    return buf.getvalue()


def diff_edit(old: str, new: str, position: Position) -> EditEvent:
    """Describe the change from `old` to `new` as one contiguous edit."""
    limit = min(len(old), len(new))
    prefix = 0
    while prefix < limit and old[prefix] == new[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < limit - prefix
        and old[len(old) - 1 - suffix] == new[len(new) - 1 - suffix]
    ):
        suffix += 1
    return EditEvent(
        position=position,
        inserted=new[prefix:len(new) - suffix],
        deleted=old[prefix:len(old) - suffix],
    )


@dataclass
class PopupWindow:
    lines: list[str]
    width: int
    height: int
    highlights: tuple[Highlight, ...] = ()


class PromptToolkitHost:
    def __init__(self, buffer: Buffer, *, invalidate: Callable[[], None] | None = None) -> None:
        self.buffer = buffer
        self.windows: dict[str, PopupWindow] = {}
        self.applying = False
        self._invalidate = invalidate or (lambda: None)

    # ── EditorHost ───────────────────────────────────────────────────────

    def cursor_context(self) -> CursorContext:
        doc = self.buffer.document
        return CursorContext(
            position=Position(doc.cursor_position_row, doc.cursor_position_col),
            line_text=doc.current_line,
            buffer_text=doc.text,
        )

    def render_menu(self, entries: Sequence[MenuEntry], start: Position) -> None:
        doc = self.buffer.document
        offset = start.character - doc.cursor_position_col
        completions = [
            Completion(e.label, start_position=min(offset, 0), display=e.label, display_meta=e.kind)
            for e in entries
        ]
        self.buffer.complete_state = CompletionState(
            original_document=doc, completions=completions, complete_index=None
        )
        self._invalidate()

    def hide_menu(self) -> None:
        self.buffer.complete_state = None
        self._invalidate()

    def show_window(
        self,
        kind: str,
        lines: Sequence[str],
        *,
        width: int,
        height: int,
        highlights: Sequence[Highlight] = (),
    ) -> None:
        self.windows[kind] = PopupWindow(list(lines), width, height, tuple(highlights))
        self._invalidate()

    def hide_window(self, kind: str) -> None:
        if self.windows.pop(kind, None) is not None:
            self._invalidate()

    def insert_text(self, text: str, start: Position, end: Position) -> None:
        doc = self.buffer.document
        start_index = doc.translate_row_col_to_index(start.line, start.character)
        end_index = doc.translate_row_col_to_index(end.line, end.character)
        new_text = doc.text[:start_index] + text + doc.text[end_index:]
        self.applying = True
        try:
            self.buffer.document = Document(new_text, start_index + len(text))
        finally:
            self.applying = False

    # ── Menu selection ───────────────────────────────────────────────────

    @property
    def selected(self) -> int | None:
        state = self.buffer.complete_state
        return state.complete_index if state is not None else None

    def select(self, delta: int) -> int | None:
        """Move the menu highlight by `delta`, wrapping; returns the new index."""
        state = self.buffer.complete_state
        if state is None or not state.completions:
            return None
        count = len(state.completions)
        if state.complete_index is None:
            index = 0 if delta > 0 else count - 1
        else:
            index = (state.complete_index + delta) % count
        state.go_to_index(index)
        self._invalidate()
        return index

    # ── Window rendering ─────────────────────────────────────────────────

    def render_window(self, kind: str) -> StyleFragments:
        window = self.windows.get(kind)
        if window is None:
            return []
        if kind == INFO:
            ansi = render_markdown("\n".join(window.lines), width=window.width)
            return list(to_formatted_text(ANSI(ansi.rstrip("\n") + "\n")))
        parts: StyleFragments = []
        marks = {line: (start, end) for line, start, end in window.highlights}
        for i, line in enumerate(window.lines):
            if i in marks:
                start, end = marks[i]
                parts.append((f"class:{kind}", line[:start]))
                parts.append((f"class:{kind}.active", line[start:end]))
                parts.append((f"class:{kind}", line[end:] + "\n"))
            else:
                parts.append((f"class:{kind}", line + "\n"))
        return parts
