"""Shared fakes: an in-memory editor host and a scriptable completion backend."""

from __future__ import annotations

import asyncio

import pytest

from twostep.models import (
    CompletionItem,
    CursorContext,
    EditEvent,
    Position,
    SignatureHelp,
)


class FakeHost:
    """EditorHost over a plain string, recording everything it is asked to draw."""

    def __init__(self, text: str = "", cursor: int | None = None) -> None:
        self.text = text
        self.cursor = len(text) if cursor is None else cursor
        self.menu: list[str] | None = None
        self.menu_start: Position | None = None
        self.menus: list[list[str]] = []
        self.hide_count = 0
        self.windows: dict[str, list[str]] = {}
        self.highlights: dict[str, tuple] = {}
        self.inserts: list[tuple[str, Position, Position]] = []

    def _index(self, pos: Position) -> int:
        lines = self.text.split("\n")
        return sum(len(l) + 1 for l in lines[: pos.line]) + pos.character

    def position(self) -> Position:
        before = self.text[: self.cursor]
        return Position(before.count("\n"), self.cursor - (before.rfind("\n") + 1))

    def type(self, chars: str) -> EditEvent:
        """Insert at the cursor like a keystroke; returns the host's edit event."""
        self.text = self.text[: self.cursor] + chars + self.text[self.cursor:]
        self.cursor += len(chars)
        return EditEvent(position=self.position(), inserted=chars)

    def backspace(self) -> EditEvent:
        deleted = self.text[self.cursor - 1: self.cursor]
        self.text = self.text[: self.cursor - 1] + self.text[self.cursor:]
        self.cursor -= 1
        return EditEvent(position=self.position(), deleted=deleted)

    # EditorHost

    def cursor_context(self) -> CursorContext:
        pos = self.position()
        line = self.text.split("\n")[pos.line]
        return CursorContext(position=pos, line_text=line, buffer_text=self.text)

    def render_menu(self, entries, start) -> None:
        self.menu = [e.label for e in entries]
        self.menu_start = start
        self.menus.append(list(self.menu))

    def hide_menu(self) -> None:
        self.menu = None
        self.hide_count += 1

    def show_window(self, kind, lines, *, width, height, highlights=()) -> None:
        self.windows[kind] = list(lines)
        self.highlights[kind] = tuple(highlights)

    def hide_window(self, kind) -> None:
        self.windows.pop(kind, None)

    def insert_text(self, text, start, end) -> None:
        self.inserts.append((text, start, end))
        i, j = self._index(start), self._index(end)
        self.text = self.text[:i] + text + self.text[j:]
        self.cursor = i + len(text)


class FakeBackend:
    """Scriptable primary backend.

    `responses` is consumed one entry per completion call: (delay_s, payload).
    Once exhausted, the last entry repeats. A payload that is an exception
    instance is raised after the delay.
    """

    def __init__(
        self,
        responses=None,
        *,
        resolved: dict[str, str] | None = None,
        signature: SignatureHelp | None = None,
        signature_delay: float = 0.0,
    ) -> None:
        self.responses = list(responses or [(0.0, [])])
        self.calls: list[tuple] = []
        self.call_times: list[float] = []
        self.resolve_calls: list[CompletionItem] = []
        self.signature_calls: list[Position] = []
        self.resolved = resolved or {}
        self.signature = signature
        self.signature_delay = signature_delay
        self.completion_trigger_characters = ["."]

    async def request_completions(self, position, context):
        index = min(len(self.calls), len(self.responses) - 1)
        self.calls.append((position, context))
        self.call_times.append(asyncio.get_running_loop().time())
        delay, payload = self.responses[index]
        await asyncio.sleep(delay)
        if isinstance(payload, BaseException):
            raise payload
        return payload

    async def resolve_item_detail(self, item):
        self.resolve_calls.append(item)
        doc = self.resolved.get(item.label)
        if doc is None:
            return None
        return CompletionItem(label=item.label, documentation=doc)

    async def request_signature_help(self, position):
        self.signature_calls.append(position)
        await asyncio.sleep(self.signature_delay)
        return self.signature


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def make_host():
    return FakeHost


@pytest.fixture
def make_backend():
    return FakeBackend
