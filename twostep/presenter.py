"""Presenter: turn results into host render calls, remember what is shown.

The presenter holds no pipeline logic. It orders and truncates items, builds
floating-window content, and only talks to the host when something visible
changes.
"""

from __future__ import annotations

import textwrap
from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from twostep.models import (
    CompletionItem,
    CursorContext,
    Position,
    SignatureHelp,
    SignatureInfo,
)

INFO = "info"
SIGNATURE = "signature"

# (line index, start column, end column) inside a window's lines
Highlight = tuple[int, int, int]


@dataclass(frozen=True)
class MenuEntry:
    item_id: int
    label: str
    kind: str = ""
    detail: str = ""


@runtime_checkable
class EditorHost(Protocol):
    """What the pipeline needs from the editor it runs in."""

    def cursor_context(self) -> CursorContext: ...

    def render_menu(self, entries: Sequence[MenuEntry], start: Position) -> None: ...

    def hide_menu(self) -> None: ...

    def show_window(
        self,
        kind: str,
        lines: Sequence[str],
        *,
        width: int,
        height: int,
        highlights: Sequence[Highlight] = (),
    ) -> None: ...

    def hide_window(self, kind: str) -> None: ...

    def insert_text(self, text: str, start: Position, end: Position) -> None: ...


def order_items(
    items: Sequence[CompletionItem], *, use_sort_text: bool = False
) -> list[CompletionItem]:
    """Stable sort by sort_priority; ties keep arrival order.

    With `use_sort_text`, the backend's sort text (or label) breaks ties
    before arrival order does.
    """
    if use_sort_text:
        return sorted(items, key=lambda it: (it.sort_priority, it.sort_text or it.label))
    return sorted(items, key=lambda it: it.sort_priority)


def info_lines(item: CompletionItem, width: int, height: int) -> list[str]:
    """Detail first, then documentation, wrapped to the window size."""
    blocks = []
    if item.detail and item.detail not in (item.documentation or ""):
        blocks.append(item.detail.strip())
    if item.documentation:
        blocks.append(item.documentation.strip())
    lines: list[str] = []
    for i, block in enumerate(b for b in blocks if b):
        if i:
            lines.append("")
        for raw in block.splitlines():
            lines.extend(textwrap.wrap(raw, width) or [""])
    return lines[:height]


def signature_lines(
    help: SignatureHelp, width: int, height: int
) -> tuple[list[str], list[Highlight]]:
    """One line per signature, active parameter of each marked for highlight."""
    lines: list[str] = []
    highlights: list[Highlight] = []
    for sig in help.signatures[:height]:
        label = sig.label if len(sig.label) <= width else sig.label[: width - 1] + "…"
        span = _active_span(sig, help.active_parameter)
        if span is not None and span[1] <= len(label):
            highlights.append((len(lines), span[0], span[1]))
        lines.append(label)
    return lines, highlights


def _active_span(sig: SignatureInfo, default_active: int) -> tuple[int, int] | None:
    active = sig.active_parameter if sig.active_parameter is not None else default_active
    if not 0 <= active < len(sig.parameters):
        return None
    # Search after the opening paren so a parameter named like the function
    # does not match the function name.
    offset = max(sig.label.find("("), 0)
    param = sig.parameters[active].label
    start = sig.label.find(param, offset)
    if start < 0 or not param:
        return None
    return start, start + len(param)


class Presenter:
    def __init__(self, host: EditorHost) -> None:
        self.host = host
        self.shown: tuple[CompletionItem, ...] = ()
        self.menu_visible = False
        self.visible_windows: set[str] = set()

    def present(
        self,
        items: Sequence[CompletionItem],
        start: Position,
        *,
        max_items: int,
        use_sort_text: bool = False,
    ) -> tuple[CompletionItem, ...]:
        """Render `items` as the menu; an empty list hides it."""
        ordered = order_items(items, use_sort_text=use_sort_text)[:max_items]
        self.shown = tuple(ordered)
        if not ordered:
            self.hide_menu()
            return self.shown
        entries = [
            MenuEntry(item_id=i, label=it.label, kind=it.kind, detail=it.detail or "")
            for i, it in enumerate(ordered)
        ]
        self.host.render_menu(entries, start)
        self.menu_visible = True
        return self.shown

    def item(self, item_id: int) -> CompletionItem | None:
        if 0 <= item_id < len(self.shown):
            return self.shown[item_id]
        return None

    def hide_menu(self) -> None:
        self.shown = ()
        if self.menu_visible:
            self.host.hide_menu()
            self.menu_visible = False

    def insert(self, item: CompletionItem, start: Position, end: Position) -> None:
        self.host.insert_text(item.text, start, end)

    def show_info(self, item: CompletionItem, *, width: int, height: int) -> bool:
        lines = info_lines(item, width, height)
        if not lines:
            self.hide_window(INFO)
            return False
        self.host.show_window(INFO, lines, width=width, height=height)
        self.visible_windows.add(INFO)
        return True

    def show_signature(self, help: SignatureHelp, *, width: int, height: int) -> bool:
        lines, highlights = signature_lines(help, width, height)
        if not lines:
            self.hide_window(SIGNATURE)
            return False
        self.host.show_window(
            SIGNATURE, lines, width=width, height=height, highlights=highlights
        )
        self.visible_windows.add(SIGNATURE)
        return True

    def hide_window(self, kind: str) -> None:
        if kind in self.visible_windows:
            self.host.hide_window(kind)
            self.visible_windows.discard(kind)
