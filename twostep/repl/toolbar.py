"""Configurable toolbar with named widgets returning prompt_toolkit style tuples.

The bottom toolbar doubles as the floating-window surface: the signature and
info widgets render whatever the host currently shows, above the status line.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from twostep.presenter import INFO, SIGNATURE

if TYPE_CHECKING:
    from twostep.repl.host import PromptToolkitHost
    from twostep.repl.shell import EditorShell

ToolbarWidget = Callable[[], list[tuple[str, str]]]


class ToolbarConfig:
    """User-configurable toolbar with named widgets.

    toolbar.add("name", fn)   -- register widget
    toolbar.remove("name")    -- unregister widget
    toolbar.widgets           -- list widget names
    """

    def __init__(self) -> None:
        self._widgets: dict[str, ToolbarWidget] = {}
        self._order: list[str] = []

    def add(self, name: str, widget: ToolbarWidget) -> None:
        """Register a named toolbar widget."""
        if name not in self._order:
            self._order.append(name)
        self._widgets[name] = widget

    def remove(self, name: str) -> None:
        """Remove a toolbar widget by name."""
        self._widgets.pop(name, None)
        if name in self._order:
            self._order.remove(name)

    @property
    def widgets(self) -> list[str]:
        """List registered widget names in display order."""
        return list(self._order)

    def render(self) -> list[tuple[str, str]]:
        """Render all widgets into a flat style tuple list."""
        parts: list[tuple[str, str]] = []
        for name in self._order:
            fn = self._widgets.get(name)
            if fn:
                try:
                    parts.extend(fn())
                except Exception:
                    parts.append(("fg:red", f" [{name}:err] "))
        return parts

    def __repr__(self) -> str:
        names = ", ".join(self._order)
        return f"toolbar -- .add(name, fn), .remove(name). widgets: [{names}]"


def make_window_widget(host: PromptToolkitHost, kind: str) -> ToolbarWidget:
    """Built-in widget: a floating window's content (hidden when closed)."""
    return lambda: host.render_window(kind)


def make_signature_widget(host: PromptToolkitHost) -> ToolbarWidget:
    return make_window_widget(host, SIGNATURE)


def make_info_widget(host: PromptToolkitHost) -> ToolbarWidget:
    return make_window_widget(host, INFO)


def make_mode_widget(shell: EditorShell) -> ToolbarWidget:
    """Built-in widget: current editing mode."""
    return lambda: [("class:toolbar.mode", f" {shell.session.mode.value} ")]


def make_state_widget(shell: EditorShell) -> ToolbarWidget:
    """Built-in widget: pipeline state and popup phases."""

    def widget():
        session = shell.session
        parts = [("class:toolbar.state", f" {session.pipeline.state} ")]
        for sched in (session.info, session.signature):
            if sched.phase.value != "Idle":
                parts.append(("class:toolbar.popup", f" {sched.kind}:{sched.phase.value} "))
        return parts

    return widget


def make_source_widget(shell: EditorShell) -> ToolbarWidget:
    """Built-in widget: which primary backend is attached."""

    def widget():
        if shell.session.primary.available:
            return [("class:toolbar.source", " lsp ")]
        return [("class:toolbar.source.none", " fallback only ")]

    return widget


def make_stale_widget(shell: EditorShell) -> ToolbarWidget:
    """Built-in widget: dropped stale results (hidden when zero)."""

    def widget():
        n = shell.diagnostics.stale_count
        if n == 0:
            return []
        return [("class:toolbar.stale", f" {n} stale ")]

    return widget
