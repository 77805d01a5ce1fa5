"""Interactive editor shell hosting the completion pipeline."""

from __future__ import annotations

import asyncio

from twostep.repl.shell import EditorShell


def launch(text: str = "") -> str | None:
    """Start the editor shell on `text`; returns the submitted text."""
    return asyncio.run(EditorShell(text=text).run())


__all__ = ["EditorShell", "launch"]
