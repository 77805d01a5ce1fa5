"""Editing modes: completion triggers only in INSERT."""

from __future__ import annotations

from enum import Enum


class Mode(Enum):
    """Host editing modes."""

    INSERT = "INSERT"
    COMMAND = "COMMAND"


MODE_COLORS: dict[Mode, str] = {
    Mode.INSERT: "#87ff87",
    Mode.COMMAND: "#ffaf87",
}

DEFAULT_MODE = Mode.INSERT

# Cycle order for the mode toggle key
MODE_CYCLE = [Mode.INSERT, Mode.COMMAND]
