"""Diagnostics side channel: non-fatal failure reports, never raised."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

# Reported but expected; logged at debug, kept out of the history.
QUIET_KINDS = frozenset({"stale_response"})


@dataclass
class DiagnosticEntry:
    kind: str
    message: str
    generation: int | None = None
    error: str = ""
    timestamp: float = field(default_factory=time.time)

    def format(self) -> str:
        tag = f"{self.kind}:g{self.generation}" if self.generation is not None else self.kind
        tail = f" ({self.error})" if self.error else ""
        return f"[{tag}] {self.message}{tail}"


DiagnosticSink = Callable[[DiagnosticEntry], None]


class Diagnostics:
    """Bounded history of reports, mirrored to logging and optional sinks."""

    def __init__(self, maxlen: int = 200) -> None:
        self._entries: deque[DiagnosticEntry] = deque(maxlen=maxlen)
        self._sinks: list[DiagnosticSink] = []
        self.stale_count = 0
        self.debug_handler: logging.FileHandler | None = None

    def add_sink(self, sink: DiagnosticSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: DiagnosticSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def report(
        self,
        kind: str,
        message: str,
        *,
        generation: int | None = None,
        error: BaseException | None = None,
    ) -> None:
        if kind in QUIET_KINDS:
            self.stale_count += 1
            logger.debug(f"g{generation} {message}")
            return
        entry = DiagnosticEntry(
            kind=kind,
            message=message,
            generation=generation,
            error=f"{type(error).__name__}: {error}" if error is not None else "",
        )
        self._entries.append(entry)
        logger.warning(entry.format())
        if self.debug_handler:
            record = logging.LogRecord(
                name=f"twostep.{kind}",
                level=logging.WARNING,
                pathname="",
                lineno=0,
                msg=entry.format(),
                args=(),
                exc_info=None,
            )
            self.debug_handler.emit(record)
        for sink in list(self._sinks):
            try:
                sink(entry)
            except Exception:
                logger.exception("diagnostics sink failed")

    @property
    def entries(self) -> list[DiagnosticEntry]:
        return list(self._entries)

    def of_kind(self, kind: str) -> list[DiagnosticEntry]:
        return [e for e in self._entries if e.kind == kind]

    def clear(self) -> None:
        self._entries.clear()
        self.stale_count = 0

    def __repr__(self) -> str:
        return f"Diagnostics({len(self._entries)} entries, {self.stale_count} stale)"


def enable_debug(diagnostics: Diagnostics, log_dir: Path | None = None) -> None:
    """Attach a FileHandler writing reports to .twostep/debug.log."""
    log_path = (log_dir or Path.cwd() / ".twostep") / "debug.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(log_path))
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    ))
    diagnostics.debug_handler = handler


def disable_debug(diagnostics: Diagnostics) -> None:
    """Close and remove the debug handler."""
    if diagnostics.debug_handler:
        diagnostics.debug_handler.close()
        diagnostics.debug_handler = None
