"""Auxiliary popups: item info and signature help on their own timelines.

Both popups are instances of one AuxiliaryScheduler: a debounce timer, a
private generation counter, and an Idle -> AwaitingResult -> Showing cycle.
Neither shares anything with the main pipeline or with the other popup.
"""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Hashable

from twostep.debounce import DebounceScheduler
from twostep.diagnostics import Diagnostics
from twostep.exceptions import StaleResponse
from twostep.generation import GenerationCounter
from twostep.models import AuxiliaryRequest, CompletionItem, Position, SignatureHelp
from twostep.presenter import INFO, SIGNATURE
from twostep.tasks import TaskManager

if TYPE_CHECKING:
    from twostep.config import CompletionConfig
    from twostep.presenter import Presenter
    from twostep.sources import PrimarySourceAdapter

logger = logging.getLogger(__name__)


class AuxPhase(enum.Enum):
    IDLE = "Idle"
    AWAITING_RESULT = "AwaitingResult"
    SHOWING = "Showing"


class AuxiliaryScheduler:
    """Debounced fetch-and-show loop keyed by an arbitrary trigger key.

    trigger(key) with the key already awaited or shown is a no-op; any other
    key hides the current popup and restarts the debounce. fetch returns the
    value to show or None; show returns whether anything was displayed.
    """

    def __init__(
        self,
        kind: str,
        *,
        fetch: Callable[[AuxiliaryRequest], Awaitable[Any]],
        show: Callable[[Any], bool],
        hide: Callable[[], None],
        delay_ms: Callable[[], int],
        tasks: TaskManager | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self.kind = kind
        self.generations = GenerationCounter()
        self.tasks = tasks or TaskManager()
        self.diagnostics = diagnostics or Diagnostics()
        self._fetch = fetch
        self._show = show
        self._hide = hide
        self._debounce = DebounceScheduler(self._on_quiet, delay_ms)
        self.phase = AuxPhase.IDLE
        self.generation: int | None = None
        self.key: Hashable | None = None
        self._pending: tuple[Hashable, Position | None, CompletionItem | None] | None = None

    @property
    def pending_key(self) -> Hashable | None:
        return self._pending[0] if self._pending and self._debounce.pending else None

    @property
    def active(self) -> bool:
        """Awaiting, showing, or waiting out the debounce."""
        return self.phase is not AuxPhase.IDLE or self.pending_key is not None

    def trigger(
        self,
        key: Hashable,
        *,
        position: Position | None = None,
        item: CompletionItem | None = None,
    ) -> None:
        if key == self.pending_key:
            return
        if key == self.key and self.phase is not AuxPhase.IDLE:
            return
        self._reset()
        self._pending = (key, position, item)
        self._debounce.notify()

    def stop(self) -> None:
        self._debounce.cancel()
        self._pending = None
        self._reset()

    def _reset(self) -> None:
        if self.phase is AuxPhase.SHOWING:
            self._hide()
        self.phase = AuxPhase.IDLE
        self.key = None

    def _on_quiet(self) -> None:
        if self._pending is None:
            return
        key, position, item = self._pending
        self._pending = None
        g = self.generations.next()
        request = AuxiliaryRequest(
            generation=g, kind=self.kind, key=key, position=position, item=item
        )
        self.key = key
        self.generation = g
        self.phase = AuxPhase.AWAITING_RESULT
        self.tasks.submit(self._run(request), name=f"{self.kind}:g{g}", kind=self.kind, generation=g)

    async def _run(self, request: AuxiliaryRequest) -> None:
        g = request.generation
        value = None
        failure: Exception | None = None
        try:
            value = await self._fetch(request)
        except Exception as e:
            failure = e
        try:
            self.generations.ensure_current(g)
        except StaleResponse as e:
            self.diagnostics.report("stale_response", f"{self.kind}: {e}", generation=g)
            return
        if self.phase is not AuxPhase.AWAITING_RESULT or self.generation != g:
            self.diagnostics.report(
                "stale_response", f"{self.kind} result for g{g} no longer awaited", generation=g
            )
            return
        if failure is not None:
            self.diagnostics.report(
                f"{self.kind}_failure", f"{self.kind} request failed", generation=g, error=failure
            )
            value = None
        if value is not None and self._show(value):
            self.phase = AuxPhase.SHOWING
        else:
            self.phase = AuxPhase.IDLE
            self.key = None
        logger.debug(f"{self.kind} g{g} -> {self.phase.value}")

    def __repr__(self) -> str:
        return f"AuxiliaryScheduler({self.kind!r}, {self.phase.value}, g={self.generation})"


def call_context(before_cursor: str) -> tuple[int, int] | None:
    """(open-paren column, argument index) of the innermost unclosed call.

    Only parens that follow a name, `)` or `]` count as calls; brackets and
    string literals are skipped over.
    """
    stack: list[list] = []
    quote: str | None = None
    prev = ""
    for i, ch in enumerate(before_cursor):
        if quote:
            if ch == quote and prev != "\\":
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch in "([{":
            stack.append([ch, i, 0])
        elif ch in ")]}":
            if stack:
                stack.pop()
        elif ch == "," and stack:
            stack[-1][2] += 1
        prev = ch
    for opener, col, commas in reversed(stack):
        if opener != "(":
            continue
        head = before_cursor[:col].rstrip()
        if head and (head[-1].isalnum() or head[-1] in "_)]"):
            return col, commas
        return None
    return None


def info_scheduler(
    config: CompletionConfig,
    primary: PrimarySourceAdapter,
    presenter: Presenter,
    *,
    tasks: TaskManager | None = None,
    diagnostics: Diagnostics | None = None,
) -> AuxiliaryScheduler:
    """Info popup: documentation of the selected menu item."""

    async def fetch(request: AuxiliaryRequest) -> CompletionItem | None:
        item = request.item
        if item is None:
            return None
        if item.has_info:
            return item
        resolved = await primary.resolve(item, timeout_ms=config.primary_timeout_ms)
        if resolved is None or not resolved.has_info:
            return None
        return resolved

    def show(item: CompletionItem) -> bool:
        dims = config.info_window
        return presenter.show_info(item, width=dims.width, height=dims.height)

    return AuxiliaryScheduler(
        INFO,
        fetch=fetch,
        show=show,
        hide=lambda: presenter.hide_window(INFO),
        delay_ms=lambda: config.debounce_info_ms,
        tasks=tasks,
        diagnostics=diagnostics,
    )


def signature_scheduler(
    config: CompletionConfig,
    primary: PrimarySourceAdapter,
    presenter: Presenter,
    *,
    tasks: TaskManager | None = None,
    diagnostics: Diagnostics | None = None,
) -> AuxiliaryScheduler:
    """Signature popup: parameters of the call around the cursor."""

    async def fetch(request: AuxiliaryRequest) -> SignatureHelp | None:
        if request.position is None:
            return None
        help = await primary.signature_help(
            request.position, timeout_ms=config.primary_timeout_ms
        )
        if help is None or help.empty:
            return None
        return help

    def show(help: SignatureHelp) -> bool:
        dims = config.signature_window
        return presenter.show_signature(help, width=dims.width, height=dims.height)

    return AuxiliaryScheduler(
        SIGNATURE,
        fetch=fetch,
        show=show,
        hide=lambda: presenter.hide_window(SIGNATURE),
        delay_ms=lambda: config.debounce_signature_ms,
        tasks=tasks,
        diagnostics=diagnostics,
    )
