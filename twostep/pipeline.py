"""Pipeline controller: debounce -> primary -> (fallback) -> present.

The controller is the only writer of PipelineState and of the main
generation counter. Edits restart the debounce timer; each quiet period
allocates a new generation and spawns one task for it. Results carry their
generation back and are dropped unless that generation is still current and
the controller is still waiting for exactly that result.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable

from twostep.config import CompletionConfig
from twostep.debounce import DebounceScheduler
from twostep.diagnostics import Diagnostics
from twostep.exceptions import (
    BackendUnavailable,
    FallbackFailure,
    LspProtocolError,
    MalformedResponse,
    PrimaryFailure,
    RequestTimeout,
    StaleResponse,
)
from twostep.generation import GenerationCounter
from twostep.models import (
    CompletionItem,
    CompletionRequest,
    CompletionResult,
    EditEvent,
    Position,
    Source,
    TriggerContext,
    TriggerKind,
    is_keyword_char,
)
from twostep.presenter import EditorHost, Presenter
from twostep.sources import PrimarySourceAdapter, fetch_from
from twostep.tasks import TaskManager

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "Idle"
    DEBOUNCING = "Debouncing"
    AWAITING_PRIMARY = "AwaitingPrimary"
    AWAITING_FALLBACK = "AwaitingFallback"
    PRESENTING = "Presenting"


@dataclass(frozen=True)
class PipelineState:
    phase: Phase
    generation: int | None = None

    def __str__(self) -> str:
        if self.generation is None:
            return self.phase.value
        return f"{self.phase.value}({self.generation})"


IDLE = PipelineState(Phase.IDLE)
DEBOUNCING = PipelineState(Phase.DEBOUNCING)

TransitionListener = Callable[[PipelineState, PipelineState], None]

_FAILURE_KINDS: dict[type, str] = {
    RequestTimeout: "request_timeout",
    MalformedResponse: "malformed_response",
    LspProtocolError: "protocol_error",
}


class PipelineController:
    """Two-stage completion state machine for one editing session."""

    def __init__(
        self,
        host: EditorHost,
        config: CompletionConfig | None = None,
        *,
        primary: PrimarySourceAdapter | None = None,
        presenter: Presenter | None = None,
        diagnostics: Diagnostics | None = None,
        tasks: TaskManager | None = None,
        on_transition: TransitionListener | None = None,
    ) -> None:
        self.host = host
        self.config = config or CompletionConfig()
        self.primary = primary or PrimarySourceAdapter()
        self.presenter = presenter or Presenter(host)
        self.diagnostics = diagnostics or Diagnostics()
        self.tasks = tasks or TaskManager()
        self.generations = GenerationCounter()
        self.on_transition = on_transition
        self.suppressed = False
        self.primary_requests = 0
        self.fallback_requests = 0
        self._debounce = DebounceScheduler(
            self._on_quiet, lambda: self.config.debounce_main_ms
        )
        self._state = IDLE
        self._request: CompletionRequest | None = None
        self._anchor: Position | None = None
        self._trigger: tuple[TriggerKind, str | None] = (TriggerKind.INVOKED, None)
        self._inserting = False

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def request(self) -> CompletionRequest | None:
        """Request of the latest generation, if any."""
        return self._request

    def trigger_characters(self) -> frozenset[str]:
        chars = self.config.trigger_characters
        if self.config.use_backend_trigger_characters:
            chars = chars | self.primary.trigger_characters()
        return chars

    # ── Host events ──────────────────────────────────────────────────────

    def notify(self, event: EditEvent) -> None:
        """An edit happened: restart debounce, or dismiss on a non-trigger edit."""
        if not self.config.enabled or self.suppressed or self._inserting:
            return
        char = event.last_char
        if is_keyword_char(char):
            self._trigger = (TriggerKind.INVOKED, None)
        elif char and char in self.trigger_characters():
            self._trigger = (TriggerKind.TRIGGER_CHARACTER, char)
        else:
            self.dismiss()
            return
        ctx = self.host.cursor_context()
        self._anchor = Position(ctx.position.line, ctx.base_start)
        self.presenter.hide_menu()
        self._set_state(DEBOUNCING)
        self._debounce.notify(event)

    def on_cursor_moved(self, position: Position) -> None:
        """Dismiss when the cursor leaves the word being completed."""
        if self._state.phase is Phase.IDLE or self._anchor is None:
            return
        if position.line != self._anchor.line or position.character < self._anchor.character:
            logger.debug(f"cursor left completion context at {position}")
            self.dismiss()

    def set_suppressed(self, suppressed: bool) -> None:
        """Mode changes: suppress triggering (and stop) or resume."""
        self.suppressed = suppressed
        if suppressed:
            self.dismiss()

    # ── Commands ─────────────────────────────────────────────────────────

    def force_trigger(self) -> int | None:
        """Skip debounce and start a new generation right away."""
        if not self.config.enabled or self.suppressed:
            return None
        self._debounce.cancel()
        return self._start_cycle(TriggerKind.FORCED, None)

    def force_fallback(self) -> int | None:
        """Skip debounce and the primary source; ask the fallback directly."""
        if not self.config.enabled or self.suppressed:
            return None
        self._debounce.cancel()
        return self._start_cycle(TriggerKind.FORCED, None, fallback_only=True)

    def accept(self, item_id: int) -> CompletionItem | None:
        """Insert the chosen item and return to Idle. No-op outside Presenting."""
        if self._state.phase is not Phase.PRESENTING or self._request is None:
            return None
        item = self.presenter.item(item_id)
        if item is None:
            return None
        request = self._request
        cursor = self.host.cursor_context().position
        start_col = item.replace_start if item.replace_start is not None else request.base_start
        self._inserting = True
        try:
            self.presenter.insert(item, Position(cursor.line, start_col), cursor)
        finally:
            self._inserting = False
        self.presenter.hide_menu()
        self._anchor = None
        self._set_state(IDLE)
        logger.debug(f"accepted {item.label!r} from g{request.generation}")
        return item

    def dismiss(self) -> None:
        """Close the menu and return to Idle; in-flight results become stale."""
        self._debounce.cancel()
        self.presenter.hide_menu()
        self._anchor = None
        if self._state.phase is not Phase.IDLE:
            self._set_state(IDLE)

    def stop(self) -> None:
        self.dismiss()
        self.tasks.revoke_kind("completion")

    # ── Cycle ────────────────────────────────────────────────────────────

    def _on_quiet(self) -> None:
        kind, char = self._trigger
        self._start_cycle(kind, char)

    def _start_cycle(
        self, kind: TriggerKind, char: str | None, *, fallback_only: bool = False
    ) -> int:
        cfg = self.config.snapshot()
        ctx = self.host.cursor_context()
        g = self.generations.next()
        request = CompletionRequest(
            generation=g,
            position=ctx.position,
            context=TriggerContext(
                kind=kind,
                character=char,
                line_text=ctx.line_text,
                buffer_text=ctx.buffer_text,
                base=ctx.base,
            ),
        )
        self._request = request
        self._anchor = Position(ctx.position.line, ctx.base_start)
        self.presenter.hide_menu()
        if fallback_only:
            self._set_state(PipelineState(Phase.AWAITING_FALLBACK, g))
            coro = self._run_fallback(request, cfg)
        else:
            self._set_state(PipelineState(Phase.AWAITING_PRIMARY, g))
            coro = self._run_primary(request, cfg)
        self.tasks.submit(coro, name=f"completion:g{g}", kind="completion", generation=g)
        return g

    async def _run_primary(self, request: CompletionRequest, cfg: CompletionConfig) -> None:
        g = request.generation
        self.primary_requests += 1
        result: CompletionResult | None = None
        failure: PrimaryFailure | None = None
        try:
            result = await self.primary.fetch(
                request, timeout_ms=cfg.primary_timeout_ms, filter_base=cfg.filter_primary
            )
        except PrimaryFailure as e:
            failure = e
        if not self._accepts(g, Phase.AWAITING_PRIMARY):
            return
        if isinstance(failure, BackendUnavailable):
            logger.debug(f"g{g}: {failure}, using fallback")
        elif failure is not None:
            kind = _FAILURE_KINDS.get(type(failure), "primary_failure")
            self.diagnostics.report(kind, str(failure), generation=g, error=failure.__cause__)
        if result is not None and not result.empty:
            self._present(request, result, cfg)
            return
        self._set_state(PipelineState(Phase.AWAITING_FALLBACK, g))
        await self._run_fallback(request, cfg)

    async def _run_fallback(self, request: CompletionRequest, cfg: CompletionConfig) -> None:
        g = request.generation
        self.fallback_requests += 1
        result = CompletionResult(generation=g, source=Source.FALLBACK)
        failure: FallbackFailure | None = None
        source = cfg.fallback_source
        if source is not None:
            try:
                result = await fetch_from(source, request, Source.FALLBACK)
            except Exception as e:
                failure = FallbackFailure(
                    f"fallback source {source!r} failed: {type(e).__name__}: {e}", cause=e
                )
        if not self._accepts(g, Phase.AWAITING_FALLBACK):
            return
        if failure is not None:
            self.diagnostics.report("fallback_failure", str(failure), generation=g, error=failure.__cause__)
            result = CompletionResult(generation=g, source=Source.FALLBACK)
        self._present(request, result, cfg)

    def _present(
        self, request: CompletionRequest, result: CompletionResult, cfg: CompletionConfig
    ) -> None:
        self._set_state(PipelineState(Phase.PRESENTING, request.generation))
        start = Position(request.position.line, request.base_start)
        shown = self.presenter.present(
            result.items, start, max_items=cfg.max_items, use_sort_text=cfg.use_sort_text
        )
        logger.debug(
            f"g{request.generation}: presenting {len(shown)} {result.source.value} items"
        )

    def _accepts(self, generation: int, phase: Phase) -> bool:
        """Whether a result for `generation` may still move the state machine."""
        try:
            self.generations.ensure_current(generation)
        except StaleResponse as e:
            self.diagnostics.report("stale_response", str(e), generation=generation)
            return False
        if self._state.phase is not phase or self._state.generation != generation:
            self.diagnostics.report(
                "stale_response",
                f"result for g{generation} arrived in {self._state}",
                generation=generation,
            )
            return False
        return True

    def _set_state(self, new: PipelineState) -> None:
        old, self._state = self._state, new
        logger.debug(f"{old} -> {new}")
        if self.on_transition is not None:
            self.on_transition(old, new)
