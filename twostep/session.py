"""Editing sessions: host events in, pipeline and popups wired together."""

from __future__ import annotations

import logging
from typing import Iterable

from twostep.auxiliary import call_context, info_scheduler, signature_scheduler
from twostep.config import CompletionConfig
from twostep.diagnostics import Diagnostics
from twostep.models import CompletionItem, EditEvent, Position
from twostep.modes import DEFAULT_MODE, Mode
from twostep.pipeline import PipelineController, TransitionListener
from twostep.presenter import EditorHost, Presenter
from twostep.sources import CompletionBackend, PrimarySourceAdapter
from twostep.tasks import TaskManager

logger = logging.getLogger(__name__)

ALL_ACTIONS = frozenset({"completion", "info", "signature"})


class CompletionSession:
    """One buffer's completion state: pipeline, info popup, signature popup.

    The three timelines share the host, presenter and task manager but each
    owns its generation counter.
    """

    def __init__(
        self,
        host: EditorHost,
        *,
        backend: CompletionBackend | None = None,
        config: CompletionConfig | None = None,
        diagnostics: Diagnostics | None = None,
        session_id: str = "1",
        on_transition: TransitionListener | None = None,
    ) -> None:
        self.session_id = session_id
        self.host = host
        self.config = config or CompletionConfig()
        self.diagnostics = diagnostics or Diagnostics()
        self.tasks = TaskManager()
        self.presenter = Presenter(host)
        self.primary = PrimarySourceAdapter(backend)
        self.mode = DEFAULT_MODE
        self.selected: int | None = None
        self.pipeline = PipelineController(
            host,
            self.config,
            primary=self.primary,
            presenter=self.presenter,
            diagnostics=self.diagnostics,
            tasks=self.tasks,
            on_transition=on_transition,
        )
        self.info = info_scheduler(
            self.config, self.primary, self.presenter,
            tasks=self.tasks, diagnostics=self.diagnostics,
        )
        self.signature = signature_scheduler(
            self.config, self.primary, self.presenter,
            tasks=self.tasks, diagnostics=self.diagnostics,
        )

    @property
    def active(self) -> bool:
        return self.config.enabled and self.mode is Mode.INSERT

    def attach_backend(self, backend: CompletionBackend | None) -> None:
        """Swap the primary backend; takes effect on the next request."""
        self.primary.backend = backend

    # ── Host events ──────────────────────────────────────────────────────

    def on_text_changed(self, event: EditEvent) -> None:
        if not self.active:
            return
        self.pipeline.notify(event)
        if not self.presenter.menu_visible:
            self.on_selection_changed(None)
        self._update_signature(event.last_char)

    def on_cursor_moved(self, position: Position) -> None:
        if not self.active:
            return
        self.pipeline.on_cursor_moved(position)
        if not self.presenter.menu_visible:
            self.on_selection_changed(None)
        self._update_signature()

    def on_selection_changed(self, item_id: int | None) -> None:
        """Menu selection moved; schedule info for the newly selected item."""
        self.selected = item_id
        item = self.presenter.item(item_id) if item_id is not None else None
        if item is None or not self.active:
            self.info.stop()
            return
        generation = self.pipeline.state.generation
        self.info.trigger((generation, item_id), item=item)

    def on_mode_changed(self, mode: Mode) -> None:
        if mode is self.mode:
            return
        self.mode = mode
        suppressed = mode is not Mode.INSERT
        self.pipeline.set_suppressed(suppressed)
        if suppressed:
            self.selected = None
            self.info.stop()
            self.signature.stop()
        logger.debug(f"session {self.session_id}: mode {mode.value}")

    def signature_trigger_characters(self) -> frozenset[str]:
        return self.config.signature_trigger_characters | self.primary.signature_trigger_characters()

    def _update_signature(self, char: str = "") -> None:
        """Follow the call around the cursor; only a trigger character opens it."""
        ctx = self.host.cursor_context()
        call = call_context(ctx.before_cursor)
        if call is None:
            self.signature.stop()
            return
        if not self.primary.available:
            return
        if not self.signature.active and char not in self.signature_trigger_characters():
            return
        open_col, arg_index = call
        key = (ctx.position.line, open_col, arg_index)
        self.signature.trigger(key, position=ctx.position)

    # ── Commands ─────────────────────────────────────────────────────────

    def force_trigger(self) -> int | None:
        return self.pipeline.force_trigger()

    def force_fallback(self) -> int | None:
        return self.pipeline.force_fallback()

    def accept(self, item_id: int | None = None) -> CompletionItem | None:
        """Accept `item_id`, or the current selection when omitted."""
        if item_id is None:
            item_id = self.selected if self.selected is not None else 0
        item = self.pipeline.accept(item_id)
        if item is not None:
            self.on_selection_changed(None)
        return item

    def dismiss(self) -> None:
        self.pipeline.dismiss()
        self.on_selection_changed(None)

    def stop(self, actions: Iterable[str] = ALL_ACTIONS) -> None:
        """Stop any of the "completion", "info" and "signature" timelines."""
        actions = set(actions)
        unknown = actions - ALL_ACTIONS
        if unknown:
            raise ValueError(f"unknown actions: {sorted(unknown)}")
        if "completion" in actions:
            self.pipeline.stop()
            self.selected = None
        if "info" in actions:
            self.info.stop()
        if "signature" in actions:
            self.signature.stop()

    async def close(self) -> None:
        self.stop()
        await self.tasks.shutdown()

    def __repr__(self) -> str:
        return (
            f"CompletionSession({self.session_id!r}, {self.pipeline.state}, "
            f"info={self.info.phase.value}, signature={self.signature.phase.value})"
        )


class CompletionService:
    """Registry of sessions; the host-facing start/stop/trigger surface.

    Commands without an explicit session id go to the most recently started
    or focused session.
    """

    def __init__(self, diagnostics: Diagnostics | None = None) -> None:
        self.diagnostics = diagnostics or Diagnostics()
        self._sessions: dict[str, CompletionSession] = {}
        self._active: str | None = None

    def start(
        self,
        session_id: str,
        host: EditorHost,
        *,
        backend: CompletionBackend | None = None,
        config: CompletionConfig | None = None,
    ) -> CompletionSession:
        if session_id in self._sessions:
            raise ValueError(f"session {session_id!r} already started")
        session = CompletionSession(
            host,
            backend=backend,
            config=config,
            diagnostics=self.diagnostics,
            session_id=session_id,
        )
        self._sessions[session_id] = session
        self._active = session_id
        return session

    async def stop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        if self._active == session_id:
            self._active = next(reversed(self._sessions), None) if self._sessions else None
        await session.close()

    def focus(self, session_id: str) -> CompletionSession:
        session = self._sessions[session_id]
        self._active = session_id
        return session

    def get(self, session_id: str | None = None) -> CompletionSession | None:
        sid = session_id if session_id is not None else self._active
        return self._sessions.get(sid) if sid is not None else None

    def force_trigger(self, session_id: str | None = None) -> int | None:
        session = self.get(session_id)
        return session.force_trigger() if session else None

    def accept(self, item_id: int | None = None, session_id: str | None = None) -> CompletionItem | None:
        session = self.get(session_id)
        return session.accept(item_id) if session else None

    def dismiss(self, session_id: str | None = None) -> None:
        session = self.get(session_id)
        if session:
            session.dismiss()

    @property
    def sessions(self) -> list[str]:
        return list(self._sessions)

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.stop(session_id)
