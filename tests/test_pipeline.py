"""Tests for PipelineController: debounce, primary/fallback, staleness, accept."""

from __future__ import annotations

import asyncio

import pytest

from twostep.config import CompletionConfig
from twostep.diagnostics import Diagnostics
from twostep.exceptions import LspProtocolError
from twostep.models import CompletionItem, Position, TriggerKind
from twostep.pipeline import IDLE, Phase, PipelineController, PipelineState
from twostep.sources import PrimarySourceAdapter


# --- Fixtures ---


@pytest.fixture
def config():
    return CompletionConfig(debounce_main_ms=30, primary_timeout_ms=200)


@pytest.fixture
def diagnostics():
    return Diagnostics()


def make_controller(host, config, diagnostics, backend=None, transitions=None):
    return PipelineController(
        host,
        config,
        primary=PrimarySourceAdapter(backend),
        diagnostics=diagnostics,
        on_transition=(lambda old, new: transitions.append(str(new))) if transitions is not None else None,
    )


async def type_text(controller, host, text, gap=0.0):
    for ch in text:
        controller.notify(host.type(ch))
        if gap:
            await asyncio.sleep(gap)


async def settle(controller, extra=0.05):
    """Wait out the debounce plus in-flight tasks."""
    await asyncio.sleep(controller.config.debounce_main_ms / 1000 + extra)
    for tt in controller.tasks.active():
        await asyncio.gather(tt.task, return_exceptions=True)


# --- Debounce ---


class TestDebounce:
    """Bursts of edits coalesce into one request."""

    @pytest.mark.asyncio
    async def test_burst_issues_exactly_one_request(self, make_host, make_backend, diagnostics):
        """Five keystrokes 10ms apart under a 50ms debounce -> one primary call."""
        host = make_host()
        backend = make_backend([(0.0, ["hello"])])
        cfg = CompletionConfig(debounce_main_ms=50)
        ctl = make_controller(host, cfg, diagnostics, backend)

        loop = asyncio.get_running_loop()
        await type_text(ctl, host, "hell", gap=0.01)
        ctl.notify(host.type("o"))
        last_keystroke = loop.time()
        assert ctl.state.phase is Phase.DEBOUNCING
        assert backend.calls == []

        await settle(ctl)
        assert len(backend.calls) == 1
        assert ctl.generations.current == 1
        position, context = backend.calls[0]
        assert position == Position(0, 5)
        assert context.base == "hello"

        # Fired a full debounce interval after the last keystroke, not earlier.
        waited = backend.call_times[0] - last_keystroke
        assert waited >= 0.05 - 0.005
        assert waited < 0.05 + 0.1

    @pytest.mark.asyncio
    async def test_separate_bursts_issue_separate_requests(self, make_host, make_backend, config, diagnostics):
        """Each quiet period allocates its own generation."""
        host = make_host()
        backend = make_backend([(0.0, ["foobar"])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "fo")
        await settle(ctl)
        await type_text(ctl, host, "o")
        await settle(ctl)
        assert len(backend.calls) == 2
        assert ctl.state == PipelineState(Phase.PRESENTING, 2)

    @pytest.mark.asyncio
    async def test_edit_hides_menu_and_debounces(self, make_host, make_backend, config, diagnostics):
        """A keystroke while presenting closes the menu until the next result."""
        host = make_host()
        backend = make_backend([(0.0, ["foobar", "food"])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "fo")
        await settle(ctl)
        assert host.menu == ["foobar", "food"]

        await type_text(ctl, host, "o")
        assert host.menu is None
        assert ctl.state.phase is Phase.DEBOUNCING


# --- Trigger predicate ---


class TestTriggers:
    """Which edits start a cycle and which dismiss."""

    @pytest.mark.asyncio
    async def test_non_keyword_edit_dismisses(self, make_host, make_backend, config, diagnostics):
        """Typing a space goes back to Idle without a request."""
        host = make_host()
        backend = make_backend([(0.0, ["foo"])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "fo ")
        assert ctl.state == IDLE
        await settle(ctl)
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_backend_trigger_character(self, make_host, make_backend, config, diagnostics):
        """A backend trigger character starts a TRIGGER_CHARACTER request."""
        host = make_host("obj")
        backend = make_backend([(0.0, ["append"])])
        ctl = make_controller(host, config, diagnostics, backend)

        ctl.notify(host.type("."))
        await settle(ctl)
        _, context = backend.calls[0]
        assert context.kind is TriggerKind.TRIGGER_CHARACTER
        assert context.character == "."
        assert host.menu == ["append"]

    @pytest.mark.asyncio
    async def test_backend_trigger_characters_can_be_disabled(self, make_host, make_backend, diagnostics):
        host = make_host("obj")
        backend = make_backend([(0.0, ["append"])])
        cfg = CompletionConfig(debounce_main_ms=10, use_backend_trigger_characters=False)
        ctl = make_controller(host, cfg, diagnostics, backend)

        ctl.notify(host.type("."))
        assert ctl.state == IDLE

    @pytest.mark.asyncio
    async def test_configured_trigger_character(self, make_host, diagnostics):
        """User trigger characters work with no backend at all."""
        host = make_host("alpha beta\n")
        cfg = CompletionConfig(debounce_main_ms=10, trigger_characters={"@"})
        ctl = make_controller(host, cfg, diagnostics)

        ctl.notify(host.type("@"))
        await settle(ctl)
        assert ctl.state.phase is Phase.PRESENTING
        assert host.menu == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_disabled_ignores_edits(self, make_host, diagnostics):
        host = make_host("foo ")
        cfg = CompletionConfig(enabled=False)
        ctl = make_controller(host, cfg, diagnostics)

        ctl.notify(host.type("f"))
        assert ctl.state == IDLE
        assert ctl.force_trigger() is None

    @pytest.mark.asyncio
    async def test_suppressed_ignores_edits(self, make_host, config, diagnostics):
        host = make_host("foo ")
        ctl = make_controller(host, config, diagnostics)
        ctl.set_suppressed(True)

        ctl.notify(host.type("f"))
        assert ctl.state == IDLE
        assert ctl.force_trigger() is None
        assert ctl.force_fallback() is None
        ctl.set_suppressed(False)
        ctl.notify(host.type("o"))
        assert ctl.state.phase is Phase.DEBOUNCING
        ctl.dismiss()


# --- Primary / fallback ---


class TestPrimaryAndFallback:
    """Stage 1, then stage 2 only when stage 1 comes back empty."""

    @pytest.mark.asyncio
    async def test_non_empty_primary_skips_fallback(self, make_host, make_backend, config, diagnostics):
        calls = []

        def fallback(request):
            calls.append(request)
            return ["never"]

        host = make_host()
        backend = make_backend([(0.0, ["print", "property"])])
        config.fallback_source = fallback
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "pr")
        await settle(ctl)
        assert host.menu == ["print", "property"]
        assert calls == []
        assert ctl.fallback_requests == 0

    @pytest.mark.asyncio
    async def test_empty_primary_uses_buffer_words(self, make_host, make_backend, config, diagnostics):
        """Buffer "foo foobar " with base "fo" -> ["foo", "foobar"]."""
        host = make_host("foo foobar ")
        backend = make_backend([(0.0, [])])
        transitions = []
        ctl = make_controller(host, config, diagnostics, backend, transitions)

        await type_text(ctl, host, "fo")
        await settle(ctl)
        assert host.menu == ["foo", "foobar"]
        assert transitions == [
            "Debouncing", "Debouncing",
            "AwaitingPrimary(1)", "AwaitingFallback(1)", "Presenting(1)",
        ]

    @pytest.mark.asyncio
    async def test_no_backend_goes_straight_to_fallback(self, make_host, config, diagnostics):
        """Plain-text buffers: the unavailable primary is not a diagnostic."""
        host = make_host("alpha alphabet ")
        ctl = make_controller(host, config, diagnostics)

        await type_text(ctl, host, "al")
        await settle(ctl)
        assert host.menu == ["alpha", "alphabet"]
        assert ctl.primary_requests == 1
        assert ctl.fallback_requests == 1
        assert diagnostics.entries == []

    @pytest.mark.asyncio
    async def test_timeout_falls_back_once(self, make_host, make_backend, diagnostics):
        """A primary slower than primary_timeout_ms -> fallback, invoked once."""
        calls = []

        def fallback(request):
            calls.append(request.generation)
            return ["fallback_word"]

        host = make_host()
        backend = make_backend([(1.0, ["too_late"])])
        cfg = CompletionConfig(debounce_main_ms=10, primary_timeout_ms=50, fallback_source=fallback)
        ctl = make_controller(host, cfg, diagnostics, backend)

        await type_text(ctl, host, "fa")
        await settle(ctl, extra=0.15)
        assert calls == [1]
        assert host.menu == ["fallback_word"]
        assert ctl.state == PipelineState(Phase.PRESENTING, 1)
        [entry] = diagnostics.of_kind("request_timeout")
        assert entry.generation == 1

    @pytest.mark.asyncio
    async def test_malformed_primary_falls_back(self, make_host, make_backend, config, diagnostics):
        host = make_host("wordy ")
        backend = make_backend([(0.0, 42)])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "wo")
        await settle(ctl)
        assert host.menu == ["wordy"]
        assert len(diagnostics.of_kind("malformed_response")) == 1

    @pytest.mark.asyncio
    async def test_protocol_error_falls_back(self, make_host, make_backend, config, diagnostics):
        host = make_host("wordy ")
        backend = make_backend([(0.0, LspProtocolError("boom", code=-32603))])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "wo")
        await settle(ctl)
        assert host.menu == ["wordy"]
        assert len(diagnostics.of_kind("protocol_error")) == 1

    @pytest.mark.asyncio
    async def test_backend_exception_is_malformed(self, make_host, make_backend, config, diagnostics):
        """Arbitrary backend errors are wrapped, never propagated."""
        host = make_host("wordy ")
        backend = make_backend([(0.0, RuntimeError("kaput"))])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "wo")
        await settle(ctl)
        [entry] = diagnostics.of_kind("malformed_response")
        assert "RuntimeError" in entry.error
        assert ctl.state.phase is Phase.PRESENTING

    @pytest.mark.asyncio
    async def test_fallback_failure_presents_nothing(self, make_host, config, diagnostics):
        def broken(request):
            raise ValueError("bad source")

        host = make_host()
        config.fallback_source = broken
        ctl = make_controller(host, config, diagnostics)

        await type_text(ctl, host, "ab")
        await settle(ctl)
        assert host.menu is None
        assert ctl.state == PipelineState(Phase.PRESENTING, 1)
        [entry] = diagnostics.of_kind("fallback_failure")
        assert "ValueError" in entry.error

    @pytest.mark.asyncio
    async def test_both_empty_hides_menu(self, make_host, make_backend, config, diagnostics):
        host = make_host()
        backend = make_backend([(0.0, [])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "zz")
        await settle(ctl)
        assert host.menu is None
        assert host.menus == []
        assert ctl.state.phase is Phase.PRESENTING

    @pytest.mark.asyncio
    async def test_async_fallback_source(self, make_host, config, diagnostics):
        async def fallback(request):
            await asyncio.sleep(0)
            return [CompletionItem(label=request.base + "_async")]

        host = make_host()
        config.fallback_source = fallback
        ctl = make_controller(host, config, diagnostics)

        await type_text(ctl, host, "ab")
        await settle(ctl)
        assert host.menu == ["ab_async"]

    @pytest.mark.asyncio
    async def test_primary_is_filtered_by_base(self, make_host, make_backend, config, diagnostics):
        host = make_host()
        backend = make_backend([(0.0, ["print", "len", "property"])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "pr")
        await settle(ctl)
        assert host.menu == ["print", "property"]

    @pytest.mark.asyncio
    async def test_max_items_truncates(self, make_host, make_backend, diagnostics):
        host = make_host()
        backend = make_backend([(0.0, [f"item{i}" for i in range(10)])])
        cfg = CompletionConfig(debounce_main_ms=10, max_items=3)
        ctl = make_controller(host, cfg, diagnostics, backend)

        await type_text(ctl, host, "it")
        await settle(ctl)
        assert host.menu == ["item0", "item1", "item2"]

    @pytest.mark.asyncio
    async def test_force_fallback_skips_primary(self, make_host, make_backend, config, diagnostics):
        host = make_host("zebra ze")
        backend = make_backend([(0.0, ["zeta"])])
        ctl = make_controller(host, config, diagnostics, backend)

        g = ctl.force_fallback()
        assert ctl.state == PipelineState(Phase.AWAITING_FALLBACK, g)
        await settle(ctl)
        assert backend.calls == []
        assert host.menu == ["zebra"]


# --- Staleness ---


class TestStaleness:
    """Only the current generation may reach the presenter."""

    @pytest.mark.asyncio
    async def test_stale_generation_is_discarded(self, make_host, make_backend, config, diagnostics):
        """g3 resolves after g4 was issued: g3 dropped, g4 presented."""
        host = make_host("ab")
        backend = make_backend([(0.1, ["ab_three"]), (0.0, ["ab_four"])])
        ctl = make_controller(host, config, diagnostics, backend)
        ctl.generations.next()
        ctl.generations.next()

        assert ctl.force_trigger() == 3
        await asyncio.sleep(0.02)
        assert ctl.force_trigger() == 4
        await asyncio.sleep(0.15)

        assert host.menus == [["ab_four"]]
        assert ctl.state == PipelineState(Phase.PRESENTING, 4)
        assert diagnostics.stale_count == 1
        assert diagnostics.entries == []

    @pytest.mark.asyncio
    async def test_result_after_dismiss_is_dropped(self, make_host, make_backend, config, diagnostics):
        host = make_host("ab")
        backend = make_backend([(0.05, ["abc"])])
        ctl = make_controller(host, config, diagnostics, backend)

        ctl.force_trigger()
        ctl.dismiss()
        await asyncio.sleep(0.1)
        assert host.menus == []
        assert ctl.state == IDLE
        assert diagnostics.stale_count == 1

    @pytest.mark.asyncio
    async def test_result_during_new_debounce_is_dropped(self, make_host, make_backend, config, diagnostics):
        """A reply landing while the user is typing again never flashes a menu."""
        host = make_host("ab")
        backend = make_backend([(0.02, ["abc"]), (0.0, ["abcd"])])
        ctl = make_controller(host, config, diagnostics, backend)

        ctl.force_trigger()
        ctl.notify(host.type("c"))
        await asyncio.sleep(0.025)
        assert host.menus == []
        await settle(ctl)
        assert host.menus == [["abcd"]]

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight(self, make_host, make_backend, config, diagnostics):
        host = make_host("ab")
        backend = make_backend([(1.0, ["abc"])])
        ctl = make_controller(host, config, diagnostics, backend)

        ctl.force_trigger()
        await asyncio.sleep(0)
        ctl.stop()
        assert ctl.state == IDLE
        await asyncio.sleep(0.01)
        assert ctl.tasks.active() == []


# --- Accept / dismiss ---


class TestAccept:
    """Accepting inserts over the base and returns to Idle."""

    @pytest.mark.asyncio
    async def test_accept_replaces_base(self, make_host, make_backend, config, diagnostics):
        host = make_host("x = ")
        backend = make_backend([(0.0, ["foobar", "food"])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "fo")
        await settle(ctl)
        item = ctl.accept(1)
        assert item.label == "food"
        assert host.text == "x = food"
        assert host.inserts == [("food", Position(0, 4), Position(0, 6))]
        assert ctl.state == IDLE
        assert host.menu is None

    @pytest.mark.asyncio
    async def test_accept_uses_insert_text_and_replace_start(self, make_host, make_backend, config, diagnostics):
        host = make_host("obj")
        item = CompletionItem(label="append(x)", insert_text="append", replace_start=4)
        backend = make_backend([(0.0, [item])])
        ctl = make_controller(host, config, diagnostics, backend)

        ctl.notify(host.type("."))
        ctl.notify(host.type("a"))
        await settle(ctl)
        ctl.accept(0)
        assert host.text == "obj.append"

    @pytest.mark.asyncio
    async def test_accept_outside_presenting_is_noop(self, make_host, config, diagnostics):
        host = make_host("ab")
        ctl = make_controller(host, config, diagnostics)
        assert ctl.accept(0) is None
        assert host.inserts == []

    @pytest.mark.asyncio
    async def test_accept_unknown_item_is_noop(self, make_host, make_backend, config, diagnostics):
        host = make_host()
        backend = make_backend([(0.0, ["abc"])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "ab")
        await settle(ctl)
        assert ctl.accept(5) is None
        assert ctl.state.phase is Phase.PRESENTING

    @pytest.mark.asyncio
    async def test_cursor_leaving_word_dismisses(self, make_host, make_backend, config, diagnostics):
        host = make_host("x = ")
        backend = make_backend([(0.0, ["foobar"])])
        ctl = make_controller(host, config, diagnostics, backend)

        await type_text(ctl, host, "fo")
        await settle(ctl)
        ctl.on_cursor_moved(Position(0, 5))
        assert ctl.state.phase is Phase.PRESENTING
        ctl.on_cursor_moved(Position(0, 2))
        assert ctl.state == IDLE
        assert host.menu is None

    @pytest.mark.asyncio
    async def test_hot_reload_applies_to_next_cycle(self, make_host, make_backend, config, diagnostics):
        """Config changes mid-flight do not touch the running cycle."""
        host = make_host()
        backend = make_backend([(0.0, [f"it{i}" for i in range(5)])])
        ctl = make_controller(host, config, diagnostics, backend)

        ctl.force_trigger()
        config.max_items = 2
        await settle(ctl)
        assert len(host.menu) == 5
        ctl.force_trigger()
        await settle(ctl)
        assert len(host.menu) == 2
