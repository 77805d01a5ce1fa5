"""Completion sources: the primary backend adapter and fallback matchers.

Every source exposes one capability, `fetch(request)`, returning a
CompletionResult either directly or as an awaitable. The primary adapter
wraps a backend (usually an LSP server) and turns absence, timeouts and bad
payloads into PrimaryFailure. Fallback sources must work with no backend at
all, since they are the only path for plain-text buffers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Iterable, Protocol, runtime_checkable

from twostep.exceptions import (
    BackendUnavailable,
    MalformedResponse,
    PrimaryFailure,
    RequestTimeout,
)
from twostep.models import (
    CompletionItem,
    CompletionRequest,
    CompletionResult,
    Position,
    SignatureHelp,
    Source,
    TriggerContext,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class CompletionSource(Protocol):
    def fetch(
        self, request: CompletionRequest
    ) -> CompletionResult | Awaitable[CompletionResult]: ...


@runtime_checkable
class CompletionBackend(Protocol):
    """Asynchronous request/response backend (LSP-style).

    `resolve_item_detail` and `request_signature_help` are optional; the
    adapter checks for them before calling.
    """

    async def request_completions(
        self, position: Position, context: TriggerContext
    ) -> CompletionResult | Iterable[CompletionItem]: ...


def coerce_result(
    value: Any, generation: int, source: Source
) -> CompletionResult:
    """Normalize a source payload into a CompletionResult for `generation`."""
    if value is None:
        return CompletionResult(generation=generation, source=source)
    if isinstance(value, CompletionResult):
        return CompletionResult(
            generation=generation,
            items=tuple(value.items),
            source=source,
            is_complete=value.is_complete,
        )
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise MalformedResponse(
            f"expected a list of completion items, got {type(value).__name__}",
            payload=value,
        )
    items = []
    for entry in value:
        if isinstance(entry, CompletionItem):
            items.append(entry)
        elif isinstance(entry, str):
            items.append(CompletionItem(label=entry))
        else:
            raise MalformedResponse(
                f"unexpected completion entry {type(entry).__name__}", payload=value
            )
    return CompletionResult(generation=generation, items=tuple(items), source=source)


def filter_by_base(items: Iterable[CompletionItem], base: str) -> list[CompletionItem]:
    """Keep items whose filter text (or label) extends `base`, in arrival order."""
    if not base:
        return list(items)
    return [it for it in items if (it.filter_text or it.label).startswith(base)]


async def fetch_from(source: Any, request: CompletionRequest, kind: Source) -> CompletionResult:
    """Call `source.fetch`, awaiting it only when it hands back an awaitable."""
    value = source.fetch(request)
    if inspect.isawaitable(value):
        value = await value
    return coerce_result(value, request.generation, kind)


class PrimarySourceAdapter:
    """Stage-1 adapter around an optional backend.

    fetch() raises a PrimaryFailure subclass for every way the primary can
    come up empty-handed; CancelledError is left alone.
    """

    def __init__(self, backend: CompletionBackend | None = None) -> None:
        self.backend = backend

    @property
    def available(self) -> bool:
        return self.backend is not None

    def trigger_characters(self) -> frozenset[str]:
        chars = getattr(self.backend, "completion_trigger_characters", None)
        return frozenset(chars or ())

    def signature_trigger_characters(self) -> frozenset[str]:
        chars = getattr(self.backend, "signature_trigger_characters", None)
        return frozenset(chars or ())

    async def fetch(
        self,
        request: CompletionRequest,
        *,
        timeout_ms: int,
        filter_base: bool = True,
    ) -> CompletionResult:
        if self.backend is None:
            raise BackendUnavailable("no primary completion backend attached")
        payload = await self._call(
            self.backend.request_completions(request.position, request.context),
            timeout_ms,
            what="completion",
        )
        result = coerce_result(payload, request.generation, Source.PRIMARY)
        if filter_base:
            kept = filter_by_base(result.items, request.base)
            result = CompletionResult(
                generation=result.generation,
                items=tuple(kept),
                source=result.source,
                is_complete=result.is_complete,
            )
        logger.debug(
            f"primary g{request.generation}: {len(result.items)} items "
            f"(base={request.base!r})"
        )
        return result

    async def resolve(self, item: CompletionItem, *, timeout_ms: int) -> CompletionItem | None:
        """Fill in detail/documentation for `item`, or None when unsupported."""
        resolver = getattr(self.backend, "resolve_item_detail", None)
        if resolver is None:
            return None
        resolved = await self._call(resolver(item), timeout_ms, what="resolve")
        if resolved is None:
            return None
        if isinstance(resolved, CompletionItem):
            return resolved
        if isinstance(resolved, str):
            return CompletionItem(
                label=item.label,
                insert_text=item.insert_text,
                kind=item.kind,
                sort_priority=item.sort_priority,
                detail=item.detail,
                documentation=resolved,
                data=item.data,
            )
        raise MalformedResponse(
            f"unexpected resolve payload {type(resolved).__name__}", payload=resolved
        )

    async def signature_help(
        self, position: Position, *, timeout_ms: int
    ) -> SignatureHelp | None:
        requester = getattr(self.backend, "request_signature_help", None)
        if requester is None:
            return None
        value = await self._call(requester(position), timeout_ms, what="signature")
        if value is None or isinstance(value, SignatureHelp):
            return value
        raise MalformedResponse(
            f"unexpected signature payload {type(value).__name__}", payload=value
        )

    async def _call(self, awaitable: Awaitable, timeout_ms: int, *, what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout_ms / 1000)
        except TimeoutError as e:
            raise RequestTimeout(
                f"{what} request timed out after {timeout_ms}ms",
                timeout_ms=timeout_ms,
                cause=e,
            )
        except PrimaryFailure:
            raise
        except Exception as e:
            raise MalformedResponse(
                f"{what} request failed: {type(e).__name__}: {e}", cause=e
            )


class BufferWordSource:
    """Fallback matcher over the words of the current buffer.

    Returns unique words that extend the base, in order of first appearance.
    The word being typed is never offered back to itself.
    """

    def __init__(self, pattern: str = r"[^\W\d]\w*", kind: str = "Text") -> None:
        self._word_re = re.compile(pattern)
        self.kind = kind

    def fetch(self, request: CompletionRequest) -> CompletionResult:
        base = request.base
        seen: set[str] = set()
        items: list[CompletionItem] = []
        for match in self._word_re.finditer(request.context.buffer_text):
            word = match.group(0)
            if word == base or word in seen or not word.startswith(base):
                continue
            seen.add(word)
            items.append(CompletionItem(label=word, kind=self.kind))
        return CompletionResult(
            generation=request.generation, items=tuple(items), source=Source.FALLBACK
        )

    def __repr__(self) -> str:
        return f"BufferWordSource({self._word_re.pattern!r})"


class FunctionSource:
    """Adapt a plain callable `fn(request)` into a source."""

    def __init__(self, fn: Callable[[CompletionRequest], Any]) -> None:
        self._fn = fn

    def fetch(self, request: CompletionRequest) -> Any:
        return self._fn(request)

    def __repr__(self) -> str:
        return f"FunctionSource({getattr(self._fn, '__name__', self._fn)!r})"


def as_source(fn: Callable[[CompletionRequest], Any]) -> FunctionSource:
    return FunctionSource(fn)
