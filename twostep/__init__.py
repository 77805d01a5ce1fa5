"""Twostep: two-stage completion with debounced, generation-checked requests."""

from twostep.auxiliary import AuxiliaryScheduler, call_context
from twostep.config import CompletionConfig, WindowDimensions, load_config
from twostep.debounce import DebounceScheduler
from twostep.diagnostics import DiagnosticEntry, Diagnostics
from twostep.exceptions import (
    BackendUnavailable,
    FallbackFailure,
    LspProtocolError,
    MalformedResponse,
    PrimaryFailure,
    RequestTimeout,
    StaleResponse,
    TwostepError,
)
from twostep.generation import GenerationCounter
from twostep.models import (
    CompletionItem,
    CompletionRequest,
    CompletionResult,
    CursorContext,
    EditEvent,
    Position,
    SignatureHelp,
    Source,
    TriggerContext,
    TriggerKind,
)
from twostep.pipeline import Phase, PipelineController, PipelineState
from twostep.presenter import EditorHost, MenuEntry, Presenter
from twostep.session import CompletionService, CompletionSession
from twostep.sources import (
    BufferWordSource,
    CompletionBackend,
    CompletionSource,
    PrimarySourceAdapter,
    as_source,
)

__all__ = [
    # Pipeline
    "PipelineController",
    "PipelineState",
    "Phase",
    "GenerationCounter",
    "DebounceScheduler",
    "AuxiliaryScheduler",
    "call_context",
    # Sessions
    "CompletionSession",
    "CompletionService",
    # Sources
    "CompletionSource",
    "CompletionBackend",
    "PrimarySourceAdapter",
    "BufferWordSource",
    "as_source",
    # Presentation
    "EditorHost",
    "Presenter",
    "MenuEntry",
    # Types
    "Position",
    "CursorContext",
    "EditEvent",
    "TriggerKind",
    "TriggerContext",
    "CompletionRequest",
    "CompletionItem",
    "CompletionResult",
    "SignatureHelp",
    "Source",
    # Config and diagnostics
    "CompletionConfig",
    "WindowDimensions",
    "load_config",
    "Diagnostics",
    "DiagnosticEntry",
    # Exceptions
    "TwostepError",
    "PrimaryFailure",
    "BackendUnavailable",
    "RequestTimeout",
    "MalformedResponse",
    "LspProtocolError",
    "StaleResponse",
    "FallbackFailure",
]
