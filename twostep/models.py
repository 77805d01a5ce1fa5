"""Value types shared by the completion pipeline, sources, and presenter."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any

# Characters that extend the word under completion.
KEYWORD_RE = re.compile(r"\w")
_BASE_RE = re.compile(r"\w*$")


class Source(enum.Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class TriggerKind(enum.Enum):
    """Why a completion request was made (mirrors LSP CompletionTriggerKind)."""

    INVOKED = 1
    TRIGGER_CHARACTER = 2
    FORCED = 3


@dataclass(frozen=True, order=True)
class Position:
    """Zero-based line and character offset."""

    line: int
    character: int


@dataclass(frozen=True)
class CursorContext:
    """Snapshot of the host buffer around the cursor."""

    position: Position
    line_text: str
    buffer_text: str = ""

    @property
    def before_cursor(self) -> str:
        return self.line_text[: self.position.character]

    @property
    def base(self) -> str:
        """Keyword characters immediately left of the cursor."""
        return word_before(self.before_cursor)

    @property
    def base_start(self) -> int:
        return self.position.character - len(self.base)


@dataclass(frozen=True)
class EditEvent:
    """One text change reported by the host."""

    position: Position
    inserted: str = ""
    deleted: str = ""

    @property
    def last_char(self) -> str:
        return self.inserted[-1:] if self.inserted else ""


@dataclass(frozen=True)
class TriggerContext:
    kind: TriggerKind
    character: str | None = None
    line_text: str = ""
    buffer_text: str = ""
    base: str = ""


@dataclass(frozen=True)
class CompletionRequest:
    """One completion attempt; immutable once the controller creates it."""

    generation: int
    position: Position
    context: TriggerContext

    @property
    def base(self) -> str:
        return self.context.base

    @property
    def base_start(self) -> int:
        return self.position.character - len(self.context.base)


@dataclass
class CompletionItem:
    label: str
    insert_text: str | None = None
    kind: str = ""
    sort_priority: int = 0
    detail: str | None = None
    documentation: str | None = None
    filter_text: str | None = None
    sort_text: str | None = None
    replace_start: int | None = None
    data: Any = field(default=None, repr=False)

    @property
    def text(self) -> str:
        """What accepting this item inserts."""
        return self.insert_text if self.insert_text is not None else self.label

    @property
    def has_info(self) -> bool:
        return bool(self.detail or self.documentation)


@dataclass(frozen=True)
class CompletionResult:
    generation: int
    items: tuple[CompletionItem, ...] = ()
    source: Source = Source.PRIMARY
    is_complete: bool = True

    @property
    def empty(self) -> bool:
        return not self.items


@dataclass(frozen=True)
class ParameterInfo:
    label: str
    documentation: str | None = None


@dataclass(frozen=True)
class SignatureInfo:
    label: str
    documentation: str | None = None
    parameters: tuple[ParameterInfo, ...] = ()
    active_parameter: int | None = None


@dataclass(frozen=True)
class SignatureHelp:
    signatures: tuple[SignatureInfo, ...] = ()
    active_signature: int = 0
    active_parameter: int = 0

    @property
    def empty(self) -> bool:
        return not self.signatures


@dataclass(frozen=True)
class AuxiliaryRequest:
    """A popup fetch keyed to selection or call context, not to edits."""

    generation: int
    kind: str
    key: Any = None
    position: Position | None = None
    item: CompletionItem | None = None


def word_before(text: str) -> str:
    match = _BASE_RE.search(text)
    return match.group(0) if match else ""


def is_keyword_char(char: str) -> bool:
    return bool(char) and KEYWORD_RE.fullmatch(char) is not None
