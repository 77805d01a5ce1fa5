"""Completion configuration: validated, camelCase-tolerant, hot-reloadable."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from twostep.sources import BufferWordSource, as_source


class WindowDimensions(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    height: int = Field(25, ge=1)
    width: int = Field(80, ge=1)


class CompletionConfig(BaseModel):
    """Per-session options.

    Assignments are validated, so `config.debounce_main_ms = 50` is the hot
    reload path. The controller snapshots the config when it allocates a
    generation; an in-flight cycle never sees later changes.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        arbitrary_types_allowed=True,
    )

    enabled: bool = True
    debounce_main_ms: int = Field(100, ge=0)
    debounce_info_ms: int = Field(100, ge=0)
    debounce_signature_ms: int = Field(50, ge=0)
    primary_timeout_ms: int = Field(1000, ge=1)
    fallback_source: Any = Field(default_factory=BufferWordSource)
    max_items: int = Field(50, ge=1)
    trigger_characters: frozenset[str] = frozenset()
    use_backend_trigger_characters: bool = True
    signature_trigger_characters: frozenset[str] = frozenset({"(", ","})
    use_sort_text: bool = False
    filter_primary: bool = True
    info_window: WindowDimensions = Field(default_factory=WindowDimensions)
    signature_window: WindowDimensions = Field(default_factory=WindowDimensions)

    @field_validator("trigger_characters", "signature_trigger_characters")
    @classmethod
    def _single_characters(cls, value: frozenset[str]) -> frozenset[str]:
        bad = sorted(c for c in value if len(c) != 1)
        if bad:
            raise ValueError(f"trigger characters must be single characters, got {bad}")
        return value

    @field_validator("fallback_source")
    @classmethod
    def _fallback_capability(cls, value: Any) -> Any:
        if value is None or hasattr(value, "fetch"):
            return value
        if callable(value):
            return as_source(value)
        raise ValueError("fallback_source must define fetch() or be callable")

    def snapshot(self) -> CompletionConfig:
        """Frozen-in-practice copy used for one pipeline cycle."""
        return self.model_copy(deep=False)


def load_config(path: Path) -> CompletionConfig:
    """Read a TOML file: either a [tool.twostep] table or top-level keys."""
    data = tomllib.loads(path.read_text())
    section = data.get("tool", {}).get("twostep")
    if section is None:
        section = {k: v for k, v in data.items() if k != "tool"}
    return CompletionConfig.model_validate(section)
