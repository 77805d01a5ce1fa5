"""Generation counter: the token that decides which async result is current."""

from __future__ import annotations

from twostep.exceptions import StaleResponse


class GenerationCounter:
    """Monotonically increasing integer, one per pipeline or popup timeline.

    Work started under generation g is never cancelled through the counter;
    its result is simply dropped unless g is still current when it lands.
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def current(self) -> int:
        return self._value

    def next(self) -> int:
        """Advance and return the new current generation."""
        self._value += 1
        return self._value

    def is_current(self, generation: int) -> bool:
        return generation == self._value

    def ensure_current(self, generation: int) -> None:
        """Raise StaleResponse unless `generation` is current."""
        if generation != self._value:
            raise StaleResponse(
                f"generation {generation} superseded by {self._value}",
                generation=generation,
                current=self._value,
            )

    def __repr__(self) -> str:
        return f"GenerationCounter(current={self._value})"
