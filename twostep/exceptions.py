"""Twostep exception hierarchy.

All twostep exceptions inherit from TwostepError and support cause chaining.
None of them are meant to reach the editing flow: the controller converts
them into "no completions shown" and reports them to diagnostics.
"""


class TwostepError(Exception):
    """Base exception for all twostep errors.

    Wraps original errors as __cause__ for proper exception chaining.
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class PrimaryFailure(TwostepError):
    """Raised when the primary source yields no usable result.

    The controller treats every subclass identically to an empty result.
    """

    pass


class BackendUnavailable(PrimaryFailure):
    """Raised when no primary backend is attached or it has gone away."""

    pass


class RequestTimeout(PrimaryFailure):
    """Raised when a primary request outlives `primary_timeout_ms`."""

    def __init__(
        self,
        message: str,
        *,
        timeout_ms: int = 0,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause=cause)
        self.timeout_ms = timeout_ms


class MalformedResponse(PrimaryFailure):
    """Raised when a backend payload cannot be turned into completion items."""

    def __init__(
        self,
        message: str,
        *,
        payload: object = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause=cause)
        self.payload = payload


class LspProtocolError(PrimaryFailure):
    """Raised when the language server answers with a JSON-RPC error object."""

    def __init__(
        self,
        message: str,
        *,
        code: int = 0,
        data: object = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause=cause)
        self.code = code
        self.data = data


class StaleResponse(TwostepError):
    """A result arrived for a generation that is no longer current.

    Expected traffic, never reported as an error.
    """

    def __init__(self, message: str, *, generation: int = 0, current: int = 0):
        super().__init__(message)
        self.generation = generation
        self.current = current


class FallbackFailure(TwostepError):
    """Raised when the fallback source fails; the menu stays hidden."""

    pass
