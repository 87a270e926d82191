"""
Error taxonomy for errand.

Query and validation errors are raised by the store layer and surface as failed function results;
they are never retried.  Completion errors are raised by the completion backends and are retried
by :class:`errand.agent.completion.RetryPolicy` until the attempt budget runs out.
"""


class ErrandError(Exception):
    """Base class for every error raised by errand."""


class ValidationError(ErrandError):
    """A required descriptor field or function parameter is missing or malformed."""


class UnsupportedOperationError(ErrandError):
    """An action, filter operator or join type is outside the supported vocabulary."""


class StoreError(ErrandError):
    """The backing table store rejected a compiled statement."""


class CompletionError(ErrandError):
    """Base class for retryable completion failures."""


class TransportError(CompletionError):
    """The completion service could not be reached or answered with an HTTP error."""


class EmptyReplyError(CompletionError):
    """The completion service answered without any usable content."""


class ParseError(CompletionError):
    """The reply could not be turned into a decision object."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"[{stage}] {message}")
