"""Exception taxonomy for the analysis pipeline.

- Transient external errors carry an HTTP status and are retried.
- Per-(repo, user) errors are recorded in the progress document only.
- Parse errors from the LLM are replaced by normalized defaults.
- Run-fatal errors move the run to FAILED.
"""

from typing import Optional


class CommitLoomError(Exception):
    """Base class for all domain errors."""


class ExternalServiceError(CommitLoomError):
    """Error from an external collaborator (VCS or LLM)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return is_transient_status(self.status_code)


class VCSError(ExternalServiceError):
    """VCS API call failed."""


class LLMError(ExternalServiceError):
    """LLM call failed."""


class ResponseParseError(CommitLoomError):
    """LLM response did not contain parseable JSON."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class RunFatalError(CommitLoomError):
    """Error that fails the whole analysis run."""


class RunNotFound(CommitLoomError):
    """No analysis run with the given id."""


class InvalidRunState(CommitLoomError):
    """Requested transition is not allowed from the run's current state."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class RunInterrupted(CommitLoomError):
    """Raised inside a runner when the run was cancelled or paused."""

    def __init__(self, status: str):
        super().__init__(f"Run interrupted ({status})")
        self.status = status


def is_transient_status(status_code: Optional[int]) -> bool:
    """Rate limits and server errors are worth retrying."""
    if status_code is None:
        return False
    return status_code == 429 or status_code >= 500


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception raised by an external call.

    Provider SDK errors (openai, anthropic, httpx) expose ``status_code``
    either directly or on an attached response.
    """
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return is_transient_status(status)
    name = type(exc).__name__
    if name in _RETRYABLE_NAMES:
        return True
    # VCSError wrapping a transport failure
    cause = exc.__cause__
    return cause is not None and cause is not exc and is_retryable(cause)


_RETRYABLE_NAMES = (
    "RateLimitError", "APITimeoutError", "APIConnectionError", "InternalServerError",
    "ReadTimeout", "ConnectTimeout", "ConnectError", "RemoteProtocolError",
)
