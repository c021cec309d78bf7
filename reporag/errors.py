"""
Error taxonomy for ingestion and retrieval.

Every storage, fetch, embedding and completion wrapper raises one of two
families:

- TransientError: worth retrying (timeouts, connection resets, rate limits).
  The saga's per-step retry policy retries only these.
- PermanentError: retrying cannot help (unknown repository, malformed
  response, no completed run). Surfaced immediately.

Saga outcomes are reported with IngestionFailedError / CompensationFailedError.
"""

import re
from typing import Optional


class RepoRAGError(Exception):
    """Base class for all errors raised by this package."""


class TransientError(RepoRAGError):
    """A failure that may succeed when retried."""


class PermanentError(RepoRAGError):
    """A failure that will not succeed when retried."""


class StepTimeoutError(TransientError):
    """An activity exceeded its timeout tier."""

    def __init__(self, step: str, timeout: float):
        super().__init__(f"Step '{step}' timed out after {timeout:g}s")
        self.step = step
        self.timeout = timeout


class RepositoryNotFoundError(PermanentError):
    """The repository or branch does not exist."""


class RepositoryAccessError(PermanentError):
    """The repository exists but cannot be read with the configured credentials."""


class MalformedResponseError(PermanentError):
    """A third-party API returned an empty or malformed payload."""


class NoCompletedRunError(PermanentError):
    """No ingestion run has reached the completed state: no index is available."""

    def __init__(self, message: str = "No index available: no ingestion run has completed"):
        super().__init__(message)


class RunNotFoundError(PermanentError):
    """Unknown ingestion run id."""


class ConversationNotFoundError(PermanentError):
    """Unknown conversation id."""


class ObjectNotFoundError(PermanentError):
    """Missing bucket or object in scratch storage."""


class RunCancelledError(PermanentError):
    """The run was cancelled before reaching completion."""


class InvalidQueryError(PermanentError):
    """The query is empty or otherwise unusable."""


class InvalidTransitionError(PermanentError):
    """A status change that the run state machine does not allow."""


class IngestionFailedError(RepoRAGError):
    """An ingestion run failed and was compensated."""

    def __init__(
        self,
        run_id: str,
        step: Optional[str],
        cause: BaseException,
        compensation_error: Optional[BaseException] = None,
    ):
        where = f" at step '{step}'" if step else ""
        message = f"Ingestion run '{run_id}' failed{where}: {cause}"
        if compensation_error is not None:
            message += f" (compensation failed: {compensation_error})"
        super().__init__(message)
        self.run_id = run_id
        self.step = step
        self.cause = cause
        self.compensation_error = compensation_error


class CompensationFailedError(IngestionFailedError):
    """Compensation itself failed. Requires operator intervention."""


# Exception class names that indicate a retryable condition. Third-party
# clients (openai, httpx, ollama, anthropic) each define their own hierarchy,
# so matching on names keeps this module free of those imports.
_TRANSIENT_NAME = re.compile(
    r"Timeout|Timedout|Connect|RateLimit|TooManyRequests|ServiceUnavailable|"
    r"InternalServer|Overloaded|Throttl|Temporar"
)
_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


def classify_exception(exc: BaseException, context: str = "") -> RepoRAGError:
    """
    Map an arbitrary exception onto the transient/permanent taxonomy.

    Exceptions that are already RepoRAGError instances are returned unchanged.
    The original exception is kept as __cause__ when the caller raises the
    result with ``raise ... from exc``.
    """
    if isinstance(exc, RepoRAGError):
        return exc

    prefix = f"{context}: " if context else ""
    message = f"{prefix}{type(exc).__name__}: {exc}"

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientError(message)

    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(status, int) and status in _TRANSIENT_STATUS:
        return TransientError(message)

    for cls in type(exc).__mro__:
        if _TRANSIENT_NAME.search(cls.__name__):
            return TransientError(message)

    return PermanentError(message)
