"""
Error Taxonomy

Exception hierarchy shared by the orchestrator, the model providers,
the sandbox executors and the result cache.

Routes translate these into HTTP status codes; the orchestrator
converts provider / sandbox errors into a failed request with a
human-readable ``error_message``.
"""

from __future__ import annotations


class AnalysisPlatformError(Exception):
    """Base class for every error raised by the analysis platform."""


class ValidationError(AnalysisPlatformError):
    """Malformed input (query too short/long, unknown dataset, ...)."""


class NotFoundError(AnalysisPlatformError, KeyError):
    """A request, dataset, organisation or user does not exist."""

    def __str__(self) -> str:
        # KeyError.__str__ wraps the message in quotes.
        return str(self.args[0]) if self.args else ""


class ClarificationNeeded(AnalysisPlatformError):
    """The query is ambiguous; the user must rephrase before a retry.

    Not a failure: the request sits in ``requires_clarification``.
    """

    def __init__(self, message: str, question: str | None = None) -> None:
        super().__init__(message)
        self.question = question


class StateTransitionError(AnalysisPlatformError):
    """An illegal state-machine transition was attempted."""

    def __init__(self, current: str, trigger: str) -> None:
        super().__init__(
            f"Cannot '{trigger}' an analysis in '{current}' state."
        )
        self.current = current
        self.trigger = trigger


class ResultNotReadyError(AnalysisPlatformError):
    """The final result was requested before the analysis completed."""


# ── Provider errors ──────────────────────────────────────────────────────

class ProviderError(AnalysisPlatformError):
    """Raised by AI model provider adapters."""


class RateLimitError(ProviderError):
    pass


class AuthenticationError(ProviderError):
    pass


class ProviderTimeoutError(ProviderError):
    pass


class ModelUnavailableError(ProviderError):
    pass


# ── Sandbox errors ───────────────────────────────────────────────────────

class SandboxError(AnalysisPlatformError):
    """Raised by sandbox executors."""


class SandboxTimeoutError(SandboxError):
    pass


class ResourceExceededError(SandboxError):
    pass


class RuntimeFailureError(SandboxError):
    pass


# ── Cache errors ─────────────────────────────────────────────────────────

class CacheError(AnalysisPlatformError):
    """Cache read/write failure.  Logged, never surfaced to callers."""
