from __future__ import annotations


class AnalysisError(RuntimeError):
    """Base class for failures that end an analysis run."""

    kind = "analysis_error"
    user_message = "Analysis failed. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class UnknownProvider(AnalysisError):
    kind = "unknown_provider"
    user_message = "Unknown AI provider."


class MissingCredential(AnalysisError):
    kind = "missing_credential"
    user_message = "No API key configured."


class NoTranscript(AnalysisError):
    kind = "no_transcript"
    user_message = "No transcript available for this video."


class AuthError(AnalysisError):
    kind = "auth_error"
    user_message = "The provider rejected the API key."


class RateLimitError(AnalysisError):
    kind = "rate_limited"
    user_message = "The provider is rate limiting requests. Please wait and try again."


class StreamTimeout(AnalysisError):
    kind = "timeout"
    user_message = "Request timed out. Please try again."


class MalformedResponse(AnalysisError):
    kind = "malformed_response"
    user_message = "The provider returned an unreadable response."


class NetworkError(AnalysisError):
    kind = "network_error"
    user_message = "Could not reach the provider."


class PersistenceError(AnalysisError):
    kind = "persistence_error"
    user_message = "The analysis finished but could not be saved."


UNEXPECTED_ERROR_MESSAGE = "Analysis failed unexpectedly."


def describe_error(exc: BaseException) -> tuple[str, str]:
    """Map ``exc`` to the ``(kind, message)`` pair shown to callers.

    Analysis errors carry their own message; anything else is reported with a
    generic message so internal detail stays in the logs.
    """

    if isinstance(exc, AnalysisError):
        message = str(exc).strip() or exc.user_message
        return exc.kind, message
    return "internal_error", UNEXPECTED_ERROR_MESSAGE


__all__ = [
    "AnalysisError",
    "AuthError",
    "MalformedResponse",
    "MissingCredential",
    "NetworkError",
    "NoTranscript",
    "PersistenceError",
    "RateLimitError",
    "StreamTimeout",
    "UnknownProvider",
    "describe_error",
]
