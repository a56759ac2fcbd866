"""Pipeline error types and user-facing error text."""

from src.providers.base import ErrorKind, ProviderError


class ValidationError(ValueError):
    """Bad tool parameters or malformed persona configuration. Never retried."""


class ToolExecutionError(Exception):
    """Raised inside a tool; the registry downgrades it to a failed ToolResult."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"[{tool_name}] {message}")


class StageFailure(Exception):
    """A stage aborted the round. Carries text fit for showing to a user."""

    def __init__(self, title: str, message: str, stage: str, round_number: int) -> None:
        self.title = title
        self.message = message
        self.stage = stage
        self.round_number = round_number
        super().__init__(f"{title}: {message} (round {round_number}, stage {stage})")


def describe_error(exc: BaseException) -> tuple[str, str]:
    """Return (title, message) for presenting a failure to the user."""
    if isinstance(exc, StageFailure):
        return exc.title, exc.message
    if isinstance(exc, ValidationError):
        return "Validation Error", str(exc)
    if isinstance(exc, TimeoutError):
        return (
            "Request Timeout",
            "The request took too long to complete. Please try again or simplify your request.",
        )
    if isinstance(exc, ProviderError):
        if exc.kind == ErrorKind.RATE_LIMIT:
            return (
                "Rate Limit Exceeded",
                "You've reached the rate limit. Please wait a few minutes and try again.",
            )
        if exc.kind == ErrorKind.OUTAGE:
            return (
                "Provider Issue Detected",
                "Every configured model for this step is unavailable. Try again once the provider recovers.",
            )
        if exc.kind == ErrorKind.INVALID_REQUEST:
            return "Request Rejected", str(exc)
    if isinstance(exc, ConnectionError):
        return (
            "Network Error",
            "Unable to connect to the service. Please check your internet connection and try again.",
        )
    return "Error", str(exc) or "An error occurred during processing"
