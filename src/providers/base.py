"""Abstract base for all AI model providers, plus error classification."""

from abc import ABC, abstractmethod
from enum import Enum

from src.models import GenerationRequest, GenerationResponse


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    OUTAGE = "outage"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """Raised when a provider call fails."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, provider_name: str, message: str, kind: ErrorKind | None = None) -> None:
        self.provider_name = provider_name
        if kind is not None:
            self.kind = kind
        super().__init__(f"[{provider_name}] {message}")


class ProviderRateLimitError(ProviderError):
    kind = ErrorKind.RATE_LIMIT


class ProviderOutageError(ProviderError):
    kind = ErrorKind.OUTAGE


class ProviderInvalidRequestError(ProviderError):
    kind = ErrorKind.INVALID_REQUEST


_ERROR_CLASSES: dict[ErrorKind, type[ProviderError]] = {
    ErrorKind.RATE_LIMIT: ProviderRateLimitError,
    ErrorKind.OUTAGE: ProviderOutageError,
    ErrorKind.INVALID_REQUEST: ProviderInvalidRequestError,
    ErrorKind.UNKNOWN: ProviderError,
}

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "quota", "too many requests")
_OUTAGE_MARKERS = ("timed out", "timeout", "connection", "unavailable", "overloaded", "502", "503", "504")
_INVALID_STATUS = {400, 401, 403, 404, 422}


def _status_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def error_kind(exc: BaseException) -> ErrorKind:
    """Map an SDK or transport exception onto an ErrorKind.

    Status codes win over message text. The SDKs expose them as
    ``status_code`` (anthropic, openai) or ``code`` (google-genai).
    """
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, TimeoutError | ConnectionError):
        return ErrorKind.OUTAGE

    status = _status_of(exc)
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in _INVALID_STATUS:
        return ErrorKind.INVALID_REQUEST
    if status is not None and 500 <= status < 600:
        return ErrorKind.OUTAGE

    text = f"{type(exc).__name__} {exc}".lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT
    if any(marker in text for marker in _OUTAGE_MARKERS):
        return ErrorKind.OUTAGE
    return ErrorKind.UNKNOWN


def classify_provider_error(provider_name: str, exc: BaseException) -> ProviderError:
    """Wrap any exception in the ProviderError subclass matching its kind."""
    if isinstance(exc, ProviderError):
        return exc
    kind = error_kind(exc)
    return _ERROR_CLASSES[kind](provider_name, f"API call failed: {exc}")


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the configured model name (e.g. 'claude-sonnet', 'deepseek')."""
        ...

    @abstractmethod
    def provider(self) -> str:
        """Return the backend family used for circuit tracking (e.g. 'anthropic')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Generate a completion for the given request.

        Args:
            request: Prompt, sampling settings and routing role.

        Returns:
            GenerationResponse with text, latency and cost.

        Raises:
            ProviderError: On API failure, timeout, or invalid response. The
                subclass reflects the failure kind.
        """
        ...
