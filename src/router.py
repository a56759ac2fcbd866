"""Provider failover: per-provider circuit breakers and per-role fallback chains.

One ProviderRouter is shared by every run in a process. Circuit counters are
guarded by a lock per provider, so concurrent runs see a consistent state.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from config.config_loader import FailoverConfig, RouteConfig
from src.models import GenerationRequest, GenerationResponse
from src.providers.base import AIProvider, ErrorKind, ProviderError, classify_provider_error

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class ProviderHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True)
class ProviderStats:
    health: ProviderHealth
    circuit_state: CircuitState
    success_rate: float
    consecutive_failures: int


class FallbackExhaustedError(ProviderError):
    """Every model in a role's chain failed or was skipped."""

    def __init__(self, role: str, attempts: list[tuple[str, str]], kind: ErrorKind) -> None:
        self.role = role
        self.attempts = attempts
        detail = ", ".join(f"{model} ({outcome})" for model, outcome in attempts) or "no models configured"
        super().__init__(role, f"All models failed: {detail}", kind)


class ProviderCircuit:
    """Circuit breaker for one provider.

    closed -> open after ``max_failures`` consecutive failures inside the
    failure window. open -> half-open once the cool-down elapses; half-open
    admits a single trial request. The trial's outcome closes or re-opens it.
    """

    def __init__(self, provider: str, config: FailoverConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.provider = provider
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._successes = 0
        self._failures = 0
        self._recent: deque[tuple[float, bool]] = deque()

    def _refresh_locked(self, now: float) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if now - self._opened_at >= self._config.cooldown_sec:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("Circuit half-open for %s, allowing one trial request", self.provider)
        cutoff = now - self._config.failure_window_sec
        while self._recent and self._recent[0][0] < cutoff:
            self._recent.popleft()

    def _open_locked(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        logger.warning(
            "Circuit breaker OPEN for %s after %d consecutive failures (cooldown %.0fs)",
            self.provider,
            self._consecutive_failures,
            self._config.cooldown_sec,
        )

    def try_acquire(self) -> bool:
        """Return True if a request may be sent to this provider now."""
        with self._lock:
            self._refresh_locked(self._clock())
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return False
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def release(self) -> None:
        """Give back a half-open trial slot without recording an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            now = self._clock()
            self._successes += 1
            self._recent.append((now, True))
            self._consecutive_failures = 0
            self._trial_in_flight = False
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit closed for %s, provider recovered", self.provider)
            self._state = CircuitState.CLOSED
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh_locked(now)
            self._failures += 1
            self._recent.append((now, False))
            if self._last_failure_at is not None and now - self._last_failure_at > self._config.failure_window_sec:
                self._consecutive_failures = 0
            self._consecutive_failures += 1
            self._last_failure_at = now

            if self._state == CircuitState.HALF_OPEN:
                self._open_locked(now)
            elif self._state == CircuitState.CLOSED and self._consecutive_failures >= self._config.max_failures:
                self._open_locked(now)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_locked(self._clock())
            return self._state

    def stats(self) -> ProviderStats:
        with self._lock:
            self._refresh_locked(self._clock())
            total = self._successes + self._failures
            success_rate = self._successes / total if total else 0.0

            if self._state == CircuitState.OPEN:
                health = ProviderHealth.DOWN
            elif self._state == CircuitState.HALF_OPEN:
                health = ProviderHealth.DEGRADED
            else:
                recent_failures = sum(1 for _, ok in self._recent if not ok)
                ratio = recent_failures / len(self._recent) if self._recent else 0.0
                health = (
                    ProviderHealth.DEGRADED
                    if ratio > self._config.degraded_failure_ratio
                    else ProviderHealth.HEALTHY
                )

            return ProviderStats(
                health=health,
                circuit_state=self._state,
                success_rate=success_rate,
                consecutive_failures=self._consecutive_failures,
            )

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()
        logger.info("Circuit reset for %s", self.provider)


class ProviderRouter:
    """Routes generation requests along a role's fallback chain.

    Args:
        backends: Built providers keyed by model name (settings.yaml ``models``).
        routing: Role -> RouteConfig. Must contain ``default``.
        failover: Circuit breaker thresholds.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        backends: dict[str, AIProvider],
        routing: dict[str, RouteConfig],
        failover: FailoverConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backends = backends
        self._routing = routing
        self._failover = failover or FailoverConfig()
        self._clock = clock
        self._circuits: dict[str, ProviderCircuit] = {}
        self._circuits_lock = threading.Lock()
        for backend in backends.values():
            self._circuit(backend.provider())

    def _circuit(self, provider: str) -> ProviderCircuit:
        with self._circuits_lock:
            if provider not in self._circuits:
                self._circuits[provider] = ProviderCircuit(provider, self._failover, self._clock)
            return self._circuits[provider]

    def chain_for(self, role: str, model_override: str | None = None) -> list[str]:
        """Ordered, de-duplicated model names to try for ``role``."""
        route = self._routing.get(role) or self._routing.get("default")
        names = [model_override] if model_override else []
        if route is not None:
            names.extend(route.chain())
        chain: list[str] = []
        for name in names:
            if name not in chain:
                chain.append(name)
        return chain

    async def route(self, role: str, request: GenerationRequest) -> GenerationResponse:
        """Send ``request`` to the first admissible model in the role's chain.

        Raises:
            FallbackExhaustedError: No model produced a response. ``kind`` is
                the last failure's kind, or outage when nothing was attempted.
        """
        attempts: list[tuple[str, str]] = []
        last_error: ProviderError | None = None

        for model_name in self.chain_for(role, request.model_override):
            backend = self._backends.get(model_name)
            if backend is None:
                attempts.append((model_name, "not configured"))
                continue

            circuit = self._circuit(backend.provider())
            if not circuit.try_acquire():
                logger.debug("Skipping %s for %s: circuit %s", model_name, role, circuit.state.value)
                attempts.append((model_name, f"circuit {circuit.state.value}"))
                continue

            try:
                response = await backend.generate(replace(request, role=role))
            except asyncio.CancelledError:
                circuit.release()
                raise
            except Exception as exc:
                error = classify_provider_error(model_name, exc)
                if error.kind == ErrorKind.INVALID_REQUEST:
                    circuit.release()
                else:
                    circuit.record_failure()
                attempts.append((model_name, error.kind.value))
                last_error = error
                logger.warning("Model %s failed for %s (%s): %s", model_name, role, error.kind.value, error)
                continue

            circuit.record_success()
            if attempts:
                logger.info("Role %s served by fallback %s after %d skipped/failed", role, model_name, len(attempts))
            return response

        kind = last_error.kind if last_error is not None else ErrorKind.OUTAGE
        raise FallbackExhaustedError(role, attempts, kind) from last_error

    def get_stats(self) -> dict[str, ProviderStats]:
        with self._circuits_lock:
            circuits = dict(self._circuits)
        return {name: circuit.stats() for name, circuit in circuits.items()}

    def _known(self, provider: str) -> ProviderCircuit | None:
        with self._circuits_lock:
            return self._circuits.get(provider)

    def get_provider_health(self, provider: str) -> ProviderHealth:
        """Health of ``provider``. A provider the router has no backend for reads as healthy."""
        circuit = self._known(provider)
        return circuit.stats().health if circuit is not None else ProviderHealth.HEALTHY

    def get_circuit_state(self, provider: str) -> CircuitState:
        circuit = self._known(provider)
        return circuit.state if circuit is not None else CircuitState.CLOSED

    def reset_provider(self, provider: str) -> None:
        circuit = self._known(provider)
        if circuit is None:
            logger.warning("No circuit for provider %s, nothing to reset", provider)
            return
        circuit.reset()
