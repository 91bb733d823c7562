"""Circuit breaker keyed per (operation, seller) with explicit state management."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from sqp_orchestrator.fetcher.delay import Clock, MonotonicClock
from sqp_orchestrator.models.data_models import CircuitState, HalfOpenToken
from sqp_orchestrator.models.errors import CircuitOpenError
from sqp_orchestrator.monitoring.logger import StructuredLogger

T = TypeVar("T")


def breaker_key(operation: str, seller_id: Any) -> str:
    """Build the circuit key for an operation performed on behalf of a seller."""
    return f"{operation}:{seller_id}"


@dataclass
class CircuitBreakerState:
    """Internal state for a single circuit."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    open_until: float = 0.0
    half_open_token: Optional[HalfOpenToken] = None


class CircuitBreaker:
    """
    Circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    - Opens after `failure_threshold` consecutive failures
    - Short-circuits every call while open
    - Lets exactly one trial call through once `timeout_seconds` has elapsed
    - Closes on a successful trial call, reopens with a fresh timeout on failure

    Circuits are keyed per (operation, seller) so one seller's outage does
    not block the others.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_seconds: float = 60.0,
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening a circuit
            timeout_seconds: Time a circuit stays open before a half-open trial call
            clock: Clock interface for time management (defaults to MonotonicClock)
            logger: Optional structured logger for state changes
        """
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.clock = clock or MonotonicClock()
        self.logger = logger
        self._circuits: Dict[str, CircuitBreakerState] = {}

    def _get_circuit(self, key: str) -> CircuitBreakerState:
        """Get or create circuit state for key."""
        if key not in self._circuits:
            self._circuits[key] = CircuitBreakerState()
        return self._circuits[key]

    def _set_state(self, key: str, circuit: CircuitBreakerState, state: CircuitState) -> None:
        if circuit.state != state and self.logger:
            self.logger.circuit_breaker_state(key, state.value)
        circuit.state = state

    def should_allow(self, key: str) -> Union[bool, HalfOpenToken]:
        """
        Check if a call should be allowed for key.

        Args:
            key: Circuit identifier (see breaker_key)

        Returns:
            - True if circuit is CLOSED (allow call)
            - False if circuit is OPEN or a trial call is already in flight
            - HalfOpenToken if this call is the half-open trial call
        """
        circuit = self._get_circuit(key)
        current_time = self.clock.now()

        if circuit.state == CircuitState.CLOSED:
            return True

        if circuit.state == CircuitState.OPEN:
            if current_time < circuit.open_until:
                return False
            self._set_state(key, circuit, CircuitState.HALF_OPEN)
            token = HalfOpenToken(key=key, timestamp=current_time)
            circuit.half_open_token = token
            return token

        # HALF_OPEN: only one trial call at a time
        if circuit.half_open_token is not None:
            return False
        token = HalfOpenToken(key=key, timestamp=current_time)
        circuit.half_open_token = token
        return token

    def record_success(self, key: str) -> None:
        """Record a successful call; closes a half-open circuit."""
        circuit = self._get_circuit(key)

        if circuit.state == CircuitState.HALF_OPEN:
            self._set_state(key, circuit, CircuitState.CLOSED)
            circuit.half_open_token = None
        circuit.failure_count = 0

    def record_failure(self, key: str, retryable: bool = True) -> None:
        """
        Record a failed call.

        Args:
            key: Circuit identifier
            retryable: Whether the failure indicates an unhealthy dependency.
                Non-retryable failures (bad input, auth) never trip the breaker.
        """
        circuit = self._get_circuit(key)
        current_time = self.clock.now()

        if not retryable:
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.half_open_token = None
            return

        circuit.last_failure_time = current_time

        if circuit.state == CircuitState.HALF_OPEN:
            self._open(key, circuit, current_time)
            circuit.failure_count = self.failure_threshold
            return

        circuit.failure_count += 1
        if circuit.failure_count >= self.failure_threshold:
            self._open(key, circuit, current_time)

    def _open(self, key: str, circuit: CircuitBreakerState, current_time: float) -> None:
        self._set_state(key, circuit, CircuitState.OPEN)
        circuit.open_until = current_time + self.timeout_seconds
        circuit.half_open_token = None

    async def call(
        self,
        operation: str,
        seller_id: Any,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run an async call through the circuit for (operation, seller).

        Args:
            operation: Logical operation name (e.g. "create_report")
            seller_id: Seller the call is made for
            func: Zero-argument coroutine factory performing the call

        Returns:
            Result of func

        Raises:
            CircuitOpenError: If the circuit rejects the call; func is not invoked
        """
        key = breaker_key(operation, seller_id)
        if self.should_allow(key) is False:
            circuit = self._get_circuit(key)
            retry_in = max(circuit.open_until - self.clock.now(), 0.0)
            raise CircuitOpenError(key, retry_in)

        try:
            result = await func()
        except Exception as e:
            self.record_failure(key, retryable=getattr(e, "retryable", True))
            raise
        self.record_success(key)
        return result

    def state(self, key: str) -> CircuitState:
        """Get current circuit state for key."""
        return self._get_circuit(key).state

    def failure_count(self, key: str) -> int:
        return self._get_circuit(key).failure_count

    def reset(self, key: Optional[str] = None) -> None:
        """Reset one circuit, or all circuits when key is None."""
        if key is None:
            self._circuits.clear()
        elif key in self._circuits:
            self._circuits[key] = CircuitBreakerState()
