"""Error taxonomy for the resolution pipeline.

A cache miss is not an error: lookups return ``None``.
"""


class ConciergeError(Exception):
    """Base class for pipeline errors."""


class CircuitOpenError(ConciergeError):
    """Raised when a circuit breaker is protecting a dependency. Never retried."""

    def __init__(self, service_key: str, retry_in: float = 0.0):
        self.service_key = service_key
        self.retry_in = retry_in
        super().__init__(
            f"Circuit '{service_key}' is open. Retry in {retry_in:.0f}s"
        )


class OperationError(ConciergeError):
    """A wrapped call kept failing after its retry budget was spent.

    The last underlying exception is available as ``__cause__``.
    """

    def __init__(self, operation: str, attempts: int, message: str = ""):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            message or f"Operation '{operation}' failed after {attempts} attempt(s)"
        )


class ProviderUnavailableError(ConciergeError):
    """A provider handle cannot serve the requested capability."""


class AllProvidersFailedError(ConciergeError):
    """Every candidate provider for a capability failed."""

    def __init__(self, capability: str, attempted: list[str], last_error: BaseException | None):
        self.capability = capability
        self.attempted = list(attempted)
        self.last_error = last_error
        last = f"{type(last_error).__name__}: {last_error}" if last_error else "no providers available"
        super().__init__(
            f"All providers failed for '{capability}' "
            f"(attempted: {', '.join(self.attempted) or 'none'}). Last error: {last}"
        )


class EscalationEngineError(ConciergeError):
    """The escalation engine could not evaluate a conversation.

    Caught inside the engine and turned into a forced escalation.
    """
