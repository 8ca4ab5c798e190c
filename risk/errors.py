from typing import Optional


class RiskCoreError(Exception):
    """Base class for errors raised by the risk core."""


class TransientIOError(RiskCoreError):
    """Network or API failure. Retried on a later cycle and never fatal."""


class CircuitOpenError(TransientIOError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Circuit breaker open for {key}")


class BrokerAPIError(TransientIOError):
    label = "Broker API error"

    def __init__(self, status: Optional[int], msg: Optional[str], body: str = ""):
        self.status = status
        self.msg = msg
        self.body = body
        super().__init__(f"{self.label} (status={status}, msg={msg})")


class QuoteAPIError(BrokerAPIError):
    label = "Quote API error"


class OrderRejectedError(BrokerAPIError):
    label = "Order rejected"


class DataStalenessError(RiskCoreError):
    def __init__(self, position_id: str, age: Optional[float], threshold: float):
        self.position_id = position_id
        self.age = age
        self.threshold = threshold
        age_text = "unknown" if age is None else f"{age:.1f}s"
        super().__init__(f"PnL for {position_id} stale ({age_text} > {threshold}s)")


class ValidationError(RiskCoreError):
    """Malformed or missing field in a position or rule context."""


class InvalidTransition(ValidationError):
    def __init__(self, position_id: str, from_status: str, to_status: str):
        self.position_id = position_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Illegal status transition {from_status} -> {to_status} for {position_id}")


class ConcurrencyConflict(RiskCoreError):
    """Lost the atomic status transition race. The losing caller no-ops."""

    def __init__(self, position_id: str, expected: str, actual: Optional[str] = None):
        self.position_id = position_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Position {position_id} not in {expected} (found {actual})")


class FatalConfigError(RiskCoreError):
    """Required configuration missing or invalid. Aborts startup only."""
