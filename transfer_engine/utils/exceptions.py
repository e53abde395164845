"""Domain exceptions raised by the recommendation engine.

Only boundary errors (bad request, unknown user, busy user) escape
``generate_recommendations``; everything else is classified by
``transfer_engine.utils.recovery`` and turned into a degraded response.
"""


class TransferEngineError(Exception):
    """Base class for engine errors."""


class RecommendationValidationError(TransferEngineError):
    """Input data failed validation; never retried."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class UnknownUserError(RecommendationValidationError):
    """The requested user does not exist."""

    def __init__(self, user_id: object):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class BusinessRuleError(TransferEngineError):
    """A financial rule could not be satisfied (e.g. insufficient funds)."""


class TransientError(TransferEngineError):
    """A temporary failure that may succeed on retry."""


class CircuitOpenError(TransientError):
    """The circuit guarding a dependency is open; calls are rejected without trying."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit {name} is open; retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class InvariantViolationError(TransferEngineError):
    """Internal consistency check failed; indicates a bug, not bad input."""


class GenerationBusyError(TransferEngineError):
    """Another generation run holds the user's lease."""

    def __init__(self, user_id: object, reason: str = "generation already in progress"):
        super().__init__(f"Recommendation generation busy for user {user_id}: {reason}")
        self.user_id = user_id
        self.reason = reason


class MoneyError(TransferEngineError, ValueError):
    """Invalid monetary input, with a machine-readable code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
