"""Domain exceptions for the progression and reward engine.

Leaf failures (eligibility, denied unlock) propagate to the caller and are
mapped to HTTP responses in ``learnpath.middleware.error_handler``.
Insufficient funds is not an exception: ``spend`` returns ``None``.
"""


class ProgressionError(Exception):
    """Base class for all domain errors."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EligibilityError(ProgressionError):
    """Preconditions for completing or attempting a unit are not met."""

    status_code = 422


class UnlockDeniedError(ProgressionError):
    """A week unlock was attempted before its rules are satisfied."""

    status_code = 403


class EnrollmentError(ProgressionError):
    """A student cannot be enrolled in (or withdrawn from) a cohort."""

    status_code = 422


class NotFoundError(ProgressionError):
    status_code = 404


class ReconciliationError(ProgressionError):
    """Ledger and cached balance disagree. Data-integrity alarm."""

    status_code = 500

    def __init__(self, user_id: int, cached: int, ledger: int) -> None:
        super().__init__(f"Balance drift for user {user_id}: cached={cached} ledger={ledger}")
        self.user_id = user_id
        self.cached = cached
        self.ledger = ledger
