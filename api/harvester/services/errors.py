class HarvesterError(Exception):
    """Base service error."""


class StoreUnavailableError(HarvesterError):
    """Raised when the backing store is unavailable or not configured."""


class ValidationError(HarvesterError):
    """Raised when a request carries missing or malformed parameters."""


class AuthorizationError(HarvesterError):
    """Raised when the caller does not own the referenced keyword."""


class NotFoundError(HarvesterError):
    """Raised when the referenced job or keyword does not exist."""


class ConflictError(HarvesterError):
    """Raised when an operation violates state transition rules."""


class RateLimitExceededError(HarvesterError):
    """Raised when the caller exhausted the hourly quota for an operation."""

    def __init__(self, operation_type: str, quota: int) -> None:
        super().__init__(f"rate limit exceeded: at most {quota} {operation_type} operations per hour")
        self.operation_type = operation_type
        self.quota = quota


class TransientContentionError(HarvesterError):
    """Raised when a job claim was lost to a competing caller."""


class ComputationError(HarvesterError):
    """Raised when an analytics computation failed for one keyword or dataset."""
