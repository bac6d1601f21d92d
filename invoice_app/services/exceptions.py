class ServiceError(Exception):
    """Base exception for service layer failures."""

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class PersistenceError(ServiceError):
    """Raised when the storage layer cannot apply a write."""


class TransactionError(PersistenceError):
    """Raised when a unit of work is used outside its transaction bracket."""


class IntegrityError(PersistenceError):
    """Raised when a write would break a uniqueness or reference constraint."""

    def __init__(self, message: str, constraint: str | None = None, *, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.constraint = constraint


class RestrictedDeleteError(IntegrityError):
    """Raised when deleting a row that other rows still reference."""
