"""
Exceptions raised by the message store.

- MessageValidationError: the submitted message was rejected before any
  database access (maps to a client error).
- StorageError: the database could not complete the operation (maps to a
  server error). The underlying SQLAlchemy exception is kept as __cause__.
"""


class MessageBoardError(Exception):
    """Base class for message store errors."""


class MessageValidationError(MessageBoardError):
    """Raised when message text fails the validity predicate."""


class StorageError(MessageBoardError):
    """Raised when a connection, statement or commit fails."""

    def __init__(self, operation: str, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        message = f"{operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
