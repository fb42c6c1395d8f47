"""Error taxonomy shared by the lending core and its transport adapters.

Every error carries a stable ``code``, the HTTP status the REST adapter
answers with, and ``retry_safe``: True when the failure was detected before
any mutation ("nothing happened"), False when the outcome is ambiguous and
the caller must verify state before retrying.
"""

from __future__ import annotations


class LendingError(Exception):
    code = "internal_error"
    status_code = 500
    retry_safe = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return "Internal server error"

    def to_dict(self) -> dict:
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            "retry_safe": self.retry_safe,
        }


class NotFoundError(LendingError, LookupError):
    code = "not_found"
    status_code = 404
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "Not found"


class BookUnavailableError(LendingError):
    code = "book_unavailable"
    status_code = 400
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "Book is currently not available"


class DuplicateBorrowError(LendingError):
    code = "duplicate_borrow"
    status_code = 400
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "You have already borrowed this book. Please return it first."


class AlreadyReturnedError(LendingError):
    code = "already_returned"
    status_code = 400
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "Book has already been returned"


class ForbiddenError(LendingError):
    code = "forbidden"
    status_code = 403
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "Not authorized to perform this action"


class UnauthenticatedError(LendingError):
    code = "unauthenticated"
    status_code = 401
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "Not authorized to access this route. Please provide an API key."


class DuplicateKeyError(LendingError, ValueError):
    code = "duplicate_key"
    status_code = 400
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "Record already exists"


class InvalidRequestError(LendingError, ValueError):
    code = "invalid"
    status_code = 400
    retry_safe = True

    @classmethod
    def default_message(cls) -> str:
        return "Invalid request"


class InvalidBookError(InvalidRequestError):
    @classmethod
    def default_message(cls) -> str:
        return "Invalid book data"


class InvalidUserError(InvalidRequestError):
    @classmethod
    def default_message(cls) -> str:
        return "Invalid user data"


class ConflictError(LendingError):
    """The atomic update could not be applied, e.g. the write lock timed out."""

    code = "conflict"
    status_code = 409
    retry_safe = False

    @classmethod
    def default_message(cls) -> str:
        return "The operation conflicted with a concurrent update; verify state before retrying"


class StoreError(LendingError):
    code = "store_error"
    status_code = 500
    retry_safe = False

    @classmethod
    def default_message(cls) -> str:
        return "Database error; verify state before retrying"
