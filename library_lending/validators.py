import re
from typing import Optional

from library_lending.book import Book
from library_lending.errors import InvalidBookError


class ISBNValidator:
    """ISBN normalization used for the catalog's business key."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        # "ISBN 978-0-13-468599-1" and "9780134685991" are the same key
        return re.sub(r"[^0-9Xx]", "", raw).upper()


class BookValidator:
    """Field checks the catalog applies before writing a book."""

    REQUIRED_TEXT = ("title", "author", "isbn", "genre")

    @staticmethod
    def validate(book: Book) -> None:
        for field in BookValidator.REQUIRED_TEXT:
            if not getattr(book, field):
                raise InvalidBookError(f"{field.capitalize()} is required")
        BookValidator.validate_counts(book.total_copies, book.available_copies)

    @staticmethod
    def validate_counts(total_copies: int, available_copies: int) -> None:
        if total_copies < 0:
            raise InvalidBookError("Total copies cannot be negative")
        if available_copies < 0:
            raise InvalidBookError("Available copies cannot be negative")
        if available_copies > total_copies:
            raise InvalidBookError("Available copies cannot exceed total copies")
