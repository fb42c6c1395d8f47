"""GraphQL adapter over the lending core.

Same operations as the REST routes, translated to the camelCase schema the
web client uses. Resolvers only map arguments and results; every rule lives
in ``Library``. Core errors become GraphQL errors carrying
``extensions.code`` (e.g. ``BOOK_UNAVAILABLE``) and ``extensions.retrySafe``.
"""

import logging
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional

from graphql import GraphQLError, build_schema, graphql_sync

from library_lending.auth import ADMIN_ROLE, MEMBER_ROLE, Identity, require_role
from library_lending.book import Book
from library_lending.borrowing import Borrowing
from library_lending.errors import LendingError, NotFoundError
from library_lending.library import Library
from library_lending.pagination import Page
from library_lending.timeutil import to_iso

logger = logging.getLogger(__name__)

SCHEMA_SDL = """
type User {
  id: ID!
  name: String
  email: String
  role: String!
  isActive: Boolean
}

type Book {
  id: ID!
  title: String!
  author: String!
  isbn: String!
  publicationDate: String!
  genre: String!
  totalCopies: Int!
  availableCopies: Int!
  isActive: Boolean!
  createdAt: String
  updatedAt: String
}

type BorrowedBook {
  id: ID!
  title: String!
  author: String!
  isbn: String!
  genre: String!
}

type Borrowing {
  id: ID!
  userId: ID!
  bookId: ID!
  user: User
  book: BorrowedBook
  borrowDate: String!
  dueDate: String!
  returnDate: String
  status: String!
  isOverdue: Boolean!
  createdAt: String
  updatedAt: String
}

type BooksResponse {
  success: Boolean!
  count: Int!
  total: Int!
  totalPages: Int!
  currentPage: Int!
  data: [Book!]!
}

type BookResponse {
  success: Boolean!
  message: String
  data: Book
}

type BorrowingResponse {
  success: Boolean!
  message: String!
  data: Borrowing
}

type BorrowingsListResponse {
  success: Boolean!
  count: Int!
  total: Int!
  totalPages: Int!
  currentPage: Int!
  data: [Borrowing!]!
}

type Response {
  success: Boolean!
  message: String!
}

input AddBookInput {
  title: String!
  author: String!
  isbn: String!
  publicationDate: String!
  genre: String!
  totalCopies: Int!
  availableCopies: Int
}

input UpdateBookInput {
  title: String
  author: String
  isbn: String
  publicationDate: String
  genre: String
  totalCopies: Int
  availableCopies: Int
}

type Query {
  me: User!
  getBooks(page: Int, limit: Int, genre: String, author: String, title: String): BooksResponse!
  getBookById(id: ID!): BookResponse!
  getBorrowHistory(page: Int, limit: Int, status: String): BorrowingsListResponse!
  getAllBorrowings(page: Int, limit: Int, status: String, userId: ID): BorrowingsListResponse!
}

type Mutation {
  addBook(input: AddBookInput!): BookResponse!
  updateBook(id: ID!, input: UpdateBookInput!): BookResponse!
  deleteBook(id: ID!): Response!
  borrowBook(bookId: ID!): BorrowingResponse!
  returnBook(borrowingId: ID!): BorrowingResponse!
}
"""

schema = build_schema(SCHEMA_SDL)

# UpdateBookInput field -> Catalog.update keyword
_BOOK_INPUT_FIELDS = {
    "title": "title",
    "author": "author",
    "isbn": "isbn",
    "publicationDate": "publication_date",
    "genre": "genre",
    "totalCopies": "total_copies",
    "availableCopies": "available_copies",
}


def _book_payload(book: Book) -> Dict[str, Any]:
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "isbn": book.isbn,
        "publicationDate": book.publication_date.isoformat(),
        "genre": book.genre,
        "totalCopies": book.total_copies,
        "availableCopies": book.available_copies,
        "isActive": book.is_active,
        "createdAt": book.created_at,
        "updatedAt": book.updated_at,
    }


def _borrowing_payload(borrowing: Borrowing, now: datetime) -> Dict[str, Any]:
    return {
        "id": borrowing.id,
        "userId": borrowing.user_id,
        "bookId": borrowing.book_id,
        "user": borrowing.user,
        "book": borrowing.book,
        "borrowDate": to_iso(borrowing.borrow_date),
        "dueDate": to_iso(borrowing.due_date),
        "returnDate": to_iso(borrowing.return_date) if borrowing.return_date else None,
        "status": borrowing.status.value,
        "isOverdue": borrowing.is_overdue(now),
        "createdAt": borrowing.created_at,
        "updatedAt": borrowing.updated_at,
    }


def _list_payload(page: Page, serialize: Callable[[Any], Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "success": True,
        "count": len(page.items),
        "total": page.total,
        "totalPages": page.total_pages,
        "currentPage": page.page,
        "data": [serialize(item) for item in page.items],
    }


def _graphql_errors(resolver: Callable) -> Callable:
    """Turn core errors into GraphQL errors with a machine-readable code."""
    @wraps(resolver)
    def wrapper(*args, **kwargs):
        try:
            return resolver(*args, **kwargs)
        except LendingError as e:
            raise GraphQLError(e.message, extensions={"code": e.code.upper(), "retrySafe": e.retry_safe}) from e
        except ValueError as e:
            # e.g. a malformed publicationDate
            raise GraphQLError(str(e), extensions={"code": "INVALID", "retrySafe": True}) from e
    return wrapper


class Resolvers:
    """Root resolvers for one request. The identity is resolved lazily, per field that needs it."""

    def __init__(self, library: Library, api_key: Optional[str]) -> None:
        self.library = library
        self.api_key = api_key
        self._identity: Optional[Identity] = None

    def identity(self, *roles: str) -> Identity:
        if self._identity is None:
            self._identity = self.library.access.resolve(self.api_key)
        if roles:
            require_role(self._identity, roles)
        return self._identity

    def root(self) -> Dict[str, Callable]:
        return {
            "me": self.me,
            "getBooks": self.get_books,
            "getBookById": self.get_book_by_id,
            "getBorrowHistory": self.get_borrow_history,
            "getAllBorrowings": self.get_all_borrowings,
            "addBook": self.add_book,
            "updateBook": self.update_book,
            "deleteBook": self.delete_book,
            "borrowBook": self.borrow_book,
            "returnBook": self.return_book,
        }

    # ------------------------- Queries ------------------------- #
    @_graphql_errors
    def me(self, info):
        identity = self.identity()
        user = self.library.access.get_user(identity.user_id)
        if user is None:
            return {"id": identity.user_id, "role": identity.role, "isActive": True}
        return {"id": user.id, "name": user.name, "email": user.email, "role": user.role, "isActive": user.is_active}

    @_graphql_errors
    def get_books(self, info, page=None, limit=None, genre=None, author=None, title=None):
        result = self.library.list_books(genre=genre, author=author, title=title, page=page, limit=limit)
        return _list_payload(result, _book_payload)

    @_graphql_errors
    def get_book_by_id(self, info, id):
        book = self.library.find_book(id)
        if book is None:
            raise NotFoundError("Book not found")
        return {"success": True, "data": _book_payload(book)}

    @_graphql_errors
    def get_borrow_history(self, info, page=None, limit=None, status=None):
        identity = self.identity(MEMBER_ROLE, ADMIN_ROLE)
        result = self.library.get_borrow_history(identity.user_id, status=status, page=page, limit=limit)
        now = self.library.clock()
        return _list_payload(result, lambda b: _borrowing_payload(b, now))

    @_graphql_errors
    def get_all_borrowings(self, info, page=None, limit=None, status=None, userId=None):
        self.identity(ADMIN_ROLE)
        result = self.library.get_all_borrowings(status=status, user_id=userId, page=page, limit=limit)
        now = self.library.clock()
        return _list_payload(result, lambda b: _borrowing_payload(b, now))

    # ------------------------- Mutations ------------------------- #
    @_graphql_errors
    def add_book(self, info, input):
        self.identity(ADMIN_ROLE)
        book = self.library.add_book(Book(
            title=input["title"],
            author=input["author"],
            isbn=input["isbn"],
            publication_date=input["publicationDate"],
            genre=input["genre"],
            total_copies=input["totalCopies"],
            available_copies=input.get("availableCopies"),
        ))
        return {"success": True, "message": "Book added successfully", "data": _book_payload(book)}

    @_graphql_errors
    def update_book(self, info, id, input):
        self.identity(ADMIN_ROLE)
        patch = {_BOOK_INPUT_FIELDS[key]: value for key, value in input.items()}
        book = self.library.update_book(id, **patch)
        return {"success": True, "message": "Book updated successfully", "data": _book_payload(book)}

    @_graphql_errors
    def delete_book(self, info, id):
        self.identity(ADMIN_ROLE)
        self.library.remove_book(id)
        return {"success": True, "message": "Book deleted successfully"}

    @_graphql_errors
    def borrow_book(self, info, bookId):
        identity = self.identity(MEMBER_ROLE, ADMIN_ROLE)
        borrowing = self.library.borrow_book(identity.user_id, bookId)
        return {
            "success": True,
            "message": "Book borrowed successfully",
            "data": _borrowing_payload(borrowing, self.library.clock()),
        }

    @_graphql_errors
    def return_book(self, info, borrowingId):
        identity = self.identity(MEMBER_ROLE, ADMIN_ROLE)
        borrowing = self.library.return_book(borrowingId, identity.user_id, identity.role)
        return {
            "success": True,
            "message": "Book returned successfully",
            "data": _borrowing_payload(borrowing, self.library.clock()),
        }


def execute(library: Library, query: str, variables: Optional[Dict[str, Any]] = None,
            operation_name: Optional[str] = None, api_key: Optional[str] = None) -> Dict[str, Any]:
    """Run one GraphQL request and return the response body ({"data": ..., "errors": [...]})."""
    resolvers = Resolvers(library, api_key)
    result = graphql_sync(
        schema,
        query,
        root_value=resolvers.root(),
        variable_values=variables,
        operation_name=operation_name,
    )
    body: Dict[str, Any] = {"data": result.data}
    if result.errors:
        body["errors"] = [error.formatted for error in result.errors]
        for error in result.errors:
            if not error.extensions:
                # Not one of ours: a syntax/validation error or a bug
                logger.warning(f"GraphQL error: {error.message}", exc_info=error.original_error)
    return body
