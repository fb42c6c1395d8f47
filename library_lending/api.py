import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from library_lending import graphql_api
from library_lending.auth import ADMIN_ROLE, MEMBER_ROLE, Identity, require_role
from library_lending.book import Book
from library_lending.config import settings
from library_lending.database import get_db_connection
from library_lending.errors import LendingError, NotFoundError
from library_lending.library import Library

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Library instance ---
_library: Optional[Library] = None


def get_library() -> Library:
    """Process-wide Library, created on first use."""
    global _library
    if _library is None:
        _library = Library(db_file=settings.database_file)
    return _library


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_identity(api_key: Optional[str] = Security(api_key_header),
                 library: Library = Depends(get_library)) -> Identity:
    """Resolve the X-API-Key header to an identity (401 when missing or unknown)."""
    return library.access.resolve(api_key)


def require_roles(*roles: str):
    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        return require_role(identity, roles)
    return dependency


member_or_admin = require_roles(MEMBER_ROLE, ADMIN_ROLE)
admin_only = require_roles(ADMIN_ROLE)


# --- Error handling ---
@app.exception_handler(LendingError)
def lending_error_handler(request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=LendingError().to_dict())


# --- Models ---
class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    publication_date: date
    genre: str = Field(min_length=1)
    total_copies: int = Field(default=1, ge=0)
    available_copies: int | None = Field(default=None, ge=0, description="Defaults to total_copies")


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    publication_date: date | None = None
    genre: str | None = None
    total_copies: int | None = Field(default=None, ge=0)
    available_copies: int | None = Field(default=None, ge=0)


class UserCreateModel(BaseModel):
    name: str
    email: str
    role: str = MEMBER_ROLE


def _ok(data: Any, message: str | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": True}
    if message:
        payload["message"] = message
    payload["data"] = data
    return payload


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health check with a quick database probe."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        logger.warning("Health check: database unreachable", exc_info=True)
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Users ---
@app.post("/users", status_code=201)
def create_user(payload: UserCreateModel, identity: Identity = Depends(admin_only),
                library: Library = Depends(get_library)):
    """Create a member (or admin) and return its API key. The key is shown only once."""
    user, api_key = library.access.create_user(payload.name, payload.email, payload.role)
    return _ok({"user": user.to_dict(), "api_key": api_key}, "User created successfully")


@app.get("/me")
def me(identity: Identity = Depends(get_identity), library: Library = Depends(get_library)):
    user = library.access.get_user(identity.user_id)
    data = user.to_dict() if user else {"id": identity.user_id, "role": identity.role}
    return _ok(data)


# --- Books ---
@app.get("/books")
def get_books(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    genre: Optional[str] = None,
    author: Optional[str] = None,
    title: Optional[str] = None,
    library: Library = Depends(get_library),
):
    """Active books, newest first."""
    result = library.list_books(genre=genre, author=author, title=title, page=page, limit=limit)
    return result.to_dict(lambda book: book.to_dict())


@app.get("/books/{book_id}")
def get_book(book_id: str, library: Library = Depends(get_library)):
    book = library.find_book(book_id)
    if not book:
        raise NotFoundError("Book not found")
    return _ok(book.to_dict())


@app.post("/books", status_code=201, dependencies=[Depends(admin_only)])
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    book = library.add_book(Book(**payload.model_dump()))
    return _ok(book.to_dict(), "Book added successfully")


@app.patch("/books/{book_id}", dependencies=[Depends(admin_only)])
def update_book(book_id: str, update: BookUpdateModel, library: Library = Depends(get_library)):
    book = library.update_book(book_id, **update.model_dump(exclude_unset=True))
    return _ok(book.to_dict(), "Book updated successfully")


@app.delete("/books/{book_id}", dependencies=[Depends(admin_only)])
def delete_book(book_id: str, library: Library = Depends(get_library)):
    """Soft delete: the book disappears from the catalog, its history stays."""
    library.remove_book(book_id)
    return {"success": True, "message": "Book deleted successfully"}


# --- Borrowings ---
@app.get("/borrows/my-history")
def my_borrow_history(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    status: Optional[str] = Query(None, description="Borrowed, Returned or Overdue"),
    identity: Identity = Depends(member_or_admin),
    library: Library = Depends(get_library),
):
    result = library.get_borrow_history(identity.user_id, status=status, page=page, limit=limit)
    now = library.clock()
    return result.to_dict(lambda borrowing: borrowing.to_dict(now))


@app.get("/borrows", dependencies=[Depends(admin_only)])
def all_borrowings(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    status: Optional[str] = Query(None, description="Borrowed, Returned or Overdue"),
    user_id: Optional[str] = None,
    library: Library = Depends(get_library),
):
    result = library.get_all_borrowings(status=status, user_id=user_id, page=page, limit=limit)
    now = library.clock()
    return result.to_dict(lambda borrowing: borrowing.to_dict(now))


@app.post("/borrows/{book_id}", status_code=201)
def borrow_book(book_id: str, identity: Identity = Depends(member_or_admin),
                library: Library = Depends(get_library)):
    borrowing = library.borrow_book(identity.user_id, book_id)
    return _ok(borrowing.to_dict(library.clock()), "Book borrowed successfully")


@app.patch("/borrows/return/{borrowing_id}")
def return_book(borrowing_id: str, identity: Identity = Depends(member_or_admin),
                library: Library = Depends(get_library)):
    borrowing = library.return_book(borrowing_id, identity.user_id, identity.role)
    return _ok(borrowing.to_dict(library.clock()), "Book returned successfully")


# --- GraphQL ---
@app.post("/graphql")
def graphql_endpoint(payload: Dict[str, Any] = Body(...),
                     api_key: Optional[str] = Security(api_key_header),
                     library: Library = Depends(get_library)):
    """GraphQL over the same lending core. Errors are reported in the response body."""
    result = graphql_api.execute(
        library,
        payload.get("query") or "",
        variables=payload.get("variables"),
        operation_name=payload.get("operationName"),
        api_key=api_key,
    )
    return JSONResponse(content=result)


@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version, "docs": "/docs", "graphql": "/graphql"}
