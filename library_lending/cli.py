import json
import logging
import os
import subprocess
import sys
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from library_lending.auth import ADMIN_ROLE, BOOTSTRAP_ADMIN_ID, MEMBER_ROLE
from library_lending.book import Book
from library_lending.borrowing import Borrowing
from library_lending.config import settings
from library_lending.errors import LendingError
from library_lending.library import Library

APP_NAME = "Library Lending CLI"

console = Console()

app = typer.Typer(help=APP_NAME, no_args_is_help=True)

OUTPUT_MODES = ("plain", "json", "rich")


@app.callback()
def _global_options(
    ctx: typer.Context,
    db_file: str = typer.Option(settings.database_file, "--db-file", envvar="LIBRARY_DB_FILE",
                                help="SQLite database file"),
    output: str = typer.Option("plain", "--output", "-o", help="Output format: plain | json | rich"),
):
    """Operator commands for the lending service."""
    logging.basicConfig(level=settings.log_level)
    if output not in OUTPUT_MODES:
        raise typer.BadParameter(f"must be one of {', '.join(OUTPUT_MODES)}", param_hint="--output")
    ctx.obj = {"db_file": db_file, "output": output}


def _library(ctx: typer.Context) -> Library:
    return Library(db_file=ctx.obj["db_file"])


def _fail(error: LendingError) -> None:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


def _print_rows(ctx: typer.Context, title: str, columns: List[str], rows: List[Dict[str, Any]],
                empty: str) -> None:
    """Print dict rows in the selected output mode."""
    mode = ctx.obj["output"]
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False, default=str))
        return
    if not rows:
        print(empty)
        return
    if mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(str(row.get(column, "")) for column in columns))
        console.print(table)
    else:
        for row in rows:
            print(" | ".join(str(row.get(column, "")) for column in columns))


def _borrowing_row(borrowing: Borrowing, now) -> Dict[str, Any]:
    data = borrowing.to_dict(now)
    return {
        "id": data["id"],
        "book": (borrowing.book or {}).get("title", borrowing.book_id),
        "user_id": data["user_id"],
        "status": "Overdue" if data["is_overdue"] else data["status"],
        "borrow_date": data["borrow_date"][:10],
        "due_date": data["due_date"][:10],
        "return_date": (data["return_date"] or "")[:10],
    }


@app.command("init-db")
def cli_init_db(ctx: typer.Context):
    """Create the database tables if they do not exist."""
    _library(ctx)
    print(f"Database ready: {ctx.obj['db_file']}")


@app.command("create-user")
def cli_create_user(
    ctx: typer.Context,
    name: str,
    email: str,
    role: str = typer.Option(MEMBER_ROLE, "--role", help=f"{MEMBER_ROLE} or {ADMIN_ROLE}"),
):
    """Create a user and print its API key (shown only once)."""
    lib = _library(ctx)
    try:
        user, api_key = lib.access.create_user(name, email, role)
    except LendingError as e:
        _fail(e)
    print(f"Created {user.role} {user.name} ({user.id})")
    print(f"API key: {api_key}")


@app.command("add-book")
def cli_add_book(
    ctx: typer.Context,
    title: str,
    author: str,
    isbn: str,
    publication_date: str = typer.Option(..., "--published", help="Publication date, YYYY-MM-DD"),
    genre: str = typer.Option(..., "--genre"),
    copies: int = typer.Option(1, "--copies", min=0, help="Total copies"),
):
    """Add a book to the catalog."""
    lib = _library(ctx)
    try:
        book = lib.add_book(Book(title, author, isbn, publication_date, genre, total_copies=copies))
    except LendingError as e:
        _fail(e)
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Successfully added: {book.title} by {book.author} ({book.id})")


@app.command("list-books")
def cli_list_books(
    ctx: typer.Context,
    genre: Optional[str] = typer.Option(None, "--genre"),
    author: Optional[str] = typer.Option(None, "--author"),
    title: Optional[str] = typer.Option(None, "--title"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", min=1),
):
    """List active books, newest first."""
    result = _library(ctx).list_books(genre=genre, author=author, title=title, page=page, limit=limit)
    rows = [
        {"id": b.id, "isbn": b.isbn, "title": b.title, "author": b.author,
         "available": f"{b.available_copies}/{b.total_copies}"}
        for b in result.items
    ]
    _print_rows(ctx, "Books", ["id", "isbn", "title", "author", "available"], rows, "No books in library.")


@app.command("borrow")
def cli_borrow(ctx: typer.Context, user_id: str, book_id: str):
    """Lend one copy of a book to a user."""
    lib = _library(ctx)
    try:
        lib.access.require_active_user(user_id)
        borrowing = lib.borrow_book(user_id, book_id)
    except LendingError as e:
        _fail(e)
    print(f"Book borrowed: {borrowing.id} due {borrowing.to_dict()['due_date'][:10]}")


@app.command("return")
def cli_return(
    ctx: typer.Context,
    borrowing_id: str,
    as_user: Optional[str] = typer.Option(None, "--as-user",
                                          help="Return as this member instead of as the admin"),
):
    """Return a borrowed book."""
    lib = _library(ctx)
    user_id, role = (as_user, MEMBER_ROLE) if as_user else (BOOTSTRAP_ADMIN_ID, ADMIN_ROLE)
    try:
        borrowing = lib.return_book(borrowing_id, user_id, role)
    except LendingError as e:
        _fail(e)
    print(f"Book returned: {borrowing.id}")


@app.command("history")
def cli_history(
    ctx: typer.Context,
    user_id: Optional[str] = typer.Argument(None, help="Only this user's borrowings"),
    status: Optional[str] = typer.Option(None, "--status", help="Borrowed, Returned or Overdue"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", min=1),
):
    """Show borrowings, newest first."""
    lib = _library(ctx)
    try:
        if user_id:
            result = lib.get_borrow_history(user_id, status=status, page=page, limit=limit)
        else:
            result = lib.get_all_borrowings(status=status, page=page, limit=limit)
    except LendingError as e:
        _fail(e)
    now = lib.clock()
    rows = [_borrowing_row(b, now) for b in result.items]
    _print_rows(ctx, "Borrowings",
                ["id", "book", "user_id", "status", "borrow_date", "due_date", "return_date"],
                rows, "No borrowings.")


@app.command("audit")
def cli_audit(ctx: typer.Context):
    """Check copy counts and open borrowings for consistency."""
    problems = _library(ctx).audit()
    if not problems:
        print("OK: no consistency problems found.")
        return
    for problem in problems:
        print(problem)
    raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Start the REST/GraphQL server with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_lending.api:app",
        "--host", host,
        "--port", str(port),
    ]
    env = {**os.environ, "LIBRARY_DB_FILE": ctx.obj["db_file"]}
    subprocess.run(args, env=env)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
