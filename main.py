import logging
import subprocess
import sys
from datetime import datetime, timedelta
from typing import List, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from borrow_transaction import TransactionStatus
from config import settings
from database import utcnow
from errors import LibraryError
from library import Library
from user import Role

logging.basicConfig(level=settings.log_level)

console = Console()

app = typer.Typer(help="Library lending CLI")


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


def _parse_due_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        _fail(f"Invalid due date '{value}'. Use YYYY-MM-DD or a full ISO timestamp.")


@app.command("init-db")
def cli_init_db():
    """Create the database tables if they do not exist."""
    Library()
    print("Database initialized.")


# --- Catalog ---
@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    stock: int = typer.Option(1, "--stock", "-s", help="Number of copies owned"),
    isbn: Optional[str] = typer.Option(None, "--isbn", help="Optional ISBN"),
    co_authors: List[str] = typer.Option([], "--co-author", help="Additional author (repeatable)"),
    categories: List[str] = typer.Option([], "--category", "-c", help="Category (repeatable)"),
    published: Optional[str] = typer.Option(None, "--published", help="Publish date (YYYY-MM-DD)"),
):
    """Add a book with a number of copies."""
    try:
        book = Library().add_book(title, [author, *co_authors], stock, isbn=isbn,
                                  categories=categories, publish_date=published)
    except ValueError as e:
        _fail(str(e))
    print(f"Successfully added: {book.title} by {book.author} ({book.id})")


@app.command("list-books")
def cli_list_books(
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Title substring filter"),
    page: int = typer.Option(1, "--page", "-p"),
):
    """List books with their available copies."""
    result = Library().list_books(page=page, title=title)
    if not result["data"]:
        print("No books in library.")
        return
    table = Table(title=f"Books (page {result['page']}/{result['total_pages']})", box=box.SIMPLE)
    table.add_column("ID", overflow="fold")
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Available", justify="right")
    for book in result["data"]:
        table.add_row(book.id, book.title, book.author, f"{book.available_stock}/{book.stock}")
    console.print(table)


@app.command("remove-book")
def cli_remove_book(book_id: str):
    """Soft-delete a book so it can no longer be borrowed."""
    if Library().remove_book(book_id):
        print(f"Book {book_id} has been removed.")
    else:
        _fail(f"Book {book_id} not found.")


@app.command("add-user")
def cli_add_user(
    name: str,
    email: str,
    role: Role = typer.Option(Role.MEMBER, "--role", "-r", case_sensitive=False),
):
    """Register a library user."""
    try:
        user = Library().add_user(name, email, role)
    except ValueError as e:
        _fail(str(e))
    print(f"Successfully added user: {user.name} <{user.email}> as {user.role.value} ({user.id})")


# --- Lending ---
@app.command("borrow")
def cli_borrow(
    user_id: str,
    book_id: str,
    due: Optional[str] = typer.Option(None, "--due", help="Due date (ISO format); defaults to the loan period"),
):
    """Lend a book to a user."""
    lib = Library()
    due_date = _parse_due_date(due) if due else utcnow() + timedelta(days=settings.default_loan_days)
    try:
        record = lib.borrowing.create_borrow(lib.caller_for(user_id), book_id, due_date)
    except LibraryError as e:
        _fail(str(e))
    print(f"Borrowed: transaction {record.id}, due {record.due_date.date().isoformat()}")


@app.command("return")
def cli_return(transaction_id: str):
    """Return a borrowed book. Returning twice is harmless."""
    try:
        record = Library().borrowing.return_borrow(transaction_id)
    except LibraryError as e:
        _fail(str(e))
    print(f"Returned: transaction {record.id} on {record.return_date.date().isoformat()}")


@app.command("loans")
def cli_loans(
    status: Optional[TransactionStatus] = typer.Option(None, "--status", case_sensitive=False),
    user_id: Optional[str] = typer.Option(None, "--user"),
    page: int = typer.Option(1, "--page", "-p"),
):
    """List borrow transactions."""
    result = Library().borrowing.list_borrows(status=status, user_id=user_id, page=page)
    if not result["data"]:
        print("No loans found.")
        return
    table = Table(title=f"Loans (page {result['page']}/{result['total_pages']})", box=box.SIMPLE)
    table.add_column("ID", overflow="fold")
    table.add_column("Book")
    table.add_column("User")
    table.add_column("Due")
    table.add_column("Status")
    for record in result["data"]:
        table.add_row(
            record.id,
            record.book.title if record.book else record.book_id,
            record.user.name if record.user else record.user_id,
            record.due_date.date().isoformat(),
            record.status.value,
        )
    console.print(table)


@app.command("sweep")
def cli_sweep():
    """Mark overdue loans now. Safe to run from cron as often as needed."""
    count = Library().sweeper.run_sweep_now()
    if count is None:
        _fail("Overdue sweep failed; see the log for details.")
    print(f"Marked {count} loan(s) as overdue.")


@app.command("stats")
def cli_stats():
    """Show catalog and lending statistics."""
    stats = Library().get_statistics()
    print(f"Books: {stats['total_books']}")
    print(f"Copies: {stats['available_copies']}/{stats['total_copies']} available")
    print(f"Users: {stats['total_users']}")
    for status, count in stats["loans"].items():
        print(f"{status.title()} loans: {count}")


@app.command("serve")
def cli_serve(reload: bool = typer.Option(settings.debug, "--reload/--no-reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
