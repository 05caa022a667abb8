import logging
import sqlite3
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Union

import database
from book import Author, Book
from borrowing import BorrowingCoordinator
from borrow_transaction import TransactionStatus
from catalog import CatalogStore, clean_names
from database import format_timestamp, initialize_database, utcnow
from errors import NotFoundError, PermissionDeniedError
from pagination import page_window, paginate
from sweeper import OverdueSweeper
from user import Caller, Role, User

logger = logging.getLogger(__name__)

Names = Union[str, List[str]]


def _as_names(value: Optional[Names]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return clean_names(value)


def _as_publish_date(value: Optional[Union[date, str]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        value = date.fromisoformat(value)
    return value.isoformat()


class Library:
    """Catalog and user records, plus the lending services built on them."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Allow tests (and callers) to point the module-level helpers in database.py
        # at another file before anything touches the database.
        if db_file:
            database.DATABASE_FILE = db_file

        initialize_database()
        self.catalog = CatalogStore()
        self.borrowing = BorrowingCoordinator(catalog=self.catalog)
        self.sweeper = OverdueSweeper(store=self.borrowing.store)

    # ------------------------- Books ------------------------- #
    def add_book(self, title: str, authors: Names, stock: int, isbn: Optional[str] = None,
                 description: Optional[str] = None, categories: Optional[Names] = None,
                 publish_date: Optional[Union[date, str]] = None) -> Book:
        """Add a title with ``stock`` copies, all of them available.

        ``authors`` and ``categories`` are names; unknown ones are created.
        """
        author_names = _as_names(authors)
        if not title or not title.strip():
            raise ValueError("Title cannot be empty.")
        if not author_names:
            raise ValueError("Author cannot be empty.")
        if stock < 0:
            raise ValueError("Stock cannot be negative.")

        now = format_timestamp(utcnow())
        book = Book(
            id=uuid.uuid4().hex,
            title=title,
            stock=stock,
            available_stock=stock,
            isbn=self._normalize_isbn(isbn) or None,
            description=description,
            publish_date=_as_publish_date(publish_date),
            created_at=now,
            updated_at=now,
        )
        with database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO books (id, title, isbn, description, publish_date, stock, available_stock,
                                   is_deleted, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (book.id, book.title, book.isbn, book.description, book.publish_date, book.stock,
                 book.available_stock, book.created_at, book.updated_at),
            )
            book.authors = self.catalog.set_authors(conn, book.id, author_names)
            book.categories = self.catalog.set_categories(conn, book.id, _as_names(categories))
        logger.info(f"Added book {book.id} '{book.title}' with {stock} copies")
        return book

    def find_book(self, book_id: str, include_deleted: bool = False) -> Optional[Book]:
        with database.connection() as conn:
            return self.catalog.get_book(conn, book_id, include_deleted=include_deleted)

    def list_books(self, page: Optional[int] = 1, limit: Optional[int] = None,
                   title: Optional[str] = None) -> Dict[str, Any]:
        """Paginated, non-deleted books, optionally filtered by a title substring."""
        window = page_window(page, limit)
        where = "is_deleted = 0"
        params: tuple = ()
        if title:
            where += " AND title LIKE ?"
            params = (f"%{title}%",)
        with database.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM books WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM books WHERE {where} ORDER BY title, id LIMIT ? OFFSET ?",
                (*params, window.limit, window.offset),
            ).fetchall()
            books = self.catalog.attach_relations(conn, [Book.from_dict(dict(row)) for row in rows])
        return paginate(books, total, window)

    def update_book(self, book_id: str, *, title: Optional[str] = None, authors: Optional[Names] = None,
                    categories: Optional[Names] = None, description: Optional[str] = None,
                    publish_date: Optional[Union[date, str]] = None) -> Optional[Book]:
        """Update descriptive fields of a book. Stock counters are owned by the lending workflow.

        Passing ``authors`` or ``categories`` replaces the whole list.
        """
        if all(value is None for value in (title, authors, categories, description, publish_date)):
            raise ValueError("Nothing to update. Provide title, authors, categories, description "
                             "and/or publish date.")
        if authors is not None and not _as_names(authors):
            raise ValueError("Author cannot be empty.")

        with database.transaction() as conn:
            book = self.catalog.get_book(conn, book_id, include_deleted=False)
            if book is None:
                return None
            if title is not None and title.strip():
                book.title = title.strip()
            if description is not None:
                book.description = description
            if publish_date is not None:
                book.publish_date = _as_publish_date(publish_date)
            book.updated_at = format_timestamp(utcnow())
            conn.execute(
                "UPDATE books SET title = ?, description = ?, publish_date = ?, updated_at = ? WHERE id = ?",
                (book.title, book.description, book.publish_date, book.updated_at, book_id),
            )
            if authors is not None:
                book.authors = self.catalog.set_authors(conn, book_id, _as_names(authors))
            if categories is not None:
                book.categories = self.catalog.set_categories(conn, book_id, _as_names(categories))
        return book

    def remove_book(self, book_id: str) -> bool:
        """Soft-delete a book. Its loan history stays intact and it can no longer be borrowed."""
        with database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE books SET is_deleted = 1, updated_at = ? WHERE id = ? AND is_deleted = 0",
                (format_timestamp(utcnow()), book_id),
            )
        if cursor.rowcount > 0:
            logger.info(f"Book {book_id} soft-deleted")
            return True
        return False

    # ------------------------- Authors ------------------------- #
    def list_authors(self, page: Optional[int] = 1, limit: Optional[int] = None,
                     name: Optional[str] = None) -> Dict[str, Any]:
        window = page_window(page, limit)
        with database.connection() as conn:
            total = self.catalog.count_authors(conn, name=name)
            authors = self.catalog.list_authors(conn, name=name, offset=window.offset, limit=window.limit)
        return paginate(authors, total, window)

    def get_author(self, author_id: str) -> Author:
        with database.connection() as conn:
            author = self.catalog.get_author(conn, author_id)
        if author is None:
            raise NotFoundError(f"Author with id {author_id} not found")
        return author

    # ------------------------- Users ------------------------- #
    def add_user(self, name: str, email: str, role: Role | str = Role.MEMBER) -> User:
        if not name or not name.strip():
            raise ValueError("Name cannot be empty.")
        if not email or "@" not in email:
            raise ValueError("A valid email is required.")

        user = User(id=uuid.uuid4().hex, name=name, email=email, role=role,
                    created_at=format_timestamp(utcnow()))
        try:
            with database.transaction() as conn:
                conn.execute(
                    "INSERT INTO users (id, name, email, role, is_deleted, created_at) VALUES (?, ?, ?, ?, 0, ?)",
                    (user.id, user.name, user.email, user.role.value, user.created_at),
                )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with email {user.email} already exists.") from e
        logger.info(f"Added {user.role.value} user {user.id}")
        return user

    def get_user(self, user_id: str, include_deleted: bool = False) -> Optional[User]:
        query = "SELECT * FROM users WHERE id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        with database.connection() as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def list_users(self, page: Optional[int] = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        window = page_window(page, limit)
        with database.connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM users WHERE is_deleted = 0").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM users WHERE is_deleted = 0 ORDER BY created_at, id LIMIT ? OFFSET ?",
                (window.limit, window.offset),
            ).fetchall()
        return paginate([User.from_dict(dict(row)) for row in rows], total, window)

    def update_user(self, caller: Caller, user_id: str, *, name: Optional[str] = None,
                    email: Optional[str] = None) -> User:
        """Change a user's name and/or email. Users may only edit their own profile."""
        if name is not None and not name.strip():
            raise ValueError("Name cannot be empty.")
        if email is not None and "@" not in email:
            raise ValueError("A valid email is required.")

        try:
            with database.transaction() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = ? AND is_deleted = 0", (user_id,)).fetchone()
                if row is None:
                    raise NotFoundError(f"User with id {user_id} not found")
                if caller.id != user_id:
                    raise PermissionDeniedError("You can only update your own profile")
                user = User.from_dict(dict(row))
                updated = User(id=user.id, name=name if name is not None else user.name,
                               email=email if email is not None else user.email,
                               role=user.role, created_at=user.created_at)
                conn.execute("UPDATE users SET name = ?, email = ? WHERE id = ?",
                             (updated.name, updated.email, user_id))
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with email {email.strip().lower()} already exists.") from e
        logger.info(f"User {user_id} updated their profile")
        return updated

    def remove_user(self, user_id: str) -> User:
        with database.transaction() as conn:
            cursor = conn.execute("UPDATE users SET is_deleted = 1 WHERE id = ? AND is_deleted = 0", (user_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"User with id {user_id} not found")
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row))

    def caller_for(self, user_id: Optional[str]) -> Optional[Caller]:
        """Resolve a user id to an authenticated caller; deleted or unknown users resolve to None."""
        if not user_id:
            return None
        user = self.get_user(user_id)
        return user.as_caller() if user else None

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        with database.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*), COALESCE(SUM(stock), 0), COALESCE(SUM(available_stock), 0) "
                "FROM books WHERE is_deleted = 0"
            )
            total_books, total_copies, available_copies = cursor.fetchone()

            cursor.execute("SELECT COUNT(*) FROM authors")
            total_authors = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM users WHERE is_deleted = 0")
            total_users = cursor.fetchone()[0]

            cursor.execute(
                "SELECT status, COUNT(*) FROM borrow_transactions WHERE is_deleted = 0 GROUP BY status"
            )
            loans = {status.value: 0 for status in TransactionStatus}
            loans.update({row[0]: row[1] for row in cursor.fetchall()})

        return {
            "total_books": total_books,
            "total_copies": total_copies,
            "available_copies": available_copies,
            "total_authors": total_authors,
            "total_users": total_users,
            "loans": loans,
        }

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        cleaned = "".join(ch for ch in raw if ch.isalnum())
        return cleaned.upper()

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
