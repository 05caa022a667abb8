import logging
import sqlite3
from typing import Optional

from book import Book
from database import format_timestamp, utcnow
from errors import BookDeletedError, ConflictError, NotFoundError, OutOfStockError

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Sole writer of ``books.available_stock``.

    Every method runs on the connection of an open ``database.transaction()``
    so that a stock change commits or rolls back together with the borrow
    record that caused it.
    """

    def get_book(self, conn: sqlite3.Connection, book_id: str) -> Optional[Book]:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def reserve(self, conn: sqlite3.Connection, book_id: str) -> None:
        """Take one copy off the shelf, or fail without touching the counter."""
        cursor = conn.execute(
            """
            UPDATE books
            SET available_stock = available_stock - 1, updated_at = ?
            WHERE id = ? AND is_deleted = 0 AND available_stock >= 1
            """,
            (format_timestamp(utcnow()), book_id),
        )
        if cursor.rowcount == 1:
            return

        book = self.get_book(conn, book_id)
        if book is None:
            raise NotFoundError("Book not found")
        if book.is_deleted:
            raise BookDeletedError("Book not found")
        raise OutOfStockError("Book is out of stock")

    def release(self, conn: sqlite3.Connection, book_id: str) -> None:
        """Put one copy back on the shelf."""
        try:
            cursor = conn.execute(
                "UPDATE books SET available_stock = available_stock + 1, updated_at = ? WHERE id = ?",
                (format_timestamp(utcnow()), book_id),
            )
        except sqlite3.IntegrityError as exc:
            # available_stock <= stock is a CHECK constraint
            logger.error(f"Refusing to release book {book_id}: all copies are already on the shelf")
            raise ConflictError("All copies of this book are already available") from exc
        if cursor.rowcount == 0:
            raise NotFoundError("Book not found")
