import sqlite3
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from book import Author, Book

# (name table, link table, link column)
_AUTHORS = ("authors", "book_authors", "author_id")
_CATEGORIES = ("categories", "book_categories", "category_id")


def clean_names(names: Iterable[str]) -> List[str]:
    """Strip names, drop blanks and case-insensitive duplicates, keep order."""
    seen = set()
    cleaned = []
    for name in names:
        name = (name or "").strip()
        if name and name.lower() not in seen:
            seen.add(name.lower())
            cleaned.append(name)
    return cleaned


class CatalogStore:
    """Books together with the authors and categories linked to them.

    Authors and categories are looked up by name and created on first use.
    """

    # ------------------------- Books ------------------------- #
    def get_book(self, conn: sqlite3.Connection, book_id: str,
                 include_deleted: bool = True) -> Optional[Book]:
        query = "SELECT * FROM books WHERE id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        row = conn.execute(query, (book_id,)).fetchone()
        if row is None:
            return None
        return self.attach_relations(conn, [Book.from_dict(dict(row))])[0]

    def attach_relations(self, conn: sqlite3.Connection, books: List[Book]) -> List[Book]:
        if not books:
            return books
        ids = [book.id for book in books]
        authors = self._names_by_book(conn, _AUTHORS, ids)
        categories = self._names_by_book(conn, _CATEGORIES, ids)
        for book in books:
            book.authors = authors.get(book.id, [])
            book.categories = categories.get(book.id, [])
        return books

    def set_authors(self, conn: sqlite3.Connection, book_id: str, names: List[str]) -> List[str]:
        return self._replace_links(conn, _AUTHORS, book_id, names)

    def set_categories(self, conn: sqlite3.Connection, book_id: str, names: List[str]) -> List[str]:
        return self._replace_links(conn, _CATEGORIES, book_id, names)

    # ------------------------- Authors ------------------------- #
    def list_authors(self, conn: sqlite3.Connection, name: Optional[str] = None,
                     offset: int = 0, limit: int = -1) -> List[Author]:
        where, params = self._author_filter(name)
        rows = conn.execute(
            f"SELECT * FROM authors WHERE {where} ORDER BY name, id LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()
        return [Author.from_dict(dict(row)) for row in rows]

    def count_authors(self, conn: sqlite3.Connection, name: Optional[str] = None) -> int:
        where, params = self._author_filter(name)
        return conn.execute(f"SELECT COUNT(*) FROM authors WHERE {where}", params).fetchone()[0]

    def get_author(self, conn: sqlite3.Connection, author_id: str) -> Optional[Author]:
        """An author with the non-deleted books linked to them."""
        row = conn.execute("SELECT * FROM authors WHERE id = ?", (author_id,)).fetchone()
        if row is None:
            return None
        author = Author.from_dict(dict(row))
        book_rows = conn.execute(
            """
            SELECT b.* FROM books b
            JOIN book_authors ba ON ba.book_id = b.id
            WHERE ba.author_id = ? AND b.is_deleted = 0
            ORDER BY b.title, b.id
            """,
            (author_id,),
        ).fetchall()
        author.books = self.attach_relations(conn, [Book.from_dict(dict(r)) for r in book_rows])
        return author

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _author_filter(name: Optional[str]) -> Tuple[str, tuple]:
        if name:
            return "name LIKE ?", (f"%{name}%",)
        return "1 = 1", ()

    @staticmethod
    def _names_by_book(conn: sqlite3.Connection, kind: Tuple[str, str, str],
                       book_ids: List[str]) -> Dict[str, List[str]]:
        table, link_table, link_column = kind
        placeholders = ", ".join("?" for _ in book_ids)
        rows = conn.execute(
            f"""
            SELECT l.book_id, t.name FROM {link_table} l
            JOIN {table} t ON t.id = l.{link_column}
            WHERE l.book_id IN ({placeholders})
            ORDER BY l.book_id, l.position
            """,
            book_ids,
        ).fetchall()
        names: Dict[str, List[str]] = {}
        for book_id, name in rows:
            names.setdefault(book_id, []).append(name)
        return names

    @staticmethod
    def _replace_links(conn: sqlite3.Connection, kind: Tuple[str, str, str],
                       book_id: str, names: List[str]) -> List[str]:
        table, link_table, link_column = kind
        conn.execute(f"DELETE FROM {link_table} WHERE book_id = ?", (book_id,))
        linked = []
        for position, name in enumerate(clean_names(names)):
            conn.execute(f"INSERT OR IGNORE INTO {table} (id, name) VALUES (?, ?)", (uuid.uuid4().hex, name))
            row = conn.execute(f"SELECT id, name FROM {table} WHERE name = ?", (name,)).fetchone()
            conn.execute(
                f"INSERT INTO {link_table} (book_id, {link_column}, position) VALUES (?, ?, ?)",
                (book_id, row["id"], position),
            )
            linked.append(row["name"])
        return linked
