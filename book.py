from __future__ import annotations


class Book:
    """Represents a single title in the catalog and its copy counters."""

    def __init__(self, id: str, title: str, stock: int, available_stock: int,
                 authors: list[str] | None = None, categories: list[str] | None = None,
                 isbn: str | None = None, description: str | None = None, publish_date: str | None = None,
                 is_deleted: bool = False, created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.stock = stock
        self.available_stock = available_stock
        self.authors = list(authors or [])
        self.categories = list(categories or [])
        self.isbn = isbn
        self.description = description
        self.publish_date = publish_date
        self.is_deleted = is_deleted
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def author(self) -> str:
        """Authors joined for display."""
        return ", ".join(self.authors)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_stock}/{self.stock} available)"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "authors": self.authors,
            "categories": self.categories,
            "isbn": self.isbn,
            "description": self.description,
            "publish_date": self.publish_date,
            "stock": self.stock,
            "available_stock": self.available_stock,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # SQLite hands booleans back as 0/1
        return Book(
            id=data["id"],
            title=data["title"],
            stock=int(data["stock"]),
            available_stock=int(data["available_stock"]),
            authors=data.get("authors"),
            categories=data.get("categories"),
            isbn=data.get("isbn"),
            description=data.get("description"),
            publish_date=data.get("publish_date"),
            is_deleted=bool(data.get("is_deleted", False)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class Author:
    """A catalog author; ``books`` is only filled when loaded with them."""

    def __init__(self, id: str, name: str, books: list[Book] | None = None) -> None:
        self.id = id
        self.name = name
        self.books = books

    def to_dict(self) -> dict:
        data = {"id": self.id, "name": self.name}
        if self.books is not None:
            data["books"] = [book.to_dict() for book in self.books]
        return data

    @staticmethod
    def from_dict(data: dict) -> "Author":
        return Author(id=data["id"], name=data["name"])

