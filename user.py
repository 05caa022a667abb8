from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    ADMIN = "ADMIN"
    LIBRARIAN = "LIBRARIAN"
    MEMBER = "MEMBER"


@dataclass(frozen=True)
class Caller:
    """Authenticated identity handed to the lending core by the boundary layer."""
    id: str
    role: Role


class User:
    """A library account. Only non-deleted users can act as callers."""

    def __init__(self, id: str, name: str, email: str, role: Role | str = Role.MEMBER,
                 is_deleted: bool = False, created_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.role = Role(role)
        self.is_deleted = is_deleted
        self.created_at = created_at

    def as_caller(self) -> Caller:
        return Caller(id=self.id, role=self.role)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            role=data.get("role", Role.MEMBER.value),
            is_deleted=bool(data.get("is_deleted", False)),
            created_at=data.get("created_at"),
        )
