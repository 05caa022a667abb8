import os
import tempfile
from datetime import timedelta

# api.py builds a Library at import time; keep that database out of the working tree
# and keep the background sweep from starting under TestClient.
os.environ.setdefault("LIBRARY_DB_FILE", os.path.join(tempfile.gettempdir(), f"library_test_{os.getpid()}.db"))
os.environ.setdefault("OVERDUE_SWEEP_ENABLED", "false")

import pytest

from database import utcnow
from library import Library
from user import Role


@pytest.fixture
def lib(tmp_path):
    # Every test gets its own database file
    lib = Library(db_file=str(tmp_path / "library.db"))
    yield lib
    lib.close()


@pytest.fixture
def member(lib):
    return lib.add_user("Alice Reader", "alice@example.com", Role.MEMBER)


@pytest.fixture
def librarian(lib):
    return lib.add_user("Bob Librarian", "bob@example.com", Role.LIBRARIAN)


@pytest.fixture
def due_date():
    return utcnow() + timedelta(days=14)
