from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import api
from config import settings
from database import utcnow
from user import Role

API_KEY = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(lib, monkeypatch):
    # Route every request to the per-test database
    monkeypatch.setattr(api, "library", lib)
    return TestClient(api.app)


@pytest.fixture
def admin(lib):
    return lib.add_user("Ada Admin", "ada@example.com", Role.ADMIN)


def as_user(user):
    return {"X-User-Id": user.id}


def _due(days=14):
    return (utcnow() + timedelta(days=days)).isoformat()


@pytest.fixture
def book(client):
    response = client.post("/books", headers=API_KEY, json={"title": "Dune", "authors": ["Frank Herbert"], "stock": 1})
    assert response.status_code == 201
    return response.json()


# ------------------------- Health / catalog ------------------------- #
def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True


def test_get_books(client, book):
    response = client.get("/books")
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["page"] == 1
    assert body["data"][0]["id"] == book["id"]
    assert body["data"][0]["available_stock"] == 1


def test_get_book_not_found(client):
    assert client.get("/books/missing").status_code == 404


def test_add_book_with_invalid_api_key(client):
    response = client.post("/books", headers={"X-API-Key": "invalid-key"},
                           json={"title": "Dune", "authors": ["Frank Herbert"], "stock": 1})
    assert response.status_code == 403


def test_add_book_validation_error_is_400(client):
    response = client.post("/books", headers=API_KEY, json={"title": "Dune", "authors": ["Frank Herbert"], "stock": -1})
    assert response.status_code == 400


def test_update_and_delete_book(client, book):
    response = client.patch(f"/books/{book['id']}", headers=API_KEY, json={"title": "Dune Messiah"})
    assert response.status_code == 200
    assert response.json()["title"] == "Dune Messiah"

    assert client.delete(f"/books/{book['id']}", headers=API_KEY).status_code == 200
    assert client.get(f"/books/{book['id']}").status_code == 404
    assert client.delete(f"/books/{book['id']}", headers=API_KEY).status_code == 404


def test_stats(client, book):
    response = client.get("/stats")
    assert response.status_code == 200
    assert response.json()["total_copies"] == 1
    assert response.json()["total_authors"] == 1


def test_add_book_with_categories_and_publish_date(client):
    response = client.post("/books", headers=API_KEY, json={
        "title": "Good Omens",
        "authors": ["Terry Pratchett", "Neil Gaiman"],
        "categories": ["Fantasy", "Comedy"],
        "publish_date": "1990-05-01",
        "stock": 2,
    })
    assert response.status_code == 201
    body = response.json()
    assert body["authors"] == ["Terry Pratchett", "Neil Gaiman"]
    assert body["categories"] == ["Fantasy", "Comedy"]
    assert body["publish_date"] == "1990-05-01"

    fetched = client.get(f"/books/{body['id']}").json()
    assert fetched["authors"] == ["Terry Pratchett", "Neil Gaiman"]
    assert fetched["categories"] == ["Fantasy", "Comedy"]


def test_add_book_without_authors_is_400(client):
    response = client.post("/books", headers=API_KEY, json={"title": "Anonymous", "authors": [], "stock": 1})
    assert response.status_code == 400


def test_update_book_replaces_authors(client, book):
    response = client.patch(f"/books/{book['id']}", headers=API_KEY,
                            json={"authors": ["Brian Herbert", "Kevin J. Anderson"], "categories": ["Sci-Fi"]})
    assert response.status_code == 200
    assert response.json()["authors"] == ["Brian Herbert", "Kevin J. Anderson"]
    assert response.json()["categories"] == ["Sci-Fi"]


def test_list_authors(client, book):
    client.post("/books", headers=API_KEY, json={"title": "Emma", "authors": ["Jane Austen"], "stock": 1})

    response = client.get("/books/author")
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert [a["name"] for a in body["data"]] == ["Frank Herbert", "Jane Austen"]

    filtered = client.get("/books/author", params={"name": "aust"}).json()
    assert [a["name"] for a in filtered["data"]] == ["Jane Austen"]

    paged = client.get("/books/author", params={"page": 2, "limit": 1}).json()
    assert paged["total_pages"] == 2
    assert [a["name"] for a in paged["data"]] == ["Jane Austen"]


def test_get_author_with_books(client, book):
    author_id = client.get("/books/author").json()["data"][0]["id"]

    response = client.get(f"/books/author/{author_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Frank Herbert"
    assert [b["id"] for b in body["books"]] == [book["id"]]


def test_get_author_not_found(client):
    assert client.get("/books/author/missing").status_code == 404


# ------------------------- Users ------------------------- #
def test_create_and_get_user(client, member):
    response = client.post("/users", headers=API_KEY, json={"name": "Carol", "email": "carol@example.com"})
    assert response.status_code == 201
    user = response.json()
    assert user["role"] == "MEMBER"

    detail = client.get(f"/users/{user['id']}", headers=as_user(member))
    assert detail.status_code == 200
    assert detail.json()["borrowings"]["data"] == []
    assert detail.json()["borrowings"]["total"] == 0


def test_get_user_requires_identity(client, member):
    assert client.get(f"/users/{member.id}").status_code == 401


def test_get_user_paginates_borrowings(client, lib, member):
    for i in range(3):
        created = lib.add_book(f"Book {i}", "Author", 1)
        lib.borrowing.create_borrow(member.as_caller(), created.id, utcnow() + timedelta(days=7))

    first = client.get(f"/users/{member.id}", headers=as_user(member), params={"page": 1, "limit": 2})
    assert first.status_code == 200
    borrowings = first.json()["borrowings"]
    assert borrowings["total"] == 3
    assert borrowings["total_pages"] == 2
    assert len(borrowings["data"]) == 2

    second = client.get(f"/users/{member.id}", headers=as_user(member), params={"page": 2, "limit": 2})
    assert len(second.json()["borrowings"]["data"]) == 1


def test_list_users_is_staff_only(client, member, librarian, admin):
    assert client.get("/users").status_code == 401
    assert client.get("/users", headers=as_user(member)).status_code == 403

    response = client.get("/users", headers=as_user(librarian))
    assert response.status_code == 200
    assert response.json()["total"] == 3
    assert client.get("/users", headers=as_user(admin)).status_code == 200


def test_create_user_duplicate_email(client, member):
    response = client.post("/users", headers=API_KEY, json={"name": "Alice", "email": "alice@example.com"})
    assert response.status_code == 400


def test_update_own_profile(client, librarian):
    response = client.patch(f"/users/{librarian.id}", headers=as_user(librarian),
                            json={"name": "Robert Librarian", "email": "Robert@Example.com"})
    assert response.status_code == 200
    assert response.json()["name"] == "Robert Librarian"
    assert response.json()["email"] == "robert@example.com"


def test_update_other_profile_is_forbidden(client, librarian, admin):
    response = client.patch(f"/users/{admin.id}", headers=as_user(librarian), json={"name": "Someone"})
    assert response.status_code == 403


def test_update_user_unknown_id_is_404(client, admin):
    response = client.patch("/users/missing", headers=as_user(admin), json={"name": "Someone"})
    assert response.status_code == 404


def test_update_user_requires_staff_role(client, member):
    response = client.patch(f"/users/{member.id}", headers=as_user(member), json={"name": "Alice"})
    assert response.status_code == 403


def test_update_user_duplicate_email_is_400(client, librarian, admin):
    response = client.patch(f"/users/{admin.id}", headers=as_user(admin), json={"email": "bob@example.com"})
    assert response.status_code == 400


def test_delete_user_is_admin_only(client, member, librarian, admin):
    assert client.delete(f"/users/{member.id}", headers=as_user(librarian)).status_code == 403
    assert client.delete(f"/users/{member.id}", headers=as_user(member)).status_code == 403

    assert client.delete(f"/users/{member.id}", headers=as_user(admin)).status_code == 200
    assert client.get(f"/users/{member.id}", headers=as_user(admin)).status_code == 404
    assert client.delete(f"/users/{member.id}", headers=as_user(admin)).status_code == 404


# ------------------------- Borrowing ------------------------- #
def test_borrow_success(client, member, book):
    response = client.post("/borrowing", headers=as_user(member), json={"book_id": book["id"], "due_date": _due()})
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "BORROWED"
    assert body["return_date"] is None
    assert body["book"]["available_stock"] == 0
    assert body["user"]["id"] == member.id


def test_borrow_requires_identity(client, book):
    response = client.post("/borrowing", json={"book_id": book["id"], "due_date": _due()})
    assert response.status_code == 401
    response = client.post("/borrowing", headers={"X-User-Id": "unknown"},
                           json={"book_id": book["id"], "due_date": _due()})
    assert response.status_code == 401


def test_borrow_requires_member_role(client, librarian, book):
    response = client.post("/borrowing", headers=as_user(librarian), json={"book_id": book["id"], "due_date": _due()})
    assert response.status_code == 403


def test_borrow_unknown_book(client, member):
    response = client.post("/borrowing", headers=as_user(member), json={"book_id": "missing", "due_date": _due()})
    assert response.status_code == 404


def test_borrow_out_of_stock(client, lib, member, book):
    other = lib.add_user("Dan", "dan@example.com", Role.MEMBER)
    client.post("/borrowing", headers=as_user(other), json={"book_id": book["id"], "due_date": _due()})
    response = client.post("/borrowing", headers=as_user(member), json={"book_id": book["id"], "due_date": _due()})
    assert response.status_code == 400
    assert response.json()["detail"] == "Book is out of stock"


def test_borrow_duplicate_is_conflict(client, member):
    created = client.post("/books", headers=API_KEY, json={"title": "Emma", "authors": ["Jane Austen"], "stock": 2}).json()
    payload = {"book_id": created["id"], "due_date": _due()}
    assert client.post("/borrowing", headers=as_user(member), json=payload).status_code == 201
    response = client.post("/borrowing", headers=as_user(member), json=payload)
    assert response.status_code == 409


def test_borrow_missing_due_date_is_400(client, member, book):
    response = client.post("/borrowing", headers=as_user(member), json={"book_id": book["id"]})
    assert response.status_code == 400


def test_list_and_get_borrowings(client, member, librarian, book):
    created = client.post("/borrowing", headers=as_user(member),
                          json={"book_id": book["id"], "due_date": _due()}).json()

    assert client.get("/borrowing", headers=as_user(member)).status_code == 403

    listing = client.get("/borrowing", headers=as_user(librarian), params={"status": "BORROWED"})
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["data"][0]["id"] == created["id"]

    detail = client.get(f"/borrowing/{created['id']}", headers=as_user(librarian))
    assert detail.status_code == 200
    assert detail.json()["book"]["id"] == book["id"]
    assert client.get("/borrowing/missing", headers=as_user(librarian)).status_code == 404


def test_return_is_idempotent(client, lib, member, librarian, book):
    created = client.post("/borrowing", headers=as_user(member),
                          json={"book_id": book["id"], "due_date": _due()}).json()

    first = client.patch(f"/borrowing/{created['id']}", headers=as_user(librarian), json={"status": "RETURNED"})
    assert first.status_code == 200
    assert first.json()["status"] == "RETURNED"
    assert first.json()["return_date"] is not None

    second = client.patch(f"/borrowing/{created['id']}", headers=as_user(librarian), json={"status": "RETURNED"})
    assert second.status_code == 200
    assert lib.find_book(book["id"]).available_stock == 1


def test_reopening_returned_loan_is_conflict(client, member, librarian, book):
    created = client.post("/borrowing", headers=as_user(member),
                          json={"book_id": book["id"], "due_date": _due()}).json()
    client.patch(f"/borrowing/{created['id']}", headers=as_user(librarian), json={"status": "RETURNED"})
    response = client.patch(f"/borrowing/{created['id']}", headers=as_user(librarian), json={"status": "BORROWED"})
    assert response.status_code == 409


def test_update_requires_librarian_role(client, lib, member, admin, book):
    created = client.post("/borrowing", headers=as_user(member),
                          json={"book_id": book["id"], "due_date": _due()}).json()
    response = client.patch(f"/borrowing/{created['id']}", headers=as_user(member), json={"status": "RETURNED"})
    assert response.status_code == 403
    response = client.patch(f"/borrowing/{created['id']}", headers=as_user(admin), json={"status": "RETURNED"})
    assert response.status_code == 403
    assert lib.find_book(book["id"]).available_stock == 0


def test_invalid_status_is_400(client, librarian):
    response = client.patch("/borrowing/anything", headers=as_user(librarian), json={"status": "LOST"})
    assert response.status_code == 400


def test_delete_borrowing_keeps_stock(client, lib, member, librarian, book):
    created = client.post("/borrowing", headers=as_user(member),
                          json={"book_id": book["id"], "due_date": _due()}).json()
    response = client.delete(f"/borrowing/{created['id']}", headers=as_user(librarian))
    assert response.status_code == 200
    assert lib.find_book(book["id"]).available_stock == 0
    assert client.get(f"/borrowing/{created['id']}", headers=as_user(librarian)).status_code == 404
    assert client.delete(f"/borrowing/{created['id']}", headers=as_user(librarian)).status_code == 404


def test_sweep_endpoint(client, member, book):
    client.post("/borrowing", headers=as_user(member), json={"book_id": book["id"], "due_date": _due(-3)})

    response = client.post("/borrowing/sweep", headers=API_KEY)
    assert response.status_code == 200
    assert response.json() == {"updated": 1}
    assert client.post("/borrowing/sweep", headers=API_KEY).json() == {"updated": 0}


def test_sweep_failure_is_503(client, lib, monkeypatch):
    monkeypatch.setattr(lib.sweeper, "run_sweep_now", lambda: None)
    assert client.post("/borrowing/sweep", headers=API_KEY).status_code == 503
