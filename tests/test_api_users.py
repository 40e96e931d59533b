import logging
import sqlite3

import pytest
from fastapi.testclient import TestClient

from usersapi.api import create_app
from usersapi.database import Database


@pytest.fixture
def api_app(tmp_path):
    database = Database(tmp_path / "users.sqlite3")
    app = create_app(database=database, initialize_database=True)
    yield app, database


@pytest.fixture
def client(api_app):
    app, _database = api_app
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient, name: str = "John Doe", email: str = "john@gmail.com") -> dict:
    response = client.post("/users", json={"name": name, "email": email})
    assert response.status_code == 201, response.text
    return response.json()


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_user_returns_created_record(client):
    payload = _create(client)

    assert isinstance(payload["id"], int)
    assert payload["id"] > 0
    assert payload["name"] == "John Doe"
    assert payload["email"] == "john@gmail.com"
    assert payload["created_at"]
    assert payload["updated_at"]
    assert "deleted_at" not in payload


def test_created_ids_are_never_reused(client):
    seen = set()
    for index in range(3):
        created = _create(client, name=f"User {index}")
        assert created["id"] not in seen
        seen.add(created["id"])

    client.delete(f"/users/{max(seen)}")
    assert _create(client)["id"] not in seen


def test_create_then_fetch_round_trip(client):
    created = _create(client)

    response = client.get(f"/user/{created['id']}")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "John Doe"
    assert body["email"] == "john@gmail.com"
    assert body["id"] == created["id"]


def test_create_accepts_missing_and_empty_fields(client):
    response = client.post("/users", json={})
    assert response.status_code == 201
    assert response.json()["name"] == ""
    assert response.json()["email"] == ""

    response = client.post("/users", json={"name": "", "email": "not-an-email", "role": "ignored"})
    assert response.status_code == 201
    assert "role" not in response.json()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": "this is not json", "headers": {"Content-Type": "application/json"}},
        {"content": "{\"name\": \"John\"", "headers": {"Content-Type": "application/json"}},
        {"json": ["John Doe", "john@gmail.com"]},
        {"json": {"name": 42, "email": "john@gmail.com"}},
        {"json": {"name": "John Doe", "email": {"address": "john@gmail.com"}}},
    ],
)
def test_create_rejects_undecodable_body(api_app, client, kwargs):
    _app, database = api_app

    response = client.post("/users", **kwargs)

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == 400
    assert isinstance(body["message"], str) and body["message"]
    assert database.count_users(include_deleted=True) == 0


def test_get_missing_user_returns_not_found(client):
    _create(client)

    for missing in (0, -1, 999):
        response = client.get(f"/user/{missing}")
        assert response.status_code == 404
        assert response.json() == {"code": 404, "message": "User not found"}


def test_non_integer_id_is_bad_input(client):
    response = client.get("/user/abc")
    assert response.status_code == 400
    assert response.json()["code"] == 400


def test_list_users(client):
    first = _create(client, name="Alice", email="alice@example.com")
    second = _create(client, name="Bob", email="bob@example.com")

    response = client.get("/users")
    assert response.status_code == 200
    assert [user["id"] for user in response.json()] == [first["id"], second["id"]]


def test_list_users_empty(client):
    response = client.get("/users")
    assert response.status_code == 200
    assert response.json() == []


def test_partial_update_keeps_email(client):
    created = _create(client)

    response = client.put(f"/users/{created['id']}", json={"name": "Updated John Doe"})
    assert response.status_code == 200
    assert response.json() == {"name": "Updated John Doe", "email": ""}

    fetched = client.get(f"/user/{created['id']}").json()
    assert fetched["name"] == "Updated John Doe"
    assert fetched["email"] == "john@gmail.com"


def test_update_cannot_clear_fields(client):
    created = _create(client)

    response = client.put(f"/users/{created['id']}", json={"name": "", "email": None})
    assert response.status_code == 200

    fetched = client.get(f"/user/{created['id']}").json()
    assert fetched["name"] == "John Doe"
    assert fetched["email"] == "john@gmail.com"


def test_update_missing_user_returns_not_found(client):
    response = client.put("/users/321", json={"name": "Nobody"})
    assert response.status_code == 404
    assert response.json() == {"code": 404, "message": "User not found"}


def test_update_rejects_undecodable_body(client):
    created = _create(client)

    response = client.put(
        f"/users/{created['id']}",
        content="name=Updated",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400

    fetched = client.get(f"/user/{created['id']}").json()
    assert fetched["name"] == "John Doe"


def test_delete_hides_user(client):
    created = _create(client)
    user_id = created["id"]

    response = client.delete(f"/users/{user_id}")
    assert response.status_code == 200
    assert response.json() == {"message": f"User with ID {user_id} deleted"}

    assert client.get(f"/user/{user_id}").status_code == 404
    assert user_id not in [user["id"] for user in client.get("/users").json()]
    assert client.put(f"/users/{user_id}", json={"name": "Back"}).status_code == 404


def test_delete_is_idempotent(api_app, client):
    _app, database = api_app
    created = _create(client)
    user_id = created["id"]

    assert client.delete(f"/users/{user_id}").status_code == 200
    second = client.delete(f"/users/{user_id}")
    assert second.status_code == 200

    assert client.get(f"/user/{user_id}").status_code == 404
    assert database.count_users() == 0
    assert database.count_users(include_deleted=True) == 1


def test_delete_unknown_user_succeeds(client):
    response = client.delete("/users/777")
    assert response.status_code == 200
    assert response.json() == {"message": "User with ID 777 deleted"}


def test_storage_failure_returns_server_error(api_app, client):
    _app, database = api_app
    with sqlite3.connect(database.path) as conn:
        conn.execute("DROP TABLE users")

    requests = [
        ("get", "/users", None),
        ("get", "/user/1", None),
        ("post", "/users", {"name": "John Doe", "email": "john@gmail.com"}),
        ("put", "/users/1", {"name": "John"}),
        ("delete", "/users/1", None),
    ]
    for method, path, payload in requests:
        kwargs = {"json": payload} if payload is not None else {}
        response = client.request(method.upper(), path, **kwargs)
        assert response.status_code == 500, (method, path)
        body = response.json()
        assert body["code"] == 500
        assert "no such table" in body["message"]


def test_unhandled_error_is_recovered(api_app, client, monkeypatch):
    _app, database = api_app

    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(database, "list_users", explode)

    response = client.get("/users")
    assert response.status_code == 500
    assert response.json() == {"code": 500, "message": "Internal Server Error"}

    assert client.get("/health").status_code == 200


def test_unknown_route_uses_error_body(client):
    response = client.get("/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"code": 404, "message": "Not Found"}

    response = client.patch("/users/1", json={})
    assert response.status_code == 405
    assert response.json()["code"] == 405


def test_requests_are_logged(client, caplog):
    caplog.set_level(logging.INFO, logger="usersapi.access")

    client.get("/users")

    messages = [record.getMessage() for record in caplog.records if record.name == "usersapi.access"]
    assert any(message.startswith("GET /users -> 200") for message in messages)


def test_create_app_builds_database_from_settings(tmp_path):
    from usersapi.config import ServiceSettings

    settings = ServiceSettings(database_path=tmp_path / "nested" / "users.sqlite3")
    app = create_app(settings=settings)

    assert app.state.database.path == settings.database_path
    with TestClient(app) as test_client:
        assert test_client.post("/users", json={"name": "A", "email": "a@example.com"}).status_code == 201
    assert settings.database_path.exists()


def test_openapi_document_lists_routes(client):
    schema = client.get("/openapi.json").json()

    assert schema["info"]["title"] == "User Management API"
    assert set(schema["paths"]) >= {"/users", "/user/{user_id}", "/users/{user_id}"}


@pytest.mark.parametrize("user_id", [2**63, 2**64, 10**30])
def test_ids_beyond_integer_range(api_app, client, user_id):
    _app, database = api_app
    _create(client)

    response = client.get(f"/user/{user_id}")
    assert response.status_code == 404
    assert response.json() == {"code": 404, "message": "User not found"}

    response = client.put(f"/users/{user_id}", json={"name": "Overflow"})
    assert response.status_code == 404
    assert response.json() == {"code": 404, "message": "User not found"}

    response = client.delete(f"/users/{user_id}")
    assert response.status_code == 200
    assert response.json() == {"message": f"User with ID {user_id} deleted"}

    assert database.count_users() == 1


def test_malformed_stored_timestamp_returns_server_error(api_app, client):
    _app, database = api_app
    created = _create(client)
    with sqlite3.connect(database.path) as conn:
        conn.execute("UPDATE users SET created_at = 'yesterday' WHERE id = ?", (created["id"],))

    response = client.get(f"/user/{created['id']}")
    assert response.status_code == 500
    assert response.json()["code"] == 500
    assert "malformed timestamp" in response.json()["message"]
