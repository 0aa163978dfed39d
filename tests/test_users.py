import pytest

from common.models import RoleEnum
from common.storage import AVATARS_BUCKET, storage

PASSWORD = "Passw0rd!"


def auth_header(users_client, email: str, password: str = PASSWORD) -> dict[str, str]:
    response = users_client.post(
        "/users/login",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_headers(create_user, users_client):
    create_user("admin@example.com", role=RoleEnum.ADMIN)
    return auth_header(users_client, "admin@example.com")


def test_login_and_profile(users_client, create_user):
    create_user("ana@example.com", full_name="Ana", department="Finance")

    bad = users_client.post(
        "/users/login",
        data={"username": "ana@example.com", "password": "wrong"},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert bad.status_code == 401

    headers = auth_header(users_client, "ana@example.com")
    profile = users_client.get("/users/me", headers=headers).json()
    assert profile["full_name"] == "Ana"
    assert profile["department"] == "Finance"
    assert profile["terms_accepted"] is False
    assert profile["permissions"] == ["book_room", "cancel_own_booking"]


def test_profile_requires_token(users_client):
    assert users_client.get("/users/me").status_code == 401


def test_update_profile_and_terms(users_client, create_user):
    create_user("ana@example.com")
    headers = auth_header(users_client, "ana@example.com")

    updated = users_client.put("/users/me", json={"full_name": "Ana Souza", "department": "Legal"}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["full_name"] == "Ana Souza"
    assert updated.json()["department"] == "Legal"

    accepted = users_client.post("/users/me/accept-terms", headers=headers)
    assert accepted.json()["terms_accepted"] is True


def test_change_password(users_client, create_user):
    create_user("ana@example.com")
    headers = auth_header(users_client, "ana@example.com")

    wrong = users_client.put(
        "/users/me/password", json={"current_password": "nope", "new_password": "NewPassw0rd!"}, headers=headers
    )
    assert wrong.status_code == 400

    changed = users_client.put(
        "/users/me/password", json={"current_password": PASSWORD, "new_password": "NewPassw0rd!"}, headers=headers
    )
    assert changed.status_code == 204
    assert auth_header(users_client, "ana@example.com", "NewPassw0rd!")["Authorization"].startswith("Bearer ")


def test_avatar_replaces_previous_file(users_client, create_user):
    user_id = create_user("ana@example.com")
    headers = auth_header(users_client, "ana@example.com")

    first = users_client.post("/users/me/avatar", files={"file": ("a.png", b"one", "image/png")}, headers=headers)
    assert first.status_code == 200
    second = users_client.post("/users/me/avatar", files={"file": ("b.jpg", b"two", "image/jpeg")}, headers=headers)
    assert second.status_code == 200

    stored = storage.list(AVATARS_BUCKET, str(user_id))
    assert len(stored) == 1
    assert stored[0].endswith(".jpg")
    assert second.json()["avatar_url"].endswith(stored[0])

    removed = users_client.delete("/users/me/avatar", headers=headers)
    assert removed.json()["avatar_url"] is None
    assert storage.list(AVATARS_BUCKET, str(user_id)) == []


def test_user_administration(users_client, create_user, admin_headers):
    user_id = create_user("ana@example.com", full_name="Ana")
    user_headers = auth_header(users_client, "ana@example.com")

    assert users_client.get("/users", headers=user_headers).status_code == 403
    listing = users_client.get("/users", headers=admin_headers).json()
    assert {user["email"] for user in listing} == {"admin@example.com", "ana@example.com"}

    promoted = users_client.put(f"/users/{user_id}/role", json={"role": "manager"}, headers=admin_headers)
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "manager"
    assert users_client.put(f"/users/{user_id}/role", json={"role": "admin"}, headers=user_headers).status_code == 403


def test_role_change_resets_default_grants(users_client, create_user, admin_headers):
    user_id = create_user("ana@example.com", full_name="Ana")
    before = users_client.get(f"/users/{user_id}/permissions", headers=admin_headers).json()
    assert before == ["book_room", "cancel_own_booking"]

    users_client.put(f"/users/{user_id}/role", json={"role": "manager"}, headers=admin_headers)
    after = users_client.get(f"/users/{user_id}/permissions", headers=admin_headers).json()
    assert after == [
        "block_room_maintenance",
        "book_room",
        "cancel_any_booking",
        "cancel_own_booking",
        "view_all_schedules",
    ]

    users_client.put(f"/users/{user_id}/permissions", json={"permissions": ["book_room"]}, headers=admin_headers)
    users_client.put(f"/users/{user_id}/role", json={"role": "manager"}, headers=admin_headers)
    unchanged = users_client.get(f"/users/{user_id}/permissions", headers=admin_headers).json()
    assert unchanged == ["book_room"]


def test_permission_grants(users_client, create_user, admin_headers):
    user_id = create_user("ana@example.com")

    granted = users_client.put(
        f"/users/{user_id}/permissions",
        json={"permissions": ["book_room", "view_all_schedules"]},
        headers=admin_headers,
    )
    assert granted.status_code == 200
    assert granted.json() == ["book_room", "view_all_schedules"]
    assert users_client.get(f"/users/{user_id}/permissions", headers=admin_headers).json() == granted.json()

    unknown = users_client.put(
        f"/users/{user_id}/permissions", json={"permissions": ["fly"]}, headers=admin_headers
    )
    assert unknown.status_code == 400

    missing = users_client.get("/users/9999/permissions", headers=admin_headers)
    assert missing.status_code == 404


def test_admin_profile_lists_every_permission(users_client, admin_headers):
    profile = users_client.get("/users/me", headers=admin_headers).json()
    assert "manage_users" in profile["permissions"]
    assert len(profile["permissions"]) == 7
