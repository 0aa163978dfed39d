from datetime import datetime, timedelta

import pytest

from common.models import Booking, RoleEnum, Room

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


def test_settings_seeded_and_updated(admin_client, admin_headers):
    seeded = {row["key"]: row["value"] for row in admin_client.get("/settings", headers=admin_headers).json()}
    assert seeded == {"max_booking_duration_hours": "4", "max_days_ahead": "30"}

    updated = admin_client.put("/settings/max_days_ahead", json={"value": "60"}, headers=admin_headers)
    assert updated.status_code == 200
    assert updated.json()["value"] == "60"


@pytest.mark.parametrize("value", ["0", "-3", "two"])
def test_settings_reject_non_positive_values(admin_client, admin_headers, value):
    response = admin_client.put("/settings/max_days_ahead", json={"value": value}, headers=admin_headers)
    assert response.status_code == 400


def test_settings_admin_only(admin_client, users_client, create_user):
    create_user("manager@example.com", role=RoleEnum.MANAGER)
    headers = auth_header(users_client, "manager@example.com")

    assert admin_client.get("/settings", headers=headers).status_code == 200
    assert admin_client.put("/settings/max_days_ahead", json={"value": "10"}, headers=headers).status_code == 403
    assert admin_client.get("/analytics/occupancy", headers=headers).status_code == 403


def test_unknown_setting(admin_client, admin_headers):
    response = admin_client.put("/settings/colour", json={"value": "3"}, headers=admin_headers)
    assert response.status_code == 404


def _seed_usage(db_session, create_user):
    ana = create_user("ana@example.com", department="Finance")
    bruno = create_user("bruno@example.com", department="")
    busy = Room(name="Busy", capacity=8)
    quiet = Room(name="Quiet", capacity=4)
    db_session.add_all([busy, quiet])
    db_session.flush()

    start = datetime.utcnow() - timedelta(days=2)
    db_session.add_all(
        [
            Booking(room_id=busy.id, user_id=ana, title="A", start_time=start, end_time=start + timedelta(hours=3)),
            Booking(room_id=busy.id, user_id=ana, title="B", start_time=start + timedelta(days=1), end_time=start + timedelta(days=1, hours=1)),
            Booking(room_id=quiet.id, user_id=bruno, title="C", start_time=start, end_time=start + timedelta(hours=2)),
            Booking(
                room_id=quiet.id,
                user_id=bruno,
                title="D",
                start_time=start + timedelta(hours=5),
                end_time=start + timedelta(hours=9),
                status="cancelled",
            ),
        ]
    )
    db_session.commit()


def test_occupancy_report(admin_client, admin_headers, db_session, create_user):
    _seed_usage(db_session, create_user)

    report = admin_client.get("/analytics/occupancy?days=30", headers=admin_headers).json()
    assert [row["room_name"] for row in report] == ["Busy", "Quiet"]
    busy, quiet = report
    assert busy["booked_hours"] == 4.0
    assert quiet["booked_hours"] == 2.0
    # 05:50 to 19:00 is 13h10m per display day.
    assert busy["total_hours"] == round(30 * (13 + 10 / 60), 2)
    assert busy["occupancy_rate"] > quiet["occupancy_rate"]


def test_department_report(admin_client, admin_headers, db_session, create_user):
    _seed_usage(db_session, create_user)

    report = admin_client.get("/analytics/departments", headers=admin_headers).json()
    assert report == [
        {"department": "Finance", "bookings": 2},
        {"department": "Not informed", "bookings": 1},
    ]
