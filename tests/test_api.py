import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ridehail.main import create_app
from ridehail.models.driver_model import Driver
from ridehail.utils.jwt_utils import create_access_token

from conftest import NOON, five_km_route, make_category, make_settings, make_user, no_rain

ORIGIN = {"latitude": -23.5503, "longitude": -46.6339, "address": "Praça da Sé, São Paulo"}
DESTINATION = {"latitude": -23.5614, "longitude": -46.6559, "address": "Av. Paulista 1000"}


@pytest.fixture
def client():
    make_category()
    app = create_app(
        make_settings(search_timeout_seconds=30),
        connect_database=False,
        clock=lambda: NOON,
        route_estimator=five_km_route,
        weather=no_rain,
    )
    with TestClient(app) as client:
        yield client


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, name, email, role="passenger", **extra):
    response = client.post(
        "/auth/register",
        json={
            "full_name": name,
            "email": email,
            "phone": extra.pop("phone", "11988887777"),
            "password": "secret123",
            "role": role,
            **extra,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def admin_token():
    admin = make_user("Admin User", role="admin")
    return create_access_token({"user_id": str(admin.id), "role": "admin"})


def approved_online_driver(client, admin, name, email, phone):
    data = register(
        client,
        name,
        email,
        role="driver",
        phone=phone,
        vehicle_model="Onix",
        vehicle_plate="abc1d23",
        vehicle_color="Prata",
    )
    token = data["token"]
    driver_id = data["user"]["id"]
    assert data["driver"]["status"] == "pending"
    assert data["missing_vehicle_fields"] == []

    response = client.post(f"/admin/drivers/{driver_id}/approve", headers=auth(admin))
    assert response.json()["driver"]["status"] == "approved"

    response = client.post(
        "/drivers/me/online",
        json={"latitude": -23.5505, "longitude": -46.6333},
        headers=auth(token),
    )
    assert response.status_code == 200
    return token, driver_id


def test_health(client):
    assert client.get("/").json()["success"] is True
    assert client.get("/health").json()["status"] == "healthy"


def test_register_and_login(client):
    register(client, "Ana Souza", "ana@example.com")

    duplicate = client.post(
        "/auth/register",
        json={
            "full_name": "Ana Souza",
            "email": "ana@example.com",
            "phone": "11900000000",
            "password": "secret123",
        },
    )
    assert duplicate.status_code == 400

    login = client.post("/auth/login", json={"email": "ana@example.com", "password": "secret123"})
    assert login.status_code == 200
    me = client.get("/auth/me", headers=auth(login.json()["token"]))
    assert me.json()["user"]["email"] == "ana@example.com"

    wrong = client.post("/auth/login", json={"email": "ana@example.com", "password": "nope"})
    assert wrong.status_code == 401


def test_categories_and_quote(client):
    token = register(client, "Ana Souza", "ana@example.com")["token"]

    categories = client.get("/rides/categories").json()["categories"]
    assert [c["id"] for c in categories] == ["economico"]

    response = client.post(
        "/rides/quote",
        json={"origin": ORIGIN, "destination": DESTINATION, "category_id": "economico"},
        headers=auth(token),
    )
    assert response.status_code == 200
    assert response.json()["quote"]["price"] == 12.00

    missing = client.post(
        "/rides/quote",
        json={"origin": ORIGIN, "destination": DESTINATION, "category_id": "van"},
        headers=auth(token),
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == "category_not_found"


def test_ride_lifecycle_over_http(client):
    admin = admin_token()
    passenger = register(client, "Ana Souza", "ana@example.com")["token"]
    driver, driver_id = approved_online_driver(
        client, admin, "Carlos Lima", "carlos@example.com", "11977776666"
    )
    rival, _ = approved_online_driver(
        client, admin, "Bruno Costa", "bruno@example.com", "11966665555"
    )

    created = client.post(
        "/rides/",
        json={"origin": ORIGIN, "destination": DESTINATION, "category_id": "economico"},
        headers=auth(passenger),
    )
    assert created.status_code == 201
    ride = created.json()["ride"]
    assert ride["status"] == "pending"
    assert ride["price"] == 12.00
    assert created.json()["searching"] is False
    ride_id = ride["id"]

    available = client.get("/rides/available", headers=auth(driver)).json()
    assert [r["id"] for r in available["rides"]] == [ride_id]

    accepted = client.post(f"/rides/{ride_id}/accept", headers=auth(driver))
    assert accepted.status_code == 200
    assert accepted.json()["ride"]["driver"]["vehicle"]["plate"] == "ABC1D23"

    lost = client.post(f"/rides/{ride_id}/accept", headers=auth(rival))
    assert lost.status_code == 409
    assert lost.json()["code"] == "no_longer_available"

    assert client.post(f"/rides/{ride_id}/arrived", headers=auth(driver)).status_code == 200
    assert client.post(f"/rides/{ride_id}/start", headers=auth(driver)).status_code == 200
    completed = client.post(
        f"/rides/{ride_id}/complete",
        json={"latitude": -23.5614, "longitude": -46.6559},
        headers=auth(driver),
    )
    assert completed.status_code == 200
    assert completed.json()["location"] == "completed"

    rated = client.post(
        f"/rides/{ride_id}/rate", json={"rating": 5, "comment": "Top"}, headers=auth(passenger)
    )
    assert rated.status_code == 200
    again = client.post(f"/rides/{ride_id}/rate", json={"rating": 1}, headers=auth(passenger))
    assert again.status_code == 409

    assert client.post(
        f"/rides/{ride_id}/rate", json={"rating": 4}, headers=auth(driver)
    ).status_code == 200

    history = client.get("/rides/history", headers=auth(passenger)).json()
    assert [r["id"] for r in history["rides"]] == [ride_id]
    details = client.get(f"/rides/{ride_id}", headers=auth(driver)).json()
    assert details["location"] == "completed"
    assert details["ride"]["passenger_rating"]["rating"] == 5

    assert Driver.objects(pk=driver_id).first().total_trips == 1

    stats = client.get("/admin/stats", headers=auth(admin)).json()["stats"]
    assert stats["rides"]["completed"] == 1
    assert stats["revenue"]["total"] == 12.00


def test_role_and_error_mapping(client):
    passenger = register(client, "Ana Souza", "ana@example.com")["token"]
    missing_id = "000000000000000000000000"

    assert client.post(f"/rides/{missing_id}/accept", headers=auth(passenger)).status_code == 403
    assert client.get("/admin/stats", headers=auth(passenger)).status_code == 403
    assert client.get("/rides/history").status_code in (401, 403)

    not_found = client.get(f"/rides/{missing_id}", headers=auth(passenger))
    assert not_found.status_code == 404
    assert not_found.json()["code"] == "ride_not_found"

    invalid = client.post(f"/rides/{missing_id}/rate", json={"rating": 9}, headers=auth(passenger))
    assert invalid.status_code == 422


def test_unapproved_driver_cannot_accept(client):
    passenger = register(client, "Ana Souza", "ana@example.com")["token"]
    driver = register(
        client,
        "Pedro Alves",
        "pedro@example.com",
        role="driver",
        phone="11955554444",
    )
    assert set(driver["missing_vehicle_fields"]) == {"model", "plate", "color"}

    ride_id = client.post(
        "/rides/",
        json={"origin": ORIGIN, "destination": DESTINATION, "category_id": "economico"},
        headers=auth(passenger),
    ).json()["ride"]["id"]

    response = client.post(f"/rides/{ride_id}/accept", headers=auth(driver["token"]))
    assert response.status_code == 403
    assert response.json()["code"] == "driver_not_eligible"

    cancelled = client.post(
        f"/rides/{ride_id}/cancel", json={"reason": "took a bus"}, headers=auth(passenger)
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["ride"]["cancelled_by"] == "passenger"


def test_websocket_watch_ride(client):
    passenger = register(client, "Ana Souza", "ana@example.com")["token"]
    ride_id = client.post(
        "/rides/",
        json={"origin": ORIGIN, "destination": DESTINATION, "category_id": "economico"},
        headers=auth(passenger),
    ).json()["ride"]["id"]

    with client.websocket_connect(f"/ws/ride?token={passenger}") as ws:
        assert ws.receive_json()["event_type"] == "connected"

        ws.send_json({"event_type": "ping"})
        assert ws.receive_json()["event_type"] == "pong"

        ws.send_json({"event_type": "watch_ride", "ride_id": ride_id})
        events = {}
        for _ in range(2):
            message = ws.receive_json()
            events[message["event_type"]] = message
        assert events["watching"]["ride_id"] == ride_id
        assert events["ride_snapshot"]["ride"]["status"] == "pending"

        ws.send_json({"event_type": "watch_available_rides"})
        assert ws.receive_json()["event_type"] == "error"


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/ride?token=garbage") as ws:
            ws.receive_json()
