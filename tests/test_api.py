"""
HTTP / websocket surface: auth, response envelope, status codes
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.api.deps import notifier_dep
from app.db.session import get_db
from app.main import app
from app.services import order_workflow as wf
from app.utils.jwt import create_access_token

STEPS = ["confirmed", "preparing", "ready", "out-for-delivery", "delivered"]


@pytest.fixture
def client(db, seed, notifier):
    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[notifier_dep] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth(seed):
    def _headers(key):
        user = seed.users[key]
        return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}
    return _headers


def _rx_body():
    return {
        "images": [{"url": "https://cdn.example.com/rx/1.jpg"}],
        "urgency": "urgent",
        "patient_name": "Mona",
        "doctor_name": "Dr. Hany",
    }


def _order_body(seed, qty=1):
    return {
        "items": [{
            "fulfiller_id": seed.users["pharmacy"].id,
            "product_id": seed.products["paracetamol"],
            "quantity": qty,
        }],
        "delivery_address": {"street": "12 Tahrir St", "city": "Cairo", "phone": "0100000000"},
        "payment_method": "card",
    }


class TestAuth:

    def test_missing_token(self, client):
        r = client.get("/api/prescriptions/mine")
        assert r.status_code == 401
        body = r.json()
        assert body["ok"] is False
        assert body["error"]["msg"] == "Missing token"

    def test_bad_token(self, client):
        r = client.get("/api/prescriptions/mine", headers={"Authorization": "Bearer nope"})
        assert r.status_code == 401

    def test_health(self, client):
        assert client.get("/").status_code == 200


class TestPrescriptionApi:

    def test_submit(self, client, auth, notifier):
        r = client.post("/api/prescriptions", json=_rx_body(), headers=auth("customer"))
        assert r.status_code == 201
        data = r.json()["data"]
        assert data["prescription_number"].startswith("RX")
        assert data["current_status"] == "submitted"
        assert data["workflow_progress"] == 0
        assert len(data["images"]) == 1
        assert notifier.events[-1][1] == "new_prescription"

    def test_submit_without_images(self, client, auth):
        body = dict(_rx_body(), images=[])
        r = client.post("/api/prescriptions", json=body, headers=auth("customer"))
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_REQUEST"

    def test_vendor_cannot_claim(self, client, auth):
        rx_id = client.post("/api/prescriptions", json=_rx_body(),
                            headers=auth("customer")).json()["data"]["id"]
        r = client.post(f"/api/prescriptions/{rx_id}/claim", headers=auth("vendor"))
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "UNAUTHORIZED"

    def test_claim_then_conflict(self, client, auth):
        rx_id = client.post("/api/prescriptions", json=_rx_body(),
                            headers=auth("customer")).json()["data"]["id"]
        first = client.post(f"/api/prescriptions/{rx_id}/claim", headers=auth("reader"))
        assert first.status_code == 200
        assert first.json()["data"]["current_status"] == "reviewing"
        assert first.json()["data"]["workflow_progress"] == 50

        second = client.post(f"/api/prescriptions/{rx_id}/claim", headers=auth("reader2"))
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "ALREADY_CLAIMED"

    def test_queue(self, client, auth):
        client.post("/api/prescriptions", json=dict(_rx_body(), urgency="routine"), headers=auth("customer"))
        client.post("/api/prescriptions", json=_rx_body(), headers=auth("customer"))
        r = client.get("/api/prescriptions/queue", headers=auth("reader"))
        assert r.status_code == 200
        assert [x["urgency"] for x in r.json()["data"]] == ["urgent", "routine"]

    def test_other_customer_gets_404(self, client, auth):
        rx_id = client.post("/api/prescriptions", json=_rx_body(),
                            headers=auth("customer")).json()["data"]["id"]
        r = client.get(f"/api/prescriptions/{rx_id}", headers=auth("customer2"))
        assert r.status_code == 404


class TestOrderApi:

    def test_validation_error(self, client, auth, seed):
        body = dict(_order_body(seed), items=[])
        r = client.post("/api/orders", json=body, headers=auth("customer"))
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_create_and_pay(self, client, auth, seed):
        r = client.post("/api/orders", json=_order_body(seed), headers=auth("customer"))
        assert r.status_code == 201
        order = r.json()["data"]
        assert order["order_number"].startswith("ORD")
        assert float(order["total_amount"]) == 77.5
        assert len(order["sub_orders"]) == 1

        r = client.post(f"/api/orders/{order['id']}/confirm-payment", headers=auth("customer"))
        assert r.status_code == 200
        assert r.json()["data"]["order"]["payment_status"] == "paid"
        assert float(r.json()["data"]["credits_earned"]) == 3

        again = client.post(f"/api/orders/{order['id']}/confirm-payment", headers=auth("customer"))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ALREADY_PAID"

        fulfiller_view = client.get("/api/orders/fulfiller", headers=auth("pharmacy")).json()["data"]
        assert [x["order_id"] for x in fulfiller_view] == [order["id"]]

    def test_out_of_stock(self, client, auth, seed):
        r = client.post("/api/orders", json=_order_body(seed, qty=500), headers=auth("customer"))
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "OUT_OF_STOCK"

    def test_sub_order_status(self, client, auth, seed):
        order_id = client.post("/api/orders", json=_order_body(seed),
                               headers=auth("customer")).json()["data"]["id"]
        pharmacy_id = seed.users["pharmacy"].id
        r = client.put(f"/api/orders/{order_id}/sub-orders/{pharmacy_id}/status",
                       json={"status": "confirmed"}, headers=auth("pharmacy"))
        assert r.status_code == 200
        assert r.json()["data"]["sub_orders"][0]["status"] == "confirmed"

        skip = client.put(f"/api/orders/{order_id}/sub-orders/{pharmacy_id}/status",
                          json={"status": "delivered"}, headers=auth("pharmacy"))
        assert skip.status_code == 409
        assert skip.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_return_flow(self, client, auth, db, seed, actors, notifier):
        order_id = client.post("/api/orders", json=_order_body(seed),
                               headers=auth("customer")).json()["data"]["id"]
        client.post(f"/api/orders/{order_id}/confirm-payment", headers=auth("customer"))
        for step in STEPS:
            wf.advance_sub_order_status(db, order_id, actors.pharmacy.id, step, actors.pharmacy,
                                        notifier=notifier)
        item_id = client.get(f"/api/orders/{order_id}",
                             headers=auth("customer")).json()["data"]["items"][0]["id"]

        r = client.post(f"/api/orders/{order_id}/returns", headers=auth("customer"), json={
            "items": [{"order_item_id": item_id, "quantity": 1}],
            "reason": "Wrong strength",
        })
        assert r.status_code == 201
        rr_id = r.json()["data"]["id"]

        denied = client.put(f"/api/orders/return-requests/{rr_id}", json={"decision": "approved"},
                            headers=auth("customer"))
        assert denied.status_code == 403

        r = client.put(f"/api/orders/return-requests/{rr_id}", json={"decision": "approved"},
                       headers=auth("admin"))
        assert r.status_code == 200
        assert r.json()["data"]["status"] == "approved"

        r = client.get(f"/api/orders/{order_id}", headers=auth("customer"))
        assert r.json()["data"]["status"] == "refunded"


class TestCreditsApi:

    def test_my_credits(self, client, auth):
        r = client.get("/api/credits/me", headers=auth("customer"))
        assert r.status_code == 200
        data = r.json()["data"]
        assert float(data["balance"]) == 50
        assert float(data["total_bonus"]) == 50
        assert data["history"][0]["txn_type"] == "bonus"

    def test_bonus_needs_admin(self, client, auth, seed):
        body = {"customer_id": seed.users["customer2"].id, "amount": "20", "description": "Sorry"}
        r = client.post("/api/credits/bonus", json=body, headers=auth("customer"))
        assert r.status_code == 403

        r = client.post("/api/credits/bonus", json=body, headers=auth("admin"))
        assert r.status_code == 201
        r = client.get("/api/credits/me", headers=auth("customer2"))
        assert float(r.json()["data"]["balance"]) == 20


class TestNotificationsSocket:

    def test_connect_and_heartbeat(self, client, seed):
        user = seed.users["pharmacy"]
        token = create_access_token(user.id, user.role)
        with client.websocket_connect(f"/api/ws/notifications?token={token}") as ws:
            hello = ws.receive_json()
            assert hello["event"] == "connected"
            assert f"fulfiller_{user.id}" in hello["audiences"]

            ws.send_json({"type": "heartbeat"})
            assert ws.receive_json()["event"] == "heartbeat_ack"

    def test_bad_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/ws/notifications?token=garbage") as ws:
                ws.receive_json()


class TestAdminListings:

    def test_all_orders(self, client, auth, seed):
        order_id = client.post("/api/orders", json=_order_body(seed),
                               headers=auth("customer")).json()["data"]["id"]
        client.post("/api/orders", json=_order_body(seed), headers=auth("customer2"))

        r = client.get("/api/orders", headers=auth("admin"))
        assert r.status_code == 200
        assert len(r.json()["data"]) == 2

        client.post(f"/api/orders/{order_id}/confirm-payment", headers=auth("customer"))
        paid = client.get("/api/orders", params={"payment_status": "paid"},
                          headers=auth("admin")).json()["data"]
        assert [x["id"] for x in paid] == [order_id]

        assert client.get("/api/orders", headers=auth("customer")).status_code == 403

    def test_all_prescriptions(self, client, auth):
        rx_id = client.post("/api/prescriptions", json=_rx_body(),
                            headers=auth("customer")).json()["data"]["id"]
        claimed = client.post("/api/prescriptions", json=_rx_body(),
                              headers=auth("customer2")).json()["data"]["id"]
        client.post(f"/api/prescriptions/{claimed}/claim", headers=auth("reader"))

        r = client.get("/api/prescriptions", params={"status": "submitted"}, headers=auth("admin"))
        assert r.status_code == 200
        assert [x["id"] for x in r.json()["data"]] == [rx_id]

        assert client.get("/api/prescriptions", headers=auth("customer")).status_code == 403
