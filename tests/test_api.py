"""Tests for the HTTP API — status-code mapping, actor headers, party access."""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from beautybook.api import create_app
from beautybook.escrow.payment_gateway import PaymentStatus, ScriptedOutcome

CLIENT_HEADERS = {"X-Actor-Role": "client", "X-Actor-Id": "cli_1"}
OTHER_CLIENT_HEADERS = {"X-Actor-Role": "client", "X-Actor-Id": "cli_2"}
STYLIST_HEADERS = {"X-Actor-Role": "stylist", "X-Actor-Id": "sty_1"}
ADMIN_HEADERS = {"X-Actor-Role": "admin", "X-Actor-Id": "adm_1"}


@pytest.fixture
def client(service) -> TestClient:
    return TestClient(create_app(service))


@pytest.fixture
def create(client, clock):
    counter = iter(range(1, 100))

    def _create(price: str = "100.00", **overrides) -> dict:
        body = {
            "stylist_id": "sty_1",
            "service": "Box braids",
            "scheduled_at": (clock() + timedelta(days=2, hours=next(counter))).isoformat(),
            "price": price,
        }
        body.update(overrides)
        resp = client.post("/bookings", json=body, headers=CLIENT_HEADERS)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create


def _approve(client, booking_id: str) -> dict:
    resp = client.patch(
        f"/bookings/{booking_id}",
        json={"target_status": "approved"},
        headers=STYLIST_HEADERS,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def _confirmed(client, create) -> str:
    booking_id = create()["booking_id"]
    _approve(client, booking_id)
    resp = client.post(f"/bookings/{booking_id}/capture", headers=CLIENT_HEADERS)
    assert resp.status_code == 200, resp.text
    return booking_id


class TestHeaders:
    def test_health_needs_no_actor(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_missing_actor_headers(self, client) -> None:
        assert client.get("/bookings").status_code == 401

    def test_unknown_role(self, client) -> None:
        resp = client.get("/bookings", headers={"X-Actor-Role": "owner", "X-Actor-Id": "x"})
        assert resp.status_code == 400

    def test_system_role_not_assertable(self, client) -> None:
        resp = client.get("/bookings", headers={"X-Actor-Role": "system", "X-Actor-Id": "x"})
        assert resp.status_code == 403


class TestBookingEndpoints:
    def test_create_and_get(self, client, create) -> None:
        created = create(location="East Legon")
        assert created["status"] == "pending"
        assert created["version"] == 1
        assert created["currency"] == "GHS"
        assert Decimal(created["price"]) == Decimal("100.00")

        resp = client.get(f"/bookings/{created['booking_id']}", headers=STYLIST_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["location"] == "East Legon"

    def test_invalid_price_precision_is_422(self, client, create, clock) -> None:
        resp = client.post(
            "/bookings",
            json={
                "stylist_id": "sty_1",
                "service": "Twists",
                "scheduled_at": (clock() + timedelta(days=1)).isoformat(),
                "price": "10.005",
            },
            headers=CLIENT_HEADERS,
        )
        assert resp.status_code == 422
        assert "precision" in resp.json()["detail"]

    def test_stylist_cannot_create(self, client, clock) -> None:
        resp = client.post(
            "/bookings",
            json={
                "stylist_id": "sty_2",
                "service": "Twists",
                "scheduled_at": (clock() + timedelta(days=1)).isoformat(),
                "price": "50.00",
            },
            headers=STYLIST_HEADERS,
        )
        assert resp.status_code == 403

    def test_slot_taken_is_409(self, client, create) -> None:
        first = create()
        resp = client.post(
            "/bookings",
            json={
                "stylist_id": "sty_1",
                "service": "Twists",
                "scheduled_at": first["scheduled_at"],
                "price": "50.00",
            },
            headers=OTHER_CLIENT_HEADERS,
        )
        assert resp.status_code == 409

    def test_unknown_booking_is_404(self, client) -> None:
        assert client.get("/bookings/bk_missing", headers=ADMIN_HEADERS).status_code == 404

    def test_non_party_cannot_read(self, client, create) -> None:
        booking_id = create()["booking_id"]
        resp = client.get(f"/bookings/{booking_id}", headers=OTHER_CLIENT_HEADERS)
        assert resp.status_code == 403
        assert client.get(f"/bookings/{booking_id}", headers=ADMIN_HEADERS).status_code == 200

    def test_list_scoped_to_caller(self, client, create) -> None:
        create()
        create()
        mine = client.get("/bookings", headers=CLIENT_HEADERS).json()
        assert mine["total"] == 2
        others = client.get(
            "/bookings", params={"client_id": "cli_1"}, headers=OTHER_CLIENT_HEADERS,
        ).json()
        assert others["total"] == 0
        pending = client.get(
            "/bookings", params={"status": "pending"}, headers=ADMIN_HEADERS,
        ).json()
        assert pending["total"] == 2

    def test_total_counts_every_match_not_the_page(self, client, create) -> None:
        for _ in range(3):
            create()
        page = client.get(
            "/bookings", params={"limit": 1, "offset": 1}, headers=CLIENT_HEADERS,
        ).json()
        assert page["total"] == 3
        assert len(page["bookings"]) == 1

    def test_invalid_transition_is_409(self, client, create) -> None:
        booking_id = create()["booking_id"]
        resp = client.patch(
            f"/bookings/{booking_id}",
            json={"target_status": "completed"},
            headers=STYLIST_HEADERS,
        )
        assert resp.status_code == 409
        assert "pending → completed" in resp.json()["detail"]

    def test_camel_case_target_status_accepted(self, client, create) -> None:
        booking_id = create()["booking_id"]
        resp = client.patch(
            f"/bookings/{booking_id}",
            json={"targetStatus": "rejected"},
            headers=STYLIST_HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"

    def test_wrong_actor_is_403(self, client, create) -> None:
        booking_id = create()["booking_id"]
        resp = client.patch(
            f"/bookings/{booking_id}",
            json={"target_status": "approved"},
            headers=CLIENT_HEADERS,
        )
        assert resp.status_code == 403

    def test_stale_version_is_409(self, client, create) -> None:
        booking_id = create()["booking_id"]
        _approve(client, booking_id)
        resp = client.delete(
            f"/bookings/{booking_id}", params={"version": 1}, headers=CLIENT_HEADERS,
        )
        assert resp.status_code == 409

    def test_delete_cancels(self, client, create) -> None:
        booking_id = create()["booking_id"]
        resp = client.delete(f"/bookings/{booking_id}", headers=CLIENT_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        # Cancellation keeps the record.
        again = client.get(f"/bookings/{booking_id}", headers=CLIENT_HEADERS)
        assert again.json()["status"] == "cancelled"


class TestPaymentEndpoints:
    def test_capture_confirms(self, client, create) -> None:
        booking_id = create()["booking_id"]
        _approve(client, booking_id)
        resp = client.post(f"/bookings/{booking_id}/capture", headers=CLIENT_HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert body["booking"]["status"] == "confirmed"
        assert body["transaction"]["type"] == "escrow"
        assert body["transaction"]["status"] == "completed"
        assert Decimal(body["transaction"]["amount"]) == Decimal("100.00")

    def test_declined_capture_is_402(self, client, create, gateway) -> None:
        booking_id = create()["booking_id"]
        _approve(client, booking_id)
        gateway.script(
            f"booking:{booking_id}:capture", ScriptedOutcome(PaymentStatus.DECLINED),
        )
        resp = client.post(f"/bookings/{booking_id}/capture", headers=CLIENT_HEADERS)
        assert resp.status_code == 402
        current = client.get(f"/bookings/{booking_id}", headers=CLIENT_HEADERS).json()
        assert current["status"] == "approved"

    def test_unknown_outcome_is_202_then_reconciled(
        self, client, create, gateway, config,
    ) -> None:
        booking_id = create()["booking_id"]
        _approve(client, booking_id)
        gateway.script(
            f"booking:{booking_id}:capture",
            ScriptedOutcome(timeout=True, unknown_polls=config.status_poll_attempts),
        )
        resp = client.post(f"/bookings/{booking_id}/capture", headers=CLIENT_HEADERS)
        assert resp.status_code == 202
        assert resp.json()["reference"] == f"booking:{booking_id}:capture"

        resp = client.post(f"/bookings/{booking_id}/reconcile", headers=CLIENT_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["status"] == "confirmed"

    def test_capture_amount_mismatch_is_422(self, client, create) -> None:
        booking_id = create()["booking_id"]
        _approve(client, booking_id)
        resp = client.post(
            f"/bookings/{booking_id}/capture",
            json={"amount": "10.00"},
            headers=CLIENT_HEADERS,
        )
        assert resp.status_code == 422

    def test_completion_pays_stylist(self, client, create) -> None:
        booking_id = _confirmed(client, create)
        client.patch(
            f"/bookings/{booking_id}",
            json={"target_status": "satisfied"},
            headers=CLIENT_HEADERS,
        )
        resp = client.patch(
            f"/bookings/{booking_id}",
            json={"target_status": "completed"},
            headers=STYLIST_HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        wallet = client.get("/wallets/sty_1", headers=STYLIST_HEADERS).json()
        assert Decimal(wallet["available"]) == Decimal("90.00")
        history = client.get(
            "/wallets/sty_1/transactions", params={"limit": 5}, headers=STYLIST_HEADERS,
        ).json()
        assert history["total"] == 1
        assert history["transactions"][0]["type"] == "payout"

    def test_wallet_of_another_party_forbidden(self, client) -> None:
        assert client.get("/wallets/sty_1", headers=CLIENT_HEADERS).status_code == 403
        assert client.get("/wallets/sty_1", headers=ADMIN_HEADERS).status_code == 200


class TestDisputeEndpoints:
    def test_dispute_and_resolve(self, client, create) -> None:
        booking_id = _confirmed(client, create)
        resp = client.post(
            f"/bookings/{booking_id}/dispute",
            json={"reason": "Stylist never arrived"},
            headers=CLIENT_HEADERS,
        )
        assert resp.status_code == 201
        assert resp.json()["opened_by_role"] == "client"

        listed = client.get("/disputes", headers=ADMIN_HEADERS).json()
        assert [d["booking_id"] for d in listed["disputes"]] == [booking_id]

        forbidden = client.post(
            f"/bookings/{booking_id}/resolve",
            json={"outcome": "cancel_and_refund"},
            headers=CLIENT_HEADERS,
        )
        assert forbidden.status_code == 403

        resp = client.post(
            f"/bookings/{booking_id}/resolve",
            json={"outcome": "cancel_and_refund", "note": "No-show confirmed"},
            headers=ADMIN_HEADERS,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["booking"]["status"] == "cancelled"
        assert body["dispute"]["outcome"] == "cancel_and_refund"
        assert body["dispute"]["resolution_note"] == "No-show confirmed"

        wallet = client.get("/wallets/cli_1", headers=CLIENT_HEADERS).json()
        assert Decimal(wallet["available"]) == Decimal("0")
        assert client.get(
            "/disputes", params={"resolved": "false"}, headers=ADMIN_HEADERS,
        ).json()["total"] == 0

    def test_disputed_booking_cannot_be_deleted(self, client, create) -> None:
        booking_id = _confirmed(client, create)
        client.post(
            f"/bookings/{booking_id}/dispute",
            json={"reason": "Wrong colour"},
            headers=STYLIST_HEADERS,
        )
        resp = client.delete(f"/bookings/{booking_id}", headers=ADMIN_HEADERS)
        assert resp.status_code == 409

    def test_only_admins_list_disputes(self, client) -> None:
        assert client.get("/disputes", headers=CLIENT_HEADERS).status_code == 403
