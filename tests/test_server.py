"""
HTTP surface, through FastAPI's TestClient.
"""

import asyncio
import json

import httpx
import pytest

from tixflow.config import SIGNATURE_HEADER
from tixflow.errors import PaymentStateError
from tixflow.infra.log import logger
from tixflow.server import app, run_to_completion

from tests.helpers import REGULAR, USER, VIP, initiate_body, sign


def initiate(client, lines, user=USER):
    resp = client.post(
        "/payments/initiate", json=initiate_body(lines),
        headers={"x-user-id": user},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def charge(init, event="charge.success", **data) -> bytes:
    payload = {
        "reference": init["reference"],
        "amount": init["amountMinorUnits"],
        "currency": init["currency"],
        "status": "success",
        "metadata": init["metadata"],
        "customer": {"email": init["email"]},
    }
    payload.update(data)
    return json.dumps({"event": event, "data": payload}).encode()


def post_webhook(client, body, signature=None):
    headers = {"content-type": "application/json"}
    if signature is not None:
        headers[SIGNATURE_HEADER] = signature
    return client.post("/payments/webhook", content=body, headers=headers)


def login(client):
    resp = client.post(
        "/admin/login",
        data={"username": "admin", "password": "supasecret",
              "next": "/api/admin/anomalies"},
        follow_redirects=False,
    )
    assert resp.status_code == 303


class TestCheckoutFlow:
    def test_initiate_then_webhook_then_poll(self, client, notifier):
        init = initiate(client, [{"ticketTypeId": VIP, "quantity": 2}])
        assert init["amountMinorUnits"] == 1000000
        assert init["processorPublicKey"] == "pk_test_tixflow"

        pending = client.get(f"/api/payments/{init['reference']}").json()
        assert pending["status"] == "pending"
        assert pending["tickets"] == []

        body = charge(init)
        resp = post_webhook(client, body, sign(body))
        assert resp.status_code == 200
        assert resp.json()["status"] == "fulfilled"

        done = client.get(f"/api/payments/{init['reference']}").json()
        assert done["status"] == "completed"
        assert len(done["tickets"]) == 2
        assert all(t["qr_payload"].startswith("TIX:") for t in done["tickets"])
        assert len(notifier.attendee) == 2

        inv = client.get(f"/api/ticket-types/{VIP}/inventory").json()
        assert inv["sold"] == 2 and inv["sold_out"] is True

    def test_double_delivery(self, client):
        init = initiate(client, [{"ticketTypeId": REGULAR, "quantity": 2}])
        body = charge(init)

        first = post_webhook(client, body, sign(body))
        second = post_webhook(client, body, sign(body))

        assert first.status_code == second.status_code == 200
        assert second.json()["status"] == "already_processed"
        done = client.get(f"/api/payments/{init['reference']}").json()
        assert len(done["tickets"]) == 2
        inv = client.get(f"/api/ticket-types/{REGULAR}/inventory").json()
        assert inv["sold"] == 2

    def test_unknown_payment(self, client):
        resp = client.get("/api/payments/tix_nope")
        assert resp.status_code == 404
        assert resp.json() == {"detail": "payment tix_nope not found"}


class TestInitiationErrors:
    def test_insufficient_availability(self, client):
        resp = client.post(
            "/payments/initiate",
            json=initiate_body([{"ticketTypeId": VIP, "quantity": 3}]),
            headers={"x-user-id": USER},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Not enough tickets available for VIP"

    def test_unknown_event(self, client):
        resp = client.post(
            "/payments/initiate",
            json=initiate_body([{"ticketTypeId": VIP, "quantity": 1}],
                               event_id="evt_nope"),
            headers={"x-user-id": USER},
        )
        assert resp.status_code == 404

    def test_malformed_line_items(self, client):
        resp = client.post(
            "/payments/initiate",
            json=initiate_body([{"ticketTypeId": VIP, "quantity": -1}]),
            headers={"x-user-id": USER},
        )
        assert resp.status_code == 422

    def test_missing_caller_identity(self, client):
        resp = client.post(
            "/payments/initiate",
            json=initiate_body([{"ticketTypeId": VIP, "quantity": 1}]),
        )
        assert resp.status_code == 400


class TestWebhookTrustBoundary:
    def test_missing_signature(self, client):
        init = initiate(client, [{"ticketTypeId": VIP, "quantity": 1}])
        resp = post_webhook(client, charge(init))
        assert resp.status_code == 400

    def test_wrong_secret(self, client):
        init = initiate(client, [{"ticketTypeId": VIP, "quantity": 1}])
        body = charge(init)
        resp = post_webhook(client, body, sign(body, secret="sk_wrong"))
        assert resp.status_code == 401

    def test_tampered_body_changes_nothing(self, client):
        init = initiate(client, [{"ticketTypeId": VIP, "quantity": 1}])
        body = charge(init)
        sig = sign(body)
        tampered = charge(init, amount=1)

        resp = post_webhook(client, tampered, sig)

        assert resp.status_code == 401
        state = client.get(f"/api/payments/{init['reference']}").json()
        assert state["status"] == "pending"
        assert client.get(f"/api/ticket-types/{VIP}/inventory").json()[
            "sold"] == 0

    def test_malformed_known_event(self, client):
        body = json.dumps({
            "event": "charge.success", "data": {"reference": "x"},
        }).encode()
        resp = post_webhook(client, body, sign(body))
        assert resp.status_code == 400

    def test_unknown_event_acknowledged(self, client):
        body = json.dumps({
            "event": "transfer.success", "data": {"reference": "trf_1"},
        }).encode()
        resp = post_webhook(client, body, sign(body))
        assert resp.status_code == 200
        assert resp.json()["ignored"] is True

    def test_unmatched_reference(self, client):
        init = initiate(client, [{"ticketTypeId": VIP, "quantity": 1}])
        body = charge(init, reference="tix_other")
        resp = post_webhook(client, body, sign(body))
        assert resp.status_code == 404

    def test_delayed_success_after_failure(self, client):
        init = initiate(client, [{"ticketTypeId": VIP, "quantity": 1}])
        failed = charge(init, "charge.failed", status="failed",
                        gateway_response="Declined")
        assert post_webhook(client, failed, sign(failed)).status_code == 200

        body = charge(init)
        resp = post_webhook(client, body, sign(body))

        assert resp.status_code == 409
        state = client.get(f"/api/payments/{init['reference']}").json()
        assert state["status"] == "failed"
        assert state["failure_reason"] == "Declined"
        assert state["tickets"] == []


class TestAdmin:
    def test_requires_login(self, client):
        resp = client.get("/api/admin/anomalies", follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"].startswith("/admin/login")

    def test_bad_credentials(self, client):
        resp = client.post(
            "/admin/login", data={"username": "admin", "password": "nope"},
        )
        assert resp.status_code == 401

    def test_anomalies_list_sold_out_lines(self, client):
        a = initiate(client, [{"ticketTypeId": VIP, "quantity": 2}])
        b = initiate(client, [{"ticketTypeId": VIP, "quantity": 1}])
        for init in (a, b):
            body = charge(init)
            assert post_webhook(client, body, sign(body)).status_code == 200

        login(client)
        items = client.get("/api/admin/anomalies").json()["items"]

        assert [(i["payment_reference"], i["status"]) for i in items] == [
            (b["reference"], "sold_out"),
        ]

    def test_refund_completed_payment(self, client):
        init = initiate(client, [{"ticketTypeId": REGULAR, "quantity": 1}])
        body = charge(init)
        post_webhook(client, body, sign(body))
        login(client)

        resp = client.post(f"/api/admin/payments/{init['reference']}/refund")
        assert resp.status_code == 200
        assert resp.json()["status"] == "refunded"

        again = client.post(f"/api/admin/payments/{init['reference']}/refund")
        assert again.status_code == 409

    def test_refund_pending_payment_is_rejected(self, client):
        init = initiate(client, [{"ticketTypeId": REGULAR, "quantity": 1}])
        login(client)
        resp = client.post(f"/api/admin/payments/{init['reference']}/refund")
        assert resp.status_code == 409

    def test_timings(self, client):
        initiate(client, [{"ticketTypeId": REGULAR, "quantity": 1}])
        login(client)
        kinds = {i["kind"] for i in client.get("/api/admin/timings").json()[
            "items"]}
        assert "api.initiate" in kinds


    def test_login_page_escapes_next(self, client):
        resp = client.get(
            "/admin/login",
            params={"next": '/admin"><script>alert(1)</script>'},
        )
        assert resp.status_code == 200
        assert "<script>" not in resp.text
        assert "&lt;script&gt;" in resp.text

    @pytest.mark.parametrize("target", [
        "https://evil.example/", "//evil.example/", "/\\evil.example", "",
    ])
    def test_login_only_redirects_within_site(self, client, target):
        resp = client.post(
            "/admin/login",
            data={"username": "admin", "password": "supasecret",
                  "next": target},
            follow_redirects=False,
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "/admin"


class TestDetachedWebhook:
    @pytest.mark.asyncio
    async def test_outcome_is_logged_after_caller_goes_away(self):
        finished = asyncio.Event()
        messages = []
        sink = logger.add(
            lambda m: messages.append(m.record["message"]), level="WARNING"
        )

        async def work():
            await asyncio.sleep(0.05)
            finished.set()
            raise PaymentStateError("payment tix_1 is failed")

        caller = asyncio.ensure_future(run_to_completion(work()))
        await asyncio.sleep(0)
        caller.cancel()
        try:
            with pytest.raises(asyncio.CancelledError):
                await caller
            await asyncio.wait_for(finished.wait(), 1)
            await asyncio.sleep(0.01)
        finally:
            logger.remove(sink)

        assert any("rejected (409)" in m for m in messages)

    @pytest.mark.asyncio
    async def test_result_is_returned_when_caller_stays(self):
        async def work():
            return {"ok": True}

        assert await run_to_completion(work()) == {"ok": True}


class TestMockPay:
    @pytest.mark.parametrize("kind,expected_event", [
        ("success", "charge.success"),
        ("failed", "charge.failed"),
    ])
    def test_emit_signs_and_delivers(self, client, kind, expected_event):
        init = initiate(client, [{"ticketTypeId": REGULAR, "quantity": 1}])
        delivered = []

        def handler(request: httpx.Request) -> httpx.Response:
            delivered.append(request)
            return httpx.Response(200, json={"ok": True})

        # swap the app's outbound client for one that records
        real_http = app.state.http
        app.state.http = httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        )
        try:
            resp = client.post(
                f"/mockpay/{init['reference']}/emit", params={"kind": kind}
            )
        finally:
            app.state.http = real_http

        assert resp.status_code == 200
        assert resp.json()["delivered"] is True
        req = delivered[0]
        assert req.headers[SIGNATURE_HEADER] == sign(req.content)
        event = json.loads(req.content)
        assert event["event"] == expected_event
        assert event["data"]["reference"] == init["reference"]
        assert event["data"]["amount"] == init["amountMinorUnits"]

    def test_emit_unknown_payment(self, client):
        resp = client.post("/mockpay/tix_nope/emit")
        assert resp.status_code == 404
