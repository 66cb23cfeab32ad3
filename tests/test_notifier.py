import asyncio
import json

import httpx
import pytest

from tixflow.notifier import (
    BrevoNotifier, IssuedTicket, LogNotifier, Notifier, new_notifier,
    notify_quietly,
)


def issued(**kw) -> IssuedTicket:
    fields = dict(
        ticket_id=7,
        qr_payload="TIX:7:evt_1:user_1",
        payment_reference="tix_evt_1_user_1_1700000000_abcdef0123456789",
        event_id="evt_1",
        event_title="Lagos Jazz Night",
        host_email="host@example.com",
        ticket_type_name="VIP",
        attendee_name="Ada Obi",
        attendee_email="",
        attendee_phone="",
        customer_email="buyer@example.com",
    )
    fields.update(kw)
    return IssuedTicket(**fields)


class SlowNotifier(Notifier):
    def __init__(self):
        self.host_calls = 0

    async def notify_attendee(self, ticket):
        await asyncio.sleep(10)

    async def notify_host(self, ticket):
        self.host_calls += 1


class TestNotifyQuietly:
    @pytest.mark.asyncio
    async def test_timeout_is_contained(self):
        slow = SlowNotifier()
        sent = await notify_quietly(slow, issued(), timeout=0.01)
        assert sent == {"attendee": False, "host": True}
        assert slow.host_calls == 1

    @pytest.mark.asyncio
    async def test_log_notifier(self):
        sent = await notify_quietly(LogNotifier(), issued())
        assert sent == {"attendee": True, "host": True}


class TestBrevoNotifier:
    @pytest.mark.asyncio
    async def test_posts_transactional_email(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"messageId": "m1"})

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        ) as http:
            brevo = BrevoNotifier(
                http, api_key="xkeysib-test",
                sender_email="tickets@example.com",
                base_url="https://brevo.test/v3/",
            )
            await brevo.notify_attendee(issued())

        assert len(seen) == 1
        req = seen[0]
        assert str(req.url) == "https://brevo.test/v3/smtp/email"
        assert req.headers["api-key"] == "xkeysib-test"
        payload = json.loads(req.content)
        # falls back to the paying customer's address
        assert payload["to"][0]["email"] == "buyer@example.com"
        assert "TIX:7:evt_1:user_1" in payload["textContent"]

    @pytest.mark.asyncio
    async def test_provider_error_is_reported_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        ) as http:
            sent = await notify_quietly(BrevoNotifier(http), issued())
        assert sent == {"attendee": False, "host": False}

    @pytest.mark.asyncio
    async def test_host_without_email_is_skipped(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(201)

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        ) as http:
            await BrevoNotifier(http).notify_host(issued(host_email=""))
        assert calls == []


def test_factory():
    assert isinstance(new_notifier("log"), LogNotifier)
    with pytest.raises(RuntimeError):
        new_notifier("brevo")


class HandshakeNotifier(Notifier):
    """Attendee delivery only completes once the host delivery has started."""

    def __init__(self):
        self.host_started = asyncio.Event()

    async def notify_attendee(self, ticket):
        await self.host_started.wait()

    async def notify_host(self, ticket):
        self.host_started.set()


class TestConcurrentDelivery:
    @pytest.mark.asyncio
    async def test_attendee_and_host_are_sent_together(self):
        sent = await notify_quietly(HandshakeNotifier(), issued(), timeout=1)
        assert sent == {"attendee": True, "host": True}
