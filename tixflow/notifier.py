from __future__ import annotations
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from .config import (
    BREVO_API_KEY, BREVO_BASE_URL, BREVO_SENDER_EMAIL, NOTIFIER_BACKEND,
    NOTIFY_TIMEOUT_SECONDS,
)
from .infra.log import logger


@dataclass(frozen=True)
class IssuedTicket:
    ticket_id: int
    qr_payload: str
    payment_reference: str
    event_id: str
    event_title: str
    host_email: str
    ticket_type_name: str
    attendee_name: str
    attendee_email: str
    attendee_phone: str
    customer_email: str

    @property
    def attendee_address(self) -> str:
        return self.attendee_email or self.customer_email


# ----------------------------
# Notifier interface
# ----------------------------
class Notifier(ABC):
    @abstractmethod
    async def notify_attendee(self, ticket: IssuedTicket) -> None: ...

    @abstractmethod
    async def notify_host(self, ticket: IssuedTicket) -> None: ...


class LogNotifier(Notifier):
    async def notify_attendee(self, ticket: IssuedTicket) -> None:
        logger.info(
            f"ticket {ticket.ticket_id} ({ticket.ticket_type_name}) for "
            f"'{ticket.event_title}' -> {ticket.attendee_address}"
        )

    async def notify_host(self, ticket: IssuedTicket) -> None:
        logger.info(
            f"host {ticket.host_email or '-'}: sold ticket "
            f"{ticket.ticket_id} ({ticket.ticket_type_name}) to "
            f"{ticket.attendee_name}"
        )


class BrevoNotifier(Notifier):
    """Transactional email through Brevo's HTTP API."""

    def __init__(
        self, http: httpx.AsyncClient, api_key: str = BREVO_API_KEY,
        sender_email: str = BREVO_SENDER_EMAIL,
        base_url: str = BREVO_BASE_URL,
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.sender_email = sender_email
        self.base_url = base_url.rstrip("/")

    async def _send(
            self, to_email: str, to_name: str, subject: str, body: str
    ) -> None:
        r = await self.http.post(
            f"{self.base_url}/smtp/email",
            json={
                "sender": {"name": "Tickets", "email": self.sender_email},
                "to": [{"email": to_email, "name": to_name or to_email}],
                "subject": subject,
                "textContent": body,
            },
            headers={"api-key": self.api_key, "accept": "application/json"},
        )
        r.raise_for_status()

    async def notify_attendee(self, ticket: IssuedTicket) -> None:
        await self._send(
            ticket.attendee_address,
            ticket.attendee_name,
            f"Your ticket for {ticket.event_title}",
            f"Hi {ticket.attendee_name or 'there'},\n\n"
            f"Ticket #{ticket.ticket_id} ({ticket.ticket_type_name})\n"
            f"Entry code: {ticket.qr_payload}\n"
            f"Payment reference: {ticket.payment_reference}\n",
        )

    async def notify_host(self, ticket: IssuedTicket) -> None:
        if not ticket.host_email:
            return
        await self._send(
            ticket.host_email,
            "",
            f"New ticket sold for {ticket.event_title}",
            f"{ticket.attendee_name} ({ticket.attendee_address}) bought a "
            f"{ticket.ticket_type_name} ticket.\n"
            f"Ticket #{ticket.ticket_id}, reference "
            f"{ticket.payment_reference}\n",
        )


def new_notifier(
        backend: str = NOTIFIER_BACKEND,
        http: Optional[httpx.AsyncClient] = None,
) -> Notifier:
    if backend == "brevo":
        if http is None:
            raise RuntimeError("BrevoNotifier requires http=AsyncClient")
        return BrevoNotifier(http)
    return LogNotifier()


async def _bounded(who: str, send, ticket: IssuedTicket,
                   timeout: float) -> bool:
    try:
        await asyncio.wait_for(send(ticket), timeout)
        return True
    except Exception as e:
        logger.warning(
            f"{who} notification failed for ticket {ticket.ticket_id}: "
            f"{type(e).__name__}: {e}"
        )
        return False


async def notify_quietly(
        notifier: Notifier, ticket: IssuedTicket,
        timeout: float = NOTIFY_TIMEOUT_SECONDS,
) -> Dict[str, bool]:
    """
    Attendee and host notifications, sent concurrently and each bounded by
    `timeout`. Failures are logged and reported, never raised.
    """
    attendee, host = await asyncio.gather(
        _bounded("attendee", notifier.notify_attendee, ticket, timeout),
        _bounded("host", notifier.notify_host, ticket, timeout),
    )
    return {"attendee": attendee, "host": host}
