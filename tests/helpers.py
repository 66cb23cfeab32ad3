import json
from typing import Any, Dict, List, Optional

from tixflow.model.payments import PaymentRecord
from tixflow.model.stores import Stores
from tixflow.notifier import IssuedTicket, Notifier
from tixflow.paystack import Paystack, charge_event
from tixflow.schemas import InitiateRequest

SECRET = "sk_test_tixflow"
EVENT_ID = "evt_lagos_jazz"
OTHER_EVENT_ID = "evt_other"
VIP = "tt_vip"
REGULAR = "tt_regular"
OTHER_GA = "tt_other_ga"
USER = "user_0123456789"


class RecordingNotifier(Notifier):
    def __init__(self, fail_attendee: bool = False) -> None:
        self.fail_attendee = fail_attendee
        self.attendee: List[IssuedTicket] = []
        self.host: List[IssuedTicket] = []

    async def notify_attendee(self, ticket: IssuedTicket) -> None:
        if self.fail_attendee:
            raise ConnectionError("smtp relay unreachable")
        self.attendee.append(ticket)

    async def notify_host(self, ticket: IssuedTicket) -> None:
        self.host.append(ticket)


async def seed(stores: Stores, vip_total: int = 2,
               regular_total: int = 10) -> None:
    async with stores.transaction() as s:
        await s.events.create_event(
            "Lagos Jazz Night", "host_1", "host@example.com",
            event_id=EVENT_ID,
        )
        await s.events.create_ticket_type(
            EVENT_ID, "VIP", "5000.00", vip_total, ticket_type_id=VIP
        )
        await s.events.create_ticket_type(
            EVENT_ID, "Regular", "1500.50", regular_total,
            ticket_type_id=REGULAR,
        )
        await s.events.create_event(
            "Other Show", "host_2", event_id=OTHER_EVENT_ID
        )
        await s.events.create_ticket_type(
            OTHER_EVENT_ID, "GA", "100", 5, ticket_type_id=OTHER_GA
        )


def initiate_body(
    lines: List[Dict[str, Any]], event_id: str = EVENT_ID,
    email: str = "ada@example.com",
) -> Dict[str, Any]:
    return {
        "eventId": event_id,
        "email": email,
        "attendee": {
            "fullName": "Ada Obi",
            "email": "ada@example.com",
            "phone": "+2348000000000",
        },
        "lineItems": lines,
    }


def initiate_request(lines: List[Dict[str, Any]], **kw) -> InitiateRequest:
    return InitiateRequest.model_validate(initiate_body(lines, **kw))


def sign(body: bytes, secret: str = SECRET) -> str:
    return Paystack(secret).sign(body)


def success_body(record: PaymentRecord, **data_overrides) -> bytes:
    if not data_overrides:
        return charge_event(record, "success")
    envelope = json.loads(charge_event(record, "success"))
    envelope["data"].update(data_overrides)
    return json.dumps(envelope).encode()


def failed_body(record: PaymentRecord,
                message: Optional[str] = "Insufficient funds") -> bytes:
    return charge_event(record, "failed", message=message)


async def load_payment(stores: Stores, reference: str) -> PaymentRecord:
    async with stores.transaction() as s:
        return await s.payments.get_by_reference(reference)


async def sold(stores: Stores, ticket_type_id: str) -> int:
    async with stores.transaction() as s:
        return (await s.events.get_ticket_type(ticket_type_id)).sold
