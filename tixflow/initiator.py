from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List

from .config import CURRENCY, PAYSTACK_CHECKOUT_URL, PAYSTACK_PUBLIC_KEY
from .errors import InsufficientAvailability, NotFound, ValidationFailed
from .helpers import is_valid_email, money, new_reference, to_minor_units
from .infra.log import logger
from .infra.timings import timeit
from .model.payments import LineItem, PaymentRecord
from .model.stores import Stores
from .paystack import checkout_metadata
from .schemas import InitiateRequest


class PaymentInitiator:
    """
    Prices a checkout, persists the pending payment and hands back what the
    browser needs to open the processor's checkout.

    Availability is only checked here, never reserved; the reservation
    happens at fulfillment, after the money moved.
    """

    def __init__(
        self, stores: Stores, public_key: str = PAYSTACK_PUBLIC_KEY,
        checkout_url: str = PAYSTACK_CHECKOUT_URL, currency: str = CURRENCY,
    ) -> None:
        self.stores = stores
        self.public_key = public_key
        self.checkout_url = checkout_url.rstrip("/")
        self.currency = currency

    async def initiate(
            self, user_id: str, req: InitiateRequest
    ) -> Dict[str, Any]:
        if not user_id:
            raise ValidationFailed("missing caller identity")
        email = req.email.strip()
        if not is_valid_email(email):
            raise ValidationFailed(
                "email is required and must be a valid email address"
            )
        seen = set()
        for li in req.line_items:
            if li.ticket_type_id in seen:
                raise ValidationFailed(
                    f"ticket type {li.ticket_type_id} listed twice"
                )
            seen.add(li.ticket_type_id)

        # read-only pass: validate and price against stored ticket types
        async with timeit("initiate.validate"):
            async with self.stores.transaction() as s:
                event = await s.events.get_event(req.event_id)
                if event is None:
                    raise NotFound(f"event {req.event_id} not found")
                lines: List[LineItem] = []
                for no, li in enumerate(req.line_items, start=1):
                    tt = await s.events.get_ticket_type(li.ticket_type_id)
                    if tt is None or tt.event_id != event.id:
                        raise NotFound(
                            f"ticket type {li.ticket_type_id} not found for "
                            f"event {event.id}"
                        )
                    if (li.unit_price is not None
                            and money(li.unit_price) != tt.price):
                        raise ValidationFailed(
                            f"price for {tt.name} does not match"
                        )
                    # advisory only; capacity is claimed at fulfillment
                    if tt.sold + li.quantity > tt.total:
                        raise InsufficientAvailability(
                            f"Not enough tickets available for {tt.name}"
                        )
                    lines.append(LineItem(
                        line_no=no,
                        ticket_type_id=tt.id,
                        ticket_type_name=tt.name,
                        quantity=li.quantity,
                        unit_price=tt.price,
                    ))

        amount = money(sum((li.subtotal for li in lines), Decimal("0")))
        record = PaymentRecord(
            reference=new_reference(event.id, user_id),
            event_id=event.id,
            user_id=user_id,
            amount=amount,
            amount_minor=to_minor_units(amount),
            currency=self.currency,
            customer_email=email,
            attendee_name=req.attendee.full_name.strip(),
            attendee_email=req.attendee.email.strip() or email,
            attendee_phone=req.attendee.phone.strip(),
            line_items=lines,
        )

        async with timeit("initiate.create"):
            async with self.stores.transaction() as s:
                await s.payments.create(record)

        logger.bind(reference=record.reference).info(
            f"payment initiated: {len(lines)} line(s), "
            f"{record.amount} {record.currency}"
        )
        return {
            "reference": record.reference,
            "amount": str(record.amount),
            "amountMinorUnits": record.amount_minor,
            "processorPublicKey": self.public_key,
            "currency": record.currency,
            "email": email,
            "checkoutUrl": f"{self.checkout_url}?reference={record.reference}",
            "metadata": checkout_metadata(record),
        }
