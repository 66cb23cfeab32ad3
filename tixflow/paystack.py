from __future__ import annotations
import hashlib
import hmac
import json
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .config import PAYSTACK_SECRET_KEY
from .errors import (
    MalformedWebhook, SignatureInvalid, SignatureMissing, WebhookMisconfigured
)
from .helpers import to_iso, now_ts
from .model.payments import PaymentRecord
from .schemas import ChargeFailed, ChargeSuccess, IgnoredEvent, WebhookEnvelope

WebhookEvent = Union[ChargeSuccess, ChargeFailed, IgnoredEvent]

EVENT_MODELS = {
    "charge.success": ChargeSuccess,
    "charge.failed": ChargeFailed,
}


class Paystack:
    """Webhook contract of the one processor we integrate with."""

    def __init__(self, secret_key: str = PAYSTACK_SECRET_KEY) -> None:
        self.secret_key = secret_key

    def sign(self, payload: bytes) -> str:
        return hmac.new(
            self.secret_key.encode(), payload, hashlib.sha512
        ).hexdigest()

    def verify_signature(
            self, payload: bytes, signature: Optional[str]
    ) -> None:
        if not signature:
            raise SignatureMissing("missing signature")
        if not self.secret_key:
            raise WebhookMisconfigured("webhook secret not configured")
        expected = self.sign(payload)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise SignatureInvalid("invalid signature")

    def parse_event(self, payload: bytes) -> WebhookEvent:
        """Decode an authenticated body; known events fail closed."""
        try:
            envelope = WebhookEnvelope.model_validate_json(payload)
        except ValidationError as e:
            raise MalformedWebhook(
                f"invalid webhook envelope ({e.error_count()} errors)"
            ) from e

        model = EVENT_MODELS.get(envelope.event)
        if model is None:
            ref = envelope.data.get("reference")
            return IgnoredEvent(
                event=envelope.event,
                reference=ref if isinstance(ref, str) else None,
            )
        try:
            return model.model_validate(
                {"event": envelope.event, "data": envelope.data}
            )
        except ValidationError as e:
            raise MalformedWebhook(
                f"invalid {envelope.event} payload ({e.error_count()} errors)"
            ) from e


# ----------------------------
# metadata we hand to checkout, and the processor echoes back
# ----------------------------
def checkout_metadata(record: PaymentRecord) -> Dict[str, Any]:
    return {
        "eventId": record.event_id,
        "attendeeData": {
            "fullName": record.attendee_name,
            "email": record.attendee_email,
            "phone": record.attendee_phone,
        },
        "ticketDetails": [
            {
                "ticketTypeId": li.ticket_type_id,
                "ticketTypeName": li.ticket_type_name,
                "quantity": li.quantity,
                "price": float(li.unit_price),
            }
            for li in record.line_items
        ],
    }


def charge_event(
        record: PaymentRecord, kind: str = "success",
        message: Optional[str] = None,
) -> bytes:
    """Body the processor would POST for `record` (used by mockpay)."""
    event = {
        "event": f"charge.{kind}",
        "data": {
            "reference": record.reference,
            "amount": record.amount_minor,
            "currency": record.currency,
            "status": "success" if kind == "success" else "failed",
            "message": message,
            "gateway_response": (
                "Approved" if kind == "success" else (message or "Declined")
            ),
            "paid_at": to_iso(now_ts()) if kind == "success" else None,
            "channel": "card",
            "metadata": checkout_metadata(record),
            "customer": {"email": record.customer_email},
        },
    }
    return json.dumps(event).encode()
