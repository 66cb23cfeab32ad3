"""Request bodies and the processor's webhook envelope."""

from __future__ import annotations
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, StrictInt, StrictStr
)


class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ----------------------------
# Initiation
# ----------------------------
class AttendeeIn(_Camel):
    full_name: StrictStr = Field(alias="fullName", min_length=1)
    email: StrictStr = ""
    phone: StrictStr = ""


class LineItemIn(_Camel):
    ticket_type_id: StrictStr = Field(alias="ticketTypeId", min_length=1)
    quantity: StrictInt = Field(ge=1)
    # optional; if sent it must match the stored price
    unit_price: Optional[Decimal] = Field(
        default=None, ge=0,
        validation_alias=AliasChoices("unitPrice", "price"),
    )


class InitiateRequest(_Camel):
    event_id: StrictStr = Field(alias="eventId", min_length=1)
    email: StrictStr
    attendee: AttendeeIn = Field(
        validation_alias=AliasChoices("attendee", "attendeeData")
    )
    line_items: List[LineItemIn] = Field(
        min_length=1,
        validation_alias=AliasChoices("lineItems", "ticketDetails"),
    )


# ----------------------------
# Webhook envelope (Paystack shape)
# ----------------------------
class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")
    event: StrictStr = Field(min_length=1)
    data: dict


class AttendeeData(_Camel):
    full_name: StrictStr = Field(default="", alias="fullName")
    email: StrictStr = ""
    phone: StrictStr = ""


class TicketDetail(_Camel):
    ticket_type_id: StrictStr = Field(alias="ticketTypeId", min_length=1)
    ticket_type_name: StrictStr = Field(default="", alias="ticketTypeName")
    quantity: StrictInt = Field(ge=1)
    price: Decimal = Field(ge=0)


class ChargeMetadata(_Camel):
    event_id: StrictStr = Field(alias="eventId", min_length=1)
    attendee_data: AttendeeData = Field(
        default_factory=AttendeeData, alias="attendeeData"
    )
    ticket_details: List[TicketDetail] = Field(
        default_factory=list, alias="ticketDetails"
    )


class Customer(_Camel):
    email: StrictStr = ""


class ChargeData(_Camel):
    reference: StrictStr = Field(min_length=1)
    amount: StrictInt = Field(ge=0)  # minor units
    status: StrictStr = ""
    currency: Optional[StrictStr] = None
    message: Optional[StrictStr] = None
    gateway_response: Optional[StrictStr] = None
    metadata: Optional[ChargeMetadata] = None
    customer: Customer = Field(default_factory=Customer)

    @property
    def failure_message(self) -> str:
        return self.message or self.gateway_response or "charge failed"


class ChargeSuccess(BaseModel):
    event: Literal["charge.success"]
    data: ChargeData


class ChargeFailed(BaseModel):
    event: Literal["charge.failed"]
    data: ChargeData


class IgnoredEvent(BaseModel):
    event: str
    reference: Optional[str] = None
