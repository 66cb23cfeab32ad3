# tixflow/fulfillment.py
"""
Turns an authenticated `charge.success` into tickets.

    received -> authenticated -> matched -> reserved -> ticketed -> notified

The payment record moves `pending -> completed` exactly once (CAS). Each
line item is then handled in its own transaction that claims a
`fulfillment_lines` row, reserves inventory and mints the tickets. A
redelivered webhook finds either every line recorded (nothing to do) or
some lines missing after a crash, and finishes only those.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import FULFILLMENT_SOURCE
from .errors import MalformedWebhook, PaymentStateError, UnmatchedReference
from .helpers import qr_payload
from .infra.log import logger
from .infra.timings import timeit
from .model.events import EventRow
from .model.payments import LineItem, PaymentRecord, PaymentStatus
from .model.stores import Stores
from .model.tickets import (
    LINE_REJECTED, LINE_SOLD_OUT, LINE_TICKETED, TicketRow,
)
from .notifier import IssuedTicket, Notifier, notify_quietly
from .schemas import AttendeeData, ChargeData, ChargeSuccess

ALREADY_PROCESSED = "already_processed"
FULFILLED = "fulfilled"
PARTIAL = "partial"


@dataclass
class LineOutcome:
    line_no: int
    ticket_type_id: str
    status: str
    requested: int
    available: Optional[int] = None
    ticket_type_name: str = ""
    tickets: List[TicketRow] = field(default_factory=list)


@dataclass
class FulfillmentResult:
    reference: str
    status: str
    lines: List[LineOutcome] = field(default_factory=list)

    @property
    def tickets(self) -> List[TicketRow]:
        return [t for line in self.lines for t in line.tickets]

    @property
    def short(self) -> bool:
        return any(line.status != LINE_TICKETED for line in self.lines)

    def as_ack(self) -> Dict[str, Any]:
        ack: Dict[str, Any] = {
            "ok": True,
            "reference": self.reference,
            "status": self.status,
        }
        if self.status == ALREADY_PROCESSED:
            ack["idempotent"] = True
            return ack
        ack["tickets"] = [t.id for t in self.tickets]
        ack["lines"] = [
            {"line_no": line.line_no, "status": line.status,
             "requested": line.requested, "available": line.available}
            for line in self.lines
        ]
        return ack


class FulfillmentEngine:
    def __init__(
        self, stores: Stores, notifier: Notifier,
        source: str = FULFILLMENT_SOURCE,
    ) -> None:
        self.stores = stores
        self.notifier = notifier
        self.source = source

    async def fulfill(self, event: ChargeSuccess) -> FulfillmentResult:
        data = event.data
        ref = data.reference
        log = logger.bind(reference=ref)

        async with timeit("fulfillment.match"):
            async with self.stores.transaction() as s:
                record = await s.payments.get_by_reference(ref)
                ev = (
                    await s.events.get_event(record.event_id)
                    if record else None
                )
        if record is None:
            log.error("charge.success for unknown reference (ledger desync)")
            raise UnmatchedReference(f"no payment with reference {ref}")
        log.info(f"matched payment in status {record.status.value}")

        if data.amount != record.amount_minor:
            log.error(
                f"amount mismatch: processor {data.amount}, "
                f"expected {record.amount_minor}"
            )
            raise PaymentStateError("charged amount does not match payment")
        if record.status in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            log.error(
                f"charge.success for {record.status.value} payment; "
                f"not fulfilling"
            )
            raise PaymentStateError(
                f"payment {ref} is {record.status.value}"
            )

        # resolved before completing, so a bad payload cannot complete
        lines = self._line_items(record, data, log)
        attendee = self._attendee(record, data)

        if record.status is PaymentStatus.PENDING:
            async with timeit("fulfillment.complete"):
                async with self.stores.transaction() as s:
                    won = await s.payments.transition(
                        ref, PaymentStatus.PENDING, PaymentStatus.COMPLETED
                    )
                    current = won or await s.payments.get_by_reference(
                        ref, with_lines=False
                    )
            if won is not None:
                log.info("payment completed")
            elif current.status is PaymentStatus.COMPLETED:
                log.info("completed concurrently by another delivery")
            else:
                log.error(
                    f"payment moved to {current.status.value} while "
                    f"completing"
                )
                raise PaymentStateError(
                    f"payment {ref} is {current.status.value}"
                )

        async with self.stores.transaction() as s:
            recorded = await s.tickets.recorded_lines(ref)
        todo = [li for li in lines if li.line_no not in recorded]
        if not todo:
            log.info("already processed")
            return FulfillmentResult(reference=ref, status=ALREADY_PROCESSED)
        if recorded:
            log.warning(
                f"resuming fulfillment: {len(todo)} of {len(lines)} "
                f"line(s) unrecorded"
            )

        outcomes = []
        for li in todo:
            async with timeit("fulfillment.line"):
                outcome = await self._fulfill_line(record, li, attendee, log)
            if outcome is not None:
                outcomes.append(outcome)

        result = FulfillmentResult(
            reference=ref,
            status=PARTIAL if any(
                o.status != LINE_TICKETED for o in outcomes
            ) else FULFILLED,
            lines=outcomes,
        )
        if result.short:
            log.warning(
                f"partial fulfillment: "
                f"{sum(o.status == LINE_TICKETED for o in outcomes)} of "
                f"{len(outcomes)} line(s) ticketed"
            )

        async with timeit("fulfillment.notify"):
            await self._notify(record, ev, result)
        return result

    # ------------------------------------------------------------------
    def _line_items(
            self, record: PaymentRecord, data: ChargeData, log
    ) -> List[LineItem]:
        meta = data.metadata
        if self.source != "metadata":
            if meta is not None and meta.event_id != record.event_id:
                log.warning(
                    f"echoed eventId {meta.event_id} does not match "
                    f"payment event {record.event_id}; using stored items"
                )
            return record.line_items

        if meta is None or not meta.ticket_details:
            raise MalformedWebhook("charge metadata carries no ticket details")
        if meta.event_id != record.event_id:
            raise MalformedWebhook("charge metadata names another event")
        return [
            LineItem(
                line_no=no,
                ticket_type_id=d.ticket_type_id,
                ticket_type_name=d.ticket_type_name,
                quantity=d.quantity,
                unit_price=d.price,
            )
            for no, d in enumerate(meta.ticket_details, start=1)
        ]

    def _attendee(
            self, record: PaymentRecord, data: ChargeData
    ) -> AttendeeData:
        if self.source == "metadata" and data.metadata is not None:
            a = data.metadata.attendee_data
            return AttendeeData(
                fullName=a.full_name or record.attendee_name,
                email=a.email or record.attendee_email
                or record.customer_email,
                phone=a.phone or record.attendee_phone,
            )
        return AttendeeData(
            fullName=record.attendee_name,
            email=record.attendee_email or record.customer_email,
            phone=record.attendee_phone,
        )

    async def _fulfill_line(
        self, record: PaymentRecord, li: LineItem, attendee: AttendeeData,
        log,
    ) -> Optional[LineOutcome]:
        ref = record.reference
        async with self.stores.transaction() as s:
            claimed = await s.tickets.claim_line(
                ref, li.line_no, li.ticket_type_id, li.quantity
            )
            if not claimed:
                log.info(f"line {li.line_no} handled by another delivery")
                return None

            tt = await s.events.get_ticket_type(li.ticket_type_id)
            if tt is None or tt.event_id != record.event_id:
                await s.tickets.finish_line(
                    ref, li.line_no, LINE_REJECTED,
                    note="ticket type not found for event",
                )
                log.error(
                    f"line {li.line_no}: ticket type {li.ticket_type_id} "
                    f"not found for event {record.event_id}"
                )
                return LineOutcome(
                    li.line_no, li.ticket_type_id, LINE_REJECTED, li.quantity,
                    ticket_type_name=li.ticket_type_name,
                )

            res = await s.events.try_reserve(tt.id, li.quantity)
            if not res.ok:
                await s.tickets.finish_line(
                    ref, li.line_no, LINE_SOLD_OUT,
                    available=res.available,
                    note=f"requested {li.quantity}, available "
                         f"{res.available}",
                )
                log.warning(
                    f"sold out after capture: ticket type {tt.id} "
                    f"({tt.name}) requested {li.quantity} available "
                    f"{res.available}"
                )
                return LineOutcome(
                    li.line_no, tt.id, LINE_SOLD_OUT, li.quantity,
                    available=res.available, ticket_type_name=tt.name,
                )

            # one ticket per unit; any failure here rolls back the
            # reservation with it
            tickets = []
            for _ in range(li.quantity):
                t = await s.tickets.create(
                    event_id=record.event_id,
                    ticket_type_id=tt.id,
                    user_id=record.user_id,
                    payment_reference=ref,
                    attendee_name=attendee.full_name,
                    attendee_email=attendee.email,
                    attendee_phone=attendee.phone,
                )
                await s.tickets.update_qr(
                    t, qr_payload(t.id, record.event_id, record.user_id)
                )
                tickets.append(t)
            await s.tickets.finish_line(
                ref, li.line_no, LINE_TICKETED,
                tickets_issued=len(tickets), available=res.available,
            )

        log.info(
            f"line {li.line_no}: reserved and ticketed {len(tickets)} x "
            f"{tt.name} ({res.sold}/{res.total} sold)"
        )
        return LineOutcome(
            li.line_no, tt.id, LINE_TICKETED, li.quantity,
            available=res.available, ticket_type_name=tt.name,
            tickets=tickets,
        )

    async def _notify(
        self, record: PaymentRecord, ev: Optional[EventRow],
        result: FulfillmentResult,
    ) -> None:
        issued = [
            IssuedTicket(
                ticket_id=t.id,
                qr_payload=t.qr_payload or "",
                payment_reference=record.reference,
                event_id=record.event_id,
                event_title=ev.title if ev else "",
                host_email=ev.host_email if ev else "",
                ticket_type_name=line.ticket_type_name,
                attendee_name=t.attendee_name,
                attendee_email=t.attendee_email,
                attendee_phone=t.attendee_phone,
                customer_email=record.customer_email,
            )
            for line in result.lines
            for t in line.tickets
        ]
        if not issued:
            return
        # concurrent, so the total wait is bounded by one timeout
        await asyncio.gather(
            *(notify_quietly(self.notifier, it) for it in issued)
        )
        logger.bind(reference=record.reference).info(
            f"notified for {len(issued)} ticket(s)"
        )
