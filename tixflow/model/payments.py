# model/payments.py
"""
Payment records and their status machine.

    pending ──► completed ──► refunded
       │
       └──────► failed

Every status write goes through `PaymentStore.transition`, which checks the
table above and then performs a compare-and-swap on the current status, so
two deliveries of the same webhook cannot both move a record out of
`pending`.
"""

from __future__ import annotations
import enum
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateReference, IllegalTransition
from ..helpers import money, now_ts
from .orm import Payment, PaymentLineItem


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def check_transition(src: PaymentStatus, dst: PaymentStatus) -> None:
    if dst not in TRANSITIONS[PaymentStatus(src)]:
        raise IllegalTransition(
            f"payment status cannot move from {PaymentStatus(src).value} "
            f"to {PaymentStatus(dst).value}"
        )


@dataclass(frozen=True)
class LineItem:
    line_no: int
    ticket_type_id: str
    ticket_type_name: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class PaymentRecord:
    reference: str
    event_id: str
    user_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    customer_email: str
    attendee_name: str = ""
    attendee_email: str = ""
    attendee_phone: str = ""
    status: PaymentStatus = PaymentStatus.PENDING
    method: str = "card"
    failure_reason: Optional[str] = None
    created_at: float = 0.0
    processed_at: Optional[float] = None
    refunded_at: Optional[float] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    line_items: List[LineItem] = field(default_factory=list)


_PAYMENT_COLUMNS = """
    id, reference, event_id, user_id, amount, amount_minor, currency,
    status, method, failure_reason, customer_email, attendee_name,
    attendee_email, attendee_phone, created_at, processed_at, refunded_at
"""


class PaymentStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, record: PaymentRecord) -> PaymentRecord:
        """Insert a new record; only `pending` records may be created."""
        if PaymentStatus(record.status) is not PaymentStatus.PENDING:
            raise IllegalTransition("payments are created as pending")
        record.created_at = record.created_at or now_ts()
        self.db.add(Payment(
            id=record.id,
            reference=record.reference,
            event_id=record.event_id,
            user_id=record.user_id,
            amount=money(record.amount),
            amount_minor=record.amount_minor,
            currency=record.currency,
            status=PaymentStatus.PENDING.value,
            method=record.method,
            customer_email=record.customer_email,
            attendee_name=record.attendee_name,
            attendee_email=record.attendee_email,
            attendee_phone=record.attendee_phone,
            created_at=record.created_at,
        ))
        try:
            # parent row first so the line items' FK resolves
            await self.db.flush()
            for li in record.line_items:
                self.db.add(PaymentLineItem(
                    payment_reference=record.reference,
                    line_no=li.line_no,
                    ticket_type_id=li.ticket_type_id,
                    ticket_type_name=li.ticket_type_name,
                    quantity=li.quantity,
                    unit_price=money(li.unit_price),
                ))
            await self.db.flush()
        except IntegrityError as e:
            raise DuplicateReference(
                f"payment reference {record.reference} already exists"
            ) from e
        return record

    async def get_by_reference(
            self, reference: str, with_lines: bool = True
    ) -> Optional[PaymentRecord]:
        row = (await self.db.execute(text(f"""
            SELECT {_PAYMENT_COLUMNS} FROM payments WHERE reference = :ref
        """), {"ref": reference})).mappings().first()
        if not row:
            return None
        rec = PaymentRecord(
            id=row["id"],
            reference=row["reference"],
            event_id=row["event_id"],
            user_id=row["user_id"],
            amount=money(row["amount"]),
            amount_minor=int(row["amount_minor"]),
            currency=row["currency"],
            status=PaymentStatus(row["status"]),
            method=row["method"],
            failure_reason=row["failure_reason"],
            customer_email=row["customer_email"],
            attendee_name=row["attendee_name"],
            attendee_email=row["attendee_email"],
            attendee_phone=row["attendee_phone"],
            created_at=float(row["created_at"]),
            processed_at=row["processed_at"],
            refunded_at=row["refunded_at"],
        )
        if with_lines:
            rec.line_items = await self.line_items(reference)
        return rec

    async def line_items(self, reference: str) -> List[LineItem]:
        rows = (await self.db.execute(text("""
            SELECT line_no, ticket_type_id, ticket_type_name, quantity,
                   unit_price
            FROM payment_line_items
            WHERE payment_reference = :ref
            ORDER BY line_no
        """), {"ref": reference})).mappings().all()
        return [
            LineItem(
                line_no=int(r["line_no"]),
                ticket_type_id=r["ticket_type_id"],
                ticket_type_name=r["ticket_type_name"],
                quantity=int(r["quantity"]),
                unit_price=money(r["unit_price"]),
            )
            for r in rows
        ]

    async def transition(
        self,
        reference: str,
        src: PaymentStatus,
        dst: PaymentStatus,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        """
        Compare-and-swap `src -> dst`.
        Returns the updated record, or None when the record was not in
        `src` any more (someone else moved it first, or it never was).
        """
        check_transition(src, dst)
        now = now_ts()
        params = {"ref": reference, "src": PaymentStatus(src).value,
                  "dst": PaymentStatus(dst).value}

        if dst is PaymentStatus.COMPLETED:
            stamp = "processed_at = :now"
            params["now"] = now
        elif dst is PaymentStatus.FAILED:
            stamp = "failure_reason = :reason"
            params["reason"] = failure_reason or ""
        else:
            stamp = "refunded_at = :now"
            params["now"] = now

        row = (await self.db.execute(text(f"""
            UPDATE payments
            SET status = :dst, {stamp}
            WHERE reference = :ref AND status = :src
            RETURNING id
        """), params)).first()
        if row is None:
            return None
        return await self.get_by_reference(reference, with_lines=False)
