from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts

# fulfillment line outcomes
LINE_CLAIMED = "claimed"  # only ever visible inside the claiming transaction
LINE_TICKETED = "ticketed"
LINE_SOLD_OUT = "sold_out"
LINE_REJECTED = "rejected"


@dataclass
class TicketRow:
    id: int
    event_id: str
    ticket_type_id: str
    user_id: str
    payment_reference: str
    attendee_name: str
    attendee_email: str
    attendee_phone: str
    qr_payload: Optional[str] = None


class TicketStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(
        self, *, event_id: str, ticket_type_id: str, user_id: str,
        payment_reference: str, attendee_name: str, attendee_email: str,
        attendee_phone: str,
    ) -> TicketRow:
        # phase one: the row, so the storage-generated id exists
        row = (await self.db.execute(text("""
            INSERT INTO tickets(
                event_id, ticket_type_id, user_id, payment_reference,
                attendee_name, attendee_email, attendee_phone, created_at
            ) VALUES (
                :event_id, :ticket_type_id, :user_id, :ref,
                :name, :email, :phone, :created_at
            )
            RETURNING id
        """), {
            "event_id": event_id,
            "ticket_type_id": ticket_type_id,
            "user_id": user_id,
            "ref": payment_reference,
            "name": attendee_name,
            "email": attendee_email,
            "phone": attendee_phone,
            "created_at": now_ts(),
        })).first()
        return TicketRow(
            id=int(row[0]),
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            user_id=user_id,
            payment_reference=payment_reference,
            attendee_name=attendee_name,
            attendee_email=attendee_email,
            attendee_phone=attendee_phone,
        )

    async def update_qr(self, ticket: TicketRow, payload: str) -> TicketRow:
        # phase two: stamp the QR payload that embeds the new id
        await self.db.execute(text("""
            UPDATE tickets SET qr_payload = :qr WHERE id = :id
        """), {"qr": payload, "id": ticket.id})
        ticket.qr_payload = payload
        return ticket

    async def list_by_payment(self, reference: str) -> List[TicketRow]:
        rows = (await self.db.execute(text("""
            SELECT id, event_id, ticket_type_id, user_id, payment_reference,
                   attendee_name, attendee_email, attendee_phone, qr_payload
            FROM tickets WHERE payment_reference = :ref ORDER BY id
        """), {"ref": reference})).mappings().all()
        return [TicketRow(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # per-line fulfillment ledger
    # ------------------------------------------------------------------
    async def claim_line(
        self, reference: str, line_no: int, ticket_type_id: str,
        requested: int,
    ) -> bool:
        """
        Insert the line's row. False means another delivery already owns
        (or finished) this line. On PostgreSQL a concurrent claimer blocks
        here until the owner commits or rolls back.
        """
        row = (await self.db.execute(text("""
            INSERT INTO fulfillment_lines(
                payment_reference, line_no, ticket_type_id, status,
                requested, tickets_issued, created_at
            ) VALUES (:ref, :line_no, :tt, :status, :requested, 0, :now)
            ON CONFLICT (payment_reference, line_no) DO NOTHING
            RETURNING id
        """), {
            "ref": reference,
            "line_no": line_no,
            "tt": ticket_type_id,
            "status": LINE_CLAIMED,
            "requested": requested,
            "now": now_ts(),
        })).first()
        return row is not None

    async def finish_line(
        self, reference: str, line_no: int, status: str,
        tickets_issued: int = 0, available: Optional[int] = None,
        note: Optional[str] = None,
    ) -> None:
        await self.db.execute(text("""
            UPDATE fulfillment_lines
            SET status = :status, tickets_issued = :issued,
                available = :available, note = :note
            WHERE payment_reference = :ref AND line_no = :line_no
        """), {
            "ref": reference,
            "line_no": line_no,
            "status": status,
            "issued": tickets_issued,
            "available": available,
            "note": note,
        })

    async def recorded_lines(self, reference: str) -> Dict[int, str]:
        rows = (await self.db.execute(text("""
            SELECT line_no, status FROM fulfillment_lines
            WHERE payment_reference = :ref
        """), {"ref": reference})).all()
        return {int(r[0]): r[1] for r in rows}

    async def list_anomalies(self, limit: int = 200) -> List[Dict[str, Any]]:
        rows = (await self.db.execute(text("""
            SELECT f.payment_reference, f.line_no, f.ticket_type_id, f.status,
                   f.requested, f.available, f.tickets_issued, f.note,
                   f.created_at, p.customer_email, p.amount, p.currency
            FROM fulfillment_lines AS f
            JOIN payments AS p ON p.reference = f.payment_reference
            WHERE f.status <> :ok
            ORDER BY f.created_at DESC
            LIMIT :lim
        """), {"ok": LINE_TICKETED, "lim": max(1, min(limit, 500))}
        )).mappings().all()
        # orjson has no Decimal support
        return [{**dict(r), "amount": str(r["amount"])} for r in rows]
