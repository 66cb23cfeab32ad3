from __future__ import annotations
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import text

from ..helpers import money, now_ts
from .inventory import (
    SQL_TICKET_TYPE_COLUMNS, InventoryLedger, TicketTypeRow,
    ticket_type_from_row,
)
from .orm import Event, TicketType


@dataclass(frozen=True)
class EventRow:
    id: str
    title: str
    host_id: str
    host_email: str
    status: str


class EventStore(InventoryLedger):
    """Read side of events plus the ticket-type ledger they own."""

    async def get_event(self, event_id: str) -> Optional[EventRow]:
        row = (await self.db.execute(text("""
            SELECT id, title, host_id, host_email, status
            FROM events WHERE id = :id
        """), {"id": event_id})).mappings().first()
        return EventRow(**row) if row else None

    async def list_ticket_types(self, event_id: str) -> List[TicketTypeRow]:
        rows = (await self.db.execute(text(f"""
            SELECT {SQL_TICKET_TYPE_COLUMNS}
            FROM ticket_types WHERE event_id = :eid ORDER BY name
        """), {"eid": event_id})).mappings().all()
        return [ticket_type_from_row(r) for r in rows]

    # creation exists for seeding and tests; event CRUD lives elsewhere
    async def create_event(
        self, title: str, host_id: str, host_email: str = "",
        event_id: Optional[str] = None,
    ) -> EventRow:
        ev = Event(
            id=event_id or str(uuid.uuid4()),
            title=title,
            host_id=host_id,
            host_email=host_email,
            status="active",
            created_at=now_ts(),
        )
        self.db.add(ev)
        await self.db.flush()
        return EventRow(ev.id, ev.title, ev.host_id, ev.host_email, ev.status)

    async def create_ticket_type(
        self, event_id: str, name: str, price: Decimal | str | int,
        total: int, sold: int = 0, ticket_type_id: Optional[str] = None,
    ) -> TicketTypeRow:
        if total < 0 or not 0 <= sold <= total:
            raise ValueError("need 0 <= sold <= total")
        tt = TicketType(
            id=ticket_type_id or str(uuid.uuid4()),
            event_id=event_id,
            name=name,
            price=money(price),
            total=total,
            sold=sold,
        )
        self.db.add(tt)
        await self.db.flush()
        return TicketTypeRow(
            tt.id, tt.event_id, tt.name, money(price), total, sold
        )
