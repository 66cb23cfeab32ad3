# model/inventory.py
"""
Inventory ledger over the `ticket_types` rows.

The no-oversell invariant (sold <= total) is held by the storage layer: a
reservation is one conditional UPDATE, never a read followed by a write.
Two fulfillments racing for the last unit both issue the UPDATE; the
database serialises them and exactly one matches the WHERE clause.

Methods here never open transactions; the caller owns the boundary (see
`model.stores.Stores.transaction`). That lets the fulfillment engine put a
reservation and the tickets it pays for into one transaction.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, ValidationFailed
from ..helpers import money


@dataclass(frozen=True)
class TicketTypeRow:
    id: str
    event_id: str
    name: str
    price: Decimal
    total: int
    sold: int

    @property
    def available(self) -> int:
        return max(0, self.total - self.sold)


@dataclass(frozen=True)
class Reservation:
    ok: bool
    ticket_type_id: str
    quantity: int
    sold: int
    total: int

    @property
    def available(self) -> int:
        return max(0, self.total - self.sold)


SQL_RESERVE = text("""
    UPDATE ticket_types
    SET sold = sold + :q
    WHERE id = :id AND sold + :q <= total
    RETURNING sold, total
""")

SQL_COUNTS = text("SELECT sold, total FROM ticket_types WHERE id = :id")

SQL_TICKET_TYPE_COLUMNS = "id, event_id, name, price, total, sold"


def ticket_type_from_row(row) -> TicketTypeRow:
    return TicketTypeRow(
        id=row["id"],
        event_id=row["event_id"],
        name=row["name"],
        price=money(row["price"]),
        total=int(row["total"]),
        sold=int(row["sold"]),
    )


class InventoryLedger:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_ticket_type(
            self, ticket_type_id: str
    ) -> Optional[TicketTypeRow]:
        row = (await self.db.execute(text(f"""
            SELECT {SQL_TICKET_TYPE_COLUMNS}
            FROM ticket_types WHERE id = :id
        """), {"id": ticket_type_id})).mappings().first()
        return ticket_type_from_row(row) if row else None

    async def try_reserve(
            self, ticket_type_id: str, quantity: int
    ) -> Reservation:
        """
        Atomically add `quantity` to the sold count if it still fits.
        Returns Reservation(ok=False) when capacity is insufficient; the
        sold count is untouched in that case.
        """
        if quantity < 0:
            raise ValidationFailed("quantity must be >= 1")

        if quantity > 0:
            row = (await self.db.execute(
                SQL_RESERVE, {"id": ticket_type_id, "q": quantity}
            )).first()
            if row is not None:
                return Reservation(
                    ok=True,
                    ticket_type_id=ticket_type_id,
                    quantity=quantity,
                    sold=int(row[0]),
                    total=int(row[1]),
                )

        # zero-quantity no-op, or the conditional update matched nothing
        row = (await self.db.execute(
            SQL_COUNTS, {"id": ticket_type_id}
        )).first()
        if row is None:
            raise NotFound(f"ticket type {ticket_type_id} not found")
        return Reservation(
            ok=quantity == 0,
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            sold=int(row[0]),
            total=int(row[1]),
        )

    async def availability(self, ticket_type_id: str) -> Dict[str, Any]:
        tt = await self.get_ticket_type(ticket_type_id)
        if tt is None:
            raise NotFound(f"ticket type {ticket_type_id} not found")
        return {
            "ticket_type_id": tt.id,
            "name": tt.name,
            "total": tt.total,
            "sold": tt.sold,
            "available": tt.available,
            "sold_out": tt.available <= 0,
        }
