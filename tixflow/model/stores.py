from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated
from .events import EventStore
from .payments import PaymentStore
from .tickets import TicketStore


class Stores:
    """
    The three stores bound to one session, plus the transaction boundary.

    Store methods never begin or commit; everything between entering and
    leaving `transaction()` commits together or not at all.
    """

    def __init__(self, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated
        self.events = EventStore(db)
        self.payments = PaymentStore(db)
        self.tickets = TicketStore(db)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Stores"]:
        async with self.gated():
            async with self.db.begin():
                yield self
