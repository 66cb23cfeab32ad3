from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    host_id = Column(String, nullable=False)
    host_email = Column(String, nullable=False, default="")
    # draft | active | cancelled
    status = Column(String, nullable=False, default="active")
    created_at = Column(Float, nullable=False)


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("sold >= 0 AND sold <= total", name="ck_sold_le_total"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    total = Column(Integer, nullable=False)
    # only ever moved by InventoryLedger.try_reserve
    sold = Column(Integer, nullable=False, default=0)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    reference = Column(String, nullable=False, unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    user_id = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    amount_minor = Column(Integer, nullable=False)  # kobo
    currency = Column(String, nullable=False, default="NGN")

    # pending | completed | failed | refunded
    status = Column(String, nullable=False, default="pending", index=True)
    method = Column(String, nullable=False, default="card")
    failure_reason = Column(String, nullable=True)

    customer_email = Column(String, nullable=False)
    attendee_name = Column(String, nullable=False, default="")
    attendee_email = Column(String, nullable=False, default="")
    attendee_phone = Column(String, nullable=False, default="")

    created_at = Column(Float, nullable=False)
    processed_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)


class PaymentLineItem(Base):
    __tablename__ = "payment_line_items"
    __table_args__ = (
        UniqueConstraint("payment_reference", "line_no"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_reference = Column(
        String, ForeignKey("payments.reference"), nullable=False
    )
    line_no = Column(Integer, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    ticket_type_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    user_id = Column(String, nullable=False)
    payment_reference = Column(
        String, ForeignKey("payments.reference"), nullable=False, index=True
    )
    attendee_name = Column(String, nullable=False, default="")
    attendee_email = Column(String, nullable=False, default="")
    attendee_phone = Column(String, nullable=False, default="")
    # stamped right after insert, once the id exists
    qr_payload = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)


class FulfillmentLine(Base):
    __tablename__ = "fulfillment_lines"
    __table_args__ = (
        UniqueConstraint("payment_reference", "line_no"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_reference = Column(
        String, ForeignKey("payments.reference"), nullable=False
    )
    line_no = Column(Integer, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    # ticketed | sold_out | rejected
    status = Column(String, nullable=False)
    requested = Column(Integer, nullable=False)
    available = Column(Integer, nullable=True)
    tickets_issued = Column(Integer, nullable=False, default=0)
    note = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
