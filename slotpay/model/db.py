from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncEngine


Base = declarative_base()

# unit kinds
UNIT_PRODUCT = "product"
UNIT_TICKET_SLOT = "ticket_slot"

# hold kinds
HOLD_TICKET = "ticket"
HOLD_PRODUCT = "product"


# ----------------------------
# ORM models
# ----------------------------
class InventoryUnit(Base):
    """Stock of one product variant, or capacity of one ticket date/slot."""
    __tablename__ = "inventory_units"
    # variant:<id> | ticket:<id>:<YYYY-MM-DD>:<HH:MM|all-day>
    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    ref_id = Column(Integer, nullable=False)
    slot_date = Column(String, nullable=True)
    time_slot = Column(String, nullable=True)  # NULL = all-day
    name = Column(String, nullable=False, default="")

    total = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    sold = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("reserved >= 0", name="ck_units_reserved"),
        CheckConstraint("sold >= 0", name="ck_units_sold"),
    )


class Hold(Base):
    __tablename__ = "holds"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, unique=True)
    kind = Column(String, nullable=False)  # ticket | product
    user_id = Column(String, nullable=False)

    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False, default="")

    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="idr")

    # awaiting_payment | paid | expired | failed | refunded
    payment_status = Column(String, nullable=False,
                            default="awaiting_payment")
    # fulfillment: awaiting_payment | paid | processing | requires_review |
    # completed | expired | cancelled | failed | refunded
    status = Column(String, nullable=False, default="awaiting_payment")

    payment_expires_at = Column(Float, nullable=False)
    payment_token = Column(String, nullable=True)
    payment_url = Column(String, nullable=True)

    # last thing the gateway told us (raw transaction_status + payload json)
    gateway_status = Column(String, nullable=True)
    gateway_payload = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    expired_at = Column(Float, nullable=True)

    # product holds only
    pickup_code = Column(String, nullable=True, unique=True)
    pickup_status = Column(String, nullable=True)
    pickup_expires_at = Column(Float, nullable=True)
    picked_up_at = Column(Float, nullable=True)
    picked_up_by = Column(String, nullable=True)


class LineItem(Base):
    __tablename__ = "line_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    hold_id = Column(Integer, ForeignKey("holds.id", ondelete="CASCADE"),
                     nullable=False)
    unit_id = Column(String, ForeignKey("inventory_units.id"),
                     nullable=False)
    name = Column(String, nullable=False, default="")
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)  # captured at reservation
    ref_id = Column(Integer, nullable=False)
    slot_date = Column(String, nullable=True)
    time_slot = Column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_line_items_qty"),
        CheckConstraint("unit_price >= 0", name="ck_line_items_price"),
        Index("ix_line_items_hold", "hold_id"),
    )


class IssuedTicket(Base):
    __tablename__ = "issued_tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_code = Column(String, nullable=False, unique=True)
    line_item_id = Column(Integer, ForeignKey("line_items.id"),
                          nullable=False)
    hold_id = Column(Integer, ForeignKey("holds.id"), nullable=False)
    user_id = Column(String, nullable=False)
    ticket_id = Column(Integer, nullable=False)
    valid_date = Column(String, nullable=True)
    time_slot = Column(String, nullable=True)  # NULL = all-day access
    status = Column(String, nullable=False, default="active")
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_issued_tickets_line_item", "line_item_id"),
    )


class AuditRecord(Base):
    __tablename__ = "audit_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    payload = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    processed_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_audit_records_order", "order_id"),
    )


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
