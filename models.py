from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship, Session
from sqlalchemy import select, update, Integer, String, Text, Float, Boolean, DateTime, ForeignKey, CheckConstraint, Index
from database import Base

ROLES = ("farmer", "buyer", "exporter", "admin")
LISTING_STATUSES = ("draft", "open", "closed", "cancelled")
TRANSACTION_STATUSES = ("pending", "confirmed", "paid", "failed", "cancelled")
# ordered: a shipment only moves forward through this tuple
LOGISTICS_STATUSES = ("booked", "in_transit", "out_for_delivery", "delivered")

# statuses whose amounts count against the listing value
ACTIVE_TRANSACTION_STATUSES = ("pending", "confirmed", "paid")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _in(column: str, values) -> str:
    return "{} IN ({})".format(column, ", ".join("'{}'".format(v) for v in values))


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


def lock_row(db: Session, model, row_id: int):
    """Load one row holding its write lock, or None when it does not exist.

    SQLite ignores FOR UPDATE, so the lock is taken by touching ``updated_at``
    first; the UPDATE locks on every backend. The row is re-read after the
    lock so a copy already in the session cannot be stale.
    """
    res = db.execute(update(model).where(model.id == row_id).values(updated_at=utcnow()))
    if res.rowcount == 0:
        return None
    stmt = select(model).where(model.id == row_id).with_for_update()
    return db.scalar(stmt.execution_options(populate_existing=True))


class User(TimestampMixin, Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(_in("role", ROLES), name="ck_users_role_valid"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(32))

    farms: Mapped[list["Farm"]] = relationship("Farm", back_populates="owner")
    listings: Mapped[list["Listing"]] = relationship("Listing", back_populates="seller")


class Farm(TimestampMixin, Base):
    __tablename__ = "farms"
    __table_args__ = (
        CheckConstraint("size > 0", name="ck_farms_size_positive"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    location: Mapped[str] = mapped_column(String(255))
    size: Mapped[float] = mapped_column(Float)
    coffee_type: Mapped[str] = mapped_column(String(100))
    certification: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), index=True)

    owner: Mapped[User] = relationship("User", back_populates="farms")
    inventory: Mapped[list["Inventory"]] = relationship("Inventory", back_populates="farm")


class Inventory(TimestampMixin, Base):
    __tablename__ = "inventory"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_nonnegative"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    farm_id: Mapped[int] = mapped_column(Integer, ForeignKey("farms.id", ondelete="RESTRICT"), index=True)
    quantity: Mapped[float] = mapped_column(Float)
    quality_grade: Mapped[str] = mapped_column(String(32))
    harvest_date: Mapped[datetime] = mapped_column(DateTime)

    farm: Mapped[Farm] = relationship("Farm", back_populates="inventory")


class Listing(TimestampMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_listings_quantity_positive"),
        CheckConstraint("price > 0", name="ck_listings_price_positive"),
        CheckConstraint(_in("status", LISTING_STATUSES), name="ck_listings_status_valid"),
        Index("ix_listings_status_created", "status", "created_at"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    seller_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    inventory_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("inventory.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    product_type: Mapped[str] = mapped_column(String(100))
    quantity: Mapped[float] = mapped_column(Float)
    price: Mapped[float] = mapped_column(Float)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16), default="draft")

    seller: Mapped[User] = relationship("User", back_populates="listings")
    transactions: Mapped[list["Transaction"]] = relationship("Transaction", back_populates="listing")

    @property
    def value(self) -> float:
        return self.quantity * self.price


class Transaction(TimestampMixin, Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(_in("status", TRANSACTION_STATUSES), name="ck_transactions_status_valid"),
        Index("ix_transactions_listing_status", "listing_id", "status"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    listing_id: Mapped[int] = mapped_column(Integer, ForeignKey("listings.id", ondelete="RESTRICT"))
    buyer_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    amount: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(16), default="pending")

    listing: Mapped[Listing] = relationship("Listing", back_populates="transactions")
    logistics: Mapped[Optional["Logistics"]] = relationship("Logistics", back_populates="transaction", uselist=False)


class Logistics(TimestampMixin, Base):
    __tablename__ = "logistics"
    __table_args__ = (
        CheckConstraint(_in("status", LOGISTICS_STATUSES), name="ck_logistics_status_valid"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    transaction_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transactions.id", ondelete="RESTRICT"), unique=True
    )
    status: Mapped[str] = mapped_column(String(32), default="booked")
    carrier: Mapped[str] = mapped_column(String(100))
    tracking_number: Mapped[str] = mapped_column(String(100))
    estimated_delivery: Mapped[datetime] = mapped_column(DateTime)

    transaction: Mapped[Transaction] = relationship("Transaction", back_populates="logistics")


class Message(TimestampMixin, Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("sender_id <> receiver_id", name="ck_messages_not_self"),
        Index("ix_messages_pair_created", "sender_id", "receiver_id", "created_at"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    content: Mapped[str] = mapped_column(Text)
    sender_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    receiver_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False)

    sender: Mapped[User] = relationship("User", foreign_keys=[sender_id])
    receiver: Mapped[User] = relationship("User", foreign_keys=[receiver_id])
