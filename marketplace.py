"""
Marketplace ledger: listings, the transactions placed against them and the
shipment record that follows a paid transaction.

Listing:      draft -> open -> closed | cancelled, draft -> cancelled
Transaction:  pending -> confirmed -> paid
              pending | confirmed -> cancelled, confirmed -> failed
Logistics:    booked -> in_transit -> out_for_delivery -> delivered

The amounts of pending, confirmed and paid transactions against a listing
never add up to more than the listing value (quantity x price). Placement
takes a write lock on the listing row before reading the running total, and
status changes lock the transaction or shipment row before reading its
status, so racing requests against one row are serialised by the store.
"""
import logging
import math
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func, exists, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from database import Store
from identity import load_user
from farms import load_inventory, apply_inventory_delta, as_utc_naive
from models import (
    Listing, Transaction, Logistics, Farm, lock_row,
    LOGISTICS_STATUSES, LISTING_STATUSES, ACTIVE_TRANSACTION_STATUSES,
)
from errors import (
    InvalidAttributes, InvalidTransition, InvalidStatus, ListingNotFound, ListingNotOpen,
    ExceedsListingValue, ListingHasActiveTransactions, TransactionNotFound,
    TransactionNotPaid, LogisticsAlreadyExists, LogisticsNotFound, NotListingOwner,
    NotInventoryOwner, NotTransactionParty, HasDependents,
)

logger = logging.getLogger(__name__)

# tolerance for float sums of money
EPSILON = 1e-9

LISTING_TRANSITIONS = {
    "draft": {"open", "cancelled"},
    "open": {"closed", "cancelled"},
    "closed": set(),
    "cancelled": set(),
}

TRANSACTION_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"paid", "cancelled", "failed"},
    "paid": set(),
    "failed": set(),
    "cancelled": set(),
}


def _positive(value) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def _check_transition(table: Dict[str, set], kind: str, current: str, target: str):
    if target not in table.get(current, set()):
        raise InvalidTransition(f"{kind} cannot move from {current} to {target}")


def _check_party(db: Session, txn: Transaction, actor_id: Optional[int], parties: Tuple[str, ...]):
    """Admins pass no actor; everyone else must be one of ``parties`` on the transaction."""
    if actor_id is None:
        return
    members = {"buyer": txn.buyer_id}
    if "seller" in parties:
        members["seller"] = db.scalar(select(Listing.seller_id).where(Listing.id == txn.listing_id))
    if any(members.get(p) == actor_id for p in parties):
        return
    if parties == ("seller",):
        raise NotListingOwner(f"transaction {txn.id} is on another user's listing")
    raise NotTransactionParty(f"user {actor_id} is not a party to transaction {txn.id}")


def _committed_total(db: Session, listing_id: int, statuses=ACTIVE_TRANSACTION_STATUSES) -> float:
    total = db.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0.0))
        .where(Transaction.listing_id == listing_id, Transaction.status.in_(statuses))
    )
    return float(total or 0.0)


def load_listing(db: Session, listing_id: int, lock: bool = False) -> Listing:
    listing = lock_row(db, Listing, listing_id) if lock else db.get(Listing, listing_id)
    if listing is None:
        raise ListingNotFound(f"listing {listing_id} not found")
    return listing


def load_transaction(db: Session, transaction_id: int, lock: bool = False) -> Transaction:
    txn = lock_row(db, Transaction, transaction_id) if lock else db.get(Transaction, transaction_id)
    if txn is None:
        raise TransactionNotFound(f"transaction {transaction_id} not found")
    return txn


def load_logistics(db: Session, logistics_id: int, lock: bool = False) -> Logistics:
    record = lock_row(db, Logistics, logistics_id) if lock else db.get(Logistics, logistics_id)
    if record is None:
        raise LogisticsNotFound(f"logistics record {logistics_id} not found")
    return record


class MarketplaceLedger:
    def __init__(self, store: Store, settings: Settings):
        self.store = store
        self.settings = settings

    # ---------- Listings ----------
    def create_listing(self, seller_id: int, product_type: str, quantity: float, price: float,
                       description: str = "", inventory_id: Optional[int] = None) -> Listing:
        if not _positive(quantity) or not _positive(price):
            raise InvalidAttributes("listing quantity and price must be positive numbers")
        if not product_type:
            raise InvalidAttributes("product type is required")

        def work(db: Session) -> Listing:
            load_user(db, seller_id)
            if inventory_id is not None:
                lot = load_inventory(db, inventory_id, lock=True)
                owner_id = db.scalar(select(Farm.owner_id).where(Farm.id == lot.farm_id))
                if owner_id != seller_id:
                    raise NotInventoryOwner(f"inventory lot {inventory_id} belongs to another user")
                apply_inventory_delta(db, lot, -quantity)
            listing = Listing(
                seller_id=seller_id,
                inventory_id=inventory_id,
                product_type=product_type,
                quantity=quantity,
                price=price,
                description=description or "",
                status="draft",
            )
            db.add(listing)
            db.flush()
            return listing

        listing = self.store.run(work)
        logger.info("listing %s drafted by user %s (value %.2f)", listing.id, seller_id, listing.value)
        return listing

    def _move_listing(self, listing_id: int, target: str, actor_id: Optional[int] = None) -> Listing:
        def work(db: Session) -> Listing:
            listing = load_listing(db, listing_id, lock=True)
            if actor_id is not None and listing.seller_id != actor_id:
                raise NotListingOwner(f"listing {listing_id} belongs to another user")
            _check_transition(LISTING_TRANSITIONS, "listing", listing.status, target)
            if target == "cancelled":
                if _committed_total(db, listing_id, ("pending", "confirmed")) > 0:
                    raise ListingHasActiveTransactions(
                        f"listing {listing_id} has pending or confirmed transactions"
                    )
                if listing.inventory_id is not None:
                    lot = load_inventory(db, listing.inventory_id, lock=True)
                    apply_inventory_delta(db, lot, listing.quantity)
            listing.status = target
            return listing

        listing = self.store.run(work)
        logger.info("listing %s -> %s", listing_id, target)
        return listing

    def publish_listing(self, listing_id: int, actor_id: Optional[int] = None) -> Listing:
        return self._move_listing(listing_id, "open", actor_id)

    def close_listing(self, listing_id: int, actor_id: Optional[int] = None) -> Listing:
        return self._move_listing(listing_id, "closed", actor_id)

    def cancel_listing(self, listing_id: int, actor_id: Optional[int] = None) -> Listing:
        return self._move_listing(listing_id, "cancelled", actor_id)

    def get_listing(self, listing_id: int) -> Listing:
        return self.store.read(lambda db: load_listing(db, listing_id))

    def list_listings(self, status: Optional[str] = None, q: Optional[str] = None,
                      seller_id: Optional[int] = None) -> List[Listing]:
        if status is not None and status not in LISTING_STATUSES:
            raise InvalidStatus(f"unknown listing status {status}")
        stmt = select(Listing)
        if status:
            stmt = stmt.where(Listing.status == status)
        if seller_id is not None:
            stmt = stmt.where(Listing.seller_id == seller_id)
        if q:
            like = f"%{q}%"
            stmt = stmt.where(or_(Listing.product_type.ilike(like), Listing.description.ilike(like)))
        stmt = stmt.order_by(Listing.created_at.desc(), Listing.id.desc())
        return self.store.read(lambda db: list(db.scalars(stmt).all()))

    def listing_value_summary(self, listing_id: int) -> dict:
        def work(db: Session) -> dict:
            listing = load_listing(db, listing_id)
            committed = _committed_total(db, listing_id)
            paid = _committed_total(db, listing_id, ("paid",))
            return {
                "listing_id": listing.id,
                "value": listing.value,
                "committed": committed,
                "paid": paid,
                "remaining": max(0.0, listing.value - committed),
            }

        return self.store.read(work)

    def delete_listing(self, listing_id: int) -> None:
        def work(db: Session):
            listing = load_listing(db, listing_id, lock=True)
            if db.scalar(select(exists().where(Transaction.listing_id == listing_id))):
                raise HasDependents(f"listing {listing_id} has transactions")
            if listing.inventory_id is not None and listing.status in ("draft", "open"):
                lot = load_inventory(db, listing.inventory_id, lock=True)
                apply_inventory_delta(db, lot, listing.quantity)
            db.delete(listing)

        self.store.run(work)
        logger.info("deleted listing %s", listing_id)

    # ---------- Transactions ----------
    def place_transaction(self, listing_id: int, amount: float, buyer_id: Optional[int] = None) -> Transaction:
        if not _positive(amount):
            raise InvalidAttributes("transaction amount must be a positive number")

        def work(db: Session) -> Transaction:
            if buyer_id is not None:
                load_user(db, buyer_id)
            listing = load_listing(db, listing_id, lock=True)
            if listing.status != "open":
                raise ListingNotOpen(f"listing {listing_id} is {listing.status}")
            committed = _committed_total(db, listing_id)
            if committed + amount > listing.value + EPSILON:
                raise ExceedsListingValue(
                    f"{committed:.2f} already committed, {amount:.2f} more exceeds value {listing.value:.2f}"
                )
            txn = Transaction(listing_id=listing_id, buyer_id=buyer_id, amount=amount, status="pending")
            db.add(txn)
            db.flush()
            return txn

        txn = self.store.run(work)
        logger.info("transaction %s placed on listing %s for %.2f", txn.id, listing_id, amount)
        return txn

    def _move_transaction(self, transaction_id: int, target: str, actor_id: Optional[int],
                          parties: Tuple[str, ...]) -> Transaction:
        def work(db: Session) -> Transaction:
            txn = load_transaction(db, transaction_id, lock=True)
            _check_party(db, txn, actor_id, parties)
            if target == "cancelled" and txn.status == "cancelled":
                return txn
            _check_transition(TRANSACTION_TRANSITIONS, "transaction", txn.status, target)
            txn.status = target
            if target == "paid":
                db.flush()
                listing = load_listing(db, txn.listing_id, lock=True)
                paid = _committed_total(db, listing.id, ("paid",))
                if listing.status == "open" and paid + EPSILON >= listing.value:
                    listing.status = "closed"
                    logger.info("listing %s fully paid, closed", listing.id)
            return txn

        txn = self.store.run(work)
        logger.info("transaction %s -> %s", transaction_id, txn.status)
        return txn

    def confirm_transaction(self, transaction_id: int, actor_id: Optional[int] = None) -> Transaction:
        return self._move_transaction(transaction_id, "confirmed", actor_id, ("seller",))

    def mark_paid(self, transaction_id: int, actor_id: Optional[int] = None) -> Transaction:
        return self._move_transaction(transaction_id, "paid", actor_id, ("buyer",))

    def fail_transaction(self, transaction_id: int, actor_id: Optional[int] = None) -> Transaction:
        return self._move_transaction(transaction_id, "failed", actor_id, ("seller",))

    def cancel_transaction(self, transaction_id: int, actor_id: Optional[int] = None) -> Transaction:
        return self._move_transaction(transaction_id, "cancelled", actor_id, ("buyer", "seller"))

    def get_transaction(self, transaction_id: int) -> Transaction:
        return self.store.read(lambda db: load_transaction(db, transaction_id))

    def list_transactions(self, listing_id: int) -> List[Transaction]:
        def work(db: Session):
            load_listing(db, listing_id)
            stmt = select(Transaction).where(Transaction.listing_id == listing_id).order_by(Transaction.id.asc())
            return list(db.scalars(stmt).all())

        return self.store.read(work)

    # ---------- Logistics ----------
    def create_logistics(self, transaction_id: int, carrier: str, tracking_number: str,
                         estimated_delivery, actor_id: Optional[int] = None) -> Logistics:
        if not carrier or not tracking_number:
            raise InvalidAttributes("carrier and tracking number are required")
        eta = as_utc_naive(estimated_delivery)

        def work(db: Session) -> Logistics:
            txn = load_transaction(db, transaction_id, lock=True)
            _check_party(db, txn, actor_id, ("seller",))
            if txn.status != "paid":
                raise TransactionNotPaid(f"transaction {transaction_id} is {txn.status}")
            if db.scalar(select(Logistics.id).where(Logistics.transaction_id == transaction_id)) is not None:
                raise LogisticsAlreadyExists(f"transaction {transaction_id} already has a shipment")
            record = Logistics(
                transaction_id=transaction_id,
                status=LOGISTICS_STATUSES[0],
                carrier=carrier,
                tracking_number=tracking_number,
                estimated_delivery=eta,
            )
            db.add(record)
            try:
                db.flush()
            except IntegrityError as exc:
                raise LogisticsAlreadyExists(f"transaction {transaction_id} already has a shipment") from exc
            return record

        record = self.store.run(work)
        logger.info("logistics %s booked for transaction %s via %s", record.id, transaction_id, carrier)
        return record

    def update_logistics_status(self, logistics_id: int, new_status: str,
                                actor_id: Optional[int] = None) -> Logistics:
        if new_status not in LOGISTICS_STATUSES:
            raise InvalidStatus(f"unknown shipment status {new_status}")

        def work(db: Session) -> Logistics:
            record = load_logistics(db, logistics_id, lock=True)
            if actor_id is not None:
                _check_party(db, load_transaction(db, record.transaction_id), actor_id, ("seller",))
            current = LOGISTICS_STATUSES.index(record.status)
            target = LOGISTICS_STATUSES.index(new_status)
            if target < current:
                raise InvalidTransition(f"shipment cannot move back from {record.status} to {new_status}")
            if target > current:
                record.status = new_status
            return record

        record = self.store.run(work)
        logger.info("logistics %s -> %s", logistics_id, record.status)
        return record

    def get_logistics(self, logistics_id: int) -> Logistics:
        return self.store.read(lambda db: load_logistics(db, logistics_id))
