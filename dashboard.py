from sqlalchemy import select, func

from database import Store
from models import Farm, Listing, Transaction, Logistics, LOGISTICS_STATUSES


def dashboard_counts(store: Store) -> dict:
    def work(db):
        return {
            "total_farms": db.scalar(select(func.count(Farm.id))) or 0,
            "open_listings": db.scalar(select(func.count(Listing.id)).where(Listing.status == "open")) or 0,
            "pending_shipments": db.scalar(
                select(func.count(Logistics.id)).where(Logistics.status != LOGISTICS_STATUSES[-1])
            ) or 0,
            "paid_revenue": float(db.scalar(
                select(func.coalesce(func.sum(Transaction.amount), 0.0)).where(Transaction.status == "paid")
            ) or 0.0),
        }

    return store.read(work)
