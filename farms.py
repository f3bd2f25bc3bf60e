import logging
import math
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import select, exists
from sqlalchemy.orm import Session

from config import Settings
from database import Store
from identity import load_user
from models import Farm, Inventory, Listing, lock_row, utcnow
from errors import (
    OwnerNotFound, FarmNotFound, InventoryNotFound, InvalidAttributes,
    InvalidQuantity, FutureHarvestDate, InsufficientQuantity, HasDependents, NotFarmOwner,
)

logger = logging.getLogger(__name__)


def as_utc_naive(value) -> datetime:
    """Dates become midnight; aware datetimes are shifted to UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise InvalidAttributes(f"expected a date, got {value!r}")


def load_farm(db: Session, farm_id: int) -> Farm:
    farm = db.get(Farm, farm_id)
    if farm is None:
        raise FarmNotFound(f"farm {farm_id} not found")
    return farm


def load_inventory(db: Session, inventory_id: int, lock: bool = False) -> Inventory:
    lot = lock_row(db, Inventory, inventory_id) if lock else db.get(Inventory, inventory_id)
    if lot is None:
        raise InventoryNotFound(f"inventory lot {inventory_id} not found")
    return lot


def _check_owner(farm: Farm, actor_id: Optional[int]):
    if actor_id is not None and farm.owner_id != actor_id:
        raise NotFarmOwner(f"farm {farm.id} belongs to another user")


def apply_inventory_delta(db: Session, lot: Inventory, delta: float) -> Inventory:
    remaining = lot.quantity + delta
    if remaining < 0:
        raise InsufficientQuantity(
            f"lot {lot.id} holds {lot.quantity}, cannot remove {-delta}"
        )
    lot.quantity = remaining
    return lot


class FarmRegistry:
    def __init__(self, store: Store, settings: Settings):
        self.store = store
        self.settings = settings

    def create_farm(self, owner_id: int, name: str, location: str, size: float,
                    coffee_type: str, certification: Optional[str] = None) -> Farm:
        if size is None or not math.isfinite(size) or size <= 0:
            raise InvalidAttributes("farm size must be a positive number")
        if not name or not location or not coffee_type:
            raise InvalidAttributes("name, location and coffee type are required")

        def work(db: Session) -> Farm:
            load_user(db, owner_id, error=OwnerNotFound)
            farm = Farm(
                owner_id=owner_id,
                name=name,
                location=location,
                size=size,
                coffee_type=coffee_type,
                certification=certification,
            )
            db.add(farm)
            db.flush()
            return farm

        farm = self.store.run(work)
        logger.info("farm %s created for user %s", farm.id, owner_id)
        return farm

    def record_inventory(self, farm_id: int, quantity: float, quality_grade: str, harvest_date,
                         actor_id: Optional[int] = None) -> Inventory:
        if quantity is None or not math.isfinite(quantity) or quantity < 0:
            raise InvalidQuantity("inventory quantity must be a finite, non-negative number")
        harvested = as_utc_naive(harvest_date)
        if harvested > utcnow():
            raise FutureHarvestDate("harvest date lies in the future")

        def work(db: Session) -> Inventory:
            farm = load_farm(db, farm_id)
            _check_owner(farm, actor_id)
            lot = Inventory(farm_id=farm_id, quantity=quantity, quality_grade=quality_grade,
                            harvest_date=harvested)
            db.add(lot)
            db.flush()
            return lot

        return self.store.run(work)

    def adjust_inventory(self, inventory_id: int, delta: float, actor_id: Optional[int] = None) -> Inventory:
        if delta is None or not math.isfinite(delta):
            raise InvalidQuantity("inventory adjustment must be a finite number")

        def work(db: Session) -> Inventory:
            lot = load_inventory(db, inventory_id, lock=True)
            _check_owner(load_farm(db, lot.farm_id), actor_id)
            return apply_inventory_delta(db, lot, delta)

        lot = self.store.run(work)
        logger.info("inventory %s adjusted by %s -> %s", inventory_id, delta, lot.quantity)
        return lot

    def get_farm(self, farm_id: int) -> Farm:
        return self.store.read(lambda db: load_farm(db, farm_id))

    def get_inventory(self, inventory_id: int) -> Inventory:
        return self.store.read(lambda db: load_inventory(db, inventory_id))

    def list_farms(self, owner_id: Optional[int] = None) -> List[Farm]:
        stmt = select(Farm).order_by(Farm.id.asc())
        if owner_id is not None:
            stmt = stmt.where(Farm.owner_id == owner_id)
        return self.store.read(lambda db: list(db.scalars(stmt).all()))

    def list_inventory(self, farm_id: int) -> List[Inventory]:
        def work(db: Session):
            load_farm(db, farm_id)
            stmt = select(Inventory).where(Inventory.farm_id == farm_id).order_by(Inventory.harvest_date.desc())
            return list(db.scalars(stmt).all())

        return self.store.read(work)

    def delete_inventory(self, inventory_id: int) -> None:
        def work(db: Session):
            lot = load_inventory(db, inventory_id)
            if db.scalar(select(exists().where(Listing.inventory_id == inventory_id))):
                raise HasDependents(f"inventory lot {inventory_id} is referenced by listings")
            db.delete(lot)

        self.store.run(work)

    def delete_farm(self, farm_id: int) -> None:
        def work(db: Session):
            farm = load_farm(db, farm_id)
            if db.scalar(select(exists().where(Inventory.farm_id == farm_id))):
                raise HasDependents(f"farm {farm_id} still holds inventory")
            db.delete(farm)

        self.store.run(work)
        logger.info("deleted farm %s", farm_id)
