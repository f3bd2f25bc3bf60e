import time
from datetime import timedelta

import pytest

from errors import (
    OwnerNotFound, InvalidAttributes, FarmNotFound, InvalidQuantity, FutureHarvestDate,
    InsufficientQuantity, InventoryNotFound, HasDependents, NotFarmOwner,
)
from models import utcnow


def test_create_farm(farms, farmer):
    farm = farms.create_farm(farmer.id, "Nakato Estate", "Mbale", 4.5, "Arabica", certification="Organic")
    assert farm.owner_id == farmer.id
    assert farm.created_at is not None
    assert [f.id for f in farms.list_farms(owner_id=farmer.id)] == [farm.id]


def test_create_farm_unknown_owner(farms):
    with pytest.raises(OwnerNotFound):
        farms.create_farm(999, "Ghost Estate", "Nowhere", 1.0, "Robusta")


@pytest.mark.parametrize("size", [0, -1.5, float("nan"), float("inf")])
def test_create_farm_requires_positive_size(farms, farmer, size):
    with pytest.raises(InvalidAttributes):
        farms.create_farm(farmer.id, "Estate", "Mbale", size, "Arabica")


def test_record_inventory(farms, farmer):
    farm = farms.create_farm(farmer.id, "Estate", "Mbale", 2.0, "Arabica")
    lot = farms.record_inventory(farm.id, 0, "AA", utcnow().date())
    assert lot.quantity == 0
    assert farms.list_inventory(farm.id)[0].id == lot.id


def test_record_inventory_errors(farms, farmer):
    farm = farms.create_farm(farmer.id, "Estate", "Mbale", 2.0, "Arabica")
    with pytest.raises(FarmNotFound):
        farms.record_inventory(999, 10, "AA", utcnow().date())
    with pytest.raises(InvalidQuantity):
        farms.record_inventory(farm.id, -1, "AA", utcnow().date())
    with pytest.raises(FutureHarvestDate):
        farms.record_inventory(farm.id, 10, "AA", utcnow() + timedelta(days=2))


def test_adjust_inventory(farms, farmer):
    farm = farms.create_farm(farmer.id, "Estate", "Mbale", 2.0, "Arabica")
    lot = farms.record_inventory(farm.id, 100, "AA", utcnow().date() - timedelta(days=3))
    assert farms.adjust_inventory(lot.id, -40).quantity == 60
    assert farms.adjust_inventory(lot.id, 15).quantity == 75
    with pytest.raises(InsufficientQuantity):
        farms.adjust_inventory(lot.id, -76)
    assert farms.get_inventory(lot.id).quantity == 75
    with pytest.raises(InventoryNotFound):
        farms.adjust_inventory(999, 1)


def test_delete_farm_restricted_by_inventory(farms, farmer):
    farm = farms.create_farm(farmer.id, "Estate", "Mbale", 2.0, "Arabica")
    lot = farms.record_inventory(farm.id, 5, "B", utcnow().date())
    with pytest.raises(HasDependents):
        farms.delete_farm(farm.id)
    farms.delete_inventory(lot.id)
    farms.delete_farm(farm.id)
    with pytest.raises(FarmNotFound):
        farms.get_farm(farm.id)


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_quantities_are_rejected(farms, farmer, bad):
    farm = farms.create_farm(farmer.id, "Estate", "Mbale", 2.0, "Arabica")
    lot = farms.record_inventory(farm.id, 100, "AA", utcnow().date())
    with pytest.raises(InvalidQuantity):
        farms.record_inventory(farm.id, bad, "AA", utcnow().date())
    with pytest.raises(InvalidQuantity):
        farms.adjust_inventory(lot.id, bad)
    assert farms.get_inventory(lot.id).quantity == 100


def test_only_the_farm_owner_touches_its_stock(farms, farmer, buyer):
    farm = farms.create_farm(farmer.id, "Estate", "Mbale", 2.0, "Arabica")
    lot = farms.record_inventory(farm.id, 100, "AA", utcnow().date(), actor_id=farmer.id)
    with pytest.raises(NotFarmOwner):
        farms.record_inventory(farm.id, 5, "AB", utcnow().date(), actor_id=buyer.id)
    with pytest.raises(NotFarmOwner):
        farms.adjust_inventory(lot.id, -10, actor_id=buyer.id)
    assert farms.get_inventory(lot.id).quantity == 100
    assert len(farms.list_inventory(farm.id)) == 1
    assert farms.adjust_inventory(lot.id, -10, actor_id=farmer.id).quantity == 90


def test_updates_advance_updated_at_only(farms, farmer):
    farm = farms.create_farm(farmer.id, "Estate", "Mbale", 2.0, "Arabica")
    lot = farms.record_inventory(farm.id, 100, "AA", utcnow().date())
    before = farms.get_inventory(lot.id)
    time.sleep(0.01)
    farms.adjust_inventory(lot.id, -1)
    after = farms.get_inventory(lot.id)
    assert after.created_at == before.created_at
    assert after.updated_at > before.updated_at
