import os
import sys
from datetime import date, datetime

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from lojasocial.services.stock_ledger import (
    CommitConflict,
    InsufficientStock,
    InvalidQuantity,
    ItemLockRegistry,
    LotAllocation,
    LotRecord,
    MovementEntry,
    OuttakePlan,
    StoreCorruption,
    allocate_fifo,
    remaining_by_lot,
    require_positive_quantity,
    stock_from_ledger,
)


def _lot(lot_id, remaining, expiry=None, quantity=None):
    return LotRecord(
        id=lot_id,
        item_id=1,
        quantity=quantity or remaining or 1,
        remaining_qty=remaining,
        expiry_date=expiry,
    )


def test_allocation_takes_soonest_expiry_first():
    lots = [
        _lot(1, 100, date(2025, 6, 1)),
        _lot(2, 50, date(2025, 3, 1)),
    ]

    allocations = allocate_fifo(lots, 60)

    assert allocations == (LotAllocation(2, 50), LotAllocation(1, 10))


def test_lots_without_expiry_are_used_last():
    lots = [
        _lot(1, 5),
        _lot(2, 5, date(2030, 1, 1)),
        _lot(3, 5, date(2024, 1, 1)),
    ]

    allocations = allocate_fifo(lots, 12)

    assert [(a.lot_id, a.quantity) for a in allocations] == [(3, 5), (2, 5), (1, 2)]


def test_ties_keep_the_given_order():
    lots = [
        _lot(7, 2, date(2025, 1, 1)),
        _lot(3, 2, date(2025, 1, 1)),
        _lot(5, 2),
        _lot(4, 2),
    ]

    allocations = allocate_fifo(lots, 7)

    assert [(a.lot_id, a.quantity) for a in allocations] == [(7, 2), (3, 2), (5, 2), (4, 1)]


def test_exhausted_lots_are_ignored():
    lots = [
        _lot(1, 0, date(2020, 1, 1), quantity=10),
        _lot(2, 4, date(2025, 1, 1)),
    ]

    allocations = allocate_fifo(lots, 4)

    assert allocations == (LotAllocation(2, 4),)


def test_allocation_stops_once_request_is_covered():
    lots = [_lot(1, 10, date(2025, 1, 1)), _lot(2, 10, date(2025, 2, 1))]

    allocations = allocate_fifo(lots, 10)

    assert allocations == (LotAllocation(1, 10),)


def test_allocation_exactly_drains_everything():
    lots = [_lot(1, 3), _lot(2, 4, date(2025, 1, 1))]

    allocations = allocate_fifo(lots, 7)

    assert sum(a.quantity for a in allocations) == 7
    assert {a.lot_id for a in allocations} == {1, 2}


def test_shortfall_raises_with_available_and_requested():
    lots = [_lot(1, 3), _lot(2, 4, date(2025, 1, 1))]

    with pytest.raises(InsufficientStock) as excinfo:
        allocate_fifo(lots, 8, item_id=42)

    assert excinfo.value.available == 7
    assert excinfo.value.requested == 8
    assert excinfo.value.to_dict() == {
        "error": "InsufficientStock",
        "message": "Insufficient stock for item 42: available 7, requested 8",
        "item_id": 42,
        "available": 7,
        "requested": 8,
    }


def test_empty_lot_list_has_nothing_available():
    with pytest.raises(InsufficientStock) as excinfo:
        allocate_fifo([], 1)
    assert excinfo.value.available == 0


def test_outtake_plan_iterates_its_allocations():
    plan = OuttakePlan(
        item_id=1,
        requested=6,
        allocations=(LotAllocation(2, 5), LotAllocation(1, 1)),
    )

    assert len(plan) == 2
    assert list(plan) == [LotAllocation(2, 5), LotAllocation(1, 1)]
    assert plan.as_pairs() == [(2, 5), (1, 1)]


@pytest.mark.parametrize("quantity", [1, 5, 10_000])
def test_positive_integers_are_valid_quantities(quantity):
    assert require_positive_quantity(quantity) == quantity


@pytest.mark.parametrize("quantity", [0, -1, 2.0, "3", None, True, False])
def test_other_values_are_invalid_quantities(quantity):
    with pytest.raises(InvalidQuantity):
        require_positive_quantity(quantity)


def test_invalid_quantity_is_also_a_value_error():
    with pytest.raises(ValueError):
        require_positive_quantity(-2)


def test_ledger_replay_sums_signed_movements():
    entries = [
        MovementEntry(item_id=1, lot_id=1, direction="IN", quantity=100),
        MovementEntry(item_id=1, lot_id=2, direction="IN", quantity=50),
        MovementEntry(item_id=1, lot_id=2, direction="OUT", quantity=50),
        MovementEntry(item_id=1, lot_id=1, direction="OUT", quantity=10),
    ]

    assert stock_from_ledger(entries) == 90
    assert stock_from_ledger([]) == 0


def test_ledger_replay_rejects_unknown_direction():
    entries = [MovementEntry(item_id=1, lot_id=1, direction="SIDEWAYS", quantity=1)]

    with pytest.raises(StoreCorruption):
        stock_from_ledger(entries)


def test_remaining_by_lot_replays_each_lot():
    start = datetime(2025, 1, 1, 9, 0)
    entries = [
        MovementEntry(item_id=1, lot_id=2, direction="OUT", quantity=50, created_at=start.replace(hour=11), id=3),
        MovementEntry(item_id=1, lot_id=1, direction="IN", quantity=100, created_at=start, id=1),
        MovementEntry(item_id=1, lot_id=2, direction="IN", quantity=50, created_at=start.replace(hour=10), id=2),
        MovementEntry(item_id=1, lot_id=1, direction="OUT", quantity=10, created_at=start.replace(hour=11), id=4),
    ]

    assert remaining_by_lot(entries) == {1: 90, 2: 0}


def test_lock_registry_times_out_on_a_held_item():
    locks = ItemLockRegistry()

    with locks.hold([1]):
        with pytest.raises(CommitConflict):
            with locks.hold([1], timeout=0.01):
                pass


def test_lock_registry_does_not_block_other_items():
    locks = ItemLockRegistry()
    entered = []

    with locks.hold([1]):
        with locks.hold([2, 3], timeout=0.01):
            entered.append(True)

    assert entered == [True]


def test_lock_registry_releases_on_error():
    locks = ItemLockRegistry()

    with pytest.raises(RuntimeError):
        with locks.hold([1, 2]):
            raise RuntimeError("boom")

    with locks.hold([2, 1], timeout=0.01):
        pass


def test_lock_registry_releases_partial_acquisition_on_timeout():
    locks = ItemLockRegistry()

    with locks.hold([2]):
        with pytest.raises(CommitConflict):
            with locks.hold([1, 2], timeout=0.01):
                pass

    # Item 1 was acquired before the timeout on item 2 and must be free again.
    with locks.hold([1], timeout=0.01):
        pass


def test_lock_registry_forgets_released_items():
    locks = ItemLockRegistry()

    with locks.hold([1, 2]):
        assert len(locks._locks) == 2

    # Ids that turn out not to exist must not pile up either.
    for item_id in range(100, 200):
        with locks.hold([item_id], timeout=0.01):
            pass

    assert len(locks._locks) == 0
