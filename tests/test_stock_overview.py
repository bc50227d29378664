import os
import sys
from datetime import date

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from lojasocial import create_app
from lojasocial.extensions import db
from lojasocial.models import Item
from lojasocial.services.stock_overview import (
    list_item_lots,
    list_movements,
    stock_overview,
)
from lojasocial.services.stock_stores import get_stock_allocator


TODAY = date(2025, 1, 1)


@pytest.fixture
def app():
    app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def allocator(app):
    return get_stock_allocator()


def _make_item(sku, name, min_stock=0):
    item = Item(sku=sku, name=name, unit="unit", min_stock=min_stock)
    db.session.add(item)
    db.session.commit()
    return item.id


def _by_sku(rows):
    return {row.sku: row for row in rows}


def test_overview_reports_counts_and_low_stock(allocator):
    rice = _make_item("RICE", "Rice", min_stock=10)
    milk = _make_item("MILK", "Milk", min_stock=2)
    allocator.record_intake(rice, 4)
    allocator.record_intake(rice, 3)
    allocator.record_intake(milk, 6)
    allocator.record_outtake(milk, 6)
    allocator.record_intake(milk, 5)

    rows = _by_sku(stock_overview(today=TODAY))

    assert rows["RICE"].stock_current == 7
    assert rows["RICE"].active_lots == 2
    assert rows["RICE"].is_low is True
    assert rows["MILK"].stock_current == 5
    assert rows["MILK"].active_lots == 1
    assert rows["MILK"].is_low is False


def test_item_at_minimum_is_not_low(allocator):
    oil = _make_item("OIL", "Oil", min_stock=5)
    allocator.record_intake(oil, 5)

    assert stock_overview(today=TODAY)[0].is_low is False
    assert stock_overview(today=TODAY, low_stock_only=True) == []


def test_low_stock_filter_and_search(allocator):
    _make_item("RICE-1", "Rice Agulha", min_stock=5)
    milk = _make_item("MILK-1", "Milk", min_stock=1)
    allocator.record_intake(milk, 3)

    low = stock_overview(today=TODAY, low_stock_only=True)
    assert [row.sku for row in low] == ["RICE-1"]

    by_name = stock_overview(today=TODAY, search="agulha")
    assert [row.sku for row in by_name] == ["RICE-1"]

    by_sku = stock_overview(today=TODAY, search="milk-")
    assert [row.sku for row in by_sku] == ["MILK-1"]


def test_expiry_alert_uses_closest_upcoming_active_lot(allocator):
    rice = _make_item("RICE", "Rice")
    allocator.record_intake(rice, 5, date(2024, 12, 1))  # already expired
    allocator.record_intake(rice, 5, date(2025, 1, 20))
    allocator.record_intake(rice, 5, date(2025, 1, 10))

    row = stock_overview(today=TODAY)[0]

    assert row.expiring_in_days == 9


def test_expiry_alert_ignores_far_and_exhausted_lots(allocator):
    rice = _make_item("RICE", "Rice")
    milk = _make_item("MILK", "Milk")
    allocator.record_intake(rice, 5, date(2025, 1, 3))
    allocator.record_intake(rice, 5, date(2025, 6, 1))
    # The soonest lot is consumed first and no longer counts.
    allocator.record_outtake(rice, 5)
    allocator.record_intake(milk, 5, date(2025, 3, 1))

    rows = _by_sku(stock_overview(today=TODAY, alert_days=30))

    assert rows["RICE"].expiring_in_days is None
    assert rows["MILK"].expiring_in_days is None

    wide = _by_sku(stock_overview(today=TODAY, alert_days=365))
    assert wide["RICE"].expiring_in_days == 151
    assert wide["MILK"].expiring_in_days == 59


def test_list_item_lots_can_hide_exhausted(allocator):
    rice = _make_item("RICE", "Rice")
    first = allocator.record_intake(rice, 2, date(2025, 1, 1))
    second = allocator.record_intake(rice, 2, date(2025, 2, 1))
    allocator.record_outtake(rice, 2)

    assert [lot.id for lot in list_item_lots(rice)] == [first, second]
    assert [lot.id for lot in list_item_lots(rice, include_exhausted=False)] == [second]


def test_list_movements_filters_by_item(allocator):
    rice = _make_item("RICE", "Rice")
    milk = _make_item("MILK", "Milk")
    allocator.record_intake(rice, 2)
    allocator.record_intake(milk, 2)
    allocator.record_outtake(rice, 1)

    assert [entry.direction for entry in list_movements(rice)] == ["IN", "OUT"]
    assert len(list_movements()) == 3
