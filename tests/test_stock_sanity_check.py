import json
import os
import sys
from datetime import date

import pytest
from sqlalchemy import text

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from lojasocial import create_app
from lojasocial import stock_sanity_check
from lojasocial.extensions import db
from lojasocial.models import Item, StockLot
from lojasocial.services.stock_stores import get_stock_allocator


@pytest.fixture
def app():
    app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def _stocked_item(sku="RICE", quantity=10):
    item = Item(sku=sku, name=sku.title(), unit="unit")
    db.session.add(item)
    db.session.commit()
    allocator = get_stock_allocator()
    allocator.record_intake(item.id, quantity, date(2025, 1, 1))
    allocator.record_outtake(item.id, 3)
    return item.id


def _force_counter(item_id, value):
    db.session.execute(
        text("UPDATE item SET stock_current = :value WHERE id = :id"),
        {"value": value, "id": item_id},
    )
    db.session.commit()


def test_consistent_stock_has_no_discrepancies(app):
    _stocked_item()

    assert stock_sanity_check.find_stock_discrepancies(db.session) == []


def test_counter_drift_is_reported_and_repaired(app):
    item_id = _stocked_item()
    _force_counter(item_id, 11)

    issues = stock_sanity_check.find_stock_discrepancies(db.session)

    assert len(issues) == 1
    issue = issues[0]
    assert issue.item_id == item_id
    assert issue.stock_current == 11
    assert issue.lot_remaining == 7
    assert issue.ledger_balance == 7
    assert issue.counter_drift == 4
    assert issue.ledger_drift == 0

    summary = stock_sanity_check.repair_stock_counters(db.session, issues)

    assert summary == {"repaired": 1, "skipped": 0, "failed": 0}
    db.session.expire_all()
    assert db.session.get(Item, item_id).stock_current == 7
    assert stock_sanity_check.find_stock_discrepancies(db.session) == []


def test_ledger_only_drift_is_skipped(app):
    item_id = _stocked_item()
    db.session.execute(
        text("UPDATE stock_lot SET remaining_qty = 5 WHERE item_id = :id"),
        {"id": item_id},
    )
    _force_counter(item_id, 5)

    issues = stock_sanity_check.find_stock_discrepancies(db.session)
    assert [(issue.counter_drift, issue.ledger_drift) for issue in issues] == [(0, 2)]
    lot_id = StockLot.query.filter_by(item_id=item_id).one().id
    assert issues[0].drifting_lots == [lot_id]

    summary = stock_sanity_check.repair_stock_counters(db.session, issues)
    assert summary == {"repaired": 0, "skipped": 1, "failed": 0}


def test_run_check_exit_codes_and_output(app, capsys):
    item_id = _stocked_item()

    assert stock_sanity_check.run_check(False, False, engine=db.engine) == 0
    assert "match their lots and ledger" in capsys.readouterr().out

    _force_counter(item_id, 2)

    assert stock_sanity_check.run_check(False, False, engine=db.engine) == 1
    output = capsys.readouterr().out
    assert "Stock discrepancies detected" in output
    assert "stock_current 2 but lots hold 7" in output

    assert stock_sanity_check.run_check(True, True, engine=db.engine) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["issues"][0]["sku"] == "RICE"
    assert payload["repair_summary"] == {"repaired": 1, "skipped": 0, "failed": 0}

    db.session.expire_all()
    assert db.session.get(Item, item_id).stock_current == 7


def test_lot_drift_that_nets_out_per_item_is_reported(app):
    item_id = _stocked_item()
    get_stock_allocator().record_intake(item_id, 5, date(2025, 2, 1))
    first, second = StockLot.query.filter_by(item_id=item_id).order_by(StockLot.id).all()
    first_id, second_id = first.id, second.id
    db.session.execute(
        text("UPDATE stock_lot SET remaining_qty = 9 WHERE id = :id"), {"id": first_id}
    )
    db.session.execute(
        text("UPDATE stock_lot SET remaining_qty = 3 WHERE id = :id"), {"id": second_id}
    )
    db.session.commit()

    issues = stock_sanity_check.find_stock_discrepancies(db.session)

    assert len(issues) == 1
    issue = issues[0]
    assert (issue.stock_current, issue.lot_remaining, issue.ledger_balance) == (12, 12, 12)
    assert issue.counter_drift == 0
    assert issue.ledger_drift == 0
    assert issue.drifting_lots == [first_id, second_id]
    assert f"lots out of step with ledger: {first_id}, {second_id}" in (
        stock_sanity_check._format_issue(issue)
    )

    summary = stock_sanity_check.repair_stock_counters(db.session, issues)
    assert summary == {"repaired": 0, "skipped": 1, "failed": 0}
