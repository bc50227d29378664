"""Read-side queries over items, lots and the movement ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, or_

from lojasocial.extensions import db
from lojasocial.models import Item, StockLot
from lojasocial.services.stock_ledger import LotRecord, MovementEntry
from lojasocial.services.stock_stores import (
    SqlLotStore,
    SqlMovementLedger,
    item_record,
    translate_store_errors,
)


@dataclass(frozen=True)
class ItemStockInfo:
    item_id: int
    sku: str
    name: str
    unit: str | None
    stock_current: int
    min_stock: int
    active_lots: int
    expiring_in_days: int | None

    @property
    def is_low(self) -> bool:
        return self.stock_current < self.min_stock


def stock_overview(
    *,
    today: date | None = None,
    low_stock_only: bool = False,
    search: str | None = None,
    alert_days: int = 30,
) -> list[ItemStockInfo]:
    today = today or date.today()

    with translate_store_errors():
        query = Item.query
        term = (search or "").strip().lower()
        if term:
            pattern = f"%{term}%"
            query = query.filter(
                or_(func.lower(Item.name).like(pattern), func.lower(Item.sku).like(pattern))
            )
        if low_stock_only:
            query = query.filter(Item.stock_current < Item.min_stock)
        items = query.order_by(Item.name, Item.id).all()

        closest_expiry = dict(
            db.session.query(StockLot.item_id, func.min(StockLot.expiry_date))
            .filter(StockLot.remaining_qty > 0)
            .filter(StockLot.expiry_date >= today)
            .group_by(StockLot.item_id)
            .all()
        )
        active_counts = dict(
            db.session.query(StockLot.item_id, func.count(StockLot.id))
            .filter(StockLot.remaining_qty > 0)
            .group_by(StockLot.item_id)
            .all()
        )

    overview = []
    for row in items:
        record = item_record(row)
        closest = closest_expiry.get(record.id)
        expiring_in_days = None
        if closest is not None:
            days = (closest - today).days
            if days < alert_days:
                expiring_in_days = days
        overview.append(
            ItemStockInfo(
                item_id=record.id,
                sku=record.sku,
                name=record.name,
                unit=record.unit,
                stock_current=record.stock_current,
                min_stock=record.min_stock,
                active_lots=active_counts.get(record.id, 0),
                expiring_in_days=expiring_in_days,
            )
        )
    return overview


def list_item_lots(item_id: int, include_exhausted: bool = True) -> list[LotRecord]:
    return SqlLotStore(db.session).list_lots(item_id, include_exhausted=include_exhausted)


def list_movements(item_id: int | None = None) -> list[MovementEntry]:
    return SqlMovementLedger(db.session).list_entries(item_id)
