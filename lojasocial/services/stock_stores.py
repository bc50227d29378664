"""SQLAlchemy-backed implementations of the stock ledger stores.

Rows are converted to the frozen records of :mod:`stock_ledger` at this
boundary and validated on the way out; database errors are translated into
the ledger's error taxonomy so the allocator never sees SQLAlchemy types.
"""

from __future__ import annotations

from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from lojasocial.extensions import db
from lojasocial.models import Item, StockLot, StockMove
from lojasocial.services.stock_ledger import (
    CommitConflict,
    ItemLockRegistry,
    ItemNotFound,
    ItemRecord,
    LotRecord,
    MovementEntry,
    StockAllocator,
    StoreCorruption,
    StoreUnavailable,
)


LOCK_REGISTRY_KEY = "stock_item_locks"


@contextmanager
def translate_store_errors():
    try:
        yield
    except StaleDataError as exc:
        raise CommitConflict(f"Concurrent stock change detected: {exc}") from exc
    except SQLAlchemyError as exc:
        root_cause = getattr(exc, "orig", None) or exc
        raise StoreUnavailable(f"Stock store unavailable: {root_cause}") from exc


def item_record(row: Item) -> ItemRecord:
    stock_current = row.stock_current
    min_stock = row.min_stock if row.min_stock is not None else 0
    if stock_current is None or stock_current < 0 or min_stock < 0:
        raise StoreCorruption(
            f"item {row.id} has invalid stock fields "
            f"(stock_current={stock_current!r}, min_stock={row.min_stock!r})"
        )
    return ItemRecord(
        id=row.id,
        sku=row.sku,
        name=row.name,
        unit=row.unit,
        stock_current=stock_current,
        min_stock=min_stock,
    )


def lot_record(row: StockLot) -> LotRecord:
    quantity = row.quantity
    remaining = row.remaining_qty
    if (
        quantity is None
        or remaining is None
        or quantity <= 0
        or remaining < 0
        or remaining > quantity
    ):
        raise StoreCorruption(
            f"stock_lot {row.id} has invalid quantities "
            f"(quantity={quantity!r}, remaining_qty={remaining!r})"
        )
    return LotRecord(
        id=row.id,
        item_id=row.item_id,
        lot=row.lot,
        quantity=quantity,
        remaining_qty=remaining,
        expiry_date=row.expiry_date,
        donor_id=row.donor_id,
        created_at=row.created_at,
    )


def movement_entry(row: StockMove) -> MovementEntry:
    if row.direction not in (StockMove.DIRECTION_IN, StockMove.DIRECTION_OUT) or not row.quantity or row.quantity <= 0:
        raise StoreCorruption(
            f"stock_move {row.id} is malformed "
            f"(direction={row.direction!r}, quantity={row.quantity!r})"
        )
    return MovementEntry(
        id=row.id,
        item_id=row.item_id,
        lot_id=row.lot_id,
        direction=row.direction,
        quantity=row.quantity,
        created_at=row.created_at,
    )


class SqlItemCatalog:
    def __init__(self, session) -> None:
        self.session = session

    def _row(self, item_id) -> Item:
        with translate_store_errors():
            row = self.session.get(Item, item_id)
        if row is None:
            raise ItemNotFound(item_id)
        return row

    def get(self, item_id: int) -> ItemRecord:
        return item_record(self._row(item_id))

    def adjust_stock(self, item_id: int, delta: int) -> None:
        row = self._row(item_id)
        new_value = (row.stock_current or 0) + delta
        if new_value < 0:
            # Only reachable when the counter drifted from the lots.
            raise StoreCorruption(
                f"item {item_id} stock_current would become {new_value}"
            )
        row.stock_current = new_value
        with translate_store_errors():
            self.session.flush()


class SqlLotStore:
    def __init__(self, session) -> None:
        self.session = session

    def list_active_lots(self, item_id: int) -> list[LotRecord]:
        with translate_store_errors():
            rows = (
                self.session.query(StockLot)
                .filter(StockLot.item_id == item_id, StockLot.remaining_qty > 0)
                .order_by(StockLot.id)
                .all()
            )
        return [lot_record(row) for row in rows]

    def list_lots(self, item_id: int, include_exhausted: bool = True) -> list[LotRecord]:
        with translate_store_errors():
            query = self.session.query(StockLot).filter(StockLot.item_id == item_id)
            if not include_exhausted:
                query = query.filter(StockLot.remaining_qty > 0)
            rows = query.order_by(StockLot.id).all()
        return [lot_record(row) for row in rows]

    def create(self, lot: LotRecord) -> int:
        row = StockLot(
            item_id=lot.item_id,
            lot=lot.lot,
            quantity=lot.quantity,
            remaining_qty=lot.remaining_qty,
            expiry_date=lot.expiry_date,
            donor_id=lot.donor_id,
        )
        with translate_store_errors():
            self.session.add(row)
            self.session.flush()
        return row.id

    def decrement_remaining(self, lot_id: int, amount: int) -> None:
        with translate_store_errors():
            row = self.session.get(StockLot, lot_id)
        if row is None:
            raise StoreUnavailable(f"stock_lot {lot_id} disappeared during allocation")
        if amount <= 0 or amount > row.remaining_qty:
            raise CommitConflict(
                f"stock_lot {lot_id} has {row.remaining_qty} remaining, cannot take {amount}"
            )
        row.remaining_qty = row.remaining_qty - amount
        with translate_store_errors():
            self.session.flush()


class SqlMovementLedger:
    def __init__(self, session) -> None:
        self.session = session

    def append(self, entry: MovementEntry) -> int:
        row = StockMove(
            item_id=entry.item_id,
            lot_id=entry.lot_id,
            direction=entry.direction,
            quantity=entry.quantity,
        )
        if entry.created_at is not None:
            row.created_at = entry.created_at
        with translate_store_errors():
            self.session.add(row)
            self.session.flush()
        return row.id

    def list_entries(self, item_id: int | None = None) -> list[MovementEntry]:
        with translate_store_errors():
            query = self.session.query(StockMove)
            if item_id is not None:
                query = query.filter(StockMove.item_id == item_id)
            rows = query.order_by(StockMove.created_at, StockMove.id).all()
        return [movement_entry(row) for row in rows]


class SqlTransaction:
    def __init__(self, session) -> None:
        self.session = session

    def commit(self) -> None:
        with translate_store_errors():
            self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


def get_item_locks(app=None) -> ItemLockRegistry:
    app = app or current_app._get_current_object()
    return app.extensions.setdefault(LOCK_REGISTRY_KEY, ItemLockRegistry())


def get_stock_allocator(session=None) -> StockAllocator:
    """Build an allocator over the request's session and the app's item locks."""

    session = session or db.session
    return StockAllocator(
        catalog=SqlItemCatalog(session),
        lots=SqlLotStore(session),
        ledger=SqlMovementLedger(session),
        transaction=SqlTransaction(session),
        locks=get_item_locks(),
        max_retries=current_app.config.get("STOCK_COMMIT_RETRIES", 3),
        lock_timeout=current_app.config.get("STOCK_LOCK_TIMEOUT"),
    )
