"""Stock ledger: lot creation on intake, FIFO-by-expiry consumption on outtake.

The :class:`StockAllocator` coordinates three narrow stores (item catalog, lot
store and movement ledger) and makes every intake or outtake a single unit:
all of its writes commit together or none do. Concurrent operations on the
same item are serialized by an :class:`ItemLockRegistry`; writers in other
processes are caught by the store raising :class:`CommitConflict`, after which
the whole check-then-act sequence is re-run.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Iterator, Protocol, Sequence, TypeVar


logger = logging.getLogger(__name__)

DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"

T = TypeVar("T")


class StockError(Exception):
    """Base class for failures surfaced to the operator verbatim."""

    kind = "StockError"

    def to_dict(self) -> dict[str, object]:
        return {"error": self.kind, "message": str(self)}


class ItemNotFound(StockError):
    kind = "ItemNotFound"

    def __init__(self, item_id) -> None:
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["item_id"] = self.item_id
        return payload


class InvalidQuantity(StockError, ValueError):
    kind = "InvalidQuantity"

    def __init__(self, quantity) -> None:
        super().__init__(f"Quantity must be a positive integer (got {quantity!r})")
        self.quantity = quantity

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["quantity"] = self.quantity if isinstance(self.quantity, int) else str(self.quantity)
        return payload


class InsufficientStock(StockError):
    kind = "InsufficientStock"

    def __init__(self, available: int, requested: int, item_id=None) -> None:
        label = f" for item {item_id}" if item_id is not None else ""
        super().__init__(
            f"Insufficient stock{label}: available {available}, requested {requested}"
        )
        self.available = available
        self.requested = requested
        self.item_id = item_id

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload.update(
            {"item_id": self.item_id, "available": self.available, "requested": self.requested}
        )
        return payload


class CommitConflict(StockError):
    kind = "CommitConflict"

    def __init__(self, message: str = "Concurrent stock change detected", attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["attempts"] = self.attempts
        return payload


class StoreUnavailable(StockError):
    kind = "StoreUnavailable"


class StoreCorruption(StoreUnavailable):
    """A persisted record failed validation when read back."""

    kind = "StoreCorruption"


@dataclass(frozen=True)
class ItemRecord:
    id: int
    sku: str
    name: str
    unit: str | None
    stock_current: int
    min_stock: int


@dataclass(frozen=True)
class LotRecord:
    item_id: int
    quantity: int
    remaining_qty: int
    lot: str | None = None
    expiry_date: date | None = None
    donor_id: int | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class MovementEntry:
    item_id: int
    lot_id: int
    direction: str
    quantity: int
    created_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class LotAllocation:
    lot_id: int
    quantity: int


@dataclass(frozen=True)
class OuttakePlan:
    item_id: int
    requested: int
    allocations: tuple[LotAllocation, ...]

    def __iter__(self) -> Iterator[LotAllocation]:
        return iter(self.allocations)

    def __len__(self) -> int:
        return len(self.allocations)

    def as_pairs(self) -> list[tuple[int, int]]:
        return [(allocation.lot_id, allocation.quantity) for allocation in self.allocations]


class ItemCatalog(Protocol):
    def get(self, item_id: int) -> ItemRecord:
        """Return the item or raise :class:`ItemNotFound`."""

    def adjust_stock(self, item_id: int, delta: int) -> None:
        ...


class LotStore(Protocol):
    def list_active_lots(self, item_id: int) -> list[LotRecord]:
        """Lots with ``remaining_qty > 0`` in creation order."""

    def create(self, lot: LotRecord) -> int:
        ...

    def decrement_remaining(self, lot_id: int, amount: int) -> None:
        ...


class MovementLedger(Protocol):
    def append(self, entry: MovementEntry) -> int:
        ...


class Transaction(Protocol):
    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


def require_positive_quantity(quantity) -> int:
    # bool is an int subclass; True is not a quantity.
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(quantity)
    return quantity


def fifo_sort_key(lot: LotRecord) -> tuple[bool, date]:
    return (lot.expiry_date is None, lot.expiry_date or date.min)


def allocate_fifo(lots: Sequence[LotRecord], quantity: int, item_id=None) -> tuple[LotAllocation, ...]:
    """Plan consumption of ``quantity`` from ``lots``, soonest expiry first.

    Lots without an expiry date go last. ``sorted`` is stable, so lots sharing
    an expiry keep the order they were given in (creation order). Raises
    :class:`InsufficientStock` before planning anything when the active lots
    cannot cover the request.
    """

    active = [lot for lot in lots if lot.remaining_qty > 0]
    available = sum(lot.remaining_qty for lot in active)
    if available < quantity:
        raise InsufficientStock(available, quantity, item_id=item_id)

    allocations: list[LotAllocation] = []
    still_needed = quantity
    for lot in sorted(active, key=fifo_sort_key):
        if still_needed == 0:
            break
        consumed = min(lot.remaining_qty, still_needed)
        allocations.append(LotAllocation(lot_id=lot.id, quantity=consumed))
        still_needed -= consumed
    return tuple(allocations)


def stock_from_ledger(entries: Iterable[MovementEntry]) -> int:
    """Replay movements into an on-hand quantity."""

    total = 0
    for entry in entries:
        if entry.direction == DIRECTION_IN:
            total += entry.quantity
        elif entry.direction == DIRECTION_OUT:
            total -= entry.quantity
        else:
            raise StoreCorruption(f"Unknown movement direction {entry.direction!r}")
    return total


def remaining_by_lot(entries: Iterable[MovementEntry]) -> dict[int, int]:
    """Replay movements into remaining quantity per lot."""

    remaining: dict[int, int] = {}
    ordered = sorted(entries, key=lambda e: (e.created_at or datetime.min, e.id or 0))
    for entry in ordered:
        sign = 1 if entry.direction == DIRECTION_IN else -1
        remaining[entry.lot_id] = remaining.get(entry.lot_id, 0) + sign * entry.quantity
    return remaining


def default_lot_label() -> str:
    return f"LOT-{datetime.utcnow():%Y%m%d%H%M%S%f}"


class ItemLockRegistry:
    """One lock per item id; different items never block each other.

    Locks are held weakly and disappear once no caller holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, item_id) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = self._locks[item_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, item_ids: Iterable, timeout: float | None = None):
        # A fixed acquisition order keeps multi-item deliveries deadlock free.
        ordered = sorted(set(item_ids), key=lambda value: (str(type(value)), value))
        acquired: list[threading.Lock] = []
        try:
            for item_id in ordered:
                lock = self._lock_for(item_id)
                if timeout is None:
                    lock.acquire()
                elif not lock.acquire(timeout=timeout):
                    raise CommitConflict(
                        f"Timed out after {timeout}s waiting for stock lock on item {item_id}"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class StockAllocator:
    def __init__(
        self,
        *,
        catalog: ItemCatalog,
        lots: LotStore,
        ledger: MovementLedger,
        transaction: Transaction,
        locks: ItemLockRegistry | None = None,
        max_retries: int = 3,
        lock_timeout: float | None = None,
    ) -> None:
        self.catalog = catalog
        self.lots = lots
        self.ledger = ledger
        self.transaction = transaction
        self.locks = locks if locks is not None else ItemLockRegistry()
        self.max_retries = max(0, int(max_retries))
        self.lock_timeout = lock_timeout

    def record_intake(
        self,
        item_id: int,
        quantity: int,
        expiry_date: date | None = None,
        donor_id: int | None = None,
        *,
        lot_label: str | None = None,
    ) -> int:
        require_positive_quantity(quantity)
        lot_id = self.atomic(
            [item_id],
            lambda: self.apply_intake(
                item_id, quantity, expiry_date, donor_id, lot_label=lot_label
            ),
        )
        logger.info("Stock intake committed: item=%s lot=%s qty=%s", item_id, lot_id, quantity)
        return lot_id

    def record_outtake(self, item_id: int, quantity: int) -> OuttakePlan:
        require_positive_quantity(quantity)
        plan = self.atomic([item_id], lambda: self.apply_outtake(item_id, quantity))
        logger.info(
            "Stock outtake committed: item=%s qty=%s lots=%s",
            item_id,
            quantity,
            plan.as_pairs(),
        )
        return plan

    def apply_intake(
        self,
        item_id: int,
        quantity: int,
        expiry_date: date | None = None,
        donor_id: int | None = None,
        *,
        lot_label: str | None = None,
    ) -> int:
        """Write one intake into the open transaction. Use inside :meth:`atomic`."""

        require_positive_quantity(quantity)
        self.catalog.get(item_id)
        lot_id = self.lots.create(
            LotRecord(
                item_id=item_id,
                quantity=quantity,
                remaining_qty=quantity,
                lot=lot_label or default_lot_label(),
                expiry_date=expiry_date,
                donor_id=donor_id,
            )
        )
        self.catalog.adjust_stock(item_id, quantity)
        self.ledger.append(
            MovementEntry(
                item_id=item_id,
                lot_id=lot_id,
                direction=DIRECTION_IN,
                quantity=quantity,
            )
        )
        return lot_id

    def apply_outtake(self, item_id: int, quantity: int) -> OuttakePlan:
        """Write one outtake into the open transaction. Use inside :meth:`atomic`."""

        require_positive_quantity(quantity)
        self.catalog.get(item_id)
        allocations = allocate_fifo(
            self.lots.list_active_lots(item_id), quantity, item_id=item_id
        )
        for allocation in allocations:
            self.lots.decrement_remaining(allocation.lot_id, allocation.quantity)
            self.ledger.append(
                MovementEntry(
                    item_id=item_id,
                    lot_id=allocation.lot_id,
                    direction=DIRECTION_OUT,
                    quantity=allocation.quantity,
                )
            )
        self.catalog.adjust_stock(item_id, -quantity)
        return OuttakePlan(item_id=item_id, requested=quantity, allocations=allocations)

    def atomic(self, item_ids: Iterable, work: Callable[[], T]) -> T:
        """Run ``work`` and commit it as one unit under the item locks.

        Any failure rolls every write back. A :class:`CommitConflict` re-runs
        ``work`` from scratch, up to ``max_retries`` extra times.
        """

        attempts = 0
        with self.locks.hold(item_ids, timeout=self.lock_timeout):
            while True:
                attempts += 1
                try:
                    result = work()
                    self.transaction.commit()
                except CommitConflict as exc:
                    self._rollback(exc)
                    if attempts > self.max_retries:
                        raise CommitConflict(
                            f"Stock change abandoned after {attempts} conflicting attempts",
                            attempts=attempts,
                        ) from exc
                    logger.warning(
                        "Stock commit conflict on attempt %s; retrying", attempts
                    )
                    continue
                except Exception as exc:
                    self._rollback(exc)
                    raise
                return result

    def _rollback(self, cause: BaseException) -> None:
        try:
            self.transaction.rollback()
        except Exception:
            logger.critical(
                "Rollback failed after %s: stock state may be partially applied and "
                "needs manual reconciliation",
                type(cause).__name__,
                exc_info=True,
            )
            raise
        if not isinstance(cause, (StockError, ValueError)):
            logger.warning("Stock change rolled back after %r", cause)
