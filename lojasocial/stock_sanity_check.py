import argparse
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import Config
from lojasocial.models import Item, StockLot, StockMove
from lojasocial.services.stock_ledger import remaining_by_lot, stock_from_ledger
from lojasocial.services.stock_stores import movement_entry


LOGGER_NAME = "lojasocial.stock_sanity_check"


@dataclass
class StockDiscrepancy:
    item_id: int
    sku: str
    stock_current: int
    lot_remaining: int
    ledger_balance: int
    # Lot ids whose ledger replay disagrees with remaining_qty.
    drifting_lots: list[int] = field(default_factory=list)

    @property
    def counter_drift(self) -> int:
        return self.stock_current - self.lot_remaining

    @property
    def ledger_drift(self) -> int:
        return self.ledger_balance - self.lot_remaining


def _build_engine(config: Config):
    return create_engine(
        config.SQLALCHEMY_DATABASE_URI,
        pool_pre_ping=True,
    )


def find_stock_discrepancies(session: Session) -> list[StockDiscrepancy]:
    """Compare each item's counter and lots with a replay of the ledger.

    Drift is checked per lot as well as per item, so a ledger that nets out
    for the item while disagreeing lot by lot is still reported.
    """

    lots_by_item: dict[int, dict[int, int]] = {}
    for lot_id, item_id, remaining in session.query(
        StockLot.id, StockLot.item_id, StockLot.remaining_qty
    ):
        lots_by_item.setdefault(item_id, {})[lot_id] = int(remaining or 0)

    entries_by_item: dict[int, list] = {}
    for row in session.query(StockMove).order_by(StockMove.created_at, StockMove.id):
        entries_by_item.setdefault(row.item_id, []).append(movement_entry(row))

    issues = []
    for item in session.query(Item).order_by(Item.id).all():
        lot_state = lots_by_item.get(item.id, {})
        entries = entries_by_item.get(item.id, [])
        replayed = remaining_by_lot(entries)
        drifting_lots = sorted(
            lot_id
            for lot_id in set(lot_state) | set(replayed)
            if lot_state.get(lot_id, 0) != replayed.get(lot_id, 0)
        )
        lot_remaining = sum(lot_state.values())
        ledger_balance = stock_from_ledger(entries)
        stock_current = int(item.stock_current or 0)
        if stock_current != lot_remaining or drifting_lots:
            issues.append(
                StockDiscrepancy(
                    item_id=item.id,
                    sku=item.sku,
                    stock_current=stock_current,
                    lot_remaining=lot_remaining,
                    ledger_balance=ledger_balance,
                    drifting_lots=drifting_lots,
                )
            )
    return issues


def repair_stock_counters(
    session: Session, issues: list[StockDiscrepancy], logger: logging.Logger | None = None
) -> dict[str, int]:
    """Reset ``stock_current`` to the lot total for every drifting item."""

    logger = logger or logging.getLogger(LOGGER_NAME)
    summary = {"repaired": 0, "skipped": 0, "failed": 0}
    for issue in issues:
        if issue.counter_drift == 0:
            # Ledger drift needs a person; the lots are the source of truth here.
            summary["skipped"] += 1
            continue
        item = session.get(Item, issue.item_id)
        try:
            item.stock_current = issue.lot_remaining
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("Failed to repair stock counter for %s", issue.sku)
            summary["failed"] += 1
            continue
        logger.info(
            "Repaired %s: stock_current %s -> %s",
            issue.sku,
            issue.stock_current,
            issue.lot_remaining,
        )
        summary["repaired"] += 1
    return summary


def _format_issue(issue: StockDiscrepancy) -> str:
    parts = [f"{issue.sku} (item {issue.item_id})"]
    if issue.counter_drift:
        parts.append(
            f"stock_current {issue.stock_current} but lots hold {issue.lot_remaining}"
        )
    if issue.ledger_drift:
        parts.append(f"ledger replays to {issue.ledger_balance}")
    if issue.drifting_lots:
        lot_ids = ", ".join(str(lot_id) for lot_id in issue.drifting_lots)
        parts.append(f"lots out of step with ledger: {lot_ids}")
    return ": ".join([parts[0], "; ".join(parts[1:])])


def run_check(apply_fixes: bool, as_json_output: bool, engine=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    logger = logging.getLogger(LOGGER_NAME)

    engine = engine or _build_engine(Config())

    with Session(engine) as session:
        issues = find_stock_discrepancies(session)

        repair_summary: dict[str, Any] | None = None
        exit_code = 0

        if issues and not apply_fixes:
            exit_code = 1

        if apply_fixes:
            repair_summary = repair_stock_counters(session, issues, logger=logger)
            if repair_summary.get("failed"):
                exit_code = 2

    if as_json_output:
        payload = {
            "issues": [asdict(issue) for issue in issues],
            "repair_summary": repair_summary,
        }
        print(json.dumps(payload, indent=2))
    else:
        if not issues:
            print("All item stock counters match their lots and ledger")
        else:
            print("Stock discrepancies detected:")
            for issue in issues:
                print(f" - {_format_issue(issue)}")
        if repair_summary:
            print(
                f"Repair summary: repaired={repair_summary.get('repaired', 0)} "
                f"skipped={repair_summary.get('skipped', 0)} failed={repair_summary.get('failed', 0)}"
            )

    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile item stock counters with lots and ledger")
    parser.add_argument("--fix", action="store_true", help="Reset drifting counters from lot totals")
    parser.add_argument("--json", action="store_true", dest="json_output", help="Emit JSON output")
    args = parser.parse_args()

    raise SystemExit(run_check(apply_fixes=args.fix, as_json_output=args.json_output))


if __name__ == "__main__":
    main()
