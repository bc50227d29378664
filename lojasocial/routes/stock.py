from __future__ import annotations

from datetime import date, datetime

from flask import Blueprint, current_app, jsonify, request

from lojasocial.extensions import db
from lojasocial.models import Donor
from lojasocial.services import deliveries as delivery_service
from lojasocial.services import donations as donation_service
from lojasocial.services.stock_ledger import (
    CommitConflict,
    InsufficientStock,
    InvalidQuantity,
    ItemNotFound,
    StockError,
    StoreUnavailable,
)
from lojasocial.services.stock_overview import (
    list_item_lots,
    list_movements,
    stock_overview,
)
from lojasocial.services.stock_stores import SqlItemCatalog, get_stock_allocator

bp = Blueprint("stock", __name__, url_prefix="/stock")


ERROR_STATUS = (
    (ItemNotFound, 404),
    (InvalidQuantity, 400),
    (InsufficientStock, 409),
    (CommitConflict, 409),
    (StoreUnavailable, 503),
)


def _parse_date(value, field: str) -> date | None:
    if value in (None, ""):
        return None
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid {field} (use YYYY-MM-DD or dd/MM/yyyy).")


def _parse_int(value, field: str) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid {field}.")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid {field}.") from None


def _required_int(value, field: str) -> int:
    parsed = _parse_int(value, field)
    if parsed is None:
        raise ValueError(f"{field} is required.")
    return parsed


def _parse_quantity(value):
    # Let the allocator reject non-integers so the operator sees InvalidQuantity.
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return value
    return value


def _date_text(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _lot_payload(lot) -> dict:
    return {
        "id": lot.id,
        "item_id": lot.item_id,
        "lot": lot.lot,
        "quantity": lot.quantity,
        "remaining_qty": lot.remaining_qty,
        "expiry_date": _date_text(lot.expiry_date),
        "donor_id": lot.donor_id,
        "created_at": _date_text(lot.created_at),
    }


def _plan_payload(plan) -> dict:
    return {
        "item_id": plan.item_id,
        "requested": plan.requested,
        "allocations": [
            {"lot_id": allocation.lot_id, "quantity": allocation.quantity}
            for allocation in plan
        ],
    }


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object body.")
    return payload


def _json_lines(payload: dict) -> list[dict]:
    lines = payload.get("lines")
    if lines is None:
        return []
    if not isinstance(lines, list):
        raise ValueError("lines must be a list.")
    for line in lines:
        if not isinstance(line, dict):
            raise ValueError("Each line must be an object.")
    return lines


def _known_donor_id(value) -> int | None:
    donor_id = _parse_int(value, "donor_id")
    if donor_id is not None and db.session.get(Donor, donor_id) is None:
        raise ValueError(f"Donor {donor_id} not found.")
    return donor_id


@bp.errorhandler(StockError)
def handle_stock_error(error: StockError):
    db.session.rollback()
    status_code = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break
    if status_code >= 500:
        current_app.logger.error("Stock operation failed: %s", error)
    return jsonify(error.to_dict()), status_code


@bp.errorhandler(ValueError)
def handle_value_error(error: ValueError):
    db.session.rollback()
    return jsonify({"error": "ValidationError", "message": str(error)}), 400


@bp.get("/items")
def list_items_api():
    low_only = request.args.get("low", "").lower() in {"1", "true", "yes"}
    rows = stock_overview(
        low_stock_only=low_only,
        search=request.args.get("q"),
        alert_days=current_app.config.get("STOCK_EXPIRY_ALERT_DAYS", 30),
    )
    return jsonify(
        {
            "items": [
                {
                    "id": row.item_id,
                    "sku": row.sku,
                    "name": row.name,
                    "unit": row.unit or "",
                    "stock_current": row.stock_current,
                    "min_stock": row.min_stock,
                    "is_low": row.is_low,
                    "active_lots": row.active_lots,
                    "expiring_in_days": row.expiring_in_days,
                }
                for row in rows
            ]
        }
    )


@bp.get("/items/<int:item_id>/lots")
def item_lots_api(item_id: int):
    item = SqlItemCatalog(db.session).get(item_id)
    include_exhausted = request.args.get("active") not in {"1", "true", "yes"}
    lots = list_item_lots(item.id, include_exhausted=include_exhausted)
    return jsonify(
        {
            "item_id": item.id,
            "stock_current": item.stock_current,
            "lots": [_lot_payload(lot) for lot in lots],
        }
    )


@bp.get("/moves")
def moves_api():
    item_id = _parse_int(request.args.get("item_id"), "item_id")
    entries = list_movements(item_id)
    return jsonify(
        {
            "moves": [
                {
                    "id": entry.id,
                    "item_id": entry.item_id,
                    "lot_id": entry.lot_id,
                    "type": entry.direction,
                    "quantity": entry.quantity,
                    "created_at": _date_text(entry.created_at),
                }
                for entry in entries
            ]
        }
    )


@bp.post("/intake")
def intake_api():
    payload = _json_body()
    allocator = get_stock_allocator()
    lot_id = allocator.record_intake(
        _required_int(payload.get("item_id"), "item_id"),
        _parse_quantity(payload.get("quantity")),
        _parse_date(payload.get("expiry_date"), "expiry date"),
        _known_donor_id(payload.get("donor_id")),
        lot_label=(payload.get("lot") or None),
    )
    return jsonify({"lot_id": lot_id}), 201


@bp.post("/outtake")
def outtake_api():
    payload = _json_body()
    allocator = get_stock_allocator()
    plan = allocator.record_outtake(
        _required_int(payload.get("item_id"), "item_id"),
        _parse_quantity(payload.get("quantity")),
    )
    return jsonify(_plan_payload(plan)), 200


@bp.post("/donations")
def create_donation_api():
    payload = _json_body()
    lines = [
        donation_service.DonationLineRequest(
            item_id=_parse_int(line.get("item_id"), "item_id"),
            quantity=_parse_quantity(line.get("quantity")),
            expiry_date=_parse_date(line.get("expiry_date"), "expiry date"),
        )
        for line in _json_lines(payload)
    ]
    donation = donation_service.record_donation(
        get_stock_allocator(),
        donor_id=_parse_int(payload.get("donor_id"), "donor_id"),
        donation_date=_parse_date(payload.get("date"), "donation date"),
        lines=lines,
        notes=payload.get("notes"),
    )
    return (
        jsonify(
            {
                "id": donation.id,
                "donor_id": donation.donor_id,
                "date": _date_text(donation.date),
                "lines": [
                    {
                        "item_id": line.item_id,
                        "quantity": line.quantity,
                        "expiry_date": _date_text(line.expiry_date),
                        "lot_id": line.lot_id,
                    }
                    for line in donation.lines
                ],
            }
        ),
        201,
    )


@bp.post("/deliveries")
def create_delivery_api():
    payload = _json_body()
    lines = [
        delivery_service.DeliveryLineRequest(
            item_id=_parse_int(line.get("item_id"), "item_id"),
            quantity=_parse_quantity(line.get("quantity")),
        )
        for line in _json_lines(payload)
    ]
    delivery, plans = delivery_service.schedule_delivery(
        get_stock_allocator(),
        beneficiary_id=_parse_int(payload.get("beneficiary_id"), "beneficiary_id"),
        scheduled_at=_parse_date(payload.get("scheduled_at"), "delivery date"),
        lines=lines,
    )
    return (
        jsonify(
            {
                "id": delivery.id,
                "status": delivery.status,
                "scheduled_at": _date_text(delivery.scheduled_at),
                "lines": [
                    {"item_id": line.item_id, "lot_id": line.lot_id, "quantity": line.quantity}
                    for line in delivery.lines
                ],
                "plans": [_plan_payload(plan) for plan in plans],
            }
        ),
        201,
    )


@bp.post("/deliveries/<int:delivery_id>/delivered")
def mark_delivered_api(delivery_id: int):
    delivery = delivery_service.mark_delivered(delivery_id)
    return jsonify(
        {
            "id": delivery.id,
            "status": delivery.status,
            "delivered_at": _date_text(delivery.delivered_at),
        }
    )
