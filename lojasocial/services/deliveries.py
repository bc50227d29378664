from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from lojasocial.extensions import db
from lojasocial.models import Beneficiary, Delivery, DeliveryLine, DeliveryStatus
from lojasocial.services.stock_ledger import (
    OuttakePlan,
    StockAllocator,
    require_positive_quantity,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryLineRequest:
    item_id: int
    quantity: int


def schedule_delivery(
    allocator: StockAllocator,
    *,
    beneficiary_id: int | None,
    scheduled_at: date | None,
    lines: list[DeliveryLineRequest],
) -> tuple[Delivery, list[OuttakePlan]]:
    """Create a scheduled delivery and draw its stock, oldest expiry first.

    Availability is checked and consumed in the same unit as the delivery
    itself; one delivery line is written per lot drawn from.
    """

    if not beneficiary_id:
        raise ValueError("A beneficiary is required.")
    if scheduled_at is None:
        raise ValueError("A delivery date is required.")
    if not lines:
        raise ValueError("Add at least one item to the delivery.")
    for line in lines:
        if not line.item_id:
            raise ValueError("Every delivery line needs an item.")
        require_positive_quantity(line.quantity)

    beneficiary = db.session.get(Beneficiary, beneficiary_id)
    if beneficiary is None:
        raise ValueError(f"Beneficiary {beneficiary_id} not found.")

    def _submit() -> tuple[int, list[OuttakePlan]]:
        delivery = Delivery(
            beneficiary_id=beneficiary.id,
            beneficiary_name=beneficiary.name,
            status=DeliveryStatus.SCHEDULED,
            scheduled_at=scheduled_at,
        )
        db.session.add(delivery)

        plans = []
        for line in lines:
            plan = allocator.apply_outtake(line.item_id, line.quantity)
            plans.append(plan)
            for allocation in plan:
                delivery.lines.append(
                    DeliveryLine(
                        item_id=line.item_id,
                        lot_id=allocation.lot_id,
                        quantity=allocation.quantity,
                    )
                )
        db.session.flush()
        return delivery.id, plans

    delivery_id, plans = allocator.atomic([line.item_id for line in lines], _submit)
    return db.session.get(Delivery, delivery_id), plans


def mark_delivered(delivery_id: int) -> Delivery:
    delivery = db.session.get(Delivery, delivery_id)
    if delivery is None:
        raise ValueError(f"Delivery {delivery_id} not found.")
    if delivery.status == DeliveryStatus.DELIVERED:
        raise ValueError(f"Delivery {delivery_id} was already delivered.")

    delivery.status = DeliveryStatus.DELIVERED
    delivery.delivered_at = datetime.utcnow()
    db.session.commit()
    logger.info("Delivery %s marked delivered", delivery_id)
    return delivery
