from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from lojasocial.extensions import db
from lojasocial.models import Donation, DonationLine, Donor, Item
from lojasocial.services.stock_ledger import StockAllocator, require_positive_quantity


@dataclass(frozen=True)
class DonationLineRequest:
    item_id: int
    quantity: int
    expiry_date: date | None = None


def record_donation(
    allocator: StockAllocator,
    *,
    donor_id: int | None,
    donation_date: date | None,
    lines: list[DonationLineRequest],
    notes: str | None = None,
) -> Donation:
    """Save a donation and receive every line into stock as one unit.

    Each line becomes its own lot. If any intake fails nothing is saved, so a
    donation is never left recorded without its stock.
    """

    if not donor_id:
        raise ValueError("A donor is required.")
    if donation_date is None:
        raise ValueError("A donation date is required.")
    if not lines:
        raise ValueError("Add at least one item to the donation.")
    for line in lines:
        if not line.item_id:
            raise ValueError("Every donation line needs an item.")
        require_positive_quantity(line.quantity)

    donor = db.session.get(Donor, donor_id)
    if donor is None:
        raise ValueError(f"Donor {donor_id} not found.")

    def _submit() -> int:
        donation = Donation(
            donor_id=donor.id,
            donor_name=donor.name,
            date=donation_date,
            notes=(notes or "").strip() or None,
        )
        db.session.add(donation)
        db.session.flush()

        for index, line in enumerate(lines, start=1):
            lot_id = allocator.apply_intake(
                line.item_id,
                line.quantity,
                line.expiry_date,
                donor.id,
                lot_label=f"LOT-{donation.id}-{index}",
            )
            item = db.session.get(Item, line.item_id)
            donation.lines.append(
                DonationLine(
                    item_id=line.item_id,
                    item_name=item.name if item else None,
                    quantity=line.quantity,
                    expiry_date=line.expiry_date,
                    lot_id=lot_id,
                )
            )
        db.session.flush()
        return donation.id

    donation_id = allocator.atomic([line.item_id for line in lines], _submit)
    return db.session.get(Donation, donation_id)
