from datetime import datetime

from sqlalchemy import event
from sqlalchemy.orm import validates

from lojasocial.extensions import db


class Item(db.Model):
    __tablename__ = "item"
    __table_args__ = (
        db.CheckConstraint("stock_current >= 0", name="ck_item_stock_current"),
        db.CheckConstraint("min_stock >= 0", name="ck_item_min_stock"),
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String, unique=True, nullable=False)
    name = db.Column(db.String, nullable=False)
    unit = db.Column(db.String, default="unit")  # "unit" | "kg"
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    stock_current = db.Column(db.Integer, nullable=False, default=0)
    location = db.Column(db.String)
    eans = db.Column(db.String)
    notes = db.Column(db.Text)
    # Bumped on every stock change; a stale writer fails its UPDATE.
    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}


class Donor(db.Model):
    __tablename__ = "donor"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, nullable=False)
    donor_type = db.Column(db.String, default="PRIVATE")  # COMPANY | PRIVATE
    email = db.Column(db.String)
    nif = db.Column(db.String)


class Beneficiary(db.Model):
    __tablename__ = "beneficiary"
    id = db.Column(db.Integer, primary_key=True)
    student_number = db.Column(db.String, unique=True)
    name = db.Column(db.String, nullable=False)
    nif = db.Column(db.String)
    email = db.Column(db.String)
    course = db.Column(db.String)


class StockLot(db.Model):
    __tablename__ = "stock_lot"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_lot_quantity"),
        db.CheckConstraint(
            "remaining_qty >= 0 AND remaining_qty <= quantity",
            name="ck_stock_lot_remaining",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("item.id"), nullable=False, index=True)
    lot = db.Column(db.String, nullable=True)  # printed lot label
    quantity = db.Column(db.Integer, nullable=False)
    remaining_qty = db.Column(db.Integer, nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    item = db.relationship("Item", backref="stock_lots")
    donor = db.relationship("Donor")

    @validates("remaining_qty")
    def _validate_remaining_qty(self, key, value):
        if value is None:
            raise ValueError("remaining_qty is required")
        current = self.remaining_qty
        if current is not None and value > current:
            raise ValueError(
                f"remaining_qty of lot {self.id} cannot grow ({current} -> {value})"
            )
        return value


class StockMove(db.Model):
    __tablename__ = "stock_move"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_move_quantity"),
        db.CheckConstraint("direction IN ('IN', 'OUT')", name="ck_stock_move_direction"),
    )

    DIRECTION_IN = "IN"
    DIRECTION_OUT = "OUT"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("item.id"), nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("stock_lot.id"), nullable=False, index=True)
    direction = db.Column(db.String(3), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    item = db.relationship("Item", backref="stock_moves")
    lot = db.relationship("StockLot", backref="moves")


@event.listens_for(StockMove, "before_update")
def _reject_move_update(mapper, connection, target):
    raise ValueError(f"stock_move {target.id} is append-only")


@event.listens_for(StockMove, "before_delete")
def _reject_move_delete(mapper, connection, target):
    raise ValueError(f"stock_move {target.id} is append-only")


class Donation(db.Model):
    __tablename__ = "donation"
    id = db.Column(db.Integer, primary_key=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=False)
    donor_name = db.Column(db.String)
    date = db.Column(db.Date, nullable=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    donor = db.relationship("Donor", backref="donations")
    lines = db.relationship(
        "DonationLine",
        backref="donation",
        cascade="all, delete-orphan",
        order_by="DonationLine.id",
    )


class DonationLine(db.Model):
    __tablename__ = "donation_line"
    id = db.Column(db.Integer, primary_key=True)
    donation_id = db.Column(db.Integer, db.ForeignKey("donation.id"), nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("item.id"), nullable=False)
    item_name = db.Column(db.String)
    quantity = db.Column(db.Integer, nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("stock_lot.id"), nullable=True)

    item = db.relationship("Item")
    lot = db.relationship("StockLot")


class DeliveryStatus:
    SCHEDULED = "SCHEDULED"
    DELIVERED = "DELIVERED"


class Delivery(db.Model):
    __tablename__ = "delivery"
    id = db.Column(db.Integer, primary_key=True)
    beneficiary_id = db.Column(db.Integer, db.ForeignKey("beneficiary.id"), nullable=False)
    beneficiary_name = db.Column(db.String)
    status = db.Column(db.String, nullable=False, default=DeliveryStatus.SCHEDULED)
    scheduled_at = db.Column(db.Date, nullable=False)
    delivered_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    beneficiary = db.relationship("Beneficiary", backref="deliveries")
    lines = db.relationship(
        "DeliveryLine",
        backref="delivery",
        cascade="all, delete-orphan",
        order_by="DeliveryLine.id",
    )


class DeliveryLine(db.Model):
    __tablename__ = "delivery_line"
    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey("delivery.id"), nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("item.id"), nullable=False)
    lot_id = db.Column(db.Integer, db.ForeignKey("stock_lot.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    item = db.relationship("Item")
    lot = db.relationship("StockLot")
