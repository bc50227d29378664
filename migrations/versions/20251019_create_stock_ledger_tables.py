"""Create item, lot, movement ledger, donation and delivery tables.

Revision ID: 20251019_create_stock_ledger_tables
Revises:
Create Date: 2025-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20251019_create_stock_ledger_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "item",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("min_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("eans", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("sku"),
        sa.CheckConstraint("stock_current >= 0", name="ck_item_stock_current"),
        sa.CheckConstraint("min_stock >= 0", name="ck_item_min_stock"),
    )

    op.create_table(
        "donor",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("donor_type", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("nif", sa.String(), nullable=True),
    )

    op.create_table(
        "beneficiary",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("student_number", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("nif", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("course", sa.String(), nullable=True),
        sa.UniqueConstraint("student_number"),
    )

    op.create_table(
        "stock_lot",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("lot", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("remaining_qty", sa.Integer(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("donor_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["item.id"]),
        sa.ForeignKeyConstraint(["donor_id"], ["donor.id"]),
        sa.CheckConstraint("quantity > 0", name="ck_stock_lot_quantity"),
        sa.CheckConstraint(
            "remaining_qty >= 0 AND remaining_qty <= quantity",
            name="ck_stock_lot_remaining",
        ),
    )
    op.create_index("ix_stock_lot_item_id", "stock_lot", ["item_id"])

    op.create_table(
        "stock_move",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("lot_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(length=3), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["item.id"]),
        sa.ForeignKeyConstraint(["lot_id"], ["stock_lot.id"]),
        sa.CheckConstraint("quantity > 0", name="ck_stock_move_quantity"),
        sa.CheckConstraint("direction IN ('IN', 'OUT')", name="ck_stock_move_direction"),
    )
    op.create_index("ix_stock_move_item_id", "stock_move", ["item_id"])
    op.create_index("ix_stock_move_lot_id", "stock_move", ["lot_id"])

    op.create_table(
        "donation",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("donor_id", sa.Integer(), nullable=False),
        sa.Column("donor_name", sa.String(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["donor_id"], ["donor.id"]),
    )

    op.create_table(
        "donation_line",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("donation_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("item_name", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("lot_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["donation_id"], ["donation.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["item.id"]),
        sa.ForeignKeyConstraint(["lot_id"], ["stock_lot.id"]),
    )

    op.create_table(
        "delivery",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("beneficiary_id", sa.Integer(), nullable=False),
        sa.Column("beneficiary_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="SCHEDULED"),
        sa.Column("scheduled_at", sa.Date(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["beneficiary_id"], ["beneficiary.id"]),
    )

    op.create_table(
        "delivery_line",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("delivery_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("lot_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["delivery_id"], ["delivery.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["item.id"]),
        sa.ForeignKeyConstraint(["lot_id"], ["stock_lot.id"]),
    )


def downgrade() -> None:
    op.drop_table("delivery_line")
    op.drop_table("delivery")
    op.drop_table("donation_line")
    op.drop_table("donation")
    op.drop_index("ix_stock_move_lot_id", table_name="stock_move")
    op.drop_index("ix_stock_move_item_id", table_name="stock_move")
    op.drop_table("stock_move")
    op.drop_index("ix_stock_lot_item_id", table_name="stock_lot")
    op.drop_table("stock_lot")
    op.drop_table("beneficiary")
    op.drop_table("donor")
    op.drop_table("item")
