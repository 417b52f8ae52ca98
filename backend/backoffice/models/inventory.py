from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


MOVEMENT_SALE_ISSUE = "sale_issue"
MOVEMENT_PURCHASE_RECEIPT = "purchase_receipt"
MOVEMENT_ADJUSTMENT_INCREASE = "adjustment_increase"
MOVEMENT_ADJUSTMENT_DECREASE = "adjustment_decrease"
MOVEMENT_RETURN_FROM_CUSTOMER = "return_from_customer"
MOVEMENT_RETURN_TO_SUPPLIER = "return_to_supplier"
MOVEMENT_TRANSFER_OUT = "transfer_out"
MOVEMENT_TRANSFER_IN = "transfer_in"

MOVEMENT_TYPES = (
    MOVEMENT_SALE_ISSUE,
    MOVEMENT_PURCHASE_RECEIPT,
    MOVEMENT_ADJUSTMENT_INCREASE,
    MOVEMENT_ADJUSTMENT_DECREASE,
    MOVEMENT_RETURN_FROM_CUSTOMER,
    MOVEMENT_RETURN_TO_SUPPLIER,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_TRANSFER_IN,
)

# location_key for stock held without a warehouse
NO_WAREHOUSE = "*"


def location_key(warehouse_id: int | None) -> str:
    return NO_WAREHOUSE if warehouse_id is None else str(warehouse_id)


class StockBalance(db.Model):
    """
    Cached running on-hand balance per (item, warehouse).

    INVARIANT: quantity == SUM(StockMovement.quantity_delta) for the same
    item and location. Both are written in the same unit of work.

    location_key is "*" when the balance is not tied to a warehouse, so the
    unique constraint also covers the warehouse-less balance (NULLs would not
    collide in a plain unique index).
    """
    __tablename__ = "stock_balances"
    __table_args__ = (
        db.UniqueConstraint("item_id", "location_key", name="uq_stock_balances_item_location"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)
    location_key = db.Column(db.String(32), nullable=False)

    quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "warehouse_id": self.warehouse_id,
            "quantity": str(self.quantity),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class StockMovement(db.Model):
    """
    Immutable record of one on-hand change.

    quantity_delta is the change actually applied (post-clamp).
    requested_delta is what the caller asked for; the two differ only when
    the clamp policy stopped a decrease at zero.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_item_location", "item_id", "warehouse_id", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)

    quantity_delta = db.Column(db.Numeric(14, 3), nullable=False)
    requested_delta = db.Column(db.Numeric(14, 3), nullable=False)

    movement_type = db.Column(db.String(32), nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=True)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def was_clamped(self) -> bool:
        return self.quantity_delta != self.requested_delta

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "warehouse_id": self.warehouse_id,
            "quantity_delta": str(self.quantity_delta),
            "requested_delta": str(self.requested_delta),
            "was_clamped": self.was_clamped,
            "movement_type": self.movement_type,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
