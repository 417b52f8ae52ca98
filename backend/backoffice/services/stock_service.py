# Overview: On-hand stock mutations with an append-only movement history.

"""
Stock Movement Recorder

INVARIANTS:
- Every on-hand change is one immutable StockMovement row plus an update of
  the cached StockBalance for the same (item, location), in the same unit
  of work.
- StockBalance.quantity == SUM(StockMovement.quantity_delta) per location.

NEGATIVE BALANCES (STOCK_NEGATIVE_POLICY):
- "clamp" (default): a decrease stops at zero. The movement records the
  applied delta in quantity_delta and the caller's request in
  requested_delta, and a warning is logged.
- "reject": a decrease below zero raises InsufficientStockError before
  anything is written.

Transfers never clamp: the source must hold the full quantity.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import InsufficientStockError, InvalidQuantity, ValidationError
from ..extensions import db
from ..models import StockBalance, StockMovement
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT_DECREASE,
    MOVEMENT_ADJUSTMENT_INCREASE,
    MOVEMENT_PURCHASE_RECEIPT,
    MOVEMENT_RETURN_FROM_CUSTOMER,
    MOVEMENT_RETURN_TO_SUPPLIER,
    MOVEMENT_SALE_ISSUE,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_TYPES,
    location_key,
)
from ..models.transactions import (
    KIND_PURCHASE,
    KIND_RETURN_OF_PURCHASE,
    KIND_RETURN_OF_SALE,
    KIND_SALE,
)
from .cache_service import stock_key
from .concurrency import lock_for_update
from .quantity_service import QUANTITY_PLACES, require_places, to_decimal


logger = logging.getLogger(__name__)


INCREASE = "increase"
DECREASE = "decrease"
DIRECTIONS = (INCREASE, DECREASE)

POLICY_CLAMP = "clamp"
POLICY_REJECT = "reject"
NEGATIVE_POLICIES = (POLICY_CLAMP, POLICY_REJECT)

ZERO = Decimal("0")

# transaction kind -> (direction, movement type)
KIND_MOVEMENTS = {
    KIND_SALE: (DECREASE, MOVEMENT_SALE_ISSUE),
    KIND_PURCHASE: (INCREASE, MOVEMENT_PURCHASE_RECEIPT),
    KIND_RETURN_OF_SALE: (INCREASE, MOVEMENT_RETURN_FROM_CUSTOMER),
    KIND_RETURN_OF_PURCHASE: (DECREASE, MOVEMENT_RETURN_TO_SUPPLIER),
}


class StockMovementRecorder:

    def __init__(self, items, *, negative_policy: str = POLICY_CLAMP):
        if negative_policy not in NEGATIVE_POLICIES:
            raise ValueError(f"STOCK_NEGATIVE_POLICY must be one of {NEGATIVE_POLICIES}, got {negative_policy!r}")
        self.items = items
        self.negative_policy = negative_policy

    # -------------------------------------------------------------------------
    # Balances
    # -------------------------------------------------------------------------

    def _balance_query(self, item_id: int, warehouse_id: int | None):
        return db.session.query(StockBalance).filter(
            StockBalance.item_id == item_id,
            StockBalance.location_key == location_key(warehouse_id),
        )

    def _balance_for_update(self, item_id: int, warehouse_id: int | None) -> StockBalance:
        balance = lock_for_update(self._balance_query(item_id, warehouse_id)).first()
        if balance is not None:
            return balance
        try:
            with db.session.begin_nested():
                balance = StockBalance(
                    item_id=item_id,
                    warehouse_id=warehouse_id,
                    location_key=location_key(warehouse_id),
                    quantity=ZERO,
                )
                db.session.add(balance)
        except IntegrityError:
            # created concurrently
            balance = lock_for_update(self._balance_query(item_id, warehouse_id)).one()
        return balance

    def on_hand(self, item_id: int, warehouse_id: int | None = None) -> Decimal:
        """
        On-hand at one warehouse; with no warehouse, the total across every
        location (the warehouse-less pool included).
        """
        query = db.session.query(func.coalesce(func.sum(StockBalance.quantity), 0)).filter(
            StockBalance.item_id == item_id
        )
        if warehouse_id is not None:
            query = query.filter(StockBalance.location_key == location_key(warehouse_id))
        return Decimal(query.scalar())

    def balances(self, item_id: int) -> list[StockBalance]:
        return (
            db.session.query(StockBalance)
            .filter(StockBalance.item_id == item_id)
            .order_by(StockBalance.location_key.asc())
            .all()
        )

    def movement_total(self, item_id: int, warehouse_id: int | None = None, *, all_locations: bool = False) -> Decimal:
        """Sum of movement deltas, recomputed from history (audit view)."""
        query = db.session.query(func.coalesce(func.sum(StockMovement.quantity_delta), 0)).filter(
            StockMovement.item_id == item_id
        )
        if not all_locations:
            if warehouse_id is None:
                query = query.filter(StockMovement.warehouse_id.is_(None))
            else:
                query = query.filter(StockMovement.warehouse_id == warehouse_id)
        return Decimal(query.scalar())

    def list_movements(self, item_id: int, warehouse_id: int | None = None, limit: int = 100) -> list[StockMovement]:
        query = db.session.query(StockMovement).filter(StockMovement.item_id == item_id)
        if warehouse_id is not None:
            query = query.filter(StockMovement.warehouse_id == warehouse_id)
        limit = max(1, min(int(limit), 500))
        return query.order_by(StockMovement.id.desc()).limit(limit).all()

    def audit(self) -> list[dict]:
        """Balances whose cached quantity drifted from their movement history."""
        mismatches = []
        balances = db.session.query(StockBalance).order_by(StockBalance.item_id, StockBalance.location_key).all()
        for balance in balances:
            derived = self.movement_total(balance.item_id, balance.warehouse_id)
            if Decimal(balance.quantity) != derived:
                mismatches.append({
                    "item_id": balance.item_id,
                    "warehouse_id": balance.warehouse_id,
                    "cached": str(balance.quantity),
                    "derived": str(derived),
                })
        return mismatches

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _record(
        self,
        uow,
        *,
        item_id: int,
        warehouse_id: int | None,
        balance: StockBalance,
        applied: Decimal,
        requested: Decimal,
        movement_type: str,
        reason: str | None,
        reference_type: str | None,
        reference_id,
    ) -> StockMovement:
        balance.quantity = Decimal(balance.quantity) + applied
        movement = StockMovement(
            item_id=item_id,
            warehouse_id=warehouse_id,
            quantity_delta=applied,
            requested_delta=requested,
            movement_type=movement_type,
            reason=reason,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
        )
        db.session.add(movement)
        db.session.flush()
        uow.invalidate(stock_key(item_id))
        return movement

    def adjust(
        self,
        uow,
        item_id: int,
        quantity,
        direction: str,
        reason: str | None = None,
        warehouse_id: int | None = None,
        movement_type: str | None = None,
        reference_type: str | None = None,
        reference_id=None,
    ) -> StockMovement:
        uow.require_active()

        qty = require_places(to_decimal(quantity, "quantity"), QUANTITY_PLACES, "quantity")
        if qty <= 0:
            raise InvalidQuantity("Adjustment quantity must be greater than 0", field="quantity")
        if direction not in DIRECTIONS:
            raise ValidationError(f"direction must be one of {', '.join(DIRECTIONS)}", field="direction")
        if movement_type is None:
            movement_type = MOVEMENT_ADJUSTMENT_INCREASE if direction == INCREASE else MOVEMENT_ADJUSTMENT_DECREASE
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Unknown movement type {movement_type!r}", field="movement_type")

        self.items.require_active_item(item_id)
        self.items.require_active_warehouse(warehouse_id)

        balance = self._balance_for_update(item_id, warehouse_id)
        current = Decimal(balance.quantity)

        requested = qty if direction == INCREASE else -qty
        applied = requested
        if direction == DECREASE and current < qty:
            if self.negative_policy == POLICY_REJECT:
                raise InsufficientStockError(item_id, warehouse_id, current, qty)
            applied = -max(current, ZERO)
            logger.warning(
                "stock clamp: item=%s warehouse=%s on_hand=%s requested=-%s applied=%s (%s)",
                item_id, warehouse_id, current, qty, applied, movement_type,
            )

        return self._record(
            uow,
            item_id=item_id,
            warehouse_id=warehouse_id,
            balance=balance,
            applied=applied,
            requested=requested,
            movement_type=movement_type,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )

    def apply_transaction(self, uow, txn, lines) -> list[StockMovement]:
        """
        Stock effect of a confirmed transaction: sales issue, purchases
        receive, returns move the other way. Uses |quantity| of every line.
        """
        direction, movement_type = KIND_MOVEMENTS[txn.kind]
        movements = []
        for line in lines:
            movements.append(
                self.adjust(
                    uow,
                    line.item_id,
                    abs(Decimal(line.quantity)),
                    direction,
                    reason=f"{txn.kind} {txn.reference_number}",
                    warehouse_id=line.warehouse_id,
                    movement_type=movement_type,
                    reference_type=txn.kind,
                    reference_id=txn.id,
                )
            )
        return movements

    def reverse_for_return(self, uow, return_txn, lines) -> list[StockMovement]:
        if return_txn.kind not in (KIND_RETURN_OF_SALE, KIND_RETURN_OF_PURCHASE):
            raise ValidationError(f"{return_txn.kind} is not a return", field="kind")
        return self.apply_transaction(uow, return_txn, lines)

    def transfer(
        self,
        uow,
        item_id: int,
        from_warehouse_id: int | None,
        to_warehouse_id: int | None,
        quantity,
        reason: str | None = None,
    ) -> tuple[StockMovement, StockMovement]:
        uow.require_active()

        qty = require_places(to_decimal(quantity, "quantity"), QUANTITY_PLACES, "quantity")
        if qty <= 0:
            raise InvalidQuantity("Transfer quantity must be greater than 0", field="quantity")
        if location_key(from_warehouse_id) == location_key(to_warehouse_id):
            raise ValidationError("Source and destination must differ", field="to_warehouse_id")

        self.items.require_active_item(item_id)
        self.items.require_active_warehouse(from_warehouse_id)
        self.items.require_active_warehouse(to_warehouse_id)

        source = self._balance_for_update(item_id, from_warehouse_id)
        available = Decimal(source.quantity)
        if available < qty:
            raise InsufficientStockError(item_id, from_warehouse_id, available, qty)
        destination = self._balance_for_update(item_id, to_warehouse_id)

        reference_id = uuid.uuid4().hex
        outbound = self._record(
            uow,
            item_id=item_id,
            warehouse_id=from_warehouse_id,
            balance=source,
            applied=-qty,
            requested=-qty,
            movement_type=MOVEMENT_TRANSFER_OUT,
            reason=reason,
            reference_type="transfer",
            reference_id=reference_id,
        )
        inbound = self._record(
            uow,
            item_id=item_id,
            warehouse_id=to_warehouse_id,
            balance=destination,
            applied=qty,
            requested=qty,
            movement_type=MOVEMENT_TRANSFER_IN,
            reason=reason,
            reference_type="transfer",
            reference_id=reference_id,
        )
        return outbound, inbound
