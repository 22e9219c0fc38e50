# Overview: Stock ledger: per-warehouse quantities, movements, transfers, receipts and waste.

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import InventoryItem, Warehouse, WarehouseStock, StockMovement, StockTransfer, MovementKind
from ..numbers import ZERO, quantize_qty, round_cents, to_decimal
from ..validation import ValidationError, ConflictError, NotFoundError, ModelValidationPolicy, validate_payload
from tavola.time_utils import utcnow
from . import audit_service, ledger_service, sync_service
from .audit_service import AuditEventType
from .concurrency import lock_for_update, run_atomic
from .permission_service import ActorContext, require_branch_scope
"""
Stock Ledger Invariants (authoritative)

- WarehouseStock.quantity is never negative.
- Every change goes through record_movement(), which locks the
  (item, warehouse) row and appends one StockMovement.
- Under CLAMP (default) a decrement past zero floors at zero; the unfilled
  part is stored on the movement as `shortfall` and logged. Under REJECT it
  raises InsufficientStockError and nothing changes.
- Sale consumption always clamps: a sale the upstream has accepted cannot be
  refused afterwards, so its shortfall is recorded instead.
- A transfer is one StockTransfer plus both legs in one transaction; the
  destination receives exactly what left the source.
- unit_cost_cents on InventoryItem is a moving average updated by purchases
  only; movements snapshot it.
"""


class StockError(ValidationError):
    pass


class InsufficientStockError(ConflictError):
    def __init__(self, item_id: int, warehouse_id: int, available: Decimal, requested: Decimal):
        self.item_id = item_id
        self.warehouse_id = warehouse_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for item {item_id} in warehouse {warehouse_id}: "
            f"available {available}, requested {requested}"
        )


class UnderflowPolicy:
    CLAMP = "CLAMP"
    REJECT = "REJECT"

    ALL = (CLAMP, REJECT)


def _configured_policy() -> str:
    policy = str(current_app.config.get("STOCK_UNDERFLOW_POLICY", UnderflowPolicy.CLAMP)).upper()
    if policy not in UnderflowPolicy.ALL:
        raise StockError(f"Invalid STOCK_UNDERFLOW_POLICY: {policy}")
    return policy


def _get_item(item_id: int) -> InventoryItem:
    item = db.session.get(InventoryItem, item_id)
    if item is None:
        raise NotFoundError(f"Inventory item {item_id} not found")
    return item


def _get_warehouse(warehouse_id: int) -> Warehouse:
    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found")
    if not warehouse.is_active:
        raise StockError(f"Warehouse {warehouse_id} is inactive")
    return warehouse


def _lock_stock_row(item_id: int, warehouse_id: int) -> WarehouseStock:
    row = lock_for_update(
        db.session.query(WarehouseStock).filter_by(item_id=item_id, warehouse_id=warehouse_id)
    ).first()
    if row is None:
        row = WarehouseStock(item_id=item_id, warehouse_id=warehouse_id, quantity=ZERO)
        db.session.add(row)
        db.session.flush()
    return row


def record_movement(
    *,
    item_id: int,
    warehouse_id: int,
    delta,
    kind: str,
    reason: str | None = None,
    actor: ActorContext | None = None,
    reference_id: str | None = None,
    transfer_id: int | None = None,
    unit_cost_cents: int | None = None,
    policy: str | None = None,
    replicate: bool = True,
) -> StockMovement:
    """
    Apply one signed quantity change and append its movement row.
    Does not commit.
    """
    if kind not in MovementKind.ALL:
        raise StockError(f"Invalid movement kind: {kind}")
    try:
        requested = quantize_qty(to_decimal(delta, field="delta"))
    except ValueError as e:
        raise StockError(str(e))

    item = _get_item(item_id)
    _get_warehouse(warehouse_id)
    policy = policy or _configured_policy()

    row = _lock_stock_row(item_id, warehouse_id)
    current = Decimal(row.quantity or 0)
    target = current + requested

    shortfall = ZERO
    if target < 0:
        if policy == UnderflowPolicy.REJECT:
            raise InsufficientStockError(item_id, warehouse_id, current, -requested)
        shortfall = quantize_qty(-target)
        target = ZERO
        current_app.logger.warning(
            "Stock underflow clamped: item %s (%s) in warehouse %s, on hand %s, requested %s, shortfall %s",
            item.id, item.name, warehouse_id, current, requested, shortfall,
        )

    applied = quantize_qty(target - current)
    row.quantity = quantize_qty(target)

    cost = unit_cost_cents if unit_cost_cents is not None else (item.unit_cost_cents or 0)
    cogs = None
    if kind == MovementKind.SALE_CONSUMPTION:
        cogs = round_cents(Decimal(cost) * -applied)

    threshold = Decimal(item.threshold or 0)
    low_stock = target <= threshold
    if low_stock and current > threshold:
        current_app.logger.warning(
            "Low stock: item %s (%s) in warehouse %s is %s (threshold %s)",
            item.id, item.name, warehouse_id, target, threshold,
        )

    movement = StockMovement(
        item_id=item_id,
        warehouse_id=warehouse_id,
        kind=kind,
        requested_delta=requested,
        applied_delta=applied,
        shortfall=shortfall,
        quantity_after=quantize_qty(target),
        unit_cost_cents=cost,
        cogs_cents=cogs,
        low_stock=low_stock,
        reason=reason,
        reference_id=str(reference_id) if reference_id is not None else None,
        transfer_id=transfer_id,
        actor_user_id=actor.user_id if actor else None,
        actor_name=actor.name if actor else None,
        created_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()

    if replicate:
        sync_service.enqueue("stock_movement", "CREATE", movement.to_dict())
    return movement


def apply_movement(
    *,
    item_id: int,
    warehouse_id: int,
    delta,
    kind: str,
    reason: str | None = None,
    actor: ActorContext | None = None,
    reference_id: str | None = None,
) -> Decimal:
    """record_movement() returning the resulting on-hand quantity. Does not commit."""
    movement = record_movement(
        item_id=item_id,
        warehouse_id=warehouse_id,
        delta=delta,
        kind=kind,
        reason=reason,
        actor=actor,
        reference_id=reference_id,
    )
    return Decimal(movement.quantity_after)


def _require_reason(reason: str | None) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise StockError("reason is required")
    return reason


def _adjustment_value_cents(movement: StockMovement) -> int:
    # Positive = stock lost (expense), negative = stock found
    return round_cents(Decimal(movement.unit_cost_cents or 0) * -Decimal(movement.applied_delta))


def set_stock_level(
    *,
    item_id: int,
    warehouse_id: int,
    quantity,
    reason: str | None,
    actor: ActorContext,
) -> StockMovement | None:
    """
    Absolute adjustment to `quantity`. A target below zero lands on zero.
    Returns None when the level already matches.
    """
    target = _target_level(quantity)

    def _op() -> StockMovement | None:
        movement = _write_stock_level(item_id, warehouse_id, target, reason, actor)
        db.session.commit()
        return movement

    return run_atomic(_op)


def _target_level(quantity) -> Decimal:
    try:
        target = quantize_qty(to_decimal(quantity))
    except ValueError as e:
        raise StockError(str(e))
    return target if target >= 0 else ZERO


def _write_stock_level(item_id, warehouse_id, target: Decimal, reason, actor) -> StockMovement | None:
    """Flush-only body of set_stock_level."""
    _get_item(item_id)
    warehouse = _get_warehouse(warehouse_id)
    require_branch_scope(actor, warehouse.branch_id)

    row = _lock_stock_row(item_id, warehouse_id)
    current = Decimal(row.quantity or 0)
    delta = target - current
    if delta == 0:
        return None

    movement = record_movement(
        item_id=item_id,
        warehouse_id=warehouse_id,
        delta=delta,
        kind=MovementKind.ADJUSTMENT,
        reason=reason or "Stock level set",
        actor=actor,
    )
    ledger_service.post_inventory_adjustment(
        reference_id=f"MOV-{movement.id}",
        value_cents=_adjustment_value_cents(movement),
        actor=actor,
    )
    audit_service.record(
        AuditEventType.INVENTORY_ADJUSTMENT,
        actor=actor,
        before={"item_id": item_id, "warehouse_id": warehouse_id, "quantity": current},
        after={"item_id": item_id, "warehouse_id": warehouse_id, "quantity": movement.quantity_after},
        reason=reason,
        metadata={"movement_id": movement.id},
        branch_id=warehouse.branch_id,
    )
    return movement


def adjust_stock(
    *,
    item_id: int,
    warehouse_id: int,
    delta,
    reason: str | None,
    actor: ActorContext,
) -> StockMovement:
    reason = _require_reason(reason)
    try:
        delta = quantize_qty(to_decimal(delta, field="delta"))
    except ValueError as e:
        raise StockError(str(e))
    if delta == 0:
        raise StockError("delta must be non-zero")

    def _op() -> StockMovement:
        warehouse = _get_warehouse(warehouse_id)
        require_branch_scope(actor, warehouse.branch_id)
        before = get_quantity(item_id, warehouse_id)

        movement = record_movement(
            item_id=item_id,
            warehouse_id=warehouse_id,
            delta=delta,
            kind=MovementKind.ADJUSTMENT,
            reason=reason,
            actor=actor,
        )
        ledger_service.post_inventory_adjustment(
            reference_id=f"MOV-{movement.id}",
            value_cents=_adjustment_value_cents(movement),
            actor=actor,
        )
        audit_service.record(
            AuditEventType.INVENTORY_ADJUSTMENT,
            actor=actor,
            before={"item_id": item_id, "warehouse_id": warehouse_id, "quantity": before},
            after={"item_id": item_id, "warehouse_id": warehouse_id, "quantity": movement.quantity_after},
            reason=reason,
            metadata={"movement_id": movement.id, "shortfall": movement.shortfall},
            branch_id=warehouse.branch_id,
        )
        db.session.commit()
        return movement

    return run_atomic(_op)


def transfer_stock(
    *,
    item_id: int,
    from_warehouse_id: int,
    to_warehouse_id: int,
    quantity,
    actor: ActorContext,
    reason: str | None = None,
) -> StockTransfer:
    """Move stock between warehouses atomically. Both legs or neither."""
    try:
        qty = quantize_qty(to_decimal(quantity))
    except ValueError as e:
        raise StockError(str(e))
    if qty <= 0:
        raise StockError("quantity must be > 0")
    if from_warehouse_id == to_warehouse_id:
        raise StockError("Source and destination warehouses must differ")

    def _op() -> StockTransfer:
        _get_item(item_id)
        source = _get_warehouse(from_warehouse_id)
        _get_warehouse(to_warehouse_id)
        require_branch_scope(actor, source.branch_id)

        transfer = StockTransfer(
            item_id=item_id,
            from_warehouse_id=from_warehouse_id,
            to_warehouse_id=to_warehouse_id,
            requested_quantity=qty,
            quantity=ZERO,
            reason=reason,
            created_by_user_id=actor.user_id,
            created_at=utcnow(),
        )
        db.session.add(transfer)
        db.session.flush()

        out_leg = record_movement(
            item_id=item_id,
            warehouse_id=from_warehouse_id,
            delta=-qty,
            kind=MovementKind.TRANSFER,
            reason=reason,
            actor=actor,
            reference_id=f"TRF-{transfer.id}",
            transfer_id=transfer.id,
            replicate=False,
        )
        moved = -Decimal(out_leg.applied_delta)
        if moved <= 0:
            raise InsufficientStockError(item_id, from_warehouse_id, ZERO, qty)

        record_movement(
            item_id=item_id,
            warehouse_id=to_warehouse_id,
            delta=moved,
            kind=MovementKind.TRANSFER,
            reason=reason,
            actor=actor,
            reference_id=f"TRF-{transfer.id}",
            transfer_id=transfer.id,
            unit_cost_cents=out_leg.unit_cost_cents,
            replicate=False,
        )
        transfer.quantity = moved
        db.session.flush()
        db.session.refresh(transfer)

        sync_service.enqueue("stock_transfer", "CREATE", transfer.to_dict())
        audit_service.record(
            AuditEventType.INVENTORY_TRANSFER,
            actor=actor,
            after=transfer.to_dict(),
            reason=reason,
            metadata={"shortfall": out_leg.shortfall},
            branch_id=source.branch_id,
        )
        db.session.commit()
        return transfer

    return run_atomic(_op)


def receive_purchase(
    *,
    item_id: int,
    warehouse_id: int,
    quantity,
    unit_cost_cents: int,
    actor: ActorContext,
    reference: str | None = None,
) -> StockMovement:
    """
    Goods receipt: PURCHASE movement, moving-average cost update and
    Raw Materials / Accounts Payable posting.
    """
    try:
        qty = quantize_qty(to_decimal(quantity))
    except ValueError as e:
        raise StockError(str(e))
    if qty <= 0:
        raise StockError("quantity must be > 0")
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int) or unit_cost_cents < 0:
        raise StockError("unit_cost_cents must be an integer >= 0")

    def _op() -> StockMovement:
        item = lock_for_update(db.session.query(InventoryItem).filter_by(id=item_id)).first()
        if item is None:
            raise NotFoundError(f"Inventory item {item_id} not found")
        warehouse = _get_warehouse(warehouse_id)
        require_branch_scope(actor, warehouse.branch_id)

        on_hand = get_total_quantity(item_id)
        old_cost = Decimal(item.unit_cost_cents or 0)
        if on_hand + qty > 0:
            new_cost = round_cents((on_hand * old_cost + qty * Decimal(unit_cost_cents)) / (on_hand + qty))
        else:
            new_cost = unit_cost_cents
        before_cost = item.unit_cost_cents

        movement = record_movement(
            item_id=item_id,
            warehouse_id=warehouse_id,
            delta=qty,
            kind=MovementKind.PURCHASE,
            reason="Purchase receipt",
            actor=actor,
            reference_id=reference,
            unit_cost_cents=unit_cost_cents,
        )
        item.unit_cost_cents = new_cost

        ref = reference or f"MOV-{movement.id}"
        ledger_service.post_purchase_receipt(
            reference_id=ref,
            amount_cents=round_cents(qty * Decimal(unit_cost_cents)),
            actor=actor,
        )
        audit_service.record(
            AuditEventType.INVENTORY_RECEIPT,
            actor=actor,
            before={"item_id": item_id, "unit_cost_cents": before_cost},
            after={"item_id": item_id, "unit_cost_cents": new_cost, "quantity_after": movement.quantity_after},
            metadata={"movement_id": movement.id, "reference": reference, "quantity": qty},
            branch_id=warehouse.branch_id,
        )
        db.session.commit()
        return movement

    return run_atomic(_op)


def record_waste(
    *,
    item_id: int,
    warehouse_id: int,
    quantity,
    reason: str | None,
    actor: ActorContext,
) -> StockMovement:
    reason = _require_reason(reason)
    try:
        qty = quantize_qty(to_decimal(quantity))
    except ValueError as e:
        raise StockError(str(e))
    if qty <= 0:
        raise StockError("quantity must be > 0")

    def _op() -> StockMovement:
        warehouse = _get_warehouse(warehouse_id)
        require_branch_scope(actor, warehouse.branch_id)

        movement = record_movement(
            item_id=item_id,
            warehouse_id=warehouse_id,
            delta=-qty,
            kind=MovementKind.WASTE,
            reason=reason,
            actor=actor,
        )
        value = _adjustment_value_cents(movement)
        ledger_service.post_wastage(reference_id=f"MOV-{movement.id}", amount_cents=value, actor=actor)
        audit_service.record(
            AuditEventType.INVENTORY_WASTE,
            actor=actor,
            after=movement.to_dict(),
            reason=reason,
            metadata={"value_cents": value},
            branch_id=warehouse.branch_id,
        )
        db.session.commit()
        return movement

    return run_atomic(_op)


def consume_for_order(order, consumptions, *, warehouse_id: int, actor: ActorContext | None = None) -> int:
    """
    SALE_CONSUMPTION movement per consumption line, in order. Returns total
    COGS in cents. Does not commit.
    """
    total_cogs = 0
    for c in consumptions:
        movement = record_movement(
            item_id=c.item_id,
            warehouse_id=warehouse_id,
            delta=-Decimal(c.quantity),
            kind=MovementKind.SALE_CONSUMPTION,
            reason=f"Order {order.order_number}",
            actor=actor,
            reference_id=str(order.id),
            policy=UnderflowPolicy.CLAMP,
        )
        total_cogs += movement.cogs_cents or 0
    return total_cogs


# =============================================================================
# Inventory items


INVENTORY_ITEM_POLICY = ModelValidationPolicy(
    writable_fields={"sku", "name", "unit", "category", "threshold", "unit_cost_cents", "is_active"},
    required_on_create={"name"},
)


def create_item(*, payload: dict, actor: ActorContext) -> InventoryItem:
    patch = validate_payload(model=InventoryItem, payload=payload, policy=INVENTORY_ITEM_POLICY, partial=False)
    _check_item_patch(patch)

    def _op() -> InventoryItem:
        if patch.get("sku") and db.session.query(InventoryItem).filter_by(sku=patch["sku"]).first():
            raise ConflictError(f"SKU {patch['sku']!r} already exists")
        item = InventoryItem(**patch)
        db.session.add(item)
        db.session.flush()
        audit_service.record(AuditEventType.SETTINGS_CHANGE, actor=actor, after={"inventory_item": item.to_dict()})
        db.session.commit()
        return item

    return run_atomic(_op)


def update_item(*, item_id: int, payload: dict, actor: ActorContext) -> InventoryItem:
    """Item attributes only; quantities change through movements."""
    patch = validate_payload(model=InventoryItem, payload=payload, policy=INVENTORY_ITEM_POLICY, partial=True)
    _check_item_patch(patch)

    def _op() -> InventoryItem:
        item = _write_item_patch(item_id, patch, actor)
        db.session.commit()
        return item

    return run_atomic(_op)


def update_item_and_level(
    *,
    item_id: int,
    payload: dict,
    warehouse_id: int | None,
    quantity,
    reason: str | None,
    actor: ActorContext,
) -> tuple[InventoryItem, StockMovement | None]:
    """
    Attribute patch plus an absolute stock level in one transaction; either
    both land or neither does. An empty payload skips the patch, a None
    quantity skips the level.
    """
    patch = validate_payload(model=InventoryItem, payload=payload, policy=INVENTORY_ITEM_POLICY, partial=True)
    _check_item_patch(patch)
    target = _target_level(quantity) if quantity is not None else None
    if target is not None and warehouse_id is None:
        raise StockError("warehouse_id is required to set a quantity")

    def _op() -> tuple[InventoryItem, StockMovement | None]:
        item = _write_item_patch(item_id, patch, actor) if patch else _get_item(item_id)
        movement = None
        if target is not None:
            movement = _write_stock_level(item_id, warehouse_id, target, reason, actor)
        db.session.commit()
        return item, movement

    return run_atomic(_op)


def _write_item_patch(item_id: int, patch: dict, actor: ActorContext) -> InventoryItem:
    item = _get_item(item_id)
    before = item.to_dict()
    for key, value in patch.items():
        setattr(item, key, value)
    db.session.flush()
    audit_service.record(
        AuditEventType.SETTINGS_CHANGE,
        actor=actor,
        before={"inventory_item": before},
        after={"inventory_item": item.to_dict()},
    )
    return item


def _check_item_patch(patch: dict) -> None:
    if "threshold" in patch and patch["threshold"] is not None and patch["threshold"] < 0:
        raise StockError("threshold must be >= 0")
    if "unit_cost_cents" in patch and patch["unit_cost_cents"] is not None and patch["unit_cost_cents"] < 0:
        raise StockError("unit_cost_cents must be >= 0")


# =============================================================================
# Reads


def get_quantity(item_id: int, warehouse_id: int) -> Decimal:
    row = db.session.query(WarehouseStock).filter_by(item_id=item_id, warehouse_id=warehouse_id).first()
    return Decimal(row.quantity) if row and row.quantity is not None else ZERO


def get_total_quantity(item_id: int) -> Decimal:
    total = db.session.query(db.func.coalesce(db.func.sum(WarehouseStock.quantity), 0)).filter(
        WarehouseStock.item_id == item_id
    ).scalar()
    return Decimal(str(total or 0))


def _warehouse_ids_for(branch_id: int | None, warehouse_id: int | None) -> list[int] | None:
    if warehouse_id is not None:
        return [warehouse_id]
    if branch_id is None:
        return None
    return [w.id for w in db.session.query(Warehouse).filter_by(branch_id=branch_id).all()]


def get_item_levels(*, branch_id: int | None = None, warehouse_id: int | None = None) -> list[dict]:
    """Every active item with its per-warehouse levels and total."""
    warehouse_ids = _warehouse_ids_for(branch_id, warehouse_id)
    items = (
        db.session.query(InventoryItem)
        .filter(InventoryItem.is_active.is_(True))
        .order_by(InventoryItem.name.asc())
        .all()
    )
    stock_query = db.session.query(WarehouseStock)
    if warehouse_ids is not None:
        stock_query = stock_query.filter(WarehouseStock.warehouse_id.in_(warehouse_ids or [-1]))
    levels_by_item: dict[int, list[WarehouseStock]] = {}
    for row in stock_query.all():
        levels_by_item.setdefault(row.item_id, []).append(row)

    result = []
    for item in items:
        rows = sorted(levels_by_item.get(item.id, []), key=lambda r: r.warehouse_id)
        total = sum((Decimal(r.quantity or 0) for r in rows), ZERO)
        data = item.to_dict()
        data["levels"] = [r.to_dict() for r in rows]
        data["total_quantity"] = float(total)
        data["is_low_stock"] = total <= Decimal(item.threshold or 0)
        result.append(data)
    return result


def list_movements(
    *,
    item_id: int,
    warehouse_id: int | None = None,
    kind: str | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    """Most recent first."""
    query = db.session.query(StockMovement).filter(StockMovement.item_id == item_id)
    if warehouse_id is not None:
        query = query.filter(StockMovement.warehouse_id == warehouse_id)
    if kind:
        query = query.filter(StockMovement.kind == kind)
    return query.order_by(StockMovement.id.desc()).limit(max(1, min(limit, 500))).all()


def low_stock_items(*, branch_id: int | None = None, warehouse_id: int | None = None) -> list[dict]:
    """(item, warehouse) pairs at or below the item threshold."""
    warehouse_ids = _warehouse_ids_for(branch_id, warehouse_id)
    query = db.session.query(WarehouseStock, InventoryItem).join(
        InventoryItem, InventoryItem.id == WarehouseStock.item_id
    ).filter(InventoryItem.is_active.is_(True))
    if warehouse_ids is not None:
        query = query.filter(WarehouseStock.warehouse_id.in_(warehouse_ids or [-1]))

    rows = []
    for stock, item in query.order_by(InventoryItem.name.asc(), WarehouseStock.warehouse_id.asc()).all():
        if Decimal(stock.quantity or 0) <= Decimal(item.threshold or 0):
            rows.append({
                "item_id": item.id,
                "name": item.name,
                "unit": item.unit,
                "warehouse_id": stock.warehouse_id,
                "quantity": float(stock.quantity or 0),
                "threshold": float(item.threshold or 0),
            })
    return rows
