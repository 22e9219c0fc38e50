# Overview: Order intake, pricing, status lifecycle and the post-sync order effects.

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from flask import current_app

from ..extensions import db
from ..models import (
    Branch,
    Customer,
    DiningTable,
    DocumentSequence,
    MenuItem,
    Order,
    OrderLine,
    OrderPayment,
    OrderStatus,
    OrderType,
    PaymentMethod,
    SyncStatus,
    User,
    Warehouse,
)
from ..numbers import round_cents
from ..validation import ValidationError, ConflictError, NotFoundError
from tavola.time_utils import utcnow
from . import audit_service, ledger_service, recipe_service, stock_service, sync_service
from .audit_service import AuditEventType
from .concurrency import lock_for_update, run_atomic
from .menu_service import resolve_modifier_selections
from .permission_service import (
    ActorContext,
    PermissionDeniedError,
    has_permission,
    require_branch_scope,
    require_permission,
)
"""
Order Intake Invariants (authoritative)

- An order and its replication queue item are committed together; the order
  starts OFFLINE_PENDING / sync_status PENDING.
- Stock consumption, COGS, revenue and the POS_ORDER_PLACEMENT audit record
  happen only after the upstream has accepted the order, exactly once
  (effects_applied_at), in that order.
- Prices are snapshotted on the order lines; later catalog edits never change
  a placed order.
- Split payments must reconcile with the total within PAYMENT_TOLERANCE_CENTS;
  they are never auto-corrected.
- Orders are never deleted; cancellation is a status change.
"""


class OrderValidationError(ValidationError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class InvalidStatusTransitionError(ConflictError):
    pass


class IdempotencyConflictError(ConflictError):
    pass


STATUS_TRANSITIONS = {
    OrderStatus.PENDING: (OrderStatus.PREPARING, OrderStatus.CANCELLED),
    OrderStatus.PREPARING: (OrderStatus.READY, OrderStatus.CANCELLED),
    OrderStatus.READY: (
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    ),
    OrderStatus.OUT_FOR_DELIVERY: (OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED),
    OrderStatus.DELIVERED: (),
    OrderStatus.COMPLETED: (),
    OrderStatus.CANCELLED: (),
}
# Not yet accepted upstream, but operationally the same as PENDING
STATUS_TRANSITIONS[OrderStatus.OFFLINE_PENDING] = STATUS_TRANSITIONS[OrderStatus.PENDING]


def build_request_hash(draft: dict) -> str:
    cleaned = {k: v for k, v in (draft or {}).items() if k not in ("idempotency_key", "idempotencyKey")}
    return sync_service.payload_digest(cleaned)


def compute_pricing(line_totals_cents: list[int], *, discount_rate, tax_rate) -> dict:
    """
    subtotal = gross * (1 - discount_rate); tax = subtotal * tax_rate;
    total = subtotal + tax, rounded half-up to cents. subtotal is rounded the
    same way and tax is the remainder, so subtotal + tax == total exactly.
    """
    gross = sum(line_totals_cents)
    rate = Decimal(str(discount_rate))
    tax = Decimal(str(tax_rate))

    subtotal_exact = Decimal(gross) * (Decimal(1) - rate)
    total_cents = round_cents(subtotal_exact * (Decimal(1) + tax))
    subtotal_cents = round_cents(subtotal_exact)
    return {
        "gross_cents": gross,
        "discount_cents": gross - subtotal_cents,
        "subtotal_cents": subtotal_cents,
        "tax_cents": total_cents - subtotal_cents,
        "total_cents": total_cents,
    }


def next_order_number(branch: Branch) -> str:
    """Allocate the next order number for a branch under a row lock."""
    seq = lock_for_update(
        db.session.query(DocumentSequence).filter_by(branch_id=branch.id, document_type="ORDER")
    ).first()
    if seq is None:
        seq = DocumentSequence(branch_id=branch.id, document_type="ORDER", next_number=1)
        db.session.add(seq)
        db.session.flush()
    number = seq.next_number
    seq.next_number = number + 1
    return f"ORD-{branch.code}-{number:05d}"


def _parse_int(value, field: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        else:
            raise OrderValidationError(f"{field} must be an integer")
    if minimum is not None and value < minimum:
        raise OrderValidationError(f"{field} must be >= {minimum}")
    return value


def _parse_discount_rate(value) -> Decimal:
    if value in (None, ""):
        return Decimal(0)
    if isinstance(value, bool):
        raise OrderValidationError("discount_rate must be a number")
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise OrderValidationError("discount_rate must be a number")
    if not rate.is_finite() or rate < 0 or rate > 1:
        raise OrderValidationError("discount_rate must be between 0 and 1")
    return rate


def _build_payments(draft: dict, total_cents: int) -> tuple[str, list[OrderPayment]]:
    payments = draft.get("payments")
    method = draft.get("payment_method")

    if payments:
        if not isinstance(payments, list):
            raise OrderValidationError("payments must be a list")
        rows = []
        for idx, p in enumerate(payments):
            if not isinstance(p, dict):
                raise OrderValidationError(f"payments[{idx}] must be an object")
            p_method = str(p.get("method") or "").upper()
            if p_method not in PaymentMethod.ALL or p_method == PaymentMethod.SPLIT:
                raise OrderValidationError(f"payments[{idx}].method is invalid")
            amount = _parse_int(p.get("amount_cents"), f"payments[{idx}].amount_cents", minimum=1)
            rows.append(OrderPayment(method=p_method, amount_cents=amount))

        paid = sum(r.amount_cents for r in rows)
        tolerance = int(current_app.config.get("PAYMENT_TOLERANCE_CENTS", 1))
        if abs(paid - total_cents) > tolerance:
            raise OrderValidationError(
                f"Split payments total {paid} does not match order total {total_cents}"
            )
        return PaymentMethod.SPLIT, rows

    method = str(method or "").upper()
    if not method:
        raise OrderValidationError("payment_method is required")
    if method not in PaymentMethod.ALL or method == PaymentMethod.SPLIT:
        raise OrderValidationError(f"Invalid payment_method: {method}")
    return method, [OrderPayment(method=method, amount_cents=total_cents)]


def place_order(draft: dict, *, actor: ActorContext, idempotency_key: str | None = None) -> Order:
    """
    Validate, price and persist a POS order, queue it for replication and
    drain the queue immediately.

    With an idempotency key, a repeat of the same request returns the order
    created the first time; the same key with a different request raises
    IdempotencyConflictError.
    """
    if not isinstance(draft, dict):
        raise OrderValidationError("Invalid JSON payload")
    require_permission(actor, "OP_PLACE_ORDER")

    idempotency_key = (idempotency_key or "").strip() or None
    request_hash = build_request_hash(draft)
    if idempotency_key:
        existing = find_by_idempotency_key(idempotency_key)
        if existing:
            if existing.request_hash != request_hash:
                raise IdempotencyConflictError("Idempotency-Key was already used with a different request")
            return existing

    order_type = str(draft.get("type") or "").upper()
    if order_type not in OrderType.ALL:
        raise OrderValidationError(f"type must be one of {', '.join(OrderType.ALL)}")

    items = draft.get("items") or []
    if not isinstance(items, list):
        raise OrderValidationError("items must be a list")
    if not items:
        raise OrderValidationError("Cart is empty")

    discount_rate = _parse_discount_rate(draft.get("discount_rate"))
    if discount_rate > 0 and not has_permission(actor, "OP_APPLY_DISCOUNT"):
        raise PermissionDeniedError("OP_APPLY_DISCOUNT")

    def _op() -> Order:
        branch_id = draft.get("branch_id") or actor.branch_id
        if branch_id is None:
            raise OrderValidationError("branch_id is required")
        branch_id = _parse_int(branch_id, "branch_id")
        require_branch_scope(actor, branch_id)
        branch = db.session.get(Branch, branch_id)
        if branch is None or not branch.is_active:
            raise OrderValidationError("Branch not found or inactive")

        table_id = draft.get("table_id")
        if order_type == OrderType.DINE_IN:
            if table_id in (None, ""):
                raise OrderValidationError("table_id is required for DINE_IN orders")
            table = db.session.get(DiningTable, _parse_int(table_id, "table_id"))
            if table is None or table.branch_id != branch.id:
                raise OrderValidationError("Table not found in this branch")
            table_id = table.id
        else:
            table_id = None

        customer_id = draft.get("customer_id")
        if customer_id not in (None, ""):
            customer = db.session.get(Customer, _parse_int(customer_id, "customer_id"))
            if customer is None:
                raise OrderValidationError("Customer not found")
            customer_id = customer.id
        else:
            customer_id = None
            customer = None
        if order_type == OrderType.DELIVERY and customer_id is None:
            raise OrderValidationError("customer_id is required for DELIVERY orders")

        warehouse_id = draft.get("warehouse_id") or branch.consumption_warehouse_id
        if warehouse_id is None:
            raise OrderValidationError("No consumption warehouse configured for this branch")
        warehouse = db.session.get(Warehouse, _parse_int(warehouse_id, "warehouse_id"))
        if warehouse is None or warehouse.branch_id != branch.id:
            raise OrderValidationError("Warehouse not found in this branch")

        lines: list[OrderLine] = []
        for idx, raw in enumerate(items, start=1):
            if not isinstance(raw, dict):
                raise OrderValidationError(f"items[{idx - 1}] must be an object")
            menu_item_id = _parse_int(raw.get("menu_item_id"), f"items[{idx - 1}].menu_item_id")
            quantity = _parse_int(raw.get("quantity", 1), f"items[{idx - 1}].quantity", minimum=1)
            menu_item = db.session.get(MenuItem, menu_item_id)
            if menu_item is None or not menu_item.is_active:
                raise OrderValidationError(f"Menu item {menu_item_id} not found or inactive")

            options = resolve_modifier_selections(menu_item, raw.get("modifiers"))
            modifiers = [
                {
                    "group_name": o.group.name,
                    "option_name": o.name,
                    "option_id": o.id,
                    "price_cents": o.price_cents,
                }
                for o in sorted(options, key=lambda o: (o.group.name, o.name))
            ]
            modifiers_cents = sum(o.price_cents for o in options)
            lines.append(OrderLine(
                line_no=idx,
                menu_item_id=menu_item.id,
                name=menu_item.name,
                unit_price_cents=menu_item.price_cents,
                quantity=quantity,
                modifiers=modifiers,
                modifiers_cents=modifiers_cents,
                line_total_cents=(menu_item.price_cents + modifiers_cents) * quantity,
                notes=raw.get("notes"),
            ))

        pricing = compute_pricing(
            [line.line_total_cents for line in lines],
            discount_rate=discount_rate,
            tax_rate=current_app.config.get("TAX_RATE", 0.14),
        )
        payment_method, payments = _build_payments(draft, pricing["total_cents"])

        delivery_address = draft.get("delivery_address")
        if order_type == OrderType.DELIVERY and not delivery_address and customer is not None:
            delivery_address = customer.address

        now = utcnow()
        order = Order(
            order_number=next_order_number(branch),
            type=order_type,
            branch_id=branch.id,
            warehouse_id=warehouse.id,
            table_id=table_id,
            customer_id=customer_id,
            delivery_address=delivery_address,
            notes=draft.get("notes"),
            status=OrderStatus.OFFLINE_PENDING,
            sync_status=SyncStatus.PENDING,
            discount_rate=discount_rate,
            payment_method=payment_method,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
            created_by_user_id=actor.user_id,
            created_by_name=actor.name,
            created_by_role=actor.role,
            device_id=actor.device_id,
            created_at=now,
            **pricing,
        )
        order.lines = lines
        order.payments = payments
        db.session.add(order)
        db.session.flush()

        sync_service.enqueue("order", "CREATE", order.to_dict())
        if discount_rate > 0:
            audit_service.record(
                AuditEventType.POS_DISCOUNT,
                actor=actor,
                after={
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "discount_rate": discount_rate,
                    "discount_cents": order.discount_cents,
                },
                branch_id=order.branch_id,
            )
        db.session.commit()
        return order

    order = run_atomic(_op)

    sync_service.drain_queue()
    db.session.refresh(order)
    return order


def _order_actor(order: Order) -> ActorContext:
    """The placing cashier, as recorded on the order."""
    role = order.created_by_role
    if role is None and order.created_by_user_id is not None:
        user = db.session.get(User, order.created_by_user_id)
        role = user.role if user else None
    return ActorContext(
        user_id=order.created_by_user_id,
        name=order.created_by_name or "system",
        role=role or "SYSTEM",
        branch_id=order.branch_id,
        device_id=order.device_id,
    )


def apply_synced_order(order_id: int) -> Order:
    """
    Post-sync hook for an accepted order CREATE. Applies the deferred effects
    once. Does not commit (the queue drain does).
    """
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")

    now = utcnow()
    order.sync_status = SyncStatus.SYNCED
    order.synced_at = now
    if order.status == OrderStatus.OFFLINE_PENDING:
        order.status = OrderStatus.PENDING
        order.updated_at = now

    if order.effects_applied_at is not None or order.status == OrderStatus.CANCELLED:
        db.session.flush()
        return order

    actor = _order_actor(order)
    consumptions = recipe_service.expand_order(order)
    cogs = stock_service.consume_for_order(order, consumptions, warehouse_id=order.warehouse_id, actor=actor)
    order.cogs_cents = cogs

    ledger_service.post_order_cogs(order=order, cogs_cents=cogs, actor=actor)
    ledger_service.post_order_revenue(order=order, actor=actor)
    audit_service.record(
        AuditEventType.POS_ORDER_PLACEMENT,
        actor=actor,
        after=order.to_dict(),
        metadata={
            "cogs_cents": cogs,
            "consumption": [c.to_dict() for c in consumptions],
        },
        branch_id=order.branch_id,
    )
    order.effects_applied_at = now
    db.session.flush()
    return order


def mark_order_sync_failed(order_id: int, error: str | None = None) -> None:
    order = db.session.get(Order, order_id)
    if order is not None and order.sync_status != SyncStatus.SYNCED:
        order.sync_status = SyncStatus.FAILED
        current_app.logger.warning("Order %s replication failed: %s", order.order_number, error)


def mark_order_sync_pending(order_id: int) -> None:
    order = db.session.get(Order, order_id)
    if order is not None and order.sync_status == SyncStatus.FAILED:
        order.sync_status = SyncStatus.PENDING


def update_order_status(
    order_id: int,
    next_status: str,
    *,
    actor: ActorContext,
    notes: str | None = None,
) -> Order:
    next_status = str(next_status or "").strip().upper()
    if not next_status:
        raise OrderValidationError("status is required")
    if next_status not in OrderStatus.ALL:
        raise OrderValidationError(f"Unknown status: {next_status}")

    def _op() -> Order | None:
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise OrderNotFoundError("Order not found")

        require_branch_scope(actor, order.branch_id)

        current = order.status
        if current == next_status:
            db.session.commit()
            return None

        if next_status not in STATUS_TRANSITIONS.get(current, ()):
            raise InvalidStatusTransitionError(f"Cannot change order status from {current} to {next_status}")

        cancelling = next_status == OrderStatus.CANCELLED
        if cancelling:
            require_permission(actor, "OP_VOID_ORDER")
            if not (notes or "").strip():
                raise OrderValidationError("Cancellation reason is required")

        now = utcnow()
        order.status = next_status
        order.updated_at = now
        if cancelling:
            order.cancelled_at = now
            order.cancel_reason = notes.strip()

        sync_service.enqueue("order", "UPDATE_STATUS", {
            "order_id": order.id,
            "order_number": order.order_number,
            "from_status": current,
            "status": next_status,
            "notes": notes,
            "changed_at": now.isoformat(),
            "changed_by_user_id": actor.user_id,
        })
        audit_service.record(
            AuditEventType.POS_VOID if cancelling else AuditEventType.ORDER_STATUS_CHANGE,
            actor=actor,
            before={"order_id": order.id, "status": current},
            after={"order_id": order.id, "status": next_status},
            reason=notes,
            metadata={"order_number": order.order_number},
            branch_id=order.branch_id,
        )
        db.session.commit()
        return order

    changed = run_atomic(_op)
    if changed is None:
        return db.session.get(Order, order_id)

    sync_service.drain_queue()
    db.session.refresh(changed)
    return changed


def get_order(order_id: int) -> Order | None:
    return db.session.get(Order, order_id)


def list_orders(
    *,
    branch_id: int | None = None,
    status: str | None = None,
    sync_status: str | None = None,
    limit: int = 100,
) -> list[Order]:
    """Most recent first."""
    query = db.session.query(Order)
    if branch_id is not None:
        query = query.filter(Order.branch_id == branch_id)
    if status:
        query = query.filter(Order.status == status.upper())
    if sync_status:
        query = query.filter(Order.sync_status == sync_status.upper())
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(max(1, min(limit, 500))).all()


def find_by_idempotency_key(key: str) -> Order | None:
    key = (key or "").strip()
    if not key:
        return None
    return db.session.query(Order).filter_by(idempotency_key=key).first()
