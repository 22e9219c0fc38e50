from __future__ import annotations

from ..extensions import db
from tavola.time_utils import to_utc_z


class OrderType:
    DINE_IN = "DINE_IN"
    TAKEAWAY = "TAKEAWAY"
    DELIVERY = "DELIVERY"

    ALL = (DINE_IN, TAKEAWAY, DELIVERY)


class OrderStatus:
    OFFLINE_PENDING = "OFFLINE_PENDING"
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    ALL = (OFFLINE_PENDING, PENDING, PREPARING, READY, OUT_FOR_DELIVERY, DELIVERED, COMPLETED, CANCELLED)


class SyncStatus:
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class PaymentMethod:
    CASH = "CASH"
    CARD = "CARD"
    WALLET = "WALLET"
    SPLIT = "SPLIT"

    ALL = (CASH, CARD, WALLET, SPLIT)


class Order(db.Model):
    """
    Customer order captured at the POS.

    LIFECYCLE:
    - Created OFFLINE_PENDING / sync_status PENDING together with its replication
      queue item.
    - Once the upstream accepts it, status becomes PENDING / SYNCED and the
      deferred effects (stock consumption, COGS, revenue, audit) are applied.
      effects_applied_at marks that so they never run twice.
    - Orders are never deleted; cancellation is a status.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.UniqueConstraint("idempotency_key", name="uq_orders_idempotency_key"),
        db.Index("ix_orders_branch_status_created", "branch_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False)

    type = db.Column(db.String(16), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True)
    table_id = db.Column(db.Integer, db.ForeignKey("dining_tables.id"), nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    delivery_address = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(24), nullable=False, default=OrderStatus.OFFLINE_PENDING, index=True)
    sync_status = db.Column(db.String(16), nullable=False, default=SyncStatus.PENDING, index=True)

    gross_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_rate = db.Column(db.Numeric(5, 4), nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    cogs_cents = db.Column(db.Integer, nullable=True)

    payment_method = db.Column(db.String(16), nullable=False)

    idempotency_key = db.Column(db.String(128), nullable=True)
    request_hash = db.Column(db.String(64), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_by_name = db.Column(db.String(255), nullable=True)
    created_by_role = db.Column(db.String(32), nullable=True)
    device_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    effects_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy=True,
        order_by="OrderLine.line_no",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "OrderPayment",
        backref="order",
        lazy=True,
        order_by="OrderPayment.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "type": self.type,
            "branch_id": self.branch_id,
            "warehouse_id": self.warehouse_id,
            "table_id": self.table_id,
            "customer_id": self.customer_id,
            "delivery_address": self.delivery_address,
            "notes": self.notes,
            "status": self.status,
            "sync_status": self.sync_status,
            "gross_cents": self.gross_cents,
            "discount_rate": float(self.discount_rate or 0),
            "discount_cents": self.discount_cents,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "cogs_cents": self.cogs_cents,
            "payment_method": self.payment_method,
            "payments": [p.to_dict() for p in self.payments],
            "items": [line.to_dict() for line in self.lines],
            "created_by_user_id": self.created_by_user_id,
            "created_by_name": self.created_by_name,
            "created_by_role": self.created_by_role,
            "device_id": self.device_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "synced_at": to_utc_z(self.synced_at),
            "effects_applied_at": to_utc_z(self.effects_applied_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
        }


class OrderLine(db.Model):
    """Snapshot of one cart line: catalog name/price and chosen modifiers at sale time."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "line_no", name="uq_order_lines_order_line_no"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    line_no = db.Column(db.Integer, nullable=False)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    # [{"group_name", "option_name", "option_id", "price_cents"}]
    modifiers = db.Column(db.JSON, nullable=False, default=list)
    modifiers_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "line_no": self.line_no,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "modifiers": list(self.modifiers or []),
            "modifiers_cents": self.modifiers_cents,
            "line_total_cents": self.line_total_cents,
            "notes": self.notes,
        }


class OrderPayment(db.Model):
    __tablename__ = "order_payments"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    method = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {"method": self.method, "amount_cents": self.amount_cents}
