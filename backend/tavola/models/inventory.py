from __future__ import annotations

from ..extensions import db
from tavola.numbers import qty_to_json
from tavola.time_utils import to_utc_z


class InventoryItem(db.Model):
    """
    Raw material or prepared (composite) stock item.

    unit_cost_cents is the moving-average cost per unit; it is snapshotted on
    every movement so COGS stays reproducible after later purchases.
    threshold is the low-stock level checked after each movement.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_inventory_items_sku"),
        db.Index("ix_inventory_items_category_active", "category", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="unit")
    category = db.Column(db.String(64), nullable=True)
    threshold = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    is_composite = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    components = db.relationship(
        "RecipeIngredient",
        primaryjoin="InventoryItem.id == RecipeIngredient.parent_item_id",
        lazy=True,
        order_by="RecipeIngredient.id",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} name={self.name!r} unit={self.unit!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "unit": self.unit,
            "category": self.category,
            "threshold": qty_to_json(self.threshold),
            "unit_cost_cents": self.unit_cost_cents,
            "is_composite": self.is_composite,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class WarehouseStock(db.Model):
    """
    Current on-hand quantity of one item in one warehouse.

    This row is the lock target for every movement; the movement log is the
    history, this is the running (clamped) sum.
    """
    __tablename__ = "warehouse_stock"
    __table_args__ = (
        db.UniqueConstraint("item_id", "warehouse_id", name="uq_warehouse_stock_item_warehouse"),
        db.CheckConstraint("quantity >= 0", name="ck_warehouse_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    item = db.relationship("InventoryItem", backref=db.backref("stock_levels", lazy=True))
    warehouse = db.relationship("Warehouse")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "warehouse_id": self.warehouse_id,
            "quantity": qty_to_json(self.quantity),
            "updated_at": to_utc_z(self.updated_at),
        }


class MovementKind:
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER = "TRANSFER"
    PURCHASE = "PURCHASE"
    SALE_CONSUMPTION = "SALE_CONSUMPTION"
    WASTE = "WASTE"

    ALL = (ADJUSTMENT, TRANSFER, PURCHASE, SALE_CONSUMPTION, WASTE)


class StockMovement(db.Model):
    """
    Append-only stock movement log.

    requested_delta is what the caller asked for; applied_delta is what
    actually changed the balance. They differ only when a decrement was
    clamped at zero, in which case shortfall holds the unfilled quantity.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_item_warehouse_created", "item_id", "warehouse_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    kind = db.Column(db.String(32), nullable=False, index=True)

    requested_delta = db.Column(db.Numeric(14, 3), nullable=False)
    applied_delta = db.Column(db.Numeric(14, 3), nullable=False)
    shortfall = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    quantity_after = db.Column(db.Numeric(14, 3), nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=True)
    cogs_cents = db.Column(db.Integer, nullable=True)
    low_stock = db.Column(db.Boolean, nullable=False, default=False)

    reason = db.Column(db.String(255), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("stock_transfers.id"), nullable=True, index=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    actor_name = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    item = db.relationship("InventoryItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "warehouse_id": self.warehouse_id,
            "kind": self.kind,
            "requested_delta": qty_to_json(self.requested_delta),
            "applied_delta": qty_to_json(self.applied_delta),
            "shortfall": qty_to_json(self.shortfall),
            "quantity_after": qty_to_json(self.quantity_after),
            "unit_cost_cents": self.unit_cost_cents,
            "cogs_cents": self.cogs_cents,
            "low_stock": self.low_stock,
            "reason": self.reason,
            "reference_id": self.reference_id,
            "transfer_id": self.transfer_id,
            "actor_user_id": self.actor_user_id,
            "actor_name": self.actor_name,
            "created_at": to_utc_z(self.created_at),
        }


class StockTransfer(db.Model):
    """
    A completed warehouse-to-warehouse transfer. Both legs are written in the
    same transaction as this row; quantity is what left the source and what
    the destination received.
    """
    __tablename__ = "stock_transfers"
    __table_args__ = (
        db.CheckConstraint("from_warehouse_id <> to_warehouse_id", name="ck_stock_transfers_distinct"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    from_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    to_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    requested_quantity = db.Column(db.Numeric(14, 3), nullable=False)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    movements = db.relationship("StockMovement", backref="transfer", lazy=True, order_by="StockMovement.id")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "from_warehouse_id": self.from_warehouse_id,
            "to_warehouse_id": self.to_warehouse_id,
            "requested_quantity": qty_to_json(self.requested_quantity),
            "quantity": qty_to_json(self.quantity),
            "reason": self.reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "movements": [m.to_dict() for m in self.movements],
        }
