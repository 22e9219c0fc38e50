"""
Stock ledger tests: movements, underflow policy, transfers, receipts, waste
and the journal entries they post.
"""

from decimal import Decimal

import pytest

from tavola.extensions import db
from tavola.models import AuditLog, InventoryItem, JournalEntry, MovementKind, StockMovement, SyncQueueItem
from tavola.services import stock_service
from tavola.services.audit_service import AuditEventType
from tavola.services.ledger_service import EntrySource, get_account_by_code
from tavola.services.permission_service import BranchScopeError
from tavola.services.stock_service import InsufficientStockError, StockError
from tavola.validation import ConflictError


def qty(seed, item, warehouse) -> Decimal:
    return stock_service.get_quantity(item.id, warehouse.id)


# =============================================================================
# ADJUSTMENTS
# =============================================================================

class TestAdjustments:

    def test_negative_adjustment_posts_expense(self, seed, actors):
        movement = stock_service.adjust_stock(
            item_id=seed.flour.id,
            warehouse_id=seed.kitchen.id,
            delta=-3,
            reason="Spilled",
            actor=actors["manager"],
        )

        assert movement.kind == MovementKind.ADJUSTMENT
        assert qty(seed, seed.flour, seed.kitchen) == Decimal("7")

        entry = db.session.query(JournalEntry).filter_by(source=EntrySource.INVENTORY_ADJUSTMENT).one()
        assert entry.amount_cents == 15
        assert entry.debit_account.code == "5110"
        assert entry.credit_account.code == "1210"
        assert db.session.query(AuditLog).filter_by(event_type=AuditEventType.INVENTORY_ADJUSTMENT).count() == 1

    def test_reason_required(self, seed, actors):
        with pytest.raises(StockError):
            stock_service.adjust_stock(
                item_id=seed.flour.id, warehouse_id=seed.kitchen.id, delta=-1, reason="  ", actor=actors["manager"]
            )

    def test_zero_delta_refused(self, seed, actors):
        with pytest.raises(StockError):
            stock_service.adjust_stock(
                item_id=seed.flour.id, warehouse_id=seed.kitchen.id, delta=0, reason="x", actor=actors["manager"]
            )

    def test_clamp_policy_floors_at_zero(self, seed, actors):
        movement = stock_service.adjust_stock(
            item_id=seed.flour.id,
            warehouse_id=seed.kitchen.id,
            delta=-15,
            reason="Count correction",
            actor=actors["manager"],
        )

        assert qty(seed, seed.flour, seed.kitchen) == Decimal("0")
        assert movement.applied_delta == Decimal("-10")
        assert movement.shortfall == Decimal("5")
        assert movement.low_stock is True

    def test_reject_policy_refuses_underflow(self, app, seed, actors):
        app.config["STOCK_UNDERFLOW_POLICY"] = "REJECT"
        with pytest.raises(InsufficientStockError) as exc_info:
            stock_service.adjust_stock(
                item_id=seed.flour.id,
                warehouse_id=seed.kitchen.id,
                delta=-15,
                reason="Count correction",
                actor=actors["manager"],
            )

        assert exc_info.value.available == Decimal("10")
        assert isinstance(exc_info.value, ConflictError)
        assert qty(seed, seed.flour, seed.kitchen) == Decimal("10")
        assert db.session.query(StockMovement).count() == 0

    def test_other_branch_refused(self, seed, actors):
        with pytest.raises(BranchScopeError):
            stock_service.adjust_stock(
                item_id=seed.flour.id,
                warehouse_id=seed.kitchen.id,
                delta=1,
                reason="Found a bag",
                actor=actors["north_cashier"],
            )

    def test_set_level_to_current_is_a_no_op(self, seed, actors):
        result = stock_service.set_stock_level(
            item_id=seed.flour.id, warehouse_id=seed.kitchen.id, quantity=10, reason=None, actor=actors["manager"]
        )
        assert result is None
        assert db.session.query(StockMovement).count() == 0

    def test_set_level_up_posts_reversal(self, seed, actors):
        movement = stock_service.set_stock_level(
            item_id=seed.flour.id, warehouse_id=seed.kitchen.id, quantity=12, reason="Recount", actor=actors["manager"]
        )

        assert movement.applied_delta == Decimal("2")
        entry = db.session.query(JournalEntry).one()
        assert entry.debit_account.code == "1210"
        assert entry.credit_account.code == "5110"
        assert entry.amount_cents == 10

    def test_set_level_below_zero_lands_on_zero(self, seed, actors):
        stock_service.set_stock_level(
            item_id=seed.flour.id, warehouse_id=seed.kitchen.id, quantity=-4, reason="Recount", actor=actors["manager"]
        )
        assert qty(seed, seed.flour, seed.kitchen) == Decimal("0")

    def test_every_movement_is_queued(self, seed, actors):
        stock_service.adjust_stock(
            item_id=seed.flour.id, warehouse_id=seed.kitchen.id, delta=-1, reason="Spilled", actor=actors["manager"]
        )
        assert db.session.query(SyncQueueItem).filter_by(entity_type="stock_movement").count() == 1

    def test_apply_movement_returns_new_level(self, seed):
        level = stock_service.apply_movement(
            item_id=seed.flour.id, warehouse_id=seed.kitchen.id, delta="2.5", kind=MovementKind.PURCHASE
        )
        assert level == Decimal("12.5")

        level = stock_service.apply_movement(
            item_id=seed.flour.id, warehouse_id=seed.kitchen.id, delta=-20, kind=MovementKind.SALE_CONSUMPTION
        )
        assert level == Decimal("0")

    def test_apply_movement_rejects_unknown_kind(self, seed):
        with pytest.raises(StockError):
            stock_service.apply_movement(item_id=seed.flour.id, warehouse_id=seed.kitchen.id, delta=1, kind="GIFT")


# =============================================================================
# TRANSFERS
# =============================================================================

class TestTransfers:

    def test_transfer_moves_both_legs(self, seed, actors):
        transfer = stock_service.transfer_stock(
            item_id=seed.flour.id,
            from_warehouse_id=seed.store.id,
            to_warehouse_id=seed.kitchen.id,
            quantity=5,
            actor=actors["manager"],
            reason="Morning restock",
        )

        assert qty(seed, seed.flour, seed.store) == Decimal("45")
        assert qty(seed, seed.flour, seed.kitchen) == Decimal("15")
        assert transfer.quantity == Decimal("5")

        legs = db.session.query(StockMovement).filter_by(transfer_id=transfer.id).order_by(StockMovement.id).all()
        assert [leg.applied_delta for leg in legs] == [Decimal("-5"), Decimal("5")]
        assert db.session.query(SyncQueueItem).filter_by(entity_type="stock_transfer").count() == 1
        assert db.session.query(SyncQueueItem).filter_by(entity_type="stock_movement").count() == 0

    def test_partial_transfer_moves_what_exists(self, seed, actors):
        transfer = stock_service.transfer_stock(
            item_id=seed.cheese.id,
            from_warehouse_id=seed.kitchen.id,
            to_warehouse_id=seed.store.id,
            quantity=8,
            actor=actors["manager"],
        )

        assert transfer.requested_quantity == Decimal("8")
        assert transfer.quantity == Decimal("5")
        assert qty(seed, seed.cheese, seed.kitchen) == Decimal("0")
        assert qty(seed, seed.cheese, seed.store) == Decimal("5")

    def test_transfer_from_empty_warehouse_fails_cleanly(self, seed, actors):
        with pytest.raises(InsufficientStockError):
            stock_service.transfer_stock(
                item_id=seed.cheese.id,
                from_warehouse_id=seed.store.id,
                to_warehouse_id=seed.kitchen.id,
                quantity=1,
                actor=actors["manager"],
            )
        assert qty(seed, seed.cheese, seed.kitchen) == Decimal("5")
        assert db.session.query(StockMovement).count() == 0

    def test_same_warehouse_refused(self, seed, actors):
        with pytest.raises(StockError):
            stock_service.transfer_stock(
                item_id=seed.flour.id,
                from_warehouse_id=seed.kitchen.id,
                to_warehouse_id=seed.kitchen.id,
                quantity=1,
                actor=actors["manager"],
            )


# =============================================================================
# RECEIPTS AND WASTE
# =============================================================================

class TestReceiptsAndWaste:

    def test_receipt_updates_moving_average_cost(self, seed, actors):
        stock_service.receive_purchase(
            item_id=seed.flour.id,
            warehouse_id=seed.kitchen.id,
            quantity=10,
            unit_cost_cents=11,
            actor=actors["manager"],
            reference="PO-1",
        )

        # (60 * 5 + 10 * 11) / 70 = 5.86
        assert db.session.get(InventoryItem, seed.flour.id).unit_cost_cents == 6
        assert qty(seed, seed.flour, seed.kitchen) == Decimal("20")

        entry = db.session.query(JournalEntry).filter_by(source=EntrySource.PURCHASE_RECEIPT).one()
        assert entry.amount_cents == 110
        assert get_account_by_code("2100").balance_cents == -110

    def test_receipt_rejects_negative_cost(self, seed, actors):
        with pytest.raises(StockError):
            stock_service.receive_purchase(
                item_id=seed.flour.id,
                warehouse_id=seed.kitchen.id,
                quantity=1,
                unit_cost_cents=-1,
                actor=actors["manager"],
            )

    def test_waste_posts_expense(self, seed, actors):
        movement = stock_service.record_waste(
            item_id=seed.flour.id,
            warehouse_id=seed.kitchen.id,
            quantity=2,
            reason="Mice",
            actor=actors["manager"],
        )

        assert movement.kind == MovementKind.WASTE
        entry = db.session.query(JournalEntry).filter_by(source=EntrySource.WASTAGE).one()
        assert entry.amount_cents == 10
        assert db.session.query(AuditLog).filter_by(event_type=AuditEventType.INVENTORY_WASTE).count() == 1


# =============================================================================
# READS AND ITEM CATALOG
# =============================================================================

class TestReads:

    def test_low_stock_report(self, seed, actors):
        stock_service.set_stock_level(
            item_id=seed.flour.id, warehouse_id=seed.kitchen.id, quantity=1, reason="Recount", actor=actors["manager"]
        )
        rows = stock_service.low_stock_items(branch_id=seed.branch.id)

        flour_rows = [r for r in rows if r["item_id"] == seed.flour.id]
        assert [r["warehouse_id"] for r in flour_rows] == [seed.kitchen.id]
        assert flour_rows[0]["quantity"] == 1.0

    def test_item_levels_per_branch(self, seed):
        levels = {row["name"]: row for row in stock_service.get_item_levels(branch_id=seed.branch.id)}

        assert levels["Flour"]["total_quantity"] == 60.0
        assert levels["Cheese"]["total_quantity"] == 5.0

    def test_movement_history_newest_first(self, seed, actors):
        for delta in (-1, -2):
            stock_service.adjust_stock(
                item_id=seed.flour.id, warehouse_id=seed.kitchen.id, delta=delta, reason="Used", actor=actors["manager"]
            )
        history = stock_service.list_movements(item_id=seed.flour.id)
        assert [m.applied_delta for m in history] == [Decimal("-2"), Decimal("-1")]

    def test_create_item_rejects_duplicate_sku(self, seed, actors):
        item = stock_service.create_item(payload={"sku": "OIL", "name": "Olive Oil", "unit": "l"}, actor=actors["admin"])
        assert item.id is not None

        with pytest.raises(ConflictError):
            stock_service.create_item(payload={"sku": "OIL", "name": "Other Oil"}, actor=actors["admin"])
