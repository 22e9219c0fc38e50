"""
AI action guard tests.

The guard is pure: the first group needs no app at all. The second group runs
previews and executions through ai_action_service against the seeded branch.
"""

import copy
from decimal import Decimal

import pytest

from tavola.extensions import db
from tavola.models import AuditLog, Customer, InventoryItem, MenuCategory, MenuItem, StockMovement, User
from tavola.services import ai_action_service, stock_service
from tavola.services.audit_service import AuditEventType
from tavola.services.ai_action_service import ActionBlockedError
from tavola.services.ai_guard import (
    AnalyzeMenu,
    CreateMenuCategory,
    CreateMenuItem,
    CreateUser,
    ShowReport,
    UnknownAction,
    UpdateInventory,
    UpdateMenuCategory,
    UpdateMenuPrice,
    guard_action,
    parse_action,
)
from tavola.services.permission_service import (
    BranchScopeError,
    PermissionDeniedError,
    build_actor,
    set_permission_override,
)
from tavola.validation import ValidationError


CONTEXT = {
    "inventory": [{"id": 1, "name": "Flour", "quantity": 10, "unit": "kg"}],
    "menu_items": [{"id": 3, "name": "Bread", "price_cents": 100}],
    "categories": [{"id": 2, "name": "Bakery"}],
    "customers": [],
}


def _audit_types() -> list[str]:
    return [log.event_type for log in db.session.query(AuditLog).order_by(AuditLog.id).all()]


# =============================================================================
# PURE GUARD
# =============================================================================

class TestGuard:

    def test_price_update_before_and_after(self):
        guarded = guard_action({"type": "UPDATE_MENU_PRICE", "item_id": 3, "price_cents": 150}, CONTEXT)

        assert guarded.can_execute is True
        assert guarded.permission == "CFG_EDIT_MENU_PRICING"
        assert guarded.audit_type == "SETTINGS_CHANGE"
        assert guarded.before == {"id": 3, "name": "Bread", "price_cents": 100}
        assert guarded.after == {"id": 3, "name": "Bread", "price_cents": 150}

    def test_inventory_update_merges_data(self):
        guarded = guard_action(UpdateInventory(item_id=1, data={"quantity": 4}), CONTEXT)

        assert guarded.permission == "OP_ADJUST_STOCK"
        assert guarded.audit_type == "INVENTORY_ADJUSTMENT"
        assert guarded.after["quantity"] == 4
        assert guarded.after["name"] == "Flour"

    def test_ids_match_across_types(self):
        guarded = guard_action({"type": "UPDATE_INVENTORY", "item_id": "1", "data": {"quantity": 2}}, CONTEXT)
        assert guarded.can_execute is True

    def test_missing_target_cannot_execute(self):
        guarded = guard_action({"type": "UPDATE_MENU_ITEM", "item_id": 99, "data": {"name": "x"}}, CONTEXT)

        assert guarded.can_execute is False
        assert guarded.reason == "Item not found"
        assert guarded.before is None

    def test_create_with_unknown_category(self):
        guarded = guard_action({"type": "CREATE_MENU_ITEM", "category_id": 42, "data": {"name": "Tea"}}, CONTEXT)
        assert guarded.can_execute is False
        assert guarded.reason == "Category not found"

    def test_unknown_action(self):
        guarded = guard_action({"type": "DELETE_EVERYTHING"}, CONTEXT)

        assert isinstance(guarded.action, UnknownAction)
        assert guarded.can_execute is False
        assert guarded.permission is None
        assert guarded.reason == "Unsupported action type"

    def test_insight_actions(self):
        for raw in ({"type": "ANALYZE_MENU"}, {"type": "ANALYZE_INVENTORY"}, {"type": "SHOW_REPORT", "report": "pnl"}):
            guarded = guard_action(raw, CONTEXT)
            assert guarded.can_execute is True
            assert guarded.permission == "NAV_REPORTS"
            assert guarded.audit_type == "AI_INSIGHT_GENERATED"

    def test_customer_creation(self):
        guarded = guard_action({"type": "CREATE_CUSTOMER", "data": {"name": "Omar"}}, CONTEXT)
        assert guarded.permission == "NAV_CRM"
        assert guarded.audit_type == "CUSTOMER_CREATED"
        assert guarded.after == {"name": "Omar"}

    def test_deterministic_id(self):
        raw = {"type": "UPDATE_MENU_PRICE", "item_id": 3, "price_cents": 150}
        a = guard_action(raw, CONTEXT)
        b = guard_action(copy.deepcopy(raw), copy.deepcopy(CONTEXT))

        assert a.id == b.id
        assert a.id.startswith("AI-") and len(a.id) == 13
        assert guard_action({**raw, "price_cents": 151}, CONTEXT).id != a.id

    def test_inputs_are_not_mutated_and_outputs_are_copies(self):
        context = copy.deepcopy(CONTEXT)
        guarded = guard_action({"type": "UPDATE_MENU_PRICE", "item_id": 3, "price_cents": 150}, context)

        guarded.before["name"] = "Changed"
        guarded.after["price_cents"] = 1

        assert context == CONTEXT
        assert guard_action({"type": "UPDATE_MENU_PRICE", "item_id": 3, "price_cents": 150}, context).before["name"] == "Bread"

    def test_assistant_form_with_camel_case(self):
        action = parse_action({"actionType": "update_menu_price", "parameters": {"itemId": 3, "priceCents": 175}})

        assert isinstance(action, UpdateMenuPrice)
        assert action.item_id == 3
        assert action.price_cents == 175

    def test_non_dict_is_unknown(self):
        assert isinstance(parse_action("nonsense"), UnknownAction)
        assert isinstance(parse_action({"type": "analyze_menu"}), AnalyzeMenu)

    def test_to_dict_round_shape(self):
        data = guard_action({"type": "ANALYZE_MENU"}, None).to_dict()
        assert data["action"] == {"type": "ANALYZE_MENU"}
        assert data["can_execute"] is True

    def test_category_creation(self):
        guarded = guard_action({"type": "CREATE_MENU_CATEGORY", "data": {"name": " Soups "}}, CONTEXT)

        assert isinstance(guarded.action, CreateMenuCategory)
        assert guarded.can_execute is True
        assert guarded.permission == "CFG_EDIT_MENU_PRICING"
        assert guarded.audit_type == "SETTINGS_CHANGE"
        assert guarded.after == {"name": "Soups"}

    def test_category_creation_needs_new_name(self):
        blank = guard_action({"type": "CREATE_MENU_CATEGORY", "data": {"name": "  "}}, CONTEXT)
        taken = guard_action({"type": "CREATE_MENU_CATEGORY", "data": {"name": "bakery"}}, CONTEXT)

        assert blank.can_execute is False
        assert blank.reason == "Category name is required"
        assert taken.can_execute is False
        assert taken.reason == "Category already exists"

    def test_category_update(self):
        guarded = guard_action({"type": "UPDATE_MENU_CATEGORY", "category_id": 2, "data": {"name": "Breads"}}, CONTEXT)

        assert guarded.can_execute is True
        assert guarded.permission == "CFG_EDIT_MENU_PRICING"
        assert guarded.before == {"id": 2, "name": "Bakery"}
        assert guarded.after == {"id": 2, "name": "Breads"}

    def test_category_update_missing_target(self):
        guarded = guard_action({"type": "UPDATE_MENU_CATEGORY", "category_id": 42, "data": {"name": "x"}}, CONTEXT)
        assert guarded.can_execute is False
        assert guarded.reason == "Category not found"

    def test_user_creation_masks_password(self):
        raw = {"type": "CREATE_USER", "data": {"username": "sara", "role": "cashier", "password": "Secret123!"}}
        guarded = guard_action(raw, CONTEXT)

        assert isinstance(guarded.action, CreateUser)
        assert guarded.can_execute is True
        assert guarded.permission == "CFG_MANAGE_USERS"
        assert guarded.audit_type == "SECURITY_PERMISSION_CHANGE"
        assert guarded.after["role"] == "CASHIER"
        assert guarded.after["password"] == "******"
        assert guarded.to_dict()["action"]["data"]["password"] == "******"
        # the action itself still carries it for the executor
        assert guarded.action.data["password"] == "Secret123!"

    def test_user_creation_checks(self):
        no_name = guard_action({"type": "CREATE_USER", "data": {"role": "CASHIER", "password": "x"}}, CONTEXT)
        bad_role = guard_action({"type": "CREATE_USER", "data": {"username": "sara", "role": "OWNER", "password": "x"}}, CONTEXT)
        no_password = guard_action({"type": "CREATE_USER", "data": {"username": "sara", "role": "CASHIER"}}, CONTEXT)

        assert no_name.reason == "Username is required"
        assert bad_role.reason == "Unknown role"
        assert no_password.reason == "Password is required"
        assert not any(g.can_execute for g in (no_name, bad_role, no_password))

    @pytest.mark.parametrize("alias, kind", [
        ("ADD_CATEGORY", CreateMenuCategory),
        ("edit-category", UpdateMenuCategory),
        ("add user", CreateUser),
        ("ADD_MENU_ITEM", CreateMenuItem),
        ("update_price", UpdateMenuPrice),
        ("OPEN_REPORT", ShowReport),
    ])
    def test_aliases_map_to_kinds(self, alias, kind):
        assert isinstance(parse_action({"type": alias}), kind)

    def test_alias_in_assistant_form_with_top_level_fields(self):
        action = parse_action({"actionType": "Add Category", "parameters": {"name": "Soups"}})

        assert isinstance(action, CreateMenuCategory)
        assert action.data == {"name": "Soups"}
        assert guard_action(action, CONTEXT).can_execute is True


# =============================================================================
# PREVIEW AND EXECUTION
# =============================================================================

class TestExecution:

    def test_preview_without_permission_downgrades(self, seed, actors):
        guarded = ai_action_service.preview_action(
            {"type": "UPDATE_MENU_PRICE", "item_id": seed.bread.id, "price_cents": 150},
            actor=actors["manager"],
        )
        assert guarded.can_execute is False
        assert guarded.reason == "Missing required permission"

    def test_price_change_executes_through_menu_service(self, seed, actors):
        guarded, result = ai_action_service.execute_action(
            {"type": "UPDATE_MENU_PRICE", "item_id": seed.bread.id, "price_cents": 150},
            actor=actors["admin"],
            explanation="Flour costs rose",
        )

        assert db.session.get(MenuItem, seed.bread.id).price_cents == 150
        assert result["updated"]["price_cents"] == 150

        assert _audit_types() == ["SETTINGS_CHANGE", "AI_ACTION_EXECUTED"]
        link = db.session.query(AuditLog).filter_by(event_type=AuditEventType.AI_ACTION_EXECUTED).one()
        assert link.reason == "Flour costs rose"
        assert link.metadata_json["ai_action_id"] == guarded.id
        assert link.metadata_json["mutation_audit_type"] == "SETTINGS_CHANGE"

    def test_inventory_quantity_goes_through_stock_ledger(self, seed, actors):
        guarded, result = ai_action_service.execute_action(
            {"type": "UPDATE_INVENTORY", "item_id": seed.flour.id, "data": {"quantity": 4}},
            actor=actors["manager"],
        )

        assert stock_service.get_quantity(seed.flour.id, seed.kitchen.id) == Decimal("4")
        assert result["movement"]["kind"] == "ADJUSTMENT"
        assert result["quantity"] == 4.0
        assert _audit_types() == ["INVENTORY_ADJUSTMENT", "AI_ACTION_EXECUTED"]

    def test_insight_records_single_insight_entry(self, seed, actors):
        ai_action_service.execute_action({"type": "ANALYZE_INVENTORY"}, actor=actors["manager"])
        assert _audit_types() == ["AI_INSIGHT_GENERATED"]

    def test_inventory_attributes_and_level_land_together(self, seed, actors):
        ai_action_service.execute_action(
            {"type": "UPDATE_INVENTORY", "item_id": seed.flour.id, "data": {"threshold": 3, "quantity": 6}},
            actor=actors["manager"],
        )

        assert db.session.get(InventoryItem, seed.flour.id).threshold == Decimal("3")
        assert stock_service.get_quantity(seed.flour.id, seed.kitchen.id) == Decimal("6")

    def test_inventory_failure_leaves_attributes_untouched(self, seed, actors):
        with pytest.raises(BranchScopeError):
            ai_action_service.execute_action(
                {
                    "type": "UPDATE_INVENTORY",
                    "item_id": seed.flour.id,
                    "data": {"threshold": 3, "quantity": 6, "warehouse_id": seed.north_kitchen.id},
                },
                actor=actors["manager"],
            )

        db.session.expire_all()
        assert db.session.get(InventoryItem, seed.flour.id).threshold == Decimal("1")
        assert db.session.query(StockMovement).count() == 0
        assert _audit_types() == []

    def test_inventory_bad_warehouse_id_is_a_validation_error(self, seed, actors):
        with pytest.raises(ValidationError):
            ai_action_service.execute_action(
                {"type": "UPDATE_INVENTORY", "item_id": seed.flour.id, "data": {"quantity": 6, "warehouse_id": "kitchen"}},
                actor=actors["manager"],
            )
        assert stock_service.get_quantity(seed.flour.id, seed.kitchen.id) == Decimal("10")

    def test_create_and_rename_category(self, seed, actors):
        _, created = ai_action_service.execute_action(
            {"type": "ADD_CATEGORY", "name": "Soups"}, actor=actors["admin"]
        )
        category = db.session.get(MenuCategory, created["id"])
        assert category.name == "Soups"

        _, updated = ai_action_service.execute_action(
            {"type": "UPDATE_MENU_CATEGORY", "category_id": category.id, "data": {"name": "Stews", "sort_order": 4}},
            actor=actors["admin"],
        )
        assert updated["updated"]["name"] == "Stews"
        assert db.session.get(MenuCategory, category.id).sort_order == 4
        assert _audit_types().count("SETTINGS_CHANGE") == 2

    def test_create_user_in_actor_branch(self, seed, actors):
        guarded, result = ai_action_service.execute_action(
            {"type": "ADD_USER", "data": {"username": "sara", "name": "Sara", "role": "CASHIER", "password": "Secret123!"}},
            actor=actors["admin"],
        )

        user = db.session.get(User, result["id"])
        assert user.role == "CASHIER"
        assert user.branch_id == seed.branch.id
        assert "password" not in result["created"]
        assert _audit_types() == ["SECURITY_PERMISSION_CHANGE", "AI_ACTION_EXECUTED"]
        link = db.session.query(AuditLog).filter_by(event_type=AuditEventType.AI_ACTION_EXECUTED).one()
        assert link.after["password"] == "******"

    def test_create_user_weak_password(self, seed, actors):
        with pytest.raises(ValidationError):
            ai_action_service.execute_action(
                {"type": "CREATE_USER", "data": {"username": "sara", "role": "CASHIER", "password": "short"}},
                actor=actors["admin"],
            )
        assert db.session.query(User).filter_by(username="sara").count() == 0

    def test_create_user_needs_manage_users(self, seed, actors):
        with pytest.raises(PermissionDeniedError):
            ai_action_service.execute_action(
                {"type": "CREATE_USER", "data": {"username": "sara", "role": "CASHIER", "password": "Secret123!"}},
                actor=actors["manager"],
            )

    def test_granted_cashier_is_not_an_assistant_role(self, seed, actors):
        set_permission_override(
            user_id=seed.users["cashier"].id,
            permission_code="CFG_EDIT_MENU_PRICING",
            override_type="GRANT",
            actor=actors["admin"],
        )
        db.session.commit()
        cashier = build_actor(seed.users["cashier"], device_id="POS-TEST")
        action = {"type": "UPDATE_MENU_PRICE", "item_id": seed.bread.id, "price_cents": 150}

        guarded = ai_action_service.preview_action(action, actor=cashier)
        assert guarded.can_execute is False
        assert guarded.reason == "Role not allowed to run assistant actions"

        with pytest.raises(PermissionDeniedError):
            ai_action_service.execute_action(action, actor=cashier)
        assert db.session.get(MenuItem, seed.bread.id).price_cents == 100

    def test_missing_permission_refused(self, seed, actors):
        with pytest.raises(PermissionDeniedError):
            ai_action_service.execute_action(
                {"type": "UPDATE_MENU_PRICE", "item_id": seed.bread.id, "price_cents": 150},
                actor=actors["manager"],
            )
        assert db.session.get(MenuItem, seed.bread.id).price_cents == 100

    def test_blocked_action_refused(self, seed, actors):
        with pytest.raises(ActionBlockedError) as exc_info:
            ai_action_service.execute_action(
                {"type": "UPDATE_MENU_PRICE", "item_id": 9999, "price_cents": 150},
                actor=actors["admin"],
            )
        assert exc_info.value.guarded.reason == "Item not found"

    def test_create_customer(self, seed, actors):
        _, result = ai_action_service.execute_action(
            {"type": "CREATE_CUSTOMER", "data": {"name": "Omar", "phone": "01234567"}},
            actor=actors["admin"],
        )
        assert db.session.get(Customer, result["id"]).name == "Omar"

    def test_analyze_menu_reports_margins(self, seed, actors):
        _, result = ai_action_service.execute_action({"type": "ANALYZE_MENU"}, actor=actors["manager"])

        rows = {row["name"]: row for row in result["items"]}
        assert rows["Bread"]["recipe_cost_cents"] == 5
        assert rows["Bread"]["margin_cents"] == 95

    def test_context_lists_branch_inventory(self, seed, actors):
        context = ai_action_service.build_context(actors["manager"])

        flour = next(row for row in context["inventory"] if row["id"] == seed.flour.id)
        assert flour["quantity"] == 10.0
        assert flour["warehouse_id"] == seed.kitchen.id
