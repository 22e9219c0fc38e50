"""
Recipe resolver tests: expansion, modifier ordering, composites, cycles,
BOM validation and costing.
"""

from decimal import Decimal

import pytest

from tavola.extensions import db
from tavola.models import AuditLog, InventoryItem, MenuItem, ModifierOption, RecipeIngredient, RecipeOwner
from tavola.services import order_service, recipe_service
from tavola.services.recipe_service import RecipeCycleError, RecipeError


def option(name: str) -> ModifierOption:
    return db.session.query(ModifierOption).filter_by(name=name).one()


def as_pairs(consumptions):
    return [(c.item_id, c.quantity) for c in consumptions]


@pytest.fixture
def dough(seed):
    """Composite item: 1 dough = 0.8 flour + 0.1 cheese."""
    item = InventoryItem(sku="DOUGH", name="Dough", unit="kg", unit_cost_cents=0, is_composite=True)
    db.session.add(item)
    db.session.flush()
    db.session.add_all([
        RecipeIngredient(parent_item_id=item.id, ingredient_item_id=seed.flour.id, quantity=Decimal("0.8"), unit="kg"),
        RecipeIngredient(parent_item_id=item.id, ingredient_item_id=seed.cheese.id, quantity=Decimal("0.1"), unit="kg"),
    ])
    db.session.commit()
    return item


class TestExpansion:

    def test_base_recipe_scales_with_quantity(self, seed):
        lines = recipe_service.expand_line(seed.bread, [], 3)
        assert as_pairs(lines) == [(seed.flour.id, Decimal("3"))]
        assert lines[0].source == "base"

    def test_modifier_lines_follow_base_and_are_not_merged(self, seed):
        lines = recipe_service.expand_line(seed.pizza, [option("Extra Cheese"), option("Large")], 2)

        assert as_pairs(lines) == [
            (seed.flour.id, Decimal("1")),
            (seed.cheese.id, Decimal("0.4")),
            (seed.cheese.id, Decimal("0.2")),
        ]
        assert lines[2].source == "modifier:Extras/Extra Cheese"

    def test_selection_order_does_not_matter(self, seed):
        a = recipe_service.expand_line(seed.pizza, [option("Large"), option("Extra Cheese")], 1)
        b = recipe_service.expand_line(seed.pizza, [option("Extra Cheese"), option("Large")], 1)
        assert a == b

    def test_item_without_recipe_consumes_nothing(self, seed):
        water = MenuItem(category_id=seed.category.id, name="Water", price_cents=50)
        db.session.add(water)
        db.session.commit()
        assert recipe_service.expand_line(water, [], 4) == []


class TestComposites:

    @pytest.fixture
    def focaccia(self, seed, dough):
        item = MenuItem(category_id=seed.category.id, name="Focaccia", price_cents=500)
        db.session.add(item)
        db.session.flush()
        db.session.add(RecipeIngredient(menu_item_id=item.id, ingredient_item_id=dough.id, quantity=Decimal("2")))
        db.session.commit()
        return item

    def test_single_level_by_default(self, focaccia, dough):
        lines = recipe_service.expand_line(focaccia, [], 1)
        assert as_pairs(lines) == [(dough.id, Decimal("2"))]

    def test_composites_expand_when_enabled(self, seed, focaccia):
        lines = recipe_service.expand_line(focaccia, [], 1, expand_composites=True)
        assert as_pairs(lines) == [
            (seed.flour.id, Decimal("1.6")),
            (seed.cheese.id, Decimal("0.2")),
        ]

    def test_config_switch(self, app, seed, focaccia):
        app.config["RECIPE_EXPAND_COMPOSITES"] = True
        lines = recipe_service.expand_line(focaccia, [], 1)
        assert [c.item_id for c in lines] == [seed.flour.id, seed.cheese.id]

    def test_cycle_refused_on_write(self, seed, actors, dough):
        sauce = InventoryItem(sku="SAUCE", name="Sauce", unit="kg", unit_cost_cents=3)
        db.session.add(sauce)
        db.session.commit()

        recipe_service.set_recipe(
            owner_type=RecipeOwner.INVENTORY_ITEM,
            owner_id=sauce.id,
            lines=[{"ingredient_item_id": dough.id, "quantity": 1}],
            actor=actors["admin"],
        )
        with pytest.raises(RecipeCycleError):
            recipe_service.set_recipe(
                owner_type=RecipeOwner.INVENTORY_ITEM,
                owner_id=dough.id,
                lines=[{"ingredient_item_id": sauce.id, "quantity": 1}],
                actor=actors["admin"],
            )

    def test_self_reference_refused(self, actors, dough):
        with pytest.raises(RecipeCycleError):
            recipe_service.set_recipe(
                owner_type=RecipeOwner.INVENTORY_ITEM,
                owner_id=dough.id,
                lines=[{"ingredient_item_id": dough.id, "quantity": 1}],
                actor=actors["admin"],
            )


class TestSetRecipe:

    def test_replaces_lines_and_audits(self, seed, actors):
        recipe_service.set_recipe(
            owner_type=RecipeOwner.MENU_ITEM,
            owner_id=seed.bread.id,
            lines=[
                {"ingredient_item_id": seed.flour.id, "quantity": "0.75"},
                {"ingredient_item_id": seed.cheese.id, "quantity": 0.05},
            ],
            actor=actors["admin"],
        )

        bread = db.session.get(MenuItem, seed.bread.id)
        assert [(r.ingredient_item_id, Decimal(r.quantity)) for r in bread.recipe_lines] == [
            (seed.flour.id, Decimal("0.75")),
            (seed.cheese.id, Decimal("0.05")),
        ]
        log = db.session.query(AuditLog).filter_by(event_type="SETTINGS_CHANGE").one()
        assert log.metadata_json == {"owner_type": "MENU_ITEM", "owner_id": seed.bread.id}

    @pytest.mark.parametrize("line", [
        {"ingredient_item_id": 9999, "quantity": 1},
        {"ingredient_item_id": "1", "quantity": 1},
        {"quantity": 1},
    ])
    def test_bad_ingredient_refused(self, seed, actors, line):
        with pytest.raises(RecipeError):
            recipe_service.set_recipe(
                owner_type=RecipeOwner.MENU_ITEM, owner_id=seed.bread.id, lines=[line], actor=actors["admin"]
            )

    @pytest.mark.parametrize("quantity", [0, -1, "abc"])
    def test_bad_quantity_refused(self, seed, actors, quantity):
        with pytest.raises(RecipeError):
            recipe_service.set_recipe(
                owner_type=RecipeOwner.MENU_ITEM,
                owner_id=seed.bread.id,
                lines=[{"ingredient_item_id": seed.flour.id, "quantity": quantity}],
                actor=actors["admin"],
            )
        assert len(db.session.get(MenuItem, seed.bread.id).recipe_lines) == 1

    def test_unknown_owner_type(self, seed, actors):
        with pytest.raises(RecipeError):
            recipe_service.set_recipe(owner_type="TABLE", owner_id=1, lines=[], actor=actors["admin"])


class TestBomAndCost:

    def test_valid_bom(self, seed):
        report = recipe_service.validate_bom(seed.bread)
        assert report["is_valid"] is True
        assert report["item_count"] == 1

    def test_bom_counts_modifier_lines(self, seed):
        report = recipe_service.validate_bom(seed.pizza)
        assert report["item_count"] == 3

    def test_zero_cost_and_unit_mismatch_warn(self, seed, actors):
        salt = InventoryItem(sku="SALT", name="Salt", unit="g", unit_cost_cents=0)
        db.session.add(salt)
        db.session.commit()
        recipe_service.set_recipe(
            owner_type=RecipeOwner.MENU_ITEM,
            owner_id=seed.bread.id,
            lines=[{"ingredient_item_id": salt.id, "quantity": 5, "unit": "kg"}],
            actor=actors["admin"],
        )

        report = recipe_service.validate_bom(db.session.get(MenuItem, seed.bread.id))
        assert report["is_valid"] is True
        assert any("zero or null cost" in w for w in report["warnings"])
        assert any("Unit mismatch" in w for w in report["warnings"])

    def test_empty_recipe_warns(self, seed):
        water = MenuItem(category_id=seed.category.id, name="Water", price_cents=50)
        db.session.add(water)
        db.session.commit()
        assert recipe_service.validate_bom(water)["warnings"] == ["Water has no recipe lines"]

    def test_recipe_cost(self, seed):
        assert recipe_service.recipe_cost_cents(seed.bread) == 5
        # 0.5 * 5 + (0.2 + 0.1) * 20 = 8.5, half-up
        assert recipe_service.recipe_cost_cents(seed.pizza, [option("Extra Cheese")]) == 9

    def test_expand_order_uses_snapshotted_options(self, seed, actors):
        order = order_service.place_order(
            {
                "type": "TAKEAWAY",
                "payment_method": "CASH",
                "items": [{
                    "menu_item_id": seed.pizza.id,
                    "quantity": 2,
                    "modifiers": [{"group_name": "Size", "option_name": "Small"}],
                }],
            },
            actor=actors["cashier"],
        )
        consumptions = recipe_service.expand_order(order)
        assert as_pairs(consumptions) == [(seed.flour.id, Decimal("1")), (seed.cheese.id, Decimal("0.4"))]
