# Overview: Bill-of-materials expansion, validation and costing.

"""
Recipe Resolver

A sold line consumes:
- the menu item's base recipe lines, then
- for each selected modifier option, that option's recipe lines, with the
  options sorted by (group name, option name) so selection order never
  changes the result.

Lines are concatenated, never merged: the same ingredient may appear twice.
Each line is scaled by ingredient quantity * sold quantity.

Expansion is single-level unless RECIPE_EXPAND_COMPOSITES is on, in which
case a line whose inventory item has its own components is replaced by those
components (recursively, scaled by the parent quantity). A component chain
that leads back to itself raises RecipeCycleError.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from flask import current_app

from ..extensions import db
from ..models import InventoryItem, MenuItem, ModifierOption, RecipeIngredient, RecipeOwner
from ..numbers import quantize_qty, round_cents, to_decimal
from ..validation import ValidationError, NotFoundError
from . import audit_service
from .audit_service import AuditEventType
from .concurrency import run_atomic


class RecipeError(ValidationError):
    pass


class RecipeCycleError(RecipeError):
    def __init__(self, path: Sequence[int]):
        self.path = list(path)
        super().__init__("Recipe cycle detected: " + " -> ".join(str(p) for p in self.path))


@dataclass(frozen=True)
class Consumption:
    item_id: int
    quantity: Decimal
    unit: str | None = None
    source: str = "base"

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "quantity": float(self.quantity),
            "unit": self.unit,
            "source": self.source,
        }


def _option_sort_key(option: ModifierOption) -> tuple[str, str]:
    group_name = option.group.name if option.group is not None else ""
    return (group_name, option.name)


def _composites_enabled(expand_composites: bool | None) -> bool:
    if expand_composites is not None:
        return expand_composites
    return bool(current_app.config.get("RECIPE_EXPAND_COMPOSITES", False))


def _expand_composite(consumption: Consumption, path: tuple[int, ...]) -> list[Consumption]:
    if consumption.item_id in path:
        raise RecipeCycleError(path + (consumption.item_id,))

    item = db.session.get(InventoryItem, consumption.item_id)
    components = item.components if item is not None else []
    if not components:
        return [consumption]

    result: list[Consumption] = []
    next_path = path + (consumption.item_id,)
    for comp in components:
        child = Consumption(
            item_id=comp.ingredient_item_id,
            quantity=quantize_qty(Decimal(comp.quantity) * consumption.quantity),
            unit=comp.unit,
            source=consumption.source,
        )
        result.extend(_expand_composite(child, next_path))
    return result


def expand_line(
    menu_item: MenuItem,
    modifiers: Iterable[ModifierOption],
    quantity,
    *,
    expand_composites: bool | None = None,
) -> list[Consumption]:
    qty = to_decimal(quantity)
    lines: list[Consumption] = []

    for ing in menu_item.recipe_lines:
        lines.append(Consumption(
            item_id=ing.ingredient_item_id,
            quantity=quantize_qty(Decimal(ing.quantity) * qty),
            unit=ing.unit,
            source="base",
        ))

    for option in sorted(modifiers, key=_option_sort_key):
        group_name, option_name = _option_sort_key(option)
        for ing in option.recipe_lines:
            lines.append(Consumption(
                item_id=ing.ingredient_item_id,
                quantity=quantize_qty(Decimal(ing.quantity) * qty),
                unit=ing.unit,
                source=f"modifier:{group_name}/{option_name}",
            ))

    if not _composites_enabled(expand_composites):
        return lines

    expanded: list[Consumption] = []
    for line in lines:
        expanded.extend(_expand_composite(line, ()))
    return expanded


def expand_order(order, *, expand_composites: bool | None = None) -> list[Consumption]:
    """Expand every line of an order, in line order, using today's recipes."""
    consumptions: list[Consumption] = []
    for line in order.lines:
        menu_item = db.session.get(MenuItem, line.menu_item_id)
        if menu_item is None:
            raise NotFoundError(f"Menu item {line.menu_item_id} not found")
        option_ids = [m.get("option_id") for m in (line.modifiers or []) if m.get("option_id")]
        options = (
            db.session.query(ModifierOption).filter(ModifierOption.id.in_(option_ids)).all()
            if option_ids else []
        )
        consumptions.extend(expand_line(menu_item, options, line.quantity, expand_composites=expand_composites))
    return consumptions


def recipe_cost_cents(menu_item: MenuItem, modifiers: Iterable[ModifierOption] = ()) -> int:
    """Theoretical ingredient cost of one unit at current unit costs."""
    total = Decimal(0)
    for c in expand_line(menu_item, modifiers, 1):
        item = db.session.get(InventoryItem, c.item_id)
        if item is not None:
            total += c.quantity * Decimal(item.unit_cost_cents or 0)
    return round_cents(total)


def _find_cycle_from(item_id: int, path: tuple[int, ...]) -> tuple[int, ...] | None:
    if item_id in path:
        return path + (item_id,)
    item = db.session.get(InventoryItem, item_id)
    if item is None:
        return None
    for comp in item.components:
        cycle = _find_cycle_from(comp.ingredient_item_id, path + (item_id,))
        if cycle:
            return cycle
    return None


def _check_line(ing: RecipeIngredient, label: str, errors: list[str], warnings: list[str]) -> None:
    item = ing.ingredient
    if item is None:
        errors.append(f"Inventory item {ing.ingredient_item_id} not found for {label}")
        return
    if ing.quantity is None or Decimal(ing.quantity) <= 0:
        errors.append(f"Invalid quantity {ing.quantity} for item {item.name}")
    if item.unit_cost_cents is not None and item.unit_cost_cents < 0:
        errors.append(f"Negative cost {item.unit_cost_cents} for item {item.name}")
    if not item.unit_cost_cents:
        warnings.append(f"Item {item.name} has zero or null cost")
    if ing.unit and item.unit and ing.unit != item.unit:
        warnings.append(
            f"Unit mismatch for {item.name}: ingredient uses {ing.unit}, inventory uses {item.unit}"
        )
    cycle = _find_cycle_from(item.id, ())
    if cycle:
        errors.append("Recipe cycle detected: " + " -> ".join(str(p) for p in cycle))


def validate_bom(menu_item: MenuItem) -> dict:
    errors: list[str] = []
    warnings: list[str] = []
    count = 0

    for ing in menu_item.recipe_lines:
        count += 1
        _check_line(ing, menu_item.name, errors, warnings)

    for group in menu_item.modifier_groups:
        for option in group.options:
            for ing in option.recipe_lines:
                count += 1
                _check_line(ing, f"{group.name}/{option.name}", errors, warnings)

    if count == 0:
        warnings.append(f"{menu_item.name} has no recipe lines")

    return {
        "is_valid": not errors,
        "errors": errors,
        "warnings": warnings,
        "item_count": count,
    }


_OWNER_COLUMNS = {
    RecipeOwner.MENU_ITEM: ("menu_item_id", MenuItem),
    RecipeOwner.MODIFIER_OPTION: ("modifier_option_id", ModifierOption),
    RecipeOwner.INVENTORY_ITEM: ("parent_item_id", InventoryItem),
}


def set_recipe(
    *,
    owner_type: str,
    owner_id: int,
    lines: list[dict],
    actor,
) -> list[RecipeIngredient]:
    """
    Replace the bill of materials of a menu item, modifier option or
    composite inventory item. lines: [{ingredient_item_id, quantity, unit?}].
    """
    if owner_type not in _OWNER_COLUMNS:
        raise RecipeError(f"Unknown recipe owner type: {owner_type}")
    if not isinstance(lines, list):
        raise RecipeError("lines must be a list")

    column, owner_model = _OWNER_COLUMNS[owner_type]

    def _op() -> list[RecipeIngredient]:
        owner = db.session.get(owner_model, owner_id)
        if owner is None:
            raise NotFoundError(f"{owner_model.__name__} {owner_id} not found")

        cleaned = []
        for idx, raw in enumerate(lines):
            if not isinstance(raw, dict):
                raise RecipeError(f"lines[{idx}] must be an object")
            ingredient_id = raw.get("ingredient_item_id")
            if not isinstance(ingredient_id, int) or isinstance(ingredient_id, bool):
                raise RecipeError(f"lines[{idx}].ingredient_item_id must be an integer")
            ingredient = db.session.get(InventoryItem, ingredient_id)
            if ingredient is None:
                raise RecipeError(f"lines[{idx}]: inventory item {ingredient_id} not found")
            try:
                qty = to_decimal(raw.get("quantity"), field=f"lines[{idx}].quantity")
            except ValueError as e:
                raise RecipeError(str(e))
            if qty <= 0:
                raise RecipeError(f"lines[{idx}].quantity must be > 0")
            if owner_type == RecipeOwner.INVENTORY_ITEM:
                if ingredient_id == owner_id:
                    raise RecipeCycleError((owner_id, owner_id))
                cycle = _find_cycle_from(ingredient_id, (owner_id,))
                if cycle:
                    raise RecipeCycleError(cycle)
            cleaned.append((ingredient_id, quantize_qty(qty), raw.get("unit") or ingredient.unit))

        before = [r.to_dict() for r in db.session.query(RecipeIngredient).filter_by(**{column: owner_id}).all()]
        db.session.query(RecipeIngredient).filter_by(**{column: owner_id}).delete(synchronize_session="fetch")

        created = []
        for ingredient_id, qty, unit in cleaned:
            row = RecipeIngredient(ingredient_item_id=ingredient_id, quantity=qty, unit=unit, **{column: owner_id})
            db.session.add(row)
            created.append(row)

        if owner_type == RecipeOwner.INVENTORY_ITEM:
            owner.is_composite = bool(cleaned)

        db.session.flush()
        db.session.expire(owner)

        audit_service.record(
            AuditEventType.SETTINGS_CHANGE,
            actor=actor,
            before={"recipe": before},
            after={"recipe": [r.to_dict() for r in created]},
            metadata={"owner_type": owner_type, "owner_id": owner_id},
        )
        db.session.commit()
        return created

    return run_atomic(_op)
