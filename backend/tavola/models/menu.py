from __future__ import annotations

from ..extensions import db
from tavola.numbers import qty_to_json
from tavola.time_utils import to_utc_z


class MenuCategory(db.Model):
    __tablename__ = "menu_categories"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_menu_categories_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }


class MenuItem(db.Model):
    """
    Sellable catalog entry.

    Orders snapshot name and price at placement time, so editing a menu item
    never rewrites history. The item's bill of materials lives in
    RecipeIngredient rows keyed by menu_item_id.
    """
    __tablename__ = "menu_items"
    __table_args__ = (
        db.Index("ix_menu_items_category_active", "category_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey("menu_categories.id"), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("MenuCategory", backref=db.backref("items", lazy=True))
    modifier_groups = db.relationship(
        "ModifierGroup",
        backref="menu_item",
        lazy=True,
        order_by="ModifierGroup.id",
        cascade="all, delete-orphan",
    )
    recipe_lines = db.relationship(
        "RecipeIngredient",
        primaryjoin="MenuItem.id == RecipeIngredient.menu_item_id",
        lazy=True,
        order_by="RecipeIngredient.id",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<MenuItem id={self.id} name={self.name!r} price_cents={self.price_cents}>"

    def to_dict(self, *, include_modifiers: bool = False) -> dict:
        data = {
            "id": self.id,
            "category_id": self.category_id,
            "category": self.category.name if self.category else None,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_modifiers:
            data["modifier_groups"] = [g.to_dict() for g in self.modifier_groups]
        return data


class ModifierGroup(db.Model):
    """A named choice on a menu item, e.g. "Size" with min 1 / max 1."""
    __tablename__ = "modifier_groups"
    __table_args__ = (
        db.UniqueConstraint("menu_item_id", "name", name="uq_modifier_groups_item_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    min_selection = db.Column(db.Integer, nullable=False, default=0)
    max_selection = db.Column(db.Integer, nullable=False, default=1)

    options = db.relationship(
        "ModifierOption",
        backref="group",
        lazy=True,
        order_by="ModifierOption.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "min_selection": self.min_selection,
            "max_selection": self.max_selection,
            "options": [o.to_dict() for o in self.options],
        }


class ModifierOption(db.Model):
    __tablename__ = "modifier_options"
    __table_args__ = (
        db.UniqueConstraint("group_id", "name", name="uq_modifier_options_group_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("modifier_groups.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    recipe_lines = db.relationship(
        "RecipeIngredient",
        primaryjoin="ModifierOption.id == RecipeIngredient.modifier_option_id",
        lazy=True,
        order_by="RecipeIngredient.id",
        viewonly=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "name": self.name,
            "price_cents": self.price_cents,
        }


class RecipeOwner:
    MENU_ITEM = "MENU_ITEM"
    MODIFIER_OPTION = "MODIFIER_OPTION"
    INVENTORY_ITEM = "INVENTORY_ITEM"

    ALL = (MENU_ITEM, MODIFIER_OPTION, INVENTORY_ITEM)


class RecipeIngredient(db.Model):
    """
    One bill-of-materials line.

    Exactly one owner column is set:
    - menu_item_id: base recipe of a menu item
    - modifier_option_id: extra consumption when the option is selected
    - parent_item_id: components of a composite (prepared) inventory item
    """
    __tablename__ = "recipe_ingredients"
    __table_args__ = (
        db.CheckConstraint(
            "(CASE WHEN menu_item_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN modifier_option_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN parent_item_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_recipe_ingredients_single_owner",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), nullable=True, index=True)
    modifier_option_id = db.Column(db.Integer, db.ForeignKey("modifier_options.id"), nullable=True, index=True)
    parent_item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=True, index=True)

    ingredient_item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit = db.Column(db.String(16), nullable=True)

    ingredient = db.relationship("InventoryItem", foreign_keys=[ingredient_item_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "modifier_option_id": self.modifier_option_id,
            "parent_item_id": self.parent_item_id,
            "ingredient_item_id": self.ingredient_item_id,
            "ingredient_name": self.ingredient.name if self.ingredient else None,
            "quantity": qty_to_json(self.quantity),
            "unit": self.unit,
        }
