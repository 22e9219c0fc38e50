"""
Pytest fixtures for Tavola backend tests.

Provides an app on in-memory SQLite with a seeded branch (warehouses, chart
of accounts, users, menu, inventory), a simulated upstream backend built on
httpx.MockTransport, actor contexts and auth headers.
"""

import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from tavola import create_app
from tavola.extensions import db
from tavola.models import (
    Branch,
    DiningTable,
    InventoryItem,
    MenuCategory,
    MenuItem,
    ModifierGroup,
    ModifierOption,
    RecipeIngredient,
    Warehouse,
    WarehouseStock,
    WarehouseType,
)
from tavola.permissions import UserRole
from tavola.services import ledger_service
from tavola.services.auth_service import create_user
from tavola.services.backend_client import UpstreamClient
from tavola.services.permission_service import build_actor


TEST_PASSWORD = "Password123!"


class FakeUpstream:
    """
    Central backend stand-in. mode: "online" accepts, "offline" raises a
    connection error, "reject" answers 422, "error" answers 503, "redirect"
    answers 301.
    """

    def __init__(self):
        self.mode = "online"
        self.received = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.mode == "offline":
            raise httpx.ConnectError("upstream unreachable", request=request)
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if self.mode == "error":
            return httpx.Response(503, json={"error": "maintenance"})
        if self.mode == "reject":
            return httpx.Response(422, json={"error": "rejected by upstream"})
        if self.mode == "redirect":
            return httpx.Response(301, headers={"location": "/moved"})

        body = json.loads(request.content or b"{}")
        self.received.append({
            "path": request.url.path,
            "operation": body.get("operation"),
            "payload": body.get("payload"),
            "idempotency_key": request.headers.get("Idempotency-Key"),
        })
        return httpx.Response(201, json={"status": "accepted"})

    def paths(self):
        return [r["path"] for r in self.received]


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def app(upstream):
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'BCRYPT_ROUNDS': 4,
        'AUDIT_HMAC_SECRET': 'test-audit-secret',
        'UPSTREAM_URL': 'http://upstream.test',
        'SYNC_BASE_RETRY_SECONDS': 0,
        'TAX_RATE': 0.14,
        'STOCK_UNDERFLOW_POLICY': 'CLAMP',
    })

    with app.app_context():
        db.create_all()
        app.extensions["tavola_upstream"] = UpstreamClient(
            "http://upstream.test",
            transport=httpx.MockTransport(upstream.handler),
        )
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


def _stock(item, warehouse, quantity):
    db.session.add(WarehouseStock(item_id=item.id, warehouse_id=warehouse.id, quantity=Decimal(quantity)))


@pytest.fixture
def seed(app):
    """
    One main branch (store + kitchen warehouses, kitchen is the consumption
    warehouse), a second branch, the chart of accounts, one user per role and
    a small menu:

    - Bread: 100 cents, recipe 1 Flour (Flour costs 5 cents/unit)
    - Pizza: 1000 cents, Size (exactly one: Small +0, Large +300),
      Extras (up to two: Extra Cheese +150 with 0.1 Cheese, Olives +50),
      recipe 0.5 Flour + 0.2 Cheese
    """
    ledger_service.ensure_chart_of_accounts()

    branch = Branch(code="MAIN", name="Main Branch")
    north = Branch(code="NORTH", name="North Branch")
    db.session.add_all([branch, north])
    db.session.flush()

    store = Warehouse(branch_id=branch.id, name="Main Store", type=WarehouseType.MAIN)
    kitchen = Warehouse(branch_id=branch.id, name="Main Kitchen", type=WarehouseType.KITCHEN)
    north_kitchen = Warehouse(branch_id=north.id, name="North Kitchen", type=WarehouseType.KITCHEN)
    db.session.add_all([store, kitchen, north_kitchen])
    db.session.flush()
    branch.consumption_warehouse_id = kitchen.id
    north.consumption_warehouse_id = north_kitchen.id

    table = DiningTable(branch_id=branch.id, label="T1", seats=4)
    north_table = DiningTable(branch_id=north.id, label="N1", seats=2)
    db.session.add_all([table, north_table])

    flour = InventoryItem(sku="FLOUR", name="Flour", unit="kg", unit_cost_cents=5, threshold=Decimal("1"))
    cheese = InventoryItem(sku="CHEESE", name="Cheese", unit="kg", unit_cost_cents=20, threshold=Decimal("0"))
    db.session.add_all([flour, cheese])
    db.session.flush()

    _stock(flour, kitchen, "10")
    _stock(cheese, kitchen, "5")
    _stock(flour, store, "50")

    category = MenuCategory(name="Bakery")
    db.session.add(category)
    db.session.flush()

    bread = MenuItem(category_id=category.id, name="Bread", price_cents=100)
    pizza = MenuItem(category_id=category.id, name="Pizza", price_cents=1000)
    db.session.add_all([bread, pizza])
    db.session.flush()

    size = ModifierGroup(menu_item_id=pizza.id, name="Size", min_selection=1, max_selection=1)
    extras = ModifierGroup(menu_item_id=pizza.id, name="Extras", min_selection=0, max_selection=2)
    db.session.add_all([size, extras])
    db.session.flush()

    small = ModifierOption(group_id=size.id, name="Small", price_cents=0)
    large = ModifierOption(group_id=size.id, name="Large", price_cents=300)
    extra_cheese = ModifierOption(group_id=extras.id, name="Extra Cheese", price_cents=150)
    olives = ModifierOption(group_id=extras.id, name="Olives", price_cents=50)
    db.session.add_all([small, large, extra_cheese, olives])
    db.session.flush()

    db.session.add_all([
        RecipeIngredient(menu_item_id=bread.id, ingredient_item_id=flour.id, quantity=Decimal("1"), unit="kg"),
        RecipeIngredient(menu_item_id=pizza.id, ingredient_item_id=flour.id, quantity=Decimal("0.5"), unit="kg"),
        RecipeIngredient(menu_item_id=pizza.id, ingredient_item_id=cheese.id, quantity=Decimal("0.2"), unit="kg"),
        RecipeIngredient(
            modifier_option_id=extra_cheese.id, ingredient_item_id=cheese.id, quantity=Decimal("0.1"), unit="kg"
        ),
    ])
    db.session.commit()

    users = {
        "admin": create_user(username="admin", name="Admin", password=TEST_PASSWORD, role=UserRole.SUPER_ADMIN),
        "manager": create_user(
            username="manager", name="Manager", password=TEST_PASSWORD,
            role=UserRole.BRANCH_MANAGER, branch_id=branch.id,
        ),
        "cashier": create_user(
            username="cashier", name="Cashier", password=TEST_PASSWORD,
            role=UserRole.CASHIER, branch_id=branch.id,
        ),
        "kitchen": create_user(
            username="kitchen", name="Kitchen", password=TEST_PASSWORD,
            role=UserRole.KITCHEN_STAFF, branch_id=branch.id,
        ),
        "callcenter": create_user(
            username="callcenter", name="Call Center", password=TEST_PASSWORD,
            role=UserRole.CALL_CENTER, branch_id=branch.id,
        ),
        "north_cashier": create_user(
            username="north_cashier", name="North Cashier", password=TEST_PASSWORD,
            role=UserRole.CASHIER, branch_id=north.id,
        ),
    }

    return SimpleNamespace(
        branch=branch,
        north=north,
        store=store,
        kitchen=kitchen,
        north_kitchen=north_kitchen,
        table=table,
        north_table=north_table,
        flour=flour,
        cheese=cheese,
        category=category,
        bread=bread,
        pizza=pizza,
        users=users,
    )


@pytest.fixture
def actors(seed):
    """ActorContext per seeded user; admin works in the main branch."""
    result = {name: build_actor(user, device_id="POS-TEST") for name, user in seed.users.items()}
    result["admin"] = build_actor(seed.users["admin"], device_id="POS-TEST", branch_id=seed.branch.id)
    return result


def get_auth_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password,
        'device_id': 'POS-TEST',
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str, **extra) -> dict:
    """Helper to create Authorization headers."""
    headers = {'Authorization': f'Bearer {token}'}
    headers.update(extra)
    return headers


@pytest.fixture
def admin_headers(client, seed):
    return auth_headers(get_auth_token(client, "admin"), **{"X-Branch-Id": str(seed.branch.id)})


@pytest.fixture
def manager_headers(client, seed):
    return auth_headers(get_auth_token(client, "manager"))


@pytest.fixture
def cashier_headers(client, seed):
    return auth_headers(get_auth_token(client, "cashier"))


@pytest.fixture
def kitchen_headers(client, seed):
    return auth_headers(get_auth_token(client, "kitchen"))


@pytest.fixture
def north_cashier_headers(client, seed):
    return auth_headers(get_auth_token(client, "north_cashier"))


def bread_order(seed, **overrides) -> dict:
    """Two Bread, takeaway, cash."""
    draft = {
        "type": "TAKEAWAY",
        "items": [{"menu_item_id": seed.bread.id, "quantity": 2}],
        "payment_method": "CASH",
    }
    draft.update(overrides)
    return draft
