"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import copy
import itertools
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from apps.backend.services.commands.context import ExecutionContext
from apps.backend.services.commands.errors import PlatformError
from apps.backend.services.commands.models import PlatformConnection
from apps.backend.services.commands.snapshot_store import SnapshotStore
from apps.backend.services.shopify_client import ShopifyClient


# ---------------------------------------------------------------------------
# In-memory stand-in for the supabase-py query builder
# ---------------------------------------------------------------------------
class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.order_by: Optional[tuple] = None
        self.row_limit: Optional[int] = None

    def select(self, columns: str = "*") -> "FakeQuery":
        self.op = "select"
        return self

    def insert(self, payload: Any) -> "FakeQuery":
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload: Dict[str, Any]) -> "FakeQuery":
        self.op, self.payload = "update", payload
        return self

    def delete(self) -> "FakeQuery":
        self.op = "delete"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(column) == value or str(r.get(column)) == str(value))
        return self

    def in_(self, column: str, values: List[Any]) -> "FakeQuery":
        wanted = {str(v) for v in values}
        self.filters.append(lambda r: str(r.get(column)) in wanted)
        return self

    def is_(self, column: str, value: str) -> "FakeQuery":
        assert value == "null"
        self.filters.append(lambda r: r.get(column) is None)
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.order_by = (column, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self.row_limit = n
        return self

    def execute(self) -> SimpleNamespace:
        self.db.calls.append((self.table, self.op))
        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "insert":
            new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for row in new_rows:
                row = copy.deepcopy(row)
                row.setdefault("id", str(next(self.db.ids)))
                rows.append(row)
                out.append(copy.deepcopy(row))
            return SimpleNamespace(data=out)

        matched = [r for r in rows if all(f(r) for f in self.filters)]

        if self.op == "update":
            for r in matched:
                r.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=copy.deepcopy(matched))

        if self.op == "delete":
            self.db.tables[self.table] = [r for r in rows if r not in matched]
            return SimpleNamespace(data=copy.deepcopy(matched))

        if self.order_by:
            column, desc = self.order_by
            matched = sorted(matched, key=lambda r: str(r.get(column) or ""), reverse=desc)
        if self.row_limit is not None:
            matched = matched[: self.row_limit]
        return SimpleNamespace(data=copy.deepcopy(matched))


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.ids = itertools.count(1)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[1] != "select"]


# ---------------------------------------------------------------------------
# Shopify-shaped fixtures
# ---------------------------------------------------------------------------
def shopify_product(pid: int, title: str, price: str, *, vendor: str = "Acme", qty: int = 10, **extra: Any) -> Dict[str, Any]:
    product = {
        "id": pid,
        "title": title,
        "vendor": vendor,
        "tags": "",
        "variants": [
            {
                "id": pid * 10,
                "title": "Default",
                "price": price,
                "inventory_quantity": qty,
                "inventory_item_id": pid * 100,
                "inventory_management": "shopify",
            }
        ],
    }
    product.update(extra)
    return product


def platform_client(products: List[Dict[str, Any]], locations: Optional[List[Dict[str, Any]]] = None) -> MagicMock:
    """
    Mock ShopifyClient serving GETs from a fixed product list.
    Mutating calls are left as plain mocks for the test to configure.
    """
    client = MagicMock(spec=ShopifyClient)
    by_id = {str(p["id"]): p for p in products}

    def _get(path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if path == "products.json":
            return {"products": copy.deepcopy(products)}
        if path == "locations.json":
            return {"locations": locations if locations is not None else [{"id": 7, "active": True}]}
        if path.startswith("products/") and path.endswith(".json"):
            pid = path[len("products/"):-len(".json")]
            if pid not in by_id:
                raise PlatformError(404, "Not Found")
            return {"product": copy.deepcopy(by_id[pid])}
        if path == "inventory_levels.json":
            return {"inventory_levels": [{"available": 3}]}
        raise AssertionError(f"unexpected GET {path}")

    client.get.side_effect = _get
    client.put.side_effect = lambda path, body: {"product": body["product"]}
    client.post.return_value = {}
    client.delete.return_value = {}
    return client


def connection(pid: str = "plat-1", shop_name: str = "main") -> PlatformConnection:
    return PlatformConnection(
        id=pid,
        shop_name=shop_name,
        shop_domain=f"{shop_name}.myshopify.com",
        access_token="tok",
        user_id="user-1",
    )


def context_for(client: Any, conn: Optional[PlatformConnection] = None) -> ExecutionContext:
    conn = conn or connection()
    return ExecutionContext([conn], {conn.id: client}, {}, max_workers=2)


@pytest.fixture
def sb() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def store(sb: FakeSupabase) -> SnapshotStore:
    return SnapshotStore(sb)


@pytest.fixture
def catalog() -> List[Dict[str, Any]]:
    return [
        shopify_product(1, "Blue Shirt", "20.00", vendor="Acme"),
        shopify_product(2, "Red Shirt", "35.00", vendor="Globex"),
        shopify_product(3, "Blue Hat", "12.50", vendor="Acme"),
    ]
