"""
Catalog Reader (Supabase adapter, read-only)
============================================

Current-state snapshots for preview. Only select queries live here; nothing
in this module writes.

Expected tables:
- products          id, sku, name, description, price, compare_at_price, cost,
                    brand, category, tags, images
- inventory_items   id, product_id, location, quantity, reserved, available
- listings          id, product_id, platform_id, title, description, price
- platforms         id, name, type
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _embedded(row: Dict[str, Any], key: str) -> Dict[str, Any]:
    # PostgREST embeds a to-one relation as a dict, sometimes as a 1-element list
    value = row.get(key)
    if isinstance(value, list):
        return value[0] if value and isinstance(value[0], dict) else {}
    return value if isinstance(value, dict) else {}


def _in_request_order(rows: List[Dict[str, Any]], ids: Sequence[Any]) -> List[Dict[str, Any]]:
    order = {str(i): n for n, i in enumerate(ids)}
    return sorted(rows, key=lambda r: order.get(str(r.get("id")), len(order)))


class CatalogReader:
    def __init__(
        self,
        supabase_client: Any,
        *,
        table_products: str = "products",
        table_inventory: str = "inventory_items",
        table_listings: str = "listings",
    ) -> None:
        self.sb = supabase_client
        self.table_products = table_products
        self.table_inventory = table_inventory
        self.table_listings = table_listings

    # -----------------------------
    # Products
    # -----------------------------
    def fetch_products(self, product_ids: Sequence[Any]) -> List[Dict[str, Any]]:
        if not product_ids:
            return []
        r = (
            self.sb.table(self.table_products)
            .select("*, listings(id), inventory_items(available)")
            .in_("id", [str(i) for i in product_ids])
            .execute()
        )
        rows = [x for x in (getattr(r, "data", None) or []) if isinstance(x, dict)]
        return [self.serialize_product(x) for x in _in_request_order(rows, product_ids)]

    @staticmethod
    def serialize_product(row: Dict[str, Any]) -> Dict[str, Any]:
        inventory_items = row.get("inventory_items") or []
        return {
            "id": str(row.get("id")),
            "sku": row.get("sku"),
            "name": row.get("name"),
            "description": row.get("description"),
            "price": _num(row.get("price")),
            "compare_at_price": _num(row.get("compare_at_price")),
            "cost": _num(row.get("cost")),
            "brand": row.get("brand"),
            "category": row.get("category"),
            "tags": row.get("tags"),
            "images": row.get("images"),
            "listings": len(row.get("listings") or []),
            "inventory": sum(_int(i.get("available")) for i in inventory_items if isinstance(i, dict)),
        }

    # -----------------------------
    # Inventory
    # -----------------------------
    def fetch_inventory_items(self, item_ids: Sequence[Any]) -> List[Dict[str, Any]]:
        if not item_ids:
            return []
        r = (
            self.sb.table(self.table_inventory)
            .select("*, products(name, sku)")
            .in_("id", [str(i) for i in item_ids])
            .execute()
        )
        rows = [x for x in (getattr(r, "data", None) or []) if isinstance(x, dict)]
        out = []
        for row in _in_request_order(rows, item_ids):
            product = _embedded(row, "products")
            out.append({
                "id": str(row.get("id")),
                "name": product.get("name"),
                "sku": product.get("sku"),
                "location": row.get("location"),
                "quantity": _int(row.get("quantity")),
                "reserved": _int(row.get("reserved")),
                "available": _int(row.get("available")),
            })
        return out

    # -----------------------------
    # Listings
    # -----------------------------
    def fetch_listings(self, listing_ids: Sequence[Any]) -> List[Dict[str, Any]]:
        """
        Effective listing state: each listing field falls back to the parent
        product's value when the listing leaves it null.
        """
        if not listing_ids:
            return []
        r = (
            self.sb.table(self.table_listings)
            .select("*, products(name, description, price), platforms(name, type)")
            .in_("id", [str(i) for i in listing_ids])
            .execute()
        )
        rows = [x for x in (getattr(r, "data", None) or []) if isinstance(x, dict)]
        out = []
        for row in _in_request_order(rows, listing_ids):
            product = _embedded(row, "products")
            platform = _embedded(row, "platforms")
            title = row.get("title")
            description = row.get("description")
            price = row.get("price")
            out.append({
                "id": str(row.get("id")),
                "name": product.get("name"),
                "platform_name": platform.get("name"),
                "title": title if title is not None else product.get("name"),
                "description": description if description is not None else product.get("description"),
                "price": _num(price if price is not None else product.get("price")),
            })
        return out
