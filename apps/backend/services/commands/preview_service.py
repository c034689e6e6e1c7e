"""
Preview Service
===============

Builds proposed-state projections for typed operations (price, inventory,
listing) and for an already-interpreted free-text command, then hands both
states to the DiffEngine.

Read-only by contract:
- reads go through CatalogReader (select queries only)
- no platform client is ever constructed here
- nothing is persisted, no snapshot is produced

Callers are expected to have ownership-validated the ids. Ids missing from
the fetched state are omitted from the diff rather than failing the batch.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from apps.backend.services.commands.catalog import CatalogReader
from apps.backend.services.commands.diff_engine import (
    D,
    DiffEngine,
    PRICE_FIELDS,
    _q2,
)
from apps.backend.services.commands.errors import ValidationError
from apps.backend.services.commands.models import ChangeType, FieldChange

log = logging.getLogger("commander.preview")


class PriceUpdateType(str, Enum):
    INCREASE_PERCENT = "increase_percent"
    DECREASE_PERCENT = "decrease_percent"
    INCREASE_AMOUNT = "increase_amount"
    DECREASE_AMOUNT = "decrease_amount"
    SET_FIXED = "set_fixed"


class InventoryOperation(str, Enum):
    SET = "set"
    ADD = "add"
    SUBTRACT = "subtract"


# parsed-intent action -> price arithmetic
INTENT_PRICE_UPDATES: Dict[str, PriceUpdateType] = {
    "increase_price": PriceUpdateType.INCREASE_PERCENT,
    "decrease_price": PriceUpdateType.DECREASE_PERCENT,
    "increase_price_amount": PriceUpdateType.INCREASE_AMOUNT,
    "decrease_price_amount": PriceUpdateType.DECREASE_AMOUNT,
    "set_price": PriceUpdateType.SET_FIXED,
}


def _decimal_arg(name: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        return D(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{name} must be a number")


def _enum_arg(enum_cls, name: str, value: Any):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {name} '{value}' (expected one of: {allowed})")


def project_price(current: Any, update_type: PriceUpdateType, value: Decimal) -> Optional[float]:
    """
    New price for one entity, rounded to cents (half-up).
    Relative updates on an unset price leave it unset.
    """
    if update_type == PriceUpdateType.SET_FIXED:
        return float(_q2(value))
    if current is None:
        return None

    price = D(str(current))
    if update_type == PriceUpdateType.INCREASE_PERCENT:
        new_price = price * (D("1") + value / D("100"))
    elif update_type == PriceUpdateType.DECREASE_PERCENT:
        new_price = price * (D("1") - value / D("100"))
    elif update_type == PriceUpdateType.INCREASE_AMOUNT:
        new_price = price + value
    else:
        new_price = price - value
    return float(_q2(new_price))


def project_quantity(current: int, operation: InventoryOperation, quantity: int) -> int:
    if operation == InventoryOperation.SET:
        return quantity
    if operation == InventoryOperation.ADD:
        return current + quantity
    return max(0, current - quantity)


class PreviewService:
    def __init__(self, reader: CatalogReader, diff_engine: Optional[DiffEngine] = None) -> None:
        self.reader = reader
        self.diff_engine = diff_engine or DiffEngine()

    # -----------------------------
    # Price
    # -----------------------------
    def preview_price_update(self, product_ids: Sequence[Any], update_type: str, value: Any) -> Dict[str, Any]:
        kind = _enum_arg(PriceUpdateType, "update_type", update_type)
        amount = _decimal_arg("value", value)

        current_state = self.reader.fetch_products(product_ids)
        proposed_state = [
            {"id": p["id"], "price": project_price(p.get("price"), kind, amount)}
            for p in current_state
        ]
        diffs = self.diff_engine.generate_diff(current_state, proposed_state)

        return {
            "summary": {
                "products_affected": len(diffs),
                "update_type": kind.value,
                "value": value,
            },
            "changes": [d.to_dict() for d in diffs],
            "current_state": current_state,
            "proposed_state": proposed_state,
            "risk_level": self.diff_engine.calculate_risk_level(diffs).value,
            "insights": self._insights(current_state, proposed_state),
        }

    # -----------------------------
    # Inventory
    # -----------------------------
    def preview_inventory_update(self, item_ids: Sequence[Any], operation: str, quantity: Any) -> Dict[str, Any]:
        op = _enum_arg(InventoryOperation, "operation", operation)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError("quantity must be a non-negative integer")

        items = self.reader.fetch_inventory_items(item_ids)
        by_id = {i["id"]: i for i in items}
        proposed_state = [
            {"id": i["id"], "quantity": project_quantity(i["quantity"], op, quantity)}
            for i in items
        ]
        diffs = self.diff_engine.generate_diff(items, proposed_state)

        proposed_by_id = {p["id"]: p for p in proposed_state}
        for d in diffs:
            item = by_id[d.entity_id]
            new_available = proposed_by_id[d.entity_id]["quantity"] - item["reserved"]
            d.changes.append(
                FieldChange(
                    field="available",
                    field_label=self.diff_engine.field_label("available"),
                    before=self.diff_engine.format_value("available", item["available"]),
                    after=self.diff_engine.format_value("available", new_available),
                    change_type=ChangeType.CALCULATED,
                )
            )
            d.meta = {"sku": item.get("sku"), "location": item.get("location")}

        return {
            "summary": {
                "items_affected": len(diffs),
                "operation": op.value,
                "quantity": quantity,
            },
            "changes": [d.to_dict() for d in diffs],
            "proposed_state": proposed_state,
            "risk_level": self.diff_engine.calculate_risk_level(diffs).value,
        }

    # -----------------------------
    # Listings
    # -----------------------------
    def preview_listing_update(self, listing_ids: Sequence[Any], updates: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(updates, dict) or not updates:
            raise ValidationError("updates must contain at least one field")

        fields = {k: v for k, v in updates.items() if k != "id"}
        current_state = self.reader.fetch_listings(listing_ids)
        proposed_state = [dict(fields, id=listing["id"]) for listing in current_state]
        diffs = self.diff_engine.generate_diff(current_state, proposed_state)

        platform_by_id = {listing["id"]: listing.get("platform_name") for listing in current_state}
        for d in diffs:
            d.meta = {"platform_name": platform_by_id.get(d.entity_id)}

        return {
            "summary": {
                "listings_affected": len(diffs),
                "fields_updated": list(fields),
            },
            "changes": [d.to_dict() for d in diffs],
            "risk_level": self.diff_engine.calculate_risk_level(diffs).value,
        }

    # -----------------------------
    # Generic (already-interpreted command)
    # -----------------------------
    def preview_command(
        self,
        command_text: str,
        interpretation: Dict[str, Any],
        product_ids: Sequence[Any],
    ) -> Dict[str, Any]:
        log.info("Generating preview for command: %s", command_text)

        interpretation = interpretation or {}
        current_state = self.reader.fetch_products(product_ids)
        proposed_state = self.project_intent(interpretation, current_state)
        diffs = self.diff_engine.generate_diff(current_state, proposed_state)

        return {
            "command": command_text,
            "interpretation": interpretation,
            "summary": {
                "products_affected": len(diffs),
                "total_changes": sum(len(d.changes) for d in diffs),
            },
            "changes": [d.to_dict() for d in diffs],
            "risk_level": self.diff_engine.calculate_risk_level(diffs).value,
            "can_revert": True,
        }

    def project_intent(self, interpretation: Dict[str, Any], current_state: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Parsed intent {action, field?, value?} -> proposed partial entities.
        Unknown actions project no change.
        """
        action = interpretation.get("action") or "update"
        value = interpretation.get("value")

        if action in INTENT_PRICE_UPDATES:
            field = interpretation.get("field") or "price"
            if field not in PRICE_FIELDS:
                raise ValidationError(f"Price actions cannot target field '{field}'")
            kind = INTENT_PRICE_UPDATES[action]
            amount = _decimal_arg("value", value)
            return [{"id": p["id"], field: project_price(p.get(field), kind, amount)} for p in current_state]

        if action == "set_field":
            field = interpretation.get("field")
            if not field or field == "id":
                raise ValidationError("set_field requires a target field")
            return [{"id": p["id"], field: value} for p in current_state]

        if action in ("add_tags", "remove_tags"):
            tags = value if isinstance(value, list) else [value]
            tags = [str(t) for t in tags if t is not None]
            out = []
            for p in current_state:
                existing = p.get("tags") or []
                if isinstance(existing, str):
                    existing = [t.strip() for t in existing.split(",") if t.strip()]
                existing = list(existing)
                if action == "add_tags":
                    new_tags = existing + [t for t in tags if t not in existing]
                else:
                    new_tags = [t for t in existing if t not in tags]
                out.append({"id": p["id"], "tags": new_tags})
            return out

        log.warning("No projection for intent action '%s'; preview will show no changes", action)
        return [{"id": p["id"]} for p in current_state]

    # -----------------------------
    # Helpers
    # -----------------------------
    def _insights(self, current_state: List[Dict[str, Any]], proposed_state: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        current_by_id = {c["id"]: c for c in current_state}
        out = []
        for proposed in proposed_state:
            summary = self.diff_engine.generate_change_summary(current_by_id[proposed["id"]], proposed)
            if summary["significant_changes"] or summary["impact"]:
                out.append({"entity_id": proposed["id"], **summary})
        return out
