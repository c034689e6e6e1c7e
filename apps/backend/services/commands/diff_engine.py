"""
Diff Engine (Canonical)
=======================

Purpose:
- Field-level comparison between a current-state snapshot and a proposed
  projection, formatted for display.
- Coarse risk classification so callers can gate a confirmation step.

Design notes:
- Pure business logic: no DB, no HTTP.
- Preview and any post-write verification share this module, so comparison
  semantics never drift between the two.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from apps.backend.services.commands.models import ChangeType, Diff, FieldChange, RiskLevel


D = Decimal

PRICE_FIELDS = frozenset({"price", "cost", "compare_at_price"})
QUANTITY_FIELDS = frozenset({"quantity", "available"})
LONG_TEXT_FIELDS = frozenset({"description"})
LONG_TEXT_LIMIT = 100

FIELD_LABELS: Dict[str, str] = {
    "sku": "SKU",
    "name": "Product Name",
    "description": "Description",
    "price": "Price",
    "compare_at_price": "Compare At Price",
    "cost": "Cost",
    "brand": "Brand",
    "category": "Category",
    "tags": "Tags",
    "images": "Images",
    "title": "Title",
    "quantity": "Quantity",
    "available": "Available",
}


def _q2(x: Decimal) -> Decimal:
    """Quantize to 2 decimals like currency."""
    return x.quantize(D("0.01"), rounding=ROUND_HALF_UP)


def _to_decimal(value: Any) -> Optional[Decimal]:
    try:
        return D(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


class DiffEngine:
    # -----------------------------
    # Comparison
    # -----------------------------
    @staticmethod
    def values_equal(a: Any, b: Any) -> bool:
        if a is None or b is None:
            return a is None and b is None
        if isinstance(a, (list, dict)) or isinstance(b, (list, dict)):
            # serialized equality: order-sensitive for lists and keys
            return json.dumps(a, default=str) == json.dumps(b, default=str)
        return a == b

    @staticmethod
    def change_type(field: str, before: Any, after: Any) -> ChangeType:
        if before is None:
            return ChangeType.ADDED
        if after is None:
            return ChangeType.REMOVED

        if field in PRICE_FIELDS or field in QUANTITY_FIELDS:
            b = _to_decimal(before)
            a = _to_decimal(after)
            if a is not None and b is not None:
                return ChangeType.INCREASE if a > b else ChangeType.DECREASE

        return ChangeType.MODIFIED

    # -----------------------------
    # Display
    # -----------------------------
    @staticmethod
    def field_label(field: str) -> str:
        return FIELD_LABELS.get(field, field)

    @staticmethod
    def format_value(field: str, value: Any) -> str:
        if value is None:
            return "Not set"

        if field in PRICE_FIELDS:
            amount = _to_decimal(value)
            if amount is not None:
                return f"${_q2(amount)}"

        if field == "tags" and isinstance(value, list):
            return ", ".join(str(v) for v in value)

        if field == "images" and isinstance(value, list):
            return f"{len(value)} image(s)"

        if field in LONG_TEXT_FIELDS and isinstance(value, str) and len(value) > LONG_TEXT_LIMIT:
            return f"{value[:LONG_TEXT_LIMIT]}..."

        if isinstance(value, (list, dict)):
            return json.dumps(value, default=str)

        return str(value)

    # -----------------------------
    # Diff
    # -----------------------------
    def generate_diff(
        self,
        current_state: Iterable[Dict[str, Any]],
        proposed_state: Iterable[Dict[str, Any]],
    ) -> List[Diff]:
        """
        One Diff per proposed entity that exists in current_state and has at
        least one differing field. Only fields present in the proposed entry
        are compared; "id" is never compared.
        """
        current_by_id = {str(c.get("id")): c for c in current_state}
        diffs: List[Diff] = []

        for proposed in proposed_state:
            entity_id = str(proposed.get("id"))
            current = current_by_id.get(entity_id)
            if current is None:
                continue

            changes: List[FieldChange] = []
            for field, after in proposed.items():
                if field == "id":
                    continue
                before = current.get(field)
                if self.values_equal(before, after):
                    continue
                changes.append(
                    FieldChange(
                        field=field,
                        field_label=self.field_label(field),
                        before=self.format_value(field, before),
                        after=self.format_value(field, after),
                        change_type=self.change_type(field, before, after),
                    )
                )

            if changes:
                diffs.append(Diff(entity_id=entity_id, entity_name=current.get("name"), changes=changes))

        return diffs

    # -----------------------------
    # Risk
    # -----------------------------
    @staticmethod
    def calculate_risk_level(diffs: Iterable[Diff]) -> RiskLevel:
        total_changes = 0
        price_changes = 0
        for d in diffs:
            total_changes += len(d.changes)
            price_changes += sum(1 for c in d.changes if c.field == "price")

        if price_changes > 10 or total_changes > 50:
            return RiskLevel.HIGH
        if price_changes > 5 or total_changes > 20:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # -----------------------------
    # Impact summary
    # -----------------------------
    def generate_change_summary(self, before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "fields_changed": [k for k in after if k != "id" and not self.values_equal(before.get(k), after.get(k))],
            "significant_changes": self.significant_changes(before, after),
            "impact": self.assess_impact(before, after),
        }

    @staticmethod
    def significant_changes(before: Dict[str, Any], after: Dict[str, Any]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []

        b_price = _to_decimal(before.get("price"))
        a_price = _to_decimal(after.get("price"))
        if b_price and a_price is not None:
            percent = abs((a_price - b_price) / b_price) * 100
            if percent > 10:
                out.append({
                    "field": "price",
                    "type": "major_price_change",
                    "percent": str(percent.quantize(D("0.1"), rounding=ROUND_HALF_UP)),
                })

        b_inv = _to_decimal(before.get("inventory"))
        a_inv = _to_decimal(after.get("inventory"))
        if b_inv and a_inv is not None and a_inv < b_inv * D("0.5"):
            out.append({"field": "inventory", "type": "major_inventory_decrease"})

        return out

    @staticmethod
    def assess_impact(before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
        impacts: List[str] = []

        price = _to_decimal(after.get("price", before.get("price")))
        cost = _to_decimal(after.get("cost", before.get("cost")))
        if price is not None and cost and price < cost * D("1.5"):
            impacts.append("low_profit_margin")

        inventory = _to_decimal(after.get("inventory"))
        if "inventory" in after and inventory is not None and inventory <= 0:
            impacts.append("will_be_out_of_stock")

        return impacts
