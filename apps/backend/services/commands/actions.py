"""
Typed Actions
=============

One pydantic model per action kind, joined into a closed tagged union on
`type`. Everything the executor receives has been validated here first, so
malformed parameters fail before any platform call.

Wire shape accepted for every action:
    {"type": "update_products", "parameters": {...}}
The flattened form {"type": "update_products", "product_ids": [...]} is
accepted too.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from apps.backend.services.commands.errors import ValidationError


# platform ids arrive as ints from Shopify and as strings from callers
ResourceId = Union[int, str]


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"


class FilterLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class Filter(BaseModel):
    field: str = Field(min_length=1)
    operator: FilterOperator
    value: Any = None
    logic: FilterLogic = FilterLogic.AND


class ActionBase(BaseModel):
    type: str

    @model_validator(mode="before")
    @classmethod
    def _flatten_parameters(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("parameters"), dict):
            merged = dict(data["parameters"])
            merged["type"] = data.get("type")
            return merged
        return data

    def to_wire(self) -> Dict[str, Any]:
        return {"type": self.type, "parameters": self.model_dump(mode="json", exclude={"type"})}


class GetProductsAction(ActionBase):
    type: Literal["get_products"] = "get_products"
    filters: List[Filter] = Field(default_factory=list)
    limit: int = Field(default=250, ge=1, le=250)


class UpdateProductsAction(ActionBase):
    type: Literal["update_products"] = "update_products"
    product_ids: List[ResourceId] = Field(default_factory=list)
    updates: Dict[str, Any]
    filters: Optional[List[Filter]] = None

    @model_validator(mode="after")
    def _require_updates(self) -> "UpdateProductsAction":
        if not self.updates:
            raise ValueError("updates must contain at least one field")
        return self


class ApplyDiscountAction(ActionBase):
    type: Literal["apply_discount"] = "apply_discount"
    discount_type: Literal["percentage", "fixed_amount"]
    discount_value: float = Field(gt=0)
    product_ids: List[ResourceId] = Field(default_factory=list)
    filters: Optional[List[Filter]] = None


class UpdateInventoryAction(ActionBase):
    type: Literal["update_inventory"] = "update_inventory"
    inventory_item_id: Optional[ResourceId] = None
    location_id: Optional[ResourceId] = None
    available: Optional[int] = None
    quantity: Optional[int] = None
    product_title: Optional[str] = None
    filters: Optional[List[Filter]] = None

    @model_validator(mode="after")
    def _require_quantity(self) -> "UpdateInventoryAction":
        if self.available is None and self.quantity is None:
            raise ValueError("Inventory quantity (available/quantity) is required")
        return self

    @property
    def target_quantity(self) -> int:
        return self.available if self.available is not None else int(self.quantity or 0)


class SeoUpdates(BaseModel):
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None

    @model_validator(mode="after")
    def _require_one(self) -> "SeoUpdates":
        if not self.meta_title and not self.meta_description:
            raise ValueError("seo_updates needs meta_title or meta_description")
        return self


class UpdateSeoAction(ActionBase):
    type: Literal["update_seo"] = "update_seo"
    product_ids: List[ResourceId] = Field(default_factory=list)
    seo_updates: SeoUpdates
    filters: Optional[List[Filter]] = None


class ConditionalUpdateAction(ActionBase):
    type: Literal["conditional_update"] = "conditional_update"
    condition_filters: List[Filter] = Field(min_length=1)
    then_action: "Action"
    else_action: Optional["Action"] = None


ACTION_VARIANTS: Tuple[type, ...] = (
    GetProductsAction,
    UpdateProductsAction,
    ApplyDiscountAction,
    UpdateInventoryAction,
    UpdateSeoAction,
    ConditionalUpdateAction,
)

Action = Annotated[
    Union[
        GetProductsAction,
        UpdateProductsAction,
        ApplyDiscountAction,
        UpdateInventoryAction,
        UpdateSeoAction,
        ConditionalUpdateAction,
    ],
    Field(discriminator="type"),
]

ConditionalUpdateAction.model_rebuild()

_ACTIONS_ADAPTER = TypeAdapter(List[Action])


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def parse_actions(raw: Any) -> List[Any]:
    """
    Validates the caller's action list into typed actions.
    Raises ValidationError (ours) on any malformed entry.
    """
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Missing or invalid actions parameter")
    try:
        return _ACTIONS_ADAPTER.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid action parameters: {_describe(e)}") from e
