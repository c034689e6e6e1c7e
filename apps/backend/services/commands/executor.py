"""
Action Executor
===============

Dispatches typed actions against connected platforms in PREVIEW or EXECUTE
mode.

PREVIEW resolves targets and simulates the outcome with read calls only.
EXECUTE captures a before_state per target, performs one mutating call per
target on the context's bounded pool, and captures after_state only for
resources whose call succeeded. A failure on one resource is recorded and
never stops its siblings.

conditional_update partitions its candidates and re-enters dispatch() for
the then/else actions, so it can wrap any action kind, itself included.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from apps.backend.services.commands.actions import (
    ACTION_VARIANTS,
    ApplyDiscountAction,
    ConditionalUpdateAction,
    Filter,
    GetProductsAction,
    UpdateInventoryAction,
    UpdateProductsAction,
    UpdateSeoAction,
)
from apps.backend.services.commands.context import BatchOutcome, ExecutionContext, unexpected
from apps.backend.services.commands.errors import CommandError, NotFoundError
from apps.backend.services.commands.filters import apply_filters, partition
from apps.backend.services.commands.models import (
    AffectedResource,
    ChangeSnapshot,
    ExecutionMode,
    PlatformConnection,
)
from apps.backend.utils.settings import settings

log = logging.getLogger("commander.executor")

Products = List[Dict[str, Any]]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def product_state(product: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": product.get("id"),
        "title": product.get("title"),
        "variants": [
            {
                "id": v.get("id"),
                "price": v.get("price"),
                "inventory_quantity": v.get("inventory_quantity"),
            }
            for v in (product.get("variants") or [])
        ],
    }


def _failure(resource_id: Any, outcome: BatchOutcome) -> Dict[str, Any]:
    return {"resource_id": resource_id, "success": False, "error": outcome.error.message}


@dataclass
class ActionResult:
    payload: Dict[str, Any]
    changes_made: bool = False
    before_state: Any = None
    after_state: Any = None
    affected_resources: List[AffectedResource] = field(default_factory=list)
    # nested (action_type, result) pairs from conditional_update
    children: List[Tuple[str, "ActionResult"]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.payload)
        out["changes_made"] = self.changes_made
        out["before_state"] = self.before_state
        out["after_state"] = self.after_state
        out["affected_resources"] = [r.to_dict() for r in self.affected_resources]
        return out

    def snapshots(self, action_type: str, platform_id: str) -> List[ChangeSnapshot]:
        out: List[ChangeSnapshot] = []
        if self.changes_made and (self.before_state or self.after_state):
            out.append(
                ChangeSnapshot(
                    action_type=action_type,
                    platform_id=platform_id,
                    before_state=self.before_state,
                    after_state=self.after_state,
                    affected_resources=list(self.affected_resources),
                )
            )
        for child_type, child in self.children:
            out.extend(child.snapshots(child_type, platform_id))
        return out


@dataclass
class ExecutionReport:
    results: List[Dict[str, Any]]
    change_snapshots: List[ChangeSnapshot]
    preview_mode: bool

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.get("success"))

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.get("success"))

    @property
    def summary(self) -> Dict[str, Any]:
        return {
            "total_actions": len(self.results),
            "successful": self.successful,
            "failed": self.failed,
            "preview_mode": self.preview_mode,
            "can_undo": not self.preview_mode and len(self.change_snapshots) > 0,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": self.results,
            "summary": self.summary,
            "change_snapshots": None if self.preview_mode else [s.to_dict() for s in self.change_snapshots],
        }


class ActionExecutor:
    _HANDLERS: Dict[type, str] = {
        GetProductsAction: "_get_products",
        UpdateProductsAction: "_update_products",
        ApplyDiscountAction: "_apply_discount",
        UpdateInventoryAction: "_update_inventory",
        UpdateSeoAction: "_update_seo",
        ConditionalUpdateAction: "_conditional_update",
    }

    def __init__(
        self,
        *,
        product_fetch_limit: Optional[int] = None,
        target_id_cap: Optional[int] = None,
        sample_size: Optional[int] = None,
    ) -> None:
        self.product_fetch_limit = product_fetch_limit or settings.PRODUCT_FETCH_LIMIT
        self.target_id_cap = target_id_cap or settings.TARGET_ID_CAP
        self.sample_size = sample_size or settings.PREVIEW_SAMPLE_SIZE

    # ---------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------
    def execute(
        self,
        ctx: ExecutionContext,
        actions: Sequence[Any],
        *,
        preview_mode: bool,
        track_for_undo: bool = True,
    ) -> ExecutionReport:
        mode = ExecutionMode.PREVIEW if preview_mode else ExecutionMode.EXECUTE
        log.info("%s: %d actions across %d platforms", mode.value.upper(), len(actions), len(ctx.connections))

        results: List[Dict[str, Any]] = []
        snapshots: List[ChangeSnapshot] = []

        for conn in ctx.connections:
            conn_error = ctx.connection_error(conn.id)
            for action in actions:
                entry = {"platform": conn.shop_name, "action": action.type, "preview_mode": preview_mode}
                if conn_error:
                    results.append(dict(entry, success=False, error=conn_error))
                    continue
                try:
                    outcome = self.dispatch(ctx, conn, action, mode)
                except CommandError as e:
                    log.warning("Action %s failed on %s: %s", action.type, conn.shop_domain, e.message)
                    results.append(dict(entry, success=False, error=e.message))
                    continue
                except Exception as e:
                    log.exception("Action %s aborted on %s", action.type, conn.shop_domain)
                    results.append(dict(entry, success=False, error=unexpected(e).message))
                    continue

                results.append(dict(entry, success=True, result=outcome.to_dict()))
                if mode == ExecutionMode.EXECUTE and track_for_undo:
                    snapshots.extend(outcome.snapshots(action.type, conn.id))

        report = ExecutionReport(results=results, change_snapshots=snapshots, preview_mode=preview_mode)
        log.info("Complete: %s", report.summary)
        return report

    def dispatch(
        self,
        ctx: ExecutionContext,
        platform: PlatformConnection,
        action: Any,
        mode: ExecutionMode,
        scope: Optional[Products] = None,
    ) -> ActionResult:
        handler = getattr(self, self._HANDLERS[type(action)])
        return handler(ctx, platform, action, mode, scope)

    # ---------------------------------------------------------
    # Target resolution
    # ---------------------------------------------------------
    def _fetch_all(self, ctx: ExecutionContext, platform: PlatformConnection, limit: Optional[int] = None) -> Products:
        payload = ctx.client(platform.id).get("products.json", params={"limit": limit or self.product_fetch_limit})
        return list(payload.get("products") or [])

    def _fetch_by_ids(self, ctx: ExecutionContext, platform: PlatformConnection, ids: Sequence[Any]) -> Products:
        client = ctx.client(platform.id)
        outcomes = ctx.run_each(ids[: self.target_id_cap], lambda pid: client.get(f"products/{pid}.json"))
        products = []
        for o in outcomes:
            if o.ok and (o.value or {}).get("product"):
                products.append(o.value["product"])
            elif not o.ok:
                log.warning("Failed to fetch product %s: %s", o.item, o.error.message)
        return products

    def _resolve_targets(
        self,
        ctx: ExecutionContext,
        platform: PlatformConnection,
        ids: Sequence[Any],
        filters: Optional[List[Filter]],
        scope: Optional[Products],
    ) -> Products:
        if scope is not None:
            targets = scope
            if ids:
                wanted = {str(i) for i in ids}
                targets = [p for p in targets if str(p.get("id")) in wanted]
            return apply_filters(targets, filters)
        if ids:
            return self._fetch_by_ids(ctx, platform, ids)
        if filters:
            return apply_filters(self._fetch_all(ctx, platform), filters)
        return []

    # ---------------------------------------------------------
    # get_products
    # ---------------------------------------------------------
    def _get_products(self, ctx, platform, action: GetProductsAction, mode, scope) -> ActionResult:
        products = scope if scope is not None else self._fetch_all(ctx, platform, action.limit)
        products = apply_filters(products, action.filters)
        return ActionResult(
            payload={
                "count": len(products),
                "products": products[: self.target_id_cap],
                "total_available": len(products),
                "preview_mode": mode == ExecutionMode.PREVIEW,
            }
        )

    # ---------------------------------------------------------
    # update_products
    # ---------------------------------------------------------
    def _update_products(self, ctx, platform, action: UpdateProductsAction, mode, scope) -> ActionResult:
        targets = self._resolve_targets(ctx, platform, action.product_ids, action.filters, scope)
        before = [product_state(p) for p in targets]

        if mode == ExecutionMode.PREVIEW:
            simulated = [dict(b, **action.updates) for b in before]
            return ActionResult(
                payload={
                    "affected_count": len(targets),
                    "results": [
                        {"product_id": b["id"], "product_title": b["title"], "before": b, "after": a, "simulated": True}
                        for b, a in zip(before, simulated)
                    ],
                    "preview_mode": True,
                },
                before_state=before,
                after_state=simulated,
            )

        client = ctx.client(platform.id)

        def _put(product: Dict[str, Any]) -> Dict[str, Any]:
            body = {"product": dict(action.updates, id=product.get("id"))}
            response = client.put(f"products/{product.get('id')}.json", body)
            return response.get("product") or dict(product, **action.updates)

        outcomes = ctx.run_each(targets, _put)

        results: List[Dict[str, Any]] = []
        after: List[Dict[str, Any]] = []
        affected: List[AffectedResource] = []
        for o in outcomes:
            pid = o.item.get("id")
            if o.ok:
                results.append({"product_id": pid, "success": True, "product": o.value})
                after.append(product_state(o.value))
                affected.append(AffectedResource("product", pid))
            else:
                log.warning("Product %s update failed: %s", pid, o.error.message)
                results.append(_failure(pid, o))

        return ActionResult(
            payload={
                "affected_count": len(targets),
                "updated": len(after),
                "failed": len(results) - len(after),
                "results": results,
                "preview_mode": False,
            },
            changes_made=len(after) > 0,
            before_state=before,
            after_state=after,
            affected_resources=affected,
        )

    # ---------------------------------------------------------
    # apply_discount
    # ---------------------------------------------------------
    def _apply_discount(self, ctx, platform, action: ApplyDiscountAction, mode, scope) -> ActionResult:
        entitled: Optional[List[Any]] = None
        if scope is not None or action.filters:
            targets = self._resolve_targets(ctx, platform, action.product_ids, action.filters, scope)
            entitled = [p.get("id") for p in targets]
        elif action.product_ids:
            entitled = list(action.product_ids)

        if entitled is not None and not entitled:
            raise NotFoundError("No products found matching criteria")

        unit = "%" if action.discount_type == "percentage" else " currency units"
        scope_label = f"~{len(entitled)} products" if entitled is not None else "all products"

        if mode == ExecutionMode.PREVIEW:
            return ActionResult(
                payload={
                    "discount_type": action.discount_type,
                    "discount_value": action.discount_value,
                    "estimated_products": len(entitled) if entitled is not None else None,
                    "message": f"Would apply {action.discount_value}{unit} discount to {scope_label}",
                    "preview_mode": True,
                }
            )

        rule: Dict[str, Any] = {
            "title": f"Discount {action.discount_value}{'%' if action.discount_type == 'percentage' else ' off'}",
            "target_type": "line_item",
            "target_selection": "entitled" if entitled else "all",
            "allocation_method": "across",
            "value_type": action.discount_type,
            "value": f"-{action.discount_value}",
            "customer_selection": "all",
            "starts_at": _utcnow(),
        }
        if entitled:
            rule["entitled_product_ids"] = entitled

        response = ctx.client(platform.id).post("price_rules.json", {"price_rule": rule})
        created = response.get("price_rule") or {}

        return ActionResult(
            payload={
                "price_rule_id": created.get("id"),
                "message": f"Created price rule: {created.get('title')}",
                "preview_mode": False,
            },
            changes_made=True,
            before_state=None,
            after_state=created,
            affected_resources=[AffectedResource("price_rule", created.get("id"))],
        )

    # ---------------------------------------------------------
    # update_inventory
    # ---------------------------------------------------------
    def _update_inventory(self, ctx, platform, action: UpdateInventoryAction, mode, scope) -> ActionResult:
        qty = action.target_quantity
        client = ctx.client(platform.id)

        if action.inventory_item_id and action.location_id:
            return self._set_single_level(client, action, qty, mode)

        products = scope if scope is not None else self._fetch_all(ctx, platform)
        if action.product_title:
            needle = action.product_title.lower()
            products = [p for p in products if needle in str(p.get("title") or "").lower()]
        elif action.filters:
            products = apply_filters(products, action.filters)

        if not products:
            raise NotFoundError("No products found matching criteria")

        location_id = action.location_id
        if not location_id:
            locations = [loc for loc in (client.get("locations.json").get("locations") or []) if loc.get("active")]
            if not locations:
                raise NotFoundError("No active locations found for this store")
            location_id = locations[0].get("id")

        variants = [
            {
                "product_id": p.get("id"),
                "product_title": p.get("title"),
                "variant_id": v.get("id"),
                "variant_title": v.get("title"),
                "inventory_item_id": v.get("inventory_item_id"),
                "current_quantity": v.get("inventory_quantity"),
            }
            for p in products
            for v in (p.get("variants") or [])
            if v.get("inventory_management") == "shopify"
        ]
        if not variants:
            raise NotFoundError("No Shopify-managed inventory variants found for matching products")

        if mode == ExecutionMode.PREVIEW:
            return ActionResult(
                payload={
                    "affected_count": len(variants),
                    "new_quantity": qty,
                    "message": f"Would update inventory to {qty} for {len(variants)} variant(s)",
                    "products": [{"id": p.get("id"), "title": p.get("title")} for p in products],
                    "preview_mode": True,
                }
            )

        def _set(variant: Dict[str, Any]) -> Dict[str, Any]:
            return client.post(
                "inventory_levels/set.json",
                {"inventory_item_id": variant["inventory_item_id"], "location_id": location_id, "available": qty},
            )

        outcomes = ctx.run_each(variants, _set)

        results: List[Dict[str, Any]] = []
        after: List[Dict[str, Any]] = []
        affected: List[AffectedResource] = []
        for o in outcomes:
            v = o.item
            if o.ok:
                results.append({
                    "product_title": v["product_title"],
                    "variant_title": v["variant_title"],
                    "success": True,
                    "previous_quantity": v["current_quantity"],
                    "new_quantity": qty,
                })
                after.append({"inventory_item_id": v["inventory_item_id"], "location_id": location_id, "quantity": qty})
                affected.append(AffectedResource("inventory_level", v["inventory_item_id"]))
            else:
                log.warning("Inventory update failed for %s: %s", v["inventory_item_id"], o.error.message)
                results.append(_failure(v["inventory_item_id"], o))

        return ActionResult(
            payload={
                "updated": len(after),
                "failed": len(results) - len(after),
                "results": results,
                "message": f"Updated inventory to {qty} for {len(after)} variant(s)",
                "preview_mode": False,
            },
            changes_made=len(after) > 0,
            before_state=[
                {"inventory_item_id": v["inventory_item_id"], "location_id": location_id, "quantity": v["current_quantity"]}
                for v in variants
            ],
            after_state=after,
            affected_resources=affected,
        )

    def _set_single_level(self, client, action: UpdateInventoryAction, qty: int, mode) -> ActionResult:
        item_id, location_id = action.inventory_item_id, action.location_id
        if mode == ExecutionMode.PREVIEW:
            return ActionResult(
                payload={
                    "inventory_item_id": item_id,
                    "location_id": location_id,
                    "new_quantity": qty,
                    "message": f"Would update inventory to {qty}",
                    "preview_mode": True,
                }
            )

        levels = client.get(
            "inventory_levels.json",
            params={"inventory_item_ids": item_id, "location_ids": location_id},
        ).get("inventory_levels") or []
        previous = levels[0].get("available") if levels else None

        response = client.post(
            "inventory_levels/set.json",
            {"inventory_item_id": item_id, "location_id": location_id, "available": qty},
        )
        return ActionResult(
            payload={
                "inventory_level": response.get("inventory_level"),
                "message": f"Updated inventory to {qty}",
                "preview_mode": False,
            },
            changes_made=True,
            before_state=[{"inventory_item_id": item_id, "location_id": location_id, "quantity": previous}],
            after_state=[{"inventory_item_id": item_id, "location_id": location_id, "quantity": qty}],
            affected_resources=[AffectedResource("inventory_level", item_id)],
        )

    # ---------------------------------------------------------
    # update_seo
    # ---------------------------------------------------------
    def _update_seo(self, ctx, platform, action: UpdateSeoAction, mode, scope) -> ActionResult:
        targets = self._resolve_targets(ctx, platform, action.product_ids, action.filters, scope)
        seo = action.seo_updates
        before = [
            {
                "id": p.get("id"),
                "title": p.get("title"),
                "meta_title": p.get("metafields_global_title_tag"),
                "meta_description": p.get("metafields_global_description_tag"),
            }
            for p in targets
        ]

        if mode == ExecutionMode.PREVIEW:
            return ActionResult(
                payload={
                    "affected_count": len(targets),
                    "seo_updates": seo.model_dump(),
                    "message": f"Would update SEO for {len(targets)} products",
                    "sample_products": [
                        {
                            "id": b["id"],
                            "title": b["title"],
                            "current_seo": b["meta_title"] or "None",
                            "new_seo": seo.meta_title or "None",
                        }
                        for b in before[: self.sample_size]
                    ],
                    "preview_mode": True,
                }
            )

        metafields = []
        if seo.meta_title:
            metafields.append({"namespace": "global", "key": "title_tag", "value": seo.meta_title, "type": "single_line_text_field"})
        if seo.meta_description:
            metafields.append({"namespace": "global", "key": "description_tag", "value": seo.meta_description, "type": "single_line_text_field"})

        client = ctx.client(platform.id)

        def _write(product: Dict[str, Any]) -> Dict[str, Any]:
            # each metafield is its own call; a later failure must not hide an earlier write
            written: List[str] = []
            errors: Dict[str, str] = {}
            for metafield in metafields:
                try:
                    client.post(f"products/{product.get('id')}/metafields.json", {"metafield": metafield})
                except CommandError as e:
                    errors[metafield["key"]] = e.message
                else:
                    written.append(metafield["key"])
            return {"written": written, "errors": errors}

        outcomes = ctx.run_each(targets, _write)

        results: List[Dict[str, Any]] = []
        after: List[Dict[str, Any]] = []
        affected: List[AffectedResource] = []
        failed = 0
        for o, b in zip(outcomes, before):
            if not o.ok:
                log.warning("SEO update failed for product %s: %s", b["id"], o.error.message)
                results.append(_failure(b["id"], o))
                failed += 1
                continue

            written, errors = o.value["written"], o.value["errors"]
            entry: Dict[str, Any] = {"product_id": b["id"], "success": not errors, "updated_fields": written}
            if errors:
                failed += 1
                entry["failed_fields"] = errors
                entry["error"] = "; ".join(f"{k}: {v}" for k, v in errors.items())
                log.warning("SEO update for product %s incomplete: %s", b["id"], entry["error"])
            results.append(entry)

            if written:
                after.append({
                    "id": b["id"],
                    "meta_title": seo.meta_title if "title_tag" in written else b["meta_title"],
                    "meta_description": seo.meta_description if "description_tag" in written else b["meta_description"],
                })
                affected.append(AffectedResource("product_seo", b["id"]))

        return ActionResult(
            payload={
                "updated": len(results) - failed,
                "failed": failed,
                "results": results,
                "preview_mode": False,
            },
            changes_made=len(after) > 0,
            before_state=before,
            after_state=after,
            affected_resources=affected,
        )

    # ---------------------------------------------------------
    # conditional_update
    # ---------------------------------------------------------
    def _conditional_update(self, ctx, platform, action: ConditionalUpdateAction, mode, scope) -> ActionResult:
        candidates = scope if scope is not None else self._fetch_all(ctx, platform)
        matching, rest = partition(candidates, action.condition_filters)

        payload: Dict[str, Any] = {
            "condition_met_count": len(matching),
            "condition_not_met_count": len(rest),
            "preview_mode": mode == ExecutionMode.PREVIEW,
        }
        children: List[Tuple[str, ActionResult]] = []

        branches = [("then_action", action.then_action, matching)]
        if action.else_action is not None:
            branches.append(("else_action", action.else_action, rest))

        for key, branch, products in branches:
            summary: Dict[str, Any] = {
                "action": branch.type,
                "would_affect": len(products),
                "sample_products": [{"id": p.get("id"), "title": p.get("title")} for p in products[: self.sample_size]],
            }
            if not products:
                summary["skipped"] = True
                payload[key] = summary
                continue
            try:
                result = self.dispatch(ctx, platform, branch, mode, scope=products)
            except CommandError as e:
                log.warning("Conditional %s (%s) failed on %s: %s", key, branch.type, platform.shop_domain, e.message)
                summary.update(success=False, error=e.message)
            except Exception as e:
                log.exception("Conditional %s (%s) aborted on %s", key, branch.type, platform.shop_domain)
                summary.update(success=False, error=unexpected(e).message)
            else:
                summary.update(success=True, result=result.to_dict())
                children.append((branch.type, result))
            payload[key] = summary

        return ActionResult(
            payload=payload,
            changes_made=any(child.changes_made for _, child in children),
            children=children,
        )


_unhandled = set(ACTION_VARIANTS) - set(ActionExecutor._HANDLERS)
if _unhandled:
    raise RuntimeError(f"ActionExecutor has no handler for: {sorted(c.__name__ for c in _unhandled)}")
