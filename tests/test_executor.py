"""
Tests for the action executor.
"""

from unittest.mock import MagicMock

import pytest

from apps.backend.services.commands.actions import parse_actions
from apps.backend.services.commands.context import DECRYPT_FAILED, ExecutionContext, run_batch
from apps.backend.services.commands.errors import PlatformError
from apps.backend.services.commands.executor import ActionExecutor

from conftest import connection, context_for, platform_client, shopify_product


def actions(*raw):
    return parse_actions(list(raw))


def update_products(**params):
    return {"type": "update_products", "parameters": params}


@pytest.fixture
def executor() -> ActionExecutor:
    return ActionExecutor(product_fetch_limit=250, target_id_cap=50, sample_size=5)


class TestRunBatch:
    """Tests for the bounded fan-out helper."""

    def test_collects_all_in_order(self) -> None:
        def fn(n):
            if n == 2:
                raise PlatformError(500, "boom")
            return n * 10

        outcomes = run_batch([1, 2, 3], fn, max_workers=2)
        assert [o.item for o in outcomes] == [1, 2, 3]
        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[0].value == 10
        assert "boom" in outcomes[1].error.message

    def test_empty(self) -> None:
        assert run_batch([], lambda x: x, max_workers=4) == []

    def test_unexpected_exception_fails_only_its_item(self) -> None:
        def fn(n):
            if n == 2:
                raise KeyError("variants")
            return n

        outcomes = run_batch([1, 2, 3], fn, max_workers=2)
        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[1].error.message == "Unexpected error: KeyError: 'variants'"
        assert outcomes[1].error.status_code == 500


class TestPreviewMode:
    """PREVIEW resolves and simulates with reads only."""

    def test_update_products_simulates(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions(update_products(product_ids=[1, 3], updates={"tags": "sale"})),
            preview_mode=True,
        )

        client.put.assert_not_called()
        client.post.assert_not_called()
        client.delete.assert_not_called()

        body = report.to_dict()
        assert body["change_snapshots"] is None
        assert body["summary"] == {
            "total_actions": 1, "successful": 1, "failed": 0, "preview_mode": True, "can_undo": False,
        }
        result = body["results"][0]["result"]
        assert result["changes_made"] is False
        assert result["affected_count"] == 2
        assert [r["after"]["tags"] for r in result["results"]] == ["sale", "sale"]

    def test_discount_estimate(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions({
                "type": "apply_discount",
                "parameters": {
                    "discount_type": "percentage",
                    "discount_value": 15,
                    "filters": [{"field": "vendor", "operator": "equals", "value": "Acme"}],
                },
            }),
            preview_mode=True,
        )
        result = report.results[0]["result"]
        assert result["estimated_products"] == 2
        assert "15.0%" in result["message"]
        client.post.assert_not_called()

    def test_seo_sample(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions({"type": "update_seo", "parameters": {"product_ids": [2], "seo_updates": {"meta_title": "Red"}}}),
            preview_mode=True,
        )
        result = report.results[0]["result"]
        assert result["sample_products"] == [{"id": 2, "title": "Red Shirt", "current_seo": "None", "new_seo": "Red"}]
        client.post.assert_not_called()


class TestUpdateProducts:
    """EXECUTE update_products."""

    def test_partial_failure_keeps_siblings(self, executor, catalog) -> None:
        """One failing PUT is recorded; the other two still apply."""
        client = platform_client(catalog)

        def put(path, body):
            if path == "products/2.json":
                raise PlatformError(422, "price invalid")
            return {"product": dict(body["product"], title="x", variants=[])}

        client.put.side_effect = put

        report = executor.execute(
            context_for(client),
            actions(update_products(product_ids=[1, 2, 3], updates={"tags": "sale"})),
            preview_mode=False,
        )

        assert client.put.call_count == 3
        result = report.results[0]["result"]
        assert report.results[0]["success"] is True
        assert result["updated"] == 2
        assert result["failed"] == 1
        failed = [r for r in result["results"] if not r["success"]]
        assert failed == [{"resource_id": 2, "success": False, "error": "Platform API error (422): price invalid"}]

        (snapshot,) = report.change_snapshots
        assert snapshot.action_type == "update_products"
        assert snapshot.platform_id == "plat-1"
        assert [b["id"] for b in snapshot.before_state] == [1, 2, 3]
        assert [a["id"] for a in snapshot.after_state] == [1, 3]
        assert [r.id for r in snapshot.affected_resources] == [1, 3]
        assert snapshot.before_state[0]["variants"] == [{"id": 10, "price": "20.00", "inventory_quantity": 10}]
        assert report.summary["can_undo"] is True

    def test_put_body(self, executor, catalog) -> None:
        client = platform_client(catalog)
        executor.execute(
            context_for(client),
            actions(update_products(product_ids=[1], updates={"title": "New"})),
            preview_mode=False,
        )
        client.put.assert_called_once_with("products/1.json", {"product": {"title": "New", "id": 1}})

    def test_all_failures_make_no_snapshot(self, executor, catalog) -> None:
        client = platform_client(catalog)
        client.put.side_effect = PlatformError(None, "timeout")

        report = executor.execute(
            context_for(client),
            actions(update_products(product_ids=[1, 2], updates={"tags": "x"})),
            preview_mode=False,
        )
        assert report.results[0]["result"]["changes_made"] is False
        assert report.change_snapshots == []

    def test_untracked_run_records_nothing(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions(update_products(product_ids=[1], updates={"tags": "x"})),
            preview_mode=False,
            track_for_undo=False,
        )
        assert report.change_snapshots == []
        assert report.summary["can_undo"] is False

    def test_unknown_id_is_skipped(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions(update_products(product_ids=[1, 999], updates={"tags": "x"})),
            preview_mode=False,
        )
        assert report.results[0]["result"]["affected_count"] == 1
        client.put.assert_called_once()

    def test_id_cap(self, catalog) -> None:
        client = platform_client(catalog)
        capped = ActionExecutor(target_id_cap=2)
        capped.execute(
            context_for(client),
            actions(update_products(product_ids=[1, 2, 3], updates={"tags": "x"})),
            preview_mode=False,
        )
        assert client.put.call_count == 2


class TestDiscount:
    """EXECUTE apply_discount."""

    def test_creates_price_rule(self, executor, catalog) -> None:
        client = platform_client(catalog)
        client.post.return_value = {"price_rule": {"id": 99, "title": "Discount 10.0%"}}

        report = executor.execute(
            context_for(client),
            actions({"type": "apply_discount", "parameters": {"discount_type": "percentage", "discount_value": 10, "product_ids": [1, 2]}}),
            preview_mode=False,
        )

        path, body = client.post.call_args[0]
        assert path == "price_rules.json"
        assert body["price_rule"]["value"] == "-10.0"
        assert body["price_rule"]["entitled_product_ids"] == [1, 2]
        assert body["price_rule"]["target_selection"] == "entitled"

        (snapshot,) = report.change_snapshots
        assert snapshot.before_state is None
        assert snapshot.after_state["id"] == 99
        assert [(r.type, r.id) for r in snapshot.affected_resources] == [("price_rule", 99)]

    def test_no_matching_products_fails_action(self, executor, catalog) -> None:
        """Filters that match nothing must not create a store-wide rule."""
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions({
                "type": "apply_discount",
                "parameters": {
                    "discount_type": "fixed_amount",
                    "discount_value": 5,
                    "filters": [{"field": "vendor", "operator": "equals", "value": "Nobody"}],
                },
            }),
            preview_mode=False,
        )
        assert report.results[0]["success"] is False
        assert report.results[0]["error"] == "No products found matching criteria"
        client.post.assert_not_called()


class TestInventory:
    """EXECUTE update_inventory."""

    def test_fast_path(self, executor, catalog) -> None:
        client = platform_client(catalog)
        client.post.return_value = {"inventory_level": {"available": 8}}

        report = executor.execute(
            context_for(client),
            actions({"type": "update_inventory", "parameters": {"inventory_item_id": 100, "location_id": 7, "available": 8}}),
            preview_mode=False,
        )
        client.post.assert_called_once_with(
            "inventory_levels/set.json", {"inventory_item_id": 100, "location_id": 7, "available": 8}
        )
        (snapshot,) = report.change_snapshots
        assert snapshot.before_state == [{"inventory_item_id": 100, "location_id": 7, "quantity": 3}]

    def test_lookup_by_title(self, executor, catalog) -> None:
        client = platform_client(catalog, locations=[{"id": 5, "active": False}, {"id": 6, "active": True}])

        report = executor.execute(
            context_for(client),
            actions({"type": "update_inventory", "parameters": {"product_title": "shirt", "quantity": 0}}),
            preview_mode=False,
        )

        posted = [c.args[1] for c in client.post.call_args_list]
        assert sorted(p["inventory_item_id"] for p in posted) == [100, 200]
        assert {p["location_id"] for p in posted} == {6}
        result = report.results[0]["result"]
        assert result["updated"] == 2
        (snapshot,) = report.change_snapshots
        assert [b["quantity"] for b in snapshot.before_state] == [10, 10]

    def test_no_active_location(self, executor, catalog) -> None:
        client = platform_client(catalog, locations=[])
        report = executor.execute(
            context_for(client),
            actions({"type": "update_inventory", "parameters": {"product_title": "hat", "quantity": 1}}),
            preview_mode=False,
        )
        assert report.results[0]["error"] == "No active locations found for this store"

    def test_unmanaged_variants(self, executor) -> None:
        product = shopify_product(1, "Gift Card", "25.00")
        product["variants"][0]["inventory_management"] = None
        client = platform_client([product])
        report = executor.execute(
            context_for(client),
            actions({"type": "update_inventory", "parameters": {"product_title": "gift", "quantity": 1}}),
            preview_mode=False,
        )
        assert report.results[0]["success"] is False
        client.post.assert_not_called()


class TestSeo:
    """EXECUTE update_seo."""

    def test_writes_metafields(self, executor) -> None:
        product = shopify_product(4, "Scarf", "9.00", metafields_global_title_tag="Old title")
        client = platform_client([product])

        report = executor.execute(
            context_for(client),
            actions({"type": "update_seo", "parameters": {
                "product_ids": [4],
                "seo_updates": {"meta_title": "Warm scarf", "meta_description": "Wool"},
            }}),
            preview_mode=False,
        )

        keys = [c.args[1]["metafield"]["key"] for c in client.post.call_args_list]
        assert keys == ["title_tag", "description_tag"]
        (snapshot,) = report.change_snapshots
        assert snapshot.before_state[0]["meta_title"] == "Old title"
        assert snapshot.after_state[0]["meta_title"] == "Warm scarf"

    def test_partial_metafield_failure_keeps_written_title(self, executor) -> None:
        """A failed description write leaves the already written title recorded for undo."""
        product = shopify_product(
            4, "Scarf", "9.00",
            metafields_global_title_tag="Old title",
            metafields_global_description_tag="Old description",
        )
        client = platform_client([product])

        def post(path, body):
            if body["metafield"]["key"] == "description_tag":
                raise PlatformError(422, "value too long")
            return {}

        client.post.side_effect = post

        report = executor.execute(
            context_for(client),
            actions({"type": "update_seo", "parameters": {
                "product_ids": [4],
                "seo_updates": {"meta_title": "Warm scarf", "meta_description": "Wool"},
            }}),
            preview_mode=False,
        )

        assert client.post.call_count == 2
        result = report.results[0]["result"]
        assert result["updated"] == 0
        assert result["failed"] == 1
        (entry,) = result["results"]
        assert entry["success"] is False
        assert entry["updated_fields"] == ["title_tag"]
        assert entry["failed_fields"] == {"description_tag": "Platform API error (422): value too long"}

        (snapshot,) = report.change_snapshots
        assert snapshot.after_state == [{"id": 4, "meta_title": "Warm scarf", "meta_description": "Old description"}]
        assert [r.id for r in snapshot.affected_resources] == [4]


class TestConditional:
    """conditional_update dispatches nested actions on each partition."""

    def test_then_and_else(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions({
                "type": "conditional_update",
                "parameters": {
                    "condition_filters": [{"field": "vendor", "operator": "equals", "value": "Acme"}],
                    "then_action": update_products(updates={"tags": "acme"}),
                    "else_action": update_products(updates={"tags": "other"}),
                },
            }),
            preview_mode=False,
        )

        calls = {c.args[0]: c.args[1]["product"]["tags"] for c in client.put.call_args_list}
        assert calls == {"products/1.json": "acme", "products/3.json": "acme", "products/2.json": "other"}

        result = report.results[0]["result"]
        assert result["condition_met_count"] == 2
        assert result["condition_not_met_count"] == 1
        assert result["changes_made"] is True

        assert [s.action_type for s in report.change_snapshots] == ["update_products", "update_products"]
        assert [r.id for r in report.change_snapshots[0].affected_resources] == [1, 3]

    def test_empty_partition_is_skipped(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions({
                "type": "conditional_update",
                "parameters": {
                    "condition_filters": [{"field": "vendor", "operator": "equals", "value": "Nobody"}],
                    "then_action": {"type": "apply_discount", "parameters": {"discount_type": "percentage", "discount_value": 5}},
                },
            }),
            preview_mode=False,
        )
        assert report.results[0]["result"]["then_action"]["skipped"] is True
        client.post.assert_not_called()

    def test_nested_conditional(self, executor, catalog) -> None:
        client = platform_client(catalog)
        report = executor.execute(
            context_for(client),
            actions({
                "type": "conditional_update",
                "parameters": {
                    "condition_filters": [{"field": "vendor", "operator": "equals", "value": "Acme"}],
                    "then_action": {
                        "type": "conditional_update",
                        "parameters": {
                            "condition_filters": [{"field": "title", "operator": "contains", "value": "hat"}],
                            "then_action": update_products(updates={"tags": "hat"}),
                        },
                    },
                },
            }),
            preview_mode=False,
        )
        client.put.assert_called_once()
        assert client.put.call_args.args[0] == "products/3.json"
        assert [s.action_type for s in report.change_snapshots] == ["update_products"]


class TestConnections:
    """Per-connection isolation."""

    def test_decrypt_failure_only_fails_its_connection(self, executor, catalog) -> None:
        good, bad = connection("plat-1", "good"), connection("plat-2", "bad")
        bad.access_token = "corrupt"
        client = platform_client(catalog)

        def decrypt(secret):
            if secret == "corrupt":
                raise ValueError("bad padding")
            return secret

        ctx = ExecutionContext.build(
            [good, bad], decrypt=decrypt, client_factory=lambda domain, token: client, max_workers=2
        )
        report = executor.execute(
            ctx,
            actions(update_products(product_ids=[1], updates={"tags": "x"}), {"type": "get_products"}),
            preview_mode=False,
        )

        by_platform = {}
        for r in report.results:
            by_platform.setdefault(r["platform"], []).append(r)
        assert all(r["success"] for r in by_platform["good"])
        assert [r["error"] for r in by_platform["bad"]] == [DECRYPT_FAILED, DECRYPT_FAILED]
        assert report.summary["failed"] == 2
        assert client.put.call_count == 1

    def test_platform_error_fails_action_not_run(self, executor, catalog) -> None:
        client = platform_client(catalog)
        client.get.side_effect = PlatformError(503, "unavailable")

        report = executor.execute(
            context_for(client),
            actions({"type": "get_products"}, update_products(product_ids=[1], updates={"tags": "x"})),
            preview_mode=False,
        )
        assert report.summary["failed"] == 1
        assert report.results[0]["success"] is False
        assert report.results[0]["error"] == "Platform API error (503): unavailable"
        # the fetch of product 1 failed too, so the update had nothing to touch
        assert report.results[1]["success"] is True
        assert report.results[1]["result"]["affected_count"] == 0

    def test_client_factory_called_once_per_connection(self, executor, catalog) -> None:
        factory = MagicMock(return_value=platform_client(catalog))
        ctx = ExecutionContext.build([connection()], client_factory=factory)
        executor.execute(
            ctx,
            actions({"type": "get_products"}, {"type": "get_products"}),
            preview_mode=True,
        )
        factory.assert_called_once_with("main.myshopify.com", "tok")


class TestUnexpectedErrors:
    """Non-platform exceptions never discard writes that already happened."""

    def test_bad_response_fails_one_product(self, executor, catalog) -> None:
        client = platform_client(catalog)

        def put(path, body):
            if path == "products/2.json":
                raise ValueError("Expecting value: line 1 column 1")
            return {"product": body["product"]}

        client.put.side_effect = put

        report = executor.execute(
            context_for(client),
            actions(update_products(product_ids=[1, 2, 3], updates={"tags": "sale"})),
            preview_mode=False,
        )

        result = report.results[0]["result"]
        assert result["updated"] == 2
        failed = [r for r in result["results"] if not r["success"]]
        assert [r["resource_id"] for r in failed] == [2]
        assert failed[0]["error"].startswith("Unexpected error: ValueError")
        (snapshot,) = report.change_snapshots
        assert [r.id for r in snapshot.affected_resources] == [1, 3]

    def test_aborted_action_does_not_stop_the_run(self, executor, catalog) -> None:
        """An exception escaping one handler fails that action; earlier snapshots survive."""
        client = platform_client(catalog)
        routed = client.get.side_effect

        def get(path, params=None):
            if path == "products.json":
                raise RuntimeError("decoder exploded")
            return routed(path, params)

        client.get.side_effect = get

        report = executor.execute(
            context_for(client),
            actions(
                update_products(product_ids=[1], updates={"tags": "sale"}),
                {"type": "get_products"},
                update_products(product_ids=[3], updates={"tags": "sale"}),
            ),
            preview_mode=False,
        )

        assert [r["success"] for r in report.results] == [True, False, True]
        assert report.results[1]["error"] == "Unexpected error: RuntimeError: decoder exploded"
        assert [s.affected_resources[0].id for s in report.change_snapshots] == [1, 3]
        assert report.summary["can_undo"] is True
