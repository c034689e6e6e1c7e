"""
Undo Engine
===========

Reverts one executed command from its recorded ChangeSnapshots.

Preconditions are checked before any platform call: a history row exists,
is still undoable, carries at least one snapshot, and the command is
COMPLETED. The history row is then claimed so a concurrent second undo
finds nothing left to revert.

Every snapshot is attempted. A failed snapshot is reported and the command
still ends UNDONE.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from apps.backend.services.commands.context import ClientFactory, Decryptor, ExecutionContext, plaintext, unexpected
from apps.backend.services.commands.errors import CommandError, StateError
from apps.backend.services.commands.models import ChangeSnapshot, CommandStatus
from apps.backend.services.commands.snapshot_store import SnapshotStore
from apps.backend.services.shopify_client import ShopifyClient

log = logging.getLogger("commander.undo")

NOT_REVERTIBLE_WARNING = "Manual verification recommended"
UNDO_ABORTED = "Undo aborted before this change was reverted"


class RevertFailed(CommandError):
    """Some resources of one snapshot could not be restored."""

    def __init__(self, message: str, results: List[Dict[str, Any]]):
        self.results = results
        super().__init__(message)


def _revert_products(ctx: ExecutionContext, snapshot: ChangeSnapshot) -> Dict[str, Any]:
    affected = {str(r.id) for r in snapshot.affected_resources if r.type == "product"}
    entries = [b for b in (snapshot.before_state or []) if str(b.get("id")) in affected]
    client = ctx.client(snapshot.platform_id)

    def _restore(before: Dict[str, Any]) -> Any:
        return client.put(f"products/{before['id']}.json", {"product": before})

    outcomes = ctx.run_each(entries, _restore)
    results = [
        {"resource_id": o.item.get("id"), "success": o.ok, "error": None if o.ok else o.error.message}
        for o in outcomes
    ]
    failed = [r for r in results if not r["success"]]
    if failed:
        raise RevertFailed(f"{len(failed)} of {len(results)} products could not be restored", results)
    return {"message": f"Restored {len(results)} products", "results": results}


def _revert_discount(ctx: ExecutionContext, snapshot: ChangeSnapshot) -> Dict[str, Any]:
    client = ctx.client(snapshot.platform_id)
    deleted = []
    for resource in snapshot.affected_resources:
        if resource.type != "price_rule" or resource.id is None:
            continue
        client.delete(f"price_rules/{resource.id}.json")
        deleted.append(resource.id)
    return {"message": f"Deleted {len(deleted)} price rule(s)", "deleted": deleted}


def _not_revertible(label: str) -> Callable[[ExecutionContext, ChangeSnapshot], Dict[str, Any]]:
    def _revert(ctx: ExecutionContext, snapshot: ChangeSnapshot) -> Dict[str, Any]:
        return {"message": f"{label} undo not yet implemented", "warning": NOT_REVERTIBLE_WARNING}

    return _revert


REVERTERS: Dict[str, Callable[[ExecutionContext, ChangeSnapshot], Dict[str, Any]]] = {
    "update_products": _revert_products,
    "apply_discount": _revert_discount,
    "update_inventory": _not_revertible("Inventory"),
    "update_seo": _not_revertible("SEO"),
}


class UndoEngine:
    def __init__(
        self,
        store: SnapshotStore,
        *,
        decrypt: Decryptor = plaintext,
        client_factory: ClientFactory = ShopifyClient,
        max_workers: Optional[int] = None,
    ) -> None:
        self.store = store
        self.decrypt = decrypt
        self.client_factory = client_factory
        self.max_workers = max_workers

    def undo_command(self, command_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        command = self.store.get_command(command_id, user_id)
        history = self.store.get_history(command_id)

        if history is None:
            raise StateError("No undo history found for this command")
        if not history.can_undo or history.undone_at:
            raise StateError("Command has already been undone or cannot be undone")
        if not history.change_snapshots:
            raise StateError("No changes recorded for this command")
        if command.status != CommandStatus.COMPLETED:
            raise StateError(f"Only completed commands can be undone (status: {command.status.value})")

        undone_at = self.store.claim_undo(history.id)
        if undone_at is None:
            raise StateError("Command has already been undone or cannot be undone")

        snapshots = history.change_snapshots
        log.info("Undoing command %s: %d snapshots", command_id, len(snapshots))

        # once claimed, the command must reach UNDONE with one result per snapshot
        results: List[Dict[str, Any]] = []
        try:
            platform_ids = sorted({s.platform_id for s in snapshots})
            ctx = ExecutionContext.build(
                self.store.get_connections(platform_ids),
                decrypt=self.decrypt,
                client_factory=self.client_factory,
                max_workers=self.max_workers,
            )
            for snapshot in snapshots:
                results.append(self._revert(ctx, snapshot))
        except Exception:
            log.exception("Undo of %s aborted after %d of %d snapshots", command_id, len(results), len(snapshots))
        finally:
            for snapshot in snapshots[len(results):]:
                results.append({
                    "action_type": snapshot.action_type,
                    "platform_id": snapshot.platform_id,
                    "success": False,
                    "error": UNDO_ABORTED,
                })
            try:
                self.store.record_undo_results(history.id, results)
            finally:
                self.store.transition(command_id, CommandStatus.UNDONE, {"undone_at": undone_at})

        successful = sum(1 for r in results if r["success"])
        failed = len(results) - successful

        log.info("Undo of %s complete: %d reverted, %d failed", command_id, successful, failed)
        return {
            "results": results,
            "summary": {"total_reverted": len(results), "successful": successful, "failed": failed},
            "message": f"Reverted {successful} of {len(results)} changes",
        }

    def _revert(self, ctx: ExecutionContext, snapshot: ChangeSnapshot) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"action_type": snapshot.action_type, "platform_id": snapshot.platform_id}

        reverter = REVERTERS.get(snapshot.action_type)
        if reverter is None:
            return dict(entry, success=False, error="Cannot revert action type")

        conn_error = ctx.connection_error(snapshot.platform_id)
        if conn_error:
            return dict(entry, success=False, error=conn_error)

        try:
            result = reverter(ctx, snapshot)
        except RevertFailed as e:
            log.warning("Revert of %s on %s partially failed: %s", snapshot.action_type, snapshot.platform_id, e.message)
            return dict(entry, success=False, error=e.message, results=e.results)
        except CommandError as e:
            log.warning("Revert of %s on %s failed: %s", snapshot.action_type, snapshot.platform_id, e.message)
            return dict(entry, success=False, error=e.message)
        except Exception as e:
            log.exception("Revert of %s on %s aborted", snapshot.action_type, snapshot.platform_id)
            return dict(entry, success=False, error=unexpected(e).message)
        return dict(entry, success=True, result=result)
