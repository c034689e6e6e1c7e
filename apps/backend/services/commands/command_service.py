"""
Command Service
===============

Orchestrates one command through its lifecycle:

    create -> preview -> execute -> (undo)

Purpose:
- Validate actions at the boundary before anything is claimed or called.
- Hold the execution lock via the PENDING/PREVIEWED -> EXECUTING transition.
- Persist snapshots from EXECUTE runs and hand undo to the UndoEngine.

Routes stay thin; everything with a side effect goes through here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apps.backend.services.commands.actions import parse_actions
from apps.backend.services.commands.catalog import CatalogReader
from apps.backend.services.commands.context import ClientFactory, Decryptor, ExecutionContext, plaintext
from apps.backend.services.commands.errors import NotFoundError, StateError
from apps.backend.services.commands.executor import ActionExecutor
from apps.backend.services.commands.models import Command, CommandStatus, RiskLevel
from apps.backend.services.commands.preview_service import PreviewService
from apps.backend.services.commands.snapshot_store import SnapshotStore
from apps.backend.services.commands.undo_engine import UndoEngine
from apps.backend.services.shopify_client import ShopifyClient

log = logging.getLogger("commander.service")

PREVIEWABLE = frozenset({CommandStatus.PENDING, CommandStatus.PREVIEWED})
HISTORY_NOT_RECORDED = "Changes were applied but undo history could not be recorded"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class CommandService:
    def __init__(
        self,
        store: SnapshotStore,
        *,
        preview_service: Optional[PreviewService] = None,
        executor: Optional[ActionExecutor] = None,
        decrypt: Decryptor = plaintext,
        client_factory: ClientFactory = ShopifyClient,
        max_workers: Optional[int] = None,
    ) -> None:
        self.store = store
        self.preview_service = preview_service or PreviewService(CatalogReader(store.sb))
        self.executor = executor or ActionExecutor()
        self.decrypt = decrypt
        self.client_factory = client_factory
        self.max_workers = max_workers
        self.undo_engine = UndoEngine(
            store,
            decrypt=decrypt,
            client_factory=client_factory,
            max_workers=max_workers,
        )

    # -----------------------------
    # CRUD
    # -----------------------------
    def create_command(
        self,
        user_id: str,
        command_text: str,
        interpretation: Optional[Dict[str, Any]] = None,
        platform_targets: Optional[List[str]] = None,
    ) -> Command:
        command = self.store.create_command(
            user_id,
            command_text,
            interpretation=interpretation,
            platform_targets=platform_targets,
        )
        log.info("Created command %s for user %s", command.id, user_id)
        return command

    def get_command(self, command_id: str, user_id: Optional[str] = None) -> Command:
        return self.store.get_command(command_id, user_id)

    def list_commands(self, user_id: str, status: Optional[str] = None, limit: int = 50) -> List[Command]:
        return self.store.list_commands(user_id, status=status, limit=limit)

    # -----------------------------
    # Preview (stored intent, read-only)
    # -----------------------------
    def preview_command(self, command_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        command = self.store.get_command(command_id, user_id)
        if command.status not in PREVIEWABLE:
            raise StateError(f"Command cannot be previewed (status: {command.status.value})")

        product_ids = command.interpretation.get("product_ids") or []
        preview = self.preview_service.preview_command(command.command_text, command.interpretation, product_ids)

        risk = RiskLevel(preview["risk_level"])
        if not self.store.transition(command_id, CommandStatus.PREVIEWED, {"risk_level": risk.value}):
            raise StateError("Command changed state during preview")
        return preview

    # -----------------------------
    # Execute
    # -----------------------------
    def execute_command(
        self,
        command_id: str,
        user_id: str,
        actions: Any,
        *,
        platform_targets: Optional[List[str]] = None,
        preview_mode: bool = True,
        track_for_undo: bool = True,
    ) -> Dict[str, Any]:
        parsed = parse_actions(actions)
        command = self.store.get_command(command_id, user_id)

        targets = platform_targets or command.platform_targets or None
        connections = self.store.list_connections(user_id, targets)
        if not connections:
            raise NotFoundError("No active platform connections found")

        if preview_mode:
            if command.status not in PREVIEWABLE:
                raise StateError(f"Command cannot be previewed (status: {command.status.value})")
            report = self.executor.execute(self._context(connections), parsed, preview_mode=True)
            self.store.transition(command_id, CommandStatus.PREVIEWED)
            return report.to_dict()

        if not self.store.transition(command_id, CommandStatus.EXECUTING):
            raise StateError("Command is already executing or finished")

        try:
            report = self.executor.execute(
                self._context(connections),
                parsed,
                preview_mode=False,
                track_for_undo=track_for_undo,
            )
        except Exception:
            log.exception("Execution of command %s aborted", command_id)
            self.store.transition(command_id, CommandStatus.FAILED, {"executed_at": _utcnow()})
            raise

        history_error = None
        if track_for_undo and report.change_snapshots:
            try:
                self.store.append_history(command_id, user_id, report.change_snapshots)
            except Exception as e:
                # platform writes already happened; the outcome must still be reported
                log.exception("Failed to record undo history for command %s", command_id)
                history_error = e

        final = CommandStatus.FAILED if report.results and report.successful == 0 else CommandStatus.COMPLETED
        self.store.transition(command_id, final, {"executed_at": _utcnow()})
        log.info("Command %s %s: %s", command_id, final.value, report.summary)

        body = report.to_dict()
        if history_error is not None:
            body["summary"]["can_undo"] = False
            body["warning"] = HISTORY_NOT_RECORDED
        return body

    # -----------------------------
    # Undo
    # -----------------------------
    def undo_command(self, command_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self.undo_engine.undo_command(command_id, user_id)

    def _context(self, connections) -> ExecutionContext:
        return ExecutionContext.build(
            connections,
            decrypt=self.decrypt,
            client_factory=self.client_factory,
            max_workers=self.max_workers,
        )
