"""
Snapshot Store (Supabase adapter)
=================================

Persistence for the command lifecycle:
- ai_commands       one row per command, carries status + risk_level
- command_history   change snapshots of one execution, undo bookkeeping
- platforms         connected stores (credentials stay encrypted at rest)

Status changes are compare-and-set: the update only matches rows whose
current status is an allowed predecessor, and an empty result means another
writer got there first. Undo claims a history row the same way on undone_at.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from apps.backend.db import get_supabase
from apps.backend.services.commands.errors import NotFoundError
from apps.backend.services.commands.models import (
    ALLOWED_TRANSITIONS,
    ChangeSnapshot,
    Command,
    CommandHistory,
    CommandStatus,
    PlatformConnection,
    RiskLevel,
)

log = logging.getLogger("commander.store")


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rows(res: Any) -> List[Dict[str, Any]]:
    return [x for x in (getattr(res, "data", None) or []) if isinstance(x, dict)]


class SnapshotStore:
    def __init__(
        self,
        supabase_client: Any = None,
        *,
        table_commands: str = "ai_commands",
        table_history: str = "command_history",
        table_platforms: str = "platforms",
    ) -> None:
        self.sb = supabase_client if supabase_client is not None else get_supabase()
        if self.sb is None:
            raise RuntimeError("Supabase client not configured (missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY).")
        self.table_commands = table_commands
        self.table_history = table_history
        self.table_platforms = table_platforms

    # -----------------------------
    # Commands
    # -----------------------------
    def create_command(
        self,
        user_id: str,
        command_text: str,
        *,
        interpretation: Optional[Dict[str, Any]] = None,
        platform_targets: Optional[List[str]] = None,
    ) -> Command:
        res = (
            self.sb.table(self.table_commands)
            .insert({
                "user_id": user_id,
                "command_text": command_text,
                "interpretation": interpretation or {},
                "platform_targets": platform_targets or [],
                "status": CommandStatus.PENDING.value,
                "risk_level": RiskLevel.LOW.value,
                "created_at": _utcnow(),
            })
            .execute()
        )
        rows = _rows(res)
        if not rows:
            raise RuntimeError("Insert into ai_commands returned no row")
        return Command.from_row(rows[0])

    def get_command(self, command_id: str, user_id: Optional[str] = None) -> Command:
        q = self.sb.table(self.table_commands).select("*").eq("id", command_id)
        if user_id is not None:
            q = q.eq("user_id", user_id)
        rows = _rows(q.limit(1).execute())
        if not rows:
            raise NotFoundError("Command not found")
        return Command.from_row(rows[0])

    def list_commands(self, user_id: str, *, status: Optional[str] = None, limit: int = 50) -> List[Command]:
        q = self.sb.table(self.table_commands).select("*").eq("user_id", user_id)
        if status:
            q = q.eq("status", status)
        res = q.order("created_at", desc=True).limit(limit).execute()
        return [Command.from_row(r) for r in _rows(res)]

    def transition(self, command_id: str, to_status: CommandStatus, extra: Optional[Dict[str, Any]] = None) -> bool:
        """
        Moves a command to to_status only if its current status is an allowed
        predecessor. Returns False when nothing matched.
        """
        allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[to_status])
        patch = dict(extra or {}, status=to_status.value)
        res = (
            self.sb.table(self.table_commands)
            .update(patch)
            .eq("id", command_id)
            .in_("status", allowed)
            .execute()
        )
        moved = bool(_rows(res))
        if not moved:
            log.warning("Transition of command %s to %s rejected", command_id, to_status.value)
        return moved

    def update_command(self, command_id: str, patch: Dict[str, Any]) -> None:
        self.sb.table(self.table_commands).update(patch).eq("id", command_id).execute()

    # -----------------------------
    # History
    # -----------------------------
    def append_history(self, command_id: str, user_id: str, snapshots: Sequence[ChangeSnapshot]) -> CommandHistory:
        res = (
            self.sb.table(self.table_history)
            .insert({
                "command_id": command_id,
                "user_id": user_id,
                "change_snapshots": [s.to_dict() for s in snapshots],
                "can_undo": True,
                "executed_at": _utcnow(),
            })
            .execute()
        )
        rows = _rows(res)
        if not rows:
            raise RuntimeError("Insert into command_history returned no row")
        return CommandHistory.from_row(rows[0])

    def get_history(self, command_id: str) -> Optional[CommandHistory]:
        res = (
            self.sb.table(self.table_history)
            .select("*")
            .eq("command_id", command_id)
            .order("executed_at", desc=True)
            .limit(1)
            .execute()
        )
        rows = _rows(res)
        return CommandHistory.from_row(rows[0]) if rows else None

    def claim_undo(self, history_id: str) -> Optional[str]:
        """Stamps undone_at if still unset. Returns the stamp, or None if already claimed."""
        stamp = _utcnow()
        res = (
            self.sb.table(self.table_history)
            .update({"undone_at": stamp, "can_undo": False})
            .eq("id", history_id)
            .is_("undone_at", "null")
            .execute()
        )
        return stamp if _rows(res) else None

    def record_undo_results(self, history_id: str, results: List[Dict[str, Any]]) -> None:
        self.sb.table(self.table_history).update({"undo_results": results}).eq("id", history_id).execute()

    # -----------------------------
    # Platforms
    # -----------------------------
    def list_connections(self, user_id: str, shop_names: Optional[Sequence[str]] = None) -> List[PlatformConnection]:
        q = (
            self.sb.table(self.table_platforms)
            .select("id, shop_name, shop_domain, access_token, user_id")
            .eq("user_id", user_id)
            .eq("is_active", True)
        )
        if shop_names:
            q = q.in_("shop_name", list(shop_names))
        return [PlatformConnection.from_row(r) for r in _rows(q.execute())]

    def get_connections(self, platform_ids: Sequence[str]) -> List[PlatformConnection]:
        if not platform_ids:
            return []
        res = (
            self.sb.table(self.table_platforms)
            .select("id, shop_name, shop_domain, access_token, user_id")
            .in_("id", list(platform_ids))
            .execute()
        )
        return [PlatformConnection.from_row(r) for r in _rows(res)]
