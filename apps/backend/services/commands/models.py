"""
Command Domain Types
====================

Plain records shared by preview, execution and undo:
- Command lifecycle status + allowed transitions
- Diff / FieldChange produced by the diff engine
- ChangeSnapshot / CommandHistory, the undo bookkeeping
- PlatformConnection, one connected store

No HTTP and no DB here. Rows coming back from supabase are mapped through
the from_row() constructors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class CommandStatus(str, Enum):
    PENDING = "pending"
    PREVIEWED = "previewed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNDONE = "undone"


# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: Dict[CommandStatus, FrozenSet[CommandStatus]] = {
    CommandStatus.PREVIEWED: frozenset({CommandStatus.PENDING, CommandStatus.PREVIEWED}),
    CommandStatus.EXECUTING: frozenset({CommandStatus.PENDING, CommandStatus.PREVIEWED}),
    CommandStatus.COMPLETED: frozenset({CommandStatus.EXECUTING}),
    CommandStatus.FAILED: frozenset({CommandStatus.EXECUTING}),
    CommandStatus.UNDONE: frozenset({CommandStatus.COMPLETED}),
}


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ChangeType(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    CALCULATED = "calculated"


class ExecutionMode(str, Enum):
    PREVIEW = "preview"
    EXECUTE = "execute"


@dataclass(frozen=True)
class FieldChange:
    field: str
    field_label: str
    before: str
    after: str
    change_type: ChangeType

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "field_label": self.field_label,
            "before": self.before,
            "after": self.after,
            "change_type": self.change_type.value,
        }


@dataclass
class Diff:
    entity_id: str
    entity_name: Optional[str] = None
    changes: List[FieldChange] = field(default_factory=list)
    # extra display context (sku, location, platform name ...)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "changes": [c.to_dict() for c in self.changes],
        }
        out.update(self.meta)
        return out


@dataclass(frozen=True)
class AffectedResource:
    type: str
    id: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id}


@dataclass
class ChangeSnapshot:
    """
    Before/after capture for one executed action on one platform.
    The unit of undo.
    """

    action_type: str
    platform_id: str
    before_state: Any
    after_state: Any
    affected_resources: List[AffectedResource] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type,
            "platform_id": self.platform_id,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "affected_resources": [r.to_dict() for r in self.affected_resources],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeSnapshot":
        return cls(
            action_type=str(data.get("action_type") or ""),
            platform_id=str(data.get("platform_id") or ""),
            before_state=data.get("before_state"),
            after_state=data.get("after_state"),
            affected_resources=[
                AffectedResource(type=str(r.get("type")), id=r.get("id"))
                for r in (data.get("affected_resources") or [])
                if isinstance(r, dict)
            ],
        )


@dataclass
class CommandHistory:
    id: str
    command_id: str
    change_snapshots: List[ChangeSnapshot]
    can_undo: bool
    executed_at: Optional[str] = None
    undone_at: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CommandHistory":
        return cls(
            id=str(row.get("id")),
            command_id=str(row.get("command_id")),
            change_snapshots=[
                ChangeSnapshot.from_dict(s)
                for s in (row.get("change_snapshots") or [])
                if isinstance(s, dict)
            ],
            can_undo=bool(row.get("can_undo")),
            executed_at=row.get("executed_at"),
            undone_at=row.get("undone_at"),
            user_id=row.get("user_id"),
        )


@dataclass
class Command:
    id: str
    status: CommandStatus
    command_text: str = ""
    interpretation: Dict[str, Any] = field(default_factory=dict)
    platform_targets: List[str] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    executed_at: Optional[str] = None
    undone_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Command":
        return cls(
            id=str(row.get("id")),
            status=CommandStatus(row.get("status") or CommandStatus.PENDING.value),
            command_text=row.get("command_text") or "",
            interpretation=row.get("interpretation") or {},
            platform_targets=list(row.get("platform_targets") or []),
            risk_level=RiskLevel(row.get("risk_level") or RiskLevel.LOW.value),
            user_id=row.get("user_id"),
            created_at=row.get("created_at"),
            executed_at=row.get("executed_at"),
            undone_at=row.get("undone_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "command_text": self.command_text,
            "interpretation": self.interpretation,
            "platform_targets": self.platform_targets,
            "risk_level": self.risk_level.value,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "executed_at": self.executed_at,
            "undone_at": self.undone_at,
        }


@dataclass
class PlatformConnection:
    id: str
    shop_name: str
    shop_domain: str
    access_token: str
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PlatformConnection":
        return cls(
            id=str(row.get("id")),
            shop_name=row.get("shop_name") or "",
            shop_domain=row.get("shop_domain") or "",
            access_token=row.get("access_token") or "",
            user_id=row.get("user_id"),
        )
