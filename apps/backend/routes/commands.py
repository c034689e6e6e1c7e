from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from apps.backend.db import get_supabase
from apps.backend.services.commands.catalog import CatalogReader
from apps.backend.services.commands.command_service import CommandService
from apps.backend.services.commands.preview_service import PreviewService
from apps.backend.services.commands.snapshot_store import SnapshotStore
from apps.backend.utils.envelope import ok

router = APIRouter(prefix="/commands", tags=["commands"])


# ===== Dependencies =====
def _sb():
    sb = get_supabase()
    if not sb:
        raise HTTPException(501, "Supabase not configured")
    return sb


def get_command_service() -> CommandService:
    return CommandService(SnapshotStore(_sb()))


def get_preview_service() -> PreviewService:
    return PreviewService(CatalogReader(_sb()))


# ===== Pydantic models =====
class CommandCreate(BaseModel):
    user_id: str
    command_text: str = Field(min_length=1)
    interpretation: Dict[str, Any] = Field(default_factory=dict)
    platform_targets: List[str] = Field(default_factory=list)


class UserScoped(BaseModel):
    user_id: Optional[str] = None


class ExecuteRequest(BaseModel):
    user_id: str
    # validated into typed actions by the service so errors share one envelope
    actions: Any = None
    platform_targets: List[str] = Field(default_factory=list)
    preview_mode: bool = True
    track_for_undo: bool = True


class PricePreviewRequest(BaseModel):
    product_ids: List[Any] = Field(default_factory=list)
    update_type: str
    value: Any


class InventoryPreviewRequest(BaseModel):
    item_ids: List[Any] = Field(default_factory=list)
    operation: str
    quantity: Any


class ListingPreviewRequest(BaseModel):
    listing_ids: List[Any] = Field(default_factory=list)
    updates: Dict[str, Any] = Field(default_factory=dict)


# ===== Typed previews (read-only) =====
@router.post("/preview/price")
def preview_price(inb: PricePreviewRequest, svc: PreviewService = Depends(get_preview_service)):
    return ok(svc.preview_price_update(inb.product_ids, inb.update_type, inb.value))


@router.post("/preview/inventory")
def preview_inventory(inb: InventoryPreviewRequest, svc: PreviewService = Depends(get_preview_service)):
    return ok(svc.preview_inventory_update(inb.item_ids, inb.operation, inb.quantity))


@router.post("/preview/listing")
def preview_listing(inb: ListingPreviewRequest, svc: PreviewService = Depends(get_preview_service)):
    return ok(svc.preview_listing_update(inb.listing_ids, inb.updates))


# ===== Commands =====
@router.post("")
def create_command(inb: CommandCreate, svc: CommandService = Depends(get_command_service)):
    command = svc.create_command(inb.user_id, inb.command_text, inb.interpretation, inb.platform_targets)
    return ok(command.to_dict())


@router.get("")
def list_commands(
    user_id: str,
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    svc: CommandService = Depends(get_command_service),
):
    commands = svc.list_commands(user_id, status=status, limit=limit)
    return ok([c.to_dict() for c in commands], meta={"count": len(commands)})


@router.get("/{command_id}")
def get_command(
    command_id: str,
    user_id: Optional[str] = Query(default=None),
    svc: CommandService = Depends(get_command_service),
):
    return ok(svc.get_command(command_id, user_id).to_dict())


@router.post("/{command_id}/preview")
def preview_command(command_id: str, inb: UserScoped, svc: CommandService = Depends(get_command_service)):
    return ok(svc.preview_command(command_id, inb.user_id))


@router.post("/{command_id}/execute")
def execute_command(command_id: str, inb: ExecuteRequest, svc: CommandService = Depends(get_command_service)):
    report = svc.execute_command(
        command_id,
        inb.user_id,
        inb.actions,
        platform_targets=inb.platform_targets,
        preview_mode=inb.preview_mode,
        track_for_undo=inb.track_for_undo,
    )
    return ok(report)


@router.post("/{command_id}/undo")
def undo_command(command_id: str, inb: UserScoped, svc: CommandService = Depends(get_command_service)):
    return ok(svc.undo_command(command_id, inb.user_id))
