from fastapi import APIRouter

from apps.backend.db import get_supabase
from apps.backend.utils.settings import settings

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_root():
    return {"ok": True}


@router.get("/config")
def health_config():
    return {
        "ok": True,
        "version": settings.APP_VERSION,
        "supabase_configured": get_supabase() is not None,
        "platform_api_version": settings.PLATFORM_API_VERSION,
        "max_workers": settings.COMMANDS_MAX_WORKERS,
    }
