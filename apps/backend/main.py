# apps/backend/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apps.backend.middleware.errors import install_error_handlers
from apps.backend.routes.commands import router as commands_router
from apps.backend.routes.health import router as health_router
from apps.backend.utils.settings import settings

log = logging.getLogger("commander.main")

app = FastAPI(
    title="Bulk Commander",
    version=settings.APP_VERSION,
    description="Preview, execute and undo bulk commerce mutations",
)

# -------------------------------------------------------------------
# Error handling (stable envelopes, no stack leaks)
# -------------------------------------------------------------------
install_error_handlers(app)

# -------------------------------------------------------------------
# CORS (merchant-facing, controlled)
# -------------------------------------------------------------------
if settings.CORS_MODE == "allowlist":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

# -------------------------------------------------------------------
# Routers
# -------------------------------------------------------------------
app.include_router(health_router)
app.include_router(commands_router)


@app.get("/")
async def root():
    return {
        "status": "Bulk Commander Online",
        "version": settings.APP_VERSION,
        "routes": ["/health", "/commands"],
    }


@app.on_event("startup")
async def startup_event():
    log.info("Bulk Commander %s starting (max_workers=%d)", settings.APP_VERSION, settings.COMMANDS_MAX_WORKERS)
