from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def ok(data: Any = None, meta: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        content={
            "ok": True,
            "data": jsonable_encoder(data),
            "meta": meta or {},
        }
    )


def error(message: str, code: str = "error", status: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "error": code,
            "message": message,
        },
    )
