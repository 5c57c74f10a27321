"""Dependencies for FastAPI routes.

Long-lived services are built once in `main.py` and parked on `app.state`;
tests swap them there.
"""

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.requests import HTTPConnection


def _state(conn: HTTPConnection, name: str):
    return getattr(conn.app.state, name)


def get_storage(request: Request):
    return _state(request, "storage")


def get_rate_limiter(request: Request):
    return _state(request, "rate_limiter")


def get_pipeline(request: Request):
    return _state(request, "pipeline")


def get_gallery_service(request: Request):
    return _state(request, "gallery")


def get_sweeper(request: Request):
    return _state(request, "sweeper")


def get_realtime(request: Request):
    return _state(request, "realtime")


def get_analytics(request: Request):
    return getattr(request.app.state, "analytics", None)


def client_ip(conn: HTTPConnection) -> Optional[str]:
    return conn.client.host if conn.client else None


def success(
    data: Any,
    meta: Optional[Dict[str, Any]] = None,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"success": True, "data": data}
    if meta:
        body["meta"] = meta
    return JSONResponse(body, status_code=status_code, headers=headers)
