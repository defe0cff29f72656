"""User data sync endpoint."""
import hashlib
import json
import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from budgetsync.dependencies import get_request_handler
from budgetsync.domain.handler import RequestHandler
from budgetsync.errors import error_body

router = APIRouter()
logger = logging.getLogger(__name__)


def client_id_for(request: Request) -> str:
    """Rate-limit key for the caller: hashed first X-Forwarded-For hop or peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else "unknown"
    return f"ip:{hashlib.sha256(ip.encode()).hexdigest()}"


@router.post("/user-data")
async def user_data(request: Request, handler: RequestHandler = Depends(get_request_handler)):
    """Get or save one encrypted data slot for a phone number."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content=error_body("Invalid JSON body"))

    result = await handler.handle(body, client_id_for(request))
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


@router.options("/user-data")
async def user_data_preflight():
    """Bare OPTIONS (no CORS preflight headers) still succeeds."""
    return Response(status_code=204)
