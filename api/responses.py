"""
api/responses.py -- Envelope builders shared by every route and exception handler.

The envelope code is "<SERVICE>-<status>". The service prefix comes from
request.state.service_name, which each router sets through the
auth.dependencies.service_name() dependency. Requests that never reach a
router (unknown paths, middleware rejections) fall back to "APP".
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from api.models import Envelope, FieldError, Meta

DEFAULT_SERVICE = "APP"


def service_for(request: Request) -> str:
    return getattr(request.state, "service_name", None) or DEFAULT_SERVICE


def envelope(
    service: str,
    status_code: int,
    message: str,
    data: Any = None,
    errors: Optional[list[FieldError]] = None,
) -> dict:
    """Build the envelope as a plain JSON-ready dict."""
    body = Envelope(meta=Meta(code=f"{service}-{status_code}", message=message, errors=errors), data=data)
    content = jsonable_encoder(body)
    if errors is None:
        content["meta"].pop("errors", None)
    return content


def respond(
    request: Request,
    message: str,
    data: Any = None,
    status_code: int = 200,
    errors: Optional[list[FieldError]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Return an enveloped JSONResponse tagged with the current request's service."""
    return JSONResponse(
        status_code=status_code,
        content=envelope(service_for(request), status_code, message, data, errors),
        headers=headers,
    )
