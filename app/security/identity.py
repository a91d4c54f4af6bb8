from __future__ import annotations

import logging

from fastapi import FastAPI, Request

from app.config import settings

logger = logging.getLogger(__name__)


def parse_principal_id(raw: str | None) -> int | None:
    value = (raw or '').strip()
    if not value.isdigit() or int(value) <= 0:
        return None
    return int(value)


def install_identity_middleware(app: FastAPI) -> None:
    # The auth gateway in front of this service has already authenticated the
    # caller; a missing or malformed header just means anonymous.
    @app.middleware('http')
    async def identity_middleware(request: Request, call_next):
        raw = request.headers.get(settings.identity_header)
        principal_id = parse_principal_id(raw)
        if raw and principal_id is None:
            logger.warning('Ignoring malformed %s header', settings.identity_header)
        request.state.principal_id = principal_id
        return await call_next(request)
