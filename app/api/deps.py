# app/api/deps.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import logger
from app.core.settings import settings
from app.domain.errors import DomainError, to_user_message
from app.domain.users.service import ensure_user, is_admin
from app.middleware.request_id import bind_user_id
from app.repo.db import get_session

bearer = HTTPBearer(auto_error=False)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
        options={"verify_aud": False},
    )


async def get_current_user_id(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    session: AsyncSession = Depends(get_session),
) -> str:
    if creds is None or not creds.credentials:
        raise HTTPException(401, "UNAUTHORIZED")
    try:
        claims = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(401, "UNAUTHORIZED")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(401, "UNAUTHORIZED")

    bind_user_id(str(user_id))
    await ensure_user(session, str(user_id), claims.get("email"))
    return str(user_id)


async def require_admin(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> str:
    if not await is_admin(session, user_id):
        raise HTTPException(403, "FORBIDDEN")
    return user_id


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    # technical — только в лог
    logger.warning("domain error %s on %s %s: %s", exc.code, request.method, request.url.path, exc.technical)
    return JSONResponse(
        status_code=exc.http_status,
        content={"ok": False, "error": exc.code, "message": to_user_message(exc.code)},
    )


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": str(exc.detail)})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("validation error on %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"ok": False, "error": "VALIDATION_ERROR"})
