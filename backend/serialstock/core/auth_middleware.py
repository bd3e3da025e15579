"""SerialStock — JWT auth middleware: validates the bearer token, sets request.state.user."""
import logging
from typing import Callable
from uuid import UUID

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from serialstock.api.deps import CurrentUser
from serialstock.core.security import decode_token

logger = logging.getLogger(__name__)


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Extract JWT from Authorization header and populate request.state.user / tenant_id."""

    PUBLIC_PATHS = {
        "/health",
        "/api/v1/docs",
        "/api/v1/redoc",
        "/api/v1/openapi.json",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.user = None
        request.state.tenant_id = None

        if request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            payload = decode_token(auth[7:].strip())
            if payload and payload.get("type") == "access":
                sub = payload.get("sub")
                tenant_id = payload.get("tenant_id")
                if sub and tenant_id:
                    try:
                        request.state.user = CurrentUser(
                            id=sub,
                            email=payload.get("email") or "unknown",
                            tenant_id=UUID(tenant_id),
                            role=payload.get("role", "FLOOR_ASSOCIATE"),
                        )
                        request.state.tenant_id = tenant_id
                    except ValueError:
                        logger.warning("Rejected token with malformed tenant_id claim: %r", tenant_id)

        return await call_next(request)
