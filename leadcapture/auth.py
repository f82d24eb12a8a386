import os
from typing import Iterable, Optional, Set

import jwt
from fastapi import Header, HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from leadcapture.db import Customer


def _unauthorized(detail: str, status_code: int = 401) -> Response:
    return JSONResponse({"error": detail, "code": "unauthorized"}, status_code=status_code)


class DashboardAuthMiddleware(BaseHTTPMiddleware):
    """Bearer-token auth for dashboard routes; the HS256 token's ``sub`` is the customer id."""

    def __init__(
        self,
        app,
        protected_prefixes: Optional[Iterable[str]] = None,
        secret: Optional[str] = None,
    ):
        super().__init__(app)
        self.protected_prefixes: Set[str] = set(protected_prefixes or ["/api/v1/dashboard"])
        self.jwt_secret = secret or os.getenv("DASHBOARD_JWT_SECRET")

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if request.method == "OPTIONS" or not any(path.startswith(prefix) for prefix in self.protected_prefixes):
            return await call_next(request)

        if not self.jwt_secret:
            return _unauthorized("Auth secret not configured", status_code=500)

        auth_header = request.headers.get("Authorization") or ""
        if not auth_header.lower().startswith("bearer "):
            return _unauthorized("Missing bearer token")

        token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return _unauthorized("Missing bearer token")

        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError:
            return _unauthorized("Invalid token")

        customer_id = payload.get("sub") or payload.get("customer_id")
        if not customer_id:
            return _unauthorized("Token missing customer identifier")

        customer = await request.app.state.services.store.get_customer(customer_id)
        if customer is None or not customer.is_active:
            return _unauthorized("Unknown customer")

        request.state.customer = customer
        request.state.jwt_payload = payload
        return await call_next(request)


async def widget_customer(request: Request, x_api_key: Optional[str] = Header(default=None)) -> Customer:
    """Resolve the tenant behind a widget request from its ``X-API-Key`` header."""
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing API key")
    customer = await request.app.state.services.store.get_customer_by_api_key(x_api_key)
    if customer is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return customer


def dashboard_customer(request: Request) -> Customer:
    customer = getattr(request.state, "customer", None)
    if customer is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return customer
