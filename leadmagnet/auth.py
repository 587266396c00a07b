import os
from typing import Iterable, Optional, Set

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


class AdminAuthMiddleware(BaseHTTPMiddleware):
    """Require a Supabase-issued bearer token on the admin surface only.

    Prospect-facing routes stay public; report tokens are their own capability.
    """

    def __init__(self, app, protected_prefixes: Optional[Iterable[str]] = None, admin_role: Optional[str] = None):
        super().__init__(app)
        self.protected_prefixes: Set[str] = set(protected_prefixes or ["/admin"])
        self.admin_role = admin_role if admin_role is not None else os.getenv("ADMIN_ROLE")

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if request.method == "OPTIONS" or not any(path.startswith(prefix) for prefix in self.protected_prefixes):
            return await call_next(request)

        jwt_secret = os.getenv("SUPABASE_JWT_SECRET")
        if not jwt_secret:
            return JSONResponse(status_code=500, content={"detail": "Auth secret not configured"})

        auth_header = request.headers.get("Authorization") or ""
        if not auth_header.lower().startswith("bearer "):
            return JSONResponse(status_code=401, content={"detail": "Missing bearer token"})

        token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return JSONResponse(status_code=401, content={"detail": "Missing bearer token"})

        try:
            payload = jwt.decode(
                token,
                jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError:
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})

        user_id = payload.get("sub") or payload.get("user_id")
        if not user_id:
            return JSONResponse(status_code=401, content={"detail": "Token missing user identifier"})
        if self.admin_role and payload.get("role") != self.admin_role:
            return JSONResponse(status_code=403, content={"detail": "Admin role required"})

        request.state.user_id = user_id
        request.state.email = payload.get("email")
        request.state.jwt_payload = payload
        return await call_next(request)
