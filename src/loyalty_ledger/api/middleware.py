"""
Starlette middleware authenticating integration callers by brand API key.

Flow:
  1. Requests under `path_prefix` must carry the raw key in `header_name`.
  2. The key is resolved to `{brand_id, api_key_id}` by `ApiKeyService`;
     unknown or disabled keys get 401, inactive or suspended brands 403.
  3. The resolved context is attached as `request.state.integration`.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import AuthenticationError, BrandAccessError, InfrastructureError
from ..services.api_keys import ApiKeyService


logger = logging.getLogger(__name__)


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        api_key_service: ApiKeyService,
        *,
        path_prefix: str = "/v1/integration",
        header_name: str = "X-API-Key",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.api_key_service = api_key_service
        self.path_prefix = path_prefix.rstrip("/")
        self.header_name = header_name
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        raw_key = request.headers.get(self.header_name)
        if not raw_key:
            return JSONResponse(
                status_code=401,
                content={"code": "unauthenticated", "message": "API key required"},
            )

        try:
            ctx = await self.api_key_service.authenticate(raw_key)
        except AuthenticationError as exc:
            return JSONResponse(status_code=401, content=exc.to_dict())
        except BrandAccessError as exc:
            return JSONResponse(status_code=403, content=exc.to_dict())
        except InfrastructureError as exc:
            logger.error("API key lookup failed: %s", exc, extra={"path": request.url.path})
            return JSONResponse(status_code=503, content=exc.to_dict())

        logger.debug(
            "API key authenticated",
            extra={"brand_id": ctx.brand_id, "api_key_id": ctx.api_key_id},
        )
        request.state.integration = ctx
        return await call_next(request)
