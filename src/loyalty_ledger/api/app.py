from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Type

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..container import LoyaltyServices, build_services
from ..db.mongo import MongoDBManager
from ..errors import (
    AuthenticationError,
    BrandAccessError,
    InfrastructureError,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerInvariantError,
    LoyaltyError,
    NotFoundError,
    ValidationError,
)
from ..logging.configure import configure_logging
from .middleware import ApiKeyAuthMiddleware
from .router import dashboard_router, integration_router

logger = logging.getLogger(__name__)

ERROR_STATUS: Dict[Type[LoyaltyError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientBalanceError: status.HTTP_409_CONFLICT,
    InvalidStateError: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    BrandAccessError: status.HTTP_403_FORBIDDEN,
    InfrastructureError: status.HTTP_503_SERVICE_UNAVAILABLE,
    LedgerInvariantError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _status_for(exc: LoyaltyError) -> int:
    for error_cls in type(exc).__mro__:
        if error_cls in ERROR_STATUS:
            return ERROR_STATUS[error_cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _loyalty_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, LoyaltyError):
        raise exc
    code = _status_for(exc)
    if code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=code, content=exc.to_dict())


def create_app(
    settings: Optional[Settings] = None, services: Optional[LoyaltyServices] = None
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.check_transaction_support()
            await services.db.ensure_indexes()
        await services.audit.log_system("Service started", {"environment": settings.environment})
        yield

    app = FastAPI(title="Loyalty Ledger", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.add_exception_handler(LoyaltyError, _loyalty_error_handler)
    app.add_middleware(
        ApiKeyAuthMiddleware,
        api_key_service=services.api_keys,
        path_prefix=integration_router.prefix,
        header_name=settings.api_key_header,
    )
    app.include_router(dashboard_router)
    app.include_router(integration_router)

    @app.get("/health", tags=["system"])
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
