"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.services.analytics_service import AnalyticsService
from backend.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    CronSecretNotConfiguredError,
    InvalidAdminTokenError,
    InvalidCronSecretError,
)
from backend.services.density_service import FederalDensityService
from backend.services.matching_service import BatchMatchingService
from backend.utils.config import get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _require_state(request: Request, name: str, label: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_matching_service(request: Request) -> BatchMatchingService:
    return _require_state(request, "matching_service", "Matching service")


def get_density_service(request: Request) -> FederalDensityService:
    return _require_state(request, "density_service", "Density service")


def get_analytics_service(request: Request) -> AnalyticsService:
    return _require_state(request, "analytics_service", "Analytics service")


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    if not auth_service.auth_enabled:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header with Bearer token is required",
        )
    try:
        auth_service.validate_bearer_token(credentials.credentials)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    try:
        auth_service.validate_cron_secret(credentials.credentials if credentials else None)
    except CronSecretNotConfiguredError as exc:
        logger.error("Cron trigger rejected | reason=secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except InvalidCronSecretError as exc:
        logger.warning("Cron trigger rejected | reason=invalid_secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        ) from exc
