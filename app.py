"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository, scoring pipeline and batch orchestrator,
registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.controllers.analytics_controller import router as analytics_router
from backend.controllers.federal_controller import router as federal_router
from backend.controllers.matching_controller import router as matching_router
from backend.controllers.session_controller import router as session_router
from backend.domain.constraints import scoring_config_from_settings, validate_scoring_config
from backend.repository.data_repository import DataRepository
from backend.services.analytics_service import AnalyticsService
from backend.services.auth_service import AuthService
from backend.services.density_service import FederalDensityService
from backend.services.grading_service import MatchGrader
from backend.services.matching_service import BatchMatchingService
from backend.services.prefilter_service import EligibilityPrefilter
from backend.services.scoring_service import MatchScorer
from backend.utils.config import Settings, get_settings
from backend.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every service receives its collaborators explicitly; the single
    DataRepository instance satisfies each repository interface.
    Invalid scoring weights or thresholds abort creation.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    scoring_config = scoring_config_from_settings(settings)
    validate_scoring_config(scoring_config)

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    density_service = FederalDensityService(repository=repository, settings=settings)
    grader = MatchGrader(config=scoring_config)
    scorer = MatchScorer(config=scoring_config, grader=grader)
    prefilter = EligibilityPrefilter(config=scoring_config)
    matching_service = BatchMatchingService(
        listings=repository,
        opportunities=repository,
        matches=repository,
        experience=repository,
        runs=repository,
        density_service=density_service,
        settings=settings,
        scorer=scorer,
        prefilter=prefilter,
    )
    analytics_service = AnalyticsService(
        matches=repository,
        runs=repository,
        federal=repository,
        listings=repository,
        settings=settings,
    )
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(session_router)
    app.include_router(matching_router)
    app.include_router(federal_router)
    app.include_router(analytics_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.density_service = density_service
    app.state.matching_service = matching_service
    app.state.analytics_service = analytics_service
    app.state.auth_service = auth_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before seeding; seeding is skipped when listings exist.
    """
    repository: DataRepository = app.state.repository
    settings: Settings = app.state.settings

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_synthetic_data:
        logger.info("Startup: seeding synthetic listings and opportunities")
        repository.seed_synthetic_data()

    logger.info("Startup complete | workers=%s", app.state.matching_service.worker_count)


# Module-level app object for uvicorn
app = create_app()
