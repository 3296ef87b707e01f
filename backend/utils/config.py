"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_optional_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str

    database_path: Path
    database_max_connections: int
    database_timeout_seconds: float

    admin_token: Optional[str]
    cron_secret: Optional[str]

    match_default_min_score: int
    match_qualify_threshold: int
    match_competitive_threshold: int
    weight_location: float
    weight_space: float
    weight_building: float
    weight_timeline: float
    weight_experience: float

    prefilter_min_space_ratio: float
    prefilter_max_space_ratio: float
    prefilter_region_radius_miles: float
    prefilter_availability_grace_days: int

    location_default_radius_miles: float
    location_density_share: float
    pricing_class_a_range: tuple[float, float]
    pricing_class_b_range: tuple[float, float]
    pricing_class_c_range: tuple[float, float]

    density_default_radius_miles: float
    density_cache_ttl_seconds: int
    density_coordinate_precision: int
    density_saturation_per_sq_mile: float
    density_reference_sample_size: int
    density_viewport_limit: int

    matching_max_workers: int
    matching_run_budget_seconds: float

    analytics_top_listings_limit: int
    analytics_run_log_limit: int

    seed_synthetic_data: bool
    synthetic_random_seed: int
    synthetic_listing_count: int
    synthetic_opportunity_count: int
    synthetic_federal_property_count: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        app_name=_env_str("APP_NAME", "Federal Lease Match Engine"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(
            _env_str("DATABASE_PATH", str(PROJECT_ROOT / "data" / "fedlease.db"))
        ),
        database_max_connections=_env_int("DATABASE_MAX_CONNECTIONS", 4),
        database_timeout_seconds=_env_float("DATABASE_TIMEOUT_SECONDS", 30.0),
        admin_token=_env_optional_str("ADMIN_TOKEN"),
        cron_secret=_env_optional_str("CRON_SECRET"),
        match_default_min_score=_env_int("MATCH_DEFAULT_MIN_SCORE", 40),
        match_qualify_threshold=_env_int("MATCH_QUALIFY_THRESHOLD", 40),
        match_competitive_threshold=_env_int("MATCH_COMPETITIVE_THRESHOLD", 70),
        weight_location=_env_float("MATCH_WEIGHT_LOCATION", 0.35),
        weight_space=_env_float("MATCH_WEIGHT_SPACE", 0.30),
        weight_building=_env_float("MATCH_WEIGHT_BUILDING", 0.20),
        weight_timeline=_env_float("MATCH_WEIGHT_TIMELINE", 0.10),
        weight_experience=_env_float("MATCH_WEIGHT_EXPERIENCE", 0.05),
        prefilter_min_space_ratio=_env_float("PREFILTER_MIN_SPACE_RATIO", 0.5),
        prefilter_max_space_ratio=_env_float("PREFILTER_MAX_SPACE_RATIO", 3.0),
        prefilter_region_radius_miles=_env_float("PREFILTER_REGION_RADIUS_MILES", 25.0),
        prefilter_availability_grace_days=_env_int("PREFILTER_AVAILABILITY_GRACE_DAYS", 90),
        location_default_radius_miles=_env_float("LOCATION_DEFAULT_RADIUS_MILES", 10.0),
        location_density_share=_env_float("LOCATION_DENSITY_SHARE", 0.3),
        pricing_class_a_range=(
            _env_float("PRICING_CLASS_A_LOW", 40.0),
            _env_float("PRICING_CLASS_A_HIGH", 65.0),
        ),
        pricing_class_b_range=(
            _env_float("PRICING_CLASS_B_LOW", 28.0),
            _env_float("PRICING_CLASS_B_HIGH", 45.0),
        ),
        pricing_class_c_range=(
            _env_float("PRICING_CLASS_C_LOW", 18.0),
            _env_float("PRICING_CLASS_C_HIGH", 32.0),
        ),
        density_default_radius_miles=_env_float("DENSITY_DEFAULT_RADIUS_MILES", 5.0),
        density_cache_ttl_seconds=_env_int("DENSITY_CACHE_TTL_SECONDS", 300),
        density_coordinate_precision=_env_int("DENSITY_COORDINATE_PRECISION", 3),
        density_saturation_per_sq_mile=_env_float("DENSITY_SATURATION_PER_SQ_MILE", 5.0),
        density_reference_sample_size=_env_int("DENSITY_REFERENCE_SAMPLE_SIZE", 500),
        density_viewport_limit=_env_int("DENSITY_VIEWPORT_LIMIT", 2000),
        matching_max_workers=_env_int("MATCHING_MAX_WORKERS", 4),
        matching_run_budget_seconds=_env_float("MATCHING_RUN_BUDGET_SECONDS", 240.0),
        analytics_top_listings_limit=_env_int("ANALYTICS_TOP_LISTINGS_LIMIT", 10),
        analytics_run_log_limit=_env_int("ANALYTICS_RUN_LOG_LIMIT", 50),
        seed_synthetic_data=_env_bool("SEED_SYNTHETIC_DATA", True),
        synthetic_random_seed=_env_int("SYNTHETIC_RANDOM_SEED", 42),
        synthetic_listing_count=_env_int("SYNTHETIC_LISTING_COUNT", 24),
        synthetic_opportunity_count=_env_int("SYNTHETIC_OPPORTUNITY_COUNT", 12),
        synthetic_federal_property_count=_env_int("SYNTHETIC_FEDERAL_PROPERTY_COUNT", 400),
    )
