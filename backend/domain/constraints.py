"""Scoring configuration rules and the hard eligibility predicates.

The predicates here are shared by the cheap prefilter and the full scorer:
whatever the prefilter rejects, the full scorer marks with the same
disqualifier, so a rejected pair can never be graded qualified.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional

from backend.domain.models import (
    FACTOR_SLOTS,
    STATUS_ACTIVE,
    Listing,
    Opportunity,
)
from backend.utils.config import Settings
from backend.utils.geo import haversine_miles


INACTIVE_RECORD = "INACTIVE_RECORD"
INVALID_REQUIREMENTS = "INVALID_REQUIREMENTS"
REGION_MISMATCH = "REGION_MISMATCH"
SPACE_UNDISCLOSED = "SPACE_UNDISCLOSED"
SPACE_TOO_SMALL = "SPACE_TOO_SMALL"
SPACE_TOO_LARGE = "SPACE_TOO_LARGE"
AVAILABILITY_TOO_LATE = "AVAILABILITY_TOO_LATE"
ADA_NOT_MET = "ADA_NOT_MET"
SCIF_NOT_AVAILABLE = "SCIF_NOT_AVAILABLE"

DISQUALIFIER_MESSAGES = {
    INACTIVE_RECORD: "Listing or opportunity is not active",
    INVALID_REQUIREMENTS: "Opportunity requirements are incomplete or inconsistent",
    REGION_MISMATCH: "Property is outside the required state and metro area",
    SPACE_UNDISCLOSED: "Property has no disclosed available space",
    SPACE_TOO_SMALL: "Property is far below the minimum size requirement",
    SPACE_TOO_LARGE: "Property far exceeds the maximum size and cannot be subdivided",
    AVAILABILITY_TOO_LATE: "Property becomes available long after the occupancy date",
    ADA_NOT_MET: "ADA accessibility requirement not met",
    SCIF_NOT_AVAILABLE: "SCIF capability required but not available",
}

# Ordered, inclusive lower bounds.
GRADE_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (90, "A+"),
    (80, "A"),
    (70, "B"),
    (55, "C"),
    (40, "D"),
)
FAILING_GRADE = "F"

WEIGHT_TOLERANCE = 1e-6


class ScoringConfigurationError(ValueError):
    """Raised when weights or thresholds cannot produce valid scores."""


@dataclass(frozen=True)
class ScoringConfig:
    weights: dict[str, float]
    qualify_threshold: int
    competitive_threshold: int
    min_space_ratio: float
    max_space_ratio: float
    region_radius_miles: float
    availability_grace_days: int
    default_radius_miles: float
    density_share: float
    pricing_ranges: dict[str, tuple[float, float]]


def scoring_config_from_settings(settings: Settings) -> ScoringConfig:
    return ScoringConfig(
        weights={
            "location": settings.weight_location,
            "space": settings.weight_space,
            "building": settings.weight_building,
            "timeline": settings.weight_timeline,
            "experience": settings.weight_experience,
        },
        qualify_threshold=settings.match_qualify_threshold,
        competitive_threshold=settings.match_competitive_threshold,
        min_space_ratio=settings.prefilter_min_space_ratio,
        max_space_ratio=settings.prefilter_max_space_ratio,
        region_radius_miles=settings.prefilter_region_radius_miles,
        availability_grace_days=settings.prefilter_availability_grace_days,
        default_radius_miles=settings.location_default_radius_miles,
        density_share=settings.location_density_share,
        pricing_ranges={
            "A": settings.pricing_class_a_range,
            "B": settings.pricing_class_b_range,
            "C": settings.pricing_class_c_range,
        },
    )


def validate_weights(weights: dict[str, float]) -> None:
    missing = [slot for slot in FACTOR_SLOTS if slot not in weights]
    if missing:
        raise ScoringConfigurationError(f"missing factor weights: {', '.join(missing)}")
    unknown = sorted(set(weights) - set(FACTOR_SLOTS))
    if unknown:
        raise ScoringConfigurationError(f"unknown factor weights: {', '.join(unknown)}")
    for slot, weight in weights.items():
        if not math.isfinite(weight) or not 0.0 <= weight <= 1.0:
            raise ScoringConfigurationError(f"weight for {slot} must be in [0, 1]")
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ScoringConfigurationError(f"factor weights must sum to 1.0, got {total:.6f}")


def validate_scoring_config(config: ScoringConfig) -> None:
    validate_weights(config.weights)
    if not 0 <= config.qualify_threshold <= 100:
        raise ScoringConfigurationError("qualify_threshold must be between 0 and 100")
    if not 0 <= config.competitive_threshold <= 100:
        raise ScoringConfigurationError("competitive_threshold must be between 0 and 100")
    if config.competitive_threshold < config.qualify_threshold:
        raise ScoringConfigurationError("competitive_threshold must be >= qualify_threshold")
    if not 0.0 < config.min_space_ratio < 1.0:
        raise ScoringConfigurationError("min_space_ratio must be in (0, 1)")
    if config.max_space_ratio <= 1.0:
        raise ScoringConfigurationError("max_space_ratio must be > 1")
    if config.region_radius_miles < 0.0:
        raise ScoringConfigurationError("region_radius_miles must be >= 0")
    if config.availability_grace_days < 0:
        raise ScoringConfigurationError("availability_grace_days must be >= 0")
    if config.default_radius_miles <= 0.0:
        raise ScoringConfigurationError("default_radius_miles must be > 0")
    if not 0.0 <= config.density_share <= 1.0:
        raise ScoringConfigurationError("density_share must be in [0, 1]")
    for building_class, (low, high) in config.pricing_ranges.items():
        if low <= 0.0 or high < low:
            raise ScoringConfigurationError(
                f"pricing range for class {building_class} must satisfy 0 < low <= high"
            )


def records_active(listing: Listing, opportunity: Opportunity) -> bool:
    return listing.status == STATUS_ACTIVE and opportunity.status == STATUS_ACTIVE


def requirements_valid(opportunity: Opportunity) -> bool:
    has_state = bool(opportunity.state and opportunity.state.strip())
    has_point = opportunity.latitude is not None and opportunity.longitude is not None
    if not has_state and not has_point:
        return False
    if (
        opportunity.min_sf is not None
        and opportunity.max_sf is not None
        and opportunity.min_sf > opportunity.max_sf
    ):
        return False
    return True


def same_state(listing: Listing, opportunity: Opportunity) -> bool:
    if not listing.state or not opportunity.state:
        return False
    return listing.state.strip().upper() == opportunity.state.strip().upper()


def distance_to_opportunity(listing: Listing, opportunity: Opportunity) -> Optional[float]:
    if listing.latitude is None or listing.longitude is None:
        return None
    if opportunity.latitude is None or opportunity.longitude is None:
        return None
    return haversine_miles(
        listing.latitude,
        listing.longitude,
        opportunity.latitude,
        opportunity.longitude,
    )


def in_region(listing: Listing, opportunity: Opportunity, region_radius_miles: float) -> bool:
    """State match, or within a small fixed radius of the opportunity point."""
    if same_state(listing, opportunity):
        return True
    distance = distance_to_opportunity(listing, opportunity)
    return distance is not None and distance <= region_radius_miles


def can_subdivide_to(listing: Listing, max_sf: int) -> bool:
    return listing.min_divisible_sf is not None and 0 < listing.min_divisible_sf <= max_sf


def space_violation(listing: Listing, opportunity: Opportunity, config: ScoringConfig) -> Optional[str]:
    available = listing.available_sf
    if available is None or available <= 0:
        return SPACE_UNDISCLOSED
    if opportunity.min_sf is not None and opportunity.min_sf > 0:
        if available < opportunity.min_sf * config.min_space_ratio:
            return SPACE_TOO_SMALL
    if opportunity.max_sf is not None and opportunity.max_sf > 0:
        if available > opportunity.max_sf * config.max_space_ratio and not can_subdivide_to(
            listing, opportunity.max_sf
        ):
            return SPACE_TOO_LARGE
    return None


def days_before_occupancy(listing: Listing, opportunity: Opportunity, as_of: date) -> Optional[int]:
    """Positive when the space is ready before occupancy, negative when late."""
    if opportunity.occupancy_date is None:
        return None
    available_on = listing.available_date or as_of
    return (opportunity.occupancy_date - available_on).days


def availability_too_late(
    listing: Listing,
    opportunity: Opportunity,
    as_of: date,
    grace_days: int,
) -> bool:
    slack = days_before_occupancy(listing, opportunity, as_of)
    return slack is not None and slack < -grace_days


def iter_hard_constraint_failures(
    listing: Listing,
    opportunity: Opportunity,
    as_of: date,
    config: ScoringConfig,
) -> Iterator[str]:
    """Yield every failed hard constraint, in evaluation order.

    The prefilter stops at the first code; the full scorer collects all of
    them as disqualifiers.
    """
    if not records_active(listing, opportunity):
        yield INACTIVE_RECORD
    if not requirements_valid(opportunity):
        yield INVALID_REQUIREMENTS
    if not in_region(listing, opportunity, config.region_radius_miles):
        yield REGION_MISMATCH
    violation = space_violation(listing, opportunity, config)
    if violation is not None:
        yield violation
    if availability_too_late(listing, opportunity, as_of, config.availability_grace_days):
        yield AVAILABILITY_TOO_LATE
