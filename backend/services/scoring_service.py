"""Factor scorers for one listing/opportunity pair.

Every scorer is a pure function of its inputs: dates are passed in as
`as_of` and the density context is computed by the caller, so scoring the
same pair twice yields identical results.
"""

from __future__ import annotations

import math
from datetime import date
from typing import Optional

from backend.domain.constraints import (
    ADA_NOT_MET,
    INVALID_REQUIREMENTS,
    REGION_MISMATCH,
    SCIF_NOT_AVAILABLE,
    ScoringConfig,
    can_subdivide_to,
    days_before_occupancy,
    distance_to_opportunity,
    in_region,
    iter_hard_constraint_failures,
    requirements_valid,
    same_state,
    scoring_config_from_settings,
    space_violation,
)
from backend.domain.models import (
    FACTOR_BUILDING,
    FACTOR_EXPERIENCE,
    FACTOR_LOCATION,
    FACTOR_SPACE,
    FACTOR_TIMELINE,
    ExperienceProfile,
    FactorDetails,
    FactorResult,
    FederalDensityScore,
    Listing,
    MatchScore,
    Opportunity,
    default_experience_profile,
)
from backend.services.grading_service import MatchGrader
from backend.utils.config import Settings, get_settings
from backend.utils.geo import round_half_up


FEATURE_POINTS = {
    "fiber": 5,
    "backup_power": 5,
    "loading_dock": 5,
    "security24x7": 5,
    "secure_access": 5,
    "scif": 10,
    "data_center": 10,
    "conference_center": 3,
    "cafeteria": 2,
    "fitness_center": 2,
}
DEFAULT_FEATURE_POINTS = 3

PROXIMITY_REGION_BASE = 40
PROXIMITY_CITY_BONUS = 20
PROXIMITY_DISTANCE_BONUS = 40
PROXIMITY_OUTSIDE_RADIUS_PENALTY = 20

SUBDIVIDABLE_FLOOR = 80
TIMELINE_SHARE = 0.6
NEUTRAL_TIMELINE_SCORE = 75
UNPRICED_SCORE = 60
PRICE_CEILING_MULTIPLIER = 1.5


class MalformedRecordError(ValueError):
    """Raised when a listing or opportunity lacks data scoring depends on."""


def _clamp(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


def _normalized_class(building_class: Optional[str]) -> Optional[str]:
    if not building_class:
        return None
    return building_class.strip().upper().replace("+", "")


def _same_city(listing: Listing, opportunity: Opportunity) -> bool:
    if not listing.city or not opportunity.city:
        return False
    return listing.city.strip().lower() == opportunity.city.strip().lower()


def proximity_score(
    listing: Listing,
    opportunity: Opportunity,
    config: ScoringConfig,
) -> tuple[int, list[str], Optional[float]]:
    notes: list[str] = []
    score = PROXIMITY_REGION_BASE
    if same_state(listing, opportunity):
        notes.append(f"In required state {opportunity.state}")
    else:
        notes.append("Within the metro region across a state line")

    city_match = _same_city(listing, opportunity)
    if city_match:
        score += PROXIMITY_CITY_BONUS
        notes.append("Exact city match")

    distance = distance_to_opportunity(listing, opportunity)
    if distance is not None:
        radius = opportunity.radius_miles or config.default_radius_miles
        if distance <= radius:
            score += round_half_up(PROXIMITY_DISTANCE_BONUS * (1.0 - distance / radius))
            notes.append(f"{distance:.1f} miles from center (within {radius:g} mile radius)")
        else:
            score -= PROXIMITY_OUTSIDE_RADIUS_PENALTY
            notes.append(f"{distance:.1f} miles from center (outside {radius:g} mile radius)")
    elif city_match:
        score += PROXIMITY_CITY_BONUS
    return _clamp(score), notes, distance


def score_location(
    listing: Listing,
    opportunity: Opportunity,
    config: ScoringConfig,
    density: Optional[FederalDensityScore] = None,
) -> FactorResult:
    if listing.latitude is None or listing.longitude is None:
        raise MalformedRecordError(f"listing {listing.listing_id} has no coordinates")

    inputs: dict = {
        "listing_city": listing.city,
        "listing_state": listing.state,
        "opportunity_city": opportunity.city,
        "opportunity_state": opportunity.state,
        "radius_miles": opportunity.radius_miles or config.default_radius_miles,
    }
    if not requirements_valid(opportunity):
        return FactorResult(
            score=0,
            details=FactorDetails(summary="Opportunity has no usable location", inputs=inputs),
            disqualifiers=(INVALID_REQUIREMENTS,),
        )
    if not in_region(listing, opportunity, config.region_radius_miles):
        return FactorResult(
            score=0,
            details=FactorDetails(
                summary="Property is outside the required region",
                notes=("Property not in required state or metro area",),
                inputs=inputs,
            ),
            disqualifiers=(REGION_MISMATCH,),
        )

    proximity, notes, distance = proximity_score(listing, opportunity, config)
    inputs["distance_miles"] = round(distance, 2) if distance is not None else None
    inputs["proximity_score"] = proximity

    if density is None:
        score = proximity
        notes.append("Federal density unavailable; proximity only")
        inputs["density_percentile"] = None
    else:
        share = config.density_share
        score = _clamp((1.0 - share) * proximity + share * density.percentile)
        notes.append(
            f"{density.total_properties} federal properties within "
            f"{density.radius_miles:g} miles ({density.percentile}th percentile)"
        )
        inputs["density_percentile"] = density.percentile
        inputs["density_score"] = density.score
        inputs["federal_properties"] = density.total_properties

    return FactorResult(
        score=score,
        details=FactorDetails(
            summary=f"{listing.city}, {listing.state} scores {score} for location",
            notes=tuple(notes),
            inputs=inputs,
        ),
    )


def space_fit_score(
    available_sf: int,
    min_sf: Optional[int],
    max_sf: Optional[int],
    config: ScoringConfig,
    subdividable: bool = False,
) -> int:
    """Full credit inside [min, max], linear decay to the tolerance edges."""
    low = min_sf or 0
    high = max_sf if max_sf and max_sf > 0 else None
    if available_sf < low:
        floor = low * config.min_space_ratio
        if available_sf <= floor:
            return 0
        return _clamp(100.0 * (available_sf - floor) / (low - floor))
    if high is not None and available_sf > high:
        ceiling = high * config.max_space_ratio
        linear = 0 if available_sf >= ceiling else _clamp(
            100.0 * (ceiling - available_sf) / (ceiling - high)
        )
        return max(SUBDIVIDABLE_FLOOR, linear) if subdividable else linear
    return 100


def score_space(listing: Listing, opportunity: Opportunity, config: ScoringConfig) -> FactorResult:
    available = listing.available_sf or 0
    inputs: dict = {
        "available_sf": available,
        "min_sf": opportunity.min_sf,
        "max_sf": opportunity.max_sf,
        "target_sf": opportunity.target_sf,
        "min_divisible_sf": listing.min_divisible_sf,
    }
    required = f"required {opportunity.min_sf or 0:,}-{opportunity.max_sf or 0:,} SF"

    violation = space_violation(listing, opportunity, config)
    if violation is not None:
        return FactorResult(
            score=0,
            details=FactorDetails(
                summary=f"{required}, listing offers {available:,} SF",
                notes=("Outside the acceptable size tolerance",),
                inputs=inputs,
            ),
            disqualifiers=(violation,),
        )

    notes: list[str] = []
    subdividable = bool(opportunity.max_sf) and can_subdivide_to(listing, opportunity.max_sf)
    score = space_fit_score(
        available,
        opportunity.min_sf,
        opportunity.max_sf,
        config,
        subdividable=subdividable,
    )
    if opportunity.min_sf and available < opportunity.min_sf:
        shortfall = opportunity.min_sf - available
        inputs["shortfall_sf"] = shortfall
        notes.append(f"{shortfall:,} SF short of minimum")
    elif opportunity.max_sf and available > opportunity.max_sf:
        excess = available - opportunity.max_sf
        inputs["excess_sf"] = excess
        notes.append(f"{excess:,} SF over maximum")
        if subdividable:
            notes.append("Can subdivide to meet maximum")
    else:
        notes.append("Within the required size range")

    if opportunity.target_sf:
        variance = abs(available - opportunity.target_sf) / opportunity.target_sf
        inputs["target_variance_pct"] = round(variance * 100.0, 1)
        if variance <= 0.05:
            notes.append("Within 5% of target size")

    return FactorResult(
        score=score,
        details=FactorDetails(
            summary=f"{required}, listing offers {available:,} SF",
            notes=tuple(notes),
            inputs=inputs,
        ),
    )


def score_building(listing: Listing, opportunity: Opportunity) -> FactorResult:
    score = 50
    notes: list[str] = []
    disqualifiers: list[str] = []

    listing_class = _normalized_class(listing.building_class)
    accepted = [_normalized_class(item) for item in opportunity.building_classes]
    if listing_class is None:
        notes.append("Building class information not available")
    elif accepted:
        if accepted[0] == listing_class:
            score += 20
            notes.append(f"Class {listing.building_class} - preferred")
        elif listing_class in accepted:
            score += 10
            notes.append(f"Class {listing.building_class} - acceptable")
        else:
            score -= 20
            notes.append(f"Class {listing.building_class} - not in acceptable list")

    if opportunity.ada_required and not listing.ada_accessible:
        score -= 30
        notes.append("ADA compliance required but not met")
        disqualifiers.append(ADA_NOT_MET)

    features_met: list[str] = []
    features_missing: list[str] = []
    for feature in sorted(opportunity.required_features):
        points = FEATURE_POINTS.get(feature, DEFAULT_FEATURE_POINTS)
        if feature in listing.features:
            features_met.append(feature)
            score += points
        else:
            features_missing.append(feature)
            score -= math.ceil(points / 2)
    if "scif" in features_missing:
        disqualifiers.append(SCIF_NOT_AVAILABLE)

    certifications_met: list[str] = []
    certifications_missing: list[str] = []
    held = [item.lower() for item in listing.certifications]
    for certification in opportunity.required_certifications:
        if any(certification.lower() in item for item in held):
            certifications_met.append(certification)
            score += 5
        else:
            certifications_missing.append(certification)

    if opportunity.parking_spaces_required:
        if (listing.parking_spaces or 0) >= opportunity.parking_spaces_required:
            score += 5
        else:
            score -= 5
            notes.append(
                f"{listing.parking_spaces or 0} parking spaces, "
                f"{opportunity.parking_spaces_required} required"
            )

    if opportunity.min_security_level:
        if (listing.security_level or 0) >= opportunity.min_security_level:
            score += 5
        else:
            score -= 10
            notes.append(
                f"Security level {listing.security_level or 'unknown'} below "
                f"required level {opportunity.min_security_level}"
            )

    final = _clamp(score)
    return FactorResult(
        score=final,
        details=FactorDetails(
            summary=f"Class {listing.building_class or 'unknown'} building scores {final}",
            notes=tuple(notes),
            inputs={
                "building_class": listing.building_class,
                "accepted_classes": list(opportunity.building_classes),
                "ada_required": opportunity.ada_required,
                "ada_accessible": listing.ada_accessible,
                "features_met": features_met,
                "features_missing": features_missing,
                "certifications_met": certifications_met,
                "certifications_missing": certifications_missing,
            },
        ),
        disqualifiers=tuple(disqualifiers),
    )


def timeline_score(listing: Listing, opportunity: Opportunity, as_of: date) -> tuple[int, list[str], Optional[int]]:
    notes: list[str] = []
    slack = days_before_occupancy(listing, opportunity, as_of)
    if slack is None:
        score = NEUTRAL_TIMELINE_SCORE
        notes.append("No occupancy date stated")
    elif slack >= 0:
        if slack >= 90:
            score = 100
        elif slack >= 60:
            score = 90
        elif slack >= 30:
            score = 80
        else:
            score = 70
        notes.append(f"Available {slack} days before occupancy")
    else:
        days_late = -slack
        if days_late <= 30:
            score = 50
        elif days_late <= 60:
            score = 30
        else:
            score = 10
        notes.append(f"Available {days_late} days after required occupancy")

    if opportunity.firm_term_months:
        min_term = listing.min_lease_term_months or 0
        if opportunity.firm_term_months < min_term:
            score -= 10
            notes.append(f"Min lease term ({min_term} mo) exceeds requirement")
        if (
            opportunity.total_term_months
            and listing.max_lease_term_months
            and opportunity.total_term_months > listing.max_lease_term_months
        ):
            score -= 5
            notes.append("Max lease term may not accommodate full requirement")
    return max(0, score), notes, slack


def expected_rate_range(
    listing: Listing,
    opportunity: Opportunity,
    config: ScoringConfig,
) -> tuple[float, float]:
    listing_class = _normalized_class(listing.building_class) or "B"
    low, high = config.pricing_ranges.get(listing_class, config.pricing_ranges["B"])
    if opportunity.max_rate_per_sf:
        high = min(high, opportunity.max_rate_per_sf)
        low = min(low, high)
    return low, high


def pricing_score(
    listing: Listing,
    opportunity: Opportunity,
    config: ScoringConfig,
) -> tuple[int, str]:
    rate = listing.asking_rate_per_sf
    if rate is None or rate <= 0:
        return UNPRICED_SCORE, "No asking rate disclosed"
    _, high = expected_rate_range(listing, opportunity, config)
    if rate <= high:
        return 100, f"${rate:.2f}/SF within expected range"
    ceiling = high * PRICE_CEILING_MULTIPLIER
    if rate >= ceiling:
        return 0, f"${rate:.2f}/SF far above expected ${high:.2f}/SF"
    return _clamp(100.0 * (ceiling - rate) / (ceiling - high)), (
        f"${rate:.2f}/SF above expected ${high:.2f}/SF"
    )


def score_timeline(
    listing: Listing,
    opportunity: Opportunity,
    config: ScoringConfig,
    as_of: date,
) -> FactorResult:
    """Availability slack blended with asking-rate fit."""
    schedule, notes, slack = timeline_score(listing, opportunity, as_of)
    pricing, pricing_note = pricing_score(listing, opportunity, config)
    notes.append(pricing_note)
    low, high = expected_rate_range(listing, opportunity, config)
    score = _clamp(TIMELINE_SHARE * schedule + (1.0 - TIMELINE_SHARE) * pricing)
    return FactorResult(
        score=score,
        details=FactorDetails(
            summary=f"Schedule {schedule}, pricing {pricing}",
            notes=tuple(notes),
            inputs={
                "as_of": as_of.isoformat(),
                "available_date": (
                    listing.available_date.isoformat() if listing.available_date else None
                ),
                "occupancy_date": (
                    opportunity.occupancy_date.isoformat() if opportunity.occupancy_date else None
                ),
                "days_before_occupancy": slack,
                "schedule_score": schedule,
                "asking_rate_per_sf": listing.asking_rate_per_sf,
                "expected_rate_low": low,
                "expected_rate_high": high,
                "pricing_score": pricing,
            },
        ),
    )


def score_experience(profile: ExperienceProfile) -> FactorResult:
    score = 30
    notes: list[str] = []
    if profile.government_lease_experience:
        score += 25
        notes.append("Prior government lease experience")
        if profile.government_leases_count >= 5:
            score += 15
            notes.append("5+ government leases completed")
        elif profile.government_leases_count >= 2:
            score += 10
            notes.append(f"{profile.government_leases_count} government leases completed")

    if profile.gsa_certified:
        score += 10
        notes.append("GSA certified broker")

    if profile.references_count >= 3:
        score += 10
    elif profile.references_count >= 1:
        score += 5

    if profile.willing_to_build_to_suit:
        score += 5
        notes.append("Build-to-suit available")
    if profile.willing_to_provide_improvements:
        score += 5
        notes.append("TI allowance available")

    if profile.converted_matches_count >= 3:
        score += 15
        notes.append(f"{profile.converted_matches_count} prior matches converted to leases")
    elif profile.converted_matches_count >= 1:
        score += 10
        notes.append("Prior match converted to a lease")

    final = _clamp(score)
    return FactorResult(
        score=final,
        details=FactorDetails(
            summary=f"Owner track record scores {final}",
            notes=tuple(notes),
            inputs={
                "owner_id": profile.owner_id,
                "government_lease_experience": profile.government_lease_experience,
                "government_leases_count": profile.government_leases_count,
                "gsa_certified": profile.gsa_certified,
                "references_count": profile.references_count,
                "converted_matches_count": profile.converted_matches_count,
            },
        ),
    )


class MatchScorer:
    """Runs the five factor scorers and grades the result."""

    def __init__(
        self,
        config: Optional[ScoringConfig] = None,
        settings: Optional[Settings] = None,
        grader: Optional[MatchGrader] = None,
    ) -> None:
        self._config = config or scoring_config_from_settings(settings or get_settings())
        self._grader = grader or MatchGrader(config=self._config)

    @property
    def config(self) -> ScoringConfig:
        return self._config

    def score(
        self,
        listing: Listing,
        opportunity: Opportunity,
        as_of: date,
        profile: Optional[ExperienceProfile] = None,
        density: Optional[FederalDensityScore] = None,
    ) -> MatchScore:
        results = {
            FACTOR_LOCATION: score_location(listing, opportunity, self._config, density),
            FACTOR_SPACE: score_space(listing, opportunity, self._config),
            FACTOR_BUILDING: score_building(listing, opportunity),
            FACTOR_TIMELINE: score_timeline(listing, opportunity, self._config, as_of),
            FACTOR_EXPERIENCE: score_experience(
                profile or default_experience_profile(listing.owner_id)
            ),
        }
        hard_failures = list(
            iter_hard_constraint_failures(listing, opportunity, as_of, self._config)
        )
        return self._grader.grade(
            listing.listing_id,
            opportunity.opportunity_id,
            results,
            extra_disqualifiers=hard_failures,
        )
