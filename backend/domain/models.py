"""Domain models for listing/opportunity matching and federal density scoring."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional


STATUS_ACTIVE = "active"
STATUS_DRAFT = "draft"
STATUS_ARCHIVED = "archived"

OWNERSHIP_LEASED = "leased"
OWNERSHIP_OWNED = "owned"

URGENCY_CRITICAL = "critical"
URGENCY_WARNING = "warning"
URGENCY_NORMAL = "normal"
URGENCY_LEVELS = (URGENCY_CRITICAL, URGENCY_WARNING, URGENCY_NORMAL)

FACTOR_LOCATION = "location"
FACTOR_SPACE = "space"
FACTOR_BUILDING = "building"
FACTOR_TIMELINE = "timeline"
FACTOR_EXPERIENCE = "experience"
FACTOR_SLOTS = (
    FACTOR_LOCATION,
    FACTOR_SPACE,
    FACTOR_BUILDING,
    FACTOR_TIMELINE,
    FACTOR_EXPERIENCE,
)

RUN_IDLE = "IDLE"
RUN_LOADING = "LOADING"
RUN_SCORING = "SCORING"
RUN_PERSISTING = "PERSISTING"
RUN_DONE = "DONE"
RUN_FAILED = "FAILED"


@dataclass(frozen=True)
class Listing:
    listing_id: str
    owner_id: str
    title: str
    city: str
    state: str
    zip_code: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    total_sf: Optional[int]
    available_sf: Optional[int]
    building_class: Optional[str]
    ada_accessible: bool
    available_date: Optional[date]
    status: str = STATUS_ACTIVE
    min_divisible_sf: Optional[int] = None
    year_built: Optional[int] = None
    parking_spaces: Optional[int] = None
    security_level: Optional[int] = None
    features: frozenset[str] = frozenset()
    certifications: tuple[str, ...] = ()
    asking_rate_per_sf: Optional[float] = None
    min_lease_term_months: Optional[int] = None
    max_lease_term_months: Optional[int] = None


@dataclass(frozen=True)
class Opportunity:
    opportunity_id: str
    title: str
    state: Optional[str]
    city: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    min_sf: Optional[int]
    max_sf: Optional[int]
    response_deadline: Optional[date]
    status: str = STATUS_ACTIVE
    solicitation_number: Optional[str] = None
    agency: Optional[str] = None
    zip_code: Optional[str] = None
    radius_miles: Optional[float] = None
    target_sf: Optional[int] = None
    building_classes: tuple[str, ...] = ()
    ada_required: bool = False
    required_features: frozenset[str] = frozenset()
    required_certifications: tuple[str, ...] = ()
    parking_spaces_required: Optional[int] = None
    min_security_level: Optional[int] = None
    max_rate_per_sf: Optional[float] = None
    occupancy_date: Optional[date] = None
    firm_term_months: Optional[int] = None
    total_term_months: Optional[int] = None


@dataclass(frozen=True)
class ExperienceProfile:
    owner_id: str
    government_lease_experience: bool = False
    government_leases_count: int = 0
    gsa_certified: bool = False
    references_count: int = 0
    willing_to_build_to_suit: bool = True
    willing_to_provide_improvements: bool = True
    converted_matches_count: int = 0


def default_experience_profile(owner_id: str) -> ExperienceProfile:
    """Conservative profile used when an owner has not declared a track record."""
    return ExperienceProfile(owner_id=owner_id)


@dataclass(frozen=True)
class FactorDetails:
    summary: str
    notes: tuple[str, ...] = ()
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FactorResult:
    """Raw output of one factor scorer before weighting."""

    score: int
    details: FactorDetails
    disqualifiers: tuple[str, ...] = ()


@dataclass(frozen=True)
class MatchFactor:
    name: str
    score: int
    weight: float
    weighted: float
    details: FactorDetails


@dataclass(frozen=True)
class ScoreBreakdown:
    location: MatchFactor
    space: MatchFactor
    building: MatchFactor
    timeline: MatchFactor
    experience: MatchFactor

    def factors(self) -> tuple[MatchFactor, ...]:
        return (self.location, self.space, self.building, self.timeline, self.experience)


@dataclass(frozen=True)
class MatchScore:
    listing_id: str
    opportunity_id: str
    overall_score: int
    grade: str
    qualified: bool
    competitive: bool
    breakdown: ScoreBreakdown
    disqualifiers: tuple[str, ...] = ()
    strengths: tuple[str, ...] = ()
    weaknesses: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class PersistedMatch:
    match: MatchScore
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class FederalProperty:
    property_id: str
    latitude: float
    longitude: float
    ownership: str
    rentable_sf: int
    vacant_sf: int = 0
    agency: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    construction_year: Optional[int] = None
    lease_expiration: Optional[date] = None


@dataclass(frozen=True)
class ExpiringLease:
    property: FederalProperty
    days_until_expiration: int
    months_until_expiration: int
    urgency: str


@dataclass(frozen=True)
class ExpiringLeaseReport:
    """Leased federal space whose lease ends inside the requested window."""

    as_of: date
    window_end: date
    months_ahead: int
    state: Optional[str]
    leases: tuple[ExpiringLease, ...]
    total_rsf: int
    urgency_counts: dict[str, int]


@dataclass(frozen=True)
class ViewportBounds:
    north: float
    south: float
    east: float
    west: float


@dataclass(frozen=True)
class FederalDensityScore:
    latitude: float
    longitude: float
    radius_miles: float
    total_properties: int
    leased_properties: int
    owned_properties: int
    total_rsf: int
    vacant_rsf: int
    density_per_sq_mile: float
    rsf_per_sq_mile: float
    score: int
    percentile: int
    calculated_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class PrefilterDecision:
    passed: bool
    reason: Optional[str] = None


@dataclass
class BatchStats:
    """Mutable run record; owned by a single orchestrator thread."""

    run_id: str
    state: str
    started_at: datetime
    min_score: int
    listings_considered: int = 0
    opportunities_considered: int = 0
    processed: int = 0
    matched: int = 0
    skipped: int = 0
    failed: int = 0
    unevaluated: int = 0
    timed_out: bool = False
    skip_reasons: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    failure_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == RUN_DONE

    @property
    def pairs_considered(self) -> int:
        return self.listings_considered * self.opportunities_considered
