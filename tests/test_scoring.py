"""Tests for the factor scorers, weighted aggregation and grading."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from backend.domain.constraints import (
    ADA_NOT_MET,
    REGION_MISMATCH,
    SCIF_NOT_AVAILABLE,
    ScoringConfigurationError,
    scoring_config_from_settings,
)
from backend.domain.models import ExperienceProfile, FACTOR_SLOTS
from backend.domain.schemas import dump_breakdown, load_breakdown
from backend.services.density_service import FederalDensityService
from backend.services.grading_service import MatchGrader, grade_for
from backend.services.scoring_service import (
    MalformedRecordError,
    MatchScorer,
    pricing_score,
    score_building,
    score_experience,
    score_location,
    space_fit_score,
)
from fakes import AS_OF, InMemoryRepository, build_settings, make_listing, make_opportunity


@pytest.fixture()
def settings():
    return build_settings()


@pytest.fixture()
def config(settings):
    return scoring_config_from_settings(settings)


@pytest.fixture()
def scorer(settings) -> MatchScorer:
    return MatchScorer(settings=settings)


def _empty_inventory_density(settings, listing):
    service = FederalDensityService(repository=InMemoryRepository(), settings=settings)
    return service.score(listing.latitude, listing.longitude)


# --- end-to-end pair ---

def test_clean_dc_pair_scores_competitive_b(settings, scorer) -> None:
    listing = make_listing()
    opportunity = make_opportunity()
    density = _empty_inventory_density(settings, listing)

    match = scorer.score(listing, opportunity, AS_OF, density=density)

    assert match.breakdown.location.score == 70
    assert match.breakdown.space.score == 100
    assert match.breakdown.building.score == 70
    assert match.breakdown.timeline.score == 84
    assert match.breakdown.experience.score == 40
    assert match.overall_score == 79
    assert match.grade == "B"
    assert match.qualified is True
    assert match.competitive is True
    assert match.disqualifiers == ()


def test_breakdown_has_exactly_five_weighted_slots(scorer) -> None:
    match = scorer.score(make_listing(), make_opportunity(), AS_OF)
    names = [factor.name for factor in match.breakdown.factors()]
    assert names == list(FACTOR_SLOTS)
    assert sum(factor.weight for factor in match.breakdown.factors()) == pytest.approx(1.0)


def test_scoring_is_deterministic(scorer) -> None:
    listing = make_listing(asking_rate_per_sf=52.0, features=frozenset({"fiber"}))
    opportunity = make_opportunity(required_features=frozenset({"fiber", "loading_dock"}))
    first = scorer.score(listing, opportunity, AS_OF)
    second = scorer.score(listing, opportunity, AS_OF)
    assert first == second


def test_breakdown_survives_serialization(scorer) -> None:
    match = scorer.score(make_listing(), make_opportunity(), AS_OF)
    assert load_breakdown(dump_breakdown(match.breakdown)) == match.breakdown


def test_listing_without_coordinates_is_malformed(scorer) -> None:
    with pytest.raises(MalformedRecordError):
        scorer.score(make_listing(latitude=None, longitude=None), make_opportunity(), AS_OF)


def test_hard_failures_disqualify_high_scores(scorer) -> None:
    listing = make_listing(ada_accessible=False)
    match = scorer.score(listing, make_opportunity(), AS_OF)
    assert ADA_NOT_MET in match.disqualifiers
    assert match.qualified is False
    assert match.competitive is False


# --- location ---

def test_location_without_density_is_proximity_only(config) -> None:
    result = score_location(make_listing(), make_opportunity(), config, density=None)
    assert result.score == 100


def test_location_decreases_with_distance(config) -> None:
    opportunity = make_opportunity(radius_miles=10.0)
    scores = []
    for offset in (0.0, 0.02, 0.05, 0.1, 0.2):
        listing = make_listing(latitude=opportunity.latitude + offset)
        scores.append(score_location(listing, opportunity, config).score)
    assert scores == sorted(scores, reverse=True)
    assert scores[0] > scores[-1]


def test_location_outside_region_is_disqualified(config) -> None:
    listing = make_listing(state="WY", latitude=41.14, longitude=-104.82)
    result = score_location(listing, make_opportunity(), config)
    assert result.score == 0
    assert result.disqualifiers == (REGION_MISMATCH,)


# --- space ---

def test_space_fit_is_full_inside_range(config) -> None:
    assert space_fit_score(40_000, 40_000, 60_000, config) == 100
    assert space_fit_score(60_000, 40_000, 60_000, config) == 100


def test_space_fit_decays_linearly_below_minimum(config) -> None:
    assert space_fit_score(30_000, 40_000, 60_000, config) == 50
    assert space_fit_score(20_000, 40_000, 60_000, config) == 0


def test_space_fit_decays_above_maximum_with_subdivision_floor(config) -> None:
    assert space_fit_score(120_000, 40_000, 60_000, config) == 50
    assert space_fit_score(120_000, 40_000, 60_000, config, subdividable=True) == 80


def test_space_score_is_monotone_toward_range(config) -> None:
    values = [space_fit_score(sf, 40_000, 60_000, config) for sf in range(20_000, 40_001, 2_000)]
    assert values == sorted(values)


# --- building ---

def test_missing_scif_is_disqualifying() -> None:
    opportunity = make_opportunity(required_features=frozenset({"scif"}))
    result = score_building(make_listing(), opportunity)
    assert result.score == 65
    assert SCIF_NOT_AVAILABLE in result.disqualifiers


def test_building_rewards_met_requirements() -> None:
    opportunity = make_opportunity(
        required_features=frozenset({"fiber"}),
        required_certifications=("LEED",),
        parking_spaces_required=50,
        min_security_level=3,
    )
    listing = make_listing(
        features=frozenset({"fiber"}),
        certifications=("LEED Gold",),
        parking_spaces=80,
        security_level=4,
    )
    result = score_building(listing, opportunity)
    assert result.score == 70 + 5 + 5 + 5 + 5
    assert result.details.inputs["certifications_met"] == ["LEED"]


def test_non_accepted_class_is_penalized() -> None:
    result = score_building(make_listing(building_class="C"), make_opportunity())
    assert result.score == 30


# --- timeline and pricing ---

def test_pricing_decays_to_zero_at_one_and_a_half_times_high(config) -> None:
    opportunity = make_opportunity()
    assert pricing_score(make_listing(asking_rate_per_sf=65.0), opportunity, config)[0] == 100
    assert pricing_score(make_listing(asking_rate_per_sf=81.25), opportunity, config)[0] == 50
    assert pricing_score(make_listing(asking_rate_per_sf=97.5), opportunity, config)[0] == 0


def test_opportunity_rate_cap_lowers_expected_range(config) -> None:
    opportunity = make_opportunity(max_rate_per_sf=40.0)
    assert pricing_score(make_listing(asking_rate_per_sf=50.0), opportunity, config)[0] == 50


def test_late_availability_lowers_timeline(scorer) -> None:
    opportunity = make_opportunity()
    on_time = scorer.score(make_listing(), opportunity, AS_OF)
    late = scorer.score(
        make_listing(available_date=opportunity.occupancy_date + timedelta(days=45)),
        opportunity,
        AS_OF,
    )
    assert late.breakdown.timeline.score < on_time.breakdown.timeline.score


# --- experience ---

def test_default_profile_scores_forty() -> None:
    assert score_experience(ExperienceProfile(owner_id="OWN-001")).score == 40


def test_experienced_owner_is_capped_at_hundred() -> None:
    profile = ExperienceProfile(
        owner_id="OWN-002",
        government_lease_experience=True,
        government_leases_count=6,
        gsa_certified=True,
        references_count=3,
        converted_matches_count=3,
    )
    assert score_experience(profile).score == 100


# --- grading ---

@pytest.mark.parametrize(
    ("score", "grade"),
    [(100, "A+"), (90, "A+"), (89, "A"), (80, "A"), (79, "B"), (70, "B"),
     (69, "C"), (55, "C"), (54, "D"), (40, "D"), (39, "F"), (0, "F")],
)
def test_grade_boundaries(score, grade) -> None:
    assert grade_for(score) == grade


@pytest.mark.parametrize(
    ("overall", "qualified", "competitive"),
    [(39, False, False), (40, True, False), (69, True, False), (70, True, True)],
)
def test_classification_thresholds(config, overall, qualified, competitive) -> None:
    grader = MatchGrader(config=config)
    assert grader.is_qualified(overall) is qualified
    assert grader.is_competitive(overall) is competitive


def test_disqualifier_blocks_qualification_at_any_score(config) -> None:
    grader = MatchGrader(config=config)
    assert grader.is_qualified(95, [ADA_NOT_MET]) is False


def test_invalid_weights_fail_before_scoring(config) -> None:
    bad = replace(config, weights=dict(config.weights, location=0.45))
    with pytest.raises(ScoringConfigurationError):
        MatchScorer(config=bad)
