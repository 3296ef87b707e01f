from __future__ import annotations

import itertools
from datetime import timedelta

import pytest

from backend.domain.constraints import (
    AVAILABILITY_TOO_LATE,
    INACTIVE_RECORD,
    INVALID_REQUIREMENTS,
    REGION_MISMATCH,
    SPACE_TOO_LARGE,
    SPACE_TOO_SMALL,
    SPACE_UNDISCLOSED,
)
from backend.domain.models import STATUS_ARCHIVED, STATUS_DRAFT
from backend.services.prefilter_service import EligibilityPrefilter
from backend.services.scoring_service import MatchScorer
from fakes import AS_OF, build_settings, make_listing, make_opportunity


@pytest.fixture()
def prefilter() -> EligibilityPrefilter:
    return EligibilityPrefilter(settings=build_settings())


def test_clean_pair_passes(prefilter) -> None:
    decision = prefilter.evaluate(make_listing(), make_opportunity(), AS_OF)
    assert decision.passed is True
    assert decision.reason is None


@pytest.mark.parametrize(
    ("listing_overrides", "opportunity_overrides", "reason"),
    [
        ({"status": STATUS_DRAFT}, {}, INACTIVE_RECORD),
        ({}, {"status": STATUS_ARCHIVED}, INACTIVE_RECORD),
        ({}, {"state": None, "latitude": None, "longitude": None}, INVALID_REQUIREMENTS),
        ({}, {"min_sf": 70_000, "max_sf": 60_000}, INVALID_REQUIREMENTS),
        ({"state": "WY", "latitude": 41.14, "longitude": -104.82}, {}, REGION_MISMATCH),
        ({"available_sf": 0}, {}, SPACE_UNDISCLOSED),
        ({"available_sf": 5_000}, {}, SPACE_TOO_SMALL),
        ({"available_sf": 250_000, "total_sf": 250_000}, {}, SPACE_TOO_LARGE),
        ({"available_date": AS_OF + timedelta(days=400)}, {}, AVAILABILITY_TOO_LATE),
    ],
)
def test_rejection_reason(prefilter, listing_overrides, opportunity_overrides, reason) -> None:
    decision = prefilter.evaluate(
        make_listing(**listing_overrides),
        make_opportunity(**opportunity_overrides),
        AS_OF,
    )
    assert decision.passed is False
    assert decision.reason == reason


def test_first_failure_wins(prefilter) -> None:
    listing = make_listing(status=STATUS_DRAFT, state="WY", latitude=41.14, longitude=-104.82)
    decision = prefilter.evaluate(listing, make_opportunity(), AS_OF)
    assert decision.reason == INACTIVE_RECORD


def test_opportunity_without_size_bounds_passes_space_checks(prefilter) -> None:
    opportunity = make_opportunity(min_sf=None, max_sf=None)
    assert prefilter.evaluate(make_listing(available_sf=1_000), opportunity, AS_OF).passed


def test_rejected_pairs_never_score_as_qualified() -> None:
    settings = build_settings()
    prefilter = EligibilityPrefilter(settings=settings)
    scorer = MatchScorer(settings=settings)

    listing_variants = [
        {},
        {"status": STATUS_DRAFT},
        {"state": "WY", "latitude": 41.14, "longitude": -104.82},
        {"city": "Arlington", "state": "VA", "latitude": 38.8816, "longitude": -77.0910},
        {"available_sf": 0},
        {"available_sf": 15_000},
        {"available_sf": 25_000},
        {"available_sf": 150_000, "total_sf": 150_000},
        {"available_sf": 400_000, "total_sf": 400_000},
        {"available_sf": 400_000, "total_sf": 400_000, "min_divisible_sf": 45_000},
        {"available_date": AS_OF + timedelta(days=260)},
        {"available_date": AS_OF + timedelta(days=300)},
        {"ada_accessible": False},
    ]
    opportunity_variants = [
        {},
        {"status": STATUS_DRAFT},
        {"min_sf": 90_000, "max_sf": 80_000},
        {"occupancy_date": None},
        {"radius_miles": 2.0},
        {"min_sf": None, "max_sf": 20_000},
    ]

    rejected = 0
    for listing_overrides, opportunity_overrides in itertools.product(
        listing_variants, opportunity_variants
    ):
        listing = make_listing(**listing_overrides)
        opportunity = make_opportunity(**opportunity_overrides)
        decision = prefilter.evaluate(listing, opportunity, AS_OF)
        if decision.passed:
            continue
        rejected += 1
        match = scorer.score(listing, opportunity, AS_OF)
        assert match.qualified is False, (listing_overrides, opportunity_overrides)
        assert match.competitive is False
        assert decision.reason in match.disqualifiers

    assert rejected > 0
