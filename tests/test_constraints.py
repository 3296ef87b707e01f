"""Tests for scoring configuration validation and the hard eligibility predicates."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from backend.domain.constraints import (
    AVAILABILITY_TOO_LATE,
    INACTIVE_RECORD,
    REGION_MISMATCH,
    SPACE_TOO_LARGE,
    SPACE_TOO_SMALL,
    SPACE_UNDISCLOSED,
    ScoringConfigurationError,
    iter_hard_constraint_failures,
    scoring_config_from_settings,
    validate_scoring_config,
    validate_weights,
)
from backend.domain.models import STATUS_DRAFT
from fakes import AS_OF, build_settings, make_listing, make_opportunity


def valid_config(**overrides):
    """Return the default ScoringConfig, optionally overriding fields."""
    return replace(scoring_config_from_settings(build_settings()), **overrides)


# --- Baseline pass ---

def test_default_config_passes() -> None:
    validate_scoring_config(valid_config())


# --- weights ---

def test_weights_not_summing_to_one_raise() -> None:
    weights = dict(valid_config().weights, location=0.5)
    with pytest.raises(ScoringConfigurationError):
        validate_weights(weights)


def test_missing_weight_slot_raises() -> None:
    weights = dict(valid_config().weights)
    weights.pop("experience")
    with pytest.raises(ScoringConfigurationError):
        validate_weights(weights)


def test_unknown_weight_slot_raises() -> None:
    weights = dict(valid_config().weights, pricing=0.0)
    with pytest.raises(ScoringConfigurationError):
        validate_weights(weights)


def test_negative_weight_raises() -> None:
    weights = dict(valid_config().weights, location=-0.05, space=0.70)
    with pytest.raises(ScoringConfigurationError):
        validate_weights(weights)


def test_weights_within_tolerance_pass() -> None:
    weights = dict(valid_config().weights, location=0.35 + 1e-9)
    validate_weights(weights)


# --- thresholds ---

def test_competitive_below_qualify_raises() -> None:
    with pytest.raises(ScoringConfigurationError):
        validate_scoring_config(valid_config(qualify_threshold=60, competitive_threshold=50))


def test_threshold_above_hundred_raises() -> None:
    with pytest.raises(ScoringConfigurationError):
        validate_scoring_config(valid_config(competitive_threshold=101))


# --- tolerances ---

def test_min_space_ratio_must_be_fractional() -> None:
    with pytest.raises(ScoringConfigurationError):
        validate_scoring_config(valid_config(min_space_ratio=1.0))


def test_max_space_ratio_must_exceed_one() -> None:
    with pytest.raises(ScoringConfigurationError):
        validate_scoring_config(valid_config(max_space_ratio=1.0))


def test_density_share_out_of_range_raises() -> None:
    with pytest.raises(ScoringConfigurationError):
        validate_scoring_config(valid_config(density_share=1.5))


def test_inverted_pricing_range_raises() -> None:
    ranges = dict(valid_config().pricing_ranges, A=(70.0, 50.0))
    with pytest.raises(ScoringConfigurationError):
        validate_scoring_config(valid_config(pricing_ranges=ranges))


# --- hard constraints ---

def _failures(listing, opportunity):
    return list(iter_hard_constraint_failures(listing, opportunity, AS_OF, valid_config()))


def test_clean_pair_has_no_failures() -> None:
    assert _failures(make_listing(), make_opportunity()) == []


def test_inactive_listing_fails_first() -> None:
    failures = _failures(make_listing(status=STATUS_DRAFT), make_opportunity())
    assert failures[0] == INACTIVE_RECORD


def test_cross_state_within_metro_radius_is_in_region() -> None:
    # Arlington, VA sits a few miles from the DC opportunity point.
    listing = make_listing(city="Arlington", state="VA", latitude=38.8816, longitude=-77.0910)
    assert REGION_MISMATCH not in _failures(listing, make_opportunity())


def test_distant_other_state_is_region_mismatch() -> None:
    listing = make_listing(city="Cheyenne", state="WY", latitude=41.14, longitude=-104.82)
    assert _failures(listing, make_opportunity()) == [REGION_MISMATCH]


def test_undisclosed_space_fails() -> None:
    assert SPACE_UNDISCLOSED in _failures(make_listing(available_sf=None), make_opportunity())


def test_space_below_half_minimum_fails() -> None:
    assert SPACE_TOO_SMALL in _failures(make_listing(available_sf=19_999), make_opportunity())


def test_space_at_half_minimum_is_tolerated() -> None:
    assert _failures(make_listing(available_sf=20_000), make_opportunity()) == []


def test_oversized_space_fails_unless_subdividable() -> None:
    oversized = make_listing(available_sf=200_000, total_sf=200_000)
    assert SPACE_TOO_LARGE in _failures(oversized, make_opportunity())
    subdividable = replace(oversized, min_divisible_sf=50_000)
    assert _failures(subdividable, make_opportunity()) == []


def test_availability_beyond_grace_period_fails() -> None:
    opportunity = make_opportunity()
    late = make_listing(available_date=opportunity.occupancy_date + timedelta(days=91))
    within_grace = make_listing(available_date=opportunity.occupancy_date + timedelta(days=90))
    assert _failures(late, opportunity) == [AVAILABILITY_TOO_LATE]
    assert _failures(within_grace, opportunity) == []


def test_multiple_failures_are_all_reported_in_order() -> None:
    listing = make_listing(
        state="WY",
        latitude=41.14,
        longitude=-104.82,
        available_sf=1_000,
    )
    assert _failures(listing, make_opportunity()) == [REGION_MISMATCH, SPACE_TOO_SMALL]
