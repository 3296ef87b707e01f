"""Weighted aggregation, letter grades and insight text for scored pairs."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from backend.domain.constraints import (
    DISQUALIFIER_MESSAGES,
    FAILING_GRADE,
    GRADE_THRESHOLDS,
    ScoringConfig,
    ScoringConfigurationError,
    scoring_config_from_settings,
    validate_scoring_config,
    validate_weights,
)
from backend.domain.models import (
    FACTOR_SLOTS,
    FactorResult,
    MatchFactor,
    MatchScore,
    ScoreBreakdown,
)
from backend.utils.config import Settings, get_settings
from backend.utils.geo import round_half_up


def grade_for(score: int) -> str:
    for lower_bound, grade in GRADE_THRESHOLDS:
        if score >= lower_bound:
            return grade
    return FAILING_GRADE


def aggregate(factors: Iterable[MatchFactor]) -> int:
    """Sum of weighted factor scores, rounded half-up into [0, 100]."""
    factor_list = list(factors)
    validate_weights({factor.name: factor.weight for factor in factor_list})
    total = sum(factor.score * factor.weight for factor in factor_list)
    return max(0, min(100, round_half_up(total)))


def build_factor(name: str, result: FactorResult, weight: float) -> MatchFactor:
    score = max(0, min(100, int(result.score)))
    return MatchFactor(
        name=name,
        score=score,
        weight=weight,
        weighted=round(score * weight, 4),
        details=result.details,
    )


def generate_insights(
    breakdown: ScoreBreakdown,
    disqualifiers: Iterable[str],
) -> tuple[tuple[str, ...], tuple[str, ...], tuple[str, ...]]:
    strengths: list[str] = []
    weaknesses: list[str] = []
    recommendations: list[str] = []

    location = breakdown.location
    if location.score >= 90:
        strengths.append("Excellent location within the delineated area")
    elif location.score < 60:
        weaknesses.append("Location may be outside the preferred area")
        recommendations.append("Verify the property is within the delineated area boundaries")

    space = breakdown.space
    if space.score >= 90:
        strengths.append("Space requirements fully met")
    else:
        shortfall = space.details.inputs.get("shortfall_sf")
        if shortfall:
            weaknesses.append(f"Space is {shortfall:,} SF short of the minimum")
            recommendations.append(
                "Consider whether the agency would accept smaller space or if expansion is possible"
            )
        excess = space.details.inputs.get("excess_sf")
        if excess:
            weaknesses.append(f"Space exceeds the maximum by {excess:,} SF")

    building = breakdown.building
    if building.score >= 80:
        strengths.append("Building meets technical requirements")
    missing_features = building.details.inputs.get("features_missing") or []
    if missing_features:
        weaknesses.append(f"Missing features: {', '.join(missing_features)}")
        recommendations.append("Evaluate the cost to add the missing features")
    certifications_met = building.details.inputs.get("certifications_met") or []
    if certifications_met:
        strengths.append(f"Certifications: {', '.join(certifications_met)}")

    timeline = breakdown.timeline
    if timeline.score >= 90:
        strengths.append("Available well before occupancy at a competitive rate")
    elif timeline.score < 60:
        weaknesses.append("Availability timeline or asking rate is a concern")
        recommendations.append("Communicate a realistic timeline and any rate flexibility")

    experience = breakdown.experience
    if experience.details.inputs.get("government_lease_experience"):
        strengths.append("Prior government lease experience")
    else:
        recommendations.append(
            "Highlight institutional lease experience or partner with an experienced prime contractor"
        )

    for code in disqualifiers:
        weaknesses.append(DISQUALIFIER_MESSAGES.get(code, code))

    return tuple(strengths), tuple(weaknesses), tuple(recommendations)


class MatchGrader:
    """Turns five factor results into a graded, classified match."""

    def __init__(
        self,
        config: Optional[ScoringConfig] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._config = config or scoring_config_from_settings(settings or get_settings())
        validate_scoring_config(self._config)

    @property
    def config(self) -> ScoringConfig:
        return self._config

    def is_qualified(self, overall: int, disqualifiers: Iterable[str] = ()) -> bool:
        return overall >= self._config.qualify_threshold and not tuple(disqualifiers)

    def is_competitive(self, overall: int, disqualifiers: Iterable[str] = ()) -> bool:
        codes = tuple(disqualifiers)
        return self.is_qualified(overall, codes) and overall >= self._config.competitive_threshold

    def grade(
        self,
        listing_id: str,
        opportunity_id: str,
        results: Mapping[str, FactorResult],
        extra_disqualifiers: Iterable[str] = (),
    ) -> MatchScore:
        missing = [slot for slot in FACTOR_SLOTS if slot not in results]
        if missing:
            raise ScoringConfigurationError(f"missing factor results: {', '.join(missing)}")

        factors = {
            slot: build_factor(slot, results[slot], self._config.weights[slot])
            for slot in FACTOR_SLOTS
        }
        breakdown = ScoreBreakdown(**factors)
        overall = aggregate(breakdown.factors())

        disqualifiers: list[str] = []
        for code in list(extra_disqualifiers) + [
            code for slot in FACTOR_SLOTS for code in results[slot].disqualifiers
        ]:
            if code not in disqualifiers:
                disqualifiers.append(code)

        strengths, weaknesses, recommendations = generate_insights(breakdown, disqualifiers)
        return MatchScore(
            listing_id=listing_id,
            opportunity_id=opportunity_id,
            overall_score=overall,
            grade=grade_for(overall),
            qualified=self.is_qualified(overall, disqualifiers),
            competitive=self.is_competitive(overall, disqualifiers),
            breakdown=breakdown,
            disqualifiers=tuple(disqualifiers),
            strengths=strengths,
            weaknesses=weaknesses,
            recommendations=recommendations,
        )
