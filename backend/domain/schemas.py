"""Serialization schema for persisted score breakdowns."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from backend.domain.models import FactorDetails, MatchFactor, ScoreBreakdown


class FactorDetailsRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str
    notes: list[str] = Field(default_factory=list)
    inputs: dict[str, Any] = Field(default_factory=dict)


class FactorRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    score: int = Field(ge=0, le=100)
    weight: float = Field(ge=0.0, le=1.0)
    weighted: float
    details: FactorDetailsRecord

    @classmethod
    def from_factor(cls, factor: MatchFactor) -> "FactorRecord":
        return cls(
            name=factor.name,
            score=factor.score,
            weight=factor.weight,
            weighted=factor.weighted,
            details=FactorDetailsRecord(
                summary=factor.details.summary,
                notes=list(factor.details.notes),
                inputs=dict(factor.details.inputs),
            ),
        )

    def to_factor(self) -> MatchFactor:
        return MatchFactor(
            name=self.name,
            score=self.score,
            weight=self.weight,
            weighted=self.weighted,
            details=FactorDetails(
                summary=self.details.summary,
                notes=tuple(self.details.notes),
                inputs=dict(self.details.inputs),
            ),
        )


class ScoreBreakdownRecord(BaseModel):
    """Exactly one record per weighted factor slot."""

    model_config = ConfigDict(extra="forbid")

    location: FactorRecord
    space: FactorRecord
    building: FactorRecord
    timeline: FactorRecord
    experience: FactorRecord

    @classmethod
    def from_breakdown(cls, breakdown: ScoreBreakdown) -> "ScoreBreakdownRecord":
        return cls(
            location=FactorRecord.from_factor(breakdown.location),
            space=FactorRecord.from_factor(breakdown.space),
            building=FactorRecord.from_factor(breakdown.building),
            timeline=FactorRecord.from_factor(breakdown.timeline),
            experience=FactorRecord.from_factor(breakdown.experience),
        )

    def to_breakdown(self) -> ScoreBreakdown:
        return ScoreBreakdown(
            location=self.location.to_factor(),
            space=self.space.to_factor(),
            building=self.building.to_factor(),
            timeline=self.timeline.to_factor(),
            experience=self.experience.to_factor(),
        )


def dump_breakdown(breakdown: ScoreBreakdown) -> str:
    return ScoreBreakdownRecord.from_breakdown(breakdown).model_dump_json()


def load_breakdown(payload: str) -> ScoreBreakdown:
    return ScoreBreakdownRecord.model_validate_json(payload).to_breakdown()
