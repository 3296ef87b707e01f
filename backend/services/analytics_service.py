"""Read-only summaries over persisted matches, run logs and density cache rows."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import pandas as pd

from backend.domain.constraints import GRADE_THRESHOLDS, FAILING_GRADE
from backend.domain.models import FACTOR_SLOTS
from backend.repository.interfaces import (
    BatchRunRepository,
    FederalPropertyRepository,
    ListingRepository,
    MatchRepository,
)
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

SCORE_BUCKET_EDGES = [-1, 39, 54, 69, 79, 89, 100]
SCORE_BUCKET_LABELS = ["0-39", "40-54", "55-69", "70-79", "80-89", "90-100"]
GRADE_ORDER = [grade for _, grade in GRADE_THRESHOLDS] + [FAILING_GRADE]


class AnalyticsValidationError(ValueError):
    """Raised for unsupported analytics queries."""


def _bucket_counts(values: pd.Series) -> dict[str, int]:
    buckets = pd.cut(values, bins=SCORE_BUCKET_EDGES, labels=SCORE_BUCKET_LABELS)
    counts = buckets.value_counts().reindex(SCORE_BUCKET_LABELS, fill_value=0)
    return {str(label): int(count) for label, count in counts.items()}


def _round(value: Any, digits: int = 2) -> float:
    if value is None or pd.isna(value):
        return 0.0
    return round(float(value), digits)


class AnalyticsService:
    """Aggregates persisted state into dashboard-ready dictionaries."""

    def __init__(
        self,
        matches: MatchRepository,
        runs: BatchRunRepository,
        federal: FederalPropertyRepository,
        listings: ListingRepository,
        settings: Optional[Settings] = None,
    ) -> None:
        self._matches = matches
        self._runs = runs
        self._federal = federal
        self._listings = listings
        self._settings = settings or get_settings()

    def _match_frame(self) -> pd.DataFrame:
        rows = []
        for persisted in self._matches.list_matches():
            match = persisted.match
            row = {
                "listing_id": match.listing_id,
                "opportunity_id": match.opportunity_id,
                "overall_score": match.overall_score,
                "grade": match.grade,
                "qualified": match.qualified,
                "competitive": match.competitive,
                "updated_at": persisted.updated_at,
            }
            for factor in match.breakdown.factors():
                row[f"factor_{factor.name}"] = factor.score
            rows.append(row)
        columns = [
            "listing_id",
            "opportunity_id",
            "overall_score",
            "grade",
            "qualified",
            "competitive",
            "updated_at",
        ] + [f"factor_{slot}" for slot in FACTOR_SLOTS]
        return pd.DataFrame(rows, columns=columns)

    def match_score_analytics(self) -> dict[str, Any]:
        frame = self._match_frame()
        if frame.empty:
            return {
                "total_matches": 0,
                "mean_score": 0.0,
                "median_score": 0.0,
                "qualified_rate": 0.0,
                "competitive_rate": 0.0,
                "grade_counts": {grade: 0 for grade in GRADE_ORDER},
                "score_buckets": {label: 0 for label in SCORE_BUCKET_LABELS},
                "factor_means": {slot: 0.0 for slot in FACTOR_SLOTS},
            }

        grade_counts = frame["grade"].value_counts().reindex(GRADE_ORDER, fill_value=0)
        return {
            "total_matches": int(len(frame)),
            "mean_score": _round(frame["overall_score"].mean()),
            "median_score": _round(frame["overall_score"].median()),
            "qualified_rate": _round(frame["qualified"].mean(), 4),
            "competitive_rate": _round(frame["competitive"].mean(), 4),
            "grade_counts": {str(grade): int(count) for grade, count in grade_counts.items()},
            "score_buckets": _bucket_counts(frame["overall_score"]),
            "factor_means": {
                slot: _round(frame[f"factor_{slot}"].mean()) for slot in FACTOR_SLOTS
            },
        }

    def prefilter_analytics(self, limit: Optional[int] = None) -> dict[str, Any]:
        """How much of the cross product the prefilter removed in recent runs."""
        runs = self._runs.list_batch_runs(limit or self._settings.analytics_run_log_limit)
        if not runs:
            return {
                "runs": 0,
                "pairs_considered": 0,
                "pairs_skipped": 0,
                "skip_rate": 0.0,
                "skip_reasons": {},
                "mean_duration_ms": 0.0,
                "failed_runs": 0,
                "timed_out_runs": 0,
            }

        frame = pd.DataFrame(
            [
                {
                    "run_id": run.run_id,
                    "state": run.state,
                    "pairs_considered": run.pairs_considered,
                    "skipped": run.skipped,
                    "duration_ms": run.duration_ms,
                    "timed_out": run.timed_out,
                }
                for run in runs
            ]
        )
        reasons = pd.DataFrame(
            [
                {"reason": reason, "count": count}
                for run in runs
                for reason, count in run.skip_reasons.items()
            ],
            columns=["reason", "count"],
        )
        reason_totals = (
            reasons.groupby("reason")["count"].sum().sort_values(ascending=False)
            if not reasons.empty
            else pd.Series(dtype=int)
        )
        considered = int(frame["pairs_considered"].sum())
        skipped = int(frame["skipped"].sum())
        return {
            "runs": int(len(frame)),
            "pairs_considered": considered,
            "pairs_skipped": skipped,
            "skip_rate": round(skipped / considered, 4) if considered else 0.0,
            "skip_reasons": {str(reason): int(count) for reason, count in reason_totals.items()},
            "mean_duration_ms": _round(frame["duration_ms"].mean()),
            "failed_runs": int((frame["state"] == "FAILED").sum()),
            "timed_out_runs": int(frame["timed_out"].sum()),
        }

    def federal_score_analytics(self, now: Optional[datetime] = None) -> dict[str, Any]:
        scores = self._federal.list_density_scores(now or datetime.now(timezone.utc))
        if not scores:
            return {
                "cached_locations": 0,
                "mean_score": 0.0,
                "mean_percentile": 0.0,
                "mean_properties": 0.0,
                "total_rsf": 0,
                "score_buckets": {label: 0 for label in SCORE_BUCKET_LABELS},
            }
        frame = pd.DataFrame(
            [
                {
                    "score": item.score,
                    "percentile": item.percentile,
                    "total_properties": item.total_properties,
                    "total_rsf": item.total_rsf,
                }
                for item in scores
            ]
        )
        return {
            "cached_locations": int(len(frame)),
            "mean_score": _round(frame["score"].mean()),
            "mean_percentile": _round(frame["percentile"].mean()),
            "mean_properties": _round(frame["total_properties"].mean()),
            "total_rsf": int(frame["total_rsf"].sum()),
            "score_buckets": _bucket_counts(frame["score"]),
        }

    def top_listings(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        frame = self._match_frame()
        if frame.empty:
            return []
        grouped = (
            frame.groupby("listing_id")
            .agg(
                best_score=("overall_score", "max"),
                mean_score=("overall_score", "mean"),
                match_count=("opportunity_id", "count"),
                competitive_count=("competitive", "sum"),
            )
            .reset_index()
            .sort_values(
                ["best_score", "mean_score", "listing_id"],
                ascending=[False, False, True],
            )
            .head(limit or self._settings.analytics_top_listings_limit)
        )
        results = []
        for row in grouped.itertuples(index=False):
            listing = self._listings.get_listing(str(row.listing_id))
            results.append(
                {
                    "listing_id": str(row.listing_id),
                    "title": listing.title if listing else None,
                    "city": listing.city if listing else None,
                    "state": listing.state if listing else None,
                    "best_score": int(row.best_score),
                    "mean_score": _round(row.mean_score),
                    "match_count": int(row.match_count),
                    "competitive_count": int(row.competitive_count),
                }
            )
        return results

    def owner_summary(self, owner_id: str) -> dict[str, Any]:
        if not owner_id or not owner_id.strip():
            raise AnalyticsValidationError("owner_id is required")
        listings = self._listings.list_listings_for_owner(owner_id)
        listing_ids = {listing.listing_id for listing in listings}
        frame = self._match_frame()
        frame = frame[frame["listing_id"].isin(listing_ids)]

        per_listing = []
        for listing in listings:
            subset = frame[frame["listing_id"] == listing.listing_id]
            best = subset.sort_values("overall_score", ascending=False).head(1)
            per_listing.append(
                {
                    "listing_id": listing.listing_id,
                    "title": listing.title,
                    "status": listing.status,
                    "match_count": int(len(subset)),
                    "best_score": int(best["overall_score"].iloc[0]) if not best.empty else None,
                    "best_grade": str(best["grade"].iloc[0]) if not best.empty else None,
                    "best_opportunity_id": (
                        str(best["opportunity_id"].iloc[0]) if not best.empty else None
                    ),
                }
            )
        return {
            "owner_id": owner_id,
            "listings": len(listings),
            "total_matches": int(len(frame)),
            "qualified_matches": int(frame["qualified"].sum()) if not frame.empty else 0,
            "competitive_matches": int(frame["competitive"].sum()) if not frame.empty else 0,
            "mean_score": _round(frame["overall_score"].mean()) if not frame.empty else 0.0,
            "by_listing": per_listing,
        }

    def summary(self, analytics_type: str) -> dict[str, Any]:
        """Dispatch for the `type` query parameter of the analytics endpoint."""
        handlers = {
            "match_scores": lambda: {"match_scores": self.match_score_analytics()},
            "prefilter": lambda: {"prefilter": self.prefilter_analytics()},
            "federal_scores": lambda: {"federal_scores": self.federal_score_analytics()},
            "top_listings": lambda: {"top_listings": self.top_listings()},
        }
        if analytics_type == "all":
            result: dict[str, Any] = {}
            for handler in handlers.values():
                result.update(handler())
            return result
        handler = handlers.get(analytics_type)
        if handler is None:
            raise AnalyticsValidationError(
                f"type must be one of: {', '.join(list(handlers) + ['all'])}"
            )
        logger.debug("Analytics requested | type=%s", analytics_type)
        return handler()
