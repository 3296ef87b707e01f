"""Batch orchestration: prefilter, score and persist every listing/opportunity pair."""

from __future__ import annotations

import threading
import time
import uuid
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Optional

from backend.domain.models import (
    RUN_DONE,
    RUN_FAILED,
    RUN_IDLE,
    RUN_LOADING,
    RUN_PERSISTING,
    RUN_SCORING,
    BatchStats,
    ExperienceProfile,
    FederalDensityScore,
    Listing,
    MatchScore,
    Opportunity,
)
from backend.repository.interfaces import (
    BatchRunRepository,
    ExperienceRepository,
    ListingRepository,
    MatchRepository,
    OpportunityRepository,
    RepositoryError,
)
from backend.services.density_service import FederalDensityService
from backend.services.prefilter_service import EligibilityPrefilter
from backend.services.scoring_service import MalformedRecordError, MatchScorer
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class BatchValidationError(ValueError):
    """Raised when run parameters are invalid."""


class MatchNotFoundError(LookupError):
    """Raised when an on-demand score references an unknown record."""


@dataclass
class RunContext:
    """Wall-clock budget and cancellation signal for one run."""

    deadline: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def with_budget(cls, seconds: Optional[float]) -> "RunContext":
        if seconds is None or seconds <= 0:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def cancel(self) -> None:
        self.cancel_event.set()

    def should_stop(self) -> bool:
        return self.cancel_event.is_set() or self.expired()


@dataclass
class _ListingOutcome:
    processed: int = 0
    matched: int = 0
    skipped: int = 0
    failed: int = 0
    unevaluated: int = 0
    skip_reasons: Counter = field(default_factory=Counter)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MatchingStatus:
    total_matches: int
    active_listings: int
    active_opportunities: int
    last_run: Optional[BatchStats] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BatchMatchingService:
    """Runs the listing x opportunity cross product on a bounded worker pool.

    Each worker owns one listing and walks every opportunity, so no stats are
    shared between threads; the coordinating thread merges per-listing
    outcomes. Matches are written as they are scored, which means a run that
    hits its deadline returns partial stats with every reported match
    already durable.
    """

    def __init__(
        self,
        listings: ListingRepository,
        opportunities: OpportunityRepository,
        matches: MatchRepository,
        experience: Optional[ExperienceRepository] = None,
        runs: Optional[BatchRunRepository] = None,
        density_service: Optional[FederalDensityService] = None,
        settings: Optional[Settings] = None,
        scorer: Optional[MatchScorer] = None,
        prefilter: Optional[EligibilityPrefilter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._listings = listings
        self._opportunities = opportunities
        self._matches = matches
        self._experience = experience
        self._runs = runs
        self._density_service = density_service
        self._scorer = scorer or MatchScorer(settings=self._settings)
        self._prefilter = prefilter or EligibilityPrefilter(config=self._scorer.config)
        self._clock = clock or _utc_now
        self._state = RUN_IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._state_lock:
            return self._state

    @property
    def worker_count(self) -> int:
        return max(
            1,
            min(self._settings.matching_max_workers, self._settings.database_max_connections),
        )

    def _transition(self, stats: BatchStats, state: str) -> None:
        with self._state_lock:
            self._state = state
        stats.state = state
        logger.debug("Batch run state | run_id=%s | state=%s", stats.run_id, state)

    def _resolve_min_score(self, min_score: Optional[int]) -> int:
        value = self._settings.match_default_min_score if min_score is None else min_score
        if isinstance(value, bool) or not isinstance(value, int):
            raise BatchValidationError("min_score must be an integer")
        if not 0 <= value <= 100:
            raise BatchValidationError("min_score must be between 0 and 100")
        return value

    def _profile_for(self, owner_id: str) -> Optional[ExperienceProfile]:
        if self._experience is None:
            return None
        return self._experience.get_experience_profile(owner_id)

    def _density_for(self, listing: Listing) -> Optional[FederalDensityScore]:
        if listing.latitude is None or listing.longitude is None:
            raise MalformedRecordError(f"listing {listing.listing_id} has no coordinates")
        if self._density_service is None:
            return None
        return self._density_service.score(listing.latitude, listing.longitude)

    def _score_listing(
        self,
        listing: Listing,
        opportunities: list[Opportunity],
        min_score: int,
        as_of: date,
        context: RunContext,
    ) -> _ListingOutcome:
        outcome = _ListingOutcome()
        density: Optional[FederalDensityScore] = None
        profile: Optional[ExperienceProfile] = None
        context_loaded = False

        for index, opportunity in enumerate(opportunities):
            if context.should_stop():
                outcome.unevaluated += len(opportunities) - index
                break

            try:
                decision = self._prefilter.evaluate(listing, opportunity, as_of)
                if not decision.passed:
                    outcome.skipped += 1
                    outcome.skip_reasons[decision.reason] += 1
                    continue
                if not context_loaded:
                    density = self._density_for(listing)
                    profile = self._profile_for(listing.owner_id)
                    context_loaded = True
                match = self._scorer.score(
                    listing,
                    opportunity,
                    as_of,
                    profile=profile,
                    density=density,
                )
            except RepositoryError:
                raise
            except Exception as exc:
                message = (
                    f"listing={listing.listing_id} opportunity={opportunity.opportunity_id}: "
                    f"{type(exc).__name__}: {exc}"
                )
                outcome.failed += 1
                outcome.errors.append(message)
                logger.warning("Pair scoring failed | %s", message)
                continue

            outcome.processed += 1
            if match.overall_score >= min_score:
                self._matches.upsert_match(match)
                outcome.matched += 1
        return outcome

    def _collect(
        self,
        stats: BatchStats,
        future: Future,
        listing: Listing,
        pair_count: int,
    ) -> Optional[RepositoryError]:
        """Merge one worker's outcome; return a datastore failure instead of raising it."""
        try:
            self._merge(stats, future.result())
        except RepositoryError as exc:
            return exc
        except Exception as exc:
            # The worker's partial counts are lost, so all of its pairs count as failed.
            message = f"listing={listing.listing_id}: {type(exc).__name__}: {exc}"
            logger.exception("Listing worker failed | %s", message)
            stats.failed += pair_count
            stats.errors.append(message)
        return None

    @staticmethod
    def _merge(stats: BatchStats, outcome: _ListingOutcome) -> None:
        stats.processed += outcome.processed
        stats.matched += outcome.matched
        stats.skipped += outcome.skipped
        stats.failed += outcome.failed
        stats.unevaluated += outcome.unevaluated
        for reason, count in outcome.skip_reasons.items():
            stats.skip_reasons[reason] = stats.skip_reasons.get(reason, 0) + count
        stats.errors.extend(outcome.errors)

    def _finish(self, stats: BatchStats, started: float, state: str) -> BatchStats:
        stats.finished_at = self._clock()
        stats.duration_ms = int((time.monotonic() - started) * 1000)
        self._transition(stats, state)
        if self._runs is not None:
            try:
                self._runs.save_batch_run(stats)
            except RepositoryError as exc:
                logger.error("Batch run log not saved | run_id=%s | error=%s", stats.run_id, exc)
        log = logger.info if stats.success else logger.error
        log(
            (
                "Batch run finished | run_id=%s | state=%s | processed=%s | matched=%s | "
                "skipped=%s | failed=%s | unevaluated=%s | timed_out=%s | duration_ms=%s"
            ),
            stats.run_id,
            stats.state,
            stats.processed,
            stats.matched,
            stats.skipped,
            stats.failed,
            stats.unevaluated,
            stats.timed_out,
            stats.duration_ms,
        )
        return stats

    def _fail(self, stats: BatchStats, started: float, reason: str) -> BatchStats:
        stats.failure_reason = reason
        return self._finish(stats, started, RUN_FAILED)

    def run_batch(
        self,
        min_score: Optional[int] = None,
        context: Optional[RunContext] = None,
    ) -> BatchStats:
        """Score every active pair and persist those at or above `min_score`."""
        resolved_min_score = self._resolve_min_score(min_score)
        context = context or RunContext.with_budget(self._settings.matching_run_budget_seconds)
        started = time.monotonic()
        started_at = self._clock()
        as_of = started_at.date()
        stats = BatchStats(
            run_id=uuid.uuid4().hex,
            state=RUN_IDLE,
            started_at=started_at,
            min_score=resolved_min_score,
        )
        logger.info(
            "Batch run started | run_id=%s | min_score=%s | workers=%s",
            stats.run_id,
            resolved_min_score,
            self.worker_count,
        )

        self._transition(stats, RUN_LOADING)
        malformed: list[str] = []

        def record_malformed(record_id: str, exc: Exception) -> None:
            malformed.append(f"record={record_id}: {type(exc).__name__}: {exc}")

        try:
            listings = self._listings.list_active_listings(on_malformed=record_malformed)
            opportunities = self._opportunities.list_open_opportunities(
                as_of,
                on_malformed=record_malformed,
            )
        except RepositoryError as exc:
            logger.exception("Batch run could not load records | run_id=%s", stats.run_id)
            return self._fail(stats, started, f"Failed to load records: {exc}")
        stats.listings_considered = len(listings)
        stats.opportunities_considered = len(opportunities)
        stats.failed += len(malformed)
        stats.errors.extend(malformed)

        self._transition(stats, RUN_SCORING)
        fatal: Optional[BaseException] = None
        pending: dict[Future, Listing] = {}
        with ThreadPoolExecutor(
            max_workers=self.worker_count,
            thread_name_prefix="match-worker",
        ) as executor:
            for listing in listings:
                future = executor.submit(
                    self._score_listing,
                    listing,
                    opportunities,
                    resolved_min_score,
                    as_of,
                    context,
                )
                pending[future] = listing

            try:
                for future in as_completed(list(pending), timeout=context.remaining()):
                    listing = pending.pop(future)
                    fatal = self._collect(stats, future, listing, len(opportunities))
                    if fatal is not None:
                        context.cancel()
                        break
            except FuturesTimeoutError:
                context.cancel()

            for future in list(pending):
                if future.cancel():
                    stats.unevaluated += len(opportunities)
                    pending.pop(future)
            for future, listing in pending.items():
                # Stopped workers finish their current pair and report the rest.
                failure = self._collect(stats, future, listing, len(opportunities))
                fatal = fatal or failure

        if fatal is not None:
            logger.error(
                "Batch run aborted by datastore failure | run_id=%s | error=%s",
                stats.run_id,
                fatal,
            )
            return self._fail(stats, started, f"Datastore failure: {fatal}")

        if stats.unevaluated > 0 and context.should_stop():
            stats.timed_out = True
            logger.warning(
                "Batch run stopped early | run_id=%s | unevaluated=%s",
                stats.run_id,
                stats.unevaluated,
            )

        self._transition(stats, RUN_PERSISTING)
        return self._finish(stats, started, RUN_DONE)

    def status(self) -> MatchingStatus:
        """Read-only counts; never scores or writes."""
        as_of = self._clock().date()
        last_run = None
        if self._runs is not None:
            recent = self._runs.list_batch_runs(limit=1)
            last_run = recent[0] if recent else None
        return MatchingStatus(
            total_matches=self._matches.count_matches(),
            active_listings=self._listings.count_active_listings(),
            active_opportunities=self._opportunities.count_open_opportunities(as_of),
            last_run=last_run,
        )

    def score_pair(self, listing_id: str, opportunity_id: str) -> MatchScore:
        """Score one pair on demand without persisting it."""
        listing = self._listings.get_listing(listing_id)
        if listing is None:
            raise MatchNotFoundError(f"listing {listing_id} not found")
        opportunity = self._opportunities.get_opportunity(opportunity_id)
        if opportunity is None:
            raise MatchNotFoundError(f"opportunity {opportunity_id} not found")
        as_of = self._clock().date()
        match = self._scorer.score(
            listing,
            opportunity,
            as_of,
            profile=self._profile_for(listing.owner_id),
            density=self._density_for(listing),
        )
        logger.info(
            "Pair scored on demand | listing_id=%s | opportunity_id=%s | overall=%s | grade=%s",
            listing_id,
            opportunity_id,
            match.overall_score,
            match.grade,
        )
        return match
