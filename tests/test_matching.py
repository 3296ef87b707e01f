"""Tests for the batch orchestrator: counting, gating, failures and deadlines."""

from __future__ import annotations

import sqlite3
import time
from datetime import datetime, timezone

import pytest

from backend.domain.constraints import REGION_MISMATCH
from backend.domain.models import RUN_DONE, RUN_FAILED, RUN_IDLE
from backend.repository.data_repository import DataRepository
from backend.services.density_service import FederalDensityService
from backend.services.matching_service import (
    BatchMatchingService,
    BatchValidationError,
    MatchNotFoundError,
    RunContext,
)
from fakes import (
    CorruptWriteRepository,
    FailingLoadRepository,
    FailingWriteRepository,
    InMemoryRepository,
    build_settings,
    make_listing,
    make_opportunity,
)


def _clock() -> datetime:
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _service(repository, with_density: bool = False, **overrides) -> BatchMatchingService:
    settings = build_settings(**overrides)
    density = (
        FederalDensityService(repository=repository, settings=settings, clock=_clock)
        if with_density
        else None
    )
    return BatchMatchingService(
        listings=repository,
        opportunities=repository,
        matches=repository,
        experience=repository,
        runs=repository,
        density_service=density,
        settings=settings,
        clock=_clock,
    )


def test_malformed_listing_is_counted_as_failed_without_aborting_run() -> None:
    listings = [make_listing(f"LST-{index:04d}") for index in range(1, 100)]
    listings.append(make_listing("LST-0100", latitude=None, longitude=None))
    repository = InMemoryRepository(listings=tuple(listings), opportunities=(make_opportunity(),))

    stats = _service(repository, with_density=True).run_batch(min_score=40)

    assert stats.success is True
    assert stats.state == RUN_DONE
    assert stats.processed == 99
    assert stats.failed == 1
    assert stats.matched == 99
    assert stats.skipped == 0
    assert len(stats.errors) == 1
    assert "LST-0100" in stats.errors[0]
    assert repository.count_matches() == 99


def test_listing_that_breaks_the_prefilter_is_counted_as_failed() -> None:
    listings = [make_listing(f"LST-{index:04d}") for index in range(1, 5)]
    listings.append(make_listing("LST-BAD", available_sf="15000"))
    repository = InMemoryRepository(listings=tuple(listings), opportunities=(make_opportunity(),))

    stats = _service(repository).run_batch(min_score=40)

    assert stats.state == RUN_DONE
    assert stats.processed == 4
    assert stats.matched == 4
    assert stats.failed == 1
    assert len(stats.errors) == 1
    assert "LST-BAD" in stats.errors[0]
    assert repository.runs[0].state == RUN_DONE


def test_unexpected_worker_error_is_recorded_per_listing() -> None:
    repository = CorruptWriteRepository(
        listings=tuple(make_listing(f"LST-{index:04d}") for index in range(1, 4)),
        opportunities=(make_opportunity("OPP-0001"), make_opportunity("OPP-0002")),
        broken_listing_id="LST-0002",
    )

    stats = _service(repository).run_batch(min_score=0)

    assert stats.state == RUN_DONE
    assert stats.processed == 4
    assert stats.failed == 2
    assert stats.processed + stats.skipped + stats.failed + stats.unevaluated == 6
    assert any("LST-0002" in error for error in stats.errors)
    assert repository.get_match("LST-0001", "OPP-0001") is not None


def test_corrupt_stored_listing_does_not_abort_the_run(tmp_path) -> None:
    settings = build_settings(database_path=tmp_path / "corrupt.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.save_listing(make_listing("LST-0001"))
    repository.save_listing(make_listing("LST-0002"))
    repository.save_opportunity(make_opportunity())
    conn = sqlite3.connect(repository.database_path)
    with conn:
        conn.execute("UPDATE Listings SET available_date = 'TBD' WHERE listing_id = 'LST-0002'")
    conn.close()

    service = BatchMatchingService(
        listings=repository,
        opportunities=repository,
        matches=repository,
        runs=repository,
        settings=settings,
        clock=_clock,
    )
    stats = service.run_batch(min_score=40)

    assert stats.state == RUN_DONE
    assert stats.listings_considered == 1
    assert stats.processed == 1
    assert stats.matched == 1
    assert stats.failed == 1
    assert "LST-0002" in stats.errors[0]
    assert repository.get_match("LST-0001", "OPP-0001") is not None
    assert repository.list_batch_runs(limit=1)[0].failed == 1


def test_out_of_region_listing_is_skipped_by_prefilter() -> None:
    repository = InMemoryRepository(
        listings=(
            make_listing("LST-0001"),
            make_listing("LST-0002", city="Cheyenne", state="WY", latitude=41.14, longitude=-104.82),
        ),
        opportunities=(make_opportunity(),),
    )
    stats = _service(repository).run_batch()

    assert stats.processed == 1
    assert stats.skipped == 1
    assert stats.skip_reasons == {REGION_MISMATCH: 1}
    assert repository.get_match("LST-0002", "OPP-0001") is None


def test_min_score_gates_persistence() -> None:
    # Without density the clean pair scores 89.
    repository = InMemoryRepository(listings=(make_listing(),), opportunities=(make_opportunity(),))
    service = _service(repository)

    gated = service.run_batch(min_score=90)
    assert gated.processed == 1
    assert gated.matched == 0
    assert repository.count_matches() == 0

    admitted = service.run_batch(min_score=89)
    assert admitted.matched == 1
    assert repository.get_match("LST-0001", "OPP-0001").match.overall_score == 89


def test_rerunning_updates_matches_in_place() -> None:
    repository = InMemoryRepository(
        listings=(make_listing("LST-0001"), make_listing("LST-0002")),
        opportunities=(make_opportunity("OPP-0001"), make_opportunity("OPP-0002")),
    )
    service = _service(repository)
    service.run_batch(min_score=0)
    created = {key: item.created_at for key, item in repository.matches.items()}
    service.run_batch(min_score=0)

    assert repository.count_matches() == 4
    assert {key: item.created_at for key, item in repository.matches.items()} == created


@pytest.mark.parametrize("min_score", [-1, 101, 55.5, True, "60"])
def test_invalid_min_score_is_rejected(min_score) -> None:
    service = _service(InMemoryRepository())
    with pytest.raises(BatchValidationError):
        service.run_batch(min_score=min_score)
    assert service.state == RUN_IDLE


def test_load_failure_marks_run_failed() -> None:
    repository = FailingLoadRepository(opportunities=(make_opportunity(),))
    stats = _service(repository).run_batch()

    assert stats.success is False
    assert stats.state == RUN_FAILED
    assert stats.failure_reason.startswith("Failed to load records")
    assert repository.runs[0].state == RUN_FAILED


def test_persistence_failure_is_fatal() -> None:
    repository = FailingWriteRepository(
        listings=(make_listing(),),
        opportunities=(make_opportunity(),),
    )
    stats = _service(repository).run_batch(min_score=0)

    assert stats.state == RUN_FAILED
    assert stats.failure_reason.startswith("Datastore failure")
    assert stats.failed == 0


def test_expired_deadline_returns_partial_stats() -> None:
    repository = InMemoryRepository(
        listings=tuple(make_listing(f"LST-{index:04d}") for index in range(1, 11)),
        opportunities=(make_opportunity("OPP-0001"), make_opportunity("OPP-0002")),
    )
    context = RunContext(deadline=time.monotonic() - 1.0)

    stats = _service(repository).run_batch(min_score=0, context=context)

    assert stats.state == RUN_DONE
    assert stats.timed_out is True
    assert stats.processed + stats.skipped + stats.failed + stats.unevaluated == 20
    assert stats.unevaluated > 0
    assert repository.count_matches() == stats.matched


def test_cancelled_context_stops_before_scoring() -> None:
    repository = InMemoryRepository(listings=(make_listing(),), opportunities=(make_opportunity(),))
    context = RunContext()
    context.cancel()

    stats = _service(repository).run_batch(context=context)

    assert stats.processed == 0
    assert stats.unevaluated == 1
    assert stats.timed_out is True


def test_worker_count_is_bounded_by_connection_pool() -> None:
    service = _service(InMemoryRepository(), matching_max_workers=8, database_max_connections=3)
    assert service.worker_count == 3


def test_status_reports_counts_and_last_run() -> None:
    repository = InMemoryRepository(listings=(make_listing(),), opportunities=(make_opportunity(),))
    service = _service(repository)
    service.run_batch(min_score=0)

    status = service.status()
    assert status.total_matches == 1
    assert status.active_listings == 1
    assert status.active_opportunities == 1
    assert status.last_run.state == RUN_DONE


def test_score_pair_does_not_persist() -> None:
    repository = InMemoryRepository(listings=(make_listing(),), opportunities=(make_opportunity(),))
    service = _service(repository)

    match = service.score_pair("LST-0001", "OPP-0001")
    assert match.overall_score == 89
    assert repository.count_matches() == 0

    with pytest.raises(MatchNotFoundError):
        service.score_pair("LST-0001", "OPP-9999")
