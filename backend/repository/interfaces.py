"""Storage contracts the services depend on.

`DataRepository` implements every protocol against SQLite; tests pass
in-memory fakes instead.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Optional, Protocol

from backend.domain.models import (
    BatchStats,
    ExperienceProfile,
    FederalDensityScore,
    FederalProperty,
    Listing,
    MatchScore,
    Opportunity,
    PersistedMatch,
    ViewportBounds,
)


class RepositoryError(Exception):
    """Base failure raised by a storage backend."""


class DataLoadError(RepositoryError):
    """Raised when records cannot be read."""


class PersistenceError(RepositoryError):
    """Raised when a write cannot be committed."""


# Receives the record id and the decode error of a row that was skipped.
MalformedRowHandler = Callable[[str, Exception], None]


class ListingRepository(Protocol):
    def list_active_listings(
        self,
        on_malformed: Optional[MalformedRowHandler] = None,
    ) -> list[Listing]: ...

    def get_listing(self, listing_id: str) -> Optional[Listing]: ...

    def count_active_listings(self) -> int: ...

    def list_listings_for_owner(self, owner_id: str) -> list[Listing]: ...


class OpportunityRepository(Protocol):
    def list_open_opportunities(
        self,
        as_of: date,
        on_malformed: Optional[MalformedRowHandler] = None,
    ) -> list[Opportunity]: ...

    def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]: ...

    def count_open_opportunities(self, as_of: date) -> int: ...


class ExperienceRepository(Protocol):
    def get_experience_profile(self, owner_id: str) -> Optional[ExperienceProfile]: ...


class MatchRepository(Protocol):
    def upsert_match(self, match: MatchScore) -> PersistedMatch: ...

    def get_match(self, listing_id: str, opportunity_id: str) -> Optional[PersistedMatch]: ...

    def list_matches(self) -> list[PersistedMatch]: ...

    def count_matches(self) -> int: ...

    def delete_matches_for_listing(self, listing_id: str) -> int: ...

    def delete_matches_for_opportunity(self, opportunity_id: str) -> int: ...


class FederalPropertyRepository(Protocol):
    def list_federal_properties_in_box(
        self,
        south: float,
        north: float,
        west: float,
        east: float,
    ) -> list[FederalProperty]: ...

    def list_federal_properties_in_viewport(
        self,
        bounds: ViewportBounds,
        limit: int,
    ) -> list[FederalProperty]: ...

    def sample_federal_properties(self, limit: int) -> list[FederalProperty]: ...

    def list_expiring_federal_leases(
        self,
        start: date,
        end: date,
        state: Optional[str] = None,
    ) -> list[FederalProperty]: ...

    def save_density_score(self, score: FederalDensityScore) -> None: ...

    def list_density_scores(self, now: datetime) -> list[FederalDensityScore]: ...


class BatchRunRepository(Protocol):
    def save_batch_run(self, stats: BatchStats) -> None: ...

    def list_batch_runs(self, limit: int) -> list[BatchStats]: ...
