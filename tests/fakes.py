"""In-memory repositories and record builders shared by the test modules."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from backend.domain.models import (
    OWNERSHIP_LEASED,
    BatchStats,
    ExperienceProfile,
    FederalDensityScore,
    FederalProperty,
    Listing,
    MatchScore,
    Opportunity,
    PersistedMatch,
    ViewportBounds,
    STATUS_ACTIVE,
)
from backend.repository.interfaces import DataLoadError, MalformedRowHandler, PersistenceError
from backend.utils.config import get_settings


AS_OF = date(2026, 3, 2)
DC_LAT = 38.9072
DC_LNG = -77.0369


def make_listing(listing_id: str = "LST-0001", **overrides) -> Listing:
    defaults = dict(
        listing_id=listing_id,
        owner_id="OWN-001",
        title="Class A office downtown",
        city="Washington",
        state="DC",
        zip_code="20001",
        latitude=DC_LAT,
        longitude=DC_LNG,
        total_sf=60_000,
        available_sf=50_000,
        building_class="A",
        ada_accessible=True,
        available_date=AS_OF,
        status=STATUS_ACTIVE,
    )
    defaults.update(overrides)
    return Listing(**defaults)


def make_opportunity(opportunity_id: str = "OPP-0001", **overrides) -> Opportunity:
    defaults = dict(
        opportunity_id=opportunity_id,
        title="Washington federal office lease",
        state="DC",
        city="Washington",
        latitude=DC_LAT,
        longitude=DC_LNG,
        min_sf=40_000,
        max_sf=60_000,
        response_deadline=AS_OF + timedelta(days=30),
        building_classes=("A",),
        ada_required=True,
        occupancy_date=AS_OF + timedelta(days=180),
    )
    defaults.update(overrides)
    return Opportunity(**defaults)


def make_federal_property(property_id: str, lat: float, lng: float, **overrides) -> FederalProperty:
    defaults = dict(
        property_id=property_id,
        latitude=lat,
        longitude=lng,
        ownership="leased",
        rentable_sf=20_000,
        vacant_sf=0,
    )
    defaults.update(overrides)
    return FederalProperty(**defaults)


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryRepository:
    """Implements every repository protocol with dictionaries."""

    def __init__(
        self,
        listings: tuple[Listing, ...] = (),
        opportunities: tuple[Opportunity, ...] = (),
        profiles: tuple[ExperienceProfile, ...] = (),
        federal_properties: tuple[FederalProperty, ...] = (),
    ) -> None:
        self.listings = {item.listing_id: item for item in listings}
        self.opportunities = {item.opportunity_id: item for item in opportunities}
        self.profiles = {item.owner_id: item for item in profiles}
        self.federal_properties = list(federal_properties)
        self.matches: dict[tuple[str, str], PersistedMatch] = {}
        self.density_scores: list[FederalDensityScore] = []
        self.runs: list[BatchStats] = []
        self.box_queries = 0
        self._lock = threading.Lock()

    # ListingRepository
    def list_active_listings(
        self,
        on_malformed: Optional[MalformedRowHandler] = None,
    ) -> list[Listing]:
        return [item for item in self.listings.values() if item.status == STATUS_ACTIVE]

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        return self.listings.get(listing_id)

    def count_active_listings(self) -> int:
        return len(self.list_active_listings())

    def list_listings_for_owner(self, owner_id: str) -> list[Listing]:
        return sorted(
            (item for item in self.listings.values() if item.owner_id == owner_id),
            key=lambda item: item.listing_id,
        )

    # OpportunityRepository
    def list_open_opportunities(
        self,
        as_of: date,
        on_malformed: Optional[MalformedRowHandler] = None,
    ) -> list[Opportunity]:
        return [
            item
            for item in self.opportunities.values()
            if item.status == STATUS_ACTIVE
            and (item.response_deadline is None or item.response_deadline >= as_of)
        ]

    def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        return self.opportunities.get(opportunity_id)

    def count_open_opportunities(self, as_of: date) -> int:
        return len(self.list_open_opportunities(as_of))

    # ExperienceRepository
    def get_experience_profile(self, owner_id: str) -> Optional[ExperienceProfile]:
        return self.profiles.get(owner_id)

    # MatchRepository
    def upsert_match(self, match: MatchScore) -> PersistedMatch:
        key = (match.listing_id, match.opportunity_id)
        now = _stamp()
        with self._lock:
            existing = self.matches.get(key)
            persisted = PersistedMatch(
                match=match,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.matches[key] = persisted
        return persisted

    def get_match(self, listing_id: str, opportunity_id: str) -> Optional[PersistedMatch]:
        return self.matches.get((listing_id, opportunity_id))

    def list_matches(self) -> list[PersistedMatch]:
        return [self.matches[key] for key in sorted(self.matches)]

    def count_matches(self) -> int:
        return len(self.matches)

    def delete_matches_for_listing(self, listing_id: str) -> int:
        doomed = [key for key in self.matches if key[0] == listing_id]
        for key in doomed:
            del self.matches[key]
        return len(doomed)

    def delete_matches_for_opportunity(self, opportunity_id: str) -> int:
        doomed = [key for key in self.matches if key[1] == opportunity_id]
        for key in doomed:
            del self.matches[key]
        return len(doomed)

    # FederalPropertyRepository
    def list_federal_properties_in_box(
        self,
        south: float,
        north: float,
        west: float,
        east: float,
    ) -> list[FederalProperty]:
        with self._lock:
            self.box_queries += 1
        return [
            item
            for item in self.federal_properties
            if south <= item.latitude <= north and west <= item.longitude <= east
        ]

    def list_federal_properties_in_viewport(
        self,
        bounds: ViewportBounds,
        limit: int,
    ) -> list[FederalProperty]:
        inside = self.list_federal_properties_in_box(
            bounds.south, bounds.north, bounds.west, bounds.east
        )
        return sorted(inside, key=lambda item: item.property_id)[:limit]

    def sample_federal_properties(self, limit: int) -> list[FederalProperty]:
        return self.federal_properties[:limit]

    def list_expiring_federal_leases(
        self,
        start: date,
        end: date,
        state: Optional[str] = None,
    ) -> list[FederalProperty]:
        expiring = [
            item
            for item in self.federal_properties
            if item.ownership == OWNERSHIP_LEASED
            and item.lease_expiration is not None
            and start <= item.lease_expiration <= end
            and (state is None or item.state == state)
        ]
        return sorted(expiring, key=lambda item: (item.lease_expiration, item.property_id))

    def save_density_score(self, score: FederalDensityScore) -> None:
        with self._lock:
            self.density_scores.append(score)

    def list_density_scores(self, now: datetime) -> list[FederalDensityScore]:
        return [item for item in self.density_scores if item.expires_at > now]

    # BatchRunRepository
    def save_batch_run(self, stats: BatchStats) -> None:
        self.runs.insert(0, replace(stats, skip_reasons=dict(stats.skip_reasons)))

    def list_batch_runs(self, limit: int) -> list[BatchStats]:
        return self.runs[:limit]


class FailingLoadRepository(InMemoryRepository):
    def list_active_listings(self, on_malformed=None) -> list[Listing]:
        raise DataLoadError("listings table unavailable")


class FailingWriteRepository(InMemoryRepository):
    def upsert_match(self, match: MatchScore) -> PersistedMatch:
        raise PersistenceError("disk full")


class CorruptWriteRepository(InMemoryRepository):
    """Fails one listing's writes with an error that is not a RepositoryError."""

    def __init__(self, *args, broken_listing_id: str, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.broken_listing_id = broken_listing_id

    def upsert_match(self, match: MatchScore) -> PersistedMatch:
        if match.listing_id == self.broken_listing_id:
            raise ValueError("unserializable match")
        return super().upsert_match(match)


class FailingDensityWriteRepository(InMemoryRepository):
    def save_density_score(self, score: FederalDensityScore) -> None:
        raise PersistenceError("density table locked")


def build_settings(**overrides):
    get_settings.cache_clear()
    return replace(get_settings(), **overrides)
