"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import random
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, TypeVar

from backend.domain.models import (
    OWNERSHIP_LEASED,
    OWNERSHIP_OWNED,
    STATUS_ACTIVE,
    STATUS_DRAFT,
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
from backend.domain.schemas import dump_breakdown, load_breakdown
from backend.repository.interfaces import DataLoadError, MalformedRowHandler, PersistenceError
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

_Record = TypeVar("_Record")


_LISTING_COLUMNS = (
    "listing_id, owner_id, title, city, state, zip_code, latitude, longitude, "
    "total_sf, available_sf, min_divisible_sf, building_class, year_built, "
    "ada_accessible, parking_spaces, security_level, features, certifications, "
    "available_date, asking_rate_per_sf, min_lease_term_months, "
    "max_lease_term_months, status"
)

_OPPORTUNITY_COLUMNS = (
    "opportunity_id, title, solicitation_number, agency, city, state, zip_code, "
    "latitude, longitude, radius_miles, min_sf, max_sf, target_sf, "
    "building_classes, ada_required, required_features, required_certifications, "
    "parking_spaces_required, min_security_level, max_rate_per_sf, "
    "occupancy_date, response_deadline, firm_term_months, total_term_months, status"
)

_FEDERAL_COLUMNS = (
    "property_id, latitude, longitude, ownership, rentable_sf, vacant_sf, "
    "agency, city, state, construction_year, lease_expiration"
)

_MATCH_COLUMNS = (
    "listing_id, opportunity_id, overall_score, grade, qualified, competitive, "
    "breakdown, disqualifiers, strengths, weaknesses, recommendations, "
    "created_at, updated_at"
)

# Demo metros used by the synthetic seed: (city, state, lat, lng).
_SEED_METROS = (
    ("Washington", "DC", 38.9072, -77.0369),
    ("Arlington", "VA", 38.8816, -77.0910),
    ("Denver", "CO", 39.7392, -104.9903),
    ("Atlanta", "GA", 33.7490, -84.3880),
    ("Kansas City", "MO", 39.0997, -94.5786),
    ("San Francisco", "CA", 37.7749, -122.4194),
)
_SEED_AGENCIES = (
    "General Services Administration",
    "Department of Veterans Affairs",
    "Social Security Administration",
    "Internal Revenue Service",
    "Department of Homeland Security",
)
_SEED_FEATURES = (
    "fiber",
    "backup_power",
    "loading_dock",
    "security24x7",
    "secure_access",
    "scif",
    "data_center",
)
_SEED_CERTIFICATIONS = ("LEED Gold", "LEED Silver", "Energy Star")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _date_or_none(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    return date.fromisoformat(str(value))


def _iso_or_none(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _int_or_none(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _float_or_none(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _json_list(value: Any) -> list[Any]:
    if value is None or value == "":
        return []
    return list(json.loads(value))


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Listings (
                        listing_id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        city TEXT,
                        state TEXT,
                        zip_code TEXT,
                        latitude REAL,
                        longitude REAL,
                        total_sf INTEGER,
                        available_sf INTEGER,
                        min_divisible_sf INTEGER,
                        building_class TEXT,
                        year_built INTEGER,
                        ada_accessible INTEGER NOT NULL DEFAULT 0,
                        parking_spaces INTEGER,
                        security_level INTEGER,
                        features TEXT NOT NULL DEFAULT '[]',
                        certifications TEXT NOT NULL DEFAULT '[]',
                        available_date TEXT,
                        asking_rate_per_sf REAL,
                        min_lease_term_months INTEGER,
                        max_lease_term_months INTEGER,
                        status TEXT NOT NULL DEFAULT 'active',
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Opportunities (
                        opportunity_id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        solicitation_number TEXT,
                        agency TEXT,
                        city TEXT,
                        state TEXT,
                        zip_code TEXT,
                        latitude REAL,
                        longitude REAL,
                        radius_miles REAL,
                        min_sf INTEGER,
                        max_sf INTEGER,
                        target_sf INTEGER,
                        building_classes TEXT NOT NULL DEFAULT '[]',
                        ada_required INTEGER NOT NULL DEFAULT 0,
                        required_features TEXT NOT NULL DEFAULT '[]',
                        required_certifications TEXT NOT NULL DEFAULT '[]',
                        parking_spaces_required INTEGER,
                        min_security_level INTEGER,
                        max_rate_per_sf REAL,
                        occupancy_date TEXT,
                        response_deadline TEXT,
                        firm_term_months INTEGER,
                        total_term_months INTEGER,
                        status TEXT NOT NULL DEFAULT 'active',
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ExperienceProfiles (
                        owner_id TEXT PRIMARY KEY,
                        government_lease_experience INTEGER NOT NULL DEFAULT 0,
                        government_leases_count INTEGER NOT NULL DEFAULT 0,
                        gsa_certified INTEGER NOT NULL DEFAULT 0,
                        references_count INTEGER NOT NULL DEFAULT 0,
                        willing_to_build_to_suit INTEGER NOT NULL DEFAULT 1,
                        willing_to_provide_improvements INTEGER NOT NULL DEFAULT 1,
                        converted_matches_count INTEGER NOT NULL DEFAULT 0
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS PropertyMatches (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        listing_id TEXT NOT NULL,
                        opportunity_id TEXT NOT NULL,
                        overall_score INTEGER NOT NULL CHECK (overall_score BETWEEN 0 AND 100),
                        grade TEXT NOT NULL,
                        qualified INTEGER NOT NULL CHECK (qualified IN (0,1)),
                        competitive INTEGER NOT NULL CHECK (competitive IN (0,1)),
                        breakdown TEXT NOT NULL,
                        disqualifiers TEXT NOT NULL DEFAULT '[]',
                        strengths TEXT NOT NULL DEFAULT '[]',
                        weaknesses TEXT NOT NULL DEFAULT '[]',
                        recommendations TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        UNIQUE (listing_id, opportunity_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS FederalProperties (
                        property_id TEXT PRIMARY KEY,
                        latitude REAL NOT NULL,
                        longitude REAL NOT NULL,
                        ownership TEXT NOT NULL CHECK (ownership IN ('leased','owned')),
                        rentable_sf INTEGER NOT NULL DEFAULT 0,
                        vacant_sf INTEGER NOT NULL DEFAULT 0,
                        agency TEXT,
                        city TEXT,
                        state TEXT,
                        construction_year INTEGER,
                        lease_expiration TEXT
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS FederalDensityScores (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        latitude REAL NOT NULL,
                        longitude REAL NOT NULL,
                        radius_miles REAL NOT NULL,
                        total_properties INTEGER NOT NULL,
                        leased_properties INTEGER NOT NULL,
                        owned_properties INTEGER NOT NULL,
                        total_rsf INTEGER NOT NULL,
                        vacant_rsf INTEGER NOT NULL,
                        density_per_sq_mile REAL NOT NULL,
                        rsf_per_sq_mile REAL NOT NULL,
                        score INTEGER NOT NULL,
                        percentile INTEGER NOT NULL,
                        calculated_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        UNIQUE (latitude, longitude, radius_miles)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS BatchRuns (
                        run_id TEXT PRIMARY KEY,
                        state TEXT NOT NULL,
                        min_score INTEGER NOT NULL,
                        listings_considered INTEGER NOT NULL DEFAULT 0,
                        opportunities_considered INTEGER NOT NULL DEFAULT 0,
                        processed INTEGER NOT NULL DEFAULT 0,
                        matched INTEGER NOT NULL DEFAULT 0,
                        skipped INTEGER NOT NULL DEFAULT 0,
                        failed INTEGER NOT NULL DEFAULT 0,
                        unevaluated INTEGER NOT NULL DEFAULT 0,
                        timed_out INTEGER NOT NULL DEFAULT 0,
                        skip_reasons TEXT NOT NULL DEFAULT '{}',
                        errors TEXT NOT NULL DEFAULT '[]',
                        started_at TEXT NOT NULL,
                        finished_at TEXT,
                        duration_ms INTEGER NOT NULL DEFAULT 0,
                        failure_reason TEXT
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_listings_status
                    ON Listings(status);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_opportunities_status_deadline
                    ON Opportunities(status, response_deadline);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_federal_properties_lat_lng
                    ON FederalProperties(latitude, longitude);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_federal_properties_lease_expiration
                    ON FederalProperties(ownership, lease_expiration);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_matches_opportunity
                    ON PropertyMatches(opportunity_id);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database initialization failed: {exc}") from exc

    def seed_synthetic_data(self) -> None:
        """Seed deterministic demo listings, opportunities and inventory when empty."""
        rng = random.Random(self._settings.synthetic_random_seed)
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Listings;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Synthetic data already present; skipping seed")
                    return
        except sqlite3.Error as exc:
            raise PersistenceError(f"Synthetic data seeding failed: {exc}") from exc

        today = _utc_now().date()
        listings = [
            self._synthetic_listing(rng, index, today)
            for index in range(self._settings.synthetic_listing_count)
        ]
        opportunities = [
            self._synthetic_opportunity(rng, index, today)
            for index in range(self._settings.synthetic_opportunity_count)
        ]
        owners = sorted({listing.owner_id for listing in listings})
        profiles = [
            ExperienceProfile(
                owner_id=owner_id,
                government_lease_experience=rng.random() < 0.5,
                government_leases_count=rng.randint(0, 8),
                gsa_certified=rng.random() < 0.3,
                references_count=rng.randint(0, 4),
                converted_matches_count=rng.randint(0, 3),
            )
            for owner_id in owners[: max(1, len(owners) // 2)]
        ]
        federal_properties = [
            self._synthetic_federal_property(rng, index, today)
            for index in range(self._settings.synthetic_federal_property_count)
        ]

        for listing in listings:
            self.save_listing(listing)
        for opportunity in opportunities:
            self.save_opportunity(opportunity)
        for profile in profiles:
            self.save_experience_profile(profile)
        self.save_federal_properties(federal_properties)
        logger.info(
            "Synthetic seed completed | listings=%s | opportunities=%s | federal_properties=%s",
            len(listings),
            len(opportunities),
            len(federal_properties),
        )

    @staticmethod
    def _jitter(rng: random.Random, lat: float, lng: float, spread: float) -> tuple[float, float]:
        return (
            round(lat + rng.uniform(-spread, spread), 6),
            round(lng + rng.uniform(-spread, spread), 6),
        )

    def _synthetic_listing(self, rng: random.Random, index: int, today: date) -> Listing:
        city, state, lat, lng = rng.choice(_SEED_METROS)
        latitude, longitude = self._jitter(rng, lat, lng, 0.12)
        total_sf = rng.randrange(8_000, 120_000, 500)
        available_sf = rng.randrange(4_000, total_sf + 1, 500)
        building_class = rng.choice(("A+", "A", "A", "B", "B", "C"))
        feature_count = rng.randint(0, 4)
        return Listing(
            listing_id=f"LST-{index + 1:04d}",
            owner_id=f"OWN-{(index % 8) + 1:03d}",
            title=f"{building_class} office at {city} site {index + 1}",
            city=city,
            state=state,
            zip_code=None,
            latitude=latitude,
            longitude=longitude,
            total_sf=total_sf,
            available_sf=available_sf,
            building_class=building_class,
            ada_accessible=rng.random() < 0.85,
            available_date=today + timedelta(days=rng.randint(-30, 240)),
            status=STATUS_ACTIVE if rng.random() < 0.9 else STATUS_DRAFT,
            min_divisible_sf=(
                rng.randrange(2_000, available_sf + 1, 500) if rng.random() < 0.4 else None
            ),
            year_built=rng.randint(1965, 2022),
            parking_spaces=rng.randint(0, 400),
            security_level=rng.randint(1, 4),
            features=frozenset(rng.sample(_SEED_FEATURES, feature_count)),
            certifications=tuple(
                rng.sample(_SEED_CERTIFICATIONS, rng.randint(0, 1))
            ),
            asking_rate_per_sf=round(rng.uniform(18.0, 70.0), 2),
            min_lease_term_months=rng.choice((36, 60, 60, 120)),
            max_lease_term_months=rng.choice((120, 180, 240)),
        )

    def _synthetic_opportunity(self, rng: random.Random, index: int, today: date) -> Opportunity:
        city, state, lat, lng = rng.choice(_SEED_METROS)
        latitude, longitude = self._jitter(rng, lat, lng, 0.03)
        min_sf = rng.randrange(5_000, 60_000, 1_000)
        max_sf = min_sf + rng.randrange(2_000, 30_000, 1_000)
        response_deadline = today + timedelta(days=rng.randint(14, 120))
        return Opportunity(
            opportunity_id=f"OPP-{index + 1:04d}",
            title=f"{city} federal office lease {index + 1}",
            state=state,
            city=city,
            latitude=latitude,
            longitude=longitude,
            min_sf=min_sf,
            max_sf=max_sf,
            response_deadline=response_deadline,
            solicitation_number=f"{state}-{today.year}-{index + 1:04d}",
            agency=rng.choice(_SEED_AGENCIES),
            radius_miles=rng.choice((None, 5.0, 10.0, 15.0)),
            target_sf=(min_sf + max_sf) // 2,
            building_classes=rng.choice((("A",), ("A", "B"), ("B", "C"), ())),
            ada_required=rng.random() < 0.8,
            required_features=frozenset(rng.sample(_SEED_FEATURES[:5], rng.randint(0, 2))),
            required_certifications=tuple(
                rng.sample(_SEED_CERTIFICATIONS, rng.randint(0, 1))
            ),
            parking_spaces_required=rng.choice((None, 20, 50, 100)),
            min_security_level=rng.choice((None, 2, 3)),
            max_rate_per_sf=rng.choice((None, 35.0, 45.0, 60.0)),
            occupancy_date=response_deadline + timedelta(days=rng.randint(90, 360)),
            firm_term_months=rng.choice((60, 120)),
            total_term_months=rng.choice((120, 180)),
        )

    def _synthetic_federal_property(
        self, rng: random.Random, index: int, today: date
    ) -> FederalProperty:
        city, state, lat, lng = rng.choice(_SEED_METROS)
        latitude, longitude = self._jitter(rng, lat, lng, 0.25)
        rentable_sf = rng.randrange(2_000, 400_000, 500)
        leased = rng.random() < 0.6
        return FederalProperty(
            property_id=f"FED-{index + 1:05d}",
            latitude=latitude,
            longitude=longitude,
            ownership=OWNERSHIP_LEASED if leased else OWNERSHIP_OWNED,
            rentable_sf=rentable_sf,
            vacant_sf=int(rentable_sf * rng.choice((0.0, 0.0, 0.05, 0.15))),
            agency=rng.choice(_SEED_AGENCIES),
            city=city,
            state=state,
            construction_year=rng.randint(1930, 2020),
            lease_expiration=(
                today + timedelta(days=rng.randint(30, 3_650)) if leased else None
            ),
        )

    def save_listing(self, listing: Listing) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT OR REPLACE INTO Listings ({_LISTING_COLUMNS})
                    VALUES ({", ".join("?" for _ in range(23))});
                    """,
                    (
                        listing.listing_id,
                        listing.owner_id,
                        listing.title,
                        listing.city,
                        listing.state,
                        listing.zip_code,
                        listing.latitude,
                        listing.longitude,
                        listing.total_sf,
                        listing.available_sf,
                        listing.min_divisible_sf,
                        listing.building_class,
                        listing.year_built,
                        int(listing.ada_accessible),
                        listing.parking_spaces,
                        listing.security_level,
                        json.dumps(sorted(listing.features)),
                        json.dumps(list(listing.certifications)),
                        _iso_or_none(listing.available_date),
                        listing.asking_rate_per_sf,
                        listing.min_lease_term_months,
                        listing.max_lease_term_months,
                        listing.status,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Saving listing {listing.listing_id} failed: {exc}") from exc

    def save_opportunity(self, opportunity: Opportunity) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT OR REPLACE INTO Opportunities ({_OPPORTUNITY_COLUMNS})
                    VALUES ({", ".join("?" for _ in range(25))});
                    """,
                    (
                        opportunity.opportunity_id,
                        opportunity.title,
                        opportunity.solicitation_number,
                        opportunity.agency,
                        opportunity.city,
                        opportunity.state,
                        opportunity.zip_code,
                        opportunity.latitude,
                        opportunity.longitude,
                        opportunity.radius_miles,
                        opportunity.min_sf,
                        opportunity.max_sf,
                        opportunity.target_sf,
                        json.dumps(list(opportunity.building_classes)),
                        int(opportunity.ada_required),
                        json.dumps(sorted(opportunity.required_features)),
                        json.dumps(list(opportunity.required_certifications)),
                        opportunity.parking_spaces_required,
                        opportunity.min_security_level,
                        opportunity.max_rate_per_sf,
                        _iso_or_none(opportunity.occupancy_date),
                        _iso_or_none(opportunity.response_deadline),
                        opportunity.firm_term_months,
                        opportunity.total_term_months,
                        opportunity.status,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Saving opportunity {opportunity.opportunity_id} failed: {exc}"
            ) from exc

    def save_experience_profile(self, profile: ExperienceProfile) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO ExperienceProfiles (
                        owner_id,
                        government_lease_experience,
                        government_leases_count,
                        gsa_certified,
                        references_count,
                        willing_to_build_to_suit,
                        willing_to_provide_improvements,
                        converted_matches_count
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        profile.owner_id,
                        int(profile.government_lease_experience),
                        profile.government_leases_count,
                        int(profile.gsa_certified),
                        profile.references_count,
                        int(profile.willing_to_build_to_suit),
                        int(profile.willing_to_provide_improvements),
                        profile.converted_matches_count,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Saving experience profile {profile.owner_id} failed: {exc}"
            ) from exc

    def save_federal_properties(self, properties: Iterable[FederalProperty]) -> None:
        rows = [
            (
                item.property_id,
                item.latitude,
                item.longitude,
                item.ownership,
                item.rentable_sf,
                item.vacant_sf,
                item.agency,
                item.city,
                item.state,
                item.construction_year,
                _iso_or_none(item.lease_expiration),
            )
            for item in properties
        ]
        if not rows:
            return
        try:
            with self._connect() as conn:
                conn.executemany(
                    f"""
                    INSERT OR REPLACE INTO FederalProperties ({_FEDERAL_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    rows,
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Saving federal properties failed: {exc}") from exc

    @staticmethod
    def _row_to_listing(row: sqlite3.Row) -> Listing:
        return Listing(
            listing_id=str(row["listing_id"]),
            owner_id=str(row["owner_id"]),
            title=str(row["title"]),
            city=row["city"],
            state=row["state"],
            zip_code=row["zip_code"],
            latitude=_float_or_none(row["latitude"]),
            longitude=_float_or_none(row["longitude"]),
            total_sf=_int_or_none(row["total_sf"]),
            available_sf=_int_or_none(row["available_sf"]),
            building_class=row["building_class"],
            ada_accessible=bool(row["ada_accessible"]),
            available_date=_date_or_none(row["available_date"]),
            status=str(row["status"]),
            min_divisible_sf=_int_or_none(row["min_divisible_sf"]),
            year_built=_int_or_none(row["year_built"]),
            parking_spaces=_int_or_none(row["parking_spaces"]),
            security_level=_int_or_none(row["security_level"]),
            features=frozenset(_json_list(row["features"])),
            certifications=tuple(_json_list(row["certifications"])),
            asking_rate_per_sf=_float_or_none(row["asking_rate_per_sf"]),
            min_lease_term_months=_int_or_none(row["min_lease_term_months"]),
            max_lease_term_months=_int_or_none(row["max_lease_term_months"]),
        )

    @staticmethod
    def _row_to_opportunity(row: sqlite3.Row) -> Opportunity:
        return Opportunity(
            opportunity_id=str(row["opportunity_id"]),
            title=str(row["title"]),
            state=row["state"],
            city=row["city"],
            latitude=_float_or_none(row["latitude"]),
            longitude=_float_or_none(row["longitude"]),
            min_sf=_int_or_none(row["min_sf"]),
            max_sf=_int_or_none(row["max_sf"]),
            response_deadline=_date_or_none(row["response_deadline"]),
            status=str(row["status"]),
            solicitation_number=row["solicitation_number"],
            agency=row["agency"],
            zip_code=row["zip_code"],
            radius_miles=_float_or_none(row["radius_miles"]),
            target_sf=_int_or_none(row["target_sf"]),
            building_classes=tuple(_json_list(row["building_classes"])),
            ada_required=bool(row["ada_required"]),
            required_features=frozenset(_json_list(row["required_features"])),
            required_certifications=tuple(_json_list(row["required_certifications"])),
            parking_spaces_required=_int_or_none(row["parking_spaces_required"]),
            min_security_level=_int_or_none(row["min_security_level"]),
            max_rate_per_sf=_float_or_none(row["max_rate_per_sf"]),
            occupancy_date=_date_or_none(row["occupancy_date"]),
            firm_term_months=_int_or_none(row["firm_term_months"]),
            total_term_months=_int_or_none(row["total_term_months"]),
        )

    @staticmethod
    def _row_to_federal_property(row: sqlite3.Row) -> FederalProperty:
        return FederalProperty(
            property_id=str(row["property_id"]),
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            ownership=str(row["ownership"]),
            rentable_sf=int(row["rentable_sf"]),
            vacant_sf=int(row["vacant_sf"]),
            agency=row["agency"],
            city=row["city"],
            state=row["state"],
            construction_year=_int_or_none(row["construction_year"]),
            lease_expiration=_date_or_none(row["lease_expiration"]),
        )

    @staticmethod
    def _row_to_persisted_match(row: sqlite3.Row) -> PersistedMatch:
        return PersistedMatch(
            match=MatchScore(
                listing_id=str(row["listing_id"]),
                opportunity_id=str(row["opportunity_id"]),
                overall_score=int(row["overall_score"]),
                grade=str(row["grade"]),
                qualified=bool(row["qualified"]),
                competitive=bool(row["competitive"]),
                breakdown=load_breakdown(str(row["breakdown"])),
                disqualifiers=tuple(_json_list(row["disqualifiers"])),
                strengths=tuple(_json_list(row["strengths"])),
                weaknesses=tuple(_json_list(row["weaknesses"])),
                recommendations=tuple(_json_list(row["recommendations"])),
            ),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def _fetch_all(self, query: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params)
                return cursor.fetchall()
        except sqlite3.Error as exc:
            raise DataLoadError(f"Query failed: {exc}") from exc

    def _fetch_count(self, query: str, params: tuple[Any, ...] = ()) -> int:
        rows = self._fetch_all(query, params)
        return int(rows[0]["count"]) if rows else 0

    @staticmethod
    def _decode_rows(
        rows: list[sqlite3.Row],
        decode: Callable[[sqlite3.Row], _Record],
        id_column: str,
        on_malformed: Optional[MalformedRowHandler] = None,
    ) -> list[_Record]:
        """Decode rows one at a time; a corrupt row is reported and skipped."""
        records: list[_Record] = []
        for row in rows:
            try:
                records.append(decode(row))
            except (ValueError, TypeError, KeyError) as exc:
                record_id = str(row[id_column])
                logger.warning(
                    "Skipping malformed row | id=%s | error=%s: %s",
                    record_id,
                    type(exc).__name__,
                    exc,
                )
                if on_malformed is not None:
                    on_malformed(record_id, exc)
        return records

    def list_active_listings(
        self,
        on_malformed: Optional[MalformedRowHandler] = None,
    ) -> list[Listing]:
        rows = self._fetch_all(
            f"""
            SELECT {_LISTING_COLUMNS}
            FROM Listings
            WHERE status = ?
            ORDER BY listing_id ASC;
            """,
            (STATUS_ACTIVE,),
        )
        return self._decode_rows(rows, self._row_to_listing, "listing_id", on_malformed)

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        rows = self._fetch_all(
            f"SELECT {_LISTING_COLUMNS} FROM Listings WHERE listing_id = ?;",
            (listing_id,),
        )
        return self._row_to_listing(rows[0]) if rows else None

    def count_active_listings(self) -> int:
        return self._fetch_count(
            "SELECT COUNT(*) AS count FROM Listings WHERE status = ?;",
            (STATUS_ACTIVE,),
        )

    def list_listings_for_owner(self, owner_id: str) -> list[Listing]:
        rows = self._fetch_all(
            f"""
            SELECT {_LISTING_COLUMNS}
            FROM Listings
            WHERE owner_id = ?
            ORDER BY listing_id ASC;
            """,
            (owner_id,),
        )
        return self._decode_rows(rows, self._row_to_listing, "listing_id")

    def list_open_opportunities(
        self,
        as_of: date,
        on_malformed: Optional[MalformedRowHandler] = None,
    ) -> list[Opportunity]:
        """Active opportunities whose response deadline has not passed."""
        rows = self._fetch_all(
            f"""
            SELECT {_OPPORTUNITY_COLUMNS}
            FROM Opportunities
            WHERE status = ?
              AND (response_deadline IS NULL OR response_deadline >= ?)
            ORDER BY opportunity_id ASC;
            """,
            (STATUS_ACTIVE, as_of.isoformat()),
        )
        return self._decode_rows(
            rows,
            self._row_to_opportunity,
            "opportunity_id",
            on_malformed,
        )

    def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        rows = self._fetch_all(
            f"SELECT {_OPPORTUNITY_COLUMNS} FROM Opportunities WHERE opportunity_id = ?;",
            (opportunity_id,),
        )
        return self._row_to_opportunity(rows[0]) if rows else None

    def count_open_opportunities(self, as_of: date) -> int:
        return self._fetch_count(
            """
            SELECT COUNT(*) AS count
            FROM Opportunities
            WHERE status = ?
              AND (response_deadline IS NULL OR response_deadline >= ?);
            """,
            (STATUS_ACTIVE, as_of.isoformat()),
        )

    def get_experience_profile(self, owner_id: str) -> Optional[ExperienceProfile]:
        rows = self._fetch_all(
            "SELECT * FROM ExperienceProfiles WHERE owner_id = ?;",
            (owner_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return ExperienceProfile(
            owner_id=str(row["owner_id"]),
            government_lease_experience=bool(row["government_lease_experience"]),
            government_leases_count=int(row["government_leases_count"]),
            gsa_certified=bool(row["gsa_certified"]),
            references_count=int(row["references_count"]),
            willing_to_build_to_suit=bool(row["willing_to_build_to_suit"]),
            willing_to_provide_improvements=bool(row["willing_to_provide_improvements"]),
            converted_matches_count=int(row["converted_matches_count"]),
        )

    def upsert_match(self, match: MatchScore) -> PersistedMatch:
        """Insert or replace the pair's score; `created_at` survives updates."""
        now = _utc_now().isoformat()
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"""
                    INSERT INTO PropertyMatches ({_MATCH_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (listing_id, opportunity_id) DO UPDATE SET
                        overall_score = excluded.overall_score,
                        grade = excluded.grade,
                        qualified = excluded.qualified,
                        competitive = excluded.competitive,
                        breakdown = excluded.breakdown,
                        disqualifiers = excluded.disqualifiers,
                        strengths = excluded.strengths,
                        weaknesses = excluded.weaknesses,
                        recommendations = excluded.recommendations,
                        updated_at = excluded.updated_at;
                    """,
                    (
                        match.listing_id,
                        match.opportunity_id,
                        match.overall_score,
                        match.grade,
                        int(match.qualified),
                        int(match.competitive),
                        dump_breakdown(match.breakdown),
                        json.dumps(list(match.disqualifiers)),
                        json.dumps(list(match.strengths)),
                        json.dumps(list(match.weaknesses)),
                        json.dumps(list(match.recommendations)),
                        now,
                        now,
                    ),
                )
                cursor.execute(
                    f"""
                    SELECT {_MATCH_COLUMNS}
                    FROM PropertyMatches
                    WHERE listing_id = ? AND opportunity_id = ?;
                    """,
                    (match.listing_id, match.opportunity_id),
                )
                row = cursor.fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Upserting match {match.listing_id}/{match.opportunity_id} failed: {exc}"
            ) from exc
        return self._row_to_persisted_match(row)

    def get_match(self, listing_id: str, opportunity_id: str) -> Optional[PersistedMatch]:
        rows = self._fetch_all(
            f"""
            SELECT {_MATCH_COLUMNS}
            FROM PropertyMatches
            WHERE listing_id = ? AND opportunity_id = ?;
            """,
            (listing_id, opportunity_id),
        )
        return self._row_to_persisted_match(rows[0]) if rows else None

    def list_matches(self) -> list[PersistedMatch]:
        rows = self._fetch_all(
            f"""
            SELECT {_MATCH_COLUMNS}
            FROM PropertyMatches
            ORDER BY overall_score DESC, listing_id ASC, opportunity_id ASC;
            """
        )
        return [self._row_to_persisted_match(row) for row in rows]

    def count_matches(self) -> int:
        return self._fetch_count("SELECT COUNT(*) AS count FROM PropertyMatches;")

    def _delete_matches(self, column: str, value: str) -> int:
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(f"DELETE FROM PropertyMatches WHERE {column} = ?;", (value,))
                return int(cursor.rowcount)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Deleting matches by {column} failed: {exc}") from exc

    def delete_matches_for_listing(self, listing_id: str) -> int:
        return self._delete_matches("listing_id", listing_id)

    def delete_matches_for_opportunity(self, opportunity_id: str) -> int:
        return self._delete_matches("opportunity_id", opportunity_id)

    def list_federal_properties_in_box(
        self,
        south: float,
        north: float,
        west: float,
        east: float,
    ) -> list[FederalProperty]:
        rows = self._fetch_all(
            f"""
            SELECT {_FEDERAL_COLUMNS}
            FROM FederalProperties
            WHERE latitude BETWEEN ? AND ?
              AND longitude BETWEEN ? AND ?;
            """,
            (south, north, west, east),
        )
        return [self._row_to_federal_property(row) for row in rows]

    def list_federal_properties_in_viewport(
        self,
        bounds: ViewportBounds,
        limit: int,
    ) -> list[FederalProperty]:
        rows = self._fetch_all(
            f"""
            SELECT {_FEDERAL_COLUMNS}
            FROM FederalProperties
            WHERE latitude BETWEEN ? AND ?
              AND longitude BETWEEN ? AND ?
            ORDER BY property_id ASC
            LIMIT ?;
            """,
            (bounds.south, bounds.north, bounds.west, bounds.east, limit),
        )
        return [self._row_to_federal_property(row) for row in rows]

    def sample_federal_properties(self, limit: int) -> list[FederalProperty]:
        """Evenly spaced, deterministic sample of the inventory."""
        rows = self._fetch_all(
            f"SELECT {_FEDERAL_COLUMNS} FROM FederalProperties ORDER BY property_id ASC;"
        )
        if limit <= 0:
            return []
        if len(rows) > limit:
            step = len(rows) / limit
            rows = [rows[int(index * step)] for index in range(limit)]
        return [self._row_to_federal_property(row) for row in rows]

    def list_expiring_federal_leases(
        self,
        start: date,
        end: date,
        state: Optional[str] = None,
    ) -> list[FederalProperty]:
        """Leased properties whose lease ends in [start, end], soonest first."""
        query = f"""
            SELECT {_FEDERAL_COLUMNS}
            FROM FederalProperties
            WHERE ownership = ?
              AND lease_expiration IS NOT NULL
              AND lease_expiration BETWEEN ? AND ?
        """
        params: list[Any] = [OWNERSHIP_LEASED, start.isoformat(), end.isoformat()]
        if state is not None:
            query += " AND state = ?"
            params.append(state)
        query += " ORDER BY lease_expiration ASC, property_id ASC;"
        rows = self._fetch_all(query, tuple(params))
        return self._decode_rows(rows, self._row_to_federal_property, "property_id")

    def save_density_score(self, score: FederalDensityScore) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO FederalDensityScores (
                        latitude,
                        longitude,
                        radius_miles,
                        total_properties,
                        leased_properties,
                        owned_properties,
                        total_rsf,
                        vacant_rsf,
                        density_per_sq_mile,
                        rsf_per_sq_mile,
                        score,
                        percentile,
                        calculated_at,
                        expires_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (latitude, longitude, radius_miles) DO UPDATE SET
                        total_properties = excluded.total_properties,
                        leased_properties = excluded.leased_properties,
                        owned_properties = excluded.owned_properties,
                        total_rsf = excluded.total_rsf,
                        vacant_rsf = excluded.vacant_rsf,
                        density_per_sq_mile = excluded.density_per_sq_mile,
                        rsf_per_sq_mile = excluded.rsf_per_sq_mile,
                        score = excluded.score,
                        percentile = excluded.percentile,
                        calculated_at = excluded.calculated_at,
                        expires_at = excluded.expires_at;
                    """,
                    (
                        score.latitude,
                        score.longitude,
                        score.radius_miles,
                        score.total_properties,
                        score.leased_properties,
                        score.owned_properties,
                        score.total_rsf,
                        score.vacant_rsf,
                        score.density_per_sq_mile,
                        score.rsf_per_sq_mile,
                        score.score,
                        score.percentile,
                        score.calculated_at.isoformat(),
                        score.expires_at.isoformat(),
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Saving density score failed: {exc}") from exc

    def list_density_scores(self, now: datetime) -> list[FederalDensityScore]:
        """Cached density rows that have not expired at `now`."""
        rows = self._fetch_all(
            """
            SELECT *
            FROM FederalDensityScores
            WHERE expires_at > ?
            ORDER BY calculated_at DESC;
            """,
            (now.isoformat(),),
        )
        return [
            FederalDensityScore(
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                radius_miles=float(row["radius_miles"]),
                total_properties=int(row["total_properties"]),
                leased_properties=int(row["leased_properties"]),
                owned_properties=int(row["owned_properties"]),
                total_rsf=int(row["total_rsf"]),
                vacant_rsf=int(row["vacant_rsf"]),
                density_per_sq_mile=float(row["density_per_sq_mile"]),
                rsf_per_sq_mile=float(row["rsf_per_sq_mile"]),
                score=int(row["score"]),
                percentile=int(row["percentile"]),
                calculated_at=datetime.fromisoformat(str(row["calculated_at"])),
                expires_at=datetime.fromisoformat(str(row["expires_at"])),
            )
            for row in rows
        ]

    def save_batch_run(self, stats: BatchStats) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO BatchRuns (
                        run_id,
                        state,
                        min_score,
                        listings_considered,
                        opportunities_considered,
                        processed,
                        matched,
                        skipped,
                        failed,
                        unevaluated,
                        timed_out,
                        skip_reasons,
                        errors,
                        started_at,
                        finished_at,
                        duration_ms,
                        failure_reason
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        stats.run_id,
                        stats.state,
                        stats.min_score,
                        stats.listings_considered,
                        stats.opportunities_considered,
                        stats.processed,
                        stats.matched,
                        stats.skipped,
                        stats.failed,
                        stats.unevaluated,
                        int(stats.timed_out),
                        json.dumps(stats.skip_reasons, sort_keys=True),
                        json.dumps(stats.errors),
                        stats.started_at.isoformat(),
                        stats.finished_at.isoformat() if stats.finished_at else None,
                        stats.duration_ms,
                        stats.failure_reason,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Saving batch run {stats.run_id} failed: {exc}") from exc

    def list_batch_runs(self, limit: int) -> list[BatchStats]:
        """Most recent runs first."""
        rows = self._fetch_all(
            """
            SELECT *
            FROM BatchRuns
            ORDER BY started_at DESC
            LIMIT ?;
            """,
            (limit,),
        )
        return [
            BatchStats(
                run_id=str(row["run_id"]),
                state=str(row["state"]),
                started_at=datetime.fromisoformat(str(row["started_at"])),
                min_score=int(row["min_score"]),
                listings_considered=int(row["listings_considered"]),
                opportunities_considered=int(row["opportunities_considered"]),
                processed=int(row["processed"]),
                matched=int(row["matched"]),
                skipped=int(row["skipped"]),
                failed=int(row["failed"]),
                unevaluated=int(row["unevaluated"]),
                timed_out=bool(row["timed_out"]),
                skip_reasons=dict(json.loads(row["skip_reasons"])),
                errors=list(json.loads(row["errors"])),
                finished_at=(
                    datetime.fromisoformat(str(row["finished_at"]))
                    if row["finished_at"]
                    else None
                ),
                duration_ms=int(row["duration_ms"]),
                failure_reason=row["failure_reason"],
            )
            for row in rows
        ]
