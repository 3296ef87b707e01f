"""Federal presence density around a point, with a TTL cache."""

from __future__ import annotations

import calendar
import math
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import numpy as np

from backend.domain.models import (
    OWNERSHIP_LEASED,
    OWNERSHIP_OWNED,
    URGENCY_CRITICAL,
    URGENCY_LEVELS,
    URGENCY_NORMAL,
    URGENCY_WARNING,
    ExpiringLease,
    ExpiringLeaseReport,
    FederalDensityScore,
    FederalProperty,
    ViewportBounds,
)
from backend.repository.interfaces import FederalPropertyRepository, PersistenceError
from backend.utils.config import Settings, get_settings
from backend.utils.geo import (
    EARTH_RADIUS_MILES,
    bounding_box,
    circle_area_sq_miles,
    round_half_up,
)
from backend.utils.logger import get_logger


logger = get_logger(__name__)

MAX_RADIUS_MILES = 100.0
MAX_EXPIRING_MONTHS_AHEAD = 60
DEFAULT_EXPIRING_MONTHS_AHEAD = 24
CRITICAL_LEASE_DAYS = 180
WARNING_LEASE_DAYS = 365


class DensityValidationError(ValueError):
    """Raised when coordinates, radius or viewport bounds are invalid."""


@dataclass(frozen=True)
class NearbyFederalProperty:
    property: FederalProperty
    distance_miles: float


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _distances_miles(
    lat: float,
    lng: float,
    latitudes: np.ndarray,
    longitudes: np.ndarray,
) -> np.ndarray:
    """Vectorized haversine from one point to many."""
    phi1 = np.radians(lat)
    phi2 = np.radians(latitudes)
    d_phi = phi2 - phi1
    d_lambda = np.radians(longitudes - lng)
    a = np.sin(d_phi / 2.0) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_MILES * np.arcsin(np.minimum(1.0, np.sqrt(a)))


def _validate_point(lat: float, lng: float) -> None:
    if lat is None or lng is None or not math.isfinite(lat) or not math.isfinite(lng):
        raise DensityValidationError("latitude and longitude are required")
    if not -90.0 <= lat <= 90.0:
        raise DensityValidationError("latitude must be between -90 and 90")
    if not -180.0 <= lng <= 180.0:
        raise DensityValidationError("longitude must be between -180 and 180")


def _validate_radius(radius_miles: float) -> None:
    if not math.isfinite(radius_miles) or radius_miles <= 0.0 or radius_miles > MAX_RADIUS_MILES:
        raise DensityValidationError(f"radius must be in (0, {MAX_RADIUS_MILES:g}] miles")


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def lease_urgency(days_until_expiration: int) -> str:
    if days_until_expiration <= CRITICAL_LEASE_DAYS:
        return URGENCY_CRITICAL
    if days_until_expiration <= WARNING_LEASE_DAYS:
        return URGENCY_WARNING
    return URGENCY_NORMAL


class FederalDensityService:
    """Scores how concentrated federal occupancy is around a location.

    Results are cached per rounded coordinate and radius. The map is guarded
    by a lock; two threads missing the same key may both compute it, and the
    last write wins with an identical value.
    """

    def __init__(
        self,
        repository: FederalPropertyRepository,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now
        self._lock = threading.RLock()
        self._cache: dict[tuple[float, float, float], FederalDensityScore] = {}
        self._reference: dict[float, np.ndarray] = {}

    @property
    def default_radius_miles(self) -> float:
        return self._settings.density_default_radius_miles

    def _cache_key(self, lat: float, lng: float, radius_miles: float) -> tuple[float, float, float]:
        precision = self._settings.density_coordinate_precision
        return (round(lat, precision), round(lng, precision), float(radius_miles))

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
            self._reference.clear()
        logger.info("Density cache cleared")

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    def _properties_within(
        self,
        lat: float,
        lng: float,
        radius_miles: float,
    ) -> list[tuple[FederalProperty, float]]:
        south, north, west, east = bounding_box(lat, lng, radius_miles)
        candidates = self._repository.list_federal_properties_in_box(south, north, west, east)
        if not candidates:
            return []
        distances = _distances_miles(
            lat,
            lng,
            np.array([item.latitude for item in candidates], dtype=float),
            np.array([item.longitude for item in candidates], dtype=float),
        )
        return [
            (item, float(distance))
            for item, distance in zip(candidates, distances)
            if distance <= radius_miles
        ]

    def _reference_distribution(self, radius_miles: float) -> np.ndarray:
        with self._lock:
            cached = self._reference.get(radius_miles)
        if cached is not None:
            return cached

        sample = self._repository.sample_federal_properties(
            self._settings.density_reference_sample_size
        )
        area = circle_area_sq_miles(radius_miles)
        densities = np.sort(
            np.array(
                [
                    len(self._properties_within(item.latitude, item.longitude, radius_miles)) / area
                    for item in sample
                ],
                dtype=float,
            )
        )
        with self._lock:
            self._reference[radius_miles] = densities
        logger.info(
            "Density reference built | radius=%s | samples=%s",
            radius_miles,
            len(densities),
        )
        return densities

    def _percentile(self, density: float, radius_miles: float) -> int:
        reference = self._reference_distribution(radius_miles)
        if reference.size == 0 or density <= 0.0:
            return 0
        rank = int(np.searchsorted(reference, density, side="right"))
        return max(0, min(100, round_half_up(100.0 * rank / reference.size)))

    def _saturating_score(self, density: float) -> int:
        saturation = self._settings.density_saturation_per_sq_mile
        return max(0, min(100, round_half_up(100.0 * (1.0 - math.exp(-density / saturation)))))

    def score(
        self,
        lat: float,
        lng: float,
        radius_miles: Optional[float] = None,
    ) -> FederalDensityScore:
        radius = float(radius_miles if radius_miles is not None else self.default_radius_miles)
        _validate_point(lat, lng)
        _validate_radius(radius)

        key = self._cache_key(lat, lng, radius)
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None and cached.expires_at > now:
            return cached

        key_lat, key_lng, _ = key
        nearby = self._properties_within(key_lat, key_lng, radius)
        area = circle_area_sq_miles(radius)
        leased = sum(1 for item, _ in nearby if item.ownership == OWNERSHIP_LEASED)
        owned = sum(1 for item, _ in nearby if item.ownership == OWNERSHIP_OWNED)
        total_rsf = sum(item.rentable_sf for item, _ in nearby)
        vacant_rsf = sum(item.vacant_sf for item, _ in nearby)
        density = len(nearby) / area

        result = FederalDensityScore(
            latitude=key_lat,
            longitude=key_lng,
            radius_miles=radius,
            total_properties=len(nearby),
            leased_properties=leased,
            owned_properties=owned,
            total_rsf=total_rsf,
            vacant_rsf=vacant_rsf,
            density_per_sq_mile=round(density, 4),
            rsf_per_sq_mile=round(total_rsf / area, 2),
            score=self._saturating_score(density),
            percentile=self._percentile(density, radius),
            calculated_at=now,
            expires_at=now + timedelta(seconds=self._settings.density_cache_ttl_seconds),
        )
        with self._lock:
            self._cache[key] = result

        try:
            self._repository.save_density_score(result)
        except PersistenceError as exc:
            logger.warning("Density score not recorded | key=%s | error=%s", key, exc)

        logger.debug(
            "Density scored | lat=%s | lng=%s | radius=%s | properties=%s | score=%s",
            key_lat,
            key_lng,
            radius,
            result.total_properties,
            result.score,
        )
        return result

    def properties_nearby(
        self,
        lat: float,
        lng: float,
        radius_miles: Optional[float] = None,
    ) -> list[NearbyFederalProperty]:
        radius = float(radius_miles if radius_miles is not None else self.default_radius_miles)
        _validate_point(lat, lng)
        _validate_radius(radius)
        nearby = self._properties_within(lat, lng, radius)
        nearby.sort(key=lambda pair: (pair[1], pair[0].property_id))
        return [
            NearbyFederalProperty(property=item, distance_miles=round(distance, 3))
            for item, distance in nearby
        ]

    def properties_in_viewport(
        self,
        bounds: ViewportBounds,
        limit: Optional[int] = None,
    ) -> list[FederalProperty]:
        if bounds.south > bounds.north:
            raise DensityValidationError("south must not exceed north")
        if bounds.west > bounds.east:
            raise DensityValidationError("west must not exceed east")
        _validate_point(bounds.south, bounds.west)
        _validate_point(bounds.north, bounds.east)
        cap = self._settings.density_viewport_limit
        effective_limit = cap if limit is None else max(1, min(limit, cap))
        return self._repository.list_federal_properties_in_viewport(bounds, effective_limit)

    def expiring_leases(
        self,
        months_ahead: int = DEFAULT_EXPIRING_MONTHS_AHEAD,
        state: Optional[str] = None,
    ) -> ExpiringLeaseReport:
        """Leased federal space ending within `months_ahead` months, soonest first."""
        if isinstance(months_ahead, bool) or not isinstance(months_ahead, int):
            raise DensityValidationError("months_ahead must be an integer")
        if not 1 <= months_ahead <= MAX_EXPIRING_MONTHS_AHEAD:
            raise DensityValidationError(
                f"months_ahead must be between 1 and {MAX_EXPIRING_MONTHS_AHEAD}"
            )
        state_code = state.strip().upper() if state is not None and state.strip() else None
        if state_code is not None and (len(state_code) != 2 or not state_code.isalpha()):
            raise DensityValidationError("state must be a two-letter code")

        as_of = self._clock().date()
        window_end = _add_months(as_of, months_ahead)
        properties = self._repository.list_expiring_federal_leases(as_of, window_end, state_code)

        leases = []
        for item in properties:
            days = (item.lease_expiration - as_of).days
            leases.append(
                ExpiringLease(
                    property=item,
                    days_until_expiration=days,
                    months_until_expiration=days // 30,
                    urgency=lease_urgency(days),
                )
            )
        urgency_counts = {level: 0 for level in URGENCY_LEVELS}
        for lease in leases:
            urgency_counts[lease.urgency] += 1

        logger.info(
            "Expiring leases listed | months_ahead=%s | state=%s | count=%s | critical=%s",
            months_ahead,
            state_code or "all",
            len(leases),
            urgency_counts[URGENCY_CRITICAL],
        )
        return ExpiringLeaseReport(
            as_of=as_of,
            window_end=window_end,
            months_ahead=months_ahead,
            state=state_code,
            leases=tuple(leases),
            total_rsf=sum(lease.property.rentable_sf for lease in leases),
            urgency_counts=urgency_counts,
        )
