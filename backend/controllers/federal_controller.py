"""Controller layer for federal density lookups and map data."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from backend.controllers.dependencies import get_density_service
from backend.domain.models import FederalProperty, ViewportBounds
from backend.services.density_service import (
    DEFAULT_EXPIRING_MONTHS_AHEAD,
    DensityValidationError,
    FederalDensityService,
)
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/api/federal", tags=["federal"])


class NeighborhoodScoreResponse(BaseModel):
    latitude: float
    longitude: float
    radius_miles: float = Field(gt=0.0)
    score: int = Field(ge=0, le=100)
    percentile: int = Field(ge=0, le=100)
    total_properties: int = Field(ge=0)
    leased_properties: int = Field(ge=0)
    owned_properties: int = Field(ge=0)
    total_rsf: int = Field(ge=0)
    vacant_rsf: int = Field(ge=0)
    density_per_sq_mile: float = Field(ge=0.0)
    rsf_per_sq_mile: float = Field(ge=0.0)
    calculated_at: datetime
    expires_at: datetime


class FederalPropertyRow(BaseModel):
    property_id: str
    latitude: float
    longitude: float
    ownership: str
    rentable_sf: int
    vacant_sf: int
    agency: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    construction_year: Optional[int] = None
    lease_expiration: Optional[date] = None
    distance_miles: Optional[float] = None

    @classmethod
    def from_property(
        cls,
        item: FederalProperty,
        distance_miles: Optional[float] = None,
    ) -> "FederalPropertyRow":
        return cls(
            property_id=item.property_id,
            latitude=item.latitude,
            longitude=item.longitude,
            ownership=item.ownership,
            rentable_sf=item.rentable_sf,
            vacant_sf=item.vacant_sf,
            agency=item.agency,
            city=item.city,
            state=item.state,
            construction_year=item.construction_year,
            lease_expiration=item.lease_expiration,
            distance_miles=distance_miles,
        )


class PropertyListResponse(BaseModel):
    count: int = Field(ge=0)
    properties: list[FederalPropertyRow]


class ExpiringLeaseRow(FederalPropertyRow):
    days_until_expiration: int = Field(ge=0)
    months_until_expiration: int = Field(ge=0)
    urgency: str


class ExpiringLeasesResponse(BaseModel):
    as_of: date
    window_end: date
    months_ahead: int = Field(ge=1)
    state: str
    count: int = Field(ge=0)
    total_rsf: int = Field(ge=0)
    urgency_counts: dict[str, int]
    leases: list[ExpiringLeaseRow]


@router.get(
    "/neighborhood-score",
    response_model=NeighborhoodScoreResponse,
    status_code=status.HTTP_200_OK,
)
async def neighborhood_score(
    lat: float = Query(ge=-90.0, le=90.0),
    lng: float = Query(ge=-180.0, le=180.0),
    radius: Optional[float] = Query(default=None, gt=0.0),
    density_service: FederalDensityService = Depends(get_density_service),
) -> NeighborhoodScoreResponse:
    try:
        result = await run_in_threadpool(density_service.score, lat, lng, radius)
    except DensityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected neighborhood score failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to calculate neighborhood score",
        ) from exc
    return NeighborhoodScoreResponse(
        latitude=result.latitude,
        longitude=result.longitude,
        radius_miles=result.radius_miles,
        score=result.score,
        percentile=result.percentile,
        total_properties=result.total_properties,
        leased_properties=result.leased_properties,
        owned_properties=result.owned_properties,
        total_rsf=result.total_rsf,
        vacant_rsf=result.vacant_rsf,
        density_per_sq_mile=result.density_per_sq_mile,
        rsf_per_sq_mile=result.rsf_per_sq_mile,
        calculated_at=result.calculated_at,
        expires_at=result.expires_at,
    )


@router.get("/nearby", response_model=PropertyListResponse, status_code=status.HTTP_200_OK)
async def nearby_properties(
    lat: float = Query(ge=-90.0, le=90.0),
    lng: float = Query(ge=-180.0, le=180.0),
    radius: Optional[float] = Query(default=None, gt=0.0),
    density_service: FederalDensityService = Depends(get_density_service),
) -> PropertyListResponse:
    try:
        nearby = await run_in_threadpool(density_service.properties_nearby, lat, lng, radius)
    except DensityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected nearby properties failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load nearby properties",
        ) from exc
    rows = [
        FederalPropertyRow.from_property(item.property, item.distance_miles) for item in nearby
    ]
    return PropertyListResponse(count=len(rows), properties=rows)


@router.get("/viewport", response_model=PropertyListResponse, status_code=status.HTTP_200_OK)
async def viewport_properties(
    north: float = Query(ge=-90.0, le=90.0),
    south: float = Query(ge=-90.0, le=90.0),
    east: float = Query(ge=-180.0, le=180.0),
    west: float = Query(ge=-180.0, le=180.0),
    limit: Optional[int] = Query(default=None, gt=0),
    density_service: FederalDensityService = Depends(get_density_service),
) -> PropertyListResponse:
    bounds = ViewportBounds(north=north, south=south, east=east, west=west)
    try:
        properties = await run_in_threadpool(density_service.properties_in_viewport, bounds, limit)
    except DensityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected viewport query failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load viewport properties",
        ) from exc
    rows = [FederalPropertyRow.from_property(item) for item in properties]
    return PropertyListResponse(count=len(rows), properties=rows)


@router.get(
    "/expiring-leases",
    response_model=ExpiringLeasesResponse,
    status_code=status.HTTP_200_OK,
)
async def expiring_leases(
    months_ahead: int = Query(default=DEFAULT_EXPIRING_MONTHS_AHEAD, alias="monthsAhead"),
    state: Optional[str] = Query(default=None, max_length=2),
    density_service: FederalDensityService = Depends(get_density_service),
) -> ExpiringLeasesResponse:
    try:
        report = await run_in_threadpool(density_service.expiring_leases, months_ahead, state)
    except DensityValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected expiring leases failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load expiring leases",
        ) from exc
    rows = [
        ExpiringLeaseRow(
            **FederalPropertyRow.from_property(lease.property).model_dump(),
            days_until_expiration=lease.days_until_expiration,
            months_until_expiration=lease.months_until_expiration,
            urgency=lease.urgency,
        )
        for lease in report.leases
    ]
    return ExpiringLeasesResponse(
        as_of=report.as_of,
        window_end=report.window_end,
        months_ahead=report.months_ahead,
        state=report.state or "all",
        count=len(rows),
        total_rsf=report.total_rsf,
        urgency_counts=report.urgency_counts,
        leases=rows,
    )
