"""Controller layer for batch matching triggers and on-demand pair scoring."""

from __future__ import annotations

from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from backend.controllers.dependencies import (
    get_matching_service,
    require_admin,
    require_cron_secret,
)
from backend.domain.models import BatchStats, MatchScore
from backend.domain.schemas import ScoreBreakdownRecord
from backend.services.density_service import DensityValidationError
from backend.services.matching_service import (
    BatchMatchingService,
    BatchValidationError,
    MatchNotFoundError,
)
from backend.services.scoring_service import MalformedRecordError
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["matching"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RunMatchingRequest(_CamelModel):
    min_score: Optional[int] = Field(default=None, ge=0, le=100, alias="minScore")


class RunStatsPayload(_CamelModel):
    processed: int = Field(ge=0)
    matched: int = Field(ge=0)
    skipped: int = Field(ge=0)
    failed: int = Field(ge=0)
    unevaluated: int = Field(ge=0)
    timed_out: bool = Field(alias="timedOut")
    duration_ms: int = Field(ge=0, alias="durationMs")
    skip_reasons: dict[str, int] = Field(alias="skipReasons")


class RunMatchingResponse(_CamelModel):
    success: bool
    run_id: str = Field(alias="runId")
    stats: RunStatsPayload
    errors: Optional[list[str]] = None


class RunFailureResponse(BaseModel):
    success: bool = False
    error: str


class StatusPayload(_CamelModel):
    total_matches: int = Field(ge=0, alias="totalMatches")
    active_listings: int = Field(ge=0, alias="activeListings")
    active_opportunities: int = Field(ge=0, alias="activeOpportunities")
    last_run_state: Optional[str] = Field(default=None, alias="lastRunState")
    last_run_finished_at: Optional[str] = Field(default=None, alias="lastRunFinishedAt")


class StatusResponse(BaseModel):
    success: bool = True
    status: StatusPayload


class CalculateMatchRequest(_CamelModel):
    listing_id: str = Field(min_length=1, alias="listingId")
    opportunity_id: str = Field(min_length=1, alias="opportunityId")


class MatchScoreResponse(BaseModel):
    listing_id: str
    opportunity_id: str
    overall_score: int = Field(ge=0, le=100)
    grade: str
    qualified: bool
    competitive: bool
    score_breakdown: ScoreBreakdownRecord
    disqualifiers: list[str]
    strengths: list[str]
    weaknesses: list[str]
    recommendations: list[str]

    @classmethod
    def from_match(cls, match: MatchScore) -> "MatchScoreResponse":
        return cls(
            listing_id=match.listing_id,
            opportunity_id=match.opportunity_id,
            overall_score=match.overall_score,
            grade=match.grade,
            qualified=match.qualified,
            competitive=match.competitive,
            score_breakdown=ScoreBreakdownRecord.from_breakdown(match.breakdown),
            disqualifiers=list(match.disqualifiers),
            strengths=list(match.strengths),
            weaknesses=list(match.weaknesses),
            recommendations=list(match.recommendations),
        )


def _failure_response(error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=RunFailureResponse(error=error).model_dump(),
    )


def _run_response(stats: BatchStats) -> Union[RunMatchingResponse, JSONResponse]:
    if not stats.success:
        return _failure_response(stats.failure_reason or "Batch run failed")
    return RunMatchingResponse(
        success=True,
        run_id=stats.run_id,
        stats=RunStatsPayload(
            processed=stats.processed,
            matched=stats.matched,
            skipped=stats.skipped,
            failed=stats.failed,
            unevaluated=stats.unevaluated,
            timed_out=stats.timed_out,
            duration_ms=stats.duration_ms,
            skip_reasons=dict(stats.skip_reasons),
        ),
        errors=list(stats.errors) or None,
    )


async def _run_batch(
    matching_service: BatchMatchingService,
    min_score: Optional[int],
) -> Union[RunMatchingResponse, JSONResponse]:
    try:
        stats = await run_in_threadpool(matching_service.run_batch, min_score)
    except BatchValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        logger.exception("Unexpected batch matching failure")
        return _failure_response(f"Failed to run batch matching: {type(exc).__name__}")
    return _run_response(stats)


@router.post(
    "/api/match-properties",
    response_model=RunMatchingResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
    responses={500: {"model": RunFailureResponse}},
)
async def trigger_matching(
    payload: Optional[RunMatchingRequest] = None,
    matching_service: BatchMatchingService = Depends(get_matching_service),
):
    min_score = payload.min_score if payload is not None else None
    logger.info("Manual matching trigger | min_score=%s", min_score)
    return await _run_batch(matching_service, min_score)


@router.get(
    "/api/cron/match-properties",
    response_model=RunMatchingResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_cron_secret)],
    responses={500: {"model": RunFailureResponse}},
)
async def cron_matching(
    min_score: Optional[int] = Query(default=None, ge=0, le=100, alias="minScore"),
    matching_service: BatchMatchingService = Depends(get_matching_service),
):
    logger.info("Scheduled matching trigger | min_score=%s", min_score)
    return await _run_batch(matching_service, min_score)


@router.get(
    "/api/match-properties",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def matching_status(
    matching_service: BatchMatchingService = Depends(get_matching_service),
) -> StatusResponse:
    try:
        current = matching_service.status()
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected matching status failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load matching status",
        ) from exc
    last_run = current.last_run
    return StatusResponse(
        status=StatusPayload(
            total_matches=current.total_matches,
            active_listings=current.active_listings,
            active_opportunities=current.active_opportunities,
            last_run_state=last_run.state if last_run else None,
            last_run_finished_at=(
                last_run.finished_at.isoformat() if last_run and last_run.finished_at else None
            ),
        )
    )


@router.post(
    "/api/scoring/calculate-match",
    response_model=MatchScoreResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def calculate_match(
    payload: CalculateMatchRequest,
    matching_service: BatchMatchingService = Depends(get_matching_service),
) -> MatchScoreResponse:
    try:
        match = await run_in_threadpool(
            matching_service.score_pair,
            payload.listing_id,
            payload.opportunity_id,
        )
        return MatchScoreResponse.from_match(match)
    except MatchNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except (MalformedRecordError, DensityValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected pair scoring failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to score pair",
        ) from exc
