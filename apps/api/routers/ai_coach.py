"""
AI Coach API Router

Chat, daily insight and plan generation with the AI running coach.

Generation endpoints are quota-governed: one unit is charged against the
athlete's hourly and daily windows (and the global daily window) before the
provider is called. Endpoints with a request body charge only once the body
has validated.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.cache import get_redis_client
from core.config import settings
from core.database import get_db
from core.exceptions import (
    APIException,
    BadGatewayError,
    GatewayTimeoutError,
    QuotaExceededError,
    ServiceUnavailableError,
)
from core.rate_limit import CoachQuotaEnforcer, QuotaDecision
from models import Athlete
from services.ai_coach import AICoach, get_ai_coach
from services.coach_plan import PlanEntry, PlanParseError, PlanWriteError
from services.coach_providers import (
    EmptyResponseError,
    ProviderError,
    ProviderNotConfiguredError,
    UpstreamRejectedError,
    UpstreamUnreachableError,
)

router = APIRouter(prefix="/v1/coach", tags=["AI Coach"])


class ChatRequest(BaseModel):
    """Request to chat with AI coach."""
    message: str = Field(min_length=1, max_length=1000)

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v


class ChatResponse(BaseModel):
    """Response from AI coach."""
    response: str


class InsightResponse(BaseModel):
    insight: str


class GeneratePlanRequest(BaseModel):
    days: int = 7
    confirm: bool = False


class GeneratePlanResponse(BaseModel):
    plan: List[PlanEntry]
    summary: str
    confirmed: bool
    written: List[date] = []
    skipped: List[str] = []


class ContextResponse(BaseModel):
    """Athlete context that would be sent to AI."""
    context: str
    sections: List[str] = []


class HistoryMessage(BaseModel):
    id: str
    role: str
    content: str
    created_at: Optional[str] = None


class HistoryResponse(BaseModel):
    messages: List[HistoryMessage]


def get_quota_enforcer() -> CoachQuotaEnforcer:
    return CoachQuotaEnforcer(get_redis_client())


def charge_coach_quota(athlete: Athlete, enforcer: CoachQuotaEnforcer) -> Optional[QuotaDecision]:
    """Charge one unit of coach quota for the calling athlete, or reject with 429."""
    if not settings.COACH_QUOTA_ENABLED:
        return None

    decision = enforcer.admit(str(athlete.id))
    if decision.allowed:
        return decision

    if decision.scope is None:
        # Counter store down with fail-open disabled
        raise ServiceUnavailableError(decision.message, error_code="COACH_QUOTA_UNAVAILABLE")

    raise QuotaExceededError(
        scope=decision.scope.value,
        retry_after_minutes=decision.retry_after_minutes,
        detail=decision.message,
    )


def require_coach_quota(
    athlete: Athlete = Depends(get_current_user),
    enforcer: CoachQuotaEnforcer = Depends(get_quota_enforcer),
) -> Optional[QuotaDecision]:
    return charge_coach_quota(athlete, enforcer)


def get_coach(db: Session = Depends(get_db)) -> AICoach:
    return get_ai_coach(db)


def _provider_http_error(e: ProviderError) -> APIException:
    if isinstance(e, ProviderNotConfiguredError):
        return ServiceUnavailableError("AI coach is not configured", error_code="COACH_NOT_CONFIGURED")
    if isinstance(e, UpstreamUnreachableError):
        return GatewayTimeoutError("AI service did not respond in time", error_code="COACH_UPSTREAM_TIMEOUT")
    if isinstance(e, UpstreamRejectedError):
        return BadGatewayError(f"AI service error (status {e.status})", error_code="COACH_UPSTREAM_ERROR")
    if isinstance(e, EmptyResponseError):
        return BadGatewayError("AI service returned an empty response", error_code="COACH_EMPTY_RESPONSE")
    return BadGatewayError("AI service error", error_code="COACH_UPSTREAM_ERROR")


@router.post("/chat", response_model=ChatResponse)
async def chat_with_coach(
    request: ChatRequest,
    athlete: Athlete = Depends(get_current_user),
    enforcer: CoachQuotaEnforcer = Depends(get_quota_enforcer),
    coach: AICoach = Depends(get_coach),
):
    """
    Send a message to the AI coach and get a response.

    The coach has access to your training data and provides
    personalized advice based on your actual performance.
    """
    charge_coach_quota(athlete, enforcer)
    try:
        response = await coach.send_message(athlete.id, request.message)
    except ProviderError as e:
        raise _provider_http_error(e) from e
    return ChatResponse(response=response)


@router.get("/insight", response_model=InsightResponse)
async def get_coach_insight(
    athlete: Athlete = Depends(get_current_user),
    _quota: Optional[QuotaDecision] = Depends(require_coach_quota),
    coach: AICoach = Depends(get_coach),
):
    """Short daily insight for the dashboard. Not stored in the conversation."""
    try:
        insight = await coach.generate_insight(athlete.id)
    except ProviderError as e:
        raise _provider_http_error(e) from e
    return InsightResponse(insight=insight)


@router.post("/generate-plan", response_model=GeneratePlanResponse)
async def generate_plan(
    request: GeneratePlanRequest,
    athlete: Athlete = Depends(get_current_user),
    enforcer: CoachQuotaEnforcer = Depends(get_quota_enforcer),
    coach: AICoach = Depends(get_coach),
):
    """
    Generate a training plan starting tomorrow.

    With `confirm`, the plan is also written to the training calendar.
    """
    charge_coach_quota(athlete, enforcer)
    try:
        outcome = await coach.generate_plan(athlete.id, days=request.days, confirm=request.confirm)
    except ProviderError as e:
        raise _provider_http_error(e) from e
    except PlanParseError as e:
        raise BadGatewayError("AI returned an invalid training plan", error_code="COACH_PLAN_INVALID") from e
    except PlanWriteError as e:
        raise APIException(
            status_code=500,
            detail="Plan generated but failed to save to calendar",
            error_code="COACH_PLAN_SAVE_FAILED",
        ) from e

    return GeneratePlanResponse(
        plan=outcome.plan.plan,
        summary=outcome.plan.summary,
        confirmed=outcome.confirmed,
        written=outcome.written,
        skipped=outcome.skipped,
    )


@router.get("/history", response_model=HistoryResponse)
async def get_coach_history(
    limit: int = Query(50, ge=1, le=500),
    athlete: Athlete = Depends(get_current_user),
    coach: AICoach = Depends(get_coach),
):
    """Stored conversation, oldest first."""
    return HistoryResponse(messages=coach.get_history(athlete.id, limit=limit))


@router.get("/context", response_model=ContextResponse)
async def get_coach_context(
    athlete: Athlete = Depends(get_current_user),
    coach: AICoach = Depends(get_coach),
):
    """
    Preview the context that would be sent to the AI coach.

    Useful for understanding what data the coach has access to.
    """
    return ContextResponse(**coach.preview_context(athlete.id))


@router.get("/usage")
async def get_coach_usage(
    athlete: Athlete = Depends(get_current_user),
    enforcer: CoachQuotaEnforcer = Depends(get_quota_enforcer),
) -> Dict[str, Any]:
    """Current quota usage for the calling athlete. Does not charge quota."""
    return enforcer.usage(str(athlete.id))
