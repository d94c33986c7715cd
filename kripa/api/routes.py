"""HTTP routes for story search, human verification, analytics and stats."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query as QueryParam, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kripa.ledger import EventAction, LedgerEvent
from kripa.models import Language, Query, Topic
from kripa.observability.metrics import render_latest
from kripa.security import require_admin_token
from kripa.service import OutcomeKind, SearchOutcome, StoryService

logger = logging.getLogger(__name__)

router = APIRouter()


class SearchRequest(BaseModel):
    """Body of POST /api/search-stories."""

    question: str = Field(max_length=4000)
    topic: Topic
    fingerprint: str = Field(min_length=1, max_length=256)
    language: Language = Language.ENGLISH

    @field_validator("question")
    @classmethod
    def question_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("question must not be empty")
        return v


class VerifyHumanRequest(BaseModel):
    """Body of POST /api/verify-human."""

    fingerprint: str = Field(min_length=1, max_length=256)
    timestamp: float


class AnalyticsRequest(BaseModel):
    """Body of POST /api/analytics.

    Unknown fields are kept and stored with the event.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    action: str
    fingerprint: str = Field(min_length=1, max_length=256)
    session_id: str | None = Field(default=None, alias="sessionId", max_length=128)
    timestamp: float | str | None = None
    topic: str | None = None
    language: str | None = None
    question_length: int | None = Field(default=None, alias="questionLength")
    helpful: bool | None = None
    feature: str | None = None
    page: str | None = None


def get_service(request: Request) -> StoryService:
    return request.app.state.application.service


def client_origin(request: Request) -> str:
    """Network origin used as the second quota key."""
    if request.app.state.config.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def error_response(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message, **extra})


def render_outcome(outcome: SearchOutcome) -> JSONResponse:
    """Map a search outcome to its wire shape."""
    if outcome.kind is OutcomeKind.BOT_DETECTED:
        return error_response(403, "bot_detected", outcome.message or "Bot detected")
    if outcome.kind is OutcomeKind.RATE_LIMITED:
        return error_response(429, "rate_limit", outcome.message or "", remaining=0)
    if outcome.kind is OutcomeKind.UNAVAILABLE:
        return error_response(503, "retrieval_unavailable", outcome.message or "")
    if outcome.kind is OutcomeKind.FALLBACK:
        return JSONResponse(
            {"fallback": True, "message": outcome.message, "remaining": outcome.remaining}
        )

    guidance = outcome.guidance
    assert guidance is not None
    stories = []
    for position, scored in enumerate(outcome.stories):
        story: dict[str, Any] = {
            "id": scored.story.id,
            "title": scored.story.title,
            "content": scored.story.content,
            "source_url": scored.story.source,
        }
        if position == 0 and guidance.relevance:
            story["relevance"] = guidance.relevance
        stories.append(story)

    return JSONResponse(
        {
            "empathy": guidance.empathy,
            "stories": stories,
            "lessons": guidance.lessons,
            "reflection": guidance.reflection,
            "community": guidance.community,
            "practice": guidance.practice,
            "nextSteps": guidance.next_steps,
            "gratitude": guidance.gratitude,
            "remaining": outcome.remaining,
        }
    )


@router.post("/api/search-stories")
async def search_stories(
    body: SearchRequest,
    request: Request,
    service: StoryService = Depends(get_service),
) -> JSONResponse:
    query = Query(
        question=body.question,
        topic=body.topic,
        fingerprint=body.fingerprint,
        origin=client_origin(request),
        language=body.language,
    )
    outcome = await service.search(query, request.headers)
    return render_outcome(outcome)


@router.post("/api/verify-human")
async def verify_human(
    body: VerifyHumanRequest,
    request: Request,
    service: StoryService = Depends(get_service),
) -> JSONResponse:
    decision = service.verify_human(body.fingerprint, request.headers, body.timestamp)
    if not decision.allowed:
        return JSONResponse(status_code=403, content={"verified": False, "error": decision.message})
    return JSONResponse({"verified": True, "message": decision.message})


@router.post("/api/analytics")
async def analytics(
    body: AnalyticsRequest,
    request: Request,
    service: StoryService = Depends(get_service),
) -> JSONResponse:
    if body.action == "check_limit":
        return JSONResponse({"remaining": service.remaining(body.fingerprint, client_origin(request))})

    try:
        action = EventAction(body.action)
    except ValueError:
        return error_response(400, "invalid_request", "Invalid action")

    data: dict[str, Any] = dict(body.model_extra or {})
    if body.timestamp is not None:
        # Server time decides the shard; the client's clock is kept for reference only
        data["client_timestamp"] = body.timestamp

    try:
        event = LedgerEvent(
            action=action,
            fingerprint=body.fingerprint,
            session_id=body.session_id,
            topic=body.topic,
            language=body.language,
            question_length=body.question_length,
            helpful=body.helpful,
            feature=body.feature,
            page=body.page,
            data=data,
        )
    except ValidationError as e:
        return error_response(400, "invalid_request", f"Invalid event: {e.error_count()} field error(s)")

    recorded = await service.record_event(event)
    if not recorded:
        logger.warning(f"Analytics event {action.value} was not persisted")
    return JSONResponse({"success": True})


@router.get("/api/stats", dependencies=[Depends(require_admin_token)])
async def stats(
    service: StoryService = Depends(get_service),
    start: str | None = QueryParam(default=None, description="First day, YYYY-MM-DD"),
    end: str | None = QueryParam(default=None, description="Last day, YYYY-MM-DD"),
) -> JSONResponse:
    today = datetime.now(UTC).date().isoformat()
    start = start or end or today
    end = end or start
    try:
        report = await service.stats(start, end)
    except ValueError as e:
        return error_response(400, "invalid_request", str(e))
    return JSONResponse(report.model_dump(mode="json"))


@router.get("/api/health")
async def health(request: Request) -> JSONResponse:
    return JSONResponse(request.app.state.application.health())


@router.get("/metrics")
async def metrics() -> Response:
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)
