"""
AI Coach Suggestions API

Scoped listing (with generate-on-list), manual entry, external ingestion,
feedback and dispatch of a suggestion's outbound action.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from kpi_coach.api.deps import current_actor
from kpi_coach.models.base import get_db
from kpi_coach.services import auth_service
from kpi_coach.services.action_dispatcher import ActionDispatcher
from kpi_coach.services.errors import AuthRequiredError
from kpi_coach.services.feedback_service import FeedbackService
from kpi_coach.services.scope import Actor, resolve_scope
from kpi_coach.services.suggestion_service import SuggestionService, parse_date_key
from kpi_coach.utils.logger import log

router = APIRouter(prefix="/api/ai/suggestions", tags=["suggestions"])


class ManualSuggestionCreate(BaseModel):
    role: str
    title: str
    content: str
    severity: str
    date_key: Optional[str] = None  # YYYY-MM-DD, defaults to today
    branch_id: Optional[int] = None
    owner_id: Optional[int] = None
    actions: Optional[List[Dict[str, Any]]] = None
    evidence: Optional[Dict[str, Any]] = None


class GenerateRequest(BaseModel):
    date_key: Optional[str] = None
    branch_id: Optional[int] = None


class IngestRequest(BaseModel):
    source: str
    run_id: str
    suggestions: List[Dict[str, Any]]


class FeedbackCreate(BaseModel):
    feedback_type: str
    reason: str
    reason_detail: Optional[str] = None
    actual_result: Optional[Dict[str, Any]] = None
    note: Optional[str] = None


class ActionDispatchRequest(BaseModel):
    lead_id: Optional[int] = None
    student_id: Optional[int] = None
    to: Optional[str] = None
    variables: Optional[Dict[str, Any]] = None
    note: Optional[str] = None


@router.get("")
async def list_suggestions(
    date_key: Optional[str] = Query(None, description="YYYY-MM-DD, business timezone; defaults to today"),
    role: Optional[str] = Query(None),
    branch_id: Optional[int] = Query(None),
    owner_id: Optional[int] = Query(None),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    """ACTIVE suggestions visible to the caller, with feedback stats and the caller's own feedback."""
    service = SuggestionService(db)
    data = service.list_suggestions(actor, date_key=date_key, role=role, branch_id=branch_id, owner_id=owner_id)
    return {"success": True, "data": data}


@router.post("")
async def create_suggestion(
    body: ManualSuggestionCreate,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    service = SuggestionService(db)
    suggestion = service.create_manual(actor, **body.model_dump())
    return {"success": True, "data": suggestion}


@router.post("/generate")
async def generate_suggestions(
    body: GenerateRequest,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    """Run rule generation for a date explicitly. Safe to repeat."""
    scope = resolve_scope(db, actor, body.branch_id)
    result = SuggestionService(db).ensure_generated(parse_date_key(body.date_key), scope)
    return {"success": True, "data": result}


@router.post("/ingest")
async def ingest_suggestions(
    body: IngestRequest,
    x_service_token: Optional[str] = Header(None, alias="X-Service-Token"),
    db: Session = Depends(get_db),
):
    """Batch from the external rule-runner, authenticated by the shared service token."""
    if not auth_service.check_service_token(x_service_token):
        log.warning("Rejected suggestion ingest with an invalid service token")
        raise AuthRequiredError("Invalid service token")
    result = SuggestionService(db).ingest_external(body.source, body.run_id, body.suggestions)
    return {"success": True, "data": result}


@router.get("/summary")
async def get_summary(
    date_key: Optional[str] = Query(None),
    branch_id: Optional[int] = Query(None),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    data = SuggestionService(db).get_summary(actor, date_key=date_key, branch_id=branch_id)
    return {"success": True, "data": data}


@router.get("/analytics")
async def get_analytics(
    date_from: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    date_to: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    branch_id: Optional[int] = Query(None),
    top: int = Query(5, ge=1, le=50),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    """Feedback totals, distribution and top suggestions within the caller's scope."""
    data = SuggestionService(db).get_analytics(
        actor, date_from=date_from, date_to=date_to, branch_id=branch_id, top_n=top
    )
    return {"success": True, "data": data}


@router.get("/trend")
async def get_trend(
    date_key: Optional[str] = Query(None, description="Last day of the current week/month; defaults to today"),
    branch_id: Optional[int] = Query(None),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    data = SuggestionService(db).get_trend(actor, date_key=date_key, branch_id=branch_id)
    return {"success": True, "data": data}


@router.post("/{suggestion_id}/feedback")
async def submit_feedback(
    suggestion_id: int,
    body: FeedbackCreate,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    feedback = FeedbackService(db).submit(actor, suggestion_id, **body.model_dump())
    return {"success": True, "data": feedback}


@router.post("/{suggestion_id}/actions/{index}/dispatch")
async def dispatch_suggestion_action(
    suggestion_id: int,
    index: int,
    body: ActionDispatchRequest,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    """Queue the outbound message described by the suggestion's action at `index`."""
    message = ActionDispatcher(db).dispatch_suggestion_action(actor, suggestion_id, index, **body.model_dump())
    return {"success": True, "data": message}
