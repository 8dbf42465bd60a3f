"""
Outbound API

Queue a templated message for a lead or student. Delivery is handled by the
CRM's outbound worker.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from kpi_coach.api.deps import current_actor
from kpi_coach.models.base import get_db
from kpi_coach.services.action_dispatcher import ActionDispatcher
from kpi_coach.services.scope import Actor

router = APIRouter(prefix="/api/outbound", tags=["outbound"])


class DispatchRequest(BaseModel):
    channel: str
    template_key: str
    lead_id: Optional[int] = None
    student_id: Optional[int] = None
    to: Optional[str] = None
    priority: Optional[str] = None
    variables: Optional[Dict[str, Any]] = None
    note: Optional[str] = None


@router.post("/dispatch")
async def dispatch(
    body: DispatchRequest,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    message = ActionDispatcher(db).dispatch(actor, **body.model_dump())
    return {"success": True, "data": message}
