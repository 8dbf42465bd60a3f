"""
KPI Targets & Goals API

Percent targets per branch/role/metric (with owner overrides) and daily or
monthly revenue / dossier / cost goals.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from kpi_coach.api.deps import current_actor
from kpi_coach.models.base import get_db
from kpi_coach.services.metrics_catalog import KPI_METRICS_CATALOG, role_label
from kpi_coach.services.scope import Actor
from kpi_coach.services.target_service import TargetService

router = APIRouter(tags=["kpi"])


class TargetBatch(BaseModel):
    branch_id: Optional[int] = None
    items: List[Dict[str, Any]]


class GoalUpsert(BaseModel):
    period_type: str
    branch_id: Optional[int] = None
    date_key: Optional[str] = None
    month_key: Optional[str] = None
    revenue_target: Any = 0
    dossier_target: Any = 0
    cost_target: Any = 0
    note: Optional[str] = None


@router.get("/api/kpi/metrics")
async def list_metrics():
    """Metric catalog with the roles each metric applies to."""
    return {
        "success": True,
        "data": [
            {
                "key": m.key,
                "label": m.label,
                "description": m.description,
                "unit": m.unit,
                "roles": [{"role": r.value, "label": role_label(r)} for r in m.roles],
            }
            for m in KPI_METRICS_CATALOG
        ],
    }


@router.get("/api/kpi/targets")
async def get_targets(
    branch_id: Optional[int] = Query(None),
    role: Optional[str] = Query(None),
    day_of_week: Optional[int] = Query(None, ge=-1, le=6),
    owner_id: Optional[int] = Query(None),
    active_only: bool = Query(False),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    data = TargetService(db).get_targets(
        actor, branch_id=branch_id, role=role, day_of_week=day_of_week,
        owner_id=owner_id, active_only=active_only,
    )
    return {"success": True, "data": data}


@router.post("/api/kpi/targets")
async def upsert_targets(
    body: TargetBatch,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    """Upsert a batch of targets. All rows are applied or none."""
    data = TargetService(db).upsert_targets(actor, body.items, branch_id=body.branch_id)
    return {"success": True, "data": data}


@router.get("/api/kpi/targets/effective")
async def get_effective_targets(
    branch_id: int = Query(...),
    role: str = Query(...),
    owner_id: Optional[int] = Query(None),
    day_of_week: Optional[int] = Query(None, ge=-1, le=6),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    """One target per metric after owner/day precedence."""
    data = TargetService(db).effective_targets(
        actor, branch_id=branch_id, role=role, owner_id=owner_id, day_of_week=day_of_week
    )
    return {"success": True, "data": data}


@router.get("/api/goals")
async def get_goals(
    period_type: str = Query(..., description="DAILY or MONTHLY"),
    date_key: Optional[str] = Query(None, description="YYYY-MM-DD for DAILY"),
    month_key: Optional[str] = Query(None, description="YYYY-MM for MONTHLY"),
    branch_id: Optional[int] = Query(None),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    data = TargetService(db).get_goals(
        actor, period_type, date_key=date_key, month_key=month_key, branch_id=branch_id
    )
    return {"success": True, "data": data}


@router.post("/api/goals")
async def upsert_goal(
    body: GoalUpsert,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    goal = TargetService(db).upsert_goal(actor, **body.model_dump())
    return {"success": True, "data": goal}
