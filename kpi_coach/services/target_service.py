"""
Target / Goal Registry

KPI targets are integer percentages per (branch, role, metric, day of week),
optionally overridden for one owner. Goals are daily or monthly revenue /
dossier / cost amounts per branch or system-wide.

Both are written with ON CONFLICT DO UPDATE on their full unique key, so a
key is never duplicated. A target batch is one transaction: any invalid row
rolls back the whole batch.

Effective target precedence for one owner and day:
  owner + day > owner + every day > role + day > role + every day
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from kpi_coach.models.base import upsert
from kpi_coach.models.enums import GoalPeriodType, Role, ScopeMode, TARGET_ROLES, SYSTEM_ROLES
from kpi_coach.models.kpi import (
    EVERY_DAY,
    GoalSetting,
    KpiTarget,
    branch_scope_key,
    owner_scope_key,
)
from kpi_coach.models.user import User
from kpi_coach.services.errors import ForbiddenError, ValidationError
from kpi_coach.services.metrics_catalog import (
    day_of_week_label,
    get_metric,
    is_metric_allowed_for_role,
    metric_keys,
    role_label,
)
from kpi_coach.services.scope import (
    Actor,
    get_allowed_branch_ids,
    parse_record_id,
    resolve_scope,
    resolve_write_branch,
    user_in_branch,
)
from kpi_coach.utils.helpers import is_ym, is_ymd
from kpi_coach.utils.logger import log

_TARGET_KEY = ("branch_id", "role", "metric_key", "day_of_week", "owner_scope_key")
_GOAL_KEY = ("branch_scope_key", "period_type", "date_key", "month_key")


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------

def parse_target_role(value: Any) -> Role:
    try:
        role = Role(str(value or "").strip())
    except ValueError:
        raise ValidationError(f"Invalid role: {value!r}")
    if role not in TARGET_ROLES:
        raise ValidationError(f"KPI targets cannot be set for role '{role.value}'")
    return role


def parse_percent(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("target_value must be an integer percent")
    if value < 0 or value > 100:
        raise ValidationError("target_value must be between 0 and 100")
    return value


def parse_day_of_week(value: Any) -> int:
    if value is None or value == EVERY_DAY:
        return EVERY_DAY
    if isinstance(value, bool) or not isinstance(value, int) or value < 0 or value > 6:
        raise ValidationError("day_of_week must be -1 or between 0 and 6")
    return value


def parse_amount(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def parse_period_type(value: Any) -> GoalPeriodType:
    try:
        return GoalPeriodType(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid period_type: {value!r}")


def _period_keys(period_type: GoalPeriodType, date_key: Optional[str], month_key: Optional[str]):
    """Exactly the period's own key; the other stays empty."""
    if period_type == GoalPeriodType.DAILY:
        if month_key:
            raise ValidationError("month_key must not be set for a DAILY goal")
        if not is_ymd(date_key):
            raise ValidationError("date_key (YYYY-MM-DD) is required for a DAILY goal")
        return date_key, ""
    if date_key:
        raise ValidationError("date_key must not be set for a MONTHLY goal")
    if not is_ym(month_key):
        raise ValidationError("month_key (YYYY-MM) is required for a MONTHLY goal")
    return "", month_key


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def target_to_dict(t: KpiTarget) -> Dict:
    metric = get_metric(t.metric_key)
    return {
        "id": t.id,
        "branch_id": t.branch_id,
        "role": t.role,
        "role_label": role_label(t.role),
        "owner_id": t.owner_id,
        "metric_key": t.metric_key,
        "metric_label": metric.label if metric else t.metric_key,
        "metric_description": metric.description if metric else "",
        "metric_unit": metric.unit if metric else "%",
        "target_value": t.target_value,
        "day_of_week": None if t.day_of_week < 0 else t.day_of_week,
        "day_label": day_of_week_label(t.day_of_week),
        "is_active": t.is_active,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


def goal_to_dict(g: GoalSetting) -> Dict:
    return {
        "id": g.id,
        "period_type": g.period_type,
        "branch_id": g.branch_id,
        "date_key": g.date_key or None,
        "month_key": g.month_key or None,
        "revenue_target": g.revenue_target,
        "dossier_target": g.dossier_target,
        "cost_target": g.cost_target,
        "note": g.note,
        "created_by_id": g.created_by_id,
        "updated_at": g.updated_at.isoformat() if g.updated_at else None,
    }


class TargetService:
    def __init__(self, db: Session):
        self.db = db

    def _ensure_can_write(self, actor: Actor):
        scope = resolve_scope(self.db, actor)
        if scope.mode == ScopeMode.OWNER or actor.role == Role.VIEWER:
            log.warning(f"User {actor.user_id} ({actor.role.value}) denied target/goal write")
            raise ForbiddenError()

    # ------------------------------------------------------------------
    # KPI targets
    # ------------------------------------------------------------------

    def upsert_targets(self, actor: Actor, items: List[Dict], branch_id: Optional[int] = None) -> Dict:
        """Validate and upsert every row in one transaction. Returns {count, items}."""
        if not isinstance(items, list) or not items:
            raise ValidationError("items must be a non-empty list")
        self._ensure_can_write(actor)

        keys = []
        try:
            for index, row in enumerate(items):
                keys.append(self._upsert_target_row(actor, row, branch_id, index))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        saved = [self._get_target(key) for key in keys]
        log.info(f"User {actor.user_id} upserted {len(saved)} KPI targets")
        return {"count": len(saved), "items": [target_to_dict(t) for t in saved]}

    def _upsert_target_row(self, actor: Actor, row: Dict, default_branch: Optional[int], index: int) -> Dict:
        if not isinstance(row, dict):
            raise ValidationError(f"items[{index}] must be an object")
        try:
            requested = parse_record_id(row.get("branch_id"), "branch_id") or default_branch
            branch_id = self._resolve_target_branch(actor, requested)

            role = parse_target_role(row.get("role"))
            metric_key = str(row.get("metric_key") or "").strip()
            if not metric_key:
                raise ValidationError("metric_key is required")
            if get_metric(metric_key) is None:
                raise ValidationError(f"Unknown metric '{metric_key}'")
            if not is_metric_allowed_for_role(metric_key, role):
                raise ValidationError(
                    f"Metric '{metric_key}' does not apply to role '{role_label(role)}'"
                )
            target_value = parse_percent(row.get("target_value"))
            day_of_week = parse_day_of_week(row.get("day_of_week"))
            owner_id = self._resolve_target_owner(row.get("owner_id"), branch_id, role)
        except ValidationError as exc:
            raise ValidationError(f"items[{index}]: {exc}")

        values = {
            "branch_id": branch_id,
            "role": role.value,
            "owner_id": owner_id,
            "owner_scope_key": owner_scope_key(owner_id),
            "metric_key": metric_key,
            "target_value": target_value,
            "day_of_week": day_of_week,
            "is_active": bool(row.get("is_active", True)),
            "updated_at": datetime.utcnow(),
        }
        upsert(self.db, KpiTarget, values, _TARGET_KEY, ("target_value", "is_active", "updated_at"))
        return {k: values[k] for k in _TARGET_KEY}

    def _resolve_target_branch(self, actor: Actor, requested: Optional[int]) -> int:
        """
        Targets always belong to one branch: the requested one, else the
        actor's home branch, else their first allowed branch.
        """
        if requested is not None:
            return resolve_write_branch(self.db, actor, requested)
        allowed = get_allowed_branch_ids(self.db, actor)
        if actor.branch_id in allowed:
            return actor.branch_id
        if allowed:
            return allowed[0]
        raise ValidationError("branch_id is required for KPI targets")

    def _resolve_target_owner(self, owner_id: Any, branch_id: int, role: Role) -> Optional[int]:
        owner_id = parse_record_id(owner_id, "owner_id")
        if owner_id is None:
            return None
        owner = self.db.query(User).filter(User.id == owner_id).first()
        if not owner or not owner.is_active:
            raise ValidationError(f"Owner {owner_id} not found or inactive")
        if not user_in_branch(owner, branch_id):
            raise ValidationError(f"Owner {owner_id} does not belong to branch {branch_id}")
        if owner.role != role.value:
            raise ValidationError(f"Owner {owner_id} does not hold role '{role.value}'")
        return owner.id

    def _get_target(self, key: Dict) -> KpiTarget:
        return self.db.query(KpiTarget).filter_by(**key).one()

    def get_targets(
        self,
        actor: Actor,
        branch_id: Optional[int] = None,
        role: Optional[str] = None,
        day_of_week: Optional[int] = None,
        owner_id: Optional[int] = None,
        active_only: bool = False,
    ) -> Dict:
        scope = resolve_scope(self.db, actor, branch_id)
        q = self.db.query(KpiTarget).filter(
            KpiTarget.branch_id.in_(scope.sorted_branch_ids),
            KpiTarget.metric_key.in_(metric_keys()),
        )
        if scope.mode == ScopeMode.OWNER:
            if owner_id is not None and owner_id != actor.user_id:
                raise ForbiddenError()
            q = q.filter(or_(KpiTarget.owner_id == actor.user_id, KpiTarget.owner_id.is_(None)))
        elif owner_id is not None:
            q = q.filter(KpiTarget.owner_id == owner_id)
        if role:
            q = q.filter(KpiTarget.role == parse_target_role(role).value)
        if day_of_week is not None:
            q = q.filter(KpiTarget.day_of_week == parse_day_of_week(day_of_week))
        if active_only:
            q = q.filter(KpiTarget.is_active == True)

        rows = q.order_by(
            KpiTarget.branch_id, KpiTarget.role, KpiTarget.metric_key, KpiTarget.day_of_week, KpiTarget.id
        ).all()
        return {"items": [target_to_dict(t) for t in rows]}

    def effective_targets(
        self,
        actor: Actor,
        branch_id: int,
        role: str,
        owner_id: Optional[int] = None,
        day_of_week: Optional[int] = None,
    ) -> Dict:
        """
        Resolve one value per metric for an owner on a day. Returns
        {metric_key: {target_value, source, target_id}} where source is one of
        owner_day, owner_all_days, role_day, role_all_days.
        """
        scope = resolve_scope(self.db, actor, branch_id)
        role = parse_target_role(role)
        day = parse_day_of_week(day_of_week)
        if scope.mode == ScopeMode.OWNER:
            if owner_id is not None and owner_id != actor.user_id:
                raise ForbiddenError()
            owner_id = actor.user_id

        owner_keys = [owner_scope_key(None)]
        if owner_id is not None:
            owner_keys.append(owner_scope_key(owner_id))
        days = [EVERY_DAY] if day == EVERY_DAY else [day, EVERY_DAY]

        rows = self.db.query(KpiTarget).filter(
            KpiTarget.branch_id == branch_id,
            KpiTarget.role == role.value,
            KpiTarget.is_active == True,
            KpiTarget.owner_scope_key.in_(owner_keys),
            KpiTarget.day_of_week.in_(days),
        ).all()

        def rank(t: KpiTarget) -> int:
            owner_rank = 0 if t.owner_id is not None else 2
            day_rank = 0 if t.day_of_week != EVERY_DAY else 1
            return owner_rank + day_rank

        result: Dict[str, Dict] = {}
        for t in sorted(rows, key=rank):
            if t.metric_key in result or get_metric(t.metric_key) is None:
                continue
            source = ("owner" if t.owner_id is not None else "role") + (
                "_day" if t.day_of_week != EVERY_DAY else "_all_days"
            )
            result[t.metric_key] = {"target_value": t.target_value, "source": source, "target_id": t.id}
        return result

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def upsert_goal(
        self,
        actor: Actor,
        period_type: Any,
        revenue_target: Any,
        dossier_target: Any,
        cost_target: Any,
        branch_id: Optional[int] = None,
        date_key: Optional[str] = None,
        month_key: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Dict:
        period_type = parse_period_type(period_type)
        date_key, month_key = _period_keys(period_type, date_key, month_key)
        values = {
            "revenue_target": parse_amount(revenue_target, "revenue_target"),
            "dossier_target": parse_amount(dossier_target, "dossier_target"),
            "cost_target": parse_amount(cost_target, "cost_target"),
        }
        self._ensure_can_write(actor)
        target_branch = resolve_write_branch(self.db, actor, branch_id)

        values.update({
            "period_type": period_type.value,
            "branch_id": target_branch,
            "branch_scope_key": branch_scope_key(target_branch),
            "date_key": date_key,
            "month_key": month_key,
            "note": (note or "").strip() or None,
            "created_by_id": actor.user_id,
            "updated_at": datetime.utcnow(),
        })
        upsert(
            self.db, GoalSetting, values, _GOAL_KEY,
            ("revenue_target", "dossier_target", "cost_target", "note", "created_by_id", "updated_at"),
        )
        self.db.commit()

        goal = self.db.query(GoalSetting).filter_by(**{k: values[k] for k in _GOAL_KEY}).one()
        log.info(f"User {actor.user_id} set {period_type.value} goal {date_key or month_key} "
                 f"for {branch_scope_key(target_branch)}")
        return goal_to_dict(goal)

    def get_goals(
        self,
        actor: Actor,
        period_type: Any,
        date_key: Optional[str] = None,
        month_key: Optional[str] = None,
        branch_id: Optional[int] = None,
    ) -> Dict:
        period_type = parse_period_type(period_type)
        date_key, month_key = _period_keys(period_type, date_key, month_key)
        scope = resolve_scope(self.db, actor, branch_id)

        branch_clause = GoalSetting.branch_id.in_(scope.sorted_branch_ids)
        if actor.role in SYSTEM_ROLES and not scope.narrowed:
            branch_clause = or_(branch_clause, GoalSetting.branch_id.is_(None))

        rows = self.db.query(GoalSetting).filter(
            GoalSetting.period_type == period_type.value,
            GoalSetting.date_key == date_key,
            GoalSetting.month_key == month_key,
            branch_clause,
        ).order_by(GoalSetting.branch_id, GoalSetting.updated_at.desc()).all()
        return {"items": [goal_to_dict(g) for g in rows]}
