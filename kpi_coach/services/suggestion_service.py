"""
Suggestion Service: generation, scoped listing, manual entry and ingestion.

Lifecycle:
  1. ensure_generated()  - evaluate rules for a date and insert new candidates
  2. list_suggestions()  - ACTIVE rows visible to the actor, with feedback
  3. create_manual()     - operator-entered suggestion
  4. ingest_external()   - batch from the trusted external rule-runner
  5. get_summary() / get_analytics() / get_trend() - dashboard read paths

Inserts always go through insert_ignore on (date_key, content_hash, source):
a repeated or concurrent generation for the same day is a silent no-op.
"""
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from kpi_coach.config import get_settings
from kpi_coach.models.base import insert_ignore
from kpi_coach.models.enums import (
    FeedbackType,
    OWNER_ROLES,
    Role,
    ScopeMode,
    Severity,
    SuggestionStatus,
)
from kpi_coach.models.suggestion import Suggestion, SuggestionFeedback
from kpi_coach.models.user import Branch, User
from kpi_coach.services.actions import decode_actions, encode_actions
from kpi_coach.services.errors import ForbiddenError, ValidationError
from kpi_coach.services.scope import (
    Actor,
    Scope,
    parse_record_id,
    resolve_scope,
    resolve_write_branch,
    suggestion_scope_clauses,
    user_in_branch,
)
from kpi_coach.services.signal_collector import SignalCollector
from kpi_coach.services.suggestion_rules import (
    RULES,
    GenerationUnit,
    generate_candidates,
    suggestion_hash,
)
from kpi_coach.utils.helpers import (
    is_ymd,
    local_range,
    month_start,
    parse_date_key as to_date,
    pct_change,
    previous_month_start,
    today_key,
    week_start,
)
from kpi_coach.utils.logger import log

MANUAL_SOURCE = "manual"

_SEVERITY_RANK = case(
    {Severity.RED.value: 0, Severity.YELLOW.value: 1, Severity.GREEN.value: 2},
    value=Suggestion.severity,
    else_=3,
)


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------

def parse_date_key(value: Optional[str], default_today: bool = True) -> str:
    if not value:
        if default_today:
            return today_key()
        raise ValidationError("date_key is required")
    value = str(value).strip()
    if not is_ymd(value):
        raise ValidationError("date_key must be formatted YYYY-MM-DD")
    return value


def parse_role(value: Any) -> Role:
    try:
        return Role(str(value or "").strip())
    except ValueError:
        raise ValidationError(f"Invalid role: {value!r}")


def parse_severity(value: Any) -> Severity:
    try:
        return Severity(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid severity: {value!r}")


def parse_status(value: Any) -> SuggestionStatus:
    try:
        return SuggestionStatus(str(value or SuggestionStatus.ACTIVE.value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid status: {value!r}")


def _required_text(value: Any, name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{name} is required")
    return text


def _parse_evidence(value: Any) -> Optional[Dict]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError("evidence must be an object")
    return value


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def engine_notes_of(evidence: Any) -> str:
    if isinstance(evidence, dict):
        notes = evidence.get("engine_notes")
        if notes:
            return str(notes)
    return ""


def feedback_to_dict(fb: SuggestionFeedback) -> Dict:
    return {
        "id": fb.id,
        "suggestion_id": fb.suggestion_id,
        "user_id": fb.user_id,
        "feedback_type": fb.feedback_type,
        "reason": fb.reason,
        "reason_detail": fb.reason_detail,
        "actual_result": fb.actual_result,
        "note": fb.note,
        "rating": fb.rating,
        "applied": fb.applied,
        "created_at": fb.created_at.isoformat() if fb.created_at else None,
    }


def suggestion_to_dict(s: Suggestion) -> Dict:
    return {
        "id": s.id,
        "date_key": s.date_key,
        "role": s.role,
        "branch_id": s.branch_id,
        "owner_id": s.owner_id,
        "status": s.status,
        "title": s.title,
        "content": s.content,
        "severity": s.severity,
        "actions": s.actions or [],
        "evidence": s.evidence or {},
        "engine_notes": engine_notes_of(s.evidence),
        "source": s.source,
        "run_id": s.run_id,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


def _empty_stats() -> Dict[str, int]:
    return {"total": 0, "helpful": 0, "not_helpful": 0, "done": 0}


_STAT_KEYS = {
    FeedbackType.HELPFUL.value: "helpful",
    FeedbackType.NOT_HELPFUL.value: "not_helpful",
    FeedbackType.DONE.value: "done",
}


class SuggestionService:
    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _generation_units(self, scope: Scope) -> List[GenerationUnit]:
        """
        OWNER scopes generate personal suggestions for their own role, one per
        allowed branch. BRANCH / SYSTEM scopes generate branch-wide broadcast
        suggestions (owner NULL) for every rule role.
        """
        if scope.mode == ScopeMode.OWNER:
            roles = frozenset({scope.role}) if scope.role else frozenset()
            return [GenerationUnit(branch_id=b, owner_id=scope.owner_id, roles=roles)
                    for b in scope.sorted_branch_ids]
        all_roles = frozenset(r.role for r in RULES)
        return [GenerationUnit(branch_id=b, owner_id=None, roles=all_roles)
                for b in scope.sorted_branch_ids]

    def ensure_generated(self, date_key: str, scope: Scope) -> Dict:
        """
        Evaluate the rules for date_key within scope and insert new candidates.
        Idempotent: already-present suggestions are skipped, never updated.
        """
        date_key = parse_date_key(date_key)
        run_id = uuid.uuid4().hex
        collector = SignalCollector(self.db)

        created = 0
        skipped = 0
        for unit in self._generation_units(scope):
            signals = collector.collect(date_key, scope.restrict(unit.branch_id))
            for candidate in generate_candidates(date_key, unit, signals):
                if insert_ignore(self.db, Suggestion, candidate.to_row(run_id)):
                    created += 1
                else:
                    skipped += 1
        self.db.commit()

        if created:
            log.info(f"Generated {created} suggestions for {date_key} ({scope.mode.value}, run {run_id[:8]}), "
                     f"{skipped} already present")
        return {"date_key": date_key, "run_id": run_id, "created": created, "skipped": skipped}

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_suggestions(
        self,
        actor: Actor,
        date_key: Optional[str] = None,
        role: Optional[str] = None,
        branch_id: Optional[int] = None,
        owner_id: Optional[int] = None,
    ) -> Dict:
        date_key = parse_date_key(date_key)
        role_filter = parse_role(role) if role else None
        scope = resolve_scope(self.db, actor, branch_id)

        if scope.mode == ScopeMode.OWNER and owner_id is not None and owner_id != actor.user_id:
            log.warning(f"User {actor.user_id} tried to list suggestions of owner {owner_id}")
            raise ForbiddenError()

        if self.settings.generate_on_list:
            self.ensure_generated(date_key, scope)

        q = self.db.query(Suggestion).filter(
            Suggestion.date_key == date_key,
            Suggestion.status == SuggestionStatus.ACTIVE.value,
            *suggestion_scope_clauses(scope, Suggestion),
        )
        if role_filter is not None:
            q = q.filter(Suggestion.role == role_filter.value)
        if owner_id is not None:
            q = q.filter(Suggestion.owner_id == owner_id)

        rows = q.order_by(_SEVERITY_RANK, Suggestion.created_at.desc(), Suggestion.id.desc()).all()
        return {"date_key": date_key, "items": self._annotate(rows, actor)}

    def _annotate(self, rows: List[Suggestion], actor: Actor) -> List[Dict]:
        """Attach exact feedback counts, the capped recent feedback and the actor's own entry."""
        ids = [s.id for s in rows]
        stats: Dict[int, Dict[str, int]] = defaultdict(_empty_stats)
        recent: Dict[int, List[Dict]] = defaultdict(list)
        mine: Dict[int, Dict] = {}

        if ids:
            counts = (
                self.db.query(
                    SuggestionFeedback.suggestion_id,
                    SuggestionFeedback.feedback_type,
                    func.count(SuggestionFeedback.id),
                )
                .filter(SuggestionFeedback.suggestion_id.in_(ids))
                .group_by(SuggestionFeedback.suggestion_id, SuggestionFeedback.feedback_type)
                .all()
            )
            for suggestion_id, feedback_type, n in counts:
                stats[suggestion_id]["total"] += n
                key = _STAT_KEYS.get(feedback_type)
                if key:
                    stats[suggestion_id][key] += n

            own = (
                self.db.query(SuggestionFeedback)
                .filter(SuggestionFeedback.suggestion_id.in_(ids), SuggestionFeedback.user_id == actor.user_id)
                .all()
            )
            for fb in own:
                mine[fb.suggestion_id] = feedback_to_dict(fb)

            newest_first = [SuggestionFeedback.created_at.desc(), SuggestionFeedback.id.desc()]
            ranked = (
                self.db.query(
                    SuggestionFeedback.id.label("id"),
                    func.row_number()
                    .over(partition_by=SuggestionFeedback.suggestion_id, order_by=newest_first)
                    .label("rn"),
                )
                .filter(SuggestionFeedback.suggestion_id.in_(ids))
                .subquery()
            )
            latest = (
                self.db.query(SuggestionFeedback)
                .join(ranked, ranked.c.id == SuggestionFeedback.id)
                .filter(ranked.c.rn <= self.settings.feedback_detail_limit)
                .order_by(SuggestionFeedback.suggestion_id, *newest_first)
                .all()
            )
            for fb in latest:
                recent[fb.suggestion_id].append(feedback_to_dict(fb))

        items = []
        for s in rows:
            item = suggestion_to_dict(s)
            item["feedback_stats"] = stats[s.id]
            item["recent_feedback"] = recent[s.id]
            item["my_feedback"] = mine.get(s.id)
            items.append(item)
        return items

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _resolve_owner(self, owner_id: Optional[int], branch_id: Optional[int]) -> Optional[int]:
        if owner_id is None:
            return None
        owner = self.db.query(User).filter(User.id == owner_id).first()
        if not owner or not owner.is_active:
            raise ValidationError(f"Owner {owner_id} not found or inactive")
        if branch_id is not None and not user_in_branch(owner, branch_id):
            raise ValidationError(f"Owner {owner_id} does not belong to branch {branch_id}")
        return owner.id

    def create_manual(
        self,
        actor: Actor,
        role: str,
        title: str,
        content: str,
        severity: str,
        date_key: Optional[str] = None,
        branch_id: Optional[int] = None,
        owner_id: Optional[int] = None,
        actions: Any = None,
        evidence: Any = None,
    ) -> Dict:
        """Operator-entered suggestion; same field rules as generated ones."""
        date_key = parse_date_key(date_key)
        role = parse_role(role)
        title = _required_text(title, "title")
        content = _required_text(content, "content")
        severity = parse_severity(severity)
        actions = encode_actions(decode_actions(actions))
        evidence = _parse_evidence(evidence)

        target_branch = resolve_write_branch(self.db, actor, branch_id)
        if actor.role in OWNER_ROLES and owner_id is not None and owner_id != actor.user_id:
            raise ForbiddenError()
        owner = self._resolve_owner(owner_id, target_branch)

        content_hash = suggestion_hash(date_key, role.value, target_branch, owner, title, MANUAL_SOURCE)
        inserted = insert_ignore(self.db, Suggestion, {
            "date_key": date_key,
            "role": role.value,
            "branch_id": target_branch,
            "owner_id": owner,
            "status": SuggestionStatus.ACTIVE.value,
            "title": title,
            "content": content,
            "severity": severity.value,
            "actions": actions,
            "evidence": evidence,
            "source": MANUAL_SOURCE,
            "run_id": None,
            "content_hash": content_hash,
        })
        self.db.commit()

        row = self.db.query(Suggestion).filter(
            Suggestion.date_key == date_key,
            Suggestion.content_hash == content_hash,
            Suggestion.source == MANUAL_SOURCE,
        ).one()
        if inserted:
            log.info(f"User {actor.user_id} created manual suggestion {row.id} for {date_key}")
        return suggestion_to_dict(row)

    def ingest_external(self, source: str, run_id: str, suggestions: Any) -> Dict:
        """
        Batch from the trusted rule-runner. No actor scope applies; every row is
        validated before any is written, and each row is deduplicated by its hash.
        """
        source = str(source or "").strip()
        if source != self.settings.trusted_ingest_source:
            raise ValidationError(f"Untrusted ingest source: {source!r}")
        run_id = str(run_id or "").strip()
        if not run_id:
            raise ValidationError("run_id is required")
        if not isinstance(suggestions, list) or not suggestions:
            raise ValidationError("suggestions must be a non-empty list")

        rows = [self._validate_ingest_row(raw, i, source, run_id) for i, raw in enumerate(suggestions)]

        inserted = 0
        try:
            for row in rows:
                if insert_ignore(self.db, Suggestion, row):
                    inserted += 1
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log.info(f"Ingested {inserted}/{len(rows)} suggestions from {source} run {run_id}")
        return {"count": inserted, "skipped": len(rows) - inserted}

    def _validate_ingest_row(self, raw: Any, index: int, source: str, run_id: str) -> Dict:
        if not isinstance(raw, dict):
            raise ValidationError(f"suggestions[{index}] must be an object")
        try:
            date_key = parse_date_key(raw.get("date_key"), default_today=False)
            role = parse_role(raw.get("role"))
            status = parse_status(raw.get("status"))
            title = _required_text(raw.get("title"), "title")
            content = _required_text(raw.get("content"), "content")
            severity = parse_severity(raw.get("severity"))
            actions = encode_actions(decode_actions(raw.get("actions")))
            evidence = _parse_evidence(raw.get("evidence"))

            branch_id = parse_record_id(raw.get("branch_id"), "branch_id")
            if branch_id is not None:
                if not self.db.query(Branch.id).filter(Branch.id == branch_id).first():
                    raise ValidationError(f"Branch {branch_id} not found")
            owner_id = self._resolve_owner(parse_record_id(raw.get("owner_id"), "owner_id"), branch_id)
        except ValidationError as exc:
            raise ValidationError(f"suggestions[{index}]: {exc}")

        return {
            "date_key": date_key,
            "role": role.value,
            "branch_id": branch_id,
            "owner_id": owner_id,
            "status": status.value,
            "title": title,
            "content": content,
            "severity": severity.value,
            "actions": actions,
            "evidence": evidence,
            "source": source,
            "run_id": run_id,
            "content_hash": suggestion_hash(date_key, role.value, branch_id, owner_id, title, source),
        }

    # ------------------------------------------------------------------
    # Dashboard reads
    # ------------------------------------------------------------------

    def get_summary(self, actor: Actor, date_key: Optional[str] = None, branch_id: Optional[int] = None) -> Dict:
        """Most urgent ACTIVE suggestion in scope for the day, as one line."""
        date_key = parse_date_key(date_key)
        scope = resolve_scope(self.db, actor, branch_id)

        q = self.db.query(Suggestion).filter(
            Suggestion.date_key == date_key,
            Suggestion.status == SuggestionStatus.ACTIVE.value,
            *suggestion_scope_clauses(scope, Suggestion),
        )
        total = q.count()
        top = q.order_by(_SEVERITY_RANK, Suggestion.created_at.desc(), Suggestion.id.desc()).first()

        if top is None:
            return {"date_key": date_key, "has_summary": False, "summary": "", "top_suggestion": None,
                    "total_active": 0}

        summary = f"[{top.severity}] {top.title}"
        if total > 1:
            summary += f" (+{total - 1} more)"
        return {
            "date_key": date_key,
            "has_summary": True,
            "summary": summary,
            "top_suggestion": suggestion_to_dict(top),
            "total_active": total,
        }

    def get_analytics(
        self,
        actor: Actor,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        branch_id: Optional[int] = None,
        top_n: int = 5,
    ) -> Dict:
        """Feedback totals and rankings over suggestions the actor can see."""
        scope = resolve_scope(self.db, actor, branch_id)
        filters = list(suggestion_scope_clauses(scope, Suggestion))
        if date_from:
            filters.append(Suggestion.date_key >= parse_date_key(date_from, default_today=False))
        if date_to:
            filters.append(Suggestion.date_key <= parse_date_key(date_to, default_today=False))

        base = self.db.query(SuggestionFeedback).join(
            Suggestion, Suggestion.id == SuggestionFeedback.suggestion_id
        ).filter(*filters)

        total = base.count()
        by_type = {t.value: 0 for t in FeedbackType}
        for feedback_type, n in base.with_entities(
            SuggestionFeedback.feedback_type, func.count(SuggestionFeedback.id)
        ).group_by(SuggestionFeedback.feedback_type).all():
            by_type[feedback_type] = n

        by_reason = {
            reason: n for reason, n in base.with_entities(
                SuggestionFeedback.reason, func.count(SuggestionFeedback.id)
            ).group_by(SuggestionFeedback.reason).all()
        }
        avg_rating = base.with_entities(func.avg(SuggestionFeedback.rating)).scalar()
        applied = base.filter(SuggestionFeedback.applied == True).count()

        return {
            "total": total,
            "by_type": by_type,
            "by_reason": by_reason,
            "avg_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
            "applied_rate": round(applied / total, 4) if total else None,
            "top_helpful": self._top_by_type(filters, FeedbackType.HELPFUL, top_n),
            "top_not_helpful": self._top_by_type(filters, FeedbackType.NOT_HELPFUL, top_n),
        }

    def _top_by_type(self, filters: list, feedback_type: FeedbackType, limit: int) -> List[Dict]:
        n = func.count(SuggestionFeedback.id).label("n")
        rows = (
            self.db.query(Suggestion.id, Suggestion.title, Suggestion.date_key, Suggestion.severity, n)
            .join(SuggestionFeedback, SuggestionFeedback.suggestion_id == Suggestion.id)
            .filter(*filters, SuggestionFeedback.feedback_type == feedback_type.value)
            .group_by(Suggestion.id, Suggestion.title, Suggestion.date_key, Suggestion.severity)
            .order_by(n.desc(), Suggestion.id)
            .limit(limit)
            .all()
        )
        return [
            {"suggestion_id": r.id, "title": r.title, "date_key": r.date_key, "severity": r.severity, "count": r.n}
            for r in rows
        ]

    def get_trend(self, actor: Actor, date_key: Optional[str] = None, branch_id: Optional[int] = None) -> Dict:
        """
        Week-over-week and month-over-month movement for suggestions in scope.

        Weeks start on Sunday; the current week and month run up to and
        including date_key. Suggestion counts use each row's date_key,
        feedback counts use when the feedback was given (business timezone).
        """
        date_key = parse_date_key(date_key)
        scope = resolve_scope(self.db, actor, branch_id)
        clauses = suggestion_scope_clauses(scope, Suggestion)

        end = to_date(date_key) + timedelta(days=1)
        this_week = week_start(date_key)
        prev_week = this_week - timedelta(days=7)
        this_month = month_start(to_date(date_key))
        prev_month = previous_month_start(this_month)

        def count_suggestions(start, stop) -> int:
            return self.db.query(func.count(Suggestion.id)).filter(
                Suggestion.date_key >= start.isoformat(),
                Suggestion.date_key < stop.isoformat(),
                *clauses,
            ).scalar()

        def count_feedback(feedback_type: FeedbackType, start, stop) -> int:
            since, until = local_range(start, stop)
            return (
                self.db.query(func.count(SuggestionFeedback.id))
                .join(Suggestion, Suggestion.id == SuggestionFeedback.suggestion_id)
                .filter(
                    SuggestionFeedback.feedback_type == feedback_type.value,
                    SuggestionFeedback.created_at >= since,
                    SuggestionFeedback.created_at < until,
                    *clauses,
                )
                .scalar()
            )

        def movement(current: int, previous: int) -> Dict:
            return {"current": current, "previous": previous, "change_pct": pct_change(current, previous)}

        helpful = (count_feedback(FeedbackType.HELPFUL, this_week, end),
                   count_feedback(FeedbackType.HELPFUL, prev_week, this_week))
        not_helpful = (count_feedback(FeedbackType.NOT_HELPFUL, this_week, end),
                       count_feedback(FeedbackType.NOT_HELPFUL, prev_week, this_week))

        distribution = {s.value: 0 for s in Severity}
        for severity, n in self.db.query(Suggestion.severity, func.count(Suggestion.id)).filter(
            Suggestion.date_key >= this_week.isoformat(),
            Suggestion.date_key < end.isoformat(),
            *clauses,
        ).group_by(Suggestion.severity).all():
            distribution[severity] = n

        return {
            "date_key": date_key,
            "week_start": this_week.isoformat(),
            "weekly": movement(count_suggestions(this_week, end), count_suggestions(prev_week, this_week)),
            "monthly": movement(count_suggestions(this_month, end), count_suggestions(prev_month, this_month)),
            "feedback": {
                "helpful_this_week": helpful[0],
                "helpful_prev_week": helpful[1],
                "helpful_change_pct": pct_change(*helpful),
                "not_helpful_this_week": not_helpful[0],
                "not_helpful_prev_week": not_helpful[1],
                "not_helpful_change_pct": pct_change(*not_helpful),
            },
            "severity_distribution": distribution,
        }
