"""
Feedback Service: one immutable feedback entry per (suggestion, user).

A second submission by the same user is rejected with ConflictError. The
unique constraint decides, so two concurrent submissions yield one row and
one rejected caller.
"""
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from kpi_coach.models.base import insert_ignore
from kpi_coach.models.enums import FeedbackReason, FeedbackType
from kpi_coach.models.suggestion import Suggestion, SuggestionFeedback
from kpi_coach.services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from kpi_coach.services.scope import Actor, resolve_scope
from kpi_coach.services.suggestion_service import feedback_to_dict
from kpi_coach.utils.logger import log

# Fixed mapping, not caller-supplied
RATING_BY_TYPE = {
    FeedbackType.HELPFUL: 5,
    FeedbackType.NOT_HELPFUL: 1,
    FeedbackType.DONE: 4,
}

ACTUAL_RESULT_KEYS = ("data", "hen", "den", "ky")  # leads, appointments, arrivals, signups


def parse_feedback_type(value: Any) -> FeedbackType:
    try:
        return FeedbackType(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid feedback_type: {value!r}")


def parse_reason(value: Any) -> FeedbackReason:
    try:
        return FeedbackReason(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid reason: {value!r}")


def parse_actual_result(value: Any) -> Optional[Dict[str, Optional[int]]]:
    """Optional counters; each present one must be a non-negative integer."""
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError("actual_result must be an object")
    unknown = set(value) - set(ACTUAL_RESULT_KEYS)
    if unknown:
        raise ValidationError(f"Unknown actual_result fields: {', '.join(sorted(unknown))}")

    result: Dict[str, Optional[int]] = {}
    for key in ACTUAL_RESULT_KEYS:
        n = value.get(key)
        if n is None:
            result[key] = None
            continue
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise ValidationError(f"actual_result.{key} must be a non-negative integer")
        result[key] = n
    return result


class FeedbackService:
    def __init__(self, db: Session):
        self.db = db

    def submit(
        self,
        actor: Actor,
        suggestion_id: int,
        feedback_type: Any,
        reason: Any,
        reason_detail: Optional[str] = None,
        actual_result: Any = None,
        note: Optional[str] = None,
    ) -> Dict:
        feedback_type = parse_feedback_type(feedback_type)
        reason = parse_reason(reason)
        reason_detail = (reason_detail or "").strip() or None
        if reason == FeedbackReason.KHAC and not reason_detail:
            raise ValidationError("reason_detail is required when reason is 'khac'")
        actual_result = parse_actual_result(actual_result)
        note = (note or "").strip() or None

        suggestion = self.db.query(Suggestion).filter(Suggestion.id == suggestion_id).first()
        if not suggestion:
            raise NotFoundError(f"Suggestion {suggestion_id} not found")

        scope = resolve_scope(self.db, actor)
        if not scope.can_see(suggestion.branch_id, suggestion.owner_id):
            log.warning(f"User {actor.user_id} denied feedback on suggestion {suggestion_id}")
            raise ForbiddenError()

        inserted = insert_ignore(self.db, SuggestionFeedback, {
            "suggestion_id": suggestion.id,
            "user_id": actor.user_id,
            "feedback_type": feedback_type.value,
            "reason": reason.value,
            "reason_detail": reason_detail,
            "actual_result": actual_result,
            "note": note,
            "rating": RATING_BY_TYPE[feedback_type],
            "applied": feedback_type != FeedbackType.NOT_HELPFUL,
        })
        if not inserted:
            self.db.rollback()
            raise ConflictError("You have already responded to this suggestion")
        self.db.commit()

        row = self.db.query(SuggestionFeedback).filter(
            SuggestionFeedback.suggestion_id == suggestion.id,
            SuggestionFeedback.user_id == actor.user_id,
        ).one()
        log.info(f"Feedback {feedback_type.value}/{reason.value} on suggestion {suggestion.id} "
                 f"by user {actor.user_id}")
        return feedback_to_dict(row)
