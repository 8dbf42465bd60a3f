"""Coach suggestions and per-user feedback."""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, UniqueConstraint, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime

from kpi_coach.models.base import Base


class Suggestion(Base):
    """
    One recommendation for a date/role/branch/owner.

    Rows are never updated in place; retiring a suggestion flips status to
    ARCHIVED. (date_key, content_hash, source) is unique so regenerating the
    same day is a no-op.
    """
    __tablename__ = "ai_suggestions"
    __table_args__ = (
        UniqueConstraint("date_key", "content_hash", "source", name="uq_ai_suggestions_date_hash_source"),
    )

    id = Column(Integer, primary_key=True, index=True)
    date_key = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD, business timezone
    role = Column(String, nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # null = broadcast
    status = Column(String, nullable=False, default="ACTIVE", index=True)

    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    severity = Column(String, nullable=False)  # RED | YELLOW | GREEN
    actions = Column(JSON, nullable=True)      # list of tagged action payloads
    evidence = Column(JSON, nullable=True)     # numeric signals + optional engine_notes

    source = Column(String, nullable=False)    # rule_skeleton_v2 | manual | n8n
    run_id = Column(String, nullable=True, index=True)
    content_hash = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    feedbacks = relationship("SuggestionFeedback", back_populates="suggestion", lazy="select")

    def __repr__(self):
        return f"<Suggestion {self.date_key} {self.severity} {self.title!r}>"


class SuggestionFeedback(Base):
    """One immutable feedback entry per (suggestion, user)."""
    __tablename__ = "ai_suggestion_feedback"
    __table_args__ = (
        UniqueConstraint("suggestion_id", "user_id", name="uq_ai_suggestion_feedback_suggestion_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    suggestion_id = Column(Integer, ForeignKey("ai_suggestions.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    feedback_type = Column(String, nullable=False)   # HELPFUL | NOT_HELPFUL | DONE
    reason = Column(String, nullable=False)
    reason_detail = Column(Text, nullable=True)      # required when reason = khac
    actual_result = Column(JSON, nullable=True)      # {data, hen, den, ky} counters
    note = Column(Text, nullable=True)

    # Derived from feedback_type
    rating = Column(Integer, nullable=False)
    applied = Column(Boolean, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    suggestion = relationship("Suggestion", back_populates="feedbacks")
