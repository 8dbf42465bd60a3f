"""Message templates and the outbound queue consumed by the delivery worker."""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text
from datetime import datetime

from kpi_coach.models.base import Base


class MessageTemplate(Base):
    __tablename__ = "message_templates"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, unique=True, index=True, nullable=False)
    title = Column(String, nullable=True)
    channel = Column(String, nullable=False)
    body = Column(Text, nullable=False)  # {{placeholders}}
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class OutboundMessage(Base):
    """
    A queued outbound job. This service only inserts QUEUED rows; the
    delivery worker owns every later transition.
    """
    __tablename__ = "outbound_messages"

    id = Column(Integer, primary_key=True, index=True)
    channel = Column(String, nullable=False)
    template_key = Column(String, nullable=False)
    rendered_text = Column(Text, nullable=False)
    to = Column(String, nullable=True)
    priority = Column(String, nullable=False, default="MEDIUM")
    status = Column(String, nullable=False, default="QUEUED", index=True)

    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    note = Column(Text, nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
