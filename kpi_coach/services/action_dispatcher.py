"""
Action Dispatcher: turn an outbound action into one QUEUED outbound message.

The payload is untrusted even when it comes from a suggestion the actor can
see: the target lead/student is re-checked against the actor's current scope.
Delivery belongs to a separate worker; nothing here sends anything.
"""
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from kpi_coach.models.crm import Lead, Student
from kpi_coach.models.enums import OutboundChannel, OutboundPriority, OutboundStatus, PHONE_CHANNELS
from kpi_coach.models.outbound import MessageTemplate, OutboundMessage
from kpi_coach.models.suggestion import Suggestion
from kpi_coach.services.actions import (
    CreateOutboundJobAction,
    CreateReminderAction,
    CreateTaskAction,
    UpdateLeadStatusAction,
    decode_actions,
)
from kpi_coach.services.errors import ForbiddenError, NotFoundError, ValidationError
from kpi_coach.services.scope import Actor, resolve_scope
from kpi_coach.utils.logger import log
from kpi_coach.utils.templates import render_template


def parse_channel(value: Any) -> OutboundChannel:
    try:
        return OutboundChannel(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid channel: {value!r}")


def parse_priority(value: Any) -> OutboundPriority:
    if value is None or value == "":
        return OutboundPriority.MEDIUM
    try:
        return OutboundPriority(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid priority: {value!r}")


def outbound_to_dict(m: OutboundMessage) -> Dict:
    return {
        "id": m.id,
        "channel": m.channel,
        "template_key": m.template_key,
        "rendered_text": m.rendered_text,
        "to": m.to,
        "priority": m.priority,
        "status": m.status,
        "lead_id": m.lead_id,
        "student_id": m.student_id,
        "branch_id": m.branch_id,
        "note": m.note,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


class ActionDispatcher:
    def __init__(self, db: Session):
        self.db = db

    def dispatch(
        self,
        actor: Actor,
        channel: Any,
        template_key: Any,
        lead_id: Optional[int] = None,
        student_id: Optional[int] = None,
        to: Optional[str] = None,
        priority: Any = None,
        variables: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
        required_lead_status: Optional[str] = None,
    ) -> Dict:
        channel = parse_channel(channel)
        priority = parse_priority(priority)
        template_key = str(template_key or "").strip()
        if not template_key:
            raise ValidationError("template_key is required")
        if variables is not None and not isinstance(variables, dict):
            raise ValidationError("variables must be an object")

        template = self.db.query(MessageTemplate).filter(MessageTemplate.key == template_key).first()
        if not template or not template.is_active:
            raise ValidationError(f"Message template '{template_key}' not found or inactive")

        lead = None
        student = None
        if lead_id is not None:
            lead = self.db.query(Lead).filter(Lead.id == lead_id).first()
            if not lead:
                raise NotFoundError(f"Lead {lead_id} not found")
        if student_id is not None:
            student = self.db.query(Student).filter(Student.id == student_id).first()
            if not student:
                raise NotFoundError(f"Student {student_id} not found")
            if lead is None:
                lead = student.lead
        if lead is None:
            raise ValidationError("lead_id or student_id is required")

        # Every student has a lead; the lead carries owner, branch and phone
        owner_id = lead.owner_id
        branch_id = lead.branch_id

        scope = resolve_scope(self.db, actor)
        student_ok = student is None or scope.can_touch(student.branch_id, student.lead.owner_id)
        if not scope.can_touch(branch_id, owner_id) or not student_ok:
            log.warning(f"User {actor.user_id} denied dispatch to lead {lead_id} / student {student_id}")
            raise ForbiddenError()

        if required_lead_status is not None and lead.status != required_lead_status:
            raise ValidationError(
                f"Lead {lead.id} is {lead.status}; this action targets {required_lead_status} leads"
            )

        contact_name = lead.full_name or ""
        contact_phone = lead.phone or ""
        merged = {"name": contact_name, "phone": contact_phone}
        merged.update(variables or {})

        destination = (to or "").strip() or None
        if destination is None and channel in PHONE_CHANNELS:
            destination = contact_phone or None
        if channel in PHONE_CHANNELS and not destination:
            raise ValidationError(f"A phone number is required for {channel.value} messages")

        message = OutboundMessage(
            channel=channel.value,
            template_key=template_key,
            rendered_text=render_template(template.body, merged),
            to=destination,
            priority=priority.value,
            status=OutboundStatus.QUEUED.value,
            lead_id=lead.id,
            student_id=student.id if student is not None else None,
            branch_id=branch_id,
            note=(note or "").strip() or None,
            created_by_id=actor.user_id,
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)

        log.info(f"Queued {channel.value} message {message.id} ({template_key}) by user {actor.user_id}")
        return outbound_to_dict(message)

    def dispatch_suggestion_action(
        self,
        actor: Actor,
        suggestion_id: int,
        index: int,
        lead_id: Optional[int] = None,
        student_id: Optional[int] = None,
        to: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
    ) -> Dict:
        """
        Dispatch the action stored at `index` on a visible suggestion. Only
        CREATE_OUTBOUND_JOB produces a message; other kinds are rejected.
        Caller-supplied targets fill in what a list-level action leaves open;
        when the action names a lead status, the target lead must be in it.
        """
        suggestion = self.db.query(Suggestion).filter(Suggestion.id == suggestion_id).first()
        if not suggestion:
            raise NotFoundError(f"Suggestion {suggestion_id} not found")
        scope = resolve_scope(self.db, actor)
        if not scope.can_see(suggestion.branch_id, suggestion.owner_id):
            raise ForbiddenError()

        actions = decode_actions(suggestion.actions)
        if index < 0 or index >= len(actions):
            raise ValidationError(f"Suggestion {suggestion_id} has no action #{index}")
        action = actions[index]

        if isinstance(action, CreateOutboundJobAction):
            return self.dispatch(
                actor,
                channel=action.channel,
                template_key=action.template_key,
                lead_id=action.lead_id if action.lead_id is not None else lead_id,
                student_id=action.student_id if action.student_id is not None else student_id,
                to=to,
                priority=action.priority,
                variables=variables,
                note=note or action.label,
                required_lead_status=action.lead_status,
            )
        if isinstance(action, (CreateTaskAction, CreateReminderAction, UpdateLeadStatusAction)):
            raise ValidationError(f"Action kind {action.kind} cannot be dispatched as an outbound message")
        raise ValidationError(f"Unknown action kind: {type(action).__name__}")
