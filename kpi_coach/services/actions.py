"""
Suggested actions attached to a suggestion.

Actions are stored as JSON but decoded into a closed set of kinds at every
boundary (generation, manual create, ingest, dispatch). An unknown kind is
a validation failure, never passed through.
"""
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from kpi_coach.models.enums import LeadStatus, OutboundChannel, OutboundPriority
from kpi_coach.services.errors import ValidationError


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    label: str = Field(min_length=1)
    description: str = ""


class CreateTaskAction(_ActionBase):
    kind: Literal["CREATE_TASK"] = "CREATE_TASK"
    due_in_days: int = Field(default=0, ge=0)


class CreateReminderAction(_ActionBase):
    kind: Literal["CREATE_REMINDER"] = "CREATE_REMINDER"
    remind_at: Optional[str] = None  # HH:MM, business timezone


class CreateOutboundJobAction(_ActionBase):
    kind: Literal["CREATE_OUTBOUND_JOB"] = "CREATE_OUTBOUND_JOB"
    channel: OutboundChannel
    template_key: str = Field(min_length=1)
    lead_id: Optional[int] = None
    student_id: Optional[int] = None
    priority: OutboundPriority = OutboundPriority.MEDIUM
    # Lead status the call list is built from; a dispatched target lead must be in it
    lead_status: Optional[LeadStatus] = None


class UpdateLeadStatusAction(_ActionBase):
    kind: Literal["UPDATE_LEAD_STATUS"] = "UPDATE_LEAD_STATUS"
    lead_id: int
    to_status: LeadStatus


Action = Annotated[
    Union[CreateTaskAction, CreateReminderAction, CreateOutboundJobAction, UpdateLeadStatusAction],
    Field(discriminator="kind"),
]

_ACTIONS_ADAPTER = TypeAdapter(List[Action])


def decode_actions(raw: Any) -> List[Action]:
    """Decode a stored/incoming actions payload. None means no actions."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("actions must be a list")
    try:
        return _ACTIONS_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"Invalid action at {where}: {first.get('msg')}")


def encode_actions(actions: List[Action]) -> list:
    return [a.model_dump(mode="json") for a in actions]
