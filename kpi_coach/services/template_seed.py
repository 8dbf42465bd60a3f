"""Default outbound message templates referenced by the suggestion rules."""
from typing import Dict, List

from sqlalchemy.orm import Session

from kpi_coach.models.base import upsert
from kpi_coach.models.outbound import MessageTemplate
from kpi_coach.utils.logger import log

DEFAULT_TEMPLATES: List[Dict] = [
    {
        "key": "call_has_phone",
        "title": "Call note: book an appointment",
        "channel": "CALL_NOTE",
        "body": "Call {{name}} ({{phone}}): introduce the course and book a visit time.",
    },
    {
        "key": "remind_appointment",
        "title": "Appointment reminder",
        "channel": "ZALO",
        "body": "Hello {{name}}, this is a reminder of your visit to the driving school. "
                "Reply to this message to confirm or pick another time.",
    },
    {
        "key": "tuition_reminder",
        "title": "Tuition reminder",
        "channel": "ZALO",
        "body": "Hello {{name}}, your remaining tuition is {{remaining}} VND. "
                "Please arrange the payment or contact us for a plan.",
    },
    {
        "key": "remind_paid50",
        "title": "Minimum 50% tuition reminder",
        "channel": "SMS",
        "body": "Hello {{name}}, please complete at least 50% of the tuition. Contact {{ownerName}} for help.",
    },
    {
        "key": "remind_schedule",
        "title": "Practice session reminder",
        "channel": "FB",
        "body": "Hello {{name}}, you have a session at {{scheduleAt}}. Please arrive on time.",
    },
]


def seed_templates(db: Session) -> int:
    """Insert or refresh the default templates. Returns the number of templates written."""
    for template in DEFAULT_TEMPLATES:
        upsert(
            db, MessageTemplate, {**template, "is_active": True},
            key_columns=("key",), update_columns=("title", "channel", "body", "is_active"),
        )
    db.commit()
    log.info(f"Seeded {len(DEFAULT_TEMPLATES)} message templates")
    return len(DEFAULT_TEMPLATES)
