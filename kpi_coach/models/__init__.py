"""Database models for the KPI Coach service"""

from kpi_coach.models.user import Branch, User, UserBranch, UserSession

from kpi_coach.models.crm import (
    Lead,
    Student,
    Receipt,
    ScheduleItem,
    ExpenseEntry
)

from kpi_coach.models.suggestion import Suggestion, SuggestionFeedback

from kpi_coach.models.kpi import KpiTarget, GoalSetting

from kpi_coach.models.outbound import MessageTemplate, OutboundMessage

__all__ = [
    "Branch",
    "User",
    "UserBranch",
    "UserSession",
    "Lead",
    "Student",
    "Receipt",
    "ScheduleItem",
    "ExpenseEntry",
    "Suggestion",
    "SuggestionFeedback",
    "KpiTarget",
    "GoalSetting",
    "MessageTemplate",
    "OutboundMessage",
]
