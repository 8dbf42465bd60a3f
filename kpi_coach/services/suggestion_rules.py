"""
Suggestion rules: static thresholds over collected signals.

Deterministic (no model) generation. Each rule reads one signal and emits at
most one candidate:
  value >= red threshold     -> RED
  value >= yellow threshold  -> YELLOW
  otherwise                  -> nothing

GREEN is never produced by a rule; it is reserved for manual and ingested
suggestions.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional

from kpi_coach.models.enums import LeadStatus, OutboundChannel, OutboundPriority, Role, Severity
from kpi_coach.services.actions import (
    Action,
    CreateOutboundJobAction,
    CreateReminderAction,
    CreateTaskAction,
    encode_actions,
)
from kpi_coach.services.signal_collector import Signals
from kpi_coach.utils.helpers import hash_data

RULE_SOURCE = "rule_skeleton_v2"


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rule:
    key: str
    role: Role
    signal: str
    red_at: int
    yellow_at: int
    title: str                      # formatted with {value}
    content: str                    # formatted with {value}
    actions: Callable[[Severity], List[Action]]
    money: bool = False


def _call_list_actions(severity: Severity) -> List[Action]:
    priority = OutboundPriority.HIGH if severity == Severity.RED else OutboundPriority.MEDIUM
    return [
        CreateOutboundJobAction(
            label="Create outbound call list",
            description="Queue a call note for every lead with a phone number and no appointment.",
            channel=OutboundChannel.CALL_NOTE,
            template_key="call_has_phone",
            priority=priority,
            lead_status=LeadStatus.HAS_PHONE,
        ),
        CreateTaskAction(label="Book appointments today", description="Call back and propose a visit time."),
    ]


def _no_show_actions(severity: Severity) -> List[Action]:
    return [
        CreateReminderAction(label="Remind before the appointment", remind_at="09:00"),
        CreateOutboundJobAction(
            label="Send appointment reminder",
            channel=OutboundChannel.ZALO,
            template_key="remind_appointment",
            priority=OutboundPriority.HIGH if severity == Severity.RED else OutboundPriority.MEDIUM,
            lead_status=LeadStatus.APPOINTED,
        ),
    ]


def _closing_actions(severity: Severity) -> List[Action]:
    return [
        CreateTaskAction(
            label="Follow up visitors who did not sign",
            description="Call each visitor, answer objections and offer a tuition plan.",
            due_in_days=0 if severity == Severity.RED else 1,
        ),
    ]


def _phone_capture_actions(severity: Severity) -> List[Action]:
    return [
        CreateTaskAction(
            label="Ask for a phone number",
            description="Reply to every open conversation and ask for a contact number.",
        ),
    ]


def _tuition_actions(severity: Severity) -> List[Action]:
    return [
        CreateOutboundJobAction(
            label="Send tuition reminder",
            channel=OutboundChannel.ZALO,
            template_key="tuition_reminder",
            priority=OutboundPriority.HIGH if severity == Severity.RED else OutboundPriority.MEDIUM,
        ),
        CreateTaskAction(label="Review unpaid balances", due_in_days=1),
    ]


def _expense_actions(severity: Severity) -> List[Action]:
    return [CreateTaskAction(label="Review expense entries", description="Check large or unplanned expenses.")]


def _schedule_actions(severity: Severity) -> List[Action]:
    return [
        CreateTaskAction(
            label="Book practice sessions",
            description="Schedule extra sessions for students close to their exam.",
            due_in_days=0 if severity == Severity.RED else 2,
        ),
        CreateReminderAction(label="Confirm sessions with instructors"),
    ]


RULES: List[Rule] = [
    Rule(
        key="has_phone_no_appointment",
        role=Role.TELESALES,
        signal="has_phone_no_appointment",
        red_at=10,
        yellow_at=1,
        title="{value} leads with a phone number have no appointment yet",
        content="{value} leads already gave a phone number but no visit is booked. "
                "Call them today and propose a concrete time.",
        actions=_call_list_actions,
    ),
    Rule(
        key="appointed_not_arrived",
        role=Role.TELESALES,
        signal="appointed_not_arrived",
        red_at=5,
        yellow_at=1,
        title="{value} appointments passed without a visit",
        content="{value} leads missed their appointment. Reach out and rebook before the lead goes cold.",
        actions=_no_show_actions,
    ),
    Rule(
        key="arrived_not_signed",
        role=Role.TELESALES,
        signal="arrived_not_signed",
        red_at=5,
        yellow_at=1,
        title="{value} visitors have not signed up",
        content="{value} leads visited the school but have not signed. Follow up while the visit is fresh.",
        actions=_closing_actions,
    ),
    Rule(
        key="new_without_phone",
        role=Role.DIRECT_PAGE,
        signal="new_without_phone",
        red_at=20,
        yellow_at=5,
        title="{value} new leads in the last 14 days have no phone number",
        content="{value} message leads are still missing a phone number. Ask for one in every open conversation.",
        actions=_phone_capture_actions,
    ),
    Rule(
        key="unpaid_students_14d",
        role=Role.MANAGER,
        signal="unpaid_students_14d",
        red_at=10,
        yellow_at=1,
        title="{value} students have an open balance and no payment in 14 days",
        content="{value} students owe tuition and have not paid in the last two weeks. Send reminders and review plans.",
        actions=_tuition_actions,
    ),
    Rule(
        key="daily_expense_total",
        role=Role.MANAGER,
        signal="daily_expense_total",
        red_at=5_000_000,
        yellow_at=2_000_000,
        title="Today's expenses reached {value} VND",
        content="Operating expenses recorded today total {value} VND. Check that every entry was planned.",
        actions=_expense_actions,
        money=True,
    ),
    Rule(
        key="monthly_expense_total",
        role=Role.MANAGER,
        signal="monthly_expense_total",
        red_at=100_000_000,
        yellow_at=60_000_000,
        title="This month's expenses reached {value} VND",
        content="Operating expenses this month total {value} VND. Compare them with the monthly cost goal.",
        actions=_expense_actions,
        money=True,
    ),
    Rule(
        key="exam_gap_7d",
        role=Role.MANAGER,
        signal="exam_gap_7d",
        red_at=5,
        yellow_at=1,
        title="{value} students take the exam within 7 days with too few sessions",
        content="{value} students have an exam this week but fewer than 2 practice sessions booked.",
        actions=_schedule_actions,
    ),
    Rule(
        key="exam_gap_14d",
        role=Role.MANAGER,
        signal="exam_gap_14d",
        red_at=10,
        yellow_at=1,
        title="{value} students take the exam within 14 days with too few sessions",
        content="{value} students have an exam in the next two weeks but fewer than 4 practice sessions booked.",
        actions=_schedule_actions,
    ),
]


def rules_for_roles(roles: FrozenSet[Role]) -> List[Rule]:
    return [r for r in RULES if r.role in roles]


def severity_for(value: int, rule: Rule) -> Optional[Severity]:
    if value >= rule.red_at:
        return Severity.RED
    if value >= rule.yellow_at:
        return Severity.YELLOW
    return None


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationUnit:
    """One (branch, owner) slice to generate for, and the roles whose rules apply."""
    branch_id: Optional[int]
    owner_id: Optional[int]
    roles: FrozenSet[Role]


@dataclass
class SuggestionCandidate:
    date_key: str
    role: str
    branch_id: Optional[int]
    owner_id: Optional[int]
    title: str
    content: str
    severity: str
    actions: list
    evidence: Dict
    source: str = RULE_SOURCE
    rule_key: str = field(default="", compare=False)

    @property
    def content_hash(self) -> str:
        return suggestion_hash(
            self.date_key, self.role, self.branch_id, self.owner_id, self.title, self.source
        )

    def to_row(self, run_id: str) -> Dict:
        return {
            "date_key": self.date_key,
            "role": self.role,
            "branch_id": self.branch_id,
            "owner_id": self.owner_id,
            "status": "ACTIVE",
            "title": self.title,
            "content": self.content,
            "severity": self.severity,
            "actions": self.actions,
            "evidence": self.evidence,
            "source": self.source,
            "run_id": run_id,
            "content_hash": self.content_hash,
        }


def suggestion_hash(date_key, role, branch_id, owner_id, title, source) -> str:
    """Dedup key shared by generated, manual and ingested suggestions."""
    return hash_data({
        "dateKey": date_key,
        "role": str(role),
        "branchId": branch_id,
        "ownerId": owner_id,
        "title": title,
        "source": source,
    })


def _format_value(value: int, money: bool) -> str:
    return f"{value:,}" if money else str(value)


def generate_candidates(date_key: str, unit: GenerationUnit, signals: Signals) -> List[SuggestionCandidate]:
    """Evaluate every rule applicable to the unit's roles. Pure: no storage access."""
    values = signals.as_evidence()
    candidates: List[SuggestionCandidate] = []

    for rule in rules_for_roles(unit.roles):
        value = values[rule.signal]
        severity = severity_for(value, rule)
        if severity is None:
            continue

        shown = _format_value(value, rule.money)
        evidence = dict(values)
        evidence["engine_notes"] = (
            f"{rule.key}={value} (red >= {rule.red_at}, yellow >= {rule.yellow_at})"
        )
        candidates.append(SuggestionCandidate(
            date_key=date_key,
            role=rule.role.value,
            branch_id=unit.branch_id,
            owner_id=unit.owner_id,
            title=rule.title.format(value=shown),
            content=rule.content.format(value=shown),
            severity=severity.value,
            actions=encode_actions(rule.actions(severity)),
            evidence=evidence,
            rule_key=rule.key,
        ))

    return candidates
