"""
Signal Collector: read-only aggregate queries feeding the rule generator.

Every query is bounded by the Scope it is given and by a window computed in
the business timezone:
  - the day itself            [day start, day end)
  - 14-day lookback           the 14 local days ending with the day
  - 7 / 14-day lookahead      sessions scheduled from the day start
  - the calendar month        expense entries of the day's month

Query failures are not caught here: a wrong count would silently change a
threshold decision, so errors propagate to the caller.
"""
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Dict

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from kpi_coach.models.crm import ExpenseEntry, Lead, Receipt, ScheduleItem, Student
from kpi_coach.models.enums import LeadStatus
from kpi_coach.services.scope import Scope, record_scope_clauses
from kpi_coach.utils.helpers import day_range, lookback_range, month_key_of, parse_date_key

LOOKBACK_DAYS = 14
SHORT_LOOKAHEAD_DAYS = 7
LONG_LOOKAHEAD_DAYS = 14
# Minimum sessions a student close to the exam should have booked
MIN_SESSIONS_7D = 2
MIN_SESSIONS_14D = 4


@dataclass
class Signals:
    new_without_phone: int = 0
    has_phone_no_appointment: int = 0
    appointed_not_arrived: int = 0
    arrived_not_signed: int = 0
    unpaid_students_14d: int = 0
    daily_expense_total: int = 0
    monthly_expense_total: int = 0
    exam_gap_7d: int = 0
    exam_gap_14d: int = 0

    def as_evidence(self) -> Dict[str, int]:
        return asdict(self)


class SignalCollector:
    def __init__(self, db: Session):
        self.db = db

    def collect(self, date_key: str, scope: Scope) -> Signals:
        day_start, day_end = day_range(date_key)
        lookback_start, _ = lookback_range(date_key, LOOKBACK_DAYS)

        signals = Signals(
            new_without_phone=self._count_leads(
                scope,
                Lead.status == LeadStatus.NEW.value,
                or_(Lead.phone.is_(None), Lead.phone == ""),
                Lead.created_at >= lookback_start,
                Lead.created_at < day_end,
            ),
            has_phone_no_appointment=self._count_leads(
                scope,
                Lead.status == LeadStatus.HAS_PHONE.value,
                Lead.created_at < day_end,
            ),
            appointed_not_arrived=self._count_leads(
                scope,
                Lead.status == LeadStatus.APPOINTED.value,
                Lead.appointment_at.isnot(None),
                Lead.appointment_at < day_start,
            ),
            arrived_not_signed=self._count_leads(
                scope,
                Lead.status == LeadStatus.ARRIVED.value,
                Lead.updated_at < day_end,
            ),
            unpaid_students_14d=self._count_unpaid_students(scope, lookback_start, day_end),
            daily_expense_total=self._sum_expenses(scope, ExpenseEntry.date_key == date_key),
            monthly_expense_total=self._sum_expenses(
                scope, ExpenseEntry.date_key.like(f"{month_key_of(date_key)}-%")
            ),
            exam_gap_7d=self._count_exam_gaps(scope, date_key, SHORT_LOOKAHEAD_DAYS, MIN_SESSIONS_7D),
            exam_gap_14d=self._count_exam_gaps(scope, date_key, LONG_LOOKAHEAD_DAYS, MIN_SESSIONS_14D),
        )
        return signals

    def _count_leads(self, scope: Scope, *criteria) -> int:
        q = self.db.query(func.count(Lead.id)).filter(
            *criteria,
            *record_scope_clauses(scope, Lead.branch_id, Lead.owner_id),
        )
        return int(q.scalar() or 0)

    def _count_unpaid_students(self, scope: Scope, window_start, window_end) -> int:
        """Active students with an outstanding balance and no receipt inside the lookback window."""
        paid_in_window = select(Receipt.student_id).where(
            Receipt.received_at >= window_start,
            Receipt.received_at < window_end,
        )
        paid_total = (
            select(func.coalesce(func.sum(Receipt.amount), 0))
            .where(Receipt.student_id == Student.id, Receipt.received_at < window_end)
            .scalar_subquery()
        )
        q = (
            self.db.query(func.count(Student.id))
            .join(Lead, Lead.id == Student.lead_id)
            .filter(
                Student.is_active == True,
                Student.created_at < window_end,
                ~Student.id.in_(paid_in_window),
                paid_total < Student.tuition_total,
                *record_scope_clauses(scope, Student.branch_id, Lead.owner_id),
            )
        )
        return int(q.scalar() or 0)

    def _sum_expenses(self, scope: Scope, *criteria) -> int:
        q = self.db.query(func.coalesce(func.sum(ExpenseEntry.amount), 0)).filter(
            *criteria,
            *record_scope_clauses(scope, ExpenseEntry.branch_id),
        )
        return int(q.scalar() or 0)

    def _count_exam_gaps(self, scope: Scope, date_key: str, days: int, min_sessions: int) -> int:
        """Students whose exam falls within `days` but who have fewer than `min_sessions` booked before it."""
        day = parse_date_key(date_key)
        window_start, window_end = day_range(date_key, days)
        sessions = (
            select(func.count(ScheduleItem.id))
            .where(
                ScheduleItem.student_id == Student.id,
                ScheduleItem.is_cancelled == False,
                ScheduleItem.start_at >= window_start,
                ScheduleItem.start_at < window_end,
            )
            .scalar_subquery()
        )
        q = (
            self.db.query(func.count(Student.id))
            .join(Lead, Lead.id == Student.lead_id)
            .filter(
                Student.is_active == True,
                and_(Student.exam_date >= day, Student.exam_date < day + timedelta(days=days)),
                sessions < min_sessions,
                *record_scope_clauses(scope, Student.branch_id, Lead.owner_id),
            )
        )
        return int(q.scalar() or 0)
