"""
KPI target and goal models

KpiTarget holds percent targets per branch/role/metric, optionally
overridden per owner. GoalSetting holds daily or monthly revenue /
dossier / cost goals per branch (or system-wide).
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, UniqueConstraint
from datetime import datetime

from kpi_coach.models.base import Base

ALL_OWNERS_KEY = "ALL"
SYSTEM_SCOPE_KEY = "SYSTEM"
EVERY_DAY = -1


def owner_scope_key(owner_id):
    return str(owner_id) if owner_id is not None else ALL_OWNERS_KEY


def branch_scope_key(branch_id):
    return str(branch_id) if branch_id is not None else SYSTEM_SCOPE_KEY


class KpiTarget(Base):
    __tablename__ = "kpi_targets"
    __table_args__ = (
        # owner_scope_key stands in for the nullable owner_id so the
        # role-wide row (owner_id NULL) is unique too
        UniqueConstraint(
            "branch_id", "role", "metric_key", "day_of_week", "owner_scope_key",
            name="uq_kpi_targets_branch_role_metric_day_owner",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    role = Column(String, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)  # null = every owner
    owner_scope_key = Column(String, nullable=False, default=ALL_OWNERS_KEY)
    metric_key = Column(String, nullable=False)
    target_value = Column(Integer, nullable=False)          # percent 0-100
    day_of_week = Column(Integer, nullable=False, default=EVERY_DAY)  # -1 = every day, 0 = Sunday
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<KpiTarget {self.branch_id}/{self.role}/{self.owner_scope_key} {self.metric_key}={self.target_value}>"


class GoalSetting(Base):
    __tablename__ = "goal_settings"
    __table_args__ = (
        UniqueConstraint(
            "branch_scope_key", "period_type", "date_key", "month_key",
            name="uq_goal_settings_scope_period",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    period_type = Column(String, nullable=False)  # DAILY | MONTHLY
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)  # null = system-wide
    branch_scope_key = Column(String, nullable=False)
    date_key = Column(String(10), nullable=False, default="")   # set iff DAILY
    month_key = Column(String(7), nullable=False, default="")   # set iff MONTHLY

    revenue_target = Column(Integer, nullable=False, default=0)
    dossier_target = Column(Integer, nullable=False, default=0)
    cost_target = Column(Integer, nullable=False, default=0)
    note = Column(Text, nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
