"""
Shared fixtures: one in-memory SQLite database per test and small record
factories. Environment is set before any kpi_coach import so the cached
settings pick it up.
"""
import itertools
import os
from datetime import datetime

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FILE_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["INGEST_SERVICE_TOKEN"] = "test-ingest-token"

import pytest

import kpi_coach.models  # noqa: F401
from kpi_coach.models.base import Base, SessionLocal, engine
from kpi_coach.models.crm import ExpenseEntry, Lead, Receipt, ScheduleItem, Student
from kpi_coach.models.outbound import MessageTemplate
from kpi_coach.models.user import Branch, User, UserBranch
from kpi_coach.services.scope import Actor

DATE_KEY = "2026-03-10"
# 10:00 on DATE_KEY in Asia/Ho_Chi_Minh, stored as naive UTC
DAY_MORNING_UTC = datetime(2026, 3, 10, 3, 0)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class Factory:
    """Creates and commits CRM records with sensible defaults."""

    _seq = itertools.count(1)

    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def branch(self, name=None, is_active=True):
        n = next(self._seq)
        return self._save(Branch(name=name or f"Branch {n}", code=f"B{n}", is_active=is_active))

    def user(self, role, branch=None, extra_branches=(), is_active=True, name=None):
        n = next(self._seq)
        user = User(
            email=f"user{n}@example.com",
            name=name or f"User {n}",
            role=role,
            branch_id=branch.id if branch is not None else None,
            is_active=is_active,
        )
        self._save(user)
        for extra in extra_branches:
            self.db.add(UserBranch(user_id=user.id, branch_id=extra.id))
        self.db.commit()
        self.db.refresh(user)
        return user

    def lead(self, branch, owner=None, status="NEW", phone="0900000001", full_name="Nguyen Van A",
             created_at=DAY_MORNING_UTC, appointment_at=None):
        return self._save(Lead(
            full_name=full_name,
            phone=phone,
            status=status,
            owner_id=owner.id if owner is not None else None,
            branch_id=branch.id,
            appointment_at=appointment_at,
            created_at=created_at,
            updated_at=created_at,
        ))

    def leads(self, count, branch, **kwargs):
        return [self.lead(branch, **kwargs) for _ in range(count)]

    def student(self, lead, tuition_total=0, exam_date=None, is_active=True, created_at=DAY_MORNING_UTC):
        return self._save(Student(
            lead_id=lead.id,
            branch_id=lead.branch_id,
            tuition_total=tuition_total,
            exam_date=exam_date,
            is_active=is_active,
            created_at=created_at,
        ))

    def receipt(self, student, amount, received_at=DAY_MORNING_UTC):
        return self._save(Receipt(
            student_id=student.id, branch_id=student.branch_id, amount=amount, received_at=received_at
        ))

    def session_item(self, student, start_at, is_cancelled=False):
        return self._save(ScheduleItem(
            student_id=student.id, branch_id=student.branch_id, start_at=start_at, is_cancelled=is_cancelled
        ))

    def expense(self, branch, amount, date_key=DATE_KEY, category="rent"):
        return self._save(ExpenseEntry(branch_id=branch.id, date_key=date_key, category=category, amount=amount))

    def template(self, key, body, channel="ZALO", is_active=True):
        return self._save(MessageTemplate(key=key, title=key, channel=channel, body=body, is_active=is_active))


@pytest.fixture
def make(db):
    return Factory(db)


def actor_for(user) -> Actor:
    return Actor.from_user(user)


@pytest.fixture
def as_actor():
    return actor_for
