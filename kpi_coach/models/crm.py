"""
CRM business records read by the signal collector.

These tables belong to the main CRM; only the columns the coach queries
are modelled here.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, ForeignKey, Numeric, Text
from sqlalchemy.orm import relationship
from datetime import datetime

from kpi_coach.models.base import Base


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)  # see enums.LeadStatus
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    appointment_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    tuition_total = Column(Numeric(14, 0), default=0, nullable=False)  # VND
    exam_date = Column(Date, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lead = relationship("Lead", lazy="joined")


class Receipt(Base):
    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    amount = Column(Numeric(14, 0), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class ScheduleItem(Base):
    """One scheduled practice/theory session for a student."""
    __tablename__ = "schedule_items"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False, index=True)
    is_cancelled = Column(Boolean, default=False, nullable=False)


class ExpenseEntry(Base):
    """Daily operating expense line for a branch (rent, utilities, wifi, ...)."""
    __tablename__ = "expense_entries"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    date_key = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    category = Column(String, nullable=False)
    amount = Column(Numeric(14, 0), nullable=False)  # VND
    note = Column(Text, nullable=True)
