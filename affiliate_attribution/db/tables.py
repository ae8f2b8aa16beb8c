"""SQLAlchemy ORM models for the clinic side of attribution."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ClinicRow(Base):
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class PatientRow(Base):
    """Patient record, only the fields attribution reads and writes.

    attribution_affiliate_id is first-wins: once set it is never overwritten.
    """
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)

    attribution_affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=True, index=True)
    attribution_ref_code = Column(String(100), nullable=True)
    attribution_first_touch_at = Column(DateTime(timezone=True), nullable=True)
    tags = Column(JSON, default=list)  # list[str], includes "affiliate:<CODE>"

    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_patients_clinic_attribution", "clinic_id", "attribution_affiliate_id"),
    )
