"""SQLAlchemy ORM models — the portal tables the core reads.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Only the tables the session and live-view cores query are modelled here:

- users     — portal profile per auth identity (role, clinic)
- clinics   — tenant root
- patients  — belong to a clinic
- reports   — lab reports, per patient and clinic

Auth identities themselves live in the hosted auth service, not here.
users.user_id is the link: it holds the identity id from the access token.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import ARRAY, UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Clinic(Base):
    """A client clinic. Every patient, report and client user belongs to one."""

    __tablename__ = "clinics"

    id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=new_uuid
    )
    reference_id: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text)
    region: Mapped[Optional[str]] = mapped_column(String(100))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    logo_url: Mapped[Optional[str]] = mapped_column(Text)
    contact_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, server_default="{}"
    )
    report_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, server_default="{}"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=utcnow
    )

    patients: Mapped[list["Patient"]] = relationship(back_populates="clinic")
    reports: Mapped[list["Report"]] = relationship(back_populates="clinic")


class User(Base):
    """Portal profile for one auth identity.

    Learn: role drives authorization elsewhere ("admin" sees every clinic,
    "client" only their own). A row missing here means the identity can
    sign in to the auth service but has no business in the portal.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=new_uuid
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), unique=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default="client"
    )  # admin, client
    clinic_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("clinics.id"), nullable=True
    )
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (Index("idx_patients_clinic", "clinic_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=new_uuid
    )
    reference_id: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    clinic_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("clinics.id")
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    gender: Mapped[Optional[str]] = mapped_column(String(20))
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=utcnow
    )

    clinic: Mapped[Optional["Clinic"]] = relationship(back_populates="patients")
    reports: Mapped[list["Report"]] = relationship(back_populates="patient")


class Report(Base):
    """A lab report, tracked from sample collection to completion."""

    __tablename__ = "reports"
    __table_args__ = (
        Index("idx_reports_clinic", "clinic_id"),
        Index("idx_reports_patient", "patient_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=new_uuid
    )
    reference_id: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    status: Mapped[Optional[str]] = mapped_column(String(50))
    lab_test_type: Mapped[Optional[str]] = mapped_column(String(100))
    processing_lab: Mapped[Optional[str]] = mapped_column(String(100))
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100))
    sample_collection_date: Mapped[Optional[date]] = mapped_column(Date)
    date_picked_up_by_lab: Mapped[Optional[date]] = mapped_column(Date)
    date_shipped_to_lab: Mapped[Optional[date]] = mapped_column(Date)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100))
    report_completion_date: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    pdf_url: Mapped[Optional[str]] = mapped_column(Text)
    patient_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("patients.id")
    )
    clinic_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("clinics.id")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=utcnow
    )

    clinic: Mapped[Optional["Clinic"]] = relationship(back_populates="reports")
    patient: Mapped[Optional["Patient"]] = relationship(back_populates="reports")


# Table name → model, for lookups by entity kind
ENTITY_MODELS: dict[str, type[Base]] = {
    "users": User,
    "clinics": Clinic,
    "patients": Patient,
    "reports": Report,
}
