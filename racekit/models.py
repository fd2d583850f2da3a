from __future__ import annotations

from datetime import datetime
from sqlalchemy import String, Integer, Float, Boolean, Text, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def _utcnow() -> datetime:
    return datetime.utcnow()


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, default="distributor")  # admin | distributor | viewer
    can_distribute_kits: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Category(Base):
    __tablename__ = "categories"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    # newline separated list, e.g. "Race bib\nFinisher shirt"
    inclusions: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class PaymentMethod(Base):
    __tablename__ = "payment_methods"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    account_number: Mapped[str] = mapped_column(String, nullable=False, default="")
    account_type: Mapped[str] = mapped_column(String, nullable=False, default="e-wallet")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class Department(Base):
    __tablename__ = "departments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)

    ministries: Mapped[list["Ministry"]] = relationship(back_populates="department", cascade="all, delete-orphan")


class Ministry(Base):
    __tablename__ = "ministries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id", ondelete="CASCADE"), nullable=True)

    department: Mapped["Department"] = relationship(back_populates="ministries")
    clusters: Mapped[list["Cluster"]] = relationship(back_populates="ministry", cascade="all, delete-orphan")


class Cluster(Base):
    __tablename__ = "clusters"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    ministry_id: Mapped[int | None] = mapped_column(ForeignKey("ministries.id", ondelete="CASCADE"), nullable=True)

    ministry: Mapped["Ministry"] = relationship(back_populates="clusters")


class ClaimLocation(Base):
    __tablename__ = "claim_locations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Registration(Base):
    __tablename__ = "registrations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_id: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)

    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    shirt_size: Mapped[str] = mapped_column(String, nullable=False)

    is_church_attendee: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    ministry: Mapped[str | None] = mapped_column(String, nullable=True)
    cluster: Mapped[str | None] = mapped_column(String, nullable=True)
    emergency_contact: Mapped[str | None] = mapped_column(String, nullable=True)
    emergency_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    medical_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)

    # pending | confirmed | paid | completed | cancelled
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")

    # pending | confirmed | rejected
    payment_status: Mapped[str | None] = mapped_column(String, nullable=True, default="pending")
    payment_method_id: Mapped[int | None] = mapped_column(ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True)
    payment_reference_number: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_confirmed_by: Mapped[str | None] = mapped_column(String, nullable=True)

    # Claim sub-state; claimed_at is set iff kit_claimed
    kit_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    claim_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    claim_location_id: Mapped[int | None] = mapped_column(ForeignKey("claim_locations.id", ondelete="SET NULL"), nullable=True)
    claim_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    claim_location: Mapped["ClaimLocation"] = relationship()

    __table_args__ = (
        Index("ix_registrations_category", "category"),
        Index("ix_registrations_payment_status", "payment_status"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PaymentHistory(Base):
    __tablename__ = "payment_history"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_fk: Mapped[int] = mapped_column(ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False)
    payment_status: Mapped[str] = mapped_column(String, nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_payment_history_registration", "registration_fk"),
    )


class PaymentReceipt(Base):
    __tablename__ = "payment_receipts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_fk: Mapped[int] = mapped_column(ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False)
    receipt_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    generated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("registration_fk", name="uq_receipt_per_registration"),
    )
