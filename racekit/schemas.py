from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentMethodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    account_number: str = ""
    account_type: str = ""
    active: bool = True


class RegistrationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    registration_id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    category: str
    price: float = 0
    shirt_size: str
    status: str = "pending"
    created_at: Optional[datetime] = None

    payment_status: Optional[str] = None
    payment_method_id: Optional[int] = None
    payment_reference_number: Optional[str] = None

    kit_claimed: bool = False
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claim_notes: Optional[str] = None
    processed_by: Optional[str] = None
    claim_location_id: Optional[int] = None
    claim_version: int = 0


class RegistrationCreate(BaseModel):
    first_name: str
    last_name: str
    email: str
    category: str
    shirt_size: str
    phone: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    is_church_attendee: bool = False
    department: Optional[str] = None
    ministry: Optional[str] = None
    cluster: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_conditions: Optional[str] = None
    status: str = "pending"
    payment_method_id: Optional[int] = None
    payment_reference_number: Optional[str] = None


class KitClaimUpdate(BaseModel):
    id: int  # registration storage key
    kit_claimed: bool
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claim_notes: Optional[str] = None
    processed_by: Optional[str] = None
    claim_location_id: Optional[int] = None
    expected_version: Optional[int] = None


class ClaimRequest(BaseModel):
    claimed_by: str = ""
    claim_notes: Optional[str] = None
    claimed_at: Optional[datetime] = None
    expected_version: Optional[int] = None


class UnclaimRequest(BaseModel):
    claim_notes: Optional[str] = None
    expected_version: Optional[int] = None


class BulkClaimRequest(BaseModel):
    registration_ids: list[int] = Field(default_factory=list)
    processed_by: str = ""
    claim_location_id: Optional[int] = None
    claim_notes: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    payment_status: str  # pending | confirmed | rejected
    notes: Optional[str] = None
