"""
Database Schemas for MedShare

Each Pydantic model maps to a MongoDB collection (lowercased class name):
- User -> "user"
- Medicine -> "medicine" (one donated lot)
- MedicineRequest -> "medicinerequest" (the request ledger)

The request bodies accepted by the API live at the bottom of the module.
"""
from __future__ import annotations
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

DONOR = "DONOR"
RECIPIENT = "RECIPIENT"
ADMIN = "ADMIN"
Role = Literal["DONOR", "RECIPIENT", "ADMIN"]

AVAILABLE = "AVAILABLE"
CLAIMED = "CLAIMED"
EXPIRED = "EXPIRED"
LotStatus = Literal["AVAILABLE", "CLAIMED", "EXPIRED"]

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
RequestStatus = Literal["PENDING", "APPROVED", "REJECTED"]
ACTIVE_REQUEST_STATUSES = (PENDING, APPROVED)


# Accounts
class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = RECIPIENT
    phone: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None


class Principal(BaseModel):
    """The authenticated caller as seen by the workflow."""
    id: str
    role: Role
    email: Optional[str] = None


# Inventory
class Medicine(BaseModel):
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    expiry_date: datetime
    quantity: int = Field(ge=0)
    donor_id: str
    status: LotStatus = AVAILABLE
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# Request ledger
class MedicineRequest(BaseModel):
    medicine_lot_id: str
    recipient_id: str
    status: RequestStatus = PENDING
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


# Request bodies
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Optional[dict] = None


class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: Optional[str] = None
    phone: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class DonationBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    expiry_date: date = Field(alias="expiryDate")
    quantity: int


class LotUpdateBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    quantity: Optional[int] = None
    expiry_date: Optional[date] = Field(None, alias="expiryDate")
    status: Optional[str] = None


class ReviewBody(BaseModel):
    action: Literal["approve", "reject"]
