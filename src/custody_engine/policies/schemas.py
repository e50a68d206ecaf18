"""Pydantic schemas for policy endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

AMOUNT = r"^[0-9]+$"


class CollectionConfig(BaseModel):
    allow_partial_payment: bool = True
    auto_complete: bool = True
    default_deadline: Optional[int] = Field(None, gt=0)
    reminder_settings: Optional[dict[str, Any]] = None


class PaymentPolicyCreate(BaseModel):
    vault_id: str
    name: str = Field(..., min_length=1, max_length=255)
    threshold: int = Field(..., ge=1)
    timelock: int = Field(0, ge=0)
    guardian_addresses: list[str]
    owner_addresses: list[str] = Field(default_factory=list)
    actor: str
    max_amount: Optional[str] = Field(None, pattern=AMOUNT)
    description: Optional[str] = None
    active: bool = True


class CollectionPolicyCreate(BaseModel):
    vault_id: str
    name: str = Field(..., min_length=1, max_length=255)
    collection_config: CollectionConfig = Field(default_factory=CollectionConfig)
    actor: str
    description: Optional[str] = None
    active: bool = True


class PolicyUpdate(BaseModel):
    actor: str
    changes: dict[str, Any]


class PolicyActivation(BaseModel):
    actor: str


class ScheduledUpdateRequest(BaseModel):
    actor: str
    effective_at: datetime
    changes: dict[str, Any]


class EmergencyUpdateRequest(BaseModel):
    actor: str
    reason: str = Field(..., min_length=1)
    changes: dict[str, Any]


class PolicyResponse(BaseModel):
    id: str
    vault_id: str
    type: str
    name: str
    description: Optional[str] = None
    active: bool
    threshold: Optional[int] = None
    timelock: Optional[int] = None
    max_amount: Optional[str] = None
    roles_root: Optional[str] = None
    owners_root: Optional[str] = None
    guardian_addresses: list[str] = []
    owner_addresses: list[str] = []
    collection_config: Optional[dict[str, Any]] = None
    pending_changes: list[dict[str, Any]] = []
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PolicyStatsResponse(BaseModel):
    total: int
    active: int
    inactive: int
    by_type: dict[str, int]
