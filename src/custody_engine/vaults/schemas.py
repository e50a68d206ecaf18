"""Pydantic schemas for vault and member endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

ADDRESS = r"^0x[0-9a-fA-F]{40}$"


# ── Vaults ──

class VaultCreate(BaseModel):
    address: str = Field(..., pattern=ADDRESS)
    chain_id: int = Field(..., gt=0)
    uuid: str
    name: str = Field(..., min_length=1, max_length=255)
    owner: str = Field(..., pattern=ADDRESS)
    description: Optional[str] = None
    salt: Optional[str] = None
    factory_address: Optional[str] = Field(None, pattern=ADDRESS)
    metadata: dict[str, Any] = Field(default_factory=dict)


class VaultUpdate(BaseModel):
    actor: str
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    policy_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class VaultResponse(BaseModel):
    id: str
    caip10: str
    address: str
    chain_id: int
    uuid: str
    name: str
    description: Optional[str] = None
    salt: Optional[str] = None
    factory_address: Optional[str] = None
    policy_id: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime


class VaultStatsResponse(BaseModel):
    member_count: int
    role_counts: dict[str, int]
    created_at: datetime
    updated_at: datetime


# ── Members ──

class MemberAdd(BaseModel):
    address: str = Field(..., pattern=ADDRESS)
    role: str
    added_by: str
    weight: Optional[int] = Field(None, ge=0)


class MemberResponse(BaseModel):
    id: str
    vault_id: str
    caip10: str
    address: str
    role: str
    weight: int
    added_by: Optional[str] = None
    added_at: datetime
    last_activity_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MemberRemoved(BaseModel):
    removed: bool
