"""Pydantic schemas for escrow endpoints.

Amounts cross the API as decimal strings.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from custody_engine.common.models import as_utc
from custody_engine.escrows.models import EscrowModel, ParticipantModel
from custody_engine.identifiers.caip10 import derive_canonical

ADDRESS = r"^0x[0-9a-fA-F]{40}$"
AMOUNT = r"^[0-9]+$"


# ── Requests ──

class PaymentEscrowCreate(BaseModel):
    vault_id: str
    policy_id: str
    name: str = Field(..., min_length=1, max_length=255)
    total_amount: str = Field(..., pattern=AMOUNT)
    recipient: str = Field(..., pattern=ADDRESS)
    requester: str = Field(..., pattern=ADDRESS)
    token: Optional[str] = Field(None, pattern=ADDRESS)
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    target: Optional[str] = Field(None, pattern=ADDRESS)
    payload: Optional[str] = None
    scheduled_release_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    submit: bool = False


class ParticipantCreate(BaseModel):
    address: Optional[str] = Field(None, pattern=ADDRESS)
    name: Optional[str] = None
    allocated_amount: str = Field(..., pattern=AMOUNT)


class CollectionEscrowCreate(BaseModel):
    vault_id: str
    policy_id: str
    name: str = Field(..., min_length=1, max_length=255)
    total_amount: str = Field(..., pattern=AMOUNT)
    participants: list[ParticipantCreate] = Field(..., min_length=1)
    requester: str = Field(..., pattern=ADDRESS)
    token: Optional[str] = Field(None, pattern=ADDRESS)
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    submit: bool = False


class ActorRequest(BaseModel):
    actor: str


class ApproveRequest(BaseModel):
    approver: str = Field(..., pattern=ADDRESS)
    signature: Optional[str] = None
    merkle_proof: Optional[list[str]] = None


class RevokeRequest(BaseModel):
    approver: str = Field(..., pattern=ADDRESS)


class OnChainRequest(BaseModel):
    actor: str
    tx_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    on_chain_id: Optional[str] = None


class CompleteRequest(BaseModel):
    actor: str
    tx_hash: Optional[str] = None


class CancelRequest(BaseModel):
    actor: str
    reason: Optional[str] = None


class PaymentRecord(BaseModel):
    participant_id: str
    amount: str = Field(..., pattern=AMOUNT)
    tx_hash: Optional[str] = None
    actor: Optional[str] = None


# ── Responses ──

class ParticipantResponse(BaseModel):
    id: str
    address: Optional[str] = None
    name: Optional[str] = None
    allocated_amount: str
    paid_amount: str
    status: str
    paid_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    tx_hash: Optional[str] = None

    @classmethod
    def from_model(cls, participant: ParticipantModel, chain_id: int) -> "ParticipantResponse":
        return cls(
            id=participant.id,
            address=(
                derive_canonical(participant.address, chain_id) if participant.address else None
            ),
            name=participant.name,
            allocated_amount=participant.allocated_amount,
            paid_amount=participant.paid_amount,
            status=participant.status,
            paid_at=as_utc(participant.paid_at),
            last_payment_at=as_utc(participant.last_payment_at),
            tx_hash=participant.tx_hash,
        )


class EscrowResponse(BaseModel):
    id: str
    vault_id: str
    policy_id: str
    type: str
    name: str
    description: Optional[str] = None
    token: Optional[str] = None
    total_amount: str
    collected_amount: str
    deadline: Optional[datetime] = None
    status: str
    requester: Optional[str] = None
    recipient: Optional[str] = None
    target: Optional[str] = None
    payload: Optional[str] = None
    scheduled_release_at: Optional[datetime] = None
    current_approvals: int
    required_approvals: int
    approved_at: Optional[datetime] = None
    executable_after: Optional[datetime] = None
    on_chain_id: Optional[str] = None
    tx_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    expired_at: Optional[datetime] = None
    metadata: dict[str, Any] = {}
    version: int
    participants: list[ParticipantResponse] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, escrow: EscrowModel, chain_id: int) -> "EscrowResponse":
        def canonical(address: str | None) -> str | None:
            return derive_canonical(address, chain_id) if address else None

        return cls(
            id=escrow.id,
            vault_id=escrow.vault_id,
            policy_id=escrow.policy_id,
            type=escrow.type,
            name=escrow.name,
            description=escrow.description,
            token=canonical(escrow.token),
            total_amount=escrow.total_amount,
            collected_amount=escrow.collected_amount,
            deadline=as_utc(escrow.deadline),
            status=escrow.status,
            requester=canonical(escrow.requester),
            recipient=canonical(escrow.recipient),
            target=canonical(escrow.target),
            payload=escrow.payload,
            scheduled_release_at=as_utc(escrow.scheduled_release_at),
            current_approvals=escrow.current_approvals,
            required_approvals=(escrow.policy_snapshot or {}).get("threshold") or 0,
            approved_at=as_utc(escrow.approved_at),
            executable_after=as_utc(escrow.executable_after),
            on_chain_id=escrow.on_chain_id,
            tx_hash=escrow.tx_hash,
            user_op_hash=escrow.user_op_hash,
            completed_at=as_utc(escrow.completed_at),
            cancelled_at=as_utc(escrow.cancelled_at),
            cancel_reason=escrow.cancel_reason,
            expired_at=as_utc(escrow.expired_at),
            metadata=escrow.metadata_ or {},
            version=escrow.version,
            participants=[ParticipantResponse.from_model(p, chain_id) for p in escrow.participants],
            created_at=escrow.created_at,
            updated_at=escrow.updated_at,
        )


class ApprovalEntry(BaseModel):
    approver: str
    approved_at: datetime


class ApprovalProgressResponse(BaseModel):
    current: int
    required: int
    approvals: list[ApprovalEntry]
    is_approved: bool
    executable_after: Optional[datetime] = None
    is_executable: bool


class CollectionProgressResponse(BaseModel):
    total_amount: str
    collected_amount: str
    remaining_amount: str
    participant_count: int
    paid_count: int
    partial_count: int
    pending_count: int
    overdue_count: int
    completion_rate: int


class EscrowStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    pending_approval: int
