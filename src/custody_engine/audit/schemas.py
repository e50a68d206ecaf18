"""Pydantic schemas for audit ledger API responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from custody_engine.audit.models import AuditLogModel
from custody_engine.common.models import as_utc


class AuditLogResponse(BaseModel):
    id: str
    vault_id: Optional[str] = None
    actor: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    tx_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    data: dict[str, Any] = {}
    metadata: dict[str, Any] = {}
    timestamp: datetime
    entry_hash: str

    @classmethod
    def from_record(cls, record: AuditLogModel) -> "AuditLogResponse":
        return cls(
            id=record.id,
            vault_id=record.vault_id,
            actor=record.actor,
            action=record.action,
            resource=record.resource,
            resource_id=record.resource_id,
            tx_hash=record.tx_hash,
            user_op_hash=record.user_op_hash,
            data=record.data or {},
            metadata=record.metadata_ or {},
            timestamp=as_utc(record.timestamp),
            entry_hash=record.entry_hash,
        )


class ActorCount(BaseModel):
    actor: str
    count: int


class AuditStatsResponse(BaseModel):
    total_logs: int
    action_counts: dict[str, int]
    resource_counts: dict[str, int]
    top_actors: list[ActorCount]
