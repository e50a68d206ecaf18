"""Audit ledger: record, search, aggregate and prune the action log."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from custody_engine.common.config import CustodySettings
from custody_engine.common.exceptions import ValidationError
from custody_engine.common.logging import get_logger
from custody_engine.common.models import as_utc, utcnow
from custody_engine.identifiers.caip10 import is_valid_address
from custody_engine.audit.models import AuditLogModel

logger = get_logger("audit")

TOP_ACTORS_LIMIT = 10


@dataclass
class AuditEntry:
    """One action to be written to the ledger."""

    actor: str
    action: str
    resource: str
    vault_id: Optional[str] = None
    resource_id: Optional[str] = None
    tx_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditFilter:
    """Conjunctive filter shared by search and stats. Unset fields match all."""

    vault_id: Optional[str] = None
    actor: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    tx_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0


class AuditLedger:
    """Append-only action log. Entries are never updated, only pruned by age."""

    def __init__(self, settings: CustodySettings):
        self.settings = settings
        self._last_timestamp: datetime | None = None

    # ── Write ──

    async def append(self, session: AsyncSession, entry: AuditEntry) -> AuditLogModel:
        """Add one entry to the caller's transaction and flush it.

        Flush errors propagate so a caller pairing a state change with its
        audit entry sees the failure and the session rolls both back.
        """
        record = self._build(entry)
        session.add(record)
        await session.flush()
        return record

    async def append_batch(
        self, session: AsyncSession, entries: list[AuditEntry],
    ) -> list[AuditLogModel]:
        if not entries:
            return []
        records = [self._build(e) for e in entries]
        session.add_all(records)
        await session.flush()
        return records

    async def log_escrow_action(
        self, session: AsyncSession, *, actor: str, action: str, escrow_id: str,
        vault_id: str | None = None, tx_hash: str | None = None,
        user_op_hash: str | None = None, data: dict[str, Any] | None = None,
    ) -> AuditLogModel:
        return await self.append(session, AuditEntry(
            vault_id=vault_id,
            actor=actor,
            action=f"escrow_{action}",
            resource="escrow",
            resource_id=escrow_id,
            tx_hash=tx_hash,
            user_op_hash=user_op_hash,
            data=data or {},
        ))

    async def log_policy_action(
        self, session: AsyncSession, *, actor: str, action: str, policy_id: str,
        vault_id: str | None = None, tx_hash: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> AuditLogModel:
        return await self.append(session, AuditEntry(
            vault_id=vault_id,
            actor=actor,
            action=f"policy_{action}",
            resource="policy",
            resource_id=policy_id,
            tx_hash=tx_hash,
            data=data or {},
        ))

    async def log_member_action(
        self, session: AsyncSession, *, actor: str, action: str, member_address: str,
        vault_id: str | None = None, data: dict[str, Any] | None = None,
    ) -> AuditLogModel:
        return await self.append(session, AuditEntry(
            vault_id=vault_id,
            actor=actor,
            action=f"member_{action}",
            resource="member",
            resource_id=member_address,
            data=data or {},
        ))

    # ── Read ──

    async def search(
        self, session: AsyncSession, audit_filter: AuditFilter | None = None,
    ) -> list[AuditLogModel]:
        """Matching entries, newest first."""
        audit_filter = audit_filter or AuditFilter()
        query = (
            select(AuditLogModel)
            .where(*self._conditions(audit_filter))
            .order_by(AuditLogModel.timestamp.desc(), AuditLogModel.id.desc())
            .offset(max(audit_filter.offset, 0))
            .limit(self._clamp_limit(audit_filter.limit))
        )
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_by_actor(
        self, session: AsyncSession, actor: str, limit: int = 50,
    ) -> list[AuditLogModel]:
        return await self.search(session, AuditFilter(actor=actor, limit=limit))

    async def get_by_vault(
        self, session: AsyncSession, vault_id: str, limit: int = 100,
    ) -> list[AuditLogModel]:
        return await self.search(session, AuditFilter(vault_id=vault_id, limit=limit))

    async def get_by_user_op_hash(
        self, session: AsyncSession, user_op_hash: str,
    ) -> list[AuditLogModel]:
        return await self.search(
            session, AuditFilter(user_op_hash=user_op_hash, limit=self.settings.audit_max_limit),
        )

    async def get_by_tx_hash(
        self, session: AsyncSession, tx_hash: str,
    ) -> list[AuditLogModel]:
        return await self.search(
            session, AuditFilter(tx_hash=tx_hash, limit=self.settings.audit_max_limit),
        )

    async def get_stats(
        self, session: AsyncSession, audit_filter: AuditFilter | None = None,
    ) -> dict[str, Any]:
        """Counts grouped by action, resource and actor, computed in SQL."""
        conditions = self._conditions(audit_filter or AuditFilter())

        total = (await session.execute(
            select(func.count(AuditLogModel.id)).where(*conditions)
        )).scalar() or 0

        action_rows = await session.execute(
            select(AuditLogModel.action, func.count(AuditLogModel.id))
            .where(*conditions)
            .group_by(AuditLogModel.action)
        )
        resource_rows = await session.execute(
            select(AuditLogModel.resource, func.count(AuditLogModel.id))
            .where(*conditions)
            .group_by(AuditLogModel.resource)
        )
        count_col = func.count(AuditLogModel.id).label("count")
        actor_rows = await session.execute(
            select(AuditLogModel.actor, count_col)
            .where(*conditions)
            .group_by(AuditLogModel.actor)
            .order_by(desc(count_col), AuditLogModel.actor)
            .limit(TOP_ACTORS_LIMIT)
        )

        return {
            "total_logs": total,
            "action_counts": {action: count for action, count in action_rows},
            "resource_counts": {resource: count for resource, count in resource_rows},
            "top_actors": [
                {"actor": actor, "count": count} for actor, count in actor_rows
            ],
        }

    # ── Retention ──

    async def cleanup(
        self, session: AsyncSession, retention_days: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Delete entries strictly older than ``now - retention_days``."""
        if retention_days is None:
            retention_days = self.settings.audit_retention_days
        if retention_days < 0:
            raise ValidationError(
                f"retention_days must be non-negative, got {retention_days}",
                code="INVALID_RETENTION",
            )

        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        result = await session.execute(
            delete(AuditLogModel).where(AuditLogModel.timestamp < cutoff)
        )
        deleted = result.rowcount or 0
        logger.info(
            "audit cleanup removed %d entries", deleted,
            extra={"retention_days": retention_days, "cutoff": cutoff.isoformat()},
        )
        return deleted

    # ── Integrity ──

    def verify_entry(self, record: AuditLogModel) -> bool:
        """Recompute the entry digest and compare with the stored one."""
        return record.entry_hash == self._compute_entry_hash(
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
        )

    # ── Internal helpers ──

    def _build(self, entry: AuditEntry) -> AuditLogModel:
        timestamp = self._next_timestamp()
        return AuditLogModel(
            vault_id=entry.vault_id,
            actor=entry.actor,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            tx_hash=entry.tx_hash,
            user_op_hash=entry.user_op_hash,
            data=entry.data,
            metadata_=entry.metadata,
            timestamp=timestamp,
            entry_hash=self._compute_entry_hash(
                vault_id=entry.vault_id,
                actor=entry.actor,
                action=entry.action,
                resource=entry.resource,
                resource_id=entry.resource_id,
                tx_hash=entry.tx_hash,
                user_op_hash=entry.user_op_hash,
                data=entry.data,
                metadata=entry.metadata,
                timestamp=timestamp,
            ),
        )

    def _next_timestamp(self) -> datetime:
        # Clock steps backwards must not reorder this writer's entries.
        now = utcnow()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None or limit <= 0:
            limit = self.settings.audit_default_limit
        return min(limit, self.settings.audit_max_limit)

    @staticmethod
    def _conditions(audit_filter: AuditFilter) -> list:
        conditions = []
        if audit_filter.vault_id:
            conditions.append(AuditLogModel.vault_id == audit_filter.vault_id)
        if audit_filter.actor:
            actor = audit_filter.actor.lower()
            if is_valid_address(actor):
                # a bare address matches its identifier on any chain
                conditions.append(func.lower(AuditLogModel.actor).like(f"%:{actor}"))
            else:
                conditions.append(func.lower(AuditLogModel.actor) == actor)
        if audit_filter.action:
            conditions.append(AuditLogModel.action == audit_filter.action)
        if audit_filter.resource:
            conditions.append(AuditLogModel.resource == audit_filter.resource)
        if audit_filter.resource_id:
            conditions.append(AuditLogModel.resource_id == audit_filter.resource_id)
        if audit_filter.tx_hash:
            conditions.append(AuditLogModel.tx_hash == audit_filter.tx_hash)
        if audit_filter.user_op_hash:
            conditions.append(AuditLogModel.user_op_hash == audit_filter.user_op_hash)
        if audit_filter.start_date:
            conditions.append(AuditLogModel.timestamp >= audit_filter.start_date)
        if audit_filter.end_date:
            conditions.append(AuditLogModel.timestamp <= audit_filter.end_date)
        return conditions

    @staticmethod
    def _compute_entry_hash(
        *,
        vault_id: str | None,
        actor: str,
        action: str,
        resource: str,
        resource_id: str | None,
        tx_hash: str | None,
        user_op_hash: str | None,
        data: dict[str, Any],
        metadata: dict[str, Any],
        timestamp: datetime,
    ) -> str:
        """SHA-256 of canonical JSON of the entry fields."""
        canonical = json.dumps(
            {
                "vault_id": vault_id,
                "actor": actor,
                "action": action,
                "resource": resource,
                "resource_id": resource_id,
                "tx_hash": tx_hash,
                "user_op_hash": user_op_hash,
                "data": data,
                "metadata": metadata,
                "timestamp": timestamp.isoformat(),
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode()).hexdigest()
