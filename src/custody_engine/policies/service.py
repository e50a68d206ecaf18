"""Policy store: payment and collection rules per vault."""

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from custody_engine.audit.models import AuditLogModel
from custody_engine.audit.service import AuditFilter, AuditLedger
from custody_engine.common.config import CustodySettings
from custody_engine.common.exceptions import (
    InvalidPolicyError,
    PolicyNotFoundError,
    ThresholdExceedsGuardianCountError,
    VaultNotFoundError,
)
from custody_engine.common.logging import get_logger
from custody_engine.common.models import as_utc, utcnow
from custody_engine.escrows.amounts import parse_amount, to_storage
from custody_engine.identifiers.caip10 import qualify_actor, validate_address
from custody_engine.identifiers.commitments import compute_root, normalize_addresses
from custody_engine.policies.changes import EmergencyChange, PolicyChangeRequest, ScheduledChange
from custody_engine.policies.models import POLICY_TYPES, PolicyModel
from custody_engine.vaults.models import VaultModel

logger = get_logger("policies")

PAYMENT_FIELDS = (
    "name", "description", "threshold", "timelock", "max_amount",
    "guardian_addresses", "owner_addresses",
)
COLLECTION_FIELDS = ("name", "description", "collection_config")

COLLECTION_DEFAULTS: dict[str, Any] = {
    "allow_partial_payment": True,
    "auto_complete": True,
    "default_deadline": None,
    "reminder_settings": None,
}


def normalize_collection_config(config: dict[str, Any] | None) -> dict[str, Any]:
    """Fill defaults and check the collection configuration block.

    ``default_deadline`` is a number of seconds added to the creation time of
    collection escrows that do not carry their own deadline.
    """
    config = dict(config or {})
    unknown = set(config) - set(COLLECTION_DEFAULTS)
    if unknown:
        raise InvalidPolicyError(f"Unknown collection config keys: {sorted(unknown)}")
    merged = {**COLLECTION_DEFAULTS, **config}

    for flag in ("allow_partial_payment", "auto_complete"):
        if not isinstance(merged[flag], bool):
            raise InvalidPolicyError(f"{flag} must be a boolean")

    deadline = merged["default_deadline"]
    if deadline is not None and (
        isinstance(deadline, bool) or not isinstance(deadline, int) or deadline <= 0
    ):
        raise InvalidPolicyError("default_deadline must be a positive number of seconds")

    reminders = merged["reminder_settings"]
    if reminders is not None:
        if not isinstance(reminders, dict) or not isinstance(reminders.get("enabled"), bool):
            raise InvalidPolicyError("reminder_settings requires an 'enabled' flag")
        days = reminders.get("days_before", 1)
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise InvalidPolicyError("reminder_settings.days_before must be at least 1")
        merged["reminder_settings"] = {"enabled": reminders["enabled"], "days_before": days}
    return merged


def _payment_rules(
    threshold: int,
    timelock: int,
    guardian_addresses: list[str],
    owner_addresses: list[str],
    max_amount: int | str | None,
) -> dict[str, Any]:
    """Validate payment parameters and derive the commitment roots."""
    for value, label in ((threshold, "threshold"), (timelock, "timelock")):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidPolicyError(f"{label} must be an integer")
    if threshold < 1:
        raise InvalidPolicyError("threshold must be at least 1")
    if timelock < 0:
        raise InvalidPolicyError("timelock must be non-negative")

    for address in [*guardian_addresses, *owner_addresses]:
        validate_address(address)
    guardians = normalize_addresses(guardian_addresses)
    owners = normalize_addresses(owner_addresses)
    if threshold > len(guardians):
        raise ThresholdExceedsGuardianCountError(
            f"Threshold {threshold} exceeds {len(guardians)} distinct guardians"
        )

    return {
        "threshold": threshold,
        "timelock": timelock,
        "max_amount": to_storage(parse_amount(max_amount)) if max_amount is not None else None,
        "guardian_addresses": guardians,
        "owner_addresses": owners,
        "roles_root": compute_root(guardians),
        "owners_root": compute_root(owners),
    }


class PolicyStore:
    """Create, update and read vault policies."""

    def __init__(self, settings: CustodySettings, audit: AuditLedger):
        self.settings = settings
        self.audit = audit

    # ── Create ──

    async def create_payment_policy(
        self,
        session: AsyncSession,
        vault_id: str,
        name: str,
        threshold: int,
        timelock: int,
        guardian_addresses: list[str],
        owner_addresses: list[str],
        actor: str,
        max_amount: int | str | None = None,
        description: str | None = None,
        active: bool = True,
    ) -> PolicyModel:
        vault = await self._require_vault(session, vault_id)
        rules = _payment_rules(threshold, timelock, guardian_addresses, owner_addresses, max_amount)

        policy = PolicyModel(
            vault_id=vault_id,
            type="payment",
            name=name,
            description=description,
            active=active,
            pending_changes=[],
            metadata_={},
            **rules,
        )
        session.add(policy)
        await session.flush()
        if active:
            vault.policy_id = policy.id

        await self.audit.log_policy_action(
            session,
            actor=qualify_actor(actor, vault.chain_id),
            action="created",
            policy_id=policy.id,
            vault_id=vault_id,
            data={
                "type": "payment",
                "threshold": policy.threshold,
                "timelock": policy.timelock,
                "max_amount": policy.max_amount,
                "roles_root": policy.roles_root,
                "owners_root": policy.owners_root,
            },
        )
        logger.info("payment policy created", extra={"policy_id": policy.id, "vault_id": vault_id})
        return policy

    async def create_collection_policy(
        self,
        session: AsyncSession,
        vault_id: str,
        name: str,
        collection_config: dict[str, Any] | None,
        actor: str,
        description: str | None = None,
        active: bool = True,
    ) -> PolicyModel:
        vault = await self._require_vault(session, vault_id)
        config = normalize_collection_config(collection_config)

        policy = PolicyModel(
            vault_id=vault_id,
            type="collection",
            name=name,
            description=description,
            active=active,
            collection_config=config,
            guardian_addresses=[],
            owner_addresses=[],
            pending_changes=[],
            metadata_={},
        )
        session.add(policy)
        await session.flush()

        await self.audit.log_policy_action(
            session,
            actor=qualify_actor(actor, vault.chain_id),
            action="created",
            policy_id=policy.id,
            vault_id=vault_id,
            data={"type": "collection", "collection_config": config},
        )
        logger.info("collection policy created", extra={"policy_id": policy.id, "vault_id": vault_id})
        return policy

    # ── Update ──

    async def update_policy(
        self, session: AsyncSession, policy_id: str, actor: str, **changes: Any,
    ) -> PolicyModel:
        """Apply field changes and audit a ``{field: {from, to}}`` diff."""
        policy = await self.require_policy(session, policy_id)
        diff = self._apply_changes(policy, changes)
        await session.flush()

        vault = await self._require_vault(session, policy.vault_id)
        await self.audit.log_policy_action(
            session,
            actor=qualify_actor(actor, vault.chain_id),
            action="updated",
            policy_id=policy.id,
            vault_id=policy.vault_id,
            data={"changes": diff},
        )
        return policy

    async def set_active(
        self, session: AsyncSession, policy_id: str, active: bool, actor: str,
    ) -> PolicyModel:
        policy = await self.require_policy(session, policy_id)
        vault = await self._require_vault(session, policy.vault_id)

        policy.active = active
        if active and policy.type == "payment":
            vault.policy_id = policy.id
        elif not active and vault.policy_id == policy.id:
            vault.policy_id = None
        await session.flush()

        await self.audit.log_policy_action(
            session,
            actor=qualify_actor(actor, vault.chain_id),
            action="activated" if active else "deactivated",
            policy_id=policy.id,
            vault_id=policy.vault_id,
        )
        return policy

    async def schedule_update(
        self,
        session: AsyncSession,
        policy_id: str,
        effective_at: datetime,
        changes: dict[str, Any],
        actor: str,
    ) -> PolicyModel:
        return await self.apply_change_request(
            session, policy_id, ScheduledChange(effective_at=effective_at, changes=changes), actor,
        )

    async def emergency_update(
        self,
        session: AsyncSession,
        policy_id: str,
        reason: str,
        changes: dict[str, Any],
        actor: str,
    ) -> PolicyModel:
        return await self.apply_change_request(
            session, policy_id, EmergencyChange(reason=reason, changes=changes), actor,
        )

    async def apply_change_request(
        self,
        session: AsyncSession,
        policy_id: str,
        request: PolicyChangeRequest,
        actor: str,
    ) -> PolicyModel:
        """Record a scheduled change or apply an emergency one.

        Scheduled changes are validated now and parked on ``pending_changes``;
        escrows keep the snapshot they were created with either way.
        """
        policy = await self.require_policy(session, policy_id)
        vault = await self._require_vault(session, policy.vault_id)

        if isinstance(request, ScheduledChange):
            self._check_changes(policy, request.changes)
            effective_at = as_utc(request.effective_at)
            pending = list(policy.pending_changes or [])
            pending.append({
                "effective_at": effective_at.isoformat(),
                "changes": _jsonable(request.changes),
                "requested_by": qualify_actor(actor, vault.chain_id),
                "requested_at": utcnow().isoformat(),
            })
            policy.pending_changes = pending
            data = {"effective_at": effective_at.isoformat(), "changes": _jsonable(request.changes)}
        elif isinstance(request, EmergencyChange):
            if not request.reason or not request.reason.strip():
                raise InvalidPolicyError("Emergency updates require a reason")
            diff = self._apply_changes(policy, request.changes)
            data = {"reason": request.reason, "changes": diff}
            logger.warning(
                "emergency policy update", extra={"policy_id": policy.id, "reason": request.reason},
            )
        else:
            raise InvalidPolicyError(f"Unsupported change request: {type(request).__name__}")

        await session.flush()
        await self.audit.log_policy_action(
            session,
            actor=qualify_actor(actor, vault.chain_id),
            action=request.audit_action,
            policy_id=policy.id,
            vault_id=policy.vault_id,
            data=data,
        )
        return policy

    async def apply_due_changes(
        self, session: AsyncSession, actor: str, now: datetime | None = None,
    ) -> int:
        """Apply parked scheduled changes whose ``effective_at`` has passed."""
        now = as_utc(now) if now else utcnow()
        result = await session.execute(select(PolicyModel))
        applied = 0
        for policy in result.scalars().all():
            pending = list(policy.pending_changes or [])
            due = [c for c in pending if datetime.fromisoformat(c["effective_at"]) <= now]
            if not due:
                continue
            vault = await self._require_vault(session, policy.vault_id)
            for change in due:
                diff = self._apply_changes(policy, change["changes"])
                await self.audit.log_policy_action(
                    session,
                    actor=qualify_actor(actor, vault.chain_id),
                    action="scheduled_update_applied",
                    policy_id=policy.id,
                    vault_id=policy.vault_id,
                    data={"effective_at": change["effective_at"], "changes": diff},
                )
                applied += 1
            policy.pending_changes = [c for c in pending if c not in due]
            await session.flush()
        if applied:
            logger.info("applied %d scheduled policy changes", applied)
        return applied

    # ── Read ──

    async def get_policy(self, session: AsyncSession, policy_id: str) -> PolicyModel | None:
        return await session.get(PolicyModel, policy_id)

    async def require_policy(self, session: AsyncSession, policy_id: str) -> PolicyModel:
        policy = await self.get_policy(session, policy_id)
        if policy is None:
            raise PolicyNotFoundError(f"Policy not found: {policy_id}")
        return policy

    async def list_policies(
        self,
        session: AsyncSession,
        vault_id: str,
        type: str | None = None,
        active: bool | None = None,
    ) -> list[PolicyModel]:
        query = select(PolicyModel).where(PolicyModel.vault_id == vault_id)
        if type is not None:
            query = query.where(PolicyModel.type == type)
        if active is not None:
            query = query.where(PolicyModel.active == active)
        result = await session.execute(query.order_by(PolicyModel.created_at.desc()))
        return list(result.scalars().all())

    async def get_active_policy(
        self, session: AsyncSession, vault_id: str, type: str,
    ) -> PolicyModel | None:
        """Most recently created active policy of ``type``."""
        policies = await self.list_policies(session, vault_id, type=type, active=True)
        return policies[0] if policies else None

    async def get_policy_stats(self, session: AsyncSession, vault_id: str) -> dict[str, Any]:
        rows = await session.execute(
            select(PolicyModel.type, PolicyModel.active, func.count(PolicyModel.id))
            .where(PolicyModel.vault_id == vault_id)
            .group_by(PolicyModel.type, PolicyModel.active)
        )
        by_type = {t: 0 for t in POLICY_TYPES}
        total = active = 0
        for policy_type, is_active, count in rows:
            by_type[policy_type] = by_type.get(policy_type, 0) + count
            total += count
            if is_active:
                active += count
        return {"total": total, "active": active, "inactive": total - active, "by_type": by_type}

    async def get_change_history(
        self, session: AsyncSession, policy_id: str, limit: int | None = None,
    ) -> list[AuditLogModel]:
        """Audit entries recorded against this policy, newest first."""
        return await self.audit.search(
            session, AuditFilter(resource="policy", resource_id=policy_id, limit=limit),
        )

    # ── Internal helpers ──

    async def _require_vault(self, session: AsyncSession, vault_id: str) -> VaultModel:
        vault = await session.get(VaultModel, vault_id)
        if vault is None:
            raise VaultNotFoundError(f"Vault not found: {vault_id}")
        return vault

    def _check_changes(self, policy: PolicyModel, changes: dict[str, Any]) -> dict[str, Any]:
        """Validate ``changes`` against ``policy`` and return the new column values."""
        if not changes:
            raise InvalidPolicyError("No changes supplied")
        allowed = PAYMENT_FIELDS if policy.type == "payment" else COLLECTION_FIELDS
        unknown = set(changes) - set(allowed)
        if unknown:
            raise InvalidPolicyError(
                f"Fields {sorted(unknown)} cannot be changed on a {policy.type} policy"
            )

        values = {k: v for k, v in changes.items() if k in ("name", "description")}
        if "name" in values and not values["name"]:
            raise InvalidPolicyError("Policy name cannot be empty")

        if policy.type == "payment":
            rule_keys = set(changes) - {"name", "description"}
            if rule_keys:
                values.update(_payment_rules(
                    changes.get("threshold", policy.threshold),
                    changes.get("timelock", policy.timelock),
                    changes.get("guardian_addresses", policy.guardian_addresses),
                    changes.get("owner_addresses", policy.owner_addresses),
                    changes.get("max_amount", policy.max_amount),
                ))
        elif "collection_config" in changes:
            values["collection_config"] = normalize_collection_config(changes["collection_config"])
        return values

    def _apply_changes(self, policy: PolicyModel, changes: dict[str, Any]) -> dict[str, Any]:
        diff: dict[str, Any] = {}
        for column, new in self._check_changes(policy, changes).items():
            old = getattr(policy, column)
            if old != new:
                diff[column] = {"from": old, "to": new}
                setattr(policy, column, new)
        return diff


def _jsonable(changes: dict[str, Any]) -> dict[str, Any]:
    # Amounts may arrive as ints wider than JSON consumers handle.
    return {k: str(v) if k == "max_amount" and v is not None else v for k, v in changes.items()}
