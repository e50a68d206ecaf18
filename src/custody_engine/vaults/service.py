"""Vault registry: vault records, membership and role lookups."""

import uuid as uuid_mod
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from custody_engine.audit.service import AuditEntry, AuditLedger
from custody_engine.common.config import CustodySettings
from custody_engine.common.exceptions import (
    CannotRemoveLastOwnerError,
    DuplicateVaultError,
    InvalidPolicyError,
    InvalidRoleError,
    PolicyNotFoundError,
    ValidationError,
    VaultNotFoundError,
)
from custody_engine.common.logging import get_logger
from custody_engine.common.models import utcnow
from custody_engine.identifiers.caip10 import (
    ChainAccount,
    address_key,
    parse_canonical,
    qualify_actor,
    validate_address,
)
from custody_engine.policies.models import PolicyModel
from custody_engine.vaults.models import MEMBER_ROLES, MemberModel, VaultModel

logger = get_logger("vaults")

OWNER_ROLE = "owner"


def _validate_uuid(value: str) -> str:
    try:
        return str(uuid_mod.UUID(str(value)))
    except ValueError as exc:
        raise ValidationError(f"Invalid vault uuid: {value!r}", code="INVALID_UUID") from exc


class VaultRegistry:
    """Vault and membership operations."""

    def __init__(self, settings: CustodySettings, audit: AuditLedger):
        self.settings = settings
        self.audit = audit

    # ── Vaults ──

    async def create_vault(
        self,
        session: AsyncSession,
        account: ChainAccount,
        uuid: str,
        name: str,
        owner: str,
        description: str | None = None,
        salt: str | None = None,
        factory_address: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> VaultModel:
        """Create a vault together with its owner membership.

        Both rows and their audit entries land in the caller's transaction;
        any failure leaves none of them behind once the session rolls back.
        """
        vault_uuid = _validate_uuid(uuid)
        validate_address(owner)
        if factory_address is not None:
            validate_address(factory_address)

        existing = await session.execute(
            select(VaultModel.id).where(
                or_(
                    (VaultModel.address_key == account.key)
                    & (VaultModel.chain_id == account.chain_id),
                    VaultModel.uuid == vault_uuid,
                )
            ).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateVaultError(
                f"Vault {account.canonical} or uuid {vault_uuid} already exists"
            )

        vault = VaultModel(
            address=account.address,
            address_key=account.key,
            chain_id=account.chain_id,
            uuid=vault_uuid,
            name=name,
            description=description,
            salt=salt,
            factory_address=factory_address,
            metadata_=metadata or {},
        )
        session.add(vault)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise DuplicateVaultError(
                f"Vault {account.canonical} or uuid {vault_uuid} already exists"
            ) from exc

        owner_member = MemberModel(
            vault_id=vault.id,
            address=owner,
            address_key=owner.lower(),
            chain_id=vault.chain_id,
            role=OWNER_ROLE,
            weight=self.settings.owner_weight,
            added_by=owner,
        )
        session.add(owner_member)
        await session.flush()

        actor = qualify_actor(owner, vault.chain_id)
        await self.audit.append_batch(session, [
            AuditEntry(
                vault_id=vault.id,
                actor=actor,
                action="vault_created",
                resource="vault",
                resource_id=vault.caip10,
                data={
                    "chain_id": vault.chain_id,
                    "caip10": vault.caip10,
                    "uuid": vault.uuid,
                    "factory_address": factory_address,
                },
            ),
            AuditEntry(
                vault_id=vault.id,
                actor=actor,
                action="member_added",
                resource="member",
                resource_id=owner_member.caip10,
                data={"role": OWNER_ROLE, "weight": owner_member.weight},
            ),
        ])
        logger.info("vault created", extra={"vault_id": vault.id, "caip10": vault.caip10})
        return vault

    async def update_vault(
        self,
        session: AsyncSession,
        vault_id: str,
        actor: str,
        **updates: Any,
    ) -> VaultModel:
        vault = await self.require_vault(session, vault_id)
        if updates.get("policy_id") is not None:
            await self._check_policy(session, vault, updates["policy_id"])

        changes: dict[str, Any] = {}
        for field in ("name", "description", "policy_id", "metadata"):
            if field in updates and updates[field] is not None:
                attr = "metadata_" if field == "metadata" else field
                old = getattr(vault, attr)
                if old != updates[field]:
                    changes[field] = {"from": old, "to": updates[field]}
                    setattr(vault, attr, updates[field])
        await session.flush()

        await self.audit.append(session, AuditEntry(
            vault_id=vault.id,
            actor=qualify_actor(actor, vault.chain_id),
            action="vault_updated",
            resource="vault",
            resource_id=vault.caip10,
            data={"changes": changes},
        ))
        return vault

    async def _check_policy(
        self, session: AsyncSession, vault: VaultModel, policy_id: str,
    ) -> None:
        policy = await session.get(PolicyModel, policy_id)
        if policy is None:
            raise PolicyNotFoundError(f"Policy not found: {policy_id}")
        if policy.vault_id != vault.id:
            raise InvalidPolicyError(f"Policy {policy_id} belongs to another vault")

    async def get_vault(self, session: AsyncSession, vault_id: str) -> VaultModel | None:
        return await session.get(VaultModel, vault_id)

    async def require_vault(self, session: AsyncSession, vault_id: str) -> VaultModel:
        vault = await self.get_vault(session, vault_id)
        if vault is None:
            raise VaultNotFoundError(f"Vault not found: {vault_id}")
        return vault

    async def get_vault_by_address(
        self, session: AsyncSession, address: str, chain_id: int | None = None,
    ) -> VaultModel | None:
        query = select(VaultModel).where(VaultModel.address_key == address_key(address))
        if chain_id is not None:
            query = query.where(VaultModel.chain_id == chain_id)
        result = await session.execute(
            query.order_by(VaultModel.created_at.asc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_vault_by_uuid(self, session: AsyncSession, uuid: str) -> VaultModel | None:
        result = await session.execute(
            select(VaultModel).where(VaultModel.uuid == _validate_uuid(uuid))
        )
        return result.scalar_one_or_none()

    async def get_vault_by_caip10(
        self, session: AsyncSession, identifier: str,
    ) -> VaultModel | None:
        address, chain_id = parse_canonical(identifier)
        return await self.get_vault_by_address(session, address, chain_id)

    async def list_vaults_by_chain(
        self, session: AsyncSession, chain_id: int,
    ) -> list[VaultModel]:
        result = await session.execute(
            select(VaultModel)
            .where(VaultModel.chain_id == chain_id)
            .order_by(VaultModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_vaults_by_user(
        self, session: AsyncSession, address: str, chain_id: int | None = None,
    ) -> list[VaultModel]:
        """Vaults in which ``address`` holds any membership."""
        query = (
            select(VaultModel)
            .join(MemberModel, MemberModel.vault_id == VaultModel.id)
            .where(MemberModel.address_key == address_key(address))
        )
        if chain_id is not None:
            query = query.where(VaultModel.chain_id == chain_id)
        result = await session.execute(query.order_by(VaultModel.created_at.desc()))
        return list(result.scalars().all())

    async def get_vault_stats(self, session: AsyncSession, vault_id: str) -> dict[str, Any]:
        vault = await self.require_vault(session, vault_id)
        rows = await session.execute(
            select(MemberModel.role, func.count(MemberModel.id))
            .where(MemberModel.vault_id == vault_id)
            .group_by(MemberModel.role)
        )
        role_counts = {role: count for role, count in rows}
        return {
            "member_count": sum(role_counts.values()),
            "role_counts": role_counts,
            "created_at": vault.created_at,
            "updated_at": vault.updated_at,
        }

    # ── Members ──

    async def add_member(
        self,
        session: AsyncSession,
        vault_id: str,
        address: str,
        role: str,
        added_by: str,
        weight: int | None = None,
    ) -> MemberModel:
        """Add ``address`` to the vault, or update its role/weight if present."""
        vault = await self.require_vault(session, vault_id)
        validate_address(address)
        if role not in MEMBER_ROLES:
            raise InvalidRoleError(f"Unknown role {role!r}, expected one of {MEMBER_ROLES}")
        if weight is not None and weight < 0:
            raise ValidationError("Member weight must be non-negative", code="INVALID_WEIGHT")

        member = await self.get_member(session, vault_id, address)
        if member is not None:
            if member.role == OWNER_ROLE and role != OWNER_ROLE:
                await self._ensure_not_last_owner(session, vault_id)
            previous = {"role": member.role, "weight": member.weight}
            member.role = role
            if weight is not None:
                member.weight = weight
            action = "member_updated"
            data = {"role": role, "weight": member.weight, "previous": previous}
        else:
            if weight is None:
                weight = (
                    self.settings.owner_weight if role == OWNER_ROLE
                    else self.settings.default_member_weight
                )
            member = MemberModel(
                vault_id=vault_id,
                address=address,
                address_key=address.lower(),
                chain_id=vault.chain_id,
                role=role,
                weight=weight,
                added_by=added_by,
            )
            session.add(member)
            action = "member_added"
            data = {"role": role, "weight": weight}
        await session.flush()

        await self.audit.append(session, AuditEntry(
            vault_id=vault_id,
            actor=qualify_actor(added_by, vault.chain_id),
            action=action,
            resource="member",
            resource_id=member.caip10,
            data=data,
        ))
        return member

    async def remove_member(
        self, session: AsyncSession, vault_id: str, address: str, actor: str,
    ) -> bool:
        """Remove a membership. Returns False when there was nothing to remove."""
        vault = await self.require_vault(session, vault_id)
        member = await self.get_member(session, vault_id, address)

        if member is not None and member.role == OWNER_ROLE:
            await self._ensure_not_last_owner(session, vault_id)

        if member is not None:
            await session.delete(member)
            await session.flush()

        await self.audit.append(session, AuditEntry(
            vault_id=vault_id,
            actor=qualify_actor(actor, vault.chain_id),
            action="member_removed",
            resource="member",
            resource_id=qualify_actor(address, vault.chain_id),
            data={"was_member": member is not None},
        ))
        return member is not None

    async def touch_member(
        self, session: AsyncSession, vault_id: str, address: str,
    ) -> None:
        member = await self.get_member(session, vault_id, address)
        if member is not None:
            member.last_activity_at = utcnow()
            await session.flush()

    async def get_member(
        self, session: AsyncSession, vault_id: str, address: str,
    ) -> MemberModel | None:
        result = await session.execute(
            select(MemberModel).where(
                MemberModel.vault_id == vault_id,
                MemberModel.address_key == address_key(address),
            )
        )
        return result.scalar_one_or_none()

    async def is_member(self, session: AsyncSession, vault_id: str, address: str) -> bool:
        return await self.get_member(session, vault_id, address) is not None

    async def get_member_role(
        self, session: AsyncSession, vault_id: str, address: str,
    ) -> str | None:
        member = await self.get_member(session, vault_id, address)
        return member.role if member else None

    async def list_members(
        self, session: AsyncSession, vault_id: str, role: str | None = None,
    ) -> list[MemberModel]:
        query = select(MemberModel).where(MemberModel.vault_id == vault_id)
        if role is not None:
            query = query.where(MemberModel.role == role)
        result = await session.execute(query.order_by(MemberModel.added_at.desc()))
        return list(result.scalars().all())

    async def _ensure_not_last_owner(self, session: AsyncSession, vault_id: str) -> None:
        owners = (await session.execute(
            select(func.count(MemberModel.id)).where(
                MemberModel.vault_id == vault_id,
                MemberModel.role == OWNER_ROLE,
            )
        )).scalar() or 0
        if owners <= 1:
            logger.warning("rejected removal of last owner", extra={"vault_id": vault_id})
            raise CannotRemoveLastOwnerError()
