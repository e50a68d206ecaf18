"""Approval engine: escrow lifecycle, threshold approvals and collections.

Every mutation runs inside the caller's session together with its audit
entries. ``approve`` locks the escrow row and relies on the optimistic
``version`` column plus the unique approval index, so a concurrent writer
fails with a retryable ``StaleDataError``/``IntegrityError`` rather than
double-counting; ``DatabaseManager.run_in_transaction`` handles the retry.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from custody_engine.audit.service import AuditLedger
from custody_engine.common.config import CustodySettings
from custody_engine.common.exceptions import (
    AllocationMismatchError,
    EscrowNotApprovableError,
    EscrowNotFoundError,
    InvalidPolicyError,
    InvalidTransitionError,
    NotAQualifiedApproverError,
    OverpaymentError,
    ParticipantNotFoundError,
    PartialPaymentNotAllowedError,
    PolicyNotFoundError,
    SpendingCapExceededError,
    TimelockActiveError,
    ValidationError,
    VaultNotFoundError,
)
from custody_engine.common.logging import get_logger
from custody_engine.common.models import as_utc, utcnow
from custody_engine.escrows.amounts import checked_sum, from_storage, parse_amount, to_storage
from custody_engine.escrows.models import ApprovalModel, EscrowModel, ParticipantModel
from custody_engine.escrows.state_machine import (
    CANCELLABLE_STATES,
    EscrowStatus,
    ParticipantStatus,
    TERMINAL_STATES,
    ensure_transition,
)
from custody_engine.identifiers.caip10 import (
    address_key,
    is_valid_address,
    qualify_actor,
    validate_address,
)
from custody_engine.identifiers.commitments import verify_proof
from custody_engine.policies.models import PolicyModel
from custody_engine.vaults.models import MemberModel, VaultModel
from custody_engine.vaults.service import VaultRegistry

logger = get_logger("escrows")

SYSTEM_ACTOR = "system"


@dataclass
class ApprovalProgress:
    current: int
    required: int
    approvals: list[dict[str, Any]] = field(default_factory=list)
    is_approved: bool = False
    executable_after: datetime | None = None
    is_executable: bool = False


@dataclass
class CollectionProgress:
    total_amount: int
    collected_amount: int
    remaining_amount: int
    participant_count: int
    paid_count: int
    partial_count: int
    pending_count: int
    overdue_count: int
    completion_rate: int


class ApprovalEngine:
    """Escrow creation, approval, settlement and expiry."""

    def __init__(self, settings: CustodySettings, audit: AuditLedger, vaults: VaultRegistry):
        self.settings = settings
        self.audit = audit
        self.vaults = vaults

    # ── Create ──

    async def create_payment_escrow(
        self,
        session: AsyncSession,
        vault_id: str,
        policy_id: str,
        name: str,
        total_amount: int | str,
        recipient: str,
        requester: str,
        token: str | None = None,
        description: str | None = None,
        deadline: datetime | None = None,
        target: str | None = None,
        payload: str | None = None,
        scheduled_release_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        submit: bool = False,
    ) -> EscrowModel:
        amount = parse_amount(total_amount)
        validate_address(recipient)
        validate_address(requester)
        for optional in (token, target):
            if optional is not None:
                validate_address(optional)

        vault, policy = await self._resolve_policy(session, vault_id, policy_id, "payment")
        if policy.max_amount is not None and amount > from_storage(policy.max_amount):
            logger.warning(
                "escrow rejected by spending cap",
                extra={"vault_id": vault_id, "policy_id": policy_id},
            )
            raise SpendingCapExceededError(
                f"Amount {amount} exceeds policy cap {policy.max_amount}"
            )

        escrow = EscrowModel(
            vault_id=vault_id,
            policy_id=policy_id,
            type="payment",
            name=name,
            description=description,
            token=token,
            total_amount=to_storage(amount),
            deadline=as_utc(deadline),
            status=(EscrowStatus.SUBMITTED if submit else EscrowStatus.DRAFT).value,
            requester=requester,
            recipient=recipient,
            target=target,
            payload=payload,
            scheduled_release_at=as_utc(scheduled_release_at),
            collected_amount="0",
            policy_snapshot=policy.snapshot(),
            current_approvals=0,
            metadata_=metadata or {},
            participants=[],
        )
        return await self._persist_created(session, vault, escrow, requester)

    async def create_collection_escrow(
        self,
        session: AsyncSession,
        vault_id: str,
        policy_id: str,
        name: str,
        total_amount: int | str,
        participants: list[dict[str, Any]],
        requester: str,
        token: str | None = None,
        description: str | None = None,
        deadline: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        submit: bool = False,
    ) -> EscrowModel:
        """Create a collection whose participant allocations sum to ``total_amount``.

        Each participant is a mapping with ``allocated_amount`` and optional
        ``address`` and ``name``.
        """
        amount = parse_amount(total_amount)
        validate_address(requester)
        if token is not None:
            validate_address(token)
        if not participants:
            raise AllocationMismatchError("A collection needs at least one participant")

        rows = []
        for position, item in enumerate(participants):
            allocated = parse_amount(item.get("allocated_amount"))
            address = item.get("address")
            if address is not None:
                validate_address(address)
            rows.append(ParticipantModel(
                position=position,
                address=address,
                address_key=address.lower() if address else None,
                name=item.get("name"),
                allocated_amount=to_storage(allocated),
                paid_amount="0",
                status=ParticipantStatus.PENDING.value,
            ))
        allocated_total = checked_sum(from_storage(r.allocated_amount) for r in rows)
        if allocated_total != amount:
            raise AllocationMismatchError(
                f"Allocations sum to {allocated_total}, expected {amount}"
            )

        vault, policy = await self._resolve_policy(session, vault_id, policy_id, "collection")
        config = policy.collection_config or {}
        if deadline is None and config.get("default_deadline"):
            deadline = utcnow() + timedelta(seconds=config["default_deadline"])

        escrow = EscrowModel(
            vault_id=vault_id,
            policy_id=policy_id,
            type="collection",
            name=name,
            description=description,
            token=token,
            total_amount=to_storage(amount),
            deadline=as_utc(deadline),
            status=(EscrowStatus.SUBMITTED if submit else EscrowStatus.DRAFT).value,
            requester=requester,
            collected_amount="0",
            policy_snapshot=policy.snapshot(),
            current_approvals=0,
            metadata_=metadata or {},
            participants=rows,
        )
        return await self._persist_created(session, vault, escrow, requester)

    # ── Lifecycle ──

    async def submit(self, session: AsyncSession, escrow_id: str, actor: str) -> EscrowModel:
        escrow = await self._load(session, escrow_id, lock=True)
        escrow.status = ensure_transition(escrow.status, EscrowStatus.SUBMITTED, escrow.type).value
        await session.flush()
        await self._log(session, escrow, actor, "submitted")
        logger.info("escrow submitted", extra={"escrow_id": escrow.id})
        return escrow

    async def approve(
        self,
        session: AsyncSession,
        escrow_id: str,
        member_address: str,
        signature: str | None = None,
        merkle_proof: list[str] | None = None,
    ) -> EscrowModel:
        """Record one approval and cross the threshold at most once.

        Re-approving by the same address returns the escrow unchanged, also
        after the escrow has moved on to ``approved``.
        """
        key = address_key(member_address)
        escrow = await self._load(session, escrow_id, lock=True)
        existing = await self._find_approval(session, escrow.id, key)

        if escrow.status != EscrowStatus.SUBMITTED.value:
            if escrow.status == EscrowStatus.APPROVED.value and existing is not None:
                return escrow
            logger.warning(
                "approval rejected for escrow in status %s", escrow.status,
                extra={"escrow_id": escrow.id},
            )
            raise EscrowNotApprovableError(
                f"Escrow {escrow.id} is {escrow.status}, approvals need 'submitted'"
            )

        member = await self.vaults.get_member(session, escrow.vault_id, member_address)
        if member is None or not self._is_qualified(escrow.policy_snapshot, key, merkle_proof):
            logger.warning(
                "unqualified approver rejected",
                extra={"escrow_id": escrow.id, "approver": member_address},
            )
            raise NotAQualifiedApproverError(
                f"{member_address} is not a qualified approver for escrow {escrow.id}"
            )
        if existing is not None:
            return escrow

        session.add(ApprovalModel(
            escrow_id=escrow.id,
            member_id=member.id,
            approver=member_address,
            approver_key=key,
            chain_id=member.chain_id,
            signature=signature,
            merkle_proof=merkle_proof,
        ))
        await session.flush()

        escrow.current_approvals = await self._count_approvals(session, escrow)
        await self.vaults.touch_member(session, escrow.vault_id, member_address)
        actor = qualify_actor(member_address, member.chain_id)
        await self._log(session, escrow, actor, "approved", data={
            "current_approvals": escrow.current_approvals,
            "required": escrow.policy_snapshot.get("threshold"),
        })

        threshold = escrow.policy_snapshot.get("threshold") or 0
        if escrow.current_approvals >= threshold:
            now = utcnow()
            escrow.status = ensure_transition(
                escrow.status, EscrowStatus.APPROVED, escrow.type,
            ).value
            escrow.approved_at = now
            escrow.executable_after = now + timedelta(
                seconds=escrow.policy_snapshot.get("timelock") or 0
            )
            await session.flush()
            await self._log(session, escrow, SYSTEM_ACTOR, "threshold_reached", data={
                "approvals": escrow.current_approvals,
                "threshold": threshold,
                "executable_after": escrow.executable_after.isoformat(),
            })
            logger.info("escrow approved", extra={"escrow_id": escrow.id})
        return escrow

    async def revoke_approval(
        self, session: AsyncSession, escrow_id: str, member_address: str,
    ) -> EscrowModel:
        """Withdraw an approval while the escrow is still collecting them."""
        key = address_key(member_address)
        escrow = await self._load(session, escrow_id, lock=True)
        if escrow.status != EscrowStatus.SUBMITTED.value:
            raise EscrowNotApprovableError(
                f"Approvals on escrow {escrow.id} are final in status {escrow.status}"
            )
        approval = await self._find_approval(session, escrow.id, key)
        if approval is None:
            return escrow

        await session.delete(approval)
        await session.flush()
        escrow.current_approvals = await self._count_approvals(session, escrow)
        await session.flush()
        await self._log(
            session, escrow, qualify_actor(member_address, approval.chain_id),
            "approval_revoked", data={"current_approvals": escrow.current_approvals},
        )
        return escrow

    async def mark_on_chain(
        self,
        session: AsyncSession,
        escrow_id: str,
        actor: str,
        tx_hash: str | None = None,
        user_op_hash: str | None = None,
        on_chain_id: str | None = None,
        now: datetime | None = None,
    ) -> EscrowModel:
        escrow = await self._load(session, escrow_id, lock=True)
        target = ensure_transition(escrow.status, EscrowStatus.ON_CHAIN, escrow.type)

        now = as_utc(now) if now else utcnow()
        for gate in (escrow.executable_after, escrow.scheduled_release_at):
            if gate is not None and now < as_utc(gate):
                logger.warning("execution attempted during timelock", extra={"escrow_id": escrow.id})
                raise TimelockActiveError(
                    f"Escrow {escrow.id} is not executable until {as_utc(gate).isoformat()}"
                )

        escrow.status = target.value
        escrow.tx_hash = tx_hash or escrow.tx_hash
        escrow.user_op_hash = user_op_hash or escrow.user_op_hash
        escrow.on_chain_id = on_chain_id or escrow.on_chain_id
        await session.flush()
        await self._log(
            session, escrow, actor, "on_chain",
            tx_hash=tx_hash, user_op_hash=user_op_hash,
            data={"on_chain_id": on_chain_id},
        )
        logger.info("escrow on-chain", extra={"escrow_id": escrow.id, "tx_hash": tx_hash})
        return escrow

    async def mark_completed(
        self, session: AsyncSession, escrow_id: str, actor: str, tx_hash: str | None = None,
    ) -> EscrowModel:
        escrow = await self._load(session, escrow_id, lock=True)
        escrow.status = ensure_transition(escrow.status, EscrowStatus.COMPLETED, escrow.type).value
        escrow.completed_at = utcnow()
        if tx_hash:
            escrow.tx_hash = tx_hash
        await session.flush()
        await self._log(session, escrow, actor, "completed", tx_hash=tx_hash)
        logger.info("escrow completed", extra={"escrow_id": escrow.id})
        return escrow

    async def record_collection_payment(
        self,
        session: AsyncSession,
        escrow_id: str,
        participant_id: str,
        amount: int | str,
        tx_hash: str | None = None,
        actor: str | None = None,
    ) -> EscrowModel:
        """Add ``amount`` to a participant's paid total.

        Paid totals only grow. Completes the collection when the policy has
        ``auto_complete`` set and every participant is paid.
        """
        escrow = await self._load(session, escrow_id, lock=True)
        if escrow.type != "collection":
            raise ValidationError(
                f"Escrow {escrow.id} is not a collection", code="NOT_A_COLLECTION",
            )
        if EscrowStatus(escrow.status) in TERMINAL_STATES:
            raise InvalidTransitionError(
                f"Cannot record payments on a {escrow.status} collection"
            )

        participant = next((p for p in escrow.participants if p.id == participant_id), None)
        if participant is None:
            raise ParticipantNotFoundError(f"Participant not found: {participant_id}")

        payment = parse_amount(amount)
        allocated = from_storage(participant.allocated_amount)
        new_paid = from_storage(participant.paid_amount) + payment
        if new_paid > allocated:
            raise OverpaymentError(
                f"Payment brings participant to {new_paid}, allocation is {allocated}"
            )
        config = escrow.policy_snapshot.get("collection_config") or {}
        if not config.get("allow_partial_payment", True) and new_paid != allocated:
            raise PartialPaymentNotAllowedError()

        now = utcnow()
        participant.paid_amount = to_storage(new_paid)
        participant.last_payment_at = now
        if tx_hash:
            participant.tx_hash = tx_hash
        if new_paid == allocated:
            participant.status = ParticipantStatus.PAID.value
            participant.paid_at = now
        else:
            participant.status = ParticipantStatus.PARTIAL.value

        escrow.collected_amount = to_storage(
            checked_sum(from_storage(p.paid_amount) for p in escrow.participants)
        )
        await session.flush()

        await self._log(
            session, escrow, actor or participant.address or SYSTEM_ACTOR, "payment_recorded",
            tx_hash=tx_hash,
            data={
                "participant_id": participant.id,
                "amount": to_storage(payment),
                "paid_amount": participant.paid_amount,
                "collected_amount": escrow.collected_amount,
            },
        )

        all_paid = all(p.status == ParticipantStatus.PAID.value for p in escrow.participants)
        if all_paid and config.get("auto_complete", True):
            escrow.status = ensure_transition(
                escrow.status, EscrowStatus.COMPLETED, escrow.type,
            ).value
            escrow.completed_at = now
            await session.flush()
            await self._log(session, escrow, SYSTEM_ACTOR, "completed", data={"auto": True})
            logger.info("collection completed", extra={"escrow_id": escrow.id})
        return escrow

    async def cancel(
        self, session: AsyncSession, escrow_id: str, actor: str, reason: str | None = None,
    ) -> EscrowModel:
        escrow = await self._load(session, escrow_id, lock=True)
        if EscrowStatus(escrow.status) not in CANCELLABLE_STATES:
            raise InvalidTransitionError(
                f"Escrow {escrow.id} cannot be cancelled from '{escrow.status}'"
            )
        escrow.status = EscrowStatus.CANCELLED.value
        escrow.cancelled_at = utcnow()
        escrow.cancel_reason = reason
        await session.flush()
        await self._log(session, escrow, actor, "cancelled", data={"reason": reason})
        logger.info("escrow cancelled", extra={"escrow_id": escrow.id})
        return escrow

    async def mark_expired(
        self, session: AsyncSession, escrow_id: str, now: datetime | None = None,
    ) -> EscrowModel:
        """Expire an escrow whose deadline has passed. Repeating it is a no-op."""
        escrow = await self._load(session, escrow_id, lock=True)
        if escrow.status == EscrowStatus.EXPIRED.value:
            return escrow

        now = as_utc(now) if now else utcnow()
        if escrow.deadline is None or as_utc(escrow.deadline) > now:
            raise InvalidTransitionError(f"Escrow {escrow.id} has not reached its deadline")
        escrow.status = ensure_transition(escrow.status, EscrowStatus.EXPIRED, escrow.type).value
        escrow.expired_at = now

        overdue = 0
        for participant in escrow.participants:
            if participant.status != ParticipantStatus.PAID.value:
                participant.status = ParticipantStatus.OVERDUE.value
                overdue += 1
        await session.flush()
        await self._log(session, escrow, SYSTEM_ACTOR, "expired", data={
            "deadline": as_utc(escrow.deadline).isoformat(),
            "overdue_participants": overdue,
        })
        logger.info("escrow expired", extra={"escrow_id": escrow.id})
        return escrow

    async def expire_overdue(self, session: AsyncSession, now: datetime | None = None) -> int:
        """Expire every live escrow past its deadline. Returns how many moved."""
        now = as_utc(now) if now else utcnow()
        result = await session.execute(
            select(EscrowModel.id, EscrowModel.deadline).where(
                EscrowModel.deadline.is_not(None),
                EscrowModel.status.not_in([s.value for s in TERMINAL_STATES]),
            )
        )
        due = [escrow_id for escrow_id, deadline in result if as_utc(deadline) <= now]
        for escrow_id in due:
            await self.mark_expired(session, escrow_id, now=now)
        if due:
            logger.info("expired %d overdue escrows", len(due))
        return len(due)

    # ── Progress ──

    async def compute_approval_progress(
        self, session: AsyncSession, escrow_id: str, now: datetime | None = None,
    ) -> ApprovalProgress:
        escrow = await self._load(session, escrow_id)
        stmt = self._member_approvals(select(ApprovalModel), escrow)
        approvals = list((await session.execute(
            stmt.order_by(ApprovalModel.approved_at.asc())
        )).scalars().all())
        required = escrow.policy_snapshot.get("threshold") or 0
        is_approved = escrow.status in (
            EscrowStatus.APPROVED.value, EscrowStatus.ON_CHAIN.value,
        ) or (escrow.status == EscrowStatus.COMPLETED.value and escrow.approved_at is not None)
        executable_after = as_utc(escrow.executable_after)
        now = as_utc(now) if now else utcnow()
        return ApprovalProgress(
            current=len(approvals),
            required=required,
            approvals=[
                {"approver": a.caip10, "approved_at": as_utc(a.approved_at)}
                for a in approvals
            ],
            is_approved=is_approved,
            executable_after=executable_after,
            is_executable=(
                escrow.status == EscrowStatus.APPROVED.value
                and (executable_after is None or now >= executable_after)
            ),
        )

    async def compute_collection_progress(
        self, session: AsyncSession, escrow_id: str,
    ) -> CollectionProgress:
        escrow = await self._load(session, escrow_id)
        total = from_storage(escrow.total_amount)
        collected = from_storage(escrow.collected_amount)
        counts = {status.value: 0 for status in ParticipantStatus}
        for participant in escrow.participants:
            counts[participant.status] += 1
        return CollectionProgress(
            total_amount=total,
            collected_amount=collected,
            remaining_amount=total - collected,
            participant_count=len(escrow.participants),
            paid_count=counts[ParticipantStatus.PAID.value],
            partial_count=counts[ParticipantStatus.PARTIAL.value],
            pending_count=counts[ParticipantStatus.PENDING.value],
            overdue_count=counts[ParticipantStatus.OVERDUE.value],
            completion_rate=(collected * 100) // total if total else 0,
        )

    # ── Read ──

    async def get_escrow(self, session: AsyncSession, escrow_id: str) -> EscrowModel | None:
        result = await session.execute(select(EscrowModel).where(EscrowModel.id == escrow_id))
        return result.scalar_one_or_none()

    async def require_escrow(self, session: AsyncSession, escrow_id: str) -> EscrowModel:
        return await self._load(session, escrow_id)

    async def list_escrows(
        self,
        session: AsyncSession,
        vault_id: str,
        type: str | None = None,
        status: str | None = None,
    ) -> list[EscrowModel]:
        query = select(EscrowModel).where(EscrowModel.vault_id == vault_id)
        if type is not None:
            query = query.where(EscrowModel.type == type)
        if status is not None:
            query = query.where(EscrowModel.status == status)
        result = await session.execute(query.order_by(EscrowModel.created_at.desc()))
        return list(result.scalars().all())

    async def get_escrow_stats(self, session: AsyncSession, vault_id: str) -> dict[str, Any]:
        rows = await session.execute(
            select(EscrowModel.type, EscrowModel.status, func.count(EscrowModel.id))
            .where(EscrowModel.vault_id == vault_id)
            .group_by(EscrowModel.type, EscrowModel.status)
        )
        by_status = {status.value: 0 for status in EscrowStatus}
        by_type: dict[str, int] = {"payment": 0, "collection": 0}
        total = 0
        for escrow_type, status, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            by_type[escrow_type] = by_type.get(escrow_type, 0) + count
            total += count
        return {
            "total": total,
            "by_status": by_status,
            "by_type": by_type,
            "pending_approval": by_status[EscrowStatus.SUBMITTED.value],
        }

    # ── Internal helpers ──

    async def _load(self, session: AsyncSession, escrow_id: str, lock: bool = False) -> EscrowModel:
        query = select(EscrowModel).where(EscrowModel.id == escrow_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        escrow = (await session.execute(query)).scalar_one_or_none()
        if escrow is None:
            raise EscrowNotFoundError(f"Escrow not found: {escrow_id}")
        return escrow

    async def _resolve_policy(
        self, session: AsyncSession, vault_id: str, policy_id: str, escrow_type: str,
    ) -> tuple[VaultModel, PolicyModel]:
        vault = await session.get(VaultModel, vault_id)
        if vault is None:
            raise VaultNotFoundError(f"Vault not found: {vault_id}")
        policy = await session.get(PolicyModel, policy_id)
        if policy is None:
            raise PolicyNotFoundError(f"Policy not found: {policy_id}")
        if policy.vault_id != vault_id:
            raise InvalidPolicyError(f"Policy {policy_id} belongs to another vault")
        if policy.type != escrow_type:
            raise InvalidPolicyError(
                f"Policy {policy_id} governs {policy.type} escrows, not {escrow_type}"
            )
        if not policy.active:
            raise InvalidPolicyError(f"Policy {policy_id} is inactive")
        return vault, policy

    async def _persist_created(
        self, session: AsyncSession, vault: VaultModel, escrow: EscrowModel, requester: str,
    ) -> EscrowModel:
        session.add(escrow)
        await session.flush()
        await self._log(
            session, escrow, qualify_actor(requester, vault.chain_id), "created",
            data={
                "type": escrow.type,
                "status": escrow.status,
                "policy_id": escrow.policy_id,
                "total_amount": escrow.total_amount,
            },
        )
        logger.info(
            "%s escrow created", escrow.type,
            extra={"escrow_id": escrow.id, "vault_id": vault.id, "status": escrow.status},
        )
        return escrow

    @staticmethod
    def _is_qualified(
        snapshot: dict[str, Any], key: str, merkle_proof: list[str] | None,
    ) -> bool:
        qualified = set(snapshot.get("guardian_addresses") or []) | set(
            snapshot.get("owner_addresses") or []
        )
        if key not in qualified:
            return False
        if merkle_proof is None:
            return True
        return any(
            root and verify_proof(root, key, merkle_proof)
            for root in (snapshot.get("roles_root"), snapshot.get("owners_root"))
        )

    async def _find_approval(
        self, session: AsyncSession, escrow_id: str, key: str,
    ) -> ApprovalModel | None:
        result = await session.execute(
            select(ApprovalModel).where(
                ApprovalModel.escrow_id == escrow_id,
                ApprovalModel.approver_key == key,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _member_approvals(stmt, escrow: EscrowModel):
        # approvals from removed members stay on record but no longer count
        return (
            stmt.select_from(ApprovalModel)
            .join(MemberModel, and_(
                MemberModel.vault_id == escrow.vault_id,
                MemberModel.address_key == ApprovalModel.approver_key,
            ))
            .where(ApprovalModel.escrow_id == escrow.id)
        )

    async def _count_approvals(self, session: AsyncSession, escrow: EscrowModel) -> int:
        stmt = select(func.count(func.distinct(ApprovalModel.approver_key)))
        return (await session.execute(self._member_approvals(stmt, escrow))).scalar() or 0

    async def _vault_chain(self, session: AsyncSession, vault_id: str) -> int:
        vault = await session.get(VaultModel, vault_id)
        if vault is None:
            raise VaultNotFoundError(f"Vault not found: {vault_id}")
        return vault.chain_id

    async def _log(
        self,
        session: AsyncSession,
        escrow: EscrowModel,
        actor: str,
        action: str,
        tx_hash: str | None = None,
        user_op_hash: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        if is_valid_address(actor):
            actor = qualify_actor(actor, await self._vault_chain(session, escrow.vault_id))
        await self.audit.log_escrow_action(
            session,
            actor=actor,
            action=action,
            escrow_id=escrow.id,
            vault_id=escrow.vault_id,
            tx_hash=tx_hash,
            user_op_hash=user_op_hash,
            data=data,
        )
