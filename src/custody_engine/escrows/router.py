"""Escrow API router.

Approvals and collection payments run through
``DatabaseManager.run_in_transaction`` so a lost race against a concurrent
writer is retried instead of surfacing as a storage error.
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from custody_engine.common.security import require_api_key
from custody_engine.escrows.models import EscrowModel
from custody_engine.escrows.schemas import (
    ActorRequest,
    ApprovalProgressResponse,
    ApproveRequest,
    CancelRequest,
    CollectionEscrowCreate,
    CollectionProgressResponse,
    CompleteRequest,
    EscrowResponse,
    EscrowStatsResponse,
    OnChainRequest,
    PaymentEscrowCreate,
    PaymentRecord,
    RevokeRequest,
)

router = APIRouter(prefix="/escrows")


def _get_service():
    from custody_engine.deps import get_approval_engine
    return get_approval_engine()


def _get_vaults():
    from custody_engine.deps import get_vault_registry
    return get_vault_registry()


def _get_db():
    from custody_engine.deps import get_db
    return get_db()


async def _respond(session: AsyncSession, escrow: EscrowModel) -> EscrowResponse:
    vault = await _get_vaults().require_vault(session, escrow.vault_id)
    return EscrowResponse.from_model(escrow, vault.chain_id)


@router.post("/payment", response_model=EscrowResponse, status_code=201)
async def create_payment_escrow(body: PaymentEscrowCreate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        escrow = await svc.create_payment_escrow(
            session,
            body.vault_id,
            body.policy_id,
            name=body.name,
            total_amount=body.total_amount,
            recipient=body.recipient,
            requester=body.requester,
            token=body.token,
            description=body.description,
            deadline=body.deadline,
            target=body.target,
            payload=body.payload,
            scheduled_release_at=body.scheduled_release_at,
            metadata=body.metadata,
            submit=body.submit,
        )
        return await _respond(session, escrow)


@router.post("/collection", response_model=EscrowResponse, status_code=201)
async def create_collection_escrow(body: CollectionEscrowCreate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        escrow = await svc.create_collection_escrow(
            session,
            body.vault_id,
            body.policy_id,
            name=body.name,
            total_amount=body.total_amount,
            participants=[p.model_dump() for p in body.participants],
            requester=body.requester,
            token=body.token,
            description=body.description,
            deadline=body.deadline,
            metadata=body.metadata,
            submit=body.submit,
        )
        return await _respond(session, escrow)


@router.get("/vault/{vault_id}", response_model=list[EscrowResponse])
async def list_escrows(
    vault_id: str,
    type: Optional[str] = Query(None, pattern="^(payment|collection)$"),
    status: Optional[str] = Query(None),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        vault = await _get_vaults().require_vault(session, vault_id)
        escrows = await svc.list_escrows(session, vault_id, type=type, status=status)
        return [EscrowResponse.from_model(e, vault.chain_id) for e in escrows]


@router.get("/vault/{vault_id}/stats", response_model=EscrowStatsResponse)
async def get_escrow_stats(vault_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return EscrowStatsResponse(**await svc.get_escrow_stats(session, vault_id))


@router.get("/{escrow_id}", response_model=EscrowResponse)
async def get_escrow(escrow_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return await _respond(session, await svc.require_escrow(session, escrow_id))


@router.post("/{escrow_id}/submit", response_model=EscrowResponse)
async def submit_escrow(escrow_id: str, body: ActorRequest, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return await _respond(session, await svc.submit(session, escrow_id, body.actor))


@router.post("/{escrow_id}/approve", response_model=EscrowResponse)
async def approve_escrow(escrow_id: str, body: ApproveRequest, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()

    async def operation(session: AsyncSession) -> EscrowResponse:
        escrow = await svc.approve(
            session, escrow_id, body.approver,
            signature=body.signature, merkle_proof=body.merkle_proof,
        )
        return await _respond(session, escrow)

    return await db.run_in_transaction(operation)


@router.post("/{escrow_id}/revoke", response_model=EscrowResponse)
async def revoke_approval(escrow_id: str, body: RevokeRequest, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        escrow = await svc.revoke_approval(session, escrow_id, body.approver)
        return await _respond(session, escrow)


@router.get("/{escrow_id}/approvals", response_model=ApprovalProgressResponse)
async def get_approval_progress(escrow_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        progress = await svc.compute_approval_progress(session, escrow_id)
        return ApprovalProgressResponse(**asdict(progress))


@router.post("/{escrow_id}/on-chain", response_model=EscrowResponse)
async def mark_on_chain(escrow_id: str, body: OnChainRequest, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        escrow = await svc.mark_on_chain(
            session, escrow_id, body.actor,
            tx_hash=body.tx_hash, user_op_hash=body.user_op_hash, on_chain_id=body.on_chain_id,
        )
        return await _respond(session, escrow)


@router.post("/{escrow_id}/complete", response_model=EscrowResponse)
async def mark_completed(escrow_id: str, body: CompleteRequest, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        escrow = await svc.mark_completed(session, escrow_id, body.actor, tx_hash=body.tx_hash)
        return await _respond(session, escrow)


@router.post("/{escrow_id}/payments", response_model=EscrowResponse)
async def record_payment(escrow_id: str, body: PaymentRecord, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()

    async def operation(session: AsyncSession) -> EscrowResponse:
        escrow = await svc.record_collection_payment(
            session, escrow_id, body.participant_id, body.amount,
            tx_hash=body.tx_hash, actor=body.actor,
        )
        return await _respond(session, escrow)

    # A lost race rolls the whole attempt back, so replaying adds the amount once.
    return await db.run_in_transaction(operation)


@router.get("/{escrow_id}/collection-progress", response_model=CollectionProgressResponse)
async def get_collection_progress(escrow_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        progress = await svc.compute_collection_progress(session, escrow_id)
        return CollectionProgressResponse(
            **{k: str(v) if k.endswith("_amount") else v for k, v in asdict(progress).items()}
        )


@router.post("/{escrow_id}/cancel", response_model=EscrowResponse)
async def cancel_escrow(escrow_id: str, body: CancelRequest, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        escrow = await svc.cancel(session, escrow_id, body.actor, reason=body.reason)
        return await _respond(session, escrow)


@router.post("/{escrow_id}/expire", response_model=EscrowResponse)
async def expire_escrow(escrow_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return await _respond(session, await svc.mark_expired(session, escrow_id))
