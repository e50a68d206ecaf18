"""Policy API router."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from custody_engine.audit.schemas import AuditLogResponse
from custody_engine.common.security import require_api_key
from custody_engine.policies.schemas import (
    CollectionPolicyCreate,
    EmergencyUpdateRequest,
    PaymentPolicyCreate,
    PolicyActivation,
    PolicyResponse,
    PolicyStatsResponse,
    PolicyUpdate,
    ScheduledUpdateRequest,
)

router = APIRouter(prefix="/policies")


def _get_service():
    from custody_engine.deps import get_policy_store
    return get_policy_store()


def _get_db():
    from custody_engine.deps import get_db
    return get_db()


@router.post("/payment", response_model=PolicyResponse, status_code=201)
async def create_payment_policy(body: PaymentPolicyCreate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policy = await svc.create_payment_policy(
            session,
            body.vault_id,
            name=body.name,
            threshold=body.threshold,
            timelock=body.timelock,
            guardian_addresses=body.guardian_addresses,
            owner_addresses=body.owner_addresses,
            actor=body.actor,
            max_amount=body.max_amount,
            description=body.description,
            active=body.active,
        )
        return PolicyResponse.model_validate(policy)


@router.post("/collection", response_model=PolicyResponse, status_code=201)
async def create_collection_policy(body: CollectionPolicyCreate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policy = await svc.create_collection_policy(
            session,
            body.vault_id,
            name=body.name,
            collection_config=body.collection_config.model_dump(),
            actor=body.actor,
            description=body.description,
            active=body.active,
        )
        return PolicyResponse.model_validate(policy)


@router.get("/vault/{vault_id}", response_model=list[PolicyResponse])
async def list_policies(
    vault_id: str,
    type: Optional[str] = Query(None, pattern="^(payment|collection)$"),
    active: Optional[bool] = Query(None),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policies = await svc.list_policies(session, vault_id, type=type, active=active)
        return [PolicyResponse.model_validate(p) for p in policies]


@router.get("/vault/{vault_id}/stats", response_model=PolicyStatsResponse)
async def get_policy_stats(vault_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return PolicyStatsResponse(**await svc.get_policy_stats(session, vault_id))


@router.get("/{policy_id}", response_model=PolicyResponse)
async def get_policy(policy_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return PolicyResponse.model_validate(await svc.require_policy(session, policy_id))


@router.patch("/{policy_id}", response_model=PolicyResponse)
async def update_policy(policy_id: str, body: PolicyUpdate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policy = await svc.update_policy(session, policy_id, body.actor, **body.changes)
        return PolicyResponse.model_validate(policy)


@router.post("/{policy_id}/activate", response_model=PolicyResponse)
async def activate_policy(policy_id: str, body: PolicyActivation, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policy = await svc.set_active(session, policy_id, True, body.actor)
        return PolicyResponse.model_validate(policy)


@router.post("/{policy_id}/deactivate", response_model=PolicyResponse)
async def deactivate_policy(policy_id: str, body: PolicyActivation, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policy = await svc.set_active(session, policy_id, False, body.actor)
        return PolicyResponse.model_validate(policy)


@router.post("/{policy_id}/schedule", response_model=PolicyResponse)
async def schedule_update(
    policy_id: str, body: ScheduledUpdateRequest, _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policy = await svc.schedule_update(
            session, policy_id, body.effective_at, body.changes, body.actor,
        )
        return PolicyResponse.model_validate(policy)


@router.post("/{policy_id}/emergency", response_model=PolicyResponse)
async def emergency_update(
    policy_id: str, body: EmergencyUpdateRequest, _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        policy = await svc.emergency_update(
            session, policy_id, body.reason, body.changes, body.actor,
        )
        return PolicyResponse.model_validate(policy)


@router.get("/{policy_id}/history", response_model=list[AuditLogResponse])
async def get_change_history(
    policy_id: str,
    limit: int = Query(100, ge=1, le=1000),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        await svc.require_policy(session, policy_id)
        entries = await svc.get_change_history(session, policy_id, limit=limit)
        return [AuditLogResponse.from_record(e) for e in entries]
