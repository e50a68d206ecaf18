"""Vault and member API router."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from custody_engine.common.exceptions import MemberNotFoundError, VaultNotFoundError
from custody_engine.common.security import require_api_key
from custody_engine.identifiers.caip10 import ChainAccount
from custody_engine.vaults.models import VaultModel
from custody_engine.vaults.schemas import (
    MemberAdd,
    MemberRemoved,
    MemberResponse,
    VaultCreate,
    VaultResponse,
    VaultStatsResponse,
    VaultUpdate,
)

router = APIRouter(prefix="/vaults")


def _get_service():
    from custody_engine.deps import get_vault_registry
    return get_vault_registry()


def _get_db():
    from custody_engine.deps import get_db
    return get_db()


def _vault_response(vault: VaultModel) -> VaultResponse:
    return VaultResponse(
        id=vault.id,
        caip10=vault.caip10,
        address=vault.address,
        chain_id=vault.chain_id,
        uuid=vault.uuid,
        name=vault.name,
        description=vault.description,
        salt=vault.salt,
        factory_address=vault.factory_address,
        policy_id=vault.policy_id,
        metadata=vault.metadata_ or {},
        created_at=vault.created_at,
        updated_at=vault.updated_at,
    )


@router.post("", response_model=VaultResponse, status_code=201)
async def create_vault(body: VaultCreate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        vault = await svc.create_vault(
            session,
            ChainAccount(body.address, body.chain_id),
            uuid=body.uuid,
            name=body.name,
            owner=body.owner,
            description=body.description,
            salt=body.salt,
            factory_address=body.factory_address,
            metadata=body.metadata,
        )
        return _vault_response(vault)


@router.get("", response_model=list[VaultResponse])
async def list_vaults(
    chain_id: Optional[int] = Query(None, gt=0),
    member: Optional[str] = Query(None),
    _=Depends(require_api_key),
):
    """Vaults on a chain, or vaults a member address belongs to."""
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        if member is not None:
            vaults = await svc.list_vaults_by_user(session, member, chain_id=chain_id)
        elif chain_id is not None:
            vaults = await svc.list_vaults_by_chain(session, chain_id)
        else:
            vaults = []
        return [_vault_response(v) for v in vaults]


@router.get("/by-caip10/{identifier}", response_model=VaultResponse)
async def get_vault_by_caip10(identifier: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        vault = await svc.get_vault_by_caip10(session, identifier)
        if vault is None:
            raise VaultNotFoundError(f"Vault not found: {identifier}")
        return _vault_response(vault)


@router.get("/{vault_id}", response_model=VaultResponse)
async def get_vault(vault_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return _vault_response(await svc.require_vault(session, vault_id))


@router.patch("/{vault_id}", response_model=VaultResponse)
async def update_vault(vault_id: str, body: VaultUpdate, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        vault = await svc.update_vault(
            session, vault_id, body.actor,
            **body.model_dump(exclude={"actor"}, exclude_none=True),
        )
        return _vault_response(vault)


@router.get("/{vault_id}/stats", response_model=VaultStatsResponse)
async def get_vault_stats(vault_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return VaultStatsResponse(**await svc.get_vault_stats(session, vault_id))


@router.post("/{vault_id}/members", response_model=MemberResponse, status_code=201)
async def add_member(vault_id: str, body: MemberAdd, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        member = await svc.add_member(
            session, vault_id, body.address, body.role, body.added_by, weight=body.weight,
        )
        return MemberResponse.model_validate(member)


@router.get("/{vault_id}/members", response_model=list[MemberResponse])
async def list_members(
    vault_id: str,
    role: Optional[str] = Query(None),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        await svc.require_vault(session, vault_id)
        members = await svc.list_members(session, vault_id, role=role)
        return [MemberResponse.model_validate(m) for m in members]


@router.get("/{vault_id}/members/{address}", response_model=MemberResponse)
async def get_member(vault_id: str, address: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        await svc.require_vault(session, vault_id)
        member = await svc.get_member(session, vault_id, address)
        if member is None:
            raise MemberNotFoundError(f"{address} is not a member of vault {vault_id}")
        return MemberResponse.model_validate(member)


@router.delete("/{vault_id}/members/{address}", response_model=MemberRemoved)
async def remove_member(
    vault_id: str,
    address: str,
    actor: str = Query(...),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        removed = await svc.remove_member(session, vault_id, address, actor)
        return MemberRemoved(removed=removed)
