"""Audit ledger API router."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from custody_engine.audit.schemas import AuditLogResponse, AuditStatsResponse
from custody_engine.audit.service import AuditFilter
from custody_engine.common.security import require_api_key

router = APIRouter(prefix="/audit")


def _get_service():
    from custody_engine.deps import get_audit_ledger
    return get_audit_ledger()


def _get_db():
    from custody_engine.deps import get_db
    return get_db()


def _filter(
    vault_id: Optional[str] = Query(None),
    actor: Optional[str] = Query(
        None, description="CAIP-10 identifier, or a bare address to match it on any chain",
    ),
    action: Optional[str] = Query(None),
    resource: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
) -> AuditFilter:
    return AuditFilter(
        vault_id=vault_id,
        actor=actor,
        action=action,
        resource=resource,
        resource_id=resource_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )


@router.get("", response_model=list[AuditLogResponse])
async def search_audit_logs(
    audit_filter: AuditFilter = Depends(_filter), _=Depends(require_api_key),
):
    """Matching entries, newest first. ``limit`` is capped server-side."""
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        entries = await svc.search(session, audit_filter)
        return [AuditLogResponse.from_record(e) for e in entries]


@router.get("/stats", response_model=AuditStatsResponse)
async def get_audit_stats(
    audit_filter: AuditFilter = Depends(_filter), _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        return AuditStatsResponse(**await svc.get_stats(session, audit_filter))


@router.get("/tx/{tx_hash}", response_model=list[AuditLogResponse])
async def get_by_tx_hash(tx_hash: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        entries = await svc.get_by_tx_hash(session, tx_hash)
        return [AuditLogResponse.from_record(e) for e in entries]


@router.get("/user-op/{user_op_hash}", response_model=list[AuditLogResponse])
async def get_by_user_op_hash(user_op_hash: str, _=Depends(require_api_key)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        entries = await svc.get_by_user_op_hash(session, user_op_hash)
        return [AuditLogResponse.from_record(e) for e in entries]
