"""Dependency injection singletons for Custody-Engine."""

from custody_engine.audit.service import AuditLedger
from custody_engine.common.config import get_settings
from custody_engine.common.database import DatabaseManager
from custody_engine.escrows.service import ApprovalEngine
from custody_engine.policies.service import PolicyStore
from custody_engine.vaults.service import VaultRegistry

_db: DatabaseManager | None = None
_audit: AuditLedger | None = None
_vaults: VaultRegistry | None = None
_policies: PolicyStore | None = None
_escrows: ApprovalEngine | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_audit_ledger() -> AuditLedger:
    global _audit
    if _audit is None:
        _audit = AuditLedger(get_settings())
    return _audit


def get_vault_registry() -> VaultRegistry:
    global _vaults
    if _vaults is None:
        _vaults = VaultRegistry(get_settings(), get_audit_ledger())
    return _vaults


def get_policy_store() -> PolicyStore:
    global _policies
    if _policies is None:
        _policies = PolicyStore(get_settings(), get_audit_ledger())
    return _policies


def get_approval_engine() -> ApprovalEngine:
    global _escrows
    if _escrows is None:
        _escrows = ApprovalEngine(get_settings(), get_audit_ledger(), get_vault_registry())
    return _escrows


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _audit, _vaults, _policies, _escrows
    _db = None
    _audit = None
    _vaults = None
    _policies = None
    _escrows = None
