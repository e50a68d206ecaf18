"""Shared test fixtures for Custody-Engine."""

import os
import pytest
from httpx import ASGITransport, AsyncClient

from custody_engine.audit.service import AuditLedger
from custody_engine.common.config import CustodySettings
from custody_engine.common.database import DatabaseManager
from custody_engine.escrows.service import ApprovalEngine
from custody_engine.identifiers.caip10 import ChainAccount
from custody_engine.policies.service import PolicyStore
from custody_engine.vaults.service import VaultRegistry


API_KEY = "test-admin-api-key"
CHAIN_ID = 84532

VAULT_ADDRESS = "0xAAAAaaaaAAAAaaaaAAAAaaaaAAAAaaaaAAAAaaaa"
VAULT_UUID = "7d6f4f2a-5b9e-4c1a-9f3e-2a1b0c9d8e7f"
OWNER = "0xA11cE0000000000000000000000000000000A11c"
G1 = "0x1111111111111111111111111111111111111111"
G2 = "0x2222222222222222222222222222222222222222"
G3 = "0x3333333333333333333333333333333333333333"
OUTSIDER = "0x9999999999999999999999999999999999999999"
RECIPIENT = "0x5555555555555555555555555555555555555555"


def make_settings(**overrides) -> CustodySettings:
    defaults = {"db_url": "sqlite+aiosqlite://", "api_key": API_KEY}
    defaults.update(overrides)
    return CustodySettings(**defaults)


# ── Service-level fixtures ──


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def ledger(settings):
    return AuditLedger(settings)


@pytest.fixture
def registry(settings, ledger):
    return VaultRegistry(settings, ledger)


@pytest.fixture
def store(settings, ledger):
    return PolicyStore(settings, ledger)


@pytest.fixture
def engine(settings, ledger, registry):
    return ApprovalEngine(settings, ledger, registry)


@pytest.fixture
async def vault(db, registry):
    """A vault owned by OWNER with guardians G1, G2 and G3."""
    async with db.get_session() as session:
        created = await registry.create_vault(
            session,
            ChainAccount(VAULT_ADDRESS, CHAIN_ID),
            uuid=VAULT_UUID,
            name="Treasury",
            owner=OWNER,
        )
        for guardian in (G1, G2, G3):
            await registry.add_member(session, created.id, guardian, "guardian", OWNER)
    return created


# ── HTTP fixtures ──


@pytest.fixture
def app():
    """Create a test app with in-memory DB."""
    os.environ["CUSTODY_DB_URL"] = "sqlite+aiosqlite://"
    os.environ["CUSTODY_API_KEY"] = API_KEY

    # Clear caches and singletons so new env vars take effect
    from custody_engine.common.config import get_settings
    get_settings.cache_clear()

    from custody_engine.deps import reset_singletons
    reset_singletons()

    from custody_engine.app import create_app
    return create_app()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from custody_engine.deps import get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await db.close()


@pytest.fixture
def api_headers():
    return {"X-Custody-Api-Key": API_KEY}


@pytest.fixture
async def api_vault(client, api_headers):
    """The OWNER/G1-G3 vault created over HTTP. Returns the vault JSON."""
    resp = await client.post("/vaults", json={
        "address": VAULT_ADDRESS,
        "chain_id": CHAIN_ID,
        "uuid": VAULT_UUID,
        "name": "Treasury",
        "owner": OWNER,
    }, headers=api_headers)
    assert resp.status_code == 201
    data = resp.json()
    for guardian in (G1, G2, G3):
        member = await client.post(f"/vaults/{data['id']}/members", json={
            "address": guardian, "role": "guardian", "added_by": OWNER,
        }, headers=api_headers)
        assert member.status_code == 201
    return data
