"""Integration tests for the escrow router."""

import pytest

from tests.conftest import CHAIN_ID, G1, G2, G3, OUTSIDER, OWNER, RECIPIENT

TX_HASH = "0x" + "ab" * 32


@pytest.fixture
async def payment_policy(client, api_headers, api_vault):
    resp = await client.post("/policies/payment", json={
        "vault_id": api_vault["id"],
        "name": "Payments",
        "threshold": 2,
        "timelock": 0,
        "guardian_addresses": [G1, G2, G3],
        "owner_addresses": [OWNER],
        "actor": OWNER,
        "max_amount": "1000000",
    }, headers=api_headers)
    assert resp.status_code == 201
    return resp.json()


@pytest.fixture
async def collection_policy(client, api_headers, api_vault):
    resp = await client.post("/policies/collection", json={
        "vault_id": api_vault["id"],
        "name": "Dues",
        "actor": OWNER,
    }, headers=api_headers)
    assert resp.status_code == 201
    return resp.json()


async def _payment_escrow(client, headers, vault, policy, **overrides):
    body = {
        "vault_id": vault["id"],
        "policy_id": policy["id"],
        "name": "Vendor invoice",
        "total_amount": "1000",
        "recipient": RECIPIENT,
        "requester": OWNER,
        "submit": True,
    }
    body.update(overrides)
    return await client.post("/escrows/payment", json=body, headers=headers)


async def _approve(client, headers, escrow_id, approver):
    return await client.post(
        f"/escrows/{escrow_id}/approve", json={"approver": approver}, headers=headers,
    )


class TestPaymentEscrowRouter:
    async def test_requires_auth(self, client):
        resp = await client.get("/escrows/anything")
        assert resp.status_code == 422

    async def test_create(self, client, api_headers, api_vault, payment_policy):
        resp = await _payment_escrow(client, api_headers, api_vault, payment_policy)
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "submitted"
        assert data["total_amount"] == "1000"
        assert data["recipient"] == f"eip155:{CHAIN_ID}:{RECIPIENT}"
        assert data["required_approvals"] == 2
        assert data["current_approvals"] == 0

    async def test_spending_cap(self, client, api_headers, api_vault, payment_policy):
        resp = await _payment_escrow(
            client, api_headers, api_vault, payment_policy, total_amount="1000001",
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "SPENDING_CAP_EXCEEDED"

    async def test_amount_must_be_decimal(self, client, api_headers, api_vault, payment_policy):
        resp = await _payment_escrow(
            client, api_headers, api_vault, payment_policy, total_amount="1e3",
        )
        assert resp.status_code == 422

    async def test_full_lifecycle(self, client, api_headers, api_vault, payment_policy):
        escrow = (await _payment_escrow(client, api_headers, api_vault, payment_policy)).json()

        first = await _approve(client, api_headers, escrow["id"], G1)
        assert first.status_code == 200
        assert first.json()["status"] == "submitted"

        second = await _approve(client, api_headers, escrow["id"], G2)
        assert second.json()["status"] == "approved"
        assert second.json()["executable_after"] is not None

        repeat = await _approve(client, api_headers, escrow["id"], G1)
        assert repeat.status_code == 200
        assert repeat.json()["current_approvals"] == 2

        progress = await client.get(f"/escrows/{escrow['id']}/approvals", headers=api_headers)
        assert progress.json()["current"] == 2
        assert progress.json()["is_executable"] is True

        on_chain = await client.post(f"/escrows/{escrow['id']}/on-chain", json={
            "actor": OWNER, "tx_hash": TX_HASH,
        }, headers=api_headers)
        assert on_chain.json()["status"] == "on-chain"

        done = await client.post(
            f"/escrows/{escrow['id']}/complete", json={"actor": "system"}, headers=api_headers,
        )
        assert done.json()["status"] == "completed"

        trail = await client.get(f"/audit/tx/{TX_HASH}", headers=api_headers)
        assert [e["action"] for e in trail.json()] == ["escrow_on_chain"]

    async def test_unqualified_approver(self, client, api_headers, api_vault, payment_policy):
        escrow = (await _payment_escrow(client, api_headers, api_vault, payment_policy)).json()
        resp = await _approve(client, api_headers, escrow["id"], OUTSIDER)
        assert resp.status_code == 403
        assert resp.json()["code"] == "NOT_QUALIFIED_APPROVER"

    async def test_draft_not_approvable(self, client, api_headers, api_vault, payment_policy):
        escrow = (await _payment_escrow(
            client, api_headers, api_vault, payment_policy, submit=False,
        )).json()
        resp = await _approve(client, api_headers, escrow["id"], G1)
        assert resp.status_code == 409
        assert resp.json()["code"] == "NOT_APPROVABLE"

        resp = await client.post(
            f"/escrows/{escrow['id']}/submit", json={"actor": OWNER}, headers=api_headers,
        )
        assert resp.json()["status"] == "submitted"

    async def test_revoke(self, client, api_headers, api_vault, payment_policy):
        escrow = (await _payment_escrow(client, api_headers, api_vault, payment_policy)).json()
        await _approve(client, api_headers, escrow["id"], G1)
        resp = await client.post(
            f"/escrows/{escrow['id']}/revoke", json={"approver": G1}, headers=api_headers,
        )
        assert resp.json()["current_approvals"] == 0

    async def test_cancel_then_on_chain_rejected(
        self, client, api_headers, api_vault, payment_policy,
    ):
        escrow = (await _payment_escrow(client, api_headers, api_vault, payment_policy)).json()
        resp = await client.post(f"/escrows/{escrow['id']}/cancel", json={
            "actor": OWNER, "reason": "wrong recipient",
        }, headers=api_headers)
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["cancel_reason"] == "wrong recipient"

        resp = await client.post(
            f"/escrows/{escrow['id']}/on-chain", json={"actor": OWNER}, headers=api_headers,
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "INVALID_TRANSITION"

    async def test_timelock_blocks_execution(self, client, api_headers, api_vault):
        policy = (await client.post("/policies/payment", json={
            "vault_id": api_vault["id"],
            "name": "Slow",
            "threshold": 1,
            "timelock": 86400,
            "guardian_addresses": [G1],
            "actor": OWNER,
        }, headers=api_headers)).json()
        escrow = (await _payment_escrow(client, api_headers, api_vault, policy)).json()
        await _approve(client, api_headers, escrow["id"], G1)
        resp = await client.post(
            f"/escrows/{escrow['id']}/on-chain", json={"actor": OWNER}, headers=api_headers,
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "TIMELOCK_ACTIVE"

    async def test_expire_without_deadline(self, client, api_headers, api_vault, payment_policy):
        escrow = (await _payment_escrow(client, api_headers, api_vault, payment_policy)).json()
        resp = await client.post(f"/escrows/{escrow['id']}/expire", headers=api_headers)
        assert resp.status_code == 409

    async def test_missing_escrow(self, client, api_headers):
        resp = await client.get("/escrows/missing", headers=api_headers)
        assert resp.status_code == 404
        assert resp.json()["code"] == "ESCROW_NOT_FOUND"

    async def test_list_and_stats(self, client, api_headers, api_vault, payment_policy):
        await _payment_escrow(client, api_headers, api_vault, payment_policy)
        await _payment_escrow(client, api_headers, api_vault, payment_policy, submit=False)
        resp = await client.get(
            f"/escrows/vault/{api_vault['id']}", params={"status": "draft"}, headers=api_headers,
        )
        assert len(resp.json()) == 1
        resp = await client.get(f"/escrows/vault/{api_vault['id']}/stats", headers=api_headers)
        stats = resp.json()
        assert stats["total"] == 2
        assert stats["pending_approval"] == 1


class TestCollectionEscrowRouter:
    async def _create(self, client, headers, vault, policy):
        resp = await client.post("/escrows/collection", json={
            "vault_id": vault["id"],
            "policy_id": policy["id"],
            "name": "Offsite",
            "total_amount": "300",
            "participants": [
                {"address": G1, "allocated_amount": "100"},
                {"address": G2, "allocated_amount": "100"},
                {"name": "guest", "allocated_amount": "100"},
            ],
            "requester": OWNER,
            "submit": True,
        }, headers=headers)
        assert resp.status_code == 201
        return resp.json()

    async def test_collect_until_complete(self, client, api_headers, api_vault, collection_policy):
        escrow = await self._create(client, api_headers, api_vault, collection_policy)
        participants = escrow["participants"]
        assert participants[0]["address"] == f"eip155:{CHAIN_ID}:{G1}"
        assert participants[2]["address"] is None

        for participant in participants[:2]:
            resp = await client.post(f"/escrows/{escrow['id']}/payments", json={
                "participant_id": participant["id"], "amount": "100",
            }, headers=api_headers)
            assert resp.status_code == 200

        progress = await client.get(
            f"/escrows/{escrow['id']}/collection-progress", headers=api_headers,
        )
        assert progress.json()["collected_amount"] == "200"
        assert progress.json()["completion_rate"] == 66

        resp = await client.post(f"/escrows/{escrow['id']}/payments", json={
            "participant_id": participants[2]["id"], "amount": "100", "actor": OWNER,
        }, headers=api_headers)
        assert resp.json()["status"] == "completed"

    async def test_overpayment(self, client, api_headers, api_vault, collection_policy):
        escrow = await self._create(client, api_headers, api_vault, collection_policy)
        resp = await client.post(f"/escrows/{escrow['id']}/payments", json={
            "participant_id": escrow["participants"][0]["id"], "amount": "101",
        }, headers=api_headers)
        assert resp.status_code == 422
        assert resp.json()["code"] == "OVERPAYMENT"

    async def test_allocation_mismatch(self, client, api_headers, api_vault, collection_policy):
        resp = await client.post("/escrows/collection", json={
            "vault_id": api_vault["id"],
            "policy_id": collection_policy["id"],
            "name": "Off",
            "total_amount": "250",
            "participants": [{"address": G1, "allocated_amount": "100"}],
            "requester": OWNER,
        }, headers=api_headers)
        assert resp.status_code == 422
        assert resp.json()["code"] == "ALLOCATION_MISMATCH"
