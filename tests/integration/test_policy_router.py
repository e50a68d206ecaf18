"""Integration tests for the policy router."""

from datetime import datetime, timedelta, timezone

from tests.conftest import G1, G2, G3, OWNER


async def _payment_policy(client, headers, vault_id, **overrides):
    body = {
        "vault_id": vault_id,
        "name": "Payments",
        "threshold": 2,
        "timelock": 3600,
        "guardian_addresses": [G1, G2, G3],
        "owner_addresses": [OWNER],
        "actor": OWNER,
    }
    body.update(overrides)
    return await client.post("/policies/payment", json=body, headers=headers)


class TestPolicyRouter:
    async def test_requires_auth(self, client):
        resp = await client.get("/policies/anything")
        assert resp.status_code == 422

    async def test_create_payment_policy(self, client, api_headers, api_vault):
        resp = await _payment_policy(client, api_headers, api_vault["id"], max_amount="5000")
        assert resp.status_code == 201
        data = resp.json()
        assert data["type"] == "payment"
        assert data["max_amount"] == "5000"
        assert data["roles_root"].startswith("0x")
        vault = await client.get(f"/vaults/{api_vault['id']}", headers=api_headers)
        assert vault.json()["policy_id"] == data["id"]

    async def test_threshold_over_guardians_conflicts(self, client, api_headers, api_vault):
        resp = await _payment_policy(client, api_headers, api_vault["id"], threshold=4)
        assert resp.status_code == 409
        assert resp.json()["code"] == "THRESHOLD_EXCEEDS_GUARDIANS"

    async def test_unknown_vault(self, client, api_headers):
        resp = await _payment_policy(client, api_headers, "missing")
        assert resp.status_code == 404

    async def test_create_collection_policy(self, client, api_headers, api_vault):
        resp = await client.post("/policies/collection", json={
            "vault_id": api_vault["id"],
            "name": "Dues",
            "collection_config": {"allow_partial_payment": False, "default_deadline": 3600},
            "actor": OWNER,
        }, headers=api_headers)
        assert resp.status_code == 201
        config = resp.json()["collection_config"]
        assert config["allow_partial_payment"] is False
        assert config["auto_complete"] is True
        assert config["default_deadline"] == 3600

    async def test_update_and_history(self, client, api_headers, api_vault):
        policy = (await _payment_policy(client, api_headers, api_vault["id"])).json()
        resp = await client.patch(f"/policies/{policy['id']}", json={
            "actor": OWNER, "changes": {"threshold": 3},
        }, headers=api_headers)
        assert resp.status_code == 200
        assert resp.json()["threshold"] == 3

        resp = await client.get(f"/policies/{policy['id']}/history", headers=api_headers)
        assert [e["action"] for e in resp.json()] == ["policy_updated", "policy_created"]

    async def test_update_unknown_field(self, client, api_headers, api_vault):
        policy = (await _payment_policy(client, api_headers, api_vault["id"])).json()
        resp = await client.patch(f"/policies/{policy['id']}", json={
            "actor": OWNER, "changes": {"vault_id": "other"},
        }, headers=api_headers)
        assert resp.status_code == 422

    async def test_deactivate_and_activate(self, client, api_headers, api_vault):
        policy = (await _payment_policy(client, api_headers, api_vault["id"])).json()
        resp = await client.post(
            f"/policies/{policy['id']}/deactivate", json={"actor": OWNER}, headers=api_headers,
        )
        assert resp.json()["active"] is False
        resp = await client.get(
            f"/policies/vault/{api_vault['id']}", params={"active": True}, headers=api_headers,
        )
        assert resp.json() == []
        resp = await client.post(
            f"/policies/{policy['id']}/activate", json={"actor": OWNER}, headers=api_headers,
        )
        assert resp.json()["active"] is True

    async def test_schedule_and_emergency(self, client, api_headers, api_vault):
        policy = (await _payment_policy(client, api_headers, api_vault["id"])).json()
        effective = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        resp = await client.post(f"/policies/{policy['id']}/schedule", json={
            "actor": OWNER, "effective_at": effective, "changes": {"timelock": 60},
        }, headers=api_headers)
        assert resp.status_code == 200
        assert resp.json()["timelock"] == 3600
        assert len(resp.json()["pending_changes"]) == 1

        resp = await client.post(f"/policies/{policy['id']}/emergency", json={
            "actor": OWNER, "reason": "guardian key leaked", "changes": {"threshold": 1},
        }, headers=api_headers)
        assert resp.status_code == 200
        assert resp.json()["threshold"] == 1

    async def test_emergency_needs_reason(self, client, api_headers, api_vault):
        policy = (await _payment_policy(client, api_headers, api_vault["id"])).json()
        resp = await client.post(f"/policies/{policy['id']}/emergency", json={
            "actor": OWNER, "reason": "", "changes": {"threshold": 1},
        }, headers=api_headers)
        assert resp.status_code == 422

    async def test_stats(self, client, api_headers, api_vault):
        await _payment_policy(client, api_headers, api_vault["id"])
        await _payment_policy(client, api_headers, api_vault["id"], name="Old", active=False)
        resp = await client.get(f"/policies/vault/{api_vault['id']}/stats", headers=api_headers)
        assert resp.json() == {
            "total": 2, "active": 1, "inactive": 1,
            "by_type": {"payment": 2, "collection": 0},
        }

    async def test_missing_policy(self, client, api_headers):
        resp = await client.get("/policies/missing", headers=api_headers)
        assert resp.status_code == 404
        assert resp.json()["code"] == "POLICY_NOT_FOUND"
