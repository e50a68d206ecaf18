"""Tests for the audit ledger: append, search, stats and retention."""

from datetime import timedelta

import pytest

from custody_engine.audit import service as audit_service
from custody_engine.audit.service import AuditEntry, AuditFilter, AuditLedger
from custody_engine.common.exceptions import ValidationError
from custody_engine.common.models import utcnow
from tests.conftest import make_settings

ALICE = "eip155:1:0x1111111111111111111111111111111111111111"
BOB = "eip155:1:0x2222222222222222222222222222222222222222"
TX = "0x" + "ab" * 32
USER_OP = "0x" + "cd" * 32


def _entry(actor=ALICE, action="escrow_created", **kwargs):
    kwargs.setdefault("resource", "escrow")
    return AuditEntry(actor=actor, action=action, **kwargs)


class TestAppend:
    async def test_append_sets_timestamp_and_hash(self, db, ledger):
        async with db.get_session() as session:
            record = await ledger.append(session, _entry(vault_id="v1", data={"n": 1}))
            assert record.id is not None
            assert record.timestamp is not None
            assert len(record.entry_hash) == 64
            assert ledger.verify_entry(record)

    async def test_entry_verifies_after_reload(self, db, ledger):
        async with db.get_session() as session:
            await ledger.append(session, _entry(data={"amount": "5"}, metadata={"ip": "10.0.0.1"}))
        async with db.get_session() as session:
            (record,) = await ledger.search(session)
        assert ledger.verify_entry(record)
        record.data = {"amount": "6"}
        assert not ledger.verify_entry(record)

    async def test_batch(self, db, ledger):
        async with db.get_session() as session:
            records = await ledger.append_batch(session, [
                _entry(action="a"), _entry(action="b"), _entry(action="c"),
            ])
            assert len(records) == 3
            assert records[0].timestamp < records[1].timestamp < records[2].timestamp

    async def test_empty_batch_is_noop(self, db, ledger):
        async with db.get_session() as session:
            assert await ledger.append_batch(session, []) == []
            assert await ledger.search(session) == []

    async def test_entry_rolls_back_with_transaction(self, db, ledger):
        with pytest.raises(RuntimeError):
            async with db.get_session() as session:
                await ledger.append(session, _entry())
                raise RuntimeError("state change failed")
        async with db.get_session() as session:
            assert await ledger.search(session) == []

    async def test_log_helpers_prefix_actions(self, db, ledger):
        async with db.get_session() as session:
            escrow = await ledger.log_escrow_action(
                session, actor=ALICE, action="approved", escrow_id="e1", vault_id="v1",
            )
            policy = await ledger.log_policy_action(
                session, actor=ALICE, action="created", policy_id="p1",
            )
            member = await ledger.log_member_action(
                session, actor=ALICE, action="added", member_address=BOB,
            )
        assert (escrow.action, escrow.resource) == ("escrow_approved", "escrow")
        assert (policy.action, policy.resource) == ("policy_created", "policy")
        assert (member.action, member.resource, member.resource_id) == (
            "member_added", "member", BOB,
        )


class TestSearch:
    async def _seed(self, db, ledger):
        async with db.get_session() as session:
            await ledger.append_batch(session, [
                _entry(vault_id="v1", action="escrow_created", resource_id="e1"),
                _entry(vault_id="v1", action="escrow_approved", resource_id="e1", actor=BOB),
                _entry(vault_id="v1", action="escrow_on_chain", resource_id="e1",
                       tx_hash=TX, user_op_hash=USER_OP),
                _entry(vault_id="v2", action="policy_created", resource="policy",
                       resource_id="p1"),
            ])

    async def test_newest_first(self, db, ledger):
        await self._seed(db, ledger)
        async with db.get_session() as session:
            entries = await ledger.search(session)
        assert [e.action for e in entries] == [
            "policy_created", "escrow_on_chain", "escrow_approved", "escrow_created",
        ]

    @pytest.mark.parametrize("audit_filter,expected", [
        (AuditFilter(vault_id="v1"), 3),
        (AuditFilter(vault_id="v1", actor=BOB), 1),
        (AuditFilter(actor=BOB.upper().replace("EIP155", "eip155")), 1),
        (AuditFilter(actor=ALICE.split(":")[-1]), 3),
        (AuditFilter(actor="0x" + "2" * 40), 1),
        (AuditFilter(actor="0x" + "3" * 40), 0),
        (AuditFilter(resource="policy"), 1),
        (AuditFilter(resource_id="e1", action="escrow_created"), 1),
        (AuditFilter(tx_hash=TX), 1),
        (AuditFilter(user_op_hash=USER_OP), 1),
        (AuditFilter(vault_id="nope"), 0),
    ])
    async def test_filters_are_conjunctive(self, db, ledger, audit_filter, expected):
        await self._seed(db, ledger)
        async with db.get_session() as session:
            assert len(await ledger.search(session, audit_filter)) == expected

    async def test_date_range(self, db, ledger):
        await self._seed(db, ledger)
        now = utcnow()
        async with db.get_session() as session:
            assert len(await ledger.search(
                session, AuditFilter(start_date=now - timedelta(minutes=5)),
            )) == 4
            assert await ledger.search(
                session, AuditFilter(end_date=now - timedelta(minutes=5)),
            ) == []

    async def test_offset_and_limit(self, db, ledger):
        await self._seed(db, ledger)
        async with db.get_session() as session:
            page = await ledger.search(session, AuditFilter(limit=2, offset=1))
        assert [e.action for e in page] == ["escrow_on_chain", "escrow_approved"]

    async def test_limit_capped(self, db):
        capped = AuditLedger(make_settings(audit_default_limit=2, audit_max_limit=3))
        async with db.get_session() as session:
            await capped.append_batch(session, [_entry(action=f"a{i}") for i in range(5)])
        async with db.get_session() as session:
            assert len(await capped.search(session)) == 2
            assert len(await capped.search(session, AuditFilter(limit=100))) == 3

    async def test_lookup_by_hashes(self, db, ledger):
        await self._seed(db, ledger)
        async with db.get_session() as session:
            assert [e.action for e in await ledger.get_by_tx_hash(session, TX)] == [
                "escrow_on_chain",
            ]
            assert len(await ledger.get_by_user_op_hash(session, USER_OP)) == 1
            assert await ledger.get_by_tx_hash(session, "0x" + "00" * 32) == []
            assert len(await ledger.get_by_vault(session, "v1")) == 3
            assert len(await ledger.get_by_actor(session, ALICE)) == 3


class TestStats:
    async def test_grouped_counts(self, db, ledger):
        async with db.get_session() as session:
            await ledger.append_batch(session, [
                _entry(action="escrow_created"),
                _entry(action="escrow_created", actor=BOB),
                _entry(action="escrow_created", actor=BOB),
                _entry(action="policy_created", resource="policy"),
            ])
        async with db.get_session() as session:
            stats = await ledger.get_stats(session)
        assert stats["total_logs"] == 4
        assert stats["action_counts"] == {"escrow_created": 3, "policy_created": 1}
        assert stats["resource_counts"] == {"escrow": 3, "policy": 1}
        assert stats["top_actors"] == [
            {"actor": ALICE, "count": 2}, {"actor": BOB, "count": 2},
        ]

    async def test_top_actors_limited_to_ten(self, db, ledger):
        async with db.get_session() as session:
            await ledger.append_batch(session, [
                _entry(actor=f"eip155:1:0x{i:040x}") for i in range(12)
            ])
        async with db.get_session() as session:
            stats = await ledger.get_stats(session)
        assert stats["total_logs"] == 12
        assert len(stats["top_actors"]) == 10

    async def test_stats_respect_filter(self, db, ledger):
        async with db.get_session() as session:
            await ledger.append(session, _entry(vault_id="v1"))
            await ledger.append(session, _entry(vault_id="v2"))
        async with db.get_session() as session:
            stats = await ledger.get_stats(session, AuditFilter(vault_id="v2"))
        assert stats["total_logs"] == 1


class TestCleanup:
    async def test_retention_scenario(self, db, ledger, monkeypatch):
        old = utcnow() - timedelta(days=100)
        monkeypatch.setattr(audit_service, "utcnow", lambda: old)
        async with db.get_session() as session:
            await ledger.append(session, _entry(action="ancient"))
        monkeypatch.undo()
        async with db.get_session() as session:
            await ledger.append(session, _entry(action="recent"))

        async with db.get_session() as session:
            assert await ledger.cleanup(session, 90) == 1
        async with db.get_session() as session:
            assert [e.action for e in await ledger.search(session)] == ["recent"]

    async def test_default_retention(self, db, ledger, monkeypatch):
        old = utcnow() - timedelta(days=91)
        monkeypatch.setattr(audit_service, "utcnow", lambda: old)
        async with db.get_session() as session:
            await ledger.append(session, _entry())
        monkeypatch.undo()
        async with db.get_session() as session:
            assert await ledger.cleanup(session) == 1

    async def test_nothing_old_enough(self, db, ledger):
        async with db.get_session() as session:
            await ledger.append(session, _entry())
        async with db.get_session() as session:
            assert await ledger.cleanup(session, 1) == 0

    async def test_negative_retention_rejected(self, db, ledger):
        async with db.get_session() as session:
            with pytest.raises(ValidationError) as exc:
                await ledger.cleanup(session, -1)
        assert exc.value.code == "INVALID_RETENTION"
