"""Unit tests for auditchain.services.chain.verifier (tamper detection)."""
import asyncio
from datetime import UTC, datetime

import pytest

from auditchain.config.settings import VerifyMode
from auditchain.core.errors import MissingKeyVersionError
from auditchain.db.models.chain import ChainEntry
from auditchain.db.models.verification import RunMode, RunStatus
from auditchain.services.chain.hasher import compute_hash
from auditchain.services.chain.store import SqlChainStore
from auditchain.services.chain.verifier import (
    GENESIS,
    BreakReason,
    ChainPosition,
    ChainVerifier,
)

from tests.conftest import ROTATED_SECRET

pytestmark = pytest.mark.asyncio


# ─── Intact chains ────────────────────────────────────────────────────────────

async def test_empty_chain_is_intact(verifier):
    report = await verifier.verify()
    assert report.intact is True
    assert report.complete is True
    assert report.total_entries == 0
    assert report.verified_entries == 0
    assert report.broken_at_sequence_id is None


async def test_untouched_chain_has_no_false_positives(verifier, append_many):
    await append_many(7)
    report = await verifier.verify()
    assert report.status == RunStatus.INTACT
    assert report.total_entries == 7
    assert report.verified_entries == 7
    assert report.last_verified_sequence_id == 7
    assert report.breaks == []


@pytest.mark.parametrize("batch_size", [1, 2, 3, 1000])
async def test_batch_size_does_not_change_outcome(
    session_factory, secret_store, append_many, batch_size
):
    await append_many(7)
    report = await ChainVerifier(session_factory, secret_store, batch_size=batch_size).verify()
    assert report.intact
    assert report.verified_entries == 7


async def test_key_rotation_keeps_old_entries_verifiable(
    verifier, append_many, secret_store
):
    await append_many(2)
    await secret_store.rotate(ROTATED_SECRET)
    await append_many(2, action="record_edited")
    report = await verifier.verify()
    assert report.intact
    assert report.verified_entries == 4


# ─── The A, B, C scenario ─────────────────────────────────────────────────────

async def test_abc_scenario(append_engine, verifier, session_factory, tamper, remove_entry):
    a = await append_engine.append("u1", "login", "session", details={"x": 1})
    b = await append_engine.append("u1", "view_client", "client", "c1", details={"y": 2})
    c = await append_engine.append("u1", "logout", "session", details={"z": 3})
    assert (a, b, c) == (1, 2, 3)

    async with session_factory() as db:
        store = SqlChainStore(db)
        entry_a, entry_b, entry_c = [await store.get(seq) for seq in (a, b, c)]
    assert entry_a.previous_hash == ""
    assert entry_b.previous_hash == entry_a.hash
    assert entry_c.previous_hash == entry_b.hash

    report = await verifier.verify()
    assert report.intact
    assert report.total_entries == 3
    assert report.verified_entries == 3

    await tamper(b, action="delete_client")
    report = await verifier.verify()
    assert not report.intact
    assert report.broken_at_sequence_id == 2
    assert report.verified_entries == 1
    assert report.first_break.reason == BreakReason.HASH_MISMATCH

    await remove_entry(b)
    report = await verifier.verify()
    assert not report.intact
    assert report.broken_at_sequence_id == 3
    assert report.first_break.reason == BreakReason.SEQUENCE_GAP
    assert report.first_break.expected_sequence_id == 2


# ─── Tampering ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "column,value",
    [
        ("actor_id", "someone-else"),
        ("resource_id", "client-999"),
        ("details", {"index": 1, "reason": "billing"}),
        ("timestamp", datetime(2020, 1, 1, tzinfo=UTC)),
        ("hash", "0" * 64),
    ],
)
async def test_mutated_entry_reported_with_hashes(verifier, append_many, tamper, column, value):
    await append_many(3)
    await tamper(2, **{column: value})
    report = await verifier.verify()
    assert report.status == RunStatus.BROKEN
    assert report.broken_at_sequence_id == 2
    assert report.expected_hash != report.actual_hash
    assert len(report.expected_hash) == 64


async def test_rewritten_previous_hash_detected(verifier, append_many, tamper):
    await append_many(3)
    await tamper(3, previous_hash="f" * 64)
    report = await verifier.verify()
    assert report.broken_at_sequence_id == 3
    assert report.first_break.reason == BreakReason.PREVIOUS_HASH_MISMATCH
    assert report.actual_hash == "f" * 64


async def test_deleted_genesis_is_detected(verifier, append_many, remove_entry):
    await append_many(3)
    await remove_entry(1)
    report = await verifier.verify()
    assert report.broken_at_sequence_id == 2
    assert report.first_break.reason == BreakReason.SEQUENCE_GAP


async def test_forged_entry_without_key_detected(verifier, append_many, session_factory):
    await append_many(2)
    async with session_factory() as db:
        tail = await db.get(ChainEntry, 2)
        ts = datetime.now(UTC)
        forged_hash = compute_hash(
            tail.hash,
            "intruder",
            "export_all",
            "client",
            None,
            {},
            ts,
            "attacker-guess-of-the-secret-0123456789",
        )
        db.add(
            ChainEntry(
                sequence_id=3,
                previous_hash=tail.hash,
                actor_id="intruder",
                action="export_all",
                resource_type="client",
                resource_id=None,
                details={},
                timestamp=ts,
                key_version=1,
                hash=forged_hash,
            )
        )
        await db.commit()

    report = await verifier.verify()
    assert report.broken_at_sequence_id == 3
    assert report.first_break.reason == BreakReason.HASH_MISMATCH


# ─── Modes and early stop ─────────────────────────────────────────────────────

async def test_all_breaks_mode_catalogs_every_break(verifier, append_many, tamper):
    await append_many(5)
    await tamper(2, action="x")
    await tamper(4, action="y")
    report = await verifier.verify(mode=VerifyMode.ALL_BREAKS)
    assert [b.sequence_id for b in report.breaks] == [2, 4]
    assert report.verified_entries == 3
    assert report.broken_at_sequence_id == 2
    assert report.complete is True


async def test_first_break_mode_stops(verifier, append_many, tamper):
    await append_many(5)
    await tamper(2, action="x")
    await tamper(4, action="y")
    report = await verifier.verify(mode=VerifyMode.FIRST_BREAK)
    assert [b.sequence_id for b in report.breaks] == [2]


async def test_max_entries_stops_early(verifier, append_many):
    await append_many(5)
    report = await verifier.verify(max_entries=2)
    assert report.complete is False
    assert report.intact is True
    assert report.verified_entries == 2
    assert verifier.progress.last_sequence_id == 2


async def test_cancel_leaves_progress_readable(verifier, append_many):
    await append_many(3)
    cancel = asyncio.Event()
    cancel.set()
    report = await verifier.verify(cancel=cancel)
    assert report.complete is False
    assert report.verified_entries == 0
    assert verifier.progress.position == GENESIS


async def test_resume_from_trusted_position(verifier, append_many, session_factory):
    await append_many(5)
    async with session_factory() as db:
        third = await db.get(ChainEntry, 3)
    report = await verifier.verify(start=ChainPosition(3, third.hash))
    assert report.scope == RunMode.INCREMENTAL
    assert report.start_sequence_id == 3
    assert report.total_entries == 2
    assert report.verified_entries == 2
    assert report.intact


# ─── Missing keys ─────────────────────────────────────────────────────────────

async def test_missing_key_version_raises_not_tamper(verifier, append_many, secret_store):
    await append_many(2)
    secret_store.forget(1)
    with pytest.raises(MissingKeyVersionError) as exc_info:
        await verifier.verify()
    assert exc_info.value.key_version == 1
    assert exc_info.value.sequence_id == 1


async def test_report_to_dict_is_json_ready(verifier, append_many, tamper):
    await append_many(2)
    await tamper(2, action="x")
    data = (await verifier.verify()).to_dict()
    assert data["intact"] is False
    assert data["status"] == "broken"
    assert data["broken_at_sequence_id"] == 2
    assert data["breaks"][0]["reason"] == "hash_mismatch"
    assert isinstance(data["started_at"], str)
