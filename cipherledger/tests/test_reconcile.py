# cipherledger/tests/test_reconcile.py
import asyncio

import pytest

from cipherledger.crypto import LocalCoprocessor
from cipherledger.errors import RefreshError
from cipherledger.ledger import InMemoryLedger
from cipherledger.reconcile import ReconciliationLoop
from cipherledger.records import ReconciledState, Record


def _rec(rid, *, verified=False, value=0, optimistic=False, created_at=0):
    return Record(
        id=rid,
        label=rid,
        encrypted_value=b"\x00" * 32,
        plain_tag=len(rid),
        created_at=created_at,
        creator="0xABC",
        verified=verified,
        decrypted_value=value,
        optimistic=optimistic,
    )


@pytest.mark.asyncio
async def test_refresh_is_idempotent(env):
    for label in ("a", "bb", "ccc"):
        assert (await env.client.submit(label, "0xABC")).ok
    await env.client.session.drain()

    s1 = await env.client.refresh()
    s2 = await env.client.refresh()

    assert s1 == s2
    assert s1.stats() == s2.stats() == {"total": 3, "verified": 0, "active": 3}
    assert [r.label for r in s1.records] == ["a", "bb", "ccc"]
    await env.client.aclose()


@pytest.mark.asyncio
async def test_one_unreadable_record_is_skipped(env):
    ids = []
    for label in ("one", "two", "three"):
        res = await env.client.submit(label, "0xABC")
        ids.append(res.record.id)
    await env.client.session.drain()

    env.ledger.unreadable_ids = {ids[1]}
    state = await env.client.refresh()

    assert [r.id for r in state.records] == [ids[0], ids[2]]
    assert state.total == 2
    assert state.skipped == (ids[1],)
    await env.client.aclose()


@pytest.mark.asyncio
async def test_enumeration_failure_raises_and_keeps_view(env):
    res = await env.client.submit("kept", "0xABC")
    await env.client.session.drain()
    before = env.client.records()

    env.ledger.fail_enumeration = True
    with pytest.raises(RefreshError):
        await env.client.refresh()

    assert env.client.records() == before
    assert before[0].id == res.record.id
    await env.client.aclose()


@pytest.mark.asyncio
async def test_active_window(make_env):
    now = [1_000_000.0]
    e = make_env(clock=lambda: now[0])
    assert (await e.client.submit("old", "0xABC")).ok
    now[0] += 50_000
    assert (await e.client.submit("new", "0xABC")).ok
    await e.client.session.drain()

    now[0] += 40_000
    loop = ReconciliationLoop(e.client.session, clock=lambda: now[0])
    state = await loop.refresh()

    assert state.total == 2
    assert state.active == 1
    assert state.verified == 0
    await e.client.aclose()


@pytest.mark.asyncio
async def test_verified_count_follows_ledger(env):
    res = await env.client.submit("check", "0xABC")
    await env.client.verify(res.record.id)
    await env.client.submit("other", "0xABC")
    await env.client.session.drain()

    state = await env.client.refresh()
    assert state.stats() == {"total": 2, "verified": 1, "active": 2}
    assert state.get(res.record.id).cleartext() == 5
    await env.client.aclose()


def test_stale_refresh_is_discarded(env):
    session = env.client.session
    loop = ReconciliationLoop(session)
    older = session.begin_refresh()
    newer = session.begin_refresh()

    assert session.apply(loop.summarize([_rec("b")], []), newer) is True
    assert session.apply(loop.summarize([_rec("a")], []), older) is False
    assert [r.id for r in session.records()] == ["b"]


def test_optimistic_records_added_during_refresh_survive(env):
    session = env.client.session
    loop = ReconciliationLoop(session)

    session.stage(_rec("early"))
    session.promote("early")
    token = session.begin_refresh()
    session.stage(_rec("late"))
    session.promote("late")

    assert session.apply(loop.summarize([_rec("ledger")], []), token)
    ids = [r.id for r in session.records()]
    assert ids == ["ledger", "late"]
    assert session.get("late").optimistic is True


def test_records_reread_during_refresh_survive(env):
    session = env.client.session
    loop = ReconciliationLoop(session)

    token = session.begin_refresh()
    session.upsert(_rec("reread"))

    assert session.apply(loop.summarize([_rec("ledger")], []), token)
    assert [r.id for r in session.records()] == ["ledger", "reread"]

    # a refresh that started after the re-read is authoritative
    assert session.apply(loop.summarize([_rec("ledger")], []), session.begin_refresh())
    assert [r.id for r in session.records()] == ["ledger"]


@pytest.mark.asyncio
async def test_records_with_verification_in_flight_survive_refresh(env):
    session = env.client.session
    loop = ReconciliationLoop(session)
    session.apply(loop.summarize([_rec("busy")], []), session.begin_refresh())

    session.claim("busy")
    assert session.apply(loop.summarize([], []), session.begin_refresh())
    assert session.get("busy") is not None

    session.release("busy")
    assert session.apply(loop.summarize([], []), session.begin_refresh())
    assert session.get("busy") is None


def test_verified_never_regresses_on_merge(env):
    session = env.client.session
    loop = ReconciliationLoop(session)
    session.apply(loop.summarize([_rec("x", verified=True, value=0)], []), session.begin_refresh())
    session.apply(loop.summarize([_rec("x")], []), session.begin_refresh())

    rec = session.get("x")
    assert rec.verified is True
    assert rec.cleartext() == 0


def test_reconciled_state_equality_ignores_refresh_time():
    a = ReconciledState(records=(_rec("x"),), total=1, refreshed_at=1.0)
    b = ReconciledState(records=(_rec("x"),), total=1, refreshed_at=2.0)
    assert a == b


@pytest.mark.asyncio
async def test_periodic_refresh_survives_failures(make_env):
    e = make_env(refresh_interval_s=0.05)
    states = []
    e.client.subscribe_state(states.append)
    e.ledger.fail_enumeration = True

    async with e.client:
        assert e.client.reconciler.running
        await asyncio.sleep(0.12)
        assert states == []
        e.ledger.fail_enumeration = False
        await asyncio.sleep(0.15)

    assert not e.client.reconciler.running
    assert len(states) >= 1
    assert states[-1].total == 0


@pytest.mark.asyncio
async def test_periodic_refresh_disabled_by_default(env):
    await env.client.start()
    assert not env.client.reconciler.running
    await env.client.aclose()


class PeakReadLedger(InMemoryLedger):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = 0
        self.peak = 0

    async def _read_pause(self):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await super()._read_pause()
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_refresh_bounds_concurrent_reads(make_env):
    cop = LocalCoprocessor(master_key=b"\x06" * 32)
    ledger = PeakReadLedger(cop, account="0xABC", contract_address="0x0000000000000000000000000000000000000c1e")
    e = make_env(ledger=ledger, coprocessor=cop, refresh_concurrency=3, remote_call_timeout_s=0.3)
    for i in range(12):
        assert (await e.client.submit(f"r{i}", "0xABC")).ok
    await e.client.session.drain()

    # 12 records at two 50ms reads each take 0.4s through three slots,
    # longer than one call's timeout
    ledger.read_delay_s = 0.05
    ledger.peak = 0
    state = await e.client.refresh()

    assert state.total == 12
    assert state.skipped == ()
    assert ledger.peak <= 3
    await e.client.aclose()
