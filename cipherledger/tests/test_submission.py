# cipherledger/tests/test_submission.py
import asyncio
import re

import pytest

from cipherledger.errors import InvalidInput, TxError, UserRejected
from cipherledger.records import StatusPhase
from cipherledger.submission import new_record_id, plain_tag_for


def test_plain_tag_is_label_length_mod():
    assert plain_tag_for("test") == 4
    assert plain_tag_for("x" * 1003) == 3
    assert plain_tag_for("abc", modulus=2) == 1


def test_record_ids_have_time_and_random_suffix():
    ids = {new_record_id("record-", clock=lambda: 1700000000.123) for _ in range(50)}
    assert len(ids) == 50
    for rid in ids:
        assert re.match(r"^record-1700000000123-[0-9a-f]{6}$", rid)


@pytest.mark.asyncio
async def test_submit_then_refresh_has_unverified_record(env):
    res = await env.client.submit("test", "0xABC")
    assert res.ok, res.message
    assert res.record.plain_tag == 4
    assert res.record.verified is False
    assert res.record.cleartext() is None

    state = await env.client.refresh()
    rec = state.get(res.record.id)
    assert rec is not None
    assert rec.verified is False
    assert rec.optimistic is False
    assert rec.creator == "0xABC"
    await env.client.aclose()


@pytest.mark.asyncio
async def test_submit_and_verify_scenario(env):
    res = await env.client.submit("test", "0xABC")
    assert res.ok
    assert res.record.plain_tag == 4
    assert res.record.verified is False

    out = await env.client.verify(res.record.id)
    assert out.ok, out.message
    assert out.record.verified is True
    assert out.record.decrypted_value == 4
    assert env.client.session.get(res.record.id).verified is True
    await env.client.aclose()


@pytest.mark.asyncio
async def test_post_write_refresh_replaces_optimistic_copy(env):
    res = await env.client.submit("hello", "0xABC")
    assert env.client.records()[0].optimistic is True

    await env.client.session.drain()
    recs = env.client.records()
    assert [r.id for r in recs] == [res.record.id]
    assert recs[0].optimistic is False
    assert env.client.stats() == {"total": 1, "verified": 0, "active": 1}
    await env.client.aclose()


@pytest.mark.asyncio
async def test_record_hidden_until_confirmation(env):
    env.ledger.block_delay_s = 0.2
    seen = []
    env.client.subscribe_status(lambda ev: seen.append(ev.message if ev else None))

    task = asyncio.ensure_future(env.client.submit("pending", "0xABC"))
    await asyncio.sleep(0.05)
    assert env.client.records() == []
    assert env.client.session.notifier.current.message == "Storing encrypted record..."

    res = await task
    assert res.ok
    assert [r.id for r in env.client.records()] == [res.record.id]
    assert seen[:3] == ["Encrypting record...", "Storing encrypted record...", "Record stored"]
    await env.client.aclose()


@pytest.mark.asyncio
async def test_rejected_submission_leaves_no_trace(env):
    env.ledger.reject_signatures = True
    res = await env.client.submit("test", "0xABC")

    assert not res.ok
    assert isinstance(res.error, UserRejected)
    assert res.message == "Transaction rejected"
    assert env.client.session.notifier.current.phase is StatusPhase.ERROR
    assert env.client.session.notifier.current.message == "Transaction rejected"
    assert env.client.records() == []
    assert env.client.history() == []
    await env.client.aclose()


@pytest.mark.asyncio
async def test_blank_label_is_rejected_without_remote_calls(env):
    res = await env.client.submit("   ", "0xABC")
    assert not res.ok
    assert isinstance(res.error, InvalidInput)
    assert res.message == "Nothing to submit"
    assert env.ledger.tx_log == []
    assert env.coprocessor.decrypt_calls == 0


@pytest.mark.asyncio
async def test_encryption_service_not_ready(env):
    env.coprocessor.ready = False
    res = await env.client.submit("test", "0xABC")
    assert not res.ok
    assert res.message == "Encryption service not ready, try again shortly"
    assert res.to_dict()["error_kind"] == "service_unavailable"
    assert env.ledger.tx_log == []


@pytest.mark.asyncio
async def test_reverted_submission_is_discarded(env):
    # input proof bound to another account: the contract reverts
    res = await env.client.submit("test", "0xDEF")
    assert not res.ok
    assert isinstance(res.error, TxError)
    assert res.message == "Submission failed"
    assert env.client.records() == []
    assert env.client.history() == []

    state = await env.client.refresh()
    assert state.total == 0
    await env.client.aclose()


@pytest.mark.asyncio
async def test_history_keeps_successful_labels_in_order(env):
    await env.client.submit("first", "0xABC")
    env.ledger.reject_signatures = True
    await env.client.submit("rejected", "0xABC")
    env.ledger.reject_signatures = False
    await env.client.submit("second", "0xABC")

    assert env.client.history() == ["first", "second"]
    await env.client.aclose()


@pytest.mark.asyncio
async def test_confirmation_timeout_is_transport_failure(make_env):
    e = make_env(confirmation_timeout_s=1.0)
    e.ledger.block_delay_s = 5.0
    res = await asyncio.wait_for(e.client.submit("slow", "0xABC"), timeout=3.0)
    assert not res.ok
    assert res.message == "Submission failed"
    assert res.to_dict()["error_kind"] == "transport"
    assert e.client.records() == []
    await e.client.aclose()
