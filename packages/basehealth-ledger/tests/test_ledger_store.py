"""Tests for the idempotency ledger."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from basehealth_core.exceptions import AlreadyProcessed, ConfigError
from basehealth_ledger.models import normalize_principal
from basehealth_ledger.store import PostgresLedgerStore, SqliteLedgerStore, create_ledger_store

SETTLED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WALLET = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"


async def _mark(ledger, payment_id="0xtx1", order_id="ord_1", **kwargs):
    values = dict(
        sender=WALLET,
        amount=500000,
        network="base",
        resource="ai-consult",
        service_type="ai-consult",
        principal=WALLET,
        session_id="cs_1",
        required_amount=500000,
        settled_at=SETTLED,
    )
    values.update(kwargs)
    sender = values.pop("sender")
    amount = values.pop("amount")
    return await ledger.mark_processed(payment_id, order_id, sender, amount, **values)


@pytest.mark.asyncio
async def test_mark_then_get(ledger):
    entry = await _mark(ledger, metadata={"onchain_time": "2026-03-01T11:59:55+00:00"})
    stored = await ledger.get("0xtx1")

    assert stored == entry
    assert stored.principal == WALLET.lower()
    assert stored.settled_at == SETTLED
    assert stored.metadata == {"onchain_time": "2026-03-01T11:59:55+00:00"}
    assert await ledger.is_processed("0xtx1")
    assert not await ledger.is_processed("0xtx2")


@pytest.mark.asyncio
async def test_second_write_is_rejected_with_existing_entry(ledger):
    first = await _mark(ledger, order_id="ord_1")
    with pytest.raises(AlreadyProcessed) as exc_info:
        await _mark(ledger, order_id="ord_2", session_id="cs_2")

    assert exc_info.value.payment_id == "0xtx1"
    assert exc_info.value.existing == first
    assert (await ledger.get("0xtx1")).order_id == "ord_1"


@pytest.mark.asyncio
async def test_concurrent_writers_have_exactly_one_winner(ledger):
    results = await asyncio.gather(
        *(_mark(ledger, order_id=f"ord_{i}") for i in range(10)),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, AlreadyProcessed)]

    assert len(winners) == 1
    assert len(losers) == 9
    assert all(loser.existing.order_id == winners[0].order_id for loser in losers)


@pytest.mark.asyncio
async def test_two_connections_to_one_file_share_the_key(tmp_path):
    dsn = f"sqlite:///{tmp_path / 'ledger.db'}"
    first, second = SqliteLedgerStore(dsn), SqliteLedgerStore(dsn)
    try:
        await _mark(first)
        with pytest.raises(AlreadyProcessed):
            await _mark(second, order_id="ord_2")
    finally:
        await first.close()
        await second.close()


@pytest.mark.asyncio
async def test_surplus_is_recorded(ledger):
    entry = await _mark(ledger, amount=600000)
    assert entry.surplus == 100000
    assert (await ledger.get("0xtx1")).to_dict()["surplus"] == "100000"


@pytest.mark.asyncio
async def test_queries_by_session_resource_and_service(ledger):
    await _mark(ledger, "0xtx1", settled_at=datetime(2026, 3, 1, tzinfo=timezone.utc))
    await _mark(ledger, "0xtx2", settled_at=datetime(2026, 3, 2, tzinfo=timezone.utc), session_id="cs_2")

    assert [e.payment_id for e in await ledger.find_for_session("cs_1")] == ["0xtx1"]
    latest = await ledger.latest_for_resource(WALLET.upper().replace("0X", "0x"), "ai-consult")
    assert latest.payment_id == "0xtx2"
    assert await ledger.latest_for_service(WALLET, "ai-consult", datetime(2026, 3, 3, tzinfo=timezone.utc)) is None
    found = await ledger.latest_for_service(WALLET, "ai-consult", datetime(2026, 3, 1, tzinfo=timezone.utc))
    assert found.payment_id == "0xtx2"


@pytest.mark.asyncio
async def test_annotate_merges_metadata(ledger):
    await _mark(ledger, metadata={"onchain_time": "t"})

    assert await ledger.annotate("0xtx1", {"stripe_status": "refunded"})
    assert (await ledger.get("0xtx1")).metadata == {"onchain_time": "t", "stripe_status": "refunded"}
    assert not await ledger.annotate("0xunknown", {"stripe_status": "refunded"})


@pytest.mark.asyncio
async def test_events_are_recorded_once(ledger):
    assert not await ledger.has_event("stripe", "evt_1")
    assert await ledger.record_event("stripe", "evt_1")
    assert not await ledger.record_event("stripe", "evt_1")
    assert await ledger.has_event("stripe", "evt_1")
    assert not await ledger.has_event("other", "evt_1")


def test_create_ledger_store_backends(tmp_path):
    assert isinstance(create_ledger_store(f"sqlite:///{tmp_path / 'a.db'}"), SqliteLedgerStore)
    assert isinstance(create_ledger_store("postgresql://localhost/basehealth"), PostgresLedgerStore)
    with pytest.raises(ConfigError):
        create_ledger_store("memory://")


@pytest.mark.parametrize(
    "raw,expected",
    [
        (WALLET, WALLET.lower()),
        ("  user-42 ", "user-42"),
        ("7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU", "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"),
        (None, None),
    ],
)
def test_normalize_principal(raw, expected):
    assert normalize_principal(raw) == expected


@pytest.mark.asyncio
async def test_sqlite_ledger_runs_statements_off_the_event_loop(ledger):
    heartbeat = []

    async def _beat():
        for _ in range(5):
            heartbeat.append(1)
            await asyncio.sleep(0.01)

    ledger._lock.acquire()
    try:
        write = asyncio.create_task(_mark(ledger))
        await _beat()
        assert not write.done()
    finally:
        ledger._lock.release()

    entry = await write
    assert len(heartbeat) == 5
    assert (await ledger.get("0xtx1")) == entry
