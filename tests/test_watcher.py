import asyncio

import pytest

from proofpay.core.events import REQUEST_PAID
from proofpay.payments.watcher import SettlementWatcher
from proofpay.storage.models import PaymentStatus, TransferEvent
from proofpay.wallet.addresses import NATIVE_TOKEN

from conftest import ALICE, BOB, PAYER, USDC, wait_until


@pytest.fixture
def watcher(store, chain_data, config, bus) -> SettlementWatcher:
    chain_data.decimals[(8453, USDC)] = 6
    w = SettlementWatcher(store, chain_data, config.watcher, bus)
    w.attach()
    return w


def transfer(
    value: int, tx_hash: str = "0x01", to: str = ALICE, token: str = USDC, block: int = 10
) -> TransferEvent:
    return TransferEvent(
        chain_id=8453,
        token_address=token,
        from_address=PAYER,
        to_address=to,
        value=value,
        tx_hash=tx_hash,
        block_number=block,
    )


async def _status(store, request_id):
    return (await store.get(request_id)).status


async def test_duplicate_delivery_pays_exactly_once(alice_session, store, draft, watcher, chain_data, bus):
    req = await store.create(draft(amount="10.0"), alice_session)
    task = watcher.watch(req)

    event = transfer(10_000_000, "0xabc")
    await chain_data.push(event)
    await chain_data.push(event)
    await wait_until(task.done)
    assert await watcher.process_event(event) is None

    paid = await store.get(req.id)
    assert paid.status is PaymentStatus.PAID
    assert paid.payer_address == PAYER
    assert paid.settlement_tx_hash == "0xabc"
    assert len(bus.get_history(name=REQUEST_PAID)) == 1


async def test_wrong_amount_is_ignored(alice_session, store, draft, watcher, chain_data):
    req = await store.create(draft(amount="10.0"), alice_session)
    task = watcher.watch(req)

    await chain_data.push(transfer(9_999_999, "0x01"))
    await chain_data.push(transfer(10_000_000_000_000_000_000, "0x02"))
    await asyncio.sleep(0.05)
    assert await _status(store, req.id) is PaymentStatus.PENDING
    assert not task.done()

    await chain_data.push(transfer(10_000_000, "0x03"))
    await wait_until(task.done)
    assert (await store.get(req.id)).settlement_tx_hash == "0x03"


async def test_decimals_come_from_the_token(alice_session, store, draft, watcher, chain_data):
    chain_data.decimals[(8453, USDC)] = 18
    req = await store.create(draft(amount="10.0"), alice_session)

    assert await watcher.process_event(transfer(10_000_000, "0x01")) is None
    assert await watcher.process_event(transfer(10 * 10**18, "0x02")) == req.id


async def test_transfer_to_someone_else_does_not_match(alice_session, store, draft, watcher):
    req = await store.create(draft(), alice_session)
    assert await watcher.process_event(transfer(10_000_000, to=BOB)) is None
    assert await watcher.process_event(transfer(10_000_000, token=NATIVE_TOKEN)) is None
    assert await _status(store, req.id) is PaymentStatus.PENDING


async def test_native_currency_request(alice_session, store, draft, watcher):
    req = await store.create(draft(token_address=NATIVE_TOKEN, amount="0.5"), alice_session)
    event = transfer(5 * 10**17, token=NATIVE_TOKEN)
    assert await watcher.process_event(event) == req.id


async def test_chain_errors_are_retried_not_treated_as_evidence(
    alice_session, store, draft, watcher, chain_data
):
    chain_data.decimals_failures = 2
    chain_data.subscribe_failures = 1
    req = await store.create(draft(), alice_session)
    task = watcher.watch(req)

    await chain_data.push(transfer(10_000_000))
    await wait_until(task.done)
    assert await _status(store, req.id) is PaymentStatus.PAID


async def test_watch_is_cancelled_when_request_expires(alice_session, store, draft, watcher, chain_data):
    req = await store.create(draft(), alice_session)
    task = watcher.watch(req)
    await wait_until(lambda: chain_data.subscriptions == 1)

    assert await store.transition(req.id, PaymentStatus.PENDING, PaymentStatus.EXPIRED)
    await wait_until(task.done)
    assert task.cancelled()
    assert req.id not in watcher.watched_ids


async def test_lost_race_discards_event_and_stops(alice_session, store, draft, chain_data, config):
    chain_data.decimals[(8453, USDC)] = 6
    detached = SettlementWatcher(store, chain_data, config.watcher)
    req = await store.create(draft(), alice_session)
    task = detached.watch(req)
    await wait_until(lambda: chain_data.subscriptions == 1)

    assert await store.transition(req.id, PaymentStatus.PENDING, PaymentStatus.EXPIRED)
    await chain_data.push(transfer(10_000_000))
    await wait_until(task.done)

    assert not task.cancelled()
    assert await _status(store, req.id) is PaymentStatus.EXPIRED


async def test_unpayable_amount_ends_watch(alice_session, store, draft, watcher):
    req = await store.create(draft(amount="0.0000001"), alice_session)
    task = watcher.watch(req)
    await wait_until(task.done)
    assert await _status(store, req.id) is PaymentStatus.PENDING


async def test_run_watches_open_and_new_requests(alice_session, store, draft, watcher, chain_data):
    first = await store.create(draft(), alice_session)
    runner = asyncio.create_task(watcher.run())
    await wait_until(lambda: first.id in watcher.watched_ids)

    second = await store.create(draft(amount="2"), alice_session)
    await wait_until(lambda: second.id in watcher.watched_ids)

    await chain_data.push(transfer(2_000_000, "0x22"))
    await wait_until(lambda: second.id not in watcher.watched_ids)
    assert await _status(store, second.id) is PaymentStatus.PAID
    assert await _status(store, first.id) is PaymentStatus.PENDING

    await watcher.stop()
    await asyncio.wait_for(runner, timeout=1)
    assert watcher.watched_ids == set()


async def test_transfer_mined_during_outage_is_found(alice_session, store, draft, watcher, chain_data):
    chain_data.head = 100
    req = await store.create(draft(), alice_session)
    task = watcher.watch(req)
    await wait_until(lambda: chain_data.subscriptions == 1)
    assert (await store.get(req.id)).scan_from_block == 100

    chain_data.subscribe_failures = 2
    chain_data.drop_subscriptions()
    await chain_data.push(transfer(10_000_000, "0x66", block=102))
    chain_data.head = 110

    await wait_until(task.done)
    assert await _status(store, req.id) is PaymentStatus.PAID
    assert chain_data.from_blocks == [100, 100]


async def test_restart_resumes_from_recorded_block(
    alice_session, store, draft, watcher, chain_data, config
):
    chain_data.head = 100
    req = await store.create(draft(), alice_session)
    watcher.watch(req)
    await wait_until(lambda: chain_data.subscriptions == 1)
    await watcher.stop()

    await chain_data.push(transfer(10_000_000, "0x77", block=104))
    chain_data.head = 120

    restarted = SettlementWatcher(store, chain_data, config.watcher)
    task = restarted.watch(await store.get(req.id))
    await wait_until(task.done)
    assert await _status(store, req.id) is PaymentStatus.PAID
    assert chain_data.from_blocks[-1] == 100


async def test_scan_start_set_at_creation_is_kept(alice_session, store, draft, chain_data, config):
    chain_data.head = 500
    req = await store.create(draft(), alice_session, scan_from_block=42)
    detached = SettlementWatcher(store, chain_data, config.watcher)
    assert await detached.scan_start(req) == 42

    late = await store.create(draft(), alice_session)
    assert await detached.scan_start(late) == 500
    assert await store.set_scan_start(late.id, 900) == 500


async def test_process_event_keeps_no_history_without_a_watch(
    alice_session, store, draft, chain_data, config
):
    chain_data.decimals[(8453, USDC)] = 6
    detached = SettlementWatcher(store, chain_data, config.watcher)
    req = await store.create(draft(), alice_session)

    assert await detached.process_event(transfer(1, "0x01")) is None
    assert await detached.process_event(transfer(10_000_000, "0x02")) == req.id
    assert detached._seen == {}
