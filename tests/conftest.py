"""Shared fixtures: deterministic keys, a temp database and in-process fakes."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from eth_account import Account

from proofpay.config import ProofPayConfig, SweeperConfig, SwitchingConfig, WatcherConfig
from proofpay.core.events import EventBus
from proofpay.errors import ChainDataError, ConnectorUnavailable, UserRejected
from proofpay.identity.registry import WalletLinkRegistry
from proofpay.identity.session import IdentitySession
from proofpay.identity.signature import attest, build_link_message, sign_text
from proofpay.identity.switch import WalletSwitchCoordinator
from proofpay.payments.store import PaymentRequestStore
from proofpay.storage.database import Database
from proofpay.storage.models import (
    PaymentRequestDraft,
    TransactionState,
    TransactionStatus,
    TransferEvent,
    utcnow,
)

ALICE_KEY = "0x" + "11" * 32
BOB_KEY = "0x" + "22" * 32
CAROL_KEY = "0x" + "33" * 32
DAVE_KEY = "0x" + "44" * 32
EVE_KEY = "0x" + "55" * 32

ALICE = Account.from_key(ALICE_KEY).address.lower()
BOB = Account.from_key(BOB_KEY).address.lower()
CAROL = Account.from_key(CAROL_KEY).address.lower()
DAVE = Account.from_key(DAVE_KEY).address.lower()
EVE = Account.from_key(EVE_KEY).address.lower()

KEYS = {ALICE: ALICE_KEY, BOB: BOB_KEY, CAROL: CAROL_KEY, DAVE: DAVE_KEY, EVE: EVE_KEY}

USDC = "0x" + "a0" * 20
PAYER = "0x" + "be" * 20


def link_attestation(primary: str, sub: str, signer_key: str | None = None):
    """Attestation for linking *sub* under *primary*, signed by *signer_key* (default: sub's key)."""
    message = build_link_message(primary, sub)
    signature = sign_text(message, signer_key or KEYS[sub])
    return attest(message, signature, sub)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeWalletProvider:
    """Scripted wallet provider.

    Each ``connect()`` consumes the next queued result: an address, an
    exception to raise, or an ``asyncio.Future`` to wait on first.
    """

    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self.keys = dict(keys or KEYS)
        self.connected: str | None = None
        self.connect_results: list = []
        self.disconnect_gate: asyncio.Event | None = None
        self.sign_error: Exception | None = None
        self.calls: list[str] = []
        self._listeners = []

    def queue_connect(self, *results) -> None:
        self.connect_results.extend(results)

    async def connect(self) -> str:
        self.calls.append("connect")
        if not self.connect_results:
            raise ConnectorUnavailable("nothing queued")
        result = self.connect_results.pop(0)
        if isinstance(result, asyncio.Future):
            result = await result
        if isinstance(result, BaseException):
            raise result
        self.connected = result
        return result

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        if self.disconnect_gate is not None:
            await self.disconnect_gate.wait()
        self.connected = None

    async def sign(self, message: str) -> str:
        self.calls.append("sign")
        if self.sign_error is not None:
            raise self.sign_error
        if self.connected is None:
            raise UserRejected("not connected")
        return sign_text(message, self.keys[self.connected])

    def on_account_changed(self, callback) -> None:
        self._listeners.append(callback)

    async def change_account(self, address: str | None) -> None:
        self.connected = address
        for listener in self._listeners:
            await listener(address)


class FakeChainData:
    """Chain data backed by an in-memory transfer log.

    Every subscription first replays the logged transfers for its
    (chain, token, recipient) from ``from_block`` on, then receives new ones
    as they are pushed. :meth:`drop_subscriptions` makes every open stream
    fail the way a dead RPC endpoint would.
    """

    def __init__(self) -> None:
        self.head = 0
        self.decimals: dict[tuple[int, str], int] = {}
        self.decimals_failures = 0
        self.subscribe_failures = 0
        self.statuses: dict[str, TransactionStatus] = {}
        self.subscriptions = 0
        self.from_blocks: list[int | None] = []
        self._log: dict[tuple[int, str, str], list[TransferEvent]] = {}
        self._subscribers: dict[tuple[int, str, str], list[asyncio.Queue]] = {}

    @staticmethod
    def _key(chain_id: int, token: str, recipient: str) -> tuple[int, str, str]:
        return (chain_id, token.lower(), recipient.lower())

    async def get_token_decimals(self, chain_id: int, token_address: str) -> int:
        if self.decimals_failures:
            self.decimals_failures -= 1
            raise ChainDataError("rpc timeout")
        return self.decimals.get((chain_id, token_address.lower()), 18)

    async def get_balance(self, chain_id: int, token_address: str, owner: str) -> int:
        return sum(
            e.value
            for e in self._log.get(self._key(chain_id, token_address, owner), [])
        )

    async def get_block_number(self, chain_id: int) -> int:
        return self.head

    async def subscribe_transfers(
        self, chain_id: int, token_address: str, recipient: str, from_block: int | None = None
    ):
        if self.subscribe_failures:
            self.subscribe_failures -= 1
            raise ChainDataError("subscription dropped")
        key = self._key(chain_id, token_address, recipient)
        queue: asyncio.Queue = asyncio.Queue()
        for event in self._log.get(key, []):
            if from_block is None or event.block_number is None or event.block_number >= from_block:
                queue.put_nowait(event)
        self._subscribers.setdefault(key, []).append(queue)
        self.subscriptions += 1
        self.from_blocks.append(from_block)
        try:
            while True:
                item = await queue.get()
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if queue in self._subscribers[key]:
                self._subscribers[key].remove(queue)

    async def push(self, event: TransferEvent) -> None:
        key = self._key(event.chain_id, event.token_address, event.to_address)
        self._log.setdefault(key, []).append(event)
        for queue in self._subscribers.get(key, []):
            queue.put_nowait(event)

    def drop_subscriptions(self) -> None:
        """Fail every open subscription. Transfers pushed afterwards reach only new ones."""
        for queues in self._subscribers.values():
            for queue in queues:
                queue.put_nowait(ChainDataError("rpc timeout"))
            queues.clear()

    async def get_transaction_status(self, chain_id: int, tx_hash: str) -> TransactionStatus:
        return self.statuses.get(
            tx_hash,
            TransactionStatus(tx_hash=tx_hash, state=TransactionState.SUCCESS, block_number=1234),
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> ProofPayConfig:
    return ProofPayConfig(
        base_url="https://pay.example.com/",
        switching=SwitchingConfig(provider_timeout_seconds=1.0, max_mismatch_retries=2),
        watcher=WatcherConfig(
            poll_interval_seconds=0.01,
            refresh_interval_seconds=0.05,
            retry_base_delay_seconds=0.001,
            retry_max_delay_seconds=0.01,
        ),
        sweeper=SweeperConfig(interval_seconds=0.05),
    )


@pytest.fixture
async def db(tmp_path):
    database = Database(tmp_path / "proofpay.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def registry(db) -> WalletLinkRegistry:
    return WalletLinkRegistry(db)


@pytest.fixture
def session(registry) -> IdentitySession:
    return IdentitySession(registry)


@pytest.fixture
async def alice_session(session) -> IdentitySession:
    await session.connect(ALICE)
    return session


@pytest.fixture
def provider() -> FakeWalletProvider:
    p = FakeWalletProvider()
    p.connected = ALICE
    return p


@pytest.fixture
def coordinator(session, provider, bus, config) -> WalletSwitchCoordinator:
    c = WalletSwitchCoordinator(session, provider, bus, config.switching)
    c.attach()
    return c


@pytest.fixture
def chain_data() -> FakeChainData:
    return FakeChainData()


@pytest.fixture
def store(db, config, bus) -> PaymentRequestStore:
    return PaymentRequestStore(db, config, bus)


@pytest.fixture
def draft():
    def _draft(**overrides) -> PaymentRequestDraft:
        fields = dict(
            requester_address=ALICE,
            chain_id=8453,
            amount="10.0",
            token_address=USDC,
            token_symbol="USDC",
            expires_at=utcnow() + timedelta(hours=1),
        )
        fields.update(overrides)
        return PaymentRequestDraft(**fields)

    return _draft
