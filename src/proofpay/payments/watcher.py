"""Settlement watcher.

Runs one watch task per open payment request. Each task subscribes to
transfers of the request's token to the requester and moves the request to
``paid`` when a transfer of exactly the requested amount arrives. A watch
ends as soon as its request leaves ``pending``, whoever moved it.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3

from proofpay.config import WatcherConfig
from proofpay.core.events import (
    REQUEST_CANCELLED,
    REQUEST_CREATED,
    REQUEST_EXPIRED,
    REQUEST_PAID,
    DomainEvent,
    EventBus,
)
from proofpay.core.retry import Backoff, retry_async
from proofpay.errors import ChainDataError, InvalidAmount, RequestNotFound
from proofpay.payments.store import PaymentRequestStore
from proofpay.storage.models import PaymentRequest, PaymentStatus, TransferEvent, utcnow
from proofpay.wallet.addresses import same_address
from proofpay.wallet.provider import ChainDataProvider
from proofpay.wallet.units import parse_units

logger = logging.getLogger("proofpay.payments.watcher")

_TERMINAL_EVENTS = (REQUEST_PAID, REQUEST_EXPIRED, REQUEST_CANCELLED)


class SettlementWatcher:
    """Detects on-chain settlement of pending payment requests."""

    def __init__(
        self,
        store: PaymentRequestStore,
        chain_data: ChainDataProvider,
        settings: WatcherConfig | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.store = store
        self.chain_data = chain_data
        self.settings = settings or WatcherConfig()
        self.bus = bus
        self.backoff = Backoff(
            base=self.settings.retry_base_delay_seconds,
            maximum=self.settings.retry_max_delay_seconds,
        )
        self._tasks: dict[str, asyncio.Task] = {}
        self._seen: dict[str, set[str]] = {}
        self._stopping = asyncio.Event()
        self._subscribed = False

    @property
    def watched_ids(self) -> set[str]:
        return set(self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Start watching new requests and stop watching resolved ones via the bus."""
        if self.bus is None or self._subscribed:
            return
        self.bus.subscribe(REQUEST_CREATED, self._on_created)
        for name in _TERMINAL_EVENTS:
            self.bus.subscribe(name, self._on_resolved)
        self._subscribed = True

    def detach(self) -> None:
        if self.bus is None or not self._subscribed:
            return
        self.bus.unsubscribe(REQUEST_CREATED, self._on_created)
        for name in _TERMINAL_EVENTS:
            self.bus.unsubscribe(name, self._on_resolved)
        self._subscribed = False

    async def run(self) -> None:
        """Watch open requests until :meth:`stop` is called.

        The set of open requests is re-read every
        ``refresh_interval_seconds`` so requests created by other processes
        are picked up too.
        """
        self._stopping.clear()
        self.attach()
        logger.info("Settlement watcher started")
        try:
            while not self._stopping.is_set():
                try:
                    await self.refresh()
                except sqlite3.Error as exc:
                    logger.warning(f"Could not load open payment requests: {exc}")
                try:
                    await asyncio.wait_for(
                        self._stopping.wait(), timeout=self.settings.refresh_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self.detach()
            await self._cancel_all()
            logger.info("Settlement watcher stopped")

    async def stop(self) -> None:
        self._stopping.set()
        await self._cancel_all()

    async def refresh(self) -> int:
        """Sync watches with the open requests in the store. Returns how many started."""
        open_requests = await self.store.list_open()
        open_ids = {r.id for r in open_requests}
        for request_id in list(self._tasks):
            if request_id not in open_ids:
                self.unwatch(request_id)

        started = 0
        for request in open_requests:
            if request.id not in self._tasks:
                self.watch(request)
                started += 1
        return started

    def watch(self, request: PaymentRequest) -> asyncio.Task:
        existing = self._tasks.get(request.id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._watch(request), name=f"settle-{request.id}")
        self._tasks[request.id] = task
        task.add_done_callback(lambda t, rid=request.id: self._forget(rid, t))
        logger.debug(f"Watching request {request.id} on chain {request.chain_id}")
        return task

    def unwatch(self, request_id: str) -> bool:
        task = self._tasks.get(request_id)
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def _forget(self, request_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(request_id) is task:
            del self._tasks[request_id]
            self._seen.pop(request_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Watch for request {request_id} crashed: {task.exception()}")

    async def _cancel_all(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _on_created(self, event: DomainEvent) -> None:
        request = await self.store.find(event.payload["request_id"])
        if request is not None and request.is_open():
            self.watch(request)

    async def _on_resolved(self, event: DomainEvent) -> None:
        if self.unwatch(event.payload["request_id"]):
            logger.debug(f"Stopped watching {event.payload['request_id']} ({event.name})")

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def expected_value(self, request: PaymentRequest) -> int:
        """The request amount in the token's smallest unit, decimals read from chain."""
        decimals = await self.chain_data.get_token_decimals(request.chain_id, request.token_address)
        return parse_units(request.amount, decimals)

    async def scan_start(self, request: PaymentRequest) -> int:
        """First block to search for *request*'s payment.

        Requests created without one get the current head minus
        ``lookback_blocks``, persisted so later watches (also after a
        restart) resume from the same block.
        """
        if request.scan_from_block is not None:
            return request.scan_from_block
        head = await self.chain_data.get_block_number(request.chain_id)
        return await self.store.set_scan_start(
            request.id, max(0, head - self.settings.lookback_blocks)
        )

    async def _watch(self, request: PaymentRequest) -> None:
        try:
            expected = await retry_async(
                lambda: self.expected_value(request),
                backoff=self.backoff,
                retry_on=(ChainDataError,),
                description=f"decimals lookup for {request.id}",
            )
        except InvalidAmount as exc:
            logger.error(f"Request {request.id} can never settle: {exc}")
            return

        # Rescanning from the last transfer seen is safe; duplicates are dropped.
        resume_from = await retry_async(
            lambda: self.scan_start(request),
            backoff=self.backoff,
            retry_on=(ChainDataError, sqlite3.OperationalError),
            description=f"scan start for {request.id}",
        )
        failures = 0
        while True:
            try:
                async for event in self.chain_data.subscribe_transfers(
                    request.chain_id,
                    request.token_address,
                    request.requester_address,
                    from_block=resume_from,
                ):
                    failures = 0
                    if event.block_number is not None:
                        resume_from = max(resume_from, event.block_number)
                    if await self._handle_transfer(request, expected, event) is not None:
                        return
                # Stream ended; the next refresh starts a new watch if still open.
                return
            except ChainDataError as exc:
                delay = self.backoff.delay(failures)
                failures += 1
                logger.warning(
                    f"Transfer subscription for {request.id} failed ({exc}); "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def _handle_transfer(
        self,
        request: PaymentRequest,
        expected: int,
        event: TransferEvent,
    ) -> bool | None:
        """Apply *event* to *request*.

        Returns ``None`` if the event does not settle the request, ``True``
        if it marked the request paid and ``False`` if the request had
        already been resolved by someone else.
        """
        if (
            event.chain_id != request.chain_id
            or not same_address(event.token_address, request.token_address)
            or not same_address(event.to_address, request.requester_address)
        ):
            logger.debug(f"Transfer {event.tx_hash} is not for request {request.id}")
            return None

        seen = self._seen.setdefault(request.id, set())
        tx_hash = event.tx_hash.lower()
        if tx_hash in seen:
            logger.debug(f"Duplicate transfer {event.tx_hash} for request {request.id}")
            return None
        seen.add(tx_hash)

        if event.value != expected:
            logger.debug(
                f"Transfer {event.tx_hash} of {event.value} does not match "
                f"{expected} expected by {request.id}"
            )
            return None

        try:
            applied = await retry_async(
                lambda: self.store.transition(
                    request.id,
                    PaymentStatus.PENDING,
                    PaymentStatus.PAID,
                    payer_address=event.from_address,
                    settlement_tx_hash=event.tx_hash,
                    paid_at=utcnow(),
                ),
                backoff=self.backoff,
                retry_on=(sqlite3.OperationalError,),
                description=f"settling {request.id}",
            )
        except RequestNotFound:
            logger.warning(f"Request {request.id} disappeared while settling")
            return False

        if applied:
            logger.info(f"Request {request.id} paid by {event.from_address} in {event.tx_hash}")
        else:
            logger.debug(f"Request {request.id} was already resolved; transfer {event.tx_hash} discarded")
        return applied

    async def process_event(self, event: TransferEvent) -> str | None:
        """Match a transfer delivered from outside (e.g. a webhook).

        Returns the id of the request it settled, or ``None``.
        """
        for request in await self.store.list_open():
            if (
                request.chain_id != event.chain_id
                or not same_address(request.token_address, event.token_address)
                or not same_address(request.requester_address, event.to_address)
            ):
                continue
            try:
                expected = await self.expected_value(request)
            except InvalidAmount:
                continue
            outcome = await self._handle_transfer(request, expected, event)
            if request.id not in self._tasks:
                # Only running watches keep a history of seen transfers.
                self._seen.pop(request.id, None)
            if outcome is None:
                continue
            self.unwatch(request.id)
            return request.id if outcome else None
        return None
