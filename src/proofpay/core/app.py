"""ProofPay - the top-level object that wires identity and payments together."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from proofpay.config import ProofPayConfig, get_home_dir, load_config, save_config
from proofpay.core.events import EventBus
from proofpay.core.retry import Backoff
from proofpay.errors import ChainDataError
from proofpay.identity.linking import WalletLinker
from proofpay.identity.registry import WalletLinkRegistry
from proofpay.identity.session import IdentitySession
from proofpay.identity.switch import MismatchPolicy, WalletSwitchCoordinator
from proofpay.payments.invoices import InvoiceStore
from proofpay.payments.store import PaymentRequestStore
from proofpay.payments.sweeper import ExpirationSweeper
from proofpay.payments.watcher import SettlementWatcher
from proofpay.storage.database import Database, get_database
from proofpay.storage.models import IdentitySnapshot, PaymentRequest, PaymentRequestDraft
from proofpay.wallet.connector import WalletProvider
from proofpay.wallet.provider import ChainDataProvider, Web3ChainData

logger = logging.getLogger("proofpay.app")


class ProofPay:
    """One client instance: a single identity session and its payment engine.

    The wallet provider is supplied by the caller (the CLI uses local
    keystores); chain data defaults to web3 over the configured RPC URLs.
    """

    def __init__(
        self,
        config: ProofPayConfig,
        home_dir: Path,
        db: Database,
        provider: WalletProvider,
        chain_data: ChainDataProvider | None = None,
        on_mismatch: MismatchPolicy | None = None,
    ):
        self.config = config
        self.home_dir = home_dir
        self.db = db
        self.provider = provider
        self.chain_data = chain_data or Web3ChainData(config)
        self.bus = EventBus()

        # Identity
        self.registry = WalletLinkRegistry(db)
        self.session = IdentitySession(self.registry)
        self.coordinator = WalletSwitchCoordinator(
            self.session, provider, self.bus, config.switching, on_mismatch
        )
        self.coordinator.attach()
        self.linker = WalletLinker(self.session, self.registry, self.coordinator, self.bus)

        # Payments
        self.requests = PaymentRequestStore(db, config, self.bus)
        self.invoices = InvoiceStore(db, self.requests, self.registry, self.chain_data)
        self.invoices.attach(self.bus)
        backoff = Backoff(
            base=config.watcher.retry_base_delay_seconds,
            maximum=config.watcher.retry_max_delay_seconds,
        )
        self.watcher = SettlementWatcher(self.requests, self.chain_data, config.watcher, self.bus)
        self.sweeper = ExpirationSweeper(self.requests, config.sweeper, backoff)

        self._background: list[asyncio.Task] = []

    @property
    def wallet_dir(self) -> Path:
        return self.home_dir / "wallet"

    @classmethod
    async def load(
        cls,
        base_path: Path | None = None,
        *,
        provider: WalletProvider,
        chain_data: ChainDataProvider | None = None,
        on_mismatch: MismatchPolicy | None = None,
    ) -> ProofPay:
        """Open an existing ``.proofpay`` directory."""
        home_dir = get_home_dir(base_path, create=False)
        config_path = home_dir / "config.yaml"
        if not config_path.exists():
            raise FileNotFoundError(
                f"No ProofPay data at {home_dir}. Run 'proofpay init' first."
            )

        config = load_config(config_path)
        db = get_database(home_dir)
        await db.connect()
        return cls(config, home_dir, db, provider, chain_data, on_mismatch)

    @classmethod
    async def init(
        cls,
        base_path: Path | None = None,
        name: str = "ProofPay",
        *,
        provider: WalletProvider,
        chain_data: ChainDataProvider | None = None,
    ) -> ProofPay:
        """Create ``.proofpay/`` with a default config and an empty database."""
        home_dir = get_home_dir(base_path)
        config_path = home_dir / "config.yaml"
        config = load_config(config_path) if config_path.exists() else ProofPayConfig(name=name)
        save_config(config, config_path)

        db = get_database(home_dir)
        await db.connect()
        return cls(config, home_dir, db, provider, chain_data)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def connect(self) -> IdentitySnapshot:
        """Connect the wallet provider and resolve the identity behind it."""
        address = await self.provider.connect()
        return await self.session.connect(address)

    async def disconnect(self) -> None:
        await self.provider.disconnect()
        self.session.disconnect()

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_request(self, draft: PaymentRequestDraft) -> PaymentRequest:
        """Create a request, searching for its payment from the current block."""
        try:
            head = await self.chain_data.get_block_number(draft.chain_id)
        except ChainDataError as exc:
            logger.warning(
                f"Chain {draft.chain_id} height unknown ({exc}); the watcher will pick the start block"
            )
            head = None
        return await self.requests.create(draft, self.session, scan_from_block=head)

    def start_background(self) -> list[asyncio.Task]:
        """Start the settlement watcher and expiration sweeper as tasks."""
        if self._background:
            return self._background
        if self.config.watcher.enabled:
            self._background.append(asyncio.create_task(self.watcher.run(), name="settlement-watcher"))
        if self.config.sweeper.enabled:
            self._background.append(asyncio.create_task(self.sweeper.run(), name="expiration-sweeper"))
        return self._background

    async def stop_background(self) -> None:
        self.sweeper.stop()
        await self.watcher.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        return {
            "name": self.config.name,
            "identity": self.session.snapshot().model_dump(),
            "switch_state": self.coordinator.state.value,
            "watching": len(self.watcher.watched_ids),
            "background": [t.get_name() for t in self._background if not t.done()],
        }

    async def shutdown(self) -> None:
        """Clean shutdown."""
        await self.stop_background()
        await self.db.close()
