"""Process-lived identity session.

Holds which wallet is currently active, which wallet is the primary, and the
linked addresses of that identity. The session is rebuilt from the
:class:`~proofpay.identity.registry.WalletLinkRegistry` every time the wallet
provider reports a connected address; resolution is idempotent and never
rewrites an existing record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from proofpay.errors import AmbiguousIdentity, NotLinked
from proofpay.identity.registry import WalletLinkRegistry
from proofpay.storage.models import IdentitySnapshot
from proofpay.wallet.addresses import normalize_address

logger = logging.getLogger("proofpay.identity.session")


class IdentityState(str, Enum):
    UNKNOWN = "unknown"
    PRIMARY_ACTIVE = "primary-active"
    SUB_WALLET_ACTIVE = "sub-wallet-active"


@dataclass
class SwitchingFlag:
    in_progress: bool = False
    target: str | None = None


class IdentitySession:
    """Active identity for one client instance."""

    def __init__(self, registry: WalletLinkRegistry) -> None:
        self.registry = registry
        self.primary_address: str | None = None
        self.active_address: str | None = None
        self.linked_addresses: set[str] = set()
        self.switching = SwitchingFlag()

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self.active_address is not None

    @property
    def state(self) -> IdentityState:
        if self.active_address is None:
            return IdentityState.UNKNOWN
        if self.active_address == self.primary_address:
            return IdentityState.PRIMARY_ACTIVE
        return IdentityState.SUB_WALLET_ACTIVE

    @property
    def identity_addresses(self) -> set[str]:
        """The primary plus every linked sub-wallet."""
        if self.primary_address is None:
            return set()
        return {self.primary_address, *self.linked_addresses}

    def owns(self, address: str | None) -> bool:
        if not address or not self.initialized:
            return False
        return address.strip().lower() in self.identity_addresses

    def snapshot(self) -> IdentitySnapshot:
        return IdentitySnapshot(
            state=self.state.value,
            primary_address=self.primary_address,
            active_address=self.active_address,
            linked_addresses=sorted(self.linked_addresses),
            switching=self.switching.in_progress,
            switching_target=self.switching.target,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def connect(self, address: str) -> IdentitySnapshot:
        """Resolve *address* into an identity and make it active.

        * sub-wallet -> its primary's identity, sub-wallet active
        * primary    -> its own identity, primary active
        * unknown    -> registered as a new primary with no sub-wallets

        Raises :class:`~proofpay.errors.AmbiguousIdentity` if stored records
        contradict each other.
        """
        addr = normalize_address(address)
        primary = await self.registry.get_primary(addr)
        if primary is None:
            primary = await self.registry.promote_to_primary(addr)
            logger.info(f"New identity: {addr} registered as primary wallet")

        links = await self.registry.list_links(primary.address)
        linked = {link.address for link in links}
        if addr != primary.address and addr not in linked:
            raise AmbiguousIdentity(
                f"Wallet {addr} resolved to primary {primary.address} "
                "but is not among its sub-wallets."
            )

        self.primary_address = primary.address
        self.linked_addresses = linked
        self.active_address = addr
        logger.info(f"Identity session: {self.state.value} as {addr} (primary {primary.address})")
        return self.snapshot()

    async def refresh(self) -> IdentitySnapshot:
        """Reload the linked set of the current identity from the registry."""
        if self.primary_address is None:
            return self.snapshot()
        links = await self.registry.list_links(self.primary_address)
        self.linked_addresses = {link.address for link in links}
        return self.snapshot()

    def disconnect(self) -> None:
        """Tear down to "no active identity". Not an error."""
        if self.active_address is not None:
            logger.info(f"Identity session for {self.active_address} disconnected")
        self.primary_address = None
        self.active_address = None
        self.linked_addresses = set()

    # ------------------------------------------------------------------
    # Switching gate
    # ------------------------------------------------------------------

    def begin_switch(self, target: str) -> None:
        self.switching.in_progress = True
        self.switching.target = target

    def end_switch(self) -> None:
        self.switching.in_progress = False
        self.switching.target = None

    def commit_active(self, address: str) -> None:
        """Make *address* the active wallet. Only legal during a switch."""
        if not self.switching.in_progress:
            raise RuntimeError("Active wallet can only change during a switch.")
        addr = normalize_address(address)
        if addr not in self.identity_addresses:
            raise NotLinked(f"Wallet {addr} is not part of this identity.")
        self.active_address = addr
