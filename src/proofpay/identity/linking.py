"""Link, unlink and reset flows for a wallet identity."""

from __future__ import annotations

import logging

from proofpay.core.events import LINK_ADDED, LINK_REMOVED, EventBus
from proofpay.errors import (
    AlreadyLinked,
    AlreadySwitching,
    LimitExceeded,
    NotLinked,
    SelfLink,
    ValidationError,
)
from proofpay.identity.registry import MAX_SUB_WALLETS, WalletLinkRegistry
from proofpay.identity.session import IdentitySession
from proofpay.identity.signature import build_link_message
from proofpay.identity.switch import WalletSwitchCoordinator
from proofpay.storage.models import WalletLink
from proofpay.wallet.addresses import normalize_address
from proofpay.wallet.connector import WalletProvider

logger = logging.getLogger("proofpay.identity.linking")


class WalletLinker:
    def __init__(
        self,
        session: IdentitySession,
        registry: WalletLinkRegistry,
        coordinator: WalletSwitchCoordinator,
        bus: EventBus,
    ) -> None:
        self.session = session
        self.registry = registry
        self.coordinator = coordinator
        self.bus = bus

    def _require_identity(self) -> str:
        if not self.session.initialized or self.session.primary_address is None:
            raise ValidationError("No active identity. Connect a wallet first.")
        if self.session.switching.in_progress:
            raise AlreadySwitching("Wait for the wallet switch to finish.")
        return self.session.primary_address

    async def link_sub_wallet(
        self,
        sub_address: str,
        signer: WalletProvider,
        label: str = "",
    ) -> WalletLink:
        """Prove ownership of *sub_address* and add it to the active identity.

        *signer* is a separate provider session connected as the sub-wallet.
        Cheap checks run before the user is asked to sign anything; the
        registry repeats them atomically when the link is written.
        """
        primary = self._require_identity()
        sub = normalize_address(sub_address)
        if sub == primary:
            raise SelfLink("A wallet cannot be linked to itself.")
        count = await self.registry.count_links(primary)
        if count >= MAX_SUB_WALLETS:
            raise LimitExceeded(f"Wallet {primary} already has {MAX_SUB_WALLETS} sub-wallets.")
        if await self.registry.get(sub) is not None:
            raise AlreadyLinked(f"Wallet {sub} is already linked.")

        message = build_link_message(primary, sub)
        attestation = await self.coordinator.collect_attestation(sub, message, signer)
        link = await self.registry.add_link(
            primary, sub, label or f"Sub Wallet {count + 1}", attestation
        )
        await self.session.refresh()
        await self.bus.emit(LINK_ADDED, primary_address=primary, address=sub, label=link.label)
        return link

    async def unlink(self, address: str) -> bool:
        """Remove a sub-wallet from the active identity.

        Returns ``False`` if there was nothing to remove.
        """
        primary = self._require_identity()
        addr = normalize_address(address)
        if addr == primary:
            raise ValidationError("The primary wallet cannot be unlinked; reset the identity instead.")
        if addr == self.session.active_address:
            raise ValidationError(f"Wallet {addr} is active. Switch to another wallet first.")

        link = await self.registry.get(addr)
        if link is not None and link.parent_address != primary:
            raise NotLinked(f"Wallet {addr} belongs to another identity.")

        removed = await self.registry.remove_link(addr)
        await self.session.refresh()
        if removed:
            await self.bus.emit(LINK_REMOVED, primary_address=primary, address=addr)
        return removed

    async def reset_identity(self) -> int:
        """Forget the primary wallet and every sub-wallet, then disconnect."""
        primary = self._require_identity()
        subs = await self.registry.list_links(primary)
        removed = await self.registry.reset_identity(primary)
        self.session.disconnect()
        for link in subs:
            await self.bus.emit(LINK_REMOVED, primary_address=primary, address=link.address)
        logger.info(f"Identity {primary} reset")
        return removed
