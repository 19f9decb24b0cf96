"""Wallet switch coordinator.

Moves the active wallet of an :class:`IdentitySession` to another wallet of
the same identity by driving the external wallet provider through
disconnect -> connect -> verify. On rejection or a wrong account the
coordinator tries to restore the wallet that was active before the switch.

State machine::

    IDLE -> DISCONNECTING -> AWAITING_PROVIDER_CONNECT -> VERIFYING_ADDRESS -> COMMITTED
                                     ^                          |
                                     +------- MISMATCHED <------+
    REJECTED / MISMATCHED -> RECOVERING -> IDLE
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from proofpay.config import SwitchingConfig
from proofpay.core.events import SWITCH_COMMITTED, SWITCH_FAILED, EventBus
from proofpay.errors import (
    AccountMismatch,
    AlreadySwitching,
    NotLinked,
    ProofPayError,
    ProviderError,
    ProviderTimeout,
    RecoveryFailed,
    UserRejected,
)
from proofpay.identity.session import IdentitySession
from proofpay.identity.signature import attest
from proofpay.storage.models import SignedAttestation
from proofpay.wallet.addresses import normalize_address
from proofpay.wallet.connector import WalletProvider

logger = logging.getLogger("proofpay.identity.switch")

# (expected, actual) -> retry?
MismatchPolicy = Callable[[str, Optional[str]], Awaitable[bool]]


class SwitchState(str, Enum):
    IDLE = "idle"
    DISCONNECTING = "disconnecting"
    AWAITING_PROVIDER_CONNECT = "awaiting-provider-connect"
    VERIFYING_ADDRESS = "verifying-address"
    COMMITTED = "committed"
    REJECTED = "rejected"
    MISMATCHED = "mismatched"
    RECOVERING = "recovering"


@dataclass
class SwitchResult:
    """Outcome of one :meth:`WalletSwitchCoordinator.switch_to` call.

    ``reason`` is ``None`` on success, otherwise the ``reason`` of the
    provider error that ended the attempt (``rejected``, ``mismatched``,
    ``timeout``, ``connector-unavailable``, ``provider-error``).
    ``recovery_error`` is set when restoring the previous wallet failed too.
    """

    target: str
    committed: bool
    reason: str | None = None
    error: ProviderError | None = None
    previous_address: str | None = None
    connected_address: str | None = None
    recovery_error: RecoveryFailed | None = None
    attempts: int = 0

    @property
    def recovered(self) -> bool:
        return not self.committed and self.recovery_error is None


class WalletSwitchCoordinator:
    """At most one switch in flight per client instance."""

    def __init__(
        self,
        session: IdentitySession,
        provider: WalletProvider,
        bus: EventBus,
        settings: SwitchingConfig | None = None,
        on_mismatch: MismatchPolicy | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.bus = bus
        self.settings = settings or SwitchingConfig()
        self.on_mismatch = on_mismatch
        self.state = SwitchState.IDLE
        self.history: list[SwitchState] = []
        self._cancel_event: asyncio.Event | None = None

    def _set_state(self, state: SwitchState) -> None:
        if state is not self.state:
            logger.debug(f"Switch state {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def busy(self) -> bool:
        return self.state is not SwitchState.IDLE

    # ------------------------------------------------------------------
    # Switching
    # ------------------------------------------------------------------

    async def switch_to(self, target_address: str) -> SwitchResult:
        """Make *target_address* the active wallet.

        Rejection, a wrong account and provider failures are reported in the
        returned :class:`SwitchResult`.

        Raises
        ------
        AlreadySwitching
            If another switch is still in flight.
        NotLinked
            If *target_address* is not part of the active identity.
        """
        if self.busy:
            raise AlreadySwitching(
                f"A switch to {self.session.switching.target} is already in progress."
            )
        target = normalize_address(target_address)
        if not self.session.owns(target):
            raise NotLinked(f"Wallet {target} is not part of the active identity.")

        previous = self.session.active_address
        if target == previous:
            return SwitchResult(
                target=target, committed=True, previous_address=previous,
                connected_address=target,
            )

        # Claim the coordinator before the first suspension point.
        self.history = []
        self._set_state(SwitchState.DISCONNECTING)
        self._cancel_event = asyncio.Event()
        self.session.begin_switch(target)
        logger.info(f"Switching active wallet {previous} -> {target}")
        try:
            result = await self._run(target, previous)
        finally:
            self.session.end_switch()
            self._cancel_event = None
            self._set_state(SwitchState.IDLE)

        if result.committed:
            await self.bus.emit(
                SWITCH_COMMITTED,
                previous_address=previous,
                active_address=target,
                primary_address=self.session.primary_address,
            )
        else:
            await self.bus.emit(
                SWITCH_FAILED,
                target=target,
                reason=result.reason,
                active_address=self.session.active_address,
                recovery_error=str(result.recovery_error) if result.recovery_error else None,
            )
        return result

    def cancel(self) -> bool:
        """Abort the in-flight provider wait. Treated as a user rejection."""
        if self._cancel_event is None or self.state is SwitchState.RECOVERING:
            return False
        self._cancel_event.set()
        return True

    async def _run(self, target: str, previous: str | None) -> SwitchResult:
        attempts = 0
        connected: str | None = None
        try:
            await self._await_provider(self.provider.disconnect(), "disconnect")
            while True:
                attempts += 1
                self._set_state(SwitchState.AWAITING_PROVIDER_CONNECT)
                connected = normalize_address(
                    await self._await_provider(self.provider.connect(), "connect")
                )

                self._set_state(SwitchState.VERIFYING_ADDRESS)
                if connected == target:
                    self.session.commit_active(target)
                    self._set_state(SwitchState.COMMITTED)
                    logger.info(f"Switch committed: active wallet is now {target}")
                    return SwitchResult(
                        target=target, committed=True, previous_address=previous,
                        connected_address=connected, attempts=attempts,
                    )

                self._set_state(SwitchState.MISMATCHED)
                logger.info(f"Provider connected {connected}, expected {target}")
                if attempts > self.settings.max_mismatch_retries or not await self._retry_mismatch(
                    target, connected
                ):
                    raise AccountMismatch(target, connected)
        except UserRejected as exc:
            self._set_state(SwitchState.REJECTED)
            failure: ProviderError = exc
        except ProviderError as exc:
            failure = exc

        logger.info(f"Switch to {target} failed ({failure.reason}): {failure}")
        restored, recovery_error = await self._recover(previous)
        return SwitchResult(
            target=target,
            committed=False,
            reason=failure.reason,
            error=failure,
            previous_address=previous,
            connected_address=restored,
            recovery_error=recovery_error,
            attempts=attempts,
        )

    async def _retry_mismatch(self, expected: str, actual: str | None) -> bool:
        if self.on_mismatch is None:
            return False
        return bool(await self.on_mismatch(expected, actual))

    async def _recover(self, previous: str | None) -> tuple[str | None, RecoveryFailed | None]:
        """Reconnect the previously active wallet.

        Returns the address the provider ended up on and, if the previous
        wallet could not be restored, the :class:`RecoveryFailed` describing
        why. The session never keeps an address the provider is not on.
        """
        self._set_state(SwitchState.RECOVERING)
        if previous is None:
            self.session.disconnect()
            return None, None

        # Leave the account the failed attempt ended on before asking again.
        try:
            await self._await_provider(self.provider.disconnect(), "disconnect", cancellable=False)
        except ProofPayError as exc:
            logger.warning(f"Disconnect before recovering {previous} failed: {exc}")

        try:
            restored = normalize_address(
                await self._await_provider(self.provider.connect(), "reconnect", cancellable=False)
            )
        except ProofPayError as exc:
            logger.warning(f"Recovery of {previous} failed: {exc}")
            self.session.disconnect()
            return None, RecoveryFailed(f"Could not reconnect {previous}: {exc}")

        if restored == previous:
            logger.info(f"Recovered previous wallet {previous}")
            return restored, None

        if self.session.owns(restored):
            # Another wallet of the same identity; follow it.
            self.session.commit_active(restored)
            logger.warning(f"Recovery landed on {restored} instead of {previous}")
            return restored, RecoveryFailed(
                f"Provider reconnected {restored} instead of {previous}."
            )

        # Never register a wallet picked by mistake during a switch.
        logger.warning(f"Recovery landed on {restored}, which is not part of this identity")
        self.session.disconnect()
        return restored, RecoveryFailed(
            f"Provider reconnected {restored}, which is not part of this identity."
        )

    async def _await_provider(self, awaitable: Awaitable, what: str, *, cancellable: bool = True):
        """Await a provider call, bounded by the timeout and by :meth:`cancel`."""
        call = asyncio.ensure_future(awaitable)
        waiters = {call}
        cancelled = None
        if cancellable and self._cancel_event is not None:
            cancelled = asyncio.ensure_future(self._cancel_event.wait())
            waiters.add(cancelled)

        timeout = self.settings.provider_timeout_seconds
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if call in done:
            try:
                return call.result()
            except ProviderError:
                raise
            except Exception as exc:
                raise ProviderError(f"Wallet provider {what} failed: {exc}") from exc
        if cancelled is not None and cancelled in done:
            raise UserRejected("Switch cancelled by the user.")
        raise ProviderTimeout(f"Wallet provider did not answer {what} within {timeout:g}s.")

    # ------------------------------------------------------------------
    # Ownership attestations
    # ------------------------------------------------------------------

    async def collect_attestation(
        self,
        target_address: str,
        message: str,
        signer: WalletProvider,
    ) -> SignedAttestation:
        """Have *target_address* sign *message* through a secondary session.

        The signer session is connected, must report *target_address*, signs
        and is disconnected again. The active wallet is never touched. The
        returned attestation carries the recovered signer, which callers
        still have to compare against the subject.
        """
        if self.busy:
            raise AlreadySwitching("Cannot collect a signature while switching wallets.")
        target = normalize_address(target_address)

        connected = await self._await_provider(signer.connect(), "connect", cancellable=False)
        try:
            if normalize_address(connected) != target:
                raise AccountMismatch(target, connected)
            signature = await self._await_provider(signer.sign(message), "sign", cancellable=False)
        finally:
            try:
                await self._await_provider(signer.disconnect(), "disconnect", cancellable=False)
            except ProviderError as exc:
                logger.warning(f"Signer session for {target} did not disconnect cleanly: {exc}")

        return attest(message, signature, target)

    # ------------------------------------------------------------------
    # Provider notifications
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Follow account changes made inside the wallet itself."""
        self.provider.on_account_changed(self.handle_account_changed)

    async def handle_account_changed(self, address: str | None) -> None:
        if self.busy or self.session.switching.in_progress:
            logger.debug(f"Ignoring account change to {address} during a switch")
            return
        if address is None:
            self.session.disconnect()
            return
        try:
            await self.session.connect(address)
        except ProofPayError:
            self.session.disconnect()
            raise
