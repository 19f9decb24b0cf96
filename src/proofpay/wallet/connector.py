"""Wallet provider capability and an encrypted-keystore implementation.

A wallet provider is whatever holds the user's keys: a browser extension,
a WalletConnect pairing, or, for the CLI, the eth-account keystores in
``.proofpay/wallet/``. None of its operations is assumed to complete
synchronously.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Protocol, runtime_checkable

from eth_account import Account

from proofpay.errors import ConnectorUnavailable, ProviderError, UserRejected
from proofpay.identity.signature import sign_text
from proofpay.wallet.addresses import is_address, normalize_address

logger = logging.getLogger("proofpay.wallet.connector")

AccountListener = Callable[[str | None], Awaitable[None]]


@runtime_checkable
class WalletProvider(Protocol):
    """What the core needs from an external wallet."""

    async def connect(self) -> str:
        """Ask the user to connect; returns the connected address.

        Raises :class:`~proofpay.errors.UserRejected` if the user declines.
        """
        ...

    async def disconnect(self) -> None:
        """Disconnect; returns once the provider acknowledged it."""
        ...

    async def sign(self, message: str) -> str:
        """``personal_sign`` *message* with the connected account."""
        ...

    def on_account_changed(self, callback: AccountListener) -> None:
        """Register a callback for externally initiated account changes."""
        ...


# ---------------------------------------------------------------------------
# Keystore files
# ---------------------------------------------------------------------------

def _keystore_path(wallet_dir: Path, address: str) -> Path:
    return wallet_dir / f"{normalize_address(address)}.json"


def create_keystore(wallet_dir: Path, password: str, private_key: bytes | str | None = None) -> str:
    """Generate (or import) a keypair and save an encrypted keystore file.

    Parameters
    ----------
    wallet_dir:
        Directory where ``<address>.json`` will be written.
    password:
        Password used to encrypt the private key.
    private_key:
        Existing key to import. A new one is generated when omitted.

    Returns
    -------
    str
        The lowercase address of the wallet.

    Raises
    ------
    FileExistsError
        If a keystore for that address already exists in *wallet_dir*.
    """
    acct = Account.from_key(private_key) if private_key is not None else Account.create()
    path = _keystore_path(wallet_dir, acct.address)
    if path.exists():
        raise FileExistsError(f"Wallet already exists at {path}.")

    encrypted = Account.encrypt(acct.key, password)
    wallet_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(encrypted, indent=2), encoding="utf-8")
    return acct.address.lower()


def list_keystores(wallet_dir: Path) -> list[str]:
    """Addresses of all keystores in *wallet_dir*, read without decrypting."""
    if not wallet_dir.is_dir():
        return []
    addresses = []
    for path in sorted(wallet_dir.glob("*.json")):
        data = json.loads(path.read_text(encoding="utf-8"))
        raw_address = data.get("address", "")
        if not raw_address.startswith("0x"):
            raw_address = "0x" + raw_address
        if is_address(raw_address):
            addresses.append(raw_address.lower())
    return addresses


def decrypt_key(wallet_dir: Path, address: str, password: str) -> bytes:
    """Decrypt the private key for *address*.

    Raises
    ------
    FileNotFoundError
        If no keystore file exists for *address*.
    ValueError
        If the password is incorrect.
    """
    path = _keystore_path(wallet_dir, address)
    if not path.exists():
        raise FileNotFoundError(f"No keystore found at {path}")

    data = json.loads(path.read_text(encoding="utf-8"))
    try:
        return Account.decrypt(data, password)
    except Exception as exc:
        raise ValueError(f"Failed to decrypt keystore: {exc}") from exc


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

AccountSelector = Callable[[list[str]], Awaitable[str | None]]
PasswordPrompt = Callable[[str], Awaitable[str | None]]


class KeystoreWalletProvider:
    """Wallet provider backed by local encrypted keystores.

    ``select_account`` plays the role of the wallet's account picker: it
    receives the available addresses and returns the one to connect, or
    ``None`` if the user cancelled. ``get_password`` is asked for the
    keystore password whenever a signature is needed.
    """

    def __init__(
        self,
        wallet_dir: Path,
        select_account: AccountSelector,
        get_password: PasswordPrompt,
    ) -> None:
        self.wallet_dir = wallet_dir
        self._select_account = select_account
        self._get_password = get_password
        self._listeners: list[AccountListener] = []
        self.connected_address: str | None = None

    def on_account_changed(self, callback: AccountListener) -> None:
        self._listeners.append(callback)

    async def _notify(self, address: str | None) -> None:
        for listener in list(self._listeners):
            try:
                await listener(address)
            except Exception as e:
                logger.error(f"Account listener error: {e}")

    async def connect(self) -> str:
        addresses = list_keystores(self.wallet_dir)
        if not addresses:
            raise ConnectorUnavailable(
                f"No keystores in {self.wallet_dir}. Run 'proofpay wallet create' first."
            )
        chosen = await self._select_account(addresses)
        if chosen is None:
            raise UserRejected("User rejected the connection request.")
        chosen = chosen.strip().lower()
        if chosen not in addresses:
            raise ConnectorUnavailable(f"No keystore for {chosen}.")
        self.connected_address = chosen
        logger.debug(f"Keystore provider connected {chosen}")
        return chosen

    async def disconnect(self) -> None:
        self.connected_address = None

    async def sign(self, message: str) -> str:
        if self.connected_address is None:
            raise ConnectorUnavailable("No account connected.")
        password = await self._get_password(self.connected_address)
        if password is None:
            raise UserRejected("User rejected the signature request.")
        try:
            key = decrypt_key(self.wallet_dir, self.connected_address, password)
        except (FileNotFoundError, ValueError) as exc:
            raise ProviderError(str(exc)) from exc
        return sign_text(message, key)

    async def switch_account(self, address: str | None) -> None:
        """Simulate the user changing accounts inside the wallet itself."""
        self.connected_address = address.lower() if address else None
        await self._notify(self.connected_address)
