"""Chain-data capability and its web3.py implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Protocol, runtime_checkable

from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from proofpay.config import ProofPayConfig
from proofpay.errors import ChainDataError
from proofpay.storage.models import TransactionState, TransactionStatus, TransferEvent
from proofpay.wallet.addresses import NATIVE_TOKEN, is_native, normalize_address
from proofpay.wallet.chains import Chain

logger = logging.getLogger("proofpay.wallet.provider")

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
]

TRANSFER_TOPIC = "0x" + Web3.keccak(text="Transfer(address,address,uint256)").hex().removeprefix("0x")


def _hex(value) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return "0x" + bytes(value).hex()


def _topic_for_address(address: str) -> str:
    return "0x" + "0" * 24 + normalize_address(address)[2:]


def _address_from_topic(topic) -> str:
    raw = _hex(topic)[2:]
    return "0x" + raw[-40:]


@runtime_checkable
class ChainDataProvider(Protocol):
    """Read-only chain access used by the watcher, invoices and the CLI."""

    async def get_token_decimals(self, chain_id: int, token_address: str) -> int:
        ...

    async def get_balance(self, chain_id: int, token_address: str, owner: str) -> int:
        ...

    async def get_block_number(self, chain_id: int) -> int:
        ...

    def subscribe_transfers(
        self,
        chain_id: int,
        token_address: str,
        recipient: str,
        from_block: int | None = None,
    ) -> AsyncIterator[TransferEvent]:
        ...

    async def get_transaction_status(self, chain_id: int, tx_hash: str) -> TransactionStatus:
        ...


class Web3ChainData:
    """Manages Web3 connections across multiple EVM chains.

    Web3 calls are blocking, so every RPC round-trip runs in a worker thread.
    Failures surface as :class:`~proofpay.errors.ChainDataError`.
    """

    def __init__(self, config: ProofPayConfig) -> None:
        self.config = config
        self._instances: dict[int, Web3] = {}
        self._decimals: dict[tuple[int, str], int] = {}

    def get_web3(self, chain_id: int) -> Web3:
        """Return a (cached) Web3 instance for the given chain.

        Injects POA middleware for non-mainnet chains.
        """
        if chain_id in self._instances:
            return self._instances[chain_id]

        chain = self._chain(chain_id)
        w3 = Web3(Web3.HTTPProvider(chain.rpc_url))

        # Inject POA middleware for non-mainnet chains (Polygon, BSC, ...)
        if chain.chain_id != 1:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self._instances[chain_id] = w3
        return w3

    def _chain(self, chain_id: int) -> Chain:
        try:
            return self.config.resolve_chain(chain_id)
        except KeyError as exc:
            raise ChainDataError(str(exc)) from exc

    async def _call(self, description: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except ChainDataError:
            raise
        except Exception as exc:
            raise ChainDataError(f"{description} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_block_number(self, chain_id: int) -> int:
        w3 = self.get_web3(chain_id)
        return await self._call("eth_blockNumber", lambda: w3.eth.block_number)

    async def get_token_decimals(self, chain_id: int, token_address: str) -> int:
        """Decimals as reported by the token contract (native: chain registry)."""
        token = normalize_address(token_address)
        if is_native(token):
            return self._chain(chain_id).native_decimals
        key = (chain_id, token)
        if key in self._decimals:
            return self._decimals[key]

        w3 = self.get_web3(chain_id)
        contract = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        decimals = await self._call(
            f"decimals() on {token}", lambda: contract.functions.decimals().call()
        )
        self._decimals[key] = int(decimals)
        return self._decimals[key]

    async def get_balance(self, chain_id: int, token_address: str, owner: str) -> int:
        """Raw balance of *owner* in the token's smallest unit."""
        w3 = self.get_web3(chain_id)
        checksum_owner = Web3.to_checksum_address(normalize_address(owner))
        if is_native(token_address):
            return await self._call("eth_getBalance", w3.eth.get_balance, checksum_owner)
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(normalize_address(token_address)), abi=ERC20_ABI
        )
        return await self._call(
            "balanceOf", lambda: contract.functions.balanceOf(checksum_owner).call()
        )

    async def get_transaction_status(self, chain_id: int, tx_hash: str) -> TransactionStatus:
        w3 = self.get_web3(chain_id)

        def _receipt():
            try:
                return w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = await self._call(f"receipt for {tx_hash}", _receipt)
        if receipt is None:
            return TransactionStatus(tx_hash=tx_hash, state=TransactionState.PENDING)
        state = TransactionState.SUCCESS if receipt["status"] == 1 else TransactionState.FAILED
        return TransactionStatus(
            tx_hash=tx_hash, state=state, block_number=receipt["blockNumber"]
        )

    # ------------------------------------------------------------------
    # Transfer subscription
    # ------------------------------------------------------------------

    async def subscribe_transfers(
        self,
        chain_id: int,
        token_address: str,
        recipient: str,
        from_block: int | None = None,
    ) -> AsyncIterator[TransferEvent]:
        """Yield transfers to *recipient* from *from_block* on, then as new blocks arrive.

        Polls ``eth_getLogs`` (ERC-20 ``Transfer`` with the recipient topic)
        or scans block bodies for native transfers, at most
        ``watcher.max_block_range`` blocks per round-trip. Without
        *from_block* the scan starts ``watcher.lookback_blocks`` below the
        current head.
        """
        settings = self.config.watcher
        token = normalize_address(token_address)
        to = normalize_address(recipient)

        if from_block is not None:
            last_processed = max(-1, from_block - 1)
        else:
            latest = await self.get_block_number(chain_id)
            last_processed = max(-1, latest - settings.lookback_blocks - 1) if settings.lookback_blocks else latest

        while True:
            current = await self.get_block_number(chain_id)
            if current > last_processed:
                to_scan = min(current, last_processed + settings.max_block_range)
                if is_native(token):
                    events = await self._native_transfers(chain_id, to, last_processed + 1, to_scan)
                else:
                    events = await self._token_transfers(chain_id, token, to, last_processed + 1, to_scan)
                for event in events:
                    yield event
                last_processed = to_scan
                if to_scan < current:
                    # Catching up, don't sleep
                    continue
            await asyncio.sleep(settings.poll_interval_seconds)

    async def _token_transfers(
        self, chain_id: int, token: str, to: str, from_block: int, to_block: int
    ) -> list[TransferEvent]:
        w3 = self.get_web3(chain_id)
        logs = await self._call(
            "eth_getLogs",
            w3.eth.get_logs,
            {
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": Web3.to_checksum_address(token),
                "topics": [TRANSFER_TOPIC, None, _topic_for_address(to)],
            },
        )
        events = []
        for log in logs:
            topics = log["topics"]
            if len(topics) < 3:
                continue
            data = log["data"]
            raw = bytes(data) if not isinstance(data, str) else bytes.fromhex(data.removeprefix("0x"))
            events.append(
                TransferEvent(
                    chain_id=chain_id,
                    token_address=token,
                    from_address=_address_from_topic(topics[1]),
                    to_address=_address_from_topic(topics[2]),
                    value=int.from_bytes(raw, "big") if raw else 0,
                    tx_hash=_hex(log["transactionHash"]),
                    block_number=log["blockNumber"],
                )
            )
        return events

    async def _native_transfers(
        self, chain_id: int, to: str, from_block: int, to_block: int
    ) -> list[TransferEvent]:
        w3 = self.get_web3(chain_id)
        events = []
        for number in range(from_block, to_block + 1):
            block = await self._call(
                f"eth_getBlockByNumber({number})",
                lambda n=number: w3.eth.get_block(n, full_transactions=True),
            )
            for tx in block["transactions"]:
                tx_to = tx.get("to")
                if not tx_to or tx_to.lower() != to or not tx["value"]:
                    continue
                events.append(
                    TransferEvent(
                        chain_id=chain_id,
                        token_address=NATIVE_TOKEN,
                        from_address=tx["from"],
                        to_address=tx_to,
                        value=int(tx["value"]),
                        tx_hash=_hex(tx["hash"]),
                        block_number=number,
                    )
                )
        return events
