"""Chain definitions for supported EVM networks."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class Chain:
    """An EVM-compatible blockchain network."""

    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str
    native_decimals: int = 18

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"


CHAINS: dict[int, Chain] = {
    1: Chain(
        name="ethereum",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        native_symbol="ETH",
        explorer_url="https://etherscan.io",
    ),
    10: Chain(
        name="optimism",
        chain_id=10,
        rpc_url="https://mainnet.optimism.io",
        native_symbol="ETH",
        explorer_url="https://optimistic.etherscan.io",
    ),
    56: Chain(
        name="bsc",
        chain_id=56,
        rpc_url="https://bsc-dataseed.binance.org",
        native_symbol="BNB",
        explorer_url="https://bscscan.com",
    ),
    137: Chain(
        name="polygon",
        chain_id=137,
        rpc_url="https://polygon-rpc.com",
        native_symbol="POL",
        explorer_url="https://polygonscan.com",
    ),
    8453: Chain(
        name="base",
        chain_id=8453,
        rpc_url="https://mainnet.base.org",
        native_symbol="ETH",
        explorer_url="https://basescan.org",
    ),
    42161: Chain(
        name="arbitrum",
        chain_id=42161,
        rpc_url="https://arb1.arbitrum.io/rpc",
        native_symbol="ETH",
        explorer_url="https://arbiscan.io",
    ),
    11155111: Chain(
        name="sepolia",
        chain_id=11155111,
        rpc_url="https://rpc.sepolia.org",
        native_symbol="ETH",
        explorer_url="https://sepolia.etherscan.io",
    ),
}


def get_chain(chain_id: int | str) -> Chain:
    """Get a chain by id (or name). Raises ``KeyError`` if not found."""
    if isinstance(chain_id, str) and not chain_id.isdigit():
        for chain in CHAINS.values():
            if chain.name == chain_id.lower():
                return chain
        raise KeyError(f"Unknown chain '{chain_id}'. Available: {list_chain_names()}")
    key = int(chain_id)
    if key not in CHAINS:
        raise KeyError(f"Unknown chain id {key}. Available: {list_chain_ids()}")
    return CHAINS[key]


def with_rpc(chain: Chain, rpc_url: str | None) -> Chain:
    """Return *chain* with its RPC endpoint overridden (if given)."""
    if not rpc_url:
        return chain
    return replace(chain, rpc_url=rpc_url)


def list_chain_ids() -> list[int]:
    return list(CHAINS.keys())


def list_chain_names() -> list[str]:
    """Return the names of all supported chains."""
    return [c.name for c in CHAINS.values()]


def explorer_tx_url(chain_id: int, tx_hash: str) -> str:
    """Explorer link for a transaction, defaulting to Etherscan."""
    chain = CHAINS.get(int(chain_id), CHAINS[1])
    return chain.tx_url(tx_hash)
