"""Configuration system for ProofPay.

Loads settings from ``.proofpay/config.yaml``, supports environment variable
expansion, and exposes the chain registry with any configured RPC overrides
applied.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from proofpay.wallet.chains import CHAINS, Chain, with_rpc


# ---------------------------------------------------------------------------
# ${VAR} placeholders
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Substitute ``${NAME}`` from the environment.

    Unset names are left as they are.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Apply :func:`_expand_env_vars` to every string in parsed YAML."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class ChainOverride(BaseModel):
    """Per-chain settings layered over the built-in chain registry."""

    rpc_url: Optional[str] = None   # ${ALCHEMY_MAINNET_URL} etc.
    enabled: bool = True


class SwitchingConfig(BaseModel):
    """Wallet switch coordinator limits."""

    provider_timeout_seconds: float = 120.0
    max_mismatch_retries: int = 2


class WatcherConfig(BaseModel):
    """Settlement watcher polling and retry settings."""

    enabled: bool = True
    poll_interval_seconds: float = 5.0
    refresh_interval_seconds: float = 15.0   # how often open requests are re-read
    max_block_range: int = 50                # per get_logs call, RPC limits
    lookback_blocks: int = 0
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0


class SweeperConfig(BaseModel):
    """Expiration sweeper schedule."""

    enabled: bool = True
    interval_seconds: float = 3600.0


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class ProofPayConfig(BaseModel):
    """Root configuration object."""

    name: str = "ProofPay"
    base_url: str = "https://proofpay.app"
    chains: dict[int, ChainOverride] = Field(default_factory=dict)
    switching: SwitchingConfig = Field(default_factory=SwitchingConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def payment_link(self, request_id: str) -> str:
        """Shareable link for a payment request. Contains only the id."""
        return f"{self.base_url}/pay/{request_id}"

    def resolve_chain(self, chain_id: int) -> Chain:
        """Return the chain for *chain_id* with RPC overrides applied.

        Raises ``KeyError`` for unknown or disabled chains.
        """
        chain = CHAINS.get(int(chain_id))
        if chain is None:
            raise KeyError(f"Unknown chain id {chain_id}.")
        override = self.chains.get(int(chain_id))
        if override is None:
            return chain
        if not override.enabled:
            raise KeyError(f"Chain {chain.name} ({chain_id}) is disabled in config.")
        return with_rpc(chain, override.rpc_url)

    def enabled_chains(self) -> list[Chain]:
        chains = []
        for chain_id in CHAINS:
            try:
                chains.append(self.resolve_chain(chain_id))
            except KeyError:
                continue
        return chains


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_home_dir(base: Path | None = None, *, create: bool = True) -> Path:
    """Return the ``.proofpay/`` data directory.

    Parameters
    ----------
    base:
        Parent directory that contains (or will contain) the data folder.
        Without it, ``$PROOFPAY_HOME`` is used as the data folder itself if
        set, else ``.proofpay/`` under the current working directory.
    create:
        If *True* (default), create the directory if it doesn't exist.
    """
    env_home = os.environ.get("PROOFPAY_HOME")
    if base is None and env_home:
        home = Path(env_home)
    else:
        home = (base or Path.cwd()) / ".proofpay"
    if create:
        home.mkdir(parents=True, exist_ok=True)
    return home


def load_config(path: Path) -> ProofPayConfig:
    """Load and validate configuration from a YAML file.

    ``${VAR}`` placeholders are filled in from the environment first. A
    missing file yields the defaults.
    """
    if not path.exists():
        return ProofPayConfig()
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return ProofPayConfig.model_validate(expanded)


def save_config(config: ProofPayConfig, path: Path) -> None:
    """Serialize a :class:`ProofPayConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
