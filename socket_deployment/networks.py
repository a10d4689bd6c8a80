import os
from typing import Dict, Mapping, NamedTuple, Optional, Union

from eth_utils import keccak

from socket_deployment.constants import EVMX_CHAIN_ID, MAX_UINT_32, FinalityBucket

FinalityValue = Union[int, str]

DEFAULT_TX_TYPE = 0
DEFAULT_CONFIRMATION_TIMEOUT = 120  # seconds
EVMX_NAME = "EVMX"


class NetworkConfigError(ValueError):
    pass


class GasOverrides(NamedTuple):
    tx_type: Optional[int] = None
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    price_markup: int = 100  # percent applied to a live gas price


class ChainInfo(NamedTuple):
    chain_id: int
    name: str
    overrides: GasOverrides = GasOverrides()
    confirmation_timeout: int = DEFAULT_CONFIRMATION_TIMEOUT


class ChainSlug:
    MAINNET = 1
    ARBITRUM = 42161
    BASE = 8453
    OPTIMISM = 10
    POLYGON_MAINNET = 137
    LINEA = 59144
    NEOX = 47763
    NEOX_TESTNET = 12227331
    NEOX_T4_TESTNET = 12227332
    SEPOLIA = 11155111
    ARBITRUM_SEPOLIA = 421614
    OPTIMISM_SEPOLIA = 11155420
    BASE_SEPOLIA = 84532
    HARDHAT = 31337


KNOWN_CHAINS: Dict[int, ChainInfo] = {
    info.chain_id: info
    for info in (
        ChainInfo(ChainSlug.MAINNET, "mainnet", confirmation_timeout=300),
        ChainInfo(
            ChainSlug.ARBITRUM, "arbitrum", overrides=GasOverrides(gas_price=100_629_157)
        ),
        ChainInfo(ChainSlug.BASE, "base", overrides=GasOverrides(gas_limit=2_000_000)),
        ChainInfo(ChainSlug.OPTIMISM, "optimism"),
        ChainInfo(ChainSlug.POLYGON_MAINNET, "polygon-mainnet", confirmation_timeout=300),
        ChainInfo(ChainSlug.LINEA, "linea"),
        ChainInfo(ChainSlug.NEOX, "neox"),
        ChainInfo(ChainSlug.NEOX_TESTNET, "neox-testnet"),
        ChainInfo(ChainSlug.NEOX_T4_TESTNET, "neox-t4-testnet"),
        ChainInfo(
            ChainSlug.SEPOLIA,
            "sepolia",
            overrides=GasOverrides(tx_type=1, gas_limit=2_000_000, price_markup=150),
            confirmation_timeout=300,
        ),
        ChainInfo(
            ChainSlug.ARBITRUM_SEPOLIA,
            "arbitrum-sepolia",
            overrides=GasOverrides(gas_price=800_000_000),
        ),
        ChainInfo(ChainSlug.OPTIMISM_SEPOLIA, "optimism-sepolia"),
        ChainInfo(ChainSlug.BASE_SEPOLIA, "base-sepolia"),
        ChainInfo(ChainSlug.HARDHAT, "hardhat", confirmation_timeout=30),
    )
}

DEFAULT_FINALITY_BLOCKS: Dict[FinalityBucket, FinalityValue] = {
    FinalityBucket.LOW: 1,
    FinalityBucket.MEDIUM: "safe",
    FinalityBucket.HIGH: "finalized",
}

_SLOW_FINALITY = {FinalityBucket.LOW: 1, FinalityBucket.MEDIUM: 10, FinalityBucket.HIGH: 100}

FINALITY_OVERRIDES: Dict[int, Dict[FinalityBucket, FinalityValue]] = {
    ChainSlug.MAINNET: {
        FinalityBucket.LOW: 6,
        FinalityBucket.MEDIUM: "safe",
        FinalityBucket.HIGH: "finalized",
    },
    ChainSlug.POLYGON_MAINNET: {
        FinalityBucket.LOW: 256,
        FinalityBucket.MEDIUM: 512,
        FinalityBucket.HIGH: 1000,
    },
    ChainSlug.NEOX_TESTNET: _SLOW_FINALITY,
    ChainSlug.NEOX_T4_TESTNET: _SLOW_FINALITY,
    ChainSlug.NEOX: _SLOW_FINALITY,
    ChainSlug.LINEA: _SLOW_FINALITY,
}


def chain_slug_from_id(chain_id: int) -> int:
    """Folds chain ids that do not fit in a uint32 into a 32-bit slug."""
    if chain_id < MAX_UINT_32:
        return chain_id
    return int.from_bytes(keccak(text=str(chain_id))[:4], "big")


class ChainRegistry:
    """
    Static chain metadata: names, RPC endpoints, gas override policy,
    finality and confirmation expectations.
    """

    def __init__(
        self,
        evmx_chain_id: int = EVMX_CHAIN_ID,
        environ: Optional[Mapping[str, str]] = None,
        chains: Optional[Dict[int, ChainInfo]] = None,
    ):
        self.evmx_chain_id = evmx_chain_id
        self._environ = os.environ if environ is None else environ
        self._chains = dict(KNOWN_CHAINS if chains is None else chains)
        self._chains.setdefault(
            evmx_chain_id,
            ChainInfo(evmx_chain_id, EVMX_NAME, overrides=GasOverrides(tx_type=0, gas_price=0)),
        )

    def is_evmx(self, chain_id: int) -> bool:
        return chain_id == self.evmx_chain_id

    def info(self, chain_id: int) -> ChainInfo:
        try:
            return self._chains[chain_id]
        except KeyError:
            raise NetworkConfigError(f"Chain {chain_id} is not a known chain.")

    def chain_name(self, chain_id: int) -> str:
        if self.is_evmx(chain_id):
            return EVMX_NAME
        return self.info(chain_id).name.replace("-", "_")

    def rpc_key(self, chain_id: int) -> str:
        return f"{self.chain_name(chain_id).upper()}_RPC"

    def wss_rpc_key(self, chain_id: int) -> str:
        return f"{self.chain_name(chain_id).upper()}_WSS_RPC"

    def rpc_url(self, chain_id: int) -> str:
        key = self.rpc_key(chain_id)
        rpc = self._environ.get(key)
        if not rpc:
            raise NetworkConfigError(
                f"RPC not configured for chain {chain_id}. Missing env variable: {key}"
            )
        return rpc

    def wss_rpc_url(self, chain_id: int) -> Optional[str]:
        return self._environ.get(self.wss_rpc_key(chain_id))

    def gas_overrides(self, chain_id: int) -> GasOverrides:
        return self.info(chain_id).overrides

    def confirmation_timeout(self, chain_id: int) -> int:
        return self.info(chain_id).confirmation_timeout

    def finality_blocks(self, chain_id: int) -> Dict[FinalityBucket, FinalityValue]:
        return FINALITY_OVERRIDES.get(chain_id, DEFAULT_FINALITY_BLOCKS)
