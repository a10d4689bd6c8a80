from enum import Enum, IntEnum
from pathlib import Path

from eth_utils import keccak
from web3.constants import ADDRESS_ZERO, HASH_ZERO

import socket_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(socket_deployment.__file__).parent
TOPOLOGY_DIR = DEPLOYMENT_DIR / "topology"
ARTIFACTS_DIR = DEPLOYMENT_DIR / "artifacts"

#
# Deployment modes
#


class DeploymentMode(str, Enum):
    LOCAL = "local"
    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"


SUPPORTED_MODES = [mode.value for mode in DeploymentMode]

#
# Chains
#

EVMX_CHAIN_ID = 7625382
MAX_UINT_32 = 4294967295

#
# Contracts
#


class Contracts:
    # chain side
    Socket = "Socket"
    SocketBatcher = "SocketBatcher"
    FastSwitchboard = "FastSwitchboard"
    FeesPlug = "FeesPlug"
    ContractFactoryPlug = "ContractFactoryPlug"

    # coordination chain
    ERC1967Factory = "ERC1967Factory"
    AddressResolver = "AddressResolver"
    Watcher = "Watcher"
    RequestHandler = "RequestHandler"
    Configurations = "Configurations"
    PromiseResolver = "PromiseResolver"
    AuctionManager = "AuctionManager"
    FeesManager = "FeesManager"
    FeesPool = "FeesPool"
    WritePrecompile = "WritePrecompile"
    ReadPrecompile = "ReadPrecompile"
    SchedulePrecompile = "SchedulePrecompile"
    AsyncDeployer = "AsyncDeployer"
    DeployForwarder = "DeployForwarder"


PROXY_FACTORY = Contracts.ERC1967Factory
IMPLEMENTATION_SUFFIX = "Impl"
START_BLOCK_KEY = "startBlock"

# EIP1967 implementation slot - https://eips.ethereum.org/EIPS/eip-1967#logic-contract-address
IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC

#
# Roles
#


class Roles:
    WATCHER_ROLE = "WATCHER_ROLE"
    RESCUE_ROLE = "RESCUE_ROLE"
    GOVERNANCE_ROLE = "GOVERNANCE_ROLE"
    SWITCHBOARD_DISABLER_ROLE = "SWITCHBOARD_DISABLER_ROLE"


#
# Identifiers
#

ZERO_ADDRESS = ADDRESS_ZERO
EMPTY_BYTES32 = HASH_ZERO

# native token placeholder accepted by rescueFunds
ETH_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

FAST_SWITCHBOARD_TYPE = "0x" + keccak(text="FAST").hex()
CCTP_SWITCHBOARD_TYPE = "0x" + keccak(text="CCTP").hex()
READ = "0x" + keccak(text="READ").hex()
WRITE = "0x" + keccak(text="WRITE").hex()
SCHEDULE = "0x" + keccak(text="SCHEDULE").hex()

BUILTIN_CONSTANTS = {
    "FAST_SWITCHBOARD_TYPE": FAST_SWITCHBOARD_TYPE,
    "CCTP_SWITCHBOARD_TYPE": CCTP_SWITCHBOARD_TYPE,
    "READ": READ,
    "WRITE": WRITE,
    "SCHEDULE": SCHEDULE,
    "ZERO_ADDRESS": ZERO_ADDRESS,
    "EMPTY_BYTES32": EMPTY_BYTES32,
}

#
# Finality
#


class FinalityBucket(IntEnum):
    LOW = 0  # latest / few confirmations
    MEDIUM = 1  # data posted
    HIGH = 2  # data posted and finalized


#
# Environment
#

SOCKET_SIGNER_ENVVAR = "SOCKET_SIGNER_KEY"
WATCHER_KEY_ENVVAR = "WATCHER_PRIVATE_KEY"
TRANSMITTER_KEY_ENVVAR = "TRANSMITTER_PRIVATE_KEY"
DEPLOYMENT_MODE_ENVVAR = "DEPLOYMENT_MODE"

#
# Attestations
#

ATTESTATION_API_URL = "https://iris-api-sandbox.circle.com/v1/attestations"
