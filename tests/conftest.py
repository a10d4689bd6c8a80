import asyncio
from collections import defaultdict

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_checksum_address
from web3.exceptions import ContractLogicError

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ChainClient, ContractCall, ContractDeployment, Receipt
from socket_deployment.config import DeploymentConfig
from socket_deployment.constants import IMPLEMENTATION_SLOT, ZERO_ADDRESS
from socket_deployment.networks import ChainRegistry, ChainSlug
from socket_deployment.poll import PollTimeout
from socket_deployment.registry import AddressStore, write_ledger
from socket_deployment.sign import watcher_digest
from socket_deployment.transactions import Transactor
from socket_deployment.verification import VerificationLedger

# Common constants
EVMX = 7625382
CHAIN_A = ChainSlug.ARBITRUM_SEPOLIA
CHAIN_B = ChainSlug.OPTIMISM_SEPOLIA

SOCKET_KEY = "0x" + "11" * 32
WATCHER_KEY = "0x" + "22" * 32
TRANSMITTER_KEY = "0x" + "33" * 32

WATCHER_ADDRESS = "0x" + "aa" * 20
RELAYER_ADDRESS = "0x" + "bb" * 20
FEE_TOKEN = "0x" + "cc" * 20

EMPTY_SLOT = b"\x00" * 32

# setters of plain storage values and the getter that reads them back
SETTER_GETTERS = {
    "setWatcher": "watcher__",
    "setAsyncDeployer": "asyncDeployer__",
    "setFeesManager": "feesManager__",
    "setSwitchboard": "switchboards",
    "setSocket": "sockets",
    "setFeesPlug": "feesPlugs",
    "setContractFactoryPlugs": "contractFactoryPlugs",
    "updateChainMaxMsgValueLimits": "chainMaxMsgValueLimit",
    "setPrecompile": "precompiles",
}


def _key(value):
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, (list, tuple)):
        return tuple(_key(v) for v in value)
    return value


class FakeChain(ChainClient):
    """
    In-memory chain that understands the handful of contract functions the
    reconcilers read and write.
    """

    def __init__(self, chain_id, block_number=100, gas_price=1_000_000_000):
        self.chain_id = chain_id
        self.block = block_number
        self.price = gas_price
        self.balances = defaultdict(int)

        self.values = dict()
        self.storage = dict()
        self.roles = set()
        self.socket_plugs = dict()
        self.evmx_plugs = dict()
        self.valid_switchboards = set()
        self.approvals = set()
        self.credits = defaultdict(int)

        self.sent = list()
        self.senders = list()
        self.relayed = list()
        self.reverts = set()
        # contract name or function -> exception raised by the node
        self.simulate_errors = dict()
        self.read_errors = dict()
        self.send_error = None
        self.confirm = True
        self.receipt_status = 1

        self._encoded = dict()
        self._receipts = dict()
        self._counter = 0
        self.inflight = 0
        self.max_inflight = 0

    def _next_address(self):
        self._counter += 1
        return to_checksum_address(keccak(text=f"{self.chain_id}:{self._counter}")[-20:])

    @property
    def deployments(self):
        return [r for r, _ in self.sent if isinstance(r, ContractDeployment)]

    @property
    def calls(self):
        return [r for r, _ in self.sent if isinstance(r, ContractCall)]

    def set_implementation(self, proxy, implementation):
        slot = bytes(12) + bytes.fromhex(implementation[2:])
        self.storage[(proxy.lower(), IMPLEMENTATION_SLOT)] = slot

    def set_value(self, address, getter, args, value):
        self.values[(address.lower(), getter, _key(tuple(args)))] = value

    # reads

    async def block_number(self):
        return self.block

    async def gas_price(self):
        return self.price

    async def get_balance(self, address):
        return self.balances[address.lower()]

    async def get_storage_at(self, address, slot):
        return self.storage.get((address.lower(), slot), EMPTY_SLOT)

    async def read(self, call):
        address, fn, args = call.address.lower(), call.function, call.args
        error = self.read_errors.get(fn)
        if error is not None:
            raise error
        if fn == "hasRole":
            return (address, _key(args[0]), args[1].lower()) in self.roles
        if fn == "getPlugConfig":
            return self.socket_plugs.get((address, args[0].lower()), (EMPTY_SLOT, ZERO_ADDRESS))
        if fn == "getPlugConfigs":
            return self.evmx_plugs.get((args[0], _key(args[1])), (EMPTY_SLOT, EMPTY_SLOT))
        if fn == "isValidSwitchboard":
            return args[0].lower() in self.valid_switchboards
        if fn == "isApproved":
            return (args[0].lower(), args[1].lower()) in self.approvals
        if fn == "getAvailableCredits":
            return self.credits[args[0].lower()]
        return self.values.get((address, fn, _key(tuple(args))), 0)

    def encode(self, call):
        data = keccak(text=f"{call}:{len(self._encoded)}")
        self._encoded[data] = call
        return data

    # writes

    async def simulate(self, request, sender, params):
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        await asyncio.sleep(0)
        name = request.contract_name
        if name in self.reverts or getattr(request, "function", None) in self.reverts:
            self.inflight -= 1
            raise ContractLogicError("execution reverted")
        error = self.simulate_errors.get(name) or self.simulate_errors.get(
            getattr(request, "function", None)
        )
        if error is not None:
            self.inflight -= 1
            raise error
        return 21_000

    async def send(self, request, signer, params):
        if self.send_error is not None:
            self.inflight -= 1
            raise self.send_error
        self.sent.append((request, params))
        self.senders.append(signer.address)
        self._counter += 1
        tx_hash = "0x" + keccak(text=f"tx:{self.chain_id}:{self._counter}").hex()

        contract_address, logs = None, ()
        if isinstance(request, ContractDeployment):
            contract_address = self._next_address()
        else:
            logs = self._apply(request, signer.address)
        self._receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            block_number=self.block,
            status=self.receipt_status,
            contract_address=contract_address,
            logs=logs,
        )
        return tx_hash

    def _apply(self, call, sender):
        address, fn, args = call.address.lower(), call.function, call.args
        if fn == "grantRole":
            self.roles.add((address, _key(args[0]), args[1].lower()))
        elif fn == "connectSocket":
            socket = args[1].lower()
            self.socket_plugs[(socket, address)] = (bytes(args[0]), args[2])
        elif fn == "deployAndCall":
            proxy = self._next_address()
            self.set_implementation(proxy, args[0])
            return ({"event": "Deployed", "args": {"proxy": proxy, "implementation": args[0]}},)
        elif fn in ("upgrade", "upgradeAndCall"):
            self.set_implementation(args[0], args[1])
        elif fn == "watcherMultiCall":
            for target, calldata, nonce, signature in args[0]:
                digest = watcher_digest(target, self.chain_id, nonce, calldata)
                message = encode_defunct(primitive=digest)
                signer = Account.recover_message(message, signature=signature)
                inner = self._encoded[bytes(calldata)]
                self.relayed.append((inner, signer, nonce))
                self._apply(inner, signer)
        elif fn == "setAppGatewayConfigs":
            for (gateway_id, switchboard), plug, chain_slug in args[0]:
                self.evmx_plugs[(chain_slug, _key(plug))] = (bytes(gateway_id), bytes(switchboard))
        elif fn == "registerSwitchboard":
            self.valid_switchboards.add(address)
        elif fn == "disableSwitchboard":
            self.valid_switchboards.discard(args[0].lower())
        elif fn == "rescueFunds":
            self.balances[address] -= args[2]
            self.balances[args[1].lower()] += args[2]
        elif fn == "whitelistToken":
            self.set_value(address, "whitelistedTokens", args, True)
        elif fn == "approveAppGateways":
            for app_gateway, approved in args[0]:
                if approved:
                    self.approvals.add((sender.lower(), app_gateway.lower()))
        elif fn == "wrap":
            self.credits[args[0].lower()] += call.value
        elif fn in SETTER_GETTERS:
            self.set_value(address, SETTER_GETTERS[fn], args[:-1], args[-1])
        return ()

    async def wait_for_receipt(self, tx_hash, timeout):
        self.inflight -= 1
        await asyncio.sleep(0)
        if not self.confirm:
            raise PollTimeout(f"No receipt for {tx_hash} after 1 attempts")
        return self._receipts[tx_hash]

    async def get_receipt(self, tx_hash):
        return self._receipts.get(tx_hash)

    def add_receipt(self, receipt):
        self._receipts[receipt.tx_hash] = receipt

    def decode_events(self, receipt, contract_name, address, event_name):
        return [log["args"] for log in receipt.logs if log.get("event") == event_name]


# Utility functions
def seed_ledger(store, addresses):
    """Writes {chain_id: {name: address}} straight to the ledger file."""
    data = {str(chain_id): dict(entries) for chain_id, entries in addresses.items()}
    write_ledger(data, store.filepath)
    store.reload()


def address(label):
    return to_checksum_address(keccak(text=label)[-20:])


def run(coroutine):
    return asyncio.run(coroutine)


def config_dict():
    return {
        "deployment": {
            "mode": "local",
            "evmx_chain_id": EVMX,
            "chains": [CHAIN_A, CHAIN_B],
            "watcher": WATCHER_ADDRESS,
            "relayers": [RELAYER_ADDRESS],
        },
        "constants": {"MAX_MSG_VALUE_LIMIT": 1000, "SOCKET_VERSION": "test"},
        "evmx": {
            "contracts": [
                "ERC1967Factory",
                {"AddressResolver": {"proxy": {"initialize": {"owner_": "$deployer"}}}},
                {
                    "Watcher": {
                        "proxy": {
                            "initialize": {
                                "evmxSlug_": "$EVMX_CHAIN_ID",
                                "owner_": "$deployer",
                                "addressResolver_": "$AddressResolver",
                            }
                        }
                    }
                },
                {
                    "Configurations": {
                        "proxy": {"initialize": {"watcher_": "$Watcher", "owner_": "$deployer"}}
                    }
                },
                {"FeesManager": {"proxy": {"initialize": {"owner_": "$deployer"}}}},
                {
                    "WritePrecompile": {
                        "proxy": {"initialize": {"owner_": "$deployer", "watcher_": "$Watcher"}}
                    }
                },
                {"AuctionManager": {"proxy": {"initialize": {"owner_": "$deployer"}}}},
            ],
            "settings": [
                {
                    "contract": "AddressResolver",
                    "getter": "watcher__",
                    "setter": "setWatcher",
                    "value": "$Watcher",
                }
            ],
        },
        "chain": {
            "contracts": [
                {
                    "Socket": {
                        "constructor": {
                            "chainSlug_": "$chainSlug",
                            "owner_": "$deployer",
                            "version_": "$SOCKET_VERSION",
                        }
                    }
                },
                {
                    "FastSwitchboard": {
                        "constructor": {
                            "chainSlug_": "$chainSlug",
                            "socket_": "$Socket",
                            "owner_": "$deployer",
                        }
                    }
                },
                {"FeesPlug": {"constructor": {"socket_": "$Socket", "owner_": "$deployer"}}},
                {
                    "ContractFactoryPlug": {
                        "constructor": {"socket_": "$Socket", "owner_": "$deployer"}
                    }
                },
            ],
            "fee_tokens": {CHAIN_A: [FEE_TOKEN]},
        },
        "transmitter": {"credit_threshold": 100, "credit_amount": 150},
    }


# Fixtures
@pytest.fixture
def config():
    return DeploymentConfig.from_dict(config_dict())


@pytest.fixture
def store(tmp_path):
    return AddressStore(tmp_path / "local_addresses.json")


@pytest.fixture
def verification(tmp_path):
    return VerificationLedger(tmp_path / "local_verification.json")


@pytest.fixture
def signers():
    return SignerProvider(
        socket_key=SOCKET_KEY,
        watcher_key=WATCHER_KEY,
        transmitter_key=TRANSMITTER_KEY,
        evmx_chain_id=EVMX,
    )


@pytest.fixture
def registry():
    return ChainRegistry(evmx_chain_id=EVMX, environ={})


@pytest.fixture
def chains():
    return {chain_id: FakeChain(chain_id) for chain_id in (EVMX, CHAIN_A, CHAIN_B)}


@pytest.fixture
def evmx(chains):
    return chains[EVMX]


@pytest.fixture
def chain_a(chains):
    return chains[CHAIN_A]


@pytest.fixture
def chain_b(chains):
    return chains[CHAIN_B]


@pytest.fixture
def transactor(registry, chains):
    return Transactor(registry, chains)
