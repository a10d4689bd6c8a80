import logging
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address

from socket_deployment.artifacts import ArtifactSource
from socket_deployment.constants import (
    BUILTIN_CONSTANTS,
    EVMX_CHAIN_ID,
    PROXY_FACTORY,
    SUPPORTED_MODES,
    TOPOLOGY_DIR,
    ZERO_ADDRESS,
)
from socket_deployment.params import (
    DeploymentConfigError,
    InvalidParameters,
    ResolutionContext,
    VariableContext,
    abi_inputs,
    process_raw_value,
    process_raw_values,
    referenced_contracts,
    resolve_params,
    validate_abi_inputs,
)
from socket_deployment.registry import AddressStore
from socket_deployment.utils import _load_yaml

logger = logging.getLogger(__name__)

CONSTRUCTOR_KEY = "constructor"
PROXY_KEY = "proxy"
INITIALIZE_KEY = "initialize"
REINITIALIZE_KEY = "reinitialize"
PATH_KEY = "path"

DEFAULT_INITIALIZER = "initialize"
DEFAULT_REINITIALIZER = "reinitialize"


class ContractSpec(NamedTuple):
    """How one contract is deployed: its constructor and, for proxies, initializers."""

    name: str
    path: str
    constructor_params: OrderedDict = OrderedDict()
    proxied: bool = False
    initializer_params: OrderedDict = OrderedDict()
    reinitializer_params: Optional[OrderedDict] = None
    initializer: str = DEFAULT_INITIALIZER
    reinitializer: str = DEFAULT_REINITIALIZER


class SettingSpec(NamedTuple):
    """A getter/setter pair on a deployed contract and the value the getter must return."""

    contract: str
    getter: str
    setter: str
    value: Any
    getter_args: Tuple[Any, ...] = ()
    setter_args: Optional[Tuple[Any, ...]] = None


class TransmitterConfig(NamedTuple):
    address: Optional[ChecksumAddress] = None
    credit_threshold: int = 0
    credit_amount: int = 0


def _get_contract_names(contracts: List) -> List[str]:
    contract_names = list()
    for contract_info in contracts:
        if isinstance(contract_info, str):
            contract_names.append(contract_info)
        elif isinstance(contract_info, dict) and len(contract_info) == 1:
            contract_names.extend(list(contract_info.keys()))
        else:
            raise DeploymentConfigError("Malformed contracts list in deployment YAML.")
    return contract_names


def _contract_spec(
    contract_info: Any, contract_names: List[str], evmx_names: List[str], constants: Dict
) -> ContractSpec:
    if isinstance(contract_info, str):
        return ContractSpec(name=contract_info, path=f"contracts/{contract_info}.sol")

    contract_name = list(contract_info.keys())[0]  # only one entry
    contract_data = contract_info[contract_name] or dict()
    if not isinstance(contract_data, dict):
        raise DeploymentConfigError(f"Malformed entry for {contract_name}.")

    context = VariableContext(
        contract_names=contract_names,
        contract_name=contract_name,
        evmx_contract_names=evmx_names,
        constants=constants,
    )
    constructor_params = process_raw_values(contract_data.get(CONSTRUCTOR_KEY), context)
    path = contract_data.get(PATH_KEY, f"contracts/{contract_name}.sol")
    if PROXY_KEY not in contract_data:
        return ContractSpec(contract_name, path, constructor_params)

    proxy_data = contract_data[PROXY_KEY] or dict()
    reinitializer_params = None
    if REINITIALIZE_KEY in proxy_data:
        reinitializer_params = process_raw_values(proxy_data[REINITIALIZE_KEY], context)
    return ContractSpec(
        name=contract_name,
        path=path,
        constructor_params=constructor_params,
        proxied=True,
        initializer_params=process_raw_values(proxy_data.get(INITIALIZE_KEY), context),
        reinitializer_params=reinitializer_params,
        initializer=proxy_data.get("initializer", DEFAULT_INITIALIZER),
        reinitializer=proxy_data.get("reinitializer", DEFAULT_REINITIALIZER),
    )


def _contract_specs(
    contracts: List, evmx_names: List[str], constants: Dict, scope: str
) -> Tuple[ContractSpec, ...]:
    contract_names = _get_contract_names(contracts)
    if len(set(contract_names)) != len(contract_names):
        raise DeploymentConfigError(f"Duplicate contract names in {scope} contracts.")

    specs = tuple(_contract_spec(c, contract_names, evmx_names, constants) for c in contracts)

    # dependencies must be deployed first
    seen = list()
    for spec in specs:
        dependencies = referenced_contracts(spec.constructor_params)
        dependencies += referenced_contracts(spec.initializer_params)
        for dependency in dependencies:
            if dependency not in seen:
                raise DeploymentConfigError(
                    f"{spec.name} references {dependency}, which is not deployed before it "
                    f"in {scope} contracts."
                )
        if spec.proxied and PROXY_FACTORY not in seen:
            raise DeploymentConfigError(
                f"{spec.name} is proxied but {PROXY_FACTORY} is not deployed before it "
                f"in {scope} contracts."
            )
        seen.append(spec.name)
    return specs


def _setting_specs(settings: List, evmx_names: List[str], constants: Dict) -> Tuple[SettingSpec, ...]:
    specs = list()
    for setting in settings or []:
        try:
            contract = setting["contract"]
            context = VariableContext(
                contract_names=evmx_names, contract_name=contract, constants=constants
            )
            setter_args = setting.get("setter_args")
            specs.append(
                SettingSpec(
                    contract=contract,
                    getter=setting["getter"],
                    setter=setting["setter"],
                    value=process_raw_value(setting["value"], context),
                    getter_args=tuple(process_raw_value(list(setting.get("getter_args", [])), context)),
                    setter_args=(
                        tuple(process_raw_value(list(setter_args), context))
                        if setter_args is not None
                        else None
                    ),
                )
            )
        except (KeyError, TypeError) as e:
            raise DeploymentConfigError(f"Malformed setting {setting}: {e}") from e
        if contract not in evmx_names:
            raise DeploymentConfigError(f"Setting targets unknown contract {contract}.")
    return tuple(specs)


def _checksum(value: Any, name: str) -> ChecksumAddress:
    if not isinstance(value, str) or not is_address(value):
        raise DeploymentConfigError(f"{name} must be an address, got {value!r}.")
    return to_checksum_address(value)


class DeploymentConfig(NamedTuple):
    """
    Immutable description of one deployment mode: the chains to manage, the
    contracts to deploy on them, and the coordination chain settings to keep.
    """

    mode: str
    evmx_chain_id: int
    chains: Tuple[int, ...]
    watcher: ChecksumAddress
    relayers: Tuple[ChecksumAddress, ...]
    constants: Dict[str, Any]
    evmx_contracts: Tuple[ContractSpec, ...]
    chain_contracts: Tuple[ContractSpec, ...]
    evmx_settings: Tuple[SettingSpec, ...]
    fee_tokens: Dict[int, Tuple[ChecksumAddress, ...]]
    transmitter: TransmitterConfig
    filepath: Optional[Path] = None

    @classmethod
    def from_dict(cls, config: Dict, filepath: Optional[Path] = None) -> "DeploymentConfig":
        if not isinstance(config, dict):
            raise DeploymentConfigError("Deployment YAML must be a mapping.")
        try:
            deployment = config["deployment"]
            evmx = config.get("evmx") or dict()
            chain = config.get("chain") or dict()
        except KeyError as e:
            raise DeploymentConfigError(f"Deployment YAML is missing '{e.args[0]}'.") from e

        mode = deployment.get("mode")
        if mode not in SUPPORTED_MODES:
            raise DeploymentConfigError(
                f"Unsupported deployment mode {mode!r}; expected one of {SUPPORTED_MODES}."
            )

        evmx_chain_id = int(deployment.get("evmx_chain_id", EVMX_CHAIN_ID))
        chains = tuple(int(c) for c in deployment.get("chains") or [])
        if evmx_chain_id in chains:
            raise DeploymentConfigError("The coordination chain cannot be listed as a socket chain.")

        constants = dict(BUILTIN_CONSTANTS)
        constants["EVMX_CHAIN_ID"] = evmx_chain_id
        constants.update(config.get("constants") or dict())

        evmx_names = _get_contract_names(evmx.get("contracts") or [])
        evmx_contracts = _contract_specs(evmx.get("contracts") or [], evmx_names, constants, "evmx")
        chain_contracts = _contract_specs(
            chain.get("contracts") or [], evmx_names, constants, "chain"
        )

        fee_tokens = {
            int(chain_id): tuple(_checksum(t, f"fee token on {chain_id}") for t in tokens or [])
            for chain_id, tokens in (chain.get("fee_tokens") or dict()).items()
        }

        transmitter = config.get("transmitter") or dict()
        transmitter_address = transmitter.get("address")
        transmitter_config = TransmitterConfig(
            address=_checksum(transmitter_address, "transmitter") if transmitter_address else None,
            credit_threshold=int(transmitter.get("credit_threshold", 0)),
            credit_amount=int(transmitter.get("credit_amount", transmitter.get("credit_threshold", 0))),
        )

        return cls(
            mode=mode,
            evmx_chain_id=evmx_chain_id,
            chains=chains,
            watcher=_checksum(deployment.get("watcher"), "watcher"),
            relayers=tuple(_checksum(r, "relayer") for r in deployment.get("relayers") or []),
            constants=constants,
            evmx_contracts=evmx_contracts,
            chain_contracts=chain_contracts,
            evmx_settings=_setting_specs(evmx.get("settings"), evmx_names, constants),
            fee_tokens=fee_tokens,
            transmitter=transmitter_config,
            filepath=filepath,
        )

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentConfig":
        try:
            config = _load_yaml(filepath)
        except OSError as e:
            raise DeploymentConfigError(f"Cannot read deployment config {filepath}: {e}") from e
        logger.info("Loaded deployment config %s", filepath)
        return cls.from_dict(config, filepath=Path(filepath))

    @classmethod
    def for_mode(cls, mode: str, directory: Path = TOPOLOGY_DIR) -> "DeploymentConfig":
        return cls.from_yaml(directory / f"{mode}.yml")

    def contracts_for(self, chain_id: int) -> Tuple[ContractSpec, ...]:
        if chain_id == self.evmx_chain_id:
            return self.evmx_contracts
        return self.chain_contracts

    def fee_tokens_for(self, chain_id: int) -> Tuple[ChecksumAddress, ...]:
        return self.fee_tokens.get(chain_id, ())

    def validate(self, artifacts: ArtifactSource, store: AddressStore) -> None:
        """
        Checks every constructor and initializer against the compiled ABIs.
        Contracts that are not deployed yet resolve to the zero address.
        """
        for chain_id in (self.evmx_chain_id, *self.chains):
            context = ResolutionContext(
                chain_id=chain_id,
                deployer=ZERO_ADDRESS,
                store=store,
                evmx_chain_id=self.evmx_chain_id,
                eager=True,
            )
            for spec in self.contracts_for(chain_id):
                abi = artifacts.abi(spec.name)
                _validate(spec.name, abi, "constructor", spec.constructor_params, context)
                if spec.proxied:
                    _validate(spec.name, abi, spec.initializer, spec.initializer_params, context)
                    if spec.reinitializer_params is not None:
                        _validate(
                            spec.name, abi, spec.reinitializer, spec.reinitializer_params, context
                        )


def _validate(name, abi, method, params, context) -> None:
    try:
        validate_abi_inputs(name, abi_inputs(abi, method), resolve_params(params, context), method)
    except InvalidParameters:
        raise
    except ValueError as e:
        raise InvalidParameters(f"{name}.{method}: {e}") from e
