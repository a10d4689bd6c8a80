import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, NamedTuple, Optional

from eth_abi import is_encodable
from eth_utils import is_hex, to_bytes

from socket_deployment.constants import ZERO_ADDRESS
from socket_deployment.networks import chain_slug_from_id
from socket_deployment.registry import AddressStore
from socket_deployment.utils import check_address_exists


class DeploymentConfigError(ValueError):
    """Raised when a deployment configuration file is malformed or inconsistent."""


class InvalidParameters(DeploymentConfigError):
    """Raised when resolved parameters do not match a contract ABI."""


class VariableContext:
    """What a variable may refer to, known when the configuration is loaded."""

    def __init__(
        self,
        contract_names: List[str],
        contract_name: str,
        evmx_contract_names: Optional[List[str]] = None,
        constants: typing.Dict[str, Any] = None,
    ):
        self.contract_names = contract_names or list()
        self.contract_name = contract_name
        self.evmx_contract_names = evmx_contract_names or list()
        self.constants = constants or dict()


class ResolutionContext(NamedTuple):
    """Where a variable is resolved: the chain being deployed and its ledger."""

    chain_id: int
    deployer: str
    store: AddressStore
    evmx_chain_id: int
    eager: bool = False  # contracts not deployed yet resolve to the zero address


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, context: ResolutionContext) -> Any:
        return context.deployer

    def __repr__(self) -> str:
        return "$deployer"


class ChainSlug(Variable):
    CHAIN_SLUG_INDICATOR = "chainSlug"

    @classmethod
    def is_chain_slug(cls, value: str) -> bool:
        return value == cls.CHAIN_SLUG_INDICATOR

    def resolve(self, context: ResolutionContext) -> Any:
        return chain_slug_from_id(context.chain_id)

    def __repr__(self) -> str:
        return "$chainSlug"


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise DeploymentConfigError(
                f"Constant '{constant_name}' used by {context.contract_name} is not defined."
            )
        self.constant_name = constant_name

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a deployment constant."""
        return value.isupper()

    def resolve(self, context: ResolutionContext) -> Any:
        return self.constant_value

    def __repr__(self) -> str:
        return f"${self.constant_name}"


class ContractName(Variable):
    def __init__(self, contract_name: str, context: VariableContext):
        if contract_name not in context.contract_names:
            raise DeploymentConfigError(
                f"Contract name {contract_name} used by {context.contract_name} not found"
            )
        self.contract_name = contract_name

    def _chain_id(self, context: ResolutionContext) -> int:
        return context.chain_id

    def resolve(self, context: ResolutionContext) -> Any:
        """Resolves a contract address from the ledger."""
        address = context.store.get(self._chain_id(context), self.contract_name)
        if address is None and context.eager:
            return ZERO_ADDRESS
        return check_address_exists(address, self.contract_name)

    def __repr__(self) -> str:
        return f"${self.contract_name}"


class EvmxContractName(ContractName):
    EVMX_PREFIX = "evmx:"

    def __init__(self, variable: str, context: VariableContext):
        contract_name = variable[len(self.EVMX_PREFIX) :]
        if contract_name not in context.evmx_contract_names:
            raise DeploymentConfigError(
                f"Coordination chain contract {contract_name} used by "
                f"{context.contract_name} not found"
            )
        self.contract_name = contract_name

    @classmethod
    def is_evmx_contract(cls, value: str) -> bool:
        return value.startswith(cls.EVMX_PREFIX)

    def _chain_id(self, context: ResolutionContext) -> int:
        return context.evmx_chain_id

    def __repr__(self) -> str:
        return f"${self.EVMX_PREFIX}{self.contract_name}"


def _variable_from_value(variable: Any, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    elif ChainSlug.is_chain_slug(variable):
        return ChainSlug()
    elif EvmxContractName.is_evmx_contract(variable):
        return EvmxContractName(variable, context)
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return ContractName(variable, context)


def process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def process_raw_values(values: Dict, variable_context: VariableContext) -> OrderedDict:
    if values is None:
        return OrderedDict()
    if not isinstance(values, dict):
        raise DeploymentConfigError(
            f"Malformed parameters for {variable_context.contract_name}: expected a mapping."
        )
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = process_raw_value(value, variable_context)
    return processed_parameters


def resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [resolve_param(v, context) for v in value]

    if isinstance(value, Variable):
        return value.resolve(context)

    return value  # literally a value


def resolve_params(parameters: OrderedDict, context: ResolutionContext) -> OrderedDict:
    resolved_parameters = OrderedDict()
    for name, value in parameters.items():
        resolved_parameters[name] = resolve_param(value, context)
    return resolved_parameters


def referenced_contracts(parameters: OrderedDict) -> List[str]:
    """Names of same-chain contracts a set of parameters depends on."""
    names = list()

    def _collect(value):
        if isinstance(value, list):
            for v in value:
                _collect(v)
        elif isinstance(value, ContractName) and not isinstance(value, EvmxContractName):
            names.append(value.contract_name)

    for value in parameters.values():
        _collect(value)
    return names


def _normalize_for_abi(abi_type: str, value: Any) -> Any:
    if abi_type.startswith("bytes") and isinstance(value, str) and is_hex(value):
        return to_bytes(hexstr=value)
    if abi_type.endswith("[]") and isinstance(value, list):
        return [_normalize_for_abi(abi_type[:-2], v) for v in value]
    return value


def validate_abi_inputs(
    contract_name: str,
    abi_inputs: List[Dict],
    resolved_parameters: OrderedDict,
    method: str = "constructor",
) -> None:
    """Validates named parameters against the inputs of a constructor or method ABI."""
    if len(resolved_parameters) != len(abi_inputs):
        raise InvalidParameters(
            f"{method} parameters length mismatch - "
            f"{contract_name} ABI requires {len(abi_inputs)}, Got {len(resolved_parameters)}."
        )

    codex = enumerate(zip(abi_inputs, resolved_parameters.items()), start=0)
    for position, (abi_input, resolved_input) in codex:
        name, value = resolved_input
        if abi_input.get("name") and abi_input["name"] != name:
            raise InvalidParameters(
                f"{contract_name} {method} parameter '{name}' at position {position} does not "
                f"match the expected ABI name '{abi_input['name']}'."
            )
        abi_type = abi_input["type"]
        if abi_type.startswith("tuple"):
            # struct arguments are checked by the encoder at send time
            continue
        if not is_encodable(abi_type, _normalize_for_abi(abi_type, value)):
            raise InvalidParameters(
                f"{contract_name} {method} param '{name}' at position {position} has a value "
                f"'{value}' whose type does not match expected ABI type '{abi_type}'"
            )


def abi_inputs(abi: List[Dict], method: str) -> List[Dict]:
    """Inputs of the constructor (``method="constructor"``) or of a named function."""
    for entry in abi:
        if method == "constructor" and entry.get("type") == "constructor":
            return entry.get("inputs", [])
        if entry.get("type") == "function" and entry.get("name") == method:
            return entry.get("inputs", [])
    if method == "constructor":
        return list()
    raise InvalidParameters(f"No ABI entry for '{method}'")
