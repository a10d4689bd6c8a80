import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD

from socket_deployment.artifacts import ArtifactSource
from socket_deployment.poll import attempts_for_timeout, poll

logger = logging.getLogger(__name__)

RECEIPT_POLL_INITIAL_DELAY = 1.0
RECEIPT_POLL_MAX_DELAY = 10.0


class ContractCall(NamedTuple):
    contract_name: str
    address: str
    function: str
    args: Tuple[Any, ...] = ()
    value: int = 0

    def __str__(self) -> str:
        return f"{self.contract_name}[{self.address[:10]}].{self.function}"


class ContractDeployment(NamedTuple):
    contract_name: str
    path: str
    args: Tuple[Any, ...] = ()

    def __str__(self) -> str:
        return f"deployment of {self.contract_name}"


TransactionRequest = Union[ContractCall, ContractDeployment]


class Receipt(NamedTuple):
    tx_hash: str
    block_number: int
    status: int
    contract_address: Optional[ChecksumAddress] = None
    logs: Tuple[Any, ...] = ()
    raw: Any = None


class ChainClient(ABC):
    """Asynchronous view of one chain: reads, encoding and raw transaction plumbing."""

    chain_id: int

    @abstractmethod
    async def block_number(self) -> int:
        raise NotImplementedError

    @abstractmethod
    async def gas_price(self) -> int:
        raise NotImplementedError

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def get_storage_at(self, address: str, slot: int) -> bytes:
        raise NotImplementedError

    @abstractmethod
    async def read(self, call: ContractCall) -> Any:
        raise NotImplementedError

    @abstractmethod
    def encode(self, call: ContractCall) -> bytes:
        raise NotImplementedError

    @abstractmethod
    async def simulate(self, request: TransactionRequest, sender: str, params: Dict) -> int:
        """Dry-runs a request and returns its gas estimate; raises on revert."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, request: TransactionRequest, signer: LocalAccount, params: Dict) -> str:
        """Signs and broadcasts a request, returning the transaction hash."""
        raise NotImplementedError

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        raise NotImplementedError

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        raise NotImplementedError

    @abstractmethod
    def decode_events(
        self, receipt: Receipt, contract_name: str, address: str, event_name: str
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class Web3ChainClient(ChainClient):
    """ChainClient backed by an AsyncWeb3 HTTP provider."""

    def __init__(self, chain_id: int, rpc_url: str, artifacts: ArtifactSource):
        self.chain_id = chain_id
        self.rpc_url = rpc_url
        self.artifacts = artifacts
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))

    def _contract(self, contract_name: str, address: Optional[str] = None):
        abi = self.artifacts.abi(contract_name)
        if address is None:
            bytecode = self.artifacts.bytecode(contract_name)
            return self.w3.eth.contract(abi=abi, bytecode=bytecode)
        return self.w3.eth.contract(address=to_checksum_address(address), abi=abi)

    def _function(self, request: TransactionRequest):
        if isinstance(request, ContractDeployment):
            return self._contract(request.contract_name).constructor(*request.args)
        contract = self._contract(request.contract_name, request.address)
        return getattr(contract.functions, request.function)(*request.args)

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def get_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(to_checksum_address(address))

    async def get_storage_at(self, address: str, slot: int) -> bytes:
        return bytes(await self.w3.eth.get_storage_at(to_checksum_address(address), slot))

    async def read(self, call: ContractCall) -> Any:
        return await self._function(call).call()

    def encode(self, call: ContractCall) -> bytes:
        contract = self._contract(call.contract_name, call.address)
        return HexBytes(contract.encode_abi(call.function, args=list(call.args)))

    def _base_params(self, request: TransactionRequest, sender: str, params: Dict) -> Dict:
        tx_params = {"from": to_checksum_address(sender), "chainId": self.chain_id, **params}
        if isinstance(request, ContractCall) and request.value:
            tx_params["value"] = request.value
        return tx_params

    async def simulate(self, request: TransactionRequest, sender: str, params: Dict) -> int:
        tx_params = self._base_params(request, sender, params)
        tx_params.pop("gas", None)
        return await self._function(request).estimate_gas(tx_params)

    async def send(self, request: TransactionRequest, signer: LocalAccount, params: Dict) -> str:
        tx_params = self._base_params(request, signer.address, params)
        tx_params["nonce"] = await self.w3.eth.get_transaction_count(signer.address, "pending")
        transaction = await self._function(request).build_transaction(tx_params)
        signed = signer.sign_transaction(transaction)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def _to_receipt(self, raw) -> Receipt:
        contract_address = raw.get("contractAddress")
        return Receipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            block_number=raw["blockNumber"],
            status=raw["status"],
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            logs=tuple(raw["logs"]),
            raw=raw,
        )

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return self._to_receipt(raw)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        attempts = attempts_for_timeout(
            timeout, initial_delay=RECEIPT_POLL_INITIAL_DELAY, max_delay=RECEIPT_POLL_MAX_DELAY
        )
        return await poll(
            lambda: self.get_receipt(tx_hash),
            max_attempts=attempts,
            initial_delay=RECEIPT_POLL_INITIAL_DELAY,
            max_delay=RECEIPT_POLL_MAX_DELAY,
            description=f"receipt for {tx_hash}",
        )

    def decode_events(
        self, receipt: Receipt, contract_name: str, address: str, event_name: str
    ) -> List[Dict[str, Any]]:
        contract = self._contract(contract_name, address)
        event = getattr(contract.events, event_name)()
        return [dict(log["args"]) for log in event.process_receipt(receipt.raw, errors=DISCARD)]

    async def close(self) -> None:
        await self.w3.provider.disconnect()
