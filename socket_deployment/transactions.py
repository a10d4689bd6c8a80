import asyncio
import logging
from typing import Dict, Mapping, Tuple

from aiohttp import ClientError
from eth_account.signers.local import LocalAccount
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from socket_deployment.artifacts import ArtifactError
from socket_deployment.chain import ChainClient, ContractCall, Receipt, TransactionRequest
from socket_deployment.networks import ChainRegistry
from socket_deployment.poll import PollTimeout
from socket_deployment.utils import StateMismatchError

logger = logging.getLogger(__name__)

UNDERPRICED_MARKERS = ("underpriced", "fee too low", "max fee per gas less than block base fee")


class TransactionError(RuntimeError):
    """Base class for every failed submission."""

    def __init__(self, chain_id: int, request: TransactionRequest, message: str):
        self.chain_id = chain_id
        self.request = request
        super().__init__(f"{request} on chain {chain_id}: {message}")


class SimulationError(TransactionError):
    """The request reverted during gas estimation; nothing was broadcast."""


class UnderpricedError(TransactionError):
    """The node rejected the transaction for its gas price."""


class ConfirmationTimeout(TransactionError):
    """
    The transaction was broadcast but no receipt arrived in time. Its fate is
    unknown; callers re-read live state before trying again.
    """

    def __init__(self, chain_id: int, request: TransactionRequest, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        super().__init__(chain_id, request, f"{tx_hash} not confirmed after {timeout}s")


class RevertedError(TransactionError):
    def __init__(self, chain_id: int, request: TransactionRequest, receipt: Receipt):
        self.receipt = receipt
        super().__init__(
            chain_id, request, f"{receipt.tx_hash} reverted in block {receipt.block_number}"
        )


# node and transport failures raised by reads, estimates and sends
RPC_ERRORS = (Web3Exception, ClientError, OSError, asyncio.TimeoutError)

# failures that abort one reconciliation item but not its siblings
RECOVERABLE_ERRORS = (TransactionError, StateMismatchError, *RPC_ERRORS)


def _is_underpriced(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in UNDERPRICED_MARKERS)


class Transactor:
    """
    Signs, sends and confirms transactions, one at a time per (chain, signer).

    Writes sharing a signer on one chain form a single queue, so every
    coordination chain write made by the watcher is serialized while reads
    and other chains proceed concurrently.
    """

    def __init__(self, registry: ChainRegistry, clients: Mapping[int, ChainClient]):
        self.registry = registry
        self.clients = clients
        self._locks: Dict[Tuple[int, str], asyncio.Lock] = dict()

    def client(self, chain_id: int) -> ChainClient:
        try:
            return self.clients[chain_id]
        except KeyError:
            raise ValueError(f"No client configured for chain {chain_id}")

    def _lock(self, chain_id: int, signer: LocalAccount) -> asyncio.Lock:
        key = (chain_id, signer.address.lower())
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def overrides(self, chain_id: int) -> Dict:
        """Transaction parameters required by the chain's gas policy."""
        policy = self.registry.gas_overrides(chain_id)
        params = dict()
        if policy.tx_type is not None:
            params["type"] = policy.tx_type
        if policy.gas_limit is not None:
            params["gas"] = policy.gas_limit
        if policy.gas_price is not None:
            params["gasPrice"] = policy.gas_price
        else:
            live_price = await self.client(chain_id).gas_price()
            params["gasPrice"] = live_price * policy.price_markup // 100
        if params.get("type") == 1:
            params["accessList"] = []
        return params

    async def submit(
        self, chain_id: int, request: TransactionRequest, signer: LocalAccount
    ) -> Receipt:
        client = self.client(chain_id)
        async with self._lock(chain_id, signer):
            params = await self.overrides(chain_id)

            try:
                gas = await client.simulate(request, signer.address, params)
            except ContractLogicError as e:
                raise SimulationError(chain_id, request, f"simulation reverted: {e}") from e
            except ArtifactError:
                raise
            except (*RPC_ERRORS, ValueError) as e:
                if _is_underpriced(e):
                    raise UnderpricedError(chain_id, request, str(e)) from e
                raise SimulationError(chain_id, request, f"simulation failed: {e}") from e
            params.setdefault("gas", gas)

            if isinstance(request, ContractCall):
                args = ", ".join(str(a) for a in request.args)
                logger.info("Transacting %s(%s) on chain %s", request, args, chain_id)
            else:
                logger.info("Deploying %s on chain %s", request.contract_name, chain_id)

            try:
                tx_hash = await client.send(request, signer, params)
            except ArtifactError:
                raise
            except (*RPC_ERRORS, ValueError) as e:
                if _is_underpriced(e):
                    raise UnderpricedError(chain_id, request, str(e)) from e
                raise TransactionError(chain_id, request, str(e)) from e
            logger.info("Sent %s on chain %s: %s", request, chain_id, tx_hash)

            timeout = self.registry.confirmation_timeout(chain_id)
            try:
                receipt = await client.wait_for_receipt(tx_hash, timeout)
            except (TimeExhausted, PollTimeout, asyncio.TimeoutError) as e:
                raise ConfirmationTimeout(chain_id, request, tx_hash, timeout) from e

        if receipt.status != 1:
            raise RevertedError(chain_id, request, receipt)
        logger.info("Confirmed %s in block %s", tx_hash, receipt.block_number)
        return receipt
