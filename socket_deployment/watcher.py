import logging

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ContractCall, Receipt
from socket_deployment.constants import Contracts
from socket_deployment.registry import AddressStore
from socket_deployment.sign import sign_watcher_message
from socket_deployment.transactions import Transactor
from socket_deployment.utils import check_address_exists

logger = logging.getLogger(__name__)


class WatcherRelay:
    """Submits coordination chain calls that only the watcher may make, via watcherMultiCall."""

    def __init__(
        self,
        transactor: Transactor,
        store: AddressStore,
        signers: SignerProvider,
        evmx_chain_id: int,
    ):
        self.transactor = transactor
        self.store = store
        self.signers = signers
        self.evmx_chain_id = evmx_chain_id

    def envelope(self, call: ContractCall) -> ContractCall:
        """Wraps a call into a signed Watcher.watcherMultiCall request."""
        watcher = check_address_exists(
            self.store.get(self.evmx_chain_id, Contracts.Watcher), Contracts.Watcher
        )
        calldata = bytes(self.transactor.client(self.evmx_chain_id).encode(call))
        signer = self.signers.watcher_signer()
        signed = sign_watcher_message(call.address, self.evmx_chain_id, calldata, signer)
        params = [(call.address, calldata, signed.nonce, signed.signature)]
        return ContractCall(Contracts.Watcher, watcher, "watcherMultiCall", (params,))

    async def submit(self, call: ContractCall) -> Receipt:
        request = self.envelope(call)
        logger.info("Relaying %s through the watcher", call)
        signer = self.signers.watcher_signer()
        return await self.transactor.submit(self.evmx_chain_id, request, signer)
