import logging

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ContractCall
from socket_deployment.config import DeploymentConfig
from socket_deployment.constants import Contracts
from socket_deployment.registry import AddressStore
from socket_deployment.transactions import Transactor
from socket_deployment.utils import check_address_exists

logger = logging.getLogger(__name__)


class TransmitterSetup:
    """Lets the transmitter bid through the AuctionManager and keeps its credits topped up."""

    def __init__(
        self,
        config: DeploymentConfig,
        store: AddressStore,
        transactor: Transactor,
        signers: SignerProvider,
    ):
        self.config = config
        self.store = store
        self.transactor = transactor
        self.signers = signers
        self.evmx_chain_id = config.evmx_chain_id

    @property
    def transmitter(self) -> str:
        if self.config.transmitter.address:
            return self.config.transmitter.address
        return self.signers.transmitter_signer().address

    def _fees_manager(self) -> str:
        return check_address_exists(
            self.store.get(self.evmx_chain_id, Contracts.FeesManager), Contracts.FeesManager
        )

    async def approve_auction_manager(self) -> bool:
        fees_manager = self._fees_manager()
        auction_manager = check_address_exists(
            self.store.get(self.evmx_chain_id, Contracts.AuctionManager), Contracts.AuctionManager
        )
        client = self.transactor.client(self.evmx_chain_id)
        approved = await client.read(
            ContractCall(
                Contracts.FeesManager,
                fees_manager,
                "isApproved",
                (self.transmitter, auction_manager),
            )
        )
        if approved:
            logger.info("Auction manager already approved for %s", self.transmitter)
            return False

        call = ContractCall(
            Contracts.FeesManager,
            fees_manager,
            "approveAppGateways",
            ([(auction_manager, True)],),
        )
        receipt = await self.transactor.submit(
            self.evmx_chain_id, call, self.signers.transmitter_signer()
        )
        logger.info("Auction manager approved for %s: %s", self.transmitter, receipt.tx_hash)
        return True

    async def top_up_credits(self) -> bool:
        threshold = self.config.transmitter.credit_threshold
        if not threshold:
            return False
        fees_manager = self._fees_manager()
        client = self.transactor.client(self.evmx_chain_id)
        credits = await client.read(
            ContractCall(
                Contracts.FeesManager, fees_manager, "getAvailableCredits", (self.transmitter,)
            )
        )
        if credits >= threshold:
            logger.info("Transmitter %s has %s credits", self.transmitter, credits)
            return False

        amount = self.config.transmitter.credit_amount or threshold
        logger.info("Depositing %s credits for transmitter %s", amount, self.transmitter)
        call = ContractCall(
            Contracts.FeesManager, fees_manager, "wrap", (self.transmitter,), value=amount
        )
        receipt = await self.transactor.submit(
            self.evmx_chain_id, call, self.signers.watcher_signer()
        )
        logger.info("Credits wrapped: %s", receipt.tx_hash)
        return True

    async def setup(self) -> None:
        await self.approve_auction_manager()
        await self.top_up_credits()
