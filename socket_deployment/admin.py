import logging
from typing import Dict, Iterable, List, Optional

from hexbytes import HexBytes

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ContractCall
from socket_deployment.constants import (
    EMPTY_BYTES32,
    ETH_ADDRESS,
    FAST_SWITCHBOARD_TYPE,
    Contracts,
)
from socket_deployment.networks import chain_slug_from_id
from socket_deployment.registry import AddressStore
from socket_deployment.settings import Setting, SettingsReconciler
from socket_deployment.topology import AppGatewayConfig, TopologyReconciler
from socket_deployment.transactions import RECOVERABLE_ERRORS, Transactor
from socket_deployment.utils import check_address_exists, to_bytes32

logger = logging.getLogger(__name__)

# chain contracts holding native value that the socket signer can pull out
RESCUABLE_CONTRACTS = (
    Contracts.FeesPlug,
    Contracts.Socket,
    Contracts.SocketBatcher,
    Contracts.FastSwitchboard,
    Contracts.ContractFactoryPlug,
)


class AdminOperations:
    """
    Operator commands that take chains out of service or recover funds.

    Like the reconcilers, every operation reads live state first and only
    writes what is not already in the requested state.
    """

    def __init__(
        self,
        store: AddressStore,
        transactor: Transactor,
        signers: SignerProvider,
        settings: SettingsReconciler,
        topology: TopologyReconciler,
    ):
        self.store = store
        self.transactor = transactor
        self.signers = signers
        self.settings = settings
        self.topology = topology

    #
    # Disconnect
    #

    def disconnect_link(self, chain_id: int) -> Optional[AppGatewayConfig]:
        """The FeesPlug link of a chain pointed at no app gateway, or None if there is no plug."""
        plug = self.store.get(chain_id, Contracts.FeesPlug)
        if plug is None:
            logger.info("%s not found on %s", Contracts.FeesPlug, chain_id)
            return None
        switchboard = check_address_exists(
            self.store.get(chain_id, Contracts.FastSwitchboard), Contracts.FastSwitchboard
        )
        return AppGatewayConfig(
            plug=to_bytes32(plug),
            app_gateway_id=EMPTY_BYTES32,
            switchboard=to_bytes32(switchboard),
            chain_slug=chain_id,
            plug_name=Contracts.FeesPlug,
        )

    async def disconnect(self, chains: Iterable[int]) -> Optional[str]:
        """
        Disconnects the fee plugs of ``chains``: the socket keeps the plug on its
        switchboard with an empty app gateway, EVMx forgets both and the fees
        manager drops the plug. Returns the EVMx batch hash, if one was sent.
        """
        links = list()
        for chain_id in chains:
            try:
                link = self.disconnect_link(chain_id)
            except RECOVERABLE_ERRORS as e:
                logger.error("Skipping %s on %s: %s", Contracts.FeesPlug, chain_id, e)
                continue
            if link is not None:
                links.append(link)
        if not links:
            logger.info("Nothing to disconnect")
            return None

        await self.topology.connect_plugs_on_socket(links)

        fees_plugs: List[Setting] = list()
        for link in links:
            try:
                fees_plugs.append(
                    self.settings.evmx_pointer(
                        Contracts.FeesManager,
                        "feesPlugs",
                        "setFeesPlug",
                        (chain_slug_from_id(link.chain_slug),),
                        EMPTY_BYTES32,
                    )
                )
            except RECOVERABLE_ERRORS as e:
                logger.error("Could not clear fees plug of %s: %s", link.chain_slug, e)
        await self.settings.ensure_all(fees_plugs, self.signers.watcher_signer())

        return await self.topology.update_evmx_config(
            link._replace(switchboard=EMPTY_BYTES32) for link in links
        )

    #
    # Switchboards
    #

    async def disable_switchboard(self, chain_id: int) -> int:
        """Disables the fast switchboard on its socket and unregisters it on EVMx."""
        changed = 0
        socket = check_address_exists(self.store.get(chain_id, Contracts.Socket), Contracts.Socket)
        switchboard = check_address_exists(
            self.store.get(chain_id, Contracts.FastSwitchboard), Contracts.FastSwitchboard
        )

        client = self.transactor.client(chain_id)
        valid = await client.read(
            ContractCall(Contracts.Socket, socket, "isValidSwitchboard", (switchboard,))
        )
        if not valid:
            logger.info("Switchboard %s on %s is already disabled", switchboard, chain_id)
        else:
            call = ContractCall(Contracts.Socket, socket, "disableSwitchboard", (switchboard,))
            signer = self.signers.socket_signer(chain_id)
            try:
                receipt = await self.transactor.submit(chain_id, call, signer)
            except RECOVERABLE_ERRORS as e:
                logger.error("Could not disable switchboard on %s: %s", chain_id, e)
            else:
                logger.info(
                    "Disabled switchboard %s on %s: %s", switchboard, chain_id, receipt.tx_hash
                )
                changed += 1

        slug = chain_slug_from_id(chain_id)
        unregister = self.settings.evmx_pointer(
            Contracts.Configurations,
            "switchboards",
            "setSwitchboard",
            (slug, HexBytes(FAST_SWITCHBOARD_TYPE)),
            EMPTY_BYTES32,
        )
        changed += await self.settings.ensure_all([unregister], self.signers.watcher_signer())
        return changed

    #
    # Rescue
    #

    async def rescue(
        self, chain_id: int, amount: Optional[int] = None, send: bool = False
    ) -> Dict[str, int]:
        """
        Finds native value held by the chain's contracts. With ``send``, pulls up
        to ``amount`` wei (everything when None) out of each one to the socket
        signer. Returns the amount found, or rescued, per contract.
        """
        client = self.transactor.client(chain_id)
        signer = self.signers.socket_signer(chain_id)
        found = dict()
        for contract_name in RESCUABLE_CONTRACTS:
            address = self.store.get(chain_id, contract_name)
            if not address:
                continue
            balance = await client.get_balance(address)
            logger.info("Rescuable amount of %s on %s: %s", contract_name, chain_id, balance)
            rescue_amount = balance if amount is None else min(balance, amount)
            if rescue_amount == 0:
                continue
            if not send:
                found[contract_name] = rescue_amount
                continue

            call = ContractCall(
                contract_name, address, "rescueFunds", (ETH_ADDRESS, signer.address, rescue_amount)
            )
            try:
                receipt = await self.transactor.submit(chain_id, call, signer)
            except RECOVERABLE_ERRORS as e:
                logger.error(
                    "Error while rescuing %s from %s on %s: %s",
                    rescue_amount,
                    contract_name,
                    chain_id,
                    e,
                )
                continue
            logger.info(
                "Rescued %s from %s on %s: %s",
                rescue_amount,
                contract_name,
                chain_id,
                receipt.tx_hash,
            )
            found[contract_name] = rescue_amount
        return found
