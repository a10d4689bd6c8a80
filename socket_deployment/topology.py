import asyncio
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, NamedTuple, Optional

from hexbytes import HexBytes

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ContractCall
from socket_deployment.config import DeploymentConfig
from socket_deployment.constants import Contracts
from socket_deployment.networks import chain_slug_from_id
from socket_deployment.registry import AddressStore
from socket_deployment.transactions import RECOVERABLE_ERRORS, Transactor
from socket_deployment.utils import (
    StateMismatchError,
    check_address_exists,
    check_app_gateway_id,
    same_identifier,
    to_address,
    to_bytes32,
)
from socket_deployment.watcher import WatcherRelay

logger = logging.getLogger(__name__)

# plug on every socket chain -> app gateway on the coordination chain
PLUG_GATEWAYS: Dict[str, str] = {
    Contracts.ContractFactoryPlug: Contracts.WritePrecompile,
    Contracts.FeesPlug: Contracts.FeesManager,
}


class AppGatewayConfig(NamedTuple):
    """
    One wiring fact, unique per (chain_slug, plug). Identifiers are canonical bytes32.
    ``chain_slug`` holds the chain id and is folded to uint32 on the way on chain.
    """

    plug: str
    app_gateway_id: str
    switchboard: str
    chain_slug: int
    plug_name: str = ""

    def matches(self, app_gateway_id, switchboard) -> bool:
        return same_identifier(app_gateway_id, self.app_gateway_id) and same_identifier(
            switchboard, self.switchboard
        )

    def as_struct(self) -> tuple:
        """AppGatewayConfig struct as accepted by Configurations.setAppGatewayConfigs."""
        return (
            (HexBytes(self.app_gateway_id), HexBytes(self.switchboard)),
            HexBytes(self.plug),
            chain_slug_from_id(self.chain_slug),
        )


def app_gateway_id(address: str) -> str:
    """The identifier of an app gateway is its address left-padded to 32 bytes."""
    return to_bytes32(address)


class TopologyReconciler:
    """Keeps plug connections consistent on every socket chain and on the coordination chain."""

    def __init__(
        self,
        config: DeploymentConfig,
        store: AddressStore,
        transactor: Transactor,
        signers: SignerProvider,
        relay: WatcherRelay,
    ):
        self.config = config
        self.store = store
        self.transactor = transactor
        self.signers = signers
        self.relay = relay

    def desired_link(self, chain_id: int, plug_name: str) -> Optional[AppGatewayConfig]:
        """
        The desired connection of one plug, or None when the plug is not deployed.
        Raises StateMismatchError when its switchboard or gateway is missing.
        """
        plug = self.store.get(chain_id, plug_name)
        if plug is None:
            logger.info("%s not found on %s", plug_name, chain_id)
            return None
        switchboard = check_address_exists(
            self.store.get(chain_id, Contracts.FastSwitchboard), Contracts.FastSwitchboard
        )
        gateway_name = PLUG_GATEWAYS[plug_name]
        gateway = self.store.get(self.config.evmx_chain_id, gateway_name)
        gateway_id = check_app_gateway_id(
            app_gateway_id(gateway) if gateway else None, f"{gateway_name} app gateway id"
        )
        return AppGatewayConfig(
            plug=to_bytes32(plug),
            app_gateway_id=gateway_id,
            switchboard=to_bytes32(switchboard),
            chain_slug=chain_id,
            plug_name=plug_name,
        )

    def desired_links(self, chains: Optional[Iterable[int]] = None) -> List[AppGatewayConfig]:
        links = list()
        for chain_id in chains if chains is not None else self.config.chains:
            for plug_name in PLUG_GATEWAYS:
                try:
                    link = self.desired_link(chain_id, plug_name)
                except RECOVERABLE_ERRORS as e:
                    logger.error("Skipping %s on %s: %s", plug_name, chain_id, e)
                    continue
                if link is not None:
                    links.append(link)
        return links

    def _plug_name(self, link: AppGatewayConfig) -> str:
        """Contract name of the plug, looked up in the ledger when the link does not carry it."""
        if link.plug_name:
            return link.plug_name
        for plug_name in PLUG_GATEWAYS:
            deployed = self.store.get(link.chain_slug, plug_name)
            if deployed and same_identifier(deployed, link.plug):
                return plug_name
        raise StateMismatchError(f"Unknown plug {link.plug} on {link.chain_slug}")

    async def _connect_plug(self, link: AppGatewayConfig) -> bool:
        chain_id = link.chain_slug
        client = self.transactor.client(chain_id)
        socket = check_address_exists(self.store.get(chain_id, Contracts.Socket), Contracts.Socket)
        plug_name = self._plug_name(link)
        plug = to_address(link.plug)
        switchboard = to_address(link.switchboard)

        current = await client.read(
            ContractCall(Contracts.Socket, socket, "getPlugConfig", (plug,))
        )
        if link.matches(*current):
            logger.info("%s socket config on %s already set!", plug_name, chain_id)
            return False

        call = ContractCall(
            plug_name,
            plug,
            "connectSocket",
            (HexBytes(link.app_gateway_id), socket, switchboard),
        )
        receipt = await self.transactor.submit(chain_id, call, self.signers.socket_signer(chain_id))
        logger.info(
            "Connected %s on %s to %s: %s",
            plug_name,
            chain_id,
            link.app_gateway_id,
            receipt.tx_hash,
        )
        return True

    async def _connect_chain(self, links: List[AppGatewayConfig]) -> int:
        connected = 0
        for link in links:
            try:
                if await self._connect_plug(link):
                    connected += 1
            except RECOVERABLE_ERRORS as e:
                logger.error(
                    "Could not connect %s on %s: %s",
                    link.plug_name or link.plug,
                    link.chain_slug,
                    e,
                )
        return connected

    async def connect_plugs_on_socket(self, links: Iterable[AppGatewayConfig]) -> int:
        """Connects plugs chain by chain concurrently, plug by plug within a chain."""
        by_chain = defaultdict(list)
        for link in links:
            by_chain[link.chain_slug].append(link)

        results = await asyncio.gather(
            *(self._connect_chain(chain_links) for chain_links in by_chain.values()),
            return_exceptions=True,
        )
        connected = 0
        for chain_id, result in zip(by_chain, results):
            if isinstance(result, Exception):
                logger.error("Connecting plugs on %s failed: %s", chain_id, result)
            else:
                connected += result
        return connected

    async def _is_set_on_evmx(self, configurations: str, link: AppGatewayConfig) -> bool:
        client = self.transactor.client(self.config.evmx_chain_id)
        call = ContractCall(
            Contracts.Configurations,
            configurations,
            "getPlugConfigs",
            (chain_slug_from_id(link.chain_slug), HexBytes(link.plug)),
        )
        current = await client.read(call)
        return link.matches(*current)

    async def update_evmx_config(self, links: Iterable[AppGatewayConfig]) -> Optional[str]:
        """
        Registers every mismatching link on the coordination chain in a single
        watcher-signed setAppGatewayConfigs call. Returns its hash, or None when
        nothing had to change.
        """
        links = list(links)
        if not links:
            return None
        evmx = self.config.evmx_chain_id
        configurations = check_address_exists(
            self.store.get(evmx, Contracts.Configurations), Contracts.Configurations
        )

        states = await asyncio.gather(
            *(self._is_set_on_evmx(configurations, link) for link in links),
            return_exceptions=True,
        )
        pending = list()
        for link, is_set in zip(links, states):
            if isinstance(is_set, Exception):
                logger.error(
                    "Could not read %s config on %s from EVMx: %s",
                    link.plug_name or link.plug,
                    link.chain_slug,
                    is_set,
                )
            elif is_set:
                logger.info(
                    "Config already set on %s for %s", link.chain_slug, link.plug_name or link.plug
                )
            else:
                pending.append(link)

        if not pending:
            return None

        logger.info("Updating %s app gateway configs on EVMx", len(pending))
        call = ContractCall(
            Contracts.Configurations,
            configurations,
            "setAppGatewayConfigs",
            ([link.as_struct() for link in pending],),
        )
        receipt = await self.relay.submit(call)
        logger.info("Updated EVMx config: %s", receipt.tx_hash)
        return receipt.tx_hash

    async def reconcile(self, links: Optional[Iterable[AppGatewayConfig]] = None) -> Optional[str]:
        links = list(links) if links is not None else self.desired_links()
        await self.connect_plugs_on_socket(links)
        return await self.update_evmx_config(links)
