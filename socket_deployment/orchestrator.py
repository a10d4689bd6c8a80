import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from socket_deployment.accounts import SignerConfigError, SignerProvider
from socket_deployment.admin import AdminOperations
from socket_deployment.artifacts import ArtifactError, ArtifactSource
from socket_deployment.attestations import Attestation, get_attestations
from socket_deployment.chain import ChainClient, Web3ChainClient
from socket_deployment.config import DeploymentConfig
from socket_deployment.constants import ARTIFACTS_DIR
from socket_deployment.deployer import Deployer
from socket_deployment.networks import ChainRegistry, NetworkConfigError
from socket_deployment.params import DeploymentConfigError
from socket_deployment.registry import AddressStore, LedgerError
from socket_deployment.roles import RoleReconciler
from socket_deployment.settings import SettingsReconciler
from socket_deployment.topology import TopologyReconciler
from socket_deployment.transactions import RECOVERABLE_ERRORS, Transactor
from socket_deployment.transmitter import TransmitterSetup
from socket_deployment.verification import VerificationLedger
from socket_deployment.watcher import WatcherRelay

logger = logging.getLogger(__name__)

# errors that make the whole run meaningless; everything else stays local to a chain
FATAL_ERRORS = (
    LedgerError,
    DeploymentConfigError,
    SignerConfigError,
    NetworkConfigError,
    ArtifactError,
)

STEPS = ("deploy", "roles", "configure", "connect", "transmitter")


class Orchestrator:
    """Wires the reconcilers together and runs them across every configured chain."""

    def __init__(
        self,
        config: DeploymentConfig,
        registry: ChainRegistry,
        signers: SignerProvider,
        store: AddressStore,
        verification: VerificationLedger,
        clients: Mapping[int, ChainClient],
    ):
        self.config = config
        self.registry = registry
        self.signers = signers
        self.store = store
        self.verification = verification
        self.clients = clients

        self.transactor = Transactor(registry, clients)
        self.deployer = Deployer(config, store, verification, self.transactor, signers)
        self.roles = RoleReconciler(config, store, self.transactor, signers)
        self.settings = SettingsReconciler(config, store, self.transactor, signers)
        relay = WatcherRelay(self.transactor, store, signers, config.evmx_chain_id)
        self.topology = TopologyReconciler(config, store, self.transactor, signers, relay)
        self.transmitter = TransmitterSetup(config, store, self.transactor, signers)
        self.admin = AdminOperations(store, self.transactor, signers, self.settings, self.topology)

    @classmethod
    def from_env(
        cls,
        config: DeploymentConfig,
        artifacts: ArtifactSource,
        environ: Optional[Mapping[str, str]] = None,
        directory: Path = ARTIFACTS_DIR,
    ) -> "Orchestrator":
        registry = ChainRegistry(evmx_chain_id=config.evmx_chain_id, environ=environ)
        signers = SignerProvider.from_env(environ, evmx_chain_id=config.evmx_chain_id)
        clients = {
            chain_id: Web3ChainClient(chain_id, registry.rpc_url(chain_id), artifacts)
            for chain_id in (config.evmx_chain_id, *config.chains)
        }
        return cls(
            config=config,
            registry=registry,
            signers=signers,
            store=AddressStore.for_mode(config.mode, directory),
            verification=VerificationLedger.for_mode(config.mode, directory),
            clients=clients,
        )

    @property
    def evmx_chain_id(self) -> int:
        return self.config.evmx_chain_id

    async def _fan_out(
        self, step: str, task: Callable[[int], Awaitable], chains: Iterable[int]
    ) -> Dict[int, object]:
        """
        Runs ``task`` for every chain concurrently. Per-chain failures are
        logged and returned; fatal errors are re-raised.
        """
        chains = list(chains)
        results = await asyncio.gather(*(task(c) for c in chains), return_exceptions=True)
        outcome = dict()
        for chain_id, result in zip(chains, results):
            if isinstance(result, FATAL_ERRORS):
                raise result
            if isinstance(result, Exception):
                logger.error("%s failed on chain %s: %s", step, chain_id, result)
            outcome[chain_id] = result
        return outcome

    async def _single(
        self, step: str, chain_id: int, task: Callable[[], Awaitable]
    ) -> Dict[int, object]:
        """Runs a step that touches the coordination chain only."""
        try:
            return {chain_id: await task()}
        except RECOVERABLE_ERRORS as e:
            logger.error("%s failed on chain %s: %s", step, chain_id, e)
            return {chain_id: e}

    def _chains(self, chains: Optional[Iterable[int]]) -> List[int]:
        return list(chains) if chains is not None else list(self.config.chains)

    @staticmethod
    def _failures(outcome: Dict[int, object]) -> Dict[int, BaseException]:
        return {c: r for c, r in outcome.items() if isinstance(r, Exception)}

    async def deploy(self, chains: Optional[Iterable[int]] = None) -> Dict[int, object]:
        logger.info("Deploying EVMx contracts")
        outcome = await self._fan_out("deploy", self.deployer.deploy_chain, [self.evmx_chain_id])
        logger.info("Deploying socket contracts")
        outcome.update(
            await self._fan_out("deploy", self.deployer.deploy_chain, self._chains(chains))
        )
        return outcome

    async def grant_roles(self, chains: Optional[Iterable[int]] = None) -> Dict[int, object]:
        logger.info("Setting roles")
        return await self._fan_out(
            "roles", self.roles.reconcile_chain, (self.evmx_chain_id, *self._chains(chains))
        )

    async def configure(self, chains: Optional[Iterable[int]] = None) -> Dict[int, object]:
        logger.info("Configuring EVMx contracts")
        outcome = await self._single("configure", self.evmx_chain_id, self.settings.configure_evmx)
        logger.info("Configuring chain contracts")
        outcome.update(
            await self._fan_out("configure", self.settings.configure_chain, self._chains(chains))
        )
        return outcome

    async def connect(self, chains: Optional[Iterable[int]] = None) -> Optional[str]:
        logger.info("Connecting plugs")
        return await self.topology.reconcile(self.topology.desired_links(self._chains(chains)))

    async def setup_transmitter(self) -> None:
        logger.info("Setting up transmitter")
        await self.transmitter.setup()
        logger.info("Transmitter setup complete")

    async def run(self, steps: Iterable[str] = STEPS) -> Dict[str, Dict[int, BaseException]]:
        """
        Runs the given steps in order. A chain that fails a step is left out of
        the later steps; the other chains carry on. Returns the failures of
        every step, keyed by step and chain.
        """
        steps = list(steps)
        for step in steps:
            if step not in STEPS:
                raise ValueError(f"Unknown step {step}")

        failures = dict()
        skipped = set()
        for step in steps:
            chains = [c for c in self.config.chains if c not in skipped]
            if step == "deploy":
                outcome = await self.deploy(chains)
            elif step == "roles":
                outcome = await self.grant_roles(chains)
            elif step == "configure":
                outcome = await self.configure(chains)
            elif step == "connect":
                outcome = await self._single(step, self.evmx_chain_id, lambda: self.connect(chains))
            else:
                outcome = await self._single(step, self.evmx_chain_id, self.setup_transmitter)

            step_failures = self._failures(outcome)
            if step_failures:
                failures[step] = step_failures
                skipped.update(step_failures)
                logger.warning(
                    "%s failed on chain(s) %s; continuing without them",
                    step,
                    ", ".join(str(c) for c in step_failures),
                )
        return failures

    async def disconnect(self, chains: Iterable[int]) -> Dict[int, object]:
        logger.info("Disconnecting plugs")
        chains = list(chains)
        return await self._single(
            "disconnect", self.evmx_chain_id, lambda: self.admin.disconnect(chains)
        )

    async def disable_switchboards(
        self, chains: Optional[Iterable[int]] = None
    ) -> Dict[int, object]:
        logger.info("Disabling fast switchboards")
        return await self._fan_out(
            "disable-switchboard", self.admin.disable_switchboard, self._chains(chains)
        )

    async def rescue(
        self,
        chains: Optional[Iterable[int]] = None,
        amount: Optional[int] = None,
        send: bool = False,
    ) -> Dict[int, object]:
        async def _rescue(chain_id: int) -> Dict[str, int]:
            return await self.admin.rescue(chain_id, amount, send)

        return await self._fan_out("rescue", _rescue, self._chains(chains))

    async def update_start_blocks(self) -> Dict[int, int]:
        """Moves the start block of every ledger chain to its latest height."""

        async def _update(chain_id: int) -> int:
            latest = await self.clients[chain_id].block_number()
            return await self.store.set_start_block(chain_id, latest)

        chains = list()
        for chain_id in self.store.chains():
            if chain_id in self.clients:
                chains.append(chain_id)
            else:
                logger.warning("Skipping chain %s: not part of this deployment", chain_id)
        outcome = await self._fan_out("update-start-blocks", _update, chains)
        return {c: r for c, r in outcome.items() if not isinstance(r, Exception)}

    async def attestations(self, tx_hash: str, chain_id: int) -> List[Attestation]:
        return await get_attestations(self.transactor.client(chain_id), tx_hash)

    def validate(self, artifacts: ArtifactSource) -> None:
        self.config.validate(artifacts, self.store)

    async def close(self) -> None:
        for client in self.clients.values():
            await client.close()
