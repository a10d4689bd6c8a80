import logging
from typing import Dict, List, NamedTuple

from eth_account.signers.local import LocalAccount

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ContractCall
from socket_deployment.config import DeploymentConfig
from socket_deployment.constants import Contracts, Roles
from socket_deployment.registry import AddressStore
from socket_deployment.transactions import RECOVERABLE_ERRORS, Transactor
from socket_deployment.utils import role_hash

logger = logging.getLogger(__name__)

REQUIRED_ROLES: Dict[str, List[str]] = {
    Contracts.FastSwitchboard: [Roles.WATCHER_ROLE, Roles.RESCUE_ROLE],
    Contracts.Socket: [Roles.GOVERNANCE_ROLE, Roles.RESCUE_ROLE],
    Contracts.FeesPlug: [Roles.RESCUE_ROLE],
    Contracts.ContractFactoryPlug: [Roles.RESCUE_ROLE],
}


class RoleGrant(NamedTuple):
    contract_name: str
    address: str
    role: str
    target: str


class RoleReconciler:
    """Grants the access-control roles each deployed contract needs, and nothing more."""

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

    async def ensure_role(
        self,
        chain_id: int,
        contract_name: str,
        address: str,
        role: str,
        target: str,
        signer: LocalAccount,
    ) -> bool:
        """Grants ``role`` to ``target`` unless it already holds it. Returns True if granted."""
        role_id = role_hash(role)
        client = self.transactor.client(chain_id)
        has_role = await client.read(ContractCall(contract_name, address, "hasRole", (role_id, target)))
        if has_role:
            logger.info("%s already has %s on %s (%s)", target, role, contract_name, chain_id)
            return False

        grant = ContractCall(contract_name, address, "grantRole", (role_id, target))
        receipt = await self.transactor.submit(chain_id, grant, signer)
        logger.info(
            "Granted %s to %s on %s (%s): %s", role, target, contract_name, chain_id, receipt.tx_hash
        )
        return True

    def required_grants(self, chain_id: int, signer_address: str) -> List[RoleGrant]:
        grants = list()
        if chain_id == self.config.evmx_chain_id:
            watcher = self.store.get(chain_id, Contracts.Watcher)
            if watcher is None:
                return grants
            for relayer in self.config.relayers:
                grants.append(RoleGrant(Contracts.Watcher, watcher, Roles.WATCHER_ROLE, relayer))
            return grants

        for contract_name, roles in REQUIRED_ROLES.items():
            address = self.store.get(chain_id, contract_name)
            if address is None:
                continue
            for role in roles:
                if contract_name == Contracts.FastSwitchboard and role == Roles.WATCHER_ROLE:
                    target = self.config.watcher
                else:
                    target = signer_address
                grants.append(RoleGrant(contract_name, address, role, target))
        return grants

    async def reconcile_chain(self, chain_id: int) -> int:
        """Ensures every required role on one chain; failures are logged and skipped."""
        signer = self.signers.signer_for(chain_id)
        granted = 0
        for grant in self.required_grants(chain_id, signer.address):
            try:
                if await self.ensure_role(chain_id, *grant, signer=signer):
                    granted += 1
            except RECOVERABLE_ERRORS as e:
                logger.error(
                    "Could not grant %s to %s on %s (%s): %s",
                    grant.role,
                    grant.target,
                    grant.contract_name,
                    chain_id,
                    e,
                )
        return granted
