import logging
from typing import Dict

from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress
from eth_utils import from_wei

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ChainClient, ContractCall, ContractDeployment
from socket_deployment.config import ContractSpec, DeploymentConfig
from socket_deployment.constants import IMPLEMENTATION_SLOT, IMPLEMENTATION_SUFFIX, PROXY_FACTORY
from socket_deployment.params import ResolutionContext, resolve_params
from socket_deployment.registry import AddressStore
from socket_deployment.transactions import TransactionError, Transactor
from socket_deployment.utils import (
    StateMismatchError,
    check_address_exists,
    is_zero,
    same_identifier,
    to_address,
)
from socket_deployment.verification import VerificationJob, VerificationLedger

logger = logging.getLogger(__name__)


class DeployError(RuntimeError):
    def __init__(self, chain_id: int, contract_name: str, message: str):
        self.chain_id = chain_id
        self.contract_name = contract_name
        super().__init__(f"Failed to deploy {contract_name} on chain {chain_id}: {message}")


def implementation_key(contract_name: str) -> str:
    return f"{contract_name}{IMPLEMENTATION_SUFFIX}"


class Deployer:
    """
    Brings the contracts of a chain to their configured state, reusing whatever
    the ledger already holds and recording every new address as soon as it exists.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        store: AddressStore,
        verification: VerificationLedger,
        transactor: Transactor,
        signers: SignerProvider,
    ):
        self.config = config
        self.store = store
        self.verification = verification
        self.transactor = transactor
        self.signers = signers

    def _client(self, chain_id: int) -> ChainClient:
        return self.transactor.client(chain_id)

    def _signer(self, chain_id: int) -> LocalAccount:
        return self.signers.signer_for(chain_id)

    def _context(self, chain_id: int) -> ResolutionContext:
        return ResolutionContext(
            chain_id=chain_id,
            deployer=self._signer(chain_id).address,
            store=self.store,
            evmx_chain_id=self.config.evmx_chain_id,
        )

    async def log_balance(self, chain_id: int) -> int:
        signer = self._signer(chain_id)
        balance = await self._client(chain_id).get_balance(signer.address)
        logger.info(
            "Deployer %s on chain %s has %s ETH", signer.address, chain_id, from_wei(balance, "ether")
        )
        return balance

    async def implementation_of(self, chain_id: int, proxy: str) -> ChecksumAddress:
        """Reads the logic contract address from the proxy's EIP-1967 implementation slot."""
        slot = await self._client(chain_id).get_storage_at(proxy, IMPLEMENTATION_SLOT)
        if is_zero(slot):
            raise StateMismatchError(
                f"Implementation slot for contract at {proxy} is empty. "
                "Are you sure this is an EIP1967-compatible proxy?"
            )
        return to_address(slot)

    async def _get_or_deploy(
        self, chain_id: int, key: str, spec: ContractSpec
    ) -> ChecksumAddress:
        address = self.store.get(chain_id, key)
        if address:
            logger.info("%s found on %s at %s", key, chain_id, address)
            return address

        resolved = resolve_params(spec.constructor_params, self._context(chain_id))
        args = tuple(resolved.values())
        request = ContractDeployment(spec.name, spec.path, args)
        receipt = await self.transactor.submit(chain_id, request, self._signer(chain_id))
        if not receipt.contract_address:
            raise DeployError(chain_id, spec.name, f"no contract address in {receipt.tx_hash}")

        await self.store.record(chain_id, key, receipt.contract_address)
        await self.verification.record(
            chain_id, VerificationJob(receipt.contract_address, spec.name, spec.path, list(args))
        )
        logger.info("%s deployed on %s at %s", key, chain_id, receipt.contract_address)
        return receipt.contract_address

    def _encode(self, chain_id: int, spec: ContractSpec, target: str, method: str, params) -> bytes:
        resolved = resolve_params(params, self._context(chain_id))
        call = ContractCall(spec.name, target, method, tuple(resolved.values()))
        return self._client(chain_id).encode(call)

    async def _ensure_proxy(self, chain_id: int, spec: ContractSpec) -> ChecksumAddress:
        implementation = await self._get_or_deploy(chain_id, implementation_key(spec.name), spec)
        factory = check_address_exists(self.store.get(chain_id, PROXY_FACTORY), PROXY_FACTORY)
        signer = self._signer(chain_id)

        proxy = self.store.get(chain_id, spec.name)
        if proxy:
            current = await self.implementation_of(chain_id, proxy)
            logger.info(
                "%s proxy %s: current implementation %s, wanted %s",
                spec.name,
                proxy,
                current,
                implementation,
            )
            if same_identifier(current, implementation):
                return proxy

            if spec.reinitializer_params is not None:
                data = self._encode(
                    chain_id, spec, implementation, spec.reinitializer, spec.reinitializer_params
                )
                call = ContractCall(
                    PROXY_FACTORY, factory, "upgradeAndCall", (proxy, implementation, data)
                )
            else:
                call = ContractCall(PROXY_FACTORY, factory, "upgrade", (proxy, implementation))
            receipt = await self.transactor.submit(chain_id, call, signer)
            logger.info(
                "Upgraded %s on %s to %s: %s", spec.name, chain_id, implementation, receipt.tx_hash
            )
            return proxy

        init_data = self._encode(
            chain_id, spec, implementation, spec.initializer, spec.initializer_params
        )
        call = ContractCall(
            PROXY_FACTORY, factory, "deployAndCall", (implementation, signer.address, init_data)
        )
        receipt = await self.transactor.submit(chain_id, call, signer)
        events = self._client(chain_id).decode_events(receipt, PROXY_FACTORY, factory, "Deployed")
        if not events:
            raise DeployError(chain_id, spec.name, f"no Deployed event in {receipt.tx_hash}")
        proxy = events[0]["proxy"]
        await self.store.record(chain_id, spec.name, proxy)
        logger.info("%s proxy deployed on %s at %s", spec.name, chain_id, proxy)
        return self.store.get(chain_id, spec.name)

    async def ensure_deployed(self, spec: ContractSpec, chain_id: int) -> ChecksumAddress:
        """
        Returns the address of a contract on a chain, deploying or upgrading it
        as needed. Raises DeployError; ledger failures propagate unchanged.
        """
        try:
            if spec.proxied:
                return await self._ensure_proxy(chain_id, spec)
            return await self._get_or_deploy(chain_id, spec.name, spec)
        except (TransactionError, StateMismatchError) as e:
            raise DeployError(chain_id, spec.name, str(e)) from e

    async def deploy_chain(self, chain_id: int) -> Dict[str, str]:
        """
        Deploys every configured contract on one chain in order. Progress is
        checkpointed contract by contract, so a failed run can simply be repeated.
        """
        logger.info("Deploying contracts on chain %s", chain_id)
        await self.log_balance(chain_id)
        for spec in self.config.contracts_for(chain_id):
            await self.ensure_deployed(spec, chain_id)

        block_number = await self._client(chain_id).block_number()
        await self.store.ensure_start_block(chain_id, block_number)
        return self.store.chain_addresses(chain_id)
