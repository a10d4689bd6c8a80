import logging
from typing import Any, List, NamedTuple, Optional, Tuple

from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes

from socket_deployment.accounts import SignerProvider
from socket_deployment.chain import ContractCall
from socket_deployment.config import DeploymentConfig, SettingSpec
from socket_deployment.constants import FAST_SWITCHBOARD_TYPE, Contracts
from socket_deployment.networks import chain_slug_from_id
from socket_deployment.params import ResolutionContext, resolve_param
from socket_deployment.registry import AddressStore
from socket_deployment.transactions import RECOVERABLE_ERRORS, Transactor
from socket_deployment.utils import check_address_exists, same_value, to_bytes32

logger = logging.getLogger(__name__)

MAX_MSG_VALUE_LIMIT_CONSTANT = "MAX_MSG_VALUE_LIMIT"


class Setting(NamedTuple):
    """A contract getter that must return ``value``, and the setter that makes it so."""

    chain_id: int
    contract_name: str
    address: str
    getter: str
    value: Any
    setter: str
    getter_args: Tuple[Any, ...] = ()
    setter_args: Optional[Tuple[Any, ...]] = None

    def getter_call(self) -> ContractCall:
        return ContractCall(self.contract_name, self.address, self.getter, self.getter_args)

    def setter_call(self) -> ContractCall:
        args = self.setter_args
        if args is None:
            args = (*self.getter_args, self.value)
        return ContractCall(self.contract_name, self.address, self.setter, args)


class SettingsReconciler:
    """Reads contract getters and calls the matching setters only where values differ."""

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

    async def ensure_setting(self, setting: Setting, signer: LocalAccount) -> bool:
        client = self.transactor.client(setting.chain_id)
        current = await client.read(setting.getter_call())
        if same_value(current, setting.value):
            logger.info(
                "%s.%s on %s is already set to %s",
                setting.contract_name,
                setting.getter,
                setting.chain_id,
                setting.value,
            )
            return False

        logger.info(
            "%s.%s on %s is %s, required %s",
            setting.contract_name,
            setting.getter,
            setting.chain_id,
            current,
            setting.value,
        )
        receipt = await self.transactor.submit(setting.chain_id, setting.setter_call(), signer)
        logger.info(
            "Set %s.%s on %s: %s",
            setting.contract_name,
            setting.setter,
            setting.chain_id,
            receipt.tx_hash,
        )
        return True

    async def ensure_all(self, settings: List[Setting], signer: LocalAccount) -> int:
        changed = 0
        for setting in settings:
            try:
                if await self.ensure_setting(setting, signer):
                    changed += 1
            except RECOVERABLE_ERRORS as e:
                logger.error(
                    "Could not update %s.%s on %s: %s",
                    setting.contract_name,
                    setting.getter,
                    setting.chain_id,
                    e,
                )
        return changed

    #
    # Coordination chain
    #

    def _evmx_address(self, contract_name: str) -> str:
        return check_address_exists(
            self.store.get(self.config.evmx_chain_id, contract_name), contract_name
        )

    def resolve(self, spec: SettingSpec) -> Setting:
        evmx = self.config.evmx_chain_id
        context = ResolutionContext(
            chain_id=evmx,
            deployer=self.signers.watcher_signer().address,
            store=self.store,
            evmx_chain_id=evmx,
        )
        setter_args = spec.setter_args
        if setter_args is not None:
            setter_args = tuple(resolve_param(list(setter_args), context))
        return Setting(
            chain_id=evmx,
            contract_name=spec.contract,
            address=self._evmx_address(spec.contract),
            getter=spec.getter,
            value=resolve_param(spec.value, context),
            setter=spec.setter,
            getter_args=tuple(resolve_param(list(spec.getter_args), context)),
            setter_args=setter_args,
        )

    async def configure_evmx(self) -> int:
        """Wires the coordination chain contracts to each other."""
        settings = list()
        for spec in self.config.evmx_settings:
            try:
                settings.append(self.resolve(spec))
            except RECOVERABLE_ERRORS as e:
                logger.error("Skipping %s.%s: %s", spec.contract, spec.getter, e)
        return await self.ensure_all(settings, self.signers.watcher_signer())

    def evmx_pointer(
        self, contract_name: str, getter: str, setter: str, key_args: tuple, value: str
    ) -> Setting:
        """A bytes32 record on the coordination chain, keyed by ``key_args``."""
        return Setting(
            chain_id=self.config.evmx_chain_id,
            contract_name=contract_name,
            address=self._evmx_address(contract_name),
            getter=getter,
            value=value,
            setter=setter,
            getter_args=key_args,
            setter_args=(*key_args, HexBytes(value)),
        )

    def chain_pointer_settings(self, chain_id: int) -> List[Setting]:
        """Coordination chain records of one socket chain's contracts."""
        addresses = self.store.chain_addresses(chain_id)
        settings = list()

        def _pointer(contract_name, getter, setter, key_args, deployed_name):
            deployed = addresses.get(deployed_name)
            if not deployed:
                logger.info("%s not deployed on %s", deployed_name, chain_id)
                return
            settings.append(
                self.evmx_pointer(contract_name, getter, setter, key_args, to_bytes32(deployed))
            )

        slug = chain_slug_from_id(chain_id)
        fast = HexBytes(FAST_SWITCHBOARD_TYPE)
        _pointer(
            Contracts.Configurations,
            "switchboards",
            "setSwitchboard",
            (slug, fast),
            Contracts.FastSwitchboard,
        )
        _pointer(Contracts.Configurations, "sockets", "setSocket", (slug,), Contracts.Socket)
        _pointer(Contracts.FeesManager, "feesPlugs", "setFeesPlug", (slug,), Contracts.FeesPlug)
        _pointer(
            Contracts.WritePrecompile,
            "contractFactoryPlugs",
            "setContractFactoryPlugs",
            (slug,),
            Contracts.ContractFactoryPlug,
        )

        limit = self.config.constants.get(MAX_MSG_VALUE_LIMIT_CONSTANT)
        if limit is not None:
            settings.append(
                Setting(
                    chain_id=self.config.evmx_chain_id,
                    contract_name=Contracts.WritePrecompile,
                    address=self._evmx_address(Contracts.WritePrecompile),
                    getter="chainMaxMsgValueLimit",
                    value=int(limit),
                    setter="updateChainMaxMsgValueLimits",
                    getter_args=(slug,),
                    setter_args=(slug, int(limit)),
                )
            )
        return settings

    #
    # Socket chains
    #

    async def register_switchboard(self, chain_id: int) -> bool:
        client = self.transactor.client(chain_id)
        socket = check_address_exists(self.store.get(chain_id, Contracts.Socket), Contracts.Socket)
        switchboard = check_address_exists(
            self.store.get(chain_id, Contracts.FastSwitchboard), Contracts.FastSwitchboard
        )
        status = await client.read(
            ContractCall(Contracts.Socket, socket, "isValidSwitchboard", (switchboard,))
        )
        if status:
            logger.info("Switchboard %s already registered on %s", switchboard, chain_id)
            return False

        call = ContractCall(Contracts.FastSwitchboard, switchboard, "registerSwitchboard")
        receipt = await self.transactor.submit(chain_id, call, self.signers.socket_signer(chain_id))
        logger.info("Registered switchboard %s on %s: %s", switchboard, chain_id, receipt.tx_hash)
        return True

    def fee_token_settings(self, chain_id: int) -> List[Setting]:
        tokens = self.config.fee_tokens_for(chain_id)
        if not tokens:
            return list()
        fees_plug = check_address_exists(
            self.store.get(chain_id, Contracts.FeesPlug), Contracts.FeesPlug
        )
        return [
            Setting(
                chain_id=chain_id,
                contract_name=Contracts.FeesPlug,
                address=fees_plug,
                getter="whitelistedTokens",
                value=True,
                setter="whitelistToken",
                getter_args=(token,),
                setter_args=(token,),
            )
            for token in tokens
        ]

    async def configure_chain(self, chain_id: int) -> int:
        """Registers the switchboard, whitelists fee tokens and records the chain on EVMx."""
        changed = 0
        try:
            if await self.register_switchboard(chain_id):
                changed += 1
        except RECOVERABLE_ERRORS as e:
            logger.error("Could not register switchboard on %s: %s", chain_id, e)

        try:
            changed += await self.ensure_all(
                self.fee_token_settings(chain_id), self.signers.socket_signer(chain_id)
            )
        except RECOVERABLE_ERRORS as e:
            logger.error("Could not whitelist fee tokens on %s: %s", chain_id, e)

        try:
            pointers = self.chain_pointer_settings(chain_id)
        except RECOVERABLE_ERRORS as e:
            logger.error("Could not record chain %s on EVMx: %s", chain_id, e)
            return changed
        changed += await self.ensure_all(pointers, self.signers.watcher_signer())
        return changed
