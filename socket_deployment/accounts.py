import os
from typing import Mapping, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from socket_deployment.constants import (
    EVMX_CHAIN_ID,
    SOCKET_SIGNER_ENVVAR,
    TRANSMITTER_KEY_ENVVAR,
    WATCHER_KEY_ENVVAR,
)


class SignerConfigError(ValueError):
    pass


def _account_from_key(private_key: Optional[str], envvar: str) -> LocalAccount:
    if not private_key:
        raise SignerConfigError(f"{envvar} is not set.")
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as e:
        raise SignerConfigError(f"{envvar} is not a valid private key.") from e


class SignerProvider:
    """
    Chain-scoped transaction signers: one key for the socket chains, one for
    the coordination chain watcher and one for the transmitter.
    """

    def __init__(
        self,
        socket_key: Optional[str] = None,
        watcher_key: Optional[str] = None,
        transmitter_key: Optional[str] = None,
        evmx_chain_id: int = EVMX_CHAIN_ID,
    ):
        self._keys = {
            SOCKET_SIGNER_ENVVAR: socket_key,
            WATCHER_KEY_ENVVAR: watcher_key,
            TRANSMITTER_KEY_ENVVAR: transmitter_key,
        }
        self._accounts = dict()
        self.evmx_chain_id = evmx_chain_id

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, evmx_chain_id: int = EVMX_CHAIN_ID
    ) -> "SignerProvider":
        environ = os.environ if environ is None else environ
        return cls(
            socket_key=environ.get(SOCKET_SIGNER_ENVVAR),
            watcher_key=environ.get(WATCHER_KEY_ENVVAR),
            transmitter_key=environ.get(TRANSMITTER_KEY_ENVVAR),
            evmx_chain_id=evmx_chain_id,
        )

    def _get(self, envvar: str) -> LocalAccount:
        account = self._accounts.get(envvar)
        if account is None:
            account = _account_from_key(self._keys[envvar], envvar)
            self._accounts[envvar] = account
        return account

    def socket_signer(self, chain_id: int) -> LocalAccount:
        # the same key signs on every socket chain
        return self._get(SOCKET_SIGNER_ENVVAR)

    def watcher_signer(self) -> LocalAccount:
        return self._get(WATCHER_KEY_ENVVAR)

    def transmitter_signer(self) -> LocalAccount:
        return self._get(TRANSMITTER_KEY_ENVVAR)

    def signer_for(self, chain_id: int) -> LocalAccount:
        """The watcher owns every coordination chain write; socket chains use the socket key."""
        if chain_id == self.evmx_chain_id:
            return self.watcher_signer()
        return self.socket_signer(chain_id)
