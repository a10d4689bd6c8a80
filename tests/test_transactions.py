import asyncio

import pytest
from aiohttp import ClientConnectionError
from eth_account import Account
from web3.exceptions import Web3RPCError

from socket_deployment.artifacts import ArtifactError
from socket_deployment.chain import ContractCall
from socket_deployment.networks import ChainSlug
from socket_deployment.transactions import (
    RECOVERABLE_ERRORS,
    ConfirmationTimeout,
    RevertedError,
    SimulationError,
    TransactionError,
    Transactor,
    UnderpricedError,
)
from tests.conftest import CHAIN_A, CHAIN_B, EVMX, SOCKET_KEY, TRANSMITTER_KEY, FakeChain, address, run


@pytest.fixture
def signer():
    return Account.from_key(SOCKET_KEY)


def _call(function="setSocket", contract_name="Configurations"):
    return ContractCall(contract_name, address(contract_name), function, (CHAIN_A, address("socket")))


def test_fixed_gas_price(transactor):
    assert run(transactor.overrides(CHAIN_A)) == {"gasPrice": 800_000_000}


def test_live_gas_price(transactor, chain_b):
    chain_b.price = 7
    assert run(transactor.overrides(CHAIN_B)) == {"gasPrice": 7}


def test_evmx_gas_is_free(transactor):
    assert run(transactor.overrides(EVMX)) == {"type": 0, "gasPrice": 0}


def test_legacy_chain_overrides(registry):
    sepolia = FakeChain(ChainSlug.SEPOLIA, gas_price=100)
    transactor = Transactor(registry, {ChainSlug.SEPOLIA: sepolia})
    assert run(transactor.overrides(ChainSlug.SEPOLIA)) == {
        "type": 1,
        "gas": 2_000_000,
        "gasPrice": 150,
        "accessList": [],
    }


def test_submit(transactor, chain_b, signer):
    receipt = run(transactor.submit(CHAIN_B, _call(), signer))

    assert receipt.status == 1
    ((request, params),) = chain_b.sent
    assert request == _call()
    assert params["gas"] == 21_000
    assert params["gasPrice"] == chain_b.price


def test_configured_gas_limit_wins(registry, signer):
    sepolia = FakeChain(ChainSlug.SEPOLIA)
    transactor = Transactor(registry, {ChainSlug.SEPOLIA: sepolia})
    run(transactor.submit(ChainSlug.SEPOLIA, _call(), signer))
    ((_, params),) = sepolia.sent
    assert params["gas"] == 2_000_000


def test_simulation_revert_sends_nothing(transactor, chain_a, signer):
    chain_a.reverts.add("setSocket")
    with pytest.raises(SimulationError):
        run(transactor.submit(CHAIN_A, _call(), signer))
    assert chain_a.sent == []


def test_underpriced(transactor, chain_a, signer):
    chain_a.send_error = ValueError("replacement transaction underpriced")
    with pytest.raises(UnderpricedError):
        run(transactor.submit(CHAIN_A, _call(), signer))


def test_rejected_transaction(transactor, chain_a, signer):
    chain_a.send_error = ValueError("nonce too low")
    with pytest.raises(TransactionError) as error:
        run(transactor.submit(CHAIN_A, _call(), signer))
    assert not isinstance(error.value, UnderpricedError)
    assert error.value.chain_id == CHAIN_A


def test_confirmation_timeout(transactor, chain_a, signer):
    chain_a.confirm = False
    with pytest.raises(ConfirmationTimeout) as error:
        run(transactor.submit(CHAIN_A, _call(), signer))
    assert error.value.tx_hash.startswith("0x")
    assert len(chain_a.sent) == 1


def test_reverted_receipt(transactor, chain_a, signer):
    chain_a.receipt_status = 0
    with pytest.raises(RevertedError) as error:
        run(transactor.submit(CHAIN_A, _call(), signer))
    assert error.value.receipt.status == 0


def test_unknown_chain(transactor, signer):
    with pytest.raises(ValueError):
        run(transactor.submit(ChainSlug.BASE, _call(), signer))


def test_writes_by_one_signer_are_serialized(transactor, evmx, signer):
    async def _submit_many():
        await asyncio.gather(*(transactor.submit(EVMX, _call(), signer) for _ in range(5)))

    run(_submit_many())
    assert len(evmx.sent) == 5
    assert evmx.max_inflight == 1


def test_different_signers_do_not_wait_for_each_other(transactor, evmx, signer):
    other = Account.from_key(TRANSMITTER_KEY)

    async def _submit_both():
        await asyncio.gather(
            transactor.submit(EVMX, _call(), signer), transactor.submit(EVMX, _call(), other)
        )

    run(_submit_both())
    assert evmx.max_inflight == 2


def test_node_error_during_simulation(transactor, chain_a, signer):
    error = Web3RPCError("insufficient funds for gas * price + value")
    chain_a.simulate_errors["setSocket"] = error
    with pytest.raises(SimulationError, match="insufficient funds"):
        run(transactor.submit(CHAIN_A, _call(), signer))
    assert chain_a.sent == []


def test_underpriced_during_simulation(transactor, chain_a, signer):
    chain_a.simulate_errors["setSocket"] = Web3RPCError("max fee per gas less than block base fee")
    with pytest.raises(UnderpricedError):
        run(transactor.submit(CHAIN_A, _call(), signer))


def test_transport_error_on_send(transactor, chain_a, signer):
    chain_a.send_error = ClientConnectionError("Connection reset by peer")
    with pytest.raises(TransactionError, match="Connection reset"):
        run(transactor.submit(CHAIN_A, _call(), signer))


def test_missing_artifact_is_not_wrapped(transactor, chain_a, signer):
    chain_a.simulate_errors["setSocket"] = ArtifactError("No artifact for Configurations")
    with pytest.raises(ArtifactError):
        run(transactor.submit(CHAIN_A, _call(), signer))


def test_node_errors_are_recoverable():
    assert issubclass(Web3RPCError, RECOVERABLE_ERRORS)
    assert issubclass(ClientConnectionError, RECOVERABLE_ERRORS)
    assert not issubclass(ArtifactError, RECOVERABLE_ERRORS)
