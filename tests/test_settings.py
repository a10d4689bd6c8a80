import pytest
from eth_utils import to_checksum_address
from hexbytes import HexBytes

from socket_deployment.constants import FAST_SWITCHBOARD_TYPE
from socket_deployment.settings import Setting, SettingsReconciler
from socket_deployment.utils import to_bytes32
from tests.conftest import CHAIN_A, CHAIN_B, EVMX, FEE_TOKEN, address, run, seed_ledger

EVMX_CONTRACTS = {
    name: address(name)
    for name in ("AddressResolver", "Watcher", "Configurations", "FeesManager", "WritePrecompile")
}
SOCKET = address("socket")
SWITCHBOARD = address("switchboard")
FEES_PLUG = address("fees-plug")


@pytest.fixture
def settings(config, store, transactor, signers):
    seed_ledger(
        store,
        {
            EVMX: EVMX_CONTRACTS,
            CHAIN_A: {"Socket": SOCKET, "FastSwitchboard": SWITCHBOARD, "FeesPlug": FEES_PLUG},
        },
    )
    return SettingsReconciler(config, store, transactor, signers)


def test_setter_args_default_to_getter_args_and_value():
    setting = Setting(
        CHAIN_A, "FeesPlug", FEES_PLUG, "whitelistedTokens", True, "whitelistToken", (FEE_TOKEN,)
    )
    assert setting.getter_call().args == (FEE_TOKEN,)
    assert setting.setter_call().args == (FEE_TOKEN, True)


def test_configure_evmx(settings, evmx, signers):
    assert run(settings.configure_evmx()) == 1

    (call,) = evmx.calls
    assert call.contract_name == "AddressResolver"
    assert call.function == "setWatcher"
    assert call.args == (EVMX_CONTRACTS["Watcher"],)
    assert evmx.senders == [signers.watcher_signer().address]

    assert run(settings.configure_evmx()) == 0
    assert len(evmx.calls) == 1


def test_configure_evmx_matches_any_case(settings, evmx):
    watcher = EVMX_CONTRACTS["Watcher"].lower()
    evmx.set_value(EVMX_CONTRACTS["AddressResolver"], "watcher__", (), watcher)
    assert run(settings.configure_evmx()) == 0


def test_chain_pointer_settings(settings):
    pointers = {(s.contract_name, s.getter): s for s in settings.chain_pointer_settings(CHAIN_A)}

    switchboard = pointers[("Configurations", "switchboards")]
    assert switchboard.getter_args == (CHAIN_A, HexBytes(FAST_SWITCHBOARD_TYPE))
    assert switchboard.value == to_bytes32(SWITCHBOARD)
    assert switchboard.setter_call().args == (
        CHAIN_A,
        HexBytes(FAST_SWITCHBOARD_TYPE),
        HexBytes(to_bytes32(SWITCHBOARD)),
    )

    assert pointers[("Configurations", "sockets")].value == to_bytes32(SOCKET)
    assert pointers[("FeesManager", "feesPlugs")].value == to_bytes32(FEES_PLUG)
    # ContractFactoryPlug is not deployed
    assert ("WritePrecompile", "contractFactoryPlugs") not in pointers

    limit = pointers[("WritePrecompile", "chainMaxMsgValueLimit")]
    assert limit.value == 1000
    assert limit.setter_call().args == (CHAIN_A, 1000)


def test_configure_chain(settings, chain_a, evmx, signers):
    changed = run(settings.configure_chain(CHAIN_A))

    # switchboard registration, one fee token, four EVMx pointers
    assert changed == 6
    assert [c.function for c in chain_a.calls] == ["registerSwitchboard", "whitelistToken"]
    assert chain_a.calls[1].args == (to_checksum_address(FEE_TOKEN),)
    assert set(chain_a.senders) == {signers.socket_signer(CHAIN_A).address}
    assert sorted(c.function for c in evmx.calls) == [
        "setFeesPlug",
        "setSocket",
        "setSwitchboard",
        "updateChainMaxMsgValueLimits",
    ]
    assert set(evmx.senders) == {signers.watcher_signer().address}

    assert run(settings.configure_chain(CHAIN_A)) == 0
    assert len(chain_a.calls) == 2
    assert len(evmx.calls) == 4


def test_configure_chain_without_fee_tokens(settings, store, chain_b, evmx):
    seed_ledger(
        store,
        {EVMX: EVMX_CONTRACTS, CHAIN_B: {"Socket": SOCKET, "FastSwitchboard": SWITCHBOARD}},
    )
    assert run(settings.configure_chain(CHAIN_B)) == 4
    assert [c.function for c in chain_b.calls] == ["registerSwitchboard"]


def test_failed_setting_does_not_stop_the_others(settings, chain_a, evmx):
    evmx.reverts.add("setSocket")
    assert run(settings.configure_chain(CHAIN_A)) == 5
    assert "setSocket" not in [c.function for c in evmx.calls]


def test_missing_evmx_contract(settings, store, chain_a, evmx):
    seed_ledger(
        store, {CHAIN_A: {"Socket": SOCKET, "FastSwitchboard": SWITCHBOARD, "FeesPlug": FEES_PLUG}}
    )
    # only the socket chain side can be reconciled
    assert run(settings.configure_chain(CHAIN_A)) == 2
    assert evmx.sent == []
    assert run(settings.configure_evmx()) == 0
