import pytest
from eth_utils import to_checksum_address
from web3.exceptions import Web3RPCError

from socket_deployment.constants import Roles
from socket_deployment.roles import RoleGrant, RoleReconciler
from socket_deployment.utils import role_hash
from tests.conftest import CHAIN_A, EVMX, RELAYER_ADDRESS, WATCHER_ADDRESS, address, run, seed_ledger

SOCKET = address("socket")
SWITCHBOARD = address("switchboard")
FEES_PLUG = address("fees-plug")
WATCHER = address("watcher")


@pytest.fixture
def roles(config, store, transactor, signers):
    seed_ledger(
        store,
        {
            CHAIN_A: {"Socket": SOCKET, "FastSwitchboard": SWITCHBOARD, "FeesPlug": FEES_PLUG},
            EVMX: {"Watcher": WATCHER},
        },
    )
    return RoleReconciler(config, store, transactor, signers)


def test_required_grants(roles, signers):
    signer = signers.socket_signer(CHAIN_A).address
    grants = roles.required_grants(CHAIN_A, signer)
    watcher = to_checksum_address(WATCHER_ADDRESS)

    assert RoleGrant("FastSwitchboard", SWITCHBOARD, Roles.WATCHER_ROLE, watcher) in grants
    assert RoleGrant("FastSwitchboard", SWITCHBOARD, Roles.RESCUE_ROLE, signer) in grants
    assert RoleGrant("Socket", SOCKET, Roles.GOVERNANCE_ROLE, signer) in grants
    assert RoleGrant("FeesPlug", FEES_PLUG, Roles.RESCUE_ROLE, signer) in grants
    # ContractFactoryPlug is not deployed
    assert all(g.contract_name != "ContractFactoryPlug" for g in grants)
    assert len(grants) == 5


def test_evmx_grants(roles, signers):
    grants = roles.required_grants(EVMX, signers.watcher_signer().address)
    assert grants == [
        RoleGrant("Watcher", WATCHER, Roles.WATCHER_ROLE, to_checksum_address(RELAYER_ADDRESS))
    ]


def test_reconcile_grants_missing_roles_once(roles, chain_a):
    assert run(roles.reconcile_chain(CHAIN_A)) == 5
    assert [c.function for c in chain_a.calls] == ["grantRole"] * 5

    assert run(roles.reconcile_chain(CHAIN_A)) == 0
    assert len(chain_a.calls) == 5


def test_existing_role_is_skipped(roles, chain_a, signers):
    signer = signers.socket_signer(CHAIN_A).address
    chain_a.roles.add((SOCKET.lower(), role_hash(Roles.GOVERNANCE_ROLE), signer.lower()))

    assert run(roles.reconcile_chain(CHAIN_A)) == 4
    assert not any(
        c.address == SOCKET and c.args[0] == role_hash(Roles.GOVERNANCE_ROLE) for c in chain_a.calls
    )


def test_failed_grant_does_not_stop_the_others(roles, chain_a):
    chain_a.reverts.add("Socket")
    assert run(roles.reconcile_chain(CHAIN_A)) == 3
    assert all(c.contract_name != "Socket" for c in chain_a.calls)


def test_evmx_roles_signed_by_watcher(roles, evmx, signers):
    assert run(roles.reconcile_chain(EVMX)) == 1
    ((grant, _),) = evmx.sent
    assert grant.args == (role_hash(Roles.WATCHER_ROLE), to_checksum_address(RELAYER_ADDRESS))
    assert (WATCHER.lower(), role_hash(Roles.WATCHER_ROLE), RELAYER_ADDRESS) in evmx.roles
    assert evmx.senders == [signers.watcher_signer().address]


def test_node_error_on_one_grant_does_not_stop_the_others(roles, chain_a):
    chain_a.simulate_errors["Socket"] = Web3RPCError("insufficient funds for gas * price + value")
    assert run(roles.reconcile_chain(CHAIN_A)) == 3
    assert len(chain_a.calls) == 3
    assert all(c.contract_name != "Socket" for c in chain_a.calls)
