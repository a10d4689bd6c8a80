import pytest
import requests
from eth_abi import encode

from socket_deployment import attestations
from socket_deployment.attestations import (
    MESSAGE_SENT_TOPIC,
    Attestation,
    extract_messages,
    fetch_attestation,
    get_attestations,
    message_hash,
)
from socket_deployment.chain import Receipt
from socket_deployment.poll import PollTimeout
from tests.conftest import run

MESSAGE = b"cross-chain message"
OTHER_TOPIC = "0x" + "ab" * 32


def _message_log(message, as_hex=False):
    data = encode(["bytes"], [message])
    return {
        "topics": [bytes.fromhex(MESSAGE_SENT_TOPIC[2:])],
        "data": "0x" + data.hex() if as_hex else data,
    }


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = list()

    def get(self, url, timeout):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.response


def test_extract_messages():
    logs = [
        _message_log(MESSAGE),
        {"topics": [OTHER_TOPIC], "data": b""},
        {"topics": [], "data": b""},
        _message_log(b"second", as_hex=True),
    ]
    assert extract_messages(logs) == [MESSAGE, b"second"]


def test_fetch_complete_attestation():
    session = FakeSession(FakeResponse(body={"status": "complete", "attestation": "0xfeed"}))
    assert fetch_attestation("0x01", api_url="https://attest.test", session=session) == "0xfeed"
    assert session.urls == ["https://attest.test/0x01"]


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(FakeResponse(status_code=404)),
        FakeSession(FakeResponse(body={"status": "pending_confirmations", "attestation": None})),
        FakeSession(FakeResponse(status_code=500)),
        FakeSession(error=requests.ConnectionError("unreachable")),
    ],
)
def test_fetch_pending_attestation(session):
    assert fetch_attestation("0x01", session=session) is None


def _receipt(chain, logs):
    receipt = Receipt(tx_hash="0x" + "99" * 32, block_number=1, status=1, logs=tuple(logs))
    chain.add_receipt(receipt)
    return receipt.tx_hash


def test_get_attestations(chain_a, monkeypatch):
    responses = {message_hash(MESSAGE): [None, "0xaa"], message_hash(b"second"): ["0xbb"]}

    def _fetch(digest, api_url):
        return responses[digest].pop(0)

    monkeypatch.setattr(attestations, "fetch_attestation", _fetch)
    tx_hash = _receipt(chain_a, [_message_log(MESSAGE), _message_log(b"second")])

    result = run(get_attestations(chain_a, tx_hash, initial_delay=0))
    assert result == [
        Attestation(MESSAGE, message_hash(MESSAGE), "0xaa"),
        Attestation(b"second", message_hash(b"second"), "0xbb"),
    ]


def test_get_attestations_gives_up(chain_a, monkeypatch):
    monkeypatch.setattr(attestations, "fetch_attestation", lambda digest, api_url: None)
    tx_hash = _receipt(chain_a, [_message_log(MESSAGE)])

    with pytest.raises(PollTimeout):
        run(get_attestations(chain_a, tx_hash, max_attempts=2, initial_delay=0))


def test_unknown_transaction(chain_a):
    with pytest.raises(ValueError, match="No receipt"):
        run(get_attestations(chain_a, "0x" + "00" * 32))


def test_transaction_without_messages(chain_a):
    tx_hash = _receipt(chain_a, [{"topics": [OTHER_TOPIC], "data": b""}])
    with pytest.raises(ValueError, match="No MessageSent"):
        run(get_attestations(chain_a, tx_hash))
