import asyncio
import logging
from typing import List, NamedTuple, Optional

import requests
from eth_abi import decode
from eth_utils import keccak

from socket_deployment.chain import ChainClient
from socket_deployment.constants import ATTESTATION_API_URL
from socket_deployment.poll import poll

logger = logging.getLogger(__name__)

MESSAGE_SENT_TOPIC = "0x" + keccak(text="MessageSent(bytes)").hex()
ATTESTATION_COMPLETE = "complete"
REQUEST_TIMEOUT = 20  # seconds


class Attestation(NamedTuple):
    message: bytes
    message_hash: str
    attestation: str


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value.lower() if value.startswith("0x") else "0x" + value.lower()


def extract_messages(logs) -> List[bytes]:
    """Decodes the payload of every MessageSent(bytes) event in a list of receipt logs."""
    messages = list()
    for log in logs:
        topics = log.get("topics") or []
        if not topics or _hex(topics[0]) != MESSAGE_SENT_TOPIC:
            continue
        data = log["data"]
        if isinstance(data, str):
            data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        (message,) = decode(["bytes"], bytes(data))
        messages.append(message)
    return messages


def message_hash(message: bytes) -> str:
    return "0x" + keccak(message).hex()


def fetch_attestation(
    message_hash: str, api_url: str = ATTESTATION_API_URL, session: Optional[requests.Session] = None
) -> Optional[str]:
    """Returns the attestation for a message hash, or None while it is still pending."""
    session = session or requests
    try:
        response = session.get(f"{api_url}/{message_hash}", timeout=REQUEST_TIMEOUT)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Failed to fetch attestation for %s: %s", message_hash, e)
        return None

    logger.debug("Attestation status for %s: %s", message_hash, data.get("status"))
    if data.get("status") == ATTESTATION_COMPLETE:
        return data.get("attestation")
    return None


async def get_attestations(
    client: ChainClient,
    tx_hash: str,
    api_url: str = ATTESTATION_API_URL,
    max_attempts: int = 20,
    initial_delay: float = 5.0,
    max_delay: float = 60.0,
) -> List[Attestation]:
    """
    Collects the attestations of every message emitted by a transaction,
    polling the attestation service with bounded backoff.
    """
    receipt = await client.get_receipt(tx_hash)
    if receipt is None:
        raise ValueError(f"No receipt for transaction {tx_hash}")

    messages = extract_messages(receipt.logs)
    if not messages:
        raise ValueError(f"No MessageSent events found in transaction {tx_hash}")

    async def _attest(message: bytes) -> Attestation:
        digest = message_hash(message)
        attestation = await poll(
            lambda: asyncio.to_thread(fetch_attestation, digest, api_url),
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            max_delay=max_delay,
            description=f"attestation for {digest}",
        )
        return Attestation(message=message, message_hash=digest, attestation=attestation)

    return list(await asyncio.gather(*(_attest(m) for m in messages)))
