import time
from typing import Dict, NamedTuple, Optional

from eth_abi import encode
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import keccak, to_checksum_address

WATCHER_DIGEST_TYPES = ["address", "uint32", "uint256", "bytes"]

_last_nonces: Dict[str, int] = dict()


class WatcherSignature(NamedTuple):
    nonce: int
    signature: bytes


def next_nonce(signer_address: str) -> int:
    """Wall-clock milliseconds, bumped when needed so a signer never reuses a nonce."""
    key = signer_address.lower()
    nonce = max(int(time.time() * 1000), _last_nonces.get(key, 0) + 1)
    _last_nonces[key] = nonce
    return nonce


def watcher_digest(target: str, evmx_chain_id: int, nonce: int, calldata: bytes) -> bytes:
    return keccak(
        encode(
            WATCHER_DIGEST_TYPES,
            [to_checksum_address(target), evmx_chain_id, nonce, bytes(calldata)],
        )
    )


def sign_watcher_message(
    target: str,
    evmx_chain_id: int,
    calldata: bytes,
    signer: LocalAccount,
    nonce: Optional[int] = None,
) -> WatcherSignature:
    """
    Signs a coordination chain call for the watcher multicall envelope.

    The digest is keccak256(abi.encode(target, evmxChainId, nonce, calldata))
    and is signed as an EIP-191 personal message over its 32 raw bytes.
    """
    if nonce is None:
        nonce = next_nonce(signer.address)
    digest = watcher_digest(target, evmx_chain_id, nonce, calldata)
    signed = signer.sign_message(encode_defunct(primitive=digest))
    return WatcherSignature(nonce=nonce, signature=bytes(signed.signature))
