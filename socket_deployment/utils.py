import json
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from eth_typing import ChecksumAddress
from eth_utils import is_hex, keccak, to_bytes, to_checksum_address

from socket_deployment.constants import EMPTY_BYTES32, ZERO_ADDRESS

Identifier = Union[str, bytes]

BYTES32_HEX_LENGTH = 66
ADDRESS_HEX_LENGTH = 42


class StateMismatchError(ValueError):
    """Raised when an expected contract, address or identifier is missing or zero."""


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def to_bytes32(value: Identifier) -> str:
    """
    Returns the canonical wire form of an address or identifier:
    a lowercase, 0x-prefixed, left-padded 32-byte hex string.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str) and (value in ("", "0x") or is_hex(value)):
        raw = to_bytes(hexstr=value)
    else:
        raise ValueError(f"Cannot convert {value!r} to bytes32")
    if len(raw) > 32:
        raise ValueError(f"{value!r} is longer than 32 bytes")
    return "0x" + raw.rjust(32, b"\x00").hex()


def to_address(value: Identifier) -> ChecksumAddress:
    """Returns the checksummed address held in the low 20 bytes of an identifier."""
    raw = bytes.fromhex(to_bytes32(value)[2:])
    return to_checksum_address(raw[-20:])


def same_identifier(a: Optional[Identifier], b: Optional[Identifier]) -> bool:
    """Case-insensitive comparison of addresses and identifiers in their 32-byte form."""
    if a is None or b is None:
        return False
    try:
        return to_bytes32(a) == to_bytes32(b)
    except ValueError:
        return False


def same_value(current: Any, required: Any) -> bool:
    """Compares an on-chain value with a required one, normalizing hex and numbers."""
    if isinstance(current, bool) or isinstance(required, bool):
        return bool(current) == bool(required)
    if isinstance(current, int) and isinstance(required, (int, str)):
        try:
            return current == (int(required, 0) if isinstance(required, str) else required)
        except ValueError:
            return False
    if isinstance(current, (list, tuple)) and isinstance(required, (list, tuple)):
        return len(current) == len(required) and all(
            same_value(c, r) for c, r in zip(current, required)
        )
    return same_identifier(current, required)


def is_zero(value: Optional[Identifier]) -> bool:
    if not value:
        return True
    return same_identifier(value, EMPTY_BYTES32)


def check_address_exists(address: Optional[str], name: str) -> ChecksumAddress:
    if (
        not address
        or address == "0x"
        or len(address) != ADDRESS_HEX_LENGTH
        or address.lower() == ZERO_ADDRESS.lower()
    ):
        raise StateMismatchError(f"{name} not found: {address}")
    return to_checksum_address(address)


def check_app_gateway_id(app_gateway_id: Optional[str], name: str) -> str:
    if not app_gateway_id or len(app_gateway_id) != BYTES32_HEX_LENGTH or is_zero(app_gateway_id):
        raise StateMismatchError(f"{name} not found: {app_gateway_id}")
    return app_gateway_id.lower()


def role_hash(role: str) -> str:
    """Returns the keccak256 hash used as the AccessControl role identifier."""
    return "0x" + keccak(text=role).hex()
