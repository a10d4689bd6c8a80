import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from socket_deployment.constants import ARTIFACTS_DIR, START_BLOCK_KEY

ChainId = int
ContractName = str
LedgerValue = Union[str, int]

STANDARD_LEDGER_JSON_FORMAT = {"indent": 2, "separators": (",", ": "), "sort_keys": True}

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Raised when the address ledger cannot be read or written."""


def ledger_filepath(mode: str, directory: Path = ARTIFACTS_DIR) -> Path:
    return directory / f"{mode}_addresses.json"


def read_ledger(filepath: Path) -> Dict[str, Dict[str, LedgerValue]]:
    """Reads a ledger file; a missing file is an empty ledger."""
    if not filepath.exists():
        return dict()
    try:
        with open(filepath, "r") as file:
            data = json.load(file)
    except (OSError, json.JSONDecodeError) as e:
        raise LedgerError(f"Cannot read address ledger at {filepath}: {e}") from e
    if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
        raise LedgerError(f"Malformed address ledger at {filepath}.")
    return data


def write_ledger(data: Dict[str, Dict[str, LedgerValue]], filepath: Path) -> Path:
    """Rewrites the whole ledger with sorted keys."""
    temp_filepath = filepath.with_suffix(".temp.json")
    try:
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_filepath, "w") as file:
            json.dump(data, file, **STANDARD_LEDGER_JSON_FORMAT)
            file.write("\n")
        temp_filepath.replace(filepath)
    except OSError as e:
        raise LedgerError(f"Cannot write address ledger at {filepath}: {e}") from e
    return filepath


class AddressStore:
    """
    Durable (mode, chain, contract) -> address ledger.

    Every mutation re-reads the file under a process-wide lock, updates only
    the subtree of one chain and rewrites the whole file, so concurrent
    per-chain tasks never overwrite each other's progress.
    """

    def __init__(self, filepath: Path):
        self.filepath = filepath
        self._lock = asyncio.Lock()
        self._data = read_ledger(filepath)

    @classmethod
    def for_mode(cls, mode: str, directory: Path = ARTIFACTS_DIR) -> "AddressStore":
        return cls(filepath=ledger_filepath(mode, directory))

    def reload(self) -> None:
        self._data = read_ledger(self.filepath)

    def chains(self) -> List[ChainId]:
        return sorted(int(chain_id) for chain_id in self._data)

    def chain_addresses(self, chain_id: ChainId) -> Dict[ContractName, LedgerValue]:
        return dict(self._data.get(str(chain_id), {}))

    def get(self, chain_id: ChainId, name: ContractName) -> Optional[ChecksumAddress]:
        value = self._data.get(str(chain_id), {}).get(name)
        if not value or name == START_BLOCK_KEY:
            return None
        return to_checksum_address(value)

    def start_block(self, chain_id: ChainId) -> Optional[int]:
        value = self._data.get(str(chain_id), {}).get(START_BLOCK_KEY)
        return int(value) if value is not None else None

    async def _update(self, chain_id: ChainId, key: str, value: LedgerValue) -> None:
        async with self._lock:
            data = read_ledger(self.filepath)
            data.setdefault(str(chain_id), dict())[key] = value
            write_ledger(data, self.filepath)
            self._data = data

    async def record(self, chain_id: ChainId, name: ContractName, address: str) -> None:
        address = to_checksum_address(address)
        await self._update(chain_id, name, address)
        logger.info("Recorded %s at %s on chain %s in %s", name, address, chain_id, self.filepath)

    async def set_start_block(self, chain_id: ChainId, block_number: int) -> int:
        """Moves the start block forward; it never decreases."""
        current = self.start_block(chain_id)
        if current is not None and current >= block_number:
            return current
        await self._update(chain_id, START_BLOCK_KEY, int(block_number))
        logger.info("Start block for chain %s set to %s (was %s)", chain_id, block_number, current)
        return int(block_number)

    async def ensure_start_block(self, chain_id: ChainId, block_number: int) -> int:
        """Sets the start block only when the chain does not have one yet."""
        current = self.start_block(chain_id)
        if current is not None:
            return current
        return await self.set_start_block(chain_id, block_number)
