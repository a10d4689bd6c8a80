import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple

from socket_deployment.constants import ARTIFACTS_DIR
from socket_deployment.registry import LedgerError

logger = logging.getLogger(__name__)

VERIFICATION_ATTEMPTS = 5


class VerificationJob(NamedTuple):
    """A pending block explorer verification: [address, name, path, args]."""

    address: str
    contract_name: str
    path: str
    constructor_args: List[Any]


def verification_filepath(mode: str, directory: Path = ARTIFACTS_DIR) -> Path:
    return directory / f"{mode}_verification.json"


def _jsonable(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


class VerificationLedger:
    """Queue of deployments awaiting explorer verification, newest first per chain."""

    def __init__(self, filepath: Path):
        self.filepath = filepath
        self._lock = asyncio.Lock()

    @classmethod
    def for_mode(cls, mode: str, directory: Path = ARTIFACTS_DIR) -> "VerificationLedger":
        return cls(filepath=verification_filepath(mode, directory))

    def _read(self) -> Dict[str, list]:
        if not self.filepath.exists():
            return dict()
        try:
            with open(self.filepath, "r") as file:
                return json.load(file)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerError(f"Cannot read verification ledger at {self.filepath}: {e}") from e

    def _write(self, data: Dict[str, list]) -> None:
        try:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
            with open(self.filepath, "w") as file:
                json.dump(data, file, indent=2)
                file.write("\n")
        except OSError as e:
            raise LedgerError(f"Cannot write verification ledger at {self.filepath}: {e}") from e

    def pending(self, chain_id: int) -> List[VerificationJob]:
        return [VerificationJob(*job) for job in self._read().get(str(chain_id), [])]

    async def record(self, chain_id: int, job: VerificationJob) -> None:
        async with self._lock:
            data = self._read()
            entry = [job.address, job.contract_name, job.path, _jsonable(job.constructor_args)]
            data[str(chain_id)] = [entry, *data.get(str(chain_id), [])]
            self._write(data)

    async def store_unverified(self, chain_id: int, jobs: List[VerificationJob]) -> None:
        async with self._lock:
            data = self._read()
            data[str(chain_id)] = [
                [j.address, j.contract_name, j.path, _jsonable(j.constructor_args)] for j in jobs
            ]
            self._write(data)

    async def retry(
        self,
        chain_id: int,
        verify: Callable[[VerificationJob], Awaitable[bool]],
        attempts: int = VERIFICATION_ATTEMPTS,
    ) -> List[VerificationJob]:
        """
        Runs every pending job for a chain through ``verify`` up to ``attempts``
        times and re-persists only the jobs that never succeeded.
        """
        unverified = list()
        for job in self.pending(chain_id):
            for attempt in range(1, attempts + 1):
                try:
                    if await verify(job):
                        logger.info("Verified %s at %s on %s", job.contract_name, job.address, chain_id)
                        break
                except Exception as e:
                    logger.warning(
                        "Verification attempt %s/%s of %s failed: %s",
                        attempt,
                        attempts,
                        job.contract_name,
                        e,
                    )
            else:
                unverified.append(job)
        await self.store_unverified(chain_id, unverified)
        return unverified
