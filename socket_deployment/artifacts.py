from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from socket_deployment.utils import _load_json

ABI = List[Dict]

DEFAULT_MANIFEST = Path(".build") / "__local__.json"


class ArtifactError(ValueError):
    """Raised when a compiled contract artifact cannot be found."""


class ArtifactSource(ABC):
    """Resolves compiled contract artifacts by contract name."""

    @abstractmethod
    def abi(self, contract_name: str) -> ABI:
        raise NotImplementedError

    @abstractmethod
    def bytecode(self, contract_name: str) -> str:
        raise NotImplementedError


class ManifestArtifacts(ArtifactSource):
    """
    Artifacts from compiled package manifests (``.build/__local__.json`` of the
    contracts project, followed by the manifests of its dependencies).
    The first manifest that defines a contract wins.
    """

    def __init__(self, *manifests: Path):
        self.manifests = [Path(m) for m in manifests] or [DEFAULT_MANIFEST]
        self._contract_types: Optional[Dict[str, dict]] = None

    def _load(self) -> Dict[str, dict]:
        if self._contract_types is None:
            contract_types = dict()
            for manifest in self.manifests:
                if not manifest.exists():
                    raise ArtifactError(f"No compiled manifest found at {manifest}.")
                for name, contract_type in _load_json(manifest).get("contractTypes", {}).items():
                    contract_types.setdefault(name, contract_type)
            self._contract_types = contract_types
        return self._contract_types

    def _contract_type(self, contract_name: str) -> dict:
        try:
            return self._load()[contract_name]
        except KeyError:
            raise ArtifactError(f"No contract found with name '{contract_name}'.")

    def abi(self, contract_name: str) -> ABI:
        return self._contract_type(contract_name)["abi"]

    def bytecode(self, contract_name: str) -> str:
        bytecode = self._contract_type(contract_name).get("deploymentBytecode") or dict()
        if not bytecode.get("bytecode"):
            raise ArtifactError(f"{contract_name} has no deployment bytecode.")
        return bytecode["bytecode"]


class FoundryArtifacts(ArtifactSource):
    """Artifacts from a forge ``out/`` directory (``out/<Name>.sol/<Name>.json``)."""

    def __init__(self, out_dir: Path):
        self.out_dir = Path(out_dir)
        self._cache: Dict[str, dict] = dict()

    def _artifact(self, contract_name: str, source_name: Optional[str] = None) -> dict:
        if contract_name not in self._cache:
            source_name = source_name or f"{contract_name}.sol"
            filepath = self.out_dir / source_name / f"{contract_name}.json"
            if not filepath.exists():
                raise ArtifactError(f"No artifact found for '{contract_name}' at {filepath}.")
            self._cache[contract_name] = _load_json(filepath)
        return self._cache[contract_name]

    def abi(self, contract_name: str) -> ABI:
        return self._artifact(contract_name)["abi"]

    def bytecode(self, contract_name: str) -> str:
        bytecode = self._artifact(contract_name)["bytecode"]
        # forge nests the hex under "object"
        if isinstance(bytecode, dict):
            bytecode = bytecode["object"]
        return bytecode
