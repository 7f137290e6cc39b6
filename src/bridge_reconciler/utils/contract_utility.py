import json
from pathlib import Path
from typing import Any

from web3 import Web3


class ContractUtility:
    """
    Utility for loading bridge contract ABIs and deriving event signatures.

    ABIs are read from the ``contracts`` folder shipped with the package.
    """

    def __init__(self, contracts_dir: Path | None = None) -> None:
        """
        Initialize the ContractUtility.

        Args:
            contracts_dir: Folder holding ``<ContractName>.json`` files (defaults to the packaged one)
        """
        self.contracts_dir = contracts_dir or (Path(__file__).parent.parent / "contracts")

    def get_contract_abi(self, contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the contracts folder.

        Args:
            contract_name: Name of the contract (without .json extension)

        Returns:
            List of ABI dictionaries for the contract

        Raises:
            FileNotFoundError: If the contract file doesn't exist
            json.JSONDecodeError: If the contract file is invalid JSON
        """
        contract_path: Path = (self.contracts_dir / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data: dict[str, Any] = json.load(file)

        return contract_data["abi"]

    def get_event_abis(self, contract_name: str) -> dict[str, dict[str, Any]]:
        """Return the event entries of a contract ABI keyed by event name."""
        return {
            entry["name"]: entry
            for entry in self.get_contract_abi(contract_name)
            if entry.get("type") == "event"
        }

    @staticmethod
    def event_signature(event_abi: dict[str, Any]) -> str:
        """Canonical signature text, e.g. ``NewExpatriation(address,uint256,...)``."""
        types = ",".join(arg["type"] for arg in event_abi.get("inputs", []))
        return f"{event_abi['name']}({types})"

    @staticmethod
    def event_topic(signature: str) -> str:
        """Topic0 for a canonical event signature (0x-prefixed keccak256)."""
        return Web3.to_hex(Web3.keccak(text=signature))
