"""Solidity compiler integration for gas profiling."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from soloptic.core.config import Settings
from soloptic.core.errors import CompilationError

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "UserContract.sol"

_FENCE_RE = re.compile(r"```(?:solidity)?")
_PRAGMA_RE = re.compile(r"pragma\s+solidity\s+[\^~>=<]*\s*([\d.]+)")

_OUTPUT_SELECTION = [
    "abi",
    "evm.bytecode.object",
    "evm.deployedBytecode.object",
    "evm.deployedBytecode.sourceMap",
    "evm.methodIdentifiers",
]


@dataclass
class CompilationResult:
    """Result of compiling Solidity source code."""

    success: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    contracts: dict[str, "CompiledContract"] = field(default_factory=dict)
    solc_version: str = ""


@dataclass
class CompiledContract:
    """A single compiled contract."""

    name: str
    abi: list[dict[str, Any]] = field(default_factory=list)
    bytecode: str = ""
    deployed_bytecode: str = ""
    runtime_source_map: str = ""
    method_identifiers: dict[str, str] = field(default_factory=dict)
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_name": self.name,
            "abi": self.abi,
            "bytecode_size": len(self.bytecode) // 2,
            "deployed_bytecode_size": len(self.deployed_bytecode) // 2,
            "source_map_records": len(self.runtime_source_map.split(";")) if self.runtime_source_map else 0,
            "method_identifiers": self.method_identifiers,
        }


def strip_code_fences(source_code: str) -> str:
    """Remove Markdown code fences pasted around the source."""
    return _FENCE_RE.sub("", source_code)


class SolidityCompiler:
    """Compile Solidity source code using solc.

    The optimizer is off by default so that source-map records line up
    with the statements a developer actually wrote.
    """

    def __init__(
        self,
        version: str | None = None,
        optimization: bool = False,
        optimization_runs: int = 200,
        default_version: str = "0.8.28",
    ) -> None:
        self.version = version
        self.optimization = optimization
        self.optimization_runs = optimization_runs
        self.default_version = default_version

    @classmethod
    def from_settings(cls, settings: Settings) -> SolidityCompiler:
        return cls(
            version=settings.solc_version,
            optimization=settings.solc_optimizer_enabled,
            optimization_runs=settings.solc_optimizer_runs,
            default_version=settings.solc_default_version,
        )

    def compile_source(
        self,
        source_code: str,
        filename: str = DEFAULT_FILENAME,
    ) -> CompilationResult:
        """Compile Solidity source code and return ABI + bytecode + source maps.

        Args:
            source_code: Solidity source code string
            filename: Name for the source file

        Returns:
            CompilationResult with one CompiledContract per contract
        """
        source_code = strip_code_fences(source_code)
        solc_version = self.version or self._detect_version(source_code) or self.default_version

        standard_input = {
            "language": "Solidity",
            "sources": {
                filename: {"content": source_code}
            },
            "settings": {
                "optimizer": {
                    "enabled": self.optimization,
                    "runs": self.optimization_runs,
                },
                "outputSelection": {
                    "*": {"*": list(_OUTPUT_SELECTION)}
                },
            },
        }

        try:
            output = self._invoke_solc(standard_input, solc_version)
        except Exception as e:
            logger.warning("solc %s invocation failed: %s", solc_version, e)
            return CompilationResult(
                success=False,
                errors=[str(e)],
                solc_version=solc_version,
            )

        result = self._parse_output(output, source_code)
        result.solc_version = solc_version
        if result.warnings:
            logger.warning("Compiler warnings:\n%s", "\n".join(result.warnings))
        return result

    def compile_contract(
        self,
        source_code: str,
        contract_name: str | None = None,
        filename: str = DEFAULT_FILENAME,
    ) -> CompiledContract:
        """Compile and return one contract: *contract_name*, or the first one.

        Raises:
            CompilationError: solc reported errors, or no matching contract.
        """
        result = self.compile_source(source_code, filename=filename)
        if not result.success:
            raise CompilationError(result.errors)

        contracts = list(result.contracts.values())
        if contract_name:
            contracts = [c for c in contracts if c.name == contract_name]
        if not contracts:
            wanted = f"contract '{contract_name}'" if contract_name else "any contract"
            raise CompilationError([f"Source does not define {wanted}"])

        compiled = contracts[0]
        logger.info(
            "Compiled %s: runtime %d bytes, %d source-map records",
            compiled.name,
            len(compiled.deployed_bytecode) // 2,
            len(compiled.runtime_source_map.split(";")) if compiled.runtime_source_map else 0,
            extra={"contract": compiled.name},
        )
        return compiled

    def _invoke_solc(self, standard_input: dict[str, Any], solc_version: str) -> dict[str, Any]:
        import solcx

        solcx.install_solc(solc_version)
        return solcx.compile_standard(
            standard_input,
            solc_version=solc_version,
            allow_paths=".",
        )

    def _parse_output(self, output: dict[str, Any], source_code: str = "") -> CompilationResult:
        """Parse solc standard JSON output into CompilationResult."""
        errors: list[str] = []
        warnings: list[str] = []
        contracts: dict[str, CompiledContract] = {}

        # Collect errors and warnings
        for error in output.get("errors", []):
            if error.get("severity") == "error":
                errors.append(error.get("formattedMessage", error.get("message", "")))
            else:
                warnings.append(error.get("formattedMessage", error.get("message", "")))

        # Extract compiled contracts, in source order
        for source_name, file_contracts in output.get("contracts", {}).items():
            for contract_name, contract_data in file_contracts.items():
                evm = contract_data.get("evm", {})
                deployed = evm.get("deployedBytecode", {})
                contracts[f"{source_name}:{contract_name}"] = CompiledContract(
                    name=contract_name,
                    abi=contract_data.get("abi", []),
                    bytecode=evm.get("bytecode", {}).get("object", ""),
                    deployed_bytecode=deployed.get("object", ""),
                    runtime_source_map=deployed.get("sourceMap", ""),
                    method_identifiers=evm.get("methodIdentifiers", {}),
                    source=source_code,
                )

        return CompilationResult(
            success=len(errors) == 0,
            errors=errors,
            warnings=warnings,
            contracts=contracts,
        )

    @staticmethod
    def _detect_version(source_code: str) -> str | None:
        """Detect Solidity compiler version from pragma statement."""
        match = _PRAGMA_RE.search(source_code)
        if match:
            return match.group(1)
        return None
