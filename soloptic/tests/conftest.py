"""Shared fixtures for the SolOptic test suite."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from soloptic.core.errors import TraceUnavailable
from soloptic.ingestion.solidity_compiler import CompiledContract
from soloptic.profiler.environment import (
    DeployedContract,
    ExecutionEnvironment,
    ExecutionStatus,
    InvocationReceipt,
)


# ── Sample contract ──────────────────────────────────────────────────────────

SENDER = "0x" + "ab" * 20
CONTRACT_ADDRESS = "0x" + "11" * 20

VAULT_SOURCE = (
    "contract Vault {\n"
    "    function deposit() external payable { total += msg.value; }\n"
    "    function withdraw(uint256 amount) external { total -= amount; }\n"
    "    function ping() external view returns (uint256) { return total; }\n"
    "}"
)

VAULT_ABI: list[dict[str, Any]] = [
    {"type": "constructor", "inputs": [], "stateMutability": "nonpayable"},
    {
        "type": "function",
        "name": "deposit",
        "inputs": [],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "withdraw",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "ping",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "event",
        "name": "Deposited",
        "inputs": [{"name": "amount", "type": "uint256", "indexed": False}],
        "anonymous": False,
    },
]

# PUSH1 01 | PUSH1 02 | ADD | STOP  →  pcs 0, 2, 4, 5
VAULT_RUNTIME = "600160020100"


def _record(snippet: str) -> str:
    return f"{VAULT_SOURCE.index(snippet)}:{len(snippet)}:0:-"


# pc 0 → line 2, pc 2 → line 3, pc 4 → line 4, pc 5 → unmapped
VAULT_SOURCE_MAP = ";".join([
    _record("total += msg.value"),
    _record("total -= amount"),
    _record("return total"),
    "",
])


@pytest.fixture
def vault_source() -> str:
    return VAULT_SOURCE


@pytest.fixture
def vault_compiled() -> CompiledContract:
    """Hand-assembled compilation output for ``VAULT_SOURCE``."""
    return CompiledContract(
        name="Vault",
        abi=[dict(item) for item in VAULT_ABI],
        bytecode="0x6080604052",
        deployed_bytecode=VAULT_RUNTIME,
        runtime_source_map=VAULT_SOURCE_MAP,
        method_identifiers={
            "deposit()": "d0e30db0",
            "withdraw(uint256)": "2e1a7d4d",
            "ping()": "5c36b186",
        },
        source=VAULT_SOURCE,
    )


# ── Fake execution environment ───────────────────────────────────────────────


@dataclass
class Call:
    name: str
    args: list[Any]
    value: int
    gas_limit: int


class FakeEnvironment(ExecutionEnvironment):
    """In-memory ``ExecutionEnvironment`` driven by per-function tables.

    Args:
        gas: function name → gas used per invocation (default 21000)
        reverts: functions whose invocations revert
        errors: function name → exception raised by ``invoke``
        trace_steps: function name → ``(pc, op, gas_cost)`` steps
        trace_failures: functions whose traces are unavailable
        deploy_error: exception raised by ``deploy``
    """

    def __init__(
        self,
        *,
        gas: dict[str, int] | None = None,
        reverts: set[str] | None = None,
        errors: dict[str, Exception] | None = None,
        trace_steps: dict[str, list[tuple[int, str, int]]] | None = None,
        trace_failures: set[str] | None = None,
        deploy_error: Exception | None = None,
    ) -> None:
        self.gas = gas or {}
        self.reverts = reverts or set()
        self.errors = errors or {}
        self.trace_steps = trace_steps or {}
        self.trace_failures = trace_failures or set()
        self.deploy_error = deploy_error

        self.calls: list[Call] = []
        self.traced: list[str] = []
        self.deployed: DeployedContract | None = None
        self.closed = False
        self._tx_function: dict[str, str] = {}

    def calls_to(self, name: str) -> list[Call]:
        return [c for c in self.calls if c.name == name]

    async def deploy(self, bytecode: str, abi: list[dict[str, Any]]) -> DeployedContract:
        if self.deploy_error is not None:
            raise self.deploy_error
        self.deployed = DeployedContract(
            address=CONTRACT_ADDRESS, abi=list(abi), sender=SENDER, tx_hash="0x" + "00" * 32,
        )
        return self.deployed

    async def invoke(
        self,
        contract: DeployedContract,
        fn_abi: dict[str, Any],
        args: list[Any],
        *,
        value: int = 0,
        gas_limit: int,
    ) -> InvocationReceipt:
        name = fn_abi["name"]
        self.calls.append(Call(name, list(args), value, gas_limit))
        if name in self.errors:
            raise self.errors[name]

        tx_hash = f"0x{len(self.calls):064x}"
        self._tx_function[tx_hash] = name
        return InvocationReceipt(
            tx_hash=tx_hash,
            status=ExecutionStatus.REVERT if name in self.reverts else ExecutionStatus.SUCCESS,
            gas_used=self.gas.get(name, 21_000),
            block_number=len(self.calls),
        )

    async def trace(self, tx_hash: str) -> dict[str, Any]:
        self.traced.append(tx_hash)
        name = self._tx_function[tx_hash]
        if name in self.trace_failures:
            raise TraceUnavailable(f"trace for {tx_hash} unavailable")
        return {
            "gas": 0,
            "failed": name in self.reverts,
            "returnValue": "",
            "structLogs": [
                {"pc": pc, "op": op, "gasCost": cost, "depth": 1}
                for pc, op, cost in self.trace_steps.get(name, [])
            ],
        }

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_env_cls() -> type[FakeEnvironment]:
    return FakeEnvironment
