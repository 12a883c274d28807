"""Gas fuzzer — randomized invocations with per-line gas attribution.

For every externally callable function of a deployed contract, issues a
bounded number of transactions with synthesized arguments, records the gas
each one used (reverts included), and replays each transaction's trace
through the contract's PC → line map.

Cost samples and line attribution degrade independently: a missing trace
loses only that iteration's line data, a missing receipt skips only that
iteration, and no failure in one function stops the others.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any

from soloptic.core.config import Settings
from soloptic.core.errors import InvalidTraceError, SolOpticError, TraceUnavailable
from soloptic.core.types import ContractReportSchema
from soloptic.ingestion.solidity_compiler import CompiledContract
from soloptic.profiler.environment import (
    DeployedContract,
    ExecutionEnvironment,
    function_signature,
)
from soloptic.profiler.gas_profiler import TraceProfiler
from soloptic.profiler.source_map import PcLineMap, build_pc_line_map

logger = logging.getLogger(__name__)

WEI_PER_ETHER = 10**18
SMALL_UINT_BOUND = 1_000
SHORT_BYTES_LEN = 4
_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


# ── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class InvocationSample:
    """Gas used by one fuzz iteration."""
    gas_used: int
    reverted: bool = False


@dataclass
class FunctionReport:
    """Gas statistics for one entry point, built across iterations."""
    name: str
    signature: str = ""
    samples: list[InvocationSample] = field(default_factory=list)
    min_gas: int = 0
    max_gas: int = 0
    avg_gas: float = 0.0
    p95_gas: int = 0
    gas_by_line: dict[int, int] = field(default_factory=dict)
    skipped_iterations: int = 0
    traced_iterations: int = 0

    @property
    def reverted_count(self) -> int:
        return sum(1 for s in self.samples if s.reverted)

    def add_line_gas(self, gas_by_line: dict[int, int]) -> None:
        for line, gas in gas_by_line.items():
            if line > 0:
                self.gas_by_line[line] = self.gas_by_line.get(line, 0) + gas

    def finalize(self) -> None:
        """Sort samples and compute min / max / mean / p95."""
        self.samples.sort(key=lambda s: s.gas_used)
        gas = [s.gas_used for s in self.samples]
        if not gas:
            self.min_gas = self.max_gas = self.p95_gas = 0
            self.avg_gas = 0.0
            return

        self.min_gas = gas[0]
        self.max_gas = gas[-1]
        self.avg_gas = sum(gas) / len(gas)
        rank = math.floor(len(gas) * 0.95)
        self.p95_gas = gas[rank] if rank < len(gas) else self.max_gas

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "signature": self.signature,
            "samples": [{"gas_used": s.gas_used, "reverted": s.reverted} for s in self.samples],
            "min_gas": self.min_gas,
            "max_gas": self.max_gas,
            "avg_gas": round(self.avg_gas, 1),
            "p95_gas": self.p95_gas,
            "gas_by_line": {str(k): v for k, v in sorted(self.gas_by_line.items())},
            "skipped_iterations": self.skipped_iterations,
            "traced_iterations": self.traced_iterations,
        }


@dataclass
class ContractReport:
    """Result of fuzzing every entry point of one contract."""
    contract_name: str
    runs_per_function: int
    functions: list[FunctionReport] = field(default_factory=list)
    profiling_time_sec: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_name": self.contract_name,
            "runs_per_function": self.runs_per_function,
            "functions": [fr.to_dict() for fr in self.functions],
            "profiling_time_sec": round(self.profiling_time_sec, 3),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContractReport:
        """Build a report from its canonical dict form.

        Raises:
            pydantic.ValidationError: *data* does not match the schema.
        """
        schema = ContractReportSchema.model_validate(data)
        return cls.from_schema(schema)

    @classmethod
    def from_schema(cls, schema: ContractReportSchema) -> ContractReport:
        return cls(
            contract_name=schema.contract_name,
            runs_per_function=schema.runs_per_function,
            profiling_time_sec=schema.profiling_time_sec,
            functions=[
                FunctionReport(
                    name=fn.name,
                    signature=fn.signature,
                    samples=[InvocationSample(s.gas_used, s.reverted) for s in fn.samples],
                    min_gas=fn.min_gas,
                    max_gas=fn.max_gas,
                    avg_gas=fn.avg_gas,
                    p95_gas=fn.p95_gas,
                    gas_by_line=dict(fn.gas_by_line),
                    skipped_iterations=fn.skipped_iterations,
                    traced_iterations=fn.traced_iterations,
                )
                for fn in schema.functions
            ],
        )


# ── Argument Synthesis ───────────────────────────────────────────────────────

class ArgumentSynthesizer:
    """Random ABI argument generation biased toward calls that succeed.

    Values stay small on purpose: the goal is representative gas numbers,
    not boundary coverage.
    """

    def __init__(self, rng: random.Random, sender: str) -> None:
        self.rng = rng
        self.sender = sender

    def synthesize(self, inputs: list[dict[str, Any]]) -> list[Any]:
        return [self.value_for(param) for param in inputs]

    def value_for(self, param: dict[str, Any]) -> Any:
        return self._value(param.get("type", ""), param.get("components", []))

    def _value(self, sol_type: str, components: list[dict[str, Any]]) -> Any:
        if sol_type.endswith("]"):
            base, _, dim = sol_type[:-1].rpartition("[")
            if dim == "":
                length = self.rng.randint(0, 1)
            elif dim.isdigit():
                length = int(dim)
            else:
                return 0
            return [self._value(base, components) for _ in range(length)]

        if sol_type == "tuple":
            return tuple(self.value_for(c) for c in components)
        if sol_type.startswith(("uint", "int")):
            return self.small_uint(sol_type)
        if sol_type == "address":
            return self.sender
        if sol_type == "bool":
            return self.rng.random() > 0.5
        if sol_type == "bytes":
            return self.random_bytes(SHORT_BYTES_LEN)
        if sol_type.startswith("bytes") and sol_type[5:].isdigit():
            size = int(sol_type[5:])
            return self.random_bytes(min(SHORT_BYTES_LEN, size)).ljust(size, b"\x00")
        if sol_type == "string":
            return "s_" + "".join(self.rng.choices(_TOKEN_ALPHABET, k=8))
        return 0

    def small_uint(self, sol_type: str = "uint256") -> int:
        """Non-negative value below 1000 that fits *sol_type*."""
        return self.rng.randrange(min(SMALL_UINT_BOUND, int_type_max(sol_type) + 1))

    def small_value(self) -> int:
        """Random ether value in [0, 1) with 0.0001 ether resolution."""
        return self.rng.randrange(10_000) * (WEI_PER_ETHER // 10_000)

    def random_bytes(self, length: int) -> bytes:
        return bytes(self.rng.getrandbits(8) for _ in range(length))


def int_type_max(sol_type: str) -> int:
    """Largest value of a ``uintN`` / ``intN`` type; bare names are 256 bits."""
    signed = sol_type.startswith("int")
    digits = sol_type[3 if signed else 4:]
    bits = int(digits) if digits.isdigit() else 256
    return 2 ** (bits - 1) - 1 if signed else 2**bits - 1


def callable_functions(abi: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [item for item in abi if item.get("type") == "function"]


def is_withdrawal(fn_abi: dict[str, Any]) -> bool:
    inputs = fn_abi.get("inputs") or []
    if "withdraw" not in fn_abi.get("name", "").lower() or not inputs:
        return False
    first = inputs[0].get("type", "")
    return first.startswith("uint") and not first.endswith("]")


def is_payable(fn_abi: dict[str, Any]) -> bool:
    return fn_abi.get("stateMutability") == "payable" or fn_abi.get("payable") is True


# ── Gas Fuzzer ───────────────────────────────────────────────────────────────

class GasFuzzer:
    """Drive randomized invocations and collect per-function gas reports.

    Usage::

        env = Web3Environment("http://127.0.0.1:8545")
        fuzzer = GasFuzzer(env, runs_per_function=50, seed=7)
        report = await fuzzer.fuzz(compiled, source_code)
    """

    def __init__(
        self,
        environment: ExecutionEnvironment,
        *,
        runs_per_function: int = 200,
        gas_limit: int = 10_000_000,
        seed: int | None = None,
        rng: random.Random | None = None,
        deposit_ether: int = 10,
        trace_settle_delay: float = 0.05,
        inherit_empty: bool = False,
        profiler: TraceProfiler | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._env = environment
        self._runs = max(runs_per_function, 0)
        self._gas_limit = gas_limit
        self._rng = rng or random.Random(
            seed if seed is not None else int.from_bytes(os.urandom(4), "big")
        )
        self._deposit_wei = deposit_ether * WEI_PER_ETHER
        self._settle_delay = trace_settle_delay
        self._inherit_empty = inherit_empty
        self._log = log or logger
        self._profiler = profiler or TraceProfiler(log=self._log)

    @classmethod
    def from_settings(
        cls,
        environment: ExecutionEnvironment,
        settings: Settings,
        *,
        runs_per_function: int | None = None,
        seed: int | None = None,
    ) -> GasFuzzer:
        return cls(
            environment,
            runs_per_function=runs_per_function if runs_per_function is not None else settings.fuzz_default_runs,
            gas_limit=settings.fuzz_gas_limit,
            seed=seed if seed is not None else settings.fuzz_seed,
            deposit_ether=settings.fuzz_deposit_ether,
            trace_settle_delay=settings.trace_settle_delay,
            inherit_empty=settings.source_map_inherit_empty,
            profiler=TraceProfiler(top_n=settings.heatmap_top_lines),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fuzz(
        self, compiled: CompiledContract, source_code: str | None = None,
    ) -> ContractReport:
        """Deploy *compiled* and fuzz each of its functions.

        Line numbers refer to *source_code*, which defaults to the source the
        contract was compiled from.

        Raises:
            DecodeError / MapFormatError: the runtime bytecode or source map
                is malformed.
            DeploymentError: the contract could not be deployed.
        """
        start = time.time()
        pc_map = build_pc_line_map(
            compiled.runtime_source_map,
            compiled.deployed_bytecode,
            compiled.source if source_code is None else source_code,
            inherit_empty=self._inherit_empty,
            log=self._log,
        )

        deployed = await self._env.deploy(compiled.bytecode, compiled.abi)
        functions = callable_functions(compiled.abi)
        synth = ArgumentSynthesizer(self._rng, deployed.sender)

        await self._seed_state(deployed, functions)

        report = ContractReport(contract_name=compiled.name, runs_per_function=self._runs)
        for fn_abi in functions:
            report.functions.append(
                await self._fuzz_function(deployed, fn_abi, synth, pc_map)
            )

        report.profiling_time_sec = time.time() - start
        self._log.info(
            "Gas fuzzing complete for %s: %d functions, %d runs each, %.1fs",
            compiled.name,
            len(report.functions),
            self._runs,
            report.profiling_time_sec,
            extra={"contract": compiled.name},
        )
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _seed_state(
        self, deployed: DeployedContract, functions: list[dict[str, Any]],
    ) -> None:
        """Fund the contract through a zero-argument payable ``deposit()``."""
        deposit = next(
            (
                f for f in functions
                if f.get("name") == "deposit" and is_payable(f) and not f.get("inputs")
            ),
            None,
        )
        if deposit is None:
            return

        try:
            await self._env.invoke(
                deployed, deposit, [], value=self._deposit_wei, gas_limit=self._gas_limit,
            )
            self._log.info("Seeded state via deposit() with %d wei", self._deposit_wei)
        except SolOpticError as exc:
            self._log.warning("Seeding via deposit() failed (ignoring): %s", exc)

    async def _fuzz_function(
        self,
        deployed: DeployedContract,
        fn_abi: dict[str, Any],
        synth: ArgumentSynthesizer,
        pc_map: PcLineMap,
    ) -> FunctionReport:
        name = fn_abi.get("name", "")
        report = FunctionReport(name=name, signature=function_signature(fn_abi))

        for iteration in range(self._runs):
            try:
                await self._run_iteration(deployed, fn_abi, synth, pc_map, report, iteration)
            except SolOpticError as exc:
                if not exc.recoverable:
                    raise
                report.skipped_iterations += 1
                self._log.warning(
                    "%s() iter %d skipped: %s", name, iteration, exc,
                    extra={"function": name, "iteration": iteration},
                )

        report.finalize()
        self._log.info(
            "%s(): %d samples (%d reverted, %d skipped, %d traced) avg=%.0f p95=%d",
            name,
            len(report.samples),
            report.reverted_count,
            report.skipped_iterations,
            report.traced_iterations,
            report.avg_gas,
            report.p95_gas,
            extra={"function": name},
        )
        return report

    async def _run_iteration(
        self,
        deployed: DeployedContract,
        fn_abi: dict[str, Any],
        synth: ArgumentSynthesizer,
        pc_map: PcLineMap,
        report: FunctionReport,
        iteration: int,
    ) -> None:
        args = synth.synthesize(fn_abi.get("inputs") or [])
        value = synth.small_value() if is_payable(fn_abi) else 0
        if is_withdrawal(fn_abi):
            args[0] = synth.small_uint(fn_abi["inputs"][0]["type"])

        receipt = await self._env.invoke(
            deployed, fn_abi, args, value=value, gas_limit=self._gas_limit,
        )
        if receipt.gas_used <= 0:
            return

        report.samples.append(InvocationSample(receipt.gas_used, receipt.reverted))
        self._log.debug(
            "%s() iter %d: gas=%d %s",
            report.name, iteration, receipt.gas_used,
            "REVERTED" if receipt.reverted else "ok",
            extra={"function": report.name, "iteration": iteration, "tx_hash": receipt.tx_hash},
        )

        if not len(pc_map):
            return
        await self._attribute_lines(receipt.tx_hash, pc_map, report, iteration)

    async def _attribute_lines(
        self,
        tx_hash: str,
        pc_map: PcLineMap,
        report: FunctionReport,
        iteration: int,
    ) -> None:
        """Best-effort: fold this transaction's per-line gas into *report*."""
        if self._settle_delay > 0:
            await asyncio.sleep(self._settle_delay)

        try:
            trace = await self._env.trace(tx_hash)
            profile = self._profiler.profile(trace, pc_map)
        except (TraceUnavailable, InvalidTraceError) as exc:
            self._log.debug(
                "%s() iter %d: line profile skipped: %s", report.name, iteration, exc,
                extra={"function": report.name, "iteration": iteration, "tx_hash": tx_hash},
            )
            return

        report.add_line_gas(profile.gas_by_line)
        report.traced_iterations += 1
