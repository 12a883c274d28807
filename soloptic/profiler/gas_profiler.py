"""Gas Profiler — per-line gas accounting from execution traces.

Replays one ``debug_traceTransaction`` struct-log trace through a
``PcLineMap`` and attributes every step's gas cost to the source line its
program counter maps to.

Architecture:
  ┌──────────────────────────────────────────────────────────────────┐
  │                     GAS  PROFILER                                │
  │                                                                  │
  │  ┌──────────┐  ┌────────────┐  ┌──────────────┐  ┌──────────┐   │
  │  │Trace     │─►│PC → Line   │─►│Line / Opcode │─►│Top Lines │   │
  │  │Parser    │  │Lookup      │  │Accumulator   │  │Summary   │   │
  │  └──────────┘  └────────────┘  └──────────────┘  └──────────┘   │
  │                                                                  │
  │  Steps at unmapped PCs (dispatcher, compiler helpers) count      │
  │  toward the total and opcode counts, never toward a line.        │
  └──────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from soloptic.core.errors import InvalidTraceError
from soloptic.profiler.source_map import PcLineMap, build_pc_line_map

logger = logging.getLogger(__name__)

TOP_LINES = 20


# ── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TraceStep:
    """One executed opcode from a struct-log trace."""
    pc: int
    op: str
    gas_cost: int
    depth: int = 1


@dataclass
class LineGasProfile:
    """Per-line gas totals for one execution."""
    total_gas: int = 0
    gas_by_line: dict[int, int] = field(default_factory=dict)
    opcode_counts: dict[str, int] = field(default_factory=dict)
    top_lines: list[tuple[int, int]] = field(default_factory=list)
    mapped_steps: int = 0
    unmapped_steps: int = 0

    @property
    def mapped_gas(self) -> int:
        return sum(self.gas_by_line.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_gas": self.total_gas,
            "gas_by_line": {str(k): v for k, v in sorted(self.gas_by_line.items())},
            "opcode_counts": dict(self.opcode_counts),
            "mapped_gas": self.mapped_gas,
            "top_lines": [{"line": ln, "gas": gas} for ln, gas in self.top_lines],
            "steps": {
                "mapped": self.mapped_steps,
                "unmapped": self.unmapped_steps,
            },
        }


# ── Trace Parsing ────────────────────────────────────────────────────────────

def _to_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError:
            return default
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return default


def parse_trace(trace: Any) -> list[TraceStep]:
    """Extract steps from a ``debug_traceTransaction`` result.

    Raises:
        InvalidTraceError: *trace* has no ``structLogs`` list.
    """
    if not isinstance(trace, dict) or not isinstance(trace.get("structLogs"), list):
        raise InvalidTraceError("Invalid trace format: missing structLogs")

    steps: list[TraceStep] = []
    for raw in trace["structLogs"]:
        if not isinstance(raw, dict):
            raise InvalidTraceError("Invalid trace format: step is not an object")
        steps.append(TraceStep(
            pc=_to_int(raw.get("pc"), -1),
            op=raw.get("op") or "UNKNOWN",
            gas_cost=_to_int(raw.get("gasCost")),
            depth=_to_int(raw.get("depth"), 1),
        ))
    return steps


# ── Trace Profiler ───────────────────────────────────────────────────────────

class TraceProfiler:
    """Attribute gas of a single trace to source lines."""

    def __init__(self, log: logging.Logger | None = None, top_n: int = TOP_LINES) -> None:
        self._log = log or logger
        self._top_n = top_n

    def profile(
        self,
        trace: dict[str, Any] | list[TraceStep],
        pc_map: PcLineMap,
    ) -> LineGasProfile:
        """Profile one trace (raw RPC result or pre-parsed steps)."""
        steps = trace if isinstance(trace, list) else parse_trace(trace)

        gas_by_line: dict[int, int] = defaultdict(int)
        opcode_counts: dict[str, int] = defaultdict(int)
        total_gas = 0
        mapped = 0

        for step in steps:
            total_gas += step.gas_cost
            opcode_counts[step.op] += 1

            line = pc_map.line_for(step.pc)
            if line <= 0:
                continue
            gas_by_line[line] += step.gas_cost
            mapped += 1

        top = sorted(gas_by_line.items(), key=lambda kv: (-kv[1], kv[0]))[: self._top_n]

        result = LineGasProfile(
            total_gas=total_gas,
            gas_by_line=dict(gas_by_line),
            opcode_counts=dict(opcode_counts),
            top_lines=top,
            mapped_steps=mapped,
            unmapped_steps=len(steps) - mapped,
        )
        self._log.debug(
            "Profiled %d steps: %d mapped, %d unmapped, %d lines with gas",
            len(steps), mapped, result.unmapped_steps, len(result.gas_by_line),
        )
        return result


def profile_trace(
    trace: dict[str, Any],
    source_map: str | None,
    bytecode: str | None,
    source: str,
    *,
    inherit_empty: bool = False,
) -> LineGasProfile:
    """Build the PC map for one compiled contract and profile *trace* with it."""
    steps = parse_trace(trace)
    pc_map = build_pc_line_map(source_map, bytecode, source, inherit_empty=inherit_empty)
    return TraceProfiler().profile(steps, pc_map)
