"""Canonical report schemas shared by the engine, API and CLI.

The fuzz report has exactly one accepted shape. Input that uses other field
names (``functionName``, ``gasByLineAccum``, ...) is rejected at the
boundary rather than guessed at.
"""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class HeatSeverity(str, enum.Enum):
    """Severity of a heatmap line."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BOILERPLATE = "boilerplate"


# ── Fuzz report ──────────────────────────────────────────────────────────────


class InvocationSampleSchema(BaseModel):
    """Gas used by one fuzz invocation."""

    model_config = ConfigDict(extra="forbid")

    gas_used: int = Field(..., ge=0)
    reverted: bool = False


class FunctionReportSchema(BaseModel):
    """Statistics for one fuzzed entry point."""

    model_config = ConfigDict(extra="forbid")

    name: str
    signature: str = ""
    samples: list[InvocationSampleSchema] = Field(default_factory=list)
    min_gas: int = Field(default=0, ge=0)
    max_gas: int = Field(default=0, ge=0)
    avg_gas: float = Field(default=0.0, ge=0)
    p95_gas: int = Field(default=0, ge=0)
    gas_by_line: dict[int, int] = Field(default_factory=dict)
    skipped_iterations: int = Field(default=0, ge=0)
    traced_iterations: int = Field(default=0, ge=0)


class ContractReportSchema(BaseModel):
    """Top-level output of a fuzz run."""

    model_config = ConfigDict(extra="forbid")

    contract_name: str
    runs_per_function: int = Field(..., ge=0)
    functions: list[FunctionReportSchema] = Field(default_factory=list)
    profiling_time_sec: float = 0.0


# ── Heatmap ──────────────────────────────────────────────────────────────────


class HeatmapLineSchema(BaseModel):
    line_number: int
    text: str
    gas: int
    share: float
    severity: HeatSeverity
    is_boilerplate: bool


class HeatmapFunctionSchema(BaseModel):
    name: str
    avg_gas: float
    min_gas: int
    max_gas: int
    p95_gas: int
    lines: list[int]


class HeatmapSummarySchema(BaseModel):
    total_gas: int


class HeatmapSchema(BaseModel):
    """Heatmap response: one entry per source line plus function summaries."""

    contract_name: str
    summary: HeatmapSummarySchema
    lines: list[HeatmapLineSchema]
    functions: list[HeatmapFunctionSchema]
