"""Profiling endpoints — compile, fuzz, per-transaction profile and heatmap."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from soloptic.core.config import Settings, get_settings
from soloptic.core.types import ContractReportSchema, HeatmapSchema
from soloptic.ingestion.solidity_compiler import (
    CompiledContract,
    SolidityCompiler,
    strip_code_fences,
)
from soloptic.profiler.environment import ExecutionEnvironment, Web3Environment
from soloptic.profiler.gas_fuzzer import ContractReport, GasFuzzer
from soloptic.profiler.gas_profiler import TraceProfiler
from soloptic.profiler.heatmap import HeatmapAggregator
from soloptic.profiler.source_map import build_pc_line_map

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────────────


class CompileRequest(BaseModel):
    """Solidity source to compile."""

    source_code: str = Field(..., min_length=1)
    contract_name: str | None = None
    compiler_version: str | None = Field(None, pattern=r"^\d+\.\d+\.\d+$")


class FuzzRequest(CompileRequest):
    """Compile, deploy and fuzz every function of one contract."""

    runs_per_function: int | None = Field(None, ge=0)
    seed: int | None = None
    rpc_url: str | None = None


class ProfileRequest(CompileRequest):
    """Profile one already-mined transaction against the compiled source."""

    tx_hash: str = Field(..., pattern=r"^(0x)?[0-9a-fA-F]{64}$")
    rpc_url: str | None = None


class HeatmapReportRequest(BaseModel):
    """Aggregate a previously produced fuzz report."""

    source_code: str
    report: ContractReportSchema


class CompileResponse(BaseModel):
    contract_name: str
    abi: list[dict[str, Any]]
    bytecode_size: int
    deployed_bytecode_size: int
    source_map_records: int
    method_identifiers: dict[str, str] = {}


# ── Service factories (patched in tests) ─────────────────────────────────────


def make_compiler(settings: Settings, version: str | None = None) -> SolidityCompiler:
    compiler = SolidityCompiler.from_settings(settings)
    if version:
        compiler.version = version
    return compiler


def make_environment(settings: Settings, rpc_url: str | None = None) -> ExecutionEnvironment:
    return Web3Environment.from_settings(settings, rpc_url=rpc_url)


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _compile(req: CompileRequest, settings: Settings) -> CompiledContract:
    compiler = make_compiler(settings, req.compiler_version)
    return await asyncio.to_thread(
        compiler.compile_contract, req.source_code, req.contract_name,
    )


async def _fuzz(req: FuzzRequest, settings: Settings) -> ContractReport:
    runs = req.runs_per_function
    if runs is not None and runs > settings.fuzz_max_runs:
        raise HTTPException(
            status_code=400,
            detail=f"runs_per_function must be at most {settings.fuzz_max_runs}",
        )

    compiled = await _compile(req, settings)
    env = make_environment(settings, req.rpc_url)
    fuzzer = GasFuzzer.from_settings(env, settings, runs_per_function=runs, seed=req.seed)
    try:
        return await asyncio.wait_for(fuzzer.fuzz(compiled), timeout=settings.fuzz_run_timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Fuzz run for %s exceeded %.0fs", compiled.name, settings.fuzz_run_timeout,
            extra={"contract": compiled.name},
        )
        raise HTTPException(
            status_code=504,
            detail=f"Fuzz run exceeded {settings.fuzz_run_timeout:.0f}s",
        ) from None
    finally:
        await env.aclose()


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/compile", response_model=CompileResponse)
async def compile_contract(
    req: CompileRequest, settings: Settings = Depends(get_settings),
) -> CompileResponse:
    """Compile Solidity source and return contract metadata."""
    compiled = await _compile(req, settings)
    return CompileResponse(**compiled.to_dict())


@router.post("/fuzz", response_model=ContractReportSchema)
async def fuzz_contract(
    req: FuzzRequest, settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Fuzz every function of a contract and return per-function gas stats."""
    report = await _fuzz(req, settings)
    return report.to_dict()


@router.post("/profile")
async def profile_transaction(
    req: ProfileRequest, settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Attribute the gas of one mined transaction to source lines."""
    start = time.perf_counter()
    compiled = await _compile(req, settings)
    pc_map = build_pc_line_map(
        compiled.runtime_source_map,
        compiled.deployed_bytecode,
        compiled.source,
        inherit_empty=settings.source_map_inherit_empty,
    )

    env = make_environment(settings, req.rpc_url)
    try:
        trace = await env.trace(req.tx_hash)
    finally:
        await env.aclose()

    profile = TraceProfiler(top_n=settings.heatmap_top_lines).profile(trace, pc_map)
    result = profile.to_dict()
    result["contract_name"] = compiled.name
    result["tx_hash"] = req.tx_hash
    result["duration_ms"] = round((time.perf_counter() - start) * 1000, 1)
    return result


@router.post("/heatmap", response_model=HeatmapSchema)
async def heatmap(
    req: FuzzRequest, settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Compile, fuzz and aggregate into a per-line heatmap."""
    report = await _fuzz(req, settings)
    source = strip_code_fences(req.source_code)
    return HeatmapAggregator().build(report, source).to_dict()


@router.post("/heatmap/report", response_model=HeatmapSchema)
async def heatmap_from_report(req: HeatmapReportRequest) -> dict[str, Any]:
    """Aggregate a caller-supplied fuzz report; no node access required."""
    report = ContractReport.from_schema(req.report)
    return HeatmapAggregator().build(report, req.source_code).to_dict()
