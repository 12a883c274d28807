"""SolOptic CLI — per-line gas profiling for Solidity contracts.

Usage:
    soloptic compile <file>          Compile and show contract metadata
    soloptic fuzz <file>             Fuzz every function, print gas statistics
    soloptic heatmap <file>          Fuzz and print a per-line gas heatmap
    soloptic config                  Show current configuration
    soloptic serve                   Run the HTTP API
    soloptic --version               Print version

Examples:
    soloptic fuzz ./contracts/Vault.sol --runs 50 --seed 7
    soloptic heatmap ./contracts/Vault.sol --rpc-url http://127.0.0.1:8545 --top 15
    soloptic heatmap ./contracts/Vault.sol --report fuzz.json
    soloptic fuzz ./contracts/Vault.sol --format json -o fuzz.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from soloptic import __version__
from soloptic.core.errors import SolOpticError
from soloptic.profiler.gas_fuzzer import ContractReport
from soloptic.profiler.heatmap import Heatmap


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_SEV_COLOR = {
    "high": _RED,
    "medium": _YELLOW,
    "low": _CYAN,
    "boilerplate": _DIM,
    "none": "",
}


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = rf"""
{_BOLD}{_CYAN}  ____        _  ___        _   _
 / ___|  ___ | |/ _ \ _ __ | |_(_) ___
 \___ \ / _ \| | | | | '_ \| __| |/ __|
  ___) | (_) | | |_| | |_) | |_| | (__
 |____/ \___/|_|\___/| .__/ \__|_|\___|
                     |_|{_RESET}
  {_DIM}Solidity Gas Profiler — v{__version__}{_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def _add_source_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("path", help="Path to a .sol file")
    p.add_argument("--contract", "-c", help="Contract to profile (default: first in file)")
    p.add_argument("--solc-version", help="solc version (default: from pragma)")
    p.add_argument(
        "--format",
        "-f",
        default="table",
        choices=["table", "json"],
        help="Output format (default: table)",
    )
    p.add_argument("--output", "-o", help="Write output to file instead of stdout")


def _add_fuzz_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--runs", "-r", type=int, help="Invocations per function (default: from config)")
    p.add_argument("--rpc-url", help="JSON-RPC endpoint of the development node")
    p.add_argument("--seed", type=int, help="Seed for reproducible argument synthesis")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="soloptic",
        description="SolOptic — per-line gas profiler for Solidity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command")

    # ── compile ──────────────────────────────────────────────────────────────
    compile_p = sub.add_parser("compile", help="Compile a contract and show its metadata")
    _add_source_args(compile_p)

    # ── fuzz ─────────────────────────────────────────────────────────────────
    fuzz_p = sub.add_parser("fuzz", help="Fuzz every function and report gas statistics")
    _add_source_args(fuzz_p)
    _add_fuzz_args(fuzz_p)

    # ── heatmap ──────────────────────────────────────────────────────────────
    heat_p = sub.add_parser("heatmap", help="Per-line gas heatmap")
    _add_source_args(heat_p)
    _add_fuzz_args(heat_p)
    heat_p.add_argument(
        "--report",
        help="Aggregate an existing fuzz report (JSON) instead of fuzzing",
    )
    heat_p.add_argument("--top", type=int, default=10, help="Hottest lines to list (default: 10)")

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    # ── serve ────────────────────────────────────────────────────────────────
    serve_p = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve_p.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve_p.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve_p.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    return parser


# ── Output ───────────────────────────────────────────────────────────────────


def _emit(payload: dict[str, Any], args: argparse.Namespace) -> None:
    text = json.dumps(payload, indent=2)
    if args.output:
        Path(args.output).write_text(text + "\n")
        if not args.quiet:
            print(f"  Written to {_c(args.output, _CYAN)}")
    else:
        print(text)


def _print_report(report: ContractReport, quiet: bool = False) -> None:
    """Pretty-print per-function gas statistics."""
    if not quiet:
        print(f"\n{_BOLD}Fuzzing complete{_RESET} — {report.contract_name}")
        print(
            f"  Runs per function: {report.runs_per_function}"
            f"  |  Functions: {len(report.functions)}"
            f"  |  Duration: {report.profiling_time_sec:.1f}s\n"
        )

    if not report.functions:
        print(_c("  No callable functions in ABI.", _YELLOW))
        return

    header = f"  {'function':<28} {'samples':>7} {'reverts':>7} {'min':>9} {'avg':>11} {'p95':>9} {'max':>9}"
    print(_c(header, _BOLD))
    for fr in report.functions:
        name = fr.signature or fr.name
        if len(name) > 28:
            name = name[:27] + "…"
        row = (
            f"  {name:<28} {len(fr.samples):>7} {fr.reverted_count:>7} {fr.min_gas:>9} "
            f"{fr.avg_gas:>11.1f} {fr.p95_gas:>9} {fr.max_gas:>9}"
        )
        print(row if fr.samples else _c(row, _DIM))
        if fr.skipped_iterations and not quiet:
            print(_c(f"       {fr.skipped_iterations} iteration(s) skipped (no receipt)", _YELLOW))
    print()


def _print_heatmap(heatmap: Heatmap, top: int, quiet: bool = False) -> None:
    """Pretty-print the hottest source lines."""
    if not quiet:
        print(f"\n{_BOLD}Gas heatmap{_RESET} — {heatmap.contract_name}")
        print(f"  Total attributed gas: {_c(str(heatmap.total_gas), _CYAN)}\n")

    hottest = heatmap.hottest(top)
    if not hottest:
        print(_c("  No gas attributed to source lines.", _YELLOW))
        return

    for ln in hottest:
        sev = ln.severity.value
        badge = _c(f" {sev.upper():<6} ", _SEV_COLOR.get(sev, "") + _BOLD)
        share = _c(f"{ln.share * 100:6.2f}%", _SEV_COLOR.get(sev, ""))
        text = ln.text.strip()
        if len(text) > 60:
            text = text[:59] + "…"
        print(f"  {_DIM}{ln.line_number:>5}{_RESET} {badge} {share} {ln.gas:>10}  {text}")

    boilerplate = [ln.line_number for ln in heatmap.lines if ln.is_boilerplate]
    if boilerplate and not quiet:
        print(_c(f"\n  Line {boilerplate[0]}: compiler boilerplate, excluded from display", _DIM))

    if not quiet:
        print(f"\n{_BOLD}Functions{_RESET}")
        for fn in heatmap.functions:
            lines = ", ".join(str(n) for n in fn.lines[:12])
            if len(fn.lines) > 12:
                lines += ", …"
            print(f"  {fn.name:<24} avg {fn.avg_gas:>11.1f}  p95 {fn.p95_gas:>9}  {_DIM}lines {lines or '-'}{_RESET}")
    print()


# ── Commands ─────────────────────────────────────────────────────────────────


def _read_source(path_arg: str) -> str | None:
    path = Path(path_arg).resolve()
    if not path.is_file():
        print(_c(f"Error: file '{path}' does not exist.", _RED), file=sys.stderr)
        return None
    return path.read_text()


def _compile(args: argparse.Namespace, source: str):
    from soloptic.core.config import get_settings
    from soloptic.ingestion.solidity_compiler import SolidityCompiler

    compiler = SolidityCompiler.from_settings(get_settings())
    if args.solc_version:
        compiler.version = args.solc_version
    return compiler.compile_contract(source, args.contract)


async def _fuzz(args: argparse.Namespace, source: str) -> ContractReport:
    from soloptic.core.config import get_settings
    from soloptic.profiler.environment import Web3Environment
    from soloptic.profiler.gas_fuzzer import GasFuzzer

    settings = get_settings()
    compiled = _compile(args, source)
    if not args.quiet:
        print(f"  Fuzzing {_c(compiled.name, _CYAN)} against {args.rpc_url or settings.rpc_url}…")

    env = Web3Environment.from_settings(settings, rpc_url=args.rpc_url)
    fuzzer = GasFuzzer.from_settings(env, settings, runs_per_function=args.runs, seed=args.seed)
    try:
        return await fuzzer.fuzz(compiled)
    finally:
        await env.aclose()


def _run_compile(args: argparse.Namespace) -> int:
    source = _read_source(args.path)
    if source is None:
        return 1

    compiled = _compile(args, source)
    info = compiled.to_dict()
    if args.format == "json":
        _emit(info, args)
        return 0

    print(f"\n{_BOLD}{compiled.name}{_RESET}")
    print(f"  Creation bytecode:  {info['bytecode_size']} bytes")
    print(f"  Runtime bytecode:   {info['deployed_bytecode_size']} bytes")
    print(f"  Source-map records: {info['source_map_records']}")
    for sig, selector in sorted(compiled.method_identifiers.items()):
        print(f"    {_DIM}0x{selector}{_RESET}  {sig}")
    print()
    return 0


async def _run_fuzz(args: argparse.Namespace) -> int:
    source = _read_source(args.path)
    if source is None:
        return 1

    report = await _fuzz(args, source)
    if args.format == "json":
        _emit(report.to_dict(), args)
    else:
        _print_report(report, quiet=args.quiet)
    return 0


async def _run_heatmap(args: argparse.Namespace) -> int:
    from soloptic.ingestion.solidity_compiler import strip_code_fences
    from soloptic.profiler.heatmap import HeatmapAggregator

    source = _read_source(args.path)
    if source is None:
        return 1

    if args.report:
        report = ContractReport.from_dict(json.loads(Path(args.report).read_text()))
    else:
        report = await _fuzz(args, source)

    heatmap = HeatmapAggregator().build(report, strip_code_fences(source))
    if args.format == "json":
        _emit(heatmap.to_dict(), args)
    else:
        _print_heatmap(heatmap, args.top, quiet=args.quiet)
    return 0


def _run_config() -> int:
    """Print current settings (redacted)."""
    from soloptic.core.config import get_settings

    s = get_settings()
    print(f"\n{_BOLD}SolOptic Configuration{_RESET}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        val = getattr(s, field_name, "")
        if any(kw in field_name for kw in ("password", "secret", "key", "token")):
            val = "****" if val else "(not set)"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("soloptic.api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"soloptic {__version__}")
        return 0

    if not args.no_banner and not args.quiet:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "config":
        return _run_config()

    if args.command == "serve":
        return _run_serve(args)

    from soloptic.core.config import get_settings
    from soloptic.core.logging import setup_logging

    settings = get_settings()
    if args.verbose:
        level = "DEBUG"
    elif args.quiet:
        level = "WARNING"
    else:
        level = settings.log_level
    setup_logging(env=settings.app_env, log_level=level)

    try:
        if args.command == "compile":
            return _run_compile(args)
        if args.command == "fuzz":
            return asyncio.run(_run_fuzz(args))
        if args.command == "heatmap":
            return asyncio.run(_run_heatmap(args))
    except SolOpticError as exc:
        print(_c(f"\n{type(exc).__name__}: {exc}", _RED), file=sys.stderr)
        return 1
    except (ValidationError, json.JSONDecodeError, OSError) as exc:
        print(_c(f"\nInvalid input: {exc}", _RED), file=sys.stderr)
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
