"""Tests for the SolOptic CLI (soloptic/cli/main.py).

Covers:
- Argument parsing (compile, fuzz, heatmap, config, serve, version)
- Table and JSON output
- Offline heatmap from a saved report
- Error handling (missing file, compilation failure, invalid report)
"""

from __future__ import annotations

import argparse
import json
from unittest.mock import MagicMock, patch

import pytest

from soloptic import __version__
from soloptic.cli.main import BANNER, _print_heatmap, _print_report, build_parser, main
from soloptic.core.errors import CompilationError
from soloptic.profiler.gas_fuzzer import ContractReport, FunctionReport, InvocationSample
from soloptic.profiler.heatmap import HeatmapAggregator


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch("soloptic.core.logging.setup_logging"):
        yield


@pytest.fixture
def parser() -> argparse.ArgumentParser:
    return build_parser()


@pytest.fixture
def sol_file(tmp_path, vault_source):
    path = tmp_path / "Vault.sol"
    path.write_text(vault_source)
    return path


@pytest.fixture
def report() -> ContractReport:
    fr = FunctionReport(
        name="withdraw",
        signature="withdraw(uint256)",
        samples=[InvocationSample(30_000), InvocationSample(21_000, reverted=True)],
        gas_by_line={3: 90, 5: 10},
        skipped_iterations=1,
    )
    fr.finalize()
    return ContractReport(contract_name="Vault", runs_per_function=3, functions=[fr])


class TestParser:
    def test_fuzz_options(self, parser):
        args = parser.parse_args(["fuzz", "Vault.sol", "--runs", "5", "--seed", "9", "--rpc-url", "http://x:8545"])
        assert args.command == "fuzz"
        assert args.runs == 5
        assert args.seed == 9
        assert args.rpc_url == "http://x:8545"
        assert args.format == "table"

    def test_heatmap_options(self, parser):
        args = parser.parse_args(["heatmap", "Vault.sol", "--report", "r.json", "-f", "json", "-o", "out.json"])
        assert args.report == "r.json"
        assert args.format == "json"
        assert args.output == "out.json"
        assert args.top == 10

    def test_invalid_format(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["fuzz", "Vault.sol", "--format", "sarif"])

    def test_serve_defaults(self, parser):
        args = parser.parse_args(["serve"])
        assert (args.host, args.port, args.reload) == ("127.0.0.1", 8000, False)


class TestOutput:
    def test_print_report(self, report, capsys):
        _print_report(report)
        out = capsys.readouterr().out
        assert "withdraw(uint256)" in out
        assert "30000" in out
        assert "1 iteration(s) skipped" in out

    def test_print_heatmap(self, report, vault_source, capsys):
        heatmap = HeatmapAggregator().build(report, vault_source)
        _print_heatmap(heatmap, top=5)
        out = capsys.readouterr().out
        assert "function withdraw" in out
        assert "HIGH" in out
        assert "Line 5: compiler boilerplate" in out


class TestMain:
    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == f"soloptic {__version__}"

    def test_no_command_prints_help(self, capsys):
        assert main(["--no-banner"]) == 0
        assert "usage:" in capsys.readouterr().out

    def test_banner_on_stderr(self, capsys):
        main([])
        assert BANNER in capsys.readouterr().err

    def test_config_redacts_nothing_secret(self, capsys):
        assert main(["--no-banner", "config"]) == 0
        out = capsys.readouterr().out
        assert "rpc_url" in out
        assert "fuzz_default_runs" in out

    def test_missing_file(self, tmp_path, capsys):
        assert main(["-q", "compile", str(tmp_path / "nope.sol")]) == 1
        assert "does not exist" in capsys.readouterr().err

    def test_compile_json(self, sol_file, vault_compiled, capsys):
        with patch("soloptic.ingestion.solidity_compiler.SolidityCompiler.compile_contract", return_value=vault_compiled):
            assert main(["-q", "compile", str(sol_file), "-f", "json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["contract_name"] == "Vault"

    def test_compilation_error(self, sol_file, capsys):
        err = CompilationError(["ParserError: Expected ';'"])
        with patch("soloptic.ingestion.solidity_compiler.SolidityCompiler.compile_contract", side_effect=err):
            assert main(["-q", "compile", str(sol_file)]) == 1
        assert "ParserError" in capsys.readouterr().err

    def test_fuzz_json(self, sol_file, vault_compiled, fake_env_cls, capsys):
        env = fake_env_cls(gas={"withdraw": 30_000})
        with patch("soloptic.ingestion.solidity_compiler.SolidityCompiler.compile_contract", return_value=vault_compiled), \
             patch("soloptic.profiler.environment.Web3Environment.from_settings", return_value=env):
            code = main(["-q", "fuzz", str(sol_file), "--runs", "2", "--seed", "1", "-f", "json"])

        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert [fn["name"] for fn in data["functions"]] == ["deposit", "withdraw", "ping"]
        assert data["runs_per_function"] == 2
        assert env.closed

    def test_heatmap_from_saved_report(self, sol_file, report, tmp_path, capsys):
        report_path = tmp_path / "fuzz.json"
        report_path.write_text(json.dumps(report.to_dict()))
        out_path = tmp_path / "heatmap.json"

        code = main(["-q", "heatmap", str(sol_file), "--report", str(report_path), "-f", "json", "-o", str(out_path)])

        assert code == 0
        data = json.loads(out_path.read_text())
        assert data["summary"]["total_gas"] == 100
        assert data["lines"][4]["severity"] == "boilerplate"

    def test_heatmap_rejects_invalid_report(self, sol_file, tmp_path, capsys):
        report_path = tmp_path / "fuzz.json"
        report_path.write_text(json.dumps({"contractName": "Vault", "functions": []}))

        assert main(["-q", "heatmap", str(sol_file), "--report", str(report_path)]) == 1
        assert "Invalid input" in capsys.readouterr().err

    def test_serve_runs_uvicorn(self):
        fake_uvicorn = MagicMock()
        with patch.dict("sys.modules", {"uvicorn": fake_uvicorn}):
            assert main(["--no-banner", "serve", "--port", "9000"]) == 0
        fake_uvicorn.run.assert_called_once_with(
            "soloptic.api.main:app", host="127.0.0.1", port=9000, reload=False,
        )
