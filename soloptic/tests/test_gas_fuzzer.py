"""Tests for soloptic.profiler.gas_fuzzer: argument synthesis, sampling and statistics."""

from __future__ import annotations

import random

import pydantic
import pytest

from soloptic.core.errors import (
    DeploymentError,
    InvocationError,
    InvocationTimeout,
    MapFormatError,
)
from soloptic.profiler.gas_fuzzer import (
    WEI_PER_ETHER,
    ArgumentSynthesizer,
    ContractReport,
    FunctionReport,
    GasFuzzer,
    InvocationSample,
    callable_functions,
    int_type_max,
    is_withdrawal,
)

SENDER = "0x" + "ab" * 20

WITHDRAW_STEPS = [(2, "PUSH1", 3), (4, "ADD", 5), (5, "STOP", 0)]


def _fuzzer(env, runs: int = 3, seed: int = 7) -> GasFuzzer:
    return GasFuzzer(env, runs_per_function=runs, seed=seed, trace_settle_delay=0)


def _by_name(report: ContractReport) -> dict[str, FunctionReport]:
    return {fr.name: fr for fr in report.functions}


# ── Argument synthesis ───────────────────────────────────────────────────────


class TestArgumentSynthesizer:
    @pytest.fixture
    def synth(self) -> ArgumentSynthesizer:
        return ArgumentSynthesizer(random.Random(1), SENDER)

    @pytest.mark.parametrize("sol_type", ["uint256", "uint8", "int128", "int"])
    def test_integers_are_small(self, synth, sol_type):
        for _ in range(50):
            value = synth.value_for({"type": sol_type})
            assert 0 <= value < 1000

    @pytest.mark.parametrize("sol_type, limit", [("uint8", 255), ("int8", 127), ("uint16", 999)])
    def test_narrow_integers_fit_their_width(self, synth, sol_type, limit):
        values = [synth.value_for({"type": sol_type}) for _ in range(500)]
        assert all(0 <= v <= limit for v in values)

    def test_address_is_sender(self, synth):
        assert synth.value_for({"type": "address"}) == SENDER

    def test_bool(self, synth):
        values = {synth.value_for({"type": "bool"}) for _ in range(50)}
        assert values == {True, False}

    def test_dynamic_bytes_are_four_bytes(self, synth):
        value = synth.value_for({"type": "bytes"})
        assert isinstance(value, bytes)
        assert len(value) == 4

    @pytest.mark.parametrize("size", [1, 4, 32])
    def test_fixed_bytes_match_width(self, synth, size):
        assert len(synth.value_for({"type": f"bytes{size}"})) == size

    def test_string_token(self, synth):
        value = synth.value_for({"type": "string"})
        assert value.startswith("s_")
        assert len(value) == 10
        assert value[2:].isalnum()

    def test_dynamic_array_has_zero_or_one_element(self, synth):
        lengths = {len(synth.value_for({"type": "uint256[]"})) for _ in range(50)}
        assert lengths == {0, 1}

    def test_fixed_array_has_declared_length(self, synth):
        value = synth.value_for({"type": "address[3]"})
        assert value == [SENDER, SENDER, SENDER]

    def test_tuple_components(self, synth):
        value = synth.value_for({
            "type": "tuple",
            "components": [{"type": "address"}, {"type": "bool"}, {"type": "string"}],
        })
        assert isinstance(value, tuple)
        assert value[0] == SENDER
        assert isinstance(value[1], bool)

    def test_unknown_type_is_zero(self, synth):
        assert synth.value_for({"type": "fixed128x18"}) == 0

    def test_small_value_below_one_ether(self, synth):
        for _ in range(50):
            value = synth.small_value()
            assert 0 <= value < WEI_PER_ETHER
            assert value % (WEI_PER_ETHER // 10_000) == 0

    def test_same_seed_same_arguments(self):
        inputs = [{"type": "uint256"}, {"type": "bytes"}, {"type": "string"}, {"type": "bool[]"}]
        a = ArgumentSynthesizer(random.Random(42), SENDER).synthesize(inputs)
        b = ArgumentSynthesizer(random.Random(42), SENDER).synthesize(inputs)
        assert a == b


def test_callable_functions_skips_non_functions(vault_compiled):
    assert [f["name"] for f in callable_functions(vault_compiled.abi)] == ["deposit", "withdraw", "ping"]


@pytest.mark.parametrize(
    "fn_abi, expected",
    [
        ({"name": "withdraw", "inputs": [{"type": "uint256"}]}, True),
        ({"name": "emergencyWithdrawAll", "inputs": [{"type": "uint8"}]}, True),
        ({"name": "withdraw", "inputs": []}, False),
        ({"name": "withdraw", "inputs": [{"type": "address"}]}, False),
        ({"name": "withdraw", "inputs": [{"type": "uint256[]"}]}, False),
        ({"name": "deposit", "inputs": [{"type": "uint256"}]}, False),
    ],
)
def test_is_withdrawal(fn_abi, expected):
    assert is_withdrawal(fn_abi) is expected


@pytest.mark.parametrize(
    "sol_type, expected",
    [("uint8", 255), ("int8", 127), ("uint", 2**256 - 1), ("int256", 2**255 - 1)],
)
def test_int_type_max(sol_type, expected):
    assert int_type_max(sol_type) == expected


# ── Statistics ───────────────────────────────────────────────────────────────


class TestFunctionReport:
    def test_no_samples_all_zero(self):
        fr = FunctionReport(name="f")
        fr.finalize()
        assert (fr.min_gas, fr.max_gas, fr.avg_gas, fr.p95_gas) == (0, 0, 0.0, 0)

    def test_single_sample(self):
        fr = FunctionReport(name="f", samples=[InvocationSample(21_000)])
        fr.finalize()
        assert fr.min_gas == fr.max_gas == fr.p95_gas == 21_000
        assert fr.avg_gas == 21_000

    def test_statistics_over_sorted_samples(self):
        gas = [50, 10, 40, 20, 30, 60, 70, 80, 90, 100, 110, 120, 130, 140, 150, 160, 170, 180, 190, 200]
        fr = FunctionReport(name="f", samples=[InvocationSample(g) for g in gas])
        fr.finalize()

        assert [s.gas_used for s in fr.samples] == sorted(gas)
        assert fr.min_gas == 10
        assert fr.max_gas == 200
        assert fr.avg_gas == pytest.approx(105.0)
        assert fr.p95_gas == 200  # floor(20 * 0.95) = 19
        assert fr.min_gas <= fr.avg_gas <= fr.max_gas

    def test_p95_rank(self):
        fr = FunctionReport(name="f", samples=[InvocationSample(g) for g in range(1, 101)])
        fr.finalize()
        assert fr.p95_gas == 96  # index 95

    def test_add_line_gas_ignores_unmapped(self):
        fr = FunctionReport(name="f")
        fr.add_line_gas({3: 10, -1: 99, 0: 5})
        fr.add_line_gas({3: 2, 4: 1})
        assert fr.gas_by_line == {3: 12, 4: 1}


class TestContractReport:
    def test_round_trip_through_canonical_form(self):
        report = ContractReport(
            contract_name="Vault",
            runs_per_function=2,
            functions=[
                FunctionReport(
                    name="withdraw",
                    signature="withdraw(uint256)",
                    samples=[InvocationSample(21_000, reverted=True), InvocationSample(30_000)],
                    gas_by_line={3: 8},
                ),
            ],
        )
        report.functions[0].finalize()
        restored = ContractReport.from_dict(report.to_dict())

        fr = restored.functions[0]
        assert restored.contract_name == "Vault"
        assert fr.gas_by_line == {3: 8}
        assert fr.samples[0].reverted is True
        assert fr.p95_gas == 30_000

    def test_rejects_foreign_field_names(self):
        data = {
            "contract_name": "Vault",
            "runs_per_function": 1,
            "functions": [{"functionName": "f", "gasByLineAccum": {"1": 2}}],
        }
        with pytest.raises(pydantic.ValidationError):
            ContractReport.from_dict(data)

    def test_from_dict_error_is_value_error(self):
        with pytest.raises(ValueError):
            ContractReport.from_dict({"contract_name": "Vault"})


# ── Fuzz driver ──────────────────────────────────────────────────────────────


class TestGasFuzzer:
    @pytest.mark.asyncio
    async def test_every_function_reported_with_samples(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(
            gas={"deposit": 45_000, "withdraw": 30_000, "ping": 23_000},
            trace_steps={"withdraw": WITHDRAW_STEPS},
        )
        report = await _fuzzer(env).fuzz(vault_compiled)

        assert report.contract_name == "Vault"
        assert report.runs_per_function == 3
        assert [fr.name for fr in report.functions] == ["deposit", "withdraw", "ping"]

        fns = _by_name(report)
        assert [s.gas_used for s in fns["withdraw"].samples] == [30_000] * 3
        assert fns["withdraw"].gas_by_line == {3: 9, 4: 15}
        assert fns["withdraw"].traced_iterations == 3
        assert fns["deposit"].gas_by_line == {}
        assert fns["ping"].avg_gas == 23_000
        assert fns["withdraw"].signature == "withdraw(uint256)"

    @pytest.mark.asyncio
    async def test_deposit_seeds_state_first(self, fake_env_cls, vault_compiled):
        env = fake_env_cls()
        await _fuzzer(env, runs=2).fuzz(vault_compiled)

        first = env.calls[0]
        assert first.name == "deposit"
        assert first.value == 10 * WEI_PER_ETHER
        assert first.args == []
        assert len(env.calls) == 1 + 3 * 2

    @pytest.mark.asyncio
    async def test_payable_value_and_gas_ceiling(self, fake_env_cls, vault_compiled):
        env = fake_env_cls()
        await GasFuzzer(env, runs_per_function=5, seed=3, gas_limit=9_000_000, trace_settle_delay=0).fuzz(
            vault_compiled,
        )

        fuzzed_deposits = env.calls_to("deposit")[1:]
        assert all(0 <= c.value < WEI_PER_ETHER for c in fuzzed_deposits)
        assert all(c.value == 0 for c in env.calls_to("withdraw"))
        assert all(c.gas_limit == 9_000_000 for c in env.calls)
        assert all(0 <= c.args[0] < 1000 for c in env.calls_to("withdraw"))

    @pytest.mark.asyncio
    async def test_function_without_samples_still_reported(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(errors={"ping": InvocationTimeout("no receipt")})
        report = await _fuzzer(env).fuzz(vault_compiled)

        ping = _by_name(report)["ping"]
        assert ping.samples == []
        assert (ping.min_gas, ping.max_gas, ping.avg_gas, ping.p95_gas) == (0, 0, 0.0, 0)
        assert ping.skipped_iterations == 3
        assert len(_by_name(report)["withdraw"].samples) == 3

    @pytest.mark.asyncio
    async def test_reverted_invocation_is_a_sample(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(gas={"withdraw": 21_000}, reverts={"withdraw"})
        report = await _fuzzer(env).fuzz(vault_compiled)

        withdraw = _by_name(report)["withdraw"]
        assert len(withdraw.samples) == 3
        assert all(s.reverted and s.gas_used == 21_000 for s in withdraw.samples)
        assert withdraw.min_gas == 21_000

    @pytest.mark.asyncio
    async def test_zero_gas_is_not_recorded(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(gas={"ping": 0})
        report = await _fuzzer(env).fuzz(vault_compiled)
        assert _by_name(report)["ping"].samples == []

    @pytest.mark.asyncio
    async def test_trace_failure_keeps_sample(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(
            gas={"withdraw": 30_000},
            trace_steps={"withdraw": WITHDRAW_STEPS},
            trace_failures={"withdraw"},
        )
        report = await _fuzzer(env).fuzz(vault_compiled)

        withdraw = _by_name(report)["withdraw"]
        assert len(withdraw.samples) == 3
        assert withdraw.gas_by_line == {}
        assert withdraw.traced_iterations == 0

    @pytest.mark.asyncio
    async def test_seed_failure_is_ignored(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(errors={"deposit": InvocationError("insufficient funds")})
        report = await _fuzzer(env).fuzz(vault_compiled)

        assert _by_name(report)["deposit"].skipped_iterations == 3
        assert len(_by_name(report)["ping"].samples) == 3

    @pytest.mark.asyncio
    async def test_fatal_error_aborts_run(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(errors={"withdraw": DeploymentError("node went away")})
        with pytest.raises(DeploymentError):
            await _fuzzer(env).fuzz(vault_compiled)

    @pytest.mark.asyncio
    async def test_deployment_failure_propagates(self, fake_env_cls, vault_compiled):
        env = fake_env_cls(deploy_error=DeploymentError("No accounts available"))
        with pytest.raises(DeploymentError, match="No accounts"):
            await _fuzzer(env).fuzz(vault_compiled)

    @pytest.mark.asyncio
    async def test_malformed_source_map_fails_before_deploy(self, fake_env_cls, vault_compiled):
        vault_compiled.runtime_source_map = "x:1:0:-"
        env = fake_env_cls()
        with pytest.raises(MapFormatError):
            await _fuzzer(env).fuzz(vault_compiled)
        assert env.deployed is None

    @pytest.mark.asyncio
    async def test_missing_source_map_skips_tracing(self, fake_env_cls, vault_compiled):
        vault_compiled.runtime_source_map = ""
        env = fake_env_cls(trace_steps={"withdraw": WITHDRAW_STEPS})
        report = await _fuzzer(env).fuzz(vault_compiled)

        assert env.traced == []
        assert len(_by_name(report)["withdraw"].samples) == 3

    @pytest.mark.asyncio
    async def test_same_seed_reproduces_arguments(self, fake_env_cls, vault_compiled):
        env_a, env_b = fake_env_cls(), fake_env_cls()
        await _fuzzer(env_a, seed=99).fuzz(vault_compiled)
        await _fuzzer(env_b, seed=99).fuzz(vault_compiled)
        assert [(c.args, c.value) for c in env_a.calls] == [(c.args, c.value) for c in env_b.calls]

    @pytest.mark.asyncio
    async def test_zero_runs(self, fake_env_cls, vault_compiled):
        env = fake_env_cls()
        report = await _fuzzer(env, runs=0).fuzz(vault_compiled)
        assert len(report.functions) == 3
        assert all(fr.samples == [] for fr in report.functions)

    def test_from_settings(self, fake_env_cls):
        from soloptic.core.config import Settings

        settings = Settings(fuzz_default_runs=12, fuzz_gas_limit=5_000_000, fuzz_seed=4)
        fuzzer = GasFuzzer.from_settings(fake_env_cls(), settings)
        assert fuzzer._runs == 12
        assert fuzzer._gas_limit == 5_000_000

        override = GasFuzzer.from_settings(fake_env_cls(), settings, runs_per_function=1)
        assert override._runs == 1
