"""Core configuration for the SolOptic engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SOLOPTIC_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "SolOptic Engine"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    cors_allowed_origins: str = "http://localhost:3000,http://localhost:3001"

    # ── Execution environment (Anvil / any debug_* capable node) ─────────
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 31337

    # ── Compiler ─────────────────────────────────────────────────────────
    solc_version: str | None = None
    solc_default_version: str = "0.8.28"
    solc_optimizer_enabled: bool = False
    solc_optimizer_runs: int = 200
    source_map_inherit_empty: bool = False

    # ── Gas Fuzzer ───────────────────────────────────────────────────────
    fuzz_default_runs: int = 200
    fuzz_max_runs: int = 5_000
    fuzz_gas_limit: int = 10_000_000
    fuzz_receipt_timeout: float = 10.0
    fuzz_seed: int | None = None
    fuzz_deposit_ether: int = 10
    fuzz_run_timeout: float = 600.0

    # ── Trace retrieval ──────────────────────────────────────────────────
    trace_retries: int = Field(default=3, ge=1)
    trace_poll_interval: float = 0.5
    trace_retry_delay: float = 1.0
    trace_settle_delay: float = 0.05
    trace_http_timeout: float = 60.0

    # ── Heatmap ──────────────────────────────────────────────────────────
    heatmap_top_lines: int = 20


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
