"""Health check endpoints for the execution node and compiler."""

from __future__ import annotations

import logging
import time

import httpx
from fastapi import APIRouter, Depends

from soloptic.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Liveness check."""
    return {"status": "healthy", "service": "soloptic-engine"}


@router.get("/health/ready")
async def readiness_check(settings: Settings = Depends(get_settings)) -> dict:
    """Readiness check against the RPC node and installed solc versions."""
    checks: dict[str, dict] = {}
    overall = True
    start = time.perf_counter()

    # ── Execution node ───────────────────────────────────────────────
    try:
        async with httpx.AsyncClient(timeout=3.0) as client:
            response = await client.post(
                settings.rpc_url,
                json={"jsonrpc": "2.0", "method": "eth_chainId", "params": [], "id": 1},
            )
            response.raise_for_status()
            chain_id = int(response.json()["result"], 16)
        if chain_id == settings.chain_id:
            checks["node"] = {"status": "up", "chain_id": chain_id}
        else:
            checks["node"] = {
                "status": "wrong_chain",
                "chain_id": chain_id,
                "expected_chain_id": settings.chain_id,
            }
            overall = False
    except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
        checks["node"] = {"status": "down", "error": str(e)}
        overall = False

    # ── solc ─────────────────────────────────────────────────────────
    try:
        import solcx

        installed = [str(v) for v in solcx.get_installed_solc_versions()]
        checks["solc"] = {"status": "up" if installed else "unavailable", "versions": installed}
    except OSError as e:
        checks["solc"] = {"status": "down", "error": str(e)}
        # solc is installed on demand, so this never fails overall health

    elapsed = round((time.perf_counter() - start) * 1000, 1)

    return {
        "status": "healthy" if overall else "degraded",
        "service": "soloptic-engine",
        "checks": checks,
        "latency_ms": elapsed,
    }
