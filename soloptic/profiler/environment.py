"""Execution environment backend for gas fuzzing.

Talks to a local development node (Anvil, Hardhat, geth --dev) over
JSON-RPC:
  1. Deploy compiled creation bytecode from the node's first unlocked account
  2. Send one transaction per fuzz iteration and wait for its receipt
  3. Fetch ``debug_traceTransaction`` struct logs for line attribution

Transactions go through ``web3.AsyncWeb3``. Traces are fetched with a raw
``httpx`` request since struct-log payloads can be very large.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiohttp
import httpx
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from soloptic.core.config import Settings
from soloptic.core.errors import (
    DeploymentError,
    InvocationError,
    InvocationTimeout,
    TraceUnavailable,
)

logger = logging.getLogger(__name__)

# Transport and node failures raised by web3's async HTTP provider.
_NODE_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError)

# Lightweight struct logs: pc/op/gasCost/depth are all the profiler reads.
TRACE_OPTIONS: dict[str, Any] = {
    "disableStorage": True,
    "disableStack": True,
    "enableMemory": False,
    "enableReturnData": False,
}


# ── Execution Results ────────────────────────────────────────────────────────


class ExecutionStatus(Enum):
    SUCCESS = "success"
    REVERT = "revert"


@dataclass
class DeployedContract:
    """Handle to a contract deployed for a fuzz run."""
    address: str
    abi: list[dict[str, Any]] = field(default_factory=list)
    sender: str = ""
    tx_hash: str = ""


@dataclass
class InvocationReceipt:
    """Outcome of one mined invocation."""
    tx_hash: str
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    gas_used: int = 0
    block_number: int = 0

    @property
    def reverted(self) -> bool:
        return self.status == ExecutionStatus.REVERT


# ── ABI helpers ──────────────────────────────────────────────────────────────


def canonical_type(param: dict[str, Any]) -> str:
    """Canonical ABI type, expanding tuples into ``(a,b)[]`` form."""
    sol_type = param.get("type", "")
    if sol_type.startswith("tuple"):
        inner = ",".join(canonical_type(c) for c in param.get("components", []))
        return f"({inner}){sol_type[len('tuple'):]}"
    return sol_type


def function_signature(fn_abi: dict[str, Any]) -> str:
    """``name(type1,type2)`` for an ABI function entry."""
    types = ",".join(canonical_type(p) for p in fn_abi.get("inputs", []))
    return f"{fn_abi.get('name', '')}({types})"


def _hex(data: str | bytes) -> str:
    if isinstance(data, (bytes, bytearray)):
        return Web3.to_hex(data)
    return data if data.startswith("0x") else "0x" + data


class _RpcError(Exception):
    """JSON-RPC level failure of a trace request."""


# ── Environment interface ────────────────────────────────────────────────────


class ExecutionEnvironment(abc.ABC):
    """Deploys programs, executes invocations and returns raw traces."""

    @abc.abstractmethod
    async def deploy(self, bytecode: str, abi: list[dict[str, Any]]) -> DeployedContract:
        """Deploy creation *bytecode*. Raises ``DeploymentError``."""

    @abc.abstractmethod
    async def invoke(
        self,
        contract: DeployedContract,
        fn_abi: dict[str, Any],
        args: list[Any],
        *,
        value: int = 0,
        gas_limit: int,
    ) -> InvocationReceipt:
        """Send one transaction and wait for its receipt.

        Raises ``InvocationTimeout`` when no receipt arrives in time and
        ``InvocationError`` when the transaction cannot be submitted.
        """

    @abc.abstractmethod
    async def trace(self, tx_hash: str) -> dict[str, Any]:
        """Return the raw struct-log trace. Raises ``TraceUnavailable``."""

    async def aclose(self) -> None:
        return None


# ── Web3 / JSON-RPC environment ──────────────────────────────────────────────


class Web3Environment(ExecutionEnvironment):
    """``ExecutionEnvironment`` backed by a JSON-RPC development node.

    Usage::

        env = Web3Environment("http://127.0.0.1:8545")
        deployed = await env.deploy(compiled.bytecode, compiled.abi)
        receipt = await env.invoke(deployed, fn_abi, [42], gas_limit=10_000_000)
        trace = await env.trace(receipt.tx_hash)
        await env.aclose()
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        receipt_timeout: float = 10.0,
        trace_retries: int = 3,
        poll_interval: float = 0.5,
        retry_delay: float = 1.0,
        http_timeout: float = 60.0,
        w3: AsyncWeb3 | None = None,
        http_client: httpx.AsyncClient | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self._w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._client = http_client or httpx.AsyncClient(timeout=http_timeout)
        self._owns_client = http_client is None
        self._receipt_timeout = receipt_timeout
        self._trace_retries = max(trace_retries, 1)
        self._poll_interval = poll_interval
        self._retry_delay = retry_delay
        self._log = log or logger
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings: Settings, rpc_url: str | None = None) -> Web3Environment:
        return cls(
            rpc_url or settings.rpc_url,
            receipt_timeout=settings.fuzz_receipt_timeout,
            trace_retries=settings.trace_retries,
            poll_interval=settings.trace_poll_interval,
            retry_delay=settings.trace_retry_delay,
            http_timeout=settings.trace_http_timeout,
        )

    # ------------------------------------------------------------------
    # Deployment and invocation
    # ------------------------------------------------------------------

    async def deploy(self, bytecode: str, abi: list[dict[str, Any]]) -> DeployedContract:
        try:
            accounts = await self._w3.eth.accounts
        except _NODE_ERRORS as exc:
            raise DeploymentError(
                f"Cannot reach execution environment at {self.rpc_url}: {exc}"
            ) from exc
        if not accounts:
            raise DeploymentError("No accounts available from the execution environment")

        sender = accounts[0]
        factory = self._w3.eth.contract(abi=abi, bytecode=_hex(bytecode))
        try:
            tx_hash = await factory.constructor().transact({"from": sender})
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout,
            )
        except (*_NODE_ERRORS, ValueError, TypeError) as exc:
            raise DeploymentError(f"Deployment failed: {exc}") from exc

        address = receipt.get("contractAddress")
        if receipt["status"] != 1 or not address:
            raise DeploymentError("Deployment transaction reverted")

        self._log.info("Deployed contract at %s from %s", address, sender)
        return DeployedContract(
            address=address,
            abi=list(abi),
            sender=sender,
            tx_hash=Web3.to_hex(tx_hash),
        )

    async def invoke(
        self,
        contract: DeployedContract,
        fn_abi: dict[str, Any],
        args: list[Any],
        *,
        value: int = 0,
        gas_limit: int,
    ) -> InvocationReceipt:
        signature = function_signature(fn_abi)
        handle = self._w3.eth.contract(address=contract.address, abi=contract.abi)
        tx: dict[str, Any] = {"from": contract.sender, "gas": gas_limit}
        if value:
            tx["value"] = value

        # view/pure functions are sent as transactions too so they leave a trace
        try:
            fn = handle.get_function_by_signature(signature)
            tx_hash = await fn(*args).transact(tx)
        except (*_NODE_ERRORS, ValueError, TypeError) as exc:
            raise InvocationError(f"{signature}: {exc}") from exc

        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout,
            )
        except TimeExhausted as exc:
            raise InvocationTimeout(
                f"No receipt for {signature} within {self._receipt_timeout}s"
            ) from exc
        except _NODE_ERRORS as exc:
            raise InvocationError(f"{signature}: {exc}") from exc

        return InvocationReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            status=ExecutionStatus.SUCCESS if receipt["status"] == 1 else ExecutionStatus.REVERT,
            gas_used=int(receipt["gasUsed"]),
            block_number=int(receipt.get("blockNumber") or 0),
        )

    # ------------------------------------------------------------------
    # Tracing
    # ------------------------------------------------------------------

    async def trace(self, tx_hash: str) -> dict[str, Any]:
        """Fetch struct logs, tolerating indexing lag in the node.

        Up to ``trace_retries`` attempts. An attempt whose transaction is
        not yet mined waits ``poll_interval``; a failed RPC call waits
        ``retry_delay`` before the next attempt.
        """
        normalized = tx_hash if tx_hash.startswith("0x") else "0x" + tx_hash
        last_error: Exception | None = None

        for attempt in range(1, self._trace_retries + 1):
            try:
                if not await self._is_mined(normalized):
                    self._log.debug(
                        "Trace attempt %d/%d: %s not yet mined",
                        attempt, self._trace_retries, normalized,
                    )
                    await asyncio.sleep(self._poll_interval)
                    continue
                return await self._debug_trace(normalized)
            except (httpx.HTTPError, ValueError, _RpcError, *_NODE_ERRORS) as exc:
                last_error = exc
                self._log.warning(
                    "Trace attempt %d/%d failed for %s: %s",
                    attempt, self._trace_retries, normalized, exc,
                )
                if attempt < self._trace_retries:
                    await asyncio.sleep(self._retry_delay)

        reason = last_error or "transaction not mined"
        raise TraceUnavailable(
            f"Failed to trace {normalized} after {self._trace_retries} attempts: {reason}"
        )

    async def _is_mined(self, tx_hash: str) -> bool:
        try:
            await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return False
        return True

    async def _debug_trace(self, tx_hash: str) -> dict[str, Any]:
        self._request_id += 1
        response = await self._client.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": "debug_traceTransaction",
                "params": [tx_hash, TRACE_OPTIONS],
                "id": self._request_id,
            },
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise _RpcError(f"Malformed JSON-RPC reply: {type(data).__name__}")

        if data.get("error"):
            err = data["error"]
            if not isinstance(err, dict):
                raise _RpcError(f"RPC error: {err}")
            raise _RpcError(f"RPC error: {err.get('message')} (code: {err.get('code')})")

        trace = data.get("result")
        if not trace:
            raise _RpcError("debug_traceTransaction returned null result")
        if not isinstance(trace, dict):
            raise _RpcError(
                f"debug_traceTransaction returned {type(trace).__name__}, expected an object"
            )

        self._log.debug(
            "Trace received for %s: %d steps", tx_hash, len(trace.get("structLogs") or []),
        )
        return trace

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
