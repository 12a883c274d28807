"""Heatmap aggregation over a fuzz report.

Merges every function's per-line gas into one contract-wide view and
buckets each source line by its share of the total.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from soloptic.core.types import HeatSeverity
from soloptic.profiler.gas_fuzzer import ContractReport

logger = logging.getLogger(__name__)

HIGH_SHARE = 0.40
MEDIUM_SHARE = 0.10
_COMMENT_PREFIXES = ("//", "/*", "*")


def classify_share(share: float) -> HeatSeverity:
    if share > HIGH_SHARE:
        return HeatSeverity.HIGH
    if share > MEDIUM_SHARE:
        return HeatSeverity.MEDIUM
    if share > 0:
        return HeatSeverity.LOW
    return HeatSeverity.NONE


def is_code_line(text: str) -> bool:
    stripped = text.strip()
    return bool(stripped) and not stripped.startswith(_COMMENT_PREFIXES)


# ── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class HeatmapLine:
    line_number: int
    text: str
    gas: int = 0
    share: float = 0.0
    severity: HeatSeverity = HeatSeverity.NONE

    @property
    def is_boilerplate(self) -> bool:
        return self.severity == HeatSeverity.BOILERPLATE

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "text": self.text,
            "gas": self.gas,
            "share": round(self.share, 5),
            "severity": self.severity.value,
            "is_boilerplate": self.is_boilerplate,
        }


@dataclass
class HeatmapFunction:
    name: str
    avg_gas: float = 0.0
    min_gas: int = 0
    max_gas: int = 0
    p95_gas: int = 0
    lines: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "avg_gas": round(self.avg_gas, 1),
            "min_gas": self.min_gas,
            "max_gas": self.max_gas,
            "p95_gas": self.p95_gas,
            "lines": list(self.lines),
        }


@dataclass
class Heatmap:
    """Contract-wide gas heatmap, one entry per source line."""
    contract_name: str
    total_gas: int = 0
    lines: list[HeatmapLine] = field(default_factory=list)
    functions: list[HeatmapFunction] = field(default_factory=list)

    def hottest(self, limit: int = 10) -> list[HeatmapLine]:
        ranked = [ln for ln in self.lines if ln.gas > 0]
        ranked.sort(key=lambda ln: (-ln.gas, ln.line_number))
        return ranked[:limit]

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_name": self.contract_name,
            "summary": {"total_gas": self.total_gas},
            "lines": [ln.to_dict() for ln in self.lines],
            "functions": [fn.to_dict() for fn in self.functions],
        }


# ── Aggregator ───────────────────────────────────────────────────────────────

class HeatmapAggregator:
    """Build a ``Heatmap`` from a ``ContractReport`` and the profiled source."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def build(self, report: ContractReport, source: str) -> Heatmap:
        source_lines = source.split("\n")
        gas_per_line = self._merge(report, source_lines)
        total_gas = sum(gas_per_line.values())

        heatmap = Heatmap(contract_name=report.contract_name, total_gas=total_gas)
        last_line = len(source_lines)

        for number, text in enumerate(source_lines, start=1):
            gas = gas_per_line.get(number, 0)
            share = gas / total_gas if total_gas > 0 else 0.0

            # closing brace of the contract picks up dispatcher / fallback gas
            if number == last_line and gas > 0:
                heatmap.lines.append(HeatmapLine(
                    number, text, gas=0, share=0.0, severity=HeatSeverity.BOILERPLATE,
                ))
                continue

            heatmap.lines.append(HeatmapLine(
                number, text, gas=gas, share=share, severity=classify_share(share),
            ))

        for fr in report.functions:
            heatmap.functions.append(HeatmapFunction(
                name=fr.name,
                avg_gas=fr.avg_gas,
                min_gas=fr.min_gas,
                max_gas=fr.max_gas,
                p95_gas=fr.p95_gas,
                lines=sorted(ln for ln in fr.gas_by_line if ln > 0),
            ))

        self._log.info(
            "Heatmap built for %s: %d lines with gas, total %d",
            report.contract_name,
            len(gas_per_line),
            total_gas,
            extra={"contract": report.contract_name},
        )
        return heatmap

    def _merge(self, report: ContractReport, source_lines: list[str]) -> dict[int, int]:
        gas_per_line: dict[int, int] = {}
        last_line = len(source_lines)
        for fr in report.functions:
            for line, gas in fr.gas_by_line.items():
                if line <= 0 or line > last_line:
                    continue
                # the final line stays so it can be flagged as boilerplate
                if line != last_line and not is_code_line(source_lines[line - 1]):
                    continue
                gas_per_line[line] = gas_per_line.get(line, 0) + gas
        return gas_per_line
