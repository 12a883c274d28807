"""Source-map decoding and PC → source line mapping.

solc emits the runtime source map as ``;``-separated records, one per
instruction in decode order, each holding ``:``-separated fields::

    start:length:file:jump:modifierDepth

This module decodes those records, resolves byte offsets in the source to
1-based line numbers, and joins both with the decoded instruction stream
into a ``PcLineMap``.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from enum import Enum

from soloptic.core.errors import MapFormatError
from soloptic.profiler.bytecode import decode_bytecode

logger = logging.getLogger(__name__)

UNMAPPED = -1


class JumpType(Enum):
    """Jump annotation of a source-map record."""
    INTO = "i"
    OUT = "o"
    REGULAR = "-"


@dataclass(frozen=True)
class PositionRecord:
    """One decoded source-map record. ``None`` means the field was empty."""
    start: int | None = None
    length: int | None = None
    file_index: int | None = None
    jump: JumpType | None = None
    modifier_depth: int | None = None


_FIELDS = ("start", "length", "file_index", "jump", "modifier_depth")


def _parse_int(raw: str, name: str, index: int) -> int:
    try:
        return int(raw)
    except ValueError:
        raise MapFormatError(
            f"Record {index}: field '{name}' is not an integer: {raw!r}",
            record_index=index,
        ) from None


def _parse_jump(raw: str, index: int) -> JumpType:
    try:
        return JumpType(raw)
    except ValueError:
        raise MapFormatError(
            f"Record {index}: unknown jump type {raw!r}",
            record_index=index,
        ) from None


def parse_source_map(source_map: str, *, inherit_empty: bool = False) -> list[PositionRecord]:
    """Decode a solc source map into one ``PositionRecord`` per instruction.

    An empty field is read as "absent" and decoded to ``None``. solc's own
    documentation describes empty fields as repeating the previous record's
    value; pass ``inherit_empty=True`` to decode that way instead.

    Raises:
        MapFormatError: a field is present but not parseable.
    """
    if not source_map:
        return []

    records: list[PositionRecord] = []
    previous = PositionRecord()

    for index, entry in enumerate(source_map.split(";")):
        parts = entry.split(":") if entry else []
        values: dict[str, object] = {}

        for pos, name in enumerate(_FIELDS):
            raw = parts[pos] if pos < len(parts) else ""
            if raw == "":
                values[name] = getattr(previous, name) if inherit_empty else None
            elif name == "jump":
                values[name] = _parse_jump(raw, index)
            else:
                values[name] = _parse_int(raw, name, index)

        record = PositionRecord(**values)  # type: ignore[arg-type]
        records.append(record)
        previous = record

    return records


# ── Offset Resolver ──────────────────────────────────────────────────────────

class LineIndex:
    """Byte offset → 1-based line lookup over one source text.

    solc offsets count UTF-8 bytes, so newline positions are taken from the
    encoded source.
    """

    def __init__(self, source: str) -> None:
        encoded = source.encode("utf-8")
        self._newlines: list[int] = []
        pos = encoded.find(b"\n")
        while pos != -1:
            self._newlines.append(pos)
            pos = encoded.find(b"\n", pos + 1)

    @property
    def line_count(self) -> int:
        return len(self._newlines) + 1

    def line_for(self, offset: int | None) -> int:
        """Return the line containing *offset*, or ``UNMAPPED``."""
        if offset is None or offset < 0:
            return UNMAPPED
        return bisect.bisect_left(self._newlines, offset) + 1


def offset_to_line(source: str, offset: int | None) -> int:
    """One-shot line lookup; prefer ``LineIndex`` for repeated queries."""
    return LineIndex(source).line_for(offset)


# ── PC → Line Mapper ─────────────────────────────────────────────────────────

@dataclass
class PcLineMap:
    """Program counter → source line. Unknown PCs are ``UNMAPPED``."""
    lines: dict[int, int] = field(default_factory=dict)

    def line_for(self, pc: int) -> int:
        return self.lines.get(pc, UNMAPPED)

    @property
    def mapped_count(self) -> int:
        return sum(1 for line in self.lines.values() if line > 0)

    @property
    def unmapped_count(self) -> int:
        return len(self.lines) - self.mapped_count

    def __len__(self) -> int:
        return len(self.lines)

    def __contains__(self, pc: object) -> bool:
        return pc in self.lines


def build_pc_line_map(
    source_map: str | None,
    bytecode: str | bytes | None,
    source: str,
    *,
    inherit_empty: bool = False,
    log: logging.Logger | None = None,
) -> PcLineMap:
    """Map every instruction's PC in *bytecode* to a line of *source*.

    Missing source map or bytecode yields an empty map, so every lookup is
    unmapped and profiling degrades to totals only.

    Raises:
        DecodeError: bytecode is present but malformed.
        MapFormatError: source map is present but malformed.
    """
    log = log or logger

    if not source_map or not bytecode:
        log.debug("Missing source map or bytecode, returning empty PC map")
        return PcLineMap()

    records = parse_source_map(source_map, inherit_empty=inherit_empty)
    instructions = decode_bytecode(bytecode)
    line_index = LineIndex(source)

    lines: dict[int, int] = {}
    for inst in instructions:
        record = records[inst.index] if inst.index < len(records) else None
        if record is None or record.start is None:
            lines[inst.pc] = UNMAPPED
            continue
        line = line_index.line_for(record.start)
        lines[inst.pc] = line if line > 0 else UNMAPPED

    pc_map = PcLineMap(lines)
    log.debug(
        "PC map built: %d records, %d instructions, %d mapped, %d unmapped",
        len(records),
        len(instructions),
        pc_map.mapped_count,
        pc_map.unmapped_count,
    )
    return pc_map
