"""EVM instruction decoder.

Walks runtime bytecode left to right and yields one ``Instruction`` per
opcode. PUSH1..PUSH32 carry 1..32 immediate bytes which are skipped; every
other byte (including values with no assigned opcode) is a single-byte
instruction.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from soloptic.core.errors import DecodeError

logger = logging.getLogger(__name__)


# ── EVM Opcode Table ─────────────────────────────────────────────────────────

PUSH1 = 0x60
PUSH32 = 0x7F

_NAMED_OPCODES: dict[int, str] = {
    0x00: "STOP", 0x01: "ADD", 0x02: "MUL", 0x03: "SUB", 0x04: "DIV",
    0x05: "SDIV", 0x06: "MOD", 0x07: "SMOD", 0x08: "ADDMOD", 0x09: "MULMOD",
    0x0A: "EXP", 0x0B: "SIGNEXTEND",
    0x10: "LT", 0x11: "GT", 0x12: "SLT", 0x13: "SGT", 0x14: "EQ",
    0x15: "ISZERO", 0x16: "AND", 0x17: "OR", 0x18: "XOR", 0x19: "NOT",
    0x1A: "BYTE", 0x1B: "SHL", 0x1C: "SHR", 0x1D: "SAR",
    0x20: "SHA3",
    0x30: "ADDRESS", 0x31: "BALANCE", 0x32: "ORIGIN", 0x33: "CALLER",
    0x34: "CALLVALUE", 0x35: "CALLDATALOAD", 0x36: "CALLDATASIZE",
    0x37: "CALLDATACOPY", 0x38: "CODESIZE", 0x39: "CODECOPY",
    0x3A: "GASPRICE", 0x3B: "EXTCODESIZE", 0x3C: "EXTCODECOPY",
    0x3D: "RETURNDATASIZE", 0x3E: "RETURNDATACOPY", 0x3F: "EXTCODEHASH",
    0x40: "BLOCKHASH", 0x41: "COINBASE", 0x42: "TIMESTAMP", 0x43: "NUMBER",
    0x44: "PREVRANDAO", 0x45: "GASLIMIT", 0x46: "CHAINID",
    0x47: "SELFBALANCE", 0x48: "BASEFEE", 0x49: "BLOBHASH", 0x4A: "BLOBBASEFEE",
    0x50: "POP", 0x51: "MLOAD", 0x52: "MSTORE", 0x53: "MSTORE8",
    0x54: "SLOAD", 0x55: "SSTORE", 0x56: "JUMP", 0x57: "JUMPI",
    0x58: "PC", 0x59: "MSIZE", 0x5A: "GAS", 0x5B: "JUMPDEST",
    0x5C: "TLOAD", 0x5D: "TSTORE", 0x5E: "MCOPY", 0x5F: "PUSH0",
    0xF0: "CREATE", 0xF1: "CALL", 0xF2: "CALLCODE", 0xF3: "RETURN",
    0xF4: "DELEGATECALL", 0xF5: "CREATE2", 0xFA: "STATICCALL",
    0xFD: "REVERT", 0xFE: "INVALID", 0xFF: "SELFDESTRUCT",
}

# Mnemonic for all 256 byte values
OPCODE_NAMES: dict[int, str] = {b: f"UNKNOWN_0x{b:02x}" for b in range(256)}
OPCODE_NAMES.update(_NAMED_OPCODES)
for _i in range(PUSH1, PUSH32 + 1):
    OPCODE_NAMES[_i] = f"PUSH{_i - 0x5F}"
for _i in range(0x80, 0x90):
    OPCODE_NAMES[_i] = f"DUP{_i - 0x7F}"
for _i in range(0x90, 0xA0):
    OPCODE_NAMES[_i] = f"SWAP{_i - 0x8F}"
for _i in range(0xA0, 0xA5):
    OPCODE_NAMES[_i] = f"LOG{_i - 0xA0}"

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


# ── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Instruction:
    """A single decoded EVM instruction."""
    pc: int         # byte offset in the code
    opcode: int
    index: int      # position in decode order
    size: int = 1   # bytes occupied, immediate included

    @property
    def name(self) -> str:
        return OPCODE_NAMES[self.opcode]

    @property
    def is_push(self) -> bool:
        return PUSH1 <= self.opcode <= PUSH32

    @property
    def next_pc(self) -> int:
        return self.pc + self.size

    def __repr__(self) -> str:
        return f"{self.pc:#06x}: {self.name}"


# ── Decoder ──────────────────────────────────────────────────────────────────

def normalize_bytecode(bytecode: str | bytes) -> bytes:
    """Turn hex text (optionally ``0x``-prefixed) or raw bytes into bytes."""
    if isinstance(bytecode, (bytes, bytearray)):
        code = bytes(bytecode)
    elif isinstance(bytecode, str):
        bc = bytecode.strip()
        if bc[:2] in ("0x", "0X"):
            bc = bc[2:]
        if len(bc) % 2:
            raise DecodeError(f"Odd-length hex bytecode ({len(bc)} digits)")
        if not _HEX_RE.match(bc):
            raise DecodeError("Bytecode contains non-hex characters")
        code = bytes.fromhex(bc)
    else:
        raise DecodeError(f"Unsupported bytecode type: {type(bytecode).__name__}")

    if not code:
        raise DecodeError("Empty bytecode")
    return code


def decode_bytecode(bytecode: str | bytes) -> list[Instruction]:
    """Decode bytecode into instructions ordered by program counter.

    A trailing PUSH whose immediate is cut short by the end of the code is
    kept, with ``size`` clipped to the bytes actually present.

    Raises:
        DecodeError: empty input, odd-length or non-hex text.
    """
    code = normalize_bytecode(bytecode)
    instructions: list[Instruction] = []
    pc = 0
    end = len(code)

    while pc < end:
        opcode = code[pc]
        width = 1
        if PUSH1 <= opcode <= PUSH32:
            width += opcode - 0x5F
        inst = Instruction(pc=pc, opcode=opcode, index=len(instructions), size=min(width, end - pc))
        if inst.is_push and inst.size < width:
            logger.debug("%s at pc %d truncated to %d bytes", inst.name, pc, inst.size)
        instructions.append(inst)
        pc = inst.next_pc

    logger.debug("Decoded %d instructions from %d bytes", len(instructions), end)
    return instructions
