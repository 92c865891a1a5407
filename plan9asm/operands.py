"""Operands, instructions and directives of Plan 9 assembly, with their parsers.

Registers are plain upper-case strings such as ``"AX"``, ``"R0"`` or
``"V0.B16"``. Parsers named ``parse_*`` return ``None`` when the text does
not have the expected form; :func:`parse_operand` raises
:class:`OperandError` instead.
"""

from __future__ import annotations

import math
import re
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .expr import parse_imm_expr, parse_imm_float_expr

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_UINT64_MAX = (1 << 64) - 1


class Arch(str, Enum):
    """Target architecture of an assembly file."""

    AMD64 = "amd64"
    ARM64 = "arm64"


class OperandKind(Enum):
    INVALID = "invalid"
    IMM = "imm"
    REG = "reg"
    REG_SHIFT = "reg_shift"
    FP = "fp"
    FP_ADDR = "fp_addr"
    IDENT = "ident"
    SYM = "sym"
    LABEL = "label"
    MEM = "mem"
    REG_LIST = "reg_list"


class OperandError(ValueError):
    """Raised when operand text cannot be parsed."""


@dataclass(frozen=True)
class MemRef:
    """A memory addressing mode: ``off(base)(index*scale)``."""

    base: str = ""
    off: int = 0
    index: str = ""
    scale: int = 0


@dataclass(frozen=True)
class Operand:
    """One instruction operand; which fields matter depends on ``kind``."""

    kind: OperandKind = OperandKind.INVALID
    imm: int = 0
    reg: str = ""
    shift_amount: int = 0
    shift_right: bool = False
    fp_name: str = ""
    fp_offset: int = 0
    ident: str = ""
    sym: str = ""
    mem: MemRef = field(default_factory=MemRef)
    reg_list: tuple[str, ...] = ()

    def __str__(self) -> str:
        kind = self.kind
        if kind is OperandKind.IMM:
            return f"${self.imm}"
        if kind is OperandKind.REG:
            return self.reg
        if kind is OperandKind.REG_SHIFT:
            op = ">>" if self.shift_right else "<<"
            return f"{self.reg}{op}{self.shift_amount}"
        if kind is OperandKind.FP:
            return f"{self.fp_name}+{self.fp_offset}(FP)"
        if kind is OperandKind.FP_ADDR:
            return f"${self.fp_name}+{self.fp_offset}(FP)"
        if kind is OperandKind.IDENT:
            return self.ident
        if kind is OperandKind.SYM:
            return self.sym
        if kind is OperandKind.LABEL:
            return self.sym + ":"
        if kind is OperandKind.MEM:
            m = self.mem
            if m.index:
                if m.scale == 0:
                    return f"{m.off}({m.base})({m.index})"
                return f"{m.off}({m.base})({m.index}*{m.scale})"
            return f"{m.off}({m.base})"
        if kind is OperandKind.REG_LIST:
            return "(" + ", ".join(self.reg_list) + ")"
        return "<invalid>"


@dataclass
class Instr:
    """One parsed statement inside a TEXT block."""

    op: str
    args: list[Operand] = field(default_factory=list)
    raw: str = ""


@dataclass(frozen=True)
class DataStmt:
    """``DATA sym+off(SB)/width, $value``; value is stored little-endian."""

    sym: str
    off: int
    width: int
    value: int


@dataclass(frozen=True)
class GloblStmt:
    """``GLOBL sym(SB), flags, $size``; flags are kept as raw text."""

    sym: str
    flags: str
    size: int


# ---------------------------------------------------------------------------
# Numeric helpers


_PREFIX_DIGITS = {
    "x": (16, "0123456789abcdefABCDEF"),
    "b": (2, "01"),
    "o": (8, "01234567"),
}


def _parse_unsigned_body(body: str) -> Optional[int]:
    if not body or not body.isascii():
        return None
    prefixed = False
    if len(body) >= 2 and body[0] == "0" and body[1].lower() in _PREFIX_DIGITS:
        base, allowed = _PREFIX_DIGITS[body[1].lower()]
        digits = body[2:]
        prefixed = True
    elif len(body) > 1 and body[0] == "0":
        base, allowed = 8, "01234567"
        digits = body[1:]
        prefixed = True
    else:
        base, allowed = 10, "0123456789"
        digits = body
    if "__" in digits or digits.endswith("_"):
        return None
    if digits.startswith("_") and not prefixed:
        return None
    cleaned = digits.replace("_", "")
    if not cleaned or any(c not in allowed for c in cleaned):
        return None
    return int(cleaned, base)


def _parse_int(text: str, *, unsigned: bool = False) -> Optional[int]:
    """Parse an integer with automatic base detection, within 64-bit range."""
    if not text:
        return None
    body = text
    negative = False
    if body[0] in "+-":
        if unsigned:
            return None
        negative = body[0] == "-"
        body = body[1:]
    value = _parse_unsigned_body(body)
    if value is None:
        return None
    if negative:
        value = -value
    if unsigned:
        return value if value <= _UINT64_MAX else None
    return value if _INT64_MIN <= value <= _INT64_MAX else None


def _to_int64(value: int) -> int:
    value &= _UINT64_MAX
    return value - (1 << 64) if value > _INT64_MAX else value


def _float_bits(value: float) -> int:
    return struct.unpack("<q", struct.pack("<d", value))[0]


_SPECIAL_FLOATS = {
    "inf": math.inf,
    "+inf": math.inf,
    "-inf": -math.inf,
    "infinity": math.inf,
    "+infinity": math.inf,
    "-infinity": -math.inf,
    "nan": math.nan,
}
_DEC_FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_HEX_FLOAT_RE = re.compile(
    r"[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+"
)


def _parse_float(text: str) -> Optional[float]:
    special = _SPECIAL_FLOATS.get(text.lower())
    if special is not None:
        return special
    if _DEC_FLOAT_RE.fullmatch(text):
        value = float(text)
    elif _HEX_FLOAT_RE.fullmatch(text):
        value = float.fromhex(text)
    else:
        return None
    return None if math.isinf(value) else value


_DEC_RE = re.compile(r"[+-]?[0-9]+")


def _atoi(text: str) -> Optional[int]:
    return int(text) if _DEC_RE.fullmatch(text) else None


# ---------------------------------------------------------------------------
# Registers


_REG_ALIASES = {
    "RAX": "AX",
    "RBX": "BX",
    "RCX": "CX",
    "RDX": "DX",
    "RSI": "SI",
    "RDI": "DI",
    "RSP": "SP",
    "ESP": "SP",
    "RBP": "BP",
    "EBP": "BP",
    "G": "R28",
    "LR": "R30",
    "R18_PLATFORM": "R18",
}
_NAMED_REGS = frozenset(
    ["AX", "BX", "CX", "DX", "SI", "DI", "SP", "BP", "PC", "AL", "BL", "CL", "DL", "ZR"]
)


def parse_reg(text: str) -> Optional[str]:
    """Return the canonical register name for ``text``, or None."""
    ss = text.strip().upper()
    if ss in _REG_ALIASES:
        return _REG_ALIASES[ss]
    if ss in _NAMED_REGS:
        return ss
    if len(ss) >= 2 and ss[0] in "RW":
        n = _atoi(ss[1:])
        if n is not None and 0 <= n <= 31:
            return ss if ss[0] == "R" else f"R{n}"
    if len(ss) >= 2 and ss[0] in "XYVF":
        i = 1
        while i < len(ss) and "0" <= ss[i] <= "9":
            i += 1
        if i > 1:
            rest = ss[i:]
            if rest == "" or rest.startswith("."):
                return ss
    return None


# ---------------------------------------------------------------------------
# Operand pieces


def parse_imm(text: str) -> Optional[int]:
    """Parse ``$value`` into a signed 64-bit integer.

    Unsigned 64-bit values wrap to their two's-complement form; floating
    immediates are stored as their IEEE-754 bit pattern.
    """
    s = text.strip()
    if not s.startswith("$"):
        return None
    v = s[1:]
    if not v:
        return None
    n = _parse_int(v)
    if n is not None:
        return n
    u = _parse_int(v, unsigned=True)
    if u is not None:
        return _to_int64(u)
    f = _parse_float(v)
    if f is not None:
        return _float_bits(f)
    f = parse_imm_float_expr(v)
    if f is not None:
        return _float_bits(f)
    u = parse_imm_expr(v)
    if u is None:
        return None
    return _to_int64(u)


def parse_fp(text: str) -> Optional[tuple[str, int]]:
    """Parse ``name+off(FP)`` into ``(name, off)``."""
    s = text.strip()
    if not s.endswith("(FP)"):
        return None
    base = s[: -len("(FP)")]
    plus = base.rfind("+")
    if plus <= 0 or plus == len(base) - 1:
        return None
    off = _parse_int(base[plus + 1 :].strip())
    if off is None:
        return None
    return base[:plus].strip(), off


def parse_fp_addr(text: str) -> Optional[tuple[str, int]]:
    """Parse ``$name+off(FP)``, the address of a frame slot."""
    s = text.strip()
    if not s.startswith("$"):
        return None
    return parse_fp(s[1:])


def parse_reg_shift(text: str) -> Optional[tuple[str, int, bool]]:
    """Parse ``REG<<n`` or ``REG>>n`` into ``(reg, amount, shift_right)``."""
    s = text.strip()
    if not s:
        return None
    op = "<<"
    i = s.find(op)
    if i < 0:
        op = ">>"
        i = s.find(op)
        if i < 0:
            return None
    left = s[:i].strip()
    right = s[i + 2 :].strip()
    if not left or not right:
        return None
    reg = parse_reg(left)
    if reg is None:
        return None
    amount = _parse_int(right)
    if amount is None:
        return None
    return reg, amount, op == ">>"


def _is_alpha(ch: str) -> bool:
    return "A" <= ch <= "Z" or "a" <= ch <= "z" or ch == "_"


def parse_ident(text: str) -> Optional[str]:
    """Return ``text`` stripped if it is a plain identifier, else None."""
    s = text.strip()
    if not s:
        return None
    for i, ch in enumerate(s):
        if _is_alpha(ch) or (i > 0 and "0" <= ch <= "9"):
            continue
        return None
    return s


_SYM_PUNCT = frozenset("_./<>+-$()[]*")


def parse_sym(text: str) -> Optional[str]:
    """Return ``text`` stripped if it looks like a symbol reference."""
    s = text.strip()
    if not s or parse_ident(s) is not None:
        return None
    if s.endswith("(SB)"):
        return s
    has_sep = any(c in " \t," for c in s)
    if not has_sep and s.endswith("<>"):
        return s
    if has_sep:
        return None
    for ch in s:
        if ord(ch) >= 0x80 or ch.isascii() and ch.isalnum() or ch in _SYM_PUNCT:
            continue
        return None
    return s


def _parse_index_scale(inner: str) -> Optional[tuple[str, int]]:
    inner = inner.strip()
    if not inner:
        return None
    if "*" in inner:
        idx_str, _, scale_str = inner.partition("*")
        idx = parse_reg(idx_str.strip())
        if idx is None:
            return None
        scale = _parse_int(scale_str.strip())
        if scale is None or scale == 0:
            return None
        return idx, scale
    idx = parse_reg(inner)
    if idx is None:
        return None
    return idx, 1


def _unwrap_parens(text: str) -> str:
    if text.startswith("("):
        text = text[1:]
    if text.endswith(")"):
        text = text[:-1]
    return text.strip()


def parse_mem(text: str) -> Optional[MemRef]:
    """Parse a memory operand such as ``-8(SI)(R8*1)`` or ``(3*4)(SI)``."""
    s = text.strip()
    if "(" not in s or ")" not in s:
        return None
    i = s.index("(")
    off_part = s[:i].strip()
    rest = s[i:]

    depth = 0
    close = -1
    for k, ch in enumerate(rest):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                close = k
                break
    if close < 0:
        return None
    base_str = rest[1:close].strip()
    rest = rest[close + 1 :].strip()

    off = 0
    if off_part:
        n = _parse_int(off_part)
        if n is not None:
            off = n
        else:
            u = parse_imm_expr(off_part)
            # Symbolic offsets from unexpanded include constants degrade to 0.
            off = _to_int64(u) if u is not None else 0

    base = parse_reg(base_str)
    if base is None:
        if not off_part and rest.startswith("("):
            j2 = rest.find(")")
            if j2 > 1:
                base2 = parse_reg(rest[1:j2].strip())
                if base2 is not None:
                    u = parse_imm_expr(base_str)
                    disp = _to_int64(u) if u is not None else 0
                    rem = rest[j2 + 1 :].strip()
                    if not rem:
                        return MemRef(base=base2, off=disp)
                    if rem.startswith("(") and rem.endswith(")"):
                        idx = _parse_index_scale(_unwrap_parens(rem))
                        if idx is not None:
                            return MemRef(base=base2, off=disp, index=idx[0], scale=idx[1])
        if not off_part and rest.startswith("(") and rest.endswith(")"):
            base2 = parse_reg(_unwrap_parens(rest))
            if base2 is not None:
                u = parse_imm_expr(base_str)
                return MemRef(base=base2, off=_to_int64(u) if u is not None else 0)
        idx = _parse_index_scale(base_str)
        if idx is None or rest:
            return None
        return MemRef(base="", off=off, index=idx[0], scale=idx[1])

    if not rest:
        return MemRef(base=base, off=off)
    if not (rest.startswith("(") and rest.endswith(")")):
        return None
    idx = _parse_index_scale(_unwrap_parens(rest))
    if idx is None:
        return None
    return MemRef(base=base, off=off, index=idx[0], scale=idx[1])


def split_top_level_csv(text: str) -> list[str]:
    """Split on commas outside parentheses and brackets; parts are stripped."""
    s = text.strip()
    if not s:
        return []
    out: list[str] = []
    start = 0
    par = brk = 0
    for i, ch in enumerate(s):
        if ch == "(":
            par += 1
        elif ch == ")":
            par = max(par - 1, 0)
        elif ch == "[":
            brk += 1
        elif ch == "]":
            brk = max(brk - 1, 0)
        elif ch == "," and par == 0 and brk == 0:
            out.append(s[start:i].strip())
            start = i + 1
    out.append(s[start:].strip())
    return out


def _parse_reg_list(text: str, inner: str) -> Operand:
    if not inner:
        raise OperandError(f"empty reg list: {text!r}")
    regs = []
    for part in split_top_level_csv(inner):
        reg = parse_reg(part)
        if reg is None:
            raise OperandError(f"invalid reg in reg list {text!r}: {part!r}")
        regs.append(reg)
    return Operand(kind=OperandKind.REG_LIST, reg_list=tuple(regs))


def parse_operand(text: str) -> Operand:
    """Parse one operand, raising :class:`OperandError` if it is not supported."""
    s = text.strip()
    if not s:
        raise OperandError("empty operand")
    imm = parse_imm(s)
    if imm is not None:
        return Operand(kind=OperandKind.IMM, imm=imm)
    fp_addr = parse_fp_addr(s)
    if fp_addr is not None:
        return Operand(kind=OperandKind.FP_ADDR, fp_name=fp_addr[0], fp_offset=fp_addr[1])
    shift = parse_reg_shift(s)
    if shift is not None:
        reg, amount, right = shift
        return Operand(
            kind=OperandKind.REG_SHIFT, reg=reg, shift_amount=amount, shift_right=right
        )
    reg = parse_reg(s)
    if reg is not None:
        return Operand(kind=OperandKind.REG, reg=reg)
    fp = parse_fp(s)
    if fp is not None:
        return Operand(kind=OperandKind.FP, fp_name=fp[0], fp_offset=fp[1])
    if s.startswith("[") and s.endswith("]"):
        return _parse_reg_list(s, s[1:-1].strip())
    if s.startswith("(") and s.endswith(")") and "," in s:
        return _parse_reg_list(s, s[1:-1].strip())
    mem = parse_mem(s)
    if mem is not None:
        return Operand(kind=OperandKind.MEM, mem=mem)
    sym = parse_sym(s)
    if sym is not None:
        return Operand(kind=OperandKind.SYM, sym=sym)
    ident = parse_ident(s)
    if ident is not None:
        return Operand(kind=OperandKind.IDENT, ident=ident)
    raise OperandError(f"unsupported operand: {s!r}")