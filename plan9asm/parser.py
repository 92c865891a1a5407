"""Parsing of preprocessed Plan 9 assembly into functions and data directives."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .operands import (
    Arch,
    DataStmt,
    GloblStmt,
    Instr,
    Operand,
    OperandError,
    OperandKind,
    _parse_int,
    parse_imm,
    parse_operand,
    parse_sym,
    split_top_level_csv,
)
from .preprocess import preprocess

_UINT64_MASK = (1 << 64) - 1


class ParseError(ValueError):
    """Raised when assembly source cannot be parsed."""


@dataclass
class Func:
    """A TEXT block: its symbol (``(SB)`` removed) and its instructions."""

    sym: str
    instrs: list[Instr] = field(default_factory=list)


@dataclass
class File:
    """A parsed assembly file."""

    arch: Arch
    funcs: list[Func] = field(default_factory=list)
    data: list[DataStmt] = field(default_factory=list)
    globl: list[GloblStmt] = field(default_factory=list)


def _parse_int64(text: str) -> int:
    s = text.strip()
    if not s:
        raise ParseError("empty int")
    value = _parse_int(s)
    if value is None:
        raise ParseError(f"invalid int {s!r}")
    return value


def parse_width(arch: Arch, text: str) -> int:
    """Parse a DATA width; ``PTRSIZE`` is the pointer size of ``arch``."""
    s = text.strip()
    if s.upper() == "PTRSIZE":
        return 8 if arch in (Arch.AMD64, Arch.ARM64) else 4
    return _parse_int64(s)


def split_sym_plus_off(text: str) -> tuple[str, int]:
    """Split ``name+off`` or ``name-off``; a bad offset leaves the whole name."""
    s = text.strip()
    if not s:
        return "", 0
    sep = max(s.rfind("+"), s.rfind("-"))
    if sep <= 0 or sep == len(s) - 1:
        return s, 0
    off = _parse_int(s[sep:].strip())
    if off is None:
        return s, 0
    return s[:sep].strip(), off


def parse_data_stmt(arch: Arch, rest: str) -> DataStmt:
    """Parse the operands of ``DATA sym+off(SB)/width, $value``."""
    stmt = "DATA " + rest
    parts = rest.split(",")
    if len(parts) != 2:
        raise ParseError(f"invalid DATA: {stmt!r}")
    lhs, rhs = parts[0].strip(), parts[1].strip()
    if not lhs or not rhs:
        raise ParseError(f"invalid DATA: {stmt!r}")

    sym_part, slash, width_str = lhs.partition("/")
    if not slash:
        raise ParseError(f"DATA missing /width: {stmt!r}")
    try:
        width = parse_width(arch, width_str)
    except ParseError:
        width = 0
    if width <= 0:
        raise ParseError(f"DATA invalid width {width_str!r}: {stmt!r}")

    sym_part = sym_part.strip()
    if not sym_part.endswith("(SB)"):
        raise ParseError(f"DATA symbol must end with (SB): {stmt!r}")
    sym_part = sym_part[: -len("(SB)")].strip()
    if not sym_part:
        raise ParseError(f"DATA empty symbol: {stmt!r}")
    sym, off = split_sym_plus_off(sym_part)

    value: Optional[int] = parse_imm(rhs)
    if value is None and rhs.startswith('$"'):
        # String payloads are kept as zero placeholders.
        value = 0
    if value is None and rhs.startswith("$") and parse_sym(rhs[1:]) is not None:
        # Symbol-address initialisers: relocations are not modelled.
        value = 0
    if value is None:
        raise ParseError(f"DATA invalid immediate {rhs!r}: {stmt!r}")
    return DataStmt(sym=sym, off=off, width=width, value=value & _UINT64_MASK)


def parse_globl_stmt(rest: str) -> GloblStmt:
    """Parse the operands of ``GLOBL sym(SB), flags, $size``."""
    stmt = "GLOBL " + rest
    parts = rest.split(",")
    if len(parts) != 3:
        raise ParseError(f"invalid GLOBL: {stmt!r}")
    sym_part, flags, size_part = (p.strip() for p in parts)
    if not sym_part.endswith("(SB)"):
        raise ParseError(f"GLOBL symbol must end with (SB): {stmt!r}")
    sym = sym_part[: -len("(SB)")].strip()
    if not sym:
        raise ParseError(f"GLOBL empty symbol: {stmt!r}")
    size = parse_imm(size_part)
    if (size is None or size < 0) and size_part.startswith("$(") and size_part.endswith(")"):
        # Symbolic sizes from include files are not evaluated; use a placeholder.
        size = 64
    if size is None or size < 0:
        raise ParseError(f"GLOBL invalid size {size_part!r}: {stmt!r}")
    return GloblStmt(sym=sym, flags=flags, size=size)


def parse_operands_csv(text: str) -> list[Operand]:
    """Parse a comma-separated operand list; empty entries are skipped."""
    if not text:
        return []
    return [parse_operand(part) for part in split_top_level_csv(text) if part.strip()]


def split_opcode(stmt: str) -> tuple[str, str]:
    """Split a statement into its opcode and the operand text."""
    positions = [p for p in (stmt.find(" "), stmt.find("\t")) if p >= 0]
    if not positions:
        return stmt, ""
    end = min(positions)
    return stmt[:end].strip(), stmt[end:].strip()


def split_semicolons(line: str) -> list[str]:
    """Split a line into ``;``-separated statements, each stripped."""
    return [part.strip() for part in line.split(";")]


class _FileBuilder:
    def __init__(self, arch: Arch) -> None:
        self.file = File(arch=arch)
        self.cur: Optional[Func] = None

    def _require_func(self, what: str, stmt: str) -> Func:
        if self.cur is None:
            raise ParseError(f"{what} outside TEXT: {stmt!r}")
        return self.cur

    def statement(self, stmt: str) -> None:
        if stmt.endswith(":"):
            func = self._require_func("label", stmt)
            label = stmt[:-1].strip()
            if not label:
                raise ParseError(f"empty label: {stmt!r}")
            func.instrs.append(
                Instr(op="LABEL", args=[Operand(kind=OperandKind.LABEL, sym=label)], raw=stmt)
            )
            return
        if ":" in stmt:
            left, _, right = stmt.partition(":")
            left, right = left.strip(), right.strip()
            if left and right and not any(c in left for c in " \t"):
                func = self._require_func("label", stmt)
                func.instrs.append(
                    Instr(
                        op="LABEL",
                        args=[Operand(kind=OperandKind.LABEL, sym=left)],
                        raw=left + ":",
                    )
                )
                stmt = right

        op_str, rest = split_opcode(stmt)
        op = op_str.upper()
        if op == "TEXT":
            sym = rest.split(",")[0].strip()
            if not sym.endswith("(SB)"):
                raise ParseError(f"TEXT symbol must end with (SB): {sym!r}")
            sym = sym[: -len("(SB)")].strip()
            if not sym:
                raise ParseError(f"empty TEXT symbol: {stmt!r}")
            self.cur = Func(sym=sym, instrs=[Instr(op="TEXT", raw=stmt)])
            self.file.funcs.append(self.cur)
        elif op == "DATA":
            self.file.data.append(parse_data_stmt(self.file.arch, rest))
        elif op == "GLOBL":
            self.file.globl.append(parse_globl_stmt(rest))
        elif op in ("CPUID", "XGETBV"):
            func = self._require_func(op, stmt)
            if rest.strip():
                raise ParseError(f"{op} takes no operands: {stmt!r}")
            func.instrs.append(Instr(op=op, raw=stmt))
        elif op == "BYTE":
            func = self._require_func("BYTE", stmt)
            args = parse_operands_csv(rest)
            if len(args) != 1 or args[0].kind is not OperandKind.IMM:
                raise ParseError(f"BYTE expects single immediate operand: {stmt!r}")
            func.instrs.append(Instr(op=op, args=args, raw=stmt))
        elif op == "RET":
            func = self._require_func("RET", stmt)
            args = parse_operands_csv(rest) if rest.strip() else []
            func.instrs.append(Instr(op=op, args=args, raw=stmt))
        else:
            func = self._require_func("instruction", stmt)
            func.instrs.append(Instr(op=op, args=parse_operands_csv(rest), raw=stmt))


def parse(arch: Arch, src: str) -> File:
    """Preprocess and parse assembly source.

    Unknown opcodes are kept as generic instructions. Raises
    :class:`ParseError` on malformed statements or when no TEXT is present.
    """
    builder = _FileBuilder(arch)
    lines = preprocess(src).split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    for lineno, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()
        if not line:
            continue
        for stmt in split_semicolons(line):
            if not stmt:
                continue
            try:
                builder.statement(stmt)
            except (ParseError, OperandError) as exc:
                raise ParseError(f"line {lineno}: {exc}") from exc
    if not builder.file.funcs:
        raise ParseError("no TEXT directive found")
    return builder.file