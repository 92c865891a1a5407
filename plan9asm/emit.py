"""Signatures, options and the module-level parts of generated LLVM IR.

This covers external function declarations, external globals referenced
through ``sym(SB)`` operands, and constant globals built from DATA/GLOBL
directives.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from .operands import OperandKind
from .parser import File, split_sym_plus_off

VOID = "void"
I1 = "i1"
I8 = "i8"
I16 = "i16"
I32 = "i32"
I64 = "i64"
PTR = "ptr"

Resolver = Callable[[str], str]

_UINT64_MASK = (1 << 64) - 1

_BRANCH_OPS = frozenset(
    [
        "JMP", "JE", "JEQ", "JZ", "JNE", "JNZ",
        "JL", "JLT", "JLE", "JG", "JGT", "JGE",
        "JB", "JBE", "JA", "JAE", "JLS",
        "JC", "JNC", "JCC", "CALL", "BL", "B",
    ]
)

_LLVM_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class TranslateError(ValueError):
    """Raised when assembly cannot be translated to LLVM IR."""


@dataclass(frozen=True)
class FrameSlot:
    """A ``name+off(FP)`` slot mapped to an LLVM argument or result.

    ``index`` selects the function argument (params) or the result field
    (results). When ``field`` is non-negative the slot is that field of an
    aggregate argument; otherwise it is the argument itself.
    """

    offset: int
    type: str
    index: int
    field: int = -1


@dataclass(frozen=True)
class FrameLayout:
    """Parameter and result slots of a function's argument frame."""

    params: tuple[FrameSlot, ...] = ()
    results: tuple[FrameSlot, ...] = ()


@dataclass(frozen=True)
class FuncSig:
    """LLVM signature of an assembly function.

    ``ret`` is an LLVM type string (``"void"`` for no result); an empty
    ``ret`` marks an incomplete signature. ``arg_regs`` optionally names the
    registers that receive the arguments.
    """

    name: str = ""
    args: tuple[str, ...] = ()
    ret: str = ""
    attrs: str = ""
    arg_regs: tuple[str, ...] = ()
    frame: FrameLayout = field(default_factory=FrameLayout)


@dataclass
class Options:
    """Translation settings.

    ``resolve_sym`` maps a TEXT symbol to the emitted linker name (identity
    when None); ``sigs`` maps resolved names to signatures.
    """

    target_triple: str = ""
    resolve_sym: Optional[Resolver] = None
    sigs: dict[str, FuncSig] = field(default_factory=dict)
    goarch: str = ""
    annotate_source: bool = False


def llvm_global(name: str) -> str:
    """Return ``name`` as an LLVM global reference, quoted when needed."""
    if _LLVM_IDENT_RE.fullmatch(name):
        return "@" + name
    return '@"' + name.replace('"', '\\"') + '"'


def best_align(size: int) -> int:
    """Largest power-of-two alignment up to 16 that divides ``size``."""
    for align in (16, 8, 4, 2):
        if size >= align and size % align == 0:
            return align
    return 1


def llvm_i8_array_init(data: bytes) -> str:
    """Render bytes as an LLVM ``[N x i8]`` initializer."""
    if not data:
        return "zeroinitializer"
    return "[" + ", ".join(f"i8 {b}" for b in data) + "]"


def _resolve_local(resolve: Resolver, sym: str) -> str:
    """Resolve a data symbol; unqualified names are package-local."""
    sym = sym.strip()
    if not sym:
        return ""
    if "·" in sym or "/" in sym or "." in sym:
        return resolve(sym)
    return resolve("·" + sym)


def _parse_sb_ref(text: str) -> Optional[tuple[str, int]]:
    if not text.endswith("(SB)"):
        return None
    return split_sym_plus_off(text[: -len("(SB)")])


def emit_extern_func_decls(
    file: File, resolve: Resolver, sigs: Mapping[str, FuncSig]
) -> str:
    """Declarations for signatures of functions not defined in ``file``, sorted by name."""
    defined = {resolve(fn.sym) for fn in file.funcs}
    names = sorted(name for name in sigs if name not in defined)
    lines = []
    for name in names:
        sig = sigs[name]
        if not sig.ret:
            continue
        decl = f"declare {sig.ret} {llvm_global(name)}({', '.join(sig.args)})"
        if sig.attrs:
            decl += " " + sig.attrs
        lines.append(decl + "\n")
    if names:
        lines.append("\n")
    return "".join(lines)


def emit_extern_sb_globals(
    file: File, resolve: Resolver, sigs: Mapping[str, FuncSig]
) -> str:
    """External ``i8`` globals for symbol operands not defined in ``file``.

    Bare symbols used as branch or call targets are not data and are left
    out, as are names that have a function signature.
    """
    defined = {_resolve_local(resolve, g.sym) for g in file.globl}
    defined |= {_resolve_local(resolve, d.sym) for d in file.data}
    defined |= {resolve(fn.sym) for fn in file.funcs}

    need: set[str] = set()
    for fn in file.funcs:
        for ins in fn.instrs:
            op_name = ins.op.upper()
            for arg in ins.args:
                if arg.kind is not OperandKind.SYM:
                    continue
                ref = _parse_sb_ref(arg.sym.strip())
                if ref is None:
                    continue
                base, off = ref
                base = base.removeprefix("$")
                if not base:
                    continue
                if off == 0 and op_name in _BRANCH_OPS:
                    continue
                name = _resolve_local(resolve, base)
                if name and name not in defined and name not in sigs:
                    need.add(name)
    if not need:
        return ""
    return "".join(f"{llvm_global(n)} = external global i8\n" for n in sorted(need)) + "\n"


def emit_data_globals(file: File, resolve: Resolver) -> str:
    """Constant ``[N x i8]`` globals from merged DATA and GLOBL directives.

    Values are written little-endian. Raises :class:`TranslateError` for a
    non-positive width or a payload outside its symbol.
    """
    sizes: dict[str, int] = {}
    payloads: dict[str, dict[int, bytes]] = {}

    for g in file.globl:
        name = _resolve_local(resolve, g.sym)
        payloads.setdefault(name, {})
        sizes[name] = max(sizes.get(name, 0), g.size)

    for d in file.data:
        name = _resolve_local(resolve, d.sym)
        chunks = payloads.setdefault(name, {})
        sizes.setdefault(name, 0)
        if d.width <= 0:
            raise TranslateError(f"DATA {d.sym}: invalid width {d.width}")
        value = d.value & _UINT64_MASK
        if d.width < 8:
            value &= (1 << (8 * d.width)) - 1
        chunks[d.off] = value.to_bytes(d.width, "little")
        sizes[name] = max(sizes[name], d.off + d.width)

    lines = []
    for name in sorted(payloads):
        size = sizes[name]
        if size <= 0:
            continue
        buf = bytearray(size)
        for off in sorted(payloads[name]):
            chunk = payloads[name][off]
            if off < 0 or off + len(chunk) > size:
                raise TranslateError(
                    f"DATA {name}: out of bounds off={off} len={len(chunk)} size={size}"
                )
            buf[off : off + len(chunk)] = chunk
        lines.append(
            f"{llvm_global(name)} = constant [{size} x i8] "
            f"{llvm_i8_array_init(bytes(buf))}, align {best_align(size)}\n"
        )
    return "".join(lines)