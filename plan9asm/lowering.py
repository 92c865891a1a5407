"""Linear lowering of parsed assembly functions to textual LLVM IR.

Registers are modelled as SSA values. Frame slots (``name+off(FP)``) are
mapped to function arguments and results through each function's
:class:`~plan9asm.emit.FuncSig`. Instructions without a lowering are skipped.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Optional

from .comments import ir_source_comment
from .emit import (
    I1,
    I8,
    I16,
    I32,
    I64,
    PTR,
    VOID,
    FrameSlot,
    FuncSig,
    Options,
    TranslateError,
    emit_data_globals,
    emit_extern_func_decls,
    emit_extern_sb_globals,
    llvm_global,
)
from .operands import Arch, Instr, MemRef, Operand, OperandKind
from .parser import File, Func

_INT_TYPES = (I1, I8, I16, I32, I64)
_SMALL_INTS = (I1, I8, I16)
_FLOAT_TYPES = ("float", "double")
_AMD64_ARG_REGS = ("DI", "SI", "DX", "CX", "R8", "R9")

_DEFAULT_RETURN_REG = "AX"
_RETURN_REGS = {Arch.ARM64: "R0", Arch.AMD64: "AX"}

_CPUID_CONSTRAINTS = "={ax},={bx},={cx},={dx},{ax},{cx},~{dirflag},~{fpsr},~{flags}"
_XGETBV_CONSTRAINTS = "={ax},={dx},{cx},~{dirflag},~{fpsr},~{flags}"


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _zero_value(typ: str) -> str:
    if typ in _INT_TYPES:
        return "0"
    if typ == PTR:
        return "null"
    if typ in _FLOAT_TYPES:
        return "0.0"
    return "zeroinitializer"


def _is_ssa(val: str) -> bool:
    return val.startswith("%")


def arch_return_reg(arch: Arch) -> str:
    """Register that holds a scalar return value on ``arch``.

    Architectures without a known return register fall back to ``AX``.
    """
    try:
        known = Arch(arch)
    except ValueError:
        return _DEFAULT_RETURN_REG
    return _RETURN_REGS.get(known, _DEFAULT_RETURN_REG)


@dataclass(frozen=True)
class _Val:
    typ: str
    val: str


class _FuncLowering:
    def __init__(self, arch: Arch, sig: FuncSig) -> None:
        self.arch = arch
        self.sig = sig
        self.out: list[str] = []
        self.reg: dict[str, _Val] = {}
        self.results: dict[int, _Val] = {}
        self.tmp = 0
        self._init_arg_regs()

    def _init_arg_regs(self) -> None:
        sig = self.sig
        if self.arch == Arch.ARM64:
            regs = sig.arg_regs or tuple(f"R{i}" for i in range(8))
        elif self.arch == Arch.AMD64:
            regs = sig.arg_regs or _AMD64_ARG_REGS
        else:
            return
        for i, (reg, typ) in enumerate(zip(regs, sig.args)):
            self.reg[reg] = _Val(typ, f"%arg{i}")

    def emit(self, line: str) -> None:
        self.out.append(f"  {line}\n")

    def new_tmp(self) -> str:
        self.tmp += 1
        return f"t{self.tmp}"

    def _op(self, text: str, typ: str) -> _Val:
        name = self.new_tmp()
        self.emit(f"%{name} = {text}")
        return _Val(typ, "%" + name)

    def cast(self, v: _Val, to: str) -> _Val:
        if not v.typ:
            raise TranslateError(f"missing type for value {v.val!r}")
        if v.typ == to:
            return v
        frm = v.typ
        if frm == I64 and to in _SMALL_INTS + (I32,):
            return self._op(f"trunc i64 {v.val} to {to}", to)
        if frm in _SMALL_INTS and to == I32:
            return self._op(f"zext {frm} {v.val} to i32", I32)
        if frm in _SMALL_INTS + (I32,) and to == I64:
            return self._op(f"zext {frm} {v.val} to i64", I64)
        if frm in (I32, I16, I8) and to == I1:
            return self._op(f"trunc {frm} {v.val} to i1", I1)
        if frm in (I32, I16) and to == I8:
            return self._op(f"trunc {frm} {v.val} to i8", I8)
        if frm == I32 and to == I16:
            return self._op(f"trunc i32 {v.val} to i16", I16)
        if frm in _INT_TYPES and to in _FLOAT_TYPES:
            src = v
            if frm in _SMALL_INTS:
                src = self._op(f"zext {frm} {v.val} to i32", I32)
            return self._op(f"uitofp {src.typ} {src.val} to {to}", to)
        if frm in _FLOAT_TYPES and to in _INT_TYPES:
            return self._op(f"fptoui {frm} {v.val} to {to}", to)
        if frm == PTR and to in (I32, I64):
            if not _is_ssa(v.val):
                if v.val in ("null", "0"):
                    return _Val(to, "0")
                raise TranslateError(f"unsupported non-SSA ptr cast source {v.val!r}")
            return self._op(f"ptrtoint ptr {v.val} to {to}", to)
        if frm in (I64, I32) and to == PTR:
            src = v.val
            if not _is_ssa(src):
                src = self._op(f"add {frm} {src}, 0", frm).val
            return self._op(f"inttoptr {frm} {src} to ptr", PTR)
        raise TranslateError(f"unsupported cast {frm} -> {to}")

    def zero(self, typ: str) -> _Val:
        return _Val(typ, _zero_value(typ))

    def _param_slot(self, off: int) -> Optional[FrameSlot]:
        return next((s for s in self.sig.frame.params if s.offset == off), None)

    def _result_slot(self, off: int) -> Optional[FrameSlot]:
        return next((s for s in self.sig.frame.results if s.offset == off), None)

    def addr_of_mem(self, mem: MemRef) -> str:
        cur = "0"
        if mem.base and mem.base in self.reg:
            cur = self.cast(self.reg[mem.base], I64).val
        if mem.index:
            iv = _Val(I64, "0")
            if mem.index in self.reg:
                iv = self.cast(self.reg[mem.index], I64)
            scale = mem.scale or 1
            mul = self._op(f"mul i64 {iv.val}, {scale}", I64)
            cur = self._op(f"add i64 {cur}, {mul.val}", I64).val
        if mem.off:
            cur = self._op(f"add i64 {cur}, {mem.off}", I64).val
        return cur

    def value_of(self, op: Operand) -> _Val:
        kind = op.kind
        if kind is OperandKind.IMM:
            return _Val(I64, str(op.imm))
        if kind is OperandKind.REG:
            return self.reg.get(op.reg, _Val(I64, "0"))
        if kind is OperandKind.FP:
            slot = self._param_slot(op.fp_offset)
            if slot is None or not 0 <= slot.index < len(self.sig.args):
                return _Val(I64, "0")
            arg = f"%arg{slot.index}"
            if slot.field >= 0:
                agg = self.sig.args[slot.index]
                return self._op(f"extractvalue {agg} {arg}, {slot.field}", slot.type)
            return _Val(slot.type, arg)
        if kind is OperandKind.MEM:
            try:
                addr = self.addr_of_mem(op.mem)
            except TranslateError:
                return _Val(I64, "0")
            p = self._op(f"inttoptr i64 {addr} to ptr", PTR)
            return self._op(f"load i64, ptr {p.val}", I64)
        return _Val(I64, "0")

    def set_reg(self, reg: str, v: _Val) -> None:
        if not v.typ:
            raise TranslateError(f"setReg({reg}): missing type")
        if not _is_ssa(v.val):
            name = self.new_tmp()
            if v.typ in _INT_TYPES:
                self.emit(f"%{name} = add {v.typ} {v.val}, 0")
                v = _Val(v.typ, "%" + name)
            elif v.typ == PTR:
                if v.val != "null":
                    raise TranslateError(f"setReg({reg}): unsupported non-SSA ptr {v.val!r}")
            else:
                self.emit(f"%{name} = add i64 0, 0")
                v = _Val(I64, "%" + name)
        self.reg[reg] = v

    def set_result(self, off: int, v: _Val) -> None:
        slot = self._result_slot(off)
        if slot is None:
            return
        if v.typ != slot.type:
            v = self.cast(v, slot.type)
        self.results[slot.index] = v

    def _reg_as_i32_ssa(self, reg: str) -> _Val:
        v = self.reg.get(reg)
        v = self.zero(I32) if v is None else self.cast(v, I32)
        if not _is_ssa(v.val):
            self.set_reg(reg, v)
            v = self.reg[reg]
        return v

    # Instruction handlers -------------------------------------------------

    @staticmethod
    def _two_args(ins: Instr) -> tuple[Operand, Operand]:
        if len(ins.args) < 2:
            raise TranslateError(f"{ins.op} expects 2 args: {ins.raw!r}")
        return ins.args[0], ins.args[1]

    def _move(self, ins: Instr, width: str) -> None:
        src, dst = self._two_args(ins)
        v = self.cast(self.value_of(src), width)
        if dst.kind is OperandKind.REG:
            self.set_reg(dst.reg, v)
        elif dst.kind is OperandKind.FP:
            self.set_result(dst.fp_offset, v)

    def _arith(self, ins: Instr) -> None:
        src, dst = self._two_args(ins)
        if dst.kind is not OperandKind.REG:
            raise TranslateError(f"{ins.op} dst must be register in prototype: {dst}")
        lhs = self.cast(self.value_of(dst), I64)
        rhs = self.cast(self.value_of(src), I64)
        opname = {"ADDQ": "add", "SUBQ": "sub", "XORQ": "xor"}[ins.op]
        self.reg[dst.reg] = self._op(f"{opname} i64 {lhs.val}, {rhs.val}", I64)

    def _mrs(self, ins: Instr) -> None:
        src, dst = self._two_args(ins)
        if src.kind is not OperandKind.IDENT or dst.kind is not OperandKind.REG:
            raise TranslateError(f"MRS expects ident, reg: {ins.raw!r}")
        template = _quote("mrs $0, " + src.ident)
        self.reg[dst.reg] = self._op(f"call i64 asm {template}, {_quote('=r')}()", I64)

    def _cpuid(self) -> None:
        eax = self._reg_as_i32_ssa("AX")
        ecx = self._reg_as_i32_ssa("CX")
        agg = "{ i32, i32, i32, i32 }"
        call = self._op(
            f"call {agg} asm sideeffect {_quote('cpuid')}, {_quote(_CPUID_CONSTRAINTS)}"
            f"(i32 {eax.val}, i32 {ecx.val})",
            agg,
        )
        for i, reg in enumerate(("AX", "BX", "CX", "DX")):
            self.reg[reg] = self._op(f"extractvalue {agg} {call.val}, {i}", I32)

    def _xgetbv(self) -> None:
        ecx = self._reg_as_i32_ssa("CX")
        agg = "{ i32, i32 }"
        call = self._op(
            f"call {agg} asm sideeffect {_quote('xgetbv')}, {_quote(_XGETBV_CONSTRAINTS)}"
            f"(i32 {ecx.val})",
            agg,
        )
        eax_name = self.new_tmp()
        edx_name = self.new_tmp()
        self.emit(f"%{eax_name} = extractvalue {agg} {call.val}, 0")
        self.emit(f"%{edx_name} = extractvalue {agg} {call.val}, 1")
        self.reg["AX"] = _Val(I32, "%" + eax_name)
        self.reg["DX"] = _Val(I32, "%" + edx_name)

    def _ret(self) -> None:
        sig = self.sig
        slots = sig.frame.results
        if sig.ret == VOID:
            self.emit("ret void")
            return
        if len(slots) > 1:
            cur = "undef"
            for slot in slots:
                v = self.results.get(slot.index) or self.zero(slot.type)
                if v.typ != slot.type:
                    v = self.cast(v, slot.type)
                if not _is_ssa(v.val):
                    v = self._op(f"add {v.typ} {v.val}, 0", v.typ)
                cur = self._op(
                    f"insertvalue {sig.ret} {cur}, {slot.type} {v.val}, {slot.index}", sig.ret
                ).val
            self.emit(f"ret {sig.ret} {cur}")
            return
        ret_reg = arch_return_reg(self.arch)
        if len(slots) == 1 and 0 in self.results:
            v = self.results[0]
        elif ret_reg in self.reg:
            v = self.reg[ret_reg]
        else:
            v = self.zero(sig.ret)
        if v.typ != sig.ret:
            v = self.cast(v, sig.ret)
        self.emit(f"ret {sig.ret} {v.val}")

    def body(self, fn: Func, annotate_source: bool) -> None:
        for ins in fn.instrs:
            if annotate_source:
                self.out.append(ir_source_comment(ins.raw))
            op = ins.op
            if op == "MRS":
                self._mrs(ins)
            elif op in ("MOVD", "MOVQ"):
                self._move(ins, I64)
            elif op == "MOVL":
                self._move(ins, I32)
            elif op in ("ADDQ", "SUBQ", "XORQ"):
                self._arith(ins)
            elif op == "CPUID":
                self._cpuid()
            elif op == "XGETBV":
                self._xgetbv()
            elif op == "RET":
                self._ret()
                return
        if self.sig.ret == VOID:
            self.emit("ret void")
        else:
            self.emit(f"ret {self.sig.ret} {_zero_value(self.sig.ret)}")


def translate_func_linear(arch: Arch, fn: Func, sig: FuncSig, annotate_source: bool) -> str:
    """Lower one function as a single basic block and return its IR definition."""
    params = ", ".join(f"{t} %arg{i}" for i, t in enumerate(sig.args))
    header = f"define {sig.ret} {llvm_global(sig.name)}({params})"
    if sig.attrs:
        header += " " + sig.attrs
    parts = [header + " {\n", "entry:\n"]
    if sig.ret == VOID:
        parts.append("  ret void\n}\n")
        return "".join(parts)
    lowering = _FuncLowering(arch, sig)
    lowering.body(fn, annotate_source)
    parts.extend(lowering.out)
    parts.append("}\n")
    return "".join(parts)


def translate(file: File, options: Options) -> str:
    """Translate a parsed file into LLVM IR text.

    Every function needs a signature in ``options.sigs`` under its resolved
    name. Raises :class:`TranslateError` on missing or inconsistent
    signatures and on instructions that cannot be lowered.
    """
    if file is None:
        raise TranslateError("nil file")
    if not file.funcs:
        raise TranslateError("empty file")
    resolve = options.resolve_sym or (lambda s: s)

    parts = ["; Generated by plan9asm\n"]
    if options.target_triple:
        parts.append(f"target triple = {_quote(options.target_triple)}\n\n")
    parts.append(emit_extern_sb_globals(file, resolve, options.sigs))
    if file.data or file.globl:
        parts.append(emit_data_globals(file, resolve))
        parts.append("\n")
    parts.append(emit_extern_func_decls(file, resolve, options.sigs))

    for fn in file.funcs:
        name = resolve(fn.sym)
        sig = options.sigs.get(name)
        if sig is None:
            raise TranslateError(f"missing signature for {name!r}")
        if not sig.name:
            sig = dataclasses.replace(sig, name=name)
        if sig.name != name:
            raise TranslateError(f"signature name mismatch: {sig.name!r} vs {name!r}")
        if not sig.ret:
            raise TranslateError(f"missing return type for {name!r}")
        try:
            parts.append(translate_func_linear(file.arch, fn, sig, options.annotate_source))
        except TranslateError as exc:
            raise TranslateError(f"{name}: {exc}") from exc
        parts.append("\n")
    return "".join(parts)