import struct

import pytest

from plan9asm.operands import Arch, OperandKind
from plan9asm.parser import (
    ParseError,
    parse,
    parse_data_stmt,
    parse_globl_stmt,
    parse_operands_csv,
    parse_width,
    split_opcode,
    split_semicolons,
    split_sym_plus_off,
)

MASK = (1 << 64) - 1


def float_bits(value):
    return struct.unpack("<Q", struct.pack("<d", value))[0]


def test_parse_basic():
    src = """
// simple add
TEXT add(SB), NOSPLIT, $0-0
MOVQ a+0(FP), AX
ADDQ b+8(FP), AX
MOVQ AX, ret+16(FP)
RET
"""
    f = parse(Arch.AMD64, src)
    assert len(f.funcs) == 1
    assert f.funcs[0].sym == "add"
    assert len(f.funcs[0].instrs) == 5
    assert f.funcs[0].instrs[1].args[0].fp_offset == 0
    assert f.funcs[0].instrs[3].args[1].fp_name == "ret"


def test_parse_define_and_semicolons():
    src = """
#define X BYTE $0x01; BYTE $0x02
TEXT ·Foo(SB),$0
X
RET
"""
    f = parse(Arch.AMD64, src)
    assert len(f.funcs) == 1
    assert sum(1 for ins in f.funcs[0].instrs if ins.op == "BYTE") == 2


def test_parse_immediate_expr():
    src = """
TEXT ·ImmExpr(SB),NOSPLIT,$0
MOVQ $~(1<<63), DX
MOVQ $(1<<63), AX
RET
"""
    f = parse(Arch.AMD64, src)
    instrs = f.funcs[0].instrs
    assert len(instrs) >= 3
    assert instrs[1].args[0].imm == 0x7FFFFFFFFFFFFFFF
    assert instrs[2].args[0].imm == -9223372036854775808


def test_parse_float_immediate():
    src = """
TEXT ·ImmFloat(SB),NOSPLIT,$0
MOVSD $1.5, X0
MOVSD $(-1.0), X1
RET
"""
    f = parse(Arch.AMD64, src)
    instrs = f.funcs[0].instrs
    assert instrs[1].args[0].imm & MASK == float_bits(1.5)
    assert instrs[2].args[0].imm & MASK == float_bits(-1.0)


def test_parse_legacy_scaled_offset_mem():
    src = """
TEXT ·LegacyMem(SB),NOSPLIT,$0
MOVL (0*4)(BP), AX
MOVL (3*4)(SI), R8
RET
"""
    f = parse(Arch.AMD64, src)
    mem0 = f.funcs[0].instrs[1].args[0].mem
    assert (mem0.base, mem0.off) == ("BP", 0)
    mem1 = f.funcs[0].instrs[2].args[0].mem
    assert (mem1.base, mem1.off) == ("SI", 12)


def test_parse_function_like_macro_call():
    src = """
#define ROUND1(a,b) MOVL a, b; ADDL $1, b
TEXT ·FnMacro(SB),NOSPLIT,$0
ROUND1(AX, BX);
RET
"""
    f = parse(Arch.AMD64, src)
    instrs = f.funcs[0].instrs
    assert len(instrs) >= 4
    assert instrs[1].op == "MOVL"
    assert instrs[2].op == "ADDL"
    assert instrs[2].args[1].reg == "BX"


def test_parse_labels():
    src = """
TEXT ·L(SB),NOSPLIT,$0
loop:
done: RET
"""
    f = parse(Arch.AMD64, src)
    ops = [ins.op for ins in f.funcs[0].instrs]
    assert ops == ["TEXT", "LABEL", "LABEL", "RET"]
    assert f.funcs[0].instrs[1].args[0].sym == "loop"
    assert f.funcs[0].instrs[2].raw == "done:"


def test_parse_data_and_globl_in_file():
    src = """
DATA r2r1<>+0(SB)/8, $0x505
GLOBL r2r1<>(SB), RODATA, $16
TEXT ·F(SB),NOSPLIT,$0
RET
"""
    f = parse(Arch.AMD64, src)
    assert len(f.data) == 1
    assert f.data[0].sym == "r2r1<>"
    assert f.data[0].value == 0x505
    assert f.globl[0].size == 16
    assert f.globl[0].flags == "RODATA"


def test_parse_ret_with_operand():
    f = parse(Arch.ARM64, "TEXT ·F(SB),$0\nRET (R30)\n")
    ret = f.funcs[0].instrs[-1]
    assert ret.op == "RET"
    assert ret.args[0].kind is OperandKind.MEM


def test_parse_cpuid_and_lowercase_opcode():
    f = parse(Arch.AMD64, "TEXT ·F(SB),$0\ncpuid\nmovq AX, BX\nRET\n")
    assert [i.op for i in f.funcs[0].instrs] == ["TEXT", "CPUID", "MOVQ", "RET"]


def test_parse_error_carries_line_number():
    with pytest.raises(ParseError, match=r"line 2:"):
        parse(Arch.AMD64, "TEXT ·F(SB),$0\nBYTE AX\n")


def test_parse_data_stmt_negative_value_wraps():
    d = parse_data_stmt(Arch.AMD64, "foo<>+8(SB)/4, $-1")
    assert (d.sym, d.off, d.width, d.value) == ("foo<>", 8, 4, MASK)


def test_parse_data_stmt_ptrsize_and_placeholders():
    d = parse_data_stmt(Arch.ARM64, "tab<>+0(SB)/PTRSIZE, $runtime·main(SB)")
    assert (d.width, d.value) == (8, 0)
    s = parse_data_stmt(Arch.AMD64, 'str<>+0(SB)/4, $"abc"')
    assert s.value == 0


@pytest.mark.parametrize(
    "rest, message",
    [
        ("foo(SB)/8", "invalid DATA"),
        ("foo(SB), $1", "missing /width"),
        ("foo(SB)/0, $1", "invalid width"),
        ("foo/8, $1", "must end with"),
        ("foo(SB)/8, $@", "invalid immediate"),
    ],
)
def test_parse_data_stmt_errors(rest, message):
    with pytest.raises(ParseError, match=message):
        parse_data_stmt(Arch.AMD64, rest)


def test_parse_globl_stmt():
    g = parse_globl_stmt("tab<>(SB), RODATA|NOPTR, $64")
    assert (g.sym, g.flags, g.size) == ("tab<>", "RODATA|NOPTR", 64)


def test_parse_globl_symbolic_size_placeholder():
    g = parse_globl_stmt("info(SB), NOPTR, $(machTimebaseInfo__size)")
    assert g.size == 64


@pytest.mark.parametrize(
    "rest, message",
    [
        ("tab<>(SB), RODATA", "invalid GLOBL"),
        ("tab<>, RODATA, $8", "must end with"),
        ("(SB), RODATA, $8", "empty symbol"),
        ("tab<>(SB), RODATA, $-8", "invalid size"),
    ],
)
def test_parse_globl_stmt_errors(rest, message):
    with pytest.raises(ParseError, match=message):
        parse_globl_stmt(rest)


def test_parse_width():
    assert parse_width(Arch.AMD64, "PTRSIZE") == 8
    assert parse_width(Arch.ARM64, "ptrsize") == 8
    assert parse_width(Arch.AMD64, " 0x10 ") == 16
    with pytest.raises(ParseError):
        parse_width(Arch.AMD64, "")


@pytest.mark.parametrize(
    "text, expected",
    [
        ("name+0", ("name", 0)),
        ("name-8", ("name", -8)),
        ("name", ("name", 0)),
        ("-8", ("-8", 0)),
        ("name+", ("name+", 0)),
        ("a-b+x", ("a-b+x", 0)),
        ("", ("", 0)),
    ],
)
def test_split_sym_plus_off(text, expected):
    assert split_sym_plus_off(text) == expected


def test_parse_operands_csv():
    ops = parse_operands_csv("$1, 8(SI)(R8*4), AX")
    assert [o.kind for o in ops] == [OperandKind.IMM, OperandKind.MEM, OperandKind.REG]
    assert ops[1].mem.scale == 4
    assert parse_operands_csv("") == []


def test_split_opcode_and_semicolons():
    assert split_opcode("MOVQ\tAX, BX") == ("MOVQ", "AX, BX")
    assert split_opcode("RET") == ("RET", "")
    assert split_semicolons("A ; B;") == ["A", "B", ""]