# plan9asm

`plan9asm` reads the assembly dialect used by Go's `.s` files (Plan 9
syntax) and produces textual LLVM IR (`.ll`). It is aimed at small leaf
functions such as CPU feature probes, marker stubs and simple integer
arithmetic. It is a library only; it has no command-line program.

## Installing

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

* `plan9asm.preprocess`: `preprocess(src)` strips `//` and `/* */`
  comments, ignores `#include`, records `#define` (object-like and
  function-like macros, with `\` continuation lines), evaluates
  `#ifdef` / `#ifndef` / `#if` / `#elif` / `#else` / `#endif` against the
  macros defined so far, and expands macro uses. `expand_line`,
  `parse_macro_define`, `parse_macro_call` and `replace_macro_params`
  expose the individual steps. Errors raise `PreprocessError`.
* `plan9asm.operands`: `Arch` (`AMD64`, `ARM64`), `Operand`,
  `OperandKind`, `MemRef`, `Instr`, `DataStmt`, `GloblStmt`, and the
  parsers `parse_operand`, `parse_reg`, `parse_imm`, `parse_fp`,
  `parse_fp_addr`, `parse_reg_shift`, `parse_mem`, `parse_sym`,
  `parse_ident` and `split_top_level_csv`. The `parse_*` helpers return
  `None` when the text does not fit; `parse_operand` raises
  `OperandError`.
* `plan9asm.parser`: `parse(arch, src)` preprocesses the source and
  returns a `File` with its `funcs` (`Func` with `sym` and `instrs`),
  `data` and `globl`. It handles `TEXT`, `DATA` and `GLOBL` directives,
  labels (also `label: INSTR` on one statement) and `;`-separated
  statements. Opcodes it does not know are kept as generic instructions.
  Malformed statements, and a source with no `TEXT`, raise `ParseError`
  (operand errors are reported as `ParseError` too).
* `plan9asm.emit`: `FuncSig`, `FrameLayout`, `FrameSlot`, `Options`,
  `TranslateError`, and the module-level IR parts: `declare` lines for
  signatures of functions not defined in the file, `external global i8`
  declarations for `sym(SB)` data references that are not defined, and
  constant `[N x i8]` globals built from `DATA`/`GLOBL` (values written
  little-endian).
* `plan9asm.lowering`: `translate(file, options)` produces the whole IR
  text; `translate_func_linear` lowers one function.
* `plan9asm.expr`: `parse_imm_expr` evaluates integer constant
  expressions (including `~` as complement) with unsigned 64-bit
  wrap-around; `parse_imm_float_expr` evaluates floating ones.
* `plan9asm.floatlit`: `format_llvm_float64_literal` formats a float as
  an LLVM double literal, always with a decimal point; NaN and infinities
  become hexadecimal bit patterns.
* `plan9asm.comments`: `ir_source_comment` renders source text as
  `  ; s: ...` IR comment lines.

Immediates accept decimal, hex, octal and binary integers, unsigned
64-bit values (stored in two's-complement form), constant expressions
such as `$~(1<<63)`, and floating values such as `$1.5`, which are stored
as their IEEE-754 bit pattern.

## Usage

```python
from plan9asm.operands import Arch
from plan9asm.parser import parse
from plan9asm.emit import FrameLayout, FrameSlot, FuncSig, Options
from plan9asm.lowering import translate

src = """
TEXT add(SB), NOSPLIT, $0-0
MOVQ a+0(FP), AX
ADDQ b+8(FP), AX
MOVQ AX, ret+16(FP)
RET
"""

asm = parse(Arch.AMD64, src)

sig = FuncSig(
    name="add",
    args=("i64", "i64"),
    ret="i64",
    frame=FrameLayout(
        params=(
            FrameSlot(offset=0, type="i64", index=0),
            FrameSlot(offset=8, type="i64", index=1),
        ),
        results=(FrameSlot(offset=16, type="i64", index=0),),
    ),
)

ir = translate(
    asm,
    Options(
        target_triple="x86_64-unknown-linux-gnu",
        sigs={"add": sig},
        goarch="amd64",
    ),
)
print(ir)
```

Every `TEXT` symbol needs a signature in `Options.sigs`, keyed by the
name after `Options.resolve_sym` has been applied (the identity when it is
`None`). A missing signature, a signature whose `name` differs, or one
without a `ret` type raises `TranslateError`. Setting
`Options.annotate_source` writes each source statement as an IR comment
before its lowering.

## How functions are lowered

Each function becomes a single `entry` block. Registers are tracked as
SSA values; on amd64 the arguments start in `DI, SI, DX, CX, R8, R9`, on
arm64 in `R0`..`R7`, unless `FuncSig.arg_regs` names other registers.
`name+off(FP)` operands are looked up in the signature's frame slots.

Lowered instructions: `MOVQ`, `MOVD`, `MOVL`, `ADDQ`, `SUBQ`, `XORQ`,
`CPUID`, `XGETBV` (as inline asm), `MRS` (arm64 system register reads)
and `RET`. A result comes from the written result slots, or else from the
return register (`AX` on amd64, `R0` on arm64), or else zero. All other
opcodes, including `BYTE`, are passed over. A function whose return type
is `void` is emitted as a bare `ret void`.

## What it does not do

* No command-line program; it is used from Python.
* No control flow: labels, jumps, branches and calls are parsed but not
  lowered, so everything runs as one straight-line block up to the first
  `RET`.
* It writes IR text only; it does not check, assemble or compile the IR.
  Running `llc` or `clang` on the result is left to the caller.
* Data relocations are not modelled: `DATA` string payloads and
  symbol-address values are stored as zero, and symbolic `GLOBL` sizes
  such as `$(NAME)` fall back to 64 bytes.