import pytest

from plan9asm.preprocess import (
    Macro,
    PreprocessError,
    expand_line,
    parse_macro_call,
    parse_macro_define,
    preprocess,
    replace_macro_params,
)


def test_object_macro_statement_expands():
    src = "#define X BYTE $0x01; BYTE $0x02\nTEXT ·Foo(SB),$0\nX\nRET\n"
    assert preprocess(src) == "TEXT ·Foo(SB),$0\nBYTE $0x01; BYTE $0x02\nRET\n"


def test_line_comments_removed():
    assert preprocess("MOVQ AX, BX // copy\n// whole line\nRET") == "MOVQ AX, BX\nRET\n"


def test_block_comments_removed_across_lines():
    src = "MOVQ AX, /* inline */ BX\n/* start\nstill comment\nend */ RET\n"
    assert preprocess(src) == "MOVQ AX,  BX\nRET\n"


def test_include_ignored():
    assert preprocess('#include "textflag.h"\nRET\n') == "RET\n"


def test_ifdef_else_selects_branch():
    src = "#define FEAT 1\n#ifdef FEAT\nMOVQ AX, BX\n#else\nMOVQ CX, DX\n#endif\nRET\n"
    assert preprocess(src) == "MOVQ AX, BX\nRET\n"


def test_ifndef_undefined_is_active():
    src = "#ifndef GOAMD64_v3\nMOVQ AX, BX\n#else\nMOVQ CX, DX\n#endif\n"
    assert preprocess(src) == "MOVQ AX, BX\n"


def test_if_defined_and_negation():
    src = (
        "#define A 1\n"
        "#if defined(A)\nONE\n#endif\n"
        "#if !defined(A)\nTWO\n#endif\n"
        "#if defined B\nTHREE\n#endif\n"
    )
    assert preprocess(src) == "ONE\n"


def test_elif_takes_first_true_branch():
    src = "#define B 1\n#if A\nONE\n#elif B\nTWO\n#elif B\nTHREE\n#else\nFOUR\n#endif\n"
    assert preprocess(src) == "TWO\n"


def test_define_inside_inactive_block_ignored():
    src = "#ifdef NOPE\n#define X RET\n#endif\nX\n"
    assert preprocess(src) == "X\n"


def test_continued_define_yields_multiple_lines():
    src = "#define M \\\n  MOVQ AX, BX \\\n  RET\nM\n"
    assert preprocess(src) == "MOVQ AX, BX\nRET\n"


def test_function_like_macro_statement():
    src = "#define ROUND1(a,b) MOVL a, b; ADDL $1, b\nROUND1(AX, BX);\nRET\n"
    assert preprocess(src) == "MOVL AX, BX; ADDL $1, BX\nRET\n"


def test_function_like_macro_inline():
    src = "#define ROL(r) ROLL $1, r\nMOVQ AX, BX; ROL(CX); RET\n"
    assert preprocess(src) == "MOVQ AX, BX; ROLL $1, CX; RET\n"


def test_identifier_macro_inline():
    assert preprocess("#define NR 5\nMOVD $NR, R0\nMOVD NRX, R1\n") == "MOVD $5, R0\nMOVD NRX, R1\n"


def test_immediate_expression_macro():
    src = "#define Big 0x10\nMOVQ $(Big - 1), AX\n"
    assert preprocess(src) == "MOVQ $(0x10 - 1), AX\n"


@pytest.mark.parametrize(
    "src, message",
    [
        ("#endif\n", "stray #endif"),
        ("#else\n", "stray #else"),
        ("#elif X\n", "stray #elif"),
        ("#if X\n#else\n#else\n#endif\n", "duplicate #else"),
        ("#if X\n#else\n#elif Y\n#endif\n", "#elif after #else"),
        ("#ifdef\n", "invalid #ifdef"),
        ("#ifndef\n", "invalid #ifndef"),
        ("#define 1X body\n", "invalid #define"),
        ("#if X\nRET\n", "unterminated #if block"),
    ],
)
def test_errors(src, message):
    with pytest.raises(PreprocessError, match=message):
        preprocess(src)


def test_error_reports_line_number():
    with pytest.raises(PreprocessError, match="line 3"):
        preprocess("RET\nRET\n#endif\n")


def test_parse_macro_define_function_like():
    assert parse_macro_define("ROUND(a, b) X a, b") == ("ROUND", ("a", "b"), "X a, b")


def test_parse_macro_define_object_like():
    assert parse_macro_define("  NR   5 ") == ("NR", (), "5")


@pytest.mark.parametrize("rest", ["", "1X", "F(a, b", "F(a,,b) x"])
def test_parse_macro_define_errors(rest):
    with pytest.raises(PreprocessError):
        parse_macro_define(rest)


def test_parse_macro_call_nested_args():
    assert parse_macro_call("F(a, (b, c));", "F", 2) == ["a", "(b, c)"]


def test_parse_macro_call_rejects():
    assert parse_macro_call("F(a) MOVQ", "F", 1) is None
    assert parse_macro_call("F(a, b)", "F", 1) is None
    assert parse_macro_call("G(a)", "F", 1) is None
    assert parse_macro_call("F()", "F", 0) == []


def test_replace_macro_params_whole_identifiers():
    assert replace_macro_params("a + ab + a", ("a",), ("X",)) == "X + ab + X"


def test_replace_macro_params_mismatch_keeps_body():
    assert replace_macro_params("a, b", ("a", "b"), ("X",)) == "a, b"


def test_expand_line_self_reference_terminates():
    assert expand_line("A", {"A": Macro("A")}) == ["A"]


def test_expand_line_blank():
    assert expand_line("   ", {"A": Macro("RET")}) == [""]


def test_expand_line_multi_line_body():
    macros = {"TWO": Macro("MOVQ AX, BX\nRET")}
    assert expand_line("TWO", macros) == ["MOVQ AX, BX", "RET"]


def test_expand_line_nested_macros():
    macros = {"INNER": Macro("RET"), "OUTER(r)": Macro("x")}
    macros = {"INNER": Macro("RET"), "OUTER": Macro("MOVQ r, AX\nINNER", ("r",))}
    assert expand_line("OUTER(CX)", macros) == ["MOVQ CX, AX", "RET"]


def test_preprocess_without_macros_is_stable():
    src = "TEXT ·f(SB),$0\nMOVQ AX, BX\nRET\n"
    once = preprocess(src)
    assert preprocess(once) == once == src