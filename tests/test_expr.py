import pytest

from plan9asm.expr import parse_imm_expr, parse_imm_float_expr

MASK = 0xFFFFFFFFFFFFFFFF


def test_complement_of_top_bit():
    assert parse_imm_expr("~(1<<63)") == 0x7FFFFFFFFFFFFFFF


def test_top_bit():
    assert parse_imm_expr("(1<<63)") == 1 << 63


def test_negative_one_wraps_to_all_ones():
    assert parse_imm_expr("-1") == MASK
    assert parse_imm_expr("~0") == MASK
    assert parse_imm_expr("^0") == MASK


@pytest.mark.parametrize("n", [0, 1, 255, 4096, 1 << 63, MASK])
def test_decimal_and_hex_round_trip(n):
    assert parse_imm_expr(str(n)) == n
    assert parse_imm_expr(hex(n)) == n
    assert parse_imm_expr(f" ( {n} ) ") == n


@pytest.mark.parametrize("n", [1, 7, 1 << 40, MASK])
def test_negation_is_additive_inverse(n):
    assert (parse_imm_expr(f"-{n}") + n) & MASK == 0


def test_literal_bases_agree():
    values = {parse_imm_expr(t) for t in ["16", "0x10", "0o20", "020", "0b1_0000", "1_6"]}
    assert values == {16}


def test_precedence_and_grouping():
    assert parse_imm_expr("1 + 2 * 3") == parse_imm_expr("1 + (2 * 3)")
    assert parse_imm_expr("(1 + 2) * 3") == parse_imm_expr("3 * 3")
    assert parse_imm_expr("1 | 2 << 3") == parse_imm_expr("1 | (2 << 3)")


def test_and_not_matches_and_with_complement():
    assert parse_imm_expr("7 &^ 2") == parse_imm_expr("7 & ^2")
    assert parse_imm_expr("7 &^ 2") == parse_imm_expr("7 & ~2")


def test_large_shift_yields_zero():
    assert parse_imm_expr("1 << 64") == 0
    assert parse_imm_expr("5 >> 100") == 0


@pytest.mark.parametrize(
    "text",
    ["", "   ", "1/0", "1%0", "x", "1.5", "1 < 2", "0b102", "08", "(1", "1 2", "0x1_0000_0000_0000_0000", "1 && 2"],
)
def test_unsupported_integer_expressions(text):
    assert parse_imm_expr(text) is None


def test_float_literals():
    assert parse_imm_float_expr("1.5") == 1.5
    assert parse_imm_float_expr("(-1.0)") == -1.0
    assert parse_imm_float_expr("2 * 0.75") == parse_imm_float_expr("1.5")


def test_float_hex_literal_matches_decimal():
    assert parse_imm_float_expr("0x1p-2") == parse_imm_float_expr("0.25")
    assert parse_imm_float_expr("1e3") == parse_imm_float_expr("1000")


@pytest.mark.parametrize(
    "text",
    ["", "1/0", "1.0/0.0", "1<<2", "^1", "0xFFFFFFFFFFFFFFFF", "1e400", "0x1.8", "abc"],
)
def test_unsupported_float_expressions(text):
    assert parse_imm_float_expr(text) is None