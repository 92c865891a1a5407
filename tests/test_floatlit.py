import math

import pytest

from plan9asm.floatlit import format_llvm_float64_literal


@pytest.mark.parametrize("value", [0.0, -0.0, 1.0, -2.0, 0.5, -0.25, 1024.0, -1024.0])
def test_finite_literals_have_decimal_point(value):
    s = format_llvm_float64_literal(value)
    i = s.find("e")
    if i >= 0:
        assert "." in s[:i]
    else:
        assert "." in s


@pytest.mark.parametrize("value", [math.inf, -math.inf, math.nan])
def test_special_literals_are_hex(value):
    s = format_llvm_float64_literal(value)
    assert s.startswith("0x")
    assert len(s) == 18


@pytest.mark.parametrize("value", [0.1, 1.5, -3.75, 1e300, 5e-324, 123456.789, 1024.0])
def test_finite_literal_round_trips(value):
    assert float(format_llvm_float64_literal(value)) == value


def test_exponent_form_fixed_values():
    assert format_llvm_float64_literal(1.0) == "1.0e+00"
    assert format_llvm_float64_literal(1024.0) == "1.024e+03"


def test_infinity_bit_patterns():
    assert format_llvm_float64_literal(math.inf) == "0x7FF0000000000000"
    assert format_llvm_float64_literal(-math.inf) == "0xFFF0000000000000"