"""Formatting of float64 constants as LLVM IR literals."""

from __future__ import annotations

import math
import struct
from decimal import Decimal


def _float64_bits(value: float) -> int:
    return struct.unpack("<Q", struct.pack("<d", value))[0]


def _shortest_exponent_form(value: float) -> str:
    """Shortest round-trip digits in ``d.ddde±XX`` form."""
    sign, digits, exponent = Decimal(repr(value)).as_tuple()
    prefix = "-" if sign else ""
    digits = list(digits)
    while len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1
    if digits == [0]:
        return f"{prefix}0e+00"
    sci_exp = exponent + len(digits) - 1
    mantissa = str(digits[0])
    if len(digits) > 1:
        mantissa += "." + "".join(map(str, digits[1:]))
    return f"{prefix}{mantissa}e{sci_exp:+03d}"


def format_llvm_float64_literal(value: float) -> str:
    """Return ``value`` as an LLVM double literal.

    Finite values always carry a decimal point; NaN and infinities are
    written as hexadecimal bit patterns.
    """
    if math.isnan(value) or math.isinf(value):
        return f"0x{_float64_bits(value):016X}"
    text = _shortest_exponent_form(value)
    mantissa, sep, exp = text.partition("e")
    if sep:
        if "." not in mantissa:
            return f"{mantissa}.0e{exp}"
        return text
    if "." not in text:
        return text + ".0"
    return text