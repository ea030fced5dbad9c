"""
Exact parsing of Kubernetes resource quantities.

Quantities are normalized to integers in canonical units so that fit checks
never round: CPU in millicores, everything else in base units (bytes, counts).
Fractional results are rounded up, matching how the API server reports
MilliValue()/Value().
"""
import math
import re
from fractions import Fraction
from typing import Union

Number = Union[int, float, str, Fraction]

_BINARY_SUFFIXES = {
    'Ki': 2 ** 10,
    'Mi': 2 ** 20,
    'Gi': 2 ** 30,
    'Ti': 2 ** 40,
    'Pi': 2 ** 50,
    'Ei': 2 ** 60,
}

_DECIMAL_SUFFIXES = {
    'n': Fraction(1, 10 ** 9),
    'u': Fraction(1, 10 ** 6),
    'm': Fraction(1, 1000),
    '': Fraction(1),
    'k': Fraction(10 ** 3),
    'M': Fraction(10 ** 6),
    'G': Fraction(10 ** 9),
    'T': Fraction(10 ** 12),
    'P': Fraction(10 ** 15),
    'E': Fraction(10 ** 18),
}

_QUANTITY_RE = re.compile(
    r'^(?P<number>[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+))'
    r'(?P<suffix>[eE][+-]?[0-9]+|Ki|Mi|Gi|Ti|Pi|Ei|[numkMGTPE])?$'
)

CPU = 'cpu'
MEMORY = 'memory'
EPHEMERAL_STORAGE = 'ephemeral-storage'
PODS = 'pods'


class InvalidQuantityError(ValueError):
    """Raised for malformed or negative resource quantities"""
    pass


def parse_quantity(value: Number) -> Fraction:
    """Parse a quantity ("500m", "4Gi", "1.5", 2) into an exact Fraction.

    Raises:
        InvalidQuantityError: on malformed or negative input
    """
    if isinstance(value, bool):
        raise InvalidQuantityError(f"invalid quantity: {value!r}")
    if isinstance(value, Fraction):
        result = value
    elif isinstance(value, int):
        result = Fraction(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidQuantityError(f"invalid quantity: {value!r}")
        # repr() keeps the shortest decimal form, avoiding binary noise
        return parse_quantity(repr(value))
    elif isinstance(value, str):
        m = _QUANTITY_RE.match(value.strip())
        if not m:
            raise InvalidQuantityError(f"invalid quantity: {value!r}")
        number = Fraction(m.group('number'))
        suffix = m.group('suffix') or ''
        if suffix in _BINARY_SUFFIXES:
            result = number * _BINARY_SUFFIXES[suffix]
        elif suffix in _DECIMAL_SUFFIXES:
            result = number * _DECIMAL_SUFFIXES[suffix]
        else:
            result = number * Fraction(10) ** int(suffix[1:])
    else:
        raise InvalidQuantityError(f"invalid quantity type: {type(value).__name__}")

    if result < 0:
        raise InvalidQuantityError(f"negative quantity: {value!r}")
    return result


def _ceil(q: Fraction) -> int:
    return -((-q.numerator) // q.denominator)


def to_milli(value: Number) -> int:
    """Quantity in thousandths, rounded up ("250m" -> 250, "2" -> 2000)."""
    return _ceil(parse_quantity(value) * 1000)


def to_int(value: Number) -> int:
    """Quantity in base units, rounded up ("4Gi" -> 4294967296)."""
    return _ceil(parse_quantity(value))


def normalize_resource(name: str, value: Number) -> int:
    """Normalize a single named resource to its canonical integer unit"""
    if name == CPU:
        return to_milli(value)
    return to_int(value)
