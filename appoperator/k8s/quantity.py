"""Kubernetes resource quantity parsing.

Memory limits are compared as numbers, never as strings: ``1Gi`` and
``1024Mi`` are the same limit.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from appoperator.k8s.errors import MalformedSpecError

_QUANTITY_RE = re.compile(r"^(?P<number>[+-]?(?:\d+(?:\.\d*)?|\.\d+))(?P<suffix>[a-zA-Z]*|[eE][+-]?\d+)$")

_BINARY_SUFFIXES: dict[str, int] = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}

_DECIMAL_SUFFIXES: dict[str, Decimal] = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}


def parse_quantity(value: str) -> Decimal:
    """Parse a quantity string such as ``256Mi``, ``1.5G`` or ``1e3``.

    Raises:
        MalformedSpecError: when ``value`` is not a valid quantity.
    """
    text = str(value).strip()
    match = _QUANTITY_RE.match(text)
    if match is None:
        raise MalformedSpecError(f"invalid quantity {value!r}")

    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as exc:
        raise MalformedSpecError(f"invalid quantity {value!r}") from exc

    suffix = match.group("suffix")
    if suffix in _BINARY_SUFFIXES:
        return number * _BINARY_SUFFIXES[suffix]
    if suffix in _DECIMAL_SUFFIXES:
        return number * _DECIMAL_SUFFIXES[suffix]
    if suffix[:1] in ("e", "E") and len(suffix) > 1:
        return number * (Decimal(10) ** int(suffix[1:]))
    raise MalformedSpecError(f"invalid quantity suffix {suffix!r} in {value!r}")


def quantities_equal(left: str, right: str) -> bool:
    """Compare two quantity strings numerically.

    An empty string means "no limit"; two empty strings are equal, an empty
    and a set limit are not.
    """
    if not left or not right:
        return left == right
    return parse_quantity(left) == parse_quantity(right)
