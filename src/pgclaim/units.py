"""Unit conversions for Kubernetes quantities."""

from __future__ import annotations

import re
from decimal import ROUND_CEILING, Decimal, InvalidOperation

import bitmath

__all__ = ["cpu_to_millicores", "quantity_to_bytes"]

_CPU_REGEX = re.compile(r"^(?P<number>[0-9]+(?:\.[0-9]+)?)(?P<milli>m?)$")

_QUANTITY_REGEX = re.compile(
    r"^(?P<number>[0-9]+(?:\.[0-9]+)?)(?P<suffix>[KMGTPE]i|[kMGTPE])?$"
)

# Suffixes are case-sensitive. Single letters are decimal and the two-letter
# suffixes are binary.
_SUFFIXES: dict[str, type[bitmath.Bitmath]] = {
    "k": bitmath.kB,
    "M": bitmath.MB,
    "G": bitmath.GB,
    "T": bitmath.TB,
    "P": bitmath.PB,
    "E": bitmath.EB,
    "Ki": bitmath.KiB,
    "Mi": bitmath.MiB,
    "Gi": bitmath.GiB,
    "Ti": bitmath.TiB,
    "Pi": bitmath.PiB,
    "Ei": bitmath.EiB,
}


def quantity_to_bytes(quantity: str) -> int:
    """Convert a Kubernetes byte quantity to bytes.

    Only the Kubernetes quantity syntax is accepted: a plain number or a
    number followed by a decimal (``k``, ``M``, ``G``, ...) or binary
    (``Ki``, ``Mi``, ``Gi``, ...) suffix, with no spaces and no ``B``.
    Fractional byte counts are rounded up, as Kubernetes does.

    Parameters
    ----------
    quantity
        Amount of storage or memory as a string, such as ``100Gi``.

    Returns
    -------
    int
        Equivalent number of bytes.

    Raises
    ------
    ValueError
        Raised if the input string is not a valid byte specification.
    """
    match = _QUANTITY_REGEX.match(quantity)
    if not match:
        raise ValueError(f"{quantity} is not a valid byte quantity")
    number = Decimal(match.group("number"))
    if suffix := match.group("suffix"):
        number *= int(_SUFFIXES[suffix](1).bytes)
    return int(number.to_integral_value(rounding=ROUND_CEILING))


def cpu_to_millicores(cpu: str) -> int:
    """Convert a Kubernetes CPU quantity to millicores.

    Parameters
    ----------
    cpu
        CPU quantity, either a number of cores (``2``, ``0.5``) or a number
        of millicores (``500m``).

    Returns
    -------
    int
        Equivalent number of millicores, rounded down.

    Raises
    ------
    ValueError
        Raised if the input string is not a valid CPU quantity.
    """
    match = _CPU_REGEX.match(cpu.strip())
    if not match:
        raise ValueError(f"Invalid CPU quantity {cpu}")
    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as e:
        raise ValueError(f"Invalid CPU quantity {cpu}") from e
    if match.group("milli"):
        return int(number)
    return int(number * 1000)
