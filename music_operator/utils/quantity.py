"""
Kubernetes resource quantity parsing.

Storage sizes and compute requests arrive as quantity strings ("10Gi",
"500m", "1e3"). Comparisons must be done on the parsed value because the API
server may hand back a differently formatted but equal quantity.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from music_operator.exceptions import ValidationError

_QUANTITY_RE = re.compile(
    r"^(?P<number>[+-]?(?:\d+(?:\.\d*)?|\.\d+))"
    r"(?P<suffix>Ki|Mi|Gi|Ti|Pi|Ei|[numkMGTPE]|[eE][+-]?\d+)?$"
)

_BINARY_SUFFIXES = {
    "Ki": 2 ** 10,
    "Mi": 2 ** 20,
    "Gi": 2 ** 30,
    "Ti": 2 ** 40,
    "Pi": 2 ** 50,
    "Ei": 2 ** 60,
}

_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}


def parse_quantity(value: Any) -> Decimal:
    """
    Parse a Kubernetes quantity into a Decimal.

    Args:
        value: Quantity string (or int/float as returned by some clients)

    Returns:
        Parsed value in base units (bytes for storage, cores for CPU)

    Raises:
        ValidationError: If the value is not a valid quantity

    Example:
        >>> parse_quantity("1Gi")
        Decimal('1073741824')
        >>> parse_quantity("500m")
        Decimal('0.500')
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid quantity: {value!r}")
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if not isinstance(value, str):
        raise ValidationError(f"Invalid quantity: {value!r}")

    match = _QUANTITY_RE.match(value.strip())
    if not match:
        raise ValidationError(f"Invalid quantity: {value!r}", details={"quantity": value})

    try:
        number = Decimal(match.group("number"))
    except InvalidOperation:
        raise ValidationError(f"Invalid quantity: {value!r}", details={"quantity": value})

    suffix = match.group("suffix")
    if not suffix:
        return number
    if suffix in _BINARY_SUFFIXES:
        return number * _BINARY_SUFFIXES[suffix]
    if suffix in _DECIMAL_SUFFIXES:
        return number * _DECIMAL_SUFFIXES[suffix]
    # Exponent form, e.g. "1e3"
    return number * (Decimal(10) ** int(suffix[1:]))


def validate_quantity(value: str) -> str:
    """Parse for validation only and return the original string."""
    parse_quantity(value)
    return value


def compare_quantities(left: Any, right: Any) -> int:
    """Return -1, 0 or 1 comparing two quantities by value."""
    a = parse_quantity(left)
    b = parse_quantity(right)
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def quantities_equal(left: Any, right: Any) -> bool:
    try:
        return compare_quantities(left, right) == 0
    except ValidationError:
        return left == right


def resource_lists_equal(left: Optional[Dict[str, Any]], right: Optional[Dict[str, Any]]) -> bool:
    """Compare two resource lists ({"cpu": "500m", ...}) by parsed value."""
    left = left or {}
    right = right or {}
    if set(left) != set(right):
        return False
    return all(quantities_equal(left[key], right[key]) for key in left)
