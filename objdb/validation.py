"""Input validation for namespace names, ids and legacy request parameters."""
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import InvalidArgument

NAMESPACE_PATTERN = re.compile(r"^[A-Za-z]\w{1,14}$")

# t<requisiteId>=<value>
ATTRIBUTE_KEY = re.compile(r"^t(\d+)$")

TRUE_VALUES = frozenset(["1", "true", "on", "yes"])


def is_valid_namespace(name: Any) -> bool:
    """Check a namespace name against the legacy mask."""
    return isinstance(name, str) and bool(NAMESPACE_PATTERN.match(name))


def validate_namespace(name: Any) -> str:
    """
    Validate a namespace name.

    Raises:
        InvalidArgument: If the name does not match ``^[A-Za-z]\\w{1,14}$``
    """
    if not is_valid_namespace(name):
        raise InvalidArgument("Invalid database", {"namespace": str(name)[:32]})
    return name


def parse_id(value: Any, field_name: str = "id", allow_zero: bool = False) -> int:
    """
    Parse a numeric id from a path segment or form value.

    Raises:
        InvalidArgument: If the value is not a non-negative integer
    """
    if isinstance(value, bool):
        raise InvalidArgument(f"{field_name} must be numeric", {"field": field_name})
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip() if value is not None else ""
        if not text.isdigit():
            raise InvalidArgument(f"{field_name} must be numeric", {"field": field_name, "value": text[:32]})
        number = int(text)
    if number < 0 or (number == 0 and not allow_zero):
        raise InvalidArgument(f"{field_name} must be positive", {"field": field_name, "value": number})
    return number


def optional_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    """Lenient integer parsing for optional parameters (legacy ``parseInt`` semantics)."""
    if value is None:
        return default
    match = re.match(r"^\s*(-?\d+)", str(value))
    return int(match.group(1)) if match else default


def is_flag_set(params: Mapping[str, Any], name: str) -> bool:
    """True when a flag parameter is present with a truthy or empty value."""
    if name not in params:
        return False
    value = params[name]
    if value is None or value == "":
        return True
    return str(value).strip().lower() in TRUE_VALUES


def extract_attributes(params: Mapping[str, Any]) -> Dict[int, Any]:
    """
    Collect ``t<requisiteId>=<value>`` pairs in request order.

    Absent keys mean "no change"; an empty value is a real write.
    """
    attributes: Dict[int, Any] = {}
    for key, value in params.items():
        match = ATTRIBUTE_KEY.match(key)
        if match:
            attributes[int(match.group(1))] = value
    return attributes


def parse_limit(raw: Any, default: int, maximum: int) -> Tuple[int, int]:
    """
    Parse a legacy ``LIMIT`` value: ``N`` or ``offset,N``.

    Missing or unparsable values fall back to ``default``; the page size is
    clamped to ``maximum`` so a listing is never unbounded.

    Returns:
        (offset, limit)
    """
    offset, limit = 0, default
    if raw is not None and str(raw).strip() != "":
        parts = str(raw).split(",")
        if len(parts) >= 2:
            offset = optional_int(parts[0], 0) or 0
            limit = optional_int(parts[1], default) or default
        else:
            limit = optional_int(parts[0], default) or default
    offset = max(offset, 0)
    limit = min(max(limit, 1), maximum)
    return offset, limit
