"""Base kinds and the fixed ids every namespace shares with legacy clients."""
from enum import Enum, IntEnum
from typing import Optional


class BaseType(IntEnum):
    """Legacy base type ids. Each one is also a row with ``id == t`` in every namespace."""

    CONTAINER = 1
    HTML = 2
    SHORT = 3
    DATETIME = 4
    GRANT = 5
    PWD = 6
    BUTTON = 7
    CHARS = 8
    DATE = 9
    FILE = 10
    BOOLEAN = 11
    MEMO = 12
    NUMBER = 13
    SIGNED = 14
    CALCULATABLE = 15
    REPORT_COLUMN = 16
    PATH = 17


class BaseKind(str, Enum):
    """Closed set of behaviours a type or requisite can have."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    FILE = "file"
    GRANT = "grant"
    REFERENCE = "reference"
    CONTAINER = "container"


_KIND_BY_BASE = {
    BaseType.CONTAINER: BaseKind.CONTAINER,
    BaseType.HTML: BaseKind.TEXT,
    BaseType.SHORT: BaseKind.TEXT,
    BaseType.DATETIME: BaseKind.DATE,
    BaseType.GRANT: BaseKind.GRANT,
    BaseType.PWD: BaseKind.TEXT,
    BaseType.BUTTON: BaseKind.TEXT,
    BaseType.CHARS: BaseKind.TEXT,
    BaseType.DATE: BaseKind.DATE,
    BaseType.FILE: BaseKind.FILE,
    BaseType.BOOLEAN: BaseKind.BOOLEAN,
    BaseType.MEMO: BaseKind.TEXT,
    BaseType.NUMBER: BaseKind.NUMBER,
    BaseType.SIGNED: BaseKind.NUMBER,
    BaseType.CALCULATABLE: BaseKind.TEXT,
    BaseType.REPORT_COLUMN: BaseKind.TEXT,
    BaseType.PATH: BaseKind.TEXT,
}

# Base type id used when a kind is requested by name
_DEFAULT_BASE_BY_KIND = {
    BaseKind.TEXT: BaseType.SHORT,
    BaseKind.NUMBER: BaseType.NUMBER,
    BaseKind.DATE: BaseType.DATE,
    BaseKind.BOOLEAN: BaseType.BOOLEAN,
    BaseKind.FILE: BaseType.FILE,
    BaseKind.GRANT: BaseType.GRANT,
    BaseKind.CONTAINER: BaseType.CONTAINER,
}


_BASIC_IDS = frozenset(int(b) for b in BaseType)
_KIND_NAMES = frozenset(k.value for k in BaseKind)

# System ids
ROOT_ID = 1
USER = 18
PASSWORD = 20
REPORT = 22
XSRF = 40
EMAIL = 41
ROLE = 42
USER_ROLE = 115
TOKEN = 125
SECRET = 130

# Credential requisites; their values never leave the store
SECRET_REQUISITES = frozenset([PASSWORD, XSRF, TOKEN, SECRET])
# Requisites only privileged roles may write
GUARDED_REQUISITES = SECRET_REQUISITES | {USER_ROLE}
# Types whose objects are accounts
ACCOUNT_TYPES = frozenset([USER, ROLE])
# What a user may change on its own account
SELF_SERVICE_REQUISITES = frozenset([PASSWORD, EMAIL])

ROLE_ADMIN = "admin"
ROLE_USER = "user"


def is_basic(type_id: int) -> bool:
    """True for the fixed base type ids."""
    return type_id in _BASIC_IDS


def kind_of(base_id: int) -> BaseKind:
    """Kind of a requisite or type whose ``t`` is ``base_id``; other type ids are references."""
    if is_basic(base_id):
        return _KIND_BY_BASE[BaseType(base_id)]
    return BaseKind.REFERENCE


def base_name(base_id: Optional[int]) -> str:
    """Legacy upper-case name of a base id (``SHORT`` for anything unknown)."""
    if base_id is not None and is_basic(base_id):
        return BaseType(base_id).name
    return BaseType.SHORT.name


def resolve_base(value) -> int:
    """
    Turn a base type given as an id, a legacy name or a kind name into an id.

    Numeric strings and ints above the basic range are returned unchanged;
    they name a referenced type and are validated by the schema registry.

    Raises:
        ValueError: If the value names no base type
    """
    if isinstance(value, BaseKind):
        if value is BaseKind.REFERENCE:
            raise ValueError("reference kind needs a target type id")
        return int(_DEFAULT_BASE_BY_KIND[value])
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    upper = text.upper()
    if upper in BaseType.__members__:
        return int(BaseType[upper])
    lower = text.lower()
    if lower in _KIND_NAMES and lower != BaseKind.REFERENCE.value:
        return int(_DEFAULT_BASE_BY_KIND[BaseKind(lower)])
    raise ValueError(f"Unknown base type: {value}")
