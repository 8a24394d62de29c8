"""Generic object database engine with a legacy-compatible request protocol."""

from .errors import (  # noqa: F401
    ObjdbError,
    InvalidArgument,
    NotFound,
    Unauthorized,
    Forbidden,
    Conflict,
    HasDependents,
    HasValues,
    HasChildren,
    DuplicateOrder,
    InvalidReference,
    StoreUnavailable,
    UnknownAction,
    create_error_response,
)
from .hashing import derive_opaque_token, derive_password_digest, derive_xsrf  # noqa: F401
from .modifiers import RequisiteModifiers, decode_modifiers, encode_modifiers  # noqa: F401

__version__ = "1.0.0"
