"""Requisite modifier codec.

A requisite row keeps its display name and three independent flags in one
string. Legacy clients look for the markers by substring search, so the
byte layout is fixed. Writing starts from the name, prefixes the alias
marker, then the required marker, then the multi marker::

    :MULTI::!NULL::ALIAS=email:Email

Reading looks for every marker independently and strips it; whatever is
left is the name.
"""
import re
from dataclasses import dataclass
from itertools import product
from typing import Optional

NOT_NULL_MASK = ":!NULL:"
MULTI_MASK = ":MULTI:"
ALIAS_DEF = ":ALIAS="
ALIAS_MASK = re.compile(r":ALIAS=(.*?):")


@dataclass(frozen=True)
class RequisiteModifiers:
    """Decoded form of a requisite's modifier string."""

    name: str
    alias: Optional[str] = None
    required: bool = False
    multi: bool = False

    def encode(self) -> str:
        return encode_modifiers(self.name, self.alias, self.required, self.multi)

    def replace(self, **changes) -> "RequisiteModifiers":
        fields = {
            "name": self.name,
            "alias": self.alias,
            "required": self.required,
            "multi": self.multi,
        }
        fields.update(changes)
        return RequisiteModifiers(**fields)

    @property
    def label(self) -> str:
        """Alias when one is set, the name otherwise."""
        return self.alias if self.alias else self.name


def encode_modifiers(name: str, alias: Optional[str] = None, required: bool = False, multi: bool = False) -> str:
    """Pack a name and its flags into the legacy modifier string."""
    value = name or ""
    if alias:
        value = f"{ALIAS_DEF}{alias}:{value}"
    if required:
        value = NOT_NULL_MASK + value
    if multi:
        value = MULTI_MASK + value
    return value


def check_modifiers(name: str, alias: Optional[str] = None) -> None:
    """
    Reject a name or alias the modifier string can't carry.

    An alias ends at the first colon. A name must decode back to itself
    under any combination of flags, since flags are toggled later.

    Raises:
        ValueError: If the name or alias would not read back unchanged
    """
    if alias and ":" in alias:
        raise ValueError(f"Alias {alias} must not contain ':'")
    for sample_alias, required, multi in product((None, "a"), (False, True), (False, True)):
        if decode_modifiers(encode_modifiers(name, sample_alias, required, multi)).name != name:
            raise ValueError(f"Name {name} clashes with the modifier markers")


def decode_modifiers(value: Optional[str]) -> RequisiteModifiers:
    """Unpack a legacy modifier string."""
    value = value or ""

    alias = None
    match = ALIAS_MASK.search(value)
    if match:
        alias = match.group(1)
        value = value[:match.start()] + value[match.end():]

    required = NOT_NULL_MASK in value
    if required:
        value = value.replace(NOT_NULL_MASK, "", 1)

    multi = MULTI_MASK in value
    if multi:
        value = value.replace(MULTI_MASK, "", 1)

    return RequisiteModifiers(name=value, alias=alias, required=required, multi=multi)


def fetch_alias(value: Optional[str]) -> Optional[str]:
    """Alias marker of a modifier string, without decoding the rest."""
    match = ALIAS_MASK.search(value or "")
    return match.group(1) if match else None


def strip_masks(value: Optional[str]) -> str:
    """Display name of a modifier string."""
    return decode_modifiers(value).name
