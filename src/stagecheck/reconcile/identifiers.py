from __future__ import annotations

import re
from enum import Enum

from ..errors import ValidationError

VIN_LENGTH = 17

_NON_VIN_RE = re.compile(r"[^A-Z0-9]")
_VIN_RE = re.compile(r"^[A-Z0-9]{17}$")
_HEX_RE = re.compile(r"^#([0-9A-F]{3}|[0-9A-F]{6})$", re.IGNORECASE)
_WORD_START_RE = re.compile(r"\b\w")


class IdentifierKind(str, Enum):
    VIN = "vin"
    COLOR = "color"


def normalize_vin(raw: str | None) -> str:
    return _NON_VIN_RE.sub("", (raw or "").upper())[:VIN_LENGTH]


def to_color_label(raw: str | None) -> str:
    """
    "#ff0000" -> "#FF0000", "rojo CORSA" -> "Rojo Corsa".
    """
    s = (raw or "").strip()
    if _HEX_RE.match(s):
        return s.upper()
    return _WORD_START_RE.sub(lambda m: m.group(0).upper(), s.lower())


def normalize_identifier(raw: str | None, kind: IdentifierKind) -> str:
    if kind is IdentifierKind.VIN:
        return normalize_vin(raw)
    return to_color_label(raw)


def is_valid_identifier(value: str | None, kind: IdentifierKind) -> bool:
    if kind is IdentifierKind.VIN:
        return bool(value) and bool(_VIN_RE.match(value.upper()))
    return bool((value or "").strip())


def validate_identifier(raw: str | None, kind: IdentifierKind) -> str:
    value = normalize_identifier(raw, kind)
    if not is_valid_identifier(value, kind):
        if kind is IdentifierKind.VIN:
            raise ValidationError(f"VIN must be {VIN_LENGTH} letters or digits, got {value!r}")
        raise ValidationError("color must not be empty")
    return value
