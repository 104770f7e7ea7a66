"""Attribute normalization shared by the bundled providers."""

from __future__ import annotations

from typing import Final

from converge_engine.domain.models import JSONValue

_TRUE_STRINGS: Final[frozenset[str]] = frozenset({"true", "yes", "on", "1"})
_FALSE_STRINGS: Final[frozenset[str]] = frozenset({"false", "no", "off", "0"})


def normalize_mode(value: JSONValue) -> str | None:
    """Return a four-digit octal string (``"0644"``) for a file mode value.

    Integers are read as already-decoded mode bits (``0o644 == 420``);
    strings are read as octal text.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("file mode must be an octal string or integer")
    if isinstance(value, int):
        bits = value
    elif isinstance(value, str):
        text = value.strip().lower().removeprefix("0o")
        try:
            bits = int(text, 8)
        except ValueError as exc:
            raise ValueError(f"invalid octal file mode: {value!r}") from exc
    else:
        raise ValueError("file mode must be an octal string or integer")
    if not 0 <= bits <= 0o7777:
        raise ValueError(f"file mode out of range: {value!r}")
    return f"{bits:04o}"


def coerce_flag(value: JSONValue) -> bool | None:
    """Interpret manifest-style booleans (``true``, ``"yes"``, ``"0"``...)."""

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean value: {value!r}")


def modes_match(current: JSONValue, desired: JSONValue) -> bool:
    try:
        return normalize_mode(current) == normalize_mode(desired)
    except ValueError:
        return current == desired


def flags_match(current: JSONValue, desired: JSONValue) -> bool:
    try:
        return coerce_flag(current) == coerce_flag(desired)
    except ValueError:
        return current == desired


__all__ = ["coerce_flag", "flags_match", "modes_match", "normalize_mode"]
