"""Shape checks for option values; every failure maps onto the queue error taxonomy."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import Any

from lease_queue.errors import InvalidParameter, MissingParameter

_MATCH_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def check_int(
    name: str,
    value: Any,
    *,
    minimum: int = 0,
    required: bool = False,
) -> int | None:
    if value is None:
        if required:
            raise MissingParameter(f"Missing {name}")
        return None
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"Invalid {name}: expected integer; found {value!r}")
    if value < minimum:
        qualifier = "non-negative" if minimum == 0 else f"at least {minimum}"
        raise InvalidParameter(f"Invalid {name}: must be {qualifier}; found {value}")
    return value


def check_str(name: str, value: Any, *, required: bool = False) -> str | None:
    if value is None:
        if required:
            raise MissingParameter(f"Missing {name}")
        return None
    if not isinstance(value, str):
        raise InvalidParameter(f"Invalid {name}: expected string; found {value!r}")
    return value


def check_bool(name: str, value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise InvalidParameter(f"Invalid {name}: expected boolean; found {value!r}")
    return value


def check_str_list(name: str, value: Any) -> tuple[str, ...] | None:
    """Accept a string or a non-empty sequence of strings."""

    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, Sequence):
        raise InvalidParameter(
            f"Invalid {name}: expected string or list of strings; found {value!r}",
        )
    if not value:
        raise InvalidParameter(f"Invalid {name}: list must be non-empty")
    for item in value:
        if not isinstance(item, str):
            raise InvalidParameter(f"Invalid {name}: expected string item; found {item!r}")
    return tuple(value)


def check_identifier(name: str, value: Any) -> str:
    text = check_str(name, value, required=True)
    if text is None or not _MATCH_IDENTIFIER.fullmatch(text):
        raise InvalidParameter(f"Invalid {name}: expected ASCII identifier; found {text!r}")
    return text


def check_json_blob(name: str, value: str) -> str:
    """Non-empty strings must hold serialized JSON; the empty string means default parameters."""

    if value == "":
        return value
    try:
        json.loads(value)
    except ValueError as error:
        raise InvalidParameter(f"Invalid {name}: not a JSON document: {value!r}") from error
    return value
