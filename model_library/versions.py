"""
Version label arithmetic. Labels are ``v1``, ``v2``, ... per model.
"""

import re

VERSION_RE = re.compile(r"^v(\d+)$")

INITIAL_VERSION = "v1"


def parse_version_number(label: str | None) -> int:
    """Numeric part of a label; anything unparseable counts as version 1."""
    if not label:
        return 1
    match = VERSION_RE.match(label.strip())
    if not match:
        return 1
    return int(match.group(1))


def format_version(number: int) -> str:
    return f"v{number}"


def next_version_number(current_label: str | None, last_reserved: int = 0) -> int:
    """Next number after both the current label and any previously reserved one.

    Reserved numbers are never handed out twice, so a failed upload leaves a
    gap rather than a reused label.
    """
    return max(parse_version_number(current_label), last_reserved or 0) + 1


def next_version_label(current_label: str | None, last_reserved: int = 0) -> str:
    return format_version(next_version_number(current_label, last_reserved))
