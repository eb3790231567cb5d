"""
Small helpers shared across the engine: id generation and string normalization.

This module intentionally avoids third-party dependencies.
"""

from __future__ import annotations

import os
import time
import unicodedata


_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

MAX_SLUG_LENGTH = 100


def _encode_crockford_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        chars.append(_CROCKFORD32[value & 31])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid(*, timestamp_ms: int | None = None) -> str:
    """
    Generate a ULID (26 chars, Crockford base32).

    ULID = 48-bit millisecond timestamp + 80-bit randomness.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)

    if not (0 <= timestamp_ms < (1 << 48)):
        raise ValueError("timestamp_ms out of range for ULID")

    randomness = int.from_bytes(os.urandom(10), "big")
    value = (timestamp_ms << 80) | randomness
    return _encode_crockford_base32(value, 26)


def new_member_id() -> str:
    return f"m_{new_ulid().lower()}"


def new_group_id() -> str:
    return f"g_{new_ulid().lower()}"


def new_group_set_id() -> str:
    return f"gs_{new_ulid().lower()}"


def new_assignment_id() -> str:
    return f"a_{new_ulid().lower()}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_name(name: str) -> str:
    """Collapse internal whitespace and lowercase, for duplicate-name checks."""
    return " ".join(name.split()).lower()


def is_valid_email(email: str) -> bool:
    """Loose shape check: one '@', non-empty local part, dotted domain."""
    email = email.strip()
    parts = email.split("@")
    if len(parts) != 2:
        return False
    local, domain = parts
    if not local or not domain or " " in local:
        return False
    dot = domain.rfind(".")
    return 0 < dot < len(domain) - 1


def slugify(value: str) -> str:
    """
    Reduce a display string to a repository-safe slug.

    Accents are folded to ASCII, spaces and underscores become hyphens,
    anything else non-alphanumeric is dropped, and hyphen runs collapse.
    """
    ascii_text = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    out: list[str] = []
    last_hyphen = False
    for ch in ascii_text.lower():
        if ch in (" ", "_"):
            ch = "-"
        if ch.isascii() and ch.isalnum():
            out.append(ch)
            last_hyphen = False
        elif ch == "-" and not last_hyphen:
            out.append("-")
            last_hyphen = True

    slug = "".join(out).strip("-")
    if len(slug) > MAX_SLUG_LENGTH:
        slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug


def unique_in_order(values) -> tuple[str, ...]:
    """Drop repeated values, keeping first occurrences in order."""
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return tuple(out)
