"""Utility helpers for the StashMirror service."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Sequence, TypeVar

T = TypeVar("T")

PHASH_BAND_WIDTH = 2
PHASH_HEX_LENGTH = 16
_HEX_RE = re.compile(r"^[0-9a-f]+$")


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_source_timestamp(value: Any) -> datetime | None:
    """Parse an upstream timestamp into naive UTC.

    Offsets are applied before dropping tzinfo. Values without an offset are
    taken to be UTC already.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_naive_utc(parsed)


def format_cursor(value: datetime, *, subsecond_guard: bool = True) -> str:
    """Render a cursor for the upstream ``updated_at`` filter.

    The upstream reports whole seconds but stores fractions, so the guard pins
    the fraction to ``.999`` to skip every write inside the cursor's second.
    """

    moment = to_naive_utc(value)
    if subsecond_guard:
        return f"{moment.replace(microsecond=0).isoformat()}.999Z"
    return f"{moment.isoformat(timespec='milliseconds')}Z"


def isoformat_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def later(first: datetime | None, second: datetime | None) -> datetime | None:
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


def chunked(values: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""

    if size <= 0:
        raise ValueError("Chunk size must be positive")
    for start in range(0, len(values), size):
        yield values[start : start + size]


def normalise_phash(value: Any) -> str | None:
    """Return a lowercase, zero-padded 64-bit hex phash or ``None``."""

    if value is None:
        return None
    text = str(value).strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if not text or len(text) > PHASH_HEX_LENGTH or not _HEX_RE.match(text):
        return None
    return text.rjust(PHASH_HEX_LENGTH, "0")


def phash_distance(first: str, second: str) -> int:
    """Hamming distance between two hex phashes."""

    return bin(int(first, 16) ^ int(second, 16)).count("1")


def phash_bands(value: str) -> list[str]:
    """Split a phash into fixed-width bands used for near-match lookup.

    Two hashes within seven bits of each other share at least one band.
    """

    return [
        value[index : index + PHASH_BAND_WIDTH]
        for index in range(0, PHASH_HEX_LENGTH, PHASH_BAND_WIDTH)
    ]


def unique(values: Iterable[T]) -> list[T]:
    seen: set[T] = set()
    ordered: list[T] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered
