from __future__ import annotations

from datetime import datetime

import pytest

from mirror.utils import (
    chunked,
    format_cursor,
    later,
    normalise_phash,
    parse_source_timestamp,
    phash_bands,
    phash_distance,
)


def test_parse_source_timestamp_applies_offsets() -> None:
    assert parse_source_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0)
    assert parse_source_timestamp("2024-03-01T12:00:00+02:00") == datetime(2024, 3, 1, 10, 0)
    assert parse_source_timestamp("not a date") is None
    assert parse_source_timestamp("") is None


def test_format_cursor_pins_subsecond_fraction() -> None:
    moment = datetime(2024, 3, 1, 10, 0, 5, 250000)

    assert format_cursor(moment) == "2024-03-01T10:00:05.999Z"
    assert format_cursor(moment, subsecond_guard=False) == "2024-03-01T10:00:05.250Z"


def test_later_ignores_missing_values() -> None:
    first = datetime(2024, 1, 1)
    second = datetime(2024, 1, 2)

    assert later(first, second) == second
    assert later(None, first) == first
    assert later(second, None) == second
    assert later(None, None) is None


def test_chunked_splits_sequences() -> None:
    assert [list(chunk) for chunk in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    with pytest.raises(ValueError):
        list(chunked([1], 0))


def test_normalise_phash_pads_and_rejects_garbage() -> None:
    assert normalise_phash("ABCDEF") == "0000000000abcdef"
    assert normalise_phash("0x1f") == "000000000000001f"
    assert normalise_phash("xyz") is None
    assert normalise_phash("1" * 17) is None
    assert normalise_phash(None) is None


def test_phash_bands_share_a_band_within_seven_bits() -> None:
    base = "ffffffffffffffff"
    # Flip one bit in each of seven different bands.
    near = "fe" * 7 + "ff"

    assert phash_distance(base, near) == 7
    shared = [a == b for a, b in zip(phash_bands(base), phash_bands(near))]
    assert any(shared)
    assert len(phash_bands(base)) == 8
