import pytest

from uptimer.status_ranges import (
    DEFAULT_STATUS_RANGES,
    StatusRange,
    format_status_ranges,
    is_status_accepted,
    parse_status_ranges,
)


def test_empty_means_default():
    assert parse_status_ranges(None) == DEFAULT_STATUS_RANGES
    assert parse_status_ranges("  ") == DEFAULT_STATUS_RANGES
    assert is_status_accepted(200, DEFAULT_STATUS_RANGES)
    assert is_status_accepted(399, DEFAULT_STATUS_RANGES)
    assert not is_status_accepted(400, DEFAULT_STATUS_RANGES)


def test_mixed_ranges_and_single_codes():
    ranges = parse_status_ranges("200-299, 404")
    assert ranges == (StatusRange(200, 299), StatusRange(404, 404))
    assert is_status_accepted(250, ranges)
    assert is_status_accepted(299, ranges)
    assert is_status_accepted(404, ranges)
    assert not is_status_accepted(300, ranges)
    assert not is_status_accepted(403, ranges)
    assert not is_status_accepted(301, ranges)
    assert format_status_ranges(ranges) == "200-299,404"


@pytest.mark.parametrize("raw", ["abc", "200-", "300-200", "99", "600", "200-300-400"])
def test_malformed_input_rejected(raw):
    with pytest.raises(ValueError):
        parse_status_ranges(raw)


def test_sentinel_codes_never_accepted():
    assert not is_status_accepted(-1, parse_status_ranges("100-599"))
