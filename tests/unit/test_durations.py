import pytest

from dockplan.UTILS.durations import MILLISECOND, MINUTE, SECOND, format_duration, parse_duration, to_seconds


@pytest.mark.parametrize("text, expected", [
    ("30s", 30 * SECOND),
    ("1m30s", MINUTE + 30 * SECOND),
    ("500ms", 500 * MILLISECOND),
    ("1.5s", 1500 * MILLISECOND),
    ("0", 0),
    ("2h", 120 * MINUTE),
    ("10us", 10_000),
])
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


def test_plain_numbers_are_seconds():
    assert parse_duration(5) == 5 * SECOND
    assert parse_duration(0.25) == 250 * MILLISECOND


@pytest.mark.parametrize("text", ["", "10", "5x", "s", "1m 30s", "-1s"])
def test_malformed_durations(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_format_duration_reads_back():
    for value in (0, 1, 999, 1500 * MILLISECOND, MINUTE + 5 * SECOND, 3 * MINUTE):
        assert parse_duration(format_duration(value)) == value
    assert format_duration(90 * SECOND) == "1m30s"


def test_to_seconds():
    assert to_seconds(1500 * MILLISECOND) == 1.5
