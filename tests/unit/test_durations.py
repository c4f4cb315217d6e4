import pytest

from stackpilot.UTILS.durations import parse_duration, parse_size


@pytest.mark.parametrize("value, seconds", [
    ("10s", 10.0),
    ("1m30s", 90.0),
    ("500ms", 0.5),
    ("1h", 3600.0),
    ("2.5s", 2.5),
    ("30", 30.0),
    (15, 15.0),
    (None, None),
])
def test_parse_duration(value, seconds):
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "ten seconds", "10x", "s10", True])
def test_parse_duration_invalid(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_parse_size():
    assert parse_size("512B") == 512
    assert parse_size("1.5kB") == 1500
    assert parse_size("64MiB") == 64 * 1024 * 1024
    assert parse_size(" 2GiB ") == 2 * 1024 ** 3
    assert parse_size("--") is None
    assert parse_size("") is None
