import logging

import pytest

from stackpilot.errors import ConfigurationError
from stackpilot.UTILS.string_interpolation import EnvironmentInterpolator

interpolate = EnvironmentInterpolator.interpolate


def test_plain_and_braced():
    context = {"HOST": "db", "PORT": "5432"}
    assert interpolate("$HOST:${PORT}", context) == "db:5432"


def test_unset_variable_is_blank_and_logged(caplog):
    with caplog.at_level(logging.WARNING):
        assert interpolate("x${MISSING}y", {}) == "xy"
    assert "MISSING" in caplog.text


@pytest.mark.parametrize("template, context, expected", [
    ("${V:-fallback}", {}, "fallback"),
    ("${V:-fallback}", {"V": ""}, "fallback"),
    ("${V-fallback}", {"V": ""}, ""),
    ("${V-fallback}", {}, "fallback"),
    ("${V:+alt}", {"V": "set"}, "alt"),
    ("${V:+alt}", {"V": ""}, ""),
    ("${V+alt}", {"V": ""}, "alt"),
    ("${V+alt}", {}, ""),
])
def test_default_and_alternate_forms(template, context, expected):
    assert interpolate(template, context) == expected


def test_required_forms():
    assert interpolate("${V:?needed}", {"V": "ok"}) == "ok"
    assert interpolate("${V?needed}", {"V": ""}) == ""
    with pytest.raises(ConfigurationError, match="needed"):
        interpolate("${V:?needed}", {"V": ""})
    with pytest.raises(ConfigurationError) as exc:
        interpolate("${V?}", {})
    assert exc.value.field_path == "${V}"


def test_escaped_dollar():
    assert interpolate("cost: $$100 and $${NOT_A_VAR}", {"NOT_A_VAR": "x"}) == "cost: $100 and ${NOT_A_VAR}"
