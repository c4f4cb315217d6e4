# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Compose-style variable interpolation.
"""
import logging
import re
from typing import Mapping

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

# $$ | ${VAR[op value]} | $VAR
_PATTERN = re.compile(
    r"\$(?:(?P<escaped>\$)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-+?])(?P<arg>[^}]*))?\}"
    r"|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))"
)


class EnvironmentInterpolator:
    """
    Interpolates variables the way compose files do.

    Supports ``${VAR}``, ``$VAR``, ``${VAR:-default}``, ``${VAR-default}``,
    ``${VAR:+value}``, ``${VAR+value}``, ``${VAR:?message}``,
    ``${VAR?message}`` and ``$$`` for a literal dollar sign. Unset plain
    variables resolve to an empty string and are logged.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing placeholders.
        :param context: The variables available for substitution.
        :return: The interpolated string.
        :raises ConfigurationError: If a ``?`` form names a missing variable.
        """
        def replace(match):
            if match.group("escaped"):
                return "$"

            name = match.group("braced") or match.group("bare")
            op = match.group("op")
            arg = match.group("arg") or ""
            value = context.get(name)
            is_set = value is not None
            non_empty = bool(value)

            if op == ":-":
                return value if non_empty else arg
            if op == "-":
                return value if is_set else arg
            if op == ":+":
                return arg if non_empty else ""
            if op == "+":
                return arg if is_set else ""
            if op in (":?", "?"):
                ok = non_empty if op == ":?" else is_set
                if not ok:
                    raise ConfigurationError(
                        arg or f"required variable {name} is missing a value",
                        field_path=f"${{{name}}}",
                    )
                return value

            if not is_set:
                logger.warning("The %s variable is not set. Defaulting to a blank string.", name)
                return ""
            return value

        return _PATTERN.sub(replace, template)
