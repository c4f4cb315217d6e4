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
Parsers for Docker Compose YAML files.
"""
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values

from ..errors import ConfigurationError
from ..MODELS.compose_definition import ComposeDefinition, RawHealthProbe, RawServiceDefinition
from ..MODELS.service_spec import VolumeMount
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

_MERGE_TAG = "tag:yaml.org,2002:merge"
_INTEGER = re.compile(r"^-?\d+$")


class _UniqueKeyLoader(yaml.SafeLoader):
    """
    Safe loader that rejects repeated keys instead of silently keeping the last one.
    """
    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == _MERGE_TAG:
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise ConfigurationError(
                    f"duplicate key {key!r} at line {key_node.start_mark.line + 1}",
                    field_path=str(key),
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for interpolation. Defaults to the process
            environment layered over the project's ``.env`` file.
        """
        self.context = dict(context) if context is not None else None

    def parse(self, compose_path: str) -> ComposeDefinition:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed definition.
        """
        compose_path = os.path.abspath(compose_path)
        try:
            with open(compose_path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"cannot read compose file: {e}", field_path=compose_path) from e

        definition = self.parse_from_string(content, base_dir=os.path.dirname(compose_path))
        return definition.model_copy(update={"path": compose_path})

    def parse_from_string(self, content: str, base_dir: Optional[str] = None) -> ComposeDefinition:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory that relative ``env_file`` and ``.env`` paths resolve against.
        :return: Parsed definition.
        """
        base_dir = base_dir or os.getcwd()
        context = self._build_context(base_dir)

        try:
            data = yaml.load(content, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML: {e}") from e
        # Substitution applies to parsed scalars, never to the YAML text itself.
        data = self._interpolate(data, context)

        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("compose file must be a mapping at the top level")

        raw_services = data.get("services") or {}
        if not isinstance(raw_services, dict):
            raise ConfigurationError("must be a mapping of service names", field_path="services")

        services = []
        for index, (name, spec) in enumerate(raw_services.items()):
            if spec is None:
                spec = {}
            if not isinstance(spec, dict):
                raise ConfigurationError("service definition must be a mapping", field_path=f"services.{name}")
            services.append(self.parse_service(str(name), index, spec, base_dir, context))

        return ComposeDefinition(
            name=data.get("name"),
            services=services,
            networks=list(data.get("networks") or {}),
            volumes=list(data.get("volumes") or {}),
        )

    @classmethod
    def _interpolate(cls, node: Any, context: Mapping[str, str]) -> Any:
        """
        Substitutes variables in every string key and value of a loaded document.
        """
        if isinstance(node, str):
            return EnvironmentInterpolator.interpolate(node, context)
        if isinstance(node, dict):
            return {
                (cls._interpolate(key, context) if isinstance(key, str) else key): cls._interpolate(value, context)
                for key, value in node.items()
            }
        if isinstance(node, list):
            return [cls._interpolate(item, context) for item in node]
        return node

    def _build_context(self, base_dir: str) -> Dict[str, str]:
        if self.context is not None:
            return self.context
        context: Dict[str, str] = {}
        dotenv_path = os.path.join(base_dir, ".env")
        if os.path.isfile(dotenv_path):
            context.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
        # The shell environment wins over .env, as in compose.
        context.update(os.environ)
        return context

    def parse_service(self, name: str, index: int, spec: Dict[str, Any],
                      base_dir: Optional[str] = None,
                      context: Optional[Mapping[str, str]] = None) -> RawServiceDefinition:
        """
        Parses a single, already interpolated service definition.

        :param name: The name of the service.
        :param index: Position of the service in the file.
        :param spec: The service specification dictionary.
        :param base_dir: Directory relative ``env_file`` paths resolve against. Defaults to the cwd.
        :param context: Variables that bare ``environment`` entries are taken from.
            Defaults to the parser's own context, or none.
        :return: A RawServiceDefinition instance.
        """
        base_dir = base_dir or os.getcwd()
        if context is None:
            context = self.context or {}
        path = f"services.{name}"

        build = spec.get("build")
        build_context = build.get("context") if isinstance(build, dict) else build

        deploy = spec.get("deploy") or {}
        replicas = deploy.get("replicas") if isinstance(deploy, dict) else None
        if replicas is None:
            replicas = spec.get("scale")
        replicas = self._as_int(replicas)
        if replicas is not None and (isinstance(replicas, bool) or not isinstance(replicas, int)):
            raise ConfigurationError("replicas must be an integer", field_path=f"{path}.deploy.replicas")

        restart = spec.get("restart")
        if restart is not None:
            restart = str(restart).split(":", 1)[0]

        return RawServiceDefinition(
            name=name,
            declaration_index=index,
            image=spec.get("image"),
            build_context=build_context,
            command=self._to_list(spec.get("command")),
            environment=self._parse_environment(spec, base_dir, context, path),
            ports=self._parse_ports(spec.get("ports") or [], path),
            volumes=self._parse_volumes(spec.get("volumes") or []),
            depends_on=self._parse_depends_on(spec.get("depends_on"), path),
            restart=restart,
            healthcheck=self._parse_healthcheck(spec.get("healthcheck"), path),
            replicas=replicas,
        )

    def _parse_environment(self, spec: Dict[str, Any], base_dir: str,
                           context: Mapping[str, str], path: str) -> Dict[str, str]:
        environment: Dict[str, str] = {}

        # env_file entries first, later files override earlier ones
        for entry in self._to_list_raw(spec.get("env_file")):
            required = True
            if isinstance(entry, dict):
                required = entry.get("required", True)
                entry = entry.get("path")
            file_path = os.path.join(base_dir, str(entry))
            if not os.path.isfile(file_path):
                if required:
                    raise ConfigurationError(f"env file {file_path} not found", field_path=f"{path}.env_file")
                continue
            environment.update({k: v for k, v in dotenv_values(file_path).items() if v is not None})

        # explicit environment overrides env files
        env_spec = spec.get("environment") or []
        if isinstance(env_spec, list):
            for item in env_spec:
                item = str(item)
                if "=" in item:
                    key, value = item.split("=", 1)
                    environment[key] = value
                elif item in context:
                    environment[item] = context[item]
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if value is None:
                    if key in context:
                        environment[str(key)] = context[key]
                    continue
                environment[str(key)] = self._scalar_str(value)
        else:
            raise ConfigurationError("must be a list or a mapping", field_path=f"{path}.environment")
        return environment

    def _parse_ports(self, port_specs: List[Any], path: str) -> Dict[int, Optional[int]]:
        ports: Dict[int, Optional[int]] = {}
        for position, p in enumerate(port_specs):
            try:
                if isinstance(p, dict):
                    published = p.get("published")
                    ports[int(p["target"])] = int(published) if published not in (None, "") else None
                    continue
                text = str(p).split("/", 1)[0]
                parts = text.split(":")
                container = parts[-1]
                host = parts[-2] if len(parts) >= 2 and parts[-2] else None
                for c, h in self._expand_range(container, host):
                    ports[c] = h
            except (KeyError, ValueError) as e:
                raise ConfigurationError(f"invalid port mapping {p!r}", field_path=f"{path}.ports[{position}]") from e
        return ports

    @staticmethod
    def _expand_range(container: str, host: Optional[str]):
        if "-" not in container:
            return [(int(container), int(host) if host else None)]
        c_start, c_end = (int(x) for x in container.split("-", 1))
        if host and "-" in host:
            h_start = int(host.split("-", 1)[0])
        else:
            h_start = int(host) if host else None
        pairs = []
        for offset, c in enumerate(range(c_start, c_end + 1)):
            pairs.append((c, h_start + offset if h_start is not None else None))
        return pairs

    @staticmethod
    def _parse_volumes(volume_specs: List[Any]) -> List[VolumeMount]:
        volumes = []
        for v in volume_specs:
            if isinstance(v, str):
                parts = v.split(":")
                if len(parts) == 1:
                    volumes.append(VolumeMount(source="", target=parts[0]))
                elif len(parts) == 2:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1]))
                else:
                    volumes.append(VolumeMount(source=parts[0], target=parts[1], read_only=("ro" in parts[2].split(","))))
            elif isinstance(v, dict):
                volumes.append(VolumeMount(
                    source=str(v.get("source", "")),
                    target=str(v.get("target", "")),
                    read_only=bool(v.get("read_only", False)),
                ))
        return volumes

    @staticmethod
    def _parse_depends_on(value: Any, path: str) -> List[str]:
        if value is None:
            return []
        if isinstance(value, dict):
            return [str(k) for k in value.keys()]
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, str):
            return [value]
        raise ConfigurationError("must be a list or a mapping", field_path=f"{path}.depends_on")

    def _parse_healthcheck(self, value: Any, path: str) -> Optional[RawHealthProbe]:
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ConfigurationError("must be a mapping", field_path=f"{path}.healthcheck")

        test = value.get("test", [])
        if isinstance(test, str):
            test = ["CMD-SHELL", test]

        durations = {}
        for key in ("interval", "timeout", "start_period"):
            try:
                durations[key] = parse_duration(value.get(key))
            except ValueError as e:
                raise ConfigurationError(str(e), field_path=f"{path}.healthcheck.{key}") from e

        retries = self._as_int(value.get("retries"))
        if retries is not None and (isinstance(retries, bool) or not isinstance(retries, int) or retries < 0):
            raise ConfigurationError("must be a non-negative integer", field_path=f"{path}.healthcheck.retries")

        return RawHealthProbe(
            test=[str(t) for t in test],
            retries=retries,
            disabled=bool(value.get("disable", False)),
            **durations,
        )

    @staticmethod
    def _as_int(value: Any) -> Any:
        # Interpolated numbers arrive as text, e.g. retries: ${RETRIES}
        if isinstance(value, str) and _INTEGER.match(value.strip()):
            return int(value)
        return value

    @staticmethod
    def _scalar_str(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    @staticmethod
    def _to_list_raw(val: Any) -> List[Any]:
        if val is None:
            return []
        if isinstance(val, (str, dict)):
            return [val]
        return list(val)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a command value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]
