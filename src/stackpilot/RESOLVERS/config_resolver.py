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
Merging of compose definitions with the persisted project configuration.

Resolution is pure: nothing is read from or written to disk here.
"""
import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from ..errors import ConfigurationError
from ..MODELS.compose_definition import ComposeDefinition, RawServiceDefinition
from ..MODELS.project_config import (
    SUPPORTED_CONFIG_VERSIONS,
    GlobalDefaults,
    OrchestrationPolicy,
    PersistedProjectConfig,
    PersistedServiceSettings,
    ProjectConfig,
)
from ..MODELS.service_spec import HealthCheckPolicy, RestartPolicyCondition, ScaleBounds, ServiceSpec
from ..PARSERS.compose_parser import ComposeParser

logger = logging.getLogger(__name__)

MAX_PROJECT_NAME_LENGTH = 63
_PROJECT_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")

RawServices = Union[ComposeDefinition, Sequence[RawServiceDefinition], Mapping[str, Any]]


def _validation_error(error: ValidationError, prefix: str = "") -> ConfigurationError:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    path = ".".join(p for p in (prefix, location) if p)
    return ConfigurationError(first.get("msg", "invalid value"), field_path=path or None)


class ConfigResolver:
    """
    Produces a validated ProjectConfig from raw compose services and an
    optional persisted configuration.
    """

    def load_persisted(self, data: Optional[Mapping[str, Any]]) -> PersistedProjectConfig:
        """
        Validates a plain mapping (as read from JSON or YAML) against the persisted schema.

        :raises ConfigurationError: On schema violations or an unsupported ``config_version``.
        """
        if data is None:
            return PersistedProjectConfig()
        if not isinstance(data, Mapping):
            raise ConfigurationError("persisted configuration must be a mapping")
        try:
            persisted = PersistedProjectConfig.model_validate(dict(data))
        except ValidationError as e:
            raise _validation_error(e) from e
        self._check_version(persisted.config_version)
        return persisted

    def resolve(self,
                raw_services: RawServices,
                persisted: Union[PersistedProjectConfig, Mapping[str, Any], None] = None,
                project_name: Optional[str] = None) -> ProjectConfig:
        """
        Merges raw services with persisted settings.

        Persisted fields override the values derived from the compose file one
        field at a time; fields the user did not set keep the derived value.

        :param raw_services: A parsed compose file, a sequence of raw services,
            or a mapping of service name to compose-style definition.
        :param persisted: Stored project configuration, if any.
        :param project_name: Fallback project name.
        :raises ConfigurationError: On duplicate names, bad bounds, bad
            priorities, unknown dependencies or an unsupported version.
        """
        if persisted is None or isinstance(persisted, Mapping):
            persisted = self.load_persisted(persisted)
        else:
            self._check_version(persisted.config_version)

        definition = self._as_definition(raw_services)
        self._check_duplicates([svc.name for svc in definition.services])

        defaults = GlobalDefaults(
            restart_policy=persisted.restart_policy or GlobalDefaults().restart_policy,
            runtime_command=persisted.runtime_command or GlobalDefaults().runtime_command,
        )
        if not defaults.runtime_command.strip():
            raise ConfigurationError("must not be empty", field_path="runtime_command")

        scaling = self._apply(ScaleBounds(), persisted.scaling)
        self._check_bounds(scaling, "scaling")
        health = self._apply(HealthCheckPolicy(), persisted.health_check)

        services: Dict[str, ServiceSpec] = {}
        for raw in definition.services:
            derived = self._derive(raw, defaults, scaling, health)
            overrides = persisted.services.get(raw.name)
            services[raw.name] = self._merge(derived, overrides)

        for name in persisted.services:
            if name not in services:
                logger.warning("Ignoring settings for service %s: not defined in the compose file", name)

        self._check_dependencies(services)

        name = self._project_name(persisted.project_name or project_name, definition)
        return ProjectConfig(
            project_name=name,
            services=services,
            defaults=defaults,
            scaling=scaling,
            health_check=health,
            orchestration=persisted.orchestration or OrchestrationPolicy(),
            config_version=persisted.config_version,
            compose_file=definition.path,
        )

    @staticmethod
    def to_persisted(config: ProjectConfig) -> PersistedProjectConfig:
        """
        The persisted record that resolves back to ``config`` for the same
        compose file. Runtime shape (ports, volumes, environment) stays in
        the compose file and is not exported.
        """
        services = {}
        for name, spec in config.services.items():
            services[name] = PersistedServiceSettings(
                priority=spec.priority,
                depends_on=list(spec.depends_on),
                restart_policy=spec.restart_policy,
                health_check=spec.health_check.model_dump(),
                scale=spec.scale.model_dump(),
            )
        return PersistedProjectConfig(
            config_version=config.config_version,
            project_name=config.project_name,
            runtime_command=config.defaults.runtime_command,
            restart_policy=config.defaults.restart_policy,
            scaling=config.scaling.model_dump(),
            health_check=config.health_check.model_dump(),
            orchestration=config.orchestration,
            services=services,
        )

    # Input normalisation

    @staticmethod
    def _as_definition(raw_services: RawServices) -> ComposeDefinition:
        if isinstance(raw_services, ComposeDefinition):
            return raw_services
        if isinstance(raw_services, Mapping):
            parser = ComposeParser(context={})
            services = []
            for index, (name, spec) in enumerate(raw_services.items()):
                if isinstance(spec, RawServiceDefinition):
                    services.append(spec.model_copy(update={"declaration_index": index}))
                    continue
                if spec is None:
                    spec = {}
                if not isinstance(spec, Mapping):
                    raise ConfigurationError("service definition must be a mapping", field_path=f"services.{name}")
                services.append(parser.parse_service(str(name), index, dict(spec), os.getcwd(), {}))
            return ComposeDefinition(services=services)
        services = list(raw_services)
        return ComposeDefinition(services=services)

    # Derivation and merge

    @staticmethod
    def _derive(raw: RawServiceDefinition, defaults: GlobalDefaults,
                scaling: ScaleBounds, health: HealthCheckPolicy) -> ServiceSpec:
        path = f"services.{raw.name}"

        restart = defaults.restart_policy
        if raw.restart is not None:
            try:
                restart = RestartPolicyCondition(raw.restart)
            except ValueError as e:
                raise ConfigurationError(f"unknown restart policy {raw.restart!r}", field_path=f"{path}.restart") from e

        probe = raw.healthcheck
        if probe is not None and probe.active:
            health_check = HealthCheckPolicy(
                enabled=True,
                interval=probe.interval or health.interval,
                timeout=probe.timeout or health.timeout,
                retries=probe.retries if probe.retries is not None else health.retries,
                start_period=probe.start_period if probe.start_period is not None else health.start_period,
            )
        else:
            health_check = health.model_copy(update={"enabled": False})

        scale = scaling
        if raw.replicas is not None:
            scale = ScaleBounds(
                min=min(scaling.min, raw.replicas),
                max=max(scaling.max, raw.replicas),
                default=raw.replicas,
            )

        return ServiceSpec(
            name=raw.name,
            priority=raw.declaration_index + 1,
            declaration_index=raw.declaration_index,
            depends_on=list(raw.depends_on),
            restart_policy=restart,
            health_check=health_check,
            scale=scale,
            image=raw.image,
            build_context=raw.build_context,
            ports=dict(raw.ports),
            environment=dict(raw.environment),
            volumes=list(raw.volumes),
        )

    def _merge(self, derived: ServiceSpec, overrides: Optional[PersistedServiceSettings]) -> ServiceSpec:
        path = f"services.{derived.name}"
        if overrides is None:
            self._check_bounds(derived.scale, f"{path}.scale")
            return derived

        update: Dict[str, Any] = {}
        if overrides.priority is not None:
            update["priority"] = self._check_priority(overrides.priority, f"{path}.priority")
        if overrides.depends_on is not None:
            update["depends_on"] = list(overrides.depends_on)
        if overrides.restart_policy is not None:
            update["restart_policy"] = overrides.restart_policy
        if overrides.health_check is not None:
            update["health_check"] = self._apply(derived.health_check, overrides.health_check)
        if overrides.scale is not None:
            update["scale"] = self._apply(derived.scale, overrides.scale)
        if overrides.ports is not None:
            update["ports"] = dict(overrides.ports)
        if overrides.environment is not None:
            update["environment"] = {**derived.environment, **overrides.environment}
        if overrides.volumes is not None:
            update["volumes"] = list(overrides.volumes)

        merged = derived.model_copy(update=update)
        self._check_bounds(merged.scale, f"{path}.scale")
        return merged

    @staticmethod
    def _apply(base, override):
        """Copies ``base`` with every field the override actually sets."""
        if override is None:
            return base
        values = override.model_dump(exclude_none=True)
        return base.model_copy(update=values) if values else base

    # Validation

    @staticmethod
    def _check_version(version: str) -> None:
        if version not in SUPPORTED_CONFIG_VERSIONS:
            raise ConfigurationError(
                f"unsupported configuration version {version!r} (supported: {', '.join(SUPPORTED_CONFIG_VERSIONS)})",
                field_path="config_version",
            )

    @staticmethod
    def _check_duplicates(names: List[str]) -> None:
        seen = set()
        for name in names:
            if name in seen:
                raise ConfigurationError("duplicate service name", field_path=f"services.{name}")
            seen.add(name)

    @staticmethod
    def _check_priority(value: Any, path: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"priority must be an integer, got {value!r}", field_path=path)
        if value < 0:
            raise ConfigurationError(f"priority must not be negative, got {value}", field_path=path)
        return value

    @staticmethod
    def _check_bounds(bounds: ScaleBounds, path: str) -> None:
        if bounds.min < 0:
            raise ConfigurationError(f"min must be >= 0, got {bounds.min}", field_path=f"{path}.min")
        if bounds.max < bounds.min:
            raise ConfigurationError(f"max ({bounds.max}) is below min ({bounds.min})", field_path=f"{path}.max")
        if not bounds.allows(bounds.default):
            raise ConfigurationError(
                f"default ({bounds.default}) is outside [{bounds.min}, {bounds.max}]",
                field_path=f"{path}.default",
            )

    @staticmethod
    def _check_dependencies(services: Mapping[str, ServiceSpec]) -> None:
        for name, spec in services.items():
            for position, dep in enumerate(spec.depends_on):
                path = f"services.{name}.depends_on[{position}]"
                if dep == name:
                    raise ConfigurationError("service cannot depend on itself", field_path=path)
                if dep not in services:
                    raise ConfigurationError(f"unknown service {dep!r}", field_path=path)

    @staticmethod
    def _project_name(explicit: Optional[str], definition: ComposeDefinition) -> str:
        name = explicit or definition.name
        if not name and definition.path:
            name = os.path.basename(os.path.dirname(definition.path)).lower()
        if not name:
            raise ConfigurationError("project name is required", field_path="project_name")
        if len(name) > MAX_PROJECT_NAME_LENGTH:
            raise ConfigurationError(
                f"cannot exceed {MAX_PROJECT_NAME_LENGTH} characters",
                field_path="project_name",
            )
        if not _PROJECT_NAME_PATTERN.match(name):
            logger.warning(
                "Project name %r should contain only lowercase letters, numbers, hyphens and underscores", name
            )
        return name
