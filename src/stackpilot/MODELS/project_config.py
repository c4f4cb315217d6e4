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
Models for the overall project configuration, both resolved and persisted.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .service_spec import (
    HealthCheckPolicy,
    RestartPolicyCondition,
    ScaleBounds,
    ServiceSpec,
    VolumeMount,
)

SUPPORTED_CONFIG_VERSIONS = ("1.0",)
DEFAULT_RUNTIME_COMMAND = "docker compose"


class OrchestrationPolicy(BaseModel):
    """
    Knobs for a single orchestration run.

    ``fail_fast`` decides what happens when a stage member fails or never
    becomes healthy: halt further stages (True) or record the laggard and
    keep going (False).
    """
    model_config = ConfigDict(frozen=True)

    fail_fast: bool = True
    max_concurrency: int = Field(default=4, ge=1)
    start_retries: int = Field(default=2, ge=0)
    backoff_initial: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)
    command_timeout: float = Field(default=120.0, gt=0)
    stop_timeout: Optional[int] = Field(default=None, ge=0)
    health_poll_interval: float = Field(default=0.5, gt=0)
    strict_hooks: bool = False


class GlobalDefaults(BaseModel):
    """
    Project-wide defaults applied to every service and runtime call.
    """
    model_config = ConfigDict(frozen=True)

    restart_policy: RestartPolicyCondition = RestartPolicyCondition.UNLESS_STOPPED
    runtime_command: str = DEFAULT_RUNTIME_COMMAND


class ProjectConfig(BaseModel):
    """
    Complete, validated configuration for a project.
    Produced by the ConfigResolver and read-only afterwards.
    """
    model_config = ConfigDict(frozen=True)

    project_name: str
    services: Dict[str, ServiceSpec]
    defaults: GlobalDefaults = Field(default_factory=GlobalDefaults)
    scaling: ScaleBounds = Field(default_factory=ScaleBounds)
    health_check: HealthCheckPolicy = Field(default_factory=HealthCheckPolicy)
    orchestration: OrchestrationPolicy = Field(default_factory=OrchestrationPolicy)
    config_version: str = SUPPORTED_CONFIG_VERSIONS[-1]
    compose_file: Optional[str] = None

    def service(self, name: str) -> ServiceSpec:
        return self.services[name]


# Persisted shapes: every field optional so that only what the user wrote
# overrides the values derived from the compose file.

class PersistedHealthCheck(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: Optional[bool] = None
    interval: Optional[float] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    retries: Optional[int] = Field(default=None, ge=0)
    start_period: Optional[float] = Field(default=None, ge=0)


class PersistedScale(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min: Optional[int] = None
    max: Optional[int] = None
    default: Optional[int] = None


class PersistedServiceSettings(BaseModel):
    """
    Per-service overrides as stored in the project configuration file.
    ``priority`` is left untyped so that malformed values are reported with
    their field path by the resolver instead of being coerced.
    """
    model_config = ConfigDict(extra="ignore")

    priority: Any = None
    depends_on: Optional[List[str]] = None
    restart_policy: Optional[RestartPolicyCondition] = None
    health_check: Optional[PersistedHealthCheck] = None
    scale: Optional[PersistedScale] = None
    ports: Optional[Dict[int, Optional[int]]] = None
    environment: Optional[Dict[str, str]] = None
    volumes: Optional[List[VolumeMount]] = None


class PersistedProjectConfig(BaseModel):
    """
    The read/write project configuration record.
    Migration between versions is not handled here; unsupported versions are rejected.
    """
    model_config = ConfigDict(extra="ignore")

    config_version: str = SUPPORTED_CONFIG_VERSIONS[-1]
    project_name: Optional[str] = None
    runtime_command: Optional[str] = None
    restart_policy: Optional[RestartPolicyCondition] = None
    scaling: Optional[PersistedScale] = None
    health_check: Optional[PersistedHealthCheck] = None
    orchestration: Optional[OrchestrationPolicy] = None
    services: Dict[str, PersistedServiceSettings] = {}

    @field_validator("config_version", mode="before")
    @classmethod
    def _version_as_text(cls, value):
        # YAML reads an unquoted 1.0 as a float
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value
