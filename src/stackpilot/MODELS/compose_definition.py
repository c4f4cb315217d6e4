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
Models for a parsed compose file, before it is merged with the project configuration.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel

from .service_spec import VolumeMount


class RawHealthProbe(BaseModel):
    """
    The ``healthcheck`` block of a compose service. Durations in seconds.
    """
    test: List[str] = []
    interval: Optional[float] = None
    timeout: Optional[float] = None
    retries: Optional[int] = None
    start_period: Optional[float] = None
    disabled: bool = False

    @property
    def active(self) -> bool:
        if self.disabled:
            return False
        return not (self.test and self.test[0] == "NONE")


class RawServiceDefinition(BaseModel):
    """
    A single service exactly as declared in the compose file.
    """
    name: str
    declaration_index: int = 0
    image: Optional[str] = None
    build_context: Optional[str] = None

    command: List[str] = []
    environment: Dict[str, str] = {}
    ports: Dict[int, Optional[int]] = {}  # {container: host}
    volumes: List[VolumeMount] = []

    depends_on: List[str] = []
    restart: Optional[str] = None
    healthcheck: Optional[RawHealthProbe] = None
    replicas: Optional[int] = None


class ComposeDefinition(BaseModel):
    """
    A parsed compose file. ``services`` keeps declaration order.
    """
    name: Optional[str] = None
    path: Optional[str] = None
    services: List[RawServiceDefinition] = []
    networks: List[str] = []
    volumes: List[str] = []

    def service_names(self) -> List[str]:
        return [svc.name for svc in self.services]
