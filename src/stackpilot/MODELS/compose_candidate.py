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
Models for compose files found while scanning a project tree.
"""
from enum import Enum
from pydantic import BaseModel, ConfigDict


class EnvironmentVariant(str, Enum):
    """
    Deployment environment a compose file targets, inferred from its name.
    """
    NONE = "none"
    DEV = "dev"
    PROD = "prod"
    TEST = "test"
    STAGING = "staging"


class ComposeFileCandidate(BaseModel):
    """
    A discovered compose file. Immutable; a new scan produces new candidates.
    """
    model_config = ConfigDict(frozen=True)

    path: str
    depth: int
    size: int
    modified: float
    variant: EnvironmentVariant = EnvironmentVariant.NONE
    is_main: bool = False

    def rank_key(self):
        """
        Sort key, ascending: main files, shallower, larger, newer, then path.
        """
        return (not self.is_main, self.depth, -self.size, -self.modified, self.path)
