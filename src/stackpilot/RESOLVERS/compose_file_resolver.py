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
Discovery of compose files in a project tree.
"""
import logging
import os
import re
from typing import List, Optional, Sequence

from ..errors import DiscoveryError
from ..MODELS.compose_candidate import ComposeFileCandidate, EnvironmentVariant

logger = logging.getLogger(__name__)

MAIN_FILE_NAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

# docker-compose.yml, compose.prod.yaml, docker-compose-dev.yml, ...
COMPOSE_FILE_PATTERN = re.compile(r"^(docker-)?compose([._-][\w.-]+)?\.ya?ml$", re.IGNORECASE)

SKIP_DIRECTORIES = frozenset({
    "node_modules", "dist", "build", "target", "out", "tmp", "temp",
    "coverage", "__pycache__", "venv", "env", "vendor", "logs",
})

_VARIANT_TOKENS = {
    "prod": EnvironmentVariant.PROD,
    "production": EnvironmentVariant.PROD,
    "dev": EnvironmentVariant.DEV,
    "development": EnvironmentVariant.DEV,
    "local": EnvironmentVariant.DEV,
    "test": EnvironmentVariant.TEST,
    "testing": EnvironmentVariant.TEST,
    "ci": EnvironmentVariant.TEST,
    "staging": EnvironmentVariant.STAGING,
    "stage": EnvironmentVariant.STAGING,
}


def detect_variant(filename: str) -> EnvironmentVariant:
    """
    Infers the environment a compose file targets from the tokens of its name.
    """
    stem = filename.rsplit(".", 1)[0].lower()
    for token in re.split(r"[._-]+", stem):
        variant = _VARIANT_TOKENS.get(token)
        if variant is not None:
            return variant
    return EnvironmentVariant.NONE


def is_main_file(filename: str) -> bool:
    return filename.lower() in MAIN_FILE_NAMES


class ComposeFileResolver:
    """
    Scans a project tree for compose files and ranks them.
    """
    def __init__(self, max_depth: int = 6, include_empty: bool = False):
        """
        :param max_depth: Deepest directory level scanned; the root is depth 0.
        :param include_empty: Keep zero-byte compose files in the result.
        """
        self.max_depth = max_depth
        self.include_empty = include_empty

    def scan(self, root: str) -> List[ComposeFileCandidate]:
        """
        Finds compose files under ``root`` and returns them best first.

        An empty list means no project was detected.

        :raises DiscoveryError: If ``root`` is missing, not a directory or unreadable.
        """
        root = os.path.abspath(root)
        if not os.path.exists(root):
            raise DiscoveryError(f"Project root does not exist: {root}", {"root": root})
        if not os.path.isdir(root):
            raise DiscoveryError(f"Project root is not a directory: {root}", {"root": root})
        if not os.access(root, os.R_OK | os.X_OK):
            raise DiscoveryError(f"Project root is not readable: {root}", {"root": root})

        candidates: List[ComposeFileCandidate] = []
        self._scan_dir(root, 0, candidates)
        candidates.sort(key=ComposeFileCandidate.rank_key)

        logger.debug("Found %d compose file(s) under %s", len(candidates), root)
        return candidates

    def _scan_dir(self, directory: str, depth: int, out: List[ComposeFileCandidate]) -> None:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            if depth == 0:
                raise DiscoveryError(f"Cannot read project root: {e}", {"root": directory}) from e
            logger.debug("Skipping unreadable directory %s: %s", directory, e)
            return

        subdirs = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if not self._should_skip(entry.name):
                        subdirs.append(entry.path)
                    continue
                if not entry.is_file() or not COMPOSE_FILE_PATTERN.match(entry.name):
                    continue
                stat = entry.stat()
            except OSError as e:
                logger.debug("Skipping %s: %s", entry.path, e)
                continue

            if stat.st_size == 0 and not self.include_empty:
                continue
            out.append(ComposeFileCandidate(
                path=os.path.abspath(entry.path),
                depth=depth,
                size=stat.st_size,
                modified=stat.st_mtime,
                variant=detect_variant(entry.name),
                is_main=is_main_file(entry.name),
            ))

        if depth < self.max_depth:
            for subdir in subdirs:
                self._scan_dir(subdir, depth + 1, out)

    @staticmethod
    def _should_skip(name: str) -> bool:
        return name in SKIP_DIRECTORIES or name.startswith(".")

    @staticmethod
    def select(candidates: Sequence[ComposeFileCandidate],
               variant: Optional[EnvironmentVariant] = None) -> Optional[ComposeFileCandidate]:
        """
        Picks the best candidate, optionally restricted to one environment variant.
        """
        for candidate in candidates:
            if variant is None or candidate.variant == variant:
                return candidate
        return None
