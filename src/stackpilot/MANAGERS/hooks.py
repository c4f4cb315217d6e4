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
Lifecycle hooks invoked by the orchestrator at fixed extension points.
"""
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import HookError

logger = logging.getLogger(__name__)


class HookPoint(str, Enum):
    BEFORE_SERVICE_START = "before_service_start"
    AFTER_SERVICE_START = "after_service_start"
    BEFORE_SERVICE_STOP = "before_service_stop"
    AFTER_SERVICE_STOP = "after_service_stop"
    ON_ERROR = "on_error"


# Handlers receive the service name and keyword context (e.g. ``error=``, ``replica=``).
HookHandler = Callable[..., Any]


class HookRegistry:
    """
    Ordered handlers per hook point, run synchronously in registration order.

    A failing handler is logged and reported back to the caller. When
    ``strict`` is set the first failure is raised as a HookError instead.
    """
    def __init__(self, strict: bool = False):
        self.strict = strict
        self._handlers: Dict[HookPoint, List[HookHandler]] = {point: [] for point in HookPoint}
        self._lock = threading.Lock()

    def register(self, point: HookPoint, handler: HookHandler) -> None:
        point = HookPoint(point)
        with self._lock:
            self._handlers[point] = self._handlers[point] + [handler]

    def unregister(self, point: HookPoint, handler: HookHandler) -> None:
        point = HookPoint(point)
        with self._lock:
            self._handlers[point] = [h for h in self._handlers[point] if h is not handler]

    def handlers(self, point: HookPoint) -> List[HookHandler]:
        return list(self._handlers[HookPoint(point)])

    def invoke(self, point: HookPoint, service: str, strict: Optional[bool] = None, **context) -> List[str]:
        """
        Runs every handler registered for ``point``.

        :return: One message per failed handler.
        :raises HookError: On the first failure when hooks are strict.
        """
        point = HookPoint(point)
        strict = self.strict if strict is None else strict
        failures = []
        for handler in self._handlers[point]:
            name = getattr(handler, "__name__", repr(handler))
            try:
                handler(service, **context)
            except Exception as e:
                message = f"{point.value} hook {name} failed for {service}: {e}"
                if strict:
                    raise HookError(message, {"hook": point.value, "service": service}) from e
                logger.warning(message)
                failures.append(message)
        return failures
