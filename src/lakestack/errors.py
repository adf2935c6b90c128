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
Exception hierarchy for registry loading and service bring-up.
"""
from typing import Iterable, List


class LakestackError(Exception):
    """Base class for every error raised by lakestack."""


class ConfigurationError(LakestackError):
    """
    The registry could not be loaded or is inconsistent.
    Raised before any service is started.
    """


class CycleError(ConfigurationError):
    """
    The dependency graph contains a cycle.

    :param cycle: Service names along the cycle, first name repeated at the end.
    """
    def __init__(self, cycle: Iterable[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")

    @property
    def services(self) -> List[str]:
        """Distinct services participating in the cycle."""
        return sorted(set(self.cycle))


class UnknownDependencyError(ConfigurationError):
    """
    A service depends on a name that is not in the registry.
    """
    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(f"Service '{service}' depends on unknown service '{dependency}'")


class InvalidTransitionError(LakestackError):
    """A service state change that the state machine does not allow."""
    def __init__(self, service: str, current, target):
        self.service = service
        self.current = current
        self.target = target
        super().__init__(f"[{service}] illegal transition {current.value} -> {target.value}")


class StartFailure(LakestackError):
    """The launcher could not start a service."""
    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"[{service}] failed to start: {reason}")


class ProvisionError(LakestackError):
    """A provisioning action could not check or apply its resource."""
