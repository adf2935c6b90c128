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
Parser for stack registry files.

The registry is a compose-like YAML document: a ``services`` mapping, optional
top-level ``networks``/``volumes`` and an ``x-lakestack`` header carrying the
shared network name, shared credentials and default timeouts.
"""
import os
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import ConfigurationError
from ..MODELS.stack_config import StackConfig
from ..MODELS.service_spec import (
    ActionKind,
    Dependency,
    DependencyCondition,
    HealthCheck,
    LauncherKind,
    ProbeProtocol,
    ProvisioningAction,
    RestartPolicy,
    ServiceSpec,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..RUNNERS.dependency_resolver import DependencyResolver

HEADER_KEY = "x-lakestack"

_CONDITIONS = {
    "provisioned": DependencyCondition.PROVISIONED,
    "service_completed_successfully": DependencyCondition.PROVISIONED,
    "healthy": DependencyCondition.HEALTHY,
    "service_healthy": DependencyCondition.HEALTHY,
    "service_started": DependencyCondition.HEALTHY,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Converts a compose duration ("1m30s", "500ms") or a number of seconds to seconds.
    """
    if value is None or isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(num + unit for num, unit in parts) != text:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    return sum(float(num) * _DURATION_UNITS[unit] for num, unit in parts)


class RegistryParser:
    """
    Parser for lakestack registry files.
    """
    def __init__(self,
                 context: Optional[Mapping[str, str]] = None,
                 env_file: Optional[str] = None,
                 overrides: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with the interpolation context.

        :param context: Base variables; defaults to the process environment.
        :param env_file: Optional .env file layered over the base context.
        :param overrides: Explicit values that win over everything else.
        """
        self.context: Dict[str, str] = dict(os.environ if context is None else context)
        if env_file:
            if not os.path.exists(env_file):
                raise ConfigurationError(f"Env file {env_file} not found")
            self.context.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        self.overrides: Dict[str, str] = dict(overrides or {})
        self.context.update(self.overrides)

    def parse(self, registry_path: str) -> StackConfig:
        """
        Parses a registry file from a path.

        :param registry_path: Path to the registry file.
        :return: Parsed stack configuration.
        """
        if not os.path.exists(registry_path):
            raise ConfigurationError(f"Registry file {registry_path} not found")
        with open(registry_path, 'r') as f:
            content = f.read()
        project_dir = os.path.dirname(os.path.abspath(registry_path))
        return self.parse_from_string(content, project_dir=project_dir)

    def parse_from_string(self, content: str, project_dir: str = ".") -> StackConfig:
        """
        Parses a registry from a YAML string.

        :param content: YAML content of the registry.
        :param project_dir: Directory relative paths are resolved against.
        :return: Parsed stack configuration.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Registry is not valid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Registry must be a mapping at the top level")

        header = data.get(HEADER_KEY) or {}
        if not isinstance(header, dict):
            raise ConfigurationError(f"'{HEADER_KEY}' must be a mapping")

        raw_credentials = header.get('credentials') or {}
        if not isinstance(raw_credentials, dict):
            raise ConfigurationError(f"'{HEADER_KEY}.credentials' must be a mapping")
        # Credentials are resolved first so services can reference them as ${KEY}
        credentials = EnvironmentInterpolator.interpolate_mapping(raw_credentials, self.context)
        context = {**self.context, **credentials, **self.overrides}

        header = self._interpolate(header, context)
        services_data = self._interpolate(data.get('services') or {}, context)
        if not isinstance(services_data, dict):
            raise ConfigurationError("'services' must be a mapping")

        network = header.get('network')
        if not network and isinstance(data.get('networks'), dict) and data['networks']:
            network = next(iter(data['networks']))

        compose_file = header.get('compose_file')
        if compose_file and not os.path.isabs(compose_file):
            compose_file = os.path.join(project_dir, compose_file)

        try:
            services = {
                name: self._parse_service(name, spec or {}, compose_file)
                for name, spec in services_data.items()
            }
            return StackConfig(
                services=services,
                network=network,
                volumes=list(data.get('volumes') or {}),
                credentials=credentials,
                project_dir=project_dir,
                compose_file=compose_file,
                action_timeout=parse_duration(header.get('action_timeout', 60)),
                start_timeout=parse_duration(header.get('start_timeout', 120)),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid registry: {e}") from e

    def _interpolate(self, node: Any, context: Mapping[str, str]) -> Any:
        if isinstance(node, str):
            return EnvironmentInterpolator.interpolate(node, context)
        if isinstance(node, dict):
            return {key: self._interpolate(val, context) for key, val in node.items()}
        if isinstance(node, list):
            return [self._interpolate(val, context) for val in node]
        return node

    def _parse_service(self, name: str, spec: Dict[str, Any], compose_file: Optional[str]) -> ServiceSpec:
        """
        Parses a single service entry.

        :param name: The name of the service.
        :param spec: The raw service mapping.
        :param compose_file: Compose file used by the compose launcher, if any.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Service '{name}' must be a mapping")

        command = self._to_argv(spec.get('command'))
        entrypoint = self._to_argv(spec.get('entrypoint'))

        launcher = spec.get('launcher')
        if launcher is None:
            if (command or entrypoint) and not spec.get('image'):
                launcher = LauncherKind.PROCESS
            elif compose_file:
                launcher = LauncherKind.COMPOSE
            else:
                launcher = LauncherKind.EXTERNAL

        # Environment
        environment = {}
        env_spec = spec.get('environment') or {}
        if isinstance(env_spec, list):
            for e in env_spec:
                if isinstance(e, str) and '=' in e:
                    k, v = e.split('=', 1)
                    environment[k] = v
        elif isinstance(env_spec, dict):
            environment = {k: "" if v is None else str(v) for k, v in env_spec.items()}

        health = spec.get('healthcheck')

        return ServiceSpec(
            name=name,
            launcher=launcher,
            image=spec.get('image'),
            command=command,
            entrypoint=entrypoint,
            working_dir=spec.get('working_dir'),
            environment=environment,
            depends_on=self._parse_depends_on(name, spec.get('depends_on')),
            health_check=self._parse_health_check(health) if health else None,
            provisioning=[self._parse_action(name, a) for a in self._as_list(name, 'provision', spec.get('provision'))],
            restart_policy=self._parse_restart(spec.get('restart', 'no')),
        )

    def _parse_depends_on(self, name: str, value: Any) -> List[Dependency]:
        if not value:
            return []
        if isinstance(value, list):
            return [Dependency(name=str(dep)) for dep in value]
        if isinstance(value, dict):
            deps = []
            for dep, opts in value.items():
                if not isinstance(opts or {}, dict):
                    raise ConfigurationError(f"Service '{name}' has an invalid depends_on entry for '{dep}'")
                condition = (opts or {}).get('condition', 'provisioned')
                if condition not in _CONDITIONS:
                    raise ConfigurationError(
                        f"Service '{name}' has unsupported condition '{condition}' for '{dep}'"
                    )
                deps.append(Dependency(name=dep, condition=_CONDITIONS[condition]))
            return deps
        raise ConfigurationError(f"Service '{name}' has an invalid depends_on entry")

    def _parse_health_check(self, spec: Dict[str, Any]) -> HealthCheck:
        if not isinstance(spec, dict):
            raise ConfigurationError("healthcheck must be a mapping")
        values = dict(spec)
        if values.pop('disable', False):
            return HealthCheck(protocol=ProbeProtocol.NONE)

        test = values.get('test')
        if isinstance(test, str):
            # compose treats a plain string as a shell command
            values['test'] = ["CMD-SHELL", test]
        if 'protocol' not in values:
            values['protocol'] = ProbeProtocol.COMMAND if test else ProbeProtocol.TCP
        if 'retries' in values:
            values['max_attempts'] = values.pop('retries')
        for key in ('interval', 'timeout', 'start_period', 'max_elapsed'):
            if key in values:
                values[key] = parse_duration(values[key])
        return HealthCheck(**values)

    def _parse_action(self, service: str, spec: Any) -> ProvisioningAction:
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Service '{service}' has a provisioning entry that is not a mapping")
        values = dict(spec)
        if 'kind' not in values:
            # shorthand: {bucket: warehouse, endpoint_url: ...}
            kinds = [kind for kind in ActionKind if kind.value in values]
            if len(kinds) != 1:
                raise ConfigurationError(f"Service '{service}' has a provisioning entry without a kind")
            values['kind'] = kinds[0]
            values['name'] = values.pop(kinds[0].value)
        for key in ('check', 'apply'):
            if key in values:
                values[key] = self._to_argv(values[key])
        if 'timeout' in values:
            values['timeout'] = parse_duration(values['timeout'])
        return ProvisioningAction(**values)

    def _parse_restart(self, value: Any) -> RestartPolicy:
        if isinstance(value, dict):
            values = dict(value)
            if 'delay' in values:
                values['delay'] = parse_duration(values['delay'])
            return RestartPolicy(**values)
        if value is False:
            value = 'no'
        condition, _, retries = str(value).partition(':')
        if retries and not retries.isdigit():
            raise ConfigurationError(f"Invalid restart policy: {value!r}")
        return RestartPolicy(condition=condition, max_retries=int(retries) if retries else 0)

    @staticmethod
    def _as_list(service: str, key: str, value: Any) -> List[Any]:
        if not value:
            return []
        if not isinstance(value, list):
            raise ConfigurationError(f"Service '{service}': '{key}' must be a list")
        return value

    def _to_argv(self, val: Any) -> List[str]:
        """
        Helper to turn a compose command (string or list) into an argv list.
        """
        if val is None:
            return []
        if isinstance(val, str):
            try:
                return shlex.split(val)
            except ValueError as e:
                raise ConfigurationError(f"Cannot split command {val!r}: {e}") from e
        if not isinstance(val, list):
            raise ConfigurationError(f"Expected a command string or list, got {val!r}")
        return [str(v) for v in val]


def load_registry(registry_path: str,
                  env_file: Optional[str] = None,
                  overrides: Optional[Mapping[str, str]] = None) -> StackConfig:
    """
    Parses a registry file and validates its dependency graph.
    Raises ConfigurationError (or CycleError / UnknownDependencyError) before
    anything is started.
    """
    config = RegistryParser(env_file=env_file, overrides=overrides).parse(registry_path)
    DependencyResolver().validate(config)
    return config
