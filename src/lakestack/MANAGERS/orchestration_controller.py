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
Orchestration of a whole stack: dependency-gated start, readiness, provisioning
and the per-service state machine.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import InvalidTransitionError, StartFailure
from ..MODELS.service_spec import Dependency, DependencyCondition, ServiceSpec
from ..MODELS.service_state import (
    ALLOWED_TRANSITIONS,
    ReportStatus,
    RunReport,
    ServiceReport,
    ServiceState,
)
from ..MODELS.stack_config import StackConfig
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.service_launcher import ServiceHandle, ServiceLauncher, StackLauncher
from .readiness_prober import ReadinessProber
from .resource_provisioner import ActionCheck, ResourceProvisioner

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransitionObserver = Callable[[str, ServiceState, ServiceState], None]

_MAX_RESTART_DELAY = 300.0

_REPORT_STATUS = {
    ServiceState.READY: ReportStatus.READY,
    ServiceState.FAILED: ReportStatus.FAILED,
    ServiceState.PROVISION_FAILED: ReportStatus.PROVISION_FAILED,
}


class _Stopped(Exception):
    """Internal: a stop was requested while waiting on a suspended step."""


@dataclass
class _Entry:
    spec: ServiceSpec
    done: asyncio.Event
    state: ServiceState = ServiceState.PENDING
    reason: str = ""
    failed_step: Optional[str] = None
    attempts: int = 0
    handle: Optional[ServiceHandle] = None


@dataclass
class LiveStatus:
    """Current, observed condition of a service (no state is changed to get it)."""

    name: str
    healthy: Optional[bool]  # None: no health check configured
    detail: str = ""
    provisioning: List[ActionCheck] = field(default_factory=list)


class OrchestrationController:
    """
    Brings a stack up in dependency order. Each service runs in its own task;
    a service starts only once all of its dependencies satisfy their edge
    condition, so independent branches start concurrently and a failure only
    holds back the services downstream of it.
    """

    def __init__(self,
                 config: StackConfig,
                 launcher: Optional[ServiceLauncher] = None,
                 prober: Optional[ReadinessProber] = None,
                 provisioner: Optional[ResourceProvisioner] = None,
                 on_transition: Optional[TransitionObserver] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        Initializes the controller.

        :param config: The loaded registry.
        :param launcher: Starts services by reference; defaults to dispatching on each service's launcher kind.
        :param prober: Readiness prober.
        :param provisioner: Resource provisioner.
        :param on_transition: Called with (service, old state, new state) on every transition.
        :param sleep: Coroutine used for restart backoff.
        """
        self.config = config
        self.resolver = DependencyResolver()
        self.launcher = launcher or StackLauncher(config)
        self.prober = prober or ReadinessProber()
        self.provisioner = provisioner or ResourceProvisioner(
            default_timeout=config.action_timeout, project_dir=config.project_dir
        )
        self.on_transition = on_transition
        self._sleep = sleep
        self._entries: Dict[str, _Entry] = {}
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None

    # State table

    def state_of(self, name: str) -> ServiceState:
        return self._entries[name].state

    @property
    def states(self) -> Dict[str, ServiceState]:
        return {name: entry.state for name, entry in self._entries.items()}

    def _transition(self, name: str, target: ServiceState) -> None:
        """
        The only way a service's state changes. Each entry is written only by
        its own service's task.
        """
        entry = self._entries[name]
        if target not in ALLOWED_TRANSITIONS[entry.state]:
            raise InvalidTransitionError(name, entry.state, target)
        previous, entry.state = entry.state, target
        logger.debug("[%s] %s -> %s", name, previous.value, target.value)
        if self.on_transition:
            self.on_transition(name, previous, target)
        if target.is_terminal:
            entry.done.set()

    def _fail(self, name: str, target: ServiceState, reason: str, step: Optional[str]) -> None:
        entry = self._entries[name]
        entry.reason = reason
        entry.failed_step = step
        logger.error("[%s] %s: %s", name, target.value, reason)
        if target == ServiceState.FAILED:
            held_back = self.resolver.dependents_of(self.config, name)
            if held_back:
                logger.warning("[%s] %d dependent service(s) will not start: %s",
                               name, len(held_back), ", ".join(sorted(held_back)))
        self._transition(name, target)

    def _satisfied(self, dep: Dependency) -> bool:
        state = self._entries[dep.name].state
        if dep.condition == DependencyCondition.HEALTHY:
            # ProvisionFailed is only reachable after the health check passed
            return state in (ServiceState.READY, ServiceState.PROVISION_FAILED)
        return state == ServiceState.READY

    # Stop handling

    def request_stop(self) -> None:
        """
        Asks a running bring-up to stop: services not started yet are left
        alone, probes are abandoned and provisioning stops at the next action
        boundary.
        """
        logger.warning("Stop requested")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def _until_stopped(self, coro: Awaitable[T]) -> T:
        """Awaits ``coro`` unless a stop is requested first, in which case it is cancelled."""
        work = asyncio.ensure_future(coro)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise _Stopped()

    # Bring-up

    async def run(self) -> RunReport:
        """
        Starts all services in dependency order and waits until every service
        reached a terminal state or can never start.

        :raises CycleError: If the registry has a dependency cycle (nothing is started).
        :raises UnknownDependencyError: If a dependency is not in the registry (nothing is started).
        :return: Per-service report and aggregate outcome.
        """
        layers = self.resolver.resolve_layers(self.config)
        order = [name for layer in layers for name in sorted(layer)]
        logger.info("Bring-up layers: %s", " | ".join(", ".join(sorted(layer)) for layer in layers))

        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()
        self._entries = {
            name: _Entry(spec=self.config.services[name], done=asyncio.Event()) for name in order
        }

        tasks = [asyncio.create_task(self._bring_up(name), name=f"lakestack:{name}") for name in order]
        await asyncio.gather(*tasks)
        return self.report()

    async def _bring_up(self, name: str) -> None:
        entry = self._entries[name]
        spec = entry.spec
        try:
            for dep in spec.depends_on:
                await self._entries[dep.name].done.wait()
            if not all(self._satisfied(dep) for dep in spec.depends_on):
                return
            if self._stop_event.is_set():
                return

            self._transition(name, ServiceState.STARTING)
            await self._step(name)
        finally:
            # also releases dependents of services that never started
            entry.done.set()

    async def _step(self, name: str) -> None:
        entry = self._entries[name]
        spec = entry.spec
        try:
            start = asyncio.ensure_future(self._start(spec))
            try:
                entry.handle = await self._until_stopped(asyncio.shield(start))
            except _Stopped:
                # a launch already in flight finishes so that down() can reach it
                try:
                    entry.handle = await start
                except (StartFailure, _Stopped):
                    pass
                raise
            except StartFailure as e:
                self._fail(name, ServiceState.FAILED, f"StartFailure: {e.reason}", "start")
                return
            self._transition(name, ServiceState.AWAITING_READY)

            probe = await self._until_stopped(self.prober.wait_until_ready(name, spec.health_check))
            entry.attempts = probe.attempts
            if not probe.ready:
                self._fail(name, ServiceState.FAILED, f"TimedOut: {probe.last_error}",
                           f"probe {spec.health_check.target}")
                return

            if spec.provisioning:
                result = await self.provisioner.provision(name, spec.provisioning, self._stop_event)
                if not result.ok:
                    self._fail(name, ServiceState.PROVISION_FAILED, result.reason, result.failed_action)
                    return
            logger.info("[%s] ready", name)
            self._transition(name, ServiceState.READY)
        except _Stopped:
            self._fail(name, ServiceState.FAILED, "stop requested", None)
        except InvalidTransitionError:
            raise
        except Exception as e:
            # contained to this service; its dependents end up Blocked
            logger.exception("[%s] unexpected error during bring-up", name)
            self._fail(name, ServiceState.FAILED, f"{type(e).__name__}: {e}", None)

    async def _start(self, spec: ServiceSpec) -> ServiceHandle:
        """
        Launches a service, retrying start failures as its restart policy allows,
        with exponential backoff.
        """
        policy = spec.restart_policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.retries_on_start_failure + 1),
            wait=wait_exponential(multiplier=policy.delay, min=policy.delay, max=_MAX_RESTART_DELAY),
            retry=retry_if_exception(
                lambda e: isinstance(e, StartFailure) and not self._stop_event.is_set()
            ),
            before_sleep=lambda state: logger.warning(
                "[%s] start attempt %d failed, retrying: %s",
                spec.name, state.attempt_number, state.outcome.exception(),
            ),
            sleep=self._backoff,
            reraise=True,
        )
        return await retrying(self.launcher.start, spec)

    async def _backoff(self, seconds: float) -> None:
        await self._until_stopped(self._sleep(seconds))

    # Reporting

    def _root_failures(self, name: str) -> List[str]:
        """Failed ancestors explaining why ``name`` never started."""
        roots: List[str] = []
        for dep in self._entries[name].spec.depends_on:
            if self._satisfied(dep):
                continue
            if self._entries[dep.name].state.is_terminal:
                roots.append(dep.name)
            else:
                roots.extend(self._root_failures(dep.name))
        return sorted(set(roots))

    def report(self) -> RunReport:
        """
        Builds the run report from the state table. BLOCKED and CANCELLED are
        derived here and never stored.
        """
        report = RunReport()
        for name, entry in self._entries.items():
            if entry.state in _REPORT_STATUS:
                report.services[name] = ServiceReport(
                    name=name,
                    status=_REPORT_STATUS[entry.state],
                    reason=entry.reason,
                    failed_step=entry.failed_step,
                    attempts=entry.attempts,
                )
                continue
            roots = self._root_failures(name)
            if roots:
                report.services[name] = ServiceReport(
                    name=name,
                    status=ReportStatus.BLOCKED,
                    reason=f"blocked by {', '.join(roots)}",
                    blocked_by=roots,
                )
            else:
                report.services[name] = ServiceReport(
                    name=name, status=ReportStatus.CANCELLED, reason="stop requested before start"
                )
        return report

    # Teardown and inspection

    async def down(self) -> None:
        """
        Stops every service this controller launched, dependents first.
        """
        for name in self.resolver.shutdown_order(self.config):
            entry = self._entries.get(name)
            if entry is None or entry.handle is None:
                continue
            try:
                await self.launcher.stop(entry.handle)
            except StartFailure as e:
                logger.error("[%s] failed to stop: %s", name, e.reason)
            entry.handle = None

    async def status(self) -> Dict[str, LiveStatus]:
        """
        Reports the live condition of every service: one probe attempt and the
        provisioning existence checks. Starts and changes nothing.
        """
        order = self.resolver.resolve_order(self.config)
        results = await asyncio.gather(*(self._inspect(self.config.services[name]) for name in order))
        return dict(zip(order, results))

    async def _inspect(self, spec: ServiceSpec) -> LiveStatus:
        if spec.health_check is None:
            status = LiveStatus(spec.name, healthy=None, detail="no health check")
        else:
            check = await self.prober.probe_once(spec.health_check)
            status = LiveStatus(spec.name, healthy=check.success, detail=check.detail)
        if spec.provisioning and status.healthy is not False:
            status.provisioning = await self.provisioner.inspect(spec.provisioning)
        return status
