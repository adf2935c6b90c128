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
Unit tests for the orchestration controller, using an in-memory launcher,
scripted health checks and in-memory provisioning.
"""
import asyncio
import logging

import pytest

from lakestack.errors import CycleError, InvalidTransitionError, ProvisionError, StartFailure
from lakestack.MANAGERS.orchestration_controller import OrchestrationController
from lakestack.MANAGERS.readiness_prober import CheckResult, ReadinessProber
from lakestack.MANAGERS.resource_provisioner import ActionHandler, ResourceProvisioner
from lakestack.MODELS.service_spec import (
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
from lakestack.MODELS.service_state import ReportStatus, RunOutcome, ServiceState
from lakestack.MODELS.stack_config import StackConfig
from lakestack.RUNNERS.service_launcher import ServiceHandle, ServiceLauncher


async def no_sleep(_seconds):
    return None


class FakeLauncher(ServiceLauncher):
    """Records starts and stops; ``failures`` maps a service to how many starts fail."""

    def __init__(self, failures=None, start_delay=0):
        self.started = []
        self.stopped = []
        self.failures = dict(failures or {})
        self.start_delay = start_delay

    async def start(self, spec):
        self.started.append(spec.name)
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.failures.get(spec.name, 0) > 0:
            self.failures[spec.name] -= 1
            raise StartFailure(spec.name, "container exited")
        return ServiceHandle(name=spec.name, kind=LauncherKind.EXTERNAL)

    async def stop(self, handle):
        self.stopped.append(handle.name)


class MemoryHandler(ActionHandler):
    def __init__(self, fail_on=()):
        self.resources = set()
        self.created = []
        self.fail_on = set(fail_on)

    async def exists(self, action):
        return action.name in self.resources

    async def apply(self, action):
        if action.name in self.fail_on:
            raise ProvisionError(f"cannot create {action.name}")
        self.resources.add(action.name)
        self.created.append(action.name)


PORTS = {}


def service(name, deps=(), healthy_deps=(), provision=(), restart=None):
    """A service probed over a fake tcp port and provisioned in memory."""
    port = PORTS.setdefault(name, 10000 + len(PORTS))
    depends_on = [Dependency(name=d) for d in deps]
    depends_on += [Dependency(name=d, condition=DependencyCondition.HEALTHY) for d in healthy_deps]
    return ServiceSpec(
        name=name,
        depends_on=depends_on,
        health_check=HealthCheck(protocol=ProbeProtocol.TCP, port=port, interval=0, max_attempts=3),
        provisioning=[ProvisioningAction(kind=ActionKind.BUCKET, name=p) for p in provision],
        restart_policy=restart or RestartPolicy(),
    )


def build(services, down=(), launcher=None, handler=None, transitions=None, check=None, sleep=no_sleep):
    """
    Builds a controller where every service whose name is in ``down`` never
    passes its health check.
    """
    config = StackConfig(services={svc.name: svc for svc in services})
    by_port = {PORTS[svc.name]: svc.name for svc in services}

    async def tcp(hc):
        name = by_port[hc.port]
        if name in down:
            return CheckResult(False, f"connection refused by {name}")
        await asyncio.sleep(0)
        return CheckResult(True)

    prober = ReadinessProber(checks={ProbeProtocol.TCP: check or tcp}, sleep=no_sleep)
    handler = handler or MemoryHandler()
    provisioner = ResourceProvisioner(handlers={kind: handler for kind in ActionKind})
    observer = None
    if transitions is not None:
        observer = lambda name, old, new: transitions.append((name, new))
    return OrchestrationController(
        config,
        launcher=launcher or FakeLauncher(),
        prober=prober,
        provisioner=provisioner,
        on_transition=observer,
        sleep=sleep,
    )


class TestBringUp:
    """Tests for OrchestrationController.run."""

    def test_all_ready(self):
        launcher = FakeLauncher()
        controller = build([
            service("postgres"),
            service("minio", provision=["warehouse"]),
            service("metastore", deps=["postgres", "minio"]),
            service("spark", deps=["metastore"]),
        ], launcher=launcher)
        report = asyncio.run(controller.run())
        assert report.outcome == RunOutcome.ALL_READY
        assert set(controller.states.values()) == {ServiceState.READY}
        started = launcher.started
        assert started.index("metastore") > started.index("postgres")
        assert started.index("metastore") > started.index("minio")
        assert started.index("spark") > started.index("metastore")

    def test_metastore_chain_with_spark_timeout(self):
        controller = build([
            service("postgres"),
            service("metastore", deps=["postgres"]),
            service("spark", deps=["metastore"]),
        ], down={"spark"})
        report = asyncio.run(controller.run())
        assert report.outcome == RunOutcome.PARTIAL_FAILURE
        assert report.status_of("postgres") == ReportStatus.READY
        assert report.status_of("metastore") == ReportStatus.READY
        assert report.status_of("spark") == ReportStatus.FAILED
        assert report.services["spark"].reason.startswith("TimedOut")
        assert "connection refused by spark" in report.services["spark"].reason
        assert report.services["spark"].attempts == 3
        assert [r.name for r in report.failures] == ["spark"]

    def test_failure_blocks_dependents_only(self):
        launcher = FakeLauncher()
        controller = build([
            service("postgres"),
            service("metastore", deps=["postgres"]),
            service("spark", deps=["metastore"]),
            service("zeppelin", deps=["spark"]),
            service("minio"),
            service("code-server", deps=["minio"]),
        ], down={"metastore"}, launcher=launcher)
        report = asyncio.run(controller.run())
        assert report.status_of("metastore") == ReportStatus.FAILED
        for name in ("spark", "zeppelin"):
            assert report.status_of(name) == ReportStatus.BLOCKED
            assert report.services[name].blocked_by == ["metastore"]
            assert name not in launcher.started
        for name in ("postgres", "minio", "code-server"):
            assert report.status_of(name) == ReportStatus.READY
        # blocked services are never stored as a state
        assert controller.state_of("zeppelin") == ServiceState.PENDING

    def test_failure_logs_services_held_back(self, caplog):
        caplog.set_level(logging.WARNING, logger="lakestack.MANAGERS.orchestration_controller")
        controller = build([
            service("metastore"),
            service("spark", deps=["metastore"]),
            service("zeppelin", deps=["spark"]),
        ], down={"metastore"})
        asyncio.run(controller.run())
        assert "[metastore] 2 dependent service(s) will not start: spark, zeppelin" in caplog.text

    def test_independent_services_start_concurrently(self):
        transitions = []
        controller = build([service("minio"), service("postgres")], transitions=transitions)
        asyncio.run(controller.run())
        first_ready = next(i for i, (_, state) in enumerate(transitions) if state == ServiceState.READY)
        starting = [name for name, state in transitions[:first_ready] if state == ServiceState.STARTING]
        assert sorted(starting) == ["minio", "postgres"]

    def test_dependent_starts_after_dependency_ready(self):
        transitions = []
        controller = build([service("postgres"), service("metastore", deps=["postgres"])],
                           transitions=transitions)
        asyncio.run(controller.run())
        assert transitions.index(("metastore", ServiceState.STARTING)) > \
            transitions.index(("postgres", ServiceState.READY))

    def test_state_path(self):
        transitions = []
        controller = build([service("minio")], transitions=transitions)
        asyncio.run(controller.run())
        assert [state for _, state in transitions] == [
            ServiceState.STARTING, ServiceState.AWAITING_READY, ServiceState.READY,
        ]

    def test_start_failure_blocks_dependents(self):
        launcher = FakeLauncher(failures={"postgres": 1})
        controller = build([service("postgres"), service("metastore", deps=["postgres"])], launcher=launcher)
        report = asyncio.run(controller.run())
        assert report.status_of("postgres") == ReportStatus.FAILED
        assert report.services["postgres"].reason == "StartFailure: container exited"
        assert report.services["postgres"].failed_step == "start"
        assert report.status_of("metastore") == ReportStatus.BLOCKED
        assert launcher.started == ["postgres"]

    def test_restart_policy_retries_start(self):
        launcher = FakeLauncher(failures={"postgres": 2})
        policy = RestartPolicy(condition="on-failure", max_retries=3, delay=1)
        controller = build([service("postgres", restart=policy)], launcher=launcher)
        report = asyncio.run(controller.run())
        assert report.outcome == RunOutcome.ALL_READY
        assert launcher.started == ["postgres"] * 3

    def test_restart_policy_exhausted(self):
        launcher = FakeLauncher(failures={"postgres": 5})
        policy = RestartPolicy(condition="always", max_retries=1, delay=0)
        controller = build([service("postgres", restart=policy)], launcher=launcher)
        report = asyncio.run(controller.run())
        assert report.status_of("postgres") == ReportStatus.FAILED
        assert launcher.started == ["postgres"] * 2

    def test_provision_failure_blocks_provisioned_dependents(self):
        handler = MemoryHandler(fail_on={"airflow-logs"})
        controller = build([
            service("minio", provision=["warehouse", "airflow-logs"]),
            service("airflow", deps=["minio"]),
            service("superset", healthy_deps=["minio"]),
        ], handler=handler)
        report = asyncio.run(controller.run())
        minio = report.services["minio"]
        assert minio.status == ReportStatus.PROVISION_FAILED
        assert minio.failed_step == "bucket:airflow-logs"
        assert "cannot create airflow-logs" in minio.reason
        assert report.status_of("airflow") == ReportStatus.BLOCKED
        # only needs minio to be healthy
        assert report.status_of("superset") == ReportStatus.READY
        assert handler.resources == {"warehouse"}

    def test_rerun_converges_without_duplicates(self):
        handler = MemoryHandler(fail_on={"airflow-logs"})
        services = [service("minio", provision=["warehouse", "airflow-logs"])]
        first = asyncio.run(build(services, handler=handler).run())
        assert first.outcome == RunOutcome.PARTIAL_FAILURE
        handler.fail_on.clear()
        second = asyncio.run(build(services, handler=handler).run())
        third = asyncio.run(build(services, handler=handler).run())
        assert second.outcome == third.outcome == RunOutcome.ALL_READY
        assert handler.created == ["warehouse", "airflow-logs"]

    def test_configuration_error_starts_nothing(self):
        launcher = FakeLauncher()
        services = [service("a", deps=["b"]), service("b", deps=["a"])]
        controller = build(services, launcher=launcher)
        with pytest.raises(CycleError):
            asyncio.run(controller.run())
        assert launcher.started == []

    def test_invalid_transition(self):
        controller = build([service("minio")])
        asyncio.run(controller.run())
        with pytest.raises(InvalidTransitionError):
            controller._transition("minio", ServiceState.STARTING)


class TestStop:
    """Stop requests and teardown."""

    def test_stop_before_run_cancels_everything(self):
        launcher = FakeLauncher()
        controller = build([service("postgres"), service("metastore", deps=["postgres"])], launcher=launcher)
        controller.request_stop()
        report = asyncio.run(controller.run())
        assert launcher.started == []
        assert report.status_of("postgres") == ReportStatus.CANCELLED
        assert report.status_of("metastore") == ReportStatus.CANCELLED

    def test_stop_abandons_probe(self):
        async def never_ready(hc):
            await asyncio.sleep(3600)

        services = [service("postgres"), service("metastore", deps=["postgres"])]
        controller = build(services, check=never_ready)

        async def scenario():
            run = asyncio.create_task(controller.run())
            await asyncio.sleep(0.05)
            controller.request_stop()
            return await asyncio.wait_for(run, timeout=5)

        report = asyncio.run(scenario())
        assert report.status_of("postgres") == ReportStatus.FAILED
        assert report.services["postgres"].reason == "stop requested"
        assert report.status_of("metastore") == ReportStatus.BLOCKED

    def test_stop_during_start_keeps_handle_for_down(self):
        launcher = FakeLauncher(start_delay=0.3)
        controller = build([service("postgres"), service("metastore", deps=["postgres"])], launcher=launcher)

        async def scenario():
            run = asyncio.create_task(controller.run())
            await asyncio.sleep(0.05)
            controller.request_stop()
            report = await asyncio.wait_for(run, timeout=5)
            await controller.down()
            return report

        report = asyncio.run(scenario())
        assert report.status_of("postgres") == ReportStatus.FAILED
        assert report.services["postgres"].reason == "stop requested"
        assert report.status_of("metastore") == ReportStatus.BLOCKED
        assert launcher.stopped == ["postgres"]

    def test_stop_interrupts_restart_backoff(self):
        launcher = FakeLauncher(failures={"postgres": 5})
        policy = RestartPolicy(condition="on-failure", max_retries=3, delay=30)
        controller = build([service("postgres", restart=policy)], launcher=launcher, sleep=asyncio.sleep)

        async def scenario():
            run = asyncio.create_task(controller.run())
            await asyncio.sleep(0.05)
            controller.request_stop()
            return await asyncio.wait_for(run, timeout=5)

        report = asyncio.run(scenario())
        assert report.services["postgres"].reason == "stop requested"
        assert launcher.started == ["postgres"]

    def test_down_stops_in_reverse_order(self):
        launcher = FakeLauncher()
        controller = build([
            service("postgres"), service("metastore", deps=["postgres"]), service("spark", deps=["metastore"]),
        ], launcher=launcher)

        async def scenario():
            await controller.run()
            await controller.down()

        asyncio.run(scenario())
        assert launcher.stopped == ["spark", "metastore", "postgres"]


class TestStatus:
    """Tests for the read-only status view."""

    def test_status_changes_nothing(self):
        launcher = FakeLauncher()
        handler = MemoryHandler()
        handler.resources.add("warehouse")
        controller = build([
            service("minio", provision=["warehouse", "airflow-logs"]),
            service("spark"),
        ], down={"spark"}, launcher=launcher, handler=handler)
        statuses = asyncio.run(controller.status())
        assert launcher.started == []
        assert handler.created == []
        assert statuses["minio"].healthy is True
        assert [(c.action, c.satisfied) for c in statuses["minio"].provisioning] == [
            ("bucket:warehouse", True), ("bucket:airflow-logs", False),
        ]
        assert statuses["spark"].healthy is False
        assert "connection refused" in statuses["spark"].detail

    def test_status_without_health_check(self):
        controller = build([])
        controller.config = StackConfig(services={"code-server": ServiceSpec(name="code-server")})
        statuses = asyncio.run(controller.status())
        assert statuses["code-server"].healthy is None
