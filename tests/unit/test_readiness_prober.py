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
Unit tests for the readiness prober.
"""
import asyncio
import shlex
import sys

import psutil

from lakestack.MANAGERS.readiness_prober import (
    CheckResult,
    ProbeStatus,
    ReadinessProber,
    check_command,
    check_tcp,
)
from lakestack.MODELS.service_spec import HealthCheck, ProbeProtocol


async def no_sleep(_seconds):
    return None


def scripted(results):
    """A tcp check that answers from a list, then keeps repeating the last answer."""
    calls = []

    async def check(hc):
        calls.append(hc)
        return results[min(len(calls), len(results)) - 1]

    return check, calls


def tcp_check(**kwargs):
    return HealthCheck(protocol=ProbeProtocol.TCP, port=9083, interval=0, **kwargs)


class TestReadinessProber:
    """Tests for ReadinessProber."""

    def test_ready_on_first_success(self):
        check, calls = scripted([CheckResult(True, "ok")])
        prober = ReadinessProber(checks={ProbeProtocol.TCP: check}, sleep=no_sleep)
        result = asyncio.run(prober.wait_until_ready("metastore", tcp_check()))
        assert result.status == ProbeStatus.READY
        assert result.attempts == 1
        assert len(calls) == 1

    def test_ready_after_failures(self):
        check, calls = scripted([CheckResult(False, "refused"), CheckResult(False, "refused"), CheckResult(True)])
        prober = ReadinessProber(checks={ProbeProtocol.TCP: check}, sleep=no_sleep)
        result = asyncio.run(prober.wait_until_ready("metastore", tcp_check(max_attempts=5)))
        assert result.ready
        assert result.attempts == 3

    def test_timed_out_after_max_attempts(self):
        check, calls = scripted([CheckResult(False, "connection refused")])
        prober = ReadinessProber(checks={ProbeProtocol.TCP: check}, sleep=no_sleep)
        result = asyncio.run(prober.wait_until_ready("spark", tcp_check(max_attempts=4)))
        assert result.status == ProbeStatus.TIMED_OUT
        assert result.attempts == 4
        assert len(calls) == 4
        assert result.last_error == "connection refused"

    def test_elapsed_budget_stops_early(self):
        check, _ = scripted([CheckResult(False, "starting")])
        prober = ReadinessProber(checks={ProbeProtocol.TCP: check})
        hc = HealthCheck(protocol=ProbeProtocol.TCP, port=1, interval=0.05, max_attempts=1000, max_elapsed=0.2)
        result = asyncio.run(prober.wait_until_ready("slow", hc))
        assert result.status == ProbeStatus.TIMED_OUT
        assert 1 < result.attempts < 1000

    def test_sleeps_interval_between_attempts(self):
        slept = []

        async def record_sleep(seconds):
            slept.append(seconds)

        check, _ = scripted([CheckResult(False), CheckResult(False), CheckResult(True)])
        prober = ReadinessProber(checks={ProbeProtocol.TCP: check}, sleep=record_sleep)
        hc = HealthCheck(protocol=ProbeProtocol.TCP, port=1, interval=2.5, start_period=7)
        asyncio.run(prober.wait_until_ready("airflow", hc))
        assert slept == [7, 2.5, 2.5]

    def test_attempt_timeout(self):
        async def hang(hc):
            await asyncio.sleep(10)
            return CheckResult(True)

        prober = ReadinessProber(checks={ProbeProtocol.TCP: hang})
        result = asyncio.run(prober.probe_once(tcp_check(timeout=0.05)))
        assert not result.success
        assert "timed out" in result.detail

    def test_check_errors_count_as_failures(self):
        async def broken(hc):
            raise RuntimeError("driver exploded")

        prober = ReadinessProber(checks={ProbeProtocol.TCP: broken}, sleep=no_sleep)
        result = asyncio.run(prober.wait_until_ready("db", tcp_check(max_attempts=2)))
        assert result.status == ProbeStatus.TIMED_OUT
        assert "RuntimeError: driver exploded" == result.last_error

    def test_no_health_check_is_ready(self):
        prober = ReadinessProber()
        assert asyncio.run(prober.wait_until_ready("code-server", None)).ready
        none = HealthCheck(protocol=ProbeProtocol.NONE)
        result = asyncio.run(prober.wait_until_ready("code-server", none))
        assert result.ready and result.attempts == 0

    def test_register_check(self):
        prober = ReadinessProber(sleep=no_sleep)

        async def always_ok(hc):
            return CheckResult(True, "custom")

        prober.register_check(ProbeProtocol.HTTP, always_ok)
        hc = HealthCheck(protocol=ProbeProtocol.HTTP, url="http://superset:8088/health")
        assert asyncio.run(prober.probe_once(hc)).detail == "custom"


def test_tcp_check_against_real_socket():
    async def scenario():
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            ok = await check_tcp(HealthCheck(protocol=ProbeProtocol.TCP, port=port))
        finally:
            server.close()
            await server.wait_closed()
        refused = await ReadinessProber().probe_once(HealthCheck(protocol=ProbeProtocol.TCP, port=port, timeout=2))
        return ok, refused

    ok, refused = asyncio.run(scenario())
    assert ok.success
    assert not refused.success


def test_command_check():
    good = HealthCheck(protocol=ProbeProtocol.COMMAND, test=["CMD", sys.executable, "-c", "print('up')"])
    bad = HealthCheck(protocol=ProbeProtocol.COMMAND,
                      test=[sys.executable, "-c", "import sys; sys.stderr.write('down'); sys.exit(1)"])
    result = asyncio.run(check_command(good))
    assert result.success and "up" in result.detail
    result = asyncio.run(check_command(bad))
    assert not result.success and result.detail == "down"


def _gone(pid, timeout=2.0):
    """True once ``pid`` has exited (a zombie waiting to be reaped counts)."""
    try:
        proc = psutil.Process(pid)
        proc.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return True
    except psutil.TimeoutExpired:
        return proc.status() == psutil.STATUS_ZOMBIE
    return True


def test_timed_out_shell_check_kills_the_shell_children(tmp_path):
    pid_file = tmp_path / "pid"
    script = f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); time.sleep(30)"
    # the trailing command keeps the shell from exec'ing python, so python is its child
    shell = f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}; true"
    hc = HealthCheck(protocol=ProbeProtocol.COMMAND, test=["CMD-SHELL", shell], timeout=3)

    result = asyncio.run(ReadinessProber().probe_once(hc))
    assert not result.success
    assert "timed out" in result.detail
    assert _gone(int(pid_file.read_text()))
