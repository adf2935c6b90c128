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
Readiness probing: polls a service's health check until it succeeds or the
attempt / wall-clock budget runs out.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import aiohttp
from sqlalchemy import text
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from ..MODELS.service_spec import HealthCheck, ProbeProtocol
from ..RUNNERS.service_launcher import kill_process
from ..UTILS.sql import sql_engine

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 500


class ProbeStatus(str, Enum):
    """Outcome of waiting for a service."""

    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class CheckResult:
    """Result of a single probe attempt."""

    success: bool
    detail: str = ""


@dataclass
class ProbeResult:
    """Result of waiting for a service to become ready."""

    status: ProbeStatus
    attempts: int = 0
    elapsed: float = 0.0
    last_error: str = ""

    @property
    def ready(self) -> bool:
        return self.status == ProbeStatus.READY


CheckFunction = Callable[[HealthCheck], Awaitable[CheckResult]]


async def check_tcp(hc: HealthCheck) -> CheckResult:
    """Succeeds when a TCP connection can be opened (Thrift, Spark master, Postgres)."""
    _, writer = await asyncio.open_connection(hc.host, hc.port)
    writer.close()
    await writer.wait_closed()
    return CheckResult(True, f"connected to {hc.host}:{hc.port}")


async def check_http(hc: HealthCheck) -> CheckResult:
    """Succeeds when a GET on the URL answers with one of the expected statuses."""
    timeout = aiohttp.ClientTimeout(total=hc.timeout)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(hc.url, allow_redirects=False) as resp:
            if resp.status in hc.expected_status:
                return CheckResult(True, f"HTTP {resp.status}")
            return CheckResult(False, f"HTTP {resp.status} from {hc.url}")


async def check_command(hc: HealthCheck) -> CheckResult:
    """
    Runs a compose-style test: ``["CMD", argv...]``, ``["CMD-SHELL", "cmd"]``,
    ``["NONE"]`` or a plain argv list. Exit code 0 means healthy.
    """
    cmd = hc.test
    if cmd[0] == "NONE":
        return CheckResult(True)
    if cmd[0] == "CMD-SHELL":
        proc = await asyncio.create_subprocess_shell(
            " ".join(cmd[1:]), stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    else:
        argv = cmd[1:] if cmd[0] == "CMD" else cmd
        proc = await asyncio.create_subprocess_exec(
            *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        await kill_process(proc)
        raise
    if proc.returncode == 0:
        return CheckResult(True, stdout.decode(errors="replace")[:_OUTPUT_LIMIT])
    detail = stderr.decode(errors="replace").strip()[:_OUTPUT_LIMIT]
    return CheckResult(False, detail or f"Exit code: {proc.returncode}")


async def check_query(hc: HealthCheck) -> CheckResult:
    """Succeeds when the query runs against the DSN (metastore database, Superset DB)."""
    async with sql_engine(hc.dsn) as engine:
        async with engine.connect() as conn:
            await conn.execute(text(hc.query))
    return CheckResult(True, "query ok")


async def check_none(hc: HealthCheck) -> CheckResult:
    return CheckResult(True)


class ReadinessProber:
    """
    Evaluates health checks. Each ``wait_until_ready`` call is meant to run in
    its own task so probing one service never holds up another.
    """

    def __init__(self,
                 checks: Optional[Dict[ProbeProtocol, CheckFunction]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        :param checks: Overrides or additions to the built-in check functions.
        :param sleep: Coroutine used between attempts.
        """
        self._checks: Dict[ProbeProtocol, CheckFunction] = {
            ProbeProtocol.TCP: check_tcp,
            ProbeProtocol.HTTP: check_http,
            ProbeProtocol.COMMAND: check_command,
            ProbeProtocol.QUERY: check_query,
            ProbeProtocol.NONE: check_none,
        }
        if checks:
            self._checks.update(checks)
        self._sleep = sleep

    def register_check(self, protocol: ProbeProtocol, check: CheckFunction) -> None:
        """Replaces the check function used for a protocol."""
        self._checks[protocol] = check

    async def probe_once(self, hc: HealthCheck) -> CheckResult:
        """
        Runs one attempt, bounded by the check's timeout.
        Errors are reported as a failed attempt, never raised.
        """
        check = self._checks[hc.protocol]
        try:
            return await asyncio.wait_for(check(hc), timeout=hc.timeout)
        except asyncio.TimeoutError:
            return CheckResult(False, f"{hc.protocol.value} check timed out after {hc.timeout:g}s")
        except (OSError, aiohttp.ClientError) as e:
            return CheckResult(False, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.debug("Health check against %s raised", hc.target, exc_info=True)
            return CheckResult(False, f"{type(e).__name__}: {e}")

    async def wait_until_ready(self, name: str, hc: Optional[HealthCheck]) -> ProbeResult:
        """
        Polls until the first successful attempt.

        :param name: Service name, for logging.
        :param hc: The health check; ``None`` means the service counts as ready.
        :return: READY, or TIMED_OUT with the last failure reason once
                 ``max_attempts`` or ``max_elapsed`` is exhausted.
        """
        if hc is None or hc.protocol == ProbeProtocol.NONE:
            return ProbeResult(ProbeStatus.READY)

        started = time.monotonic()
        if hc.start_period:
            logger.info("[%s] waiting %.1fs start period", name, hc.start_period)
            await self._sleep(hc.start_period)

        stop = stop_after_attempt(hc.max_attempts)
        if hc.max_elapsed is not None:
            stop = stop | stop_after_delay(hc.max_elapsed)

        attempts = 0

        async def attempt() -> CheckResult:
            nonlocal attempts
            attempts += 1
            return await self.probe_once(hc)

        def log_retry(state: RetryCallState) -> None:
            result = state.outcome.result()
            logger.info("[%s] not ready (attempt %d/%d): %s",
                        name, state.attempt_number, hc.max_attempts, result.detail)

        retrying = AsyncRetrying(
            stop=stop,
            wait=wait_fixed(hc.interval),
            retry=retry_if_result(lambda r: not r.success),
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=log_retry,
            sleep=self._sleep,
        )
        result = await retrying(attempt)
        elapsed = time.monotonic() - started

        if result.success:
            logger.info("[%s] healthy after %d attempt(s) (%s)", name, attempts, hc.target)
            return ProbeResult(ProbeStatus.READY, attempts, elapsed)
        logger.warning("[%s] not ready after %d attempt(s), %.1fs: %s",
                       name, attempts, elapsed, result.detail)
        return ProbeResult(ProbeStatus.TIMED_OUT, attempts, elapsed, last_error=result.detail)
