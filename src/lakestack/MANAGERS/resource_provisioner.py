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
Idempotent provisioning of the resources a service owns: buckets, databases,
schemas, roles, grants, docker networks, volumes and generic command steps.

Every action is check-then-act: the current state is looked up first and the
resource is only created when it is missing, so re-running after a partial
failure converges without duplicates. Nothing is rolled back.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

import aioboto3
from botocore.exceptions import ClientError
from sqlalchemy import text

from ..errors import ProvisionError
from ..MODELS.service_spec import ActionKind, ProvisioningAction
from ..RUNNERS.service_launcher import kill_process
from ..UTILS.sql import ddl, quote_ident, quote_literal, sql_engine

logger = logging.getLogger(__name__)


class ProvisionStatus(str, Enum):
    PROVISIONED = "provisioned"
    FAILED = "failed"


@dataclass
class ProvisionResult:
    """Outcome of provisioning one service."""

    status: ProvisionStatus
    applied: List[str] = field(default_factory=list)
    satisfied: List[str] = field(default_factory=list)
    failed_action: Optional[str] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ProvisionStatus.PROVISIONED


@dataclass
class ActionCheck:
    """Read-only view of one action, as reported by ``inspect``."""

    action: str
    satisfied: bool
    error: str = ""


class ActionHandler(ABC):
    """Looks up and creates one kind of resource."""

    @abstractmethod
    async def exists(self, action: ProvisioningAction) -> bool:
        """True when the resource already matches the desired state."""

    @abstractmethod
    async def apply(self, action: ProvisioningAction) -> None:
        """Creates the resource. Only called when ``exists`` returned False."""


class BucketHandler(ActionHandler):
    """S3 / MinIO buckets."""

    _MISSING = ("404", "NoSuchBucket", "NotFound")

    def __init__(self, session: Optional[aioboto3.Session] = None):
        self._session = session or aioboto3.Session()

    def _client(self, action: ProvisioningAction):
        return self._session.client(
            "s3",
            endpoint_url=action.endpoint_url,
            aws_access_key_id=action.access_key,
            aws_secret_access_key=action.secret_key,
            region_name=action.region,
        )

    async def exists(self, action: ProvisioningAction) -> bool:
        async with self._client(action) as s3:
            try:
                await s3.head_bucket(Bucket=action.name)
                return True
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") in self._MISSING:
                    return False
                raise ProvisionError(f"Failed checking bucket {action.name}: {exc}") from exc

    async def apply(self, action: ProvisioningAction) -> None:
        kwargs = {"Bucket": action.name}
        if action.region and action.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": action.region}
        async with self._client(action) as s3:
            try:
                await s3.create_bucket(**kwargs)
            except ClientError as exc:
                # created concurrently by another run
                if exc.response.get("Error", {}).get("Code") == "BucketAlreadyOwnedByYou":
                    return
                raise ProvisionError(f"Failed creating bucket {action.name}: {exc}") from exc


class SqlHandler(ActionHandler):
    """
    PostgreSQL-compatible databases, schemas, roles and schema grants
    (metastore, Airflow and Superset backends).

    Databases and schemas with an ``owner`` are handed over to that owner when
    they already exist under another one. Role passwords are only set when the
    role is created; an existing role is never altered.
    """

    _PRIVILEGES = {"USAGE": ["USAGE"], "CREATE": ["CREATE"], "ALL": ["USAGE", "CREATE"]}

    # each lookup returns the current owner (or the role itself) when present
    _LOOKUPS = {
        ActionKind.DATABASE: "SELECT pg_get_userbyid(datdba) FROM pg_database WHERE datname = :name",
        ActionKind.SCHEMA: "SELECT pg_get_userbyid(nspowner) FROM pg_namespace WHERE nspname = :name",
        ActionKind.USER: "SELECT rolname FROM pg_roles WHERE rolname = :name",
    }

    _OWNED = (ActionKind.DATABASE, ActionKind.SCHEMA)

    def _privileges(self, action: ProvisioningAction) -> List[str]:
        privileges = [p.upper() for p in action.privileges]
        unknown = [p for p in privileges if p not in self._PRIVILEGES]
        if unknown:
            raise ProvisionError(f"Unsupported schema privileges: {', '.join(unknown)}")
        return privileges

    async def _lookup(self, conn, action: ProvisioningAction) -> Optional[str]:
        row = await conn.execute(text(self._LOOKUPS[action.kind]), {"name": action.name})
        first = row.first()
        return None if first is None else first[0]

    async def exists(self, action: ProvisioningAction) -> bool:
        async with sql_engine(action.dsn) as engine:
            async with engine.connect() as conn:
                if action.kind == ActionKind.GRANT:
                    for privilege in self._privileges(action):
                        for check in self._PRIVILEGES[privilege]:
                            row = await conn.execute(
                                text("SELECT has_schema_privilege(:grantee, :schema, :priv)"),
                                {"grantee": action.grantee, "schema": action.name, "priv": check},
                            )
                            if not row.scalar():
                                return False
                    return True
                current = await self._lookup(conn, action)
                if current is None:
                    return False
                if action.kind in self._OWNED and action.owner and current != action.owner:
                    logger.info("%s is owned by %s, not %s", action.description, current, action.owner)
                    return False
                return True

    def _statement(self, action: ProvisioningAction) -> str:
        name = quote_ident(action.name)
        if action.kind == ActionKind.DATABASE:
            owner = f" OWNER {quote_ident(action.owner)}" if action.owner else ""
            return f"CREATE DATABASE {name}{owner}"
        if action.kind == ActionKind.SCHEMA:
            owner = f" AUTHORIZATION {quote_ident(action.owner)}" if action.owner else ""
            return f"CREATE SCHEMA IF NOT EXISTS {name}{owner}"
        if action.kind == ActionKind.USER:
            password = f" PASSWORD {quote_literal(action.password)}" if action.password else ""
            return f"CREATE ROLE {name} LOGIN{password}"
        privileges = ", ".join(self._privileges(action))
        return f"GRANT {privileges} ON SCHEMA {name} TO {quote_ident(action.grantee)}"

    def _owner_statement(self, action: ProvisioningAction) -> str:
        kind = "DATABASE" if action.kind == ActionKind.DATABASE else "SCHEMA"
        return f"ALTER {kind} {quote_ident(action.name)} OWNER TO {quote_ident(action.owner)}"

    async def apply(self, action: ProvisioningAction) -> None:
        # CREATE DATABASE cannot run inside a transaction block
        async with sql_engine(action.dsn, autocommit=True) as engine:
            async with engine.connect() as conn:
                statement = self._statement(action)
                if action.kind in self._OWNED and await self._lookup(conn, action) is not None:
                    statement = self._owner_statement(action)
                await conn.execute(ddl(statement))


async def _run(argv: Sequence[str], cwd: Optional[str] = None) -> "tuple[int, str]":
    proc = await asyncio.create_subprocess_exec(
        *argv, cwd=cwd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT
    )
    try:
        output, _ = await proc.communicate()
    except asyncio.CancelledError:
        await kill_process(proc)
        raise
    return proc.returncode, output.decode(errors="replace").strip()


class NetworkHandler(ActionHandler):
    """The shared docker network every service joins."""

    def __init__(self, docker: str = "docker"):
        self.docker = docker

    async def exists(self, action: ProvisioningAction) -> bool:
        code, _ = await _run([self.docker, "network", "inspect", action.name])
        return code == 0

    async def apply(self, action: ProvisioningAction) -> None:
        code, output = await _run([self.docker, "network", "create", action.name])
        if code != 0 and "already exists" not in output:
            raise ProvisionError(f"docker network create {action.name} failed: {output[-500:]}")


class VolumeHandler(ActionHandler):
    """
    Host directories backing named volumes. Names without a path separator
    live under ``.lakestack/volumes`` in the project directory.
    """

    def __init__(self, project_dir: str = ".", volumes_root: str = os.path.join(".lakestack", "volumes")):
        self.base_dir = os.path.abspath(project_dir)
        self.volumes_root = os.path.join(self.base_dir, volumes_root)

    def resolve(self, name: str) -> str:
        if os.path.isabs(name):
            return name
        if not name.startswith('.') and os.sep not in name and '/' not in name:
            return os.path.join(self.volumes_root, name)
        return os.path.abspath(os.path.join(self.base_dir, name))

    async def exists(self, action: ProvisioningAction) -> bool:
        path = self.resolve(action.name)
        if os.path.exists(path) and not os.path.isdir(path):
            raise ProvisionError(f"Volume path {path} exists and is not a directory")
        return os.path.isdir(path)

    async def apply(self, action: ProvisioningAction) -> None:
        os.makedirs(self.resolve(action.name), exist_ok=True)


class CommandHandler(ActionHandler):
    """
    Generic step: ``check`` exits 0 when the resource is present, ``apply``
    creates it (e.g. ``airflow users list`` / ``airflow users create``).
    """

    def __init__(self, project_dir: str = "."):
        self.project_dir = project_dir

    async def exists(self, action: ProvisioningAction) -> bool:
        code, _ = await _run(action.check, cwd=self.project_dir)
        return code == 0

    async def apply(self, action: ProvisioningAction) -> None:
        code, output = await _run(action.apply, cwd=self.project_dir)
        if code != 0:
            raise ProvisionError(f"'{' '.join(action.apply)}' exited with {code}: {output[-500:]}")


class ResourceProvisioner:
    """
    Runs a service's provisioning actions in declared order.
    """

    def __init__(self,
                 handlers: Optional[Dict[ActionKind, ActionHandler]] = None,
                 default_timeout: float = 60.0,
                 project_dir: str = "."):
        """
        :param handlers: Overrides for the built-in handler of each action kind.
        :param default_timeout: Seconds allowed per action without its own timeout.
        :param project_dir: Base directory for volumes and command actions.
        """
        sql = SqlHandler()
        self._handlers: Dict[ActionKind, ActionHandler] = {
            ActionKind.BUCKET: BucketHandler(),
            ActionKind.DATABASE: sql,
            ActionKind.SCHEMA: sql,
            ActionKind.USER: sql,
            ActionKind.GRANT: sql,
            ActionKind.NETWORK: NetworkHandler(),
            ActionKind.VOLUME: VolumeHandler(project_dir),
            ActionKind.COMMAND: CommandHandler(project_dir),
        }
        if handlers:
            self._handlers.update(handlers)
        self.default_timeout = default_timeout

    async def _ensure(self, action: ProvisioningAction) -> bool:
        """Returns True when the resource had to be created."""
        handler = self._handlers[action.kind]
        if await handler.exists(action):
            return False
        await handler.apply(action)
        return True

    async def provision(self,
                        name: str,
                        actions: Sequence[ProvisioningAction],
                        stop_event: Optional[asyncio.Event] = None) -> ProvisionResult:
        """
        Ensures every action's resource exists. Stops at the first failing
        action; earlier actions stay applied.

        :param name: Service name, for logging.
        :param actions: Actions in the order they must run.
        :param stop_event: When set, remaining actions are abandoned at the next action boundary.
        """
        result = ProvisionResult(ProvisionStatus.PROVISIONED)
        for action in actions:
            desc = action.description
            if stop_event is not None and stop_event.is_set():
                return self._fail(name, result, desc, "stop requested before action ran")

            timeout = action.timeout or self.default_timeout
            try:
                created = await asyncio.wait_for(self._ensure(action), timeout=timeout)
            except asyncio.TimeoutError:
                return self._fail(name, result, desc, f"timed out after {timeout:g}s")
            except ProvisionError as e:
                return self._fail(name, result, desc, str(e))
            except Exception as e:
                logger.debug("[%s] %s raised", name, desc, exc_info=True)
                return self._fail(name, result, desc, f"{type(e).__name__}: {e}")

            if created:
                logger.info("[%s] provisioned %s", name, desc)
                result.applied.append(desc)
            else:
                logger.info("[%s] %s already present", name, desc)
                result.satisfied.append(desc)
        return result

    def _fail(self, name: str, result: ProvisionResult, action: str, reason: str) -> ProvisionResult:
        logger.error("[%s] provisioning failed at %s: %s", name, action, reason)
        result.status = ProvisionStatus.FAILED
        result.failed_action = action
        result.reason = reason
        return result

    async def inspect(self, actions: Sequence[ProvisioningAction]) -> List[ActionCheck]:
        """
        Runs only the existence checks; never creates anything.
        """
        checks = []
        for action in actions:
            timeout = action.timeout or self.default_timeout
            try:
                satisfied = await asyncio.wait_for(self._handlers[action.kind].exists(action), timeout=timeout)
                checks.append(ActionCheck(action.description, satisfied))
            except asyncio.TimeoutError:
                checks.append(ActionCheck(action.description, False, f"timed out after {timeout:g}s"))
            except Exception as e:
                checks.append(ActionCheck(action.description, False, f"{type(e).__name__}: {e}"))
        return checks
