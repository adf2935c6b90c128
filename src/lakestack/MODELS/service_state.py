"""
Per-service state machine and run reports.
"""
from typing import Dict, FrozenSet, List, Optional
from dataclasses import dataclass, field
from enum import Enum


class ServiceState(str, Enum):
    """Stored state of a service during one controller run."""

    PENDING = "pending"
    STARTING = "starting"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    PROVISION_FAILED = "provision_failed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[ServiceState] = frozenset(
    {ServiceState.READY, ServiceState.PROVISION_FAILED, ServiceState.FAILED}
)

ALLOWED_TRANSITIONS: Dict[ServiceState, FrozenSet[ServiceState]] = {
    ServiceState.PENDING: frozenset({ServiceState.STARTING}),
    ServiceState.STARTING: frozenset({ServiceState.AWAITING_READY, ServiceState.FAILED}),
    ServiceState.AWAITING_READY: frozenset(
        {ServiceState.READY, ServiceState.PROVISION_FAILED, ServiceState.FAILED}
    ),
    ServiceState.READY: frozenset(),
    ServiceState.PROVISION_FAILED: frozenset(),
    ServiceState.FAILED: frozenset(),
}


class ReportStatus(str, Enum):
    """
    Status shown in a run report. BLOCKED and CANCELLED are derived for
    services that were never started and are never stored.
    """

    READY = "Ready"
    FAILED = "Failed"
    PROVISION_FAILED = "ProvisionFailed"
    BLOCKED = "Blocked"
    CANCELLED = "Cancelled"

    @property
    def ok(self) -> bool:
        return self == ReportStatus.READY


class RunOutcome(str, Enum):
    ALL_READY = "AllReady"
    PARTIAL_FAILURE = "PartialFailure"


@dataclass
class ServiceReport:
    """Final outcome for one service."""

    name: str
    status: ReportStatus
    reason: str = ""
    failed_step: Optional[str] = None  # probe target or provisioning action
    blocked_by: List[str] = field(default_factory=list)
    attempts: int = 0


@dataclass
class RunReport:
    """Aggregate result of a controller run."""

    services: Dict[str, ServiceReport] = field(default_factory=dict)

    @property
    def outcome(self) -> RunOutcome:
        if all(report.status.ok for report in self.services.values()):
            return RunOutcome.ALL_READY
        return RunOutcome.PARTIAL_FAILURE

    @property
    def failures(self) -> List[ServiceReport]:
        return [r for r in self.services.values() if not r.status.ok]

    def status_of(self, name: str) -> ReportStatus:
        return self.services[name].status
