"""
Text rendering of run and status reports.
"""
from typing import Dict, List

from jinja2 import Environment

from ..MANAGERS.orchestration_controller import LiveStatus
from ..MODELS.service_state import RunReport

REPORT_TEMPLATE = """
{{ "%-20s %-16s %s"|format("SERVICE", "STATUS", "DETAIL") }}
{{ "-" * 72 }}
{% for row in rows %}
{{ "%-20s %-16s %s"|format(row.name, row.status, row.detail) }}
{% endfor %}
{% if outcome %}

Result: {{ outcome }}
{% endif %}
"""

_env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=False)
_template = _env.from_string(REPORT_TEMPLATE.lstrip("\n"))


def _run_rows(report: RunReport) -> List[Dict[str, str]]:
    rows = []
    for svc in report.services.values():
        detail = svc.reason
        if svc.failed_step:
            detail = f"{detail} [{svc.failed_step}]"
        rows.append({"name": svc.name, "status": svc.status.value, "detail": detail})
    return rows


def render_run_report(report: RunReport) -> str:
    """Renders the per-service outcome of ``run``."""
    return _template.render(rows=_run_rows(report), outcome=report.outcome.value).rstrip()


def _status_rows(statuses: Dict[str, LiveStatus]) -> List[Dict[str, str]]:
    rows = []
    for status in statuses.values():
        if status.healthy is None:
            state = "unchecked"
        else:
            state = "healthy" if status.healthy else "unhealthy"
        detail = status.detail.strip().splitlines()[0] if status.detail.strip() else ""
        if status.provisioning:
            present = sum(1 for check in status.provisioning if check.satisfied)
            missing = [check.action for check in status.provisioning if not check.satisfied]
            detail = f"{present}/{len(status.provisioning)} resources present"
            if missing:
                detail += f", missing: {', '.join(missing)}"
        rows.append({"name": status.name, "status": state, "detail": detail})
    return rows


def render_status_report(statuses: Dict[str, LiveStatus]) -> str:
    """Renders the live view produced by ``status``."""
    return _template.render(rows=_status_rows(statuses), outcome=None).rstrip()


def status_ok(statuses: Dict[str, LiveStatus]) -> bool:
    return all(
        status.healthy is not False and all(check.satisfied for check in status.provisioning)
        for status in statuses.values()
    )
