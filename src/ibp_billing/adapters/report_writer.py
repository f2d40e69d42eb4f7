"""Artifact writer for daily and monthly billing reports.

Produces structured JSON (and a CSV for the daily service-cost view) rather
than paginated documents; layout and typesetting belong to downstream
renderers that consume these files.

Output layout under the reports directory:
    service_costs_<YYYY-MM-DD>.json / .csv          daily
    <YYYY-MM>/overview_<YYYY-MM>.json               monthly overview
    <YYYY-MM>/member_<sanitized-id>_<YYYY-MM>.json  one per billed member

Every file is written to a temporary sibling and moved into place, and all
keys are sorted, so identical inputs give byte-identical files.
"""

import csv
import io
import json
import os
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any

from ibp_billing.core.models import MemberStatement, SLABreakdown, SLASummary, Summary
from ibp_billing.core.sla import summarize_statements
from ibp_billing.observability import get_logger

logger = get_logger(__name__)

_CENT = Decimal("0.01")
_UPTIME_QUANTUM = Decimal("0.0001")
_UNSAFE_FILENAME_CHARS = re.compile(r"[\s/\\:*?\"<>|]")

_DAILY_CSV_COLUMNS = ["service", "member", "cost"]


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


def money(value: Decimal) -> str:
    """Format an amount rounded half-up to cents."""
    return str(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def percent(value: Decimal) -> str:
    """Format a percentage to four decimal places."""
    return str(value.quantize(_UPTIME_QUANTUM, rounding=ROUND_HALF_UP))


def _breakdown_payload(breakdown: SLABreakdown) -> dict[str, Any]:
    return {
        "hours_total": str(breakdown.hours_total),
        "hours_down": str(breakdown.hours_down),
        "hours_up": str(breakdown.hours_up),
        "uptime_percent": percent(breakdown.uptime_percent),
        "sla_threshold": str(breakdown.threshold),
        "meets_sla": breakdown.meets_sla,
    }


def _statement_payload(statement: MemberStatement) -> dict[str, Any]:
    return {
        "member": statement.member_id,
        "level": statement.level,
        "meets_sla": statement.meets_sla,
        "total_base_cost": money(statement.total_base),
        "total_billed": money(statement.total_billed),
        "total_credits": money(statement.total_credits),
        "services": [
            {
                "name": line.service_name,
                "base_cost": money(line.base_cost),
                "uptime_percent": percent(line.uptime_percent),
                "billed_cost": money(line.billed),
                "credits": money(line.credit),
                "meets_sla": line.meets_sla,
            }
            for line in statement.lines
        ],
    }


class ReportWriter:
    """Implements IReportRenderer with JSON/CSV artifacts."""

    def __init__(self, indent: int = 2) -> None:
        self._indent = indent

    # ------------------------------------------------------------------
    # Daily
    # ------------------------------------------------------------------

    def write_daily_report(self, summary: Summary, out_dir: Path, day: date) -> Path:
        """Write the per-service cost breakdown for a day.

        Returns:
            Path of the JSON artifact (the CSV sits beside it).
        """
        services = []
        rows: list[list[str]] = []
        for service_name in sorted(summary.services):
            service = summary.services[service_name]
            members = {m: money(service.member_costs[m]) for m in sorted(service.member_costs)}
            services.append({"service": service_name, "total": money(service.total), "members": members})
            rows.extend([service_name, member, cost] for member, cost in members.items())

        payload = {
            "report": "service_costs",
            "day": day.isoformat(),
            "snapshot_generated_at": summary.generated_at.isoformat() if summary.generated_at else None,
            "total": money(summary.total()),
            "services": services,
        }

        json_path = out_dir / f"service_costs_{day.isoformat()}.json"
        self._write_json(json_path, payload)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(_DAILY_CSV_COLUMNS)
        writer.writerows(rows)
        self._write_text(out_dir / f"service_costs_{day.isoformat()}.csv", buffer.getvalue())

        logger.debug("daily_report_rendered", path=str(json_path), services=len(services))
        return json_path

    # ------------------------------------------------------------------
    # Monthly
    # ------------------------------------------------------------------

    def write_monthly_overview(
        self,
        summary: Summary,
        sla: SLASummary,
        statements: list[MemberStatement],
        out_dir: Path,
        month: date,
    ) -> Path:
        """Write the portfolio overview for a billing month."""
        label = month.strftime("%Y-%m")
        totals = summarize_statements(statements)

        violations = [
            {
                "member": member_id,
                "service": service_name,
                "uptime_percent": percent(sla[member_id][service_name].uptime_percent),
                "hours_down": str(sla[member_id][service_name].hours_down),
            }
            for member_id in sorted(sla)
            for service_name in sorted(sla[member_id])
            if not sla[member_id][service_name].meets_sla
        ]

        payload = {
            "report": "monthly_overview",
            "month": label,
            "snapshot_generated_at": summary.generated_at.isoformat() if summary.generated_at else None,
            "totals": {
                "members": totals.member_count,
                "base_cost": money(totals.total_base),
                "billed": money(totals.total_billed),
                "credits": money(totals.total_credits),
                "sla_violations": totals.sla_violations,
            },
            "service_distribution": totals.service_distribution,
            "services": {
                name: money(summary.services[name].total) for name in sorted(summary.services)
            },
            "members": [_statement_payload(s) for s in statements],
            "violations": violations,
        }

        path = out_dir / f"overview_{label}.json"
        self._write_json(path, payload)
        return path

    def write_member_report(
        self,
        member_id: str,
        summary: Summary,
        sla: SLASummary,
        statement: MemberStatement,
        out_dir: Path,
        month: date,
    ) -> Path:
        """Write one member's statement with its SLA breakdown per service."""
        label = month.strftime("%Y-%m")
        member_sla = sla.get(member_id, {})
        payload = {
            "report": "member_statement",
            "month": label,
            "statement": _statement_payload(statement),
            "sla": {name: _breakdown_payload(member_sla[name]) for name in sorted(member_sla)},
        }

        path = out_dir / f"member_{sanitize_filename(member_id)}_{label}.json"
        self._write_json(path, payload)
        return path

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _write_json(self, path: Path, payload: dict[str, Any]) -> None:
        self._write_text(path, json.dumps(payload, indent=self._indent, sort_keys=True) + "\n")

    def _write_text(self, path: Path, content: str) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
