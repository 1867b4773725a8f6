from __future__ import annotations

import argparse
import json
import sys
from collections import Counter, defaultdict
from dataclasses import asdict

from sqlalchemy.orm import sessionmaker

from app.ops.integrity_checks import (
    SEVERITY_CRITICAL,
    SEVERITY_WARN,
    IntegrityFinding,
    resolve_locations,
    run_integrity_checks,
)
from app.stocklink.core.config import settings
from app.stocklink.db.session import build_engine


def transfer_of(finding: IntegrityFinding) -> str | None:
    """Transfer a finding is about, whether it points at the transfer row or one of its items."""
    if finding.entity == "transfers":
        return finding.entity_id
    return finding.details.get("transfer_id")


def _group_by_transfer(findings: list[IntegrityFinding]) -> list[dict]:
    grouped: dict[str, list[IntegrityFinding]] = defaultdict(list)
    for finding in findings:
        transfer_id = transfer_of(finding)
        if transfer_id is not None:
            grouped[transfer_id].append(finding)
    rows = []
    for transfer_id, items in grouped.items():
        severities = Counter(f.severity for f in items)
        rows.append(
            {
                "transfer_id": transfer_id,
                "location_id": items[0].location_id,
                "critical": severities.get(SEVERITY_CRITICAL, 0),
                "warn": severities.get(SEVERITY_WARN, 0),
                "checks": sorted({f.check_id for f in items}),
                "findings": [asdict(f) for f in items],
            }
        )
    # Worst transfers first.
    rows.sort(key=lambda row: (-row["critical"], -row["warn"], row["transfer_id"]))
    return rows


def build_report(findings: list[IntegrityFinding]) -> dict:
    severities = Counter(f.severity for f in findings)
    by_check = Counter(f.check_id for f in findings)
    return {
        "summary": {
            "total": len(findings),
            "critical": severities.get(SEVERITY_CRITICAL, 0),
            "warn": severities.get(SEVERITY_WARN, 0),
            "by_check": dict(sorted(by_check.items())),
            "transfers_affected": len({transfer_of(f) for f in findings} - {None}),
        },
        "transfers": _group_by_transfer(findings),
        "unlinked": [asdict(f) for f in findings if transfer_of(f) is None],
        "findings": [asdict(f) for f in findings],
    }


def _finding_line(finding: dict, indent: str = "  ") -> str:
    line = f"{indent}[{finding['severity']}] {finding['check_id']} {finding['message']}"
    if finding["entity"] != "transfers":
        line += f" ({finding['entity']} {finding['entity_id'] or '-'})"
    return line


def format_text(report: dict) -> str:
    summary = report["summary"]
    lines = [
        "Transfer Integrity Scan",
        f"Findings: {summary['total']} (CRITICAL {summary['critical']}, WARN {summary['warn']})",
        f"Transfers affected: {summary['transfers_affected']}",
    ]
    if summary["by_check"]:
        lines.append("")
        lines.append("By check:")
        lines.extend(f"  {check_id}: {count}" for check_id, count in summary["by_check"].items())
    for row in report["transfers"]:
        lines.append("")
        lines.append(
            f"Transfer {row['transfer_id']} (location {row['location_id']}): "
            f"CRITICAL {row['critical']}, WARN {row['warn']}"
        )
        lines.extend(_finding_line(finding) for finding in row["findings"])
    if report["unlinked"]:
        lines.append("")
        lines.append("Not tied to a transfer:")
        for finding in report["unlinked"]:
            lines.append(_finding_line(finding))
            if finding["details"]:
                lines.append(f"    details={json.dumps(finding['details'], default=str)}")
    return "\n".join(lines)


def run_scan(location: str, output_format: str, fail_on_critical: bool, *, database_url: str | None = None) -> int:
    if not settings.OPS_ENABLE_INTEGRITY_SCAN:
        print("Integrity scan disabled by OPS_ENABLE_INTEGRITY_SCAN.", file=sys.stderr)
        return 2
    engine = build_engine(database_url or settings.DATABASE_URL)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    try:
        with SessionLocal() as db:
            try:
                location_ids = resolve_locations(db, location)
            except ValueError:
                print(f"Invalid location id: {location}", file=sys.stderr)
                return 2
            findings: list[IntegrityFinding] = []
            for location_id in location_ids:
                findings.extend(run_integrity_checks(db, location_id))
    finally:
        engine.dispose()
    report = build_report(findings)
    if output_format == "json":
        print(json.dumps(report, indent=2, default=str))
    else:
        print(format_text(report))
    if fail_on_critical and report["summary"]["critical"] > 0:
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Stocklink transfer integrity scan")
    parser.add_argument("--location", required=True, help="Location ID or 'all'")
    parser.add_argument("--format", choices=["json", "text"], default="text")
    parser.add_argument("--fail-on-critical", action="store_true")
    args = parser.parse_args(argv)
    return run_scan(args.location, args.format, args.fail_on_critical)


if __name__ == "__main__":
    raise SystemExit(main())
