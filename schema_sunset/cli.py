"""
Command-line interface for schema element deprecation.

Exit codes: 0 on success, 1 when an operation returns a structured failure,
2 for usage or configuration errors.
"""

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

from .core.config import (
    BACKUP_DIR,
    DEPRECATION_ENVIRONMENT,
    METADATA_DB_PATH,
    TARGET_DB_PATH,
    VALID_ENVIRONMENTS,
    load_policies,
    validate_config,
)
from .core.errors import DeprecationError
from .core.maintenance import run_maintenance
from .core.schema import Decision, ReasonCode
from .core.service import build_orchestrator, shutdown

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schema-sunset",
        description="Deprecate and safely remove database schema elements",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s plan orders_archive --reason unused --environment production
  %(prog)s execute-phase1 dep_0123456789ab
  %(prog)s approve dep_0123456789ab --role dba --by alice --justification "no readers in 30 days"
  %(prog)s execute-phase2 dep_0123456789ab --confirm
  %(prog)s rollback dep_0123456789ab --reason "reporting job still reads it"

Elements are written as table, table.column or index:name.

Environment variables:
- TARGET_DB_PATH, METADATA_DB_PATH, BACKUP_DIR (storage locations)
- DEPRECATION_ENVIRONMENT (default environment for new plans)
- DEPRECATION_POLICY_FILE (JSON policy overrides)
        """
    )
    parser.add_argument("--target", default=TARGET_DB_PATH, help="Database whose elements are deprecated")
    parser.add_argument("--metadata", default=METADATA_DB_PATH, help="Deprecation metadata store")
    parser.add_argument("--backup-dir", default=BACKUP_DIR, help="Directory for backup files")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")

    commands = parser.add_subparsers(dest="command", required=True)

    plan = commands.add_parser("plan", help="Propose deprecating one or more elements")
    plan.add_argument("elements", nargs="+", help="Elements to deprecate")
    plan.add_argument("--reason", required=True, choices=[r.value for r in ReasonCode])
    plan.add_argument("--environment", "-e", default=DEPRECATION_ENVIRONMENT, choices=VALID_ENVIRONMENTS)
    plan.add_argument("--by", default="system", help="Who is proposing the deprecation")

    phase1 = commands.add_parser("execute-phase1", help="Rename an element to its deprecated name")
    phase1.add_argument("id", help="Deprecation id")
    phase1.add_argument("--by", help="Operator executing the phase")

    status = commands.add_parser("status", help="Show the state of a deprecation")
    status.add_argument("identifier", help="Deprecation id, element or deprecated name")

    approve = commands.add_parser("approve", help="Record an approval decision for Phase 2")
    approve.add_argument("id", help="Deprecation id")
    approve.add_argument("--role", required=True, help="Role the approver signs for")
    approve.add_argument("--by", required=True, help="Approver identity")
    approve.add_argument("--reject", action="store_true", help="Record a rejection instead")
    approve.add_argument("--justification", default="", help="Reason for the decision")

    phase2 = commands.add_parser("execute-phase2", help="Permanently remove a deprecated element")
    phase2.add_argument("id", help="Deprecation id")
    phase2.add_argument("--confirm", action="store_true", help="Confirm the irreversible removal")
    phase2.add_argument("--by", default="system", help="Operator executing the phase")

    rollback = commands.add_parser("rollback", help="Restore an element to its original state")
    rollback.add_argument("id", help="Deprecation id")
    rollback.add_argument("--reason", required=True, help="Why the deprecation is rolled back")
    rollback.add_argument("--by", default="system", help="Operator requesting the rollback")

    listing = commands.add_parser("list", help="List deprecation records")
    listing.add_argument("--all", action="store_true", help="Include completed and rolled back records")

    backup = commands.add_parser("backup", help="Create a backup for a deprecation")
    backup.add_argument("id", help="Deprecation id")
    backup.add_argument("--verify", action="store_true", help="Verify the backup after creating it")

    verify = commands.add_parser("verify-backup", help="Verify an existing backup")
    verify.add_argument("backup_id", help="Backup id")

    commands.add_parser("names", help="Statistics over deprecated names in the live schema")
    commands.add_parser("maintenance", help="Check metadata integrity and schema drift")

    return parser


# Human-readable output

def _format_error(error: Dict[str, Any]) -> List[str]:
    lines = [f"ERROR [{error['error']}]: {error['message']}"]
    if error.get("remediation"):
        lines.append(f"  Remediation: {error['remediation']}")
    return lines


def _format_report(report: Optional[Dict[str, Any]]) -> List[str]:
    if not report:
        return []
    lines = [f"  Risk: {report['risk_level']}  Checks passed: {report['passed']}"]
    for result in report["results"]:
        mark = "ok" if result["passed"] else "FAIL"
        lines.append(f"    [{mark:4}] {result['check_name']} ({result['severity']}): {result['message']}")
    return lines


def _format_transition(payload: Dict[str, Any]) -> List[str]:
    if not payload["success"]:
        lines = _format_error(payload["error"])
        if payload["failed_checks"]:
            lines.append(f"  Failed checks: {', '.join(payload['failed_checks'])}")
        return lines + _format_report(payload["report"])

    record = payload["record"] or {}
    lines = [f"{payload['deprecation_id']}: {payload['from_phase']} -> {payload['to_phase']}"]
    if record.get("deprecated_name"):
        lines.append(f"  Deprecated name: {record['deprecated_name']}")
    if payload["backup"]:
        lines.append(f"  Backup: {payload['backup']['id']} ({payload['backup']['status']})")
    if payload["rollback"]:
        rollback = payload["rollback"]
        lines.append(f"  Rollback: {len(rollback['completed_steps'])} of {rollback['total_steps']} step(s) completed")
    return lines + _format_report(payload["report"])


def _format_plan(payload: Dict[str, Any]) -> List[str]:
    lines = []
    for item in payload["results"]:
        if not item["success"]:
            lines.append(f"{item['element']}:")
            lines.extend("  " + line for line in _format_error(item["error"]))
            continue
        state = "created" if item["created"] else "existing"
        lines.append(f"{item['element']}: {item['deprecation_id']} ({state}, {item['phase']})")
        lines.extend(_format_report(item["report"]))
    return lines


def _format_status(payload: Dict[str, Any]) -> List[str]:
    record = payload["record"]
    lines = [
        f"Deprecation {record['id']}",
        f"  Element: {record['element_key']}",
        f"  Phase: {payload['phase']}",
        f"  Visible as: {payload['live_name']}",
        f"  Reason: {record['reason']}  Environment: {record['environment']}",
        f"  Risk: {payload['risk_level']}",
    ]
    if payload["monitoring_ends_at"]:
        lines.append(f"  Monitoring ends: {payload['monitoring_ends_at']}")
    if payload["missing_roles"]:
        lines.append(f"  Missing approvals: {', '.join(payload['missing_roles'])}")
    if payload["rejected_roles"]:
        lines.append(f"  Rejected by: {', '.join(payload['rejected_roles'])}")
    if payload["access"]:
        access = payload["access"]
        lines.append(f"  Accesses in window: {access['total_events']} (last: {access['last_seen']})")
    if payload["backup"]:
        backup = payload["backup"]
        lines.append(f"  Backup: {backup['id']} ({backup['status']}, expires {backup['expires_at']})")
    if payload["safety_attempts"]:
        lines.append("  Latest safety evaluation:")
        lines.extend("  " + line for line in _format_report(payload["safety_attempts"][-1]))
    return lines


def _format_list(payload: Dict[str, Any]) -> List[str]:
    if not payload["records"]:
        return ["No deprecation records"]
    return [
        f"{r['id']}  {r['phase']:<16} {r['element_key']:<40} {r['deprecated_name'] or ''}"
        for r in payload["records"]
    ]


def _format_backup(payload: Dict[str, Any]) -> List[str]:
    backup = payload["backup"]
    lines = [f"Backup {backup['id']}: {backup['status']}",
             f"  Element: {backup['element_key']}  Rows: {backup['row_count']}",
             f"  Encrypted: {backup['encrypted']}  Expires: {backup['expires_at']}"]
    if backup["diagnostic"]:
        lines.append(f"  Diagnostic: {backup['diagnostic']}")
    return lines


def _format_names(payload: Dict[str, Any]) -> List[str]:
    if "error" in payload:
        return _format_error(payload["error"])
    lines = [f"Deprecated names: {payload['total']}"]
    for reason, count in sorted(payload["by_reason"].items()):
        lines.append(f"  {reason}: {count}")
    if payload["total"]:
        lines.append(f"  Age (days): oldest {payload['oldest_days']}, newest {payload['newest_days']}, "
                     f"average {payload['average_age_days']}")
    return lines


def _format_maintenance(payload: Dict[str, Any]) -> List[str]:
    lines = []
    for report in payload["reports"]:
        state = "healthy" if report["healthy"] else f"{report['issues_found']} issue(s)"
        lines.append(f"{report['operation']}: {state}")
        lines.extend(f"  ERROR: {e}" for e in report["errors"])
        lines.extend(f"  Recommendation: {r}" for r in report["recommendations"])
    return lines


# Command handlers; each returns (success, payload, formatter)

def _cmd_plan(orchestrator, args) -> Tuple[bool, Dict[str, Any], Any]:
    results = orchestrator.plan(args.elements, args.reason, environment=args.environment, created_by=args.by)
    payload = {"results": [r.to_dict() for r in results]}
    return all(r.success for r in results), payload, _format_plan


def _cmd_phase1(orchestrator, args):
    result = orchestrator.execute_phase1(args.id, executed_by=args.by)
    return result.success, result.to_dict(), _format_transition


def _cmd_status(orchestrator, args):
    return True, orchestrator.status(args.identifier).to_dict(), _format_status


def _cmd_approve(orchestrator, args):
    decision = Decision.REJECT if args.reject else Decision.APPROVE
    result = orchestrator.approve(args.id, args.role, args.by, decision, args.justification)
    return result.success, result.to_dict(), _format_transition


def _cmd_phase2(orchestrator, args):
    result = orchestrator.execute_phase2(args.id, confirm=args.confirm, executed_by=args.by)
    return result.success, result.to_dict(), _format_transition


def _cmd_rollback(orchestrator, args):
    result = orchestrator.rollback(args.id, args.reason, requested_by=args.by)
    return result.success, result.to_dict(), _format_transition


def _cmd_list(orchestrator, args):
    records = orchestrator.list_records(active_only=not args.all)
    return True, {"records": [r.to_dict() for r in records]}, _format_list


def _cmd_backup(orchestrator, args):
    result = orchestrator.prepare_backup(args.id, verify=args.verify)
    return result.success, result.to_dict(), _format_transition


def _cmd_verify_backup(orchestrator, args):
    backup = orchestrator.verify_backup(args.backup_id)
    return backup.status.value == "verified", {"backup": backup.to_dict()}, _format_backup


def _cmd_names(orchestrator, args):
    summary = orchestrator.naming_summary()
    return "error" not in summary, summary, _format_names


def _cmd_maintenance(orchestrator, args):
    reports = run_maintenance(orchestrator)
    payload = {"reports": [r.to_dict() for r in reports]}
    return all(r.healthy for r in reports), payload, _format_maintenance


COMMANDS = {
    "plan": _cmd_plan,
    "execute-phase1": _cmd_phase1,
    "status": _cmd_status,
    "approve": _cmd_approve,
    "execute-phase2": _cmd_phase2,
    "rollback": _cmd_rollback,
    "list": _cmd_list,
    "backup": _cmd_backup,
    "verify-backup": _cmd_verify_backup,
    "names": _cmd_names,
    "maintenance": _cmd_maintenance,
}


def _emit(payload: Dict[str, Any], formatter, as_json: bool):
    if as_json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        for line in formatter(payload):
            print(line)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if os.path.abspath(args.metadata) == os.path.abspath(args.target):
        print("ERROR: the metadata store must not be the target database", file=sys.stderr)
        return EXIT_USAGE

    try:
        policies = load_policies()
    except (OSError, ValueError) as e:
        print(f"ERROR: Invalid policy configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    issues = validate_config(policies)
    if issues:
        print("ERROR: Invalid configuration:", file=sys.stderr)
        for issue in issues:
            print(f"  - {issue}", file=sys.stderr)
        return EXIT_USAGE

    orchestrator = build_orchestrator(
        target_path=args.target,
        metadata_path=args.metadata,
        backup_dir=args.backup_dir,
        policies=policies,
    )
    try:
        success, payload, formatter = COMMANDS[args.command](orchestrator, args)
    except DeprecationError as e:
        _emit({"success": False, "error": e.to_dict()}, lambda p: _format_error(p["error"]), args.json)
        return EXIT_FAILED
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        shutdown(orchestrator)

    _emit(payload, formatter, args.json)
    return EXIT_OK if success else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
