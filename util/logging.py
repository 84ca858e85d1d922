"""
Structured logging for the deprecation engine.
Every phase transition, safety evaluation, backup and rollback is logged through here.

Lines look like `backup.verify [failed] {"backup_id": "bk_1", ...}` so that they
stay greppable by operation and parseable by whatever ships the logs.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

LOG_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'

DEFAULT_SENSITIVE_FIELDS = ('rows', 'data', 'secret', 'password', 'key')

# event type prefix -> operation name used in audit lines
AUDIT_OPERATIONS = ('deprecation', 'approval', 'backup', 'rollback')


class StructuredLogger:
    """Structured logger for deprecation lifecycle operations."""

    def __init__(self, name: str = "schema_sunset"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # one handler per named logger, however many wrappers exist
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Optional[Dict[str, Any]] = None,
                      level: int = logging.INFO):
        message = f"{operation} [{status}]"
        if details:
            message = f"{message} {json.dumps(details, default=str, sort_keys=True)}"
        self.logger.log(level, message)

    def log_transition(self, deprecation_id: str, element_key: str, from_phase: str, to_phase: str,
                       status: str = "success", details: Optional[Dict[str, Any]] = None):
        """Log a phase transition attempt; anything but success is a warning."""
        fields = {"deprecation_id": deprecation_id, "element": element_key, "from": from_phase, "to": to_phase}
        fields.update(details or {})
        self.log_operation("deprecation.transition", status, fields,
                           logging.INFO if status == "success" else logging.WARNING)

    def log_safety_check(self, element_key: str, check_name: str, severity: str, passed: bool, message: str = ""):
        blocking = not passed and severity == "critical"
        self.log_operation("safety.check", "passed" if passed else "failed", {
            "element": element_key,
            "check": check_name,
            "severity": severity,
            "message": (message or "")[:200],
        }, logging.WARNING if blocking else logging.INFO)

    def log_backup_event(self, backup_id: str, action: str, status: str = "success",
                         details: Optional[Dict[str, Any]] = None):
        fields = {"backup_id": backup_id}
        fields.update(details or {})
        self.log_operation(f"backup.{action}", status, fields,
                           logging.ERROR if status == "failed" else logging.INFO)

    def log_access_alert(self, element_key: str, event_count: int, sources: Dict[str, int]):
        """Someone is still reading or writing an element that is being retired."""
        self.log_operation("monitor.deprecated_access", "alert",
                           {"element": element_key, "events": event_count, "sources": sources},
                           logging.WARNING)

    def log_approval_decision(self, deprecation_id: str, role: str, decision: str, approver: str,
                              justification: str = ""):
        self.log_operation("approval.decision", "approved" if decision == "approve" else "rejected", {
            "deprecation_id": deprecation_id,
            "role": role,
            "approver": approver,
            "justification": (justification or "")[:100],
        })

    def log_rollback(self, deprecation_id: str, mode: str, status: str = "success",
                     details: Optional[Dict[str, Any]] = None):
        """A failed rollback leaves the schema needing a human, so it logs at CRITICAL."""
        fields = {"deprecation_id": deprecation_id, "mode": mode}
        fields.update(details or {})
        self.log_operation("rollback.execute", status, fields,
                           logging.CRITICAL if status == "failed" else logging.INFO)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success",
                           details: Optional[Dict[str, Any]] = None):
        fields = {"duration_ms": round((end_time - start_time) * 1000, 2)}
        fields.update(details or {})
        self.log_operation(f"heartbeat.{task_name}", status, fields,
                           logging.INFO if status == "success" else logging.ERROR)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)


logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Optional[Dict[str, Any]] = None,
                sensitive_fields: Optional[List[str]] = None):
    """Log an audit line for event_type; payload values named in sensitive_fields are redacted."""
    fields = dict(identifiers or {})
    fields["event"] = event_type
    fields["ts"] = datetime.now().isoformat()
    if payload:
        fields["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    prefix = event_type.split("_", 1)[0]
    operation = prefix if prefix in AUDIT_OPERATIONS else event_type.replace(".", "_")
    logger.log_operation(operation, "audit", fields)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False,
                     sensitive_fields: Optional[List[str]] = None) -> Any:
    """Redact sensitive keys and shorten long strings, recursively."""
    hidden = set(DEFAULT_SENSITIVE_FIELDS if sensitive_fields is None else sensitive_fields)

    if isinstance(payload, dict):
        return {
            k: "[REDACTED]" if k in hidden and not reveal_sensitive
            else sanitize_payload(v, reveal_sensitive, sensitive_fields)
            for k, v in payload.items()
        }
    if isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    if isinstance(payload, str) and len(payload) > 100:
        return payload[:100] + "..."
    return payload
