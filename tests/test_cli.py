"""
Tests for the command-line interface.
"""

import json
from unittest.mock import patch

import pytest

from schema_sunset.cli import EXIT_FAILED, EXIT_OK, EXIT_USAGE, build_parser, main

from conftest import table_names


@pytest.fixture
def cli(tmp_path, target_db, capsys):
    """Run the CLI against temporary databases and return (exit code, parsed JSON output)."""
    base = ["--target", target_db, "--metadata", str(tmp_path / "meta.db"),
            "--backup-dir", str(tmp_path / "backups")]

    def run(*args, as_json=True):
        argv = base + (["--json"] if as_json else []) + list(args)
        code = main(argv)
        out = capsys.readouterr().out
        return code, json.loads(out) if as_json and out.strip() else out

    return run


class TestParser:
    """Test argument parsing."""

    def test_reason_choices(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["plan", "orders", "--reason", "boredom"])
        assert exc_info.value.code == 2

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_approve_needs_identity(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["approve", "dep_1", "--role", "dba"])

    def test_defaults(self):
        args = build_parser().parse_args(["execute-phase2", "dep_1"])
        assert args.confirm is False
        assert args.by == "system"


class TestCommands:
    """Test commands end to end."""

    def test_plan_phase1_status(self, cli, target_db):
        code, payload = cli("plan", "orders_archive", "--reason", "unused", "--by", "alice")
        assert code == EXIT_OK
        [item] = payload["results"]
        assert item["created"]
        assert item["phase"] == "proposed"
        deprecation_id = item["deprecation_id"]

        code, payload = cli("execute-phase1", deprecation_id)
        assert code == EXIT_OK
        assert payload["to_phase"] == "phase1_active"
        deprecated_name = payload["record"]["deprecated_name"]
        assert deprecated_name.startswith("orders_archive_deprecated_")
        assert deprecated_name in table_names(target_db)

        code, payload = cli("status", deprecated_name)
        assert code == EXIT_OK
        assert payload["record"]["id"] == deprecation_id
        assert payload["missing_roles"] == ["dba"]

    def test_phase2_requires_confirm(self, cli):
        _, payload = cli("plan", "scratch", "--reason", "unused")
        deprecation_id = payload["results"][0]["deprecation_id"]
        cli("execute-phase1", deprecation_id)

        code, payload = cli("execute-phase2", deprecation_id)
        assert code == EXIT_FAILED
        assert payload["error"]["error"] == "confirmation_required"

    def test_failed_plan_exit_code(self, cli):
        code, payload = cli("plan", "missing_table", "--reason", "unused")
        assert code == EXIT_FAILED
        assert payload["results"][0]["error"]["error"] == "element_not_found"

    def test_approve_and_list(self, cli):
        _, payload = cli("plan", "scratch", "--reason", "unused")
        deprecation_id = payload["results"][0]["deprecation_id"]
        cli("execute-phase1", deprecation_id)

        code, payload = cli("approve", deprecation_id, "--role", "dba", "--by", "bob", "--justification", "unused")
        assert code == EXIT_OK

        code, payload = cli("list")
        assert [r["id"] for r in payload["records"]] == [deprecation_id]

    def test_rollback(self, cli, target_db):
        _, payload = cli("plan", "scratch", "--reason", "unused")
        deprecation_id = payload["results"][0]["deprecation_id"]
        cli("execute-phase1", deprecation_id)

        code, payload = cli("rollback", deprecation_id, "--reason", "still needed")
        assert code == EXIT_OK
        assert payload["to_phase"] == "rolled_back"
        assert "scratch" in table_names(target_db)

        _, payload = cli("list")
        assert payload["records"] == []
        _, payload = cli("list", "--all")
        assert len(payload["records"]) == 1

    def test_backup_and_verify(self, cli):
        _, payload = cli("plan", "orders_archive", "--reason", "unused")
        deprecation_id = payload["results"][0]["deprecation_id"]

        code, payload = cli("backup", deprecation_id)
        assert code == EXIT_OK
        backup_id = payload["backup"]["id"]
        assert payload["backup"]["status"] == "pending"

        code, payload = cli("verify-backup", backup_id)
        assert code == EXIT_OK
        assert payload["backup"]["status"] == "verified"

    def test_unknown_record(self, cli):
        code, payload = cli("status", "dep_missing")
        assert code == EXIT_FAILED
        assert payload["error"]["error"] == "record_not_found"

    def test_unknown_backup(self, cli):
        code, payload = cli("verify-backup", "bk_missing")
        assert code == EXIT_FAILED
        assert payload["error"]["error"] == "backup_unavailable"

    def test_names_and_maintenance(self, cli):
        code, payload = cli("names")
        assert code == EXIT_OK
        assert payload["total"] == 0

        code, payload = cli("maintenance")
        assert code == EXIT_OK
        assert [r["operation"] for r in payload["reports"]] == ["metadata_integrity_check", "schema_drift_detection"]

    def test_text_output(self, cli):
        code, out = cli("plan", "scratch", "--reason", "unused", as_json=False)

        assert code == EXIT_OK
        assert out.startswith("table:scratch: dep_")
        assert "(created, proposed)" in out
        assert "[ok  ] element-eligibility" in out


class TestUsageErrors:
    """Test configuration and usage failures."""

    def test_metadata_must_differ_from_target(self, target_db, capsys):
        code = main(["--target", target_db, "--metadata", target_db, "names"])

        assert code == EXIT_USAGE
        assert "must not be the target" in capsys.readouterr().err

    def test_bad_policy_file(self, cli):
        with patch("schema_sunset.cli.load_policies", side_effect=ValueError("Unknown environment in policy file")):
            code, _ = cli("names")
        assert code == EXIT_USAGE

    def test_invalid_configuration(self, cli):
        with patch("schema_sunset.cli.validate_config", return_value=["MONITOR_BATCH_SIZE must be >= 1"]):
            code, _ = cli("names")
        assert code == EXIT_USAGE

    def test_malformed_element(self, cli):
        code, _ = cli("plan", "orders.", "--reason", "unused")
        assert code == EXIT_USAGE
