"""
Integration tests for the operator CLI.

Tests cover:
- Argument parsing
- Each subcommand against a live service
- Exit codes and JSON output of main()
"""

import json

import pytest

from ops.backup_server.errors import InvalidArgumentError
from ops.backup_server.tools.backup_cli import (
    build_parser,
    main,
    parse_timestamp,
    run_command,
)

from tests.helpers import fetch_all, run_sql


@pytest.fixture
def cli_env(monkeypatch, db_path, work_dir):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("DATABASE_PATH", db_path)
    monkeypatch.setenv("BACKUP_WORK_DIR", work_dir)
    monkeypatch.setenv("SQLITE_WAL_MODE", "false")
    return monkeypatch


def parse(*argv):
    return build_parser().parse_args(list(argv))


class TestParser:
    """Tests for argument parsing."""

    def test_restore_arguments(self):
        args = parse("restore", "memory://full/x", "--tables", "employees", "transactions", "--dry-run")

        assert args.command == "restore"
        assert args.artifact_id == "memory://full/x"
        assert args.tables == ["employees", "transactions"]
        assert args.dry_run is True

    def test_command_required(self):
        with pytest.raises(SystemExit) as exc_info:
            parse()

        assert exc_info.value.code == 2

    def test_kind_choices(self):
        with pytest.raises(SystemExit):
            parse("list", "--kind", "weekly")

    def test_parse_timestamp(self):
        moment = parse_timestamp("2026-10-18T09:30:00Z")

        assert moment.utcoffset().total_seconds() == 0
        assert moment.hour == 9

        with pytest.raises(InvalidArgumentError):
            parse_timestamp("yesterday")


class TestRunCommand:
    """Tests for run_command against a started service."""

    @pytest.mark.asyncio
    async def test_backup_list_tables(self, service):
        created = await run_command(parse("backup"), service)
        artifact_id = created["artifact"]["id"]

        listed = await run_command(parse("list", "--kind", "full"), service)
        tables = await run_command(parse("tables", artifact_id), service)

        assert [a["id"] for a in listed] == [artifact_id]
        assert tables["tables"] == ["employees", "transactions"]

    @pytest.mark.asyncio
    async def test_restore_and_diff(self, service, db_path):
        created = await run_command(parse("backup"), service)
        artifact_id = created["artifact"]["id"]
        run_sql(db_path, "DELETE FROM employees")

        diff = await run_command(parse("diff", artifact_id), service)
        restored = await run_command(parse("restore", artifact_id, "--tables", "employees"), service)

        assert {t["name"]: t["status"] for t in diff["tables"]}["employees"] == "changed"
        assert restored["rows_restored"] == {"employees": 3}
        assert len(fetch_all(db_path, "SELECT * FROM employees")) == 3

    @pytest.mark.asyncio
    async def test_export_and_recover(self, service, db_path):
        await run_command(parse("backup"), service)
        run_sql(db_path, "INSERT INTO employees VALUES (4, 'Four', 4.0, NULL)")
        exported = await run_command(parse("export"), service)
        run_sql(db_path, "DELETE FROM employees")

        recovered = await run_command(parse("recover"), service)

        assert exported["artifact"]["kind"] == "incremental"
        assert recovered["changes_applied"] == 1
        assert len(fetch_all(db_path, "SELECT * FROM employees")) == 4

    @pytest.mark.asyncio
    async def test_export_with_nothing_pending(self, service):
        assert await run_command(parse("export"), service) == {"artifact": None}


class TestMain:
    """Tests for the CLI entry point."""

    def test_backup_exit_zero(self, cli_env, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["backup"])

        assert exc_info.value.code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["artifact"]["kind"] == "full"

    def test_backup_error_exit_one(self, cli_env, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["tables", "memory://full/nope"])

        assert exc_info.value.code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["error"]["code"] == "NOT_FOUND"

    def test_database_override(self, cli_env, data_dir, capsys):
        cli_env.setenv("DATABASE_PATH", "/nonexistent/ignored.db")

        with pytest.raises(SystemExit) as exc_info:
            main(["--database", str(data_dir) + "/intranet.db", "backup"])

        assert exc_info.value.code == 0
        artifact = json.loads(capsys.readouterr().out)["artifact"]
        assert artifact["kind"] == "full"

    def test_configuration_error_exit_two(self, cli_env, capsys):
        cli_env.setenv("STORAGE_BACKEND", "ftp")

        with pytest.raises(SystemExit) as exc_info:
            main(["list"])

        assert exc_info.value.code == 2
        assert "Configuration error" in capsys.readouterr().err
