"""Unit tests for initial Alembic migration orchestration."""

from __future__ import annotations

import importlib.util
from pathlib import Path
import re
import sys
from typing import Any

import pytest

from backend.db import Base


MIGRATION_PATH = (
    Path(__file__).resolve().parents[1]
    / "backend"
    / "db"
    / "migrations"
    / "versions"
    / "0001_initial_schema.py"
)


class _OpStub:
    def __init__(self, *, fail_on: str | None = None) -> None:
        self.calls: list[str] = []
        self.fail_on = fail_on

    def execute(self, statement: str) -> None:
        self.calls.append(statement)
        if self.fail_on and self.fail_on in statement:
            raise RuntimeError("forced migration failure")


def _load_migration_module(module_name: str, op_stub: _OpStub, monkeypatch: pytest.MonkeyPatch) -> Any:
    spec = importlib.util.spec_from_file_location(module_name, MIGRATION_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    monkeypatch.setitem(sys.modules, module_name, module)
    spec.loader.exec_module(module)
    monkeypatch.setattr(module, "op", op_stub)
    return module


def test_revision_metadata_constants(monkeypatch: pytest.MonkeyPatch) -> None:
    module = _load_migration_module("migration_0001_meta", _OpStub(), monkeypatch)
    assert module.revision == "0001_initial_schema"
    assert module.down_revision is None
    assert module.branch_labels is None
    assert module.depends_on is None


def test_execute_all_runs_all_statements_and_empty(monkeypatch: pytest.MonkeyPatch) -> None:
    op_stub = _OpStub()
    module = _load_migration_module("migration_0001_execute", op_stub, monkeypatch)

    module._execute_all(("SELECT 1;", "SELECT 2;"))
    assert op_stub.calls == ["SELECT 1;", "SELECT 2;"]

    op_stub.calls.clear()
    module._execute_all(())
    assert op_stub.calls == []


def test_execute_all_logs_and_reraises(monkeypatch: pytest.MonkeyPatch) -> None:
    op_stub = _OpStub(fail_on="SELECT 2")
    module = _load_migration_module("migration_0001_execute_error", op_stub, monkeypatch)

    seen: list[str] = []
    monkeypatch.setattr(module.logger, "exception", lambda message: seen.append(message))
    with pytest.raises(RuntimeError, match="forced migration failure"):
        module._execute_all(("SELECT 1;", "SELECT 2;"))

    assert seen == ["Migration statement failed."]
    assert op_stub.calls == ["SELECT 1;", "SELECT 2;"]


def test_upgrade_orchestration_order(monkeypatch: pytest.MonkeyPatch) -> None:
    module = _load_migration_module("migration_0001_upgrade", _OpStub(), monkeypatch)

    groups: list[tuple[str, ...]] = []
    monkeypatch.setattr(module, "_execute_all", lambda statements: groups.append(tuple(statements)))
    module.upgrade()

    assert groups == [
        module.ENUM_DDL,
        module.TABLE_DDL,
        module.INDEX_DDL,
        module.APPEND_ONLY_DDL,
    ]


def test_table_ddl_covers_model_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    module = _load_migration_module("migration_0001_tables", _OpStub(), monkeypatch)

    created = {
        match.group(1)
        for statement in module.TABLE_DDL
        for match in [re.search(r"CREATE TABLE (\w+)", statement)]
        if match
    }
    assert created == set(Base.metadata.tables)


def test_append_only_triggers_guard_trade_and_event_tables(monkeypatch: pytest.MonkeyPatch) -> None:
    module = _load_migration_module("migration_0001_append_only", _OpStub(), monkeypatch)

    ddl = "\n".join(module.APPEND_ONLY_DDL)
    assert "CREATE OR REPLACE FUNCTION fn_enforce_append_only()" in ddl
    assert "trg_trade_append_only" in ddl
    assert "trg_engine_event_append_only" in ddl


def test_downgrade_orchestration_drop_bundle(monkeypatch: pytest.MonkeyPatch) -> None:
    module = _load_migration_module("migration_0001_downgrade", _OpStub(), monkeypatch)

    statements_seen: list[tuple[str, ...]] = []
    monkeypatch.setattr(module, "_execute_all", lambda statements: statements_seen.append(tuple(statements)))
    module.downgrade()

    assert len(statements_seen) == 1
    drops = statements_seen[0]
    assert drops[0].startswith("DROP TRIGGER IF EXISTS trg_engine_event_append_only")
    assert "DROP FUNCTION IF EXISTS fn_enforce_append_only();" in drops
    dropped_tables = {stmt.split()[-1].rstrip(";") for stmt in drops if stmt.startswith("DROP TABLE")}
    assert dropped_tables == set(Base.metadata.tables)
    assert drops[-1] == "DROP TYPE IF EXISTS trade_side_enum;"
