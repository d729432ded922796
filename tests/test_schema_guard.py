from __future__ import annotations

import unittest
from unittest.mock import patch

from authcore.services.schema_guard import REQUIRED_TABLE_COLUMNS, verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        unique_constraints: dict[str, list[str]] | None = None,
        constraint_error: Exception | None = None,
    ):
        self._columns_by_table = columns_by_table
        self._unique_constraints = unique_constraints or {}
        self._constraint_error = constraint_error

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        if self._constraint_error is not None:
            raise self._constraint_error
        return [{"name": name} for name in self._unique_constraints.get(table_name, [])]


def _complete_columns() -> dict[str, set[str]]:
    return {table: set(columns) for table, columns in REQUIRED_TABLE_COLUMNS.items()}


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_complete_columns(),
            unique_constraints={"user_devices": ["uq_user_devices_user_fingerprint"]},
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("authcore.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        columns = _complete_columns()
        columns["users"] = {"id", "email", "password_hash"}
        columns["user_sessions"] = {"id", "user_id"}
        fake_inspector = _FakeInspector(columns_by_table=columns)
        fake_engine = _FakeEngine("")

        with patch("authcore.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:users:locked_until,login_attempts,two_factor_enabled", result.issues)
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:user_sessions:") for item in result.issues))
        self.assertIn("MISSING_UNIQUE_CONSTRAINTS:user_devices:uq_user_devices_user_fingerprint", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_constraint_inspection_failure_is_a_warning(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_complete_columns(),
            constraint_error=NotImplementedError("dialect"),
        )

        with patch("authcore.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["CONSTRAINT_INSPECTION_FAILED:user_devices:NotImplementedError"])
        self.assertEqual(result.to_dict()["warning_count"], 1)


if __name__ == "__main__":
    unittest.main()
