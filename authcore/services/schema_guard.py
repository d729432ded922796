from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "email", "password_hash", "two_factor_enabled", "login_attempts", "locked_until"},
    "user_devices": {"id", "user_id", "fingerprint", "trusted", "is_account_creation_device", "usage_count"},
    "user_sessions": {"id", "user_id", "device_id", "session_token", "refresh_token", "expires_at", "is_active"},
    "two_factor_backup_codes": {"id", "user_id", "code_hash", "used_at"},
    "auth_logs": {"id", "action", "success", "risk_score", "flagged", "details"},
    "login_analytics": {"id", "user_id", "day_of_week", "hour_of_day", "country", "city"},
    "alembic_version": {"version_num"},
}

# Device resolution relies on this constraint to detect concurrent inserts.
REQUIRED_UNIQUE_CONSTRAINTS: dict[str, set[str]] = {
    "user_devices": {"uq_user_devices_user_fingerprint"},
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name, required_names in REQUIRED_UNIQUE_CONSTRAINTS.items():
        try:
            constraints = inspector.get_unique_constraints(table_name) or []
        except Exception as exc:
            warnings.append(f"CONSTRAINT_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        present = {str(item.get("name") or "") for item in constraints}
        missing_names = sorted(name for name in required_names if name not in present)
        if missing_names:
            issues.append(f"MISSING_UNIQUE_CONSTRAINTS:{table_name}:{','.join(missing_names)}")

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
    except Exception as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
