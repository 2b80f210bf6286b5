#!/usr/bin/env python3
"""Emit deterministic SQL that provisions a grievance admin and its Supabase role."""

from __future__ import annotations

import argparse

ADMIN_ROLES = ("DEPT_ADMIN", "CAMPUS_ADMIN", "SUPER_ADMIN")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _sql_or_null(value: str | int | None) -> str:
    if value is None:
        return "null"
    if isinstance(value, int):
        return str(value)
    return _quote_sql(value)


def render_sql(
    *,
    admin_id: str,
    name: str,
    email: str,
    role: str,
    campus_id: int | None,
    department: str | None,
    actor: str,
) -> str:
    if role in {"CAMPUS_ADMIN", "DEPT_ADMIN"} and campus_id is None:
        raise ValueError(f"{role} requires --campus-id")
    if role == "DEPT_ADMIN" and not department:
        raise ValueError("DEPT_ADMIN requires --department")

    metadata = (
        f"jsonb_build_object('role', {_quote_sql(role)}, 'admin_id', {_quote_sql(admin_id)}, "
        f"'campus_id', {_sql_or_null(campus_id)}, 'department', {_sql_or_null(department)})"
    )

    return f"""-- Grievance admin bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).

insert into admins (admin_id, name, email, role, campus_id, department, is_active)
values ({_quote_sql(admin_id)}, {_quote_sql(name)}, {_quote_sql(email)}, {_quote_sql(role)}, {_sql_or_null(campus_id)}, {_sql_or_null(department)}, true)
on conflict (admin_id) do update
set
  name = excluded.name,
  email = excluded.email,
  role = excluded.role,
  campus_id = excluded.campus_id,
  department = excluded.department,
  is_active = true;

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || {metadata}
where email = {_quote_sql(email)};

insert into admin_audit_log (admin_id, action_type, details)
values ({_quote_sql(admin_id)}, 'ADMIN_BOOTSTRAP', jsonb_build_object('actor', {_quote_sql(actor)}, 'role', {_quote_sql(role)}));
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap a grievance admin.")
    parser.add_argument("--admin-id", required=True, help="Admin id recorded on tracking entries")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--email", required=True, help="Supabase auth.users email")
    parser.add_argument("--role", choices=ADMIN_ROLES, default="SUPER_ADMIN")
    parser.add_argument("--campus-id", type=int, default=None, help="Campus for campus/department admins")
    parser.add_argument("--department", default=None, help="Department for department admins")
    parser.add_argument(
        "--actor",
        default="system",
        help="Actor label for the audit log payload",
    )
    args = parser.parse_args()

    try:
        sql = render_sql(
            admin_id=args.admin_id,
            name=args.name,
            email=args.email,
            role=args.role,
            campus_id=args.campus_id,
            department=args.department,
            actor=args.actor,
        )
    except ValueError as exc:
        parser.error(str(exc))

    print(sql)


if __name__ == "__main__":
    main()
