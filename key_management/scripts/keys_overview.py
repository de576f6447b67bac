#!/usr/bin/env python3
"""Database overview and integrity checks for the key management tables."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = [
    "KeySystems",
    "Keys",
    "Cards",
    "CardCodes",
    "KeyLoans",
    "KeyLoanKeys",
    "KeyLoanCards",
    "Receipts",
    "KeyEvents",
    "KeyEventKeys",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Keys": [
        "KeyID",
        "RentalObjectCode",
        "KeyName",
        "KeyType",
        "KeySequenceNumber",
        "FlexNumber",
        "Disposed",
        "KeySystemID",
    ],
    "KeyLoans": [
        "KeyLoanID",
        "Contact",
        "Contact2",
        "LoanType",
        "CreatedAt",
        "PickedUpAt",
        "ReturnedAt",
        "AvailableToNextTenantFrom",
    ],
    "KeyEvents": ["KeyEventID", "Type", "Status", "CreatedAt", "UpdatedAt"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {column["name"] for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    tables = _table_names(engine)
    return [CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing") for table in EXPECTED_TABLES]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    tables = _table_names(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []
    tables = _table_names(engine)

    if {"KeyLoans", "KeyLoanKeys"} <= tables:
        checks.append(
            _count_check(
                engine,
                "keys:in_multiple_open_loans",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT lk.KeyID
                    FROM KeyLoanKeys lk
                    JOIN KeyLoans l ON l.KeyLoanID = lk.KeyLoanID
                    WHERE l.ReturnedAt IS NULL
                    GROUP BY lk.KeyID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )
    if {"KeyLoans", "KeyLoanCards"} <= tables:
        checks.append(
            _count_check(
                engine,
                "cards:in_multiple_open_loans",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT lc.CardID
                    FROM KeyLoanCards lc
                    JOIN KeyLoans l ON l.KeyLoanID = lc.KeyLoanID
                    WHERE l.ReturnedAt IS NULL
                    GROUP BY lc.CardID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )
    if "Keys" in tables:
        checks.append(
            _count_check(
                engine,
                "keys:duplicate_sequence_in_generation",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT RentalObjectCode, KeyName, KeyType, FlexNumber, KeySequenceNumber
                    FROM Keys
                    WHERE Disposed = :disposed AND KeySequenceNumber IS NOT NULL
                    GROUP BY RentalObjectCode, KeyName, KeyType, FlexNumber, KeySequenceNumber
                    HAVING COUNT(*) > 1
                ) d
                """,
                {"disposed": False},
            )
        )
    if {"Keys", "KeyLoanKeys"} <= tables:
        checks.append(
            _count_check(
                engine,
                "keyloankeys:orphan_keyid",
                """
                SELECT COUNT(*)
                FROM KeyLoanKeys lk
                LEFT JOIN Keys k ON k.KeyID = lk.KeyID
                WHERE k.KeyID IS NULL
                """,
            )
        )
    if "KeyEvents" in tables:
        checks.append(
            _count_check(
                engine,
                "keyevents:unknown_status",
                "SELECT COUNT(*) FROM KeyEvents WHERE Status NOT IN ('ORDERED', 'RECEIVED', 'COMPLETED')",
            )
        )
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    tables = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    tables = _table_names(engine)

    if "KeyLoans" in tables:
        rows = _rows(
            engine,
            """
            SELECT KeyLoanID, Contact, LoanType, CreatedAt, PickedUpAt, ReturnedAt
            FROM KeyLoans
            ORDER BY CreatedAt DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("KeyLoans (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def run_checks(engine: Engine) -> list[CheckResult]:
    return _run_existence_checks(engine) + _run_column_checks(engine) + _run_integrity_checks(engine)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Key management DB overview")
    parser.add_argument("--db-url", default=os.environ.get("KEY_MANAGEMENT_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("KEY_MANAGEMENT_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    integrity = _run_integrity_checks(engine)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
