#!/usr/bin/env python3
"""Store overview and consistency checks for the materiel manager."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Equipment",
    "Persons",
    "StorageLocations",
    "Worksites",
    "Loans",
    "Borrows",
    "Rentals",
    "MyRentals",
    "Repairs",
    "AccountingEntries",
    "LifetimeCounters",
]

OWNER_TABLES = {"Borrows": "BorrowID", "MyRentals": "MyRentalID"}

# (owner column, derived table, derived key, derived "closed" column)
DERIVED_LINKS = [
    ("ActiveLoanID", "Loans", "LoanID", "ActualReturnDate"),
    ("ActiveRentalID", "Rentals", "RentalID", "ActualReturnDate"),
    ("ActiveRepairID", "Repairs", "RepairID", "ReturnDate"),
]


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


def _existing_tables(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_existence_checks(tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_orphan_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    if "Persons" not in tables:
        return checks
    for table, column in [
        ("Loans", "PersonID"),
        ("Borrows", "PersonID"),
        ("Rentals", "RenterID"),
        ("MyRentals", "OwnerID"),
        ("Repairs", "RepairerID"),
    ]:
        if table not in tables:
            continue
        checks.append(
            _count_check(
                engine,
                f"{table.lower()}:orphan_{column.lower()}",
                f"""
                SELECT COUNT(*)
                FROM {table} r
                LEFT JOIN Persons p ON p.PersonID = r.{column}
                WHERE p.PersonID IS NULL
                """,
            )
        )
    return checks


def _run_linkage_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for owner_table, owner_key in OWNER_TABLES.items():
        if owner_table not in tables:
            continue
        if "Equipment" in tables:
            checks.append(
                _count_check(
                    engine,
                    f"{owner_table.lower()}:dangling_shadow",
                    f"""
                    SELECT COUNT(*)
                    FROM {owner_table} o
                    LEFT JOIN Equipment e ON e.EquipmentID = o.LinkedEquipmentID
                    WHERE o.LinkedEquipmentID IS NOT NULL AND e.EquipmentID IS NULL
                    """,
                )
            )
        for owner_column, derived_table, derived_key, closed_column in DERIVED_LINKS:
            if derived_table not in tables:
                continue
            checks.append(
                _count_check(
                    engine,
                    f"{owner_table.lower()}:open_{derived_table.lower()}_of_closed_owner",
                    f"""
                    SELECT COUNT(*)
                    FROM {owner_table} o
                    JOIN {derived_table} d ON d.{derived_key} = o.{owner_column}
                    WHERE o.ActualReturnDate IS NOT NULL AND d.{closed_column} IS NULL
                    """,
                )
            )
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_counters(engine: Engine, tables: set[str]) -> None:
    _print_section("Lifetime Counters")
    if "LifetimeCounters" not in tables:
        print("LifetimeCounters: missing")
        return
    for category, total in _rows(engine, "SELECT Category, Total FROM LifetimeCounters ORDER BY Category"):
        print(f"{category}: {int(total or 0)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Materiel manager store overview")
    parser.add_argument("--db-url", default=os.environ.get("MATERIEL_DB_URL", ""))
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("MATERIEL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = _existing_tables(engine)
    _print_results("Table Existence", _run_existence_checks(tables))
    _print_results("Orphaned References", _run_orphan_checks(engine, tables))
    _print_results("Shadow Linkage", _run_linkage_checks(engine, tables))
    _print_row_counts(engine, tables)
    _print_counters(engine, tables)
    return 0


if __name__ == "__main__":
    sys.exit(main())
