from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, extract, select
from sqlalchemy.orm import Session

from models.materiel_models import AccountingEntry, Equipment, MyRental, Person, Rental, Repair, new_id
from services.person_service import full_name
from services.pricing import realized_total

LEDGER_LOGGER = logging.getLogger("materiel_manager.ledger")

KIND_RENTAL_REVENUE = "rental-revenue"
KIND_DEPOSIT_KEPT = "deposit-kept"
KIND_REPAIR_EXPENSE = "repair-expense"
KIND_INCOMING_RENTAL_EXPENSE = "incoming-rental-expense"
KIND_DEPOSIT_LOST_EXPENSE = "deposit-lost-expense"

REVENUE_KINDS = {KIND_RENTAL_REVENUE, KIND_DEPOSIT_KEPT}
EXPENSE_KINDS = {KIND_REPAIR_EXPENSE, KIND_INCOMING_RENTAL_EXPENSE, KIND_DEPOSIT_LOST_EXPENSE}
ENTRY_KINDS = REVENUE_KINDS | EXPENSE_KINDS

UNKNOWN_NAME = "Unknown"


def is_revenue(kind: str) -> bool:
    return kind in REVENUE_KINDS


def _equipment_name(db: Session, equipment_id: str | None) -> Optional[str]:
    equipment = db.get(Equipment, equipment_id) if equipment_id else None
    return equipment.Name if equipment else None


def _person_name(db: Session, person_id: str | None) -> Optional[str]:
    person = db.get(Person, person_id) if person_id else None
    return (full_name(person) or None) if person else None


def record_entry(
    db: Session,
    kind: str,
    amount: float,
    description: str,
    equipment_name: str | None = None,
    person_name: str | None = None,
    reference_id: str | None = None,
    entry_date: datetime | None = None,
) -> AccountingEntry:
    """Append one ledger entry. Callers decide whether the transition qualifies."""
    if kind not in ENTRY_KINDS:
        raise ValueError(f"Unknown ledger entry kind: {kind}")
    entry = AccountingEntry(
        EntryID=new_id(),
        EntryDate=entry_date or datetime.now(),
        Kind=kind,
        Amount=float(amount),
        Description=description,
        EquipmentName=equipment_name,
        PersonName=person_name,
        ReferenceID=reference_id,
    )
    db.add(entry)
    db.flush()
    LEDGER_LOGGER.info("Ledger %s %.2f for %s", kind, entry.Amount, reference_id)
    return entry


def book_rental_revenue(db: Session, rental: Rental, now: datetime | None = None) -> AccountingEntry:
    equipment_name = _equipment_name(db, rental.EquipmentID)
    return record_entry(
        db,
        KIND_RENTAL_REVENUE,
        realized_total(rental, now),
        f"Rental of {equipment_name or 'unknown equipment'}",
        equipment_name=equipment_name,
        person_name=_person_name(db, rental.RenterID),
        reference_id=rental.RentalID,
    )


def book_deposit_kept(db: Session, rental: Rental) -> AccountingEntry:
    equipment_name = _equipment_name(db, rental.EquipmentID)
    deposit = float(rental.Deposit or 0)
    kept = float(rental.DepositKeptAmount or 0) or deposit
    label = equipment_name or "unknown equipment"
    if kept < deposit:
        description = f"Partial deposit kept ({kept:.2f} of {deposit:.2f}) - {label}"
    else:
        description = f"Deposit kept - {label}"
    return record_entry(
        db,
        KIND_DEPOSIT_KEPT,
        kept,
        description,
        equipment_name=equipment_name,
        person_name=_person_name(db, rental.RenterID),
        reference_id=rental.RentalID,
    )


def book_repair_expense(db: Session, repair: Repair) -> Optional[AccountingEntry]:
    final_cost = float(repair.FinalCost or 0)
    if final_cost <= 0:
        return None
    equipment_name = _equipment_name(db, repair.EquipmentID)
    return record_entry(
        db,
        KIND_REPAIR_EXPENSE,
        final_cost,
        f"Repair of {equipment_name or 'unknown equipment'}",
        equipment_name=equipment_name,
        person_name=_person_name(db, repair.RepairerID),
        reference_id=repair.RepairID,
    )


def book_my_rental_payment(db: Session, my_rental: MyRental, now: datetime | None = None) -> Optional[AccountingEntry]:
    amount = realized_total(my_rental, now)
    if amount <= 0:
        return None
    owner_name = _person_name(db, my_rental.OwnerID) or UNKNOWN_NAME
    return record_entry(
        db,
        KIND_INCOMING_RENTAL_EXPENSE,
        amount,
        f"Rental of {my_rental.ItemName} from {owner_name}",
        equipment_name=my_rental.ItemName,
        person_name=owner_name,
        reference_id=my_rental.MyRentalID,
    )


def book_deposit_lost(db: Session, my_rental: MyRental, amount: float) -> Optional[AccountingEntry]:
    if amount <= 0:
        return None
    owner_name = _person_name(db, my_rental.OwnerID) or UNKNOWN_NAME
    deposit = float(my_rental.Deposit or 0)
    if amount < deposit:
        description = f"Partial deposit lost ({amount:.2f} of {deposit:.2f}) - {my_rental.ItemName}"
    else:
        description = f"Deposit lost - {my_rental.ItemName}"
    return record_entry(
        db,
        KIND_DEPOSIT_LOST_EXPENSE,
        amount,
        description,
        equipment_name=my_rental.ItemName,
        person_name=owner_name,
        reference_id=my_rental.MyRentalID,
    )


def list_entries(db: Session, year: int | None = None, month: int | None = None) -> list[AccountingEntry]:
    if month is not None and year is None:
        raise ValueError("A month filter requires a year")
    stmt = select(AccountingEntry)
    if year is not None:
        stmt = stmt.where(extract("year", AccountingEntry.EntryDate) == year)
    if month is not None:
        stmt = stmt.where(extract("month", AccountingEntry.EntryDate) == month)
    stmt = stmt.order_by(AccountingEntry.EntryDate.desc())
    return db.execute(stmt).scalars().all()


def totals(entries: Iterable[AccountingEntry]) -> dict:
    revenue = 0.0
    expense = 0.0
    for entry in entries:
        if is_revenue(entry.Kind):
            revenue += float(entry.Amount or 0)
        else:
            expense += float(entry.Amount or 0)
    return {"revenue": revenue, "expense": expense, "net": revenue - expense}


def available_years(db: Session) -> list[int]:
    dates = db.execute(select(AccountingEntry.EntryDate)).scalars().all()
    return sorted({value.year for value in dates if value}, reverse=True)


def available_months(db: Session, year: int) -> list[int]:
    dates = db.execute(
        select(AccountingEntry.EntryDate).where(extract("year", AccountingEntry.EntryDate) == year)
    ).scalars().all()
    return sorted({value.month for value in dates if value}, reverse=True)


def delete_entries(db: Session, entry_ids: Iterable[str]) -> int:
    ids = [entry_id for entry_id in entry_ids if entry_id]
    if not ids:
        return 0
    result = db.execute(delete(AccountingEntry).where(AccountingEntry.EntryID.in_(ids)))
    db.commit()
    LEDGER_LOGGER.info("Deleted %s ledger entries", result.rowcount)
    return int(result.rowcount or 0)


def serialize_entry(entry: AccountingEntry) -> dict:
    return {
        "entryID": entry.EntryID,
        "entryDate": entry.EntryDate,
        "kind": entry.Kind,
        "amount": entry.Amount,
        "description": entry.Description,
        "equipmentName": entry.EquipmentName,
        "personName": entry.PersonName,
        "referenceID": entry.ReferenceID,
        "isRevenue": is_revenue(entry.Kind),
    }
