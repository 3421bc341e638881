from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models.materiel_models import Borrow, Loan, Repair, new_id
from services import quota_service
from services.linkage_service import detach_from_owners, open_repair_record
from services.pricing import days_late, is_overdue
from services.status_service import owner_state

LOAN_LOGGER = logging.getLogger("materiel_manager.loans")

LOAN_FIELDS = ("EquipmentID", "PersonID", "StorageLocationID", "StartDate", "EndDate", "Notes")
BORROW_FIELDS = ("ItemName", "PersonID", "StartDate", "EndDate", "Notes", "ImageData")


def _apply(record, allowed: tuple[str, ...], fields: dict) -> None:
    for key, value in fields.items():
        if key in allowed:
            setattr(record, key, value)


def add_loan(
    db: Session,
    equipment_id: str,
    person_id: str,
    start_date: datetime,
    end_date: datetime,
    storage_location_id: str | None = None,
    notes: str = "",
) -> Optional[Loan]:
    if not quota_service.admit(db, quota_service.CATEGORY_LOANS):
        return None
    loan = Loan(
        LoanID=new_id(),
        EquipmentID=equipment_id,
        PersonID=person_id,
        StorageLocationID=storage_location_id,
        StartDate=start_date,
        EndDate=end_date,
        ActualReturnDate=None,
        Notes=notes or "",
    )
    db.add(loan)
    db.commit()
    LOAN_LOGGER.info("Loan %s created for equipment %s", loan.LoanID, equipment_id)
    return loan


def update_loan(db: Session, loan: Loan, **fields) -> Loan:
    _apply(loan, LOAN_FIELDS, fields)
    db.commit()
    return loan


def delete_loan(db: Session, loan: Loan) -> None:
    db.delete(loan)
    db.commit()


def return_loan(db: Session, loan: Loan, now: datetime | None = None) -> Loan:
    loan.ActualReturnDate = now or datetime.now()
    detach_from_owners(db, loan_id=loan.LoanID)
    db.commit()
    LOAN_LOGGER.info("Loan %s returned", loan.LoanID)
    return loan


def delete_returned_loans(db: Session) -> int:
    result = db.execute(delete(Loan).where(Loan.ActualReturnDate.is_not(None)))
    db.commit()
    return int(result.rowcount or 0)


def loans_for_equipment(db: Session, equipment_id: str) -> list[Loan]:
    return db.execute(
        select(Loan).where(Loan.EquipmentID == equipment_id).order_by(Loan.StartDate.desc())
    ).scalars().all()


def loans_for_person(db: Session, person_id: str, open_only: bool = False) -> list[Loan]:
    stmt = select(Loan).where(Loan.PersonID == person_id)
    if open_only:
        stmt = stmt.where(Loan.ActualReturnDate.is_(None))
    return db.execute(stmt.order_by(Loan.StartDate.desc())).scalars().all()


def list_loans(db: Session, open_only: bool = False) -> list[Loan]:
    stmt = select(Loan)
    if open_only:
        stmt = stmt.where(Loan.ActualReturnDate.is_(None))
    return db.execute(stmt.order_by(Loan.StartDate.desc())).scalars().all()


def send_loan_to_repair(
    db: Session,
    loan: Loan,
    repairer_id: str,
    description: str,
    expected_end_date: datetime | None = None,
    estimated_cost: float | None = None,
    notes: str = "",
    free: bool = False,
    now: datetime | None = None,
) -> Optional[Repair]:
    if not quota_service.admit(db, quota_service.CATEGORY_REPAIRS):
        return None
    current = now or datetime.now()
    if loan.ActualReturnDate is None:
        loan.ActualReturnDate = current
    detach_from_owners(db, loan_id=loan.LoanID)
    repair = open_repair_record(
        db,
        loan.EquipmentID,
        repairer_id,
        description,
        expected_end_date=expected_end_date,
        estimated_cost=estimated_cost,
        notes=notes,
        free=free,
        origin_loan_id=loan.LoanID,
        now=current,
    )
    db.commit()
    LOAN_LOGGER.info("Loan %s sent to repair %s", loan.LoanID, repair.RepairID)
    return repair


def serialize_loan(loan: Loan, now: datetime | None = None) -> dict:
    return {
        "loanID": loan.LoanID,
        "equipmentID": loan.EquipmentID,
        "personID": loan.PersonID,
        "storageLocationID": loan.StorageLocationID,
        "startDate": loan.StartDate,
        "endDate": loan.EndDate,
        "actualReturnDate": loan.ActualReturnDate,
        "notes": loan.Notes,
        "isOpen": loan.ActualReturnDate is None,
        "isOverdue": is_overdue(loan.EndDate, loan.ActualReturnDate, now),
        "daysLate": days_late(loan.EndDate, loan.ActualReturnDate, now),
    }


def add_borrow(
    db: Session,
    item_name: str,
    person_id: str,
    start_date: datetime,
    end_date: datetime,
    notes: str = "",
    image_data: bytes | None = None,
) -> Optional[Borrow]:
    if not quota_service.admit(db, quota_service.CATEGORY_BORROWS):
        return None
    borrow = Borrow(
        BorrowID=new_id(),
        ItemName=item_name.strip(),
        PersonID=person_id,
        StartDate=start_date,
        EndDate=end_date,
        ActualReturnDate=None,
        Notes=notes or "",
        ImageData=image_data,
    )
    db.add(borrow)
    db.commit()
    LOAN_LOGGER.info("Borrow %s created", borrow.BorrowID)
    return borrow


def update_borrow(db: Session, borrow: Borrow, **fields) -> Borrow:
    _apply(borrow, BORROW_FIELDS, fields)
    db.commit()
    return borrow


def list_borrows(db: Session, person_id: str | None = None, open_only: bool = False) -> list[Borrow]:
    stmt = select(Borrow)
    if person_id:
        stmt = stmt.where(Borrow.PersonID == person_id)
    if open_only:
        stmt = stmt.where(Borrow.ActualReturnDate.is_(None))
    return db.execute(stmt.order_by(Borrow.StartDate.desc())).scalars().all()


def serialize_borrow(db: Session, borrow: Borrow, now: datetime | None = None) -> dict:
    return {
        "borrowID": borrow.BorrowID,
        "itemName": borrow.ItemName,
        "personID": borrow.PersonID,
        "startDate": borrow.StartDate,
        "endDate": borrow.EndDate,
        "actualReturnDate": borrow.ActualReturnDate,
        "notes": borrow.Notes,
        "hasImage": bool(borrow.ImageData),
        "linkedEquipmentID": borrow.LinkedEquipmentID,
        "activeLoanID": borrow.ActiveLoanID,
        "activeRentalID": borrow.ActiveRentalID,
        "activeRepairID": borrow.ActiveRepairID,
        "isOpen": borrow.ActualReturnDate is None,
        "isOverdue": is_overdue(borrow.EndDate, borrow.ActualReturnDate, now),
        "daysLate": days_late(borrow.EndDate, borrow.ActualReturnDate, now),
        "linkState": owner_state(db, borrow),
    }
