from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.materiel_models import Borrow, Equipment, Loan, MyRental, Rental, Repair

STATUS_ON_LOAN = "on-loan"
STATUS_RENTED_OUT = "rented-out"
STATUS_IN_REPAIR = "in-repair"
STATUS_AVAILABLE = "available"

SHADOW_NONE = "no-shadow"
SHADOW_FREE = "shadow-free"
SHADOW_LOANED = "shadow-loaned"
SHADOW_SUB_RENTED = "shadow-sub-rented"
SHADOW_IN_REPAIR = "shadow-in-repair"


def open_loan_for_equipment(db: Session, equipment_id: str | None) -> Loan | None:
    if not equipment_id:
        return None
    return db.execute(
        select(Loan)
        .where(Loan.EquipmentID == equipment_id, Loan.ActualReturnDate.is_(None))
        .order_by(Loan.StartDate, Loan.LoanID)
    ).scalars().first()


def open_rental_for_equipment(db: Session, equipment_id: str | None) -> Rental | None:
    if not equipment_id:
        return None
    return db.execute(
        select(Rental)
        .where(Rental.EquipmentID == equipment_id, Rental.ActualReturnDate.is_(None))
        .order_by(Rental.StartDate, Rental.RentalID)
    ).scalars().first()


def open_repair_for_equipment(db: Session, equipment_id: str | None) -> Repair | None:
    if not equipment_id:
        return None
    return db.execute(
        select(Repair)
        .where(Repair.EquipmentID == equipment_id, Repair.ReturnDate.is_(None))
        .order_by(Repair.StartDate, Repair.RepairID)
    ).scalars().first()


def resolve_status(db: Session, equipment_id: str) -> str:
    if open_loan_for_equipment(db, equipment_id):
        return STATUS_ON_LOAN
    if open_rental_for_equipment(db, equipment_id):
        return STATUS_RENTED_OUT
    if open_repair_for_equipment(db, equipment_id):
        return STATUS_IN_REPAIR
    return STATUS_AVAILABLE


def is_available(db: Session, equipment_id: str) -> bool:
    return resolve_status(db, equipment_id) == STATUS_AVAILABLE


def build_status_index(db: Session) -> dict[str, str]:
    """Status of every equipment with an open record, keyed by equipment id.

    Lower-priority states are written first so higher ones overwrite them.
    """
    index: dict[str, str] = {}
    for equipment_id in db.execute(
        select(Repair.EquipmentID).where(Repair.ReturnDate.is_(None))
    ).scalars():
        index[equipment_id] = STATUS_IN_REPAIR
    for equipment_id in db.execute(
        select(Rental.EquipmentID).where(Rental.ActualReturnDate.is_(None))
    ).scalars():
        index[equipment_id] = STATUS_RENTED_OUT
    for equipment_id in db.execute(
        select(Loan.EquipmentID).where(Loan.ActualReturnDate.is_(None))
    ).scalars():
        index[equipment_id] = STATUS_ON_LOAN
    return index


def linked_equipment(db: Session, owner: Borrow | MyRental) -> Equipment | None:
    if not owner.LinkedEquipmentID:
        return None
    return db.get(Equipment, owner.LinkedEquipmentID)


def owner_active_loan(db: Session, owner: Borrow | MyRental) -> Loan | None:
    if owner.ActiveLoanID:
        loan = db.get(Loan, owner.ActiveLoanID)
        if loan and loan.ActualReturnDate is None:
            return loan
    return open_loan_for_equipment(db, owner.LinkedEquipmentID)


def owner_active_rental(db: Session, owner: Borrow | MyRental) -> Rental | None:
    if owner.ActiveRentalID:
        rental = db.get(Rental, owner.ActiveRentalID)
        if rental and rental.ActualReturnDate is None:
            return rental
    return open_rental_for_equipment(db, owner.LinkedEquipmentID)


def owner_active_repair(db: Session, owner: Borrow | MyRental) -> Repair | None:
    if owner.ActiveRepairID:
        repair = db.get(Repair, owner.ActiveRepairID)
        if repair and repair.ReturnDate is None:
            return repair
    return open_repair_for_equipment(db, owner.LinkedEquipmentID)


def rental_active_sub_rental(db: Session, rental: Rental) -> Rental | None:
    if not rental.SubRentalID:
        return None
    sub_rental = db.get(Rental, rental.SubRentalID)
    if sub_rental and sub_rental.ActualReturnDate is None:
        return sub_rental
    return None


def owner_state(db: Session, owner: Borrow | MyRental) -> str:
    if not linked_equipment(db, owner):
        return SHADOW_NONE
    if owner_active_loan(db, owner):
        return SHADOW_LOANED
    if owner_active_rental(db, owner):
        return SHADOW_SUB_RENTED
    if owner_active_repair(db, owner):
        return SHADOW_IN_REPAIR
    return SHADOW_FREE
