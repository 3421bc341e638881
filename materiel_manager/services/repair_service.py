from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.materiel_models import Repair
from services import ledger_service, quota_service
from services.linkage_service import detach_from_owners, open_repair_record
from services.pricing import days_late, is_overdue

REPAIR_LOGGER = logging.getLogger("materiel_manager.repairs")

REPAIR_FIELDS = (
    "EquipmentID",
    "RepairerID",
    "StartDate",
    "ExpectedEndDate",
    "ReturnDate",
    "Description",
    "EstimatedCost",
    "FinalCost",
    "Notes",
)


def add_repair(
    db: Session,
    equipment_id: str,
    repairer_id: str,
    description: str,
    start_date: datetime | None = None,
    expected_end_date: datetime | None = None,
    estimated_cost: float | None = None,
    notes: str = "",
    free: bool = False,
) -> Optional[Repair]:
    if not quota_service.admit(db, quota_service.CATEGORY_REPAIRS):
        return None
    repair = open_repair_record(
        db,
        equipment_id,
        repairer_id,
        description,
        expected_end_date=expected_end_date,
        estimated_cost=estimated_cost,
        notes=notes,
        free=free,
        now=start_date,
    )
    db.commit()
    REPAIR_LOGGER.info("Repair %s opened for equipment %s", repair.RepairID, equipment_id)
    return repair


def update_repair(db: Session, repair: Repair, **fields) -> Repair:
    for key, value in fields.items():
        if key in REPAIR_FIELDS:
            setattr(repair, key, value)
    db.commit()
    return repair


def delete_repair(db: Session, repair: Repair) -> None:
    db.delete(repair)
    db.commit()


def return_repair(
    db: Session,
    repair: Repair,
    final_cost: float | None = None,
    notes: str = "",
    now: datetime | None = None,
) -> Repair:
    """Close a repair. Payment is tracked separately through mark_payment."""
    repair.ReturnDate = now or datetime.now()
    if final_cost is not None:
        repair.FinalCost = float(final_cost)
    if notes:
        repair.Notes = notes
    detach_from_owners(db, repair_id=repair.RepairID)
    db.commit()
    REPAIR_LOGGER.info("Repair %s returned", repair.RepairID)
    return repair


def mark_payment(db: Session, repair: Repair, received: bool) -> Repair:
    was_received = bool(repair.PaymentReceived)
    repair.PaymentReceived = received
    if received and not was_received and not repair.PaymentBooked:
        if ledger_service.book_repair_expense(db, repair):
            repair.PaymentBooked = True
    db.commit()
    return repair


def list_repairs(
    db: Session,
    equipment_id: str | None = None,
    repairer_id: str | None = None,
    open_only: bool = False,
) -> list[Repair]:
    stmt = select(Repair)
    if equipment_id:
        stmt = stmt.where(Repair.EquipmentID == equipment_id)
    if repairer_id:
        stmt = stmt.where(Repair.RepairerID == repairer_id)
    if open_only:
        stmt = stmt.where(Repair.ReturnDate.is_(None))
    return db.execute(stmt.order_by(Repair.StartDate.desc())).scalars().all()


def repair_cost(repair: Repair) -> float:
    if repair.FinalCost is not None:
        return float(repair.FinalCost)
    return float(repair.EstimatedCost or 0)


def days_in_repair(repair: Repair, now: datetime | None = None) -> int:
    end = repair.ReturnDate or now or datetime.now()
    return max(0, (end.date() - repair.StartDate.date()).days)


def repair_stats(db: Session) -> dict:
    repairs = db.execute(select(Repair)).scalars().all()
    spent = sum(repair_cost(repair) for repair in repairs if repair.ReturnDate is not None and repair.PaymentReceived)
    pending = sum(repair_cost(repair) for repair in repairs if not repair.PaymentReceived)
    return {"totalSpent": spent, "pendingSpend": pending}


def serialize_repair(repair: Repair, now: datetime | None = None) -> dict:
    return {
        "repairID": repair.RepairID,
        "equipmentID": repair.EquipmentID,
        "repairerID": repair.RepairerID,
        "originLoanID": repair.OriginLoanID,
        "originRentalID": repair.OriginRentalID,
        "startDate": repair.StartDate,
        "expectedEndDate": repair.ExpectedEndDate,
        "returnDate": repair.ReturnDate,
        "description": repair.Description,
        "estimatedCost": repair.EstimatedCost,
        "finalCost": repair.FinalCost,
        "paymentReceived": repair.PaymentReceived,
        "notes": repair.Notes,
        "isOpen": repair.ReturnDate is None,
        "isOverdue": is_overdue(repair.ExpectedEndDate, repair.ReturnDate, now),
        "daysLate": days_late(repair.ExpectedEndDate, repair.ReturnDate, now),
        "daysInRepair": days_in_repair(repair, now),
    }
