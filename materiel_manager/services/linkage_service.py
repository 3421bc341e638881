from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models.materiel_models import Borrow, Equipment, Loan, MyRental, Rental, Repair, new_id
from services import quota_service
from services.pricing import PRICING_FLAT, close_priced_record, normalize_pricing_type, quote_total
from services.status_service import (
    linked_equipment,
    owner_active_loan,
    owner_active_rental,
    owner_active_repair,
)

LINKAGE_LOGGER = logging.getLogger("materiel_manager.linkage")

SHADOW_CATEGORY_BORROWED = "Borrowed"
SHADOW_CATEGORY_RENTED = "Rented"
FREE_REPAIR_NOTE = "Free repair"


def owner_id(owner: Borrow | MyRental) -> str:
    return owner.BorrowID if isinstance(owner, Borrow) else owner.MyRentalID


def owner_label(owner: Borrow | MyRental) -> str:
    return "borrowed item" if isinstance(owner, Borrow) else "rented item"


def _placeholder_category(owner: Borrow | MyRental) -> str:
    return SHADOW_CATEGORY_BORROWED if isinstance(owner, Borrow) else SHADOW_CATEGORY_RENTED


def _refuse(owner: Borrow | MyRental, action: str, reason: str) -> None:
    LINKAGE_LOGGER.warning("Refused %s for %s %s: %s", action, owner_label(owner), owner_id(owner), reason)


def _ensure_shadow(
    db: Session,
    owner: Borrow | MyRental,
    description: str,
    category: str | None = None,
    storage_location_id: str | None = None,
) -> Equipment:
    shadow = linked_equipment(db, owner)
    if shadow:
        return shadow
    shadow = Equipment(
        EquipmentID=new_id(),
        Name=owner.ItemName,
        Description=description,
        Category=(category or "").strip() or _placeholder_category(owner),
        StorageLocationID=storage_location_id,
        AcquisitionDate=owner.StartDate,
        Value=0,
        ImageData=owner.ImageData,
        CreatedDate=datetime.now(),
    )
    db.add(shadow)
    owner.LinkedEquipmentID = shadow.EquipmentID
    db.flush()
    LINKAGE_LOGGER.info("Created shadow equipment %s for %s %s", shadow.EquipmentID, owner_label(owner), owner_id(owner))
    return shadow


def detach_from_owners(
    db: Session,
    loan_id: str | None = None,
    rental_id: str | None = None,
    repair_id: str | None = None,
) -> None:
    """Clear every back-reference that still points at a derived record being closed."""
    for model in (Borrow, MyRental):
        if loan_id:
            db.execute(update(model).where(model.ActiveLoanID == loan_id).values(ActiveLoanID=None))
        if rental_id:
            db.execute(update(model).where(model.ActiveRentalID == rental_id).values(ActiveRentalID=None))
        if repair_id:
            db.execute(update(model).where(model.ActiveRepairID == repair_id).values(ActiveRepairID=None))
    if rental_id:
        db.execute(update(Rental).where(Rental.SubRentalID == rental_id).values(SubRentalID=None))


def open_repair_record(
    db: Session,
    equipment_id: str,
    repairer_id: str,
    description: str,
    expected_end_date: datetime | None = None,
    estimated_cost: float | None = None,
    notes: str = "",
    free: bool = False,
    origin_loan_id: str | None = None,
    origin_rental_id: str | None = None,
    now: datetime | None = None,
) -> Repair:
    if free:
        notes = f"{notes}\n{FREE_REPAIR_NOTE}" if notes else FREE_REPAIR_NOTE
    repair = Repair(
        RepairID=new_id(),
        EquipmentID=equipment_id,
        RepairerID=repairer_id,
        OriginLoanID=origin_loan_id,
        OriginRentalID=origin_rental_id,
        StartDate=now or datetime.now(),
        ExpectedEndDate=expected_end_date,
        ReturnDate=None,
        Description=description,
        EstimatedCost=None if free else estimated_cost,
        FinalCost=0 if free else None,
        PaymentReceived=free,
        PaymentBooked=False,
        Notes=notes,
    )
    db.add(repair)
    db.flush()
    return repair


def create_shadow_equipment(
    db: Session,
    owner: Borrow | MyRental,
    category: str | None = None,
    storage_location_id: str | None = None,
) -> Optional[Equipment]:
    if linked_equipment(db, owner):
        _refuse(owner, "shadow creation", "a linked equipment already exists")
        return None
    source = "borrow" if isinstance(owner, Borrow) else "incoming rental"
    shadow = _ensure_shadow(
        db,
        owner,
        f"Created from {source}",
        category=category,
        storage_location_id=storage_location_id,
    )
    db.commit()
    return shadow


def relend(
    db: Session,
    owner: Borrow | MyRental,
    person_id: str,
    end_date: datetime,
    notes: str = "",
    now: datetime | None = None,
) -> Optional[Loan]:
    if owner.ActualReturnDate is not None:
        _refuse(owner, "re-lend", "already returned")
        return None
    if owner_active_loan(db, owner) or owner_active_rental(db, owner):
        _refuse(owner, "re-lend", "already lent or sub-rented")
        return None
    if not quota_service.admit(db, quota_service.CATEGORY_LOANS):
        return None

    shadow = _ensure_shadow(db, owner, f"External {owner_label(owner)} lent on")
    loan = Loan(
        LoanID=new_id(),
        EquipmentID=shadow.EquipmentID,
        PersonID=person_id,
        StorageLocationID=None,
        StartDate=now or datetime.now(),
        EndDate=end_date,
        ActualReturnDate=None,
        Notes=notes or f"Re-loan of {owner_label(owner)}: {owner.ItemName}",
    )
    db.add(loan)
    owner.ActiveLoanID = loan.LoanID
    db.commit()
    LINKAGE_LOGGER.info("Loan %s created from %s %s", loan.LoanID, owner_label(owner), owner_id(owner))
    return loan


def return_owner_loan(db: Session, owner: Borrow | MyRental, now: datetime | None = None) -> Optional[Loan]:
    loan = owner_active_loan(db, owner)
    if not loan:
        return None
    loan.ActualReturnDate = now or datetime.now()
    owner.ActiveLoanID = None
    detach_from_owners(db, loan_id=loan.LoanID)
    db.commit()
    LINKAGE_LOGGER.info("Loan %s of %s %s returned", loan.LoanID, owner_label(owner), owner_id(owner))
    return loan


def sub_rent(
    db: Session,
    owner: Borrow | MyRental,
    renter_id: str,
    start_date: datetime,
    end_date: datetime,
    unit_price: float = 0,
    pricing_type: str = PRICING_FLAT,
    deposit: float = 0,
    notes: str = "",
    total_price: float | None = None,
) -> Optional[Rental]:
    pricing_type = normalize_pricing_type(pricing_type)
    if owner.ActualReturnDate is not None:
        _refuse(owner, "sub-rental", "already returned")
        return None
    if owner_active_loan(db, owner) or owner_active_rental(db, owner):
        _refuse(owner, "sub-rental", "already lent or sub-rented")
        return None
    if not quota_service.admit(db, quota_service.CATEGORY_RENTALS):
        return None

    shadow = _ensure_shadow(db, owner, f"External {owner_label(owner)} sub-rented")
    if total_price is None:
        total_price = quote_total(pricing_type, unit_price, start_date, end_date)
    rental = Rental(
        RentalID=new_id(),
        EquipmentID=shadow.EquipmentID,
        RenterID=renter_id,
        StartDate=start_date,
        EndDate=end_date,
        ActualReturnDate=None,
        TotalPrice=float(total_price),
        Deposit=float(deposit or 0),
        DepositReturned=False,
        DepositKept=False,
        DepositKeptAmount=0,
        DepositKeptBooked=False,
        PaymentReceived=False,
        PaymentBooked=False,
        PricingType=pricing_type,
        UnitPrice=float(unit_price or 0),
        Notes=notes or f"Rental of {owner_label(owner)}: {owner.ItemName}",
        SubRentalID=None,
    )
    db.add(rental)
    owner.ActiveRentalID = rental.RentalID
    db.commit()
    LINKAGE_LOGGER.info("Rental %s created from %s %s", rental.RentalID, owner_label(owner), owner_id(owner))
    return rental


def return_owner_rental(db: Session, owner: Borrow | MyRental, now: datetime | None = None) -> Optional[Rental]:
    rental = owner_active_rental(db, owner)
    if not rental:
        return None
    close_priced_record(rental, now)
    owner.ActiveRentalID = None
    detach_from_owners(db, rental_id=rental.RentalID)
    db.commit()
    LINKAGE_LOGGER.info("Rental %s of %s %s returned", rental.RentalID, owner_label(owner), owner_id(owner))
    return rental


def send_owner_to_repair(
    db: Session,
    owner: Borrow | MyRental,
    repairer_id: str,
    description: str,
    expected_end_date: datetime | None = None,
    estimated_cost: float | None = None,
    notes: str = "",
    free: bool = False,
    now: datetime | None = None,
) -> Optional[Repair]:
    if owner.ActualReturnDate is not None:
        _refuse(owner, "repair", "already returned")
        return None
    if owner_active_loan(db, owner) or owner_active_rental(db, owner):
        _refuse(owner, "repair", "currently lent or sub-rented")
        return None
    if owner_active_repair(db, owner):
        _refuse(owner, "repair", "already in repair")
        return None
    if not quota_service.admit(db, quota_service.CATEGORY_REPAIRS):
        return None

    shadow = _ensure_shadow(db, owner, f"External {owner_label(owner)} in repair")
    repair = open_repair_record(
        db,
        shadow.EquipmentID,
        repairer_id,
        description,
        expected_end_date=expected_end_date,
        estimated_cost=estimated_cost,
        notes=notes or f"Repair of {owner_label(owner)}: {owner.ItemName}",
        free=free,
        now=now,
    )
    owner.ActiveRepairID = repair.RepairID
    db.commit()
    LINKAGE_LOGGER.info("Repair %s opened for %s %s", repair.RepairID, owner_label(owner), owner_id(owner))
    return repair


def return_owner_repair(
    db: Session,
    owner: Borrow | MyRental,
    final_cost: float | None = None,
    now: datetime | None = None,
) -> Optional[Repair]:
    repair = owner_active_repair(db, owner)
    if not repair:
        return None
    repair.ReturnDate = now or datetime.now()
    if final_cost is not None:
        repair.FinalCost = float(final_cost)
    owner.ActiveRepairID = None
    detach_from_owners(db, repair_id=repair.RepairID)
    db.commit()
    LINKAGE_LOGGER.info("Repair %s of %s %s returned", repair.RepairID, owner_label(owner), owner_id(owner))
    return repair


def _delete_shadow(db: Session, equipment_id: str | None) -> None:
    # Only the equipment row goes; loans, rentals and repairs keep their history.
    if not equipment_id:
        return
    shadow = db.get(Equipment, equipment_id)
    if shadow:
        db.delete(shadow)
        db.flush()


def close_owner(db: Session, owner: Borrow | MyRental, now: datetime | None = None) -> bool:
    """Mark a borrow or incoming rental as given back and drop its shadow equipment.

    Derived loans, rentals and repairs still open on the shadow are left as they are.
    """
    if owner.ActualReturnDate is not None:
        return False
    shadow_id = owner.LinkedEquipmentID
    if isinstance(owner, MyRental):
        close_priced_record(owner, now)
    else:
        owner.ActualReturnDate = now or datetime.now()
    owner.LinkedEquipmentID = None
    _delete_shadow(db, shadow_id)
    db.commit()
    LINKAGE_LOGGER.info("Closed %s %s, shadow %s removed", owner_label(owner), owner_id(owner), shadow_id)
    return True


def delete_owner(db: Session, owner: Borrow | MyRental) -> None:
    _delete_shadow(db, owner.LinkedEquipmentID)
    db.delete(owner)
    db.commit()
