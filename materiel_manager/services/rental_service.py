from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.materiel_models import MyRental, Rental, Repair, new_id
from services import ledger_service, quota_service
from services.linkage_service import detach_from_owners, open_repair_record
from services.pricing import (
    PRICING_FLAT,
    close_priced_record,
    days_late,
    effective_total,
    is_overdue,
    normalize_pricing_type,
    quote_total,
    realized_total,
    span_days,
    units_for_days,
)
from services.status_service import open_rental_for_equipment, owner_state, rental_active_sub_rental

RENTAL_LOGGER = logging.getLogger("materiel_manager.rentals")

RENTAL_FIELDS = (
    "EquipmentID",
    "RenterID",
    "StartDate",
    "EndDate",
    "TotalPrice",
    "Deposit",
    "PricingType",
    "UnitPrice",
    "Notes",
)
MY_RENTAL_FIELDS = (
    "ItemName",
    "OwnerID",
    "StartDate",
    "EndDate",
    "TotalPrice",
    "Deposit",
    "PricingType",
    "UnitPrice",
    "Notes",
    "ImageData",
)

DEPOSIT_NONE = "none"
DEPOSIT_HELD = "held"
DEPOSIT_RETURNED = "returned"
DEPOSIT_KEPT = "kept"
DEPOSIT_PARTIALLY_KEPT = "partially-kept"


def _apply(record, allowed: tuple[str, ...], fields: dict) -> None:
    for key, value in fields.items():
        if key not in allowed:
            continue
        if key == "PricingType":
            value = normalize_pricing_type(value)
        setattr(record, key, value)


def contract_total(pricing_type: str, unit_price: float, start_date: datetime, end_date: datetime) -> float:
    if pricing_type == PRICING_FLAT:
        return 0.0
    return float(unit_price or 0) * units_for_days(pricing_type, span_days(start_date, end_date))


def add_rental(
    db: Session,
    equipment_id: str,
    renter_id: str,
    start_date: datetime,
    end_date: datetime,
    pricing_type: str = PRICING_FLAT,
    unit_price: float = 0,
    total_price: float | None = None,
    deposit: float = 0,
    notes: str = "",
) -> Optional[Rental]:
    pricing_type = normalize_pricing_type(pricing_type)
    if not quota_service.admit(db, quota_service.CATEGORY_RENTALS):
        return None
    if total_price is None:
        total_price = contract_total(pricing_type, unit_price, start_date, end_date)
    rental = Rental(
        RentalID=new_id(),
        EquipmentID=equipment_id,
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
        Notes=notes or "",
        SubRentalID=None,
    )
    db.add(rental)
    db.commit()
    RENTAL_LOGGER.info("Rental %s created for equipment %s", rental.RentalID, equipment_id)
    return rental


def update_rental(db: Session, rental: Rental, **fields) -> Rental:
    _apply(rental, RENTAL_FIELDS, fields)
    db.commit()
    return rental


def delete_rental(db: Session, rental: Rental) -> None:
    db.delete(rental)
    db.commit()


def return_rental(db: Session, rental: Rental, now: datetime | None = None) -> Rental:
    close_priced_record(rental, now)
    detach_from_owners(db, rental_id=rental.RentalID)
    db.commit()
    RENTAL_LOGGER.info("Rental %s returned, total %.2f", rental.RentalID, rental.TotalPrice or 0)
    return rental


def mark_payment(db: Session, rental: Rental, received: bool, now: datetime | None = None) -> Rental:
    was_received = bool(rental.PaymentReceived)
    rental.PaymentReceived = received
    if received and not was_received and not rental.PaymentBooked:
        ledger_service.book_rental_revenue(db, rental, now)
        rental.PaymentBooked = True
    db.commit()
    return rental


def mark_deposit_returned(db: Session, rental: Rental, returned: bool) -> Rental:
    rental.DepositReturned = returned
    rental.DepositKept = False
    db.commit()
    return rental


def keep_deposit(db: Session, rental: Rental, amount: float | None = None) -> Rental:
    was_kept = bool(rental.DepositKept)
    kept_amount = float(rental.Deposit or 0) if amount is None else float(amount)
    rental.DepositKept = True
    rental.DepositReturned = False
    rental.DepositKeptAmount = kept_amount
    if not was_kept and kept_amount > 0 and not rental.DepositKeptBooked:
        ledger_service.book_deposit_kept(db, rental)
        rental.DepositKeptBooked = True
    db.commit()
    return rental


def deposit_state(rental: Rental) -> str:
    deposit = float(rental.Deposit or 0)
    if deposit <= 0:
        return DEPOSIT_NONE
    if rental.DepositKept:
        kept = float(rental.DepositKeptAmount or 0)
        return DEPOSIT_PARTIALLY_KEPT if 0 < kept < deposit else DEPOSIT_KEPT
    if rental.DepositReturned:
        return DEPOSIT_RETURNED
    return DEPOSIT_HELD


def list_rentals(
    db: Session,
    equipment_id: str | None = None,
    renter_id: str | None = None,
    open_only: bool = False,
) -> list[Rental]:
    stmt = select(Rental)
    if equipment_id:
        stmt = stmt.where(Rental.EquipmentID == equipment_id)
    if renter_id:
        stmt = stmt.where(Rental.RenterID == renter_id)
    if open_only:
        stmt = stmt.where(Rental.ActualReturnDate.is_(None))
    return db.execute(stmt.order_by(Rental.StartDate.desc())).scalars().all()


def is_rented(db: Session, equipment_id: str) -> bool:
    return open_rental_for_equipment(db, equipment_id) is not None


def sub_rent_rental(
    db: Session,
    rental: Rental,
    renter_id: str,
    start_date: datetime,
    end_date: datetime,
    unit_price: float = 0,
    pricing_type: str = PRICING_FLAT,
    deposit: float = 0,
    notes: str = "",
) -> Optional[Rental]:
    pricing_type = normalize_pricing_type(pricing_type)
    if rental_active_sub_rental(db, rental):
        RENTAL_LOGGER.warning("Refused sub-rental of rental %s: already sub-rented", rental.RentalID)
        return None
    if not quota_service.admit(db, quota_service.CATEGORY_RENTALS):
        return None
    sub_rental = Rental(
        RentalID=new_id(),
        EquipmentID=rental.EquipmentID,
        RenterID=renter_id,
        StartDate=start_date,
        EndDate=end_date,
        ActualReturnDate=None,
        TotalPrice=quote_total(pricing_type, unit_price, start_date, end_date),
        Deposit=float(deposit or 0),
        DepositReturned=False,
        DepositKept=False,
        DepositKeptAmount=0,
        DepositKeptBooked=False,
        PaymentReceived=False,
        PaymentBooked=False,
        PricingType=pricing_type,
        UnitPrice=float(unit_price or 0),
        Notes=notes or "Sub-rental",
        SubRentalID=None,
    )
    db.add(sub_rental)
    rental.SubRentalID = sub_rental.RentalID
    db.commit()
    RENTAL_LOGGER.info("Rental %s sub-rented as %s", rental.RentalID, sub_rental.RentalID)
    return sub_rental


def return_sub_rental(db: Session, rental: Rental, now: datetime | None = None) -> Optional[Rental]:
    sub_rental = rental_active_sub_rental(db, rental)
    if not sub_rental:
        return None
    close_priced_record(sub_rental, now)
    rental.SubRentalID = None
    detach_from_owners(db, rental_id=sub_rental.RentalID)
    db.commit()
    return sub_rental


def send_rental_to_repair(
    db: Session,
    rental: Rental,
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
    if rental.ActualReturnDate is None:
        close_priced_record(rental, current)
        detach_from_owners(db, rental_id=rental.RentalID)
    repair = open_repair_record(
        db,
        rental.EquipmentID,
        repairer_id,
        description,
        expected_end_date=expected_end_date,
        estimated_cost=estimated_cost,
        notes=notes,
        free=free,
        origin_rental_id=rental.RentalID,
        now=current,
    )
    db.commit()
    RENTAL_LOGGER.info("Rental %s sent to repair %s", rental.RentalID, repair.RepairID)
    return repair


def revenue_stats(db: Session, now: datetime | None = None) -> dict:
    rentals = db.execute(select(Rental)).scalars().all()
    total = sum(
        realized_total(rental, now)
        for rental in rentals
        if rental.ActualReturnDate is not None and rental.PaymentReceived
    )
    pending = sum(realized_total(rental, now) for rental in rentals if not rental.PaymentReceived)
    return {"totalRevenue": total, "pendingRevenue": pending}


def serialize_rental(rental: Rental, now: datetime | None = None) -> dict:
    return {
        "rentalID": rental.RentalID,
        "equipmentID": rental.EquipmentID,
        "renterID": rental.RenterID,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "actualReturnDate": rental.ActualReturnDate,
        "totalPrice": rental.TotalPrice,
        "deposit": rental.Deposit,
        "depositReturned": rental.DepositReturned,
        "depositKept": rental.DepositKept,
        "depositKeptAmount": rental.DepositKeptAmount,
        "depositState": deposit_state(rental),
        "paymentReceived": rental.PaymentReceived,
        "pricingType": rental.PricingType,
        "unitPrice": rental.UnitPrice,
        "notes": rental.Notes,
        "subRentalID": rental.SubRentalID,
        "effectiveTotal": effective_total(rental),
        "realizedTotal": realized_total(rental, now),
        "isOpen": rental.ActualReturnDate is None,
        "isOverdue": is_overdue(rental.EndDate, rental.ActualReturnDate, now),
        "daysLate": days_late(rental.EndDate, rental.ActualReturnDate, now),
    }


def add_my_rental(
    db: Session,
    item_name: str,
    owner_id: str,
    start_date: datetime,
    end_date: datetime,
    pricing_type: str = PRICING_FLAT,
    unit_price: float = 0,
    total_price: float | None = None,
    deposit: float = 0,
    notes: str = "",
    image_data: bytes | None = None,
) -> Optional[MyRental]:
    pricing_type = normalize_pricing_type(pricing_type)
    if not quota_service.admit(db, quota_service.CATEGORY_MY_RENTALS):
        return None
    if total_price is None:
        total_price = contract_total(pricing_type, unit_price, start_date, end_date)
    my_rental = MyRental(
        MyRentalID=new_id(),
        ItemName=item_name.strip(),
        OwnerID=owner_id,
        StartDate=start_date,
        EndDate=end_date,
        ActualReturnDate=None,
        TotalPrice=float(total_price),
        Deposit=float(deposit or 0),
        DepositRecoveredAmount=0,
        DepositLostAmount=0,
        PaymentMade=False,
        PaymentBooked=False,
        PricingType=pricing_type,
        UnitPrice=float(unit_price or 0),
        Notes=notes or "",
        ImageData=image_data,
    )
    db.add(my_rental)
    db.commit()
    RENTAL_LOGGER.info("Incoming rental %s created", my_rental.MyRentalID)
    return my_rental


def update_my_rental(db: Session, my_rental: MyRental, **fields) -> MyRental:
    _apply(my_rental, MY_RENTAL_FIELDS, fields)
    db.commit()
    return my_rental


def mark_my_rental_payment(db: Session, my_rental: MyRental, made: bool, now: datetime | None = None) -> MyRental:
    was_made = bool(my_rental.PaymentMade)
    my_rental.PaymentMade = made
    if made and not was_made and not my_rental.PaymentBooked:
        if ledger_service.book_my_rental_payment(db, my_rental, now):
            my_rental.PaymentBooked = True
    db.commit()
    return my_rental


def record_deposit_recovered(db: Session, my_rental: MyRental, amount: float) -> MyRental:
    my_rental.DepositRecoveredAmount = float(my_rental.DepositRecoveredAmount or 0) + float(amount)
    db.commit()
    return my_rental


def record_deposit_lost(db: Session, my_rental: MyRental, amount: float) -> MyRental:
    my_rental.DepositLostAmount = float(my_rental.DepositLostAmount or 0) + float(amount)
    ledger_service.book_deposit_lost(db, my_rental, float(amount))
    db.commit()
    return my_rental


def deposit_remaining(my_rental: MyRental) -> float:
    deposit = float(my_rental.Deposit or 0)
    recovered = float(my_rental.DepositRecoveredAmount or 0)
    lost = float(my_rental.DepositLostAmount or 0)
    return max(0.0, deposit - recovered - lost)


def my_rental_deposit_summary(my_rental: MyRental) -> dict:
    deposit = float(my_rental.Deposit or 0)
    recovered = float(my_rental.DepositRecoveredAmount or 0)
    lost = float(my_rental.DepositLostAmount or 0)
    return {
        "settled": recovered + lost >= deposit,
        "fullyRecovered": recovered >= deposit and lost == 0,
        "partiallyRecovered": deposit > 0 and 0 < recovered < deposit,
        "remaining": deposit_remaining(my_rental),
        "hasLoss": lost > 0,
    }


def list_my_rentals(db: Session, owner_id: str | None = None, open_only: bool = False) -> list[MyRental]:
    stmt = select(MyRental)
    if owner_id:
        stmt = stmt.where(MyRental.OwnerID == owner_id)
    if open_only:
        stmt = stmt.where(MyRental.ActualReturnDate.is_(None))
    return db.execute(stmt.order_by(MyRental.StartDate.desc())).scalars().all()


def my_rental_stats(db: Session, now: datetime | None = None) -> dict:
    my_rentals = db.execute(select(MyRental)).scalars().all()
    spent = sum(
        realized_total(item, now)
        for item in my_rentals
        if item.ActualReturnDate is not None and item.PaymentMade
    )
    pending = sum(realized_total(item, now) for item in my_rentals if not item.PaymentMade)
    outstanding = sum(deposit_remaining(item) for item in my_rentals)
    return {"totalSpent": spent, "pendingSpend": pending, "outstandingDeposits": outstanding}


def serialize_my_rental(db: Session, my_rental: MyRental, now: datetime | None = None) -> dict:
    return {
        "myRentalID": my_rental.MyRentalID,
        "itemName": my_rental.ItemName,
        "ownerID": my_rental.OwnerID,
        "startDate": my_rental.StartDate,
        "endDate": my_rental.EndDate,
        "actualReturnDate": my_rental.ActualReturnDate,
        "totalPrice": my_rental.TotalPrice,
        "deposit": my_rental.Deposit,
        "depositRecoveredAmount": my_rental.DepositRecoveredAmount,
        "depositLostAmount": my_rental.DepositLostAmount,
        "depositSummary": my_rental_deposit_summary(my_rental),
        "paymentMade": my_rental.PaymentMade,
        "pricingType": my_rental.PricingType,
        "unitPrice": my_rental.UnitPrice,
        "notes": my_rental.Notes,
        "hasImage": bool(my_rental.ImageData),
        "linkedEquipmentID": my_rental.LinkedEquipmentID,
        "activeLoanID": my_rental.ActiveLoanID,
        "activeRentalID": my_rental.ActiveRentalID,
        "activeRepairID": my_rental.ActiveRepairID,
        "effectiveTotal": effective_total(my_rental),
        "realizedTotal": realized_total(my_rental, now),
        "isOpen": my_rental.ActualReturnDate is None,
        "isOverdue": is_overdue(my_rental.EndDate, my_rental.ActualReturnDate, now),
        "daysLate": days_late(my_rental.EndDate, my_rental.ActualReturnDate, now),
        "linkState": owner_state(db, my_rental),
    }
