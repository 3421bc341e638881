from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from models.materiel_models import Borrow, Equipment, Loan, MyRental, Repair, new_id
from services import quota_service
from services.status_service import STATUS_AVAILABLE

EQUIPMENT_LOGGER = logging.getLogger("materiel_manager.equipment")

EQUIPMENT_FIELDS = (
    "Name",
    "Description",
    "Category",
    "StorageLocationID",
    "Placement",
    "Notes",
    "AcquisitionDate",
    "Value",
    "ImageData",
    "InvoiceData",
    "InvoiceIsPDF",
    "InvoiceNumber",
    "Vendor",
)


def _apply_fields(equipment: Equipment, fields: dict) -> None:
    for key, value in fields.items():
        if key not in EQUIPMENT_FIELDS:
            continue
        if key in {"Name", "Category"} and isinstance(value, str):
            value = value.strip()
        setattr(equipment, key, value)


def add_equipment(db: Session, **fields) -> Optional[Equipment]:
    if not quota_service.admit(db, quota_service.CATEGORY_EQUIPMENT):
        return None
    equipment = Equipment(
        EquipmentID=new_id(),
        Description="",
        Category="",
        Value=0,
        AcquisitionDate=datetime.now(),
        CreatedDate=datetime.now(),
    )
    _apply_fields(equipment, fields)
    db.add(equipment)
    db.commit()
    EQUIPMENT_LOGGER.info("Equipment %s created", equipment.EquipmentID)
    return equipment


def update_equipment(db: Session, equipment: Equipment, **fields) -> Equipment:
    _apply_fields(equipment, fields)
    db.commit()
    return equipment


def delete_equipment(db: Session, equipment: Equipment) -> None:
    """Delete an equipment with its loans and repairs; rentals are kept."""
    equipment_id = equipment.EquipmentID
    db.execute(delete(Loan).where(Loan.EquipmentID == equipment_id))
    db.execute(delete(Repair).where(Repair.EquipmentID == equipment_id))
    db.delete(equipment)
    db.commit()
    EQUIPMENT_LOGGER.info("Equipment %s deleted with its loans and repairs", equipment_id)


def list_equipment(db: Session, storage_location_id: str | None = None, category: str | None = None) -> list[Equipment]:
    stmt = select(Equipment)
    if storage_location_id:
        stmt = stmt.where(Equipment.StorageLocationID == storage_location_id)
    if category:
        stmt = stmt.where(func.lower(Equipment.Category) == category.strip().lower())
    return db.execute(stmt.order_by(Equipment.Name)).scalars().all()


def list_categories(db: Session) -> list[str]:
    raw = db.execute(select(Equipment.Category)).scalars().all()
    seen: set[str] = set()
    categories: list[str] = []
    for value in raw:
        name = (value or "").strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        categories.append(name)
    return sorted(categories, key=str.lower)


def _matching_category(db: Session, name: str) -> list[Equipment]:
    target = (name or "").strip().lower()
    return db.execute(
        select(Equipment).where(func.lower(func.trim(Equipment.Category)) == target)
    ).scalars().all()


def rename_category(db: Session, old_name: str, new_name: str) -> int:
    trimmed = (new_name or "").strip()
    if not trimmed:
        return 0
    matches = _matching_category(db, old_name)
    for equipment in matches:
        equipment.Category = trimmed
    db.commit()
    return len(matches)


def delete_category(db: Session, name: str) -> int:
    matches = _matching_category(db, name)
    for equipment in matches:
        equipment.Category = ""
    db.commit()
    return len(matches)


def set_image(db: Session, equipment: Equipment, data: bytes) -> Equipment:
    equipment.ImageData = data
    db.commit()
    return equipment


def shadow_owner(db: Session, equipment_id: str) -> Optional[dict]:
    borrow = db.execute(select(Borrow).where(Borrow.LinkedEquipmentID == equipment_id)).scalars().first()
    if borrow:
        return {"kind": "borrow", "id": borrow.BorrowID}
    my_rental = db.execute(select(MyRental).where(MyRental.LinkedEquipmentID == equipment_id)).scalars().first()
    if my_rental:
        return {"kind": "myRental", "id": my_rental.MyRentalID}
    return None


def serialize_equipment(equipment: Equipment, status: str = STATUS_AVAILABLE, owner: dict | None = None) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "name": equipment.Name,
        "description": equipment.Description,
        "category": equipment.Category,
        "storageLocationID": equipment.StorageLocationID,
        "placement": equipment.Placement,
        "notes": equipment.Notes,
        "acquisitionDate": equipment.AcquisitionDate,
        "value": equipment.Value,
        "invoiceIsPDF": equipment.InvoiceIsPDF,
        "invoiceNumber": equipment.InvoiceNumber,
        "vendor": equipment.Vendor,
        "hasImage": bool(equipment.ImageData),
        "hasInvoice": bool(equipment.InvoiceData),
        "createdDate": equipment.CreatedDate,
        "status": status,
        "isAvailable": status == STATUS_AVAILABLE,
        "shadowOf": owner,
    }
