from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from models.materiel_models import Equipment, Person, StorageLocation, Worksite, new_id
from services import quota_service
from services.person_service import ROLE_EMPLOYEE

SITE_LOGGER = logging.getLogger("materiel_manager.sites")

WORKSITE_PLANNED = "planned"
WORKSITE_ACTIVE = "active"
WORKSITE_FINISHED = "finished"

STORAGE_LOCATION_FIELDS = ("Name", "Address", "Building", "Floor", "Room", "Notes")
WORKSITE_FIELDS = ("Name", "Address", "Description", "StartDate", "EndDate", "Notes", "IsActive", "ContactPersonID")


def _apply(record, allowed: tuple[str, ...], fields: dict) -> None:
    for key, value in fields.items():
        if key in allowed:
            setattr(record, key, value.strip() if isinstance(value, str) else value)


def add_storage_location(db: Session, **fields) -> Optional[StorageLocation]:
    if not quota_service.admit(db, quota_service.CATEGORY_STORAGE_LOCATIONS):
        return None
    location = StorageLocation(
        StorageLocationID=new_id(),
        Name="",
        Address="",
        Building="",
        Floor="",
        Room="",
        Notes="",
    )
    _apply(location, STORAGE_LOCATION_FIELDS, fields)
    db.add(location)
    db.commit()
    return location


def update_storage_location(db: Session, location: StorageLocation, **fields) -> StorageLocation:
    _apply(location, STORAGE_LOCATION_FIELDS, fields)
    db.commit()
    return location


def delete_storage_location(db: Session, location: StorageLocation) -> None:
    location_id = location.StorageLocationID
    db.execute(
        update(Equipment)
        .where(Equipment.StorageLocationID == location_id)
        .values(StorageLocationID=None)
    )
    db.delete(location)
    db.commit()
    SITE_LOGGER.info("Storage location %s deleted", location_id)


def full_address(location: StorageLocation) -> str:
    parts = []
    if location.Building:
        parts.append(location.Building)
    if location.Floor:
        parts.append(f"Floor {location.Floor}")
    if location.Room:
        parts.append(f"Room {location.Room}")
    return ", ".join(parts)


def equipment_in_location(db: Session, location_id: str) -> list[Equipment]:
    return db.execute(
        select(Equipment).where(Equipment.StorageLocationID == location_id).order_by(Equipment.Name)
    ).scalars().all()


def serialize_storage_location(location: StorageLocation) -> dict:
    return {
        "storageLocationID": location.StorageLocationID,
        "name": location.Name,
        "address": location.Address,
        "building": location.Building,
        "floor": location.Floor,
        "room": location.Room,
        "notes": location.Notes,
        "fullAddress": full_address(location),
    }


def add_worksite(db: Session, **fields) -> Worksite:
    worksite = Worksite(
        WorksiteID=fields.pop("WorksiteID", None) or new_id(),
        Name="",
        Address="",
        Description="",
        Notes="",
        IsActive=True,
    )
    _apply(worksite, WORKSITE_FIELDS, fields)
    db.add(worksite)
    db.commit()
    return worksite


def update_worksite(db: Session, worksite: Worksite, **fields) -> Worksite:
    _apply(worksite, WORKSITE_FIELDS, fields)
    db.commit()
    return worksite


def delete_worksite(db: Session, worksite: Worksite) -> None:
    worksite_id = worksite.WorksiteID
    db.execute(update(Person).where(Person.WorksiteID == worksite_id).values(WorksiteID=None))
    db.delete(worksite)
    db.commit()
    SITE_LOGGER.info("Worksite %s deleted, employees unassigned", worksite_id)


def worksite_status(worksite: Worksite, now: datetime | None = None) -> str:
    current = now or datetime.now()
    if worksite.StartDate and worksite.StartDate > current:
        return WORKSITE_PLANNED
    return WORKSITE_ACTIVE if worksite.IsActive else WORKSITE_FINISHED


def worksite_period(worksite: Worksite) -> str:
    start = worksite.StartDate.strftime("%d/%m/%Y") if worksite.StartDate else None
    end = worksite.EndDate.strftime("%d/%m/%Y") if worksite.EndDate else None
    if start and end:
        return f"{start} - {end}"
    if start:
        return f"From {start}"
    if end:
        return f"Until {end}"
    return ""


def assign_employee(db: Session, person: Person, worksite_id: str) -> Person:
    person.WorksiteID = worksite_id
    db.commit()
    return person


def unassign_employee(db: Session, person: Person) -> Person:
    person.WorksiteID = None
    db.commit()
    return person


def employees_for_worksite(db: Session, worksite_id: str) -> list[Person]:
    return db.execute(
        select(Person)
        .where(Person.Role == ROLE_EMPLOYEE, Person.WorksiteID == worksite_id)
        .order_by(Person.LastName, Person.FirstName)
    ).scalars().all()


def employees_without_worksite(db: Session) -> list[Person]:
    return db.execute(
        select(Person)
        .where(Person.Role == ROLE_EMPLOYEE, Person.WorksiteID.is_(None))
        .order_by(Person.LastName, Person.FirstName)
    ).scalars().all()


def available_employees(db: Session, worksite_id: str | None = None) -> list[Person]:
    stmt = select(Person).where(Person.Role == ROLE_EMPLOYEE)
    if worksite_id:
        stmt = stmt.where(or_(Person.WorksiteID.is_(None), Person.WorksiteID != worksite_id))
    return db.execute(stmt.order_by(Person.LastName, Person.FirstName)).scalars().all()


def serialize_worksite(worksite: Worksite, now: datetime | None = None) -> dict:
    return {
        "worksiteID": worksite.WorksiteID,
        "name": worksite.Name,
        "address": worksite.Address,
        "description": worksite.Description,
        "startDate": worksite.StartDate,
        "endDate": worksite.EndDate,
        "notes": worksite.Notes,
        "isActive": worksite.IsActive,
        "contactPersonID": worksite.ContactPersonID,
        "status": worksite_status(worksite, now),
        "period": worksite_period(worksite),
    }
