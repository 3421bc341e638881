from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, List

from pydantic import TypeAdapter
from sqlalchemy import select
from sqlalchemy.orm import Session

from models.materiel_models import Equipment, Person, Worksite, new_id
from schemas.exports import (
    STRATEGY_EPOCH,
    STRATEGY_ISO8601,
    STRATEGY_REFERENCE,
    EquipmentRecord,
    ExportDocument,
    ExportOptions,
    ImportResult,
    WorksiteImport,
    encode_date,
)
from services import quota_service
from services.person_service import ROLE_EMPLOYEE
from services.persistence_service import (
    DECODE_CHAIN,
    RECORD_TYPES,
    decode_first,
    model_to_record,
    primary_key_value,
    record_to_model,
)

IMPORT_LOGGER = logging.getLogger("materiel_manager.import")

WORKSITE_DECODE_CHAIN = (STRATEGY_ISO8601, STRATEGY_EPOCH, STRATEGY_REFERENCE)
CLOSED_MARKERS = {
    quota_service.CATEGORY_LOANS: "ActualReturnDate",
    quota_service.CATEGORY_BORROWS: "ActualReturnDate",
    quota_service.CATEGORY_RENTALS: "ActualReturnDate",
    quota_service.CATEGORY_MY_RENTALS: "ActualReturnDate",
    quota_service.CATEGORY_REPAIRS: "ReturnDate",
}


def app_version() -> str:
    return os.getenv("MATERIEL_APP_VERSION", "1.0")


def build_export(db: Session, options: ExportOptions | None = None, now: datetime | None = None) -> dict:
    options = options or ExportOptions()
    document: dict[str, Any] = {}
    for key, (model, _) in RECORD_TYPES.items():
        if not getattr(options, key, False):
            continue
        rows = db.execute(select(model)).scalars().all()
        marker = CLOSED_MARKERS.get(key)
        if options.excludeClosed and marker:
            rows = [row for row in rows if getattr(row, marker) is None]
        document[key] = [model_to_record(row) for row in rows]

    if options.worksites and not options.persons:
        worksite_ids = [row["worksiteID"] for row in document.get(quota_service.CATEGORY_WORKSITES, [])]
        employees = []
        if worksite_ids:
            employees = db.execute(
                select(Person).where(Person.Role == ROLE_EMPLOYEE, Person.WorksiteID.in_(worksite_ids))
            ).scalars().all()
        document[quota_service.CATEGORY_PERSONS] = [model_to_record(person) for person in employees]

    document["exportDate"] = encode_date(now or datetime.now())
    document["appVersion"] = app_version()
    return document


def _existing_ids(db: Session, model) -> set[str]:
    key_column = model.__mapper__.primary_key[0]
    return set(db.execute(select(key_column)).scalars())


def _apply_document(db: Session, document: ExportDocument) -> dict[str, int]:
    prepared = []
    for key, (model, _) in RECORD_TYPES.items():
        records = getattr(document, key, None)
        if records is None:
            continue
        prepared.append((key, model, [record_to_model(model, record) for record in records]))

    counts: dict[str, int] = {}
    for key, model, instances in prepared:
        existing = _existing_ids(db, model)
        added = 0
        for instance in instances:
            identifier = primary_key_value(instance)
            if identifier in existing:
                if model is Person and instance.WorksiteID:
                    current = db.get(Person, identifier)
                    if current and not current.WorksiteID:
                        current.WorksiteID = instance.WorksiteID
                continue
            db.add(instance)
            existing.add(identifier)
            added += 1
        db.flush()
        counts[key] = added
        if added and key in quota_service.FREE_LIMITS:
            quota_service.increment_lifetime_counter(db, key, added)
    return counts


def import_document(db: Session, payload: Any) -> ImportResult:
    """Merge an export document, or a legacy bare list of equipment, into the store."""
    document, strategy = decode_first(TypeAdapter(ExportDocument), payload, DECODE_CHAIN)
    if document is not None:
        try:
            counts = _apply_document(db, document)
        except ValueError:
            db.rollback()
            IMPORT_LOGGER.warning("Import rejected: undecodable binary data")
            return ImportResult(success=False)
        db.commit()
        IMPORT_LOGGER.info("Imported export document (%s): %s", strategy, counts)
        return ImportResult(success=True, format="document", dateStrategy=strategy, imported=counts)

    items, strategy = decode_first(TypeAdapter(List[EquipmentRecord]), payload, DECODE_CHAIN)
    if items is None:
        IMPORT_LOGGER.warning("Import rejected: no format or date strategy matched")
        return ImportResult(success=False)
    try:
        instances = [record_to_model(Equipment, record) for record in items]
    except ValueError:
        IMPORT_LOGGER.warning("Import rejected: undecodable binary data")
        return ImportResult(success=False)
    existing = _existing_ids(db, Equipment)
    added = 0
    for instance in instances:
        if instance.EquipmentID in existing:
            continue
        db.add(instance)
        existing.add(instance.EquipmentID)
        added += 1
    db.flush()
    if added:
        quota_service.increment_lifetime_counter(db, quota_service.CATEGORY_EQUIPMENT, added)
    db.commit()
    IMPORT_LOGGER.info("Imported legacy equipment list (%s): %s new", strategy, added)
    return ImportResult(
        success=True,
        format="legacy-equipment",
        dateStrategy=strategy,
        imported={quota_service.CATEGORY_EQUIPMENT: added},
    )


def import_worksites(db: Session, payload: Any) -> ImportResult:
    items, strategy = decode_first(TypeAdapter(List[WorksiteImport]), payload, WORKSITE_DECODE_CHAIN)
    if items is None:
        IMPORT_LOGGER.warning("Worksite import rejected: no date strategy matched")
        return ImportResult(success=False)

    existing = _existing_ids(db, Worksite)
    imported = 0
    created_persons = 0
    for item in items:
        worksite_id = item.worksiteID or new_id()
        if worksite_id in existing:
            continue
        db.add(
            Worksite(
                WorksiteID=worksite_id,
                Name=item.name,
                Address=item.address,
                Description=item.description,
                StartDate=item.startDate,
                EndDate=item.endDate,
                Notes=item.notes,
                IsActive=item.isActive,
            )
        )
        existing.add(worksite_id)
        imported += 1
        db.flush()
        for employee in item.employees or []:
            match = db.execute(
                select(Person).where(
                    Person.LastName == employee.lastName,
                    Person.FirstName == employee.firstName,
                    Person.Role == ROLE_EMPLOYEE,
                )
            ).scalars().first()
            if match:
                if not match.WorksiteID:
                    match.WorksiteID = worksite_id
                continue
            db.add(
                Person(
                    PersonID=new_id(),
                    LastName=employee.lastName,
                    FirstName=employee.firstName,
                    Email=employee.email,
                    Phone=employee.phone,
                    Organization="",
                    Role=ROLE_EMPLOYEE,
                    WorksiteID=worksite_id,
                    CreatedDate=datetime.now(),
                )
            )
            db.flush()
            created_persons += 1
    if created_persons:
        quota_service.increment_lifetime_counter(db, quota_service.CATEGORY_PERSONS, created_persons)
    db.commit()
    IMPORT_LOGGER.info("Imported %s worksites (%s), %s new employees", imported, strategy, created_persons)
    return ImportResult(
        success=imported > 0,
        format="worksites",
        dateStrategy=strategy,
        imported={quota_service.CATEGORY_WORKSITES: imported, quota_service.CATEGORY_PERSONS: created_persons},
    )
