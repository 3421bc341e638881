from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from models.materiel_models import Borrow, Loan, MyRental, Person, Rental, Repair, Worksite, new_id
from services import quota_service

PERSON_LOGGER = logging.getLogger("materiel_manager.persons")

ROLE_CLIENT = "client"
ROLE_MECHANIC = "mechanic"
ROLE_EMPLOYEE = "employee"
ROLE_RENTAL_AGENCY = "rental_agency"
PERSON_ROLES = (ROLE_CLIENT, ROLE_MECHANIC, ROLE_EMPLOYEE, ROLE_RENTAL_AGENCY)

PERSON_FIELDS = ("LastName", "FirstName", "Email", "Phone", "Organization", "Role", "WorksiteID", "PhotoData")


def normalize_role(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = raw.strip().lower().replace("-", "_")
    if not value:
        return None
    if value not in PERSON_ROLES:
        raise ValueError(f"Unknown person role: {raw}")
    return value


def full_name(person: Person) -> str:
    return f"{person.FirstName or ''} {person.LastName or ''}".strip()


def add_person(db: Session, **fields) -> Optional[Person]:
    if not quota_service.admit(db, quota_service.CATEGORY_PERSONS):
        return None
    person = Person(
        PersonID=new_id(),
        LastName=(fields.get("LastName") or "").strip(),
        FirstName=(fields.get("FirstName") or "").strip(),
        Email=(fields.get("Email") or "").strip(),
        Phone=(fields.get("Phone") or "").strip(),
        Organization=(fields.get("Organization") or "").strip(),
        Role=normalize_role(fields.get("Role")),
        WorksiteID=fields.get("WorksiteID"),
        PhotoData=fields.get("PhotoData"),
        CreatedDate=datetime.now(),
    )
    db.add(person)
    db.commit()
    PERSON_LOGGER.info("Person %s created", person.PersonID)
    return person


def update_person(db: Session, person: Person, **fields) -> Person:
    for key, value in fields.items():
        if key not in PERSON_FIELDS:
            continue
        if key == "Role":
            value = normalize_role(value)
        elif isinstance(value, str):
            value = value.strip()
        setattr(person, key, value)
    db.commit()
    return person


def delete_person(db: Session, person: Person) -> None:
    # Loans and borrows keep the dangling id and show up as orphans.
    db.delete(person)
    db.commit()
    PERSON_LOGGER.info("Person %s deleted", person.PersonID)


def touch_last_contacted(db: Session, person: Person, now: datetime | None = None) -> Person:
    person.LastContactedAt = now or datetime.now()
    db.commit()
    return person


def list_persons(db: Session, role: str | None = None) -> list[Person]:
    stmt = select(Person).order_by(Person.LastName, Person.FirstName)
    if role == ROLE_CLIENT:
        stmt = stmt.where(or_(Person.Role == ROLE_CLIENT, Person.Role.is_(None)))
    elif role:
        stmt = stmt.where(Person.Role == normalize_role(role))
    return db.execute(stmt).scalars().all()


def _person_ids(db: Session) -> set[str]:
    return set(db.execute(select(Person.PersonID)).scalars())


def orphaned_loans(db: Session) -> list[Loan]:
    known = _person_ids(db)
    loans = db.execute(select(Loan).order_by(Loan.StartDate)).scalars().all()
    return [loan for loan in loans if loan.PersonID not in known]


def orphaned_borrows(db: Session) -> list[Borrow]:
    known = _person_ids(db)
    borrows = db.execute(select(Borrow).order_by(Borrow.StartDate)).scalars().all()
    return [borrow for borrow in borrows if borrow.PersonID not in known]


def reassign_loan(db: Session, loan: Loan, person_id: str) -> Loan:
    loan.PersonID = person_id
    db.commit()
    PERSON_LOGGER.info("Loan %s reassigned to person %s", loan.LoanID, person_id)
    return loan


def reassign_borrow(db: Session, borrow: Borrow, person_id: str) -> Borrow:
    borrow.PersonID = person_id
    db.commit()
    PERSON_LOGGER.info("Borrow %s reassigned to person %s", borrow.BorrowID, person_id)
    return borrow


def duplicate_key(person: Person) -> str:
    return f"{(person.LastName or '').strip().lower()}_{(person.FirstName or '').strip().lower()}"


def find_duplicate_groups(db: Session) -> list[list[Person]]:
    groups: dict[str, list[Person]] = {}
    persons = db.execute(select(Person).order_by(Person.CreatedDate, Person.PersonID)).scalars().all()
    for person in persons:
        groups.setdefault(duplicate_key(person), []).append(person)
    duplicates = [group for group in groups.values() if len(group) > 1]
    return sorted(duplicates, key=lambda group: group[0].LastName or "")


def completeness_score(person: Person) -> int:
    score = 0
    if person.Email:
        score += 2
    if person.Phone:
        score += 2
    if person.Organization:
        score += 1
    return score


def merge_persons(db: Session, group: list[Person]) -> Optional[Person]:
    """Fold a duplicate group into its most complete member.

    Empty contact fields of the survivor are filled from the other members in
    score order, references held by the others are moved to the survivor and
    the others are deleted, all in one commit.
    """
    if len(group) < 2:
        return None
    ranked = sorted(group, key=completeness_score, reverse=True)
    survivor = ranked[0]
    for other in ranked[1:]:
        for field in ("Email", "Phone", "Organization"):
            if not getattr(survivor, field) and getattr(other, field):
                setattr(survivor, field, getattr(other, field))

    loser_ids = [person.PersonID for person in group if person.PersonID != survivor.PersonID]
    keep = survivor.PersonID
    db.execute(update(Loan).where(Loan.PersonID.in_(loser_ids)).values(PersonID=keep))
    db.execute(update(Borrow).where(Borrow.PersonID.in_(loser_ids)).values(PersonID=keep))
    db.execute(update(Rental).where(Rental.RenterID.in_(loser_ids)).values(RenterID=keep))
    db.execute(update(MyRental).where(MyRental.OwnerID.in_(loser_ids)).values(OwnerID=keep))
    db.execute(update(Repair).where(Repair.RepairerID.in_(loser_ids)).values(RepairerID=keep))
    db.execute(update(Worksite).where(Worksite.ContactPersonID.in_(loser_ids)).values(ContactPersonID=keep))
    for person in group:
        if person.PersonID != keep:
            db.delete(person)
    db.commit()
    PERSON_LOGGER.info("Merged persons %s into %s", loser_ids, keep)
    return survivor


def serialize_person(person: Person) -> dict:
    return {
        "personID": person.PersonID,
        "lastName": person.LastName,
        "firstName": person.FirstName,
        "fullName": full_name(person),
        "email": person.Email,
        "phone": person.Phone,
        "organization": person.Organization,
        "role": person.Role,
        "lastContactedAt": person.LastContactedAt,
        "worksiteID": person.WorksiteID,
        "hasPhoto": bool(person.PhotoData),
        "createdDate": person.CreatedDate,
    }
