from __future__ import annotations

import logging
import os

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.materiel_models import (
    Borrow,
    Equipment,
    LifetimeCounter,
    Loan,
    MyRental,
    Person,
    Rental,
    Repair,
    StorageLocation,
)

QUOTA_LOGGER = logging.getLogger("materiel_manager.quota")

CATEGORY_EQUIPMENT = "equipment"
CATEGORY_PERSONS = "persons"
CATEGORY_STORAGE_LOCATIONS = "storageLocations"
CATEGORY_WORKSITES = "worksites"
CATEGORY_LOANS = "loans"
CATEGORY_BORROWS = "borrows"
CATEGORY_RENTALS = "rentals"
CATEGORY_MY_RENTALS = "myRentals"
CATEGORY_REPAIRS = "repairs"
CATEGORY_ACCOUNTING = "accountingEntries"

FREE_LIMITS = {
    CATEGORY_EQUIPMENT: 10,
    CATEGORY_LOANS: 10,
    CATEGORY_BORROWS: 5,
    CATEGORY_PERSONS: 5,
    CATEGORY_STORAGE_LOCATIONS: 5,
    CATEGORY_RENTALS: 5,
    CATEGORY_REPAIRS: 5,
    CATEGORY_MY_RENTALS: 5,
}


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _parse_limit_overrides(raw: str) -> dict[str, int]:
    overrides: dict[str, int] = {}
    for part in raw.split(","):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = key.strip()
        if key not in FREE_LIMITS:
            continue
        try:
            overrides[key] = max(0, int(value.strip()))
        except ValueError:
            QUOTA_LOGGER.warning("Ignoring invalid limit override %r", part)
    return overrides


def is_premium_unlocked() -> bool:
    return _env_flag("MATERIEL_PREMIUM_UNLOCKED")


def get_limit(category: str) -> int | None:
    if category not in FREE_LIMITS:
        return None
    overrides = _parse_limit_overrides(os.getenv("MATERIEL_FREE_LIMITS", ""))
    return overrides.get(category, FREE_LIMITS[category])


def get_lifetime_total(db: Session, category: str) -> int:
    counter = db.get(LifetimeCounter, category)
    return int(counter.Total or 0) if counter else 0


def can_create(db: Session, category: str) -> bool:
    limit = get_limit(category)
    if limit is None or is_premium_unlocked():
        return True
    return get_lifetime_total(db, category) < limit


def increment_lifetime_counter(db: Session, category: str, amount: int = 1) -> int:
    counter = db.get(LifetimeCounter, category)
    if not counter:
        counter = LifetimeCounter(Category=category, Total=0)
        db.add(counter)
    counter.Total = int(counter.Total or 0) + amount
    db.flush()
    return counter.Total


def admit(db: Session, category: str) -> bool:
    """Check the free-tier gate and count one creation when it passes."""
    if not can_create(db, category):
        QUOTA_LOGGER.warning(
            "Creation refused for %s: lifetime total %s reached limit %s",
            category,
            get_lifetime_total(db, category),
            get_limit(category),
        )
        return False
    increment_lifetime_counter(db, category)
    return True


def remaining(db: Session, category: str) -> int | None:
    limit = get_limit(category)
    if limit is None or is_premium_unlocked():
        return None
    return max(0, limit - get_lifetime_total(db, category))


def quota_overview(db: Session) -> list[dict]:
    premium = is_premium_unlocked()
    rows = []
    for category in FREE_LIMITS:
        rows.append(
            {
                "category": category,
                "limit": get_limit(category),
                "lifetimeTotal": get_lifetime_total(db, category),
                "remaining": remaining(db, category),
                "canCreate": can_create(db, category),
                "premiumUnlocked": premium,
            }
        )
    return rows


def _count(db: Session, stmt) -> int:
    return int(db.execute(stmt).scalar() or 0)


def _reconcile_sources(db: Session) -> dict[str, int]:
    return {
        CATEGORY_EQUIPMENT: _count(db, select(func.count()).select_from(Equipment)),
        CATEGORY_PERSONS: _count(db, select(func.count()).select_from(Person)),
        CATEGORY_STORAGE_LOCATIONS: _count(db, select(func.count()).select_from(StorageLocation)),
        CATEGORY_LOANS: _count(
            db, select(func.count()).select_from(Loan).where(Loan.ActualReturnDate.is_(None))
        ),
        CATEGORY_BORROWS: _count(
            db, select(func.count()).select_from(Borrow).where(Borrow.ActualReturnDate.is_(None))
        ),
        CATEGORY_RENTALS: _count(
            db, select(func.count()).select_from(Rental).where(Rental.ActualReturnDate.is_(None))
        ),
        CATEGORY_MY_RENTALS: _count(
            db, select(func.count()).select_from(MyRental).where(MyRental.ActualReturnDate.is_(None))
        ),
        CATEGORY_REPAIRS: _count(
            db, select(func.count()).select_from(Repair).where(Repair.ReturnDate.is_(None))
        ),
    }


def reconcile_counters(db: Session) -> dict[str, int]:
    """Seed zero counters from existing data; never lowers a counter."""
    seeded: dict[str, int] = {}
    for category, observed in _reconcile_sources(db).items():
        if observed <= 0 or get_lifetime_total(db, category) > 0:
            continue
        increment_lifetime_counter(db, category, observed)
        seeded[category] = observed
    db.commit()
    if seeded:
        QUOTA_LOGGER.info("Seeded lifetime counters from existing data: %s", seeded)
    return seeded
