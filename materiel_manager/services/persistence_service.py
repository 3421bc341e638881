from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import event, func, select
from sqlalchemy.orm import Session

from models.materiel_models import (
    AccountingEntry,
    Borrow,
    Equipment,
    LifetimeCounter,
    Loan,
    MyRental,
    Person,
    Rental,
    Repair,
    StorageLocation,
    Worksite,
)
from schemas.exports import (
    STRATEGY_EPOCH,
    STRATEGY_ISO8601,
    STRATEGY_REFERENCE,
    AccountingEntryRecord,
    BorrowRecord,
    EquipmentRecord,
    LifetimeCounterRecord,
    LoanRecord,
    MyRentalRecord,
    PersonRecord,
    RentalRecord,
    RepairRecord,
    StorageLocationRecord,
    WorksiteRecord,
    encode_date,
)
from services import quota_service

PERSISTENCE_LOGGER = logging.getLogger("materiel_manager.persistence")

COUNTERS_KEY = "counters"
DECODE_CHAIN = (STRATEGY_EPOCH, STRATEGY_ISO8601, STRATEGY_REFERENCE)
BINARY_COLUMNS = {"ImageData", "InvoiceData", "PhotoData"}

# Insertion order: referenced categories come before the records pointing at them.
RECORD_TYPES = {
    quota_service.CATEGORY_STORAGE_LOCATIONS: (StorageLocation, StorageLocationRecord),
    quota_service.CATEGORY_WORKSITES: (Worksite, WorksiteRecord),
    quota_service.CATEGORY_PERSONS: (Person, PersonRecord),
    quota_service.CATEGORY_EQUIPMENT: (Equipment, EquipmentRecord),
    quota_service.CATEGORY_LOANS: (Loan, LoanRecord),
    quota_service.CATEGORY_BORROWS: (Borrow, BorrowRecord),
    quota_service.CATEGORY_RENTALS: (Rental, RentalRecord),
    quota_service.CATEGORY_MY_RENTALS: (MyRental, MyRentalRecord),
    quota_service.CATEGORY_REPAIRS: (Repair, RepairRecord),
    quota_service.CATEGORY_ACCOUNTING: (AccountingEntry, AccountingEntryRecord),
}


def column_name(field: str) -> str:
    return field[:1].upper() + field[1:]


def field_name(column: str) -> str:
    return column[:1].lower() + column[1:]


def primary_key_value(instance) -> str:
    key = instance.__mapper__.primary_key[0].key
    return getattr(instance, key)


def model_to_record(instance) -> dict:
    record = {}
    for column in instance.__table__.columns:
        value = getattr(instance, column.key)
        if isinstance(value, datetime):
            value = encode_date(value)
        elif isinstance(value, (bytes, bytearray)):
            value = base64.b64encode(value).decode("ascii")
        record[field_name(column.key)] = value
    return record


def record_to_model(model, record) -> Any:
    """Build an ORM instance from a decoded record; bad base64 raises ValueError."""
    columns = {column.key for column in model.__table__.columns}
    values = {}
    for key, value in record.model_dump().items():
        column = column_name(key)
        if column not in columns:
            continue
        if column in BINARY_COLUMNS and value is not None:
            try:
                value = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValueError(f"Invalid base64 payload in {key}") from exc
        values[column] = value
    return model(**values)


def decode_first(adapter: TypeAdapter, payload: Any, chain: Iterable[str] = DECODE_CHAIN):
    """Try each date strategy in order and return (value, strategy) for the first that fits."""
    for strategy in chain:
        try:
            return adapter.validate_python(payload, context={"dateStrategy": strategy}), strategy
        except ValidationError as exc:
            PERSISTENCE_LOGGER.debug("Decode with %s failed: %s", strategy, exc.error_count())
    return None, None


class JsonListStore:
    """One JSON array per category key, written atomically in a data directory."""

    def __init__(self, data_dir: str | os.PathLike):
        self.data_dir = Path(data_dir)

    def path_for(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def load_list(self, key: str) -> list:
        path = self.path_for(key)
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError):
            PERSISTENCE_LOGGER.warning("Could not read list %s from %s", key, path)
            return []
        if not isinstance(payload, list):
            PERSISTENCE_LOGGER.warning("List %s in %s is not an array", key, path)
            return []
        return payload

    def save_list(self, key: str, items: list) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.data_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(items, handle, ensure_ascii=False)
            os.replace(temp_path, self.path_for(key))
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise


def load_records(store: JsonListStore, key: str) -> Optional[list]:
    if key == COUNTERS_KEY:
        schema = LifetimeCounterRecord
    else:
        schema = RECORD_TYPES[key][1]
    raw = store.load_list(key)
    records, strategy = decode_first(TypeAdapter(List[schema]), raw)
    if records is None:
        PERSISTENCE_LOGGER.warning("No date strategy could decode list %s", key)
        return None
    if raw and strategy != STRATEGY_EPOCH:
        PERSISTENCE_LOGGER.info("List %s decoded with %s", key, strategy)
    return records


def snapshot_store(db: Session, store: JsonListStore) -> dict[str, int]:
    written: dict[str, int] = {}
    for key, (model, _) in RECORD_TYPES.items():
        rows = db.execute(select(model)).scalars().all()
        store.save_list(key, [model_to_record(row) for row in rows])
        written[key] = len(rows)
    counters = db.execute(select(LifetimeCounter)).scalars().all()
    store.save_list(COUNTERS_KEY, [{"category": row.Category, "total": row.Total} for row in counters])
    return written


def store_is_empty(db: Session) -> bool:
    for model, _ in RECORD_TYPES.values():
        if db.execute(select(func.count()).select_from(model)).scalar():
            return False
    return True


def restore_store(db: Session, store: JsonListStore) -> dict[str, int]:
    """Load every category list into an empty store."""
    if not store_is_empty(db):
        PERSISTENCE_LOGGER.info("Store already holds data, skipping restore")
        return {}
    restored: dict[str, int] = {}
    for key, (model, _) in RECORD_TYPES.items():
        records = load_records(store, key)
        if not records:
            continue
        try:
            instances = [record_to_model(model, record) for record in records]
        except ValueError:
            PERSISTENCE_LOGGER.warning("Skipping list %s with undecodable binary data", key)
            continue
        db.add_all(instances)
        restored[key] = len(instances)
    for record in load_records(store, COUNTERS_KEY) or []:
        counter = db.get(LifetimeCounter, record.category)
        if counter:
            counter.Total = max(int(counter.Total or 0), record.total)
        else:
            db.add(LifetimeCounter(Category=record.category, Total=record.total))
    db.commit()
    if restored:
        PERSISTENCE_LOGGER.info("Restored store from %s: %s", store.data_dir, restored)
    return restored


class ChangeTracker:
    """Version counter bumped by every flush or bulk write of the tracked sessions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._version = 0
        self._last_change = time.monotonic()

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    @property
    def last_change(self) -> float:
        with self._lock:
            return self._last_change

    def bump(self, *_args, **_kwargs) -> None:
        with self._lock:
            self._version += 1
            self._last_change = time.monotonic()

    def _on_orm_execute(self, orm_execute_state) -> None:
        if orm_execute_state.is_update or orm_execute_state.is_delete:
            self.bump()

    def attach(self, session_factory) -> None:
        event.listen(session_factory, "after_flush", self.bump)
        event.listen(session_factory, "do_orm_execute", self._on_orm_execute)

    def detach(self, session_factory) -> None:
        event.remove(session_factory, "after_flush", self.bump)
        event.remove(session_factory, "do_orm_execute", self._on_orm_execute)


class AutosaveWorker:
    """Writes a snapshot once the change version has been stable for the debounce window."""

    def __init__(self, session_factory, store: JsonListStore, tracker: ChangeTracker, debounce_seconds: float = 0.6):
        self.session_factory = session_factory
        self.store = store
        self.tracker = tracker
        self.debounce_seconds = max(0.0, float(debounce_seconds))
        self._poll_seconds = max(0.05, self.debounce_seconds / 4)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._saved_version = tracker.version
        self._failed_version: int | None = None
        self.saves = 0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="materiel-autosave", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        self.flush_now()

    def is_dirty(self) -> bool:
        return self.tracker.version != self._saved_version

    def flush_now(self) -> bool:
        if not self.is_dirty():
            return False
        version = self.tracker.version
        db = self.session_factory()
        try:
            snapshot_store(db, self.store)
        except OSError:
            PERSISTENCE_LOGGER.exception("Autosave to %s failed", self.store.data_dir)
            self._failed_version = version
            return False
        finally:
            db.close()
        self._saved_version = version
        self._failed_version = None
        self.saves += 1
        PERSISTENCE_LOGGER.debug("Autosaved version %s", version)
        return True

    def _run(self) -> None:
        while not self._stop.wait(self._poll_seconds):
            version = self.tracker.version
            if version == self._saved_version or version == self._failed_version:
                continue
            if time.monotonic() - self.tracker.last_change < self.debounce_seconds:
                continue
            self.flush_now()
