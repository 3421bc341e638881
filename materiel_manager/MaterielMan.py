import os
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy import select, text
from sqlalchemy.orm import Session

load_dotenv()

from db.base import Base
from db.deps import get_materiel_db
from db.session import SessionLocalMateriel, engine_materiel
from models.materiel_models import (
    Borrow,
    Equipment,
    Loan,
    MyRental,
    Person,
    Rental,
    Repair,
    StorageLocation,
    Worksite,
)
from schemas.exports import ExportOptions
from schemas.materiel import (
    AssignEmployeeRequest,
    CategoryRenameRequest,
    EquipmentUpsert,
    MergeRequest,
    PersonUpsert,
    ReassignRequest,
    StorageLocationUpsert,
    WorksiteUpsert,
)
from schemas.transactions import (
    AmountRequest,
    BorrowUpdate,
    CreateBorrowDto,
    CreateLoanDto,
    CreateMyRentalDto,
    CreateRentalDto,
    CreateRepairDto,
    DeleteEntriesRequest,
    DepositReturnedRequest,
    KeepDepositRequest,
    LoanUpdate,
    MyRentalUpdate,
    PaymentRequest,
    RelendRequest,
    RentalUpdate,
    RepairUpdate,
    ReturnRepairRequest,
    SendToRepairRequest,
    ShadowRequest,
    SubRentRequest,
)
from services import (
    equipment_service,
    export_service,
    ledger_service,
    linkage_service,
    loan_service,
    person_service,
    quota_service,
    rental_service,
    repair_service,
    site_service,
)
from services.persistence_service import AutosaveWorker, ChangeTracker, JsonListStore, column_name, restore_store
from services.status_service import (
    STATUS_AVAILABLE,
    build_status_index,
    owner_state,
    rental_active_sub_rental,
    resolve_status,
)

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.environ.get("MATERIEL_DATA_DIR") or (BASE_DIR / "data"))
AUTOSAVE_DEBOUNCE_SECONDS = float(os.environ.get("MATERIEL_AUTOSAVE_DEBOUNCE_SECONDS") or "0.6")
IMAGE_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "image/heic"}
BINARY_FIELDS = {"imageData", "invoiceData", "photoData"}

APP_LOGGER = logging.getLogger("materiel_manager.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine_materiel)
    store = JsonListStore(DATA_DIR)
    db = SessionLocalMateriel()
    try:
        restore_store(db, store)
        quota_service.reconcile_counters(db)
    finally:
        db.close()

    tracker = ChangeTracker()
    tracker.attach(SessionLocalMateriel)
    worker = AutosaveWorker(SessionLocalMateriel, store, tracker, debounce_seconds=AUTOSAVE_DEBOUNCE_SECONDS)
    worker.start()
    app.state.autosave = worker
    APP_LOGGER.info("Autosave to %s started", DATA_DIR)
    try:
        yield
    finally:
        worker.stop()
        tracker.detach(SessionLocalMateriel)
        app.state.autosave = None


app = FastAPI(lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


def _local(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def _decode_base64(value: str | None, field: str) -> bytes | None:
    if value is None or value == "":
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"{field} is not valid base64") from exc


def _columns(payload) -> dict:
    values = {}
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field in BINARY_FIELDS:
            value = _decode_base64(value, field)
        elif isinstance(value, datetime):
            value = _local(value)
        values[column_name(field)] = value
    return values


def _check_period(start: datetime | None, end: datetime | None) -> None:
    start, end = _local(start), _local(end)
    if start is not None and end is not None and end < start:
        raise HTTPException(status_code=400, detail="endDate must not be before startDate")


def _get_or_404(db: Session, model, identifier: str, label: str):
    record = db.get(model, identifier)
    if not record:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return record


def _require_person(db: Session, person_id: str) -> Person:
    return _get_or_404(db, Person, person_id, "Person")


def _quota_refused(category: str) -> HTTPException:
    return HTTPException(status_code=409, detail=f"Free limit reached for {category}")


def _value_error(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _equipment_payload(db: Session, equipment: Equipment) -> dict:
    return equipment_service.serialize_equipment(
        equipment,
        resolve_status(db, equipment.EquipmentID),
        equipment_service.shadow_owner(db, equipment.EquipmentID),
    )


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_materiel_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/quota")
def get_quota(db: Session = Depends(get_materiel_db)):
    return quota_service.quota_overview(db)


@app.post("/api/persistence/save")
def save_now(request: Request):
    worker = getattr(request.app.state, "autosave", None)
    if worker is None:
        raise HTTPException(status_code=409, detail="Autosave is not running")
    return {"saved": worker.flush_now(), "saves": worker.saves}


# Equipment


@app.get("/api/equipment")
def get_equipment(
    storage_location_id: str | None = Query(None, alias="storageLocationID"),
    category: str | None = Query(None),
    db: Session = Depends(get_materiel_db),
):
    index = build_status_index(db)
    return [
        equipment_service.serialize_equipment(
            equipment,
            index.get(equipment.EquipmentID, STATUS_AVAILABLE),
            equipment_service.shadow_owner(db, equipment.EquipmentID),
        )
        for equipment in equipment_service.list_equipment(db, storage_location_id, category)
    ]


@app.get("/api/equipment/categories")
def get_categories(db: Session = Depends(get_materiel_db)):
    return equipment_service.list_categories(db)


@app.put("/api/equipment/categories")
def rename_category(payload: CategoryRenameRequest, db: Session = Depends(get_materiel_db)):
    if not payload.newName.strip():
        raise HTTPException(status_code=400, detail="newName must not be empty")
    return {"updated": equipment_service.rename_category(db, payload.oldName, payload.newName)}


@app.delete("/api/equipment/categories/{name}")
def delete_category(name: str, db: Session = Depends(get_materiel_db)):
    return {"updated": equipment_service.delete_category(db, name)}


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: str, db: Session = Depends(get_materiel_db)):
    equipment = _get_or_404(db, Equipment, equipment_id, "Equipment")
    return _equipment_payload(db, equipment)


@app.get("/api/equipment/{equipment_id}/history")
def get_equipment_history(equipment_id: str, db: Session = Depends(get_materiel_db)):
    _get_or_404(db, Equipment, equipment_id, "Equipment")
    return {
        "loans": [loan_service.serialize_loan(loan) for loan in loan_service.loans_for_equipment(db, equipment_id)],
        "rentals": [
            rental_service.serialize_rental(rental)
            for rental in rental_service.list_rentals(db, equipment_id=equipment_id)
        ],
        "repairs": [
            repair_service.serialize_repair(repair)
            for repair in repair_service.list_repairs(db, equipment_id=equipment_id)
        ],
    }


@app.post("/api/equipment")
def create_equipment(payload: EquipmentUpsert, db: Session = Depends(get_materiel_db)):
    if not (payload.name or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    equipment = equipment_service.add_equipment(db, **_columns(payload))
    if not equipment:
        raise _quota_refused(quota_service.CATEGORY_EQUIPMENT)
    return _equipment_payload(db, equipment)


@app.put("/api/equipment/{equipment_id}")
def update_equipment(equipment_id: str, payload: EquipmentUpsert, db: Session = Depends(get_materiel_db)):
    equipment = _get_or_404(db, Equipment, equipment_id, "Equipment")
    equipment_service.update_equipment(db, equipment, **_columns(payload))
    return _equipment_payload(db, equipment)


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment(equipment_id: str, db: Session = Depends(get_materiel_db)):
    equipment = _get_or_404(db, Equipment, equipment_id, "Equipment")
    equipment_service.delete_equipment(db, equipment)
    return {"message": "Deleted"}


@app.post("/api/equipment/{equipment_id}/image")
def upload_equipment_image(equipment_id: str, file: UploadFile = File(...), db: Session = Depends(get_materiel_db)):
    equipment = _get_or_404(db, Equipment, equipment_id, "Equipment")
    if file.content_type not in IMAGE_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Unsupported file type. Please upload an image (jpg, png, webp, gif, heic).")
    equipment_service.set_image(db, equipment, file.file.read())
    return {"equipmentID": equipment.EquipmentID, "hasImage": True}


@app.get("/api/equipment/{equipment_id}/image")
def get_equipment_image(equipment_id: str, db: Session = Depends(get_materiel_db)):
    equipment = _get_or_404(db, Equipment, equipment_id, "Equipment")
    if not equipment.ImageData:
        raise HTTPException(status_code=404, detail="Equipment has no image")
    return Response(content=equipment.ImageData, media_type="application/octet-stream")


# Persons


@app.get("/api/persons")
def get_persons(role: str | None = Query(None), db: Session = Depends(get_materiel_db)):
    try:
        persons = person_service.list_persons(db, role)
    except ValueError as exc:
        raise _value_error(exc) from exc
    return [person_service.serialize_person(person) for person in persons]


@app.get("/api/persons/roles")
def get_person_roles():
    return list(person_service.PERSON_ROLES)


@app.get("/api/persons/duplicates")
def get_duplicate_persons(db: Session = Depends(get_materiel_db)):
    return [
        [person_service.serialize_person(person) for person in group]
        for group in person_service.find_duplicate_groups(db)
    ]


@app.post("/api/persons/merge")
def merge_persons(payload: MergeRequest, db: Session = Depends(get_materiel_db)):
    group = [_require_person(db, person_id) for person_id in dict.fromkeys(payload.personIDs)]
    survivor = person_service.merge_persons(db, group)
    if not survivor:
        raise HTTPException(status_code=400, detail="At least two distinct persons are required")
    return person_service.serialize_person(survivor)


@app.get("/api/persons/orphans")
def get_orphans(db: Session = Depends(get_materiel_db)):
    return {
        "loans": [loan_service.serialize_loan(loan) for loan in person_service.orphaned_loans(db)],
        "borrows": [loan_service.serialize_borrow(db, borrow) for borrow in person_service.orphaned_borrows(db)],
    }


@app.get("/api/persons/{person_id}")
def get_person(person_id: str, db: Session = Depends(get_materiel_db)):
    person = _require_person(db, person_id)
    payload = person_service.serialize_person(person)
    payload["loans"] = [loan_service.serialize_loan(loan) for loan in loan_service.loans_for_person(db, person_id)]
    payload["borrows"] = [
        loan_service.serialize_borrow(db, borrow) for borrow in loan_service.list_borrows(db, person_id=person_id)
    ]
    return payload


@app.post("/api/persons")
def create_person(payload: PersonUpsert, db: Session = Depends(get_materiel_db)):
    try:
        person = person_service.add_person(db, **_columns(payload))
    except ValueError as exc:
        raise _value_error(exc) from exc
    if not person:
        raise _quota_refused(quota_service.CATEGORY_PERSONS)
    return person_service.serialize_person(person)


@app.put("/api/persons/{person_id}")
def update_person(person_id: str, payload: PersonUpsert, db: Session = Depends(get_materiel_db)):
    person = _require_person(db, person_id)
    try:
        person_service.update_person(db, person, **_columns(payload))
    except ValueError as exc:
        db.rollback()
        raise _value_error(exc) from exc
    return person_service.serialize_person(person)


@app.delete("/api/persons/{person_id}")
def delete_person(person_id: str, db: Session = Depends(get_materiel_db)):
    person = _require_person(db, person_id)
    person_service.delete_person(db, person)
    return {"message": "Deleted"}


@app.post("/api/persons/{person_id}/touch")
def touch_person(person_id: str, db: Session = Depends(get_materiel_db)):
    person = _require_person(db, person_id)
    return person_service.serialize_person(person_service.touch_last_contacted(db, person))


@app.put("/api/persons/{person_id}/worksite")
def assign_person_worksite(person_id: str, payload: AssignEmployeeRequest, db: Session = Depends(get_materiel_db)):
    person = _require_person(db, person_id)
    _get_or_404(db, Worksite, payload.worksiteID, "Worksite")
    return person_service.serialize_person(site_service.assign_employee(db, person, payload.worksiteID))


@app.delete("/api/persons/{person_id}/worksite")
def unassign_person_worksite(person_id: str, db: Session = Depends(get_materiel_db)):
    person = _require_person(db, person_id)
    return person_service.serialize_person(site_service.unassign_employee(db, person))


# Storage locations


@app.get("/api/storage-locations")
def get_storage_locations(db: Session = Depends(get_materiel_db)):
    locations = db.execute(select(StorageLocation).order_by(StorageLocation.Name)).scalars().all()
    return [site_service.serialize_storage_location(location) for location in locations]


@app.get("/api/storage-locations/{location_id}")
def get_storage_location(location_id: str, db: Session = Depends(get_materiel_db)):
    location = _get_or_404(db, StorageLocation, location_id, "Storage location")
    payload = site_service.serialize_storage_location(location)
    payload["equipment"] = [_equipment_payload(db, item) for item in site_service.equipment_in_location(db, location_id)]
    return payload


@app.post("/api/storage-locations")
def create_storage_location(payload: StorageLocationUpsert, db: Session = Depends(get_materiel_db)):
    if not (payload.name or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    location = site_service.add_storage_location(db, **_columns(payload))
    if not location:
        raise _quota_refused(quota_service.CATEGORY_STORAGE_LOCATIONS)
    return site_service.serialize_storage_location(location)


@app.put("/api/storage-locations/{location_id}")
def update_storage_location(location_id: str, payload: StorageLocationUpsert, db: Session = Depends(get_materiel_db)):
    location = _get_or_404(db, StorageLocation, location_id, "Storage location")
    return site_service.serialize_storage_location(
        site_service.update_storage_location(db, location, **_columns(payload))
    )


@app.delete("/api/storage-locations/{location_id}")
def delete_storage_location(location_id: str, db: Session = Depends(get_materiel_db)):
    location = _get_or_404(db, StorageLocation, location_id, "Storage location")
    site_service.delete_storage_location(db, location)
    return {"message": "Deleted"}


# Worksites


@app.get("/api/worksites")
def get_worksites(db: Session = Depends(get_materiel_db)):
    worksites = db.execute(select(Worksite).order_by(Worksite.Name)).scalars().all()
    return [site_service.serialize_worksite(worksite) for worksite in worksites]


@app.get("/api/worksites/unassigned-employees")
def get_unassigned_employees(db: Session = Depends(get_materiel_db)):
    return [person_service.serialize_person(person) for person in site_service.employees_without_worksite(db)]


@app.post("/api/worksites/import")
def import_worksites(payload: Any = Body(...), db: Session = Depends(get_materiel_db)):
    result = export_service.import_worksites(db, payload)
    if not result.success:
        raise HTTPException(status_code=400, detail="No worksite could be imported")
    return result.model_dump()


@app.get("/api/worksites/{worksite_id}")
def get_worksite(worksite_id: str, db: Session = Depends(get_materiel_db)):
    worksite = _get_or_404(db, Worksite, worksite_id, "Worksite")
    payload = site_service.serialize_worksite(worksite)
    payload["employees"] = [
        person_service.serialize_person(person) for person in site_service.employees_for_worksite(db, worksite_id)
    ]
    return payload


@app.get("/api/worksites/{worksite_id}/available-employees")
def get_available_employees(worksite_id: str, db: Session = Depends(get_materiel_db)):
    _get_or_404(db, Worksite, worksite_id, "Worksite")
    return [person_service.serialize_person(person) for person in site_service.available_employees(db, worksite_id)]


@app.post("/api/worksites")
def create_worksite(payload: WorksiteUpsert, db: Session = Depends(get_materiel_db)):
    if not (payload.name or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    _check_period(payload.startDate, payload.endDate)
    return site_service.serialize_worksite(site_service.add_worksite(db, **_columns(payload)))


@app.put("/api/worksites/{worksite_id}")
def update_worksite(worksite_id: str, payload: WorksiteUpsert, db: Session = Depends(get_materiel_db)):
    worksite = _get_or_404(db, Worksite, worksite_id, "Worksite")
    _check_period(payload.startDate or worksite.StartDate, payload.endDate or worksite.EndDate)
    return site_service.serialize_worksite(site_service.update_worksite(db, worksite, **_columns(payload)))


@app.delete("/api/worksites/{worksite_id}")
def delete_worksite(worksite_id: str, db: Session = Depends(get_materiel_db)):
    worksite = _get_or_404(db, Worksite, worksite_id, "Worksite")
    site_service.delete_worksite(db, worksite)
    return {"message": "Deleted"}


# Loans


@app.get("/api/loans")
def get_loans(
    person_id: str | None = Query(None, alias="personID"),
    equipment_id: str | None = Query(None, alias="equipmentID"),
    open_only: bool = Query(False, alias="openOnly"),
    db: Session = Depends(get_materiel_db),
):
    if person_id:
        loans = loan_service.loans_for_person(db, person_id, open_only)
    elif equipment_id:
        loans = loan_service.loans_for_equipment(db, equipment_id)
        if open_only:
            loans = [loan for loan in loans if loan.ActualReturnDate is None]
    else:
        loans = loan_service.list_loans(db, open_only)
    return [loan_service.serialize_loan(loan) for loan in loans]


@app.post("/api/loans")
def create_loan(payload: CreateLoanDto, db: Session = Depends(get_materiel_db)):
    _get_or_404(db, Equipment, payload.equipmentID, "Equipment")
    _require_person(db, payload.personID)
    _check_period(payload.startDate, payload.endDate)
    loan = loan_service.add_loan(
        db,
        payload.equipmentID,
        payload.personID,
        _local(payload.startDate),
        _local(payload.endDate),
        storage_location_id=payload.storageLocationID,
        notes=payload.notes or "",
    )
    if not loan:
        raise _quota_refused(quota_service.CATEGORY_LOANS)
    return loan_service.serialize_loan(loan)


@app.delete("/api/loans/returned")
def delete_returned_loans(db: Session = Depends(get_materiel_db)):
    return {"deleted": loan_service.delete_returned_loans(db)}


@app.put("/api/loans/{loan_id}")
def update_loan(loan_id: str, payload: LoanUpdate, db: Session = Depends(get_materiel_db)):
    loan = _get_or_404(db, Loan, loan_id, "Loan")
    _check_period(payload.startDate or loan.StartDate, payload.endDate or loan.EndDate)
    return loan_service.serialize_loan(loan_service.update_loan(db, loan, **_columns(payload)))


@app.delete("/api/loans/{loan_id}")
def delete_loan(loan_id: str, db: Session = Depends(get_materiel_db)):
    loan = _get_or_404(db, Loan, loan_id, "Loan")
    loan_service.delete_loan(db, loan)
    return {"message": "Deleted"}


@app.post("/api/loans/{loan_id}/return")
def return_loan(loan_id: str, db: Session = Depends(get_materiel_db)):
    loan = _get_or_404(db, Loan, loan_id, "Loan")
    if loan.ActualReturnDate is not None:
        raise HTTPException(status_code=409, detail="Loan already returned")
    return loan_service.serialize_loan(loan_service.return_loan(db, loan))


@app.post("/api/loans/{loan_id}/reassign")
def reassign_loan(loan_id: str, payload: ReassignRequest, db: Session = Depends(get_materiel_db)):
    loan = _get_or_404(db, Loan, loan_id, "Loan")
    _require_person(db, payload.personID)
    return loan_service.serialize_loan(person_service.reassign_loan(db, loan, payload.personID))


@app.post("/api/loans/{loan_id}/send-to-repair")
def send_loan_to_repair(loan_id: str, payload: SendToRepairRequest, db: Session = Depends(get_materiel_db)):
    loan = _get_or_404(db, Loan, loan_id, "Loan")
    _require_person(db, payload.repairerID)
    repair = loan_service.send_loan_to_repair(
        db,
        loan,
        payload.repairerID,
        payload.description,
        expected_end_date=_local(payload.expectedEndDate),
        estimated_cost=payload.estimatedCost,
        notes=payload.notes or "",
        free=payload.free,
    )
    if not repair:
        raise _quota_refused(quota_service.CATEGORY_REPAIRS)
    return repair_service.serialize_repair(repair)


# Borrows and incoming rentals share the shadow-equipment workflow.


def _serialize_owner(db: Session, owner: Borrow | MyRental) -> dict:
    if isinstance(owner, Borrow):
        return loan_service.serialize_borrow(db, owner)
    return rental_service.serialize_my_rental(db, owner)


def _owner_refused(db: Session, owner: Borrow | MyRental, action: str) -> HTTPException:
    if owner.ActualReturnDate is not None:
        return HTTPException(status_code=409, detail=f"Cannot {action}: {linkage_service.owner_label(owner)} already returned")
    return HTTPException(
        status_code=409,
        detail=f"Cannot {action}: item is {owner_state(db, owner)} or the free limit is reached",
    )


def _owner_create_shadow(db: Session, owner: Borrow | MyRental, payload: ShadowRequest) -> dict:
    shadow = linkage_service.create_shadow_equipment(
        db, owner, category=payload.category, storage_location_id=payload.storageLocationID
    )
    if not shadow:
        raise HTTPException(status_code=409, detail="A linked equipment already exists")
    return _equipment_payload(db, shadow)


def _owner_relend(db: Session, owner: Borrow | MyRental, payload: RelendRequest) -> dict:
    _require_person(db, payload.personID)
    if _local(payload.endDate).date() < datetime.now().date():
        raise HTTPException(status_code=400, detail="endDate must not be in the past")
    loan = linkage_service.relend(db, owner, payload.personID, _local(payload.endDate), notes=payload.notes or "")
    if not loan:
        raise _owner_refused(db, owner, "lend")
    return loan_service.serialize_loan(loan)


def _owner_return_loan(db: Session, owner: Borrow | MyRental) -> dict:
    loan = linkage_service.return_owner_loan(db, owner)
    if not loan:
        raise HTTPException(status_code=409, detail="No active loan")
    return loan_service.serialize_loan(loan)


def _owner_sub_rent(db: Session, owner: Borrow | MyRental, payload: SubRentRequest) -> dict:
    _require_person(db, payload.renterID)
    _check_period(payload.startDate, payload.endDate)
    rental = linkage_service.sub_rent(
        db,
        owner,
        payload.renterID,
        _local(payload.startDate),
        _local(payload.endDate),
        unit_price=payload.unitPrice,
        pricing_type=payload.pricingType,
        deposit=payload.deposit,
        notes=payload.notes or "",
        total_price=payload.totalPrice,
    )
    if not rental:
        raise _owner_refused(db, owner, "sub-rent")
    return rental_service.serialize_rental(rental)


def _owner_return_rental(db: Session, owner: Borrow | MyRental) -> dict:
    rental = linkage_service.return_owner_rental(db, owner)
    if not rental:
        raise HTTPException(status_code=409, detail="No active rental")
    return rental_service.serialize_rental(rental)


def _owner_send_to_repair(db: Session, owner: Borrow | MyRental, payload: SendToRepairRequest) -> dict:
    _require_person(db, payload.repairerID)
    repair = linkage_service.send_owner_to_repair(
        db,
        owner,
        payload.repairerID,
        payload.description,
        expected_end_date=_local(payload.expectedEndDate),
        estimated_cost=payload.estimatedCost,
        notes=payload.notes or "",
        free=payload.free,
    )
    if not repair:
        raise _owner_refused(db, owner, "send to repair")
    return repair_service.serialize_repair(repair)


def _owner_return_repair(db: Session, owner: Borrow | MyRental, payload: ReturnRepairRequest) -> dict:
    repair = linkage_service.return_owner_repair(db, owner, final_cost=payload.finalCost)
    if not repair:
        raise HTTPException(status_code=409, detail="No active repair")
    return repair_service.serialize_repair(repair)


def _owner_close(db: Session, owner: Borrow | MyRental) -> dict:
    if not linkage_service.close_owner(db, owner):
        raise HTTPException(status_code=409, detail=f"{linkage_service.owner_label(owner).capitalize()} already returned")
    return _serialize_owner(db, owner)


@app.get("/api/borrows")
def get_borrows(
    person_id: str | None = Query(None, alias="personID"),
    open_only: bool = Query(False, alias="openOnly"),
    db: Session = Depends(get_materiel_db),
):
    return [loan_service.serialize_borrow(db, borrow) for borrow in loan_service.list_borrows(db, person_id, open_only)]


@app.get("/api/borrows/{borrow_id}")
def get_borrow(borrow_id: str, db: Session = Depends(get_materiel_db)):
    return loan_service.serialize_borrow(db, _get_or_404(db, Borrow, borrow_id, "Borrow"))


@app.post("/api/borrows")
def create_borrow(payload: CreateBorrowDto, db: Session = Depends(get_materiel_db)):
    _require_person(db, payload.personID)
    _check_period(payload.startDate, payload.endDate)
    borrow = loan_service.add_borrow(
        db,
        payload.itemName,
        payload.personID,
        _local(payload.startDate),
        _local(payload.endDate),
        notes=payload.notes or "",
        image_data=_decode_base64(payload.imageData, "imageData"),
    )
    if not borrow:
        raise _quota_refused(quota_service.CATEGORY_BORROWS)
    return loan_service.serialize_borrow(db, borrow)


@app.put("/api/borrows/{borrow_id}")
def update_borrow(borrow_id: str, payload: BorrowUpdate, db: Session = Depends(get_materiel_db)):
    borrow = _get_or_404(db, Borrow, borrow_id, "Borrow")
    _check_period(payload.startDate or borrow.StartDate, payload.endDate or borrow.EndDate)
    return loan_service.serialize_borrow(db, loan_service.update_borrow(db, borrow, **_columns(payload)))


@app.delete("/api/borrows/{borrow_id}")
def delete_borrow(borrow_id: str, db: Session = Depends(get_materiel_db)):
    linkage_service.delete_owner(db, _get_or_404(db, Borrow, borrow_id, "Borrow"))
    return {"message": "Deleted"}


@app.post("/api/borrows/{borrow_id}/reassign")
def reassign_borrow(borrow_id: str, payload: ReassignRequest, db: Session = Depends(get_materiel_db)):
    borrow = _get_or_404(db, Borrow, borrow_id, "Borrow")
    _require_person(db, payload.personID)
    return loan_service.serialize_borrow(db, person_service.reassign_borrow(db, borrow, payload.personID))


@app.post("/api/borrows/{borrow_id}/shadow")
def create_borrow_shadow(borrow_id: str, payload: ShadowRequest, db: Session = Depends(get_materiel_db)):
    return _owner_create_shadow(db, _get_or_404(db, Borrow, borrow_id, "Borrow"), payload)


@app.post("/api/borrows/{borrow_id}/relend")
def relend_borrow(borrow_id: str, payload: RelendRequest, db: Session = Depends(get_materiel_db)):
    return _owner_relend(db, _get_or_404(db, Borrow, borrow_id, "Borrow"), payload)


@app.post("/api/borrows/{borrow_id}/return-loan")
def return_borrow_loan(borrow_id: str, db: Session = Depends(get_materiel_db)):
    return _owner_return_loan(db, _get_or_404(db, Borrow, borrow_id, "Borrow"))


@app.post("/api/borrows/{borrow_id}/sub-rent")
def sub_rent_borrow(borrow_id: str, payload: SubRentRequest, db: Session = Depends(get_materiel_db)):
    return _owner_sub_rent(db, _get_or_404(db, Borrow, borrow_id, "Borrow"), payload)


@app.post("/api/borrows/{borrow_id}/return-rental")
def return_borrow_rental(borrow_id: str, db: Session = Depends(get_materiel_db)):
    return _owner_return_rental(db, _get_or_404(db, Borrow, borrow_id, "Borrow"))


@app.post("/api/borrows/{borrow_id}/repair")
def send_borrow_to_repair(borrow_id: str, payload: SendToRepairRequest, db: Session = Depends(get_materiel_db)):
    return _owner_send_to_repair(db, _get_or_404(db, Borrow, borrow_id, "Borrow"), payload)


@app.post("/api/borrows/{borrow_id}/return-repair")
def return_borrow_repair(borrow_id: str, payload: ReturnRepairRequest, db: Session = Depends(get_materiel_db)):
    return _owner_return_repair(db, _get_or_404(db, Borrow, borrow_id, "Borrow"), payload)


@app.post("/api/borrows/{borrow_id}/close")
def close_borrow(borrow_id: str, db: Session = Depends(get_materiel_db)):
    return _owner_close(db, _get_or_404(db, Borrow, borrow_id, "Borrow"))


# Rentals


@app.get("/api/rentals")
def get_rentals(
    equipment_id: str | None = Query(None, alias="equipmentID"),
    renter_id: str | None = Query(None, alias="renterID"),
    open_only: bool = Query(False, alias="openOnly"),
    db: Session = Depends(get_materiel_db),
):
    rentals = rental_service.list_rentals(db, equipment_id, renter_id, open_only)
    return [rental_service.serialize_rental(rental) for rental in rentals]


@app.get("/api/rentals/stats")
def get_rental_stats(db: Session = Depends(get_materiel_db)):
    return rental_service.revenue_stats(db)


@app.get("/api/rentals/{rental_id}")
def get_rental(rental_id: str, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    payload = rental_service.serialize_rental(rental)
    sub_rental = rental_active_sub_rental(db, rental)
    payload["activeSubRental"] = rental_service.serialize_rental(sub_rental) if sub_rental else None
    return payload


@app.post("/api/rentals")
def create_rental(payload: CreateRentalDto, db: Session = Depends(get_materiel_db)):
    _get_or_404(db, Equipment, payload.equipmentID, "Equipment")
    _require_person(db, payload.renterID)
    _check_period(payload.startDate, payload.endDate)
    rental = rental_service.add_rental(
        db,
        payload.equipmentID,
        payload.renterID,
        _local(payload.startDate),
        _local(payload.endDate),
        pricing_type=payload.pricingType,
        unit_price=payload.unitPrice,
        total_price=payload.totalPrice,
        deposit=payload.deposit,
        notes=payload.notes or "",
    )
    if not rental:
        raise _quota_refused(quota_service.CATEGORY_RENTALS)
    return rental_service.serialize_rental(rental)


@app.put("/api/rentals/{rental_id}")
def update_rental(rental_id: str, payload: RentalUpdate, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    _check_period(payload.startDate or rental.StartDate, payload.endDate or rental.EndDate)
    return rental_service.serialize_rental(rental_service.update_rental(db, rental, **_columns(payload)))


@app.delete("/api/rentals/{rental_id}")
def delete_rental(rental_id: str, db: Session = Depends(get_materiel_db)):
    rental_service.delete_rental(db, _get_or_404(db, Rental, rental_id, "Rental"))
    return {"message": "Deleted"}


@app.post("/api/rentals/{rental_id}/return")
def return_rental(rental_id: str, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    if rental.ActualReturnDate is not None:
        raise HTTPException(status_code=409, detail="Rental already returned")
    return rental_service.serialize_rental(rental_service.return_rental(db, rental))


@app.post("/api/rentals/{rental_id}/payment")
def mark_rental_payment(rental_id: str, payload: PaymentRequest, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    return rental_service.serialize_rental(rental_service.mark_payment(db, rental, payload.received))


@app.post("/api/rentals/{rental_id}/deposit-returned")
def mark_rental_deposit_returned(
    rental_id: str, payload: DepositReturnedRequest, db: Session = Depends(get_materiel_db)
):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    return rental_service.serialize_rental(rental_service.mark_deposit_returned(db, rental, payload.returned))


@app.post("/api/rentals/{rental_id}/keep-deposit")
def keep_rental_deposit(rental_id: str, payload: KeepDepositRequest, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    if payload.amount is not None and payload.amount > float(rental.Deposit or 0):
        raise HTTPException(status_code=400, detail="amount exceeds the deposit")
    return rental_service.serialize_rental(rental_service.keep_deposit(db, rental, payload.amount))


@app.post("/api/rentals/{rental_id}/sub-rent")
def sub_rent_rental(rental_id: str, payload: SubRentRequest, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    _require_person(db, payload.renterID)
    _check_period(payload.startDate, payload.endDate)
    sub_rental = rental_service.sub_rent_rental(
        db,
        rental,
        payload.renterID,
        _local(payload.startDate),
        _local(payload.endDate),
        unit_price=payload.unitPrice,
        pricing_type=payload.pricingType,
        deposit=payload.deposit,
        notes=payload.notes or "",
    )
    if not sub_rental:
        raise HTTPException(status_code=409, detail="Rental already sub-rented or the free limit is reached")
    return rental_service.serialize_rental(sub_rental)


@app.post("/api/rentals/{rental_id}/return-sub-rental")
def return_sub_rental(rental_id: str, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    sub_rental = rental_service.return_sub_rental(db, rental)
    if not sub_rental:
        raise HTTPException(status_code=409, detail="No active sub-rental")
    return rental_service.serialize_rental(sub_rental)


@app.post("/api/rentals/{rental_id}/send-to-repair")
def send_rental_to_repair(rental_id: str, payload: SendToRepairRequest, db: Session = Depends(get_materiel_db)):
    rental = _get_or_404(db, Rental, rental_id, "Rental")
    _require_person(db, payload.repairerID)
    repair = rental_service.send_rental_to_repair(
        db,
        rental,
        payload.repairerID,
        payload.description,
        expected_end_date=_local(payload.expectedEndDate),
        estimated_cost=payload.estimatedCost,
        notes=payload.notes or "",
        free=payload.free,
    )
    if not repair:
        raise _quota_refused(quota_service.CATEGORY_REPAIRS)
    return repair_service.serialize_repair(repair)


# Incoming rentals


@app.get("/api/my-rentals")
def get_my_rentals(
    owner_id: str | None = Query(None, alias="ownerID"),
    open_only: bool = Query(False, alias="openOnly"),
    db: Session = Depends(get_materiel_db),
):
    return [
        rental_service.serialize_my_rental(db, my_rental)
        for my_rental in rental_service.list_my_rentals(db, owner_id, open_only)
    ]


@app.get("/api/my-rentals/stats")
def get_my_rental_stats(db: Session = Depends(get_materiel_db)):
    return rental_service.my_rental_stats(db)


@app.get("/api/my-rentals/{my_rental_id}")
def get_my_rental(my_rental_id: str, db: Session = Depends(get_materiel_db)):
    return rental_service.serialize_my_rental(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"))


@app.post("/api/my-rentals")
def create_my_rental(payload: CreateMyRentalDto, db: Session = Depends(get_materiel_db)):
    _require_person(db, payload.ownerID)
    _check_period(payload.startDate, payload.endDate)
    my_rental = rental_service.add_my_rental(
        db,
        payload.itemName,
        payload.ownerID,
        _local(payload.startDate),
        _local(payload.endDate),
        pricing_type=payload.pricingType,
        unit_price=payload.unitPrice,
        total_price=payload.totalPrice,
        deposit=payload.deposit,
        notes=payload.notes or "",
        image_data=_decode_base64(payload.imageData, "imageData"),
    )
    if not my_rental:
        raise _quota_refused(quota_service.CATEGORY_MY_RENTALS)
    return rental_service.serialize_my_rental(db, my_rental)


@app.put("/api/my-rentals/{my_rental_id}")
def update_my_rental(my_rental_id: str, payload: MyRentalUpdate, db: Session = Depends(get_materiel_db)):
    my_rental = _get_or_404(db, MyRental, my_rental_id, "Incoming rental")
    _check_period(payload.startDate or my_rental.StartDate, payload.endDate or my_rental.EndDate)
    rental_service.update_my_rental(db, my_rental, **_columns(payload))
    return rental_service.serialize_my_rental(db, my_rental)


@app.delete("/api/my-rentals/{my_rental_id}")
def delete_my_rental(my_rental_id: str, db: Session = Depends(get_materiel_db)):
    linkage_service.delete_owner(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"))
    return {"message": "Deleted"}


@app.post("/api/my-rentals/{my_rental_id}/payment")
def mark_my_rental_payment(my_rental_id: str, payload: PaymentRequest, db: Session = Depends(get_materiel_db)):
    my_rental = _get_or_404(db, MyRental, my_rental_id, "Incoming rental")
    rental_service.mark_my_rental_payment(db, my_rental, payload.received)
    return rental_service.serialize_my_rental(db, my_rental)


@app.post("/api/my-rentals/{my_rental_id}/deposit-recovered")
def record_my_rental_deposit_recovered(
    my_rental_id: str, payload: AmountRequest, db: Session = Depends(get_materiel_db)
):
    my_rental = _get_or_404(db, MyRental, my_rental_id, "Incoming rental")
    rental_service.record_deposit_recovered(db, my_rental, payload.amount)
    return rental_service.serialize_my_rental(db, my_rental)


@app.post("/api/my-rentals/{my_rental_id}/deposit-lost")
def record_my_rental_deposit_lost(my_rental_id: str, payload: AmountRequest, db: Session = Depends(get_materiel_db)):
    my_rental = _get_or_404(db, MyRental, my_rental_id, "Incoming rental")
    rental_service.record_deposit_lost(db, my_rental, payload.amount)
    return rental_service.serialize_my_rental(db, my_rental)


@app.post("/api/my-rentals/{my_rental_id}/shadow")
def create_my_rental_shadow(my_rental_id: str, payload: ShadowRequest, db: Session = Depends(get_materiel_db)):
    return _owner_create_shadow(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"), payload)


@app.post("/api/my-rentals/{my_rental_id}/relend")
def relend_my_rental(my_rental_id: str, payload: RelendRequest, db: Session = Depends(get_materiel_db)):
    return _owner_relend(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"), payload)


@app.post("/api/my-rentals/{my_rental_id}/return-loan")
def return_my_rental_loan(my_rental_id: str, db: Session = Depends(get_materiel_db)):
    return _owner_return_loan(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"))


@app.post("/api/my-rentals/{my_rental_id}/sub-rent")
def sub_rent_my_rental(my_rental_id: str, payload: SubRentRequest, db: Session = Depends(get_materiel_db)):
    return _owner_sub_rent(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"), payload)


@app.post("/api/my-rentals/{my_rental_id}/return-rental")
def return_my_rental_rental(my_rental_id: str, db: Session = Depends(get_materiel_db)):
    return _owner_return_rental(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"))


@app.post("/api/my-rentals/{my_rental_id}/repair")
def send_my_rental_to_repair(my_rental_id: str, payload: SendToRepairRequest, db: Session = Depends(get_materiel_db)):
    return _owner_send_to_repair(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"), payload)


@app.post("/api/my-rentals/{my_rental_id}/return-repair")
def return_my_rental_repair(
    my_rental_id: str, payload: ReturnRepairRequest, db: Session = Depends(get_materiel_db)
):
    return _owner_return_repair(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"), payload)


@app.post("/api/my-rentals/{my_rental_id}/close")
def close_my_rental(my_rental_id: str, db: Session = Depends(get_materiel_db)):
    return _owner_close(db, _get_or_404(db, MyRental, my_rental_id, "Incoming rental"))


# Repairs


@app.get("/api/repairs")
def get_repairs(
    equipment_id: str | None = Query(None, alias="equipmentID"),
    repairer_id: str | None = Query(None, alias="repairerID"),
    open_only: bool = Query(False, alias="openOnly"),
    db: Session = Depends(get_materiel_db),
):
    repairs = repair_service.list_repairs(db, equipment_id, repairer_id, open_only)
    return [repair_service.serialize_repair(repair) for repair in repairs]


@app.get("/api/repairs/stats")
def get_repair_stats(db: Session = Depends(get_materiel_db)):
    return repair_service.repair_stats(db)


@app.get("/api/repairs/{repair_id}")
def get_repair(repair_id: str, db: Session = Depends(get_materiel_db)):
    return repair_service.serialize_repair(_get_or_404(db, Repair, repair_id, "Repair"))


@app.post("/api/repairs")
def create_repair(payload: CreateRepairDto, db: Session = Depends(get_materiel_db)):
    _get_or_404(db, Equipment, payload.equipmentID, "Equipment")
    _require_person(db, payload.repairerID)
    _check_period(payload.startDate, payload.expectedEndDate)
    repair = repair_service.add_repair(
        db,
        payload.equipmentID,
        payload.repairerID,
        payload.description,
        start_date=_local(payload.startDate),
        expected_end_date=_local(payload.expectedEndDate),
        estimated_cost=payload.estimatedCost,
        notes=payload.notes or "",
        free=payload.free,
    )
    if not repair:
        raise _quota_refused(quota_service.CATEGORY_REPAIRS)
    return repair_service.serialize_repair(repair)


@app.put("/api/repairs/{repair_id}")
def update_repair(repair_id: str, payload: RepairUpdate, db: Session = Depends(get_materiel_db)):
    repair = _get_or_404(db, Repair, repair_id, "Repair")
    return repair_service.serialize_repair(repair_service.update_repair(db, repair, **_columns(payload)))


@app.delete("/api/repairs/{repair_id}")
def delete_repair(repair_id: str, db: Session = Depends(get_materiel_db)):
    repair_service.delete_repair(db, _get_or_404(db, Repair, repair_id, "Repair"))
    return {"message": "Deleted"}


@app.post("/api/repairs/{repair_id}/return")
def return_repair(repair_id: str, payload: ReturnRepairRequest, db: Session = Depends(get_materiel_db)):
    repair = _get_or_404(db, Repair, repair_id, "Repair")
    if repair.ReturnDate is not None:
        raise HTTPException(status_code=409, detail="Repair already returned")
    repair_service.return_repair(db, repair, final_cost=payload.finalCost, notes=payload.notes or "")
    return repair_service.serialize_repair(repair)


@app.post("/api/repairs/{repair_id}/payment")
def mark_repair_payment(repair_id: str, payload: PaymentRequest, db: Session = Depends(get_materiel_db)):
    repair = _get_or_404(db, Repair, repair_id, "Repair")
    return repair_service.serialize_repair(repair_service.mark_payment(db, repair, payload.received))


# Ledger


def _ledger_entries(db: Session, year: int | None, month: int | None):
    try:
        return ledger_service.list_entries(db, year, month)
    except ValueError as exc:
        raise _value_error(exc) from exc


@app.get("/api/ledger/entries")
def get_ledger_entries(
    year: int | None = Query(None),
    month: int | None = Query(None, ge=1, le=12),
    db: Session = Depends(get_materiel_db),
):
    return [ledger_service.serialize_entry(entry) for entry in _ledger_entries(db, year, month)]


@app.get("/api/ledger/totals")
def get_ledger_totals(
    year: int | None = Query(None),
    month: int | None = Query(None, ge=1, le=12),
    db: Session = Depends(get_materiel_db),
):
    return ledger_service.totals(_ledger_entries(db, year, month))


@app.get("/api/ledger/years")
def get_ledger_years(db: Session = Depends(get_materiel_db)):
    return ledger_service.available_years(db)


@app.get("/api/ledger/years/{year}/months")
def get_ledger_months(year: int, db: Session = Depends(get_materiel_db)):
    return ledger_service.available_months(db, year)


@app.post("/api/ledger/entries/delete")
def delete_ledger_entries(payload: DeleteEntriesRequest, db: Session = Depends(get_materiel_db)):
    return {"deleted": ledger_service.delete_entries(db, payload.entryIDs)}


# Export / import


@app.post("/api/export")
def export_data(options: ExportOptions | None = None, db: Session = Depends(get_materiel_db)):
    return export_service.build_export(db, options)


@app.post("/api/import")
def import_data(payload: Any = Body(...), db: Session = Depends(get_materiel_db)):
    result = export_service.import_document(db, payload)
    if not result.success:
        raise HTTPException(status_code=400, detail="Unrecognised import format")
    return result.model_dump()
