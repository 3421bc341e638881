from datetime import datetime, timedelta
from typing import List, Optional, get_args

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

STRATEGY_EPOCH = "secondsSince1970"
STRATEGY_ISO8601 = "iso8601"
STRATEGY_REFERENCE = "deferredToDate"

# Seconds between 1970-01-01 and 2001-01-01, the reference date of the default strategy.
REFERENCE_OFFSET_SECONDS = 978307200


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _from_seconds(seconds) -> datetime:
    try:
        return datetime.fromtimestamp(seconds)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"timestamp out of range: {seconds}") from exc


def decode_date(value, strategy: str) -> datetime:
    """Decode one stored date with a single strategy; raises ValueError on mismatch."""
    if strategy == STRATEGY_ISO8601:
        if not isinstance(value, str):
            raise ValueError("expected an ISO-8601 string")
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone().replace(tzinfo=None)
        return parsed
    if not _is_number(value):
        raise ValueError("expected a number of seconds")
    if strategy == STRATEGY_EPOCH:
        return _from_seconds(value)
    if strategy == STRATEGY_REFERENCE:
        return _from_seconds(value + REFERENCE_OFFSET_SECONDS)
    raise ValueError(f"Unknown date strategy: {strategy}")


def encode_date(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _is_date_field(annotation) -> bool:
    return annotation is datetime or datetime in get_args(annotation)


class DatedRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _decode_dates(cls, value, info: ValidationInfo):
        if value is None or isinstance(value, datetime):
            return value
        field = cls.model_fields.get(info.field_name)
        if field is None or not _is_date_field(field.annotation):
            return value
        strategy = (info.context or {}).get("dateStrategy", STRATEGY_ISO8601)
        return decode_date(value, strategy)


class EquipmentRecord(DatedRecord):
    equipmentID: str
    name: str
    description: str = ""
    category: str = ""
    storageLocationID: Optional[str] = None
    placement: Optional[str] = None
    notes: Optional[str] = None
    acquisitionDate: datetime
    value: float = 0
    imageData: Optional[str] = None
    invoiceData: Optional[str] = None
    invoiceIsPDF: Optional[bool] = None
    invoiceNumber: Optional[str] = None
    vendor: Optional[str] = None
    createdDate: Optional[datetime] = None


class PersonRecord(DatedRecord):
    personID: str
    lastName: str = ""
    firstName: str = ""
    email: str = ""
    phone: str = ""
    organization: str = ""
    role: Optional[str] = None
    lastContactedAt: Optional[datetime] = None
    worksiteID: Optional[str] = None
    photoData: Optional[str] = None
    createdDate: Optional[datetime] = None


class StorageLocationRecord(DatedRecord):
    storageLocationID: str
    name: str
    address: str = ""
    building: str = ""
    floor: str = ""
    room: str = ""
    notes: str = ""


class WorksiteRecord(DatedRecord):
    worksiteID: str
    name: str
    address: str = ""
    description: str = ""
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    notes: str = ""
    isActive: bool = True
    contactPersonID: Optional[str] = None


class LoanRecord(DatedRecord):
    loanID: str
    equipmentID: str
    personID: str
    storageLocationID: Optional[str] = None
    startDate: datetime
    endDate: datetime
    actualReturnDate: Optional[datetime] = None
    notes: str = ""


class BorrowRecord(DatedRecord):
    borrowID: str
    itemName: str
    personID: str
    startDate: datetime
    endDate: datetime
    actualReturnDate: Optional[datetime] = None
    notes: str = ""
    imageData: Optional[str] = None
    linkedEquipmentID: Optional[str] = None
    activeLoanID: Optional[str] = None
    activeRentalID: Optional[str] = None
    activeRepairID: Optional[str] = None


class RentalRecord(DatedRecord):
    rentalID: str
    equipmentID: str
    renterID: str
    startDate: datetime
    endDate: datetime
    actualReturnDate: Optional[datetime] = None
    totalPrice: float = 0
    deposit: float = 0
    depositReturned: bool = False
    depositKept: bool = False
    depositKeptAmount: float = 0
    depositKeptBooked: bool = False
    paymentReceived: bool = False
    paymentBooked: bool = False
    pricingType: str = "flat"
    unitPrice: float = 0
    notes: str = ""
    subRentalID: Optional[str] = None


class MyRentalRecord(DatedRecord):
    myRentalID: str
    itemName: str
    ownerID: str
    startDate: datetime
    endDate: datetime
    actualReturnDate: Optional[datetime] = None
    totalPrice: float = 0
    deposit: float = 0
    depositRecoveredAmount: float = 0
    depositLostAmount: float = 0
    paymentMade: bool = False
    paymentBooked: bool = False
    pricingType: str = "flat"
    unitPrice: float = 0
    notes: str = ""
    imageData: Optional[str] = None
    linkedEquipmentID: Optional[str] = None
    activeLoanID: Optional[str] = None
    activeRentalID: Optional[str] = None
    activeRepairID: Optional[str] = None


class RepairRecord(DatedRecord):
    repairID: str
    equipmentID: str
    repairerID: str
    originLoanID: Optional[str] = None
    originRentalID: Optional[str] = None
    startDate: datetime
    expectedEndDate: Optional[datetime] = None
    returnDate: Optional[datetime] = None
    description: str = ""
    estimatedCost: Optional[float] = None
    finalCost: Optional[float] = None
    paymentReceived: bool = False
    paymentBooked: bool = False
    notes: str = ""


class AccountingEntryRecord(DatedRecord):
    entryID: str
    entryDate: datetime
    kind: str
    amount: float
    description: str = ""
    equipmentName: Optional[str] = None
    personName: Optional[str] = None
    referenceID: Optional[str] = None


class LifetimeCounterRecord(DatedRecord):
    category: str
    total: int = 0


class ExportDocument(DatedRecord):
    equipment: Optional[List[EquipmentRecord]] = None
    persons: Optional[List[PersonRecord]] = None
    storageLocations: Optional[List[StorageLocationRecord]] = None
    worksites: Optional[List[WorksiteRecord]] = None
    loans: Optional[List[LoanRecord]] = None
    borrows: Optional[List[BorrowRecord]] = None
    rentals: Optional[List[RentalRecord]] = None
    myRentals: Optional[List[MyRentalRecord]] = None
    repairs: Optional[List[RepairRecord]] = None
    accountingEntries: Optional[List[AccountingEntryRecord]] = None
    exportDate: datetime
    appVersion: str


class WorksiteEmployeeImport(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lastName: str
    firstName: str
    phone: str = ""
    email: str = ""


class WorksiteImport(DatedRecord):
    worksiteID: Optional[str] = None
    name: str
    address: str = ""
    description: str = ""
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    notes: str = ""
    isActive: bool = True
    employees: Optional[List[WorksiteEmployeeImport]] = None


class ExportOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipment: bool = True
    persons: bool = True
    storageLocations: bool = True
    worksites: bool = False
    loans: bool = True
    borrows: bool = True
    rentals: bool = False
    myRentals: bool = False
    repairs: bool = False
    accountingEntries: bool = False
    excludeClosed: bool = False


class ImportResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool
    format: Optional[str] = None
    dateStrategy: Optional[str] = None
    imported: dict = {}
