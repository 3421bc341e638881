from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    storageLocationID: Optional[str] = None
    placement: Optional[str] = None
    notes: Optional[str] = None
    acquisitionDate: Optional[datetime] = None
    value: Optional[float] = None
    imageData: Optional[str] = None
    invoiceData: Optional[str] = None
    invoiceIsPDF: Optional[bool] = None
    invoiceNumber: Optional[str] = None
    vendor: Optional[str] = None


class PersonUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lastName: Optional[str] = None
    firstName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    organization: Optional[str] = None
    role: Optional[str] = None
    worksiteID: Optional[str] = None
    photoData: Optional[str] = None


class StorageLocationUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    address: Optional[str] = None
    building: Optional[str] = None
    floor: Optional[str] = None
    room: Optional[str] = None
    notes: Optional[str] = None


class WorksiteUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    address: Optional[str] = None
    description: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    notes: Optional[str] = None
    isActive: Optional[bool] = None
    contactPersonID: Optional[str] = None


class CategoryRenameRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    oldName: str
    newName: str


class ReassignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personID: str


class MergeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personIDs: list[str]


class AssignEmployeeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    worksiteID: str
