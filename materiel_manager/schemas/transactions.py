from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

PricingType = Literal["day", "week", "month", "flat"]


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: str
    personID: str
    storageLocationID: Optional[str] = None
    startDate: datetime
    endDate: datetime
    notes: Optional[str] = None


class LoanUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: Optional[str] = None
    personID: Optional[str] = None
    storageLocationID: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    notes: Optional[str] = None


class CreateBorrowDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: str
    personID: str
    startDate: datetime
    endDate: datetime
    notes: Optional[str] = None
    imageData: Optional[str] = None


class BorrowUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: Optional[str] = None
    personID: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    notes: Optional[str] = None
    imageData: Optional[str] = None


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: str
    renterID: str
    startDate: datetime
    endDate: datetime
    pricingType: PricingType = "flat"
    unitPrice: float = 0
    totalPrice: Optional[float] = None
    deposit: float = 0
    notes: Optional[str] = None


class RentalUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: Optional[str] = None
    renterID: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    pricingType: Optional[PricingType] = None
    unitPrice: Optional[float] = None
    totalPrice: Optional[float] = None
    deposit: Optional[float] = None
    notes: Optional[str] = None


class CreateMyRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: str
    ownerID: str
    startDate: datetime
    endDate: datetime
    pricingType: PricingType = "flat"
    unitPrice: float = 0
    totalPrice: Optional[float] = None
    deposit: float = 0
    notes: Optional[str] = None
    imageData: Optional[str] = None


class MyRentalUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemName: Optional[str] = None
    ownerID: Optional[str] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    pricingType: Optional[PricingType] = None
    unitPrice: Optional[float] = None
    totalPrice: Optional[float] = None
    deposit: Optional[float] = None
    notes: Optional[str] = None
    imageData: Optional[str] = None


class CreateRepairDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: str
    repairerID: str
    description: str = ""
    startDate: Optional[datetime] = None
    expectedEndDate: Optional[datetime] = None
    estimatedCost: Optional[float] = None
    notes: Optional[str] = None
    free: bool = False


class RepairUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: Optional[str] = None
    repairerID: Optional[str] = None
    startDate: Optional[datetime] = None
    expectedEndDate: Optional[datetime] = None
    description: Optional[str] = None
    estimatedCost: Optional[float] = None
    finalCost: Optional[float] = None
    notes: Optional[str] = None


class ShadowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    category: Optional[str] = None
    storageLocationID: Optional[str] = None


class RelendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personID: str
    endDate: datetime
    notes: Optional[str] = None


class SubRentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    renterID: str
    startDate: datetime
    endDate: datetime
    pricingType: PricingType = "flat"
    unitPrice: float = 0
    totalPrice: Optional[float] = None
    deposit: float = 0
    notes: Optional[str] = None


class SendToRepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    repairerID: str
    description: str = ""
    expectedEndDate: Optional[datetime] = None
    estimatedCost: Optional[float] = None
    notes: Optional[str] = None
    free: bool = False


class ReturnRepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    finalCost: Optional[float] = None
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    received: bool


class DepositReturnedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returned: bool


class KeepDepositRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Optional[float] = Field(default=None, ge=0)


class AmountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: float = Field(gt=0)


class DeleteEntriesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    entryIDs: List[str]
