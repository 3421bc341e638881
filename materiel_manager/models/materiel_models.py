import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, LargeBinary, String
from sqlalchemy.sql import func

from db.base import Base


def new_id() -> str:
    return str(uuid.uuid4())


# Person, equipment and location references below are plain indexed columns.
# Loans and borrows must survive the deletion of the person they point at.


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(String(36), primary_key=True, default=new_id)
    Name = Column(String(255), nullable=False)
    Description = Column(String(2000), default="")
    Category = Column(String(100), default="")
    StorageLocationID = Column(String(36), index=True)
    Placement = Column(String(255))
    Notes = Column(String(2000))
    AcquisitionDate = Column(DateTime, nullable=False)
    Value = Column(Float, default=0)
    ImageData = Column(LargeBinary)
    InvoiceData = Column(LargeBinary)
    InvoiceIsPDF = Column(Boolean)
    InvoiceNumber = Column(String(100))
    Vendor = Column(String(255))
    CreatedDate = Column(DateTime, server_default=func.now())


class Person(Base):
    __tablename__ = "Persons"

    PersonID = Column(String(36), primary_key=True, default=new_id)
    LastName = Column(String(255), nullable=False, default="")
    FirstName = Column(String(255), nullable=False, default="")
    Email = Column(String(255), nullable=False, default="")
    Phone = Column(String(50), nullable=False, default="")
    Organization = Column(String(255), nullable=False, default="")
    Role = Column(String(30))
    LastContactedAt = Column(DateTime)
    WorksiteID = Column(String(36), index=True)
    PhotoData = Column(LargeBinary)
    CreatedDate = Column(DateTime, server_default=func.now())


class StorageLocation(Base):
    __tablename__ = "StorageLocations"

    StorageLocationID = Column(String(36), primary_key=True, default=new_id)
    Name = Column(String(255), nullable=False)
    Address = Column(String(500), default="")
    Building = Column(String(100), default="")
    Floor = Column(String(50), default="")
    Room = Column(String(50), default="")
    Notes = Column(String(2000), default="")


class Worksite(Base):
    __tablename__ = "Worksites"

    WorksiteID = Column(String(36), primary_key=True, default=new_id)
    Name = Column(String(255), nullable=False)
    Address = Column(String(500), default="")
    Description = Column(String(2000), default="")
    StartDate = Column(DateTime)
    EndDate = Column(DateTime)
    Notes = Column(String(2000), default="")
    IsActive = Column(Boolean, default=True)
    ContactPersonID = Column(String(36))


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(String(36), primary_key=True, default=new_id)
    EquipmentID = Column(String(36), nullable=False, index=True)
    PersonID = Column(String(36), nullable=False, index=True)
    StorageLocationID = Column(String(36))
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    ActualReturnDate = Column(DateTime)
    Notes = Column(String(2000), default="")


class Borrow(Base):
    __tablename__ = "Borrows"

    BorrowID = Column(String(36), primary_key=True, default=new_id)
    ItemName = Column(String(255), nullable=False)
    PersonID = Column(String(36), nullable=False, index=True)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    ActualReturnDate = Column(DateTime)
    Notes = Column(String(2000), default="")
    ImageData = Column(LargeBinary)
    LinkedEquipmentID = Column(String(36))
    ActiveLoanID = Column(String(36))
    ActiveRentalID = Column(String(36))
    ActiveRepairID = Column(String(36))


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(String(36), primary_key=True, default=new_id)
    EquipmentID = Column(String(36), nullable=False, index=True)
    RenterID = Column(String(36), nullable=False, index=True)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    ActualReturnDate = Column(DateTime)
    TotalPrice = Column(Float, default=0)
    Deposit = Column(Float, default=0)
    DepositReturned = Column(Boolean, default=False)
    DepositKept = Column(Boolean, default=False)
    DepositKeptAmount = Column(Float, default=0)
    DepositKeptBooked = Column(Boolean, default=False)
    PaymentReceived = Column(Boolean, default=False)
    PaymentBooked = Column(Boolean, default=False)
    PricingType = Column(String(10), nullable=False, default="flat")
    UnitPrice = Column(Float, default=0)
    Notes = Column(String(2000), default="")
    SubRentalID = Column(String(36))


class MyRental(Base):
    __tablename__ = "MyRentals"

    MyRentalID = Column(String(36), primary_key=True, default=new_id)
    ItemName = Column(String(255), nullable=False)
    OwnerID = Column(String(36), nullable=False, index=True)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    ActualReturnDate = Column(DateTime)
    TotalPrice = Column(Float, default=0)
    Deposit = Column(Float, default=0)
    DepositRecoveredAmount = Column(Float, default=0)
    DepositLostAmount = Column(Float, default=0)
    PaymentMade = Column(Boolean, default=False)
    PaymentBooked = Column(Boolean, default=False)
    PricingType = Column(String(10), nullable=False, default="flat")
    UnitPrice = Column(Float, default=0)
    Notes = Column(String(2000), default="")
    ImageData = Column(LargeBinary)
    LinkedEquipmentID = Column(String(36))
    ActiveLoanID = Column(String(36))
    ActiveRentalID = Column(String(36))
    ActiveRepairID = Column(String(36))


class Repair(Base):
    __tablename__ = "Repairs"

    RepairID = Column(String(36), primary_key=True, default=new_id)
    EquipmentID = Column(String(36), nullable=False, index=True)
    RepairerID = Column(String(36), nullable=False, index=True)
    OriginLoanID = Column(String(36))
    OriginRentalID = Column(String(36))
    StartDate = Column(DateTime, nullable=False)
    ExpectedEndDate = Column(DateTime)
    ReturnDate = Column(DateTime)
    Description = Column(String(2000), default="")
    EstimatedCost = Column(Float)
    FinalCost = Column(Float)
    PaymentReceived = Column(Boolean, default=False)
    PaymentBooked = Column(Boolean, default=False)
    Notes = Column(String(2000), default="")


class AccountingEntry(Base):
    __tablename__ = "AccountingEntries"

    EntryID = Column(String(36), primary_key=True, default=new_id)
    EntryDate = Column(DateTime, nullable=False)
    Kind = Column(String(40), nullable=False)
    Amount = Column(Float, nullable=False)
    Description = Column(String(1000), default="")
    EquipmentName = Column(String(255))
    PersonName = Column(String(255))
    ReferenceID = Column(String(36), index=True)


class LifetimeCounter(Base):
    __tablename__ = "LifetimeCounters"

    Category = Column(String(50), primary_key=True)
    Total = Column(Integer, nullable=False, default=0)
