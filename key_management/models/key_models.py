import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Table
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


KeyLoanKeys = Table(
    "KeyLoanKeys",
    Base.metadata,
    Column("KeyLoanID", String(36), ForeignKey("KeyLoans.KeyLoanID", ondelete="CASCADE"), primary_key=True),
    Column("KeyID", String(36), ForeignKey("Keys.KeyID"), primary_key=True),
)

KeyLoanCards = Table(
    "KeyLoanCards",
    Base.metadata,
    Column("KeyLoanID", String(36), ForeignKey("KeyLoans.KeyLoanID", ondelete="CASCADE"), primary_key=True),
    Column("CardID", String(36), ForeignKey("Cards.CardID"), primary_key=True),
)

KeyEventKeys = Table(
    "KeyEventKeys",
    Base.metadata,
    Column("KeyEventID", String(36), ForeignKey("KeyEvents.KeyEventID", ondelete="CASCADE"), primary_key=True),
    Column("KeyID", String(36), ForeignKey("Keys.KeyID"), primary_key=True),
)


class KeySystem(Base):
    __tablename__ = "KeySystems"

    KeySystemID = Column(String(36), primary_key=True, default=_new_id)
    SystemCode = Column(String(50), nullable=False)
    Name = Column(String(255))
    Manufacturer = Column(String(255))
    Type = Column(String(20), default="MECHANICAL")
    IsActive = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())

    Keys = relationship("Key", back_populates="KeySystem")


class Key(Base):
    __tablename__ = "Keys"

    KeyID = Column(String(36), primary_key=True, default=_new_id)
    RentalObjectCode = Column(String(50), index=True)
    KeyName = Column(String(255), nullable=False)
    KeyType = Column(String(10), nullable=False)
    KeySequenceNumber = Column(Integer)
    FlexNumber = Column(Integer)
    Disposed = Column(Boolean, default=False, nullable=False)
    KeySystemID = Column(String(36), ForeignKey("KeySystems.KeySystemID"))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    KeySystem = relationship("KeySystem", back_populates="Keys")
    Loans = relationship("KeyLoan", secondary=KeyLoanKeys, back_populates="Keys")
    Events = relationship("KeyEvent", secondary=KeyEventKeys, back_populates="Keys")


class Card(Base):
    __tablename__ = "Cards"

    CardID = Column(String(36), primary_key=True, default=_new_id)
    RentalObjectCode = Column(String(50), index=True)
    Name = Column(String(255))
    Disabled = Column(Boolean, default=False, nullable=False)
    Owner = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())

    Codes = relationship("CardCode", back_populates="Card", cascade="all, delete-orphan")
    Loans = relationship("KeyLoan", secondary=KeyLoanCards, back_populates="Cards")


class CardCode(Base):
    __tablename__ = "CardCodes"

    CardCodeID = Column(Integer, primary_key=True, autoincrement=True)
    CardID = Column(String(36), ForeignKey("Cards.CardID"), nullable=False)
    Format = Column(String(50))
    Number = Column(String(100))

    Card = relationship("Card", back_populates="Codes")


class KeyLoan(Base):
    __tablename__ = "KeyLoans"

    KeyLoanID = Column(String(36), primary_key=True, default=_new_id)
    Contact = Column(String(255))
    Contact2 = Column(String(255))
    LoanType = Column(String(20), default="TENANT", nullable=False)
    RentalObjectCode = Column(String(50), index=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    PickedUpAt = Column(DateTime)
    ReturnedAt = Column(DateTime)
    AvailableToNextTenantFrom = Column(DateTime)
    Comment = Column(String(1000))
    CreatedBy = Column(String(255))
    UpdatedAt = Column(DateTime, server_default=func.now())

    Keys = relationship("Key", secondary=KeyLoanKeys, back_populates="Loans")
    Cards = relationship("Card", secondary=KeyLoanCards, back_populates="Loans")
    Receipts = relationship("Receipt", back_populates="KeyLoan", cascade="all, delete-orphan")


class Receipt(Base):
    __tablename__ = "Receipts"

    ReceiptID = Column(String(36), primary_key=True, default=_new_id)
    KeyLoanID = Column(String(36), ForeignKey("KeyLoans.KeyLoanID"), nullable=False)
    ReceiptType = Column(String(20), nullable=False)
    Type = Column(String(20), default="PHYSICAL")
    # JSON: {"returnedKeyIds": [...], "missingKeyIds": [...], ...}
    Items = Column(String)
    CreatedAt = Column(DateTime, server_default=func.now())

    KeyLoan = relationship("KeyLoan", back_populates="Receipts")


class KeyEvent(Base):
    __tablename__ = "KeyEvents"

    KeyEventID = Column(String(36), primary_key=True, default=_new_id)
    Type = Column(String(20), nullable=False)
    Status = Column(String(20), nullable=False, default="ORDERED")
    WorkOrderID = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Keys = relationship("Key", secondary=KeyEventKeys, back_populates="Events")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    EntityType = Column(String(50))
    EntityID = Column(String(36))
    Action = Column(String(50))
    Details = Column(String)
    UserID = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())
