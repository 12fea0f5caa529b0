from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


RESERVATION_STATES = {"ACTIVE", "FULFILLED", "CANCELLED", "EXPIRED"}
WAITLIST_STATES = {"WAITING", "NOTIFIED", "FULFILLED", "CANCELLED", "EXPIRED"}
ACTIVE_WAITLIST_STATES = ("WAITING", "NOTIFIED")
APPROVAL_STATES = {"PENDING", "APPROVED", "REJECTED", "CANCELLED"}
APPROVAL_TYPES = {"lending", "extension", "reservation"}


class Item(Base):
    __tablename__ = "Items"
    __table_args__ = (
        CheckConstraint("TotalCount >= 1", name="ck_items_total_positive"),
        CheckConstraint("AvailableCount >= 0 AND AvailableCount <= TotalCount", name="ck_items_available_range"),
    )

    ItemID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer, index=True)
    Name = Column(String(255), nullable=False)
    TotalCount = Column(Integer, nullable=False, default=1)
    AvailableCount = Column(Integer, nullable=False, default=1)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Lendings = relationship("Lending", back_populates="Item")
    Reservations = relationship("Reservation", back_populates="Item")
    WaitlistEntries = relationship("WaitlistEntry", back_populates="Item")


class Lending(Base):
    __tablename__ = "Lendings"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_lendings_quantity_positive"),
        Index("ix_lendings_item_active", "ItemID", "ReturnedAt"),
    )

    LendingID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer, index=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    BorrowerID = Column(Integer, nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    BorrowedAt = Column(DateTime, nullable=False)
    DueDate = Column(DateTime, nullable=False)
    ReturnedAt = Column(DateTime)
    ExtendedAt = Column(DateTime)
    Penalty = Column(Numeric(10, 2), nullable=False, default=0)
    PenaltyReason = Column(String(500))
    PenaltyOverridden = Column(Boolean, nullable=False, default=False)
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Lendings")


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_reservations_quantity_positive"),
        Index("ix_reservations_item_status", "ItemID", "Status"),
    )

    ReservationID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer, index=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    UserID = Column(Integer, nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    ReservedFor = Column(DateTime, nullable=False)
    ExpiresAt = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="ACTIVE")
    HoldsStock = Column(Boolean, nullable=False, default=False)
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, nullable=False)
    FulfilledAt = Column(DateTime)
    CancelledAt = Column(DateTime)
    ExpiredAt = Column(DateTime)

    Item = relationship("Item", back_populates="Reservations")


class WaitlistEntry(Base):
    __tablename__ = "WaitlistEntries"
    __table_args__ = (
        Index("ix_waitlist_item_status", "ItemID", "Status"),
    )

    EntryID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer, index=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    UserID = Column(Integer, nullable=False, index=True)
    QueuePosition = Column(Integer, nullable=False)
    Priority = Column(Integer, nullable=False, default=0)
    NotifyWhenAvailable = Column(Boolean, nullable=False, default=True)
    NotifiedAt = Column(DateTime)
    NotificationExpiresAt = Column(DateTime)
    Status = Column(String(20), nullable=False, default="WAITING")
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, nullable=False)
    FulfilledAt = Column(DateTime)
    CancelledAt = Column(DateTime)
    ExpiredAt = Column(DateTime)

    Item = relationship("Item", back_populates="WaitlistEntries")


class Blacklist(Base):
    __tablename__ = "Blacklist"

    BlacklistID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer, index=True)
    UserID = Column(Integer, nullable=False, index=True)
    LendingID = Column(Integer, ForeignKey("Lendings.LendingID"))
    Reason = Column(String(500), nullable=False)
    BlockedUntil = Column(DateTime, nullable=False)
    IsActive = Column(Boolean, nullable=False, default=True)
    OverriddenBy = Column(Integer)
    OverriddenAt = Column(DateTime)
    CreatedAt = Column(DateTime, nullable=False)


class ApprovalRequest(Base):
    __tablename__ = "ApprovalRequests"

    ApprovalID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer, index=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    UserID = Column(Integer, nullable=False, index=True)
    RequestType = Column(String(20), nullable=False)
    RequestData = Column(String(2000))
    Status = Column(String(20), nullable=False, default="PENDING")
    ApproverID = Column(Integer)
    ApproverNotes = Column(String(1000))
    CreatedAt = Column(DateTime, nullable=False)
    ApprovedAt = Column(DateTime)
    RejectedAt = Column(DateTime)
    CancelledAt = Column(DateTime)
    ExecutedAt = Column(DateTime)
    ResultEntityID = Column(Integer)


class ItemHistory(Base):
    __tablename__ = "ItemHistory"

    HistoryID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer)
    ItemID = Column(Integer, nullable=False, index=True)
    UserID = Column(Integer)
    Action = Column(String(50), nullable=False)
    Details = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer)
    UserID = Column(Integer, nullable=False)
    ItemID = Column(Integer)
    LendingID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)


class OrgConfiguration(Base):
    __tablename__ = "OrgConfiguration"

    ConfigID = Column(Integer, primary_key=True)
    OrgID = Column(Integer, nullable=False, index=True)
    InstanceID = Column(Integer)
    LatePenaltyPerDay = Column(Numeric(10, 2))
    BlacklistDaysPerLateDay = Column(Integer)
    RequireApproval = Column(Boolean)
    ReservationHoldHours = Column(Integer)
    WaitlistNotificationHours = Column(Integer)
    DueReminderDays = Column(Integer)
    UpdatedAt = Column(DateTime, server_default=func.now())
