import uuid
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    BigInteger,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values read back from SQLite."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserRole:
    USER = "USER"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"
    GUEST = "GUEST"

    ALL = (USER, ADMIN, SUPERADMIN, GUEST)
    STAFF = (ADMIN, SUPERADMIN)


class OrderStatus:
    SUBMITTED = "submitted"
    APPROVED = "approved"
    STARTED = "started"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (SUBMITTED, APPROVED, STARTED, FINISHED, FAILED, CANCELLED)
    TERMINAL = (FINISHED, FAILED, CANCELLED)


class BatchStatus:
    CREATED = "created"
    APPROVED = "approved"
    STARTED = "started"
    FINISHED = "finished"

    ALL = (CREATED, APPROVED, STARTED, FINISHED)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False)
    display_name = Column(String, nullable=False)
    photo_url = Column(String)
    role = Column(String, nullable=False, default=UserRole.USER)
    suspended = Column(Boolean, default=False, nullable=False)
    file_uploads_used = Column(Integer, default=0, nullable=False)
    notification_preferences = Column(JSON, default=dict)
    last_login = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    orders = relationship("Order", back_populates="user")


class Club(Base):
    __tablename__ = "clubs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    code = Column(String, unique=True, nullable=False)
    contact_email = Column(String)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Batch(Base):
    __tablename__ = "batches"
    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_number = Column(String, unique=True, nullable=False)
    name = Column(String)
    status = Column(String, nullable=False, default=BatchStatus.CREATED)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    estimated_duration = Column("estimated_duration_hours", Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    orders = relationship("Order", back_populates="batch")

    @property
    def order_ids(self) -> list[int]:
        return sorted(order.id for order in self.orders)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # format: #<ClubCode><YY><Seq>
    order_id = Column(String, unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    club_id = Column(Integer, ForeignKey("clubs.id"))
    project_name = Column(String, nullable=False)
    event_deadline = Column(DateTime(timezone=True))
    material = Column(String, default="PLA")
    color = Column(String, default="White")
    providing_filament = Column(Boolean, default=False)
    special_instructions = Column(Text)
    staff_notes = Column(Text)
    # denormalized attachment metadata, written only by services.attachments
    files = Column(JSON, default=list)
    status = Column(String, nullable=False, default=OrderStatus.SUBMITTED)
    batch_id = Column(Integer, ForeignKey("batches.id"))
    estimated_completion_time = Column(DateTime(timezone=True))
    actual_completion_time = Column(DateTime(timezone=True))
    failure_reason = Column(Text)
    cancellation_reason = Column(Text)
    submitted_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="orders")
    club = relationship("Club")
    batch = relationship("Batch", back_populates="orders")


class File(Base):
    __tablename__ = "files"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False, default="application/octet-stream")
    size = Column(BigInteger, nullable=False, default=0)
    storage_key = Column(String, nullable=False)
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > as_utc(self.expires_at)

    def to_metadata(self) -> dict:
        """Serialized shape stored on ``Order.files``."""

        return {
            "id": str(self.id),
            "fileName": self.filename,
            "contentType": self.content_type,
            "size": self.size,
            "uploadedBy": self.uploaded_by,
            "orderId": self.order_id,
            "createdAt": as_utc(self.created_at).isoformat(),
            "expiresAt": as_utc(self.expires_at).isoformat(),
        }


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # null for the system actor (retention sweep)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String)
    details = Column(JSON, default=dict)
    reason = Column(Text)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)


class SystemConfig(Base):
    __tablename__ = "system_config"
    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(JSON, nullable=False)
    description = Column(Text)
    updated_by = Column(Integer, ForeignKey("users.id"))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"
    # e.g. "order:RC:24", "order:GEN:24", "batch:24"
    scope = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
