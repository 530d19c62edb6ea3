"""
StockSentry Database Models

Tables:
  Facts (read-only for the alerting core):
  1. users              - Recipient directory (role, activity)
  2. products           - Stock levels, reorder thresholds, expiry dates

  Alerting (owned by the alerting core):
  3. notifications      - Per-recipient, deduplicated notification records
  4. health_check_runs  - Scheduler bookkeeping, one row per accepted pass

All timestamps are naive UTC.
"""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def UUID(as_uuid=True):
    return GUID()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


from db.session import Base

SEVERITIES = ("low", "medium", "high", "critical")
RULE_KINDS = ("low_stock", "critical_stock", "expiring_soon")
CHECK_KINDS = ("all", "stock", "expiry")

# ─── 1. Users ───────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(255))
    role = Column(String(30), nullable=False, default="employee")
    is_active = Column(Boolean, nullable=False, default=True)
    last_active_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_users_role_active", "role", "is_active"),
        CheckConstraint("role IN ('admin', 'manager', 'pharmacist', 'employee')", name="ck_user_role"),
    )


# ─── 2. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    stock_quantity = Column(Integer, nullable=False, default=0)
    reorder_level = Column(Integer)  # NULL → derived fallback in alerts.rules
    expiry_date = Column(Date)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_products_active_stock", "is_active", "stock_quantity"),
        Index("ix_products_active_expiry", "is_active", "expiry_date"),
    )

    def days_until_expiry(self, today: date) -> int | None:
        if self.expiry_date is None:
            return None
        return (self.expiry_date - today).days


# ─── 3. Notifications ───────────────────────────────────────────────────────


class Notification(Base):
    __tablename__ = "notifications"

    notification_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recipient_id = Column(UUID(as_uuid=True), nullable=False)
    dedup_key = Column(String(64), nullable=False)
    rule_kind = Column(String(30))
    subject_id = Column(String(64))
    category = Column(String(20), nullable=False, default="inventory")
    severity = Column(String(20), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime)
    dismissed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_notifications_dedup_lookup", "recipient_id", "dedup_key", "created_at"),
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_notification_severity"),
        CheckConstraint("category IN ('inventory', 'expiry', 'system')", name="ck_notification_category"),
    )

    @property
    def is_dismissed(self) -> bool:
        return self.dismissed_at is not None


# ─── 4. Health Check Runs ───────────────────────────────────────────────────


class HealthCheckRun(Base):
    __tablename__ = "health_check_runs"

    run_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    check_kind = Column(String(30), nullable=False)
    ran_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime)
    status = Column(String(20), nullable=False, default="running")
    notifications_created = Column(Integer, nullable=False, default=0)
    notifications_suppressed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)

    __table_args__ = (
        Index("ix_health_check_runs_kind_ran_at", "check_kind", "ran_at"),
        CheckConstraint("status IN ('running', 'success', 'failed')", name="ck_health_check_run_status"),
    )
