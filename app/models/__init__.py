"""
SQLAlchemy models for organizations, platform integrations and the transaction ledger.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Enum as SQLEnum, JSON, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base
import enum
import uuid

# Enums
class IntegrationType(str, enum.Enum):
    SHOPIFY = "SHOPIFY"
    SQUARE = "SQUARE"

class IntegrationStatus(str, enum.Enum):
    PENDING_USER_LINK = "PENDING_USER_LINK"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"

class SyncStatus(str, enum.Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"

class TransactionType(str, enum.Enum):
    SALE = "SALE"

class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

class ImportJobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

class LogLevel(str, enum.Enum):
    INFO = "INFO"
    ERROR = "ERROR"

# Models
class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    integrations = relationship("Integration", back_populates="organization", cascade="all, delete-orphan")

class Integration(Base):
    __tablename__ = "integrations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLEnum(IntegrationType), nullable=False, default=IntegrationType.SHOPIFY)
    status = Column(SQLEnum(IntegrationStatus), nullable=False, default=IntegrationStatus.PENDING_USER_LINK)
    name = Column(String, nullable=True)
    shop_domain = Column("shop_domain", String, nullable=False, index=True)
    access_token = Column("access_token", String, nullable=True)  # Encrypted; cleared on disconnect
    scopes = Column("scopes", String, nullable=True)
    shop_info = Column("shop_info", JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, key="extra", nullable=True)

    last_sync_at = Column("last_sync_at", DateTime, nullable=True)
    sync_status = Column("sync_status", SQLEnum(SyncStatus), nullable=False, default=SyncStatus.IDLE)
    sync_error = Column("sync_error", String, nullable=True)

    webhook_health = Column("webhook_health", JSON, nullable=True)
    webhook_checked_at = Column("webhook_checked_at", DateTime, nullable=True)
    webhook_consecutive_failures = Column("webhook_consecutive_failures", Integer, nullable=False, default=0)

    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    organization = relationship("Organization", back_populates="integrations")
    transactions = relationship("Transaction", back_populates="integration", cascade="all, delete-orphan", passive_deletes=True)
    import_jobs = relationship("ImportJob", back_populates="integration", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("organization_id", "type", "shop_domain", name="integrations_org_type_shop_unique"),
    )

class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    integration_id = Column("integration_id", String, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column("external_id", String, nullable=False)
    order_number = Column("order_number", String, nullable=True)
    type = Column(SQLEnum(TransactionType), nullable=False, default=TransactionType.SALE)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    currency = Column(String(3), nullable=False, default="USD")

    # Integer cents
    total_amount = Column("total_amount", Integer, nullable=False, default=0)
    tax_amount = Column("tax_amount", Integer, nullable=False, default=0)
    subtotal = Column("subtotal", Integer, nullable=False, default=0)
    discount_amount = Column("discount_amount", Integer, nullable=False, default=0)
    shipping_amount = Column("shipping_amount", Integer, nullable=False, default=0)

    tax_details = Column("tax_details", JSON, nullable=True)
    items = Column("items", JSON, nullable=True)
    extra = Column("metadata", JSON, key="extra", nullable=True)
    notes = Column("notes", Text, nullable=True)
    customer_email = Column("customer_email", String, nullable=True)
    customer_name = Column("customer_name", String, nullable=True)

    transaction_date = Column("transaction_date", DateTime, nullable=True)
    # Order updated_at from the platform (UTC); guards against stale redeliveries
    source_updated_at = Column("source_updated_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    integration = relationship("Integration", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("integration_id", "external_id", name="transactions_integration_external_unique"),
    )

class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    integration_id = Column("integration_id", String, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(SQLEnum(ImportJobStatus), nullable=False, default=ImportJobStatus.QUEUED)
    days_back = Column("days_back", Integer, nullable=False)
    window_start = Column("window_start", DateTime, nullable=True)
    window_end = Column("window_end", DateTime, nullable=True)
    total = Column("total", Integer, nullable=True)
    records_processed = Column("records_processed", Integer, nullable=False, default=0)
    records_failed = Column("records_failed", Integer, nullable=False, default=0)
    error_message = Column("error_message", String, nullable=True)
    started_at = Column("started_at", DateTime, nullable=True)
    finished_at = Column("finished_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    integration = relationship("Integration", back_populates="import_jobs")
    logs = relationship("ImportLog", back_populates="import_job", cascade="all, delete-orphan")

class ImportLog(Base):
    __tablename__ = "import_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    import_job_id = Column("import_job_id", String, ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    level = Column(SQLEnum(LogLevel), nullable=False)
    external_id = Column("external_id", String, nullable=True)
    message = Column(String, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    import_job = relationship("ImportJob", back_populates="logs")

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    source = Column("source", String, nullable=False, index=True)
    shop_domain = Column("shop_domain", String, nullable=True, index=True)
    topic = Column("topic", String, nullable=False, index=True)
    webhook_id = Column("webhook_id", String, nullable=True, index=True)
    payload_summary = Column("payload_summary", String, nullable=True)
    processed_at = Column("processed_at", DateTime, nullable=True)
    error = Column("error", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
