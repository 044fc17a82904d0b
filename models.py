import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, func,
)
from database import Base


class UserType(str, enum.Enum):
    farmer = "farmer"
    distributor = "distributor"
    consumer = "consumer"


class BatchStatus(str, enum.Enum):
    registered = "registered"
    in_transit = "in_transit"
    delivered = "delivered"
    sold = "sold"


# forward-only lifecycle order
STATUS_ORDER = [
    BatchStatus.registered,
    BatchStatus.in_transit,
    BatchStatus.delivered,
    BatchStatus.sold,
]


class RecordType(str, enum.Enum):
    harvest = "harvest"
    storage = "storage"
    transport = "transport"
    processing = "processing"
    retail = "retail"
    quality_check = "quality_check"


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    user_type: Mapped[str] = mapped_column(String(20), default=UserType.consumer.value)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    organization_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ProduceBatch(Base):
    __tablename__ = "produce_batches"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    farmer_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), index=True)
    crop_type: Mapped[str] = mapped_column(String(100))
    variety_name: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    unit: Mapped[str] = mapped_column(String(20), default="kg")
    harvest_date: Mapped[datetime] = mapped_column(DateTime)
    price_per_unit: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    is_organic: Mapped[bool] = mapped_column(Boolean, default=False)
    qr_code_data: Mapped[str] = mapped_column(Text, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=BatchStatus.registered.value)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
    records: Mapped[list["SupplyChainRecord"]] = relationship(
        "SupplyChainRecord", back_populates="batch", order_by="SupplyChainRecord.sequence"
    )


class SupplyChainRecord(Base):
    __tablename__ = "supply_chain_records"
    __table_args__ = (
        # a second record claiming the same chain slot is a fork
        UniqueConstraint("batch_id", "sequence", name="uq_record_batch_sequence"),
        UniqueConstraint("batch_id", "previous_record_hash", name="uq_record_batch_prev_hash"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_id: Mapped[str] = mapped_column(String(36), ForeignKey("produce_batches.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"))
    record_type: Mapped[str] = mapped_column(String(20))
    location: Mapped[Optional[str]] = mapped_column(String(255))
    temperature: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2))
    humidity: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2))
    storage_conditions: Mapped[Optional[str]] = mapped_column(String(255))
    transport_method: Mapped[Optional[str]] = mapped_column(String(255))
    expected_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime)
    actual_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime)
    quality_notes: Mapped[Optional[str]] = mapped_column(Text)
    additional_data: Mapped[Optional[str]] = mapped_column(Text)  # canonical JSON object
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    previous_record_hash: Mapped[Optional[str]] = mapped_column(String(64))
    record_hash: Mapped[str] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    batch: Mapped[ProduceBatch] = relationship("ProduceBatch", back_populates="records")
