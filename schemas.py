from datetime import datetime
from decimal import Decimal
from typing import Optional, Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from errors import ValidationError
from models import BatchStatus, RecordType, UserType
from utils import dumps_payload, utc_naive


# ---------- Users ----------
class UpsertUser(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_type: UserType = UserType.consumer
    location: Optional[str] = None
    organization_name: Optional[str] = None
    is_verified: bool = False


class UserOut(UpsertUser):
    model_config = ConfigDict(from_attributes=True)
    id: str


# ---------- Batches ----------
class CreateBatch(BaseModel):
    crop_type: str = Field(..., min_length=1, max_length=100)
    variety_name: Optional[str] = None
    quantity: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    unit: str = "kg"
    harvest_date: datetime
    price_per_unit: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    is_organic: bool = False
    location: Optional[str] = None  # where the harvest record is taken


class BatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    farmer_id: str
    crop_type: str
    variety_name: Optional[str] = None
    quantity: Decimal
    unit: str
    harvest_date: datetime
    price_per_unit: Optional[Decimal] = None
    is_organic: bool
    qr_code_data: str
    status: BatchStatus
    created_at: datetime
    updated_at: datetime


class StatusUpdate(BaseModel):
    status: BatchStatus


class BatchList(BaseModel):
    items: List[BatchOut]
    total: int
    page: int
    page_size: int


# ---------- Ledger records ----------
class RecordRequest(BaseModel):
    batch_id: str
    record_type: RecordType
    timestamp: Optional[datetime] = None
    location: Optional[str] = Field(None, max_length=255)
    temperature: Optional[Decimal] = Field(None, ge=Decimal("-999.99"), le=Decimal("999.99"))
    humidity: Optional[Decimal] = Field(None, ge=0, le=100)
    storage_conditions: Optional[str] = Field(None, max_length=255)
    transport_method: Optional[str] = Field(None, max_length=255)
    expected_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    quality_notes: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None


class RecordInput(RecordRequest):
    """A record to append, with its author resolved."""
    user_id: str


class RecordOut(BaseModel):
    id: str
    batch_id: str
    user_id: str
    record_type: RecordType
    location: Optional[str] = None
    temperature: Optional[Decimal] = None
    humidity: Optional[Decimal] = None
    storage_conditions: Optional[str] = None
    transport_method: Optional[str] = None
    expected_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    quality_notes: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None
    timestamp: datetime
    sequence: int
    previous_record_hash: Optional[str] = None
    record_hash: str


class VerificationOut(BaseModel):
    batch_id: str
    status: str
    valid: bool
    records_checked: int
    index: Optional[int] = None
    record_id: Optional[str] = None
    detail: Optional[str] = None


class BatchSummary(BaseModel):
    batch: BatchOut
    total_records: int
    verified: bool
    verification_status: str
    quality_score: float
    spoilage_risk: str
    latest_temperature: Optional[Decimal] = None
    latest_humidity: Optional[Decimal] = None
    chain: List[RecordOut]


# ---------- Per-kind record schema ----------
class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class TransportPayload(_Payload):
    vehicle_id: Optional[str] = None
    driver_name: Optional[str] = None
    distance_km: Optional[float] = Field(None, ge=0)


class StoragePayload(_Payload):
    facility_id: Optional[str] = None
    duration_hours: Optional[float] = Field(None, ge=0)


class QualityCheckPayload(_Payload):
    grade: Optional[str] = None
    passed: Optional[bool] = None
    inspector: Optional[str] = None


class ProcessingPayload(_Payload):
    process: Optional[str] = None
    output_quantity: Optional[float] = Field(None, ge=0)


REQUIRED_FIELDS = {
    RecordType.harvest: ("location",),
    RecordType.storage: ("storage_conditions",),
    RecordType.transport: ("location",),
    RecordType.processing: ("quality_notes",),
    RecordType.retail: ("location",),
    RecordType.quality_check: ("quality_notes",),
}

PAYLOAD_MODELS = {
    RecordType.transport: TransportPayload,
    RecordType.storage: StoragePayload,
    RecordType.quality_check: QualityCheckPayload,
    RecordType.processing: ProcessingPayload,
}


def validate_for_kind(record: RecordRequest) -> None:
    """Enforce the required fields and payload shape of ``record.record_type``."""
    kind = RecordType(record.record_type)
    missing = [
        name for name in REQUIRED_FIELDS[kind]
        if getattr(record, name) is None or not str(getattr(record, name)).strip()
    ]
    if missing:
        raise ValidationError(f"{kind.value} record requires: {', '.join(missing)}")

    model = PAYLOAD_MODELS.get(kind)
    if model is not None and record.additional_data is not None:
        try:
            model.model_validate(record.additional_data)
        except PydanticValidationError as exc:
            errs = "; ".join(
                f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
            )
            raise ValidationError(f"invalid {kind.value} additional_data: {errs}") from exc
    try:
        dumps_payload(record.additional_data)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"additional_data must be plain JSON: {exc}") from exc

    if (
        record.expected_delivery is not None
        and record.timestamp is not None
        and utc_naive(record.expected_delivery) < utc_naive(record.timestamp)
    ):
        raise ValidationError("expected_delivery precedes the record timestamp")
