import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from errors import IntegrityError

# fields committed to by a record's content hash
HASHED_FIELDS = (
    "id",
    "batch_id",
    "user_id",
    "record_type",
    "sequence",
    "timestamp",
    "location",
    "temperature",
    "humidity",
    "storage_conditions",
    "transport_method",
    "expected_delivery",
    "actual_delivery",
    "quality_notes",
    "additional_data",
    "previous_record_hash",
)

IDEAL_RANGES = {
    "temperature": (0, 8),
    "humidity": (85, 95),
}

TWO_PLACES = Decimal("0.01")
DECIMAL_FIELDS = ("temperature", "humidity")


def utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to naive UTC, the form datetimes are stored and hashed in."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def dumps_payload(data: Optional[Dict[str, Any]]) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def loads_payload(text: Optional[str]) -> Optional[Dict[str, Any]]:
    if text is None:
        return None
    return json.loads(text)


def _canonical_value(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in DECIMAL_FIELDS:
        return f"{to_decimal(value):.2f}"
    if isinstance(value, datetime):
        return utc_naive(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    if isinstance(value, enum.Enum):
        return value.value
    return value


def hashable_fields(record: Any) -> Dict[str, Any]:
    """Pull the hashed fields off a stored record (or any attribute bag).

    ``additional_data`` is stored as JSON text and embedded as an object, so a
    corrupted payload surfaces here as ``ValueError``.
    """
    fields = {name: getattr(record, name) for name in HASHED_FIELDS}
    fields["additional_data"] = loads_payload(fields["additional_data"])
    return fields


def canonical_bytes(fields: Dict[str, Any]) -> bytes:
    block = {name: _canonical_value(name, fields.get(name)) for name in HASHED_FIELDS}
    return json.dumps(
        block, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def compute_hash(fields: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_bytes(fields)).hexdigest()


# ---------- Verification ----------
VALID = "valid"
BROKEN_LINK = "broken_link"
TAMPERED_CONTENT = "tampered_content"


@dataclass(frozen=True)
class VerificationResult:
    status: str
    records_checked: int
    index: Optional[int] = None
    record_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status == VALID

    def raise_for_status(self) -> None:
        if not self.valid:
            raise IntegrityError(
                f"chain {self.status} at index {self.index}: {self.detail}", result=self
            )


def verify_chain(records: Sequence[Any]) -> VerificationResult:
    """Check link and content hash of every record, stopping at the first failure."""
    prev: Optional[str] = None
    for i, rec in enumerate(records):
        if rec.previous_record_hash != prev:
            return VerificationResult(
                status=BROKEN_LINK, records_checked=i + 1, index=i, record_id=rec.id,
                detail=f"expected previous hash {prev!r}, found {rec.previous_record_hash!r}",
            )
        try:
            expected = compute_hash(hashable_fields(rec))
        except ValueError:
            expected = None
        if rec.record_hash != expected:
            return VerificationResult(
                status=TAMPERED_CONTENT, records_checked=i + 1, index=i, record_id=rec.id,
                detail="stored record hash does not match its content",
            )
        prev = rec.record_hash
    return VerificationResult(status=VALID, records_checked=len(records))


# ---------- Cold chain quality ----------
def simple_quality_score(readings: List[Dict[str, Any]]) -> float:
    if not readings:
        return 50.0
    latest = readings[-1]
    penalties = 0.0
    for k, (lo, hi) in IDEAL_RANGES.items():
        if latest.get(k) is not None:
            v = float(latest[k])
            if v < lo:
                penalties += (lo - v) * 1.5
            elif v > hi:
                penalties += (v - hi) * 1.2
    score = max(0.0, 100.0 - penalties)
    return round(score, 2)


def risk_label(score: float) -> str:
    if score >= 80: return "LOW"
    if score >= 60: return "MEDIUM"
    return "HIGH"
