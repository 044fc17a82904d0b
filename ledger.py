"""Hash-chained ledger of supply-chain records, one chain per produce batch.

Each record stores the hash of the record before it in the same batch and a
SHA-256 content hash over its own fields (see ``utils.HASHED_FIELDS``).

Concurrent appends are resolved optimistically: every record claims a chain
slot ``(batch_id, sequence)`` which the store keeps unique, so two writers
that read the same predecessor cannot both commit. The loser gets a
``ConflictError`` and is retried with a fresh read of the chain head.
"""
import logging
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, sessionmaker

import config
from errors import ConflictError, NotFoundError, StorageError, ValidationError
from models import BatchStatus, ProduceBatch, RecordType, STATUS_ORDER, SupplyChainRecord, User
from schemas import RecordInput, validate_for_kind
from utils import (
    VerificationResult, compute_hash, dumps_payload, hashable_fields, to_decimal,
    utc_naive, utc_now, verify_chain,
)

logger = logging.getLogger(__name__)


def can_advance(current: str, target: str) -> bool:
    return STATUS_ORDER.index(BatchStatus(target)) >= STATUS_ORDER.index(BatchStatus(current))


def is_delivery_milestone(record_input: RecordInput) -> bool:
    return (
        RecordType(record_input.record_type) == RecordType.retail
        or record_input.actual_delivery is not None
    )


class LedgerEngine:
    def __init__(self, session_factory: sessionmaker, conflict_retries: int = config.APPEND_CONFLICT_RETRIES):
        self._session_factory = session_factory
        self._conflict_retries = max(0, conflict_retries)

    # ---------- append ----------
    def append(self, record_input: RecordInput) -> SupplyChainRecord:
        """Append one record to its batch's chain and return it as stored.

        Raises ``NotFoundError`` for an unknown batch or author,
        ``ValidationError`` for a record that does not satisfy its kind,
        ``ConflictError`` when the chain head kept moving under us and
        ``StorageError`` when the store fails. On any failure nothing is kept.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._append_once(record_input)
            except ConflictError:
                if attempt > self._conflict_retries:
                    logger.warning(
                        "append to batch %s still conflicting after %d attempts",
                        record_input.batch_id, attempt,
                    )
                    raise
                logger.warning("fork detected appending to batch %s, retrying", record_input.batch_id)

    def _append_once(self, record_input: RecordInput) -> SupplyChainRecord:
        session = self._session_factory()
        try:
            record = self.append_in_session(session, record_input)
            session.commit()
        except sa_exc.SQLAlchemyError as exc:
            session.rollback()
            logger.exception("storage failure appending to batch %s", record_input.batch_id)
            raise StorageError("could not record event") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        logger.info(
            "appended %s record %s to batch %s (seq=%d hash=%s)",
            record.record_type, record.id, record.batch_id, record.sequence, record.record_hash[:12],
        )
        return record

    def append_in_session(self, session: Session, record_input: RecordInput) -> SupplyChainRecord:
        """Stage a record inside a transaction owned by the caller.

        The record is flushed so fork and uniqueness violations surface here;
        committing is left to the caller.
        """
        validate_for_kind(record_input)
        batch = session.get(ProduceBatch, record_input.batch_id)
        if batch is None:
            raise NotFoundError(f"batch {record_input.batch_id} not found")
        if session.get(User, record_input.user_id) is None:
            raise NotFoundError(f"user {record_input.user_id} not found")

        latest = self._latest_record(session, batch.id)
        timestamp = self._choose_timestamp(record_input, latest)

        record = SupplyChainRecord(
            id=str(uuid4()),
            batch_id=batch.id,
            user_id=record_input.user_id,
            record_type=RecordType(record_input.record_type).value,
            location=record_input.location,
            temperature=to_decimal(record_input.temperature),
            humidity=to_decimal(record_input.humidity),
            storage_conditions=record_input.storage_conditions,
            transport_method=record_input.transport_method,
            expected_delivery=utc_naive(record_input.expected_delivery),
            actual_delivery=utc_naive(record_input.actual_delivery),
            quality_notes=record_input.quality_notes,
            additional_data=dumps_payload(record_input.additional_data),
            timestamp=timestamp,
            sequence=latest.sequence + 1 if latest else 0,
            previous_record_hash=latest.record_hash if latest else None,
        )
        record.record_hash = compute_hash(hashable_fields(record))
        batch_id, sequence, record_hash = record.batch_id, record.sequence, record.record_hash
        session.add(record)

        if is_delivery_milestone(record_input):
            self._advance_status(batch, BatchStatus.delivered)

        try:
            session.flush()
        except sa_exc.IntegrityError as exc:
            session.rollback()
            if self._slot_taken(session, batch_id, sequence):
                raise ConflictError(
                    f"batch {batch_id} already has a record at position {sequence}"
                ) from exc
            logger.error("record hash collision for %s on batch %s", record_hash, batch_id)
            raise StorageError("could not record event: duplicate record hash") from exc
        return record

    def _latest_record(self, session: Session, batch_id: str) -> Optional[SupplyChainRecord]:
        return session.scalar(
            select(SupplyChainRecord)
            .where(SupplyChainRecord.batch_id == batch_id)
            .order_by(SupplyChainRecord.timestamp.desc(), SupplyChainRecord.sequence.desc())
            .limit(1)
        )

    def _slot_taken(self, session: Session, batch_id: str, sequence: int) -> bool:
        return session.scalar(
            select(SupplyChainRecord.id).where(
                SupplyChainRecord.batch_id == batch_id,
                SupplyChainRecord.sequence == sequence,
            )
        ) is not None

    @staticmethod
    def _choose_timestamp(record_input: RecordInput, latest: Optional[SupplyChainRecord]):
        if record_input.timestamp is None:
            ts = utc_now()
            # clock skew must not reorder the chain
            if latest is not None and ts < latest.timestamp:
                ts = latest.timestamp
            return ts
        ts = utc_naive(record_input.timestamp)
        if latest is not None and ts < latest.timestamp:
            raise ValidationError(
                f"timestamp {ts.isoformat()} precedes the latest record "
                f"({latest.timestamp.isoformat()}) of batch {latest.batch_id}"
            )
        return ts

    @staticmethod
    def _advance_status(batch: ProduceBatch, target: BatchStatus) -> None:
        if not can_advance(batch.status, target):
            logger.info("batch %s stays %s, not moving back to %s", batch.id, batch.status, target.value)
            return
        if batch.status != target.value:
            logger.info("batch %s status %s -> %s", batch.id, batch.status, target.value)
            batch.status = target.value
            batch.updated_at = utc_now()

    # ---------- read / verify ----------
    def read(self, batch_id: str, verify: bool = False) -> List[SupplyChainRecord]:
        """All records of a batch, oldest first.

        With ``verify=True`` the chain is checked before returning and
        ``IntegrityError`` is raised if it does not hold.
        """
        try:
            with self._session_factory() as session:
                if session.get(ProduceBatch, batch_id) is None:
                    raise NotFoundError(f"batch {batch_id} not found")
                records = list(session.scalars(
                    select(SupplyChainRecord)
                    .where(SupplyChainRecord.batch_id == batch_id)
                    .order_by(SupplyChainRecord.timestamp.asc(), SupplyChainRecord.sequence.asc())
                ).all())
        except sa_exc.SQLAlchemyError as exc:
            logger.exception("storage failure reading batch %s", batch_id)
            raise StorageError("could not read records") from exc
        if verify:
            self._check(batch_id, records).raise_for_status()
        return records

    def verify(self, batch_id: str) -> VerificationResult:
        return self._check(batch_id, self.read(batch_id))

    @staticmethod
    def _check(batch_id: str, records: List[SupplyChainRecord]) -> VerificationResult:
        result = verify_chain(records)
        if not result.valid:
            logger.warning(
                "batch %s failed verification: %s at index %s (%s)",
                batch_id, result.status, result.index, result.detail,
            )
        return result
