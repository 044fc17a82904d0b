"""Batch registration and lookup around the ledger engine.

Registration creates the batch and its opening harvest record in a single
transaction. Batch status is a projection kept by the ledger on delivery
records; other forward moves (``in_transit``, ``sold``) come through
``update_status``.
"""
import logging
import time
from contextlib import contextmanager
from typing import List, Tuple
from uuid import uuid4

from sqlalchemy import func, or_, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import sessionmaker

from errors import NotFoundError, StatusTransitionError, StorageError, ValidationError
from ledger import LedgerEngine, can_advance
from models import BatchStatus, ProduceBatch, RecordType, User
from schemas import CreateBatch, RecordInput, UpsertUser
from utils import utc_naive, utc_now

logger = logging.getLogger(__name__)

AVAILABLE_STATUSES = (BatchStatus.registered.value, BatchStatus.delivered.value)


def make_scan_token(batch_id: str) -> str:
    return f"FARMCHAIN_{batch_id}_{int(time.time() * 1000)}"


class BatchRegistry:
    def __init__(self, session_factory: sessionmaker, ledger: LedgerEngine):
        self._session_factory = session_factory
        self._ledger = ledger

    @contextmanager
    def _session(self, action: str):
        """Session whose database errors surface as ``StorageError``."""
        with self._session_factory() as session:
            try:
                yield session
            except sa_exc.SQLAlchemyError as exc:
                session.rollback()
                logger.exception("storage failure: %s", action)
                raise StorageError(f"could not {action}") from exc

    # ---------- users ----------
    def upsert_user(self, user_id: str, body: UpsertUser) -> User:
        with self._session_factory() as session:
            try:
                user = session.get(User, user_id)
                now = utc_now()
                if user is None:
                    user = User(id=user_id, created_at=now)
                    session.add(user)
                for name, value in body.model_dump().items():
                    setattr(user, name, getattr(value, "value", value))
                user.updated_at = now
                session.commit()
            except sa_exc.IntegrityError as exc:
                session.rollback()
                raise ValidationError(f"email {body.email} is already in use") from exc
            except sa_exc.SQLAlchemyError as exc:
                session.rollback()
                raise StorageError(f"could not save user {user_id}") from exc
            return user

    def get_user(self, user_id: str) -> User:
        with self._session(f"load user {user_id}") as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"user {user_id} not found")
        return user

    # ---------- batches ----------
    def register(self, farmer_id: str, body: CreateBatch) -> ProduceBatch:
        """Create a batch and append its harvest record atomically."""
        with self._session(f"register batch for {farmer_id}") as session:
            if session.get(User, farmer_id) is None:
                raise NotFoundError(f"user {farmer_id} not found")
            batch_id = str(uuid4())
            now = utc_now()
            batch = ProduceBatch(
                id=batch_id,
                farmer_id=farmer_id,
                crop_type=body.crop_type,
                variety_name=body.variety_name,
                quantity=body.quantity,
                unit=body.unit,
                harvest_date=utc_naive(body.harvest_date),
                price_per_unit=body.price_per_unit,
                is_organic=body.is_organic,
                qr_code_data=make_scan_token(batch_id),
                status=BatchStatus.registered.value,
                created_at=now,
                updated_at=now,
            )
            session.add(batch)
            session.flush()
            self._ledger.append_in_session(session, RecordInput(
                batch_id=batch_id,
                user_id=farmer_id,
                record_type=RecordType.harvest,
                location=body.location or "Farm",
                quality_notes=f"Harvested {body.quantity}{body.unit} of {body.crop_type}",
                timestamp=now,
            ))
            session.commit()
        logger.info("registered batch %s (%s) for farmer %s", batch_id, body.crop_type, farmer_id)
        return batch

    def get(self, batch_id: str) -> ProduceBatch:
        with self._session(f"load batch {batch_id}") as session:
            batch = session.get(ProduceBatch, batch_id)
        if batch is None:
            raise NotFoundError(f"batch {batch_id} not found")
        return batch

    def get_by_scan_token(self, token: str) -> ProduceBatch:
        with self._session("look up scan token") as session:
            batch = session.scalar(select(ProduceBatch).where(ProduceBatch.qr_code_data == token))
        if batch is None:
            raise NotFoundError("produce batch not found")
        return batch

    def for_farmer(self, user_id: str) -> List[ProduceBatch]:
        with self._session(f"list batches of {user_id}") as session:
            return list(session.scalars(
                select(ProduceBatch)
                .where(ProduceBatch.farmer_id == user_id)
                .order_by(ProduceBatch.created_at.desc())
            ).all())

    def available(self) -> List[ProduceBatch]:
        with self._session("list available batches") as session:
            return list(session.scalars(
                select(ProduceBatch)
                .where(ProduceBatch.status.in_(AVAILABLE_STATUSES))
                .order_by(ProduceBatch.created_at.desc())
            ).all())

    def search(self, q: str, page: int = 1, page_size: int = 10) -> Tuple[List[ProduceBatch], int]:
        like = f"%{q}%"
        base = select(ProduceBatch).where(or_(
            ProduceBatch.crop_type.ilike(like),
            ProduceBatch.variety_name.ilike(like),
        ))
        with self._session("search batches") as session:
            total = session.scalar(select(func.count()).select_from(base.subquery()))
            rows = session.scalars(
                base.order_by(ProduceBatch.created_at.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
            ).all()
        return list(rows), total or 0

    def update_status(self, batch_id: str, status: BatchStatus) -> ProduceBatch:
        """Move a batch forward in its lifecycle. Re-setting the current status is a no-op."""
        status = BatchStatus(status)
        with self._session(f"update batch {batch_id}") as session:
            batch = session.get(ProduceBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"batch {batch_id} not found")
            if not can_advance(batch.status, status):
                raise StatusTransitionError(
                    f"batch {batch_id} cannot move from {batch.status} back to {status.value}"
                )
            if batch.status != status.value:
                previous = batch.status
                batch.status = status.value
                batch.updated_at = utc_now()
                session.commit()
                logger.info("batch %s status %s -> %s", batch_id, previous, status.value)
            return batch
