import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

import config
from database import init_db, make_engine, make_session_factory
from errors import (
    ConflictError, IntegrityError, LedgerError, NotFoundError, StatusTransitionError,
    StorageError, ValidationError,
)
from ledger import LedgerEngine
from models import BatchStatus, SupplyChainRecord, UserType
from registry import BatchRegistry
from schemas import (
    BatchList, BatchOut, BatchSummary, CreateBatch, RecordInput, RecordOut, RecordRequest,
    StatusUpdate, UpsertUser, UserOut, VerificationOut,
)
from utils import loads_payload, risk_label, simple_quality_score, utc_now, verify_chain

logger = logging.getLogger(__name__)

# most specific class first
ERROR_STATUS = [
    (NotFoundError, 404),
    (StatusTransitionError, 409),
    (ValidationError, 422),
    (ConflictError, 409),
    (IntegrityError, 409),
    (StorageError, 503),
]


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    engine = engine if engine is not None else make_engine()
    session_factory = make_session_factory(engine)
    ledger = LedgerEngine(session_factory)

    app = FastAPI(title="FarmChain Ledger", version="0.1.0")
    app.state.engine = engine
    app.state.ledger = ledger
    app.state.registry = BatchRegistry(session_factory, ledger)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def on_startup():
        init_db(engine)

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    app.include_router(router)
    return app


# ---------- Dependencies ----------
def get_ledger(request: Request) -> LedgerEngine:
    return request.app.state.ledger


def get_registry(request: Request) -> BatchRegistry:
    return request.app.state.registry


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing X-User-Id header")
    return x_user_id


def record_out(rec: SupplyChainRecord) -> RecordOut:
    # an unreadable payload is reported as tampered_content by verification
    try:
        payload = loads_payload(rec.additional_data)
    except ValueError:
        logger.warning("record %s of batch %s has an unreadable payload", rec.id, rec.batch_id)
        payload = None
    return RecordOut(
        id=rec.id,
        batch_id=rec.batch_id,
        user_id=rec.user_id,
        record_type=rec.record_type,
        location=rec.location,
        temperature=rec.temperature,
        humidity=rec.humidity,
        storage_conditions=rec.storage_conditions,
        transport_method=rec.transport_method,
        expected_delivery=rec.expected_delivery,
        actual_delivery=rec.actual_delivery,
        quality_notes=rec.quality_notes,
        additional_data=payload,
        timestamp=rec.timestamp,
        sequence=rec.sequence,
        previous_record_hash=rec.previous_record_hash,
        record_hash=rec.record_hash,
    )


# ---------- Routes ----------
router = APIRouter(prefix="/api")


@router.get("/health")
def health():
    return {"status": "ok"}


@router.put("/users/{user_id}", response_model=UserOut)
def upsert_user(user_id: str, body: UpsertUser, registry: BatchRegistry = Depends(get_registry)):
    return registry.upsert_user(user_id, body)


@router.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: str, registry: BatchRegistry = Depends(get_registry)):
    return registry.get_user(user_id)


@router.post("/produce-batches", response_model=BatchOut)
def create_batch(
    body: CreateBatch,
    user_id: str = Depends(current_user_id),
    registry: BatchRegistry = Depends(get_registry),
):
    return registry.register(user_id, body)


@router.get("/produce-batches/available", response_model=List[BatchOut])
def available_produce(registry: BatchRegistry = Depends(get_registry)):
    return registry.available()


@router.get("/produce-batches/search", response_model=BatchList)
def search_produce(
    q: Optional[str] = Query(None, description="match on crop type or variety"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    registry: BatchRegistry = Depends(get_registry),
):
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail="search query required")
    items, total = registry.search(q.strip(), page, page_size)
    return BatchList(
        items=[BatchOut.model_validate(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/produce-batches/user/{user_id}", response_model=List[BatchOut])
def farmer_batches(user_id: str, registry: BatchRegistry = Depends(get_registry)):
    return registry.for_farmer(user_id)


@router.get("/produce-batches/qr/{token}", response_model=BatchOut)
def batch_by_scan_token(token: str, registry: BatchRegistry = Depends(get_registry)):
    return registry.get_by_scan_token(token)


@router.get("/produce-batches/{batch_id}", response_model=BatchOut)
def get_batch(batch_id: str, registry: BatchRegistry = Depends(get_registry)):
    return registry.get(batch_id)


@router.patch("/produce-batches/{batch_id}/status", response_model=BatchOut)
def update_batch_status(
    batch_id: str,
    body: StatusUpdate,
    registry: BatchRegistry = Depends(get_registry),
):
    return registry.update_status(batch_id, body.status)


@router.post("/supply-chain-records", response_model=RecordOut)
def add_record(
    body: RecordRequest,
    user_id: str = Depends(current_user_id),
    ledger: LedgerEngine = Depends(get_ledger),
):
    record = ledger.append(RecordInput(**body.model_dump(), user_id=user_id))
    return record_out(record)


@router.get("/supply-chain-records/{batch_id}", response_model=List[RecordOut])
def get_records(
    batch_id: str,
    verify: bool = Query(False, description="fail with 409 if the chain does not verify"),
    ledger: LedgerEngine = Depends(get_ledger),
):
    return [record_out(r) for r in ledger.read(batch_id, verify=verify)]


@router.get("/supply-chain-records/{batch_id}/verify", response_model=VerificationOut)
def verify_records(batch_id: str, ledger: LedgerEngine = Depends(get_ledger)):
    result = ledger.verify(batch_id)
    return VerificationOut(
        batch_id=batch_id,
        status=result.status,
        valid=result.valid,
        records_checked=result.records_checked,
        index=result.index,
        record_id=result.record_id,
        detail=result.detail,
    )


@router.get("/batches/{batch_id}/summary", response_model=BatchSummary)
def batch_summary(
    batch_id: str,
    registry: BatchRegistry = Depends(get_registry),
    ledger: LedgerEngine = Depends(get_ledger),
):
    batch = registry.get(batch_id)
    records = ledger.read(batch_id)
    result = verify_chain(records)

    temp = hum = None
    readings = []
    for r in records:
        if r.temperature is None and r.humidity is None:
            continue
        readings.append({"temperature": r.temperature, "humidity": r.humidity})
        temp = r.temperature if r.temperature is not None else temp
        hum = r.humidity if r.humidity is not None else hum

    q = simple_quality_score(readings)
    return BatchSummary(
        batch=BatchOut.model_validate(batch),
        total_records=len(records),
        verified=result.valid,
        verification_status=result.status,
        quality_score=q,
        spoilage_risk=risk_label(q),
        latest_temperature=temp,
        latest_humidity=hum,
        chain=[record_out(r) for r in records],
    )


@router.post("/seed")
def seed(
    registry: BatchRegistry = Depends(get_registry),
    ledger: LedgerEngine = Depends(get_ledger),
):
    farmer_id = "demo-farmer"
    existing = registry.for_farmer(farmer_id)
    if existing:
        return {"status": "exists", "batch_id": existing[0].id}

    registry.upsert_user(farmer_id, UpsertUser(
        user_type=UserType.farmer, first_name="Rajesh", last_name="Kumar",
        organization_name="Rajesh Kumar Farm", location="Punjab",
    ))
    registry.upsert_user("demo-distributor", UpsertUser(
        user_type=UserType.distributor, organization_name="Green Valley Logistics",
    ))
    registry.upsert_user("demo-retailer", UpsertUser(
        user_type=UserType.distributor, organization_name="Fresh Mart",
    ))

    batch = registry.register(farmer_id, CreateBatch(
        crop_type="Tomatoes",
        variety_name="Roma",
        quantity=250,
        unit="kg",
        harvest_date=utc_now() - timedelta(days=1),
        is_organic=True,
        location="Rajesh Kumar Farm, Punjab",
    ))
    ledger.append(RecordInput(
        batch_id=batch.id, user_id="demo-distributor", record_type="transport",
        location="En route to Delhi", temperature=3, humidity=85,
        transport_method="Refrigerated truck",
        quality_notes="Cold storage transport (2-4°C)",
        expected_delivery=utc_now() + timedelta(days=1),
        additional_data={"vehicle_id": "PB-10-4471"},
    ))
    registry.update_status(batch.id, BatchStatus.in_transit)
    ledger.append(RecordInput(
        batch_id=batch.id, user_id="demo-retailer", record_type="retail",
        location="Fresh Mart, Delhi", quality_notes="Arrived at retail store",
    ))
    return {"status": "seeded", "batch_id": batch.id}


app = create_app()
