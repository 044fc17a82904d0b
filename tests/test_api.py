"""End-to-end tests of the HTTP surface."""
import logging
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from app import create_app
from database import make_session_factory
from ledger import LedgerEngine
from models import SupplyChainRecord

FARMER = {"X-User-Id": "farmer-1"}
CARRIER = {"X-User-Id": "carrier-1"}


@pytest.fixture
def client(db_engine):
    with TestClient(create_app(db_engine)) as c:
        c.put("/api/users/farmer-1", json={"user_type": "farmer", "organization_name": "Rajesh Kumar Farm"})
        c.put("/api/users/carrier-1", json={"user_type": "distributor", "organization_name": "Green Valley"})
        yield c


@pytest.fixture
def batch(client):
    r = client.post("/api/produce-batches", headers=FARMER, json={
        "crop_type": "Tomato",
        "variety_name": "Roma",
        "quantity": 25.5,
        "harvest_date": "2024-12-15T08:00:00Z",
        "is_organic": True,
        "location": "Rajesh Kumar Farm, Punjab",
    })
    assert r.status_code == 200, r.text
    return r.json()


def add_record(client, batch_id, headers=CARRIER, **body):
    return client.post("/api/supply-chain-records", headers=headers, json={"batch_id": batch_id, **body})


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_register_batch(client, batch):
    assert batch["status"] == "registered"
    assert batch["farmer_id"] == "farmer-1"
    assert batch["qr_code_data"].startswith("FARMCHAIN_")
    assert Decimal(batch["quantity"]) == Decimal("25.5")

    records = client.get(f"/api/supply-chain-records/{batch['id']}").json()
    assert len(records) == 1
    assert records[0]["record_type"] == "harvest"
    assert records[0]["previous_record_hash"] is None


def test_register_requires_identity(client):
    r = client.post("/api/produce-batches", json={
        "crop_type": "Kale", "quantity": 1, "harvest_date": "2024-12-15T08:00:00Z",
    })
    assert r.status_code == 401


def test_register_unknown_user(client):
    r = client.post("/api/produce-batches", headers={"X-User-Id": "ghost"}, json={
        "crop_type": "Kale", "quantity": 1, "harvest_date": "2024-12-15T08:00:00Z",
    })
    assert r.status_code == 404


def test_register_rejects_bad_quantity(client):
    r = client.post("/api/produce-batches", headers=FARMER, json={
        "crop_type": "Kale", "quantity": 0, "harvest_date": "2024-12-15T08:00:00Z",
    })
    assert r.status_code == 422


def test_journey(client, batch, db_engine):
    bid = batch["id"]
    r1 = add_record(client, bid, record_type="transport", location="En route to Delhi",
                    temperature=3, humidity=85, transport_method="Refrigerated truck",
                    quality_notes="Cold storage transport (2-4°C)",
                    additional_data={"vehicle_id": "PB-10-4471"})
    assert r1.status_code == 200, r1.text
    r2 = add_record(client, bid, record_type="retail", location="Fresh Mart, Delhi")
    assert r2.status_code == 200, r2.text

    records = client.get(f"/api/supply-chain-records/{bid}").json()
    assert [r["record_type"] for r in records] == ["harvest", "transport", "retail"]
    assert records[1]["previous_record_hash"] == records[0]["record_hash"]
    assert records[2]["previous_record_hash"] == records[1]["record_hash"]
    assert records[1]["additional_data"] == {"vehicle_id": "PB-10-4471"}
    assert Decimal(records[1]["temperature"]) == Decimal("3.00")
    assert client.get(f"/api/produce-batches/{bid}").json()["status"] == "delivered"

    v = client.get(f"/api/supply-chain-records/{bid}/verify").json()
    assert v["status"] == "valid"
    assert v["valid"] is True
    assert v["records_checked"] == 3

    with make_session_factory(db_engine)() as session:
        session.execute(
            update(SupplyChainRecord)
            .where(SupplyChainRecord.id == records[1]["id"])
            .values(quality_notes="Cold storage transport (2-5°C)")
        )
        session.commit()

    v = client.get(f"/api/supply-chain-records/{bid}/verify").json()
    assert v["status"] == "tampered_content"
    assert v["index"] == 1
    assert v["record_id"] == records[1]["id"]

    summary = client.get(f"/api/batches/{bid}/summary").json()
    assert summary["verified"] is False
    assert summary["verification_status"] == "tampered_content"
    assert summary["total_records"] == 3


def test_summary_reports_cold_chain(client, batch):
    add_record(client, batch["id"], record_type="transport", location="Truck", temperature=12, humidity=90)
    summary = client.get(f"/api/batches/{batch['id']}/summary").json()
    assert summary["verified"] is True
    assert Decimal(summary["latest_temperature"]) == Decimal("12.00")
    assert summary["quality_score"] == 95.2
    assert summary["spoilage_risk"] == "LOW"
    assert len(summary["chain"]) == 2


def test_append_errors(client, batch):
    r = add_record(client, batch["id"], headers={}, record_type="transport", location="x")
    assert r.status_code == 401
    r = add_record(client, "missing", record_type="transport", location="x")
    assert r.status_code == 404
    r = add_record(client, batch["id"], record_type="transport")
    assert r.status_code == 422
    assert "location" in r.json()["detail"]
    r = add_record(client, batch["id"], record_type="teleport", location="x")
    assert r.status_code == 422
    r = add_record(client, batch["id"], record_type="transport", location="x", humidity=140)
    assert r.status_code == 422


def test_read_unknown_batch(client):
    assert client.get("/api/supply-chain-records/missing").status_code == 404
    assert client.get("/api/supply-chain-records/missing/verify").status_code == 404
    assert client.get("/api/batches/missing/summary").status_code == 404


def test_lookup_by_scan_token(client, batch):
    r = client.get(f"/api/produce-batches/qr/{batch['qr_code_data']}")
    assert r.status_code == 200
    assert r.json()["id"] == batch["id"]
    assert client.get("/api/produce-batches/qr/FARMCHAIN_none_0").status_code == 404


def test_listing_and_search(client, batch):
    assert [b["id"] for b in client.get("/api/produce-batches/user/farmer-1").json()] == [batch["id"]]
    assert [b["id"] for b in client.get("/api/produce-batches/available").json()] == [batch["id"]]

    found = client.get("/api/produce-batches/search", params={"q": "roma"}).json()
    assert found["total"] == 1
    assert found["items"][0]["id"] == batch["id"]
    assert client.get("/api/produce-batches/search").status_code == 400


def test_status_transitions(client, batch):
    url = f"/api/produce-batches/{batch['id']}/status"
    assert client.patch(url, json={"status": "in_transit"}).json()["status"] == "in_transit"
    assert client.patch(url, json={"status": "sold"}).json()["status"] == "sold"
    r = client.patch(url, json={"status": "registered"})
    assert r.status_code == 409
    assert client.patch("/api/produce-batches/missing/status", json={"status": "sold"}).status_code == 404


def test_users(client):
    r = client.get("/api/users/farmer-1")
    assert r.status_code == 200
    assert r.json()["user_type"] == "farmer"
    assert client.get("/api/users/nobody").status_code == 404


def test_seed_is_idempotent(client):
    first = client.post("/api/seed").json()
    assert first["status"] == "seeded"
    records = client.get(f"/api/supply-chain-records/{first['batch_id']}").json()
    assert [r["record_type"] for r in records] == ["harvest", "transport", "retail"]
    assert client.get(f"/api/supply-chain-records/{first['batch_id']}/verify").json()["valid"] is True
    assert client.get(f"/api/produce-batches/{first['batch_id']}").json()["status"] == "delivered"

    second = client.post("/api/seed").json()
    assert second == {"status": "exists", "batch_id": first["batch_id"]}


def broken(statement):
    def fail(*args, **kwargs):
        raise sa_exc.OperationalError(statement, {}, Exception("disk I/O error"))
    return fail


def test_storage_failure_on_lookup_is_503(client, batch, monkeypatch):
    monkeypatch.setattr(Session, "get", broken("SELECT"))
    r = client.get(f"/api/produce-batches/{batch['id']}")
    assert r.status_code == 503
    assert "could not" in r.json()["detail"]
    assert client.get("/api/users/farmer-1").status_code == 503
    assert client.get(f"/api/supply-chain-records/{batch['id']}").status_code == 503


def test_storage_failure_on_append_is_503(client, batch, monkeypatch):
    monkeypatch.setattr(Session, "commit", broken("COMMIT"))
    r = add_record(client, batch["id"], record_type="transport", location="Truck")
    assert r.status_code == 503
    monkeypatch.undo()
    assert len(client.get(f"/api/supply-chain-records/{batch['id']}").json()) == 1


def test_persistent_fork_is_409(client, batch, monkeypatch):
    harvest = client.get(f"/api/supply-chain-records/{batch['id']}").json()[0]
    assert add_record(client, batch["id"], record_type="transport", location="Truck").status_code == 200

    def stale_head(self, session, batch_id):
        return session.get(SupplyChainRecord, harvest["id"])

    monkeypatch.setattr(LedgerEngine, "_latest_record", stale_head)
    r = add_record(client, batch["id"], record_type="transport", location="Depot")
    assert r.status_code == 409
    assert "position 1" in r.json()["detail"]


def test_verified_read_of_tampered_chain_is_409(client, batch, db_engine):
    url = f"/api/supply-chain-records/{batch['id']}"
    assert client.get(url, params={"verify": True}).status_code == 200

    records = client.get(url).json()
    with make_session_factory(db_engine)() as session:
        session.execute(
            update(SupplyChainRecord)
            .where(SupplyChainRecord.id == records[0]["id"])
            .values(location="Somewhere else")
        )
        session.commit()

    r = client.get(url, params={"verify": True})
    assert r.status_code == 409
    assert "tampered_content" in r.json()["detail"]
    assert client.get(url).status_code == 200


def test_unreadable_payload_is_listed_and_flagged(client, batch, db_engine, caplog):
    r = add_record(client, batch["id"], record_type="transport", location="Truck",
                   additional_data={"vehicle_id": "PB-10-4471"})
    rec = r.json()
    with make_session_factory(db_engine)() as session:
        session.execute(
            update(SupplyChainRecord)
            .where(SupplyChainRecord.id == rec["id"])
            .values(additional_data="{not json")
        )
        session.commit()

    with caplog.at_level(logging.WARNING, logger="app"):
        records = client.get(f"/api/supply-chain-records/{batch['id']}").json()
    assert records[1]["additional_data"] is None
    assert any(rec["id"] in m for m in caplog.messages)

    v = client.get(f"/api/supply-chain-records/{batch['id']}/verify").json()
    assert v["status"] == "tampered_content"
    assert v["index"] == 1
