"""
Drive a batch through farm -> distributor -> retail against a running API.
Run:
    python scripts/simulate_journey.py [base-url]
"""
import random
import sys
import time

import requests

API = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"


def post(path, body, user):
    r = requests.post(f"{API}{path}", json=body, headers={"X-User-Id": user}, timeout=10)
    print(path, r.status_code, r.text[:200])
    r.raise_for_status()
    return r.json()


def main():
    requests.put(f"{API}/api/users/sim-farmer", json={"user_type": "farmer", "organization_name": "Sim Farm"}, timeout=10)
    requests.put(f"{API}/api/users/sim-carrier", json={"user_type": "distributor", "organization_name": "Sim Logistics"}, timeout=10)

    batch = post("/api/produce-batches", {
        "crop_type": "Spinach",
        "quantity": 120,
        "unit": "kg",
        "harvest_date": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "location": "Sim Farm, Field 3",
    }, "sim-farmer")

    for i in range(3):
        post("/api/supply-chain-records", {
            "batch_id": batch["id"],
            "record_type": "transport",
            "location": f"Checkpoint {i + 1}",
            "temperature": round(random.uniform(1, 9), 2),
            "humidity": round(random.uniform(80, 95), 2),
            "transport_method": "Refrigerated truck",
        }, "sim-carrier")
        time.sleep(1)

    post("/api/supply-chain-records", {
        "batch_id": batch["id"],
        "record_type": "retail",
        "location": "Sim Grocery",
    }, "sim-carrier")

    r = requests.get(f"{API}/api/supply-chain-records/{batch['id']}/verify", timeout=10)
    print("verify:", r.status_code, r.json())


if __name__ == "__main__":
    main()
