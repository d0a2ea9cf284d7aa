"""API tests for the coverage router."""
from __future__ import annotations

import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

TMP = Path(__file__).resolve().parent / ".tmp_coverage_api"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["COVERAGE_DB_PATH"] = str(TMP / "coverage.db")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["OPENPHONE_API_KEY"] = ""
os.environ["RESEND_API_KEY"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loadcover.main import app  # noqa: E402
from loadcover.models.coverage import LoadStatus, LoyaltyTier  # noqa: E402
from loadcover.services.pipeline import get_pipeline  # noqa: E402
from support import NOW, make_carrier, make_load, make_pipeline  # noqa: E402


client = TestClient(app)


@pytest.fixture
def pipeline(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield pipeline
    app.dependency_overrides.clear()


def _booked(pipeline):
    make_carrier(pipeline.store, "CAR-A", phone="+15550100001", tier=LoyaltyTier.GOLD)
    make_carrier(pipeline.store, "CAR-B", phone="+15550100002", tier=LoyaltyTier.SILVER)
    return make_load(pipeline.store, status=LoadStatus.BOOKED, carrier_id="CAR-A")


def test_health_check():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_rank_carriers_returns_scored_matches(pipeline):
    make_carrier(pipeline.store, "CAR-A", tier=LoyaltyTier.GOLD)
    load = make_load(pipeline.store)

    response = client.post(f"/coverage/loads/{load.load_id}/matches")

    assert response.status_code == 200
    payload = response.json()
    assert payload["matches"][0]["carrier_id"] == "CAR-A"
    assert payload["matches"][0]["total_score"] == 75
    results = client.get(f"/coverage/loads/{load.load_id}/match-results").json()["results"]
    assert len(results) == 1


def test_missing_load_maps_to_404(pipeline):
    assert client.post("/coverage/loads/LOAD99999/matches").status_code == 404
    assert client.get("/coverage/loads/LOAD99999/risk").status_code == 404
    assert client.post("/coverage/loads/LOAD99999/check-calls").status_code == 404
    assert client.post("/coverage/loads/LOAD99999/fall-off", json={}).status_code == 404


def test_risk_endpoint_reports_factors(pipeline):
    load = make_load(pipeline.store, created_at=NOW - timedelta(hours=5))

    response = client.get(f"/coverage/loads/{load.load_id}/risk")

    assert response.status_code == 200
    payload = response.json()
    assert payload["level"] == "RED"
    assert payload["factors"][0]["factor"] == "UNASSIGNED_4HR"


def test_check_call_schedule_requires_assigned_carrier(pipeline):
    unassigned = make_load(pipeline.store, "LOAD00002")
    booked = _booked(pipeline)

    assert client.post(f"/coverage/loads/{unassigned.load_id}/check-calls").status_code == 400
    response = client.post(f"/coverage/loads/{booked.load_id}/check-calls")
    assert response.status_code == 200
    assert response.json()["count"] == 7
    assert len(client.get(f"/coverage/loads/{booked.load_id}/check-calls").json()["schedules"]) == 7


def test_fall_off_and_acceptance_round_trip(pipeline):
    load = _booked(pipeline)

    recovery = client.post(f"/coverage/loads/{load.load_id}/fall-off", json={"reason": "Driver quit"})
    assert recovery.status_code == 200
    assert recovery.json()["status"] == "active"
    assert recovery.json()["contacted_carrier_ids"] == ["CAR-B"]

    accepted = client.post(
        "/coverage/webhooks/fall-off-acceptance",
        json={"load_id": load.load_id, "carrier_id": "CAR-B"},
    )
    assert accepted.status_code == 200
    assert accepted.json()["recovered"] is True
    assert accepted.json()["event"]["status"] == "recovered"

    late = client.post(
        "/coverage/webhooks/fall-off-acceptance",
        json={"load_id": load.load_id, "carrier_id": "CAR-A"},
    )
    assert late.status_code == 200
    assert late.json() == {"recovered": False, "event": None}


def test_fall_off_on_finished_load_is_a_conflict(pipeline):
    make_carrier(pipeline.store, "CAR-A")
    load = make_load(pipeline.store, status=LoadStatus.COMPLETED, carrier_id="CAR-A")

    response = client.post(f"/coverage/loads/{load.load_id}/fall-off", json={})

    assert response.status_code == 409


def test_check_call_reply_webhook(pipeline):
    response = client.post("/coverage/webhooks/check-call-reply", json={"from_phone": "+15550100001", "text": "3"})

    assert response.status_code == 200
    assert response.json() == {"matched": False, "reply": None}


def test_job_listing_trigger_and_toggle(pipeline):
    jobs = client.get("/coverage/jobs").json()["jobs"]
    assert [j["job_name"] for j in jobs] == ["check-call-sweep", "risk-sweep", "fall-off-review"]

    run = client.post("/coverage/jobs/risk-sweep/run")
    assert run.status_code == 200
    assert run.json()["status"] == "success"
    assert run.json()["detail"]["scanned"] == 0

    assert client.post("/coverage/jobs/nope/run").status_code == 404
    toggled = client.patch("/coverage/jobs/risk-sweep", json={"enabled": False})
    assert toggled.status_code == 200
    assert client.patch("/coverage/jobs/nope", json={"enabled": False}).status_code == 404
    listing = {j["job_name"]: j for j in client.get("/coverage/jobs").json()["jobs"]}
    assert listing["risk-sweep"]["enabled"] is False
