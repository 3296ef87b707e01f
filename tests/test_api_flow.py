from __future__ import annotations

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend.services.matching_service import BatchMatchingService
from fakes import (
    FailingLoadRepository,
    build_settings,
    make_federal_property,
    make_listing,
    make_opportunity,
)


ADMIN_TOKEN = "secret-admin-token"
CRON_SECRET = "secret-cron-value"


def _settings(tmp_path, **overrides):
    defaults = dict(
        database_path=tmp_path / "api_flow.db",
        admin_token=ADMIN_TOKEN,
        cron_secret=CRON_SECRET,
        seed_synthetic_data=False,
    )
    defaults.update(overrides)
    return build_settings(**defaults)


def _seed(repository) -> None:
    today = date.today()
    repository.save_listing(make_listing("LST-0001", available_date=today))
    repository.save_listing(
        make_listing(
            "LST-0002",
            city="Cheyenne",
            state="WY",
            latitude=41.14,
            longitude=-104.82,
            available_date=today,
        )
    )
    repository.save_opportunity(
        make_opportunity(
            "OPP-0001",
            response_deadline=today + timedelta(days=30),
            occupancy_date=today + timedelta(days=180),
        )
    )


@pytest.fixture()
def app(tmp_path):
    return create_app(_settings(tmp_path))


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        _seed(app.state.repository)
        yield test_client


def _login(client) -> dict[str, str]:
    response = client.post("/login", json={"admin_token": ADMIN_TOKEN})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_login_rejects_wrong_token(client) -> None:
    assert client.post("/login", json={"admin_token": "nope"}).status_code == 401


def test_manual_trigger_requires_session(client) -> None:
    assert client.post("/api/match-properties", json={"minScore": 40}).status_code == 401


def test_manual_trigger_runs_batch_and_reports_stats(client) -> None:
    headers = _login(client)
    response = client.post("/api/match-properties", json={"minScore": 40}, headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["stats"]["processed"] == 1
    assert body["stats"]["matched"] == 1
    assert body["stats"]["skipped"] == 1
    assert body["stats"]["timedOut"] is False
    assert body["stats"]["durationMs"] >= 0
    assert "errors" not in body

    status = client.get("/api/match-properties", headers=headers).json()["status"]
    assert status["totalMatches"] == 1
    assert status["activeListings"] == 2
    assert status["lastRunState"] == "DONE"


def test_manual_trigger_rejects_out_of_range_min_score(client) -> None:
    headers = _login(client)
    response = client.post("/api/match-properties", json={"minScore": 150}, headers=headers)
    assert response.status_code == 422


def test_cron_trigger_checks_shared_secret(client) -> None:
    assert client.get("/api/cron/match-properties").status_code == 401
    wrong = client.get(
        "/api/cron/match-properties",
        headers={"Authorization": "Bearer wrong"},
    )
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Unauthorized"

    response = client.get(
        "/api/cron/match-properties?minScore=90",
        headers={"Authorization": f"Bearer {CRON_SECRET}"},
    )
    assert response.status_code == 200
    assert response.json()["stats"]["matched"] == 0


def test_cron_trigger_without_configured_secret_is_server_error(tmp_path) -> None:
    app = create_app(_settings(tmp_path, cron_secret=None))
    with TestClient(app) as client:
        response = client.get(
            "/api/cron/match-properties",
            headers={"Authorization": "Bearer anything"},
        )
    assert response.status_code == 500


def test_failed_run_returns_error_body(app, client) -> None:
    headers = _login(client)
    broken = FailingLoadRepository()
    app.state.matching_service = BatchMatchingService(
        listings=broken,
        opportunities=broken,
        matches=broken,
        settings=app.state.settings,
    )
    response = client.post("/api/match-properties", headers=headers)

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "Failed to load records" in response.json()["error"]


def test_unexpected_run_error_returns_error_body(app, client) -> None:
    class _BrokenService:
        def run_batch(self, min_score=None):
            raise RuntimeError("worker pool unavailable")

    headers = _login(client)
    app.state.matching_service = _BrokenService()
    response = client.post("/api/match-properties", json={"minScore": 40}, headers=headers)

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "RuntimeError" in body["error"]
    assert "detail" not in body


def test_calculate_match(client) -> None:
    headers = _login(client)
    response = client.post(
        "/api/scoring/calculate-match",
        json={"listingId": "LST-0001", "opportunityId": "OPP-0001"},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["overall_score"] == 79
    assert body["grade"] == "B"
    assert body["competitive"] is True
    assert set(body["score_breakdown"]) == {
        "location",
        "space",
        "building",
        "timeline",
        "experience",
    }

    missing = client.post(
        "/api/scoring/calculate-match",
        json={"listingId": "LST-0001", "opportunityId": "OPP-9999"},
        headers=headers,
    )
    assert missing.status_code == 404


def test_federal_endpoints(client) -> None:
    score = client.get("/api/federal/neighborhood-score", params={"lat": 38.9072, "lng": -77.0369})
    assert score.status_code == 200
    assert score.json()["total_properties"] == 0

    too_wide = client.get(
        "/api/federal/neighborhood-score",
        params={"lat": 38.9072, "lng": -77.0369, "radius": 500},
    )
    assert too_wide.status_code == 400

    viewport = client.get(
        "/api/federal/viewport",
        params={"north": 39.0, "south": 38.8, "east": -76.9, "west": -77.1},
    )
    assert viewport.status_code == 200
    assert viewport.json()["count"] == 0


def test_analytics_endpoints(client) -> None:
    headers = _login(client)
    client.post("/api/match-properties", json={"minScore": 0}, headers=headers)

    response = client.get("/api/analytics", params={"type": "all"}, headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["match_scores"]["total_matches"] == 1
    assert data["prefilter"]["skip_reasons"] == {"REGION_MISMATCH": 1}

    bad = client.get("/api/analytics", params={"type": "heatmap"}, headers=headers)
    assert bad.status_code == 400

    owner = client.get("/api/analytics/owners/OWN-001", headers=headers)
    assert owner.status_code == 200
    assert owner.json()["data"]["listings"] == 2


def test_expiring_leases_endpoint(app, client) -> None:
    today = date.today()
    app.state.repository.save_federal_properties(
        [
            make_federal_property(
                "FED-00001",
                38.90,
                -77.03,
                state="DC",
                lease_expiration=today + timedelta(days=30),
            ),
            make_federal_property(
                "FED-00002",
                38.91,
                -77.02,
                state="DC",
                lease_expiration=today + timedelta(days=200),
            ),
            make_federal_property(
                "FED-00003",
                38.92,
                -77.01,
                state="DC",
                lease_expiration=today + timedelta(days=500),
            ),
        ]
    )

    response = client.get("/api/federal/expiring-leases", params={"monthsAhead": 12, "state": "DC"})
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert body["state"] == "DC"
    assert [row["property_id"] for row in body["leases"]] == ["FED-00001", "FED-00002"]
    assert [row["urgency"] for row in body["leases"]] == ["critical", "warning"]
    assert body["total_rsf"] == 40_000

    everywhere = client.get("/api/federal/expiring-leases").json()
    assert everywhere["state"] == "all"
    assert everywhere["count"] == 3

    too_far = client.get("/api/federal/expiring-leases", params={"monthsAhead": 61})
    assert too_far.status_code == 400
