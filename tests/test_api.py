"""
API tests for the booking risk endpoints.

Runs the FastAPI app in-process over ``httpx.ASGITransport`` with the risk
engine and database session dependencies bound to a temporary database.
"""

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from src.api.main import app
from src.api.routes.bookings import get_risk_engine
from src.api.websocket import ConnectionManager
from src.models.database import get_db
from tests.factories import clean_payload, throwaway_identity


@pytest.fixture
async def test_client(risk_engine, session_factory):
    """HTTP client wired to the test database."""

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_risk_engine] = lambda: risk_engine
    app.dependency_overrides[get_db] = override_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestSignalsEndpoint:

    @pytest.mark.asyncio
    async def test_submit_returns_assessment(self, test_client):
        response = await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["booking_id"] == "bk_1"
        assert data["risk_level"] == "low"
        assert data["sequence"] == 1
        assert [c["category"] for c in data["category_scores"]] == [
            "email", "session", "device", "location", "velocity",
        ]

    @pytest.mark.asyncio
    async def test_sparse_payload_is_accepted(self, test_client):
        response = await test_client.post("/api/bookings/bk_2/signals", json={})

        assert response.status_code == 201
        factors = [f for c in response.json()["category_scores"] for f in c["factors"]]
        assert "signal missing: email (reduced confidence)" in factors
        assert "Device fingerprint missing" in factors

    @pytest.mark.asyncio
    async def test_duplicate_submission_conflicts(self, test_client):
        await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())
        response = await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_payload_is_rejected(self, test_client):
        response = await test_client.post(
            "/api/bookings/bk_1/signals", json={"ip_latitude": 123.0},
        )
        assert response.status_code == 422


class TestBookingQueries:

    @pytest.mark.asyncio
    async def test_unknown_booking_is_404(self, test_client):
        for path in ("assessment", "assessments", "dispositions", "related", "ledger"):
            response = await test_client.get(f"/api/bookings/bk_missing/{path}")
            assert response.status_code == 404, path

    @pytest.mark.asyncio
    async def test_reevaluate_unknown_booking_is_404(self, test_client):
        response = await test_client.post("/api/bookings/bk_missing/reevaluate")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_reevaluate_appends_assessment(self, test_client):
        await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())
        response = await test_client.post("/api/bookings/bk_1/reevaluate")

        assert response.status_code == 200
        assert response.json()["sequence"] == 2
        history = await test_client.get("/api/bookings/bk_1/assessments")
        assert [a["sequence"] for a in history.json()] == [1, 2]

    @pytest.mark.asyncio
    async def test_related_bookings(self, test_client):
        await test_client.post(
            "/api/bookings/bk_1/signals", json=clean_payload(device_fingerprint="fp-shared"),
        )
        await test_client.post(
            "/api/bookings/bk_2/signals",
            json=clean_payload(
                device_fingerprint="fp-shared",
                email="other.guest@yahoo.com",
                display_name="Other Guest",
                ip_address="24.6.7.8",
            ),
        )

        response = await test_client.get("/api/bookings/bk_1/related")

        assert response.status_code == 200
        assert response.json() == [
            {"booking_id": "bk_2", "score": 8.0, "state": "approved", "shared_signals": ["device"]},
        ]


class TestDecisionEndpoints:

    @pytest.mark.asyncio
    async def test_reject_then_override(self, test_client):
        await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())

        rejected = await test_client.post(
            "/api/bookings/bk_1/decisions",
            json={"action": "reject", "actor": "analyst", "reason": "stolen identity"},
        )
        assert rejected.status_code == 200
        assert rejected.json()["state"] == "rejected"

        cleared = await test_client.post(
            "/api/bookings/bk_1/decisions",
            json={"action": "override", "actor": "lead", "reason": "identity confirmed"},
        )
        assert cleared.json()["state"] == "override_cleared"

        dispositions = await test_client.get("/api/bookings/bk_1/dispositions")
        assert [d["state"] for d in dispositions.json()] == [
            "pending_review", "approved", "rejected", "override_cleared",
        ]
        ledger = await test_client.get("/api/bookings/bk_1/ledger")
        assert [e["actor"] for e in ledger.json()] == [None, None, "analyst", "lead"]

    @pytest.mark.asyncio
    async def test_disallowed_transition_conflicts(self, test_client):
        await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())
        response = await test_client.post(
            "/api/bookings/bk_1/decisions",
            json={"action": "override", "actor": "analyst", "reason": "nothing to clear"},
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_decision_requires_actor_and_reason(self, test_client):
        await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())
        response = await test_client.post(
            "/api/bookings/bk_1/decisions", json={"action": "approve", "actor": "", "reason": ""},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_decision_on_unknown_booking_is_404(self, test_client):
        response = await test_client.post(
            "/api/bookings/bk_missing/decisions",
            json={"action": "approve", "actor": "analyst", "reason": "ok"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_pending_booking(self, test_client):
        await test_client.post(
            "/api/bookings/bk_1/signals", json=throwaway_identity(device_fingerprint="fp-med"),
        )
        response = await test_client.post(
            "/api/bookings/bk_1/cancel", json={"reason": "guest cancelled"},
        )

        assert response.status_code == 200
        assert response.json()["state"] == "rejected"
        assert response.json()["reason"] == "booking cancelled before review"

    @pytest.mark.asyncio
    async def test_cancel_unknown_booking_is_404(self, test_client):
        response = await test_client.post("/api/bookings/bk_missing/cancel", json={})
        assert response.status_code == 404


class TestMetricsEndpoint:

    @pytest.mark.asyncio
    async def test_metrics_summarise_recent_activity(self, test_client):
        await test_client.post("/api/bookings/bk_1/signals", json=clean_payload())
        await test_client.post(
            "/api/bookings/bk_2/signals",
            json=throwaway_identity(device_fingerprint="unknown", ip_address="3.15.2.10"),
        )
        await test_client.post(
            "/api/bookings/bk_1/decisions",
            json={"action": "reject", "actor": "analyst", "reason": "chargeback"},
        )

        response = await test_client.get("/api/metrics")

        assert response.status_code == 200
        data = response.json()
        assert data["total_assessments"] == 2
        assert data["risk_level_counts"] == {"low": 1, "high": 1}
        assert data["disposition_counts"] == {"rejected": 1, "flagged_for_review": 1}
        assert sum(b["count"] for b in data["score_distribution"]) == 2
        assert {"factor": "Device fingerprint missing", "count": 1} in data["top_factors"]
        assert data["human_decisions"] == 1


class TestPatternsEndpoint:

    @pytest.mark.asyncio
    async def test_device_ring_is_reported(self, test_client):
        guests = [
            ("bk_r1", "amy.lee@gmail.com", "Amy Lee", "98.45.12.1"),
            ("bk_r2", "raj.patel@gmail.com", "Raj Patel", "24.6.7.8"),
            ("bk_r3", "tom.wu@gmail.com", "Tom Wu", "67.80.9.10"),
        ]
        for booking_id, email, name, ip in guests:
            await test_client.post(
                f"/api/bookings/{booking_id}/signals",
                json=clean_payload(
                    email=email, display_name=name, ip_address=ip, device_fingerprint="fp-ring",
                ),
            )

        response = await test_client.get("/api/patterns", params={"hours": 24})

        assert response.status_code == 200
        data = response.json()
        by_type = {p["type"]: p for p in data["patterns"]}
        assert set(by_type) == {"relationship_cluster", "device_cluster"}
        device = by_type["device_cluster"]
        assert device["severity"] == "medium"
        assert device["booking_ids"] == ["bk_r1", "bk_r2", "bk_r3"]
        assert device["emails"] == ["amy.lee@gmail.com", "raj.patel@gmail.com", "tom.wu@gmail.com"]
        assert by_type["relationship_cluster"]["shared_signals"] == ["device"]
        assert data["stats"]["total_patterns"] == 2
        assert data["stats"]["affected_bookings"] == 3

        medium_up = await test_client.get("/api/patterns", params={"min_severity": "medium"})
        assert [p["type"] for p in medium_up.json()["patterns"]] == ["device_cluster"]

    @pytest.mark.asyncio
    async def test_cluster_severity_from_member_scores(self, test_client):
        for booking_id in ("bk_1", "bk_2"):
            await test_client.post(
                f"/api/bookings/{booking_id}/signals",
                json=throwaway_identity(device_fingerprint="unknown", ip_address="3.15.2.10"),
            )

        response = await test_client.get("/api/patterns")

        (cluster,) = response.json()["patterns"]
        assert cluster["type"] == "relationship_cluster"
        assert cluster["severity"] == "high"
        assert cluster["shared_signals"] == ["ip", "email"]
        assert response.json()["stats"]["high_patterns"] == 1

        critical = await test_client.get("/api/patterns", params={"min_severity": "critical"})
        assert critical.json()["patterns"] == []

    @pytest.mark.asyncio
    async def test_invalid_filters_are_rejected(self, test_client):
        assert (await test_client.get("/api/patterns", params={"min_severity": "severe"})).status_code == 422
        assert (await test_client.get("/api/patterns", params={"hours": 0})).status_code == 422


class TestConnectionManager:

    @pytest.mark.asyncio
    async def test_broadcast_drops_broken_connections(self):
        manager = ConnectionManager()
        healthy, broken = AsyncMock(), AsyncMock()
        broken.send_json.side_effect = RuntimeError("socket closed")
        await manager.connect(healthy)
        await manager.connect(broken)

        await manager.broadcast({"type": "disposition", "booking_id": "bk_1"})

        healthy.send_json.assert_awaited_once_with({"type": "disposition", "booking_id": "bk_1"})
        assert manager.active_connections == [healthy]
