"""Tests for the operator removal request endpoints"""

import uuid

from fastapi.testclient import TestClient

from removal_engine.models.removal_request import RemovalStatus


class TestOperatorAuth:
    def test_requires_operator_key(self, client: TestClient, make_request):
        request = make_request()

        assert client.get(f"/removals/{request.id}").status_code == 401

    def test_cron_secret_is_not_an_operator_key(self, client: TestClient, make_request, cron_headers):
        request = make_request()

        response = client.get(f"/removals/{request.id}", headers=cron_headers)

        assert response.status_code == 401


class TestRemovalEndpoints:
    def test_get_request(self, client: TestClient, make_request, operator_headers):
        request = make_request(source="SPOKEO")

        response = client.get(f"/removals/{request.id}", headers=operator_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == str(request.id)
        assert body["status"] == "PENDING"
        assert body["attempts"] == 0

    def test_unknown_request_is_404(self, client: TestClient, operator_headers):
        response = client.get(f"/removals/{uuid.uuid4()}", headers=operator_headers)

        assert response.status_code == 404

    def test_cancel_then_cancel_again_conflicts(self, client: TestClient, make_request, operator_headers):
        request = make_request(status=RemovalStatus.SUBMITTED)

        first = client.post(
            f"/removals/{request.id}/cancel",
            json={"reason": "User withdrew consent"},
            headers=operator_headers,
        )
        second = client.post(f"/removals/{request.id}/cancel", headers=operator_headers)

        assert first.status_code == 200
        assert first.json()["status"] == "CANCELLED"
        assert "User withdrew consent" in first.json()["notes"]
        assert second.status_code == 409

    def test_reactivate_manual_request(self, client: TestClient, make_request, operator_headers):
        request = make_request(source="ACXIOM", status=RemovalStatus.REQUIRES_MANUAL, attempts=3)

        response = client.post(
            f"/removals/{request.id}/reactivate",
            json={"privacy_email": "Privacy@Acxiom.example"},
            headers=operator_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["attempts"] == 0
        assert body["override_privacy_email"] == "privacy@acxiom.example"

    def test_reactivate_requires_a_channel(self, client: TestClient, make_request, operator_headers):
        request = make_request(status=RemovalStatus.REQUIRES_MANUAL)

        response = client.post(f"/removals/{request.id}/reactivate", json={}, headers=operator_headers)

        assert response.status_code == 422

    def test_reactivate_rejects_non_http_url(self, client: TestClient, make_request, operator_headers):
        request = make_request(status=RemovalStatus.REQUIRES_MANUAL)

        response = client.post(
            f"/removals/{request.id}/reactivate",
            json={"opt_out_url": "ftp://broker.example/optout"},
            headers=operator_headers,
        )

        assert response.status_code == 422

    def test_override_leaves_terminal_state(self, client: TestClient, make_request, operator_headers):
        request = make_request(status=RemovalStatus.COMPLETED)

        response = client.post(
            f"/removals/{request.id}/override",
            json={"status": "PENDING", "reason": "Listing reappeared"},
            headers=operator_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "PENDING"
        assert "(administrative override)" in response.json()["notes"]

    def test_stats(self, client: TestClient, make_request, operator_headers):
        make_request(status=RemovalStatus.SUBMITTED)
        make_request(status=RemovalStatus.REQUIRES_MANUAL)

        response = client.get("/removals/stats", headers=operator_headers)

        assert response.status_code == 200
        assert response.json()["automation_rate"] == 50.0
