import pytest
from fastapi.testclient import TestClient

from conftest import OFFICER_ID, PRODUCT_ID, RESIDENT_ID, TASK_A_ID, TASK_B_ID, UNAVAILABLE_PRODUCT_ID
from welfare_ledger import api


@pytest.fixture
def client(monkeypatch, service, ranker):
    monkeypatch.setattr(api, "ledger_service", service)
    monkeypatch.setattr(api, "ranker", ranker)
    return TestClient(api.app)


def _complete(client, task_ids=(TASK_A_ID, TASK_B_ID), resident_id=RESIDENT_ID):
    return client.post(
        f"/residents/{resident_id}/completions",
        json={"officer_id": OFFICER_ID, "task_ids": list(task_ids)},
    )


class TestTransactionsAPI:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_completion_then_redemption(self, client):
        response = _complete(client)
        assert response.status_code == 201
        body = response.json()
        assert body["state"] == "COMMITTED"
        assert body["entry"]["kind"] == "completion"
        assert body["balances"] == {"resident_id": RESIDENT_ID, "current_points": 150, "lifetime_points": 150}

        response = client.post(
            f"/residents/{RESIDENT_ID}/redemptions",
            json={"officer_id": OFFICER_ID, "items": [{"product_id": PRODUCT_ID, "quantity": 1}]},
        )
        assert response.status_code == 201
        assert response.json()["entry"]["details"] == [
            {"kind": "redemption", "product_id": PRODUCT_ID, "quantity": 1, "unit_points": 60}
        ]

        balance = client.get(f"/residents/{RESIDENT_ID}/balance").json()
        assert balance["current_points"] == 90
        assert balance["lifetime_points"] == 150
        assert balance["total_entries"] == 2

    def test_insufficient_balance_is_conflict(self, client):
        response = client.post(
            f"/residents/{RESIDENT_ID}/abscondences",
            json={"officer_id": OFFICER_ID, "reason": "Missed curfew", "penalty": 30},
        )
        assert response.status_code == 409
        assert "Insufficient points" in response.json()["detail"]

    def test_error_mapping(self, client):
        assert _complete(client, resident_id=999).status_code == 404
        assert _complete(client, task_ids=[]).status_code == 422

        response = client.post(
            f"/residents/{RESIDENT_ID}/redemptions",
            json={"officer_id": OFFICER_ID, "items": [{"product_id": UNAVAILABLE_PRODUCT_ID, "quantity": 1}]},
        )
        assert response.status_code == 409

    def test_reverse_and_lookup(self, client):
        entry_id = _complete(client).json()["entry"]["id"]

        response = client.post(f"/entries/{entry_id}/reverse", json={"officer_id": OFFICER_ID, "reason": "Mistake"})
        assert response.status_code == 201
        assert response.json()["balances"]["current_points"] == 0

        again = client.post(f"/entries/{entry_id}/reverse", json={"officer_id": OFFICER_ID, "reason": "Mistake"})
        assert again.status_code == 409

        view = client.get(f"/entries/{entry_id}").json()
        assert view["reversed_by_entry_id"] == response.json()["reversal_entry"]["id"]
        assert client.get("/entries/4242").status_code == 404

    def test_history_and_summary(self, client):
        _complete(client)
        client.post(
            f"/residents/{RESIDENT_ID}/abscondences",
            json={"officer_id": OFFICER_ID, "reason": "Late return", "penalty": 10},
        )

        history = client.get(f"/residents/{RESIDENT_ID}/ledger", params={"kind": "abscondence"}).json()
        assert history["total_count"] == 1

        summary = client.get(f"/residents/{RESIDENT_ID}/summary").json()
        assert summary["current_points"] == 140


class TestReferenceDataAPI:
    def test_provision_and_catalog_sync(self, client):
        response = client.put("/residents/880", json={"batch_number": 7})
        assert response.status_code == 200
        assert response.json()["current_points"] == 0

        assert client.put("/catalog/tasks/77", json={"name": "Laundry", "points": 25}).status_code == 200
        response = _complete(client, task_ids=[77], resident_id=880)
        assert response.json()["balances"]["current_points"] == 25

        assert client.put("/catalog/products/78", json={"name": "Soap", "points": -1}).status_code == 422


class TestLeaderboardAndArchiveAPI:
    def test_leaderboard_and_position(self, client):
        client.put("/residents/881", json={"batch_number": 1})
        _complete(client)
        _complete(client, task_ids=[TASK_B_ID], resident_id=881)

        board = client.get("/leaderboard", params={"order_by": "lifetime"}).json()
        assert [row["resident_id"] for row in board["rows"]] == [RESIDENT_ID, 881]

        position = client.get("/leaderboard/position/881").json()
        assert position["rank"] == 2
        assert [row["is_current_resident"] for row in position["neighbors"]] == [False, True]

        stats = client.get("/leaderboard/statistics").json()
        assert stats["overall"]["total_residents"] == 2

    def test_sweep_and_reactivate(self, client):
        client.put("/residents/882", json={"date_of_admission": "2023-01-01T00:00:00Z"})

        result = client.post("/archive/sweep", json={"inactivity_threshold_months": 6}).json()
        assert result["archived_count"] == 1

        assert client.get("/archive").json()["total_count"] == 1
        assert client.get("/archive/stats").json()["archived"] == 1
        assert _complete(client, resident_id=882).status_code == 409

        assert client.post("/residents/882/reactivate").json()["is_active"] is True
        assert _complete(client, resident_id=882).status_code == 201

    def test_invalid_sweep_threshold(self, client):
        assert client.post("/archive/sweep", json={"inactivity_threshold_months": 0}).status_code == 422


class TestReadPathsAPI:
    def test_history_window_accepts_naive_and_aware_bounds(self, client):
        _complete(client)

        for start in ("2024-06-15T11:00:00", "2024-06-15T11:00:00Z", "2024-06-15T13:00:00+02:00"):
            response = client.get(f"/residents/{RESIDENT_ID}/ledger", params={"start": start})
            assert response.status_code == 200
            assert response.json()["total_count"] == 1

        later = client.get(f"/residents/{RESIDENT_ID}/ledger", params={"start": "2024-06-15T12:30:00"})
        assert later.json()["total_count"] == 0

        summary = client.get(f"/residents/{RESIDENT_ID}/summary", params={"end": "2024-06-15T11:00:00"})
        assert summary.status_code == 200
        assert summary.json()["summary"] == []

    def test_entry_listing_and_analytics(self, client):
        client.put("/residents/883", json={})
        _complete(client)
        _complete(client, task_ids=[TASK_A_ID], resident_id=883)

        listing = client.get("/entries", params={"kind": "completion", "start": "2024-06-01T00:00:00"}).json()
        assert listing["total_count"] == 2
        assert client.get("/entries", params={"resident_id": 883}).json()["total_count"] == 1

        analytics = client.get("/entries/analytics", params={"period": "month"}).json()
        assert analytics["total_entries"] == 2
        assert analytics["total_points_flow"] == 250

    def test_leaderboard_extras(self, client):
        client.put("/residents/884", json={"batch_number": 2})
        _complete(client)
        _complete(client, task_ids=[TASK_B_ID], resident_id=884)

        top = client.get("/leaderboard/top-performers", params={"period": "week"}).json()
        assert [row["resident_id"] for row in top] == [RESIDENT_ID, 884]

        changes = client.get("/leaderboard/recent-changes", params={"batch_number": 2}).json()
        assert [c["resident_id"] for c in changes] == [884]

        comparison = client.get("/leaderboard/compare", params={"resident_ids": [884, RESIDENT_ID]}).json()
        assert [row["resident_id"] for row in comparison["rows"]] == [RESIDENT_ID, 884]

        assert client.get("/leaderboard/compare", params={"resident_ids": [884]}).status_code == 422
