"""
Tests for GET /api/statistics, health checks and /metrics.
"""


def inject(client, phone: str, body: str):
    response = client.post("/webhook/test", json={"from": phone, "body": body})
    assert response.status_code == 200


class TestStatistics:
    """Test the statistics endpoint."""

    def test_empty_database(self, client):
        response = client.get("/api/statistics")

        assert response.status_code == 200
        assert response.json() == {
            "totals": {"conversations": 0, "messages": 0, "incoming": 0, "outgoing": 0},
            "topConversations": [],
            "recentActivity": [],
        }

    def test_totals_and_top_conversations(self, client):
        for i in range(3):
            inject(client, "15550001", f"a{i}")
        inject(client, "15550002", "b0")
        client.post("/api/message/send", json={"to": "15550002", "body": "reply"})

        data = client.get("/api/statistics").json()

        assert data["totals"] == {"conversations": 2, "messages": 5, "incoming": 4, "outgoing": 1}
        assert [c["phone"] for c in data["topConversations"]] == ["15550001", "15550002"]
        assert [c["messageCount"] for c in data["topConversations"]] == [3, 2]

    def test_top_conversations_limited_to_five(self, client):
        for i in range(7):
            inject(client, f"1555000{i}", "hi")

        data = client.get("/api/statistics").json()

        assert len(data["topConversations"]) == 5

    def test_recent_activity_limited_to_ten(self, client):
        for i in range(12):
            inject(client, "15550001", f"m{i}")

        recent = client.get("/api/statistics").json()["recentActivity"]

        assert len(recent) == 10
        assert all(item["phone"] == "15550001" for item in recent)
        assert all(item["direction"] == "inbound" for item in recent)


class TestHealth:
    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestMetrics:
    def test_metrics_exposed(self, client, helpers):
        client.post("/webhook/meta", content=helpers.encode(helpers.payload(helpers.text("1555", "hi"))))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_requests_total" in response.text
        assert 'result="processed"' in response.text
        assert "http_requests_total" in response.text

    def test_request_id_header(self, client):
        response = client.get("/health/live")

        assert response.headers.get("X-Request-ID")


class TestUnexpectedErrors:
    """Unhandled errors come back as a generic JSON 500."""

    def test_json_body_on_internal_error(self, client, monkeypatch):
        from fastapi.testclient import TestClient

        from inbox_gateway import main

        def broken_stats(db):
            raise RuntimeError("database exploded")

        monkeypatch.setattr(main, "get_stats", broken_stats)
        lenient = TestClient(main.app, raise_server_exceptions=False)

        response = lenient.get("/api/statistics")

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}
        assert "exploded" not in response.text
