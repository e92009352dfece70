"""
HTTP API tests against an engine wired to local collaborators.
"""
import pytest
from fastapi.testclient import TestClient

from task_router.engine import set_routing_engine
from task_router.main import app


@pytest.fixture
def client(engine):
    set_routing_engine(engine)
    yield TestClient(app)
    set_routing_engine(None)


SUPPORT_RULE = {
    "name": "Support to Alice",
    "priority": 10,
    "criteria": {"categories": ["support"]},
    "handler": {"type": "person", "person_id": "alice"},
}


def _route(client, content="Customer cannot open the reporting page", **extra):
    body = {"type": "support", "content": content}
    body.update(extra)
    response = client.post("/routing/route", json=body)
    assert response.status_code == 200, response.text
    return response.json()


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "Task Routing Engine"

    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] in {"healthy", "degraded"}
    assert "storage" in body["checks"]
    assert body["checks"]["workers"]["escalation"] == "stopped"


def test_route_without_rules_uses_default_queue(client):
    decision = _route(client)
    assert decision["handler_type"] == "queue"
    assert decision["handler_id"] == "general"
    assert decision["confidence"] == 0.0


def test_route_rejects_invalid_body(client):
    response = client.post("/routing/route", json={"type": "support"})
    assert response.status_code == 422


def test_rule_lifecycle(client):
    created = client.post("/routing/rules", json=SUPPORT_RULE)
    assert created.status_code == 201
    rule = created.json()

    response = client.post("/routing/route", json={"type": "support", "content": "Customer cannot log in"})
    assert response.headers.get("X-Request-ID")
    decision = response.json()
    assert decision["handler_id"] == "alice"
    assert decision["matched_rule_id"] == rule["id"]

    updated = client.put(f"/routing/rules/{rule['id']}", json={"priority": 1})
    assert updated.status_code == 200
    assert updated.json()["priority"] == 1

    assert [r["id"] for r in client.get("/routing/rules").json()] == [rule["id"]]

    assert client.delete(f"/routing/rules/{rule['id']}").status_code == 204
    missing = client.get(f"/routing/rules/{rule['id']}")
    assert missing.status_code == 404
    assert missing.json()["error"] == "RULE_NOT_FOUND"


def test_rule_with_unknown_handler_is_rejected(client):
    bad = dict(SUPPORT_RULE, handler={"type": "team", "team_id": "night-shift"})
    response = client.post("/routing/rules", json=bad)
    assert response.status_code == 422
    assert response.json()["error"] == "RULE_VALIDATION_ERROR"


def test_rule_with_bad_expression_is_rejected(client):
    bad = dict(SUPPORT_RULE, criteria={"custom_expression": "urgency >"})
    assert client.post("/routing/rules", json=bad).status_code == 422


def test_decision_lifecycle(client):
    client.post("/routing/rules", json=SUPPORT_RULE)
    decision = _route(client)
    decision_id = decision["id"]

    assert client.get(f"/routing/decisions/{decision_id}").json()["id"] == decision_id

    feedback = client.post(f"/routing/decisions/{decision_id}/feedback", json={"score": 5, "category": "accepted"})
    assert feedback.status_code == 200
    assert feedback.json()["feedback_score"] == 5

    rerouted = client.post(
        f"/routing/decisions/{decision_id}/reroute",
        json={"handler": {"type": "queue", "queue_name": "billing"}, "reason": "billing question"}
    )
    assert rerouted.status_code == 200
    assert rerouted.json()["revision"] == 2
    assert rerouted.json()["was_rerouted"] is True

    history = client.get(f"/routing/requests/{decision['request_id']}/decisions").json()
    assert [d["revision"] for d in history] == [1, 2]

    completed = client.post(f"/routing/decisions/{rerouted.json()['id']}/complete").json()
    assert completed["released"] is True


def test_ack_is_idempotent(client):
    client.post("/routing/rules", json={
        **SUPPORT_RULE,
        "handler": {
            "type": "person",
            "person_id": "alice",
            "escalation_path": [{"wait_minutes": 15, "handler": {"type": "person", "person_id": "bob"}}],
        },
    })
    decision = _route(client)

    first = client.post(f"/routing/decisions/{decision['id']}/ack").json()
    second = client.post(f"/routing/decisions/{decision['id']}/ack").json()
    assert first["acknowledged"] is True
    assert second["acknowledged"] is False
    assert second["escalation_state"] == "closed"


def test_unknown_decision_and_request(client):
    response = client.get("/routing/decisions/rd_missing")
    assert response.status_code == 404
    assert response.json()["error"] == "DECISION_NOT_FOUND"

    assert client.post("/routing/decisions/rd_missing/ack").status_code == 404
    assert client.get("/routing/requests/req_missing/decisions").status_code == 404


def test_batch_routing(client):
    response = client.post("/routing/route/batch", json={"requests": [
        {"type": "support", "content": "Cannot log in"},
        {"type": "billing", "content": "Refund my invoice"},
    ]})
    assert response.status_code == 200
    results = response.json()
    assert len(results) == 2
    assert all(r["decision"] is not None and r["error"] is None for r in results)

    assert client.post("/routing/route/batch", json={"requests": []}).status_code == 422


def test_metrics_endpoints(client):
    _route(client)
    metrics = client.get("/routing/metrics").json()
    assert metrics["total_decisions"] == 1

    low = client.get("/routing/metrics/low-confidence").json()
    assert len(low) == 1

    inverted = client.get("/routing/metrics", params={
        "start": "2026-01-02T00:00:00+00:00",
        "end": "2026-01-01T00:00:00+00:00",
    })
    assert inverted.status_code == 422


def test_directory_and_events(client):
    created = client.post("/routing/directory/persons", json={"id": "frank", "skills": ["billing"]})
    assert created.status_code == 201
    assert client.post("/routing/directory/queues", json={"name": "vip"}).status_code == 201

    directory = client.get("/routing/directory").json()
    assert "frank" in [p["id"] for p in directory["persons"]]
    assert "vip" in [q["name"] for q in directory["queues"]]

    decision = _route(client)
    events = client.get("/routing/events/recent").json()
    assert events[-1]["decision"]["id"] == decision["id"]


def test_match_rules_dry_run(client):
    rule = client.post("/routing/rules", json=SUPPORT_RULE).json()

    response = client.post("/routing/match-rules", json={"type": "support", "content": "Customer cannot log in"})
    assert response.status_code == 200, response.text
    body = response.json()
    assert [m["rule_id"] for m in body["matches"]] == [rule["id"]]
    assert "support" in body["categories"]

    assert client.get("/routing/decisions").json()["total"] == 0


def test_decision_search(client):
    client.post("/routing/rules", json=SUPPORT_RULE)
    to_alice = _route(client)
    to_queue = _route(client, type="billing", content="Please resend my invoice")

    everything = client.get("/routing/decisions").json()
    assert everything["total"] == 2
    assert [d["id"] for d in everything["decisions"]] == [to_queue["id"], to_alice["id"]]

    alice = client.get("/routing/decisions", params={"handler_id": "alice"}).json()
    assert [d["id"] for d in alice["decisions"]] == [to_alice["id"]]

    confident = client.get("/routing/decisions", params={"min_confidence": 0.5, "was_escalated": "false"}).json()
    assert [d["id"] for d in confident["decisions"]] == [to_alice["id"]]

    paged = client.get("/routing/decisions", params={"limit": 1, "offset": 1}).json()
    assert paged["total"] == 2
    assert [d["id"] for d in paged["decisions"]] == [to_alice["id"]]

    inverted = client.get("/routing/decisions", params={"min_confidence": 0.9, "max_confidence": 0.1})
    assert inverted.status_code == 422


def test_trends_endpoint(client):
    _route(client)
    trends = client.get("/routing/metrics/trends", params={"interval": "hour"}).json()
    assert trends["interval"] == "hour"
    assert [p["value"] for p in trends["volume"]] == [1.0]
    assert len(trends["escalation_rate"]) == 1

    assert client.get("/routing/metrics/trends", params={"interval": "month"}).status_code == 422
