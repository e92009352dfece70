"""
Tests for collaborator clients, configuration, the directory and the event bus.
"""
import asyncio
import json

import httpx
import pytest

from task_router.collaborators import (
    CollaboratorError,
    HTTPClassifier,
    HTTPWorkloadService,
    KeywordClassifier,
    LogNotifier,
    RetryingNotifier,
    StaticWorkloadService,
    build_collaborators,
)
from task_router.directory import HandlerDirectory
from task_router.events import EventBus
from task_router.models import HandlerType, RoutingDecision
from task_router.utils import ConfigurationError, load_and_validate_env, sanitize_for_logging

# Nothing listens here; connections are refused immediately
UNREACHABLE = "http://127.0.0.1:9"


def _respond_with(monkeypatch, method, body, status=200):
    """Make every httpx.AsyncClient call of `method` return `body` as JSON."""
    async def fake(self, url, **kwargs):
        return httpx.Response(status, json=body, request=httpx.Request(method.upper(), url))
    monkeypatch.setattr(httpx.AsyncClient, method, fake)


class FlakyNotifier:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    async def notify(self, recipients, message):
        self.calls += 1
        if self.calls <= self.failures:
            raise CollaboratorError("temporarily unavailable")


# ==================== CLASSIFIER ====================

def test_keyword_classifier():
    classifier = KeywordClassifier()

    result = classifier.classify_text("I was charged twice, please refund the invoice")
    assert result.categories[0] == "billing"

    urgent = classifier.classify_text("Production is down, critical outage")
    assert urgent.urgency_score == 1.0

    calm = classifier.classify_text("Just saying hello")
    assert calm.categories == ["general"]
    assert calm.urgency_score == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_http_classifier_falls_back_to_keywords(make_request):
    classifier = HTTPClassifier(UNREACHABLE, timeout=0.5)
    result = await classifier.classify(make_request("Please refund my invoice"))
    assert "billing" in result.categories


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [["billing", "refund"], {"categories": "billing", "urgencyScore": 7}])
async def test_http_classifier_unusable_body_falls_back(monkeypatch, make_request, body):
    _respond_with(monkeypatch, "post", body)
    classifier = HTTPClassifier("http://classifier")
    result = await classifier.classify(make_request("Please refund my invoice"))
    assert "billing" in result.categories


@pytest.mark.asyncio
async def test_http_classifier_reads_service_result(monkeypatch, make_request):
    _respond_with(monkeypatch, "post", {"categories": ["security"], "urgencyScore": 0.7, "confidence": 0.8})
    result = await HTTPClassifier("http://classifier").classify(make_request("Please refund my invoice"))
    assert result.categories == ["security"]
    assert result.urgency_score == 0.7


# ==================== WORKLOAD ====================

@pytest.mark.asyncio
async def test_static_workload_service():
    service = StaticWorkloadService(default_capacity=5)
    unknown = await service.get_capacity("nobody")
    assert unknown.capacity == 5
    assert unknown.active_tasks == 0
    assert unknown.available

    service.set_capacity("alice", active_tasks=4, capacity=8)
    alice = await service.get_capacity("alice")
    assert (alice.active_tasks, alice.capacity) == (4, 8)


@pytest.mark.asyncio
async def test_http_workload_errors_are_collaborator_errors():
    with pytest.raises(CollaboratorError):
        await HTTPWorkloadService(UNREACHABLE, timeout=0.5).get_capacity("alice")


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[{"capacity": 3}], {"activeTasks": 1, "capacity": None}, {"activeTasks": -2}])
async def test_http_workload_malformed_readings_are_collaborator_errors(monkeypatch, body):
    _respond_with(monkeypatch, "get", body)
    with pytest.raises(CollaboratorError):
        await HTTPWorkloadService("http://workload").get_capacity("alice")


@pytest.mark.asyncio
async def test_http_workload_reads_capacity(monkeypatch):
    _respond_with(monkeypatch, "get", {"activeTasks": 2, "capacity": 6, "available": False})
    info = await HTTPWorkloadService("http://workload").get_capacity("alice")
    assert (info.handler_id, info.active_tasks, info.capacity, info.available) == ("alice", 2, 6, False)


# ==================== NOTIFICATIONS ====================

@pytest.mark.asyncio
async def test_retrying_notifier_recovers():
    inner = FlakyNotifier(failures=2)
    notifier = RetryingNotifier(inner, max_retries=3, base_delay=0)
    assert await notifier.notify(["alice"], "hello") is True
    assert inner.calls == 3


@pytest.mark.asyncio
async def test_retrying_notifier_gives_up_without_raising():
    inner = FlakyNotifier(failures=10)
    notifier = RetryingNotifier(inner, max_retries=3, base_delay=0)
    assert await notifier.notify(["alice"], "hello") is False
    assert inner.calls == 3


def test_build_collaborators_defaults_and_urls(config):
    classifier, workload, notifier = build_collaborators(config)
    assert isinstance(classifier, KeywordClassifier)
    assert isinstance(workload, StaticWorkloadService)
    assert isinstance(notifier, RetryingNotifier)
    assert isinstance(notifier.inner, LogNotifier)

    remote = dict(config, CLASSIFIER_URL="http://classifier", WORKLOAD_SERVICE_URL="http://workload")
    classifier, workload, _ = build_collaborators(remote)
    assert isinstance(classifier, HTTPClassifier)
    assert isinstance(workload, HTTPWorkloadService)


# ==================== CONFIGURATION ====================

def test_env_overrides_and_invalid_values(monkeypatch):
    monkeypatch.setenv("MAX_ALTERNATIVES", "5")
    monkeypatch.setenv("ESCALATION_POLL_SECONDS", "soon")
    monkeypatch.setenv("ROUTING_DEFAULT_QUEUE", "triage")

    config = load_and_validate_env()
    assert config["MAX_ALTERNATIVES"] == 5
    assert config["ESCALATION_POLL_SECONDS"] == 5
    assert config["ROUTING_DEFAULT_QUEUE"] == "triage"


def test_unusable_weights_are_rejected(monkeypatch):
    monkeypatch.setenv("CONFIDENCE_WEIGHT_RULE_MATCH", "-1")
    with pytest.raises(ConfigurationError):
        load_and_validate_env()


def test_sanitize_for_logging():
    text = "token sk-abc123 and Bearer xyz"
    sanitized = sanitize_for_logging(text)
    assert "sk-abc123" not in sanitized
    assert sanitize_for_logging("a" * 10, max_length=5) == "aaaaa..."


# ==================== DIRECTORY ====================

def test_directory_load_file(tmp_path):
    path = tmp_path / "directory.json"
    path.write_text(json.dumps({
        "persons": [{"id": "alice", "skills": ["billing"]}, {"id": "bob", "skills": ["billing"], "active": False}],
        "teams": [{"id": "finance", "member_ids": ["alice", "bob"]}],
        "queues": [{"name": "general"}, "billing"],
    }))

    directory = HandlerDirectory()
    directory.load_file(path)

    assert directory.has_person("alice")
    assert not directory.has_person("bob")
    assert [p.id for p in directory.team_members("finance")] == ["alice"]
    assert directory.get_person("alice").team_ids == ["finance"]
    assert directory.has_queue("billing")

    directory.remove_person("alice")
    assert directory.team_members("finance") == []


# ==================== EVENTS ====================

def _decision():
    return RoutingDecision(
        request_id="req1", request_type="support", handler_type=HandlerType.QUEUE,
        handler_id="general", confidence=0.0, reasoning="test",
    )


@pytest.mark.asyncio
async def test_event_bus_isolates_subscribers():
    bus = EventBus(queue_size=1)
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    async def collecting(event):
        received.append(event)

    bus.subscribe(broken)
    bus.subscribe(collecting)
    queue = bus.open_queue()
    assert bus.subscriber_count == 3

    await bus.publish(_decision())
    await bus.publish(_decision())

    assert len(received) == 2
    assert queue.qsize() == 1
    assert bus.published == 2

    bus.close_queue(queue)
    bus.unsubscribe(broken)
    assert bus.subscriber_count == 1
    assert isinstance(queue, asyncio.Queue)
