"""
Shared fixtures: a small handler directory and an engine wired to local collaborators.
"""
import pytest

from task_router.collaborators import KeywordClassifier, LogNotifier, StaticWorkloadService
from task_router.directory import HandlerDirectory
from task_router.engine import RoutingEngine
from task_router.models import Person, RoutingRequest, Team
from task_router.resolver import HandlerResolver
from task_router.store import RoutingStore
from task_router.utils import default_config


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def directory():
    d = HandlerDirectory()
    d.upsert_person(Person(id="alice", name="Alice", skills=["support", "technical"]))
    d.upsert_person(Person(id="bob", name="Bob", skills=["support"]))
    d.upsert_person(Person(id="carol", name="Carol", skills=["billing"]))
    d.upsert_person(Person(id="dave", name="Dave", skills=["support"]))
    d.upsert_person(Person(id="erin", name="Erin", skills=["support", "security"]))
    d.upsert_team(Team(id="senior-support", name="Senior Support", member_ids=["dave", "erin"]))
    d.add_queue("general")
    d.add_queue("support")
    d.add_queue("billing")
    return d


@pytest.fixture
def store():
    return RoutingStore()


@pytest.fixture
def workload():
    return StaticWorkloadService(default_capacity=10)


@pytest.fixture
def notifier():
    return LogNotifier()


@pytest.fixture
def resolver(directory, workload, store):
    return HandlerResolver(directory, workload, store, default_queue="general", max_alternatives=3)


@pytest.fixture
def engine(config, store, directory, workload, notifier):
    return RoutingEngine(
        config=config,
        store=store,
        directory=directory,
        classifier=KeywordClassifier(),
        workload=workload,
        notifier=notifier,
    )


@pytest.fixture
def make_request():
    """Factory for routing requests with sensible defaults."""
    def _make(content="Customer cannot open the reporting page", **kwargs):
        kwargs.setdefault("type", "support")
        return RoutingRequest(content=content, **kwargs)
    return _make
