"""
Clients for the services the routing engine depends on.

This module provides:
- Content classifier: HTTP client plus a keyword-based local fallback
- Workload service: HTTP client plus a static in-memory implementation
- Notification delivery: HTTP client plus a log-only implementation
- Exponential backoff retry wrapper for notification delivery

All collaborators are call/response contracts. The engine only depends on
the ``Classifier``, ``WorkloadService`` and ``Notifier`` protocols.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

import httpx
from loguru import logger
from pydantic import ValidationError

from task_router.models import CapacityInfo, ClassificationResult, RoutingRequest
from task_router.utils import Timer, sanitize_for_logging


class CollaboratorError(Exception):
    """Raised when an external collaborator call fails."""
    pass


class Classifier(Protocol):
    async def classify(self, request: RoutingRequest) -> ClassificationResult: ...


class WorkloadService(Protocol):
    async def get_capacity(self, handler_id: str) -> CapacityInfo: ...


class Notifier(Protocol):
    async def notify(self, recipients: Sequence[str], message: str) -> None: ...


# ==================== CLASSIFIER ====================

@dataclass
class ClassificationPatterns:
    """Keyword definitions for local request classification."""

    CATEGORY_KEYWORDS = {
        "billing": {"invoice", "billing", "payment", "refund", "charge", "subscription", "pricing", "receipt"},
        "technical": {"error", "bug", "crash", "exception", "api", "integration", "timeout", "broken", "install"},
        "support": {"help", "issue", "problem", "support", "question", "unable", "cannot", "how do"},
        "security": {"security", "breach", "phishing", "password", "vulnerability", "unauthorized", "2fa"},
        "account": {"account", "login", "access", "permission", "profile", "signup", "locked"},
        "sales": {"quote", "demo", "purchase", "license", "upgrade", "trial", "contract"},
    }

    # Urgency contribution per keyword, summed and capped at 1.0
    URGENCY_KEYWORDS = {
        "critical": 0.4, "outage": 0.4, "down": 0.3, "urgent": 0.35, "asap": 0.3,
        "immediately": 0.3, "production": 0.25, "breach": 0.4, "blocked": 0.2,
        "deadline": 0.15, "today": 0.1, "escalate": 0.2,
    }

    BASE_URGENCY = 0.3


class KeywordClassifier:
    """Fast local classifier used when no classifier service is configured."""

    def __init__(self):
        self.patterns = ClassificationPatterns()

    def _matches(self, keyword: str, text: str) -> bool:
        return re.search(rf'\b{re.escape(keyword)}\b', text) is not None

    def classify_text(self, content: str, subject: Optional[str] = None) -> ClassificationResult:
        text = f"{subject or ''} {content}".lower()

        scored = []
        for category, keywords in self.patterns.CATEGORY_KEYWORDS.items():
            hits = sum(1 for kw in keywords if self._matches(kw, text))
            if hits:
                scored.append((hits, category))
        scored.sort(key=lambda item: (-item[0], item[1]))
        categories = [category for _, category in scored[:3]]

        urgency = self.patterns.BASE_URGENCY
        for keyword, weight in self.patterns.URGENCY_KEYWORDS.items():
            if self._matches(keyword, text):
                urgency += weight
        if "!!" in text:
            urgency += 0.1

        confidence = 0.4 if not categories else min(0.9, 0.5 + 0.1 * scored[0][0])
        return ClassificationResult(
            categories=categories or ["general"],
            urgency_score=round(min(1.0, urgency), 4),
            confidence=confidence
        )

    async def classify(self, request: RoutingRequest) -> ClassificationResult:
        return self.classify_text(request.content, request.subject)


def _json_object(response: httpx.Response, what: str) -> Dict[str, object]:
    """Decoded JSON body, which must be an object."""
    try:
        data = response.json()
    except ValueError as e:
        raise CollaboratorError(f"{what} returned invalid JSON: {e}")
    if not isinstance(data, dict):
        raise CollaboratorError(f"{what} returned {type(data).__name__}, expected an object")
    return data


class HTTPClassifier:
    """Classifier service client. Falls back to keyword classification on failure."""

    def __init__(self, base_url: str, timeout: float = 4.0, fallback: Optional[KeywordClassifier] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.fallback = fallback or KeywordClassifier()

    async def _fetch(self, request: RoutingRequest) -> ClassificationResult:
        payload = {"content": request.content, "subject": request.subject, "metadata": request.metadata}
        try:
            with Timer("classifier_call"):
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(f"{self.base_url}/classify", json=payload)
                    response.raise_for_status()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Classifier call failed: {e}")

        data = _json_object(response, "Classifier")
        try:
            return ClassificationResult(
                categories=data.get("categories", []),
                urgency_score=data.get("urgencyScore", data.get("urgency_score", 0.5)),
                confidence=data.get("confidence", 1.0)
            )
        except ValidationError as e:
            raise CollaboratorError(f"Classifier returned an unusable result: {e}")

    async def classify(self, request: RoutingRequest) -> ClassificationResult:
        try:
            return await self._fetch(request)
        except CollaboratorError as e:
            logger.warning(
                "Classifier call failed, using keyword fallback",
                request_id=request.id,
                error=str(e),
                content_preview=sanitize_for_logging(request.content, 80)
            )
            return await self.fallback.classify(request)


# ==================== WORKLOAD ====================

class StaticWorkloadService:
    """In-memory workload readings, for deployments without a workload service."""

    def __init__(self, default_capacity: int = 10, capacities: Optional[Dict[str, CapacityInfo]] = None):
        self.default_capacity = default_capacity
        self._capacities: Dict[str, CapacityInfo] = dict(capacities or {})

    def set_capacity(self, handler_id: str, active_tasks: int = 0, capacity: Optional[int] = None,
                     available: bool = True) -> CapacityInfo:
        info = CapacityInfo(
            handler_id=handler_id,
            active_tasks=active_tasks,
            capacity=self.default_capacity if capacity is None else capacity,
            available=available
        )
        self._capacities[handler_id] = info
        return info

    async def get_capacity(self, handler_id: str) -> CapacityInfo:
        info = self._capacities.get(handler_id)
        if info is None:
            return CapacityInfo(handler_id=handler_id, active_tasks=0, capacity=self.default_capacity)
        return info


class HTTPWorkloadService:
    """Workload service client. Every failure, including a malformed reading, is a ``CollaboratorError``."""

    def __init__(self, base_url: str, timeout: float = 4.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_capacity(self, handler_id: str) -> CapacityInfo:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/capacity/{handler_id}")
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Capacity lookup failed for {handler_id}: {e}")

        data = _json_object(response, "Workload service")
        try:
            return CapacityInfo(
                handler_id=handler_id,
                active_tasks=data.get("activeTasks", data.get("active_tasks", 0)),
                capacity=data.get("capacity", 0),
                available=data.get("available", True)
            )
        except ValidationError as e:
            raise CollaboratorError(f"Unusable capacity reading for {handler_id}: {e}")


# ==================== NOTIFICATIONS ====================

class LogNotifier:
    """Writes notifications to the log instead of delivering them."""

    def __init__(self):
        self.sent: List[Dict[str, object]] = []

    async def notify(self, recipients: Sequence[str], message: str) -> None:
        self.sent.append({"recipients": list(recipients), "message": message})
        logger.info("Notification", recipients=list(recipients), message=message)


class HTTPNotifier:
    """Notification service client."""

    def __init__(self, base_url: str, timeout: float = 4.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def notify(self, recipients: Sequence[str], message: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/notify",
                    json={"recipients": list(recipients), "message": message}
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Notification delivery failed: {e}")


class RetryingNotifier:
    """Delivers through another notifier with exponential backoff. Never raises."""

    def __init__(self, inner: Notifier, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 30.0):
        self.inner = inner
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def notify(self, recipients: Sequence[str], message: str) -> bool:
        """
        Deliver a notification, retrying transient failures.

        Returns:
            bool: True if delivered, False if every attempt failed
        """
        for attempt in range(self.max_retries):
            try:
                await self.inner.notify(recipients, message)
                return True
            except CollaboratorError as e:
                if attempt == self.max_retries - 1:
                    logger.error(
                        f"Notification failed after {self.max_retries} attempts",
                        recipients=list(recipients),
                        error=str(e),
                        attempt=attempt + 1
                    )
                    break

                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                logger.warning(
                    f"Notification attempt {attempt + 1} failed, retrying in {delay:.1f}s",
                    error=str(e),
                    attempt=attempt + 1,
                    next_delay=delay
                )
                await asyncio.sleep(delay)
        return False


def build_collaborators(config: Dict[str, object]):
    """
    Construct classifier, workload and notifier clients from configuration.

    Returns:
        Tuple of (classifier, workload_service, notifier)
    """
    timeout = float(config.get("REQUEST_TIMEOUT_SECONDS", 4.0))

    classifier_url = config.get("CLASSIFIER_URL")
    classifier = HTTPClassifier(classifier_url, timeout=timeout) if classifier_url else KeywordClassifier()

    workload_url = config.get("WORKLOAD_SERVICE_URL")
    workload = (
        HTTPWorkloadService(workload_url, timeout=timeout) if workload_url
        else StaticWorkloadService(default_capacity=int(config.get("DEFAULT_CAPACITY", 10)))
    )

    notifier_url = config.get("NOTIFIER_URL")
    base_notifier = HTTPNotifier(notifier_url, timeout=timeout) if notifier_url else LogNotifier()
    notifier = RetryingNotifier(base_notifier, max_retries=int(config.get("NOTIFY_MAX_RETRIES", 3)))

    return classifier, workload, notifier
