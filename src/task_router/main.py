"""
FastAPI application for the Task Routing Engine.

This module provides:
- Routing endpoints (single and batch)
- Rule management
- Decision lifecycle: acknowledgment, completion, reroute, feedback
- Handler directory management
- Dry-run rule matching and decision search
- Metrics, trends, recent events and a server-sent event stream
- Health checks, error handling and request logging middleware
"""

import asyncio
import json
import time
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from task_router import __version__
from task_router.composer import RoutingUnresolvedError
from task_router.engine import RuleValidationError, get_routing_engine
from task_router.models import (
    AcknowledgeResponse,
    BatchRouteRequest,
    BatchRouteResult,
    DecisionPage,
    DecisionQuery,
    ErrorResponse,
    FeedbackPayload,
    HealthResponse,
    Person,
    Queue,
    RerouteRequest,
    RouteRequestPayload,
    RoutingDecision,
    RoutingEvent,
    RoutingMetrics,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleUpdate,
    RoutingTrends,
    RuleMatchResponse,
    Team,
    TrendInterval,
)
from task_router.store import DecisionNotFoundError, RuleNotFoundError
from task_router.utils import ConfigurationError, get_current_timestamp, initialize_app, sanitize_for_logging


# Create FastAPI app
app = FastAPI(
    title="Task Routing Engine",
    description="Rule-based task routing with confidence scoring, workload awareness and escalation",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # Dashboard development server
        "http://localhost:8080",  # Alternative development port
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


# Every HTTP call gets a short correlation id, echoed back as X-Request-ID
@app.middleware("http")
async def request_correlation_middleware(request: Request, call_next):
    """Tag the call with a correlation id and log its outcome and latency."""
    started = time.perf_counter()
    correlation_id = uuid.uuid4().hex[:8]
    request.state.request_id = correlation_id

    logger.info(
        "HTTP call received",
        method=request.method,
        path=request.url.path,
        request_id=correlation_id,
        client_ip=request.client.host if request.client else "unknown"
    )

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "HTTP call raised",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            request_id=correlation_id
        )
        raise

    response.headers["X-Request-ID"] = correlation_id
    logger.info(
        "HTTP call answered",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        request_id=correlation_id
    )
    return response


def _error_response(request: Request, status_code: int, error: str, message: str,
                    details: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(
            error=error,
            message=message,
            details=details,
            request_id=getattr(request.state, 'request_id', None)
        ))
    )


# Domain errors map to status codes; every body is an ErrorResponse
@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return _error_response(request, 500, "CONFIGURATION_ERROR", "Routing engine is misconfigured", {"error": str(exc)})


@app.exception_handler(RoutingUnresolvedError)
async def routing_unresolved_handler(request: Request, exc: RoutingUnresolvedError):
    logger.error("Routing unresolved", routing_request_id=exc.request_id, error=str(exc))
    return _error_response(request, 500, exc.code, str(exc), {"request_id": exc.request_id})


@app.exception_handler(RuleValidationError)
async def rule_validation_handler(request: Request, exc: RuleValidationError):
    """Rules whose conditions, handler or escalation path do not check out."""
    return _error_response(request, 422, "RULE_VALIDATION_ERROR", str(exc))


@app.exception_handler(RuleNotFoundError)
async def rule_not_found_handler(request: Request, exc: RuleNotFoundError):
    return _error_response(request, 404, "RULE_NOT_FOUND", f"Rule '{exc.args[0]}' not found")


@app.exception_handler(DecisionNotFoundError)
async def decision_not_found_handler(request: Request, exc: DecisionNotFoundError):
    return _error_response(request, 404, "DECISION_NOT_FOUND", f"Decision '{exc.args[0]}' not found")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, "HTTP_ERROR", str(exc.detail), {"status_code": exc.status_code})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Bad input that got past pydantic, e.g. an inverted metrics window."""
    return _error_response(request, 422, "VALIDATION_ERROR", str(exc))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error while serving request",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, 'request_id', None)
    )
    return _error_response(request, 500, "INTERNAL_SERVER_ERROR", "Internal error while routing")


@app.on_event("startup")
async def startup_event():
    """Load configuration and start background workers."""
    initialize_app()
    engine = get_routing_engine()
    await engine.start()
    logger.info("Startup completed", version=__version__, default_queue=engine.default_queue)


@app.on_event("shutdown")
async def shutdown_event():
    await get_routing_engine().stop()
    logger.info("Shutdown completed")


@app.get("/")
async def root():
    """Service name, version and a map of the main endpoints."""
    return {
        "service": "Task Routing Engine",
        "version": __version__,
        "status": "running",
        "timestamp": get_current_timestamp(),
        "endpoints": {
            "route": "/routing/route",
            "route_batch": "/routing/route/batch",
            "match_rules": "/routing/match-rules",
            "rules": "/routing/rules",
            "decisions": "/routing/decisions",
            "metrics": "/routing/metrics",
            "trends": "/routing/metrics/trends",
            "directory": "/routing/directory",
            "events": "/routing/events/recent",
            "health": "/health",
            "docs": "/docs"
        }
    }


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health of the store, memory and background workers."""
    status = await get_routing_engine().get_health_status()
    return HealthResponse(
        status=status["status"],
        timestamp=status["timestamp"],
        version=__version__,
        checks={
            "memory": status["memory"],
            "storage": status["storage"],
            "workers": status["workers"],
            "events": status["events"],
        }
    )


# ==================== ROUTING ====================

@app.post("/routing/route", response_model=RoutingDecision)
async def route_request(payload: RouteRequestPayload, http_request: Request) -> RoutingDecision:
    """
    Route one request.

    Always returns a decision; requests no rule matches go to the default
    queue with confidence 0.
    """
    logger.info(
        "Processing routing request",
        routing_request_id=payload.id,
        request_type=payload.type,
        content_preview=sanitize_for_logging(payload.content, 100),
        request_id=getattr(http_request.state, 'request_id', None)
    )
    return await get_routing_engine().route(payload.to_request(), payload.options)


@app.post("/routing/route/batch", response_model=List[BatchRouteResult])
async def route_batch(payload: BatchRouteRequest) -> List[BatchRouteResult]:
    """Route several requests; each item succeeds or fails on its own."""
    items = [(item.to_request(), item.options) for item in payload.requests]
    return await get_routing_engine().route_batch(items)


@app.post("/routing/match-rules", response_model=RuleMatchResponse)
async def match_rules(payload: RouteRequestPayload) -> RuleMatchResponse:
    """Dry run: classify the request and list the rules it would match, in evaluation order."""
    return await get_routing_engine().match_rules(payload.to_request(), payload.options)


# ==================== RULES ====================

@app.get("/routing/rules", response_model=List[RoutingRule])
async def list_rules(is_active: Optional[bool] = Query(None)) -> List[RoutingRule]:
    return await get_routing_engine().list_rules(is_active=is_active)


@app.get("/routing/rules/{rule_id}", response_model=RoutingRule)
async def get_rule(rule_id: str) -> RoutingRule:
    return await get_routing_engine().get_rule(rule_id)


@app.post("/routing/rules", response_model=RoutingRule, status_code=201)
async def create_rule(payload: RoutingRuleCreate) -> RoutingRule:
    return await get_routing_engine().create_rule(payload)


@app.put("/routing/rules/{rule_id}", response_model=RoutingRule)
async def update_rule(rule_id: str, payload: RoutingRuleUpdate) -> RoutingRule:
    return await get_routing_engine().update_rule(rule_id, payload)


@app.delete("/routing/rules/{rule_id}", status_code=204)
async def delete_rule(rule_id: str) -> Response:
    """Remove a rule from evaluation. Decisions that used it are kept."""
    await get_routing_engine().delete_rule(rule_id)
    return Response(status_code=204)


# ==================== METRICS ====================

@app.get("/routing/metrics", response_model=RoutingMetrics)
async def get_metrics(start: Optional[datetime] = Query(None),
                      end: Optional[datetime] = Query(None)) -> RoutingMetrics:
    """Routing metrics over a window, seven days up to now by default."""
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=422, detail="start must not be after end")
    return await get_routing_engine().compute_metrics(start, end)


@app.get("/routing/metrics/trends", response_model=RoutingTrends)
async def get_trends(start: Optional[datetime] = Query(None),
                     end: Optional[datetime] = Query(None),
                     interval: TrendInterval = Query(TrendInterval.DAY)) -> RoutingTrends:
    """Volume, confidence, success and escalation series, one point per non-empty bucket."""
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=422, detail="start must not be after end")
    return await get_routing_engine().compute_trends(start, end, interval)


@app.get("/routing/metrics/low-confidence", response_model=List[RoutingDecision])
async def get_low_confidence(threshold: Optional[float] = Query(None, ge=0.0, le=1.0),
                             limit: int = Query(50, ge=1, le=500)) -> List[RoutingDecision]:
    return await get_routing_engine().low_confidence_decisions(threshold, limit)


# ==================== DECISIONS ====================

@app.get("/routing/decisions", response_model=DecisionPage)
async def list_decisions(start: Optional[datetime] = Query(None),
                         end: Optional[datetime] = Query(None),
                         handler_id: Optional[str] = Query(None),
                         min_confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
                         max_confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
                         was_escalated: Optional[bool] = Query(None),
                         limit: int = Query(50, ge=1, le=500),
                         offset: int = Query(0, ge=0)) -> DecisionPage:
    """Decisions matching every given filter, newest first."""
    query = DecisionQuery(
        start=start,
        end=end,
        handler_id=handler_id,
        min_confidence=min_confidence,
        max_confidence=max_confidence,
        was_escalated=was_escalated,
        limit=limit,
        offset=offset,
    )
    return await get_routing_engine().query_decisions(query)


@app.get("/routing/decisions/{decision_id}", response_model=RoutingDecision)
async def get_decision(decision_id: str) -> RoutingDecision:
    return await get_routing_engine().get_decision(decision_id)


@app.get("/routing/requests/{request_id}/decisions", response_model=List[RoutingDecision])
async def get_request_history(request_id: str) -> List[RoutingDecision]:
    """Every revision for a request, oldest first."""
    history = await get_routing_engine().request_history(request_id)
    if not history:
        raise HTTPException(status_code=404, detail=f"No decisions for request '{request_id}'")
    return history


@app.post("/routing/decisions/{decision_id}/feedback", response_model=RoutingDecision)
async def submit_feedback(decision_id: str, payload: FeedbackPayload) -> RoutingDecision:
    return await get_routing_engine().submit_feedback(decision_id, payload)


@app.post("/routing/decisions/{decision_id}/ack", response_model=AcknowledgeResponse)
async def acknowledge_decision(decision_id: str) -> AcknowledgeResponse:
    """Acknowledge an assignment, stopping escalation. Safe to repeat."""
    return await get_routing_engine().acknowledge(decision_id)


@app.post("/routing/decisions/{decision_id}/complete", response_model=AcknowledgeResponse)
async def complete_decision(decision_id: str) -> AcknowledgeResponse:
    """Mark assigned work done, stopping escalation and releasing workload."""
    return await get_routing_engine().complete(decision_id)


@app.post("/routing/decisions/{decision_id}/reroute", response_model=RoutingDecision)
async def reroute_decision(decision_id: str, payload: RerouteRequest) -> RoutingDecision:
    return await get_routing_engine().reroute(decision_id, payload)


# ==================== DIRECTORY ====================

@app.get("/routing/directory")
async def get_directory():
    return get_routing_engine().directory.snapshot()


@app.post("/routing/directory/persons", response_model=Person, status_code=201)
async def add_person(person: Person) -> Person:
    return get_routing_engine().add_person(person)


@app.post("/routing/directory/teams", response_model=Team, status_code=201)
async def add_team(team: Team) -> Team:
    return get_routing_engine().add_team(team)


@app.post("/routing/directory/queues", response_model=Queue, status_code=201)
async def add_queue(queue: Queue) -> Queue:
    return get_routing_engine().add_queue(queue)


# ==================== EVENTS ====================

@app.get("/routing/events/recent", response_model=List[RoutingEvent])
async def recent_events(limit: int = Query(50, ge=1, le=500)) -> List[RoutingEvent]:
    return await get_routing_engine().recent_events(limit)


@app.get("/routing/events/stream")
async def stream_events(request: Request):
    """Server-sent event stream of ``routing.decision`` events."""
    bus = get_routing_engine().events
    queue = bus.open_queue()

    async def event_generator():
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                payload = json.dumps(jsonable_encoder(event))
                yield f"event: {event.event}\ndata: {payload}\n\n"
        finally:
            bus.close_queue(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("task_router.main:app", host="0.0.0.0", port=8000, reload=False)
