"""HTTP API routes for the intent graph service.

Graph routes are pure computations over the posted snapshot. Delta routes
drive an ``AgentOrchestrator`` built from the configured ``AgentContext``.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, HTTPException, status

from intentgraph.agents.context import AgentContext
from intentgraph.agents.instructions import render_planning_instructions
from intentgraph.agents.orchestrator import (
    AgentOrchestrator,
    DeltaParseError,
    IterationLimitExceeded,
    new_run_id,
)
from intentgraph.events.bus import EventBus
from intentgraph.graph.delta import (
    DeltaEngine,
    DeltaValidationError,
    DuplicateNodeError,
    NodeNotFoundError,
)
from intentgraph.graph.index import GraphIndex
from intentgraph.graph.model import Delta, Node, graph_from_nodes, graph_to_nodes, validate
from intentgraph.models.schemas import (
    ApplyRequest,
    ApplyResponse,
    DeltaResponse,
    FindNodesRequest,
    HealthResponse,
    InstructionsRequest,
    InstructionsResponse,
    MergedViewRequest,
    NodesResponse,
    ProposeRequest,
    RefineRequest,
    RunEventsResponse,
    SubgraphRequest,
    TweakRequest,
    ValidateRequest,
    ValidationResponse,
)
from intentgraph.rate_limiter import RateLimitExhaustedError

logger = structlog.get_logger(__name__)

router = APIRouter()

_engine = DeltaEngine()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

# Agent context dependency (set during application startup)
_agent_context: AgentContext | None = None


def set_agent_context(context: AgentContext | None) -> None:
    """Inject the AgentContext used by the delta routes."""
    global _agent_context
    _agent_context = context
    logger.info("agent_context_configured", configured=context is not None)


def get_agent_context() -> AgentContext:
    """Return the configured AgentContext.

    Raises:
        RuntimeError: If no context has been configured.
    """
    if _agent_context is None:
        logger.error("agent_context_not_configured")
        raise RuntimeError(
            "AgentContext not configured. Call set_agent_context() during startup."
        )
    return _agent_context


def _orchestrator() -> AgentOrchestrator:
    try:
        return AgentOrchestrator(get_agent_context())
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e


def get_run_event_bus() -> EventBus:
    """Return the EventBus of the configured context.

    Raises:
        RuntimeError: If no context or no bus is configured.
    """
    bus = get_agent_context().event_bus
    if bus is None:
        raise RuntimeError("AgentContext has no event bus configured.")
    return bus


def _graph_error_to_http(e: Exception) -> HTTPException:
    if isinstance(e, DeltaValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "Delta produces an invalid graph", "errors": e.errors},
        )
    if isinstance(e, DuplicateNodeError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, NodeNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    raise TypeError(f"Unmapped graph error: {type(e).__name__}")


def _agent_error_to_http(e: Exception) -> HTTPException:
    if isinstance(e, RateLimitExhaustedError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
        )
    if isinstance(e, DeltaParseError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(e), "raw_content": e.raw_content[:2000]},
        )
    if isinstance(e, IterationLimitExceeded):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(e))
    return _graph_error_to_http(e)


async def _run_agent(coro, graph: dict[str, Node], run_id: str) -> DeltaResponse:
    try:
        delta: Delta = await coro
    except (
        RateLimitExhaustedError,
        DeltaParseError,
        IterationLimitExceeded,
        NodeNotFoundError,
    ) as e:
        logger.warning(
            "agent_request_failed",
            run_id=run_id,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise _agent_error_to_http(e) from e

    result = _engine.try_apply(graph, delta)
    return DeltaResponse(
        run_id=run_id,
        delta=delta,
        applies_cleanly=result.applied,
        errors=result.errors,
    )


# -----------------------------------------------------------------------------
# Graph routes
# -----------------------------------------------------------------------------


@router.post(
    "/api/graph/validate",
    response_model=ValidationResponse,
    summary="Validate a graph",
    description="Check referential integrity and acyclicity of a node list.",
)
async def validate_graph(request: ValidateRequest) -> ValidationResponse:
    result = validate(graph_from_nodes(request.nodes))
    return ValidationResponse(is_valid=result.is_valid, errors=result.errors)


@router.post(
    "/api/graph/apply",
    response_model=ApplyResponse,
    summary="Apply a delta",
    description="Apply a delta atomically and return the resulting graph.",
)
async def apply_delta(request: ApplyRequest) -> ApplyResponse:
    """Apply ``delta`` to the posted graph.

    Raises:
        HTTPException: 409 on duplicate add, 404 on missing update target,
            422 when the result would be invalid.
    """
    graph = graph_from_nodes(request.nodes)
    try:
        new_graph = _engine.apply(graph, request.delta)
    except (DeltaValidationError, DuplicateNodeError, NodeNotFoundError) as e:
        logger.info("apply_rejected", delta=request.delta.name, error=str(e))
        raise _graph_error_to_http(e) from e

    return ApplyResponse(nodes=graph_to_nodes(new_graph), node_count=len(new_graph))


@router.post(
    "/api/graph/merged-view",
    response_model=NodesResponse,
    summary="Overlay a pending delta",
    description="Return the graph with a pending delta overlaid, without validation.",
)
async def merged_view(request: MergedViewRequest) -> NodesResponse:
    view = _engine.merged_view(graph_from_nodes(request.nodes), request.delta)
    return NodesResponse(nodes=graph_to_nodes(view))


@router.post(
    "/api/graph/subgraph",
    response_model=NodesResponse,
    summary="Downstream subgraph",
)
async def subgraph(request: SubgraphRequest) -> NodesResponse:
    view = _engine.merged_view(graph_from_nodes(request.nodes), request.delta)
    return NodesResponse(nodes=GraphIndex(view).get_subgraph(request.entry_node_id))


@router.post(
    "/api/graph/find",
    response_model=NodesResponse,
    summary="Find nodes by entry point keywords",
)
async def find_nodes(request: FindNodesRequest) -> NodesResponse:
    view = _engine.merged_view(graph_from_nodes(request.nodes), request.delta)
    return NodesResponse(nodes=GraphIndex(view).find_nodes(request.filters))


# -----------------------------------------------------------------------------
# Delta routes
# -----------------------------------------------------------------------------


@router.post(
    "/api/deltas/propose",
    response_model=DeltaResponse,
    summary="Propose a new delta",
)
async def propose_delta(request: ProposeRequest) -> DeltaResponse:
    graph = graph_from_nodes(request.nodes)
    orchestrator = _orchestrator()
    run_id = request.run_id or new_run_id()
    return await _run_agent(
        orchestrator.propose(request.prompt, graph, request.overlay, run_id=run_id),
        graph,
        run_id,
    )


@router.post(
    "/api/deltas/refine",
    response_model=DeltaResponse,
    summary="Refine an existing delta",
)
async def refine_delta(request: RefineRequest) -> DeltaResponse:
    graph = graph_from_nodes(request.nodes)
    orchestrator = _orchestrator()
    run_id = request.run_id or new_run_id()
    return await _run_agent(
        orchestrator.refine(request.prompt, graph, request.delta, run_id=run_id),
        graph,
        run_id,
    )


@router.post(
    "/api/deltas/tweak",
    response_model=DeltaResponse,
    summary="Tweak one node of a delta",
)
async def tweak_node(request: TweakRequest) -> DeltaResponse:
    graph = graph_from_nodes(request.nodes)
    orchestrator = _orchestrator()
    run_id = request.run_id or new_run_id()
    return await _run_agent(
        orchestrator.tweak_node(
            request.prompt, graph, request.delta, request.node_id, run_id=run_id
        ),
        graph,
        run_id,
    )


@router.post(
    "/api/deltas/instructions",
    response_model=InstructionsResponse,
    summary="Render implementation instructions",
)
async def delta_instructions(request: InstructionsRequest) -> InstructionsResponse:
    return InstructionsResponse(
        markdown=render_planning_instructions(request.delta, request.nodes)
    )


@router.get(
    "/api/runs/{run_id}/events",
    response_model=RunEventsResponse,
    summary="Get recorded events of a run",
)
async def run_events(run_id: str) -> RunEventsResponse:
    try:
        bus = get_run_event_bus()
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e

    events = bus.get_event_history(run_id)
    if not events:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No events recorded for run {run_id}",
        )
    return RunEventsResponse(run_id=run_id, closed=bus.is_closed(run_id), events=events)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    """Report whether the agent routes are usable."""
    try:
        context = get_agent_context()
    except RuntimeError:
        return HealthResponse(
            status="degraded",
            timestamp=time.time(),
            agent_configured=False,
        )

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        agent_configured=True,
        active_sub_agents=context.spawn_limiter.active,
    )
