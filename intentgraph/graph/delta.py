"""Delta application and the non-committing merged view.

``DeltaEngine`` never mutates the graph it is given. ``apply`` builds a new
mapping, runs every operation in order and validates the result; any failure
rejects the whole delta and leaves the caller holding the original graph.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

import structlog

from intentgraph.graph.model import (
    AddOperation,
    Delta,
    Graph,
    Node,
    RemoveOperation,
    UpdateOperation,
    validate,
)

logger = structlog.get_logger(__name__)


class GraphError(Exception):
    """Base class for graph mutation failures."""


class DuplicateNodeError(GraphError):
    """An add operation targeted an id that already exists."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node already exists: {node_id}")


class NodeNotFoundError(GraphError):
    """An operation or query targeted an id that does not exist."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class DeltaValidationError(GraphError):
    """Applying a delta would leave the graph invalid."""

    def __init__(self, errors: list[str], original: Mapping[str, Node]) -> None:
        self.errors = errors
        self.original = original
        super().__init__("Delta produces an invalid graph: " + "; ".join(errors))


@dataclass
class ApplyResult:
    """Outcome of :meth:`DeltaEngine.try_apply`.

    When rejected, ``graph`` is the exact mapping object that was passed in.
    """

    graph: Mapping[str, Node]
    applied: bool
    errors: list[str] = field(default_factory=list)


class DeltaEngine:
    """Applies deltas to graph snapshots."""

    def apply(self, graph: Mapping[str, Node], delta: Delta) -> Graph:
        """Apply every operation of ``delta`` and validate the outcome.

        Raises:
            DuplicateNodeError: An add targets an existing id.
            NodeNotFoundError: An update targets an absent id.
            DeltaValidationError: The resulting graph has dangling
                references or a cycle.
        """
        candidate: Graph = dict(graph)

        for op in delta.operations:
            if isinstance(op, AddOperation):
                if op.node.id in candidate:
                    raise DuplicateNodeError(op.node.id)
                candidate[op.node.id] = op.node
            elif isinstance(op, UpdateOperation):
                if op.node.id not in candidate:
                    raise NodeNotFoundError(op.node.id)
                candidate[op.node.id] = op.node
            elif isinstance(op, RemoveOperation):
                # Removing an absent id is a no-op.
                candidate.pop(op.node.id, None)

        result = validate(candidate)
        if not result.is_valid:
            logger.info(
                "delta_rejected",
                delta=delta.name,
                errors=result.errors,
            )
            raise DeltaValidationError(result.errors, graph)

        logger.debug(
            "delta_applied",
            delta=delta.name,
            operations=len(delta.operations),
            node_count=len(candidate),
        )
        return candidate

    def try_apply(self, graph: Mapping[str, Node], delta: Delta) -> ApplyResult:
        """Like :meth:`apply` but reports failures instead of raising."""
        try:
            return ApplyResult(graph=self.apply(graph, delta), applied=True)
        except DeltaValidationError as e:
            return ApplyResult(graph=graph, applied=False, errors=list(e.errors))
        except (DuplicateNodeError, NodeNotFoundError) as e:
            return ApplyResult(graph=graph, applied=False, errors=[str(e)])

    def merged_view(self, graph: Mapping[str, Node], delta: Delta | None = None) -> Mapping[str, Node]:
        """Overlay a pending delta on ``graph`` without validating.

        Delta nodes shadow base nodes with the same id; removes hide ids. With
        no delta the base graph itself is returned.
        """
        if delta is None:
            return graph

        shadow: Graph = dict(graph)
        for op in delta.operations:
            if isinstance(op, RemoveOperation):
                shadow.pop(op.node.id, None)
            else:
                shadow[op.node.id] = op.node
        return shadow
