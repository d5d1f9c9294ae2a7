"""Intent graph data model, queries and delta application."""

from intentgraph.graph.delta import (
    ApplyResult,
    DeltaEngine,
    DeltaValidationError,
    DuplicateNodeError,
    GraphError,
    NodeNotFoundError,
)
from intentgraph.graph.index import GraphIndex
from intentgraph.graph.model import (
    AddOperation,
    Delta,
    EntryPoint,
    EntryPointKind,
    Graph,
    Node,
    NodeRef,
    NodeType,
    Operation,
    RemoveOperation,
    UpdateOperation,
    ValidationResult,
    graph_from_nodes,
    graph_to_nodes,
    has_cycle,
    validate,
)

__all__ = [
    # Model
    "AddOperation",
    "Delta",
    "EntryPoint",
    "EntryPointKind",
    "Graph",
    "Node",
    "NodeRef",
    "NodeType",
    "Operation",
    "RemoveOperation",
    "UpdateOperation",
    "ValidationResult",
    "graph_from_nodes",
    "graph_to_nodes",
    "has_cycle",
    "validate",
    # Queries
    "GraphIndex",
    # Deltas
    "ApplyResult",
    "DeltaEngine",
    "DeltaValidationError",
    "DuplicateNodeError",
    "GraphError",
    "NodeNotFoundError",
]
