"""Intent graph entities and pure invariant checks.

A graph is a plain ``dict[str, Node]``. Nodes never hold references to other
node objects; every edge is an id resolved through the mapping, so the
validator can reason over a snapshot without chasing live pointers.

Invariants (checked after every committed mutation):
1. Referential integrity: every id in ``inputs``/``outputs`` is a key.
2. Acyclicity: the union of input and output edges contains no cycle.
"""

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = structlog.get_logger(__name__)


class _CaseInsensitiveEnum(StrEnum):
    @classmethod
    def _missing_(cls, value: object) -> "_CaseInsensitiveEnum | None":
        if isinstance(value, str):
            needle = value.strip().lower()
            for member in cls:
                if member.value.lower() == needle:
                    return member
        return None


class NodeType(_CaseInsensitiveEnum):
    """Closed set of node categories."""

    BEHAVIOR = "behavior"
    DECISION = "decision"
    DATA = "data"
    INTEGRATION = "integration"
    VIEW = "view"


class EntryPointKind(_CaseInsensitiveEnum):
    """Closed set of external trigger kinds."""

    REST = "REST"
    JOB = "JOB"
    LISTENER = "LISTENER"
    UI = "UI"
    OTHER = "OTHER"


def _coerce_reference(value: Any) -> Any:
    """Accept ``{"nodeId": x}`` / ``{"ref": x}`` reference objects as plain ids."""
    if isinstance(value, dict):
        for key in ("nodeId", "node_id", "ref", "id"):
            if key in value:
                return value[key]
    return value


class EntryPoint(BaseModel):
    """A named external trigger (route, job, listener) of a node."""

    model_config = ConfigDict(frozen=True)

    kind: EntryPointKind
    name: str

    def haystack(self) -> str:
        """Text searched by keyword filters."""
        return f"{self.kind.value}:{self.name}"


class Node(BaseModel):
    """One behavioural unit of the intent graph.

    Edges are declared redundantly: ``inputs`` lists nodes this node depends
    on, ``outputs`` lists nodes that depend on it. Sequence fields are tuples
    so snapshots that share a node cannot change each other.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    type: NodeType
    name: str
    description: str = ""
    invariants: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()
    entry_points: tuple[EntryPoint, ...] = Field(default=(), alias="entryPoints")
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("inputs", "outputs", mode="before")
    @classmethod
    def _normalize_references(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, list | tuple):
            return tuple(_coerce_reference(item) for item in v)
        return v

    @field_validator("invariants", "questions", "entry_points", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return () if v is None else v

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with camelCase field names and enum values."""
        return self.model_dump(mode="json", by_alias=True)


class NodeRef(BaseModel):
    """Minimal node payload of a remove operation."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(min_length=1)


class AddOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["add"] = "add"
    node: Node


class UpdateOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["update"] = "update"
    node: Node


class RemoveOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["remove"] = "remove"
    node: NodeRef


Operation = Annotated[
    AddOperation | UpdateOperation | RemoveOperation,
    Field(discriminator="kind"),
]


class Delta(BaseModel):
    """An ordered list of operations proposed against a graph."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    operations: list[Operation] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_operation_tags(cls, data: Any) -> Any:
        """Accept the legacy ``operation`` tag in place of ``kind``."""
        if not isinstance(data, dict):
            return data
        operations = data.get("operations")
        if not isinstance(operations, list):
            return data
        normalized = []
        for op in operations:
            if isinstance(op, dict) and "kind" not in op and "operation" in op:
                op = {**op, "kind": op["operation"]}
                op.pop("operation")
            if isinstance(op, dict) and isinstance(op.get("kind"), str):
                op = {**op, "kind": op["kind"].strip().lower()}
            normalized.append(op)
        return {**data, "operations": normalized}

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with camelCase node field names."""
        return self.model_dump(mode="json", by_alias=True)


class ValidationResult(BaseModel):
    """Outcome of :func:`validate`."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)


Graph = dict[str, Node]


def graph_from_nodes(nodes: Iterable[Node]) -> Graph:
    """Build an id -> node mapping, preserving iteration order."""
    return {node.id: node for node in nodes}


def graph_to_nodes(graph: Mapping[str, Node]) -> list[Node]:
    """Return the nodes of a graph in insertion order."""
    return list(graph.values())


def _adjacency(graph: Mapping[str, Node]) -> dict[str, list[str]]:
    """Union of each node's declared ``inputs`` and ``outputs``."""
    adjacency: dict[str, list[str]] = {}
    for node_id, node in graph.items():
        neighbors: list[str] = []
        for ref in (*node.inputs, *node.outputs):
            if ref not in neighbors:
                neighbors.append(ref)
        adjacency[node_id] = neighbors
    return adjacency


def check_references(graph: Mapping[str, Node]) -> list[str]:
    """Collect every dangling input/output reference (no short-circuit)."""
    errors: list[str] = []
    for node in graph.values():
        for ref in node.inputs:
            if ref not in graph:
                errors.append(f"Node {node.id} has missing input reference: {ref}")
        for ref in node.outputs:
            if ref not in graph:
                errors.append(f"Node {node.id} has missing output reference: {ref}")
    return errors


def has_cycle(graph: Mapping[str, Node]) -> bool:
    """Three-colour DFS over the combined input/output adjacency.

    Both ``inputs`` and ``outputs`` are followed as edges leaving the node,
    unlike :class:`GraphIndex`, which reads ``inputs`` as edges arriving at
    it. An edge declared on both ends (``a.outputs=[b]`` and ``b.inputs=[a]``)
    is therefore reported as a cycle; declare each edge on one end.

    Iterative so deep chains cannot exhaust the interpreter stack. References
    to ids outside the graph are skipped; those are reported separately.
    """
    white, gray, black = 0, 1, 2
    adjacency = _adjacency(graph)
    color = dict.fromkeys(adjacency, white)

    for start in adjacency:
        if color[start] != white:
            continue
        color[start] = gray
        stack: list[tuple[str, int]] = [(start, 0)]
        while stack:
            node_id, next_index = stack[-1]
            neighbors = adjacency[node_id]
            if next_index < len(neighbors):
                stack[-1] = (node_id, next_index + 1)
                neighbor = neighbors[next_index]
                state = color.get(neighbor)
                if state is None:
                    continue
                if state == gray:
                    return True
                if state == white:
                    color[neighbor] = gray
                    stack.append((neighbor, 0))
            else:
                color[node_id] = black
                stack.pop()
    return False


def validate(graph: Mapping[str, Node]) -> ValidationResult:
    """Check referential integrity and acyclicity of a graph.

    Args:
        graph: The id -> node mapping to check. It is not modified.

    Returns:
        ValidationResult listing every dangling reference plus a single
        "Graph contains cycles" error when any cycle exists.
    """
    errors = check_references(graph)
    if has_cycle(graph):
        errors.append("Graph contains cycles")

    if errors:
        logger.debug("graph_validation_failed", node_count=len(graph), errors=len(errors))
    return ValidationResult(is_valid=not errors, errors=errors)
