"""Read-only query indices over one graph snapshot."""

from collections import deque
from collections.abc import Mapping, Sequence

from intentgraph.graph.model import Node, NodeType


class GraphIndex:
    """Indices built once per queried snapshot (base graph or merged view).

    The index copies the mapping on construction and never mutates it, so
    several indices over the same snapshot may be read concurrently.
    """

    def __init__(self, graph: Mapping[str, Node]) -> None:
        self._nodes: dict[str, Node] = dict(graph)
        self._by_type: dict[NodeType, list[Node]] = {}
        self._downstream: dict[str, list[str]] = {node_id: [] for node_id in self._nodes}
        self._upstream: dict[str, list[str]] = {node_id: [] for node_id in self._nodes}

        for node in self._nodes.values():
            self._by_type.setdefault(node.type, []).append(node)
            # A node's inputs are upstream of it; its outputs are downstream.
            for source in node.inputs:
                self._link(source, node.id)
            for target in node.outputs:
                self._link(node.id, target)

    def _link(self, source: str, target: str) -> None:
        # Edges to ids outside the snapshot are ignored.
        if source not in self._nodes or target not in self._nodes:
            return
        if target not in self._downstream[source]:
            self._downstream[source].append(target)
        if source not in self._upstream[target]:
            self._upstream[target].append(source)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def get_nodes_by_type(self, node_type: NodeType | str) -> list[Node]:
        return list(self._by_type.get(NodeType(node_type), []))

    def get_nodes_by_entry_point(self, name: str) -> list[Node]:
        """Nodes with an entry point named exactly ``name``."""
        return [
            node
            for node in self._nodes.values()
            if any(ep.name == name for ep in node.entry_points)
        ]

    def get_downstream(self, node_id: str) -> list[Node]:
        """One-hop dependents, from both ``outputs`` and reverse ``inputs``."""
        return [self._nodes[n] for n in self._downstream.get(node_id, [])]

    def get_upstream(self, node_id: str) -> list[Node]:
        """One-hop dependencies, from both ``inputs`` and reverse ``outputs``."""
        return [self._nodes[n] for n in self._upstream.get(node_id, [])]

    def get_subgraph(self, entry_node_id: str) -> list[Node]:
        """All nodes reachable downstream of ``entry_node_id``, start included.

        Breadth-first order. A missing start id yields an empty list.
        """
        if entry_node_id not in self._nodes:
            return []

        visited = {entry_node_id}
        order = [entry_node_id]
        queue = deque([entry_node_id])
        while queue:
            current = queue.popleft()
            for neighbor in self._downstream[current]:
                if neighbor not in visited:
                    visited.add(neighbor)
                    order.append(neighbor)
                    queue.append(neighbor)
        return [self._nodes[n] for n in order]

    def find_nodes(self, filter_groups: Sequence[Sequence[str]]) -> list[Node]:
        """Match nodes whose entry points satisfy any keyword group.

        A node matches when every keyword of at least one group is a
        case-insensitive substring of its joined entry-point ``kind:name``
        strings. Nodes without entry points never match, and neither does an
        empty group list.
        """
        groups = [[kw.lower() for kw in group] for group in filter_groups]
        matches: list[Node] = []
        for node in self._nodes.values():
            if not node.entry_points:
                continue
            haystack = " ".join(ep.haystack() for ep in node.entry_points).lower()
            if any(all(kw in haystack for kw in group) for group in groups):
                matches.append(node)
        return matches
