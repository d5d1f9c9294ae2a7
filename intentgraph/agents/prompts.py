"""Prompt templates for the delta-proposing agent.

- PLANNING_AGENT_PROMPT: system prompt shared by every variant
- REFINE_PROMPT: user turn wrapper when refining an existing delta
- TWEAK_NODE_PROMPT: user turn wrapper when tweaking one focal node
- SUB_AGENT_PROMPT: user turn wrapper for delegated sub-tasks
"""

import json
from collections.abc import Sequence

from intentgraph.graph.model import Delta, Node

PLANNING_AGENT_PROMPT = """\
You are an Intent Graph architect. The intent graph describes the desired \
behaviour of a software system as nodes connected by dependency edges.

## Node Shape
Each node has:
- `id`: unique, stable identifier (kebab-case)
- `type`: one of behavior, decision, data, integration, view
- `name`, `description`
- `invariants`: rules that must always hold
- `questions`: open uncertainties for a human to answer
- `entryPoints`: list of {{"kind": REST|JOB|LISTENER|UI|OTHER, "name": "..."}}
- `inputs`: IDs of nodes this node depends on
- `outputs`: IDs of nodes that depend on this node
- `metadata`: string-to-string map

## Graph Rules
- Every ID in `inputs` and `outputs` must exist in the graph after your \
change is applied.
- The graph must stay acyclic.
- Updates replace a node wholesale, so always send the complete node.

## Tools
Use `get_node`, `get_subgraph` and `find_nodes` to inspect the graph before \
proposing changes. Use `execute_code` to read project files when the graph \
alone is not enough. Use `spawn_agent` only for independent sub-tasks. You \
have at most {max_iterations} rounds of tool calls.

## Output
When you are done, reply with a single JSON object and nothing else:
{{
  "name": "short-delta-name",
  "description": "What this change achieves",
  "operations": [
    {{"kind": "add", "node": {{...complete node...}}}},
    {{"kind": "update", "node": {{...complete node...}}}},
    {{"kind": "remove", "node": {{"id": "node-id"}}}}
  ]
}}
"""

GRAPH_CONTEXT_SUFFIX = "\n\nCurrent graph nodes: {nodes_json}"

REFINE_PROMPT = """\
You are refining an existing proposed delta. Graph tools already see its \
operations applied.

## Current Delta
{delta_json}

## Requested Change
{prompt}

Reply with the complete refined delta (all operations, not only the new ones).
"""

TWEAK_NODE_PROMPT = """\
You are tweaking a single node of a proposed delta. Graph tools already see \
the delta's operations applied.

## Current Delta
{delta_json}

## Focal Node
{node_json}

## Upstream Neighbours (dependencies)
{upstream_json}

## Downstream Neighbours (dependents)
{downstream_json}

## Requested Change
{prompt}

Reply with the complete delta, with the focal node (and only what must \
change alongside it) adjusted.
"""

SUB_AGENT_PROMPT = """\
You are a sub-agent handling one delegated part of a larger change.

## Task
{task}

## Context From The Delegating Agent
{context}

Reply with a delta covering only this task.
"""


def _dump(value: object) -> str:
    return json.dumps(value, indent=2)


def _nodes_json(nodes: Sequence[Node]) -> str:
    return json.dumps([node.to_json_dict() for node in nodes])


def get_system_prompt(nodes: Sequence[Node], max_iterations: int) -> str:
    """System prompt with the queried snapshot's nodes appended."""
    return (
        PLANNING_AGENT_PROMPT.format(max_iterations=max_iterations)
        + GRAPH_CONTEXT_SUFFIX.format(nodes_json=_nodes_json(nodes))
    )


def get_refine_prompt(prompt: str, delta: Delta) -> str:
    return REFINE_PROMPT.format(delta_json=_dump(delta.to_json_dict()), prompt=prompt)


def get_tweak_prompt(
    prompt: str,
    delta: Delta,
    node: Node,
    upstream: Sequence[Node],
    downstream: Sequence[Node],
) -> str:
    return TWEAK_NODE_PROMPT.format(
        delta_json=_dump(delta.to_json_dict()),
        node_json=_dump(node.to_json_dict()),
        upstream_json=_dump([n.to_json_dict() for n in upstream]),
        downstream_json=_dump([n.to_json_dict() for n in downstream]),
        prompt=prompt,
    )


def get_sub_agent_prompt(task: str, context: str | None) -> str:
    return SUB_AGENT_PROMPT.format(task=task, context=context or "(none)")
