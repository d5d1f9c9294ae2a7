"""Markdown implementation brief for an approved delta."""

from collections.abc import Sequence

from intentgraph.graph.model import AddOperation, Delta, Node, RemoveOperation, UpdateOperation

MAX_RELATED_NODE_IDS = 20

NO_DESCRIPTION = "No description provided."
NO_QUESTIONS = "(No questions - proceed with implementation)"


def _operation_lines(delta: Delta) -> list[str]:
    lines: list[str] = []
    for op in delta.operations:
        if isinstance(op, AddOperation):
            node = op.node
            lines.append(f"### ADD: {node.name} ({node.type.value})")
            lines.append(f"- **ID**: {node.id}")
            lines.append(f"- **Description**: {node.description}")
            if node.inputs:
                lines.append(f"- **Depends on**: {', '.join(node.inputs)}")
            if node.outputs:
                lines.append(f"- **Produces for**: {', '.join(node.outputs)}")
            if node.invariants:
                lines.append(f"- **Invariants (MUST hold)**: {'; '.join(node.invariants)}")
        elif isinstance(op, UpdateOperation):
            lines.append(f"### UPDATE: {op.node.name} ({op.node.id})")
            lines.append(f"- **New Description**: {op.node.description}")
        elif isinstance(op, RemoveOperation):
            lines.append(f"### REMOVE: {op.node.id}")
        lines.append("")
    return lines


def _questions(delta: Delta) -> list[str]:
    questions: list[str] = []
    for op in delta.operations:
        if isinstance(op, AddOperation | UpdateOperation):
            questions.extend(f"- {op.node.name}: {q}" for q in op.node.questions)
    return questions


def render_planning_instructions(delta: Delta, nodes: Sequence[Node]) -> str:
    """Render a delta as instructions for an implementing agent.

    Args:
        delta: The approved delta.
        nodes: Nodes of the current graph; the first few ids are listed as
            related context.
    """
    questions = _questions(delta)
    node_ids = ", ".join(node.id for node in nodes[:MAX_RELATED_NODE_IDS])

    return "\n".join([
        f"# Implementation Instructions for Intent: {delta.name}",
        "",
        "## Description",
        delta.description or NO_DESCRIPTION,
        "",
        "## Changes to Implement",
        "",
        *_operation_lines(delta),
        "## Questions to Address",
        "\n".join(questions) if questions else NO_QUESTIONS,
        "",
        "## Context",
        f"Related nodes: {node_ids or '(none)'}",
    ])
