"""Human-readable labels for history points."""

from __future__ import annotations

from collections import Counter

from mindmap_history.history.models import Delta, DeltaOperation, EntityKind, EntityScope

# Mutation events emitted by the editor, mapped to history action names.
_ACTION_BY_MUTATION: dict[str, str] = {
    "node:create": "addNode",
    "node:update": "saveNodeProperties",
    "node:delete": "deleteNode",
    "edge:create": "addEdge",
    "edge:update": "updateEdge",
    "edge:delete": "deleteEdge",
    "layout:apply": "applyLayout",
    "layout:apply-selected": "applyLayoutToSelected",
    "history:revert": "historyRevert",
}

_VERB = {
    DeltaOperation.ADD: "added",
    DeltaOperation.UPDATE: "modified",
    DeltaOperation.DELETE: "deleted",
}


def infer_action_name(delta: Delta | None, mutation_event: str | None = None) -> str:
    """Derive an action name for a mutation that did not supply one.

    Known editor mutation events map directly. Otherwise the name is derived
    from the delta's operation and scope, falling back to ``syncGraph``.
    """
    if mutation_event == "node:delete" and delta is not None:
        removed = sum(
            1
            for change in delta.changes
            if change.entity_kind == EntityKind.NODE and change.after is None
        )
        if removed > 1:
            return "deleteNodes"
    if mutation_event in _ACTION_BY_MUTATION:
        return _ACTION_BY_MUTATION[mutation_event]
    if delta is None:
        return "syncGraph"

    is_edge = delta.entity_scope == EntityScope.EDGE
    if delta.operation == DeltaOperation.ADD:
        return "addEdge" if is_edge else "addNode"
    if delta.operation == DeltaOperation.DELETE:
        return "deleteEdge" if is_edge else "deleteNode"
    if delta.operation == DeltaOperation.UPDATE:
        return "updateEdge" if is_edge else "saveNodeProperties"
    return "syncGraph"


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def format_diff_summary(delta: Delta | None) -> str:
    """Summarize a delta, e.g. ``"2 nodes added, 1 edge modified"``."""
    if delta is None or not delta.changes:
        return "No changes"

    counts = Counter((change.entity_kind, change.operation) for change in delta.changes)
    parts: list[str] = []
    for kind in (EntityKind.NODE, EntityKind.EDGE):
        for operation in (DeltaOperation.ADD, DeltaOperation.UPDATE, DeltaOperation.DELETE):
            count = counts.get((kind, operation), 0)
            if count:
                parts.append(f"{_plural(count, kind.value)} {_VERB[operation]}")
    return ", ".join(parts)
