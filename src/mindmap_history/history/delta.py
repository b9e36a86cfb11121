"""Field-level diff and patch of graph states.

compute_delta walks nodes and edges keyed by id and records one
EntityChange per entity that was added, removed, or modified. Modified
entities carry only the fields that differ. apply_delta replays those
changes onto a base state.

    delta = compute_delta(previous, current)
    if delta is not None:
        assert apply_delta(previous, delta) == current
"""

from __future__ import annotations

from typing import Any

from mindmap_history.history.models import (
    VOLATILE_FIELDS,
    Delta,
    DeltaOperation,
    EntityChange,
    EntityKind,
    EntityScope,
    GraphEdge,
    GraphNode,
    GraphState,
    stable_fields,
)

__all__ = ["VOLATILE_FIELDS", "compute_delta", "apply_delta", "states_equal"]


def _diff_collection(
    kind: EntityKind,
    previous: dict[str, GraphNode] | dict[str, GraphEdge],
    current: dict[str, GraphNode] | dict[str, GraphEdge],
) -> list[EntityChange]:
    changes: list[EntityChange] = []

    for entity_id, entity in current.items():
        old = previous.get(entity_id)
        if old is None:
            changes.append(
                EntityChange(entity_id=entity_id, entity_kind=kind, after=stable_fields(entity))
            )
            continue

        before_fields = stable_fields(old)
        after_fields = stable_fields(entity)
        changed = sorted(
            key
            for key in before_fields.keys() | after_fields.keys()
            if before_fields.get(key) != after_fields.get(key)
        )
        if changed:
            changes.append(
                EntityChange(
                    entity_id=entity_id,
                    entity_kind=kind,
                    before={key: before_fields.get(key) for key in changed},
                    after={key: after_fields.get(key) for key in changed},
                )
            )

    for entity_id, old in previous.items():
        if entity_id not in current:
            changes.append(
                EntityChange(entity_id=entity_id, entity_kind=kind, before=stable_fields(old))
            )

    return changes


def _operation_for(changes: list[EntityChange]) -> DeltaOperation:
    if len(changes) > 1:
        return DeltaOperation.BATCH
    return changes[0].operation


def _scope_for(changes: list[EntityChange]) -> EntityScope:
    kinds = {change.entity_kind for change in changes}
    if kinds == {EntityKind.NODE}:
        return EntityScope.NODE
    if kinds == {EntityKind.EDGE}:
        return EntityScope.EDGE
    return EntityScope.MIXED


def compute_delta(previous: GraphState, current: GraphState) -> Delta | None:
    """Compute the field-level difference from ``previous`` to ``current``.

    Transient UI fields (VOLATILE_FIELDS) never produce a change.

    Args:
        previous: State before the mutation.
        current: State after the mutation.

    Returns:
        The Delta, or None when no entity differs. A None result means the
        mutation must not be recorded.
    """
    changes = _diff_collection(EntityKind.NODE, previous.node_map(), current.node_map())
    changes += _diff_collection(EntityKind.EDGE, previous.edge_map(), current.edge_map())
    if not changes:
        return None
    return Delta(
        operation=_operation_for(changes),
        entity_scope=_scope_for(changes),
        changes=tuple(changes),
    )


def _merge(
    model: type[GraphNode] | type[GraphEdge],
    existing: GraphNode | GraphEdge | None,
    fields: dict[str, Any],
) -> GraphNode | GraphEdge:
    if existing is None:
        return model.model_validate(fields)
    return model.model_validate({**existing.model_dump(), **fields})


def apply_delta(base: GraphState, delta: Delta) -> GraphState:
    """Apply a delta to ``base`` and return the resulting state.

    Creates are upserts, so re-applying a delta to a state that already
    contains its additions does not duplicate entities. Updates for entities
    missing from ``base`` are skipped.
    """
    nodes: dict[str, Any] = base.node_map()
    edges: dict[str, Any] = base.edge_map()

    for change in delta.changes:
        if change.entity_kind == EntityKind.NODE:
            target, model = nodes, GraphNode
        else:
            target, model = edges, GraphEdge

        if change.after is None:
            target.pop(change.entity_id, None)
        elif change.before is None:
            target[change.entity_id] = _merge(model, target.get(change.entity_id), change.after)
        elif change.entity_id in target:
            target[change.entity_id] = _merge(model, target[change.entity_id], change.after)

    return GraphState(nodes=tuple(nodes.values()), edges=tuple(edges.values()))


def states_equal(a: GraphState, b: GraphState) -> bool:
    """Structural equality of two states, ignoring order and transient UI fields."""
    return a == b
