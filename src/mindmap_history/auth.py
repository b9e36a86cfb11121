"""Caller identity for history endpoints.

Authentication happens upstream (the API gateway validates the session and
forwards identity headers). This module only turns those headers into an
ActorContext; it never verifies credentials itself.

Headers:
- X-Actor-Id   — authenticated user id (required)
- X-Plan-Tier  — the user's subscription tier: free | pro | enterprise
- X-Client-Id  — per-connection origin id used to tag broadcast writes
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, HTTPException, status

from mindmap_history.history.retention import PlanTier


@dataclass(frozen=True)
class ActorContext:
    """Identity and plan of the caller performing a history operation.

    Attributes:
        actor_id: Identifier of the user.
        plan_tier: Subscription tier driving retention and gating.
        client_id: Origin id of the caller's live connection, if any.
    """

    actor_id: str
    plan_tier: PlanTier = PlanTier.FREE
    client_id: str | None = None


def get_current_actor(
    x_actor_id: Annotated[str | None, Header()] = None,
    x_plan_tier: Annotated[str | None, Header()] = None,
    x_client_id: Annotated[str | None, Header()] = None,
) -> ActorContext:
    """FastAPI dependency resolving the caller from forwarded headers.

    Raises:
        HTTPException 401: If no actor id was forwarded.
        HTTPException 400: If the plan tier is not a known tier.
    """
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    try:
        tier = PlanTier(x_plan_tier.lower()) if x_plan_tier else PlanTier.FREE
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown plan tier: {x_plan_tier}",
        ) from exc
    return ActorContext(actor_id=x_actor_id, plan_tier=tier, client_id=x_client_id)
