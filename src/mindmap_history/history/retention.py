"""Per-tier retention rules for document history.

Each subscription tier maps to a fixed RetentionPolicy controlling how long
history survives, how many snapshots and chained events are kept, the size of
the client-side undo cache, the storage quota, and how often a full snapshot
is taken instead of a delta event.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from mindmap_history.history.models import HistoryPoint, PlanTier

__all__ = [
    "PlanTier",
    "RetentionPolicy",
    "SnapshotCadence",
    "cleanup_priority",
    "policy_for",
    "select_excess_snapshots",
    "should_snapshot",
]

_MIB = 1024 * 1024
_GIB = 1024 * _MIB


@dataclass(frozen=True)
class SnapshotCadence:
    """Take a snapshot after this many actions or this much time, whichever comes first."""

    by_action_count: int
    by_elapsed_time: timedelta


@dataclass(frozen=True)
class RetentionPolicy:
    tier: PlanTier
    max_age: timedelta
    max_snapshots: int
    max_events_per_snapshot: int
    cache_size: int
    storage_quota_bytes: int
    snapshot_cadence: SnapshotCadence
    allow_manual_checkpoints: bool

    @property
    def max_age_ms(self) -> int:
        return int(self.max_age.total_seconds() * 1000)

    @property
    def major_max_age_ms(self) -> int:
        """Major checkpoints survive twice as long as regular points."""
        return 2 * self.max_age_ms

    @property
    def average_snapshot_budget_bytes(self) -> int:
        return self.storage_quota_bytes // max(self.max_snapshots, 1)


_POLICIES: dict[PlanTier, RetentionPolicy] = {
    PlanTier.FREE: RetentionPolicy(
        tier=PlanTier.FREE,
        max_age=timedelta(hours=24),
        max_snapshots=20,
        max_events_per_snapshot=50,
        cache_size=20,
        storage_quota_bytes=10 * _MIB,
        snapshot_cadence=SnapshotCadence(by_action_count=20, by_elapsed_time=timedelta(minutes=10)),
        allow_manual_checkpoints=False,
    ),
    PlanTier.PRO: RetentionPolicy(
        tier=PlanTier.PRO,
        max_age=timedelta(days=30),
        max_snapshots=200,
        max_events_per_snapshot=100,
        cache_size=50,
        storage_quota_bytes=500 * _MIB,
        snapshot_cadence=SnapshotCadence(by_action_count=10, by_elapsed_time=timedelta(minutes=5)),
        allow_manual_checkpoints=True,
    ),
    PlanTier.ENTERPRISE: RetentionPolicy(
        tier=PlanTier.ENTERPRISE,
        max_age=timedelta(days=90),
        max_snapshots=1000,
        max_events_per_snapshot=200,
        cache_size=100,
        storage_quota_bytes=5 * _GIB,
        snapshot_cadence=SnapshotCadence(by_action_count=10, by_elapsed_time=timedelta(minutes=5)),
        allow_manual_checkpoints=True,
    ),
}


def policy_for(tier: PlanTier | str) -> RetentionPolicy:
    """Return the retention policy for a subscription tier.

    Raises:
        ValueError: If ``tier`` is not a known tier name.
    """
    return _POLICIES[PlanTier(tier)]


def should_snapshot(
    actions_since_last_snapshot: int,
    ms_since_last_snapshot: int,
    policy: RetentionPolicy,
) -> bool:
    """Decide whether the next history point must be a full snapshot.

    True when either the action count or the elapsed time threshold of the
    policy's cadence has been reached.
    """
    cadence = policy.snapshot_cadence
    if actions_since_last_snapshot >= cadence.by_action_count:
        return True
    return ms_since_last_snapshot >= cadence.by_elapsed_time.total_seconds() * 1000


def cleanup_priority(point: HistoryPoint, policy: RetentionPolicy, now_ms: int) -> float:
    """Score a history point for quota-driven deletion. Higher goes first.

    The score is the point's age relative to ``max_age``, halved for major
    checkpoints and scaled up for snapshots larger than the tier's average
    per-snapshot budget.
    """
    age_ms = max(now_ms - point.timestamp, 0)
    score = age_ms / max(policy.max_age_ms, 1)
    if point.is_major:
        score *= 0.5
    budget = policy.average_snapshot_budget_bytes
    if point.size_bytes and budget and point.size_bytes > budget:
        score *= point.size_bytes / budget
    return score


def select_excess_snapshots(
    snapshots: Sequence[HistoryPoint],
    policy: RetentionPolicy,
) -> list[HistoryPoint]:
    """Return the non-major snapshots of one document beyond ``max_snapshots``.

    Args:
        snapshots: Snapshot metadata of a single document, newest first.
        policy: Retention policy of the document.
    """
    return [point for point in snapshots[policy.max_snapshots :] if not point.is_major]
