"""
Impact classifier.

Maps a PolicyChangeEvent to an impact tier from its declared hint and the
rule-weight table. Pure: no I/O, no state, so re-classifying an event after
a crash yields the same tier.
"""

from __future__ import annotations

from .config.schema import WeightTable
from .models import ChangeKind, ClassifiedEvent, ImpactTier, PolicyChangeEvent, max_tier


def default_weight(change: ChangeKind) -> ImpactTier:
    """Tier used when the weight table has no entry for a policy."""
    if change == ChangeKind.DELETED:
        return ImpactTier.LOW
    return ImpactTier.MEDIUM


def compute_tier(event: PolicyChangeEvent, weights: WeightTable) -> ImpactTier:
    """
    Compute the impact tier of an event.

    - A HIGH hint always wins.
    - Otherwise the tier is the more severe of the hint and the weight
      lookup (LOW when there is no hint).
    """
    if event.severity_hint == ImpactTier.HIGH:
        return ImpactTier.HIGH

    weight = weights.lookup(event.policy, event.change)
    if weight is None:
        weight = default_weight(event.change)

    return max_tier(event.severity_hint or ImpactTier.LOW, weight)


def classify(event: PolicyChangeEvent, weights: WeightTable | None = None) -> ClassifiedEvent:
    """Classify an event. Deterministic for a given event and weight table."""
    table = weights if weights is not None else WeightTable()
    return ClassifiedEvent(
        event=event,
        tier=compute_tier(event, table),
        content_hash=event.content_hash(),
    )
