"""
Access control for TimeCapsule.

This module decides, for a capsule and a viewer at a given instant, whether
the capsule is unlocked, whether the viewer is on its audience, and what
the viewer ends up seeing.

Key concepts:
    - is_unlocked: time/reveal predicate, cancelled capsules never unlock
    - can_view: audience predicate driven by the privacy tier
    - AccessDecision: the combined HIDDEN / LOCKED / FULL outcome with a reason
"""

from timecapsule.access.evaluator import (
    AccessDecision,
    can_view,
    evaluate,
    is_owner,
    is_recipient,
    is_unlocked,
)

__all__ = [
    "AccessDecision",
    "can_view",
    "evaluate",
    "is_owner",
    "is_recipient",
    "is_unlocked",
]
