"""
Access Evaluator for TimeCapsule.

The evaluator is the security boundary of TimeCapsule. Every read of capsule
content or attachment bytes passes through it.

Two independent predicates:
    - is_unlocked(capsule, now): has time (or an explicit reveal) opened it?
    - can_view(capsule, viewer, now): is this viewer on the capsule's audience?

evaluate() combines them into an AccessDecision:
    1. Owner                              -> FULL (owners bypass the lock)
    2. PRIVATE tier, not owner            -> HIDDEN (existence masked)
    3. can_view and is_unlocked           -> FULL
    4. anything else                      -> LOCKED (placeholder only)

Guarantees:
    - Pure: no I/O, no clock reads, no mutation of inputs
    - Fail-closed: an unrecognized tier or status never yields FULL
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from timecapsule.schema import (
    Capsule,
    CapsuleStatus,
    Privacy,
    Viewer,
    Visibility,
    ensure_utc,
)


class AccessDecision(BaseModel):
    """
    Result of evaluating a viewer against a capsule.

    Attributes:
        visibility: HIDDEN, LOCKED or FULL
        reason: Human-readable explanation of the decision
        is_owner: Whether the viewer owns the capsule
        is_unlocked: Whether the capsule is unlocked at the evaluated instant
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    visibility: Visibility = Field(..., description="How much the viewer may see")
    reason: str = Field(..., description="Why")
    is_owner: bool = False
    is_unlocked: bool = False

    @property
    def hidden(self) -> bool:
        return self.visibility == Visibility.HIDDEN

    @property
    def content_visible(self) -> bool:
        return self.visibility == Visibility.FULL


def is_unlocked(capsule: Capsule, now: datetime) -> bool:
    """
    Whether the capsule's content is released by time or by reveal.

    A cancelled capsule is never unlocked, whatever the time.
    """
    if capsule.status == CapsuleStatus.REVEALED:
        return True
    if capsule.status == CapsuleStatus.SCHEDULED:
        return ensure_utc(now) >= capsule.unlock_at
    return False


def is_owner(capsule: Capsule, viewer: Viewer) -> bool:
    return capsule.owner_id == viewer.user_id


def is_recipient(capsule: Capsule, viewer: Viewer) -> bool:
    if viewer.email is None:
        return False
    return viewer.email in capsule.recipients


def can_view(capsule: Capsule, viewer: Viewer, now: datetime) -> bool:
    """
    Whether the viewer belongs to the capsule's audience.

    Independent of lock state; "now" is accepted so callers can treat both
    predicates uniformly.
    """
    if is_owner(capsule, viewer):
        return True
    if capsule.privacy == Privacy.PRIVATE:
        return False
    if capsule.privacy == Privacy.RECIPIENTS:
        return is_recipient(capsule, viewer)
    if capsule.privacy == Privacy.PUBLIC:
        return True
    return False


def evaluate(capsule: Capsule, viewer: Viewer, now: datetime) -> AccessDecision:
    """Combine can_view and is_unlocked into a single visibility decision."""
    unlocked = is_unlocked(capsule, now)

    if is_owner(capsule, viewer):
        return AccessDecision(
            visibility=Visibility.FULL,
            reason="Viewer owns the capsule",
            is_owner=True,
            is_unlocked=unlocked,
        )

    if capsule.privacy not in (Privacy.RECIPIENTS, Privacy.PUBLIC):
        return AccessDecision(
            visibility=Visibility.HIDDEN,
            reason="Private capsule viewed by non-owner",
            is_unlocked=unlocked,
        )

    if not can_view(capsule, viewer, now):
        return AccessDecision(
            visibility=Visibility.LOCKED,
            reason="Viewer is not a recipient",
            is_unlocked=unlocked,
        )

    if capsule.status == CapsuleStatus.CANCELLED:
        return AccessDecision(
            visibility=Visibility.LOCKED,
            reason="Capsule was cancelled",
            is_unlocked=False,
        )

    if not unlocked:
        return AccessDecision(
            visibility=Visibility.LOCKED,
            reason=f"Locked until {capsule.unlock_at.isoformat()}",
            is_unlocked=False,
        )

    return AccessDecision(
        visibility=Visibility.FULL,
        reason="Capsule is unlocked",
        is_unlocked=True,
    )
