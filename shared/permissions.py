"""
shared/permissions.py
Authorization pre-conditions for core operations.

Every check is a pure function of the acting principal and already-loaded
entities, returning a Decision. Operations call ensure() before running
any business logic.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from shared.errors import PermissionDeniedError
from shared.models.models import RequestStatus, Review, ServiceRequest, UserRole

if TYPE_CHECKING:
    from services.resources.resources import SchedulableResource
    from shared.middleware.auth import Principal


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


def ensure(decision: Decision) -> None:
    """Raise PermissionDeniedError for a denied decision."""
    if not decision.allowed:
        raise PermissionDeniedError(decision.reason or "You are not allowed to perform this action")


def _controls(actor: "Principal", resource: Optional["SchedulableResource"]) -> bool:
    return resource is not None and actor.user_id in resource.controller_user_ids


# ── Requests ──────────────────────────────────────────────────

def can_create_request(
    actor: "Principal",
    resource: Optional["SchedulableResource"],
    self_service: bool,
    on_behalf_of_other: bool,
) -> Decision:
    if on_behalf_of_other and not actor.is_admin:
        return deny("Only admins can create requests for another user")
    if self_service:
        if resource is None:
            return deny("Self-service requests must name the provider's own resource")
        if not (actor.is_admin or _controls(actor, resource)):
            return deny("You can only self-assign requests to a resource you manage")
    return ALLOW


def can_view_request(
    actor: "Principal",
    request: ServiceRequest,
    assigned: Optional["SchedulableResource"],
) -> Decision:
    if actor.is_admin or request.requester_user_id == actor.user_id:
        return ALLOW
    if _controls(actor, assigned):
        return ALLOW
    if request.status == RequestStatus.PENDING and actor.role == UserRole.PROVIDER:
        return ALLOW
    return deny("You do not have access to this request")


def can_accept_request(actor: "Principal", resource: "SchedulableResource") -> Decision:
    if actor.is_admin or _controls(actor, resource):
        return ALLOW
    return deny("Only the provider, its agency managers, or an admin can accept for this resource")


def can_cancel_request(
    actor: "Principal",
    request: ServiceRequest,
    assigned: Optional["SchedulableResource"],
) -> Decision:
    if actor.is_admin or request.requester_user_id == actor.user_id:
        return ALLOW
    if _controls(actor, assigned):
        return ALLOW
    return deny("You cannot cancel this request")


# ── Bookings ──────────────────────────────────────────────────

def can_update_booking(actor: "Principal", resource: "SchedulableResource") -> Decision:
    if actor.is_admin or _controls(actor, resource):
        return ALLOW
    return deny("Only the assigned resource or an admin can change this booking")


def can_view_schedule(actor: "Principal", resource: "SchedulableResource") -> Decision:
    if actor.is_admin or _controls(actor, resource):
        return ALLOW
    return deny("You cannot view this resource's bookings")


# ── Resources ─────────────────────────────────────────────────

def can_manage_resource(actor: "Principal", resource: "SchedulableResource") -> Decision:
    if actor.is_admin or _controls(actor, resource):
        return ALLOW
    return deny("You cannot manage this resource")


# ── Reviews ───────────────────────────────────────────────────

def can_submit_review(actor: "Principal", request: ServiceRequest) -> Decision:
    if request.requester_user_id != actor.user_id:
        return deny("You can only review your own requests")
    return ALLOW


def can_edit_review(
    actor: "Principal",
    review: Review,
    now: datetime,
    edit_window: timedelta,
) -> Decision:
    if review.user_id != actor.user_id:
        return deny("Only the author can edit this review")
    if now - review.created_at > edit_window:
        return deny(f"Reviews can only be edited within {edit_window.days} days of posting")
    return ALLOW


def can_respond_to_review(actor: "Principal", resource: "SchedulableResource") -> Decision:
    if _controls(actor, resource):
        return ALLOW
    return deny("Only the reviewed provider can respond to this review")


def can_moderate_reviews(actor: "Principal") -> Decision:
    if actor.is_admin:
        return ALLOW
    return deny("Admin access required")
