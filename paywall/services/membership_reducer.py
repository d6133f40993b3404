"""
Membership reducer - pure mapping from (event, current membership) to the next
membership state plus side effects.

States: free, paid(active), paid(past_due), free(canceled), free(unpaid).

Nothing here touches the database or the network. Guard clauses return a Transition describing why nothing changed;
exceptions are left for genuine failures that must release the claim.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from paywall.schemas.stripe_events import (
    CheckoutSessionCompleted,
    EVENT_MODELS,
    InvoicePaymentFailed,
    StripeEvent,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
)

logger = logging.getLogger(__name__)

DUPLICATE_SUBSCRIPTION_ATTEMPT = "duplicate_subscription_attempt"


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    DUPLICATE_SUBSCRIPTION = "duplicate_subscription"
    USER_NOT_RESOLVED = "user_not_resolved"
    UNHANDLED = "unhandled"


class SideEffectKind(str, Enum):
    RECORD_PAYMENT_FAILURE = "record_payment_failure"
    NOTIFY_PAYMENT_FAILED = "notify_payment_failed"
    DUPLICATE_SUBSCRIPTION_ATTEMPT = DUPLICATE_SUBSCRIPTION_ATTEMPT


@dataclass
class SideEffect:
    kind: SideEffectKind
    data: dict = field(default_factory=dict)


@dataclass
class MembershipState:
    """Snapshot of a user's membership columns as the reducer sees them."""
    user_id: str
    membership: str = "free"
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    payment_status: Optional[str] = None
    membership_updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user) -> "MembershipState":
        return cls(
            user_id=user.id,
            membership=user.membership or "free",
            stripe_customer_id=user.stripe_customer_id,
            stripe_subscription_id=user.stripe_subscription_id,
            payment_status=user.payment_status,
            membership_updated_at=user.membership_updated_at,
        )


@dataclass
class Transition:
    outcome: Outcome
    changes: dict = field(default_factory=dict)
    side_effects: list[SideEffect] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def mutates(self) -> bool:
        return bool(self.changes)


@dataclass
class Target:
    """Which user an event is about. user_id=None means look up by subscription_id."""
    user_id: Optional[str]
    subscription_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------

def target_of(event: StripeEvent) -> Optional[Target]:
    """
    Return the membership row an event mutates, or None when the event has no
    membership target (invoices, unhandled types, guarded-out checkouts).
    """
    if isinstance(event, CheckoutSessionCompleted):
        session = event.object
        user_id = session.metadata.get("userId")
        if session.mode != "subscription" or not user_id:
            return None
        return Target(user_id=user_id, subscription_id=session.subscription)

    if isinstance(event, (SubscriptionUpdated, SubscriptionDeleted)):
        subscription = event.object
        return Target(
            user_id=subscription.metadata.get("userId") or None,
            subscription_id=subscription.id,
        )

    return None


# ---------------------------------------------------------------------------
# Per-event reducers
# ---------------------------------------------------------------------------

def _reduce_checkout_completed(
    event: CheckoutSessionCompleted,
    current: Optional[MembershipState],
    now: datetime,
) -> Transition:
    session = event.object

    if session.mode != "subscription":
        return Transition(Outcome.SKIPPED, reason="Not a subscription checkout")

    user_id = session.metadata.get("userId")
    if not user_id:
        return Transition(Outcome.SKIPPED, reason="No userId in session metadata")

    if current is None:
        return Transition(Outcome.USER_NOT_RESOLVED, reason=f"User {user_id} not loaded")

    existing = current.stripe_subscription_id
    if current.membership == "paid" and existing and existing != session.subscription:
        return Transition(
            Outcome.DUPLICATE_SUBSCRIPTION,
            reason="User already has active subscription",
            side_effects=[
                SideEffect(
                    SideEffectKind.DUPLICATE_SUBSCRIPTION_ATTEMPT,
                    {
                        "userId": user_id,
                        "existingSubscriptionId": existing,
                        "newSubscriptionId": session.subscription,
                    },
                )
            ],
        )

    return Transition(
        Outcome.APPLIED,
        changes={
            "stripe_customer_id": session.customer,
            "stripe_subscription_id": session.subscription,
            "membership": "paid",
            "membership_updated_at": now,
        },
    )


def _subscription_status_changes(status: Optional[str]) -> dict:
    if status == "active":
        return {"membership": "paid", "payment_status": "active"}
    if status == "past_due":
        # Grace period: keep access while Stripe retries the payment
        return {"membership": "paid", "payment_status": "past_due"}
    if status in ("canceled", "unpaid"):
        return {"membership": "free", "payment_status": status}
    return {}


def _reduce_subscription_updated(
    event: SubscriptionUpdated,
    current: Optional[MembershipState],
    now: datetime,
) -> Transition:
    if current is None:
        return Transition(
            Outcome.USER_NOT_RESOLVED,
            reason=f"No user found for subscription {event.object.id}",
        )
    changes = _subscription_status_changes(event.object.status)
    changes["membership_updated_at"] = now
    return Transition(Outcome.APPLIED, changes=changes)


def _reduce_subscription_deleted(
    event: SubscriptionDeleted,
    current: Optional[MembershipState],
    now: datetime,
) -> Transition:
    if current is None:
        return Transition(
            Outcome.USER_NOT_RESOLVED,
            reason=f"No user found for subscription {event.object.id}",
        )
    return Transition(
        Outcome.APPLIED,
        changes={
            "membership": "free",
            "membership_updated_at": now,
            "stripe_subscription_id": None,
            "payment_status": "canceled",
        },
    )


def _reduce_payment_failed(
    event: InvoicePaymentFailed,
    current: Optional[MembershipState],
    now: datetime,
) -> Transition:
    invoice = event.object
    subscription_id = invoice.subscription_id
    if not subscription_id:
        return Transition(Outcome.SKIPPED, reason="Invoice has no subscription")

    return Transition(
        Outcome.APPLIED,
        side_effects=[
            SideEffect(
                SideEffectKind.RECORD_PAYMENT_FAILURE,
                {
                    "subscription_id": subscription_id,
                    "customer_id": invoice.customer,
                    "invoice_id": invoice.id,
                    "amount": invoice.amount_due,
                    "currency": invoice.currency,
                    "attempt_count": invoice.attempt_count,
                    "failed_at": now,
                },
            ),
            SideEffect(
                SideEffectKind.NOTIFY_PAYMENT_FAILED,
                {
                    "customer_id": invoice.customer,
                    "amount": invoice.amount_due,
                    "currency": invoice.currency,
                    "attempt_count": invoice.attempt_count,
                },
            ),
        ],
    )


def _reduce_unhandled(
    event: UnhandledEvent,
    current: Optional[MembershipState],
    now: datetime,
) -> Transition:
    return Transition(Outcome.UNHANDLED, reason=f"Unhandled event type: {event.type}")


_REDUCERS: dict[type, Callable[..., Transition]] = {
    CheckoutSessionCompleted: _reduce_checkout_completed,
    SubscriptionUpdated: _reduce_subscription_updated,
    SubscriptionDeleted: _reduce_subscription_deleted,
    InvoicePaymentFailed: _reduce_payment_failed,
    UnhandledEvent: _reduce_unhandled,
}

# A new typed event kind without a reducer is an import-time failure,
# not a silent fallthrough to "unhandled".
_missing = [m.__name__ for m in EVENT_MODELS.values() if m not in _REDUCERS]
if _missing:
    raise RuntimeError(f"No membership reducer for event models: {', '.join(_missing)}")


def reduce(
    event: StripeEvent,
    current: Optional[MembershipState],
    now: Optional[datetime] = None,
) -> Transition:
    """Compute the transition for one event against the current membership."""
    reducer = _REDUCERS.get(type(event))
    if reducer is None:
        raise TypeError(f"Unsupported event model: {type(event).__name__}")
    return reducer(event, current, now or datetime.now(timezone.utc))
