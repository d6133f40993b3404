"""
Typed Stripe webhook events.

Each event kind the membership pipeline acts on gets its own model carrying a
typed data.object. Everything else parses as UnhandledEvent. Only the fields
the pipeline reads are declared; the rest of the payload is ignored.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Optional, Union, get_args

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _expandable_id(value: Any) -> Any:
    """Stripe fields like customer/subscription may arrive expanded as objects."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _metadata(value: Any) -> Any:
    return value or {}


ExpandableId = Annotated[Optional[str], BeforeValidator(_expandable_id)]
Metadata = Annotated[dict[str, str], BeforeValidator(_metadata)]


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CheckoutSessionObject(StripeObject):
    id: str
    mode: Optional[str] = None  # payment, setup, subscription
    customer: ExpandableId = None
    subscription: ExpandableId = None
    metadata: Metadata = Field(default_factory=dict)


class SubscriptionObject(StripeObject):
    id: str
    status: Optional[str] = None
    customer: ExpandableId = None
    metadata: Metadata = Field(default_factory=dict)


class InvoiceObject(StripeObject):
    id: Optional[str] = None
    customer: ExpandableId = None
    subscription: ExpandableId = None
    amount_due: Optional[int] = None
    currency: Optional[str] = None
    attempt_count: Optional[int] = None
    parent: Optional[dict] = None

    @property
    def subscription_id(self) -> Optional[str]:
        """Newer API versions move the subscription under parent.subscription_details."""
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))


class StripeEvent(StripeObject):
    """Envelope fields shared by every event kind."""
    event_type: ClassVar[Optional[str]] = None

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False

    @property
    def occurred_at(self) -> Optional[datetime]:
        if self.created is None:
            return None
        return datetime.fromtimestamp(self.created, tz=timezone.utc)


class CheckoutSessionCompleted(StripeEvent):
    event_type: ClassVar[str] = "checkout.session.completed"
    object: CheckoutSessionObject


class SubscriptionUpdated(StripeEvent):
    event_type: ClassVar[str] = "customer.subscription.updated"
    object: SubscriptionObject


class SubscriptionDeleted(StripeEvent):
    event_type: ClassVar[str] = "customer.subscription.deleted"
    object: SubscriptionObject


class InvoicePaymentFailed(StripeEvent):
    event_type: ClassVar[str] = "invoice.payment_failed"
    object: InvoiceObject


class UnhandledEvent(StripeEvent):
    """Any event type the membership pipeline does not act on."""


HandledEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
]

EVENT_MODELS: dict[str, type[StripeEvent]] = {
    model.event_type: model for model in get_args(HandledEvent)
}


def parse_envelope(raw: dict) -> StripeEvent:
    """Parse only id/type/created/livemode. Never fails on the data.object shape."""
    return StripeEvent.model_validate(raw)


def parse_event(raw: dict) -> Union[HandledEvent, UnhandledEvent]:
    """
    Parse a verified event body into its typed model.
    Raises pydantic.ValidationError if a handled kind has a malformed object.
    """
    model = EVENT_MODELS.get(raw.get("type"), UnhandledEvent)
    if model is UnhandledEvent:
        return UnhandledEvent.model_validate(raw)
    data = raw.get("data") or {}
    return model.model_validate({**raw, "object": data.get("object")})
