"""
Tests for paywall/services/membership_reducer.py and paywall/schemas/stripe_events.py.
The reducer is pure, so these run without a database.
"""
import pytest
from datetime import datetime, timezone
from pydantic import ValidationError

from paywall.schemas.stripe_events import (
    EVENT_MODELS,
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
)
from paywall.services.membership_reducer import (
    MembershipState,
    Outcome,
    SideEffectKind,
    reduce,
    target_of,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _checkout(user_id="u1", mode="subscription", subscription="sub_1", customer="cus_1"):
    metadata = {"userId": user_id} if user_id else {}
    return parse_event({
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1",
            "mode": mode,
            "customer": customer,
            "subscription": subscription,
            "metadata": metadata,
        }},
    })


def _subscription(event_type, status="active", user_id="u1", sub_id="sub_1"):
    return parse_event({
        "id": "evt_sub",
        "type": event_type,
        "data": {"object": {
            "id": sub_id,
            "status": status,
            "customer": "cus_1",
            "metadata": {"userId": user_id} if user_id else {},
        }},
    })


def _invoice(**overrides):
    obj = {
        "id": "in_1",
        "customer": "cus_1",
        "subscription": "sub_1",
        "amount_due": 980,
        "currency": "jpy",
        "attempt_count": 2,
    }
    obj.update(overrides)
    return parse_event({"id": "evt_inv", "type": "invoice.payment_failed", "data": {"object": obj}})


class TestParseEvent:
    def test_typed_models(self):
        assert isinstance(_checkout(), CheckoutSessionCompleted)
        assert isinstance(_subscription("customer.subscription.updated"), SubscriptionUpdated)
        assert isinstance(_subscription("customer.subscription.deleted"), SubscriptionDeleted)
        assert isinstance(_invoice(), InvoicePaymentFailed)

    def test_every_handled_kind_is_registered(self):
        assert EVENT_MODELS == {
            "checkout.session.completed": CheckoutSessionCompleted,
            "customer.subscription.updated": SubscriptionUpdated,
            "customer.subscription.deleted": SubscriptionDeleted,
            "invoice.payment_failed": InvoicePaymentFailed,
        }

    def test_unknown_type_is_unhandled(self):
        event = parse_event({"id": "evt_x", "type": "customer.created", "data": {"object": {}}})
        assert isinstance(event, UnhandledEvent)

    def test_expanded_ids_collapse_to_id(self):
        event = parse_event({
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1",
                "mode": "subscription",
                "customer": {"id": "cus_9", "object": "customer"},
                "subscription": {"id": "sub_9", "object": "subscription"},
                "metadata": None,
            }},
        })
        assert event.object.customer == "cus_9"
        assert event.object.subscription == "sub_9"
        assert event.object.metadata == {}

    def test_invoice_subscription_from_parent(self):
        event = _invoice(
            subscription=None,
            parent={"subscription_details": {"subscription": "sub_parent"}},
        )
        assert event.object.subscription_id == "sub_parent"

    def test_malformed_handled_object_raises(self):
        with pytest.raises(ValidationError):
            parse_event({"id": "evt_1", "type": "customer.subscription.updated", "data": {}})


class TestTargetOf:
    def test_checkout_targets_user(self):
        target = target_of(_checkout())
        assert target.user_id == "u1"
        assert target.subscription_id == "sub_1"

    def test_checkout_without_user_has_no_target(self):
        assert target_of(_checkout(user_id=None)) is None

    def test_payment_checkout_has_no_target(self):
        assert target_of(_checkout(mode="payment")) is None

    def test_subscription_without_user_needs_lookup(self):
        target = target_of(_subscription("customer.subscription.updated", user_id=None))
        assert target.user_id is None
        assert target.subscription_id == "sub_1"

    def test_invoice_has_no_target(self):
        assert target_of(_invoice()) is None


class TestCheckoutCompleted:
    def test_free_user_becomes_paid(self):
        transition = reduce(_checkout(), MembershipState(user_id="u1"), NOW)
        assert transition.outcome == Outcome.APPLIED
        assert transition.changes == {
            "stripe_customer_id": "cus_1",
            "stripe_subscription_id": "sub_1",
            "membership": "paid",
            "membership_updated_at": NOW,
        }

    def test_non_subscription_checkout_skipped(self):
        transition = reduce(_checkout(mode="payment"), MembershipState(user_id="u1"), NOW)
        assert transition.outcome == Outcome.SKIPPED
        assert not transition.mutates

    def test_missing_user_id_skipped(self):
        transition = reduce(_checkout(user_id=None), None, NOW)
        assert transition.outcome == Outcome.SKIPPED

    def test_duplicate_subscription_guard(self):
        current = MembershipState(
            user_id="u1", membership="paid", stripe_subscription_id="sub_old"
        )
        transition = reduce(_checkout(subscription="sub_new"), current, NOW)

        assert transition.outcome == Outcome.DUPLICATE_SUBSCRIPTION
        assert not transition.mutates
        effect = transition.side_effects[0]
        assert effect.kind == SideEffectKind.DUPLICATE_SUBSCRIPTION_ATTEMPT
        assert effect.data == {
            "userId": "u1",
            "existingSubscriptionId": "sub_old",
            "newSubscriptionId": "sub_new",
        }

    def test_same_subscription_reapplied(self):
        current = MembershipState(user_id="u1", membership="paid", stripe_subscription_id="sub_1")
        transition = reduce(_checkout(subscription="sub_1"), current, NOW)
        assert transition.outcome == Outcome.APPLIED


class TestSubscriptionUpdated:
    @pytest.mark.parametrize("status,membership", [
        ("active", "paid"),
        ("past_due", "paid"),
        ("canceled", "free"),
        ("unpaid", "free"),
    ])
    def test_status_mapping(self, status, membership):
        transition = reduce(
            _subscription("customer.subscription.updated", status=status),
            MembershipState(user_id="u1"),
            NOW,
        )
        assert transition.changes["membership"] == membership
        assert transition.changes["payment_status"] == status
        assert transition.changes["membership_updated_at"] == NOW

    def test_other_status_only_touches_timestamp(self):
        transition = reduce(
            _subscription("customer.subscription.updated", status="incomplete"),
            MembershipState(user_id="u1", membership="paid"),
            NOW,
        )
        assert transition.changes == {"membership_updated_at": NOW}


class TestSubscriptionDeleted:
    def test_paid_user_becomes_free(self):
        current = MembershipState(
            user_id="u1", membership="paid", stripe_subscription_id="sub_1",
            payment_status="active",
        )
        transition = reduce(_subscription("customer.subscription.deleted"), current, NOW)
        assert transition.changes == {
            "membership": "free",
            "membership_updated_at": NOW,
            "stripe_subscription_id": None,
            "payment_status": "canceled",
        }


class TestInvoicePaymentFailed:
    def test_records_failure_and_notifies(self):
        transition = reduce(_invoice(), None, NOW)
        assert transition.outcome == Outcome.APPLIED
        assert not transition.mutates
        kinds = [e.kind for e in transition.side_effects]
        assert kinds == [SideEffectKind.RECORD_PAYMENT_FAILURE, SideEffectKind.NOTIFY_PAYMENT_FAILED]
        record = transition.side_effects[0].data
        assert record["subscription_id"] == "sub_1"
        assert record["amount"] == 980
        assert record["attempt_count"] == 2

    def test_invoice_without_subscription_skipped(self):
        transition = reduce(_invoice(subscription=None), None, NOW)
        assert transition.outcome == Outcome.SKIPPED
        assert transition.side_effects == []


class TestUnhandled:
    def test_unhandled_type(self):
        event = parse_event({"id": "evt_x", "type": "customer.created"})
        transition = reduce(event, None, NOW)
        assert transition.outcome == Outcome.UNHANDLED
        assert "customer.created" in transition.reason
