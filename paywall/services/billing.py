"""
Stripe webhook processing - membership reconciliation pipeline.

Order of operations for one verified delivery:
  verify signature -> claim event id -> reduce + apply membership change
  -> durable side effects -> mark applied -> best-effort side effects.

Anything that raises between the claim and mark-applied releases the claim
and surfaces as BusinessLogicError, so Stripe redelivers the event later.
Source allowlisting and rate limiting happen in the API layer before this
module sees the request.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from paywall.config import Settings, get_settings
from paywall.exceptions import BusinessLogicError
from paywall.schemas.stripe_events import (
    InvoicePaymentFailed,
    StripeEvent,
    parse_envelope,
    parse_event,
)
from paywall.services.idempotency import FailureCompensator, IdempotencyStore
from paywall.services.membership_reducer import (
    DUPLICATE_SUBSCRIPTION_ATTEMPT,
    Outcome,
    SideEffect,
    SideEffectKind,
    Transition,
    reduce,
    target_of,
)
from paywall.services.membership_store import MembershipStateStore
from paywall.services.webhook_log import WebhookLog, log_webhook_event
from paywall.utils.metrics import Timer
from paywall.utils.webhook_signatures import verify_stripe_signature

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "already_processed"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str  # an Outcome value, or "already_processed"
    reason: Optional[str] = None


async def _default_notifier(email: str, amount, currency, attempt_count) -> dict:
    from paywall.services.transactional_email import send_payment_failed
    return await send_payment_failed(email, amount, currency, attempt_count)


class WebhookProcessor:
    """Runs one Stripe delivery through the claim-then-apply pipeline."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        idempotency: Optional[IdempotencyStore] = None,
        membership_store: Optional[MembershipStateStore] = None,
        compensator: Optional[FailureCompensator] = None,
        log_event: Callable[[WebhookLog], Awaitable[None]] = log_webhook_event,
        notify_payment_failed: Callable[..., Awaitable[dict]] = _default_notifier,
    ):
        self.settings = settings or get_settings()
        self.idempotency = idempotency or IdempotencyStore()
        self.membership_store = membership_store or MembershipStateStore()
        self.compensator = compensator or FailureCompensator(self.idempotency)
        self._log_event = log_event
        self._notify_payment_failed = notify_payment_failed

    async def process(self, payload: bytes, sig_header: Optional[str]) -> WebhookResult:
        """
        Process one raw delivery.

        Raises WebhookSignatureError, WebhookConfigurationError,
        IdempotencyStoreError or BusinessLogicError; everything else is a
        successful (200) result.
        """
        timer = Timer().start()
        received_at = datetime.now(timezone.utc)

        raw = verify_stripe_signature(
            payload,
            sig_header,
            self.settings.stripe_webhook_secret,
            self.settings.stripe_webhook_tolerance_seconds,
        )
        envelope = parse_envelope(raw)

        claim = await self.idempotency.claim(envelope)
        if not claim.is_new:
            return WebhookResult(envelope.id, envelope.type, ALREADY_PROCESSED)

        try:
            event = parse_event(raw)
            transition = await self._apply(event)
            await self._run_durable_side_effects(transition)
        except Exception as e:
            await self._log_event(
                WebhookLog(
                    event_id=envelope.id,
                    event_type=envelope.type,
                    livemode=envelope.livemode,
                    received_at=received_at,
                    success=False,
                    error=str(e) or type(e).__name__,
                    processing_time_ms=timer.elapsed_ms,
                )
            )
            await self.compensator.release(envelope.id)
            raise BusinessLogicError(f"Webhook processing failed for {envelope.id}") from e

        await self.idempotency.mark_applied(envelope.id)
        await self._run_best_effort_side_effects(event, transition)

        duration = timer.log_duration(envelope.type, self.settings.slow_webhook_warning_ms)
        await self._log_event(
            WebhookLog(
                event_id=envelope.id,
                event_type=envelope.type,
                livemode=envelope.livemode,
                received_at=received_at,
                processed_at=datetime.now(timezone.utc),
                success=True,
                processing_time_ms=duration,
                details={"outcome": transition.outcome.value},
            )
        )
        return WebhookResult(envelope.id, envelope.type, transition.outcome.value, transition.reason)

    async def _apply(self, event: StripeEvent) -> Transition:
        """Resolve the target user and run the reducer through the membership store."""
        target = target_of(event)
        if target is None:
            transition = reduce(event, None)
            self._log_transition(event, transition)
            return transition

        user_id = target.user_id
        if user_id is None:
            # Slow path: Stripe did not propagate userId metadata
            user = await self.membership_store.find_by_subscription_id(target.subscription_id)
            if user is None:
                transition = Transition(
                    Outcome.USER_NOT_RESOLVED,
                    reason=f"No user found for subscription {target.subscription_id}",
                )
                self._log_transition(event, transition)
                return transition
            user_id = user.id

        transition = await self.membership_store.apply(
            user_id, lambda state: reduce(event, state)
        )
        self._log_transition(event, transition, user_id)
        return transition

    async def _run_durable_side_effects(self, transition: Transition) -> None:
        """Side effects whose failure must release the claim."""
        for effect in transition.side_effects:
            if effect.kind == SideEffectKind.RECORD_PAYMENT_FAILURE:
                await self.membership_store.record_payment_failure(**effect.data)

    async def _run_best_effort_side_effects(self, event: StripeEvent, transition: Transition) -> None:
        """Side effects that never change the webhook response."""
        for effect in transition.side_effects:
            try:
                if effect.kind == SideEffectKind.NOTIFY_PAYMENT_FAILED:
                    await self._notify_member(effect)
                elif effect.kind == SideEffectKind.DUPLICATE_SUBSCRIPTION_ATTEMPT:
                    await self._log_event(
                        WebhookLog(
                            event_id=event.id,
                            event_type=DUPLICATE_SUBSCRIPTION_ATTEMPT,
                            livemode=event.livemode,
                            success=False,
                            error="User already has active subscription",
                            details=effect.data,
                        )
                    )
            except Exception as e:
                logger.error(
                    "Side effect %s failed for event %s: %s",
                    effect.kind.value, event.id, str(e),
                )

    async def _notify_member(self, effect: SideEffect) -> None:
        user = await self.membership_store.find_by_customer_id(effect.data.get("customer_id"))
        if user is None or not user.email:
            logger.info("No member email for customer %s; skipping payment notice",
                        effect.data.get("customer_id"))
            return
        result = await self._notify_payment_failed(
            user.email,
            effect.data.get("amount"),
            effect.data.get("currency"),
            effect.data.get("attempt_count"),
        )
        if result and result.get("error"):
            logger.warning("Payment failure email not sent to user %s: %s", user.id, result["error"])
        else:
            logger.info("Payment failure notification sent to user %s", user.id)

    def _log_transition(self, event: StripeEvent, transition: Transition, user_id: Optional[str] = None) -> None:
        extra = {"event_id": event.id, "event_type": event.type, "user_id": user_id}
        if transition.outcome == Outcome.APPLIED:
            if isinstance(event, InvoicePaymentFailed):
                return
            logger.info("Membership updated for user %s by %s", user_id, event.type, extra=extra)
        elif transition.outcome == Outcome.DUPLICATE_SUBSCRIPTION:
            logger.warning(
                "User %s already has an active subscription: %s (new: %s)",
                user_id,
                transition.side_effects[0].data.get("existingSubscriptionId"),
                transition.side_effects[0].data.get("newSubscriptionId"),
                extra=extra,
            )
        elif transition.outcome == Outcome.USER_NOT_RESOLVED:
            logger.error("%s", transition.reason, extra=extra)
        else:
            logger.info("%s", transition.reason, extra=extra)
