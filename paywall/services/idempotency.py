"""
Idempotency claim protocol for Stripe webhook events.

1. claim() runs one transaction: read processed_webhook_events[event_id];
   if present -> is_new=False and nothing is written; otherwise insert the
   record and commit -> is_new=True.
2. Only the caller that saw is_new=True runs the reducer + membership write,
   outside the claim transaction.
3. If that work raises, FailureCompensator.release() deletes the record so
   the provider's redelivery is processed as new.
4. On success mark_applied() stamps applied_at. The record is never deleted
   after that.

Concurrent claims of the same id are decided by the primary key: exactly one
insert commits, the other sees a conflict and reports is_new=False.

A process crash between the claim commit and the membership write leaves a
record with applied_at=NULL. reconcile_stale_claims() releases those after
a grace period so the next redelivery is processed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select

from paywall.exceptions import IdempotencyStoreError
from paywall.models.webhook_event import ProcessedWebhookEvent
from paywall.utils.transactions import TransactionalStore, Write

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    is_new: bool


class IdempotencyStore:
    def __init__(self, store: Optional[TransactionalStore] = None):
        self._store = store or TransactionalStore()

    async def claim(self, event) -> ClaimResult:
        """
        Atomically claim event.id. event needs id, type, livemode and occurred_at.
        Raises IdempotencyStoreError if the transaction fails for any reason
        other than losing the insert race.
        """
        now = datetime.now(timezone.utc)

        def _claim(existing: Optional[ProcessedWebhookEvent]) -> Write:
            if existing is not None:
                return Write(result=False)
            return Write(
                result=True,
                insert=ProcessedWebhookEvent(
                    event_id=event.id,
                    event_type=event.type,
                    livemode=event.livemode,
                    created=event.occurred_at,
                    received_at=now,
                    processed_at=now,
                ),
            )

        try:
            outcome = await self._store.read_then_write(ProcessedWebhookEvent, event.id, _claim)
        except Exception as e:
            logger.error("Idempotency claim failed for %s: %s", event.id, str(e))
            raise IdempotencyStoreError(str(e)) from e

        if outcome.conflict:
            logger.info("Event %s claimed concurrently by another delivery", event.id)
            return ClaimResult(is_new=False)

        if not outcome.result:
            logger.info("Event %s already processed", event.id)
        return ClaimResult(is_new=bool(outcome.result))

    async def mark_applied(self, event_id: str) -> None:
        """Stamp applied_at once downstream work committed. Best-effort."""
        now = datetime.now(timezone.utc)
        try:
            await self._store.read_then_write(
                ProcessedWebhookEvent,
                event_id,
                lambda existing: Write(update={"applied_at": now}),
            )
        except Exception as e:
            # The mutation already committed; a missing stamp only means the
            # reconciler may release this claim and a redelivery re-applies it.
            logger.warning("Failed to mark event %s applied: %s", event_id, str(e))

    async def release(self, event_id: str) -> bool:
        """Delete the claim. Returns False if there was nothing to delete."""
        outcome = await self._store.read_then_write(
            ProcessedWebhookEvent,
            event_id,
            lambda existing: Write(delete=True),
        )
        return outcome.committed

    async def get(self, event_id: str) -> Optional[ProcessedWebhookEvent]:
        async with self._store.session() as db:
            return await db.get(ProcessedWebhookEvent, event_id)

    async def find_stale_claims(self, older_than_minutes: int) -> list[ProcessedWebhookEvent]:
        """Claims older than the grace period whose mutation never landed."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        async with self._store.session() as db:
            result = await db.execute(
                select(ProcessedWebhookEvent)
                .where(
                    ProcessedWebhookEvent.applied_at.is_(None),
                    ProcessedWebhookEvent.processed_at < cutoff,
                )
                .order_by(ProcessedWebhookEvent.processed_at)
            )
            return list(result.scalars().all())

    async def reconcile_stale_claims(self, older_than_minutes: int) -> list[str]:
        """
        Release claimed-but-never-applied events so redelivery can process them.
        The delete re-checks applied_at so a late mark_applied is never undone.
        """
        stale = await self.find_stale_claims(older_than_minutes)
        released = []
        for record in stale:
            async with self._store.session() as db:
                async with db.begin():
                    result = await db.execute(
                        delete(ProcessedWebhookEvent).where(
                            ProcessedWebhookEvent.event_id == record.event_id,
                            ProcessedWebhookEvent.applied_at.is_(None),
                        )
                    )
            if result.rowcount:
                released.append(record.event_id)
                logger.warning(
                    "Released stale webhook claim %s (%s) claimed at %s",
                    record.event_id, record.event_type, record.processed_at,
                )
        return released


class FailureCompensator:
    """Releases a claim after downstream processing failed, so redelivery retries it."""

    def __init__(self, idempotency: IdempotencyStore):
        self._idempotency = idempotency

    async def release(self, event_id: str) -> bool:
        """
        Best-effort and idempotent: an already-deleted claim is not an error,
        and a failed delete is logged rather than raised.
        """
        try:
            released = await self._idempotency.release(event_id)
        except Exception as e:
            logger.error(
                "Failed to release idempotency claim for %s: %s. "
                "Event will stay marked processed until reconciled.",
                event_id, str(e),
            )
            return False
        if released:
            logger.info("Released idempotency claim for %s", event_id)
        else:
            logger.info("No idempotency claim to release for %s", event_id)
        return released
