"""
Tests for paywall/services/idempotency.py and paywall/utils/transactions.py -
claim protocol, compensation and stale claim reconciliation.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from paywall.exceptions import IdempotencyStoreError
from paywall.models.webhook_event import ProcessedWebhookEvent
from paywall.schemas.stripe_events import parse_envelope
from paywall.services.idempotency import FailureCompensator, IdempotencyStore
from paywall.utils.transactions import CommitResult, TransactionalStore, Write


def _envelope(event_id="evt_1", event_type="checkout.session.completed"):
    return parse_envelope({"id": event_id, "type": event_type, "created": 1700000000})


@pytest.fixture
def store(session_factory):
    return TransactionalStore(session_factory)


@pytest.fixture
def idempotency(store):
    return IdempotencyStore(store)


async def _claims(db):
    result = await db.execute(select(ProcessedWebhookEvent))
    return list(result.scalars().all())


class TestTransactionalStore:
    async def test_insert_when_absent(self, store, db):
        outcome = await store.read_then_write(
            ProcessedWebhookEvent,
            "evt_new",
            lambda current: Write(
                result=current is None,
                insert=ProcessedWebhookEvent(event_id="evt_new", event_type="x"),
            ),
        )
        assert outcome.result is True
        assert outcome.committed is True
        assert len(await _claims(db)) == 1

    async def test_primary_key_race_reported_as_conflict(self, store, db):
        db.add(ProcessedWebhookEvent(event_id="evt_taken", event_type="x"))
        await db.commit()

        # Reads a different key, so the insert collides only at commit time
        outcome = await store.read_then_write(
            ProcessedWebhookEvent,
            "evt_other",
            lambda current: Write(
                result=True,
                insert=ProcessedWebhookEvent(event_id="evt_taken", event_type="x"),
            ),
        )
        assert outcome.conflict is True
        assert outcome.committed is False

    async def test_constraint_violation_on_update_propagates(self, store, db):
        db.add(ProcessedWebhookEvent(event_id="evt_1", event_type="x"))
        await db.commit()

        with pytest.raises(IntegrityError):
            await store.read_then_write(
                ProcessedWebhookEvent, "evt_1", lambda current: Write(update={"event_type": None})
            )

    async def test_exception_in_fn_rolls_back(self, store, db):
        def _boom(current):
            raise RuntimeError("reducer exploded")

        with pytest.raises(RuntimeError):
            await store.read_then_write(ProcessedWebhookEvent, "evt_1", _boom)
        assert await _claims(db) == []

    async def test_delete_of_missing_row_is_not_committed(self, store):
        outcome = await store.read_then_write(
            ProcessedWebhookEvent, "evt_missing", lambda current: Write(delete=True)
        )
        assert outcome.committed is False


class TestClaim:
    async def test_first_claim_is_new(self, idempotency, db):
        result = await idempotency.claim(_envelope())
        assert result.is_new is True

        claims = await _claims(db)
        assert len(claims) == 1
        assert claims[0].event_id == "evt_1"
        assert claims[0].event_type == "checkout.session.completed"
        assert claims[0].applied_at is None

    async def test_second_claim_is_not_new(self, idempotency, db):
        await idempotency.claim(_envelope())
        result = await idempotency.claim(_envelope())
        assert result.is_new is False
        assert len(await _claims(db)) == 1

    async def test_lost_race_is_not_new(self):
        store = AsyncMock()
        store.read_then_write = AsyncMock(
            return_value=CommitResult(result=None, committed=False, conflict=True)
        )
        result = await IdempotencyStore(store).claim(_envelope())
        assert result.is_new is False

    async def test_store_failure_raises(self):
        store = AsyncMock()
        store.read_then_write = AsyncMock(side_effect=OSError("connection reset"))
        with pytest.raises(IdempotencyStoreError):
            await IdempotencyStore(store).claim(_envelope())

    async def test_mark_applied_stamps_record(self, idempotency):
        await idempotency.claim(_envelope())
        await idempotency.mark_applied("evt_1")
        record = await idempotency.get("evt_1")
        assert record.applied_at is not None

    async def test_mark_applied_failure_is_swallowed(self):
        store = AsyncMock()
        store.read_then_write = AsyncMock(side_effect=OSError("connection reset"))
        await IdempotencyStore(store).mark_applied("evt_1")


class TestFailureCompensator:
    async def test_release_deletes_claim(self, idempotency, db):
        await idempotency.claim(_envelope())
        released = await FailureCompensator(idempotency).release("evt_1")
        assert released is True
        assert await _claims(db) == []

    async def test_released_event_can_be_claimed_again(self, idempotency):
        await idempotency.claim(_envelope())
        await FailureCompensator(idempotency).release("evt_1")
        result = await idempotency.claim(_envelope())
        assert result.is_new is True

    async def test_release_is_idempotent(self, idempotency):
        compensator = FailureCompensator(idempotency)
        assert await compensator.release("evt_never_claimed") is False
        assert await compensator.release("evt_never_claimed") is False

    async def test_release_failure_is_swallowed(self):
        idempotency = AsyncMock()
        idempotency.release = AsyncMock(side_effect=OSError("connection reset"))
        assert await FailureCompensator(idempotency).release("evt_1") is False


class TestStaleClaims:
    async def _seed(self, db, event_id, minutes_ago, applied):
        claimed_at = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
        db.add(
            ProcessedWebhookEvent(
                event_id=event_id,
                event_type="customer.subscription.updated",
                received_at=claimed_at,
                processed_at=claimed_at,
                applied_at=claimed_at if applied else None,
            )
        )
        await db.commit()

    async def test_reconcile_releases_only_old_unapplied(self, idempotency, db):
        await self._seed(db, "evt_stale", minutes_ago=30, applied=False)
        await self._seed(db, "evt_fresh", minutes_ago=1, applied=False)
        await self._seed(db, "evt_done", minutes_ago=30, applied=True)

        released = await idempotency.reconcile_stale_claims(15)

        assert released == ["evt_stale"]
        remaining = {c.event_id for c in await _claims(db)}
        assert remaining == {"evt_fresh", "evt_done"}

    async def test_find_stale_claims(self, idempotency, db):
        await self._seed(db, "evt_stale", minutes_ago=30, applied=False)
        stale = await idempotency.find_stale_claims(15)
        assert [c.event_id for c in stale] == ["evt_stale"]
