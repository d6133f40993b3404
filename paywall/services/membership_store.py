"""
Membership state store - persisted read model of each user's membership.

apply() is the only write path for membership columns. It loads the user row
FOR UPDATE, runs the reducer against it and writes the reducer's changes in
one transaction, so two events for the same user cannot lose each other's
update. Missing users raise; that is a data-consistency problem upstream.
"""
import logging
from typing import Callable, Optional

from sqlalchemy import select

from paywall.exceptions import MembershipNotFoundError
from paywall.models.payment_failure import PaymentFailure
from paywall.models.user import User
from paywall.services.membership_reducer import MembershipState, Transition
from paywall.utils.transactions import TransactionalStore, Write

logger = logging.getLogger(__name__)

ACCESS_LEVELS = ("public", "paid")


class MembershipStateStore:
    def __init__(self, store: Optional[TransactionalStore] = None):
        self._store = store or TransactionalStore()

    async def apply(
        self,
        user_id: str,
        reducer: Callable[[MembershipState], Transition],
    ) -> Transition:
        """Run reducer against the user's current state and persist its changes atomically."""

        def _read_then_write(user: Optional[User]) -> Write:
            if user is None:
                raise MembershipNotFoundError(user_id)
            transition = reducer(MembershipState.from_user(user))
            return Write(result=transition, update=transition.changes or None)

        outcome = await self._store.read_then_write(User, user_id, _read_then_write)
        return outcome.result

    async def find_by_subscription_id(self, subscription_id: str) -> Optional[User]:
        """Indexed fallback lookup for events that carry no userId metadata."""
        if not subscription_id:
            return None
        async with self._store.session() as db:
            result = await db.execute(
                select(User).where(User.stripe_subscription_id == subscription_id).limit(1)
            )
            return result.scalar_one_or_none()

    async def find_by_customer_id(self, customer_id: str) -> Optional[User]:
        if not customer_id:
            return None
        async with self._store.session() as db:
            result = await db.execute(
                select(User).where(User.stripe_customer_id == customer_id).limit(1)
            )
            return result.scalar_one_or_none()

    async def get_membership(self, user_id: str) -> Optional[MembershipState]:
        async with self._store.session() as db:
            user = await db.get(User, user_id)
            if user is None:
                return None
            return MembershipState.from_user(user)

    async def record_payment_failure(self, **fields) -> PaymentFailure:
        """Append to the payment failure audit trail."""
        async with self._store.session() as db:
            async with db.begin():
                record = PaymentFailure(**fields)
                db.add(record)
        logger.error(
            "Payment failed for subscription %s (invoice %s, attempt %s)",
            fields.get("subscription_id"), fields.get("invoice_id"), fields.get("attempt_count"),
        )
        return record


def is_paid_member(state: Optional[MembershipState]) -> bool:
    return state is not None and state.membership == "paid"


def has_access(state: Optional[MembershipState], required_level: str) -> bool:
    """
    Gate content by membership. Public content is open to everyone, including
    guests (state=None); paid content requires membership='paid'.
    """
    if required_level not in ACCESS_LEVELS:
        raise ValueError(f"Unknown access level: {required_level}")
    if required_level == "public":
        return True
    return is_paid_member(state)
