"""
Transactional read-then-write over a single row.

read_then_write(model, key, fn) opens one transaction, reads the row by primary
key with SELECT ... FOR UPDATE, hands it (or None) to fn, applies the Write that
fn returns, and commits. Two callers racing to insert the same key are
serialized by the primary key: the loser's insert raises IntegrityError, which
is reported as a conflict rather than an error.

Any other exception raised inside fn (or by the database) rolls the
transaction back and propagates to the caller.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


@dataclass
class Write:
    """What fn wants done to the row it was given."""
    result: Any = None
    insert: Any = None             # new ORM instance to add
    update: Optional[dict] = None  # column -> value, applied to the current row
    delete: bool = False


@dataclass
class CommitResult:
    result: Any
    committed: bool        # a write reached the database
    conflict: bool = False  # lost an insert race on the primary key


class TransactionalStore:
    def __init__(self, session_factory: Optional[Callable] = None):
        if session_factory is None:
            from paywall.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory

    def session(self):
        return self._session_factory()

    async def read_then_write(
        self,
        model,
        key,
        fn: Callable[[Any], Write],
    ) -> CommitResult:
        inserting = False
        async with self._session_factory() as db:
            try:
                async with db.begin():
                    current = await db.get(model, key, with_for_update=True)
                    write = fn(current)
                    wrote = False
                    if write.insert is not None:
                        db.add(write.insert)
                        inserting = wrote = True
                    elif write.delete:
                        if current is not None:
                            await db.delete(current)
                            wrote = True
                    elif write.update and current is not None:
                        for column, value in write.update.items():
                            setattr(current, column, value)
                        wrote = True
                return CommitResult(result=write.result, committed=wrote)
            except IntegrityError:
                # Only a lost insert race is a conflict; update and delete violations propagate
                if not inserting:
                    raise
                logger.info(
                    "Concurrent write conflict on %s key=%s",
                    model.__tablename__, key,
                )
                return CommitResult(result=None, committed=False, conflict=True)
