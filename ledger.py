import logging
import threading
from contextlib import contextmanager
from typing import Callable, Hashable, Iterator, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cache import TTLCache
from config import get_settings
from database import SessionLocal, session_scope
from errors import PersistenceError
from models import (
    Bill,
    BillCategoryLink,
    BillOccurrence,
    BillPayment,
    BudgetItem,
    BudgetMonth,
    Category,
    CategoryGroup,
    IncomeOccurrence,
    IncomeSource,
    Transaction,
)
from schemas import (
    BillCategoryLinkRow,
    BillOccurrenceRow,
    BillPaymentRow,
    BillRow,
    BudgetItemRow,
    BudgetMonthRow,
    CategoryGroupRow,
    CategoryRow,
    IncomeOccurrenceRow,
    IncomeSourceRow,
    LedgerSnapshot,
    TransactionRow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UserLocks:
    """One mutex per user; mutations for a user never interleave.

    A user's lock is dropped once no caller holds or waits for it.
    """

    def __init__(self, timeout_secs: float) -> None:
        self.timeout_secs = timeout_secs
        # user_id -> [lock, callers holding or waiting]
        self._locks: dict[int, list] = {}
        self._guard = threading.Lock()

    def _checkout(self, user_id: int) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, user_id: int) -> None:
        with self._guard:
            entry = self._locks[user_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, user_id: int) -> Iterator[None]:
        lock = self._checkout(user_id)
        try:
            if not lock.acquire(timeout=self.timeout_secs):
                logger.warning(f"ledger_lock_timeout: user={user_id}")
                raise PersistenceError(
                    "Timed out waiting for the ledger; try again", user_id=user_id
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(user_id)


class LedgerStore:
    """Entry point for running ledger operations against storage.

    ``run`` executes a mutation under the user's lock in a fresh session and
    drops that user's cached summaries afterwards. ``read`` serves summaries
    through the TTL cache without taking the lock.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        locks: Optional[UserLocks] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory or SessionLocal
        self.locks = locks or UserLocks(settings.lock_timeout_secs)
        self.cache = cache or TTLCache(settings.summary_cache_ttl_secs)

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _attempt(self, fn: Callable[[Session], T]) -> T:
        with session_scope(self.session_factory) as session:
            return fn(session)

    def execute(self, user_id: int, fn: Callable[[Session], T]) -> T:
        try:
            return self._attempt(fn)
        except OperationalError as exc:
            logger.error(f"ledger_storage_failed: user={user_id} error={exc}")
            raise PersistenceError(
                "Ledger storage is unavailable; try again", user_id=user_id
            ) from exc

    def run(self, user_id: int, fn: Callable[[Session], T]) -> T:
        with self.locks.hold(user_id):
            try:
                return self.execute(user_id, fn)
            finally:
                self.cache.invalidate_user(user_id)

    def read(self, user_id: int, key: Hashable, fn: Callable[[Session], T]) -> T:
        return self.cache.get_or_load(
            (user_id, key), lambda: self.execute(user_id, fn)
        )

    def snapshot(self, user_id: int) -> LedgerSnapshot:
        return self.execute(user_id, lambda session: load_ledger(session, user_id))


def _rows(session: Session, model, row_type, user_id: int) -> list:
    stmt = select(model).where(model.user_id == user_id).order_by(model.id)
    return [row_type.model_validate(obj) for obj in session.scalars(stmt).all()]


def load_ledger(session: Session, user_id: int) -> LedgerSnapshot:
    """Full persisted state for one user, as plain comparable values."""
    return LedgerSnapshot(
        user_id=user_id,
        groups=_rows(session, CategoryGroup, CategoryGroupRow, user_id),
        categories=_rows(session, Category, CategoryRow, user_id),
        months=_rows(session, BudgetMonth, BudgetMonthRow, user_id),
        items=_rows(session, BudgetItem, BudgetItemRow, user_id),
        income_sources=_rows(session, IncomeSource, IncomeSourceRow, user_id),
        income_occurrences=_rows(
            session, IncomeOccurrence, IncomeOccurrenceRow, user_id
        ),
        bills=_rows(session, Bill, BillRow, user_id),
        bill_occurrences=_rows(session, BillOccurrence, BillOccurrenceRow, user_id),
        bill_payments=_rows(session, BillPayment, BillPaymentRow, user_id),
        bill_links=_rows(session, BillCategoryLink, BillCategoryLinkRow, user_id),
        transactions=_rows(session, Transaction, TransactionRow, user_id),
    )
