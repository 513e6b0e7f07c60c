import threading
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from cache import TTLCache
from database import Base
from errors import ConcurrencyConflictError, PersistenceError
from ledger import LedgerStore, UserLocks, load_ledger
from models import BudgetMonth, Frequency
from schemas import AssignIn, CategoryIn, IncomeSourceIn
from services import BudgetService, CategoryService, IncomeService, SummaryService


def _locked_error() -> OperationalError:
    return OperationalError("UPDATE budget_months", {}, Exception("database is locked"))


def make_store(engine=None, **kwargs) -> LedgerStore:
    engine = engine or create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return LedgerStore(sessionmaker(bind=engine), **kwargs)


def test_user_lock_times_out_with_retryable_error():
    locks = UserLocks(timeout_secs=0.05)
    with locks.hold(1):
        with pytest.raises(PersistenceError) as exc:
            with locks.hold(1):
                pass
        assert exc.value.retryable is True

        # other users are not blocked
        with locks.hold(2):
            pass


def test_user_locks_are_released_when_idle():
    locks = UserLocks(timeout_secs=0.05)
    with locks.hold(1):
        with locks.hold(2):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0

    with pytest.raises(PersistenceError):
        with locks.hold(3):
            with locks.hold(3):
                pass
    assert len(locks) == 0


def test_user_lock_serializes_threads():
    locks = UserLocks(timeout_secs=5)
    events = []

    def worker(name: str) -> None:
        with locks.hold(1):
            events.append(f"{name}-in")
            events.append(f"{name}-out")

    threads = [threading.Thread(target=worker, args=(str(i),)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(events) == 8
    for i in range(0, 8, 2):
        assert events[i].endswith("-in")
        assert events[i + 1] == events[i].replace("-in", "-out")


def test_operational_error_is_retried_once():
    store = make_store()
    calls = []

    def flaky(session: Session) -> str:
        calls.append(1)
        if len(calls) == 1:
            raise _locked_error()
        return "ok"

    assert store.run(1, flaky) == "ok"
    assert len(calls) == 2


def test_persistent_operational_error_becomes_persistence_error():
    store = make_store()
    calls = []

    def broken(session: Session) -> None:
        calls.append(1)
        raise _locked_error()

    with pytest.raises(PersistenceError) as exc:
        store.run(1, broken)
    assert exc.value.retryable is True
    assert len(calls) == 2


def test_business_errors_are_not_retried():
    store = make_store()
    calls = []

    def rejected(session: Session) -> None:
        calls.append(1)
        raise ValueError("nope")

    with pytest.raises(ValueError):
        store.run(1, rejected)
    assert len(calls) == 1


def test_run_invalidates_cached_summaries():
    cache = TTLCache(3600)
    store = make_store(cache=cache)

    def setup(session: Session) -> int:
        IncomeService(session, 1).create_source(
            IncomeSourceIn(
                name="Salary",
                frequency=Frequency.monthly,
                amount_cents=100_000,
                anchor_date=date(2025, 1, 1),
            )
        )
        return CategoryService(session, 1).create(CategoryIn(name="Rent")).id

    rent_id = store.run(1, setup)

    def summary(session: Session) -> dict:
        return SummaryService(session, 1).month_summary("2025-01")

    assert store.read(1, ("summary", "2025-01"), summary)["ready_to_assign_cents"] == 100_000

    store.run(
        1,
        lambda session: BudgetService(session, 1).assign(
            AssignIn(month="2025-01", category_id=rent_id, amount_cents=40_000)
        ),
    )
    assert store.read(1, ("summary", "2025-01"), summary)["ready_to_assign_cents"] == 60_000


def test_users_are_isolated():
    store = make_store()

    def create(name: str, user_id: int):
        return lambda session: CategoryService(session, user_id).create(
            CategoryIn(name=name)
        ).id

    store.run(1, create("Rent", 1))
    store.run(2, create("Rent", 2))

    assert [c.name for c in store.snapshot(1).categories] == ["Rent"]
    assert [c.name for c in store.snapshot(2).categories] == ["Rent"]
    assert store.snapshot(3).categories == []


def test_stale_month_version_raises_concurrency_conflict(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)

    with Session(engine) as setup:
        IncomeService(setup).create_source(
            IncomeSourceIn(
                name="Salary",
                frequency=Frequency.monthly,
                amount_cents=400_000,
                anchor_date=date(2025, 1, 1),
            )
        )
        rent = CategoryService(setup).create(CategoryIn(name="Rent"))
        misc = CategoryService(setup).create(CategoryIn(name="Misc"))
        BudgetService(setup).assign(
            AssignIn(month="2025-01", category_id=rent.id, amount_cents=1_000)
        )
        rent_id, misc_id = rent.id, misc.id

    with Session(engine) as first, Session(engine) as second:
        stale = first.scalars(select(BudgetMonth)).one()
        version = stale.version

        BudgetService(second).assign(
            AssignIn(month="2025-01", category_id=misc_id, amount_cents=2_000)
        )
        assert second.scalars(select(BudgetMonth)).one().version == version + 1

        with pytest.raises(ConcurrencyConflictError):
            BudgetService(first).assign(
                AssignIn(month="2025-01", category_id=rent_id, amount_cents=5_000)
            )

        snapshot = load_ledger(first, 1)
        assigned = {item.category_id: item.assigned_cents for item in snapshot.items}
        assert assigned == {rent_id: 1_000, misc_id: 2_000}
