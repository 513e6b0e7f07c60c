from datetime import date, datetime

import pydantic
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from config import get_settings
from database import Base
from errors import AlreadyProcessedError, AlreadyReceivedError, NotFoundError, ValidationError
from ledger import load_ledger
from models import BudgetItem, Frequency, OccurrenceStatus, Transaction, TransactionType
from schemas import AssignIn, CategoryIn, IncomeSourceIn, ReceiveIncomeIn
from services import BudgetService, CategoryService, IncomeService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _source(session: Session, amount_cents: int = 400_000):
    return IncomeService(session).create_source(
        IncomeSourceIn(
            name="Salary",
            frequency=Frequency.monthly,
            amount_cents=amount_cents,
            anchor_date=date(2025, 1, 15),
        )
    )


@pytest.fixture
def realized_policy(monkeypatch):
    monkeypatch.setenv("LEDGER_INCOME_POLICY", "realized")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_receive_posts_income_and_raises_rta_by_amount():
    with make_session() as session:
        source = _source(session)
        income = IncomeService(session)
        occurrence = income.create_occurrence(source.id, date(2025, 1, 15))

        result = income.receive(
            occurrence.id,
            ReceiveIncomeIn(amount_cents=395_000),
            now=datetime(2025, 1, 15, 9, 0),
        )

        assert result.budget_month == "2025-01"
        assert result.rta_increase_cents == 395_000
        txn = result.transaction
        assert txn.type == TransactionType.income
        assert txn.amount_cents == 395_000
        assert txn.category_id is None
        assert txn.source_id == source.id
        assert txn.budget_month == "2025-01"
        assert txn.account_id == "default_account"

        occ = income.get_occurrence(occurrence.id)
        assert occ.status == OccurrenceStatus.received
        assert occ.tx_id == txn.id
        assert occ.net == 395_000
        assert occ.posted_at == datetime(2025, 1, 15, 9, 0)

        month_row = BudgetService(session).get_month("2025-01")
        assert month_row.received_income_cents == 395_000
        assert month_row.expected_income_cents == 400_000 + 395_000
        assert session.scalars(select(BudgetItem)).all() == []


def test_scenario_d_second_receive_is_rejected_and_ledger_unchanged():
    with make_session() as session:
        source = _source(session)
        income = IncomeService(session)
        occurrence = income.create_occurrence(source.id, date(2025, 1, 15))
        first = income.receive(occurrence.id)
        after_first = load_ledger(session, 1)

        with pytest.raises(AlreadyReceivedError) as exc:
            income.receive(occurrence.id)
        assert isinstance(exc.value, AlreadyProcessedError)
        assert exc.value.details["tx_id"] == first.transaction.id

        assert load_ledger(session, 1) == after_first
        assert len(session.scalars(select(Transaction)).all()) == 1


def test_receive_unknown_occurrence():
    with make_session() as session:
        with pytest.raises(NotFoundError):
            IncomeService(session).receive(404)


def test_receive_near_month_end_can_fund_next_month():
    with make_session() as session:
        source = _source(session)
        income = IncomeService(session)
        occurrence = income.create_occurrence(source.id, date(2025, 1, 30))

        result = income.receive(
            occurrence.id,
            ReceiveIncomeIn(date=date(2025, 1, 30), budget_month_choice="next"),
        )

        assert result.budget_month == "2025-02"
        assert result.transaction.budget_month == "2025-02"
        assert result.transaction.date == date(2025, 1, 30)
        assert BudgetService(session).get_month("2025-01") is None
        assert BudgetService(session).get_month("2025-02").received_income_cents == 400_000


def test_next_month_choice_outside_threshold_is_rejected():
    with make_session() as session:
        source = _source(session)
        income = IncomeService(session)
        occurrence = income.create_occurrence(source.id, date(2025, 1, 20))
        before = load_ledger(session, 1)

        with pytest.raises(ValidationError):
            income.receive(
                occurrence.id,
                ReceiveIncomeIn(date=date(2025, 1, 20), budget_month_choice="next"),
            )
        assert load_ledger(session, 1) == before


def test_received_income_funds_assignments():
    with make_session() as session:
        source = _source(session, amount_cents=0)
        rent = CategoryService(session).create(CategoryIn(name="Rent"))
        income = IncomeService(session)
        occurrence = income.create_occurrence(source.id, date(2025, 1, 15), net=150_000)
        income.receive(occurrence.id)

        result = BudgetService(session).assign(
            AssignIn(month="2025-01", category_id=rent.id, amount_cents=150_000)
        )
        assert result.new_rta_cents == 0


def test_realized_policy_uses_received_income_only(realized_policy):
    with make_session() as session:
        source = _source(session)
        income = IncomeService(session)
        occurrence = income.create_occurrence(source.id, date(2025, 1, 15))

        budgets = BudgetService(session)
        budgets.refresh_income("2025-01")
        assert budgets.ready_to_assign("2025-01") == 0

        result = income.receive(occurrence.id, ReceiveIncomeIn(amount_cents=390_000))
        assert result.rta_increase_cents == 390_000
        month_row = budgets.get_month("2025-01")
        assert month_row.forecast_income_cents == 400_000
        assert month_row.expected_income_cents == 390_000


def test_generate_occurrences_is_idempotent():
    with make_session() as session:
        _source(session)
        income = IncomeService(session)

        created = income.generate_occurrences(date(2025, 3, 31), today=date(2025, 1, 1))
        assert created == 3
        assert income.generate_occurrences(date(2025, 3, 31), today=date(2025, 1, 1)) == 0

        scheduled = income.list_occurrences(status=OccurrenceStatus.scheduled)
        assert [occ.scheduled_at for occ in scheduled] == [
            date(2025, 1, 15),
            date(2025, 2, 15),
            date(2025, 3, 15),
        ]


def test_inactive_sources_do_not_forecast_or_schedule():
    with make_session() as session:
        source = _source(session)
        income = IncomeService(session)
        income.set_active(source.id, False)

        assert income.generate_occurrences(date(2025, 3, 31), today=date(2025, 1, 1)) == 0
        assert BudgetService(session).forecast_income() == 0


def test_duplicate_occurrence_date_rejected():
    with make_session() as session:
        source = _source(session)
        income = IncomeService(session)
        income.create_occurrence(source.id, date(2025, 1, 15))
        with pytest.raises(ValidationError):
            income.create_occurrence(source.id, date(2025, 1, 15))


def test_income_source_frequency_is_restricted():
    with pytest.raises(pydantic.ValidationError):
        IncomeSourceIn(
            name="Bonus",
            frequency=Frequency.annual,
            amount_cents=100,
            anchor_date=date(2025, 1, 1),
        )
