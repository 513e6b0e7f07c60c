from datetime import date

import pydantic
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ValidationError
from ledger import load_ledger
from models import Frequency, TransactionType
from schemas import (
    AssignIn,
    AutoAssignIn,
    CategoryIn,
    IncomeSourceIn,
    RebalanceIn,
    RebalanceMoveIn,
    TransactionIn,
)
from services import BudgetService, CategoryService, IncomeService, TransactionService

JAN = "2025-01"


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _salary(session: Session) -> None:
    IncomeService(session).create_source(
        IncomeSourceIn(
            name="Salary",
            frequency=Frequency.monthly,
            amount_cents=400_000,
            anchor_date=date(2025, 1, 1),
        )
    )


def _targets(session: Session):
    categories = CategoryService(session)
    fun = categories.create(
        CategoryIn(name="Fun", priority=5, monthly_budget_cents=50_000)
    )
    rent = categories.create(
        CategoryIn(name="Rent", priority=1, monthly_budget_cents=150_000)
    )
    groceries = categories.create(
        CategoryIn(name="Groceries", priority=2, monthly_budget_cents=300_000)
    )
    categories.create(CategoryIn(name="Misc"))
    return fun, rent, groceries


def _assigned(session: Session) -> dict[int, int]:
    return {
        item.category_id: item.assigned_cents
        for item in load_ledger(session, 1).items
    }


def test_auto_assign_funds_targets_by_priority():
    with make_session() as session:
        _salary(session)
        fun, rent, groceries = _targets(session)
        budgets = BudgetService(session)

        result = budgets.auto_assign(AutoAssignIn(month=JAN))

        assert result.applied is True
        assert [(a.category_id, a.amount_cents) for a in result.allocations] == [
            (rent.id, 150_000),
            (groceries.id, 250_000),
        ]
        assert result.total_cents == 400_000
        assert result.remaining_rta_cents == 0
        assert budgets.ready_to_assign(JAN) == 0
        assert _assigned(session) == {rent.id: 150_000, groceries.id: 250_000}


def test_auto_assign_tops_up_existing_assignments():
    with make_session() as session:
        _salary(session)
        fun, rent, groceries = _targets(session)
        budgets = BudgetService(session)
        budgets.assign(AssignIn(month=JAN, category_id=rent.id, amount_cents=100_000))

        result = budgets.auto_assign(AutoAssignIn(month=JAN))

        rent_allocation = result.allocations[0]
        assert rent_allocation.assigned_cents == 100_000
        assert rent_allocation.amount_cents == 50_000
        assert _assigned(session)[rent.id] == 150_000
        assert _assigned(session)[groceries.id] == 250_000
        assert fun.id not in _assigned(session)


def test_auto_assign_dry_run_leaves_ledger_untouched():
    with make_session() as session:
        _salary(session)
        _, rent, groceries = _targets(session)
        budgets = BudgetService(session)
        before = load_ledger(session, 1)

        plan = budgets.auto_assign(AutoAssignIn(month=JAN, dry_run=True))

        assert plan.applied is False
        assert plan.total_cents == 400_000
        assert budgets.get_month(JAN) is None
        assert load_ledger(session, 1) == before


def test_auto_assign_without_money_does_nothing():
    with make_session() as session:
        _salary(session)
        _, rent, _ = _targets(session)
        budgets = BudgetService(session)
        budgets.assign(AssignIn(month=JAN, category_id=rent.id, amount_cents=400_000))

        result = budgets.auto_assign(AutoAssignIn(month=JAN))

        assert result.allocations == []
        assert result.remaining_rta_cents == 0


def _overspent_month(session: Session):
    _salary(session)
    categories = CategoryService(session)
    dining = categories.create(CategoryIn(name="Dining", priority=4))
    savings = categories.create(CategoryIn(name="Savings", priority=5))
    groceries = categories.create(CategoryIn(name="Groceries", priority=2))
    budgets = BudgetService(session)
    budgets.assign(AssignIn(month=JAN, category_id=dining.id, amount_cents=20_000))
    budgets.assign(AssignIn(month=JAN, category_id=savings.id, amount_cents=8_000))
    budgets.assign(AssignIn(month=JAN, category_id=groceries.id, amount_cents=10_000))
    TransactionService(session).create(
        TransactionIn(
            date=date(2025, 1, 18),
            type=TransactionType.expense,
            amount_cents=22_000,
            category_id=groceries.id,
        )
    )
    return dining, savings, groceries


def test_suggested_moves_draw_from_least_important_first():
    with make_session() as session:
        dining, savings, groceries = _overspent_month(session)

        moves = BudgetService(session).suggest_rebalance(JAN)

        assert [m.model_dump() for m in moves] == [
            {
                "from_category_id": savings.id,
                "to_category_id": groceries.id,
                "amount_cents": 8_000,
            },
            {
                "from_category_id": dining.id,
                "to_category_id": groceries.id,
                "amount_cents": 4_000,
            },
        ]


def test_rebalance_applies_moves_without_changing_rta():
    with make_session() as session:
        dining, savings, groceries = _overspent_month(session)
        budgets = BudgetService(session)
        rta = budgets.ready_to_assign(JAN)

        result = budgets.rebalance(
            RebalanceIn(month=JAN, moves=budgets.suggest_rebalance(JAN))
        )

        assert result.total_moved_cents == 12_000
        assert result.ready_to_assign_cents == rta == 362_000
        assert _assigned(session) == {
            dining.id: 16_000,
            savings.id: 0,
            groceries.id: 22_000,
        }
        assert budgets.suggest_rebalance(JAN) == []


def test_rebalance_is_all_or_nothing():
    with make_session() as session:
        dining, savings, groceries = _overspent_month(session)
        budgets = BudgetService(session)
        before = load_ledger(session, 1)

        with pytest.raises(ValidationError) as exc:
            budgets.rebalance(
                RebalanceIn(
                    month=JAN,
                    moves=[
                        RebalanceMoveIn(
                            from_category_id=dining.id,
                            to_category_id=groceries.id,
                            amount_cents=5_000,
                        ),
                        RebalanceMoveIn(
                            from_category_id=savings.id,
                            to_category_id=groceries.id,
                            amount_cents=9_000,
                        ),
                    ],
                )
            )
        assert exc.value.details["assigned_cents"] == 8_000
        assert load_ledger(session, 1) == before


def test_rebalance_rejects_invalid_moves():
    with make_session() as session:
        dining, _, groceries = _overspent_month(session)
        misc = CategoryService(session).create(CategoryIn(name="Misc"))
        budgets = BudgetService(session)

        with pytest.raises(ValidationError):
            budgets.rebalance(
                RebalanceIn(
                    month=JAN,
                    moves=[
                        RebalanceMoveIn(
                            from_category_id=dining.id,
                            to_category_id=dining.id,
                            amount_cents=1_000,
                        )
                    ],
                )
            )
        with pytest.raises(ValidationError):
            budgets.rebalance(
                RebalanceIn(
                    month=JAN,
                    moves=[
                        RebalanceMoveIn(
                            from_category_id=misc.id,
                            to_category_id=groceries.id,
                            amount_cents=1_000,
                        )
                    ],
                )
            )
        with pytest.raises(pydantic.ValidationError):
            RebalanceIn(month=JAN, moves=[])
