from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ValidationError
from ledger import load_ledger
from models import TransactionType
from schemas import (
    CategoryGroupIn,
    CategoryIn,
    CategoryOrder,
    CategoryUpdate,
    GroupOrder,
    ReorderIn,
    TransactionIn,
)
from services import CategoryService, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_names_are_unique_case_insensitively():
    with make_session() as session:
        categories = CategoryService(session)
        categories.create(CategoryIn(name="Groceries"))
        with pytest.raises(ValidationError):
            categories.create(CategoryIn(name="  groceries "))


def test_list_orders_by_group_then_category():
    with make_session() as session:
        categories = CategoryService(session)
        bills = categories.create_group(CategoryGroupIn(name="Bills", sort_order=1))
        fun = categories.create_group(CategoryGroupIn(name="Fun", sort_order=0))
        categories.create(CategoryIn(name="Rent", group_id=bills.id, sort_order=1))
        categories.create(CategoryIn(name="Power", group_id=bills.id, sort_order=0))
        categories.create(CategoryIn(name="Games", group_id=fun.id))
        categories.create(CategoryIn(name="Loose"))

        names = [c.name for c in categories.list_all()]
        assert names == ["Games", "Power", "Rent", "Loose"]


def test_new_categories_are_appended_to_their_group():
    with make_session() as session:
        categories = CategoryService(session)
        bills = categories.create_group(CategoryGroupIn(name="Bills"))
        water = categories.create(CategoryIn(name="Water", group_id=bills.id))
        power = categories.create(CategoryIn(name="Power", group_id=bills.id))
        rent = categories.create(CategoryIn(name="Rent"))
        misc = categories.create(CategoryIn(name="Misc"))

        assert (water.sort_order, power.sort_order) == (0, 1)
        assert (rent.sort_order, misc.sort_order) == (0, 1)
        names = [c.name for c in categories.list_all()]
        assert names == ["Water", "Power", "Rent", "Misc"]


def test_reorder_is_all_or_nothing():
    with make_session() as session:
        categories = CategoryService(session)
        group = categories.create_group(CategoryGroupIn(name="Bills"))
        rent = categories.create(CategoryIn(name="Rent", sort_order=0))
        power = categories.create(CategoryIn(name="Power", sort_order=1))
        before = load_ledger(session, 1)

        with pytest.raises(NotFoundError):
            categories.reorder(
                ReorderIn(
                    categories=[
                        CategoryOrder(category_id=rent.id, sort_order=5),
                        CategoryOrder(category_id=999, sort_order=0),
                    ]
                )
            )
        assert load_ledger(session, 1) == before

        categories.reorder(
            ReorderIn(
                categories=[
                    CategoryOrder(category_id=rent.id, group_id=group.id, sort_order=1),
                    CategoryOrder(category_id=power.id, group_id=group.id, sort_order=0),
                ],
                groups=[GroupOrder(group_id=group.id, sort_order=3)],
            )
        )
        assert [c.name for c in categories.list_all()] == ["Power", "Rent"]
        assert categories.list_groups()[0].sort_order == 3


def test_update_and_archive():
    with make_session() as session:
        categories = CategoryService(session)
        dining = categories.create(CategoryIn(name="Dining"))
        categories.update(
            dining.id, CategoryUpdate(name="Eating out", rollover=True, priority=1)
        )
        updated = categories.get(dining.id)
        assert updated.name == "Eating out"
        assert updated.rollover is True
        assert updated.priority == 1

        categories.archive(dining.id)
        assert categories.list_all() == []
        assert [c.id for c in categories.list_all(include_archived=True)] == [dining.id]
        with pytest.raises(NotFoundError):
            categories.get(dining.id)

        categories.restore(dining.id)
        assert categories.get(dining.id).archived_at is None


def test_delete_refuses_categories_with_history():
    with make_session() as session:
        categories = CategoryService(session)
        used = categories.create(CategoryIn(name="Used"))
        unused = categories.create(CategoryIn(name="Unused"))
        TransactionService(session).create(
            TransactionIn(
                date=date(2025, 1, 4),
                type=TransactionType.expense,
                amount_cents=1_000,
                category_id=used.id,
            )
        )

        with pytest.raises(ValidationError):
            categories.delete(used.id)
        categories.delete(unused.id)
        assert [c.name for c in categories.list_all()] == ["Used"]


def test_delete_group_ungroups_categories():
    with make_session() as session:
        categories = CategoryService(session)
        group = categories.create_group(CategoryGroupIn(name="Bills"))
        rent = categories.create(CategoryIn(name="Rent", group_id=group.id))
        categories.delete_group(group.id)
        assert categories.get(rent.id).group_id is None
        assert categories.list_groups() == []


def test_find_similar():
    with make_session() as session:
        categories = CategoryService(session)
        internet = categories.create(CategoryIn(name="Internet"))
        assert categories.find_similar("INTERNET").id == internet.id
        assert categories.find_similar("Internet service").id == internet.id
        assert categories.find_similar("Internt").id == internet.id
        assert categories.find_similar("Groceries") is None
        assert categories.find_similar("  ") is None
