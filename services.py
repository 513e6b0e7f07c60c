from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import (
    AlreadyProcessedError,
    AlreadyReceivedError,
    BillNotFoundError,
    CategoryNotFoundError,
    ConcurrencyConflictError,
    NotFoundError,
    OccurrenceNotFoundError,
    OverAssignmentError,
    ValidationError,
)
from models import (
    OPEN_BILL_STATUSES,
    Bill,
    BillCategoryLink,
    BillOccurrence,
    BillPayment,
    BillStatus,
    BudgetItem,
    BudgetMonth,
    Category,
    CategoryGroup,
    IncomeOccurrence,
    IncomeSource,
    OccurrenceStatus,
    Transaction,
    TransactionType,
)
from money import ensure_cents, format_cents, sum_cents
from periods import (
    month_key,
    month_period,
    next_month,
    parse_month,
    previous_month,
    resolve_budget_month,
)
from recurrence import iter_occurrence_dates, local_today, monthly_equivalent
from schemas import (
    AssignIn,
    AutoAssignIn,
    BillIn,
    CategoryGroupIn,
    CategoryIn,
    CategoryUpdate,
    IncomeSourceIn,
    LinkBillIn,
    PayBillIn,
    RebalanceIn,
    RebalanceMoveIn,
    ReceiveIncomeIn,
    ReorderIn,
    TransactionIn,
)

logger = logging.getLogger(__name__)

BILL_CATEGORY_GROUP = "Essentials"


def get_current_user_id() -> int:
    return 1


@contextmanager
def atomic(session: Session) -> Iterator[None]:
    """Commit everything done inside the block together, or nothing at all."""
    try:
        yield
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConcurrencyConflictError(
            "Budget month was changed by another writer; reload and retry"
        ) from exc
    except Exception:
        session.rollback()
        raise


@dataclass(frozen=True)
class MonthState:
    month: str
    materialized: bool
    expected_income_cents: int
    forecast_income_cents: int
    received_income_cents: int
    assigned_cents: int
    spent_cents: int
    leftover_cents: int
    carried_overspend_cents: int
    allow_over_assign: bool

    @property
    def ready_to_assign_cents(self) -> int:
        return (
            self.expected_income_cents
            + self.leftover_cents
            - self.assigned_cents
            - self.carried_overspend_cents
        )


@dataclass(frozen=True)
class AssignResult:
    new_rta_cents: int
    over_assigned: bool
    item: BudgetItem


@dataclass(frozen=True)
class Allocation:
    category_id: int
    name: str
    priority: int
    assigned_cents: int
    amount_cents: int


@dataclass(frozen=True)
class AutoAssignResult:
    month: str
    allocations: list[Allocation]
    total_cents: int
    remaining_rta_cents: int
    applied: bool


@dataclass(frozen=True)
class RebalanceResult:
    month: str
    total_moved_cents: int
    ready_to_assign_cents: int
    items: list[BudgetItem]


@dataclass(frozen=True)
class ReceiveResult:
    transaction: Transaction
    occurrence: IncomeOccurrence
    budget_month: str
    rta_increase_cents: int


@dataclass(frozen=True)
class PayResult:
    transaction: Transaction
    payment: BillPayment
    occurrence: Optional[BillOccurrence]


@dataclass(frozen=True)
class LinkResult:
    link: BillCategoryLink
    category: Category
    suggested_monthly_cents: int
    created_category: bool


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, category_id: int, *, include_archived: bool = False) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise CategoryNotFoundError(category_id)
        if category.archived_at and not include_archived:
            raise CategoryNotFoundError(category_id)
        return category

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .outerjoin(CategoryGroup, Category.group_id == CategoryGroup.id)
            .options(joinedload(Category.group))
            .where(Category.user_id == self.user_id)
            .order_by(
                CategoryGroup.id.is_(None),
                CategoryGroup.sort_order,
                CategoryGroup.id,
                Category.sort_order,
                Category.name,
            )
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return list(self.session.scalars(stmt).unique().all())

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _check_group(self, group_id: Optional[int]) -> None:
        if group_id is None:
            return
        group = self.session.get(CategoryGroup, group_id)
        if not group or group.user_id != self.user_id:
            raise NotFoundError("Category group", group_id)

    def _next_sort_order(self, group_id: Optional[int]) -> int:
        stmt = select(func.coalesce(func.max(Category.sort_order), -1)).where(
            Category.user_id == self.user_id
        )
        if group_id is None:
            stmt = stmt.where(Category.group_id.is_(None))
        else:
            stmt = stmt.where(Category.group_id == group_id)
        return self.session.scalar(stmt) + 1

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        if self._name_taken(name):
            raise ValidationError("Category with this name already exists", name=name)
        self._check_group(data.group_id)
        category = Category(
            user_id=self.user_id,
            name=name,
            group_id=data.group_id,
            sort_order=(
                data.sort_order
                if data.sort_order is not None
                else self._next_sort_order(data.group_id)
            ),
            rollover=data.rollover,
            priority=data.priority,
            monthly_budget_cents=data.monthly_budget_cents,
        )
        with atomic(self.session):
            self.session.add(category)
        return category

    def update(
        self,
        category_id: int,
        data: CategoryUpdate,
        *,
        allow_over_assign: bool = False,
    ) -> Category:
        category = self.get(category_id, include_archived=True)
        fields = data.model_fields_set
        name = data.name.strip() if data.name is not None else None
        if name is not None and self._name_taken(name, exclude_id=category.id):
            raise ValidationError("Category with this name already exists", name=name)
        if "group_id" in fields:
            self._check_group(data.group_id)
        rollover_changed = (
            data.rollover is not None and data.rollover != category.rollover
        )

        with atomic(self.session):
            if name:
                category.name = name
            if "group_id" in fields:
                category.group_id = data.group_id
            if rollover_changed:
                category.rollover = data.rollover
                self._reapply_rollover(category, allow_over_assign)
            if data.priority is not None:
                category.priority = data.priority
            if data.monthly_budget_cents is not None:
                category.monthly_budget_cents = data.monthly_budget_cents
        return category

    def _reapply_rollover(self, category: Category, allow_over_assign: bool) -> None:
        """Rewrite carry-forward into each month that follows a budgeted one."""
        self.session.flush()
        months = self.session.scalars(
            select(BudgetItem.month)
            .where(
                BudgetItem.user_id == self.user_id,
                BudgetItem.category_id == category.id,
            )
            .distinct()
            .order_by(BudgetItem.month)
        ).all()
        budgets = BudgetService(self.session, self.user_id)
        rollover = RolloverCalculator(self.session, self.user_id)
        for month in months:
            month_row = budgets.get_month(next_month(month))
            if month_row is None:
                continue
            before = budgets.ready_to_assign(month_row.month)
            rollover.apply_to(month_row.month)
            budgets._guard_rta(month_row, before, allow_over_assign)

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        with atomic(self.session):
            category.archived_at = datetime.utcnow()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id, include_archived=True)
        with atomic(self.session):
            category.archived_at = None

    def delete(self, category_id: int) -> None:
        category = self.get(category_id, include_archived=True)
        referenced = self.session.scalar(
            select(func.count(BudgetItem.id)).where(BudgetItem.category_id == category.id)
        ) or self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category.id
            )
        )
        if referenced:
            raise ValidationError(
                "Category has budget history; archive it instead",
                category_id=category.id,
            )
        with atomic(self.session):
            for link in self.session.scalars(
                select(BillCategoryLink).where(BillCategoryLink.category_id == category.id)
            ):
                self.session.delete(link)
            for bill in self.session.scalars(
                select(Bill).where(Bill.category_id == category.id)
            ):
                bill.category_id = None
            self.session.delete(category)

    def find_similar(self, name: str) -> Optional[Category]:
        """Case-insensitive exact, substring or one-edit match on name."""
        target = name.strip().lower()
        if not target:
            return None
        candidates = self.list_all()
        for category in candidates:
            if category.name.lower() == target:
                return category
        for category in candidates:
            name = category.name.lower()
            if target in name or name in target:
                return category
        for category in candidates:
            if Levenshtein.distance(category.name.lower(), target) <= 1:
                return category
        return None

    def list_groups(self) -> list[CategoryGroup]:
        stmt = (
            select(CategoryGroup)
            .where(CategoryGroup.user_id == self.user_id)
            .order_by(CategoryGroup.sort_order, CategoryGroup.id)
        )
        return list(self.session.scalars(stmt).all())

    def _find_group(self, name: str) -> Optional[CategoryGroup]:
        return self.session.scalar(
            select(CategoryGroup).where(
                CategoryGroup.user_id == self.user_id,
                func.lower(CategoryGroup.name) == name.strip().lower(),
            )
        )

    def create_group(self, data: CategoryGroupIn) -> CategoryGroup:
        name = data.name.strip()
        if not name:
            raise ValidationError("Group name cannot be empty")
        if self._find_group(name):
            raise ValidationError("Group with this name already exists", name=name)
        group = CategoryGroup(user_id=self.user_id, name=name, sort_order=data.sort_order)
        with atomic(self.session):
            self.session.add(group)
        return group

    def _get_or_create_group(self, name: str) -> CategoryGroup:
        group = self._find_group(name)
        if group:
            return group
        next_order = self.session.scalar(
            select(func.coalesce(func.max(CategoryGroup.sort_order), -1)).where(
                CategoryGroup.user_id == self.user_id
            )
        )
        group = CategoryGroup(user_id=self.user_id, name=name, sort_order=next_order + 1)
        self.session.add(group)
        self.session.flush()
        return group

    def delete_group(self, group_id: int) -> None:
        group = self.session.get(CategoryGroup, group_id)
        if not group or group.user_id != self.user_id:
            raise NotFoundError("Category group", group_id)
        with atomic(self.session):
            for category in list(group.categories):
                category.group_id = None
            self.session.delete(group)

    def reorder(self, data: ReorderIn) -> None:
        categories = {}
        for entry in data.categories:
            categories[entry.category_id] = self.get(
                entry.category_id, include_archived=True
            )
            self._check_group(entry.group_id)
        groups = {}
        for entry in data.groups:
            group = self.session.get(CategoryGroup, entry.group_id)
            if not group or group.user_id != self.user_id:
                raise NotFoundError("Category group", entry.group_id)
            groups[entry.group_id] = group

        with atomic(self.session):
            for entry in data.categories:
                category = categories[entry.category_id]
                category.sort_order = entry.sort_order
                if entry.group_id is not None:
                    category.group_id = entry.group_id
            for entry in data.groups:
                groups[entry.group_id].sort_order = entry.sort_order


class RolloverCalculator:
    """Carry-forward between adjacent months.

    Leftover is always derived from the source month's budget items on
    demand; the values written into the following month are overwritten every
    time the source month changes.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _items_with_categories(self, month: str) -> list[BudgetItem]:
        self.session.flush()
        stmt = (
            select(BudgetItem)
            .options(joinedload(BudgetItem.category))
            .where(BudgetItem.user_id == self.user_id, BudgetItem.month == month)
        )
        return list(self.session.scalars(stmt).all())

    def compute_rollover(self, month: str) -> dict[int, int]:
        parse_month(month)
        category_ids = self.session.scalars(
            select(Category.id).where(Category.user_id == self.user_id)
        ).all()
        leftovers = {category_id: 0 for category_id in category_ids}
        for item in self._items_with_categories(month):
            if item.category.rollover:
                leftovers[item.category_id] = max(
                    item.assigned_cents - item.spent_cents, 0
                )
        return leftovers

    def carried_overspend(self, month: str) -> int:
        total = 0
        for item in self._items_with_categories(month):
            if item.category.rollover:
                total += max(item.spent_cents - item.assigned_cents, 0)
        return total

    def apply_to(self, month: str) -> dict[int, int]:
        """Write the previous month's carry-forward into ``month``."""
        source = previous_month(month)
        leftovers = self.compute_rollover(source)
        overspend = self.carried_overspend(source)

        month_row = self.session.scalar(
            select(BudgetMonth).where(
                BudgetMonth.user_id == self.user_id, BudgetMonth.month == month
            )
        )
        if month_row is None:
            return leftovers

        existing = {item.category_id: item for item in self._items_with_categories(month)}
        for category_id, leftover in leftovers.items():
            item = existing.get(category_id)
            if item is None:
                if leftover == 0:
                    continue
                item = BudgetItem(
                    user_id=self.user_id,
                    month=month,
                    category_id=category_id,
                    assigned_cents=0,
                    spent_cents=0,
                    leftover_from_prev_cents=0,
                )
                self.session.add(item)
            item.leftover_from_prev_cents = leftover
        month_row.carried_overspend_cents = overspend
        month_row.updated_at = datetime.utcnow()
        self.session.flush()
        logger.info(
            f"rollover_applied: user={self.user_id} from={source} to={month} "
            f"leftover={sum(leftovers.values())} overspend={overspend}"
        )
        return leftovers


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = get_settings()

    def get_month(self, month: str) -> Optional[BudgetMonth]:
        parse_month(month)
        return self.session.scalar(
            select(BudgetMonth).where(
                BudgetMonth.user_id == self.user_id, BudgetMonth.month == month
            )
        )

    def _items(self, month: str) -> list[BudgetItem]:
        self.session.flush()
        stmt = select(BudgetItem).where(
            BudgetItem.user_id == self.user_id, BudgetItem.month == month
        )
        return list(self.session.scalars(stmt).all())

    def _item(self, month: str, category_id: int) -> Optional[BudgetItem]:
        self.session.flush()
        return self.session.scalar(
            select(BudgetItem).where(
                BudgetItem.user_id == self.user_id,
                BudgetItem.month == month,
                BudgetItem.category_id == category_id,
            )
        )

    def forecast_income(self) -> int:
        sources = IncomeService(self.session, self.user_id).active_sources()
        return sum(
            monthly_equivalent(source.amount_cents, source.frequency)
            for source in sources
        )

    def _received_income(self, month: str) -> int:
        self.session.flush()
        return int(
            self.session.scalar(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.budget_month == month,
                    Transaction.type == TransactionType.income,
                    Transaction.deleted_at.is_(None),
                )
            )
            or 0
        )

    def _expected_from(self, forecast: int, received: int) -> int:
        if self.settings.income_policy == "realized":
            return received
        return forecast + received

    def _refresh_income(self, month_row: BudgetMonth) -> None:
        received = self._received_income(month_row.month)
        month_row.received_income_cents = received
        month_row.expected_income_cents = self._expected_from(
            month_row.forecast_income_cents, received
        )

    def _touch(self, month_row: BudgetMonth) -> None:
        # any UPDATE bumps the version column and checks the old one
        month_row.updated_at = datetime.utcnow()
        self.session.flush()

    def _ensure_month(self, month: str) -> BudgetMonth:
        month_row = self.get_month(month)
        if month_row:
            return month_row
        forecast = self.forecast_income()
        month_row = BudgetMonth(
            user_id=self.user_id,
            month=month,
            forecast_income_cents=forecast,
            expected_income_cents=forecast,
            received_income_cents=0,
            carried_overspend_cents=0,
            allow_over_assign=self.settings.allow_over_assign,
        )
        self.session.add(month_row)
        self.session.flush()
        self._refresh_income(month_row)
        RolloverCalculator(self.session, self.user_id).apply_to(month)
        logger.info(
            f"budget_month_created: user={self.user_id} month={month} "
            f"forecast={forecast}"
        )
        return month_row

    def _after_month_change(self, month: str) -> None:
        following = next_month(month)
        if self.get_month(following) is not None:
            RolloverCalculator(self.session, self.user_id).apply_to(following)

    def _recompute_spent(self, month: str, category_id: int) -> Optional[BudgetItem]:
        self.session.flush()
        outflow = int(
            self.session.scalar(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.budget_month == month,
                    Transaction.category_id == category_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.deleted_at.is_(None),
                )
            )
            or 0
        )
        spent = -outflow
        item = self._item(month, category_id)
        if item is None:
            if spent == 0:
                return None
            item = BudgetItem(
                user_id=self.user_id,
                month=month,
                category_id=category_id,
                assigned_cents=0,
                spent_cents=0,
                leftover_from_prev_cents=0,
            )
            self.session.add(item)
        item.spent_cents = spent
        self.session.flush()
        return item

    def _guard_rta(
        self, month_row: BudgetMonth, before: int, allow_over_assign: bool = False
    ) -> int:
        """Reject a change that pushes Ready to Assign further below zero."""
        rta = self.state(month_row.month).ready_to_assign_cents
        if rta >= 0 or rta >= before:
            return rta
        if month_row.allow_over_assign or allow_over_assign:
            return rta
        logger.info(
            f"budget_change_rejected: user={self.user_id} month={month_row.month} "
            f"shortfall={-rta}"
        )
        raise OverAssignmentError(
            -rta,
            ready_to_assign_cents=rta,
            month=month_row.month,
            message=(
                f"Change would leave {month_row.month} over-assigned by {-rta} cents"
            ),
        )

    def state(self, month: str) -> MonthState:
        """Totals for ``month``; projected without writing if not materialized."""
        month_row = self.get_month(month)
        if month_row is not None:
            items = self._items(month)
            return MonthState(
                month=month,
                materialized=True,
                expected_income_cents=month_row.expected_income_cents,
                forecast_income_cents=month_row.forecast_income_cents,
                received_income_cents=month_row.received_income_cents,
                assigned_cents=sum_cents(i.assigned_cents for i in items),
                spent_cents=sum_cents(i.spent_cents for i in items),
                leftover_cents=sum_cents(i.leftover_from_prev_cents for i in items),
                carried_overspend_cents=month_row.carried_overspend_cents,
                allow_over_assign=month_row.allow_over_assign,
            )

        rollover = RolloverCalculator(self.session, self.user_id)
        source = previous_month(month)
        has_source = self.get_month(source) is not None
        forecast = self.forecast_income()
        received = self._received_income(month)
        return MonthState(
            month=month,
            materialized=False,
            expected_income_cents=self._expected_from(forecast, received),
            forecast_income_cents=forecast,
            received_income_cents=received,
            assigned_cents=0,
            spent_cents=0,
            leftover_cents=(
                sum(rollover.compute_rollover(source).values()) if has_source else 0
            ),
            carried_overspend_cents=(
                rollover.carried_overspend(source) if has_source else 0
            ),
            allow_over_assign=self.settings.allow_over_assign,
        )

    def ready_to_assign(self, month: str) -> int:
        return self.state(month).ready_to_assign_cents

    def assign(self, data: AssignIn) -> AssignResult:
        month = data.month
        parse_month(month)
        amount = ensure_cents(data.amount_cents)
        CategoryService(self.session, self.user_id).get(data.category_id)

        with atomic(self.session):
            month_row = self._ensure_month(month)
            state = self.state(month)
            item = self._item(month, data.category_id)
            current = item.assigned_cents if item else 0
            others = state.assigned_cents - current
            new_rta = (
                state.expected_income_cents
                + state.leftover_cents
                - state.carried_overspend_cents
                - (others + amount)
            )
            allowed = month_row.allow_over_assign or bool(data.allow_over_assign)
            if new_rta < 0 and not allowed:
                logger.info(
                    f"budget_assign_rejected: user={self.user_id} month={month} "
                    f"category={data.category_id} shortfall={-new_rta}"
                )
                raise OverAssignmentError(
                    -new_rta,
                    ready_to_assign_cents=state.ready_to_assign_cents,
                    requested_cents=amount,
                    month=month,
                    category_id=data.category_id,
                )

            if item is None:
                item = BudgetItem(
                    user_id=self.user_id,
                    month=month,
                    category_id=data.category_id,
                    assigned_cents=amount,
                    spent_cents=0,
                    leftover_from_prev_cents=0,
                )
                self.session.add(item)
            else:
                item.assigned_cents = amount
            self._touch(month_row)
            self._after_month_change(month)

        logger.info(
            f"budget_assign: user={self.user_id} month={month} "
            f"category={data.category_id} amount={format_cents(amount)} "
            f"rta={format_cents(new_rta)}"
        )
        return AssignResult(new_rta_cents=new_rta, over_assigned=new_rta < 0, item=item)

    def set_allow_over_assign(self, month: str, allow: bool) -> BudgetMonth:
        with atomic(self.session):
            month_row = self._ensure_month(month)
            month_row.allow_over_assign = allow
            self._touch(month_row)
        return month_row

    def recompute_spent(self, month: str, category_id: int) -> Optional[BudgetItem]:
        parse_month(month)
        with atomic(self.session):
            month_row = self._ensure_month(month)
            item = self._recompute_spent(month, category_id)
            self._touch(month_row)
            self._after_month_change(month)
        return item

    def refresh_income(
        self, month: str, *, allow_over_assign: bool = False
    ) -> BudgetMonth:
        with atomic(self.session):
            month_row = self._ensure_month(month)
            before = self.ready_to_assign(month)
            self._refresh_income(month_row)
            self._guard_rta(month_row, before, allow_over_assign)
            self._touch(month_row)
        return month_row

    def recompute_forecast(
        self, month: str, *, allow_over_assign: bool = False
    ) -> BudgetMonth:
        """Re-derive the forecast baseline from the currently active sources.

        Refused with ``OverAssignmentError`` when the lower baseline would
        leave the month's assignments unfunded, unless over-assignment is
        allowed for the month or for this call.
        """
        with atomic(self.session):
            month_row = self._ensure_month(month)
            before = self.ready_to_assign(month)
            month_row.forecast_income_cents = self.forecast_income()
            self._refresh_income(month_row)
            self._guard_rta(month_row, before, allow_over_assign)
            self._touch(month_row)
        return month_row

    def _plan_auto_assign(self, month: str) -> AutoAssignResult:
        rta = self.ready_to_assign(month)
        items = {item.category_id: item for item in self._items(month)}
        targets = [
            category
            for category in CategoryService(self.session, self.user_id).list_all()
            if category.monthly_budget_cents > 0
        ]
        # stable sort keeps display order within a priority
        targets.sort(key=lambda category: category.priority)

        allocations = []
        remaining = rta
        for category in targets:
            if remaining <= 0:
                break
            item = items.get(category.id)
            assigned = item.assigned_cents if item else 0
            amount = min(max(category.monthly_budget_cents - assigned, 0), remaining)
            if amount == 0:
                continue
            allocations.append(
                Allocation(
                    category_id=category.id,
                    name=category.name,
                    priority=category.priority,
                    assigned_cents=assigned,
                    amount_cents=amount,
                )
            )
            remaining -= amount
        return AutoAssignResult(
            month=month,
            allocations=allocations,
            total_cents=sum_cents(a.amount_cents for a in allocations),
            remaining_rta_cents=remaining,
            applied=False,
        )

    def auto_assign(self, data: AutoAssignIn) -> AutoAssignResult:
        """Fund category targets from Ready to Assign, highest priority first.

        Each category with a ``monthly_budget_cents`` target is topped up to
        that target until Ready to Assign reaches zero. Nothing is assigned
        when Ready to Assign is already zero or negative. With ``dry_run`` the
        plan is returned without touching the ledger.
        """
        month = data.month
        if data.dry_run:
            return self._plan_auto_assign(month)

        with atomic(self.session):
            month_row = self._ensure_month(month)
            plan = self._plan_auto_assign(month)
            for allocation in plan.allocations:
                item = self._item(month, allocation.category_id)
                if item is None:
                    item = BudgetItem(
                        user_id=self.user_id,
                        month=month,
                        category_id=allocation.category_id,
                        assigned_cents=0,
                        spent_cents=0,
                        leftover_from_prev_cents=0,
                    )
                    self.session.add(item)
                item.assigned_cents = allocation.assigned_cents + allocation.amount_cents
            if plan.allocations:
                self._touch(month_row)
                self._after_month_change(month)

        logger.info(
            f"budget_auto_assign: user={self.user_id} month={month} "
            f"categories={len(plan.allocations)} total={format_cents(plan.total_cents)}"
        )
        return AutoAssignResult(
            month=month,
            allocations=plan.allocations,
            total_cents=plan.total_cents,
            remaining_rta_cents=plan.remaining_rta_cents,
            applied=True,
        )

    def suggest_rebalance(self, month: str) -> list[RebalanceMoveIn]:
        """Moves that cover overspent categories from categories with money left.

        Donors are drawn from the least important categories first, and never
        give more than they have assigned this month.
        """
        parse_month(month)
        categories = {
            category.id: category
            for category in CategoryService(self.session, self.user_id).list_all()
        }
        overspent = []
        donors = []
        for item in self._items(month):
            category = categories.get(item.category_id)
            if category is None:
                continue
            available = (
                item.assigned_cents + item.leftover_from_prev_cents - item.spent_cents
            )
            if available < 0:
                overspent.append([item.category_id, -available])
            elif available > 0 and item.assigned_cents > 0:
                donors.append(
                    [
                        item.category_id,
                        min(available, item.assigned_cents),
                        category.priority,
                    ]
                )
        overspent.sort(key=lambda entry: -entry[1])
        donors.sort(key=lambda entry: (-entry[2], -entry[1]))

        moves = []
        for category_id, need in overspent:
            for donor in donors:
                if need == 0:
                    break
                amount = min(need, donor[1])
                if amount == 0:
                    continue
                moves.append(
                    RebalanceMoveIn(
                        from_category_id=donor[0],
                        to_category_id=category_id,
                        amount_cents=amount,
                    )
                )
                donor[1] -= amount
                need -= amount
        return moves

    def rebalance(self, data: RebalanceIn) -> RebalanceResult:
        """Move assigned money between categories; every move applies or none."""
        month = data.month
        categories = CategoryService(self.session, self.user_id)
        for move in data.moves:
            if move.from_category_id == move.to_category_id:
                raise ValidationError(
                    "Cannot move money within one category",
                    category_id=move.from_category_id,
                )
            categories.get(move.from_category_id)
            categories.get(move.to_category_id)

        with atomic(self.session):
            month_row = self._ensure_month(month)
            before = self.ready_to_assign(month)
            touched: dict[int, BudgetItem] = {}
            for move in data.moves:
                donor = self._item(month, move.from_category_id)
                assigned = donor.assigned_cents if donor else 0
                if donor is None or assigned < move.amount_cents:
                    raise ValidationError(
                        "Cannot move more than the category has assigned",
                        category_id=move.from_category_id,
                        assigned_cents=assigned,
                        requested_cents=move.amount_cents,
                    )
                donor.assigned_cents = assigned - move.amount_cents
                recipient = self._item(month, move.to_category_id)
                if recipient is None:
                    recipient = BudgetItem(
                        user_id=self.user_id,
                        month=month,
                        category_id=move.to_category_id,
                        assigned_cents=0,
                        spent_cents=0,
                        leftover_from_prev_cents=0,
                    )
                    self.session.add(recipient)
                recipient.assigned_cents += move.amount_cents
                touched[donor.category_id] = donor
                touched[recipient.category_id] = recipient
            rta = self._guard_rta(month_row, before)
            self._touch(month_row)
            self._after_month_change(month)

        total = sum_cents(move.amount_cents for move in data.moves)
        logger.info(
            f"budget_rebalance: user={self.user_id} month={month} "
            f"moves={len(data.moves)} total={format_cents(total)}"
        )
        return RebalanceResult(
            month=month,
            total_moved_cents=total,
            ready_to_assign_cents=rta,
            items=list(touched.values()),
        )


class IncomeService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = get_settings()

    def get_source(self, source_id: int) -> IncomeSource:
        source = self.session.get(IncomeSource, source_id)
        if not source or source.user_id != self.user_id:
            raise NotFoundError("Income source", source_id)
        return source

    def list_sources(self) -> list[IncomeSource]:
        stmt = (
            select(IncomeSource)
            .where(IncomeSource.user_id == self.user_id)
            .order_by(IncomeSource.name, IncomeSource.id)
        )
        return list(self.session.scalars(stmt).all())

    def active_sources(self) -> list[IncomeSource]:
        return [source for source in self.list_sources() if source.active]

    def create_source(self, data: IncomeSourceIn) -> IncomeSource:
        source = IncomeSource(
            user_id=self.user_id,
            name=data.name.strip(),
            frequency=data.frequency,
            amount_cents=data.amount_cents,
            active=data.active,
            anchor_date=data.anchor_date,
            day_of_month=data.day_of_month,
            second_day=data.second_day,
            account_id=data.account_id,
        )
        with atomic(self.session):
            self.session.add(source)
        return source

    def update_source(self, source_id: int, data: IncomeSourceIn) -> IncomeSource:
        """Change a source going forward; months already created keep their forecast."""
        source = self.get_source(source_id)
        with atomic(self.session):
            source.name = data.name.strip()
            source.frequency = data.frequency
            source.amount_cents = data.amount_cents
            source.active = data.active
            source.anchor_date = data.anchor_date
            source.day_of_month = data.day_of_month
            source.second_day = data.second_day
            source.account_id = data.account_id
        return source

    def set_active(self, source_id: int, active: bool) -> IncomeSource:
        source = self.get_source(source_id)
        with atomic(self.session):
            source.active = active
        return source

    def get_occurrence(self, occurrence_id: int) -> IncomeOccurrence:
        occurrence = self.session.get(IncomeOccurrence, occurrence_id)
        if not occurrence or occurrence.user_id != self.user_id:
            raise OccurrenceNotFoundError("Income occurrence", occurrence_id)
        return occurrence

    def list_occurrences(
        self, status: Optional[OccurrenceStatus] = None
    ) -> list[IncomeOccurrence]:
        stmt = (
            select(IncomeOccurrence)
            .where(IncomeOccurrence.user_id == self.user_id)
            .order_by(IncomeOccurrence.scheduled_at, IncomeOccurrence.id)
        )
        if status:
            stmt = stmt.where(IncomeOccurrence.status == status)
        return list(self.session.scalars(stmt).all())

    def _occurrence_exists(self, source_id: int, scheduled_at: date) -> bool:
        stmt = (
            select(IncomeOccurrence.id)
            .where(
                IncomeOccurrence.source_id == source_id,
                IncomeOccurrence.scheduled_at == scheduled_at,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def create_occurrence(
        self, source_id: int, scheduled_at: date, net: Optional[int] = None
    ) -> IncomeOccurrence:
        source = self.get_source(source_id)
        amount = source.amount_cents if net is None else net
        ensure_cents(amount, field="net", allow_zero=False)
        if self._occurrence_exists(source.id, scheduled_at):
            raise ValidationError(
                "Occurrence already scheduled for this date",
                source_id=source.id,
                scheduled_at=scheduled_at.isoformat(),
            )
        occurrence = IncomeOccurrence(
            user_id=self.user_id,
            source_id=source.id,
            scheduled_at=scheduled_at,
            net=amount,
            status=OccurrenceStatus.scheduled,
        )
        with atomic(self.session):
            self.session.add(occurrence)
        return occurrence

    def generate_occurrences(
        self, until: Optional[date] = None, *, today: Optional[date] = None
    ) -> int:
        today = today or local_today()
        until = until or today + timedelta(days=self.settings.occurrence_horizon_days)
        created = 0
        with atomic(self.session):
            for source in self.active_sources():
                if source.amount_cents <= 0:
                    continue
                for scheduled_at in iter_occurrence_dates(
                    source.frequency,
                    source.anchor_date,
                    until,
                    day_of_month=source.day_of_month,
                    second_day=source.second_day,
                ):
                    if self._occurrence_exists(source.id, scheduled_at):
                        continue
                    self.session.add(
                        IncomeOccurrence(
                            user_id=self.user_id,
                            source_id=source.id,
                            scheduled_at=scheduled_at,
                            net=source.amount_cents,
                            status=OccurrenceStatus.scheduled,
                        )
                    )
                    self.session.flush()
                    created += 1
        return created

    def receive(
        self,
        occurrence_id: int,
        data: Optional[ReceiveIncomeIn] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ReceiveResult:
        data = data or ReceiveIncomeIn()
        occurrence = self.get_occurrence(occurrence_id)
        if occurrence.status == OccurrenceStatus.received:
            logger.info(
                f"income_receive_rejected: user={self.user_id} "
                f"occurrence={occurrence.id} reason=already_received"
            )
            raise AlreadyReceivedError(occurrence.id, occurrence.tx_id)

        amount = occurrence.net if data.amount_cents is None else data.amount_cents
        ensure_cents(amount, allow_zero=False)
        received_on = data.date or occurrence.scheduled_at
        budget_month = resolve_budget_month(
            received_on,
            threshold_days=self.settings.eom_threshold_days,
            choice=data.budget_month_choice,
        )
        source = occurrence.source
        budgets = BudgetService(self.session, self.user_id)

        with atomic(self.session):
            month_row = budgets._ensure_month(budget_month)
            before = budgets.ready_to_assign(budget_month)
            txn = Transaction(
                user_id=self.user_id,
                date=received_on,
                type=TransactionType.income,
                amount_cents=abs(amount),
                category_id=None,
                account_id=(
                    data.account_id
                    or source.account_id
                    or self.settings.default_account
                ),
                budget_month=budget_month,
                source_id=source.id,
                income_occurrence_id=occurrence.id,
                note=data.note or f"Income from {source.name}",
            )
            self.session.add(txn)
            self.session.flush()

            occurrence.status = OccurrenceStatus.received
            occurrence.posted_at = now or datetime.utcnow()
            occurrence.tx_id = txn.id
            occurrence.net = abs(amount)
            occurrence.budget_month = budget_month

            budgets._refresh_income(month_row)
            budgets._touch(month_row)
            after = budgets.ready_to_assign(budget_month)

        logger.info(
            f"income_received: user={self.user_id} occurrence={occurrence.id} "
            f"tx={txn.id} month={budget_month} amount={format_cents(amount)}"
        )
        return ReceiveResult(
            transaction=txn,
            occurrence=occurrence,
            budget_month=budget_month,
            rta_increase_cents=after - before,
        )


class BillService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = get_settings()

    def get(self, bill_id: int) -> Bill:
        bill = self.session.get(Bill, bill_id)
        if not bill or bill.user_id != self.user_id:
            raise BillNotFoundError(bill_id)
        return bill

    def list_all(self, include_archived: bool = False) -> list[Bill]:
        stmt = (
            select(Bill)
            .options(joinedload(Bill.category))
            .where(Bill.user_id == self.user_id)
            .order_by(Bill.name, Bill.id)
        )
        if not include_archived:
            stmt = stmt.where(Bill.archived_at.is_(None))
        return list(self.session.scalars(stmt).unique().all())

    def create(self, data: BillIn) -> Bill:
        if data.category_id is not None:
            CategoryService(self.session, self.user_id).get(data.category_id)
        if data.ends_on and data.ends_on < data.starts_on:
            raise ValidationError("Bill cannot end before it starts")
        bill = Bill(
            user_id=self.user_id,
            name=data.name.strip(),
            category_id=data.category_id,
            account_id=data.account_id,
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            day_of_month=data.day_of_month,
            weekday=data.weekday,
            every_n=data.every_n,
            starts_on=data.starts_on,
            ends_on=data.ends_on,
            skip_weekends=data.skip_weekends,
            autopay_enabled=data.autopay_enabled,
        )
        with atomic(self.session):
            self.session.add(bill)
        return bill

    def update(self, bill_id: int, data: BillIn) -> Bill:
        bill = self.get(bill_id)
        if data.category_id is not None:
            CategoryService(self.session, self.user_id).get(data.category_id)
        if data.ends_on and data.ends_on < data.starts_on:
            raise ValidationError("Bill cannot end before it starts")
        with atomic(self.session):
            bill.name = data.name.strip()
            bill.category_id = data.category_id
            bill.account_id = data.account_id
            bill.amount_cents = data.amount_cents
            bill.frequency = data.frequency
            bill.day_of_month = data.day_of_month
            bill.weekday = data.weekday
            bill.every_n = data.every_n
            bill.starts_on = data.starts_on
            bill.ends_on = data.ends_on
            bill.skip_weekends = data.skip_weekends
            bill.autopay_enabled = data.autopay_enabled
        return bill

    def archive(self, bill_id: int) -> None:
        bill = self.get(bill_id)
        with atomic(self.session):
            bill.archived_at = datetime.utcnow()

    def get_occurrence(self, occurrence_id: int) -> BillOccurrence:
        occurrence = self.session.get(BillOccurrence, occurrence_id)
        if not occurrence or occurrence.user_id != self.user_id:
            raise OccurrenceNotFoundError("Bill occurrence", occurrence_id)
        return occurrence

    def list_occurrences(
        self, bill_id: Optional[int] = None, status: Optional[BillStatus] = None
    ) -> list[BillOccurrence]:
        stmt = (
            select(BillOccurrence)
            .where(BillOccurrence.user_id == self.user_id)
            .order_by(BillOccurrence.due_date, BillOccurrence.id)
        )
        if bill_id is not None:
            stmt = stmt.where(BillOccurrence.bill_id == bill_id)
        if status:
            stmt = stmt.where(BillOccurrence.status == status)
        return list(self.session.scalars(stmt).all())

    def generate_occurrences(
        self, until: Optional[date] = None, *, today: Optional[date] = None
    ) -> int:
        today = today or local_today()
        until = until or today + timedelta(days=self.settings.occurrence_horizon_days)
        created = 0
        with atomic(self.session):
            for bill in self.list_all():
                existing = set(
                    self.session.scalars(
                        select(BillOccurrence.due_date).where(
                            BillOccurrence.bill_id == bill.id
                        )
                    ).all()
                )
                for due in iter_occurrence_dates(
                    bill.frequency,
                    bill.starts_on,
                    until,
                    day_of_month=bill.day_of_month,
                    weekday=bill.weekday,
                    every_n=bill.every_n,
                    ends_on=bill.ends_on,
                    skip_weekends=bill.skip_weekends,
                ):
                    if due in existing:
                        continue
                    existing.add(due)
                    self.session.add(
                        BillOccurrence(
                            user_id=self.user_id,
                            bill_id=bill.id,
                            due_date=due,
                            status=(
                                BillStatus.overdue if due < today else BillStatus.upcoming
                            ),
                        )
                    )
                    created += 1
        return created

    def refresh_statuses(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        changed = 0
        with atomic(self.session):
            for occurrence in self.list_occurrences(status=BillStatus.upcoming):
                if occurrence.due_date < today:
                    occurrence.status = BillStatus.overdue
                    changed += 1
        return changed

    def skip_occurrence(self, occurrence_id: int) -> BillOccurrence:
        occurrence = self.get_occurrence(occurrence_id)
        if occurrence.status not in OPEN_BILL_STATUSES:
            raise AlreadyProcessedError(
                "Bill occurrence already settled",
                occurrence_id=occurrence.id,
                status=occurrence.status.value,
            )
        with atomic(self.session):
            occurrence.status = BillStatus.skipped
        return occurrence

    def _resolve_occurrence(
        self, bill: Bill, occurrence_id: Optional[int], budget_month: str
    ) -> Optional[BillOccurrence]:
        if occurrence_id is not None:
            occurrence = self.get_occurrence(occurrence_id)
            if occurrence.bill_id != bill.id:
                raise OccurrenceNotFoundError("Bill occurrence", occurrence_id)
            if occurrence.status not in OPEN_BILL_STATUSES:
                raise AlreadyProcessedError(
                    "Bill occurrence already settled",
                    occurrence_id=occurrence.id,
                    status=occurrence.status.value,
                    paid_tx_id=occurrence.paid_tx_id,
                )
            return occurrence
        return self.session.scalar(
            select(BillOccurrence)
            .where(
                BillOccurrence.bill_id == bill.id,
                BillOccurrence.status.in_(OPEN_BILL_STATUSES),
                BillOccurrence.due_date <= month_period(budget_month).end,
            )
            .order_by(BillOccurrence.due_date)
            .limit(1)
        )

    def pay(
        self,
        bill_id: int,
        data: Optional[PayBillIn] = None,
        *,
        today: Optional[date] = None,
    ) -> PayResult:
        data = data or PayBillIn()
        bill = self.get(bill_id)
        paid_on = data.date or today or local_today()
        budget_month = month_key(paid_on)
        occurrence = self._resolve_occurrence(bill, data.occurrence_id, budget_month)

        if data.amount_cents is not None:
            amount = data.amount_cents
        elif occurrence is not None and occurrence.amount_override_cents:
            amount = occurrence.amount_override_cents
        else:
            amount = bill.amount_cents
        ensure_cents(amount, allow_zero=False)
        account_id = data.account_id or bill.account_id or self.settings.default_account
        budgets = BudgetService(self.session, self.user_id)

        with atomic(self.session):
            month_row = budgets._ensure_month(budget_month)
            txn = Transaction(
                user_id=self.user_id,
                date=paid_on,
                type=TransactionType.expense,
                amount_cents=-abs(amount),
                category_id=bill.category_id,
                account_id=account_id,
                budget_month=budget_month,
                bill_id=bill.id,
                note=data.note or f"Bill payment: {bill.name}",
            )
            self.session.add(txn)
            self.session.flush()

            payment = BillPayment(
                user_id=self.user_id,
                bill_id=bill.id,
                tx_id=txn.id,
                paid_at=paid_on,
                amount_cents=abs(amount),
                account_id=account_id,
                note=data.note,
            )
            self.session.add(payment)
            if occurrence is not None:
                occurrence.status = BillStatus.paid
                occurrence.paid_tx_id = txn.id
            if bill.category_id is not None:
                budgets._recompute_spent(budget_month, bill.category_id)
            budgets._touch(month_row)
            budgets._after_month_change(budget_month)

        logger.info(
            f"bill_paid: user={self.user_id} bill={bill.id} tx={txn.id} "
            f"month={budget_month} amount={format_cents(amount)}"
        )
        return PayResult(transaction=txn, payment=payment, occurrence=occurrence)

    def link_to_category(self, data: LinkBillIn) -> LinkResult:
        bill = self.get(data.bill_id)
        categories = CategoryService(self.session, self.user_id)
        category: Optional[Category] = None
        if data.category_id is not None:
            category = categories.get(data.category_id)
        elif data.auto_create:
            category = categories.find_similar(bill.name)
        else:
            raise ValidationError("Either category_id or auto_create is required")

        suggested = monthly_equivalent(bill.amount_cents, bill.frequency, bill.every_n)
        created = False
        with atomic(self.session):
            if category is None:
                group = categories._get_or_create_group(BILL_CATEGORY_GROUP)
                category = Category(
                    user_id=self.user_id,
                    name=bill.name,
                    group_id=group.id,
                    sort_order=categories._next_sort_order(group.id),
                    rollover=False,
                    priority=3,
                    monthly_budget_cents=0,
                )
                self.session.add(category)
                self.session.flush()
                created = True

            link = self.session.scalar(
                select(BillCategoryLink).where(
                    BillCategoryLink.bill_id == bill.id,
                    BillCategoryLink.category_id == category.id,
                )
            )
            if link is None:
                link = BillCategoryLink(
                    user_id=self.user_id,
                    bill_id=bill.id,
                    category_id=category.id,
                    auto_suggest_amount=True,
                )
                self.session.add(link)
            category.monthly_budget_cents = suggested
            category.linked_bill_id = bill.id
            bill.category_id = category.id

        logger.info(
            f"bill_linked: user={self.user_id} bill={bill.id} "
            f"category={category.id} suggested={format_cents(suggested)}"
        )
        return LinkResult(
            link=link,
            category=category,
            suggested_monthly_cents=suggested,
            created_category=created,
        )

    def unlink(self, bill_id: int, category_id: int) -> bool:
        links = self.session.scalars(
            select(BillCategoryLink).where(
                BillCategoryLink.user_id == self.user_id,
                BillCategoryLink.bill_id == bill_id,
                BillCategoryLink.category_id == category_id,
            )
        ).all()
        category = self.session.get(Category, category_id)
        with atomic(self.session):
            for link in links:
                self.session.delete(link)
            if (
                category is not None
                and category.user_id == self.user_id
                and category.linked_bill_id == bill_id
            ):
                category.linked_bill_id = None
        return bool(links)

    def kpis(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        this_month = month_period(month_key(today))
        open_occurrences = [
            occ
            for occ in self.list_occurrences()
            if occ.status in OPEN_BILL_STATUSES and occ.bill.archived_at is None
        ]
        overdue = [occ for occ in open_occurrences if occ.due_date < today]
        upcoming = [occ for occ in open_occurrences if occ.due_date >= today]
        due_soon = [occ for occ in upcoming if (occ.due_date - today).days <= 7]
        this_month_total = sum(
            occ.amount_override_cents or occ.bill.amount_cents
            for occ in self.list_occurrences()
            if this_month.start <= occ.due_date <= this_month.end
            and occ.status != BillStatus.skipped
        )
        return {
            "upcoming_count": len(upcoming),
            "overdue_count": len(overdue),
            "due_soon_count": len(due_soon),
            "this_month_total_cents": this_month_total,
            "autopay_count": sum(1 for bill in self.list_all() if bill.autopay_enabled),
            "next_due_date": upcoming[0].due_date.isoformat() if upcoming else None,
        }


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = get_settings()

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    def list_for_month(self, month: str) -> list[Transaction]:
        parse_month(month)
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.budget_month == month,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def _apply_effects(
        self,
        budgets: BudgetService,
        txn: Transaction,
        allow_over_assign: bool = False,
    ) -> None:
        month_row = budgets._ensure_month(txn.budget_month)
        if txn.type == TransactionType.expense and txn.category_id is not None:
            budgets._recompute_spent(txn.budget_month, txn.category_id)
        if txn.type == TransactionType.income:
            before = budgets.ready_to_assign(txn.budget_month)
            budgets._refresh_income(month_row)
            budgets._guard_rta(month_row, before, allow_over_assign)
        budgets._touch(month_row)
        budgets._after_month_change(txn.budget_month)

    def create(self, data: TransactionIn) -> Transaction:
        if data.category_id is not None:
            CategoryService(self.session, self.user_id).get(data.category_id)
        amount = ensure_cents(data.amount_cents, allow_zero=False)
        signed = amount if data.type == TransactionType.income else -amount
        budget_month = data.budget_month or month_key(data.date)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=signed,
            category_id=data.category_id,
            account_id=data.account_id or self.settings.default_account,
            budget_month=budget_month,
            note=data.note,
        )
        budgets = BudgetService(self.session, self.user_id)
        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            self._apply_effects(budgets, txn)
        return txn

    def _guard_linked(self, txn: Transaction) -> None:
        if txn.bill_id is not None or txn.income_occurrence_id is not None:
            raise ValidationError(
                "Transaction belongs to a bill payment or income receipt",
                transaction_id=txn.id,
            )

    def soft_delete(
        self, transaction_id: int, *, allow_over_assign: bool = False
    ) -> None:
        txn = self.get(transaction_id)
        if txn.deleted_at is not None:
            raise NotFoundError("Transaction", transaction_id)
        self._guard_linked(txn)
        budgets = BudgetService(self.session, self.user_id)
        with atomic(self.session):
            txn.deleted_at = datetime.utcnow()
            self._apply_effects(budgets, txn, allow_over_assign)

    def restore(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        if txn.deleted_at is None:
            return
        budgets = BudgetService(self.session, self.user_id)
        with atomic(self.session):
            txn.deleted_at = None
            self._apply_effects(budgets, txn)


class SummaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def month_summary(self, month: str) -> dict[str, object]:
        budgets = BudgetService(self.session, self.user_id)
        state = budgets.state(month)
        items = {item.category_id: item for item in budgets._items(month)}
        projected_leftover: dict[int, int] = {}
        if not state.materialized and state.leftover_cents:
            projected_leftover = RolloverCalculator(
                self.session, self.user_id
            ).compute_rollover(previous_month(month))

        rows = []
        for category in CategoryService(self.session, self.user_id).list_all():
            item = items.get(category.id)
            assigned = item.assigned_cents if item else 0
            spent = item.spent_cents if item else 0
            leftover = (
                item.leftover_from_prev_cents
                if item
                else projected_leftover.get(category.id, 0)
            )
            rows.append(
                {
                    "category_id": category.id,
                    "name": category.name,
                    "group": category.group.name if category.group else None,
                    "priority": category.priority,
                    "rollover": category.rollover,
                    "assigned_cents": assigned,
                    "spent_cents": spent,
                    "leftover_from_prev_cents": leftover,
                    "available_cents": assigned + leftover - spent,
                    "monthly_budget_cents": category.monthly_budget_cents,
                }
            )

        rta = state.ready_to_assign_cents
        return {
            "month": month,
            "materialized": state.materialized,
            "expected_income_cents": state.expected_income_cents,
            "forecast_income_cents": state.forecast_income_cents,
            "received_income_cents": state.received_income_cents,
            "total_assigned_cents": state.assigned_cents,
            "total_spent_cents": state.spent_cents,
            "leftover_total_cents": state.leftover_cents,
            "carried_overspend_cents": state.carried_overspend_cents,
            "ready_to_assign_cents": rta,
            "over_assigned": rta < 0,
            "allow_over_assign": state.allow_over_assign,
            "categories": rows,
        }

    def dashboard(self, month: str, *, today: Optional[date] = None) -> dict[str, object]:
        summary = self.month_summary(month)
        period = month_period(month)
        scheduled = [
            occ
            for occ in IncomeService(self.session, self.user_id).list_occurrences(
                status=OccurrenceStatus.scheduled
            )
            if period.start <= occ.scheduled_at <= period.end
        ]
        return {
            "summary": summary,
            "bills": BillService(self.session, self.user_id).kpis(today),
            "scheduled_income_count": len(scheduled),
            "scheduled_income_cents": sum(occ.net for occ in scheduled),
        }
