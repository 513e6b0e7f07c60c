import datetime as dt
from datetime import date, datetime
from typing import Annotated, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StringConstraints,
    field_validator,
)

from models import (
    INCOME_FREQUENCIES,
    BillStatus,
    Frequency,
    OccurrenceStatus,
    TransactionType,
)
from periods import parse_month


def _check_month(value: str) -> str:
    parse_month(value)
    return value


MonthStr = Annotated[
    str, StringConstraints(pattern=r"^\d{4}-\d{2}$"), AfterValidator(_check_month)
]


class CategoryGroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    sort_order: int = 0


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    group_id: Optional[int] = None
    sort_order: Optional[int] = None
    rollover: bool = False
    priority: int = Field(default=3, ge=1, le=5)
    monthly_budget_cents: StrictInt = Field(default=0, ge=0)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    group_id: Optional[int] = None
    rollover: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=1, le=5)
    monthly_budget_cents: Optional[StrictInt] = Field(default=None, ge=0)


class CategoryOrder(BaseModel):
    category_id: int
    group_id: Optional[int] = None
    sort_order: int


class GroupOrder(BaseModel):
    group_id: int
    sort_order: int


class ReorderIn(BaseModel):
    categories: list[CategoryOrder] = Field(default_factory=list)
    groups: list[GroupOrder] = Field(default_factory=list)


class AssignIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    month: MonthStr
    category_id: int
    amount_cents: StrictInt = Field(..., ge=0)
    allow_over_assign: Optional[StrictBool] = None


class RebalanceMoveIn(BaseModel):
    from_category_id: int
    to_category_id: int
    amount_cents: StrictInt = Field(..., gt=0)


class RebalanceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    month: MonthStr
    moves: list[RebalanceMoveIn] = Field(..., min_length=1)


class AutoAssignIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    month: MonthStr
    dry_run: bool = False


class IncomeSourceIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    frequency: Frequency
    amount_cents: StrictInt = Field(..., ge=0)
    active: bool = True
    anchor_date: date
    day_of_month: Optional[int] = Field(default=None, ge=-1, le=31)
    second_day: Optional[int] = Field(default=None, ge=-1, le=31)
    account_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("frequency")
    @classmethod
    def _income_frequency(cls, value: Frequency) -> Frequency:
        if value not in INCOME_FREQUENCIES:
            raise ValueError("Income sources are weekly, biweekly, semimonthly or monthly")
        return value


class ReceiveIncomeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[StrictInt] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    budget_month_choice: Optional[Literal["current", "next"]] = None
    account_id: Optional[str] = Field(default=None, max_length=64)
    note: Optional[str] = Field(default=None, max_length=200)


class BillIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: StrictInt = Field(..., gt=0)
    frequency: Frequency
    category_id: Optional[int] = None
    account_id: Optional[str] = Field(default=None, max_length=64)
    day_of_month: Optional[int] = Field(default=None, ge=-1, le=31)
    weekday: Optional[int] = Field(default=None, ge=0, le=6)
    every_n: int = Field(default=1, gt=0)
    starts_on: date
    ends_on: Optional[date] = None
    skip_weekends: bool = False
    autopay_enabled: bool = False


class PayBillIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[StrictInt] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    account_id: Optional[str] = Field(default=None, max_length=64)
    occurrence_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=200)


class LinkBillIn(BaseModel):
    bill_id: int
    category_id: Optional[int] = None
    auto_create: bool = False


class TransactionIn(BaseModel):
    date: dt.date
    type: TransactionType
    amount_cents: StrictInt = Field(..., gt=0)
    category_id: Optional[int] = None
    account_id: Optional[str] = Field(default=None, max_length=64)
    budget_month: Optional[MonthStr] = None
    note: Optional[str] = Field(default=None, max_length=200)


class OverAssignIn(BaseModel):
    allow_over_assign: StrictBool


# Read models for ledger snapshots


class _Row(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CategoryGroupRow(_Row):
    id: int
    name: str
    sort_order: int


class CategoryRow(_Row):
    id: int
    name: str
    group_id: Optional[int]
    sort_order: int
    rollover: bool
    priority: int
    monthly_budget_cents: int
    linked_bill_id: Optional[int]
    archived_at: Optional[datetime]


class BudgetMonthRow(_Row):
    id: int
    month: str
    expected_income_cents: int
    forecast_income_cents: int
    received_income_cents: int
    carried_overspend_cents: int
    allow_over_assign: bool
    version: int


class BudgetItemRow(_Row):
    id: int
    month: str
    category_id: int
    assigned_cents: int
    spent_cents: int
    leftover_from_prev_cents: int


class IncomeSourceRow(_Row):
    id: int
    name: str
    frequency: Frequency
    amount_cents: int
    active: bool
    anchor_date: date


class IncomeOccurrenceRow(_Row):
    id: int
    source_id: int
    scheduled_at: date
    net: int
    status: OccurrenceStatus
    posted_at: Optional[datetime]
    tx_id: Optional[int]
    budget_month: Optional[str]


class BillRow(_Row):
    id: int
    name: str
    category_id: Optional[int]
    account_id: Optional[str]
    amount_cents: int
    frequency: Frequency
    day_of_month: Optional[int]
    weekday: Optional[int]
    every_n: int
    autopay_enabled: bool


class BillOccurrenceRow(_Row):
    id: int
    bill_id: int
    due_date: date
    status: BillStatus
    paid_tx_id: Optional[int]


class BillPaymentRow(_Row):
    id: int
    bill_id: int
    tx_id: int
    paid_at: date
    amount_cents: int
    account_id: str


class BillCategoryLinkRow(_Row):
    id: int
    bill_id: int
    category_id: int


class TransactionRow(_Row):
    id: int
    date: dt.date
    type: TransactionType
    amount_cents: int
    category_id: Optional[int]
    account_id: str
    budget_month: str
    bill_id: Optional[int]
    source_id: Optional[int]
    income_occurrence_id: Optional[int]
    note: Optional[str]
    deleted_at: Optional[datetime]


class LedgerSnapshot(BaseModel):
    user_id: int
    groups: list[CategoryGroupRow] = Field(default_factory=list)
    categories: list[CategoryRow] = Field(default_factory=list)
    months: list[BudgetMonthRow] = Field(default_factory=list)
    items: list[BudgetItemRow] = Field(default_factory=list)
    income_sources: list[IncomeSourceRow] = Field(default_factory=list)
    income_occurrences: list[IncomeOccurrenceRow] = Field(default_factory=list)
    bills: list[BillRow] = Field(default_factory=list)
    bill_occurrences: list[BillOccurrenceRow] = Field(default_factory=list)
    bill_payments: list[BillPaymentRow] = Field(default_factory=list)
    bill_links: list[BillCategoryLinkRow] = Field(default_factory=list)
    transactions: list[TransactionRow] = Field(default_factory=list)
