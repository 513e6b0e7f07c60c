from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class Frequency(str, Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    semimonthly = "semimonthly"
    monthly = "monthly"
    quarterly = "quarterly"
    semiannual = "semiannual"
    annual = "annual"
    every_n_months = "every_n_months"


INCOME_FREQUENCIES = (
    Frequency.weekly,
    Frequency.biweekly,
    Frequency.semimonthly,
    Frequency.monthly,
)


class OccurrenceStatus(str, Enum):
    scheduled = "SCHEDULED"
    received = "RECEIVED"


OCCURRENCE_STATUS_ENUM = SAEnum(
    OccurrenceStatus,
    name="occurrencestatus",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class BillStatus(str, Enum):
    upcoming = "upcoming"
    overdue = "overdue"
    paid = "paid"
    skipped = "skipped"


OPEN_BILL_STATUSES = (BillStatus.upcoming, BillStatus.overdue)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class CategoryGroup(Base, TimestampMixin):
    __tablename__ = "category_groups"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_group_user_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="group"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("category_groups.id"))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rollover: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    monthly_budget_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    linked_bill_id: Mapped[Optional[int]] = mapped_column(Integer)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    group: Mapped[Optional["CategoryGroup"]] = relationship(
        "CategoryGroup", back_populates="categories"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        CheckConstraint("priority BETWEEN 1 AND 5", name="ck_category_priority"),
        CheckConstraint(
            "monthly_budget_cents >= 0", name="ck_category_monthly_budget_positive"
        ),
    )


class BudgetMonth(Base, TimestampMixin):
    __tablename__ = "budget_months"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    expected_income_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    forecast_income_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    received_income_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    carried_overspend_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    allow_over_assign: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("user_id", "month", name="uq_budget_month_user_month"),
        CheckConstraint(
            "carried_overspend_cents >= 0", name="ck_budget_month_overspend_positive"
        ),
    )


class BudgetItem(Base, TimestampMixin):
    __tablename__ = "budget_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    assigned_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leftover_from_prev_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "month", "category_id", name="uq_budget_item_month_category"
        ),
        Index("ix_budget_items_user_month", "user_id", "month"),
        CheckConstraint("assigned_cents >= 0", name="ck_budget_item_assigned_positive"),
        CheckConstraint(
            "leftover_from_prev_cents >= 0", name="ck_budget_item_leftover_positive"
        ),
    )


class IncomeSource(Base, TimestampMixin):
    __tablename__ = "income_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    second_day: Mapped[Optional[int]] = mapped_column(Integer)
    account_id: Mapped[Optional[str]] = mapped_column(String(64))

    occurrences: Mapped[list["IncomeOccurrence"]] = relationship(
        "IncomeOccurrence", back_populates="source"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_income_source_amount_positive"),
    )


class IncomeOccurrence(Base, TimestampMixin):
    __tablename__ = "income_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("income_sources.id"), nullable=False
    )
    scheduled_at: Mapped[date] = mapped_column(Date, nullable=False)
    net: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[OccurrenceStatus] = mapped_column(
        OCCURRENCE_STATUS_ENUM, nullable=False, default=OccurrenceStatus.scheduled
    )
    posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    tx_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    budget_month: Mapped[Optional[str]] = mapped_column(String(7))

    source: Mapped["IncomeSource"] = relationship(
        "IncomeSource", back_populates="occurrences"
    )

    __table_args__ = (
        UniqueConstraint(
            "source_id", "scheduled_at", name="uq_income_occurrence_source_date"
        ),
        Index("ix_income_occurrences_user_status", "user_id", "status"),
    )


class Bill(Base, TimestampMixin):
    __tablename__ = "bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    account_id: Mapped[Optional[str]] = mapped_column(String(64))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    weekday: Mapped[Optional[int]] = mapped_column(Integer)
    every_n: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    starts_on: Mapped[date] = mapped_column(Date, nullable=False)
    ends_on: Mapped[Optional[date]] = mapped_column(Date)
    skip_weekends: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    autopay_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship("Category")
    occurrences: Mapped[list["BillOccurrence"]] = relationship(
        "BillOccurrence", back_populates="bill", order_by="BillOccurrence.due_date"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_bill_amount_positive"),
        CheckConstraint("every_n > 0", name="ck_bill_every_n_positive"),
    )


class BillOccurrence(Base, TimestampMixin):
    __tablename__ = "bill_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BillStatus] = mapped_column(
        SAEnum(BillStatus), nullable=False, default=BillStatus.upcoming
    )
    paid_tx_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    amount_override_cents: Mapped[Optional[int]] = mapped_column(Integer)

    bill: Mapped["Bill"] = relationship("Bill", back_populates="occurrences")

    __table_args__ = (
        UniqueConstraint("bill_id", "due_date", name="uq_bill_occurrence_bill_date"),
        Index("ix_bill_occurrences_user_status", "user_id", "status"),
    )


class BillPayment(Base, TimestampMixin):
    __tablename__ = "bill_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), nullable=False)
    tx_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, unique=True
    )
    paid_at: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_bill_payment_amount_positive"),
    )


class BillCategoryLink(Base, TimestampMixin):
    __tablename__ = "bill_category_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    bill_id: Mapped[int] = mapped_column(ForeignKey("bills.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    auto_suggest_amount: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("bill_id", "category_id", name="uq_bill_category_link"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    budget_month: Mapped[str] = mapped_column(String(7), nullable=False)
    bill_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bills.id"))
    source_id: Mapped[Optional[int]] = mapped_column(ForeignKey("income_sources.id"))
    income_occurrence_id: Mapped[Optional[int]] = mapped_column(Integer)
    note: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_user_month", "user_id", "budget_month"),
        Index(
            "ix_transactions_user_month_category",
            "user_id",
            "budget_month",
            "category_id",
        ),
        CheckConstraint(
            "(type != 'expense') OR (amount_cents < 0)",
            name="ck_transactions_expense_negative",
        ),
        CheckConstraint(
            "(type != 'income') OR (amount_cents > 0)",
            name="ck_transactions_income_positive",
        ),
    )
