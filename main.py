import logging
from typing import Callable, Optional, TypeVar

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from errors import LedgerError
from ledger import LedgerStore
from periods import month_key, validate_month
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    AssignIn,
    AutoAssignIn,
    BillIn,
    BillOccurrenceRow,
    BillPaymentRow,
    BillRow,
    BudgetItemRow,
    BudgetMonthRow,
    CategoryGroupIn,
    CategoryGroupRow,
    CategoryIn,
    CategoryRow,
    IncomeOccurrenceRow,
    IncomeSourceIn,
    IncomeSourceRow,
    LedgerSnapshot,
    LinkBillIn,
    OverAssignIn,
    PayBillIn,
    RebalanceIn,
    ReceiveIncomeIn,
    ReorderIn,
    TransactionIn,
    TransactionRow,
)
from services import (
    BillService,
    BudgetService,
    CategoryService,
    IncomeService,
    SummaryService,
    TransactionService,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

app = FastAPI(title="Budget Ledger")

store = LedgerStore()
scheduler_manager = SchedulerManager(store)


def get_store() -> LedgerStore:
    return store


def current_user(x_user_id: int = Header(default=1)) -> int:
    if x_user_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid user id")
    return x_user_id


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: LedgerError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def _mutate(store: LedgerStore, user_id: int, fn: Callable[[Session], T]) -> T:
    try:
        return store.run(user_id, fn)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    except Exception:
        logger.exception(f"ledger_mutation_failed: user={user_id}")
        raise


def _month_param(month: Optional[str]) -> str:
    if month is None:
        return month_key(local_today())
    try:
        return validate_month(month)
    except LedgerError as exc:
        raise _http_error(exc) from exc


# Budget


@app.post("/api/budget/assign")
def assign_budget(
    payload: AssignIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        result = BudgetService(session, user_id).assign(payload)
        return {
            "new_rta_cents": result.new_rta_cents,
            "over_assigned": result.over_assigned,
            "item": BudgetItemRow.model_validate(result.item).model_dump(mode="json"),
        }

    return _mutate(store, user_id, op)


@app.get("/api/budget/summary")
def budget_summary(
    month: Optional[str] = Query(default=None),
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    month = _month_param(month)
    try:
        return store.read(
            user_id,
            ("summary", month),
            lambda session: SummaryService(session, user_id).month_summary(month),
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budget/months/{month}/over-assign")
def set_over_assign(
    month: str,
    payload: OverAssignIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    month = _month_param(month)

    def op(session: Session) -> dict:
        month_row = BudgetService(session, user_id).set_allow_over_assign(
            month, payload.allow_over_assign
        )
        return BudgetMonthRow.model_validate(month_row).model_dump(mode="json")

    return _mutate(store, user_id, op)


@app.post("/api/budget/auto-assign")
def auto_assign_budget(
    payload: AutoAssignIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        result = BudgetService(session, user_id).auto_assign(payload)
        return {
            "month": result.month,
            "applied": result.applied,
            "total_cents": result.total_cents,
            "remaining_rta_cents": result.remaining_rta_cents,
            "allocations": [
                {
                    "category_id": a.category_id,
                    "name": a.name,
                    "priority": a.priority,
                    "assigned_cents": a.assigned_cents,
                    "amount_cents": a.amount_cents,
                }
                for a in result.allocations
            ],
        }

    if payload.dry_run:
        try:
            return store.execute(user_id, op)
        except LedgerError as exc:
            raise _http_error(exc) from exc
    return _mutate(store, user_id, op)


@app.get("/api/budget/rebalance")
def rebalance_suggestions(
    month: Optional[str] = Query(default=None),
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    month = _month_param(month)

    def op(session: Session) -> dict:
        moves = BudgetService(session, user_id).suggest_rebalance(month)
        return {"month": month, "moves": [move.model_dump() for move in moves]}

    try:
        return store.execute(user_id, op)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budget/rebalance")
def apply_rebalance(
    payload: RebalanceIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        result = BudgetService(session, user_id).rebalance(payload)
        return {
            "month": result.month,
            "total_moved_cents": result.total_moved_cents,
            "ready_to_assign_cents": result.ready_to_assign_cents,
            "items": [
                BudgetItemRow.model_validate(item).model_dump(mode="json")
                for item in result.items
            ],
        }

    return _mutate(store, user_id, op)


@app.post("/api/budget/link-bill")
def link_bill(
    payload: LinkBillIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        result = BillService(session, user_id).link_to_category(payload)
        return {
            "link_id": result.link.id,
            "category": CategoryRow.model_validate(result.category).model_dump(
                mode="json"
            ),
            "suggested_monthly_cents": result.suggested_monthly_cents,
            "created_category": result.created_category,
        }

    return _mutate(store, user_id, op)


@app.delete("/api/budget/link-bill")
def unlink_bill(
    bill_id: int = Query(...),
    category_id: int = Query(...),
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    removed = _mutate(
        store,
        user_id,
        lambda session: BillService(session, user_id).unlink(bill_id, category_id),
    )
    return {"removed": removed}


# Income


@app.post("/api/income/sources", status_code=201)
def create_income_source(
    payload: IncomeSourceIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        source = IncomeService(session, user_id).create_source(payload)
        return IncomeSourceRow.model_validate(source).model_dump(mode="json")

    return _mutate(store, user_id, op)


@app.get("/api/income/sources")
def list_income_sources(
    user_id: int = Depends(current_user), store: LedgerStore = Depends(get_store)
):
    def op(session: Session) -> list[dict]:
        return [
            IncomeSourceRow.model_validate(source).model_dump(mode="json")
            for source in IncomeService(session, user_id).list_sources()
        ]

    try:
        return store.execute(user_id, op)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/income/occurrences/{occurrence_id}/receive")
def receive_income(
    occurrence_id: int,
    payload: Optional[ReceiveIncomeIn] = None,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        result = IncomeService(session, user_id).receive(occurrence_id, payload)
        return {
            "transaction": TransactionRow.model_validate(result.transaction).model_dump(
                mode="json"
            ),
            "occurrence": IncomeOccurrenceRow.model_validate(
                result.occurrence
            ).model_dump(mode="json"),
            "budget_month": result.budget_month,
            "rta_increase_cents": result.rta_increase_cents,
        }

    return _mutate(store, user_id, op)


# Bills


@app.post("/api/bills", status_code=201)
def create_bill(
    payload: BillIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        bill = BillService(session, user_id).create(payload)
        return BillRow.model_validate(bill).model_dump(mode="json")

    return _mutate(store, user_id, op)


@app.get("/api/bills")
def list_bills(
    user_id: int = Depends(current_user), store: LedgerStore = Depends(get_store)
):
    def op(session: Session) -> list[dict]:
        return [
            BillRow.model_validate(bill).model_dump(mode="json")
            for bill in BillService(session, user_id).list_all()
        ]

    try:
        return store.execute(user_id, op)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/bills/{bill_id}/pay")
def pay_bill(
    bill_id: int,
    payload: Optional[PayBillIn] = None,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        result = BillService(session, user_id).pay(bill_id, payload)
        return {
            "transaction": TransactionRow.model_validate(result.transaction).model_dump(
                mode="json"
            ),
            "payment": BillPaymentRow.model_validate(result.payment).model_dump(
                mode="json"
            ),
            "occurrence": (
                BillOccurrenceRow.model_validate(result.occurrence).model_dump(
                    mode="json"
                )
                if result.occurrence
                else None
            ),
        }

    return _mutate(store, user_id, op)


# Categories


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        category = CategoryService(session, user_id).create(payload)
        return CategoryRow.model_validate(category).model_dump(mode="json")

    return _mutate(store, user_id, op)


@app.get("/api/categories")
def list_categories(
    include_archived: bool = False,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> list[dict]:
        service = CategoryService(session, user_id)
        return [
            CategoryRow.model_validate(category).model_dump(mode="json")
            for category in service.list_all(include_archived=include_archived)
        ]

    try:
        return store.execute(user_id, op)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/categories/reorder")
def reorder_categories(
    payload: ReorderIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    _mutate(
        store, user_id, lambda session: CategoryService(session, user_id).reorder(payload)
    )
    return {"ok": True}


@app.post("/api/groups", status_code=201)
def create_group(
    payload: CategoryGroupIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        group = CategoryService(session, user_id).create_group(payload)
        return CategoryGroupRow.model_validate(group).model_dump(mode="json")

    return _mutate(store, user_id, op)


# Transactions


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    def op(session: Session) -> dict:
        txn = TransactionService(session, user_id).create(payload)
        return TransactionRow.model_validate(txn).model_dump(mode="json")

    return _mutate(store, user_id, op)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    allow_over_assign: bool = False,
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    _mutate(
        store,
        user_id,
        lambda session: TransactionService(session, user_id).soft_delete(
            transaction_id, allow_over_assign=allow_over_assign
        ),
    )
    return {"ok": True}


# Read models


@app.get("/api/dashboard")
def dashboard(
    month: Optional[str] = Query(default=None),
    user_id: int = Depends(current_user),
    store: LedgerStore = Depends(get_store),
):
    month = _month_param(month)
    try:
        return store.read(
            user_id,
            ("dashboard", month),
            lambda session: SummaryService(session, user_id).dashboard(month),
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/ledger", response_model=LedgerSnapshot)
def ledger_snapshot(
    user_id: int = Depends(current_user), store: LedgerStore = Depends(get_store)
):
    try:
        return store.snapshot(user_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
